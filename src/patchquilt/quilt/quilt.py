"""
Quilting: reconstruct a volume from patches on a grid.

Optionally reduces several candidates per node to one patch, stacks the
patches into overlap layers and votes every output voxel from the layers
that cover it.
"""

import numpy as np

from patchquilt.config import QuiltConfig
from patchquilt.errors import ConfigurationError, NumericalError, ValidationError
from patchquilt.grid.overlap import check_shape, guess_patch_shape, resolve_overlap
from patchquilt.grid.tensor import CandidateTensor
from patchquilt.quilt.aggregators import mean_candidates, mean_votes, normalize_layer_weights
from patchquilt.quilt.stacking import stack_patches
from patchquilt.tracer import get_tracer, trace


@trace(label="quilt")
def quilt(patches, grid_shape, patch_shape=None, patch_overlap="sliding", config=None):
    """
    Quilt patches into a single volume.

    Args:
        patches: N x V or N x V x M array (or CandidateTensor)
        grid_shape: D-tuple with prod(grid_shape) == N
        patch_shape: D-tuple with prod(patch_shape) == V, guessed when None
        patch_overlap: overlap ("sliding", "half", "none", int or per-dim)
        config: QuiltConfig with combiners, weights and max_candidates

    Returns:
        the quilted volume with singleton dimensions removed; voxels no
        patch covers are NaN
    """
    tracer = get_tracer()
    config = config or QuiltConfig()

    if config.weights is not None and config.normalized_weights is not None:
        raise ConfigurationError(
            "weights and normalized_weights are mutually exclusive; pass only one",
            options=("weights", "normalized_weights"),
        )

    if not isinstance(patches, CandidateTensor):
        patches = CandidateTensor.from_array(patches)
    grid_shape = check_shape(grid_shape, "grid shape")
    if patch_shape is None:
        patch_shape = guess_patch_shape(patches.n_voxels, len(grid_shape))
    patch_shape = check_shape(patch_shape, "patch shape")
    overlap = resolve_overlap(patch_overlap, patch_shape)

    n_nodes = int(np.prod(grid_shape))
    if patches.n_nodes != n_nodes:
        raise ValidationError(
            f"the number of patches {patches.n_nodes} must match prod(grid_shape) {n_nodes}"
        )
    if len(patch_shape) != len(grid_shape) or int(np.prod(patch_shape)) != patches.n_voxels:
        raise ValidationError(
            f"patch shape {patch_shape} does not fit {patches.n_voxels} voxels on a "
            f"{len(grid_shape)}-d grid"
        )

    patches = patches.crop_candidates(config.max_candidates)

    with tracer.span("reduce_candidates", module="quilt", candidates=patches.n_candidates):
        candidate_weights = _candidate_weights(config.candidate_weights, patches,
                                               config.max_candidates)
        combiner = config.candidate_combiner or mean_candidates
        reduced = np.asarray(combiner(patches, candidate_weights), dtype=np.float64)
        if reduced.shape != (patches.n_nodes, patches.n_voxels):
            raise ValidationError(
                f"candidate combiner returned {reduced.shape}, "
                f"expected {(patches.n_nodes, patches.n_voxels)}"
            )

    with tracer.span("stack", module="quilt"):
        stack = stack_patches(reduced, grid_shape, patch_shape, overlap)

    with tracer.span("vote", module="quilt", layers=stack.n_layers):
        weights = _vote_weights(config, stack, reduced, candidate_weights)
        combiner = config.vote_combiner or mean_votes
        flat = np.asarray(combiner(stack, weights), dtype=np.float64)
        if flat.size != stack.n_voxels:
            raise ValidationError(
                f"vote combiner returned {flat.size} values for {stack.n_voxels} voxels"
            )

    if np.any(np.isinf(flat)):
        raise NumericalError("quilted volume holds infinite values")

    undefined = int(np.isnan(flat).sum())
    if undefined:
        tracer.event(f"{undefined} voxels left undefined", level="DEBUG")

    return np.squeeze(stack.to_volume(flat))


def _check_weights(weights, what):
    if np.any(np.isinf(weights)):
        raise NumericalError(f"{what}: infinite weights")
    if np.any(weights < 0):
        raise NumericalError(f"{what}: negative weights")


def _candidate_weights(candidate_weights, patches, max_candidates):
    """Resolve candidate weights to an N x V x M array, or None."""
    if candidate_weights is None:
        return None

    if callable(candidate_weights):
        candidate_weights = candidate_weights(patches)
    w = np.asarray(candidate_weights, dtype=np.float64)

    if w.ndim == 2:
        w = w[:, np.newaxis, :]
    if max_candidates is not None:
        w = w[:, :, :max_candidates]
    if w.ndim == 3 and w.shape[1] == 1:
        w = np.broadcast_to(w, (w.shape[0], patches.n_voxels, w.shape[2]))

    if w.shape != patches.data.shape:
        raise ValidationError(
            f"candidate weights {w.shape} must be N x M or N x V x M for patches "
            f"{patches.data.shape}"
        )
    _check_weights(w, "candidate weights")
    return w


def _vote_weights(config, stack, patches, candidate_weights):
    """Resolve vote weights to an L x P array, or None."""
    raw = config.weights
    given = raw if raw is not None else config.normalized_weights
    if given is None:
        return None

    if callable(given):
        w = np.asarray(given(stack, patches, candidate_weights), dtype=np.float64)
        if w.size != stack.data.size:
            raise ValidationError(
                f"weight function returned {w.shape}, expected {stack.data.shape}"
            )
        w = w.reshape(stack.data.shape)
    else:
        w = np.asarray(given, dtype=np.float64)
        if w.ndim == 3 and w.shape[2] == 1:
            w = w[:, :, 0]
        if w.shape != patches.shape:
            raise ValidationError(
                f"weights {w.shape} must match the quilted patches {patches.shape}"
            )
        w = stack.gather(w)

    _check_weights(w[~np.isnan(w)], "vote weights")

    if raw is not None:
        w = normalize_layer_weights(w)
    return w
