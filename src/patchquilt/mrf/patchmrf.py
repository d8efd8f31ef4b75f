"""
MRF inference over patch candidates on a grid.

Given K candidate patches and their costs at every node of a grid, builds
node potentials exp(-lambda_node * cost) and edge potentials from the
overlap consistency of neighboring candidates, runs an inference engine and
returns the most probable candidate for every active node.
"""

import numpy as np

from patchquilt.config import MRFConfig
from patchquilt.errors import ValidationError
from patchquilt.grid.graph_builder import build_grid_graph
from patchquilt.grid.overlap import (
    OverlapRegions, check_shape, guess_patch_shape, resolve_overlap,
)
from patchquilt.grid.tensor import CandidateTensor
from patchquilt.models import MRFResult
from patchquilt.mrf.inference import LoopyBeliefPropagation
from patchquilt.mrf.potentials import compute_displacements, edge_potentials, node_potentials
from patchquilt.mrf.selector import select_candidates
from patchquilt.tracer import get_tracer, trace


@trace(label="infer")
def infer(candidates, costs, grid_shape, config=None, patch_shape=None,
          patch_overlap=None, provenance=None):
    """
    Select one candidate per grid node by approximate MRF inference.

    Args:
        candidates: N x V x K array (or CandidateTensor) of flattened patches
        costs: N x K array of unary costs
        grid_shape: D-tuple with prod(grid_shape) == N
        config: MRFConfig, defaults used when None
        patch_shape: D-tuple with prod(patch_shape) == V, guessed when None
        patch_overlap: overlap kind or size, falls back to config.patch_overlap
        provenance: optional ProvenanceIndex

    Returns:
        MRFResult with one row per active (non-excluded) node
    """
    tracer = get_tracer()
    config = config or MRFConfig()

    if not isinstance(candidates, CandidateTensor):
        candidates = CandidateTensor.from_array(candidates)
    costs = np.asarray(costs, dtype=np.float64)
    grid_shape = check_shape(grid_shape, "grid shape")
    n_dims = len(grid_shape)

    if patch_shape is None:
        patch_shape = guess_patch_shape(candidates.n_voxels, n_dims)
    patch_shape = check_shape(patch_shape, "patch shape")
    if patch_overlap is None:
        patch_overlap = config.patch_overlap
        tracer.event(f"Using configured overlap {patch_overlap!r}", level="WARN")
    overlap = resolve_overlap(patch_overlap, patch_shape)

    _validate_inputs(candidates, costs, grid_shape, patch_shape, provenance)

    with tracer.span("build_graph", module="patchmrf"):
        graph = build_grid_graph(grid_shape, config.connectivity, config.excluded_nodes)

    with tracer.span("potentials", module="patchmrf"):
        node_pot = node_potentials(costs[graph.active_ids], config.lambda_node)

        regions = OverlapRegions(patch_shape, overlap)
        displacements = compute_displacements(provenance, grid_shape, patch_shape, overlap)
        edge_pot = edge_potentials(
            candidates, graph, regions, config.lambda_edge,
            edge_distance=config.edge_distance,
            displacements=displacements,
            provenance=provenance,
            use_fast_distance=config.use_fast_distance,
            config=config,
        )

    with tracer.span("inference", module="patchmrf"):
        engine = config.inference or LoopyBeliefPropagation(
            config.max_iterations, config.convergence_tolerance
        )
        beliefs = engine(node_pot, edge_pot + config.edge_epsilon, graph.edges)

    selection = select_candidates(beliefs.node_beliefs, graph, provenance)
    selected = candidates.take_nodes(graph.active_ids).select(selection.candidate_index)

    tracer.event(f"Selected candidates for {graph.n_active} nodes",
                 iterations=beliefs.iterations, converged=beliefs.converged)

    return MRFResult(
        selected_patches=selected,
        marginals=beliefs.node_beliefs,
        selection=selection,
        beliefs=beliefs,
        node_potential=node_pot,
        edge_potential=edge_pot,
        edges=graph.edges,
    )


def _validate_inputs(candidates, costs, grid_shape, patch_shape, provenance):
    n_nodes = int(np.prod(grid_shape))

    if costs.ndim != 2:
        raise ValidationError(f"costs must be N x K, got shape {costs.shape}")
    if candidates.n_nodes != n_nodes:
        raise ValidationError(
            f"number of nodes {candidates.n_nodes} must match prod(grid_shape) {n_nodes}"
        )
    if costs.shape != (candidates.n_nodes, candidates.n_candidates):
        raise ValidationError(
            f"costs shape {costs.shape} must be N x K = "
            f"{(candidates.n_nodes, candidates.n_candidates)}"
        )
    if len(patch_shape) != len(grid_shape):
        raise ValidationError(
            f"patch shape {patch_shape} and grid shape {grid_shape} differ in dimension"
        )
    if int(np.prod(patch_shape)) != candidates.n_voxels:
        raise ValidationError(
            f"patch shape {patch_shape} has {int(np.prod(patch_shape))} voxels, "
            f"candidates have {candidates.n_voxels}"
        )
    if provenance is not None and provenance.library_index.shape != costs.shape:
        raise ValidationError(
            f"provenance index shape {provenance.library_index.shape} must match "
            f"costs {costs.shape}"
        )
