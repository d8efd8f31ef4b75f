"""
Grid geometry and overlap regions.

A grid of patches with per-dimension overlap o places patch g (grid
coordinate) at voxel origin g * (patch_shape - o). Two patches whose origins
differ by a shift s share the voxels [max(0, s), min(p, p + s)) of the first
patch and [max(0, -s), min(p, p - s)) of the second, per dimension.
"""

import itertools

import numpy as np

from patchquilt.errors import ValidationError


OVERLAP_KINDS = ("sliding", "half", "none")


def resolve_overlap(patch_overlap, patch_shape):
    """
    Turn an overlap specification into a per-dimension tuple of ints.

    Accepts "sliding" (patch - 1), "half" (floor(patch / 2)), "none" (0),
    a scalar applied to every dimension, or one value per dimension.
    """
    patch_shape = tuple(int(p) for p in patch_shape)
    n_dims = len(patch_shape)

    if isinstance(patch_overlap, str):
        kind = patch_overlap.lower()
        if kind == "sliding":
            overlap = tuple(p - 1 for p in patch_shape)
        elif kind == "half":
            overlap = tuple(p // 2 for p in patch_shape)
        elif kind == "none":
            overlap = (0,) * n_dims
        else:
            raise ValidationError(
                f"unknown overlap kind {patch_overlap!r}, expected one of {OVERLAP_KINDS}"
            )
    elif np.isscalar(patch_overlap):
        overlap = (int(patch_overlap),) * n_dims
    else:
        overlap = tuple(int(o) for o in patch_overlap)
        if len(overlap) != n_dims:
            raise ValidationError(
                f"overlap has {len(overlap)} dims but patch shape has {n_dims}"
            )

    for o, p in zip(overlap, patch_shape):
        if o < 0 or o >= p:
            raise ValidationError(
                f"overlap {overlap} must satisfy 0 <= overlap < patch size {patch_shape}"
            )
    return overlap


def guess_patch_shape(n_voxels, n_dims):
    """Guess a cubic patch shape with n_voxels voxels in n_dims dimensions."""
    side = int(round(n_voxels ** (1.0 / n_dims)))
    for candidate in (side - 1, side, side + 1):
        if candidate > 0 and candidate ** n_dims == n_voxels:
            return (candidate,) * n_dims
    raise ValidationError(
        f"cannot guess a {n_dims}-d patch shape for {n_voxels} voxels; pass patch_shape"
    )


def check_shape(shape, what):
    """Validate a tuple of positive ints."""
    try:
        shape = tuple(int(s) for s in shape)
    except TypeError:
        raise ValidationError(f"{what} must be a sequence of ints, got {shape!r}") from None
    if not shape or any(s < 1 for s in shape):
        raise ValidationError(f"{what} must be non-empty and positive, got {shape}")
    return shape


def grid_step(patch_shape, overlap):
    return tuple(p - o for p, o in zip(patch_shape, overlap))


def volume_shape(grid_shape, patch_shape, overlap):
    """Size of the volume tiled by a grid of overlapping patches."""
    step = grid_step(patch_shape, overlap)
    return tuple((g - 1) * s + p for g, s, p in zip(grid_shape, step, patch_shape))


def grid_coordinates(grid_shape):
    """N x D array of grid coordinates, node ids in C order."""
    n_nodes = int(np.prod(grid_shape))
    return np.stack(np.unravel_index(np.arange(n_nodes), grid_shape), axis=1)


def patch_origins(grid_shape, patch_shape, overlap):
    """N x D array of patch origins in voxel coordinates."""
    return grid_coordinates(grid_shape) * np.asarray(grid_step(patch_shape, overlap))


def directions(n_dims):
    """All offsets in {-1, 0, 1}^D, the zero offset included."""
    return list(itertools.product((-1, 0, 1), repeat=n_dims))


class OverlapRegions:
    """
    Precomputed overlap footprints for one (patch_shape, overlap) pair.

    Footprints for the 3^D unit directions are built up front; arbitrary
    voxel shifts (displaced patches) are computed on demand and cached.
    Each footprint is a pair of flat voxel index arrays (first, second).
    """

    def __init__(self, patch_shape, overlap):
        self.patch_shape = tuple(int(p) for p in patch_shape)
        self.overlap = tuple(int(o) for o in overlap)
        self.step = np.asarray(grid_step(self.patch_shape, self.overlap))
        self._cache = {}
        for df in directions(len(self.patch_shape)):
            self.for_shift(self.step * np.asarray(df))

    def for_direction(self, df):
        """Footprint for a neighbor at unit grid direction df = sign(loc2 - loc1)."""
        return self.for_shift(self.step * np.sign(np.asarray(df)))

    def for_shift(self, shift):
        """Footprint for a second patch whose origin is shift voxels from the first."""
        key = tuple(int(s) for s in shift)
        if key not in self._cache:
            self._cache[key] = self._compute(key)
        return self._cache[key]

    def _compute(self, shift):
        ranges1 = []
        ranges2 = []
        for s, p in zip(shift, self.patch_shape):
            lo, hi = max(0, s), min(p, p + s)
            if lo >= hi:
                empty = np.zeros(0, dtype=np.intp)
                return empty, empty
            ranges1.append(np.arange(lo, hi))
            ranges2.append(np.arange(lo - s, hi - s))

        idx1 = np.ravel_multi_index(np.meshgrid(*ranges1, indexing="ij"), self.patch_shape)
        idx2 = np.ravel_multi_index(np.meshgrid(*ranges2, indexing="ij"), self.patch_shape)
        return idx1.ravel(), idx2.ravel()

    def __len__(self):
        return len(self._cache)
