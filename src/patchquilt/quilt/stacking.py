"""
Layer stacking of overlapping patches.

Patches on a grid with step s = patch - overlap are split into
prod(ceil(patch / s)) layers by grid coordinate modulo ceil(patch / s).
Patches sharing a layer never overlap, so each layer is a partial tiling of
the output volume and the layers of one voxel are exactly the patches that
cover it.
"""

import numpy as np

from patchquilt.errors import ValidationError
from patchquilt.grid.overlap import grid_coordinates, grid_step, patch_origins, volume_shape
from patchquilt.grid.tensor import LayerStack
from patchquilt.tracer import get_tracer, trace


def layer_grid(patch_shape, overlap):
    """Number of layers along each dimension."""
    step = grid_step(patch_shape, overlap)
    return tuple(-(-p // s) for p, s in zip(patch_shape, step))


@trace(label="stack_patches")
def stack_patches(patches, grid_shape, patch_shape, overlap):
    """
    Stack N x V patches into a LayerStack over the quilted volume.

    Args:
        patches: N x V array, one flattened patch per grid node
        grid_shape: D-tuple, prod(grid_shape) == N
        patch_shape: D-tuple, prod(patch_shape) == V
        overlap: per-dimension overlap tuple

    Returns:
        LayerStack with one layer per residue class of grid coordinates
    """
    tracer = get_tracer()

    patches = np.asarray(patches, dtype=np.float64)
    n_nodes, n_voxels = patches.shape
    if n_nodes != int(np.prod(grid_shape)) or n_voxels != int(np.prod(patch_shape)):
        raise ValidationError(
            f"patches {patches.shape} do not match grid {grid_shape} x patch {patch_shape}"
        )

    vol_shape = volume_shape(grid_shape, patch_shape, overlap)
    layers = layer_grid(patch_shape, overlap)
    n_layers = int(np.prod(layers))

    coords = grid_coordinates(grid_shape)
    layer_of = np.ravel_multi_index(tuple((coords % np.asarray(layers)).T), layers)

    local = np.stack(np.unravel_index(np.arange(n_voxels), patch_shape), axis=1)
    origins = patch_origins(grid_shape, patch_shape, overlap)
    positions = origins[:, None, :] + local[None, :, :]
    flat = np.ravel_multi_index(tuple(np.moveaxis(positions, 2, 0)), vol_shape)

    n_out = int(np.prod(vol_shape))
    data = np.full((n_layers, n_out), np.nan)
    node_index = np.full((n_layers, n_out), -1, dtype=np.intp)
    voxel_index = np.full((n_layers, n_out), -1, dtype=np.intp)

    rows = np.broadcast_to(layer_of[:, None], flat.shape)
    data[rows, flat] = patches
    node_index[rows, flat] = np.arange(n_nodes)[:, None]
    voxel_index[rows, flat] = np.arange(n_voxels)[None, :]

    tracer.event(f"Stacked {n_nodes} patches into {n_layers} layers over volume {vol_shape}")
    return LayerStack(data, vol_shape, node_index, voxel_index)
