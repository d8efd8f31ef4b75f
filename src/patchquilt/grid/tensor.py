"""
Named-axis tensors for patch data.

Candidate patches are carried as a (node, voxel, candidate) array and voting
layers as a (layer, voxel) array. Accessors make the axis order explicit so
that potential and voting code never relies on an implicit permutation.
Patch voxels are flattened in C order throughout the package.
"""

import numpy as np

from patchquilt.errors import ValidationError


class CandidateTensor:
    """
    K candidate patches of V voxels for each of N nodes.

    data has shape (N, V, K).
    """

    axes = ("node", "voxel", "candidate")

    def __init__(self, data):
        data = np.asarray(data, dtype=np.float64)
        if data.ndim != 3:
            raise ValidationError(
                f"candidate tensor must be node x voxel x candidate, got shape {data.shape}"
            )
        self.data = data

    @classmethod
    def from_array(cls, arr):
        """Wrap an N x V or N x V x K array; a 2-D array is a single candidate."""
        arr = np.asarray(arr, dtype=np.float64)
        if arr.ndim == 2:
            arr = arr[:, :, np.newaxis]
        return cls(arr)

    def axis(self, name):
        """Position of a named axis."""
        try:
            return self.axes.index(name)
        except ValueError:
            raise ValidationError(f"unknown axis {name!r}, expected one of {self.axes}") from None

    @property
    def n_nodes(self):
        return self.data.shape[0]

    @property
    def n_voxels(self):
        return self.data.shape[1]

    @property
    def n_candidates(self):
        return self.data.shape[2]

    def node(self, n):
        """Candidates of node n as a candidate x voxel matrix."""
        return self.data[n].T

    def by_candidate(self):
        """View of the data ordered (node, candidate, voxel)."""
        return np.moveaxis(self.data, 2, 1)

    def take_nodes(self, node_ids):
        return CandidateTensor(self.data[np.asarray(node_ids, dtype=np.intp)])

    def crop_candidates(self, max_candidates):
        """Keep the first max_candidates candidates of every node."""
        if max_candidates is None or max_candidates >= self.n_candidates:
            return self
        if max_candidates < 1:
            raise ValidationError(f"max_candidates must be positive, got {max_candidates}")
        return CandidateTensor(self.data[:, :, :max_candidates])

    def select(self, choice):
        """Pick one candidate per node; returns an N x V array."""
        choice = np.asarray(choice, dtype=np.intp)
        if choice.shape != (self.n_nodes,):
            raise ValidationError(
                f"need one choice per node ({self.n_nodes}), got shape {choice.shape}"
            )
        return self.data[np.arange(self.n_nodes), :, choice]

    def patch(self, n, k, patch_shape):
        """Candidate k of node n reshaped to patch_shape."""
        return self.data[n, :, k].reshape(patch_shape)

    def __repr__(self):
        return (f"CandidateTensor(node={self.n_nodes}, voxel={self.n_voxels}, "
                f"candidate={self.n_candidates})")


class LayerStack:
    """
    Overlapping patch contributions stacked into non-overlapping layers.

    data has shape (L, P) where P is the number of output voxels. Within one
    layer every output voxel is covered by at most one patch; uncovered
    entries are NaN. node_index and voxel_index record which node and which
    patch voxel each entry came from (-1 where uncovered).
    """

    axes = ("layer", "voxel")

    def __init__(self, data, volume_shape, node_index, voxel_index):
        self.data = data
        self.volume_shape = tuple(int(s) for s in volume_shape)
        self.node_index = node_index
        self.voxel_index = voxel_index

    @property
    def n_layers(self):
        return self.data.shape[0]

    @property
    def n_voxels(self):
        return self.data.shape[1]

    @property
    def covered(self):
        """Boolean (L, P) mask of entries that received a patch voxel."""
        return self.node_index >= 0

    def coverage(self):
        """Number of layers covering each output voxel, shaped like the volume."""
        return self.covered.sum(axis=0).reshape(self.volume_shape)

    def gather(self, per_patch):
        """
        Lay out an N x V per-patch array (e.g. weights) in the layer structure.

        Entries with no contributing patch are NaN.
        """
        per_patch = np.asarray(per_patch, dtype=np.float64)
        out = np.full(self.data.shape, np.nan)
        mask = self.covered
        out[mask] = per_patch[self.node_index[mask], self.voxel_index[mask]]
        return out

    def to_volume(self, flat):
        """Reshape a length-P vector to the output volume."""
        return np.asarray(flat).reshape(self.volume_shape)

    def __repr__(self):
        return f"LayerStack(layer={self.n_layers}, voxel={self.n_voxels}, volume={self.volume_shape})"
