"""
Combiners used by quilting.

A candidate combiner reduces a CandidateTensor along its candidate axis to
one N x V patch array; a vote combiner reduces a LayerStack along its layer
axis to one value per output voxel. Both take an optional weight array laid
out like the tensor's data. Non-finite values and NaN weights are skipped.
"""

import numpy as np


def nan_mean(values, weights=None, axis=0):
    """
    Mean over axis ignoring non-finite values.

    With weights, a weighted mean over entries where both value and weight
    are defined. Positions with no usable entry are NaN.
    """
    values = np.asarray(values, dtype=np.float64)
    valid = np.isfinite(values)
    if weights is None:
        w = valid.astype(np.float64)
    else:
        w = np.broadcast_to(np.asarray(weights, dtype=np.float64), values.shape)
        valid = valid & np.isfinite(w)
        w = np.where(valid, w, 0.0)

    num = np.where(valid, w * np.where(valid, values, 0.0), 0.0).sum(axis=axis)
    den = w.sum(axis=axis)
    out = np.full(num.shape, np.nan)
    np.divide(num, den, out=out, where=den > 0)
    return out


def mean_candidates(candidates, weights=None):
    """Default candidate combiner: (weighted) mean over the candidate axis."""
    return nan_mean(candidates.data, weights, axis=candidates.axis("candidate"))


def mean_votes(stack, weights=None):
    """Default vote combiner: (weighted) mean over the layer axis."""
    return nan_mean(stack.data, weights, axis=stack.axes.index("layer"))


def median_votes(stack, weights=None):
    """Median over the layers of each voxel; weights are ignored."""
    data = np.where(np.isfinite(stack.data), stack.data, np.nan)
    out = np.full(stack.n_voxels, np.nan)
    covered = np.any(np.isfinite(data), axis=0)
    out[covered] = np.nanmedian(data[:, covered], axis=0)
    return out


def normalize_layer_weights(weights):
    """
    Renormalize L x P weights so the defined weights of each voxel sum to one.

    NaN entries stay NaN; voxels whose weights sum to zero become NaN.
    """
    weights = np.asarray(weights, dtype=np.float64)
    total = np.nansum(weights, axis=0, keepdims=True)
    out = np.full(weights.shape, np.nan)
    np.divide(weights, total, out=out, where=(total > 0) & ~np.isnan(weights))
    return out
