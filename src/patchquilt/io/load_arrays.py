"""
Request loading for patchquilt.

A request is a .npz archive holding the arrays for one infer or quilt call.
"""

import os

import numpy as np

from patchquilt.errors import ValidationError
from patchquilt.models import ProvenanceIndex
from patchquilt.tracer import get_tracer, trace


REQUIRED_INFER = ("candidates", "costs", "grid_shape")
REQUIRED_QUILT = ("patches", "grid_shape")


@trace(label="load_request")
def load_request(path, required=REQUIRED_INFER):
    """
    Load a .npz request into a dict of arrays.

    Raises FileNotFoundError if path does not exist.
    Raises ValidationError if a required array is missing.
    """
    tracer = get_tracer()

    if not os.path.exists(path):
        raise FileNotFoundError(f"Request not found: {path}")

    with np.load(path, allow_pickle=False) as archive:
        data = {key: archive[key] for key in archive.files}

    missing = [key for key in required if key not in data]
    if missing:
        raise ValidationError(f"Request {path} is missing arrays: {missing}")

    data["grid_shape"] = tuple(int(g) for g in np.ravel(data["grid_shape"]))
    if "patch_shape" in data:
        data["patch_shape"] = tuple(int(p) for p in np.ravel(data["patch_shape"]))

    tracer.event(f"Loaded request with arrays {sorted(data)}")
    return data


def provenance_from_request(data):
    """Build a ProvenanceIndex from request arrays, or None if absent."""
    if "library_index" not in data:
        return None

    ref_shape = data.get("reference_grid_shape")
    if ref_shape is not None:
        ref_shape = np.asarray(ref_shape, dtype=np.int64)
        if ref_shape.ndim == 1:
            ref_shape = tuple(int(s) for s in ref_shape)
        else:
            ref_shape = [tuple(int(s) for s in row) for row in ref_shape]

    return ProvenanceIndex(
        library_index=data["library_index"],
        reference_index=data.get("reference_index"),
        reference_grid_shape=ref_shape,
        additional_displacement=data.get("additional_displacement"),
    )
