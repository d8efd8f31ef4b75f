"""
Artifact saving utilities for patchquilt.

Writes JSON summaries, raw arrays and PNG previews of quilted volumes.
"""

import json
import os

import cv2
import numpy as np

from patchquilt.tracer import get_tracer


def ensure_dir(path):
    """Create directory if it does not exist."""
    if path:
        os.makedirs(path, exist_ok=True)


def save_json(data, path, indent=2):
    """
    Save a dictionary or Pydantic model to JSON.
    """
    tracer = get_tracer()

    ensure_dir(os.path.dirname(path))

    if hasattr(data, "model_dump"):
        data = data.model_dump()

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent, default=str)

    tracer.event(f"Saved JSON: {path}")


def save_array(arr, path):
    """Save a numpy array as .npy."""
    tracer = get_tracer()

    ensure_dir(os.path.dirname(path))
    np.save(path, np.asarray(arr))
    tracer.event(f"Saved array: {path}")


def to_preview(volume):
    """
    Map a 2-D volume to a uint8 image for viewing.

    Values are min-max scaled over the defined voxels; undefined voxels are
    black. Returns None for volumes that are not 2-D.
    """
    volume = np.asarray(volume, dtype=np.float64)
    if volume.ndim != 2:
        return None

    defined = np.isfinite(volume)
    img = np.zeros(volume.shape, dtype=np.uint8)
    if not np.any(defined):
        return img

    lo, hi = volume[defined].min(), volume[defined].max()
    scale = 255.0 / (hi - lo) if hi > lo else 0.0
    img[defined] = np.clip((volume[defined] - lo) * scale, 0, 255).astype(np.uint8)
    return img


def save_preview(volume, path, max_edge=None):
    """
    Save a PNG preview of a 2-D volume.

    Optionally upscales small volumes so the longer edge is max_edge, using
    nearest-neighbor interpolation so individual voxels stay visible.
    Returns False when the volume cannot be previewed.
    """
    tracer = get_tracer()

    img = to_preview(volume)
    if img is None:
        tracer.event(f"Skipping preview for {np.ndim(volume)}-d volume", level="DEBUG")
        return False

    if max_edge and max(img.shape) < max_edge:
        scale = max_edge // max(img.shape)
        if scale > 1:
            new_size = (img.shape[1] * scale, img.shape[0] * scale)
            img = cv2.resize(img, new_size, interpolation=cv2.INTER_NEAREST)

    ensure_dir(os.path.dirname(path))
    cv2.imwrite(path, img)
    tracer.event(f"Saved preview: {path}")
    return True
