"""
Batch pipeline for patchquilt.

Runs MRF selection followed by quilting on a .npz request and writes the
results to an output directory.
"""

import os
from dataclasses import replace

import numpy as np

from patchquilt.config import load_config
from patchquilt.io.load_arrays import REQUIRED_QUILT, load_request, provenance_from_request
from patchquilt.io.save_artifacts import ensure_dir, save_array, save_json, save_preview
from patchquilt.models import InferenceSummary
from patchquilt.mrf.patchmrf import infer
from patchquilt.quilt.quilt import quilt
from patchquilt.tracer import get_tracer, trace


@trace(label="run_pipeline")
def run_pipeline(request_path, out_dir, config=None, config_path=None, patch_overlap=None):
    """
    Select candidates on the grid, then quilt the selection into a volume.

    Args:
        request_path: .npz with candidates, costs, grid_shape and optional
            patch_shape and provenance arrays
        out_dir: output directory
        config: PipelineConfig object (optional)
        config_path: path to YAML config file (optional)
        patch_overlap: overrides config.mrf.patch_overlap

    Returns:
        (MRFResult, volume)
    """
    tracer = get_tracer()

    if config is None:
        config = load_config(config_path)
    overlap = patch_overlap if patch_overlap is not None else config.mrf.patch_overlap

    request = load_request(request_path)
    provenance = provenance_from_request(request)
    grid_shape = request["grid_shape"]

    ensure_dir(out_dir)

    with tracer.span("select", module="pipeline"):
        result = infer(
            request["candidates"], request["costs"], grid_shape,
            config=config.mrf,
            patch_shape=request.get("patch_shape"),
            patch_overlap=overlap,
            provenance=provenance,
        )

    with tracer.span("quilt", module="pipeline"):
        patches = restore_excluded(result.selected_patches, result.selection.grid_ids,
                                   int(np.prod(grid_shape)))
        volume = quilt(patches, grid_shape, request.get("patch_shape"), overlap,
                       config=config.quilt)

    summary = InferenceSummary.from_result(result, grid_shape)
    _write_outputs(out_dir, volume, summary, result.marginals, config.output)

    tracer.event(f"Pipeline complete: {summary.n_active} nodes, volume {volume.shape}")
    return result, volume


@trace(label="run_quilt")
def run_quilt(request_path, out_dir, config=None, config_path=None, patch_overlap=None):
    """
    Quilt the patches of a .npz request without inference.

    The request holds patches (N x V or N x V x M), grid_shape and optionally
    patch_shape and weights.
    """
    tracer = get_tracer()

    if config is None:
        config = load_config(config_path)
    overlap = patch_overlap if patch_overlap is not None else config.mrf.patch_overlap

    request = load_request(request_path, required=REQUIRED_QUILT)
    # request arrays apply to this call only
    quilt_config = replace(config.quilt)
    if "weights" in request and quilt_config.normalized_weights is None:
        quilt_config.weights = request["weights"]
    if "candidate_weights" in request:
        quilt_config.candidate_weights = request["candidate_weights"]

    ensure_dir(out_dir)

    volume = quilt(request["patches"], request["grid_shape"], request.get("patch_shape"),
                   overlap, config=quilt_config)

    _write_outputs(out_dir, volume, None, None, config.output)
    tracer.event(f"Quilt complete: volume {volume.shape}")
    return volume


def restore_excluded(selected, grid_ids, n_nodes):
    """Place active-node patches back on the full grid; excluded rows are NaN."""
    patches = np.full((n_nodes, selected.shape[1]), np.nan)
    patches[grid_ids] = selected
    return patches


def _write_outputs(out_dir, volume, summary, marginals, output_config):
    save_array(volume, os.path.join(out_dir, "volume.npy"))

    if summary is not None:
        save_json(summary, os.path.join(out_dir, "selection.json"))

    if marginals is not None and output_config.save_marginals:
        save_array(marginals, os.path.join(out_dir, "marginals.npy"))

    if output_config.save_preview:
        save_preview(volume, os.path.join(out_dir, "preview.png"),
                     max_edge=output_config.preview_max_edge)
