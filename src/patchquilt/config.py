"""
Configuration management for patchquilt.

Loads YAML configuration with defaults for MRF inference and quilting.
Strategy objects (distance functions, inference engines, combiners and
weight tensors) are set per call on the dataclasses and never read from YAML.
"""

import os
import sys
from dataclasses import dataclass, field, fields

import yaml


@dataclass
class MRFConfig:
    """Configuration for MRF construction and inference."""
    lambda_node: float = 1.0
    lambda_edge: float = 1.0
    max_iterations: int = 100
    convergence_tolerance: float = 1e-4
    connectivity: int = None  # None -> 3**D - 1
    excluded_nodes: list = field(default_factory=list)
    patch_overlap: object = "sliding"  # int, per-dim list, or "sliding"/"half"/"none"
    edge_epsilon: float = sys.float_info.epsilon
    use_fast_distance: bool = True  # batched overlap distances; False -> per-edge loop
    edge_distance: object = None  # callable, None -> l2_overlap_distance
    inference: object = None  # InferenceEngine, None -> LoopyBeliefPropagation


@dataclass
class QuiltConfig:
    """Configuration for candidate reduction and voxel voting."""
    max_candidates: int = None
    candidate_combiner: object = None  # callable(patches, weights=None) -> N x V
    vote_combiner: object = None  # callable(stack, weights=None) -> volume
    candidate_weights: object = None  # N x M, N x V x M, or callable(patches)
    weights: object = None  # raw, renormalized per voxel
    normalized_weights: object = None  # already normalized, used as given


@dataclass
class TracingConfig:
    """Configuration for runtime tracing."""
    enabled: bool = False
    level: str = "INFO"
    file_path: str = None
    json_output: bool = False


@dataclass
class OutputConfig:
    """Configuration for written results."""
    save_marginals: bool = True
    save_preview: bool = True
    preview_max_edge: int = 1024


@dataclass
class PipelineConfig:
    """Complete pipeline configuration."""
    mrf: MRFConfig = field(default_factory=MRFConfig)
    quilt: QuiltConfig = field(default_factory=QuiltConfig)
    tracing: TracingConfig = field(default_factory=TracingConfig)
    output: OutputConfig = field(default_factory=OutputConfig)


# fields that hold callables or arrays and cannot come from YAML
_STRATEGY_FIELDS = {
    "edge_distance", "inference",
    "candidate_combiner", "vote_combiner",
    "candidate_weights", "weights", "normalized_weights",
}

_SECTIONS = ("mrf", "quilt", "tracing", "output")


def load_config(config_path=None):
    """
    Load configuration from YAML file.

    Falls back to defaults for any missing values.
    """
    config = PipelineConfig()

    if config_path and os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f) or {}

        config = _merge_config(config, yaml_data)

    return config


def _merge_config(config, yaml_data):
    """Merge YAML data into config dataclass."""
    for section in _SECTIONS:
        if section not in yaml_data:
            continue
        target = getattr(config, section)
        for key, value in (yaml_data[section] or {}).items():
            if key in _STRATEGY_FIELDS:
                continue
            if hasattr(target, key):
                setattr(target, key, value)

    return config


def save_default_config(path):
    """Save default configuration to YAML file for reference."""
    config = PipelineConfig()

    yaml_data = {}
    for section in _SECTIONS:
        target = getattr(config, section)
        yaml_data[section] = {
            f.name: getattr(target, f.name)
            for f in fields(target)
            if f.name not in _STRATEGY_FIELDS
        }

    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(yaml_data, f, default_flow_style=False, sort_keys=False)
