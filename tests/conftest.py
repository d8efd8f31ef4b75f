"""Pytest fixtures for patchquilt tests."""

import os
import tempfile

import numpy as np
import pytest


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def rng():
    """Seeded random generator."""
    return np.random.default_rng(1234)


@pytest.fixture
def default_config():
    """Create default pipeline configuration."""
    from patchquilt.config import PipelineConfig
    return PipelineConfig()


@pytest.fixture
def mrf_config():
    """Default MRF configuration."""
    from patchquilt.config import MRFConfig
    return MRFConfig()


@pytest.fixture
def chain_problem():
    """
    Three nodes on a line with two constant candidates each.

    Candidate 0 is all ones, candidate 1 all fives. Node 0 strongly prefers
    candidate 0; nodes 1 and 2 slightly prefer candidate 1 on their own.
    """
    grid_shape = (3,)
    patch_shape = (2,)
    ones = np.ones(2)
    fives = np.full(2, 5.0)
    candidates = np.stack([np.stack([ones, fives], axis=1)] * 3)
    costs = np.array([
        [0.0, 10.0],
        [0.1, 0.0],
        [0.1, 0.0],
    ])
    return candidates, costs, grid_shape, patch_shape


@pytest.fixture
def grid_problem(rng):
    """Random 3 x 3 grid of 3 x 3 patches with 4 candidates each."""
    grid_shape = (3, 3)
    patch_shape = (3, 3)
    candidates = rng.normal(size=(9, 9, 4))
    costs = rng.uniform(0.0, 2.0, size=(9, 4))
    return candidates, costs, grid_shape, patch_shape


@pytest.fixture
def request_file(temp_dir, chain_problem):
    """Write the chain problem as a .npz request."""
    candidates, costs, grid_shape, patch_shape = chain_problem
    path = os.path.join(temp_dir, "request.npz")
    np.savez(
        path,
        candidates=candidates,
        costs=costs,
        grid_shape=np.array(grid_shape),
        patch_shape=np.array(patch_shape),
    )
    return path
