"""Tests for loopy belief propagation and the inference engine contract."""

import itertools

import numpy as np
import pytest

from patchquilt.errors import NumericalError, ValidationError
from patchquilt.grid.graph_builder import build_grid_graph
from patchquilt.models import BeliefState
from patchquilt.mrf.inference import InferenceEngine, LoopyBeliefPropagation


def brute_force(node_pot, edge_pot, edges):
    """Exact node marginals and partition function by enumeration."""
    n, k = node_pot.shape
    marginals = np.zeros((n, k))
    z = 0.0
    for states in itertools.product(range(k), repeat=n):
        p = np.prod([node_pot[i, s] for i, s in enumerate(states)])
        for e, (i, j) in enumerate(edges):
            p *= edge_pot[e, states[i], states[j]]
        z += p
        for i, s in enumerate(states):
            marginals[i, s] += p
    return marginals / z, z


class TestLoopyBP:
    """Tests for the reference inference engine."""

    def test_isolated_node(self):
        """A node without edges gets its normalized potential."""
        engine = LoopyBeliefPropagation()
        node_pot = np.array([[1.0, 2.0, 3.0, 4.0]])
        beliefs = engine(node_pot, np.zeros((0, 4, 4)), np.zeros((0, 2), dtype=int))
        assert np.allclose(beliefs.node_beliefs, [[0.1, 0.2, 0.3, 0.4]])
        assert np.isclose(beliefs.log_partition, np.log(10.0))
        assert beliefs.iterations == 0
        assert beliefs.converged

    def test_exact_on_tree(self, rng):
        """On a chain LBP marginals and the Bethe log Z are exact."""
        node_pot = rng.uniform(0.1, 1.0, size=(3, 3))
        edge_pot = rng.uniform(0.1, 1.0, size=(2, 3, 3))
        edges = np.array([[0, 1], [1, 2]])

        beliefs = LoopyBeliefPropagation(tolerance=1e-10)(node_pot, edge_pot, edges)
        marginals, z = brute_force(node_pot, edge_pot, edges)

        assert np.allclose(beliefs.node_beliefs, marginals, atol=1e-8)
        assert np.isclose(beliefs.log_partition, np.log(z), atol=1e-6)
        assert beliefs.converged

    def test_edge_beliefs_on_tree(self, rng):
        node_pot = rng.uniform(0.1, 1.0, size=(2, 2))
        edge_pot = rng.uniform(0.1, 1.0, size=(1, 2, 2))
        edges = np.array([[0, 1]])

        beliefs = LoopyBeliefPropagation()(node_pot, edge_pot, edges)
        joint = node_pot[0][:, None] * edge_pot[0] * node_pot[1][None, :]
        assert np.allclose(beliefs.edge_beliefs[0], joint / joint.sum())
        assert np.allclose(beliefs.edge_beliefs[0].sum(axis=1), beliefs.node_beliefs[0])

    def test_uniform_edges_give_independent_marginals(self, rng):
        graph = build_grid_graph((3, 3))
        node_pot = rng.uniform(0.1, 1.0, size=(9, 4))
        edge_pot = np.ones((graph.n_edges, 4, 4))

        beliefs = LoopyBeliefPropagation()(node_pot, edge_pot, graph.edges)
        expected = node_pot / node_pot.sum(axis=1, keepdims=True)
        assert np.allclose(beliefs.node_beliefs, expected)

    def test_cyclic_graph_terminates(self, rng):
        """On a grid with cycles the loop stops by max_iterations at the latest."""
        graph = build_grid_graph((4, 4))
        node_pot = rng.uniform(0.01, 1.0, size=(16, 5))
        edge_pot = rng.uniform(0.01, 1.0, size=(graph.n_edges, 5, 5))

        beliefs = LoopyBeliefPropagation(max_iterations=7, tolerance=0.0)(
            node_pot, edge_pot, graph.edges)
        assert beliefs.iterations <= 7
        assert not beliefs.converged
        assert np.allclose(beliefs.node_beliefs.sum(axis=1), 1.0)
        assert np.all(beliefs.node_beliefs >= 0)
        assert np.isfinite(beliefs.max_delta)

    def test_zero_iterations(self, rng):
        graph = build_grid_graph((2, 2))
        node_pot = rng.uniform(0.1, 1.0, size=(4, 2))
        edge_pot = np.ones((graph.n_edges, 2, 2))
        beliefs = LoopyBeliefPropagation(max_iterations=0)(node_pot, edge_pot, graph.edges)
        assert beliefs.iterations == 0
        assert not beliefs.converged
        assert np.allclose(beliefs.node_beliefs.sum(axis=1), 1.0)

    def test_zero_node_potential_entries(self):
        node_pot = np.array([[0.0, 1.0], [1.0, 1.0]])
        edge_pot = np.ones((1, 2, 2)) + 1e-3
        beliefs = LoopyBeliefPropagation()(node_pot, edge_pot, np.array([[0, 1]]))
        assert beliefs.node_beliefs[0, 0] == 0.0
        assert np.all(np.isfinite(beliefs.node_beliefs))

    def test_hard_equality_constraints(self):
        """Identity edge potentials propagate a pinned state along a chain."""
        node_pot = np.array([[1.0, 0.0], [1.0, 1.0], [1.0, 1.0]])
        edge_pot = np.stack([np.eye(2), np.eye(2)])
        edges = np.array([[0, 1], [1, 2]])

        beliefs = LoopyBeliefPropagation()(node_pot, edge_pot, edges)
        assert np.allclose(beliefs.node_beliefs, [[1.0, 0.0]] * 3)
        assert np.allclose(beliefs.edge_beliefs, [[[1.0, 0.0], [0.0, 0.0]]] * 2)
        assert np.isclose(beliefs.log_partition, 0.0)
        assert beliefs.converged

    def test_hard_constraints_on_grid(self, rng):
        """Zero potentials on a loopy graph still give finite beliefs."""
        graph = build_grid_graph((3, 3), connectivity=4)
        node_pot = rng.uniform(0.1, 1.0, size=(9, 3))
        node_pot[0] = [1.0, 0.0, 0.0]
        edge_pot = np.broadcast_to(np.eye(3), (graph.n_edges, 3, 3))

        beliefs = LoopyBeliefPropagation()(node_pot, edge_pot, graph.edges)
        assert np.allclose(beliefs.node_beliefs, [[1.0, 0.0, 0.0]] * 9)

    def test_contradictory_constraints_rejected(self):
        node_pot = np.array([[1.0, 0.0], [0.0, 1.0]])
        edge_pot = np.eye(2)[None]
        with pytest.raises(NumericalError):
            LoopyBeliefPropagation()(node_pot, edge_pot, np.array([[0, 1]]))


class TestEngineContract:
    """Tests for input validation shared by all engines."""

    def test_non_finite_potentials_rejected(self):
        engine = LoopyBeliefPropagation()
        with pytest.raises(NumericalError):
            engine(np.array([[np.nan, 1.0]]), np.zeros((0, 2, 2)), np.zeros((0, 2)))
        with pytest.raises(NumericalError):
            engine(np.ones((2, 2)), np.full((1, 2, 2), np.inf), np.array([[0, 1]]))

    def test_negative_potentials_rejected(self):
        with pytest.raises(NumericalError):
            LoopyBeliefPropagation()(np.array([[-1.0, 1.0]]), np.zeros((0, 2, 2)), np.zeros((0, 2)))

    def test_shape_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            LoopyBeliefPropagation()(np.ones((2, 2)), np.ones((1, 3, 3)), np.array([[0, 1]]))
        with pytest.raises(ValidationError):
            LoopyBeliefPropagation()(np.ones((2, 2)), np.ones((1, 2, 2)), np.array([[0, 2]]))

    def test_custom_engine(self):
        """Any subclass plugs into the same validated call."""

        class Independent(InferenceEngine):
            def infer(self, node_potential, edge_potential, edges):
                beliefs = node_potential / node_potential.sum(axis=1, keepdims=True)
                return BeliefState(
                    node_beliefs=beliefs,
                    edge_beliefs=np.zeros_like(edge_potential),
                    log_partition=float(np.log(node_potential.sum(axis=1)).sum()),
                )

        beliefs = Independent()(np.array([[1.0, 3.0]]), np.zeros((0, 2, 2)), np.zeros((0, 2)))
        assert np.allclose(beliefs.node_beliefs, [[0.25, 0.75]])

    def test_non_finite_beliefs_rejected(self):
        class Broken(InferenceEngine):
            def infer(self, node_potential, edge_potential, edges):
                return BeliefState(
                    node_beliefs=np.full(node_potential.shape, np.nan),
                    edge_beliefs=np.zeros_like(edge_potential),
                    log_partition=0.0,
                )

        with pytest.raises(NumericalError):
            Broken()(np.ones((1, 2)), np.zeros((0, 2, 2)), np.zeros((0, 2)))
