"""
Approximate inference engines for the patch MRF.

An engine receives node potentials (n x K), edge potentials (E x K x K) and
the edge list (E x 2, active ids) and returns a BeliefState. The reference
engine is synchronous loopy belief propagation.
"""

from abc import ABC, abstractmethod

import numpy as np

from patchquilt.errors import NumericalError, ValidationError, check_finite, check_potential
from patchquilt.models import BeliefState
from patchquilt.tracer import get_tracer, trace


class InferenceEngine(ABC):
    """
    Contract for MRF inference backends.

    Callers invoke the engine; inputs are validated once here and non-finite
    or negative potentials are rejected, never repaired.
    """

    def __call__(self, node_potential, edge_potential, edges):
        node_potential = np.asarray(node_potential, dtype=np.float64)
        edge_potential = np.asarray(edge_potential, dtype=np.float64)
        edges = np.asarray(edges, dtype=np.intp).reshape(-1, 2)

        check_potential(node_potential, "node potential")
        check_potential(edge_potential, "edge potential")

        n_nodes, n_states = node_potential.shape
        if edge_potential.shape != (len(edges), n_states, n_states):
            raise ValidationError(
                f"edge potential must be {len(edges)} x {n_states} x {n_states}, "
                f"got {edge_potential.shape}"
            )
        if edges.size and (edges.min() < 0 or edges.max() >= n_nodes):
            raise ValidationError("edge endpoints out of range of node potential rows")

        beliefs = self.infer(node_potential, edge_potential, edges)
        check_finite(beliefs.node_beliefs, "node beliefs")
        check_finite(beliefs.edge_beliefs, "edge beliefs")
        return beliefs

    @abstractmethod
    def infer(self, node_potential, edge_potential, edges):
        """Return a BeliefState for validated inputs."""


class LoopyBeliefPropagation(InferenceEngine):
    """
    Synchronous (Jacobi) loopy belief propagation.

    Every iteration recomputes all directed messages from the previous
    iteration's buffer and writes a new buffer. Messages are normalized to
    sum to one. Iteration stops when the largest message change drops below
    tolerance or after max_iterations; hitting the cap is reported in the
    BeliefState, not raised.
    """

    def __init__(self, max_iterations=100, tolerance=1e-4):
        if max_iterations < 0:
            raise ValidationError(f"max_iterations must be >= 0, got {max_iterations}")
        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)

    @trace(label="loopy_bp")
    def infer(self, node_potential, edge_potential, edges):
        tracer = get_tracer()

        n_nodes, n_states = node_potential.shape
        n_edges = len(edges)

        # directed message d < E runs edges[d, 0] -> edges[d, 1]; d >= E the reverse
        src = np.concatenate([edges[:, 0], edges[:, 1]])
        dst = np.concatenate([edges[:, 1], edges[:, 0]])
        reverse = np.concatenate([np.arange(n_edges) + n_edges, np.arange(n_edges)])
        psi = np.concatenate([edge_potential, edge_potential.transpose(0, 2, 1)])

        with np.errstate(divide="ignore"):
            log_phi = np.log(node_potential)

        msg = np.full((2 * n_edges, n_states), 1.0 / n_states)
        log_msg = np.log(msg)

        iterations = 0
        max_delta = 0.0 if n_edges == 0 else np.inf
        while n_edges and iterations < self.max_iterations:
            cavity = _shift_rows(self._cavity(log_phi, log_msg, src, dst, reverse, n_nodes))

            new_msg = np.einsum("dk,dkl->dl", np.exp(cavity), psi)
            total = new_msg.sum(axis=1, keepdims=True)
            if np.any(total <= 0):
                raise NumericalError(
                    f"{int((total <= 0).sum())} messages vanished; the potentials admit "
                    f"no consistent assignment"
                )
            new_msg /= total

            max_delta = float(np.abs(new_msg - msg).max())
            msg = new_msg
            with np.errstate(divide="ignore"):
                log_msg = np.log(msg)
            iterations += 1
            tracer.event(f"iteration {iterations} delta={max_delta:.3g}", level="DEBUG")

            if max_delta < self.tolerance:
                break

        converged = max_delta < self.tolerance
        if not converged:
            tracer.event(
                f"LBP stopped after {iterations} iterations without converging "
                f"(delta={max_delta:.3g}, tol={self.tolerance:.3g})",
                level="WARN",
            )
        else:
            tracer.event(f"LBP converged after {iterations} iterations")

        finite_in, zeros_in = self._incoming(log_msg, dst, n_nodes)
        log_belief = log_phi + np.where(zeros_in > 0, -np.inf, finite_in)
        if np.any(np.all(np.isneginf(log_belief), axis=1)):
            raise NumericalError("node beliefs vanish; the potentials admit no consistent assignment")
        node_beliefs = _normalize_log(log_belief)

        edge_beliefs = np.zeros((n_edges, n_states, n_states))
        if n_edges:
            cavity = _shift_rows(self._cavity(log_phi, log_msg, src, dst, reverse, n_nodes))
            p = np.exp(cavity)
            joint = p[:n_edges, :, None] * edge_potential * p[n_edges:, None, :]
            edge_beliefs = joint / joint.sum(axis=(1, 2), keepdims=True)

        log_z = bethe_log_partition(node_potential, edge_potential, edges,
                                    node_beliefs, edge_beliefs)

        return BeliefState(
            node_beliefs=node_beliefs,
            edge_beliefs=edge_beliefs,
            log_partition=log_z,
            iterations=iterations,
            max_delta=max_delta,
            converged=converged,
        )

    @staticmethod
    def _incoming(log_msg, dst, n_nodes):
        """
        Sum of incoming log messages per node, split into the finite part and
        the number of zero entries, so one message can be removed again
        without evaluating -inf - (-inf).
        """
        zero = np.isneginf(log_msg)
        finite_in = np.zeros((n_nodes, log_msg.shape[1]))
        zeros_in = np.zeros((n_nodes, log_msg.shape[1]), dtype=np.intp)
        np.add.at(finite_in, dst, np.where(zero, 0.0, log_msg))
        np.add.at(zeros_in, dst, zero)
        return finite_in, zeros_in

    def _cavity(self, log_phi, log_msg, src, dst, reverse, n_nodes):
        """Log of sender potential times all incoming messages but the recipient's."""
        finite_in, zeros_in = self._incoming(log_msg, dst, n_nodes)
        zero = np.isneginf(log_msg[reverse])
        finite = finite_in[src] - np.where(zero, 0.0, log_msg[reverse])
        zeros = zeros_in[src] - zero
        return log_phi[src] + np.where(zeros > 0, -np.inf, finite)


def _shift_rows(log_values):
    """Subtract the row maximum; rows that are all -inf stay -inf."""
    top = log_values.max(axis=1, keepdims=True)
    return log_values - np.where(np.isfinite(top), top, 0.0)


def _normalize_log(log_values):
    shifted = log_values - log_values.max(axis=1, keepdims=True)
    values = np.exp(shifted)
    return values / values.sum(axis=1, keepdims=True)


def _xlogy(x, y):
    """x * log(y) with the convention 0 * log(0) = 0."""
    out = np.zeros_like(x)
    mask = x > 0
    out[mask] = x[mask] * np.log(y[mask])
    return out


def bethe_log_partition(node_potential, edge_potential, edges, node_beliefs, edge_beliefs):
    """
    Bethe approximation of log Z from node and edge beliefs.

    Exact for trees; for an isolated node it reduces to log(sum(potential)).
    """
    degree = np.zeros(node_potential.shape[0])
    np.add.at(degree, edges.ravel(), 1)

    energy = -_xlogy(node_beliefs, node_potential).sum()
    energy -= _xlogy(edge_beliefs, edge_potential).sum()

    entropy = ((degree - 1)[:, None] * _xlogy(node_beliefs, node_beliefs)).sum()
    entropy -= _xlogy(edge_beliefs, edge_beliefs).sum()

    return float(entropy - energy)
