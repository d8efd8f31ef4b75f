"""
Node and edge potentials for the patch MRF.

Node potentials are exp(-lambda_node * cost). Edge potentials are
exp(-lambda_edge * d) where d is a pluggable distance between every pair of
candidates at two neighboring nodes. The default distance is the L2 norm of
the difference of the two patches over their geometric overlap.
"""

from dataclasses import dataclass

import numpy as np

from patchquilt.errors import NumericalError, ValidationError, check_finite, check_potential
from patchquilt.grid.overlap import patch_origins
from patchquilt.tracer import get_tracer, trace


@dataclass
class PatchSide:
    """
    One end of an edge as seen by an edge distance.

    patches is K x V, loc the grid coordinate of the node. disp (K x D) and
    ref (K) are set only when provenance was supplied.
    """
    patches: np.ndarray
    loc: np.ndarray
    disp: np.ndarray = None
    ref: np.ndarray = None


def node_potentials(costs, lambda_node):
    """exp(-lambda_node * costs) for an N x K cost matrix."""
    if lambda_node < 0:
        raise ValidationError(f"lambda_node must be >= 0, got {lambda_node}")
    costs = np.asarray(costs, dtype=np.float64)
    check_finite(costs, "node costs")

    pot = np.exp(-lambda_node * costs)
    check_potential(pot, "node potential")
    empty = ~np.any(pot > 0, axis=1)
    if np.any(empty):
        raise NumericalError(
            f"node potential underflows to zero for {int(empty.sum())} nodes; "
            f"reduce lambda_node or rescale costs"
        )
    return pot


def pairwise_l2(a, b):
    """Euclidean distance between the rows of a (K1 x R) and b (K2 x R)."""
    if a.shape[1] == 0:
        return np.zeros((a.shape[0], b.shape[0]))
    sq = (a * a).sum(axis=1)[:, None] + (b * b).sum(axis=1)[None, :] - 2.0 * a @ b.T
    return np.sqrt(np.maximum(sq, 0.0))


def l2_overlap_distance(first, second, regions, config=None):
    """
    Default edge distance: L2 over the overlap footprint of each candidate pair.

    The side of each patch taking part in the overlap follows from
    sign(second.loc - first.loc). With displacements, each candidate pair is
    compared at its own shift: the nominal shift plus the difference of the
    two candidates' displacements.
    """
    df = np.sign(np.asarray(second.loc) - np.asarray(first.loc))

    if first.disp is None or second.disp is None:
        idx1, idx2 = regions.for_direction(df)
        return pairwise_l2(first.patches[:, idx1], second.patches[:, idx2])

    nominal = regions.step * df
    rel = second.disp[None, :, :] - first.disp[:, None, :]
    shifts = np.rint(nominal + rel).astype(np.int64)

    k1, k2 = first.patches.shape[0], second.patches.shape[0]
    dst = np.zeros((k1, k2))
    overlapping = np.zeros((k1, k2), dtype=bool)
    flat = shifts.reshape(k1 * k2, -1)
    unique, inverse = np.unique(flat, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    for u, shift in enumerate(unique):
        idx1, idx2 = regions.for_shift(shift)
        pairs = np.flatnonzero(inverse == u)
        if idx1.size == 0:
            continue
        a = first.patches[pairs // k2][:, idx1]
        b = second.patches[pairs % k2][:, idx2]
        dst.flat[pairs] = np.sqrt(((a - b) ** 2).sum(axis=1))
        overlapping.flat[pairs] = True

    # pairs displaced out of contact score the mean of the pairs that touch
    if overlapping.any() and not overlapping.all():
        dst[~overlapping] = dst[overlapping].mean()
    return dst


def compute_displacements(provenance, grid_shape, patch_shape, overlap):
    """
    Per (node, candidate) displacement into the common reference frame.

    The displacement of candidate k at node n is the origin of its library
    patch in the reference grid minus the node's own patch origin, plus any
    additional displacement supplied for the node. Without a reference grid
    only the additional displacement applies. Returns N x K x D, or None when
    neither is available.
    """
    if provenance is None:
        return None

    n_dims = len(grid_shape)
    lib = provenance.library_index

    if not provenance.uses_correspondence:
        if provenance.additional_displacement is None:
            return None
        disp = np.zeros(lib.shape + (n_dims,))
        return _add_extra_displacement(disp, provenance.additional_displacement)

    ref = provenance.reference_index
    shapes = provenance.reference_shapes()

    if ref.min() < 0 or ref.max() >= len(shapes):
        raise ValidationError(
            f"reference ids must lie in [0, {len(shapes)}), got range [{ref.min()}, {ref.max()}]"
        )

    lib_loc = np.zeros(lib.shape + (n_dims,))
    for r, shape in enumerate(shapes):
        if len(shape) != n_dims:
            raise ValidationError(
                f"reference grid {r} has {len(shape)} dims, grid has {n_dims}"
            )
        mask = ref == r
        if not np.any(mask):
            continue
        size = int(np.prod(shape))
        if lib[mask].min() < 0 or lib[mask].max() >= size:
            raise ValidationError(f"library index out of range for reference grid {r} {shape}")
        lib_loc[mask] = np.stack(np.unravel_index(lib[mask], shape), axis=1)

    origins = patch_origins(grid_shape, patch_shape, overlap)
    disp = lib_loc - origins[:, None, :]

    if provenance.additional_displacement is not None:
        disp = _add_extra_displacement(disp, provenance.additional_displacement)

    check_finite(disp, "displacement")
    return disp


def _add_extra_displacement(disp, extra):
    n_nodes, _, n_dims = disp.shape
    if extra.shape != (n_nodes, n_dims):
        raise ValidationError(
            f"additional displacement must be {n_nodes} x {n_dims}, got {extra.shape}"
        )
    disp = disp + extra[:, None, :]
    check_finite(disp, "displacement")
    return disp


@trace(label="edge_potentials")
def edge_potentials(candidates, graph, regions, lambda_edge, edge_distance=None,
                    displacements=None, provenance=None, use_fast_distance=True, config=None):
    """
    Edge potentials for every edge of the grid graph.

    Args:
        candidates: CandidateTensor over all grid nodes
        graph: GridGraph over the active nodes
        regions: OverlapRegions for the patch shape and overlap
        lambda_edge: scale of the distance, >= 0
        edge_distance: callable(first, second, regions, config) -> K x K
        displacements: N x K x D array from compute_displacements, or None
        provenance: ProvenanceIndex, forwarded to the distance as ref ids
        use_fast_distance: batch the default distance by edge direction

    Returns:
        E x K x K array; entry [e, k1, k2] pairs candidate k1 of the first
        end of edge e with candidate k2 of the second
    """
    tracer = get_tracer()

    if lambda_edge < 0:
        raise ValidationError(f"lambda_edge must be >= 0, got {lambda_edge}")

    n_states = candidates.n_candidates
    pot = np.zeros((graph.n_edges, n_states, n_states))
    if graph.n_edges == 0:
        return pot

    default = edge_distance is None or edge_distance is l2_overlap_distance
    if default and displacements is None and use_fast_distance:
        dst = _batched_l2(candidates, graph, regions)
        tracer.event(f"Batched overlap distances for {graph.n_edges} edges")
    else:
        distance = edge_distance or l2_overlap_distance
        by_candidate = candidates.by_candidate()
        ends = graph.to_grid(graph.edges)
        dst = np.zeros_like(pot)
        for e, (n1, n2) in enumerate(ends):
            first = _side(by_candidate, n1, graph, e, 0, displacements, provenance)
            second = _side(by_candidate, n2, graph, e, 1, displacements, provenance)
            dst[e] = distance(first, second, regions, config)

    pot = np.exp(-lambda_edge * dst)
    check_potential(pot, "edge potential")
    return pot


def _side(by_candidate, n, graph, e, end, displacements, provenance):
    loc = graph.coords[graph.edges[e, end]]
    side = PatchSide(patches=by_candidate[n], loc=loc)
    if displacements is not None:
        side.disp = displacements[n]
    if provenance is not None:
        side.ref = provenance.reference_index[n]
    return side


def _batched_l2(candidates, graph, regions):
    """L2 overlap distances computed for all edges sharing a direction at once."""
    by_candidate = candidates.by_candidate()
    ends = graph.to_grid(graph.edges)
    dirs = graph.edge_directions()
    dst = np.zeros((graph.n_edges, candidates.n_candidates, candidates.n_candidates))

    unique, inverse = np.unique(dirs, axis=0, return_inverse=True)
    inverse = inverse.reshape(-1)
    for u, df in enumerate(unique):
        idx1, idx2 = regions.for_direction(df)
        group = np.flatnonzero(inverse == u)
        if idx1.size == 0:
            continue
        a = by_candidate[ends[group, 0]][:, :, idx1]
        b = by_candidate[ends[group, 1]][:, :, idx2]
        sq = ((a * a).sum(axis=2)[:, :, None]
              + (b * b).sum(axis=2)[:, None, :]
              - 2.0 * np.einsum("ekr,elr->ekl", a, b))
        dst[group] = np.sqrt(np.maximum(sq, 0.0))
    return dst
