"""
Grid graph construction for patchquilt.

Builds the MRF adjacency over the active nodes of a D-dimensional grid.
Connectivity counts neighbor offsets in {-1, 0, 1}^D taken in order of how
many coordinates they change: in 2-D, 4 (faces) or 8 (faces and corners);
in 3-D, 6, 18 or 26.
"""

import itertools
from math import comb

import networkx as nx
import numpy as np

from patchquilt.errors import ValidationError
from patchquilt.grid.overlap import check_shape, grid_coordinates
from patchquilt.tracer import get_tracer, trace


def valid_connectivities(n_dims):
    """Admissible connectivity values for a D-dimensional grid."""
    counts = []
    total = 0
    for r in range(1, n_dims + 1):
        total += comb(n_dims, r) * 2 ** r
        counts.append(total)
    return counts


def neighbor_offsets(n_dims, connectivity=None):
    """
    Neighbor offsets for the given connectivity.

    Returns a list of D-tuples, symmetric under negation, zero excluded.
    """
    allowed = valid_connectivities(n_dims)
    if connectivity is None:
        connectivity = allowed[-1]
    if connectivity not in allowed:
        raise ValidationError(
            f"connectivity {connectivity} is not valid for a {n_dims}-d grid, "
            f"expected one of {allowed}"
        )
    radius = allowed.index(connectivity) + 1

    offsets = []
    for off in itertools.product((-1, 0, 1), repeat=n_dims):
        changed = sum(1 for o in off if o != 0)
        if 0 < changed <= radius:
            offsets.append(off)
    return offsets


class GridGraph:
    """
    Adjacency over the active nodes of a grid.

    Active nodes are renumbered 0..n_active-1 in increasing grid id order.
    edges holds one (i, j) row per undirected edge with i < j in active ids.
    """

    def __init__(self, grid_shape, connectivity, graph, active_ids):
        self.grid_shape = tuple(grid_shape)
        self.connectivity = connectivity
        self.graph = graph
        self.active_ids = np.asarray(active_ids, dtype=np.intp)

        n_nodes = int(np.prod(self.grid_shape))
        self.grid_to_active = np.full(n_nodes, -1, dtype=np.intp)
        self.grid_to_active[self.active_ids] = np.arange(len(self.active_ids))

        self.coords = grid_coordinates(self.grid_shape)[self.active_ids]

        edges = sorted((min(u, v), max(u, v)) for u, v in graph.edges())
        self.edges = np.array(edges, dtype=np.intp).reshape(-1, 2)

    @property
    def n_nodes(self):
        return int(np.prod(self.grid_shape))

    @property
    def n_active(self):
        return len(self.active_ids)

    @property
    def n_edges(self):
        return len(self.edges)

    def degrees(self):
        """Number of neighbors of each active node."""
        deg = np.zeros(self.n_active, dtype=np.intp)
        np.add.at(deg, self.edges.ravel(), 1)
        return deg

    def edge_directions(self):
        """E x D array of sign(coord[j] - coord[i]) for each edge (i, j)."""
        return np.sign(self.coords[self.edges[:, 1]] - self.coords[self.edges[:, 0]])

    def to_grid(self, active):
        return self.active_ids[np.asarray(active, dtype=np.intp)]

    def to_active(self, grid_ids):
        """Map grid ids to active ids; excluded nodes map to -1."""
        return self.grid_to_active[np.asarray(grid_ids, dtype=np.intp)]


@trace(label="build_grid_graph")
def build_grid_graph(grid_shape, connectivity=None, excluded_nodes=()):
    """
    Build the adjacency graph over the active nodes of a grid.

    Args:
        grid_shape: D-tuple of positive ints
        connectivity: number of neighbor offsets, default 3**D - 1
        excluded_nodes: grid ids left out of the graph

    Returns:
        GridGraph whose networkx graph carries grid_id and coord node attributes
    """
    tracer = get_tracer()

    grid_shape = check_shape(grid_shape, "grid shape")
    n_dims = len(grid_shape)
    n_nodes = int(np.prod(grid_shape))
    offsets = neighbor_offsets(n_dims, connectivity)
    if connectivity is None:
        connectivity = len(offsets)

    excluded = np.unique(np.asarray(list(excluded_nodes), dtype=np.int64))
    if excluded.size and (excluded[0] < 0 or excluded[-1] >= n_nodes):
        raise ValidationError(
            f"excluded node ids must lie in [0, {n_nodes}), got {excluded.tolist()}"
        )

    active = np.ones(n_nodes, dtype=bool)
    active[excluded] = False
    active_ids = np.flatnonzero(active)
    grid_to_active = np.full(n_nodes, -1, dtype=np.intp)
    grid_to_active[active_ids] = np.arange(len(active_ids))

    coords = grid_coordinates(grid_shape)
    shape_arr = np.asarray(grid_shape)

    graph = nx.Graph()
    for a, g in enumerate(active_ids):
        graph.add_node(a, grid_id=int(g), coord=tuple(int(c) for c in coords[g]))

    # each undirected edge is visited once from its lexicographically smaller end
    forward = [off for off in offsets if off > tuple(0 for _ in off)]
    for off in forward:
        nbr = coords + np.asarray(off)
        inside = np.all((nbr >= 0) & (nbr < shape_arr), axis=1)
        src = np.flatnonzero(inside & active)
        dst = np.ravel_multi_index(tuple(nbr[src].T), grid_shape)
        keep = active[dst]
        graph.add_edges_from(zip(grid_to_active[src[keep]].tolist(),
                                 grid_to_active[dst[keep]].tolist()))

    tracer.event(f"Grid graph: active={len(active_ids)}/{n_nodes}, "
                 f"edges={graph.number_of_edges()}, connectivity={connectivity}")

    return GridGraph(grid_shape, connectivity, graph, active_ids)
