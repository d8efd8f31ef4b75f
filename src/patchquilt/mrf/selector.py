"""
MAP candidate selection from node beliefs.
"""

import numpy as np

from patchquilt.errors import ValidationError
from patchquilt.models import Selection
from patchquilt.tracer import trace


@trace(label="select_candidates")
def select_candidates(node_beliefs, graph, provenance=None):
    """
    Choose argmax_k belief[node, k] for every active node.

    Ties go to the lowest candidate index. Excluded nodes are not part of the
    result. Provenance is resolved only when supplied.
    """
    node_beliefs = np.asarray(node_beliefs)
    if node_beliefs.shape[0] != graph.n_active:
        raise ValidationError(
            f"beliefs cover {node_beliefs.shape[0]} nodes, graph has {graph.n_active} active"
        )

    # np.argmax returns the first maximal index
    choice = np.argmax(node_beliefs, axis=1).astype(np.intp)
    grid_ids = graph.active_ids.copy()

    selection = Selection(grid_ids=grid_ids, candidate_index=choice)
    if provenance is not None:
        selection.library_index = provenance.library_index[grid_ids, choice]
        selection.reference_index = provenance.reference_index[grid_ids, choice]
    return selection
