"""
Pydantic value objects for patchquilt.

All objects are request-scoped: built by one infer or quilt call and handed
back to the caller. Array fields hold numpy arrays.
"""

from typing import List, Optional, Tuple, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ProvenanceIndex(BaseModel):
    """
    Traceability of each (node, candidate) back to a patch library.

    library_index[n, k] is the flat index of the library patch origin inside
    the reference grid reference_index[n, k]. reference_grid_shape is either
    one shape shared by all references or one shape per reference.
    """
    library_index: np.ndarray
    reference_index: Optional[np.ndarray] = None
    reference_grid_shape: Optional[Union[Tuple[int, ...], List[Tuple[int, ...]]]] = None
    additional_displacement: Optional[np.ndarray] = None

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    @field_validator("library_index", "reference_index", mode="before")
    @classmethod
    def _as_int_matrix(cls, v):
        if v is None:
            return v
        arr = np.asarray(v)
        if arr.ndim != 2:
            raise ValueError(f"expected an N x K index matrix, got shape {arr.shape}")
        return arr.astype(np.int64)

    @field_validator("additional_displacement", mode="before")
    @classmethod
    def _as_float_matrix(cls, v):
        if v is None:
            return v
        arr = np.asarray(v, dtype=np.float64)
        if arr.ndim != 2:
            raise ValueError(f"expected an N x D displacement matrix, got shape {arr.shape}")
        return arr

    @model_validator(mode="after")
    def _fill_reference(self):
        if self.reference_index is None:
            self.reference_index = np.zeros_like(self.library_index)
        elif self.reference_index.shape != self.library_index.shape:
            raise ValueError("reference_index must have the same shape as library_index")
        return self

    @property
    def uses_correspondence(self):
        """Displacements are only derived when the reference grid is known."""
        return self.reference_grid_shape is not None

    def reference_shapes(self):
        """List of reference grid shapes indexed by reference id."""
        shapes = self.reference_grid_shape
        if shapes and isinstance(shapes[0], (int, np.integer)):
            return [tuple(shapes)]
        return [tuple(s) for s in shapes]


class BeliefState(BaseModel):
    """Output of an inference engine over the active nodes."""
    node_beliefs: np.ndarray  # n_active x K, rows sum to 1
    edge_beliefs: np.ndarray  # E x K x K
    log_partition: float
    iterations: int = 0
    max_delta: float = 0.0
    converged: bool = True

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")


class Selection(BaseModel):
    """MAP candidate for every active node, with optional provenance."""
    grid_ids: np.ndarray
    candidate_index: np.ndarray
    library_index: Optional[np.ndarray] = None
    reference_index: Optional[np.ndarray] = None

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")

    @property
    def has_provenance(self):
        return self.library_index is not None

    def to_dict(self):
        data = {
            "grid_ids": self.grid_ids.tolist(),
            "candidate_index": self.candidate_index.tolist(),
        }
        if self.has_provenance:
            data["library_index"] = self.library_index.tolist()
            data["reference_index"] = self.reference_index.tolist()
        return data


class MRFResult(BaseModel):
    """Everything an infer call produces."""
    selected_patches: np.ndarray  # n_active x V
    marginals: np.ndarray  # n_active x K
    selection: Selection
    beliefs: BeliefState
    node_potential: np.ndarray
    edge_potential: np.ndarray
    edges: np.ndarray  # E x 2 in active ids

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")


class InferenceSummary(BaseModel):
    """JSON-friendly summary of an infer call."""
    grid_shape: List[int]
    n_nodes: int
    n_active: int
    n_edges: int
    n_candidates: int
    iterations: int
    max_delta: float
    converged: bool
    log_partition: float
    selection: dict = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_result(cls, result, grid_shape):
        beliefs = result.beliefs
        return cls(
            grid_shape=[int(g) for g in grid_shape],
            n_nodes=int(np.prod(grid_shape)),
            n_active=int(result.marginals.shape[0]),
            n_edges=int(result.edges.shape[0]),
            n_candidates=int(result.marginals.shape[1]),
            iterations=beliefs.iterations,
            max_delta=float(beliefs.max_delta),
            converged=beliefs.converged,
            log_partition=float(beliefs.log_partition),
            selection=result.selection.to_dict(),
        )
