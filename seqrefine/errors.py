"""
Error kinds raised by the refiner.

Only ShapeMismatch and ParameterFormatError reach callers of the public
operations. The other kinds are raised at internal seams and recovered by
the component one level up:

| Error                  | Raised by                  | Recovered by                        |
|------------------------|----------------------------|-------------------------------------|
| EmptyNeighborSet       | AttentionGatedLayer        | RefinerNetwork (node as neighbour)  |
| IndexNotFound          | SimilarityGraph.index_of   | evaluation (sample excluded)        |
| InsufficientBufferSize | ReplayBuffer.windows       | shift detection (returns 0)         |
"""

from __future__ import annotations


class RefinerError(Exception):
    """Base class for all refiner errors."""


class ShapeMismatch(RefinerError, ValueError):
    """Tensor dimensions disagree (matmul, layer norm, projections, blobs)."""

    def __init__(self, op: str, expected: object, actual: object) -> None:
        super().__init__(f"{op}: expected {expected}, got {actual}")
        self.op = op
        self.expected = expected
        self.actual = actual


class EmptyNeighborSet(RefinerError):
    """A layer was asked to aggregate over zero neighbours."""


class IndexNotFound(RefinerError, KeyError):
    """A sequence id is not a node of the similarity graph."""

    def __init__(self, node_id: str) -> None:
        super().__init__(node_id)
        self.node_id = node_id

    def __str__(self) -> str:
        return f"node {self.node_id!r} not in graph"


class InsufficientBufferSize(RefinerError):
    """The replay buffer holds fewer exemplars than a window comparison needs."""

    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"need {required} exemplars, buffer holds {available}")
        self.required = required
        self.available = available


class ParameterFormatError(RefinerError):
    """A parameter blob has a bad header or an unsupported format version."""
