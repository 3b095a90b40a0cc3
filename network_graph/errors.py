"""Exceptions raised by the network graph, store, resolver and adapter."""

from __future__ import annotations


class NetworkError(Exception):
    """Base exception for the process network core."""


class InvalidConnection(NetworkError):
    """Raised when an edge would join equal, missing or non-branch endpoints."""


class IndexOutOfRange(NetworkError, IndexError):
    """Raised when a block index does not exist in its branch."""

    def __init__(self, branch_id: str, index: int, size: int):
        self.branch_id = branch_id
        self.index = index
        self.size = size
        super().__init__(f"Block index {index} out of range for branch {branch_id!r} ({size} blocks)")


class InvalidNode(NetworkError, ValueError):
    """Raised when a node edit would break the parent/identity invariants."""


class UnknownBlockType(NetworkError, LookupError):
    """Raised by a schema registry that cannot describe a block type."""

    def __init__(self, block_type: str):
        self.block_type = block_type
        super().__init__(f"Unknown block type: {block_type!r}")


class PersistenceFailure(NetworkError):
    """Raised when the backing store rejects a durable read or write."""


class InvalidRecord(NetworkError, ValueError):
    """Raised when a persisted record cannot be decoded into a node."""


class QueryError(NetworkError, ValueError):
    """Raised for a malformed query path."""


class EvaluationError(NetworkError):
    """Raised by a dimension evaluator for an expression it cannot normalize."""


class CycleDetected(UserWarning):
    """
    Emitted (as a warning) when the parent relation contains a cycle.

    Ordering still completes: the first-seen node of the cycle is treated
    as parentless.
    """

    def __init__(self, cycle: list):
        self.cycle = list(cycle)
        super().__init__(f"Parent cycle detected: {' -> '.join(self.cycle)}")
