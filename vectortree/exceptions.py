"""
Exceptions raised by vectortree.
"""


class VectorTreeError(Exception):
    """Base class for all vectortree errors."""


class InvalidVectorError(VectorTreeError, ValueError):
    """A vector has zero norm, non-finite values or the wrong dimension."""


class CorruptIndexError(VectorTreeError, ValueError):
    """Persisted rows cannot be assembled into a consistent tree."""


class DataUnavailableError(VectorTreeError, RuntimeError):
    """The embedding provider failed to produce a vector."""


InvalidVector = InvalidVectorError
