"""
vectortree - approximate nearest neighbor search over a balanced cluster tree.

Vectors are grouped into clusters of about leaf_size members, clusters into
clusters of clusters, and so on until the top layer is small enough to scan.
Queries descend the tree with a beam search. The tree persists as flat
parent-pointer rows in Parquet or SQLite.
"""

from vectortree.__version__ import __version__
from vectortree.exceptions import (
    CorruptIndexError,
    DataUnavailableError,
    InvalidVector,
    InvalidVectorError,
    VectorTreeError,
)
from vectortree.index import VectorTreeIndex
from vectortree.tree import LayerProgress, Node

__all__ = [
    "VectorTreeIndex",
    "Node",
    "LayerProgress",
    "VectorTreeError",
    "InvalidVectorError",
    "InvalidVector",
    "CorruptIndexError",
    "DataUnavailableError",
    "__version__",
]
