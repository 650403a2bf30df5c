"""
Tree index core: storage, balanced construction, beam search and flat rows.
"""

from vectortree.tree.base import Embedder, LayerProgress, Node
from vectortree.tree.builder import TreeBuilder
from vectortree.tree.codec import TreeCodec
from vectortree.tree.searcher import TreeSearcher
from vectortree.tree.store import VectorStore

__all__ = [
    "Node",
    "LayerProgress",
    "Embedder",
    "VectorStore",
    "TreeBuilder",
    "TreeSearcher",
    "TreeCodec",
]
