"""
Top-down beam search over the tree.

At every internal layer only the children of the best max(leaf_size, k) nodes
are scored, so query cost grows with the number of layers rather than with the
number of items. The result is approximate: a true neighbor is missed when one
of its ancestors falls outside the beam.
"""

from typing import Any, Optional, Sequence

import numpy as np

from vectortree.tree.base import DEFAULT_LEAF_SIZE
from vectortree.tree.store import VectorStore


class TreeSearcher:
    """Read-only queries against the tree held by a VectorStore."""

    def __init__(self, store: VectorStore, leaf_size: int = DEFAULT_LEAF_SIZE):
        self._store = store
        self.leaf_size = leaf_size

    def get_similar_items(self, query_vector: Any, k: Optional[int] = None) -> list[dict[str, Any]]:
        """Return up to k items as {"content", "similarity"} dicts, most similar first."""
        if k is None:
            k = self.leaf_size
        if k < 1:
            raise ValueError(f"k must be a positive integer, got {k}")
        if not self._store.tree:
            return []
        query = self._store.normalize(query_vector)
        return self.search_layer(self._store.tree, query, k)

    def search_layer(self, layer: Sequence[int], query: np.ndarray, k: int) -> list[dict[str, Any]]:
        """Beam search from a set of nodes (by vector index) down to the leaves.

        `query` must already be normalized.
        """
        nodes = self._store.nodes
        beam_width = max(self.leaf_size, k)
        candidates = list(layer)

        while candidates:
            similarities = self._store.vectors_for(candidates) @ query
            order = np.argsort(-similarities, kind="stable")

            if nodes[candidates[0]].layer == 0:
                return [
                    {
                        "content": self._store.data[nodes[candidates[i]].data_index],
                        "similarity": float(similarities[i]),
                    }
                    for i in order[:k]
                ]

            next_candidates = []
            for i in order[:beam_width]:
                next_candidates.extend(nodes[candidates[i]].children)
            candidates = next_candidates

        return []
