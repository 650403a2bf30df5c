"""
Vector storage for the tree index.

Holds the normalized vectors of every node (leaves and internal nodes) in one
contiguous float32 array addressed by vector index, the content items addressed
by data index, and the node arena forming the current tree.
"""

from typing import Any, Optional, Sequence

import numpy as np

from vectortree.exceptions import InvalidVectorError
from vectortree.tree.base import Node


class VectorStore:
    """Parallel arrays of vectors and content, plus the node arena.

    Inserts place new leaves greedily under the most similar node of each layer
    and never rebalance. After many inserts without a new optimize() pass the
    receiving leaf groups grow without bound and search quality degrades toward
    a scan of a few oversized groups.
    """

    def __init__(self):
        self._dimension: Optional[int] = None
        self._vectors: Optional[np.ndarray] = None  # (capacity, dim) float32, normalized
        self._capacity: int = 0
        self._n_vectors: int = 0

        self.data: list[Any] = []
        self.leaf_ids: list[int] = []  # data_index -> vector_index
        self.nodes: dict[int, Node] = {}
        self.tree: list[int] = []  # vector indices of the top layer

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @property
    def n_vectors(self) -> int:
        return self._n_vectors

    def __len__(self) -> int:
        return len(self.data)

    def normalize(self, vector: Any) -> np.ndarray:
        """Validate a vector against the store dimension and L2-normalize it."""
        try:
            vec = np.asarray(vector, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise InvalidVectorError(f"Vector is not numeric: {e}") from e
        if vec.ndim == 2 and 1 in vec.shape:
            vec = vec.reshape(-1)
        if vec.ndim != 1 or vec.shape[0] == 0:
            raise InvalidVectorError(f"Vector must be 1D and non-empty, got shape {vec.shape}")
        if self._dimension is not None and vec.shape[0] != self._dimension:
            raise InvalidVectorError(
                f"Vector dimension {vec.shape[0]} does not match index dimension {self._dimension}"
            )
        if not np.all(np.isfinite(vec)):
            raise InvalidVectorError("Vector contains NaN or infinite values")
        norm = np.linalg.norm(vec)
        if norm == 0:
            raise InvalidVectorError("Vector has zero norm")
        return (vec / norm).astype(np.float32)

    def insert(self, content: Any, vector: Any) -> int:
        """Append a content item and place its leaf in the current tree.

        Returns the vector index allocated to the new leaf.
        """
        normed = self.normalize(vector)
        if self._dimension is None:
            self._dimension = normed.shape[0]

        vector_index = self.allocate(normed)
        data_index = len(self.data)
        self.data.append(content)
        self.leaf_ids.append(vector_index)

        # Descend greedily, no balancing
        current = self.tree
        parent = None
        while current and self.nodes[current[0]].layer > 0:
            sims = self._vectors[current] @ normed
            parent = current[int(np.argmax(sims))]
            current = self.nodes[parent].children

        self.nodes[vector_index] = Node(
            layer=0, vector_index=vector_index, data_index=data_index, parent=parent
        )
        current.append(vector_index)
        return vector_index

    def allocate(self, normed_vector: np.ndarray) -> int:
        """Append an already normalized vector and return its new vector index."""
        self._ensure_capacity(self._n_vectors + 1)
        vector_index = self._n_vectors
        self._vectors[vector_index] = normed_vector
        self._n_vectors += 1
        return vector_index

    def vector(self, vector_index: int) -> np.ndarray:
        return self._vectors[vector_index]

    def vectors_for(self, vector_indices: Sequence[int]) -> np.ndarray:
        """Stack the vectors of the given indices into an (n, dim) array."""
        if self._vectors is None:
            return np.empty((0, 0), dtype=np.float32)
        return self._vectors[np.asarray(vector_indices, dtype=np.int64)]

    def leaves(self) -> list[Node]:
        """Fresh, parentless leaf nodes for every content item, in data order."""
        return [
            Node(layer=0, vector_index=vector_index, data_index=data_index)
            for data_index, vector_index in enumerate(self.leaf_ids)
        ]

    def replace_tree(self, nodes: dict[int, Node], top_layer: list[int]) -> None:
        """Swap in a new tree wholesale. Vectors of dropped nodes are retired, not reused."""
        self.nodes = nodes
        self.tree = top_layer

    def restore(
        self,
        vectors: np.ndarray,
        data: list[Any],
        nodes: dict[int, Node],
        top_layer: list[int],
    ) -> None:
        """Replace all state with a fully assembled tree (used by the row codec)."""
        self._vectors = np.ascontiguousarray(vectors, dtype=np.float32)
        self._capacity = len(self._vectors)
        self._n_vectors = len(self._vectors)
        self._dimension = self._vectors.shape[1] if len(self._vectors) else None
        self.data = data
        leaf_ids = [0] * len(data)
        for node in nodes.values():
            if node.data_index is not None:
                leaf_ids[node.data_index] = node.vector_index
        self.leaf_ids = leaf_ids
        self.nodes = nodes
        self.tree = top_layer

    def reset(self) -> None:
        self.__init__()

    def _ensure_capacity(self, n: int) -> None:
        if self._vectors is not None and self._capacity >= n:
            return
        new_cap = max(n, int(self._capacity * 1.5), 1024)
        new_vectors = np.zeros((new_cap, self._dimension), dtype=np.float32)
        if self._vectors is not None:
            new_vectors[: self._n_vectors] = self._vectors[: self._n_vectors]
        self._vectors = new_vectors
        self._capacity = new_cap
