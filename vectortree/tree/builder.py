"""
Balanced tree construction.

Builds the tree bottom-up: each new layer is made of cluster vectors over the
layer below, iteratively split and pruned until every cluster holds between
ceil(leaf_size / 2) and 2 * leaf_size members, or until the iteration bounds
give up and the best layer seen so far is accepted.
"""

import logging
import math
from collections import Counter
from typing import Any, Optional

import numpy as np

from vectortree.tree.base import (
    DEFAULT_LEAF_SIZE,
    DEFAULT_TOP_LAYER_SIZE,
    LayerProgress,
    Node,
    ProgressCallback,
    normalize_rows,
)
from vectortree.tree.store import VectorStore

logger = logging.getLogger(__name__)

# Rows per similarity block when assigning members to clusters
_ASSIGN_BATCH = 4096


class TreeBuilder:
    """Rebuilds the whole tree of a VectorStore from its leaves."""

    def __init__(
        self,
        store: VectorStore,
        leaf_size: int = DEFAULT_LEAF_SIZE,
        top_layer_size: int = DEFAULT_TOP_LAYER_SIZE,
        seed: Optional[int] = None,
        rng: Optional[Any] = None,
    ):
        self._store = store
        self.leaf_size = leaf_size
        self.top_layer_size = top_layer_size
        # Anything with a numpy-style permutation(n) works as a random source
        self._rng = rng if rng is not None else np.random.default_rng(seed)

    def optimize(self, progress_callback: Optional[ProgressCallback] = None) -> None:
        """Discard all internal layers and rebuild them from the full leaf set."""
        layer = self._store.leaves()
        nodes = {node.vector_index: node for node in layer}

        while len(layer) > self.top_layer_size:
            layer = self.build_parent_layer(layer, progress_callback)
            for node in layer:
                nodes[node.vector_index] = node

        self._store.replace_tree(nodes, [node.vector_index for node in layer])

    def build_parent_layer(
        self,
        group: list[Node],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> list[Node]:
        """Cluster a layer of nodes and return the new parent nodes one layer up."""
        parent_layer = group[0].layer + 1
        min_children = math.ceil(self.leaf_size / 2)
        max_children = self.leaf_size * 2
        max_tries = self.leaf_size * 5

        group_vectors = self._store.vectors_for([node.vector_index for node in group])

        parent_vectors = self._chunk_vectors(group_vectors)
        if len(parent_vectors) == 0:
            parent_vectors = normalize_rows(group_vectors.mean(axis=0, keepdims=True), group_vectors[:1])
        members = self._assign(parent_vectors, group_vectors)

        best: Optional[tuple[np.ndarray, list[np.ndarray]]] = None
        best_max_size = last_max_size = len(group)
        no_progress = 0
        try_count = 0
        min_size = max_size = len(group)

        while True:
            try_count += 1

            # Split over-full clusters into fresh chunks, drop under-full ones
            new_vectors = []
            for vector, children in zip(parent_vectors, members):
                if len(children) > max_children:
                    new_vectors.append(self._chunk_vectors(group_vectors[children]))
                elif len(children) > min_children:
                    new_vectors.append(vector[None, :])
            if not new_vectors:
                largest = max(range(len(members)), key=lambda i: len(members[i]))
                new_vectors.append(parent_vectors[largest][None, :])
            parent_vectors = np.vstack(new_vectors)
            members = self._assign(parent_vectors, group_vectors)

            # Splitting may have created new under-full clusters
            parent_vectors, members = self._drop_underfull(
                parent_vectors, members, group_vectors, min_children
            )

            sizes = [len(children) for children in members]
            min_size, max_size = min(sizes), max(sizes)
            is_valid = max_size <= max_children

            if best is None or max_size < best_max_size:
                best = (parent_vectors, members)
                best_max_size = max_size

            logger.debug(
                "Layer %d try %d: %d nodes, min %d, max %d",
                parent_layer, try_count, len(sizes), min_size, max_size,
            )
            if progress_callback is not None:
                progress_callback(
                    is_valid,
                    LayerProgress(
                        layer=parent_layer,
                        length=len(parent_vectors),
                        try_count=try_count,
                        min_size=min_size,
                        max_size=max_size,
                        distribution=dict(sorted(Counter(sizes).items())),
                    ),
                )

            if is_valid:
                break

            if max_size < last_max_size:
                last_max_size = max_size
                no_progress = 0
            else:
                no_progress += 1

            if try_count >= max_tries or no_progress >= self.leaf_size:
                logger.warning(
                    "Could not balance layer %d after %d iterations (min: %d, max: %d)",
                    parent_layer, try_count, min_size, max_size,
                )
                parent_vectors, members = best
                break

        parents = []
        for vector, children in zip(parent_vectors, members):
            vector_index = self._store.allocate(vector)
            for i in children:
                group[i].parent = vector_index
            parents.append(
                Node(
                    layer=parent_layer,
                    vector_index=vector_index,
                    children=[group[i].vector_index for i in children],
                )
            )
        logger.info(
            "Built layer %d with %d nodes (%s)",
            parent_layer, len(parents), "balanced" if is_valid else "unbalanced",
        )
        return parents

    def _chunk_vectors(self, vectors: np.ndarray) -> np.ndarray:
        """Shuffle, cut into chunks of leaf_size and return each chunk's normalized mean.

        A trailing remainder shorter than leaf_size is left out.
        """
        n_chunks = len(vectors) // self.leaf_size
        dim = vectors.shape[1]
        if n_chunks == 0:
            return np.empty((0, dim), dtype=np.float32)
        order = np.asarray(self._rng.permutation(len(vectors)))[: n_chunks * self.leaf_size]
        chunks = vectors[order].reshape(n_chunks, self.leaf_size, dim)
        return normalize_rows(chunks.mean(axis=1), chunks[:, 0])

    def _assign(self, parent_vectors: np.ndarray, vectors: np.ndarray) -> list[np.ndarray]:
        """Assign each vector to its most similar parent vector.

        Returns, for each parent, the positions of its members in `vectors`
        (in ascending order).
        """
        labels = np.empty(len(vectors), dtype=np.int64)
        for start in range(0, len(vectors), _ASSIGN_BATCH):
            block = vectors[start : start + _ASSIGN_BATCH]
            labels[start : start + _ASSIGN_BATCH] = (block @ parent_vectors.T).argmax(axis=1)

        order = np.argsort(labels, kind="stable")
        bounds = np.cumsum(np.bincount(labels, minlength=len(parent_vectors)))[:-1]
        return np.split(order, bounds)

    def _drop_underfull(
        self,
        parent_vectors: np.ndarray,
        members: list[np.ndarray],
        vectors: np.ndarray,
        min_children: int,
    ) -> tuple[np.ndarray, list[np.ndarray]]:
        keep = [i for i, children in enumerate(members) if len(children) > min_children]
        if not keep:
            # Never drop the last cluster of a layer
            keep = [max(range(len(members)), key=lambda i: len(members[i]))]
        if len(keep) == len(members):
            return parent_vectors, members
        parent_vectors = parent_vectors[keep]
        return parent_vectors, self._assign(parent_vectors, vectors)
