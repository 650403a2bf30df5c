"""
Shared node shape, callback types and vector helpers for the tree index.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

import numpy as np

DEFAULT_LEAF_SIZE = 5
DEFAULT_TOP_LAYER_SIZE = 200


@dataclass
class Node:
    """A tree node addressed by the index of its vector in the VectorStore.

    Leaves (layer 0) carry a data_index into the content array and no children.
    Internal nodes list the vector indices of their children, one layer below.
    """

    layer: int
    vector_index: int
    data_index: Optional[int] = None
    children: list[int] = field(default_factory=list)
    parent: Optional[int] = None

    @property
    def is_leaf(self) -> bool:
        return self.layer == 0


@dataclass
class LayerProgress:
    """Snapshot of one balancing iteration, passed to the progress callback."""

    layer: int
    length: int
    try_count: int
    min_size: int
    max_size: int
    distribution: dict[int, int]


ProgressCallback = Callable[[bool, LayerProgress], None]


class Embedder(Protocol):
    """Turns a text into a fixed-length float vector."""

    def embed(self, text: str) -> np.ndarray:
        ...


def normalize_rows(vectors: np.ndarray, fallback: Optional[np.ndarray] = None) -> np.ndarray:
    """L2-normalize each row. Zero rows are replaced by the matching fallback row."""
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    zero = norms[:, 0] == 0
    normed = vectors / np.where(norms == 0, 1.0, norms)
    if fallback is not None and zero.any():
        normed[zero] = fallback[zero]
    return normed.astype(np.float32, copy=False)
