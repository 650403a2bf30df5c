"""
VectorTreeIndex - approximate nearest neighbor search over a balanced cluster tree.

Vectors are inserted with their content, the tree is built once with
optimize(), then queried with a top-down beam search. The built tree can be
saved to Parquet or SQLite and loaded back in another process.
"""

from pathlib import Path
from typing import Any, Optional, Union

import numpy as np
import pyarrow as pa

from vectortree.exceptions import DataUnavailableError
from vectortree.storage import read_parquet, read_sqlite, write_parquet, write_sqlite
from vectortree.tree.base import (
    DEFAULT_LEAF_SIZE,
    DEFAULT_TOP_LAYER_SIZE,
    Embedder,
    ProgressCallback,
)
from vectortree.tree.builder import TreeBuilder
from vectortree.tree.codec import TreeCodec
from vectortree.tree.searcher import TreeSearcher
from vectortree.tree.store import VectorStore

_SQLITE_SUFFIXES = {".db", ".sqlite", ".sqlite3"}


class VectorTreeIndex:
    """
    An in-memory vector index organized as a balanced tree of clusters.

    API:
    - __init__(leaf_size=5, top_layer_size=200, seed=None, rng=None, embedder=None)
    - insert(content, vector) - Add one item (placed greedily, no rebalancing)
    - fit(vectors, payload) - Insert a batch into an empty index and optimize
    - optimize(progress_callback=None) - Rebuild the whole tree
    - get_similar_items(vector, k=None) - Top-k [{"content", "similarity"}]
    - export_to_rows() / import_from_rows(rows) - Flat parent-pointer rows
    - save(path) / load(path) - Parquet (.parquet) or SQLite (.db) files

    Queries never mutate the tree, so a built index can serve concurrent
    queries from many threads. insert/optimize/import must not run at the
    same time as queries.
    """

    def __init__(
        self,
        leaf_size: int = DEFAULT_LEAF_SIZE,
        top_layer_size: int = DEFAULT_TOP_LAYER_SIZE,
        seed: Optional[int] = None,
        rng: Optional[Any] = None,
        embedder: Optional[Embedder] = None,
    ):
        if leaf_size < 2:
            raise ValueError(f"leaf_size must be at least 2, got {leaf_size}")
        if top_layer_size < 1:
            raise ValueError(f"top_layer_size must be at least 1, got {top_layer_size}")

        self.leaf_size = leaf_size
        self.top_layer_size = top_layer_size
        self.embedder = embedder

        self._store = VectorStore()
        self._builder = TreeBuilder(
            self._store, leaf_size=leaf_size, top_layer_size=top_layer_size, seed=seed, rng=rng
        )
        self._searcher = TreeSearcher(self._store, leaf_size=leaf_size)
        self._codec = TreeCodec(self._store)

    def __len__(self) -> int:
        return len(self._store)

    @property
    def dimension(self) -> Optional[int]:
        return self._store.dimension

    @property
    def depth(self) -> int:
        """Number of layers in the tree, leaves included (0 when empty)."""
        if not self._store.tree:
            return 0
        return self._store.nodes[self._store.tree[0]].layer + 1

    @property
    def store(self) -> VectorStore:
        return self._store

    def insert(self, content: Any, vector: Any) -> "VectorTreeIndex":
        """Add one item. The tree is not rebalanced until the next optimize()."""
        self._store.insert(content, vector)
        return self

    def fit(
        self,
        vectors: np.ndarray,
        payload: list[Any],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> "VectorTreeIndex":
        """
        Insert all vectors with their payload and build the tree.

        Only works if the index is empty. Use insert() to append items.
        """
        if len(self._store):
            raise ValueError(
                "Index already contains items. "
                "Use clear() to reset the index or insert() to append items."
            )
        vectors = np.asarray(vectors, dtype=np.float32)
        if vectors.ndim != 2:
            raise ValueError(f"Vectors must be 2D array, got shape {vectors.shape}")
        if len(vectors) != len(payload):
            raise ValueError(
                f"Number of vectors ({len(vectors)}) must match "
                f"number of payload items ({len(payload)})"
            )

        try:
            for vector, content in zip(vectors, payload):
                self._store.insert(content, vector)
        except ValueError:
            self._store.reset()
            raise
        return self.optimize(progress_callback)

    def optimize(self, progress_callback: Optional[ProgressCallback] = None) -> "VectorTreeIndex":
        """Rebuild the tree so every node has between leaf_size/2 and leaf_size*2 children."""
        self._builder.optimize(progress_callback)
        return self

    def get_similar_items(self, vector: Any, k: Optional[int] = None) -> list[dict[str, Any]]:
        """Return up to k (default leaf_size) items, most similar first."""
        return self._searcher.get_similar_items(vector, k)

    def search(self, query_vector: Any, num_results: int = 10) -> list[dict[str, Any]]:
        return self._searcher.get_similar_items(query_vector, num_results)

    def insert_text(self, content: Any, text: str) -> "VectorTreeIndex":
        """Embed `text` with the configured embedder and insert it with `content`."""
        return self.insert(content, self._embed(text))

    def search_text(self, text: str, k: Optional[int] = None) -> list[dict[str, Any]]:
        """Embed `text` with the configured embedder and query the tree."""
        return self.get_similar_items(self._embed(text), k)

    def _embed(self, text: str) -> np.ndarray:
        if self.embedder is None:
            raise ValueError("No embedder configured for this index")
        try:
            return self.embedder.embed(text)
        except Exception as e:
            raise DataUnavailableError(f"Embedding failed: {e}") from e

    def export_to_rows(self) -> list[dict[str, Any]]:
        return self._codec.export_to_rows()

    def export_to_table(self) -> pa.Table:
        return self._codec.export_to_table()

    def import_from_rows(self, rows: Any) -> "VectorTreeIndex":
        """Replace the whole index with the tree described by flat rows."""
        self._codec.import_from_rows(rows)
        return self

    def save(self, path: Union[str, Path], compression: str = "gzip") -> None:
        """Save the tree to a Parquet file, or to SQLite for .db/.sqlite paths."""
        table = self._codec.export_to_table()
        params = {"leaf_size": self.leaf_size, "top_layer_size": self.top_layer_size}
        if Path(path).suffix.lower() in _SQLITE_SUFFIXES:
            write_sqlite(table, path, params)
        else:
            write_parquet(table, path, params, compression=compression)

    @classmethod
    def load(cls, path: Union[str, Path], **kwargs: Any) -> "VectorTreeIndex":
        """Load an index saved with save(). Keyword arguments override stored parameters."""
        if Path(path).suffix.lower() in _SQLITE_SUFFIXES:
            table, params = read_sqlite(path)
        else:
            table, params = read_parquet(path)
        params = {key: params[key] for key in ("leaf_size", "top_layer_size") if key in params}
        index = cls(**{**params, **kwargs})
        index.import_from_rows(table)
        return index

    def clear(self) -> "VectorTreeIndex":
        """Remove all items and the tree."""
        self._store.reset()
        return self
