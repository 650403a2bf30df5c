"""
Flat row format for the tree.

Each node becomes one row carrying its own vector index, its parent's vector
index (-1 for the top layer), its layer, its data index (-1 for internal
nodes), its vector as v_0..v_{D-1} and, for leaves, the content as JSON.
Children lists are rebuilt from the parent pointers on import.
"""

import json
from typing import Any, Iterable, Mapping, Union

import numpy as np
import pyarrow as pa

from vectortree.exceptions import CorruptIndexError
from vectortree.tree.base import Node
from vectortree.tree.store import VectorStore

INT_COLUMNS = ("vectorIndex", "dataIndex", "parentIndex", "layer")
DATA_COLUMN = "data"
VECTOR_PREFIX = "v_"


class TreeCodec:
    """Converts the tree of a VectorStore to and from flat rows."""

    def __init__(self, store: VectorStore):
        self._store = store

    def export_to_rows(self) -> list[dict[str, Any]]:
        """Flatten the tree breadth-first into one dict per node."""
        columns, vectors = self._flatten()
        rows = []
        for i in range(len(vectors)):
            row = {name: int(columns[name][i]) for name in INT_COLUMNS}
            row[DATA_COLUMN] = columns[DATA_COLUMN][i]
            for j, value in enumerate(vectors[i].tolist()):
                row[f"{VECTOR_PREFIX}{j}"] = value
            rows.append(row)
        return rows

    def export_to_table(self) -> pa.Table:
        """Flatten the tree into a columnar table with the persisted schema."""
        columns, vectors = self._flatten()
        arrays = [pa.array(np.asarray(columns[name], dtype=np.int32), pa.int32()) for name in INT_COLUMNS]
        names = list(INT_COLUMNS)
        arrays.append(pa.array(columns[DATA_COLUMN], pa.string()))
        names.append(DATA_COLUMN)
        dimension = self._store.dimension or 0
        for j in range(dimension):
            arrays.append(pa.array(np.ascontiguousarray(vectors[:, j]), pa.float32()))
            names.append(f"{VECTOR_PREFIX}{j}")
        return pa.Table.from_arrays(arrays, names=names)

    def import_from_rows(self, rows: Union[pa.Table, Iterable[Mapping[str, Any]]]) -> None:
        """Replace the store contents with the tree described by `rows`.

        Accepts a pyarrow Table or an iterable of row mappings. Raises
        CorruptIndexError, leaving the store untouched, when the rows do not
        form a consistent tree.
        """
        if isinstance(rows, pa.Table):
            columns, n_rows = _columns_from_table(rows)
        else:
            columns, n_rows = _columns_from_rows(list(rows))

        if n_rows == 0:
            self._store.reset()
            return

        vectors, data, nodes, top_layer = _assemble(columns, n_rows)
        self._store.restore(vectors, data, nodes, top_layer)

    def _flatten(self) -> tuple[dict[str, list], np.ndarray]:
        store = self._store
        columns: dict[str, list] = {name: [] for name in INT_COLUMNS}
        columns[DATA_COLUMN] = []
        order = []

        layer = [(vector_index, -1) for vector_index in store.tree]
        while layer:
            next_layer = []
            for vector_index, parent_index in layer:
                node = store.nodes[vector_index]
                order.append(vector_index)
                columns["vectorIndex"].append(vector_index)
                columns["parentIndex"].append(parent_index)
                columns["layer"].append(node.layer)
                if node.data_index is None:
                    columns["dataIndex"].append(-1)
                    columns[DATA_COLUMN].append("")
                else:
                    columns["dataIndex"].append(node.data_index)
                    columns[DATA_COLUMN].append(json.dumps(store.data[node.data_index]))
                next_layer.extend((child, vector_index) for child in node.children)
            layer = next_layer

        vectors = store.vectors_for(order) if order else np.empty((0, store.dimension or 0), dtype=np.float32)
        return columns, vectors


def _vector_column_names(names: Iterable[str]) -> list[str]:
    """Return the v_* column names ordered by component, checking they are v_0..v_{D-1}."""
    components = {}
    for name in names:
        if not name.startswith(VECTOR_PREFIX):
            continue
        suffix = name[len(VECTOR_PREFIX):]
        if not suffix.isdigit():
            raise CorruptIndexError(f"Unexpected vector column {name!r}")
        components[int(suffix)] = name
    if not components:
        raise CorruptIndexError("Rows have no vector columns")
    if sorted(components) != list(range(len(components))):
        raise CorruptIndexError(
            f"Vector columns are not contiguous: expected v_0..v_{len(components) - 1}"
        )
    return [components[j] for j in range(len(components))]


def _columns_from_table(table: pa.Table) -> tuple[dict[str, Any], int]:
    columns: dict[str, Any] = {}
    for name in table.column_names:
        column = table.column(name)
        if name == DATA_COLUMN:
            columns[name] = column.to_pylist()
        elif name in INT_COLUMNS or name.startswith(VECTOR_PREFIX):
            if column.null_count:
                raise CorruptIndexError(f"Column {name!r} has missing values")
            try:
                columns[name] = column.to_numpy().astype(np.float64)
            except (pa.ArrowInvalid, pa.ArrowTypeError, TypeError, ValueError) as e:
                raise CorruptIndexError(f"Column {name!r} is not numeric") from e
    return columns, table.num_rows


def _columns_from_rows(rows: list[Mapping[str, Any]]) -> tuple[dict[str, Any], int]:
    names: dict[str, None] = {}
    for row in rows:
        for name in row:
            names.setdefault(name, None)

    columns: dict[str, Any] = {}
    for name in names:
        values = [row.get(name) for row in rows]
        if name == DATA_COLUMN:
            columns[name] = values
        elif name in INT_COLUMNS or name.startswith(VECTOR_PREFIX):
            if any(value is None for value in values):
                raise CorruptIndexError(f"Column {name!r} has missing values")
            try:
                columns[name] = np.asarray(values, dtype=np.float64)
            except (TypeError, ValueError) as e:
                raise CorruptIndexError(f"Column {name!r} is not numeric") from e
    return columns, len(rows)


def _assemble(
    columns: dict[str, Any], n_rows: int
) -> tuple[np.ndarray, list[Any], dict[int, Node], list[int]]:
    """Validate flat columns and build the vectors, content, node arena and top layer."""
    for name in INT_COLUMNS:
        if name not in columns:
            raise CorruptIndexError(f"Rows are missing the {name!r} column")
        values = columns[name]
        if values.ndim != 1 or not np.all(values == np.round(values)):
            raise CorruptIndexError(f"Column {name!r} must hold integers")

    vector_names = _vector_column_names(columns)
    vectors_in = np.stack([columns[name] for name in vector_names], axis=1)
    if not np.all(np.isfinite(vectors_in)):
        raise CorruptIndexError("Vector columns contain NaN or infinite values")

    vector_index = columns["vectorIndex"].astype(np.int64)
    data_index = columns["dataIndex"].astype(np.int64)
    parent_index = columns["parentIndex"].astype(np.int64)
    layer = columns["layer"].astype(np.int64)
    data_strings = columns.get(DATA_COLUMN, [None] * n_rows)

    if vector_index.min() < 0:
        raise CorruptIndexError("Negative vectorIndex")
    if len(np.unique(vector_index)) != n_rows:
        raise CorruptIndexError("Duplicate vectorIndex values")
    if layer.min() < 0:
        raise CorruptIndexError("Negative layer")

    is_leaf = layer == 0
    if np.any(data_index[~is_leaf] >= 0):
        raise CorruptIndexError("dataIndex is set on a non-leaf row")
    if np.any(data_index[is_leaf] < 0):
        raise CorruptIndexError("Leaf row without dataIndex")
    leaf_data = np.sort(data_index[is_leaf])
    if not np.array_equal(leaf_data, np.arange(len(leaf_data))):
        raise CorruptIndexError("dataIndex values must be unique and dense from 0")

    top = int(layer.max())
    layer_of = dict(zip(vector_index.tolist(), layer.tolist()))
    for vi, pi, li in zip(vector_index.tolist(), parent_index.tolist(), layer.tolist()):
        if li == top:
            if pi != -1:
                raise CorruptIndexError(f"Top-layer node {vi} has parentIndex {pi}")
        elif layer_of.get(pi) != li + 1:
            raise CorruptIndexError(f"Node {vi} references missing parent {pi}")

    vectors = np.zeros((int(vector_index.max()) + 1, len(vector_names)), dtype=np.float32)
    vectors[vector_index] = vectors_in

    data: list[Any] = [None] * len(leaf_data)
    nodes: dict[int, Node] = {}
    for row, (vi, di, pi, li) in enumerate(
        zip(vector_index.tolist(), data_index.tolist(), parent_index.tolist(), layer.tolist())
    ):
        if li == 0:
            raw = data_strings[row]
            if raw is None or raw == "":
                raise CorruptIndexError(f"Leaf {vi} has no data")
            try:
                data[di] = json.loads(raw)
            except (TypeError, ValueError) as e:
                raise CorruptIndexError(f"Leaf {vi} has invalid JSON data") from e
        nodes[vi] = Node(
            layer=li,
            vector_index=vi,
            data_index=di if li == 0 else None,
            parent=pi if pi >= 0 else None,
        )

    top_layer = []
    for vi in vector_index.tolist():
        node = nodes[vi]
        if node.parent is None:
            top_layer.append(vi)
        else:
            nodes[node.parent].children.append(vi)

    for node in nodes.values():
        if node.layer > 0 and not node.children:
            raise CorruptIndexError(f"Internal node {node.vector_index} has no children")

    return vectors, data, nodes, top_layer
