"""
Persistence of flat tree rows.

Two backends share the same table shape: a Parquet file (one column per field,
vectors spread over v_0..v_{D-1}) and a SQLite database (one row per node,
vector stored as a float32 blob). Index parameters travel alongside the rows,
as Parquet schema metadata or in a SQLite metadata table.
"""

import json
import logging
import pickle
import sqlite3
from pathlib import Path
from typing import Any, Union

import numpy as np
import pyarrow as pa
import pyarrow.parquet as pq

from vectortree.exceptions import CorruptIndexError
from vectortree.tree.codec import DATA_COLUMN, INT_COLUMNS, VECTOR_PREFIX

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

_PARAMS_KEY = b"vectortree"


def write_parquet(
    table: pa.Table,
    path: PathLike,
    params: dict[str, Any],
    compression: str = "gzip",
) -> None:
    """Write tree rows to a Parquet file."""
    metadata = dict(table.schema.metadata or {})
    metadata[_PARAMS_KEY] = json.dumps(params).encode("utf-8")
    table = table.replace_schema_metadata(metadata)
    pq.write_table(table, str(path), compression=compression)
    logger.info("Wrote %d rows to %s", table.num_rows, path)


def read_parquet(path: PathLike) -> tuple[pa.Table, dict[str, Any]]:
    """Read tree rows and index parameters from a Parquet file."""
    try:
        table = pq.read_table(str(path))
    except pa.ArrowInvalid as e:
        raise CorruptIndexError(f"Cannot read {path}: {e}") from e

    params: dict[str, Any] = {}
    metadata = table.schema.metadata or {}
    if _PARAMS_KEY in metadata:
        params = json.loads(metadata[_PARAMS_KEY].decode("utf-8"))
    logger.info("Read %d rows from %s", table.num_rows, path)
    return table, params


def _connect(db_path: PathLike) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn


def _init_tables(cursor: sqlite3.Cursor) -> None:
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS tree_nodes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            vector_index INTEGER NOT NULL,
            data_index INTEGER NOT NULL,
            parent_index INTEGER NOT NULL,
            layer INTEGER NOT NULL,
            data TEXT NOT NULL,
            vector BLOB NOT NULL
        )
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS metadata (
            key TEXT PRIMARY KEY,
            value BLOB
        )
    """)


def write_sqlite(table: pa.Table, db_path: PathLike, params: dict[str, Any]) -> None:
    """Replace the tree rows stored in a SQLite database."""
    vector_names = [name for name in table.column_names if name.startswith(VECTOR_PREFIX)]
    vector_names.sort(key=lambda name: int(name[len(VECTOR_PREFIX):]))
    if vector_names:
        vectors = np.stack(
            [table.column(name).to_numpy() for name in vector_names], axis=1
        ).astype(np.float32)
    else:
        vectors = np.empty((table.num_rows, 0), dtype=np.float32)

    int_columns = {name: table.column(name).to_pylist() for name in INT_COLUMNS}
    data = table.column(DATA_COLUMN).to_pylist()

    conn = _connect(db_path)
    try:
        cursor = conn.cursor()
        _init_tables(cursor)
        cursor.execute("DELETE FROM tree_nodes")
        cursor.execute("DELETE FROM metadata")
        cursor.executemany(
            "INSERT INTO tree_nodes "
            "(vector_index, data_index, parent_index, layer, data, vector) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            [
                (
                    int_columns["vectorIndex"][i],
                    int_columns["dataIndex"][i],
                    int_columns["parentIndex"][i],
                    int_columns["layer"][i],
                    data[i],
                    vectors[i].tobytes(),
                )
                for i in range(table.num_rows)
            ],
        )
        params = {**params, "dimension": vectors.shape[1]}
        cursor.executemany(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
            [(key, pickle.dumps(value)) for key, value in params.items()],
        )
        conn.commit()
    finally:
        conn.close()
    logger.info("Wrote %d rows to %s", table.num_rows, db_path)


def read_sqlite(db_path: PathLike) -> tuple[pa.Table, dict[str, Any]]:
    """Read tree rows and index parameters from a SQLite database."""
    if not Path(db_path).is_file():
        raise FileNotFoundError(f"No such index file: {db_path}")

    try:
        conn = _connect(db_path)
    except sqlite3.DatabaseError as e:
        raise CorruptIndexError(f"Cannot read {db_path}: {e}") from e
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT key, value FROM metadata")
        params = {row["key"]: pickle.loads(row["value"]) for row in cursor.fetchall()}
        cursor.execute(
            "SELECT vector_index, data_index, parent_index, layer, data, vector "
            "FROM tree_nodes ORDER BY id"
        )
        rows = cursor.fetchall()
    except sqlite3.DatabaseError as e:
        raise CorruptIndexError(f"Cannot read {db_path}: {e}") from e
    finally:
        conn.close()

    dimension = params.pop("dimension", None)
    if rows and dimension is None:
        dimension = len(rows[0]["vector"]) // 4

    vectors = np.empty((len(rows), dimension or 0), dtype=np.float32)
    for i, row in enumerate(rows):
        vector = np.frombuffer(row["vector"], dtype=np.float32)
        if vector.shape[0] != dimension:
            raise CorruptIndexError(
                f"Row {i} has a vector of dimension {vector.shape[0]}, expected {dimension}"
            )
        vectors[i] = vector

    arrays = [
        pa.array([row[column] for row in rows], pa.int32())
        for column in ("vector_index", "data_index", "parent_index", "layer")
    ]
    names = list(INT_COLUMNS)
    arrays.append(pa.array([row["data"] for row in rows], pa.string()))
    names.append(DATA_COLUMN)
    for j in range(vectors.shape[1]):
        arrays.append(pa.array(np.ascontiguousarray(vectors[:, j]), pa.float32()))
        names.append(f"{VECTOR_PREFIX}{j}")

    logger.info("Read %d rows from %s", len(rows), db_path)
    return pa.Table.from_arrays(arrays, names=names), params
