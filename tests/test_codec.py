"""
Tests for the flat parent-pointer row format.
"""

import json

import numpy as np
import pyarrow as pa
import pytest

from vectortree import CorruptIndexError, VectorTreeIndex


@pytest.fixture
def built_index(clustered_vectors):
    vectors, payload = clustered_vectors
    index = VectorTreeIndex(leaf_size=5, top_layer_size=20, seed=42)
    index.fit(vectors, payload)
    return index


def structure(index):
    """Parent/child pairs, vectors and content of every node, keyed by vector index."""
    store = index.store
    edges = set()
    vectors = {}
    content = {}
    current = list(store.tree)
    while current:
        for v in current:
            node = store.nodes[v]
            vectors[v] = store.vector(v).tolist()
            edges.update((v, c) for c in node.children)
            if node.data_index is not None:
                content[v] = store.data[node.data_index]
        current = [c for v in current for c in store.nodes[v].children]
    return edges, vectors, content, sorted(store.tree)


def probes():
    rng = np.random.default_rng(123)
    return rng.standard_normal((20, 16))


class TestExport:
    def test_one_row_per_node(self, built_index):
        rows = built_index.export_to_rows()
        edges, vectors, _, _ = structure(built_index)
        assert len(rows) == len(vectors)
        assert {row["vectorIndex"] for row in rows} == set(vectors)

    def test_row_fields(self, built_index):
        rows = built_index.export_to_rows()
        expected = {"vectorIndex", "dataIndex", "parentIndex", "layer", "data"}
        expected |= {f"v_{j}" for j in range(16)}
        for row in rows:
            assert set(row) == expected

    def test_internal_and_leaf_rows(self, built_index, clustered_vectors):
        _, payload = clustered_vectors
        rows = built_index.export_to_rows()
        top_layer = max(row["layer"] for row in rows)
        for row in rows:
            if row["layer"] == 0:
                assert row["dataIndex"] >= 0
                assert json.loads(row["data"]) == payload[row["dataIndex"]]
            else:
                assert row["dataIndex"] == -1
                assert row["data"] == ""
            if row["layer"] == top_layer:
                assert row["parentIndex"] == -1
            else:
                assert row["parentIndex"] >= 0

    def test_breadth_first_order(self, built_index):
        layers = [row["layer"] for row in built_index.export_to_rows()]
        assert layers == sorted(layers, reverse=True)

    def test_table_schema(self, built_index):
        table = built_index.export_to_table()
        for name in ["vectorIndex", "dataIndex", "parentIndex", "layer"]:
            assert table.schema.field(name).type == pa.int32()
        assert table.schema.field("data").type == pa.string()
        assert table.schema.field("v_0").type == pa.float32()
        assert table.num_rows == len(built_index.export_to_rows())

    def test_empty_index(self):
        index = VectorTreeIndex()
        assert index.export_to_rows() == []
        assert index.export_to_table().num_rows == 0


class TestRoundTrip:
    def test_rows_round_trip(self, built_index):
        restored = VectorTreeIndex(leaf_size=5, top_layer_size=20)
        restored.import_from_rows(built_index.export_to_rows())

        assert structure(restored) == structure(built_index)
        assert len(restored) == 600
        assert restored.depth == built_index.depth
        for probe in probes():
            assert restored.get_similar_items(probe, k=10) == built_index.get_similar_items(probe, k=10)

    def test_table_round_trip(self, built_index):
        restored = VectorTreeIndex(leaf_size=5, top_layer_size=20)
        restored.import_from_rows(built_index.export_to_table())

        assert structure(restored) == structure(built_index)
        for probe in probes():
            assert restored.get_similar_items(probe, k=10) == built_index.get_similar_items(probe, k=10)

    def test_shuffled_rows(self, built_index):
        rows = built_index.export_to_rows()
        rng = np.random.default_rng(0)
        shuffled = [rows[i] for i in rng.permutation(len(rows))]

        restored = VectorTreeIndex(leaf_size=5, top_layer_size=20)
        restored.import_from_rows(shuffled)
        assert structure(restored) == structure(built_index)

    def test_round_trip_after_reoptimize(self, built_index):
        built_index.optimize()
        restored = VectorTreeIndex(leaf_size=5, top_layer_size=20)
        restored.import_from_rows(built_index.export_to_rows())

        assert structure(restored) == structure(built_index)
        for probe in probes():
            assert restored.get_similar_items(probe, k=5) == built_index.get_similar_items(probe, k=5)

    def test_unoptimized_round_trip(self):
        index = VectorTreeIndex()
        for i in range(10):
            index.insert({"i": i}, [1.0, float(i)])
        restored = VectorTreeIndex().import_from_rows(index.export_to_rows())
        assert restored.get_similar_items([1.0, 3.0], k=3) == index.get_similar_items([1.0, 3.0], k=3)

    def test_insert_after_import(self, built_index):
        restored = VectorTreeIndex(leaf_size=5, top_layer_size=20)
        restored.import_from_rows(built_index.export_to_rows())

        new_id = restored.store.insert({"id": "new"}, np.ones(16))
        assert new_id == restored.store.n_vectors - 1
        assert new_id not in built_index.store.nodes
        parent = restored.store.nodes[new_id].parent
        assert new_id in restored.store.nodes[parent].children

    def test_import_replaces_state(self, built_index):
        index = VectorTreeIndex()
        index.insert("old", [1.0, 0.0])
        index.import_from_rows(built_index.export_to_rows())
        assert len(index) == 600
        assert index.dimension == 16

    def test_empty_rows(self):
        index = VectorTreeIndex()
        index.insert("old", [1.0, 0.0])
        index.import_from_rows([])
        assert len(index) == 0
        assert index.get_similar_items([1.0, 0.0]) == []


class TestCorruptRows:
    def check_rejected(self, rows):
        index = VectorTreeIndex()
        index.insert("keep", [1.0, 0.0])
        with pytest.raises(CorruptIndexError):
            index.import_from_rows(rows)
        assert len(index) == 1
        assert index.get_similar_items([1.0, 0.0], k=1)[0]["content"] == "keep"

    def test_missing_vector_columns(self, built_index):
        rows = built_index.export_to_rows()
        stripped = [{k: v for k, v in row.items() if not k.startswith("v_")} for row in rows]
        self.check_rejected(stripped)

    def test_gap_in_vector_columns(self, built_index):
        rows = built_index.export_to_rows()
        for row in rows:
            del row["v_3"]
        self.check_rejected(rows)

    def test_inconsistent_dimension(self, built_index):
        rows = built_index.export_to_rows()
        del rows[5]["v_15"]
        self.check_rejected(rows)

    def test_missing_parent(self, built_index):
        rows = built_index.export_to_rows()
        leaf = next(row for row in rows if row["layer"] == 0)
        leaf["parentIndex"] = 999999
        self.check_rejected(rows)

    def test_parent_on_wrong_layer(self, built_index):
        rows = built_index.export_to_rows()
        top = next(row for row in rows if row["parentIndex"] == -1)
        leaf = next(row for row in rows if row["layer"] == 0)
        leaf["parentIndex"] = top["vectorIndex"]
        self.check_rejected(rows)

    def test_duplicate_vector_index(self, built_index):
        rows = built_index.export_to_rows()
        rows[-1]["vectorIndex"] = rows[-2]["vectorIndex"]
        self.check_rejected(rows)

    def test_data_index_on_internal_node(self, built_index):
        rows = built_index.export_to_rows()
        rows[0]["dataIndex"] = 0
        self.check_rejected(rows)

    def test_duplicate_data_index(self, built_index):
        rows = built_index.export_to_rows()
        leaves = [row for row in rows if row["layer"] == 0]
        leaves[0]["dataIndex"] = leaves[1]["dataIndex"]
        self.check_rejected(rows)

    def test_invalid_json(self, built_index):
        rows = built_index.export_to_rows()
        next(row for row in rows if row["layer"] == 0)["data"] = "{not json"
        self.check_rejected(rows)

    def test_missing_value(self, built_index):
        rows = built_index.export_to_rows()
        rows[10]["v_2"] = None
        self.check_rejected(rows)

    def test_non_finite_vector(self, built_index):
        rows = built_index.export_to_rows()
        rows[10]["v_2"] = float("nan")
        self.check_rejected(rows)

    def test_removed_subtree(self, built_index):
        rows = built_index.export_to_rows()
        top = next(row for row in rows if row["parentIndex"] == -1)
        kept = [row for row in rows if row["parentIndex"] != top["vectorIndex"]]
        self.check_rejected(kept)

    def test_childless_internal_node(self, built_index):
        rows = built_index.export_to_rows()
        top = next(row for row in rows if row["parentIndex"] == -1)
        extra = dict(top, vectorIndex=max(row["vectorIndex"] for row in rows) + 1)
        self.check_rejected(rows + [extra])

    def test_missing_index_column(self, built_index):
        rows = built_index.export_to_rows()
        for row in rows:
            del row["layer"]
        self.check_rejected(rows)

    def test_table_with_nulls(self, built_index):
        table = built_index.export_to_table()
        column = table.column("v_0").to_pylist()
        column[0] = None
        table = table.set_column(
            table.column_names.index("v_0"), "v_0", pa.array(column, pa.float32())
        )
        self.check_rejected(table)
