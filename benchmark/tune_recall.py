#!/usr/bin/env python3
"""
Tune tree parameters for recall.

Loads N vectors from a parquet file with an "emb" list column (or generates
clustered synthetic vectors when no file is given), computes brute-force
ground truth, then builds trees for several leaf_size values and measures
recall@k and query latency for several k.

Usage:
    uv run python benchmark/tune_recall.py
    uv run python benchmark/tune_recall.py --n-vectors 10000
    uv run python benchmark/tune_recall.py --dataset /tmp/train.parquet --queries /tmp/test.parquet
"""

import argparse
import logging
import sys
import tempfile
import time
from pathlib import Path

import numpy as np
import pyarrow.parquet as pq

sys.path.insert(0, str(Path(__file__).parent.parent))
from vectortree import VectorTreeIndex

N_QUERIES = 100
SEED = 42


def load_data(n_vectors, dataset=None, queries=None, dim=256):
    """Load (or synthesize) train and query vectors."""
    if dataset:
        print(f"Loading {n_vectors:,} vectors from {dataset}...")
        t0 = time.time()
        train_table = pq.read_table(dataset)
        train_embs = np.array(train_table.column("emb").to_pylist(), dtype=np.float32)[:n_vectors]
        test_table = pq.read_table(queries or dataset)
        test_embs = np.array(test_table.column("emb").to_pylist(), dtype=np.float32)[:N_QUERIES]
        print(f"  Loaded in {time.time()-t0:.1f}s (dim={train_embs.shape[1]})")
        return train_embs, test_embs

    print(f"Generating {n_vectors:,} clustered vectors (dim={dim})...")
    rng = np.random.default_rng(SEED)
    centers = rng.standard_normal((max(n_vectors // 20, 1), dim))
    labels = rng.integers(len(centers), size=n_vectors)
    train_embs = (centers[labels] + rng.normal(0, 0.5, size=(n_vectors, dim))).astype(np.float32)
    query_labels = rng.integers(len(centers), size=N_QUERIES)
    test_embs = (centers[query_labels] + rng.normal(0, 0.5, size=(N_QUERIES, dim))).astype(np.float32)
    return train_embs, test_embs


def ground_truth(train_embs, test_embs, k):
    """Brute-force top-k indices for each query (ordered by similarity)."""
    train_norms = np.linalg.norm(train_embs, axis=1, keepdims=True)
    train_normalized = train_embs / np.where(train_norms == 0, 1.0, train_norms)
    test_norms = np.linalg.norm(test_embs, axis=1, keepdims=True)
    test_normalized = test_embs / np.where(test_norms == 0, 1.0, test_norms)

    sim_matrix = test_normalized @ train_normalized.T
    result = []
    for i in range(len(test_embs)):
        top_k_idx = np.argpartition(sim_matrix[i], -k)[-k:]
        top_k_idx = top_k_idx[np.argsort(sim_matrix[i, top_k_idx])[::-1]]
        result.append([int(x) for x in top_k_idx])
    return result


def run_config(train_embs, test_embs, gt, leaf_size, ks):
    """Build one tree and measure recall/latency for each k. Returns list of dicts."""
    payload = list(range(len(train_embs)))
    index = VectorTreeIndex(leaf_size=leaf_size, seed=SEED)

    t0 = time.time()
    index.fit(train_embs, payload)
    build_time = time.time() - t0

    with tempfile.TemporaryDirectory() as tmp:
        path = Path(tmp) / "tree.parquet"
        index.save(path)
        file_mb = path.stat().st_size / (1024 * 1024)

    rows = []
    for k in ks:
        latencies = []
        recalls = []
        for i in range(len(test_embs)):
            t0 = time.time()
            results = index.get_similar_items(test_embs[i], k=k)
            latencies.append(time.time() - t0)
            result_ids = {r["content"] for r in results}
            recalls.append(len(result_ids & set(gt[i][:k])) / k)

        avg_lat = float(np.mean(latencies)) * 1000
        rows.append({
            "leaf_size": leaf_size,
            "k": k,
            "depth": index.depth,
            "recall": round(float(np.mean(recalls)), 4),
            "avg_lat_ms": round(avg_lat, 2),
            "qps": round(1000.0 / avg_lat, 1) if avg_lat > 0 else 0.0,
            "build_s": round(build_time, 1),
            "file_mb": round(file_mb, 1),
        })
    return rows


def main():
    parser = argparse.ArgumentParser(description="Tune tree recall parameters")
    parser.add_argument("--n-vectors", type=int, default=20000,
                        help="Number of vectors to index (default: 20000)")
    parser.add_argument("--dataset", type=str, default=None,
                        help="Parquet file with an 'emb' column (default: synthetic)")
    parser.add_argument("--queries", type=str, default=None,
                        help="Parquet file with query vectors (default: --dataset)")
    parser.add_argument("--verbose", action="store_true", help="Log layer construction")
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")

    train_embs, test_embs = load_data(args.n_vectors, args.dataset, args.queries)
    ks = [10, 25, 50]
    gt = ground_truth(train_embs, test_embs, max(ks))

    print(f"\n{'='*80}")
    print(f"Tuning tree parameters on {len(train_embs):,} vectors ({len(test_embs)} queries)")
    print(f"{'='*80}")
    print(f"\n{'leaf':>4} {'k':>4} {'depth':>5}  {'recall':>6}  "
          f"{'lat(ms)':>8} {'QPS':>8}  {'build':>7} {'file(MB)':>8}")
    print("-" * 64)

    for leaf_size in [3, 5, 8, 12]:
        for r in run_config(train_embs, test_embs, gt, leaf_size, ks):
            print(f"{r['leaf_size']:>4} {r['k']:>4} {r['depth']:>5}  {r['recall']:>6.4f}  "
                  f"{r['avg_lat_ms']:>8.2f} {r['qps']:>8.1f}  "
                  f"{r['build_s']:>6.1f}s {r['file_mb']:>8.1f}")


if __name__ == "__main__":
    main()
