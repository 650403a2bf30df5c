import numpy as np
import pytest


class OrderedRng:
    """Random source that never shuffles, so chunks follow insertion order."""

    def permutation(self, n):
        return np.arange(n)


@pytest.fixture
def ordered_rng():
    return OrderedRng()


@pytest.fixture
def three_clusters():
    """15 two-dimensional vectors: 5 near each of (1, 0), (0, 1) and (-1, 0)."""
    rng = np.random.default_rng(0)
    centers = np.array([[1.0, 0.0], [0.0, 1.0], [-1.0, 0.0]], dtype=np.float32)
    vectors = []
    payload = []
    for c, center in enumerate(centers):
        for i in range(5):
            vectors.append(center + rng.normal(0, 0.01, size=2).astype(np.float32))
            payload.append({"cluster": c, "id": c * 5 + i})
    return np.array(vectors, dtype=np.float32), payload


@pytest.fixture
def clustered_vectors():
    """600 vectors in 16 dimensions, 10 around each of 60 random unit centers."""
    rng = np.random.default_rng(42)
    centers = rng.standard_normal((60, 16))
    centers /= np.linalg.norm(centers, axis=1, keepdims=True)
    vectors = np.repeat(centers, 10, axis=0) + rng.normal(0, 0.05, size=(600, 16))
    payload = [{"id": i, "cluster": i // 10} for i in range(600)]
    return vectors.astype(np.float32), payload
