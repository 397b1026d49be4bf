"""
forest.py — Isolation Forest Ensemble
======================================

A from-scratch isolation forest whose trees are plain arrays, so a trained
ensemble can be persisted, reloaded and scored bit-identically.

Training:
    - Each feature is standardized with the training mean / std-dev
      (a constant feature maps to 0 and never contributes a split).
    - Every tree is grown on a subsample of ψ = min(sample_size, n) rows
      drawn without replacement.
    - At each node a feature is picked uniformly among those that still
      vary inside the node, and a split value uniformly between the node's
      min and max for it. Growth stops at ≤1 point or depth ⌈log2 ψ⌉.

Scoring:
    h(x)   = edges traversed + c(s) for a leaf truncated at size s
    E[h]   = mean of h(x) over all trees
    score  = 2 ** (-E[h] / c(ψ))          (≈1 isolated, ≈0 typical)
    c(n)   = 2·H(n−1) − 2(n−1)/n, H(i) ≈ ln(i) + 0.5772156649

Trees use the flat layout of scikit-learn's ``tree_`` objects: parallel
arrays indexed by node id, with ``feature == -1`` marking a leaf.
"""

import logging
import math
from datetime import datetime, timezone

import numpy as np

from .errors import PersistenceError, TrainingDataError
from .features import FEATURE_NAMES

logger = logging.getLogger("detection.forest")

EULER_GAMMA = 0.5772156649
LEAF = -1
DOCUMENT_VERSION = 1


def average_path_length(n) -> float:
    """
    Expected path length c(n) of an unsuccessful search in a BST of n points.

    Used both to normalize the score and to credit leaves that were
    truncated before their points were isolated.
    """
    if n <= 1:
        return 0.0
    return 2.0 * (math.log(n - 1) + EULER_GAMMA) - 2.0 * (n - 1) / n


def _average_path_length_array(sizes: np.ndarray) -> np.ndarray:
    sizes = np.asarray(sizes, dtype=np.float64)
    out = np.zeros_like(sizes)
    big = sizes > 1
    n = sizes[big]
    out[big] = 2.0 * (np.log(n - 1.0) + EULER_GAMMA) - 2.0 * (n - 1.0) / n
    return out


class IsolationTree:
    """
    One randomized partition tree stored as parallel node arrays.

    Attributes:
        feature: Split feature index per node (LEAF for leaves).
        threshold: Split value per node; points with value < threshold go left.
        left / right: Child node ids (-1 for leaves).
        size: Number of training points that reached the node.
    """

    __slots__ = ("feature", "threshold", "left", "right", "size")

    def __init__(self, feature, threshold, left, right, size):
        self.feature = np.asarray(feature, dtype=np.int64)
        self.threshold = np.asarray(threshold, dtype=np.float64)
        self.left = np.asarray(left, dtype=np.int64)
        self.right = np.asarray(right, dtype=np.int64)
        self.size = np.asarray(size, dtype=np.int64)

    @classmethod
    def build(cls, X: np.ndarray, rng: np.random.Generator, depth_limit: int) -> "IsolationTree":
        """
        Grow a tree on the (already standardized) subsample ``X``.

        Args:
            X: 2-D array of shape (ψ, n_features).
            rng: Random generator; the only source of randomness.
            depth_limit: Maximum depth, ⌈log2 ψ⌉.
        """
        feature, threshold, left, right, size = [], [], [], [], []

        def grow(rows: np.ndarray, depth: int) -> int:
            node = len(feature)
            feature.append(LEAF)
            threshold.append(0.0)
            left.append(-1)
            right.append(-1)
            size.append(len(rows))

            if len(rows) <= 1 or depth >= depth_limit:
                return node

            data = X[rows]
            lo = data.min(axis=0)
            hi = data.max(axis=0)
            varying = np.flatnonzero(hi > lo)
            if varying.size == 0:
                return node

            f = int(varying[rng.integers(varying.size)])
            split = float(rng.uniform(lo[f], hi[f]))
            goes_left = data[:, f] < split
            n_left = int(goes_left.sum())
            if n_left == 0 or n_left == len(rows):
                return node

            feature[node] = f
            threshold[node] = split
            left[node] = grow(rows[goes_left], depth + 1)
            right[node] = grow(rows[~goes_left], depth + 1)
            return node

        grow(np.arange(X.shape[0]), 0)
        return cls(feature, threshold, left, right, size)

    @property
    def node_count(self) -> int:
        return int(self.feature.size)

    def path_lengths(self, X: np.ndarray) -> np.ndarray:
        """h(x) for every row of the standardized matrix ``X``."""
        n = X.shape[0]
        node = np.zeros(n, dtype=np.int64)
        depth = np.zeros(n, dtype=np.float64)
        active = self.feature[node] != LEAF
        while active.any():
            rows = np.flatnonzero(active)
            current = node[rows]
            goes_left = X[rows, self.feature[current]] < self.threshold[current]
            node[rows] = np.where(goes_left, self.left[current], self.right[current])
            depth[rows] += 1.0
            active = self.feature[node] != LEAF
        return depth + _average_path_length_array(self.size[node])

    def to_dict(self) -> dict:
        return {
            "feature": self.feature.tolist(),
            "threshold": self.threshold.tolist(),
            "left": self.left.tolist(),
            "right": self.right.tolist(),
            "size": self.size.tolist(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "IsolationTree":
        tree = cls(data["feature"], data["threshold"], data["left"],
                   data["right"], data["size"])
        n = tree.feature.size
        if n == 0:
            raise ValueError("tree has no nodes")
        if not all(arr.shape == (n,) for arr in (tree.threshold, tree.left,
                                                 tree.right, tree.size)):
            raise ValueError("tree arrays have mismatched lengths")
        if (tree.size < 1).any():
            raise ValueError("tree node with size < 1")

        leaf = tree.feature == LEAF
        if (tree.left[leaf] != -1).any() or (tree.right[leaf] != -1).any():
            raise ValueError("leaf node with children")

        # Pre-order layout: children always come after their parent, which
        # also rules out cycles.
        ids = np.flatnonzero(~leaf)
        for child in (tree.left[ids], tree.right[ids]):
            if ((child <= ids) | (child >= n)).any():
                raise ValueError("child index out of range")
        if not np.isfinite(tree.threshold[ids]).all():
            raise ValueError("non-finite split threshold")
        return tree

    def __eq__(self, other) -> bool:
        if not isinstance(other, IsolationTree):
            return NotImplemented
        return all(np.array_equal(getattr(self, a), getattr(other, a))
                   for a in self.__slots__)

    __hash__ = None


class IsolationForestModel:
    """
    Trained, read-only isolation forest snapshot.

    Instances are only ever created fully built (by ``fit`` or
    ``from_document``) and are never mutated afterwards, so a reference
    to one can be shared freely between concurrent readers.

    Attributes:
        trees: Tuple of IsolationTree.
        feature_order: Feature names the tree indices refer to.
        means / stds: Training statistics used for standardization.
        sample_size: Effective subsample size ψ.
        metadata: Free-form training metadata.
        is_trained: Always True for a constructed snapshot.
    """

    def __init__(self, trees, feature_order, means, stds, sample_size: int,
                 metadata: dict = None):
        self.trees = tuple(trees)
        self.feature_order = tuple(feature_order)
        self.means = np.asarray(means, dtype=np.float64)
        self.stds = np.asarray(stds, dtype=np.float64)
        self.sample_size = int(sample_size)
        self.metadata = dict(metadata or {})
        self.is_trained = True
        self._norm = average_path_length(self.sample_size)

    # ── Training ──────────────────────────────────────────────────

    @classmethod
    def fit(cls, X, feature_order=FEATURE_NAMES, n_trees: int = 100,
            sample_size: int = 256, seed: int = None) -> "IsolationForestModel":
        """
        Build a forest from a training matrix.

        Args:
            X: 2-D array of shape (n_samples, n_features), raw (unscaled).
            feature_order: Names of the columns of ``X``.
            n_trees: Number of trees T.
            sample_size: Subsample size ψ (capped at n_samples).
            seed: Random seed. The same seed on the same data yields
                bit-identical trees. A fresh seed is drawn when None.

        Raises:
            TrainingDataError: Empty data, wrong width, non-finite values,
                or every feature constant.
        """
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2 or X.shape[0] == 0:
            raise TrainingDataError("No training data provided")
        if X.shape[1] != len(feature_order):
            raise TrainingDataError(
                f"Training data has {X.shape[1]} columns, expected {len(feature_order)}"
            )
        if not np.isfinite(X).all():
            raise TrainingDataError("Training data contains NaN or infinite values")
        if n_trees < 1:
            raise TrainingDataError(f"n_trees must be >= 1, got {n_trees}")

        means = X.mean(axis=0)
        stds = X.std(axis=0)
        if not (stds > 0).any():
            raise TrainingDataError("All training features are constant",
                                    {"samples": int(X.shape[0])})

        if seed is None:
            seed = int(np.random.SeedSequence().entropy % (2 ** 32))
        rng = np.random.default_rng(seed)

        n = X.shape[0]
        psi = min(int(sample_size), n)
        depth_limit = int(math.ceil(math.log2(psi)))

        logger.info(f"Building {n_trees} isolation trees on {n} samples, "
                    f"{X.shape[1]} features (ψ={psi}, depth limit {depth_limit}, seed={seed})")
        for name, mu, sigma in zip(feature_order, means, stds):
            logger.debug(f"  {name}: μ={mu:.4f}, σ={sigma:.4f}")

        Z = cls._standardize(X, means, stds)
        trees = []
        step = max(1, n_trees // 10)
        for i in range(n_trees):
            rows = rng.choice(n, size=psi, replace=False)
            trees.append(IsolationTree.build(Z[rows], rng, depth_limit))
            if (i + 1) % step == 0:
                logger.debug(f"  Trees built: {i + 1}/{n_trees}")

        metadata = {
            "seed": int(seed),
            "nTrees": int(n_trees),
            "trainingSamples": int(n),
            "constantFeatures": [f for f, s in zip(feature_order, stds) if s == 0],
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        return cls(trees, feature_order, means, stds, psi, metadata)

    # ── Scoring ───────────────────────────────────────────────────

    @staticmethod
    def _standardize(X: np.ndarray, means: np.ndarray, stds: np.ndarray) -> np.ndarray:
        varying = stds > 0
        safe = np.where(varying, stds, 1.0)
        Z = (X - means) / safe
        Z[:, ~varying] = 0.0
        return Z

    def standardize(self, X) -> np.ndarray:
        """Apply the training-time z-score transform to raw rows."""
        X = np.atleast_2d(np.asarray(X, dtype=np.float64))
        return self._standardize(X, self.means, self.stds)

    def path_lengths(self, X) -> np.ndarray:
        """Average path length E[h(x)] across trees for each raw row."""
        Z = self.standardize(X)
        total = np.zeros(Z.shape[0], dtype=np.float64)
        for tree in self.trees:
            total += tree.path_lengths(Z)
        return total / len(self.trees)

    def score_samples(self, X) -> np.ndarray:
        """
        Raw isolation scores in [0, 1] for each raw row.

        Returns:
            ``(scores, path_lengths)`` — both 1-D arrays.
        """
        lengths = self.path_lengths(X)
        if self._norm <= 0:
            return np.full_like(lengths, 0.5), lengths
        scores = np.power(2.0, -lengths / self._norm)
        return np.clip(scores, 0.0, 1.0), lengths

    @property
    def tree_count(self) -> int:
        return len(self.trees)

    def feature_statistics(self) -> dict:
        """Per-feature training mean and std-dev."""
        return {name: {"mean": float(mu), "std": float(sigma)}
                for name, mu, sigma in zip(self.feature_order, self.means, self.stds)}

    # ── Serialization ─────────────────────────────────────────────

    def to_document(self) -> dict:
        """Plain-Python document describing the full forest."""
        return {
            "version": DOCUMENT_VERSION,
            "treeCount": self.tree_count,
            "trees": [tree.to_dict() for tree in self.trees],
            "featureOrder": list(self.feature_order),
            "featureMeans": {n: float(v) for n, v in zip(self.feature_order, self.means)},
            "featureStdDevs": {n: float(v) for n, v in zip(self.feature_order, self.stds)},
            "isTrained": True,
            "sampleSize": self.sample_size,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_document(cls, doc: dict) -> "IsolationForestModel":
        """
        Rebuild a forest from ``to_document`` output.

        Raises:
            PersistenceError: If the document is incomplete or inconsistent.
        """
        try:
            if not doc.get("isTrained"):
                raise ValueError("document describes an untrained model")
            order = tuple(doc["featureOrder"])
            means = [doc["featureMeans"][name] for name in order]
            stds = [doc["featureStdDevs"][name] for name in order]
            if not np.isfinite(np.asarray(means, dtype=np.float64)).all():
                raise ValueError("non-finite feature mean")
            std_arr = np.asarray(stds, dtype=np.float64)
            if not (np.isfinite(std_arr).all() and (std_arr >= 0).all()):
                raise ValueError("feature std-devs must be finite and >= 0")
            trees = [IsolationTree.from_dict(t) for t in doc["trees"]]
            if len(trees) != int(doc["treeCount"]) or not trees:
                raise ValueError(f"treeCount {doc['treeCount']} does not match "
                                 f"{len(trees)} stored trees")
            for tree in trees:
                internal = tree.feature[tree.feature != LEAF]
                if internal.size and (internal.min() < 0 or internal.max() >= len(order)):
                    raise ValueError("tree feature index outside feature order")
            return cls(trees, order, means, stds, int(doc["sampleSize"]),
                       doc.get("metadata"))
        except (KeyError, TypeError, ValueError) as e:
            raise PersistenceError(f"Malformed model document: {e}") from e
