"""
detector.py — Anomaly Detector Orchestration
=============================================

Owns the trained isolation forest and everything around it:
training, single and batch prediction, evaluation metrics, persistence
and introspection.

Serving vs. training:
    The detector holds a reference to an immutable IsolationForestModel
    snapshot. Training builds a complete new forest off to the side and
    only then replaces the reference in a single assignment, so concurrent
    predict() calls see either the old forest or the new one, never a
    partially built one. At most one training run is active at a time;
    a second request is rejected rather than queued.
"""

import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional

import joblib
import numpy as np
from sklearn.metrics import (
    accuracy_score,
    confusion_matrix,
    f1_score,
    precision_score,
    recall_score,
)

from .config import DetectorConfig
from .errors import (
    InvalidFeatureError,
    ModelNotTrainedError,
    PersistenceError,
    TrainingDataError,
    TrainingInProgressError,
)
from .features import (
    FEATURE_NAMES,
    LABEL_ANOMALY,
    VALID_LABELS,
    as_feature_vector,
    samples_to_matrix,
)
from .forest import IsolationForestModel
from .utils import atomic_dump

logger = logging.getLogger("detection.detector")


@dataclass(frozen=True)
class AnomalyPrediction:
    """Result of scoring one feature vector (score and confidence in 0-100)."""

    anomaly_score: float
    is_anomaly: bool
    confidence: float
    path_length: float

    def to_dict(self) -> dict:
        return {
            "anomaly_score": self.anomaly_score,
            "is_anomaly": self.is_anomaly,
            "confidence": self.confidence,
            "path_length": self.path_length,
        }


@dataclass(frozen=True)
class TrainingResult:
    success: bool
    training_time_ms: float = 0.0
    tree_count: int = 0
    features: tuple = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class BatchResult:
    predictions: list = field(default_factory=list)
    confusion_matrix: Optional[dict] = None


def _empty_metrics() -> dict:
    return {
        "evaluated_samples": 0,
        "accuracy": 0.0,
        "precision": 0.0,
        "recall": 0.0,
        "specificity": 0.0,
        "f1_score": 0.0,
        "confusion_matrix": {"tp": 0, "fp": 0, "tn": 0, "fn": 0},
    }


class AnomalyDetector:
    """
    Isolation-forest anomaly detector for pipeline feature vectors.

    Usage:
        detector = AnomalyDetector()
        detector.train(samples)
        prediction = detector.predict(feature_vector)
        detector.save_model("leak_forest.joblib")
    """

    def __init__(self, config: DetectorConfig = None):
        self.config = config or DetectorConfig()
        self._model: Optional[IsolationForestModel] = None
        self._train_lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        # (y_true, y_pred) of the last labeled batch evaluation
        self._evaluation = None

    # ── State ─────────────────────────────────────────────────────

    @property
    def model(self) -> Optional[IsolationForestModel]:
        """Current serving snapshot (None until trained or loaded)."""
        return self._model

    @property
    def is_trained(self) -> bool:
        return self._model is not None

    @property
    def is_training(self) -> bool:
        return self._train_lock.locked()

    def _require_model(self) -> IsolationForestModel:
        model = self._model
        if model is None:
            raise ModelNotTrainedError()
        return model

    # ── Training ──────────────────────────────────────────────────

    def train(self, samples, seed: int = None) -> TrainingResult:
        """
        Train a new forest and swap it in.

        Labels on the samples are ignored; the forest is unsupervised.

        Args:
            samples: Iterable of TrainingSample / FeatureVector / mappings.
            seed: Random seed. Defaults to the configured seed.

        Returns:
            TrainingResult. ``success`` is False (with ``error`` set) for
            empty or degenerate data, malformed vectors, or when another
            training run is in progress; the previous model stays live.
        """
        if not self._train_lock.acquire(blocking=False):
            logger.warning("Training request rejected: training already in progress")
            return TrainingResult(success=False, error=str(TrainingInProgressError()))
        try:
            return self._train_locked(samples, seed)
        finally:
            self._train_lock.release()

    def train_in_background(self, samples, seed: int = None) -> Future:
        """
        Run training on a worker thread while predictions keep using the
        current snapshot.

        Returns:
            Future resolving to a TrainingResult. A request made while
            training is active resolves immediately with a failure result.
        """
        if not self._train_lock.acquire(blocking=False):
            logger.warning("Background training rejected: training already in progress")
            rejected = Future()
            rejected.set_result(TrainingResult(success=False,
                                               error=str(TrainingInProgressError())))
            return rejected

        samples = list(samples)

        def run():
            try:
                return self._train_locked(samples, seed)
            finally:
                self._train_lock.release()

        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1,
                                                thread_name_prefix="forest-train")
        try:
            return self._executor.submit(run)
        except RuntimeError:
            self._train_lock.release()
            raise

    def _train_locked(self, samples, seed) -> TrainingResult:
        forest_cfg = self.config.forest
        seed = forest_cfg.random_seed if seed is None else seed
        start = time.perf_counter()
        try:
            samples = list(samples)
            if not samples:
                raise TrainingDataError("No training data provided")
            X = samples_to_matrix(samples, FEATURE_NAMES)
            model = IsolationForestModel.fit(
                X,
                feature_order=FEATURE_NAMES,
                n_trees=forest_cfg.n_trees,
                sample_size=forest_cfg.sample_size,
                seed=seed,
            )
        except (TrainingDataError, InvalidFeatureError) as e:
            logger.error(f"Training failed: {e}")
            return TrainingResult(success=False, error=str(e))

        elapsed_ms = round((time.perf_counter() - start) * 1000.0, 2)
        model.metadata["trainingTimeMs"] = elapsed_ms

        scores, _ = model.score_samples(X)
        flagged = int((scores * 100.0 > self.config.anomaly_cutoff).sum())
        logger.info(f"Training stats: {flagged}/{len(scores)} samples above cutoff "
                    f"({flagged / len(scores) * 100:.1f}%), "
                    f"score range [{scores.min():.3f}, {scores.max():.3f}]")

        # Single reference swap: readers see the old or the new forest
        self._model = model
        self._evaluation = None
        logger.info(f"Training complete in {elapsed_ms:.0f} ms "
                    f"({model.tree_count} trees, ψ={model.sample_size})")
        return TrainingResult(
            success=True,
            training_time_ms=elapsed_ms,
            tree_count=model.tree_count,
            features=model.feature_order,
        )

    # ── Inference ─────────────────────────────────────────────────

    def _to_prediction(self, raw_score: float, path_length: float) -> AnomalyPrediction:
        score = round(float(raw_score) * 100.0, 2)
        return AnomalyPrediction(
            anomaly_score=score,
            is_anomaly=score > self.config.anomaly_cutoff,
            confidence=round(abs(float(raw_score) - 0.5) * 2.0 * 100.0, 2),
            path_length=round(float(path_length), 4),
        )

    def predict(self, vector) -> AnomalyPrediction:
        """
        Score a single feature vector.

        Args:
            vector: FeatureVector, TrainingSample or name → value mapping.

        Raises:
            ModelNotTrainedError: No model trained or loaded.
            InvalidFeatureError: Missing feature, wrong ordering, or a
                non-finite value.
        """
        model = self._require_model()
        fv = as_feature_vector(vector, model.feature_order)
        scores, lengths = model.score_samples(fv.to_array().reshape(1, -1))
        return self._to_prediction(scores[0], lengths[0])

    def score_samples(self, samples) -> np.ndarray:
        """Raw isolation scores (0-1) for many samples, used by calibration."""
        model = self._require_model()
        scores, _ = model.score_samples(samples_to_matrix(samples, model.feature_order))
        return scores

    def predict_batch(self, samples, true_labels=None) -> BatchResult:
        """
        Score many samples at once, optionally evaluating against labels.

        Args:
            samples: Sequence of TrainingSample / FeatureVector / mappings.
            true_labels: Optional sequence of 'normal' / 'anomaly' labels
                aligned with ``samples``; None or unknown labels are not evaluated.

        Returns:
            BatchResult with one prediction dict per sample (including
            ``index`` and ``actual_label``) and a confusion matrix when
            labels were supplied.
        """
        model = self._require_model()
        samples = list(samples)
        if true_labels is not None:
            true_labels = list(true_labels)
            if len(true_labels) != len(samples):
                raise ValueError(f"Got {len(true_labels)} labels for {len(samples)} samples")

        if samples:
            scores, lengths = model.score_samples(
                samples_to_matrix(samples, model.feature_order))
        else:
            scores, lengths = np.empty(0), np.empty(0)

        predictions = []
        for idx, (raw, length) in enumerate(zip(scores, lengths)):
            pred = self._to_prediction(raw, length).to_dict()
            pred["index"] = idx
            pred["actual_label"] = true_labels[idx] if true_labels is not None else None
            predictions.append(pred)

        if true_labels is None:
            return BatchResult(predictions=predictions)

        evaluated = [p for p in predictions if p["actual_label"] in VALID_LABELS]
        y_true = np.array([p["actual_label"] == LABEL_ANOMALY for p in evaluated], dtype=int)
        y_pred = np.array([p["is_anomaly"] for p in evaluated], dtype=int)
        self._evaluation = (y_true, y_pred)

        tn, fp, fn, tp = (int(v) for v in
                          confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel()) \
            if evaluated else (0, 0, 0, 0)
        matrix = {"tp": tp, "fp": fp, "tn": tn, "fn": fn}
        logger.info(f"Batch evaluation on {len(evaluated)} labeled samples: {matrix}")
        return BatchResult(predictions=predictions, confusion_matrix=matrix)

    # ── Metrics / introspection ───────────────────────────────────

    def calculate_metrics(self) -> dict:
        """
        Accuracy, precision, recall, specificity and F1 (as percentages)
        from the last labeled batch evaluation. All zeros before one.
        """
        evaluation = self._evaluation
        if evaluation is None or len(evaluation[0]) == 0:
            return _empty_metrics()

        y_true, y_pred = evaluation
        tn, fp, fn, tp = (int(v) for v in confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel())
        specificity = tn / (tn + fp) if (tn + fp) else 0.0

        def pct(value):
            return round(float(value) * 100.0, 2)

        return {
            "evaluated_samples": int(len(y_true)),
            "accuracy": pct(accuracy_score(y_true, y_pred)),
            "precision": pct(precision_score(y_true, y_pred, zero_division=0)),
            "recall": pct(recall_score(y_true, y_pred, zero_division=0)),
            "specificity": pct(specificity),
            "f1_score": pct(f1_score(y_true, y_pred, zero_division=0)),
            "confusion_matrix": {"tp": tp, "fp": fp, "tn": tn, "fn": fn},
        }

    def log_metrics(self) -> None:
        metrics = self.calculate_metrics()
        cm = metrics["confusion_matrix"]
        logger.info("=" * 60)
        logger.info("PERFORMANCE METRICS")
        logger.info(f"  Accuracy:    {metrics['accuracy']}%")
        logger.info(f"  Precision:   {metrics['precision']}%")
        logger.info(f"  Recall:      {metrics['recall']}%")
        logger.info(f"  Specificity: {metrics['specificity']}%")
        logger.info(f"  F1 Score:    {metrics['f1_score']}%")
        logger.info(f"  TP={cm['tp']} FP={cm['fp']} TN={cm['tn']} FN={cm['fn']}")
        logger.info("=" * 60)

    def get_model_info(self) -> dict:
        """Read-only summary of the serving model."""
        model = self._model
        info = {
            "is_trained": model is not None,
            "is_training": self.is_training,
            "anomaly_cutoff": self.config.anomaly_cutoff,
        }
        if model is None:
            return info
        info.update({
            "tree_count": model.tree_count,
            "sample_size": model.sample_size,
            "features": list(model.feature_order),
            "feature_statistics": model.feature_statistics(),
            "metadata": dict(model.metadata),
            "metrics": self.calculate_metrics(),
        })
        return info

    # ── Persistence ───────────────────────────────────────────────

    def save_model(self, path: str = None) -> bool:
        """
        Serialize the full forest document to disk (joblib).

        The file is written atomically: on failure any existing file at
        ``path`` is left untouched.

        Raises:
            ModelNotTrainedError: Nothing to save.
            PersistenceError: The file could not be written.
        """
        model = self._require_model()
        path = path or self.config.model_path
        doc = model.to_document()
        doc["metadata"]["metrics"] = self.calculate_metrics()
        try:
            atomic_dump(doc, path)
        except OSError as e:
            logger.error(f"Failed to save model to {path}: {e}")
            raise PersistenceError(f"Failed to save model: {e}", {"path": path}) from e
        logger.info(f"Model saved to {path} ({os.path.getsize(path) / 1024:.1f} KB)")
        return True

    def load_model(self, path: str = None) -> bool:
        """
        Load a forest document and make it the serving model.

        The document is fully decoded and validated before the swap, so a
        failed load leaves the current model in place.

        Raises:
            PersistenceError: Missing, unreadable or malformed file.
        """
        path = path or self.config.model_path
        if not os.path.exists(path):
            raise PersistenceError(f"Model file not found: {path}", {"path": path})
        try:
            doc = joblib.load(path)
        except Exception as e:
            logger.error(f"Failed to load model from {path}: {e}")
            raise PersistenceError(f"Failed to read model: {e}", {"path": path}) from e
        if not isinstance(doc, dict):
            raise PersistenceError("Model file does not contain a forest document",
                                   {"path": path})

        model = IsolationForestModel.from_document(doc)
        self._model = model
        self._evaluation = None
        logger.info(f"Model loaded from {path} ({model.tree_count} trees, "
                    f"{len(model.feature_order)} features)")
        return True

    def reset(self) -> None:
        """Discard the trained model and evaluation state."""
        self._model = None
        self._evaluation = None
        logger.info("Detector reset")

    def shutdown(self) -> None:
        """Stop the background training worker, waiting for an active run."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
