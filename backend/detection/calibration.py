"""
calibration.py — Detection Threshold Calibration
=================================================

Sweeps candidate thresholds 0.00 … 1.00 (step 0.01) over raw forest scores
on a labeled holdout set and reports accuracy / precision / recall / F1
for each. A sample is predicted anomalous when its score is strictly above
the threshold.

Recommendation:
    - the threshold with the best precision among those keeping
      recall ≥ 0.95, when any threshold reaches that recall;
    - otherwise the threshold with the best F1.
    Ties keep the lowest threshold.

Run standalone against a saved model:
    python -m backend.detection.calibration holdout.csv --model saved/leak_forest.joblib
"""

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import numpy as np
import pandas as pd
from sklearn.metrics import accuracy_score, confusion_matrix, f1_score, precision_score, recall_score

from . import config
from .detector import AnomalyDetector
from .errors import DetectionError
from .features import LABEL_ANOMALY, VALID_LABELS, TrainingSample
from .train import load_training_samples, split_train_test
from .utils import ensure_saved_dir, setup_logging

logger = logging.getLogger("detection.calibration")

MIN_RECALL = 0.95


def default_thresholds() -> np.ndarray:
    return np.round(np.arange(101) / 100.0, 2)


@dataclass
class CalibrationReport:
    """
    Attributes:
        results: One row per threshold (threshold, tp, fp, tn, fn,
            accuracy, precision, recall, f1).
        best_by_f1: Row (as dict) with the highest F1.
        best_precision_at_recall: Row with the best precision among
            thresholds reaching ``min_recall``, or None.
        recommended: Recommended threshold on the 0-1 score scale.
    """

    results: pd.DataFrame
    best_by_f1: dict
    best_precision_at_recall: Optional[dict]
    recommended: float
    labeled_samples: int
    min_recall: float = MIN_RECALL

    def neighborhood(self, width: float = 0.05, limit: int = 10) -> pd.DataFrame:
        """Thresholds within ``width`` of the best-F1 one, best F1 first."""
        near = self.results[
            (self.results["threshold"] - self.best_by_f1["threshold"]).abs() <= width + 1e-9
        ]
        return near.sort_values("f1", ascending=False, kind="stable").head(limit)

    def to_dict(self) -> dict:
        return {
            "recommendedThreshold": self.recommended,
            "anomalyCutoff": round(self.recommended * 100.0, 2),
            "bestByF1": self.best_by_f1,
            "bestPrecisionAtRecall": self.best_precision_at_recall,
            "minRecall": self.min_recall,
            "labeledSamples": self.labeled_samples,
        }


def sweep_thresholds(scores, labels, thresholds=None,
                     min_recall: float = MIN_RECALL) -> CalibrationReport:
    """
    Evaluate every candidate threshold against labeled scores.

    Args:
        scores: Raw anomaly scores in [0, 1].
        labels: Matching 'normal' / 'anomaly' labels; other values
            (e.g. None) are excluded from the sweep.
        thresholds: Candidate thresholds. Defaults to 0.00 … 1.00.
        min_recall: Recall floor for the precision-based recommendation.

    Raises:
        ValueError: On mismatched lengths or no labeled samples.
    """
    scores = np.asarray(scores, dtype=np.float64)
    labels = list(labels)
    if len(labels) != len(scores):
        raise ValueError(f"Got {len(labels)} labels for {len(scores)} scores")

    keep = np.array([label in VALID_LABELS for label in labels], dtype=bool)
    if not keep.any():
        raise ValueError("No labeled samples to calibrate against")
    y_score = scores[keep]
    y_true = np.array([label == LABEL_ANOMALY for label, k in zip(labels, keep) if k], dtype=int)

    thresholds = default_thresholds() if thresholds is None else np.asarray(thresholds)
    rows = []
    for th in thresholds:
        y_pred = (y_score > th).astype(int)
        tn, fp, fn, tp = (int(v) for v in confusion_matrix(y_true, y_pred, labels=[0, 1]).ravel())
        rows.append({
            "threshold": float(th),
            "tp": tp, "fp": fp, "tn": tn, "fn": fn,
            "accuracy": float(accuracy_score(y_true, y_pred)),
            "precision": float(precision_score(y_true, y_pred, zero_division=0)),
            "recall": float(recall_score(y_true, y_pred, zero_division=0)),
            "f1": float(f1_score(y_true, y_pred, zero_division=0)),
        })
    results = pd.DataFrame(rows)

    best_by_f1 = None
    best_at_recall = None
    for row in rows:
        if best_by_f1 is None or row["f1"] > best_by_f1["f1"]:
            best_by_f1 = row
        if row["recall"] >= min_recall and (
                best_at_recall is None or row["precision"] > best_at_recall["precision"]):
            best_at_recall = row

    recommended = (best_at_recall or best_by_f1)["threshold"]
    return CalibrationReport(
        results=results,
        best_by_f1=dict(best_by_f1),
        best_precision_at_recall=dict(best_at_recall) if best_at_recall else None,
        recommended=recommended,
        labeled_samples=int(keep.sum()),
        min_recall=min_recall,
    )


def calibrate_detector(detector: AnomalyDetector, samples, labels=None,
                       min_recall: float = MIN_RECALL) -> CalibrationReport:
    """
    Score ``samples`` with a trained detector and sweep thresholds.

    Args:
        labels: Labels aligned with samples. Defaults to the labels carried
            by TrainingSamples.
    """
    samples = list(samples)
    if labels is None:
        labels = [s.label if isinstance(s, TrainingSample) else None for s in samples]
    report = sweep_thresholds(detector.score_samples(samples), labels, min_recall=min_recall)
    log_report(report)
    return report


def log_report(report: CalibrationReport) -> None:
    best = report.best_by_f1
    logger.info(f"Best F1: threshold={best['threshold']:.2f}, F1={best['f1'] * 100:.2f}%, "
                f"precision={best['precision'] * 100:.2f}%, recall={best['recall'] * 100:.2f}%")
    at_recall = report.best_precision_at_recall
    if at_recall:
        logger.info(f"Best precision with recall>={report.min_recall:.0%}: "
                    f"threshold={at_recall['threshold']:.2f}, "
                    f"precision={at_recall['precision'] * 100:.2f}%, "
                    f"recall={at_recall['recall'] * 100:.2f}%")
    else:
        logger.info(f"No threshold achieved recall >= {report.min_recall:.0%}")
    for row in report.neighborhood().to_dict("records"):
        logger.debug(f"  {row['threshold']:.2f} → precision={row['precision'] * 100:.2f}%, "
                     f"recall={row['recall'] * 100:.2f}%, f1={row['f1'] * 100:.2f}%, "
                     f"tp={row['tp']},fp={row['fp']},tn={row['tn']},fn={row['fn']}")
    logger.info(f"Recommended threshold: {report.recommended:.2f}")


def write_calibration(report: CalibrationReport, path: str = None,
                      model_path: str = None) -> str:
    """Write the recommendation as JSON; returns the path written."""
    path = path or config.CALIBRATION_PATH
    ensure_saved_dir(os.path.dirname(os.path.abspath(path)))
    payload = report.to_dict()
    payload["generatedAt"] = datetime.now(timezone.utc).isoformat()
    payload["modelFile"] = model_path
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
    logger.info(f"Saved recommended threshold to {path}")
    return path


def load_calibration(path: str = None) -> dict:
    path = path or config.CALIBRATION_PATH
    with open(path, encoding="utf-8") as fh:
        return json.load(fh)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Calibrate the anomaly score threshold.")
    parser.add_argument("data", help="Labeled CSV (same layouts as the training CLI)")
    parser.add_argument("--model", default=config.MODEL_PATH)
    parser.add_argument("--output", default=config.CALIBRATION_PATH)
    parser.add_argument("--min-recall", type=float, default=MIN_RECALL)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    detector = AnomalyDetector()
    try:
        detector.load_model(args.model)
        samples = load_training_samples(args.data)
    except (OSError, DetectionError, pd.errors.ParserError) as e:
        logger.error(f"Calibration aborted: {e}")
        return 1

    _, holdout = split_train_test(samples)
    logger.info(f"Holdout set: {len(holdout)} samples")
    try:
        report = calibrate_detector(detector, holdout, min_recall=args.min_recall)
    except ValueError as e:
        logger.error(f"Calibration aborted: {e}")
        return 1

    try:
        write_calibration(report, args.output, args.model)
    except OSError as e:
        logger.warning(f"Could not write calibration file: {e}")
    return 0


# ── CLI entry point ──────────────────────────────────────────────
if __name__ == "__main__":
    sys.exit(main())
