"""
train.py — Offline Forest Training from Labeled CSV Data
=========================================================

Loads a labeled dataset, trains the isolation forest on the first 80 %
of it, evaluates on the remaining 20 %, and saves the model document.

Two CSV layouts are accepted:
    - Feature rows: one column per FEATURE_NAMES entry (+ optional ``label``).
    - Raw readings: ``timestamp``, ``pressure``, ``flow`` (+ optional
      ``location``, ``label``); rows are run through the streaming
      preprocessor per location and each emitted vector keeps the label
      of the reading it came from.

Labels (``normal`` / ``anomaly``) are only used for evaluation.

This script can be run standalone:
    python -m backend.detection.train data.csv --output saved/leak_forest.joblib

Or called programmatically:
    from backend.detection.train import train_from_csv
    train_from_csv("data.csv")
"""

import argparse
import logging
import sys

import pandas as pd

from . import config
from .config import EngineConfig
from .detector import AnomalyDetector
from .errors import DetectionError, TrainingDataError
from .features import FEATURE_NAMES, LABEL_ANOMALY, TrainingSample, samples_from_dataframe
from .preprocessing import FeaturePreprocessor
from .utils import setup_logging

logger = logging.getLogger("detection.train")

TRAIN_FRACTION = 0.8
RAW_COLUMNS = ("timestamp", "pressure", "flow")


def readings_to_samples(df: pd.DataFrame, preprocessor: FeaturePreprocessor = None) -> list:
    """
    Turn raw reading rows into labeled TrainingSamples.

    Rows are ordered by timestamp within each location before streaming
    them through the preprocessor; warm-up and rejected rows yield nothing.
    """
    preprocessor = preprocessor or FeaturePreprocessor()
    df = df.copy()
    if "location" not in df.columns:
        df["location"] = "default"
    df["_ts"] = pd.to_datetime(df["timestamp"], errors="coerce", utc=True)
    dropped = int(df["_ts"].isna().sum())
    if dropped:
        logger.warning(f"Dropping {dropped} rows with unparseable timestamps")
    df = df.dropna(subset=["_ts"]).sort_values(["location", "_ts"], kind="stable")

    samples = []
    for row in df.to_dict("records"):
        label = row.get("label")
        if not isinstance(label, str):
            label = None
        vector = preprocessor.process_reading({
            "location": str(row["location"]),
            "timestamp": row["_ts"].to_pydatetime(),
            "pressure": row["pressure"],
            "flow": row["flow"],
        })
        if vector is not None:
            samples.append(TrainingSample(vector, label))

    report = preprocessor.get_quality_report()
    logger.info(f"Preprocessed {report['total_processed']} readings → {len(samples)} "
                f"feature vectors (validation rate {report['validation_rate']}%)")
    return samples


def load_training_samples(path: str) -> list:
    """
    Load TrainingSamples from a CSV file in either supported layout.

    Raises:
        TrainingDataError: If the file has neither layout.
    """
    df = pd.read_csv(path)
    logger.info(f"Loaded {len(df)} rows from {path}")

    if all(name in df.columns for name in FEATURE_NAMES):
        before = len(df)
        df = df.dropna(subset=list(FEATURE_NAMES))
        if len(df) < before:
            logger.warning(f"Dropped {before - len(df)} rows with missing feature values")
        return samples_from_dataframe(df)

    if all(col in df.columns for col in RAW_COLUMNS):
        return readings_to_samples(df)

    raise TrainingDataError(
        f"{path} has neither feature columns nor raw reading columns",
        {"columns": list(df.columns)},
    )


def split_train_test(samples: list, train_fraction: float = TRAIN_FRACTION):
    """Sequential split: first ``train_fraction`` for training, the rest for testing."""
    split = int(len(samples) * train_fraction)
    return samples[:split], samples[split:]


def train_from_csv(path: str, output: str = None,
                   engine_config: EngineConfig = None) -> bool:
    """
    Complete offline pipeline: load → split → train → evaluate → save.

    Returns:
        True if a model was trained and saved, False otherwise.
    """
    engine_config = engine_config or EngineConfig.from_env()
    output = output or engine_config.detector.model_path

    logger.info("=" * 60)
    logger.info("STARTING FOREST TRAINING")
    logger.info("=" * 60)

    try:
        samples = load_training_samples(path)
    except (OSError, DetectionError, pd.errors.ParserError) as e:
        logger.error(f"Could not load training data: {e}")
        return False

    train_set, test_set = split_train_test(samples)
    n_anomaly = sum(1 for s in samples if s.label == LABEL_ANOMALY)
    logger.info(f"Samples: {len(samples)} ({n_anomaly} labeled anomaly) → "
                f"train {len(train_set)}, test {len(test_set)}")

    detector = AnomalyDetector(engine_config.detector)
    result = detector.train(train_set)
    if not result.success:
        logger.error(f"Training failed: {result.error}")
        return False

    labeled = [s for s in test_set if s.label is not None]
    if labeled:
        detector.predict_batch(labeled, [s.label for s in labeled])
        detector.log_metrics()
    else:
        logger.warning("No labeled test samples; skipping evaluation")

    try:
        detector.save_model(output)
    except DetectionError as e:
        logger.error(f"Could not save model: {e}")
        return False

    logger.info("=" * 60)
    logger.info("FOREST TRAINING COMPLETE")
    logger.info(f"  Trees:          {result.tree_count}")
    logger.info(f"  Training time:  {result.training_time_ms:.0f} ms")
    logger.info(f"  Model saved to: {output}")
    logger.info("=" * 60)
    return True


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Train the leak detection isolation forest.")
    parser.add_argument("data", help="CSV file with feature rows or raw readings")
    parser.add_argument("--output", default=None,
                        help=f"Model output path (default: {config.MODEL_PATH})")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    setup_logging(args.log_level)
    return 0 if train_from_csv(args.data, args.output) else 1


# ── CLI entry point ──────────────────────────────────────────────
if __name__ == "__main__":
    sys.exit(main())
