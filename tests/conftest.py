"""Shared fixtures for the detection engine tests.

Synthetic data:
    steady_stream      — one location at 60 PSI / 40 L/min with small noise,
                         1 reading per second on a Wednesday at 10:00 UTC
    envelope_samples   — feature vectors spread over the wider operating
                         envelope (other setpoints, transients, other hours)
"""

from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

from backend.detection.config import DetectorConfig, EngineConfig, ForestConfig
from backend.detection.features import FEATURE_NAMES, FeatureVector, SensorReading, TrainingSample

T0 = datetime(2024, 1, 10, 10, 0, 0, tzinfo=timezone.utc)  # Wednesday

# Operating envelope (low, high) per feature; far from a pipe burst
# (pressure ≪ 45 PSI, flow ≫ 55 L/min, large rates / std-devs).
ENVELOPE_BOUNDS = {
    "pressure": (45.0, 80.0),
    "flow": (25.0, 55.0),
    "pressure_rate_of_change": (-8.0, 8.0),
    "flow_rate_of_change": (-6.0, 6.0),
    "pressure_ma_30s": (45.0, 80.0),
    "flow_ma_30s": (25.0, 55.0),
    "pressure_stddev_60s": (0.0, 6.0),
    "flow_stddev_60s": (0.0, 5.0),
    "pressure_flow_ratio": (0.8, 3.0),
}


def steady_readings(n, location="main", start=T0, seed=0,
                    pressure=60.0, flow=40.0):
    """Readings around a setpoint: pressure ± 2 PSI, flow ± 1 L/min."""
    rng = np.random.default_rng(seed)
    p = pressure + np.clip(rng.normal(0.0, 0.6, n), -2.0, 2.0)
    f = flow + np.clip(rng.normal(0.0, 0.3, n), -1.0, 1.0)
    return [
        SensorReading(location, start + timedelta(seconds=i), float(p[i]), float(f[i]))
        for i in range(n)
    ]


def envelope_vectors(n, seed=0):
    rng = np.random.default_rng(seed)
    vectors = []
    for _ in range(n):
        values = {name: rng.uniform(lo, hi) for name, (lo, hi) in ENVELOPE_BOUNDS.items()}
        values["hour_of_day"] = float(rng.integers(0, 24))
        values["is_weekend"] = float(rng.integers(0, 2))
        vectors.append(FeatureVector.from_mapping(values))
    return vectors


def gaussian_samples(n, seed=0, label="normal"):
    """Independent N(0, 1) feature vectors (hour / weekend included)."""
    rng = np.random.default_rng(seed)
    X = rng.normal(size=(n, len(FEATURE_NAMES)))
    return [TrainingSample(FeatureVector(tuple(row)), label) for row in X]


@pytest.fixture
def steady_stream():
    return steady_readings


@pytest.fixture
def envelope_samples():
    return envelope_vectors


@pytest.fixture
def normal_samples():
    return gaussian_samples(400, seed=3)


@pytest.fixture
def small_detector_config(tmp_path) -> DetectorConfig:
    """A small, seeded forest so unit tests stay fast."""
    return DetectorConfig(
        forest=ForestConfig(n_trees=40, sample_size=128, random_seed=7),
        model_path=str(tmp_path / "forest.joblib"),
    )


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    return EngineConfig(detector=DetectorConfig(model_path=str(tmp_path / "forest.joblib")))
