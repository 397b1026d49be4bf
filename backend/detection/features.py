"""
features.py — Readings, Feature Vectors and Training Samples
=============================================================

Data types that flow through the detection engine:

    SensorReading   — one raw tick from a monitored location
    FeatureVector   — fixed, order-checked vector of engineered features
    TrainingSample  — FeatureVector + optional ground-truth label

Feature vector layout (FEATURE_NAMES, in order):
    pressure                 — Current pressure (PSI)
    flow                     — Current flow (L/min)
    pressure_rate_of_change  — ΔP / Δt against the previous reading (PSI/s)
    flow_rate_of_change      — ΔF / Δt against the previous reading (L/min/s)
    pressure_ma_30s          — 30 s moving average of pressure
    flow_ma_30s              — 30 s moving average of flow
    pressure_stddev_60s      — 60 s population std-dev of pressure
    flow_stddev_60s          — 60 s population std-dev of flow
    pressure_flow_ratio      — pressure / max(flow, ε)
    hour_of_day              — Hour (0–23) of the reading
    is_weekend               — 1.0 on Saturday / Sunday, else 0.0

The schema is checked when a vector is built, so a misspelled key fails
loudly at construction instead of silently skewing the model.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional

import numpy as np
import pandas as pd

from .errors import InvalidFeatureError, InvalidReadingError

FEATURE_NAMES = (
    "pressure",
    "flow",
    "pressure_rate_of_change",
    "flow_rate_of_change",
    "pressure_ma_30s",
    "flow_ma_30s",
    "pressure_stddev_60s",
    "flow_stddev_60s",
    "pressure_flow_ratio",
    "hour_of_day",
    "is_weekend",
)

LABEL_NORMAL = "normal"
LABEL_ANOMALY = "anomaly"
VALID_LABELS = (LABEL_NORMAL, LABEL_ANOMALY)


def parse_timestamp(value) -> datetime:
    """
    Coerce a timestamp into a datetime.

    Accepts datetime objects, ISO-8601 strings (a trailing ``Z`` is
    understood as UTC) and numeric epoch seconds.

    Raises:
        InvalidReadingError: If the value cannot be interpreted.
    """
    if isinstance(value, datetime):
        return value
    if isinstance(value, bool):
        raise InvalidReadingError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise InvalidReadingError(f"Invalid timestamp: {value!r}")
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise InvalidReadingError(f"Invalid timestamp: {value!r}") from e
    raise InvalidReadingError(f"Invalid timestamp type: {type(value).__name__}")


@dataclass(frozen=True)
class SensorReading:
    """
    One raw sensor tick from a monitored location.

    Immutable once produced. ``pressure`` and ``flow`` drive the engine;
    temperature, conductivity and valve_state are carried through for
    downstream consumers.
    """

    location: str
    timestamp: datetime
    pressure: float
    flow: float
    temperature: Optional[float] = None
    conductivity: Optional[float] = None
    valve_state: Optional[str] = None

    @property
    def epoch_seconds(self) -> float:
        """Timestamp as POSIX seconds (naive datetimes are taken as UTC)."""
        ts = self.timestamp
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return ts.timestamp()

    @classmethod
    def from_dict(cls, data: Mapping, default_location: str = "default") -> "SensorReading":
        """
        Build a reading from a telemetry dict.

        Args:
            data: Dict with ``pressure``, ``flow``, ``timestamp`` and
                optionally ``location``, ``temperature``, ``conductivity``,
                ``valve_state``.
            default_location: Location used when the dict carries none.

        Raises:
            InvalidReadingError: On a missing or non-numeric pressure / flow
                or an unparseable timestamp.
        """
        values = {}
        for key in ("pressure", "flow"):
            raw = data.get(key)
            if raw is None or isinstance(raw, bool):
                raise InvalidReadingError(f"Missing {key} value", {"field": key})
            try:
                values[key] = float(raw)
            except (TypeError, ValueError) as e:
                raise InvalidReadingError(f"{key} is not a number: {raw!r}",
                                          {"field": key}) from e

        optional = {}
        for key in ("temperature", "conductivity"):
            raw = data.get(key)
            if raw is not None:
                try:
                    optional[key] = float(raw)
                except (TypeError, ValueError) as e:
                    raise InvalidReadingError(f"{key} is not a number: {raw!r}",
                                              {"field": key}) from e

        ts = data.get("timestamp")
        return cls(
            location=str(data.get("location") or default_location),
            timestamp=parse_timestamp(ts) if ts is not None
            else datetime.now(timezone.utc),
            pressure=values["pressure"],
            flow=values["flow"],
            valve_state=data.get("valve_state"),
            **optional,
        )


def _coerce_feature(name: str, value) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise InvalidFeatureError(f"Feature '{name}' is not numeric: {value!r}",
                                  {"feature": name}) from e
    if not math.isfinite(number):
        raise InvalidFeatureError(f"Feature '{name}' is not finite: {number}",
                                  {"feature": name})
    return number


@dataclass(frozen=True, eq=False)
class FeatureVector:
    """
    Fixed-size, order-checked feature vector.

    Attributes:
        values: Feature values, aligned with ``names``.
        names: Feature ordering (defaults to FEATURE_NAMES).
        location: Location the vector was derived for, if any.
        timestamp: Timestamp of the reading it was derived from.
        stale: Names of rate features that reused the previous value
            because two readings shared a timestamp.
        pressure_spike: Pressure z-score exceeded the spike threshold.
        flow_spike: Flow z-score exceeded the spike threshold.
    """

    values: tuple
    names: tuple = FEATURE_NAMES
    location: Optional[str] = None
    timestamp: Optional[datetime] = None
    stale: tuple = field(default=())
    pressure_spike: bool = False
    flow_spike: bool = False

    def __post_init__(self):
        if len(self.values) != len(self.names):
            raise InvalidFeatureError(
                f"Expected {len(self.names)} feature values, got {len(self.values)}"
            )
        coerced = tuple(_coerce_feature(n, v) for n, v in zip(self.names, self.values))
        object.__setattr__(self, "values", coerced)
        object.__setattr__(self, "names", tuple(self.names))

    @classmethod
    def from_mapping(cls, mapping: Mapping, names=FEATURE_NAMES,
                     strict: bool = True, **meta) -> "FeatureVector":
        """
        Build a vector from a name → value mapping.

        Args:
            mapping: Feature values keyed by name.
            names: Required ordering.
            strict: Reject keys that are not part of ``names``.
            **meta: Passed through (location, timestamp, stale, …).

        Raises:
            InvalidFeatureError: On a missing, unknown or non-finite feature.
        """
        missing = [n for n in names if n not in mapping]
        if missing:
            raise InvalidFeatureError(f"Missing required feature(s): {', '.join(missing)}",
                                      {"missing": missing})
        if strict:
            unknown = sorted(k for k in mapping if k not in names)
            if unknown:
                raise InvalidFeatureError(f"Unknown feature(s): {', '.join(unknown)}",
                                          {"unknown": unknown})
        return cls(values=tuple(mapping[n] for n in names), names=tuple(names), **meta)

    def __getitem__(self, name: str) -> float:
        try:
            return self.values[self.names.index(name)]
        except ValueError:
            raise KeyError(name) from None

    def __len__(self) -> int:
        return len(self.values)

    def as_dict(self) -> dict:
        """Feature values keyed by name, in order."""
        return dict(zip(self.names, self.values))

    def to_array(self) -> np.ndarray:
        """1-D float64 array in ``names`` order."""
        return np.asarray(self.values, dtype=np.float64)


@dataclass(frozen=True, eq=False)
class TrainingSample:
    """A feature vector plus an optional evaluation label (never used to build trees)."""

    features: FeatureVector
    label: Optional[str] = None

    def __post_init__(self):
        if self.label is not None and self.label not in VALID_LABELS:
            raise InvalidFeatureError(f"Unknown label {self.label!r}; "
                                      f"expected one of {VALID_LABELS}")

    @classmethod
    def from_mapping(cls, mapping: Mapping, names=FEATURE_NAMES) -> "TrainingSample":
        """Split a flat row (features + optional ``label``) into a sample."""
        row = dict(mapping)
        label = row.pop("label", None)
        if isinstance(label, float) and math.isnan(label):
            label = None
        return cls(FeatureVector.from_mapping(row, names=names, strict=False), label)


def samples_to_matrix(samples, names=FEATURE_NAMES) -> np.ndarray:
    """
    Stack samples into a 2-D array in ``names`` order.

    Accepts TrainingSample, FeatureVector or plain mappings.

    Raises:
        InvalidFeatureError: If any sample does not match ``names``.
    """
    rows = [as_feature_vector(s, names).to_array() for s in samples]
    if not rows:
        return np.empty((0, len(names)), dtype=np.float64)
    return np.vstack(rows)


def as_feature_vector(item, names=FEATURE_NAMES) -> FeatureVector:
    """Normalize a TrainingSample / FeatureVector / mapping to a FeatureVector in ``names`` order."""
    if isinstance(item, TrainingSample):
        item = item.features
    if isinstance(item, FeatureVector):
        if tuple(item.names) != tuple(names):
            raise InvalidFeatureError(
                "Feature ordering does not match the trained model",
                {"expected": list(names), "got": list(item.names)},
            )
        return item
    if isinstance(item, Mapping):
        data = {k: v for k, v in item.items() if k != "label"}
        return FeatureVector.from_mapping(data, names=names, strict=False)
    raise InvalidFeatureError(f"Unsupported feature container: {type(item).__name__}")


def samples_to_dataframe(samples, names=FEATURE_NAMES) -> pd.DataFrame:
    """
    Convert samples to a DataFrame with one column per feature and a
    ``label`` column (None where a sample carries no label).
    """
    df = pd.DataFrame(samples_to_matrix(samples, names), columns=list(names))
    df["label"] = [s.label if isinstance(s, TrainingSample)
                   else (s.get("label") if isinstance(s, Mapping) else None)
                   for s in samples]
    return df


def samples_from_dataframe(df: pd.DataFrame, names=FEATURE_NAMES) -> list:
    """Build TrainingSamples from a DataFrame holding the feature columns (+ optional ``label``)."""
    missing = [n for n in names if n not in df.columns]
    if missing:
        raise InvalidFeatureError(f"Missing required feature column(s): {', '.join(missing)}",
                                  {"missing": missing})
    labels = df["label"] if "label" in df.columns else pd.Series([None] * len(df))
    samples = []
    for row, label in zip(df[list(names)].itertuples(index=False), labels):
        if not isinstance(label, str):
            label = None
        samples.append(TrainingSample(FeatureVector(values=tuple(row), names=tuple(names)),
                                      label))
    return samples
