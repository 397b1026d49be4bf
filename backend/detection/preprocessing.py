"""
preprocessing.py — Streaming Feature Preprocessor
==================================================

Turns raw sensor readings into fixed-shape feature vectors while keeping
bounded memory per monitored location.

How it works:
    1. Each reading is validated (numeric, finite, inside physical bounds).
    2. It is appended to that location's rolling buffer; entries older than
       the longest window (60 s) are evicted, and the buffer is also capped
       at ``max_history`` entries, so memory per location is O(1).
    3. Rate of change is computed against the immediately prior reading.
       Two readings sharing a timestamp reuse the previous rate and mark it
       stale instead of dividing by zero.
    4. 30 s moving averages and 60 s standard deviations are computed over
       the buffer. Until both windows hold ``min_window_points`` readings
       the location is warming up and no vector is emitted.

Locations never share state: every location owns its own buffer.
"""

import logging
import math
from collections import deque
from typing import Optional

import numpy as np

from .config import PreprocessorConfig
from .errors import InvalidReadingError
from .features import FEATURE_NAMES, FeatureVector, SensorReading

logger = logging.getLogger("detection.preprocessing")


class _LocationHistory:
    """Rolling buffer and last computed rates for one location."""

    __slots__ = ("readings", "pressure_rate", "flow_rate")

    def __init__(self, max_history: int):
        # (epoch_seconds, pressure, flow)
        self.readings: deque = deque(maxlen=max_history)
        self.pressure_rate = 0.0
        self.flow_rate = 0.0


def _new_quality_metrics() -> dict:
    return {
        "total_processed": 0,
        "valid_records": 0,
        "invalid_records": 0,
        "outliers": 0,
        "spikes": 0,
        "out_of_order": 0,
        "stale_rates": 0,
        "warming_up": 0,
    }


class FeaturePreprocessor:
    """
    Per-location streaming feature extractor.

    Usage:
        pre = FeaturePreprocessor()
        vector = pre.process_reading(reading)   # None while warming up
    """

    def __init__(self, config: PreprocessorConfig = None):
        self.config = config or PreprocessorConfig()
        self._history: dict = {}
        self.quality_metrics = _new_quality_metrics()
        logger.info(
            f"Preprocessor initialized (MA {self.config.moving_average_seconds:.0f}s, "
            f"std-dev {self.config.stddev_seconds:.0f}s, "
            f"min points {self.config.min_window_points})"
        )

    # ── Validation ────────────────────────────────────────────────

    def _validate(self, reading: SensorReading) -> list:
        """Return a list of issues; empty means the reading is usable."""
        issues = []
        for name, value, (low, high) in (
            ("pressure", reading.pressure, self.config.pressure_bounds),
            ("flow", reading.flow, self.config.flow_bounds),
        ):
            if not math.isfinite(value):
                issues.append(f"{name} is not finite: {value}")
            elif value < low or value > high:
                issues.append(f"{name} outlier: {value} (bounds: {low}-{high})")
        return issues

    # ── Rolling statistics ────────────────────────────────────────

    @staticmethod
    def _window(history: _LocationHistory, now: float, seconds: float) -> np.ndarray:
        """Readings (as an N×2 pressure/flow array) with timestamp >= now - seconds."""
        cutoff = now - seconds
        rows = [(p, f) for t, p, f in history.readings if t >= cutoff]
        return np.asarray(rows, dtype=np.float64).reshape(-1, 2)

    def _evict(self, history: _LocationHistory, now: float) -> None:
        horizon = now - max(self.config.moving_average_seconds, self.config.stddev_seconds)
        while history.readings and history.readings[0][0] < horizon:
            history.readings.popleft()

    def _is_spike(self, value: float, window: np.ndarray) -> bool:
        std = float(window.std())
        if std == 0.0:
            return False
        return abs(value - float(window.mean())) / std > self.config.spike_z_threshold

    # ── Public API ────────────────────────────────────────────────

    def process_reading(self, reading) -> Optional[FeatureVector]:
        """
        Process one raw reading and return its feature vector.

        Args:
            reading: SensorReading (or telemetry dict accepted by
                SensorReading.from_dict).

        Returns:
            FeatureVector, or None while the location is warming up or
            when the reading was rejected (invalid, outlier, out of order).
        """
        self.quality_metrics["total_processed"] += 1

        if not isinstance(reading, SensorReading):
            try:
                reading = SensorReading.from_dict(reading)
            except InvalidReadingError as e:
                logger.error(f"Invalid sensor reading: {e}")
                self.quality_metrics["invalid_records"] += 1
                return None

        issues = self._validate(reading)
        if issues:
            logger.error(f"Invalid sensor reading at {reading.location}: {'; '.join(issues)}")
            self.quality_metrics["invalid_records"] += 1
            if any("outlier" in i for i in issues):
                self.quality_metrics["outliers"] += 1
            return None

        history = self._history.get(reading.location)
        if history is None:
            history = _LocationHistory(self.config.max_history)
            self._history[reading.location] = history

        now = reading.epoch_seconds
        previous = history.readings[-1] if history.readings else None

        if previous is not None and now < previous[0]:
            logger.warning(
                f"Out-of-order reading at {reading.location} rejected "
                f"({now:.3f} < last {previous[0]:.3f})"
            )
            self.quality_metrics["out_of_order"] += 1
            return None

        stale = ()
        if previous is None:
            history.pressure_rate = 0.0
            history.flow_rate = 0.0
        else:
            dt = now - previous[0]
            if dt == 0:
                # Same timestamp: keep the last rates rather than divide by zero
                stale = ("pressure_rate_of_change", "flow_rate_of_change")
                self.quality_metrics["stale_rates"] += 1
                logger.debug(f"Zero Δt at {reading.location}; reusing previous rates")
            else:
                history.pressure_rate = (reading.pressure - previous[1]) / dt
                history.flow_rate = (reading.flow - previous[2]) / dt

        self.quality_metrics["valid_records"] += 1
        history.readings.append((now, reading.pressure, reading.flow))
        self._evict(history, now)

        ma_window = self._window(history, now, self.config.moving_average_seconds)
        std_window = self._window(history, now, self.config.stddev_seconds)
        needed = self.config.min_window_points
        if len(ma_window) < needed or len(std_window) < needed:
            self.quality_metrics["warming_up"] += 1
            logger.debug(f"{reading.location} warming up "
                         f"({len(ma_window)}/{needed} points in MA window)")
            return None

        pressure_ma, flow_ma = ma_window.mean(axis=0)
        pressure_std, flow_std = std_window.std(axis=0)
        pressure_spike = self._is_spike(reading.pressure, std_window[:, 0])
        flow_spike = self._is_spike(reading.flow, std_window[:, 1])

        ts = reading.timestamp
        values = {
            "pressure": reading.pressure,
            "flow": reading.flow,
            "pressure_rate_of_change": history.pressure_rate,
            "flow_rate_of_change": history.flow_rate,
            "pressure_ma_30s": float(pressure_ma),
            "flow_ma_30s": float(flow_ma),
            "pressure_stddev_60s": float(pressure_std),
            "flow_stddev_60s": float(flow_std),
            "pressure_flow_ratio": reading.pressure / max(reading.flow,
                                                          self.config.ratio_epsilon),
            "hour_of_day": float(ts.hour),
            "is_weekend": 1.0 if ts.weekday() >= 5 else 0.0,
        }

        if pressure_spike or flow_spike:
            self.quality_metrics["spikes"] += 1
            kinds = [k for k, hit in (("PRESSURE", pressure_spike), ("FLOW", flow_spike)) if hit]
            logger.warning(
                f"SPIKE DETECTED ({', '.join(kinds)}) at {reading.location}: "
                f"pressure={reading.pressure} PSI (μ={pressure_ma:.2f}, σ={pressure_std:.2f}), "
                f"flow={reading.flow} L/min (μ={flow_ma:.2f}, σ={flow_std:.2f})"
            )

        return FeatureVector(
            values=tuple(values[name] for name in FEATURE_NAMES),
            location=reading.location,
            timestamp=ts,
            stale=stale,
            pressure_spike=pressure_spike,
            flow_spike=flow_spike,
        )

    def process_batch(self, readings) -> list:
        """Process readings in order; return only the emitted vectors."""
        readings = list(readings)
        vectors = [v for v in (self.process_reading(r) for r in readings) if v is not None]
        logger.info(f"Batch processed: {len(vectors)}/{len(readings)} feature vectors")
        return vectors

    def get_quality_report(self) -> dict:
        """Data-quality counters plus buffered points per location."""
        total = self.quality_metrics["total_processed"]
        valid = self.quality_metrics["valid_records"]
        return {
            **self.quality_metrics,
            "validation_rate": round(valid / total * 100, 2) if total else 0.0,
            "locations": {loc: len(h.readings) for loc, h in self._history.items()},
        }

    def buffered_points(self, location: str) -> int:
        """Number of readings currently buffered for a location."""
        history = self._history.get(location)
        return len(history.readings) if history else 0

    def reset(self, location: str = None) -> None:
        """
        Clear rolling history.

        Args:
            location: Only clear this location. Clears everything (and the
                quality counters) when omitted.
        """
        if location is not None:
            self._history.pop(location, None)
            logger.info(f"Preprocessor history reset for {location}")
            return
        self._history.clear()
        self.quality_metrics = _new_quality_metrics()
        logger.info("Preprocessor state reset")
