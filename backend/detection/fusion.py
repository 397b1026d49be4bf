"""
fusion.py — Rule / ML Detection Fusion
=======================================

Combines two independent leak signals into one decision:

    rule score   — % deviation of pressure or flow from the location's
                   nominal baseline (0 until it exceeds the location
                   threshold, clipped to 100)
    ML score     — isolation forest anomaly score (0-100)

    leak_probability = W_ML · ml_score + W_RULE · rule_score   (clipped 0-100)

A large rule deviation (≥ escalation_deviation_pct) that the ML model
independently flags as anomalous lifts the probability to at least the
rule score, so an unmistakable pipe burst reaches CRITICAL even when the
forest's score saturates in the 70s.

Severity bands (lower bound inclusive, exact boundaries go up a tier):

    [0, 20) none   [20, 40) low   [40, 60) medium   [60, 85) high   [85, 100] critical
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from . import config
from .config import FusionConfig

logger = logging.getLogger("detection.fusion")

SEVERITY_LEVELS = tuple(name for name, _ in reversed(config.SEVERITY_BANDS))


def severity_for(probability: float, bands=config.SEVERITY_BANDS) -> str:
    """
    Map a leak probability (0-100) to its severity tier.

    Values outside [0, 100] are clipped first, so every finite input maps
    to exactly one tier.

    Raises:
        ValueError: If ``probability`` is NaN.
    """
    if math.isnan(probability):
        raise ValueError("Leak probability is NaN")
    p = min(max(float(probability), 0.0), 100.0)
    for name, lower in bands:
        if p >= lower:
            return name
    return bands[-1][0]


@dataclass(frozen=True)
class Baseline:
    nominal_pressure: float
    nominal_flow: float
    threshold_pct: float


@dataclass(frozen=True)
class DetectionDecision:
    """
    Fused outcome for one reading.

    ``leak_probability`` is normally the weighted ML/rule blend. When
    ``escalated`` is True it is ``max(blend, rule_score)`` instead, so a
    corroborated large deviation is never diluted by a lower ML score.
    """

    leak_probability: float
    severity: str
    rule_score: float
    ml_score: Optional[float]
    detected: bool
    confidence: float
    escalated: bool = False
    location: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "location": self.location,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "leak_probability": self.leak_probability,
            "severity": self.severity,
            "rule_score": self.rule_score,
            "ml_score": self.ml_score,
            "detected": self.detected,
            "confidence": self.confidence,
            "escalated": self.escalated,
        }


class FusionEngine:
    """
    Rule-based thresholds + ML score → DetectionDecision.

    Usage:
        fusion = FusionEngine()
        fusion.set_baseline("main-street", nominal_pressure=62, nominal_flow=38)
        decision = fusion.fuse(reading, detector.predict(vector))
    """

    def __init__(self, config: FusionConfig = None):
        self.config = config or FusionConfig()
        self._baselines: dict = {}
        self._default = Baseline(
            self.config.nominal_pressure,
            self.config.nominal_flow,
            self.config.rule_threshold_pct,
        )

    def set_baseline(self, location: str, nominal_pressure: float,
                     nominal_flow: float, threshold_pct: float = None) -> None:
        """
        Configure the nominal operating point of one location.

        Args:
            location: Monitored location id.
            nominal_pressure: Expected pressure (PSI), > 0.
            nominal_flow: Expected flow (L/min), > 0.
            threshold_pct: Deviation (%) above which the rule triggers.
                Defaults to the configured rule threshold.
        """
        if nominal_pressure <= 0 or nominal_flow <= 0:
            raise ValueError(f"Nominal pressure and flow must be positive "
                             f"(got {nominal_pressure}, {nominal_flow})")
        threshold = self.config.rule_threshold_pct if threshold_pct is None else threshold_pct
        if threshold < 0:
            raise ValueError(f"threshold_pct must be >= 0, got {threshold}")
        self._baselines[location] = Baseline(float(nominal_pressure),
                                             float(nominal_flow), float(threshold))
        logger.info(f"Baseline for {location}: {nominal_pressure} PSI, "
                    f"{nominal_flow} L/min, trigger at {threshold}%")

    def baseline_for(self, location: str) -> Baseline:
        return self._baselines.get(location, self._default)

    def rule_score(self, reading) -> float:
        """
        Percentage deviation of the reading from its location baseline.

        Returns the larger of the pressure and flow deviations, clipped to
        [0, 100], or 0.0 when neither exceeds the location threshold.
        """
        base = self.baseline_for(reading.location)
        pressure_dev = abs(reading.pressure - base.nominal_pressure) / base.nominal_pressure * 100.0
        flow_dev = abs(reading.flow - base.nominal_flow) / base.nominal_flow * 100.0
        deviation = max(pressure_dev, flow_dev)
        if not deviation > base.threshold_pct:
            return 0.0
        return round(min(deviation, 100.0), 2)

    def _confidence(self, ml_score: float, ml_anomalous: bool, rule_score: float) -> float:
        """
        Agreement between the two signals (0-100).

        Full confidence while the scores are within ``confidence_spread`` of
        each other, falling linearly to 0 at a 100-point gap; halved when the
        signals point in opposite directions.
        """
        spread = self.config.confidence_spread
        gap = abs(ml_score - rule_score)
        if gap <= spread or spread >= 100.0:
            confidence = 100.0
        else:
            confidence = max(0.0, 100.0 - (gap - spread) * 100.0 / (100.0 - spread))
        if ml_anomalous != (rule_score > 0):
            confidence *= 0.5
        return round(confidence, 2)

    def fuse(self, reading, prediction=None) -> DetectionDecision:
        """
        Combine the rule check for ``reading`` with the ML ``prediction``.

        Args:
            reading: SensorReading being decided on.
            prediction: AnomalyPrediction for the reading's feature vector,
                or None when no model is available (rule-only decision at
                the rule weight).

        Returns:
            DetectionDecision.
        """
        cfg = self.config
        rule = self.rule_score(reading)

        if prediction is None:
            probability = cfg.rule_weight * rule
            ml_score = None
            escalated = False
            confidence = 50.0 if rule > 0 else 20.0
        else:
            ml_score = float(prediction.anomaly_score)
            probability = cfg.ml_weight * ml_score + cfg.rule_weight * rule
            escalated = rule >= cfg.escalation_deviation_pct and prediction.is_anomaly
            if escalated and rule > probability:
                probability = rule
            confidence = self._confidence(ml_score, prediction.is_anomaly, rule)

        probability = round(min(max(probability, 0.0), 100.0), 2)
        decision = DetectionDecision(
            leak_probability=probability,
            severity=severity_for(probability),
            rule_score=rule,
            ml_score=ml_score,
            detected=probability > cfg.detection_threshold,
            confidence=confidence,
            escalated=escalated,
            location=reading.location,
            timestamp=reading.timestamp,
        )

        if decision.detected:
            logger.warning(
                f"LEAK DETECTED at {reading.location}: p={probability} "
                f"({decision.severity}), rule={rule}, ml={ml_score}"
                + (" [escalated]" if escalated else "")
            )
        else:
            logger.debug(f"{reading.location}: p={probability} ({decision.severity})")
        return decision
