"""
engine.py — Real-Time Leak Detection Engine
============================================

Accepts sensor readings one at a time and runs the full chain:
    reading → features → (ML score, rule score) → fused decision → valve

Each location gets its own rolling history (inside the preprocessor) and
its own valve state machine. Failures stay local to the reading that
caused them: a malformed reading or an unscorable vector is logged and
the next reading is processed normally. Until a model is trained or
loaded, decisions are made from the rule score alone.
"""

import dataclasses
import logging
from typing import Optional

from .calibration import load_calibration
from .config import EngineConfig
from .detector import AnomalyDetector
from .errors import InvalidFeatureError, InvalidReadingError, ModelNotTrainedError, PersistenceError
from .features import SensorReading
from .fusion import FusionEngine
from .mqtt_bridge import MqttDecisionPublisher, MqttValveActuator, create_mqtt_client
from .preprocessing import FeaturePreprocessor
from .valve import DecisionRecord, ValveStateMachine

logger = logging.getLogger("detection.engine")


class LeakDetectionEngine:
    """
    End-to-end leak detection for many monitored locations.

    Usage:
        engine = LeakDetectionEngine()
        engine.load_model()
        record = engine.process(reading)   # None while warming up
    """

    def __init__(self, config: EngineConfig = None, actuator=None, sinks=()):
        self.config = config or EngineConfig()
        self.preprocessor = FeaturePreprocessor(self.config.preprocessor)
        self.detector = AnomalyDetector(self.config.detector)
        self.fusion = FusionEngine(self.config.fusion)
        self.actuator = actuator
        self._sinks = list(sinks)
        self._valves: dict = {}
        self._warned_untrained = False
        self.stats = {
            "readings": 0,
            "decisions": 0,
            "detections": 0,
            "errors": 0,
        }

    @classmethod
    def with_mqtt(cls, config: EngineConfig = None) -> "LeakDetectionEngine":
        """
        Build an engine wired to the MQTT broker: CLOSE commands go to the
        valve gateway and every emitted decision record is broadcast.
        Falls back to a local-only engine if the broker is unreachable.
        """
        config = config or EngineConfig.from_env()
        engine = cls(config)
        client = create_mqtt_client(config.mqtt)
        if client is None:
            logger.warning("MQTT unavailable — valve commands and broadcasts disabled")
            return engine
        engine.actuator = MqttValveActuator(
            client, config.mqtt,
            on_closed=engine.confirm_valve_closed,
            on_error=engine.report_valve_error,
        )
        engine.add_sink(MqttDecisionPublisher(client, config.mqtt))
        return engine

    # ── Valves ────────────────────────────────────────────────────

    def valve(self, location: str) -> ValveStateMachine:
        """Valve state machine of a location (created on first use)."""
        valve = self._valves.get(location)
        if valve is None:
            valve = ValveStateMachine(location, self.config.valve, self.actuator)
            for sink in self._sinks:
                valve.add_sink(sink)
            self._valves[location] = valve
        return valve

    def add_sink(self, sink) -> None:
        """Register a decision-record sink on every current and future valve."""
        self._sinks.append(sink)
        for valve in self._valves.values():
            valve.add_sink(sink)

    def confirm_valve_closed(self, location: str, now: float = None) -> bool:
        valve = self._valves.get(location)
        return valve.confirm_closed(now) if valve else False

    def report_valve_error(self, location: str, reason: str) -> None:
        self.valve(location).report_actuator_error(reason)

    def reset_valve(self, location: str, operator: str = None) -> bool:
        valve = self._valves.get(location)
        return valve.manual_reset(operator) if valve else False

    def tick(self, now: float = None) -> list:
        """Run confirmation timeouts for all valves; returns new faults."""
        faults = []
        for valve in list(self._valves.values()):
            fault = valve.check_timeout(now)
            if fault is not None:
                faults.append(fault)
        return faults

    # ── Ingestion ─────────────────────────────────────────────────

    def process(self, reading, now: float = None) -> Optional[DecisionRecord]:
        """
        Process one reading to completion.

        Args:
            reading: SensorReading or telemetry dict.
            now: Monotonic time (seconds) for valve timeouts.

        Returns:
            DecisionRecord, or None while the location is warming up or
            if the reading was rejected.
        """
        self.stats["readings"] += 1
        if not isinstance(reading, SensorReading):
            try:
                reading = SensorReading.from_dict(reading)
            except InvalidReadingError as e:
                logger.error(f"Rejected reading: {e}")
                self.stats["errors"] += 1
                return None

        vector = self.preprocessor.process_reading(reading)
        if vector is None:
            return None

        prediction = None
        try:
            prediction = self.detector.predict(vector)
        except ModelNotTrainedError:
            if not self._warned_untrained:
                logger.warning("No trained model; deciding from rule score only")
                self._warned_untrained = True
        except InvalidFeatureError as e:
            logger.error(f"Prediction failed at {reading.location}: {e}")
            self.stats["errors"] += 1

        decision = self.fusion.fuse(reading, prediction)
        valve = self.valve(reading.location)
        valve.check_timeout(now)
        record = valve.on_decision(decision, now)

        self.stats["decisions"] += 1
        if decision.detected:
            self.stats["detections"] += 1
        return record

    # ── Model lifecycle ───────────────────────────────────────────

    def train(self, samples, background: bool = False):
        """
        Train the detector.

        Returns:
            TrainingResult, or a Future of one when ``background`` is True.
        """
        if background:
            return self.detector.train_in_background(samples)
        result = self.detector.train(samples)
        if result.success:
            self._warned_untrained = False
        return result

    def load_model(self, path: str = None) -> bool:
        """Load a saved forest; returns False (and keeps serving) on failure."""
        try:
            self.detector.load_model(path)
        except PersistenceError as e:
            logger.error(f"Failed to load model: {e}")
            return False
        self._warned_untrained = False
        return True

    def apply_calibration(self, path: str = None) -> float:
        """
        Use the anomaly cutoff recommended by the calibration sweep.

        Returns:
            The cutoff now in effect (0-100).
        """
        cutoff = float(load_calibration(path)["anomalyCutoff"])
        self.detector.config = dataclasses.replace(self.detector.config, anomaly_cutoff=cutoff)
        logger.info(f"Anomaly cutoff set to {cutoff} from calibration")
        return cutoff

    def get_status(self) -> dict:
        return {
            **self.stats,
            "valves": {loc: v.get_status() for loc, v in self._valves.items()},
            "data_quality": self.preprocessor.get_quality_report(),
            "model": self.detector.get_model_info(),
        }

    def reset(self) -> None:
        """Clear rolling history and counters (valves and model are kept)."""
        self.preprocessor.reset()
        for key in self.stats:
            self.stats[key] = 0

    def close(self) -> None:
        self.detector.shutdown()
