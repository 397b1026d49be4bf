"""
valve.py — Valve Control State Machine
=======================================

Drives one shutoff valve from fused detection decisions, with hysteresis
so a single noisy score spike can never close a main.

States:
    OPEN     — Normal operation.
    CLOSING  — Close command sent, waiting for actuator confirmation.
    CLOSED   — Actuator confirmed closure. Stays closed until an
               operator resets it (never reopened automatically).
    FAULT    — Actuator error or confirmation timeout.

Transitions:
    OPEN    → CLOSING   severity == critical for DWELL consecutive decisions
    CLOSING → CLOSED    actuator confirmation
    CLOSING → FAULT     no confirmation within the timeout
    any     → FAULT     actuator error report
    CLOSED  → OPEN      manual reset
    FAULT   → OPEN      manual reset

Every other (state, input) combination is a no-op. Entering CLOSING,
CLOSED or FAULT emits a DecisionRecord to the registered sinks
(alerting, audit, MQTT broadcast).
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from .config import ValveConfig
from .errors import ActuatorFault

logger = logging.getLogger("detection.valve")


class ValveState(str, enum.Enum):
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    FAULT = "FAULT"


# valve_action values carried in decision records
ACTION_NONE = "none"
ACTION_CLOSE = "close_initiated"
ACTION_CLOSED = "closed"
ACTION_FAULT = "fault"


@dataclass(frozen=True)
class DecisionRecord:
    """The payload handed to alerting / audit / actuation sinks."""

    timestamp: Optional[str]
    location: str
    leak_probability: float
    severity: str
    rule_score: float
    ml_score: Optional[float]
    detected: bool
    valve_action: str

    @classmethod
    def from_decision(cls, decision, location: str, valve_action: str) -> "DecisionRecord":
        if decision is None:
            return cls(None, location, 0.0, "none", 0.0, None, False, valve_action)
        return cls(
            timestamp=decision.timestamp.isoformat() if decision.timestamp else None,
            location=decision.location or location,
            leak_probability=decision.leak_probability,
            severity=decision.severity,
            rule_score=decision.rule_score,
            ml_score=decision.ml_score,
            detected=decision.detected,
            valve_action=valve_action,
        )

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "location": self.location,
            "leakProbability": self.leak_probability,
            "severity": self.severity,
            "ruleScore": self.rule_score,
            "mlScore": self.ml_score,
            "detected": self.detected,
            "valveAction": self.valve_action,
        }


class ValveStateMachine:
    """
    Hysteresis-protected valve controller for a single location.

    Attributes:
        location (str): Valve / location id.
        actuator: Optional object with a ``close(location)`` method that
            sends the physical close command.
        fault (ActuatorFault | None): Last fault, while in FAULT.
    """

    def __init__(self, location: str, config: ValveConfig = None, actuator=None):
        self.location = location
        self.config = config or ValveConfig()
        self.actuator = actuator
        self.fault: Optional[ActuatorFault] = None
        self._state = ValveState.OPEN
        self._critical_streak = 0
        self._closing_since: Optional[float] = None
        self._last_decision = None
        self._sinks = []
        self._lock = threading.RLock()

    @property
    def state(self) -> ValveState:
        return self._state

    @property
    def critical_streak(self) -> int:
        """Consecutive critical decisions seen so far."""
        return self._critical_streak

    def add_sink(self, sink) -> None:
        """Register a callable receiving DecisionRecords on CLOSING/CLOSED/FAULT entry."""
        self._sinks.append(sink)

    def _emit(self, record: DecisionRecord) -> None:
        for sink in self._sinks:
            try:
                sink(record)
            except Exception as e:
                logger.error(f"Decision sink {sink!r} failed: {e}", exc_info=True)

    def _enter(self, state: ValveState, action: str) -> DecisionRecord:
        previous = self._state
        self._state = state
        logger.info(f"Valve {self.location}: {previous.value} → {state.value}")
        record = DecisionRecord.from_decision(self._last_decision, self.location, action)
        self._emit(record)
        return record

    # ── Inputs ────────────────────────────────────────────────────

    def on_decision(self, decision, now: float = None) -> DecisionRecord:
        """
        Feed one fused decision.

        Args:
            decision: DetectionDecision for this location.
            now: Monotonic time (seconds) used for the confirmation timeout.

        Returns:
            DecisionRecord for the decision, with the valve action it caused.
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            self._last_decision = decision
            if decision.severity == "critical":
                self._critical_streak += 1
            else:
                self._critical_streak = 0

            if self._state is not ValveState.OPEN:
                return DecisionRecord.from_decision(decision, self.location, ACTION_NONE)

            if self._critical_streak < self.config.dwell_decisions:
                if self._critical_streak:
                    logger.info(f"Valve {self.location}: critical decision "
                                f"{self._critical_streak}/{self.config.dwell_decisions}")
                return DecisionRecord.from_decision(decision, self.location, ACTION_NONE)

            logger.warning(f"CLOSING VALVE at {self.location} after "
                           f"{self._critical_streak} consecutive critical decisions "
                           f"(p={decision.leak_probability})")
            self._closing_since = now
            record = self._enter(ValveState.CLOSING, ACTION_CLOSE)

        if self.actuator is not None:
            try:
                self.actuator.close(self.location)
            except Exception as e:
                self.report_actuator_error(f"Close command failed: {e}")
                return DecisionRecord.from_decision(decision, self.location, ACTION_FAULT)
        return record

    def confirm_closed(self, now: float = None) -> bool:
        """Actuator confirmation. Moves CLOSING → CLOSED; ignored otherwise."""
        with self._lock:
            if self._state is not ValveState.CLOSING:
                logger.debug(f"Valve {self.location}: confirmation ignored in "
                             f"{self._state.value}")
                return False
            self._closing_since = None
            self._enter(ValveState.CLOSED, ACTION_CLOSED)
            return True

    def report_actuator_error(self, reason: str) -> Optional[ActuatorFault]:
        """
        Record an actuator failure and move to FAULT.

        Returns:
            The recorded ActuatorFault, or None if already in FAULT.
        """
        with self._lock:
            if self._state is ValveState.FAULT:
                return None
            self.fault = ActuatorFault(reason, location=self.location,
                                       context={"state": self._state.value})
            self._closing_since = None
            logger.error(f"ACTUATOR FAULT at {self.location}: {reason}")
            self._enter(ValveState.FAULT, ACTION_FAULT)
            return self.fault

    def check_timeout(self, now: float = None) -> Optional[ActuatorFault]:
        """
        Fault the valve if closure was not confirmed in time.

        Returns:
            ActuatorFault when the timeout fired, else None.
        """
        now = time.monotonic() if now is None else now
        with self._lock:
            if self._state is not ValveState.CLOSING or self._closing_since is None:
                return None
            waited = now - self._closing_since
            if waited <= self.config.confirm_timeout_seconds:
                return None
            return self.report_actuator_error(
                f"No closure confirmation after {waited:.1f}s "
                f"(timeout {self.config.confirm_timeout_seconds:.1f}s)"
            )

    def manual_reset(self, operator: str = None) -> bool:
        """Operator reset from CLOSED or FAULT back to OPEN."""
        with self._lock:
            if self._state not in (ValveState.CLOSED, ValveState.FAULT):
                logger.info(f"Valve {self.location}: reset ignored in {self._state.value}")
                return False
            logger.warning(f"Valve {self.location} manually reset to OPEN"
                           + (f" by {operator}" if operator else ""))
            self._state = ValveState.OPEN
            self._critical_streak = 0
            self._closing_since = None
            self.fault = None
            return True

    def get_status(self) -> dict:
        return {
            "location": self.location,
            "state": self._state.value,
            "critical_streak": self._critical_streak,
            "fault": self.fault.to_dict() if self.fault else None,
        }
