"""
config.py — Detection Engine Configuration
===========================================

Centralizes every tunable of the leak detection engine: rolling-window
lengths, isolation forest hyperparameters, fusion weights, severity
thresholds and valve hysteresis. Module-level constants hold the defaults
(overridable through ``LEAK_*`` environment variables); the dataclasses
below bundle them into the configuration objects that each component
receives at construction.

Sensor context:
- Pressure transducers (PSI), nominal ≈ 60 PSI on the distribution main
- Flow meters (L/min), nominal ≈ 40 L/min
- Readings arrive roughly once per second per monitored location
"""

import os
from dataclasses import dataclass, field


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


# ═══════════════════════════════════════════════════════════════════
# FEATURE PREPROCESSOR
# ═══════════════════════════════════════════════════════════════════

# Moving-average window (seconds) for pressure_ma_30s / flow_ma_30s.
MOVING_AVERAGE_WINDOW_SECONDS = 30

# Standard-deviation window (seconds) for pressure_stddev_60s / flow_stddev_60s.
STDDEV_WINDOW_SECONDS = 60

# Minimum readings inside a window before its statistic is trusted.
# Until both windows hold this many points the preprocessor is warming up.
MIN_WINDOW_POINTS = _env_int("LEAK_MIN_WINDOW_POINTS", 3)

# Hard cap on buffered readings per location (2 minutes at 1 Hz).
MAX_HISTORY_PER_LOCATION = _env_int("LEAK_MAX_HISTORY", 120)

# Flow floor used in pressure / flow so a stalled meter cannot blow up the ratio.
RATIO_EPSILON = 0.1

# Physical plausibility bounds; readings outside them are rejected.
PRESSURE_BOUNDS_PSI = (0.0, 100.0)
FLOW_BOUNDS_LPM = (0.0, 150.0)

# Z-score above which the current value is reported as a spike.
SPIKE_Z_THRESHOLD = 2.0

# ═══════════════════════════════════════════════════════════════════
# ISOLATION FOREST HYPERPARAMETERS
# ═══════════════════════════════════════════════════════════════════

# Number of isolation trees in the ensemble.
N_TREES = _env_int("LEAK_N_TREES", 100)

# Subsample size ψ drawn (without replacement) for every tree.
# Bounds tree-construction work so retraining stays short.
SAMPLE_SIZE = _env_int("LEAK_SAMPLE_SIZE", 256)

# Random seed for reproducibility across training runs.
RANDOM_SEED = _env_int("LEAK_RANDOM_SEED", 42)

# Anomaly score (0-100) strictly above which a prediction is an anomaly.
ANOMALY_CUTOFF = _env_float("LEAK_ANOMALY_CUTOFF", 50.0)

# ═══════════════════════════════════════════════════════════════════
# DETECTION FUSION
# ═══════════════════════════════════════════════════════════════════

# Weighted blend: leak_probability = W_ML * ml_score + W_RULE * rule_score
ML_WEIGHT = _env_float("LEAK_ML_WEIGHT", 0.6)
RULE_WEIGHT = _env_float("LEAK_RULE_WEIGHT", 0.4)

# Leak probability strictly above which a leak is reported as detected.
# Adjusted after running the calibration sweep.
DETECTION_THRESHOLD = _env_float("LEAK_DETECTION_THRESHOLD", 50.0)

# When |ml_score - rule_score| exceeds this spread the two signals are
# considered to disagree and confidence is reduced.
CONFIDENCE_SPREAD = 30.0

# A rule deviation at or above this percentage, corroborated by the ML
# model, lifts the leak probability to at least the rule score.
ESCALATION_DEVIATION_PCT = 50.0

# Default nominal operating point and rule trigger threshold (percent).
NOMINAL_PRESSURE_PSI = _env_float("LEAK_NOMINAL_PRESSURE", 60.0)
NOMINAL_FLOW_LPM = _env_float("LEAK_NOMINAL_FLOW", 40.0)
RULE_THRESHOLD_PCT = _env_float("LEAK_RULE_THRESHOLD_PCT", 10.0)

# Severity bands on leak probability (lower bounds, inclusive).
SEVERITY_BANDS = (
    ("critical", 85.0),
    ("high", 60.0),
    ("medium", 40.0),
    ("low", 20.0),
    ("none", 0.0),
)

# ═══════════════════════════════════════════════════════════════════
# VALVE CONTROL
# ═══════════════════════════════════════════════════════════════════

# Consecutive critical decisions required before the valve starts closing.
VALVE_DWELL_DECISIONS = _env_int("LEAK_VALVE_DWELL", 2)

# Seconds to wait for the actuator to confirm closure before faulting.
VALVE_CONFIRM_TIMEOUT_SECONDS = _env_float("LEAK_VALVE_TIMEOUT", 10.0)

# ═══════════════════════════════════════════════════════════════════
# MODEL PERSISTENCE
# ═══════════════════════════════════════════════════════════════════

_DETECTION_DIR = os.path.dirname(os.path.abspath(__file__))

# Directory where trained forests and calibration output are saved
SAVED_DIR = os.environ.get("LEAK_SAVED_DIR", os.path.join(_DETECTION_DIR, "saved"))

# Default path of the serialized forest document (joblib format)
MODEL_PATH = os.path.join(SAVED_DIR, "leak_forest.joblib")

# Calibration writes its recommended threshold here
CALIBRATION_PATH = os.path.join(SAVED_DIR, "calibration.json")

# ═══════════════════════════════════════════════════════════════════
# MQTT (valve actuation and decision broadcast)
# ═══════════════════════════════════════════════════════════════════

MQTT_BROKER_HOST = os.environ.get("MQTT_BROKER_HOST", "localhost")
MQTT_BROKER_PORT = int(os.environ.get("MQTT_BROKER_PORT", "1883"))

# Valve commands are published to "<prefix>/<location>"; the actuator
# acknowledges on "<prefix>/<location>/ack".
MQTT_VALVE_TOPIC_PREFIX = "pipeline/control/valve"
MQTT_DECISION_TOPIC = "pipeline/detection/decisions"

# ═══════════════════════════════════════════════════════════════════
# LOGGING
# ═══════════════════════════════════════════════════════════════════

LOG_LEVEL = os.environ.get("LEAK_LOG_LEVEL", "INFO")


# ═══════════════════════════════════════════════════════════════════
# CONFIGURATION OBJECTS
# ═══════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PreprocessorConfig:
    """Rolling-window settings for the feature preprocessor."""

    moving_average_seconds: float = MOVING_AVERAGE_WINDOW_SECONDS
    stddev_seconds: float = STDDEV_WINDOW_SECONDS
    min_window_points: int = MIN_WINDOW_POINTS
    max_history: int = MAX_HISTORY_PER_LOCATION
    ratio_epsilon: float = RATIO_EPSILON
    pressure_bounds: tuple = PRESSURE_BOUNDS_PSI
    flow_bounds: tuple = FLOW_BOUNDS_LPM
    spike_z_threshold: float = SPIKE_Z_THRESHOLD


@dataclass(frozen=True)
class ForestConfig:
    """Isolation forest hyperparameters."""

    n_trees: int = N_TREES
    sample_size: int = SAMPLE_SIZE
    random_seed: int = RANDOM_SEED


@dataclass(frozen=True)
class DetectorConfig:
    """Anomaly detector settings (forest + decision cutoff + model path)."""

    forest: ForestConfig = field(default_factory=ForestConfig)
    anomaly_cutoff: float = ANOMALY_CUTOFF
    model_path: str = MODEL_PATH


@dataclass(frozen=True)
class FusionConfig:
    """Weights and thresholds of the rule / ML fusion layer."""

    ml_weight: float = ML_WEIGHT
    rule_weight: float = RULE_WEIGHT
    detection_threshold: float = DETECTION_THRESHOLD
    confidence_spread: float = CONFIDENCE_SPREAD
    escalation_deviation_pct: float = ESCALATION_DEVIATION_PCT
    nominal_pressure: float = NOMINAL_PRESSURE_PSI
    nominal_flow: float = NOMINAL_FLOW_LPM
    rule_threshold_pct: float = RULE_THRESHOLD_PCT


@dataclass(frozen=True)
class ValveConfig:
    """Hysteresis and timeout settings of the valve state machine."""

    dwell_decisions: int = VALVE_DWELL_DECISIONS
    confirm_timeout_seconds: float = VALVE_CONFIRM_TIMEOUT_SECONDS


@dataclass(frozen=True)
class MqttConfig:
    """Broker connection and topic layout."""

    host: str = MQTT_BROKER_HOST
    port: int = MQTT_BROKER_PORT
    valve_topic_prefix: str = MQTT_VALVE_TOPIC_PREFIX
    decision_topic: str = MQTT_DECISION_TOPIC
    client_id: str = "leak-detection-engine"
    keepalive: int = 60


@dataclass(frozen=True)
class EngineConfig:
    """
    Complete configuration injected into the detection engine.

    Built once (usually via ``from_env``) and handed down to each
    component, so no component consults process-wide state at run time.
    """

    preprocessor: PreprocessorConfig = field(default_factory=PreprocessorConfig)
    detector: DetectorConfig = field(default_factory=DetectorConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)
    valve: ValveConfig = field(default_factory=ValveConfig)
    mqtt: MqttConfig = field(default_factory=MqttConfig)
    log_level: str = LOG_LEVEL

    @classmethod
    def from_env(cls, environ=None) -> "EngineConfig":
        """
        Build a configuration from the current environment.

        Args:
            environ: Mapping to read from. Defaults to ``os.environ``.

        Returns:
            EngineConfig with every ``LEAK_*`` / ``MQTT_*`` override applied.
        """
        env = os.environ if environ is None else environ

        def f(name, default):
            return float(env.get(name, default))

        def i(name, default):
            return int(env.get(name, default))

        saved_dir = env.get("LEAK_SAVED_DIR", SAVED_DIR)
        return cls(
            preprocessor=PreprocessorConfig(
                min_window_points=i("LEAK_MIN_WINDOW_POINTS", MIN_WINDOW_POINTS),
                max_history=i("LEAK_MAX_HISTORY", MAX_HISTORY_PER_LOCATION),
            ),
            detector=DetectorConfig(
                forest=ForestConfig(
                    n_trees=i("LEAK_N_TREES", N_TREES),
                    sample_size=i("LEAK_SAMPLE_SIZE", SAMPLE_SIZE),
                    random_seed=i("LEAK_RANDOM_SEED", RANDOM_SEED),
                ),
                anomaly_cutoff=f("LEAK_ANOMALY_CUTOFF", ANOMALY_CUTOFF),
                model_path=os.path.join(saved_dir, "leak_forest.joblib"),
            ),
            fusion=FusionConfig(
                ml_weight=f("LEAK_ML_WEIGHT", ML_WEIGHT),
                rule_weight=f("LEAK_RULE_WEIGHT", RULE_WEIGHT),
                detection_threshold=f("LEAK_DETECTION_THRESHOLD", DETECTION_THRESHOLD),
                nominal_pressure=f("LEAK_NOMINAL_PRESSURE", NOMINAL_PRESSURE_PSI),
                nominal_flow=f("LEAK_NOMINAL_FLOW", NOMINAL_FLOW_LPM),
                rule_threshold_pct=f("LEAK_RULE_THRESHOLD_PCT", RULE_THRESHOLD_PCT),
            ),
            valve=ValveConfig(
                dwell_decisions=i("LEAK_VALVE_DWELL", VALVE_DWELL_DECISIONS),
                confirm_timeout_seconds=f("LEAK_VALVE_TIMEOUT",
                                          VALVE_CONFIRM_TIMEOUT_SECONDS),
            ),
            mqtt=MqttConfig(
                host=env.get("MQTT_BROKER_HOST", MQTT_BROKER_HOST),
                port=i("MQTT_BROKER_PORT", MQTT_BROKER_PORT),
            ),
            log_level=env.get("LEAK_LOG_LEVEL", LOG_LEVEL),
        )
