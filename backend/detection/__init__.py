"""
backend.detection — Real-Time Pipeline Leak Detection Engine
=============================================================

Decides, per monitored pipeline location, whether a leak is occurring,
how severe it is, and whether to close the shutoff valve.

Architecture:
    Pressure / flow sensors → ingestion feed
                                   ↓
                          Leak Detection Engine:
                            1. Streaming feature extraction
                            2. Isolation forest anomaly score
                            3. Rule-based baseline deviation
                            4. Rule / ML fusion → severity tier
                            5. Hysteresis-protected valve control
                                   ↓
              Decision records → MQTT → alerting / audit / valve gateway

Modules:
    config         — Tunables and injected configuration objects
    errors         — Exception hierarchy
    features       — SensorReading, FeatureVector, TrainingSample
    preprocessing  — Per-location rolling-window feature extraction
    forest         — Isolation forest ensemble (build, score, serialize)
    detector       — Training, prediction, evaluation and persistence
    fusion         — Rule / ML fusion and severity mapping
    valve          — Valve control state machine
    calibration    — Threshold sweep and recommendation
    engine         — End-to-end reading → decision orchestration
    mqtt_bridge    — MQTT valve actuator and decision publisher
    train          — Offline training from CSV data
    utils          — Logging setup and file helpers
"""

__version__ = "1.0.0"
