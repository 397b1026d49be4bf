"""
errors.py — Detection Engine Error Taxonomy
============================================

Every error is local to the operation that raised it: none of them is
fatal to the ingestion loop, which simply moves on to the next reading.

    DetectionError
    ├── ModelNotTrainedError     predict / save before train or load
    ├── InvalidFeatureError      malformed feature vector (missing, NaN, ±inf)
    ├── InvalidReadingError      malformed raw sensor reading
    ├── TrainingDataError        empty or degenerate training data
    ├── TrainingInProgressError  a second train() while one is running
    ├── PersistenceError         I/O or decoding failure on save / load
    └── ActuatorFault            valve error or confirmation timeout
"""

from typing import Any, Dict, Optional


class DetectionError(Exception):
    """
    Base exception for the detection engine.

    Attributes:
        message: Human-readable description.
        context: Extra machine-readable details (feature name, path, …).
    """

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a dictionary for logging or alert payloads."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class ModelNotTrainedError(DetectionError):
    """Raised when inference or saving is attempted without a model."""

    def __init__(self, message: str = "Model has not been trained yet. "
                                      "Call train() or load_model() first."):
        super().__init__(message)


class InvalidFeatureError(DetectionError):
    """Raised when a feature vector is missing a feature or holds a non-finite value."""


class InvalidReadingError(DetectionError):
    """Raised when a raw sensor reading cannot be parsed."""


class TrainingDataError(DetectionError):
    """Raised when training data is empty or constant in every dimension."""


class TrainingInProgressError(DetectionError):
    """Raised when training is requested while another run is active."""

    def __init__(self, message: str = "Training already in progress"):
        super().__init__(message)


class PersistenceError(DetectionError):
    """Raised when a model cannot be written to or read from disk."""


class ActuatorFault(DetectionError):
    """Raised (or recorded) when the valve actuator fails or never confirms."""

    def __init__(self, message: str, location: Optional[str] = None,
                 context: Optional[Dict[str, Any]] = None):
        ctx = dict(context or {})
        if location is not None:
            ctx["location"] = location
        self.location = location
        super().__init__(message, ctx)
