"""Tests for readings, feature vectors and training samples."""

import math
from datetime import datetime, timezone

import numpy as np
import pandas as pd
import pytest

from backend.detection.errors import InvalidFeatureError, InvalidReadingError
from backend.detection.features import (
    FEATURE_NAMES,
    FeatureVector,
    SensorReading,
    TrainingSample,
    as_feature_vector,
    parse_timestamp,
    samples_from_dataframe,
    samples_to_dataframe,
    samples_to_matrix,
)


def _mapping(**overrides):
    values = {name: float(i) for i, name in enumerate(FEATURE_NAMES)}
    values.update(overrides)
    return values


# =============================================================================
# SENSOR READINGS
# =============================================================================

class TestSensorReading:

    def test_from_dict_parses_fields(self):
        reading = SensorReading.from_dict({
            "location": "zone-a",
            "timestamp": "2024-01-10T10:00:00Z",
            "pressure": "61.5",
            "flow": 39,
            "temperature": 12.0,
            "valve_state": "OPEN",
        })
        assert reading.location == "zone-a"
        assert reading.pressure == 61.5
        assert reading.flow == 39.0
        assert reading.temperature == 12.0
        assert reading.conductivity is None
        assert reading.timestamp == datetime(2024, 1, 10, 10, tzinfo=timezone.utc)

    def test_missing_pressure_rejected(self):
        with pytest.raises(InvalidReadingError):
            SensorReading.from_dict({"flow": 40, "timestamp": 0})

    def test_non_numeric_flow_rejected(self):
        with pytest.raises(InvalidReadingError) as exc:
            SensorReading.from_dict({"pressure": 60, "flow": "abc", "timestamp": 0})
        assert exc.value.context["field"] == "flow"

    def test_default_location(self):
        reading = SensorReading.from_dict({"pressure": 60, "flow": 40, "timestamp": 0})
        assert reading.location == "default"

    def test_epoch_seconds_treats_naive_as_utc(self):
        naive = SensorReading("a", datetime(1970, 1, 1, 0, 1), 60.0, 40.0)
        assert naive.epoch_seconds == 60.0

    def test_parse_timestamp_variants(self):
        assert parse_timestamp(0).year == 1970
        assert parse_timestamp("2024-01-10T10:00:00+00:00").hour == 10
        with pytest.raises(InvalidReadingError):
            parse_timestamp("yesterday")
        with pytest.raises(InvalidReadingError):
            parse_timestamp(float("nan"))


# =============================================================================
# FEATURE VECTORS
# =============================================================================

class TestFeatureVector:

    def test_from_mapping_keeps_order(self):
        vector = FeatureVector.from_mapping(_mapping())
        assert vector.names == FEATURE_NAMES
        assert vector.values == tuple(float(i) for i in range(len(FEATURE_NAMES)))
        assert list(vector.as_dict()) == list(FEATURE_NAMES)
        assert vector["flow"] == 1.0

    def test_missing_feature_rejected(self):
        values = _mapping()
        del values["pressure_flow_ratio"]
        with pytest.raises(InvalidFeatureError) as exc:
            FeatureVector.from_mapping(values)
        assert exc.value.context["missing"] == ["pressure_flow_ratio"]

    def test_misspelled_feature_rejected(self):
        values = _mapping()
        values["presure"] = 1.0
        with pytest.raises(InvalidFeatureError):
            FeatureVector.from_mapping(values)

    @pytest.mark.parametrize("bad", [float("nan"), float("inf"), -math.inf, "x", None])
    def test_non_finite_value_rejected(self, bad):
        with pytest.raises(InvalidFeatureError):
            FeatureVector.from_mapping(_mapping(flow=bad))

    def test_wrong_length_rejected(self):
        with pytest.raises(InvalidFeatureError):
            FeatureVector((1.0, 2.0))

    def test_unknown_key_raises_keyerror(self):
        vector = FeatureVector.from_mapping(_mapping())
        with pytest.raises(KeyError):
            vector["nope"]

    def test_to_array(self):
        arr = FeatureVector.from_mapping(_mapping()).to_array()
        assert arr.dtype == np.float64
        assert arr.shape == (len(FEATURE_NAMES),)


# =============================================================================
# TRAINING SAMPLES / CONVERSIONS
# =============================================================================

class TestTrainingSamples:

    def test_invalid_label_rejected(self):
        vector = FeatureVector.from_mapping(_mapping())
        with pytest.raises(InvalidFeatureError):
            TrainingSample(vector, "leak")

    def test_from_mapping_splits_label(self):
        sample = TrainingSample.from_mapping({**_mapping(), "label": "anomaly"})
        assert sample.label == "anomaly"
        assert len(sample.features) == len(FEATURE_NAMES)

    def test_nan_label_becomes_none(self):
        sample = TrainingSample.from_mapping({**_mapping(), "label": float("nan")})
        assert sample.label is None

    def test_as_feature_vector_rejects_other_ordering(self):
        names = tuple(reversed(FEATURE_NAMES))
        vector = FeatureVector(tuple(range(len(names))), names=names)
        with pytest.raises(InvalidFeatureError):
            as_feature_vector(vector, FEATURE_NAMES)

    def test_matrix_from_mixed_containers(self):
        vector = FeatureVector.from_mapping(_mapping())
        X = samples_to_matrix([vector, TrainingSample(vector), _mapping(label="normal")])
        assert X.shape == (3, len(FEATURE_NAMES))
        assert (X[0] == X[2]).all()

    def test_empty_matrix_shape(self):
        assert samples_to_matrix([]).shape == (0, len(FEATURE_NAMES))

    def test_dataframe_round_trip(self):
        vector = FeatureVector.from_mapping(_mapping())
        samples = [TrainingSample(vector, "normal"), TrainingSample(vector, None)]
        df = samples_to_dataframe(samples)
        assert list(df.columns) == list(FEATURE_NAMES) + ["label"]

        restored = samples_from_dataframe(df)
        assert [s.label for s in restored] == ["normal", None]
        assert restored[0].features.values == vector.values

    def test_dataframe_missing_column(self):
        df = pd.DataFrame({"pressure": [1.0]})
        with pytest.raises(InvalidFeatureError):
            samples_from_dataframe(df)
