"""Tests for the anomaly detector orchestration layer."""

import os
import threading

import joblib
import numpy as np
import pytest

from backend.detection.detector import AnomalyDetector, AnomalyPrediction
from backend.detection.errors import InvalidFeatureError, ModelNotTrainedError, PersistenceError
from backend.detection.features import FEATURE_NAMES, FeatureVector, TrainingSample
from backend.detection.forest import IsolationForestModel
from conftest import gaussian_samples


def _extreme_samples(n, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.choice([-1.0, 1.0], size=(n, len(FEATURE_NAMES))) * 40.0
    return [TrainingSample(FeatureVector(tuple(row)), "anomaly") for row in X]


@pytest.fixture
def detector(small_detector_config):
    return AnomalyDetector(small_detector_config)


@pytest.fixture
def trained(detector, normal_samples):
    assert detector.train(normal_samples).success
    return detector


# =============================================================================
# TRAINING
# =============================================================================

class TestTraining:

    def test_train_success(self, detector, normal_samples):
        result = detector.train(normal_samples)
        assert result.success is True
        assert result.tree_count == 40
        assert result.features == FEATURE_NAMES
        assert result.training_time_ms >= 0
        assert result.error is None
        assert detector.is_trained

    def test_labels_do_not_affect_trees(self, small_detector_config, normal_samples):
        unlabeled = [TrainingSample(s.features, None) for s in normal_samples]
        first = AnomalyDetector(small_detector_config)
        second = AnomalyDetector(small_detector_config)
        first.train(normal_samples)
        second.train(unlabeled)
        assert first.model.trees == second.model.trees

    def test_same_seed_same_predictions(self, small_detector_config, normal_samples):
        first = AnomalyDetector(small_detector_config)
        second = AnomalyDetector(small_detector_config)
        first.train(normal_samples, seed=99)
        second.train(normal_samples, seed=99)
        assert first.model.trees == second.model.trees
        for sample in normal_samples[:20]:
            assert first.predict(sample) == second.predict(sample)

    def test_empty_data_fails(self, detector):
        result = detector.train([])
        assert result.success is False
        assert "No training data" in result.error
        assert not detector.is_trained

    def test_degenerate_data_keeps_previous_model(self, trained, normal_samples):
        sample = normal_samples[0]
        before = trained.predict(sample)
        constant = [TrainingSample(FeatureVector((1.0,) * len(FEATURE_NAMES)))] * 50
        result = trained.train(constant)
        assert result.success is False
        assert trained.is_trained
        assert trained.predict(sample) == before

    def test_malformed_sample_fails_training(self, detector, normal_samples):
        bad = {name: 1.0 for name in FEATURE_NAMES[:-1]}
        result = detector.train(list(normal_samples) + [bad])
        assert result.success is False
        assert not detector.is_trained


# =============================================================================
# PREDICTION
# =============================================================================

class TestPrediction:

    def test_predict_before_training(self, detector, normal_samples):
        with pytest.raises(ModelNotTrainedError):
            detector.predict(normal_samples[0])

    def test_prediction_fields(self, trained, normal_samples):
        prediction = trained.predict(normal_samples[0])
        assert isinstance(prediction, AnomalyPrediction)
        assert 0.0 <= prediction.anomaly_score <= 100.0
        assert 0.0 <= prediction.confidence <= 100.0
        assert prediction.path_length > 0
        assert prediction.is_anomaly == (prediction.anomaly_score > 50.0)

    def test_confidence_is_distance_from_midpoint(self, trained, normal_samples):
        prediction = trained.predict(normal_samples[1])
        expected = abs(prediction.anomaly_score - 50.0) * 2.0
        assert prediction.confidence == pytest.approx(expected, abs=0.05)

    def test_extreme_vector_is_anomaly(self, trained):
        prediction = trained.predict(_extreme_samples(1)[0])
        assert prediction.is_anomaly
        assert prediction.anomaly_score > 60.0

    def test_accepts_mapping(self, trained, normal_samples):
        as_mapping = normal_samples[2].features.as_dict()
        assert trained.predict(as_mapping) == trained.predict(normal_samples[2])

    def test_missing_feature(self, trained):
        with pytest.raises(InvalidFeatureError):
            trained.predict({name: 0.0 for name in FEATURE_NAMES[1:]})

    def test_nan_feature(self, trained):
        values = {name: 0.0 for name in FEATURE_NAMES}
        values["flow"] = float("nan")
        with pytest.raises(InvalidFeatureError):
            trained.predict(values)

    def test_wrong_feature_order(self, trained):
        names = tuple(reversed(FEATURE_NAMES))
        with pytest.raises(InvalidFeatureError):
            trained.predict(FeatureVector((0.0,) * len(names), names=names))

    def test_scores_bounded_for_wild_inputs(self, trained):
        rng = np.random.default_rng(1)
        for row in rng.normal(size=(50, len(FEATURE_NAMES))) * rng.choice([1, 1e3, 1e9], 50)[:, None]:
            prediction = trained.predict(FeatureVector(tuple(row)))
            assert 0.0 <= prediction.anomaly_score <= 100.0
            assert 0.0 <= prediction.confidence <= 100.0


# =============================================================================
# BATCH EVALUATION AND METRICS
# =============================================================================

class TestBatchAndMetrics:

    def test_metrics_empty_before_evaluation(self, trained):
        metrics = trained.calculate_metrics()
        assert metrics["evaluated_samples"] == 0
        assert metrics["f1_score"] == 0.0

    def test_batch_without_labels(self, trained, normal_samples):
        result = trained.predict_batch(normal_samples[:10])
        assert len(result.predictions) == 10
        assert result.confusion_matrix is None
        assert [p["index"] for p in result.predictions] == list(range(10))

    def test_batch_with_labels(self, trained):
        normals = gaussian_samples(60, seed=21)
        anomalies = _extreme_samples(15, seed=2)
        samples = normals + anomalies
        labels = [s.label for s in samples]

        result = trained.predict_batch(samples, labels)
        cm = result.confusion_matrix
        assert sum(cm.values()) == 75
        assert cm["tp"] + cm["fn"] == 15
        assert cm["tp"] == 15

        metrics = trained.calculate_metrics()
        assert metrics["confusion_matrix"] == cm
        assert metrics["evaluated_samples"] == 75
        assert metrics["recall"] == 100.0
        assert metrics["accuracy"] == round((cm["tp"] + cm["tn"]) / 75 * 100, 2)
        assert metrics["specificity"] == round(cm["tn"] / (cm["tn"] + cm["fp"]) * 100, 2)

    def test_unlabeled_entries_are_skipped(self, trained):
        samples = _extreme_samples(4)
        result = trained.predict_batch(samples, ["anomaly", None, "anomaly", None])
        assert sum(result.confusion_matrix.values()) == 2

    def test_unknown_labels_are_skipped(self, trained):
        samples = _extreme_samples(4)
        result = trained.predict_batch(samples, ["anomaly", "leak", "anomaly", None])
        cm = result.confusion_matrix
        assert sum(cm.values()) == 2
        assert cm["tn"] + cm["fp"] == 0
        assert trained.calculate_metrics()["evaluated_samples"] == 2

    def test_label_length_mismatch(self, trained, normal_samples):
        with pytest.raises(ValueError):
            trained.predict_batch(normal_samples[:3], ["normal"])

    def test_model_info(self, trained):
        info = trained.get_model_info()
        assert info["is_trained"] is True
        assert info["tree_count"] == 40
        assert info["features"] == list(FEATURE_NAMES)
        assert set(info["feature_statistics"]) == set(FEATURE_NAMES)
        assert info["metadata"]["seed"] == 7

    def test_model_info_untrained(self, detector):
        assert detector.get_model_info() == {
            "is_trained": False,
            "is_training": False,
            "anomaly_cutoff": 50.0,
        }


# =============================================================================
# PERSISTENCE
# =============================================================================

class TestPersistence:

    def test_save_before_training(self, detector):
        with pytest.raises(ModelNotTrainedError):
            detector.save_model()

    def test_round_trip_predictions(self, trained, normal_samples, tmp_path):
        path = str(tmp_path / "model.joblib")
        queries = normal_samples[:25] + _extreme_samples(5)
        before = [trained.predict(s) for s in queries]

        assert trained.save_model(path) is True
        trained.reset()
        assert not trained.is_trained
        assert trained.load_model(path) is True

        assert [trained.predict(s) for s in queries] == before

    def test_saved_document_layout(self, trained, tmp_path):
        path = str(tmp_path / "model.joblib")
        trained.save_model(path)
        doc = joblib.load(path)
        for key in ("treeCount", "trees", "featureOrder", "featureMeans",
                    "featureStdDevs", "isTrained", "metadata"):
            assert key in doc
        assert doc["metadata"]["nTrees"] == 40
        assert "metrics" in doc["metadata"]

    def test_default_path_from_config(self, trained, small_detector_config):
        trained.save_model()
        assert os.path.exists(small_detector_config.model_path)

    def test_load_missing_file(self, detector, tmp_path):
        with pytest.raises(PersistenceError):
            detector.load_model(str(tmp_path / "missing.joblib"))

    def test_failed_load_keeps_current_model(self, trained, normal_samples, tmp_path):
        path = tmp_path / "corrupt.joblib"
        path.write_bytes(b"not a joblib file")
        before = trained.predict(normal_samples[0])
        with pytest.raises(PersistenceError):
            trained.load_model(str(path))
        assert trained.predict(normal_samples[0]) == before

    def test_malformed_document_rejected(self, trained, normal_samples, tmp_path):
        path = str(tmp_path / "bad.joblib")
        joblib.dump({"isTrained": True, "treeCount": 1}, path)
        before = trained.predict(normal_samples[0])
        with pytest.raises(PersistenceError):
            trained.load_model(path)
        assert trained.predict(normal_samples[0]) == before

    def test_corrupted_tree_rejected_on_load(self, trained, normal_samples, tmp_path):
        path = str(tmp_path / "cyclic.joblib")
        doc = trained.model.to_document()
        doc["trees"][0]["left"][0] = 0
        doc["trees"][0]["right"][0] = 0
        joblib.dump(doc, path)
        before = trained.predict(normal_samples[0])
        with pytest.raises(PersistenceError):
            trained.load_model(path)
        assert trained.predict(normal_samples[0]) == before

    def test_failed_save_leaves_existing_file(self, trained, tmp_path, monkeypatch):
        path = tmp_path / "model.joblib"
        trained.save_model(str(path))
        original = path.read_bytes()

        def broken_dump(obj, filename):
            with open(filename, "wb") as fh:
                fh.write(b"partial")
            raise OSError("disk full")

        monkeypatch.setattr("backend.detection.utils.joblib.dump", broken_dump)
        with pytest.raises(PersistenceError):
            trained.save_model(str(path))
        assert path.read_bytes() == original
        assert [p.name for p in tmp_path.iterdir()] == ["model.joblib"]


# =============================================================================
# CONCURRENCY
# =============================================================================

class TestConcurrency:

    def test_train_rejected_while_training(self, trained, normal_samples, monkeypatch):
        started = threading.Event()
        release = threading.Event()
        original_fit = IsolationForestModel.fit

        def slow_fit(*args, **kwargs):
            started.set()
            release.wait(10)
            return original_fit(*args, **kwargs)

        monkeypatch.setattr(IsolationForestModel, "fit", slow_fit)
        sample = normal_samples[0]
        before = trained.predict(sample)

        future = trained.train_in_background(normal_samples, seed=1234)
        try:
            assert started.wait(10)
            assert trained.is_training

            rejected = trained.train(normal_samples)
            assert rejected.success is False
            assert "in progress" in rejected.error

            also_rejected = trained.train_in_background(normal_samples)
            assert also_rejected.done()
            assert also_rejected.result().success is False

            # serving continues against the previous snapshot
            assert trained.predict(sample) == before
        finally:
            release.set()

        result = future.result(timeout=60)
        assert result.success is True
        assert not trained.is_training
        assert trained.model.metadata["seed"] == 1234
        trained.shutdown()

    def test_concurrent_predictions_see_complete_models(self, trained, normal_samples):
        errors = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                try:
                    prediction = trained.predict(normal_samples[5])
                    assert 0.0 <= prediction.anomaly_score <= 100.0
                except Exception as e:
                    errors.append(e)
                    return

        threads = [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        try:
            for seed in (1, 2):
                assert trained.train(normal_samples, seed=seed).success
        finally:
            stop.set()
            for t in threads:
                t.join(timeout=10)
        assert errors == []
