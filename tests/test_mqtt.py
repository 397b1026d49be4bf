"""Tests for the MQTT valve actuator and decision publisher."""

import json
from unittest.mock import MagicMock, patch

import pytest

from backend.detection.config import MqttConfig
from backend.detection.errors import ActuatorFault
from backend.detection.mqtt_bridge import (
    MqttDecisionPublisher,
    MqttValveActuator,
    create_mqtt_client,
)
from backend.detection.valve import DecisionRecord


@pytest.fixture
def client():
    mock = MagicMock()
    mock.publish.return_value.rc = 0
    return mock


@pytest.fixture
def callbacks():
    return MagicMock(), MagicMock()


@pytest.fixture
def actuator(client, callbacks):
    on_closed, on_error = callbacks
    return MqttValveActuator(client, MqttConfig(), on_closed=on_closed, on_error=on_error)


# =============================================================================
# CLIENT SETUP
# =============================================================================

class TestClient:

    @patch("backend.detection.mqtt_bridge.mqtt.Client")
    def test_connects_and_starts_loop(self, mock_client_cls):
        instance = mock_client_cls.return_value
        client = create_mqtt_client(MqttConfig(host="broker", port=1884))
        assert client is instance
        instance.connect.assert_called_once_with("broker", 1884, 60)
        instance.loop_start.assert_called_once()

    @patch("backend.detection.mqtt_bridge.mqtt.Client")
    def test_unreachable_broker_returns_none(self, mock_client_cls):
        mock_client_cls.return_value.connect.side_effect = ConnectionRefusedError()
        assert create_mqtt_client(MqttConfig()) is None
        mock_client_cls.return_value.loop_start.assert_not_called()


# =============================================================================
# VALVE ACTUATOR
# =============================================================================

class TestValveActuator:

    def test_close_publishes_command(self, actuator, client):
        actuator.close("main")

        topic, payload = client.publish.call_args.args
        assert topic == "pipeline/control/valve/main"
        assert client.publish.call_args.kwargs["qos"] == 1
        body = json.loads(payload)
        assert body["action"] == "CLOSE"
        assert body["location"] == "main"
        assert "timestamp" in body

    def test_close_subscribes_to_ack_once(self, actuator, client):
        actuator.close("main")
        actuator.close("main")
        client.subscribe.assert_called_once_with("pipeline/control/valve/main/ack", qos=1)
        client.message_callback_add.assert_called_once()

    def test_publish_failure_raises(self, actuator, client):
        client.publish.return_value.rc = 4
        with pytest.raises(ActuatorFault) as exc:
            actuator.close("main")
        assert exc.value.location == "main"

    def test_closed_ack(self, actuator, callbacks):
        on_closed, on_error = callbacks
        actuator.handle_ack("main", b'{"status": "closed"}')
        on_closed.assert_called_once_with("main")
        on_error.assert_not_called()

    def test_error_ack(self, actuator, callbacks):
        on_closed, on_error = callbacks
        actuator.handle_ack("main", json.dumps({"status": "ERROR", "reason": "jammed"}))
        on_error.assert_called_once_with("main", "jammed")
        on_closed.assert_not_called()

    @pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b'{"status": "MOVING"}'])
    def test_other_acks_ignored(self, actuator, callbacks, payload):
        actuator.handle_ack("main", payload)
        for callback in callbacks:
            callback.assert_not_called()

    def test_registered_handler_routes_messages(self, actuator, client, callbacks):
        actuator.subscribe("east")
        topic, handler = client.message_callback_add.call_args.args
        assert topic == "pipeline/control/valve/east/ack"

        message = MagicMock()
        message.payload = b'{"status": "CLOSED"}'
        handler(client, None, message)
        callbacks[0].assert_called_once_with("east")


# =============================================================================
# DECISION PUBLISHER
# =============================================================================

class TestDecisionPublisher:

    def test_publishes_record(self, client):
        publisher = MqttDecisionPublisher(client, MqttConfig(decision_topic="alerts"))
        record = DecisionRecord("2024-01-10T10:00:00+00:00", "main", 95.0, "critical",
                                91.67, 80.0, True, "close_initiated")
        publisher(record)

        topic, payload = client.publish.call_args.args
        assert topic == "alerts"
        assert json.loads(payload) == record.to_dict()

    def test_publish_failure_is_logged_not_raised(self, client):
        client.publish.return_value.rc = 4
        publisher = MqttDecisionPublisher(client)
        publisher(DecisionRecord(None, "main", 0.0, "none", 0.0, None, False, "fault"))
        client.publish.assert_called_once()
