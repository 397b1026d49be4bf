"""
mqtt_bridge.py — MQTT Valve Actuation and Decision Broadcast
=============================================================

Connects the detection engine to the field network over MQTT:

    pipeline/control/valve/<location>        ← CLOSE command (engine → actuator)
    pipeline/control/valve/<location>/ack    → {"status": "CLOSED" | "ERROR", ...}
    pipeline/detection/decisions             ← decision records (alerting / audit)

All messages are JSON, published with QoS 1.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import paho.mqtt.client as mqtt

from .config import MqttConfig
from .errors import ActuatorFault

logger = logging.getLogger("detection.mqtt")


def create_mqtt_client(config: MqttConfig = None) -> Optional[mqtt.Client]:
    """
    Create, connect and start an MQTT client.

    Returns:
        The connected client, or None if the broker is unreachable.
    """
    config = config or MqttConfig()
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=config.client_id)
    try:
        client.connect(config.host, config.port, config.keepalive)
    except OSError as e:
        logger.error(f"MQTT connection to {config.host}:{config.port} failed: {e}")
        return None
    client.loop_start()
    logger.info(f"MQTT client connected to {config.host}:{config.port}")
    return client


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MqttValveActuator:
    """
    Valve actuator speaking to the field gateway over MQTT.

    ``close(location)`` publishes the command; acknowledgements on the
    location's ack topic are forwarded to ``on_closed(location)`` or
    ``on_error(location, reason)``.
    """

    def __init__(self, client, config: MqttConfig = None,
                 on_closed=None, on_error=None):
        self.client = client
        self.config = config or MqttConfig()
        self.on_closed = on_closed
        self.on_error = on_error
        self._subscribed = set()

    def command_topic(self, location: str) -> str:
        return f"{self.config.valve_topic_prefix}/{location}"

    def ack_topic(self, location: str) -> str:
        return f"{self.command_topic(location)}/ack"

    def subscribe(self, location: str) -> None:
        """Listen for actuator acknowledgements of one location."""
        if location in self._subscribed:
            return
        topic = self.ack_topic(location)
        self.client.message_callback_add(topic, self._make_ack_handler(location))
        self.client.subscribe(topic, qos=1)
        self._subscribed.add(location)
        logger.info(f"Subscribed to valve acknowledgements on {topic}")

    def _make_ack_handler(self, location: str):
        def handler(client, userdata, message):
            self.handle_ack(location, message.payload)
        return handler

    def handle_ack(self, location: str, payload) -> None:
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            logger.error(f"Malformed valve ack from {location}: {e}")
            return
        if not isinstance(data, dict):
            logger.error(f"Malformed valve ack from {location}: {data!r}")
            return

        status = str(data.get("status", "")).upper()
        if status == "CLOSED":
            logger.info(f"Valve {location} confirmed CLOSED")
            if self.on_closed is not None:
                self.on_closed(location)
        elif status == "ERROR":
            reason = data.get("reason", "actuator reported an error")
            logger.error(f"Valve {location} reported error: {reason}")
            if self.on_error is not None:
                self.on_error(location, reason)
        else:
            logger.debug(f"Ignoring valve ack from {location} with status {status!r}")

    def close(self, location: str) -> None:
        """
        Publish a CLOSE command.

        Raises:
            ActuatorFault: If the command could not be queued.
        """
        self.subscribe(location)
        topic = self.command_topic(location)
        payload = json.dumps({
            "action": "CLOSE",
            "location": location,
            "timestamp": _now_iso(),
            "source": self.config.client_id,
        })
        result = self.client.publish(topic, payload, qos=1)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ActuatorFault(f"Publish to {topic} failed (rc={result.rc})",
                                location=location)
        logger.warning(f"VALVE CONTROL published: topic={topic} payload={payload}")


class MqttDecisionPublisher:
    """Decision sink that broadcasts DecisionRecords as JSON."""

    def __init__(self, client, config: MqttConfig = None):
        self.client = client
        self.topic = (config or MqttConfig()).decision_topic

    def __call__(self, record) -> None:
        payload = json.dumps(record.to_dict())
        result = self.client.publish(self.topic, payload, qos=1)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"Failed to publish decision for {record.location} (rc={result.rc})")
            return
        logger.info(f"Decision published: topic={self.topic} action={record.valve_action}")
