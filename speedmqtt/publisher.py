"""MQTT publisher: connection lifecycle, QoS delivery and inline reconnect."""

from __future__ import annotations

import json
import logging
import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

import paho.mqtt.client as mqtt

from .config import MqttConfig, QoS
from .errors import ConnectError, ConnectErrorKind, PublishError, PublishErrorKind
from .measurements.models import Measurement

LOGGER = logging.getLogger(__name__)

# CONNACK codes for bad credentials / not authorized (MQTT 3.1.1 and MQTT 5)
AUTH_REJECTED_CODES = {4, 5, 134, 135}

DISCOVERY_SENSORS = (
    ("download", "download_mbps", "Mbit/s", "data_rate"),
    ("upload", "upload_mbps", "Mbit/s", "data_rate"),
    ("ping", "ping_ms", "ms", "duration"),
)


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class PublishOutcome:
    success: bool
    error: Optional[PublishError] = None

    @property
    def error_kind(self) -> Optional[PublishErrorKind]:
        return self.error.kind if self.error else None

    @classmethod
    def ok(cls) -> "PublishOutcome":
        return cls(success=True)

    @classmethod
    def failed(cls, kind: PublishErrorKind, detail: str = "") -> "PublishOutcome":
        return cls(success=False, error=PublishError(kind, detail))


def default_client_factory(client_id: str) -> mqtt.Client:
    return mqtt.Client(
        mqtt.CallbackAPIVersion.VERSION2,
        client_id=client_id,
        clean_session=True,
        reconnect_on_failure=False,
    )


def _reason_value(reason_code: Any) -> int:
    return int(getattr(reason_code, "value", reason_code))


def _is_failure(reason_code: Any) -> bool:
    failure = getattr(reason_code, "is_failure", None)
    if failure is not None:
        return bool(failure)
    return _reason_value(reason_code) != 0


class MqttPublisher:
    """Owns one logical broker connection.

    ``connect`` is blocking and raises ``ConnectError``. ``publish`` never
    raises: every failure comes back as a ``PublishOutcome``. When the
    connection is down, ``publish`` makes exactly one reconnect attempt before
    giving up with ``NOT_CONNECTED``.
    """

    def __init__(
        self,
        config: MqttConfig,
        client_factory: Callable[[str], Any] = default_client_factory,
    ) -> None:
        self.config = config
        self.client_factory = client_factory
        self.state = ConnectionState.DISCONNECTED
        self.reconnect_attempts = 0
        self._client: Optional[Any] = None
        self._endpoint: Optional[tuple] = None
        self._connack = threading.Event()
        self._connack_code: Any = None

    def __enter__(self) -> "MqttPublisher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    # paho callbacks run on the network thread
    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        self._connack_code = reason_code
        if not _is_failure(reason_code):
            self.state = ConnectionState.CONNECTED
        self._connack.set()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if self.state is ConnectionState.CONNECTED:
            LOGGER.warning("Connection to MQTT broker lost (%s)", reason_code)
        self.state = ConnectionState.DISCONNECTED

    def _new_client(self, client_id: str) -> Any:
        client = self.client_factory(client_id)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.connect_timeout = self.config.connect_timeout
        if self.config.has_credentials:
            client.username_pw_set(self.config.username, self.config.password)
        return client

    def connect(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        client_id: Optional[str] = None,
    ) -> None:
        """Connect and wait for the broker's CONNACK."""
        host = host or self.config.host
        port = port or self.config.port
        client_id = client_id or self.config.client_id
        self._endpoint = (host, port, client_id)
        self._open()

    def connect_with_retries(self, attempts: Optional[int] = None, delay: Optional[float] = None) -> None:
        """Startup helper: retry ``connect`` and re-raise the last failure."""
        attempts = attempts or self.config.connect_retries
        delay = self.config.retry_delay if delay is None else delay
        for attempt in range(1, attempts + 1):
            try:
                self.connect()
                return
            except ConnectError as exc:
                if attempt == attempts:
                    raise
                LOGGER.warning(
                    "MQTT connect to %s:%s failed (attempt %s/%s): %s",
                    self.config.host,
                    self.config.port,
                    attempt,
                    attempts,
                    exc,
                )
                time.sleep(delay)

    def _open(self) -> None:
        host, port, client_id = self._endpoint
        self._release_client()
        self._connack.clear()
        self._connack_code = None
        self.state = ConnectionState.CONNECTING

        client = self._new_client(client_id)
        self._client = client
        try:
            client.connect(host, port, keepalive=self.config.keepalive)
        except (socket.timeout, TimeoutError) as exc:
            self._release_client()
            self.state = ConnectionState.DISCONNECTED
            raise ConnectError(
                ConnectErrorKind.TIMEOUT,
                f"{host}:{port} did not accept a connection within {self.config.connect_timeout:g}s",
            ) from exc
        except OSError as exc:
            self._release_client()
            self.state = ConnectionState.DISCONNECTED
            raise ConnectError(ConnectErrorKind.UNREACHABLE, f"{host}:{port}: {exc}") from exc
        client.loop_start()

        if not self._connack.wait(self.config.connect_timeout):
            self._release_client()
            self.state = ConnectionState.DISCONNECTED
            raise ConnectError(
                ConnectErrorKind.TIMEOUT,
                f"no CONNACK from {host}:{port} within {self.config.connect_timeout:g}s",
            )

        if _is_failure(self._connack_code):
            code = self._connack_code
            self._release_client()
            self.state = ConnectionState.DISCONNECTED
            kind = (
                ConnectErrorKind.AUTH_REJECTED
                if _reason_value(code) in AUTH_REJECTED_CODES
                else ConnectErrorKind.REFUSED
            )
            raise ConnectError(kind, f"{host}:{port} refused connection: {code}")

        LOGGER.info("Connected to MQTT broker %s:%s as %s", host, port, client_id)
        self._publish_discovery()

    def _reconnect(self) -> Optional[str]:
        """Single inline reconnect attempt; returns the failure reason, if any."""
        if self._endpoint is None:
            return "publish called before connect"
        self.reconnect_attempts += 1
        LOGGER.info("MQTT connection is %s, reconnecting", self.state.value)
        try:
            self._open()
        except ConnectError as exc:
            return f"reconnect failed: {exc}"
        return None

    def publish(self, topic: str, measurement: Measurement, qos: QoS = QoS.AT_LEAST_ONCE) -> PublishOutcome:
        try:
            payload = measurement.to_payload()
        except (TypeError, ValueError) as exc:
            LOGGER.error("Could not serialize measurement %r: %s", measurement, exc)
            return PublishOutcome.failed(PublishErrorKind.SERIALIZATION, str(exc))

        if not self.is_connected:
            reason = self._reconnect()
            if reason is not None:
                return PublishOutcome.failed(PublishErrorKind.NOT_CONNECTED, reason)

        return self._deliver(topic, payload, QoS.parse(qos), retain=False)

    def _deliver(self, topic: str, payload: str, qos: QoS, retain: bool) -> PublishOutcome:
        info = self._client.publish(topic, payload, qos=int(qos), retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            return PublishOutcome.failed(
                PublishErrorKind.NOT_CONNECTED, f"client rejected publish to {topic}: rc={info.rc}"
            )
        if qos is QoS.AT_MOST_ONCE:
            return PublishOutcome.ok()

        try:
            info.wait_for_publish(self.config.publish_timeout)
        except (RuntimeError, ValueError) as exc:
            return PublishOutcome.failed(PublishErrorKind.NOT_CONNECTED, str(exc))
        if not info.is_published():
            return PublishOutcome.failed(
                PublishErrorKind.ACK_TIMEOUT,
                f"no acknowledgment for {topic} within {self.config.publish_timeout:g}s",
            )
        LOGGER.debug("Published to %s: %s", topic, payload)
        return PublishOutcome.ok()

    def discovery_messages(self):
        """Home Assistant MQTT discovery configs for the three sensors."""
        prefix = self.config.discovery_prefix
        node_id = self.config.client_id
        for name, field, unit, device_class in DISCOVERY_SENSORS:
            topic = f"{prefix}/sensor/{node_id}/{name}/config"
            message = {
                "name": f"Speedtest {name}",
                "state_topic": self.config.topic,
                "value_template": f"{{{{ value_json.{field} }}}}",
                "unit_of_measurement": unit,
                "device_class": device_class,
                "state_class": "measurement",
                "unique_id": f"{node_id}_{name}",
                "device": {
                    "name": "Speedtest",
                    "identifiers": [f"{node_id}_device"],
                },
            }
            yield topic, json.dumps(message)

    def _publish_discovery(self) -> None:
        if not self.config.discovery_prefix:
            return
        for topic, payload in self.discovery_messages():
            outcome = self._deliver(topic, payload, QoS.AT_LEAST_ONCE, retain=True)
            if outcome.success:
                LOGGER.debug("Published MQTT discovery message to %s", topic)
            else:
                LOGGER.warning("Failed to publish MQTT discovery message to %s: %s", topic, outcome.error)

    def _describe_endpoint(self) -> str:
        if self._endpoint is None:
            return "(never connected)"
        host, port, _ = self._endpoint
        return f"{host}:{port}"

    def _release_client(self) -> None:
        """Stop the network loop and close whatever socket the client still holds."""
        client, self._client = self._client, None
        if client is None:
            return
        try:
            client.loop_stop()
        finally:
            sock = client.socket()
            if sock is not None:
                sock.close()

    def shutdown(self) -> None:
        """Disconnect cleanly if connected and always release the client."""
        client = self._client
        if client is None:
            self.state = ConnectionState.DISCONNECTED
            return
        try:
            if self.is_connected:
                self.state = ConnectionState.DISCONNECTED
                client.disconnect()
                LOGGER.info("Disconnected from MQTT broker %s", self._describe_endpoint())
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Error while disconnecting from MQTT broker: %s", exc)
        finally:
            try:
                self._release_client()
            finally:
                self.state = ConnectionState.DISCONNECTED
