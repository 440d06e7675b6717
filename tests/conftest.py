"""Shared fixtures: a paho-like fake client and config builders."""

from __future__ import annotations

import socket
from datetime import datetime, timedelta, timezone
from pathlib import Path

import paho.mqtt.client as mqtt
import pytest

from speedmqtt.config import (
    AppConfig,
    LoggingConfig,
    MqttConfig,
    OoklaConfig,
    PathsConfig,
    SchedulerConfig,
    SpeedtestConfig,
)
from speedmqtt.measurements.models import Measurement


class FakeMessageInfo:
    def __init__(self, rc=mqtt.MQTT_ERR_SUCCESS, acked=True):
        self.rc = rc
        self.acked = acked
        self.wait_timeout = None

    def wait_for_publish(self, timeout=None):
        self.wait_timeout = timeout

    def is_published(self):
        return self.acked


class FakeBroker:
    """Scriptable broker behaviour shared by every client a factory creates."""

    def __init__(self):
        self.refuse_socket = False
        self.stall_socket = False
        self.connack_code = 0
        self.send_connack = True
        self.ack_publishes = True
        self.publish_rc = mqtt.MQTT_ERR_SUCCESS
        self.clients = []
        self.published = []
        self.connect_calls = 0

    def factory(self, client_id):
        client = FakeClient(self, client_id)
        self.clients.append(client)
        return client

    @property
    def measurement_messages(self):
        return [(topic, payload) for topic, payload, _, retain in self.published if not retain]

    def drop_connection(self):
        client = self.clients[-1]
        client.on_disconnect(client, None, None, 7, None)


class FakeSocket:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


class FakeClient:
    def __init__(self, broker, client_id):
        self.broker = broker
        self.client_id = client_id
        self.on_connect = None
        self.on_disconnect = None
        self.connect_timeout = None
        self.credentials = None
        self.loop_running = False
        self.loop_stops = 0
        self.disconnects = 0
        self.sock = None

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def connect(self, host, port, keepalive=60):
        self.broker.connect_calls += 1
        self.endpoint = (host, port, keepalive)
        if self.broker.refuse_socket:
            raise ConnectionRefusedError(111, "Connection refused")
        if self.broker.stall_socket:
            raise socket.timeout("timed out")
        self.sock = FakeSocket()
        return mqtt.MQTT_ERR_SUCCESS

    def socket(self):
        return self.sock

    def loop_start(self):
        self.loop_running = True
        if self.broker.send_connack:
            self.on_connect(self, None, None, self.broker.connack_code, None)

    def loop_stop(self):
        self.loop_running = False
        self.loop_stops += 1

    def publish(self, topic, payload, qos=0, retain=False):
        if self.broker.publish_rc != mqtt.MQTT_ERR_SUCCESS:
            return FakeMessageInfo(rc=self.broker.publish_rc)
        self.broker.published.append((topic, payload, qos, retain))
        return FakeMessageInfo(acked=self.broker.ack_publishes)

    def disconnect(self):
        self.disconnects += 1
        self.on_disconnect(self, None, None, 0, None)
        return mqtt.MQTT_ERR_SUCCESS


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def mqtt_config():
    return MqttConfig(
        host="broker.local",
        port=1883,
        client_id="speedtest-test",
        topic="speedtest/results",
        connect_timeout=0.2,
        publish_timeout=0.2,
        retry_delay=0,
        discovery_prefix=None,
    )


@pytest.fixture
def app_config(tmp_path: Path, mqtt_config):
    return AppConfig(
        root_dir=tmp_path,
        paths=PathsConfig(logs_dir=tmp_path / "logs", bin_dir=tmp_path / "bin"),
        scheduler=SchedulerConfig(interval_seconds=60),
        mqtt=mqtt_config,
        ookla=OoklaConfig(auto_download=False),
        speedtest=SpeedtestConfig(timeout_seconds=5),
        logging=LoggingConfig(level="DEBUG", file=False),
    )


@pytest.fixture
def measurement():
    return Measurement(
        download_mbps=50.0,
        upload_mbps=10.0,
        ping_ms=20.0,
        timestamp=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
    )


class StepClock:
    """Deterministic clock advancing by ``step`` on every call."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.current = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self):
        value = self.current
        self.current = self.current + self.step
        return value


@pytest.fixture
def step_clock():
    return StepClock()
