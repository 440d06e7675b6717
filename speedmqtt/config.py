"""Configuration loading helpers for the speedtest MQTT agent."""

from __future__ import annotations

import os
import platform
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Union

import yaml

DEFAULT_CONFIG_NAME = "config.yaml"

OOKLA_DOWNLOAD_BASE = "https://install.speedtest.net/app/cli"
OOKLA_VERSION = "1.2.0"


class QoS(IntEnum):
    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1
    EXACTLY_ONCE = 2

    @classmethod
    def parse(cls, value: Union[int, str, "QoS"]) -> "QoS":
        """Accept 0/1/2, their string forms or enum names like ``at_least_once``."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid QoS level: {value!r}")
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise ValueError(f"Invalid QoS level: {value!r}") from None
        text = str(value).strip()
        if text.isdigit():
            return cls.parse(int(text))
        try:
            return cls[text.upper().replace("-", "_")]
        except KeyError:
            raise ValueError(f"Invalid QoS level: {value!r}") from None


def _default_ookla_urls() -> Dict[str, str]:
    prefix = f"{OOKLA_DOWNLOAD_BASE}/ookla-speedtest-{OOKLA_VERSION}"
    return {
        "linux_x86_64": f"{prefix}-linux-x86_64.tgz",
        "linux_aarch64": f"{prefix}-linux-aarch64.tgz",
        "linux_armv7l": f"{prefix}-linux-armhf.tgz",
        "darwin_x86_64": f"{prefix}-macosx-universal.tgz",
        "darwin_aarch64": f"{prefix}-macosx-universal.tgz",
        "windows_x86_64": f"{prefix}-win64.zip",
    }


@dataclass
class PathsConfig:
    logs_dir: Path
    bin_dir: Path


@dataclass
class SchedulerConfig:
    interval_seconds: float = 60.0


@dataclass
class MqttConfig:
    host: str = "localhost"
    port: int = 1883
    client_id: str = "speedtest"
    username: Optional[str] = None
    password: Optional[str] = None
    topic: str = "speedtest/results"
    qos: QoS = QoS.AT_LEAST_ONCE
    keepalive: int = 60
    connect_timeout: float = 10.0
    publish_timeout: float = 10.0
    connect_retries: int = 3
    retry_delay: float = 1.0
    discovery_prefix: Optional[str] = "homeassistant"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username) and self.password is not None


@dataclass
class OoklaConfig:
    auto_download: bool = True
    binary_name: str = "speedtest"
    urls: Dict[str, str] = field(default_factory=_default_ookla_urls)


@dataclass
class SpeedtestConfig:
    preferred: str = "ookla"
    fallback_module: str = "speedtest"
    server_id: Optional[str] = None
    extra_args: List[str] = field(default_factory=list)
    timeout_seconds: float = 120.0


@dataclass
class LoggingConfig:
    level: str = "INFO"
    file: bool = True


@dataclass
class AppConfig:
    root_dir: Path
    paths: PathsConfig
    scheduler: SchedulerConfig
    mqtt: MqttConfig
    ookla: OoklaConfig
    speedtest: SpeedtestConfig
    logging: LoggingConfig

    @property
    def ookla_platform_key(self) -> str:
        system = platform.system().lower()
        machine = platform.machine().lower()
        # Normalize machine architecture names
        if machine in ("amd64", "x86_64"):
            machine = "x86_64"
        elif machine in ("arm64", "aarch64"):
            machine = "aarch64"
        return f"{system}_{machine}"


# Environment variable -> (section, key) overrides
ENV_OVERRIDES = {
    "CHECK_INTERVAL": ("scheduler", "interval_seconds"),
    "MQTT_ID": ("mqtt", "client_id"),
    "MQTT_HOST": ("mqtt", "host"),
    "MQTT_PORT": ("mqtt", "port"),
    "MQTT_USERNAME": ("mqtt", "username"),
    "MQTT_PASSWORD": ("mqtt", "password"),
    "MQTT_TOPIC": ("mqtt", "topic"),
    "MQTT_QOS": ("mqtt", "qos"),
    "LOG_LEVEL": ("logging", "level"),
}


def _as_path(base: Path, maybe_path: Optional[str]) -> Path:
    if not maybe_path:
        raise ValueError("Path configuration entries cannot be empty")
    return (base / maybe_path).resolve()


def _section(data: dict, name: str) -> dict:
    raw = data.get(name) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"'{name}' section must be a mapping, got {type(raw).__name__}")
    return dict(raw)


def _apply_env(data: dict, environ: Mapping[str, str]) -> dict:
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value is None or value == "":
            continue
        data[section] = _section(data, section)
        data[section][key] = value
    return data


def _build_paths(root_dir: Path, raw: dict) -> PathsConfig:
    return PathsConfig(
        logs_dir=_as_path(root_dir, raw.get("logs_dir", "logs")),
        bin_dir=_as_path(root_dir, raw.get("bin_dir", "bin")),
    )


def _build_scheduler(raw: dict) -> SchedulerConfig:
    config = SchedulerConfig(**raw)
    config.interval_seconds = float(config.interval_seconds)
    if config.interval_seconds <= 0:
        raise ValueError(f"scheduler.interval_seconds must be positive, got {config.interval_seconds}")
    return config


def _build_mqtt(raw: dict) -> MqttConfig:
    config = MqttConfig(**raw)
    config.port = int(config.port)
    if not 0 < config.port < 65536:
        raise ValueError(f"mqtt.port out of range: {config.port}")
    config.qos = QoS.parse(config.qos)
    config.keepalive = int(config.keepalive)
    config.connect_timeout = float(config.connect_timeout)
    config.publish_timeout = float(config.publish_timeout)
    config.connect_retries = max(1, int(config.connect_retries))
    config.retry_delay = float(config.retry_delay)
    if not config.topic:
        raise ValueError("mqtt.topic cannot be empty")
    return config


def _build_ookla(raw: dict) -> OoklaConfig:
    urls = _default_ookla_urls()
    urls.update(raw.pop("urls", None) or {})
    return OoklaConfig(urls=urls, **raw)


def _build_speedtest(raw: dict) -> SpeedtestConfig:
    config = SpeedtestConfig(**raw)
    config.timeout_seconds = float(config.timeout_seconds)
    if config.server_id is not None:
        config.server_id = str(config.server_id)
    return config


def _build_logging(raw: dict) -> LoggingConfig:
    config = LoggingConfig(**raw)
    config.level = str(config.level).upper()
    return config


def _build_section(data: dict, name: str, builder):
    """Run ``builder`` on one section, reporting bad keys or types as ``ValueError``."""
    try:
        return builder(_section(data, name))
    except TypeError as exc:
        raise ValueError(f"invalid '{name}' section: {exc}") from exc


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load configuration from a YAML file, then apply environment overrides.

    An explicitly named file must exist. When no path is given the default
    ``config.yaml`` in the working directory is optional. Malformed sections
    raise ``ValueError`` naming the section.
    """

    environ = os.environ if environ is None else environ
    root_dir = Path(path).resolve().parent if path else Path.cwd()
    source_path = Path(path) if path else root_dir / DEFAULT_CONFIG_NAME

    data: dict = {}
    if source_path.exists():
        with source_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    elif path:
        raise FileNotFoundError(f"Missing configuration file at {source_path}")
    if not isinstance(data, dict):
        raise ValueError(f"{source_path} must contain a mapping of sections")

    data = _apply_env(data, environ)

    return AppConfig(
        root_dir=root_dir,
        paths=_build_section(data, "paths", lambda raw: _build_paths(root_dir, raw)),
        scheduler=_build_section(data, "scheduler", _build_scheduler),
        mqtt=_build_section(data, "mqtt", _build_mqtt),
        ookla=_build_section(data, "ookla", _build_ookla),
        speedtest=_build_section(data, "speedtest", _build_speedtest),
        logging=_build_section(data, "logging", _build_logging),
    )
