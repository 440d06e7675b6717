"""Error taxonomy shared by the probe, publisher and scheduler."""

from __future__ import annotations

from enum import Enum


class ProbeErrorKind(Enum):
    UNAVAILABLE = "ProbeUnavailable"
    TIMEOUT = "NetworkTimeout"
    FAILED = "ProbeFailed"
    INVALID_OUTPUT = "InvalidOutput"
    INVALID_READING = "InvalidReading"


class ConnectErrorKind(Enum):
    UNREACHABLE = "Unreachable"
    AUTH_REJECTED = "AuthRejected"
    TIMEOUT = "Timeout"
    REFUSED = "Refused"


class PublishErrorKind(Enum):
    SERIALIZATION = "Serialization"
    NOT_CONNECTED = "NotConnected"
    ACK_TIMEOUT = "AckTimeout"


class SpeedMqttError(Exception):
    """Base class; every error carries a ``kind`` and a human readable detail."""

    def __init__(self, kind: Enum, detail: str = "") -> None:
        self.kind = kind
        self.detail = detail
        super().__init__(str(self))

    def __str__(self) -> str:
        if self.detail:
            return f"{self.kind.value}: {self.detail}"
        return self.kind.value


class ProbeError(SpeedMqttError):
    kind: ProbeErrorKind


class ConnectError(SpeedMqttError):
    kind: ConnectErrorKind


class PublishError(SpeedMqttError):
    kind: PublishErrorKind
