"""Shared dataclasses for measurements."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

WIRE_PRECISION = 2


def _validated(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be a number, got {value!r}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"{name} must be finite, got {number}")
    if number < 0:
        raise ValueError(f"{name} must be non-negative, got {number}")
    # -0.0 passes the sign check; publish it as 0.0
    return abs(number)


@dataclass(frozen=True)
class ProbeReading:
    """Raw numbers returned by a probe, before validation."""

    download_mbps: float
    upload_mbps: float
    ping_ms: float
    server: Optional[str] = None


@dataclass(frozen=True)
class Measurement:
    """One validated probe result, ready to be published.

    Construction rejects negative, NaN, infinite or non-numeric values with
    ``ValueError``; nothing is clamped.
    """

    download_mbps: float
    upload_mbps: float
    ping_ms: float
    timestamp: datetime

    def __post_init__(self) -> None:
        for name in ("download_mbps", "upload_mbps", "ping_ms"):
            object.__setattr__(self, name, _validated(name, getattr(self, name)))
        if not isinstance(self.timestamp, datetime):
            raise ValueError(f"timestamp must be a datetime, got {self.timestamp!r}")
        if self.timestamp.tzinfo is None:
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))

    @classmethod
    def from_reading(cls, reading: ProbeReading, timestamp: datetime) -> "Measurement":
        return cls(
            download_mbps=reading.download_mbps,
            upload_mbps=reading.upload_mbps,
            ping_ms=reading.ping_ms,
            timestamp=timestamp,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "download_mbps": round(self.download_mbps, WIRE_PRECISION),
            "upload_mbps": round(self.upload_mbps, WIRE_PRECISION),
            "ping_ms": round(self.ping_ms, WIRE_PRECISION),
            "timestamp": self.timestamp.astimezone(timezone.utc).isoformat(),
        }

    def to_payload(self) -> str:
        """Serialize to the JSON text published on the broker."""
        return json.dumps(self.to_dict(), allow_nan=False)
