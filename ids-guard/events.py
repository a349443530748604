"""Severity levels and the records passed between detection and response."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

# source used for findings that do not belong to a client (host checks)
SYSTEM_SOURCE = "SYSTEM"


class Severity(enum.IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def blocking(self) -> bool:
        return self >= Severity.HIGH

    @classmethod
    def parse(cls, value: Any) -> "Severity":
        if isinstance(value, cls):
            return value
        try:
            return cls[str(value).strip().upper()]
        except KeyError:
            raise ValueError(f"unknown severity {value!r}") from None


@dataclass(frozen=True)
class SecurityEvent:
    event_type: str
    source: str
    detail: str
    severity: Severity
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "source": self.source,
            "detail": self.detail,
            "severity": self.severity.name,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
        }


@dataclass(frozen=True)
class Detection:
    """A rule hit handed from detection (or a host check) to the responder."""

    source: str
    rule_name: str
    severity: Severity
    detail: str
