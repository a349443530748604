"""Runtime configuration.

Every knob can be set through an ``IDS_GUARD_*`` environment variable so the
guard can be tuned without touching code. Bad values fail at startup with
:class:`ConfigurationError`; nothing is validated lazily on the request path.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional, Tuple

ENV_PREFIX = "IDS_GUARD_"

FIREWALL_BACKENDS = ("iptables", "firewalld", "ufw", "windows")

DEFAULT_CLIENT_IP_HEADERS = (
    "X-Forwarded-For",
    "X-Real-IP",
    "Proxy-Client-IP",
    "WL-Proxy-Client-IP",
)

DEFAULT_INTEGRITY_PATHS = (
    "/etc/passwd",
    "/etc/hosts",
    "/etc/ssh/sshd_config",
)


class ConfigurationError(ValueError):
    """Raised for invalid or missing configuration. Fatal at startup."""


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _parse_list(raw: str) -> Tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    # firewall
    firewall_enabled: bool = True
    firewall_backend: str = "iptables"
    auto_unblock: bool = True
    command_timeout_seconds: float = 10.0

    # detection
    ids_enabled: bool = True
    network_monitoring_enabled: bool = True
    client_ip_headers: Tuple[str, ...] = DEFAULT_CLIENT_IP_HEADERS
    rate_limit: int = 100
    rate_window_seconds: int = 60
    rate_block_minutes: int = 10
    admin_bypass: bool = False

    # response
    auto_response_enabled: bool = True
    medium_block_minutes: int = 30
    escalation_threshold: int = 10
    escalation_window: int = 0
    # rules that are recorded and watched but never count toward escalation
    escalation_exempt_rules: Tuple[str, ...] = field(default_factory=tuple)
    stats_retention_hours: int = 24
    incident_retention_hours: int = 72
    recovery_grace_minutes: int = 15

    # host checks
    integrity_paths: Tuple[str, ...] = DEFAULT_INTEGRITY_PATHS
    portscan_threshold: int = 10
    portscan_window_seconds: int = 60
    connection_threshold: int = 100

    # background tasks
    worker_threads: int = 4
    worker_queue_size: int = 64
    sweep_interval_seconds: int = 60
    reconcile_interval_seconds: int = 60
    host_scan_interval_seconds: int = 30
    integrity_interval_seconds: int = 300

    # collaborators
    event_store_path: Optional[str] = None
    max_events: int = 1000
    slack_webhook_url: Optional[str] = None
    dashboard_url: str = "http://localhost:3000"
    admin_audience: str = "security-team"
    emergency_contacts: Tuple[str, ...] = field(default_factory=tuple)
    backup_dir: str = "backups"
    backup_paths: Tuple[str, ...] = field(default_factory=tuple)

    # logging
    environment: str = "production"
    log_level: str = "INFO"
    log_path: Optional[str] = None
    log_max_bytes: int = 5 * 1024 * 1024
    log_backups: int = 1

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        if self.firewall_backend not in FIREWALL_BACKENDS:
            raise ConfigurationError(
                f"unknown firewall backend {self.firewall_backend!r}; expected one of {', '.join(FIREWALL_BACKENDS)}"
            )
        positive = (
            "command_timeout_seconds",
            "rate_limit",
            "rate_window_seconds",
            "rate_block_minutes",
            "medium_block_minutes",
            "escalation_threshold",
            "stats_retention_hours",
            "incident_retention_hours",
            "portscan_threshold",
            "portscan_window_seconds",
            "connection_threshold",
            "sweep_interval_seconds",
            "reconcile_interval_seconds",
            "host_scan_interval_seconds",
            "integrity_interval_seconds",
            "max_events",
        )
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        non_negative = ("escalation_window", "recovery_grace_minutes", "worker_threads", "worker_queue_size", "log_backups")
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")
        if not self.client_ip_headers:
            raise ConfigurationError("client_ip_headers must name at least one header")
        if self.environment not in {"production", "development"}:
            raise ConfigurationError("environment must be 'production' or 'development'")

    @property
    def rate_window(self) -> timedelta:
        return timedelta(seconds=self.rate_window_seconds)

    @property
    def rate_block_ttl(self) -> timedelta:
        return timedelta(minutes=self.rate_block_minutes)

    @property
    def medium_block_ttl(self) -> timedelta:
        return timedelta(minutes=self.medium_block_minutes)

    @property
    def recovery_grace(self) -> timedelta:
        return timedelta(minutes=self.recovery_grace_minutes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "Settings":
        """Build settings from ``IDS_GUARD_<FIELD>`` variables, e.g. ``IDS_GUARD_RATE_LIMIT=200``."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for spec in fields(cls):
            key = ENV_PREFIX + spec.name.upper()
            raw = env.get(key)
            if raw is None:
                continue
            values[spec.name] = _coerce(key, spec.type, raw)
        # the webhook keeps the name the Slack integration has always read
        if "slack_webhook_url" not in values and env.get("SLACK_WEBHOOK_URL"):
            values["slack_webhook_url"] = env["SLACK_WEBHOOK_URL"]
        values.update(overrides)
        return cls(**values)

    def as_dict(self) -> Dict[str, Any]:
        out = {spec.name: getattr(self, spec.name) for spec in fields(self)}
        if out.get("slack_webhook_url"):
            out["slack_webhook_url"] = "***"
        return out


def _coerce(name: str, annotation: Any, raw: str) -> Any:
    kind = str(annotation)
    if kind == "bool":
        return _parse_bool(name, raw)
    if kind.startswith("Tuple"):
        return _parse_list(raw)
    if kind.startswith("Optional"):
        return raw.strip() or None
    try:
        if kind == "int":
            return int(raw)
        if kind == "float":
            return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    return raw.strip()
