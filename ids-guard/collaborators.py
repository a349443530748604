"""Collaborators the guard talks to but does not own.

The event sink, notifier, backup and integrity checker are small protocols so
the host application can plug in its own implementations. The defaults here
cover a standalone deployment: events in memory or in a JSON file, alerts to
the log and Slack, backups as tarballs, integrity from named probes.

None of these may break the caller. Sinks and notifiers swallow and log their
own failures; the backup and integrity check raise, and the emergency
coordinator records the failure on the incident.
"""

from __future__ import annotations

import enum
import os
import tarfile
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

import structlog

import slack
from clock import Clock, SystemClock
from events import SecurityEvent, Severity
from storage import append_records, read_json_list, write_json_atomic

log = structlog.get_logger(__name__)


# -- event sink ---------------------------------------------------------------


class EventSink(Protocol):
    def record(self, event_type: str, source: str, detail: str, severity: Severity) -> None: ...

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]: ...


class MemoryEventSink:
    """Keeps the newest ``max_events`` events in a ring buffer."""

    def __init__(self, max_events: int = 1000, clock: Optional[Clock] = None) -> None:
        self.clock = clock or SystemClock()
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def record(self, event_type: str, source: str, detail: str, severity: Severity) -> None:
        event = SecurityEvent(event_type, source, detail, severity, self.clock.now())
        self._store(event)
        log.info("security_event", event_type=event_type, source=source, severity=severity.name)

    def _store(self, event: SecurityEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self, event_type: Optional[str] = None) -> List[SecurityEvent]:
        with self._lock:
            snapshot = list(self._events)
        if event_type is None:
            return snapshot
        return [event for event in snapshot if event.event_type == event_type]

    def recent(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            snapshot = list(self._events)[-limit:] if limit > 0 else []
        return [event.to_dict() for event in reversed(snapshot)]


class JsonFileEventSink(MemoryEventSink):
    """Memory sink that also appends each event to a JSON list on disk."""

    def __init__(self, path: str, max_events: int = 1000, clock: Optional[Clock] = None) -> None:
        super().__init__(max_events=max_events, clock=clock)
        self.path = os.path.abspath(path)
        self.max_events = max_events
        self._file_lock = threading.Lock()

    def _store(self, event: SecurityEvent) -> None:
        super()._store(event)
        try:
            with self._file_lock:
                append_records(self.path, [event.to_dict()], self.max_events)
        except OSError as exc:
            log.error("event_store_write_failed", path=self.path, error=str(exc))

    def persisted(self) -> List[Dict[str, Any]]:
        with self._file_lock:
            return read_json_list(self.path)


# -- notifications ------------------------------------------------------------


class Notifier(Protocol):
    def send_alert(self, audience: str, subject: str, body: str, severity: str = "medium") -> None: ...

    def send_emergency_alert(self, body: str) -> None: ...


class LogNotifier:
    def send_alert(self, audience: str, subject: str, body: str, severity: str = "medium") -> None:
        log.warning("security_alert", audience=audience, subject=subject, severity=severity, body=body)

    def send_emergency_alert(self, body: str) -> None:
        log.critical("emergency_alert", body=body)


class SlackNotifier:
    def __init__(self, webhook_url: str, dashboard_url: Optional[str] = None, timeout: float = 3.0) -> None:
        self.webhook_url = webhook_url
        self.dashboard_url = dashboard_url
        self.timeout = timeout

    def send_alert(self, audience: str, subject: str, body: str, severity: str = "medium") -> None:
        payload = slack.build_payload(subject, f"_To: {audience}_\n{body}", severity, self.dashboard_url)
        slack.post(self.webhook_url, payload, self.timeout)

    def send_emergency_alert(self, body: str) -> None:
        payload = slack.build_payload("Emergency security incident", body, "critical", self.dashboard_url)
        slack.post(self.webhook_url, payload, self.timeout)


class CompositeNotifier:
    """Fans out to every channel; one failing channel never blocks the others."""

    def __init__(self, channels: Iterable[Notifier]) -> None:
        self.channels = list(channels)

    def send_alert(self, audience: str, subject: str, body: str, severity: str = "medium") -> None:
        for channel in self.channels:
            try:
                channel.send_alert(audience, subject, body, severity)
            except Exception:
                log.exception("notifier_failed", channel=type(channel).__name__, subject=subject)

    def send_emergency_alert(self, body: str) -> None:
        for channel in self.channels:
            try:
                channel.send_emergency_alert(body)
            except Exception:
                log.exception("notifier_failed", channel=type(channel).__name__, subject="emergency")


# -- backup -------------------------------------------------------------------


class BackupCollaborator(Protocol):
    def emergency_backup(self, reason: str) -> str: ...

    def restore(self, location: str) -> bool: ...


class ArchiveBackup:
    """Tars the configured paths into ``<backup_dir>/emergency_<stamp>/`` with a manifest."""

    def __init__(self, backup_dir: str, paths: Sequence[str], clock: Optional[Clock] = None) -> None:
        self.backup_dir = os.path.abspath(backup_dir)
        self.paths = list(paths)
        self.clock = clock or SystemClock()

    def emergency_backup(self, reason: str) -> str:
        stamp = self.clock.now().strftime("%Y%m%d_%H%M%S_%f")
        target = os.path.join(self.backup_dir, f"emergency_{stamp}")
        os.makedirs(target, exist_ok=True)
        archive = os.path.join(target, "files.tar.gz")
        included: List[str] = []
        missing: List[str] = []
        with tarfile.open(archive, "w:gz") as tar:
            for path in self.paths:
                if os.path.exists(path):
                    tar.add(path, arcname=path.lstrip(os.sep) or path)
                    included.append(path)
                else:
                    missing.append(path)
        write_json_atomic(
            os.path.join(target, "manifest.json"),
            {
                "reason": reason,
                "created_at": self.clock.now().isoformat(),
                "archive": os.path.basename(archive),
                "included": included,
                "missing": missing,
            },
        )
        log.info("emergency_backup_written", location=target, files=len(included), missing=len(missing))
        return target

    def restore(self, location: str) -> bool:
        archive = os.path.join(location, "files.tar.gz")
        if not os.path.exists(archive):
            log.error("backup_restore_missing_archive", location=location)
            return False
        restore_dir = os.path.join(location, "restored")
        with tarfile.open(archive, "r:gz") as tar:
            tar.extractall(restore_dir, filter="data")
        log.info("backup_restored", location=location, restore_dir=restore_dir)
        return True


# -- integrity ----------------------------------------------------------------

CORE_COMPONENTS = frozenset({"database", "application"})


class IntegrityStatus(str, enum.Enum):
    HEALTHY = "HEALTHY"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"
    ERROR = "ERROR"


@dataclass
class IntegrityReport:
    components: Dict[str, bool]
    checked_at: datetime
    error: Optional[str] = None
    overall_status: IntegrityStatus = field(init=False)

    def __post_init__(self) -> None:
        self.overall_status = derive_status(self.components, self.error)

    @property
    def healthy(self) -> bool:
        return self.overall_status is IntegrityStatus.HEALTHY

    def to_dict(self) -> Dict[str, Any]:
        return {
            "components": dict(self.components),
            "overall_status": self.overall_status.value,
            "checked_at": self.checked_at.isoformat(timespec="seconds"),
            "error": self.error,
        }


def derive_status(components: Mapping[str, bool], error: Optional[str] = None) -> IntegrityStatus:
    if error is not None:
        return IntegrityStatus.ERROR
    unhealthy = {name for name, ok in components.items() if not ok}
    if unhealthy & CORE_COMPONENTS:
        return IntegrityStatus.CRITICAL
    if unhealthy:
        return IntegrityStatus.WARNING
    return IntegrityStatus.HEALTHY


class IntegrityChecker(Protocol):
    def check_system_integrity(self) -> IntegrityReport: ...


class ProbeIntegrityChecker:
    """Runs named boolean probes; a probe that raises counts as unhealthy."""

    def __init__(self, probes: Optional[Mapping[str, Callable[[], bool]]] = None, clock: Optional[Clock] = None) -> None:
        self.probes: Dict[str, Callable[[], bool]] = dict(probes or {})
        self.clock = clock or SystemClock()

    def add_probe(self, name: str, probe: Callable[[], bool]) -> None:
        self.probes[name] = probe

    def check_system_integrity(self) -> IntegrityReport:
        results: Dict[str, bool] = {}
        for name, probe in self.probes.items():
            try:
                results[name] = bool(probe())
            except Exception:
                log.exception("integrity_probe_failed", component=name)
                results[name] = False
        report = IntegrityReport(results, self.clock.now())
        log.info("integrity_checked", status=report.overall_status.value, components=results)
        return report
