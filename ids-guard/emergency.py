"""Emergency incident handling.

An incident moves INITIATED -> IN_PROGRESS -> RECOVERING -> COMPLETED, or to
FAILED from any non-terminal state. The workflow (containment, backup,
isolation, evidence capture, notification) runs on the worker pool; recovery
is a deferred task keyed by incident id and is cancelled as soon as the
incident leaves IN_PROGRESS.

The action log on each incident is the audit trail: append-only, ordered and
frozen once the incident is terminal.
"""

from __future__ import annotations

import enum
import itertools
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from alerts import build_alert
from clock import Clock, SystemClock
from collaborators import BackupCollaborator, IntegrityChecker, IntegrityStatus, Notifier
from events import SYSTEM_SOURCE, Severity
from firewall import Enforcer, FirewallAdapter
from reputation import PERMANENT
from settings import Settings
from workers import DeferredTasks, WorkerPool

log = structlog.get_logger(__name__)


class IncidentStateError(RuntimeError):
    """Raised on an invalid transition or a write to a closed incident."""


class EmergencyType(str, enum.Enum):
    CYBER_ATTACK = "CYBER_ATTACK"
    DATA_BREACH = "DATA_BREACH"
    SYSTEM_COMPROMISE = "SYSTEM_COMPROMISE"
    DDOS_ATTACK = "DDOS_ATTACK"
    MALWARE_INFECTION = "MALWARE_INFECTION"
    UNAUTHORIZED_ACCESS = "UNAUTHORIZED_ACCESS"
    SYSTEM_FAILURE = "SYSTEM_FAILURE"
    NATURAL_DISASTER = "NATURAL_DISASTER"


class IncidentStatus(str, enum.Enum):
    INITIATED = "INITIATED"
    IN_PROGRESS = "IN_PROGRESS"
    RECOVERING = "RECOVERING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (IncidentStatus.COMPLETED, IncidentStatus.FAILED)


# IN_PROGRESS -> COMPLETED is an operator closing the incident by hand
_TRANSITIONS = {
    IncidentStatus.INITIATED: {IncidentStatus.IN_PROGRESS, IncidentStatus.FAILED},
    IncidentStatus.IN_PROGRESS: {IncidentStatus.RECOVERING, IncidentStatus.COMPLETED, IncidentStatus.FAILED},
    IncidentStatus.RECOVERING: {IncidentStatus.COMPLETED, IncidentStatus.FAILED},
    IncidentStatus.COMPLETED: set(),
    IncidentStatus.FAILED: set(),
}

_ISOLATING_TYPES = {EmergencyType.CYBER_ATTACK, EmergencyType.MALWARE_INFECTION}


@dataclass(frozen=True)
class EmergencyTrigger:
    type: EmergencyType
    severity: Severity
    reason: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attacker_ip: Optional[str] = None
    compromised_system: Optional[str] = None
    timeframe: Optional[str] = None

    def requires_backup(self) -> bool:
        return self.severity in (Severity.HIGH, Severity.CRITICAL)

    def requires_network_isolation(self) -> bool:
        return self.type in _ISOLATING_TYPES

    def requires_forensics(self) -> bool:
        return self.severity is Severity.CRITICAL

    def requires_regulatory_notification(self) -> bool:
        return self.type is EmergencyType.DATA_BREACH and self.severity is Severity.CRITICAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.name,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(timespec="seconds"),
            "attacker_ip": self.attacker_ip,
            "compromised_system": self.compromised_system,
            "timeframe": self.timeframe,
        }


class SecurityIncident:
    def __init__(self, incident_id: str, trigger: EmergencyTrigger, clock: Clock) -> None:
        self.id = incident_id
        self.trigger = trigger
        self.clock = clock
        self.created_at = clock.now()
        self._status = IncidentStatus.INITIATED
        self._actions: List[str] = []
        self._artifacts: Dict[str, str] = {}
        self._backup_location: Optional[str] = None
        self._error: Optional[str] = None
        self._isolated = False
        self.closed_at: Optional[datetime] = None
        self._lock = threading.RLock()

    @property
    def status(self) -> IncidentStatus:
        with self._lock:
            return self._status

    @property
    def actions(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._actions)

    @property
    def artifacts(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._artifacts)

    @property
    def backup_location(self) -> Optional[str]:
        return self._backup_location

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def isolated(self) -> bool:
        return self._isolated

    def _ensure_open(self) -> None:
        if self._status.terminal:
            raise IncidentStateError(f"incident {self.id} is {self._status.value}")

    def add_action(self, text: str) -> str:
        with self._lock:
            self._ensure_open()
            entry = f"{self.clock.now().isoformat(timespec='milliseconds')} - {text}"
            self._actions.append(entry)
            return entry

    def can_transition(self, status: IncidentStatus) -> bool:
        with self._lock:
            return status in _TRANSITIONS[self._status]

    def transition(self, status: IncidentStatus) -> IncidentStatus:
        with self._lock:
            previous = self._status
            if status not in _TRANSITIONS[previous]:
                raise IncidentStateError(f"incident {self.id}: {previous.value} -> {status.value} not allowed")
            self._status = status
            if status.terminal:
                self.closed_at = self.clock.now()
            return previous

    def set_backup_location(self, location: str) -> None:
        with self._lock:
            self._ensure_open()
            self._backup_location = location

    def record_artifact(self, kind: str, artifact_id: str) -> None:
        with self._lock:
            self._ensure_open()
            self._artifacts[kind] = artifact_id

    def set_error(self, error: str) -> None:
        with self._lock:
            self._ensure_open()
            self._error = error

    def mark_isolated(self, isolated: bool = True) -> None:
        with self._lock:
            self._ensure_open()
            self._isolated = isolated

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "trigger": self.trigger.to_dict(),
                "status": self._status.value,
                "created_at": self.created_at.isoformat(timespec="seconds"),
                "actions": list(self._actions),
                "backup_location": self._backup_location,
                "error": self._error,
                "isolated": self._isolated,
                "artifacts": dict(self._artifacts),
                "closed_at": self.closed_at.isoformat(timespec="seconds") if self.closed_at else None,
            }


class IncidentHooks:
    """Integration points with systems outside the guard.

    Every method is safe to leave as is. Override the ones your deployment
    can actually act on; capture methods return an artifact id.
    """

    # containment
    def emergency_access_control(self, incident: SecurityIncident) -> None: ...

    def stop_data_transfers(self, incident: SecurityIncident) -> None: ...

    def enable_data_protection_mode(self, incident: SecurityIncident) -> None: ...

    def audit_access(self, incident: SecurityIncident) -> None: ...

    def notify_regulators(self, incident: SecurityIncident) -> None: ...

    def isolate_system(self, incident: SecurityIncident) -> None: ...

    def terminate_suspicious_processes(self, incident: SecurityIncident) -> None: ...

    def reset_credentials(self, incident: SecurityIncident) -> None: ...

    def enforce_mfa(self, incident: SecurityIncident) -> None: ...

    def enhanced_monitoring(self, incident: SecurityIncident) -> None: ...

    # network isolation
    def disconnect_external(self, incident: SecurityIncident) -> None: ...

    def restrict_internal(self, incident: SecurityIncident) -> None: ...

    def establish_secure_channel(self, incident: SecurityIncident) -> None: ...

    # evidence capture
    def capture_memory_dump(self, incident: SecurityIncident) -> str:
        return f"memory-dump-{incident.id}"

    def capture_disk_image(self, incident: SecurityIncident) -> str:
        return f"disk-image-{incident.id}"

    def capture_network_traffic(self, incident: SecurityIncident) -> str:
        return f"network-capture-{incident.id}"

    def archive_logs(self, incident: SecurityIncident) -> str:
        return f"log-archive-{incident.id}"

    # recovery
    def restore_services(self, incident: SecurityIncident) -> None: ...

    def restore_network(self, incident: SecurityIncident) -> None: ...

    def verify_recovery(self, incident: SecurityIncident) -> None: ...


class EmergencyCoordinator:
    def __init__(
        self,
        enforcer: Enforcer,
        firewall: FirewallAdapter,
        backup: BackupCollaborator,
        integrity: IntegrityChecker,
        notifier: Notifier,
        pool: WorkerPool,
        deferred: Optional[DeferredTasks] = None,
        settings: Optional[Settings] = None,
        hooks: Optional[IncidentHooks] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.enforcer = enforcer
        self.firewall = firewall
        self.backup = backup
        self.integrity = integrity
        self.notifier = notifier
        self.pool = pool
        self.clock = clock or SystemClock()
        self.deferred = deferred or DeferredTasks(self.clock)
        self.settings = settings or Settings(firewall_enabled=False)
        self.hooks = hooks or IncidentHooks()
        self._incidents: Dict[str, SecurityIncident] = {}
        self._lock = threading.Lock()
        self._seq = itertools.count(1)

    def _next_id(self) -> str:
        millis = int(self.clock.now().timestamp() * 1000)
        return f"ER-{millis}-{next(self._seq)}"

    # -- public API -----------------------------------------------------------

    def initiate(self, trigger: EmergencyTrigger) -> SecurityIncident:
        """Open an incident and run its workflow in the background."""
        with self._lock:
            incident = SecurityIncident(self._next_id(), trigger, self.clock)
            self._incidents[incident.id] = incident
        incident.add_action(
            f"Emergency response initiated: {trigger.type.value} ({trigger.severity.name}) - {trigger.reason}"
        )
        log.critical(
            "emergency_initiated",
            incident_id=incident.id,
            trigger_type=trigger.type.value,
            severity=trigger.severity.name,
            attacker_ip=trigger.attacker_ip,
        )
        self.pool.submit(self._run, incident)
        return incident

    def get(self, incident_id: str) -> Optional[SecurityIncident]:
        with self._lock:
            return self._incidents.get(incident_id)

    def incidents(self, status: Optional[IncidentStatus] = None) -> List[SecurityIncident]:
        with self._lock:
            found = list(self._incidents.values())
        if status is not None:
            found = [incident for incident in found if incident.status is status]
        return sorted(found, key=lambda incident: incident.created_at)

    def resolve(self, incident_id: str, note: str = "resolved by operator") -> SecurityIncident:
        incident = self._require(incident_id)
        with incident._lock:
            if not incident.can_transition(IncidentStatus.COMPLETED):
                raise IncidentStateError(f"incident {incident.id} cannot be resolved from {incident.status.value}")
            incident.add_action(f"Incident resolved: {note}")
            self._set_status(incident, IncidentStatus.COMPLETED)
        return incident

    def fail(self, incident_id: str, error: str) -> SecurityIncident:
        incident = self._require(incident_id)
        self._fail(incident, error)
        return incident

    def purge(self, retention: timedelta) -> int:
        """Forget incidents that closed more than ``retention`` ago."""
        cutoff = self.clock.now() - retention
        with self._lock:
            stale = [
                incident_id
                for incident_id, incident in self._incidents.items()
                if incident.closed_at is not None and incident.closed_at < cutoff
            ]
            for incident_id in stale:
                del self._incidents[incident_id]
        if stale:
            log.info("incidents_purged", removed=len(stale))
        return len(stale)

    def _require(self, incident_id: str) -> SecurityIncident:
        incident = self.get(incident_id)
        if incident is None:
            raise KeyError(incident_id)
        return incident

    # -- state ----------------------------------------------------------------

    def _set_status(self, incident: SecurityIncident, status: IncidentStatus) -> None:
        previous = incident.transition(status)
        if status is not IncidentStatus.IN_PROGRESS:
            self.deferred.cancel(incident.id)
        log.info("incident_status", incident_id=incident.id, previous=previous.value, status=status.value)

    def _fail(self, incident: SecurityIncident, error: str) -> None:
        with incident._lock:
            if not incident.can_transition(IncidentStatus.FAILED):
                raise IncidentStateError(f"incident {incident.id} is already {incident.status.value}")
            incident.set_error(error)
            incident.add_action(f"Emergency response failed: {error}")
            self._set_status(incident, IncidentStatus.FAILED)
        log.error("incident_failed", incident_id=incident.id, error=error)

    def _step(self, incident: SecurityIncident, description: str, fn: Callable[..., Any], *args: Any) -> bool:
        """Run one workflow step; a failure is written to the action log, never raised."""
        try:
            fn(*args)
        except IncidentStateError:
            raise
        except Exception as exc:
            log.exception("incident_step_failed", incident_id=incident.id, step=description)
            incident.add_action(f"{description} failed: {exc}")
            return False
        incident.add_action(description)
        return True

    # -- workflow -------------------------------------------------------------

    def _run(self, incident: SecurityIncident) -> None:
        trigger = incident.trigger
        try:
            self._set_status(incident, IncidentStatus.IN_PROGRESS)
            self._contain(incident)
            if trigger.requires_backup():
                self._take_backup(incident)
            if trigger.requires_network_isolation():
                self._isolate(incident)
            if trigger.requires_forensics():
                self._collect_evidence(incident)
            self._notify(incident)
            if self.settings.auto_response_enabled:
                self._schedule_recovery(incident)
        except IncidentStateError as exc:
            # closed from outside while the workflow was running
            log.warning("incident_workflow_interrupted", incident_id=incident.id, error=str(exc))
        except Exception as exc:
            log.exception("incident_workflow_failed", incident_id=incident.id)
            try:
                self._fail(incident, str(exc))
            except IncidentStateError:
                pass

    def _contain(self, incident: SecurityIncident) -> None:
        trigger = incident.trigger
        hooks = self.hooks
        kind = trigger.type

        if kind is EmergencyType.CYBER_ATTACK:
            self._block_attacker(incident)
            self._step(incident, "DDoS protection enabled", self.firewall.enable_ddos_protection)
            self._step(incident, "Emergency access control enabled", hooks.emergency_access_control, incident)
        elif kind is EmergencyType.DATA_BREACH:
            self._step(incident, "Data transfers stopped", hooks.stop_data_transfers, incident)
            self._step(incident, "Data protection mode enabled", hooks.enable_data_protection_mode, incident)
            self._step(incident, "Access audit started", hooks.audit_access, incident)
            if trigger.requires_regulatory_notification():
                self._step(incident, "Regulatory notification sent", hooks.notify_regulators, incident)
        elif kind is EmergencyType.SYSTEM_COMPROMISE:
            self._step(incident, f"System isolated: {trigger.compromised_system or 'unknown'}", hooks.isolate_system, incident)
            self._step(incident, "Suspicious processes terminated", hooks.terminate_suspicious_processes, incident)
            self._step(incident, "Credentials reset", hooks.reset_credentials, incident)
            self._step(incident, "MFA enforced", hooks.enforce_mfa, incident)
        elif kind is EmergencyType.DDOS_ATTACK:
            self._step(
                incident,
                "Rate limiting enabled",
                self.firewall.enable_rate_limiting,
                self.settings.rate_limit,
            )
            self._step(incident, "DDoS protection enabled", self.firewall.enable_ddos_protection)
            self._block_attacker(incident)
        elif kind is EmergencyType.MALWARE_INFECTION:
            self._step(incident, f"System isolated: {trigger.compromised_system or 'unknown'}", hooks.isolate_system, incident)
            self._step(incident, "Suspicious processes terminated", hooks.terminate_suspicious_processes, incident)
        elif kind is EmergencyType.UNAUTHORIZED_ACCESS:
            self._block_attacker(incident)
            self._step(incident, "Credentials reset", hooks.reset_credentials, incident)
            self._step(incident, "MFA enforced", hooks.enforce_mfa, incident)
        else:
            self._step(incident, "Enhanced monitoring enabled", hooks.enhanced_monitoring, incident)

    def _block_attacker(self, incident: SecurityIncident) -> None:
        attacker = incident.trigger.attacker_ip
        if not attacker or attacker == SYSTEM_SOURCE:
            incident.add_action("No attacker address to block")
            return
        self._step(
            incident,
            f"Attacker blocked: {attacker}",
            self.enforcer.block,
            attacker,
            f"EMERGENCY {incident.id}: {incident.trigger.type.value}",
            PERMANENT,
        )

    def _take_backup(self, incident: SecurityIncident) -> None:
        try:
            location = self.backup.emergency_backup(f"incident {incident.id}: {incident.trigger.reason}")
        except Exception as exc:
            log.exception("emergency_backup_failed", incident_id=incident.id)
            incident.add_action(f"Emergency backup failed: {exc}")
            return
        incident.set_backup_location(location)
        incident.add_action(f"Emergency backup created: {location}")

    def _isolate(self, incident: SecurityIncident) -> None:
        hooks = self.hooks
        results = [
            self._step(incident, "External network access disconnected", hooks.disconnect_external, incident),
            self._step(incident, "Internal network access restricted", hooks.restrict_internal, incident),
            self._step(incident, "Secure communication channel established", hooks.establish_secure_channel, incident),
        ]
        if any(results):
            incident.mark_isolated()

    def _collect_evidence(self, incident: SecurityIncident) -> None:
        captures = (
            ("memory_dump", self.hooks.capture_memory_dump),
            ("disk_image", self.hooks.capture_disk_image),
            ("network_capture", self.hooks.capture_network_traffic),
            ("log_archive", self.hooks.archive_logs),
        )
        for kind, capture in captures:
            try:
                artifact = capture(incident)
            except Exception as exc:
                log.exception("evidence_capture_failed", incident_id=incident.id, kind=kind)
                incident.add_action(f"Evidence capture failed: {kind}: {exc}")
                continue
            incident.record_artifact(kind, artifact)
            incident.add_action(f"Evidence captured: {kind} -> {artifact}")

    def _notify(self, incident: SecurityIncident) -> None:
        trigger = incident.trigger
        alert = build_alert(
            "emergency",
            {
                "trigger_type": trigger.type.value,
                "incident_id": incident.id,
                "severity": trigger.severity.name,
                "triggered_at": trigger.timestamp.isoformat(timespec="seconds"),
                "reason": trigger.reason,
                "status": incident.status.value,
                "actions": "\n".join(f"  - {action}" for action in incident.actions),
            },
            severity="critical",
        )
        self.notifier.send_emergency_alert(alert["body"])
        for contact in self.settings.emergency_contacts:
            self.notifier.send_alert(contact, alert["title"], alert["body"], "critical")
        incident.add_action("Emergency contacts notified")

    # -- recovery -------------------------------------------------------------

    def _schedule_recovery(self, incident: SecurityIncident) -> None:
        delay = self.settings.recovery_grace.total_seconds()
        with incident._lock:
            if incident.status is not IncidentStatus.IN_PROGRESS:
                return
            incident.add_action(f"Recovery scheduled in {self.settings.recovery_grace_minutes} minutes")
            self.deferred.schedule(incident.id, delay, lambda: self._recover(incident.id))

    def _recover(self, incident_id: str) -> None:
        incident = self.get(incident_id)
        if incident is None or incident.status is not IncidentStatus.IN_PROGRESS:
            return
        try:
            self._run_recovery(incident)
        except IncidentStateError as exc:
            log.warning("incident_recovery_interrupted", incident_id=incident.id, error=str(exc))

    def _run_recovery(self, incident: SecurityIncident) -> None:
        incident.add_action("Recovery started: checking system integrity")
        try:
            report = self.integrity.check_system_integrity()
        except Exception as exc:
            log.exception("integrity_check_failed", incident_id=incident.id)
            self._fail(incident, f"integrity check failed: {exc}")
            return
        if report.overall_status is IntegrityStatus.ERROR:
            self._fail(incident, f"integrity check failed: {report.error}")
            return
        incident.add_action(f"System integrity: {report.overall_status.value}")

        if report.healthy:
            self._set_status(incident, IncidentStatus.RECOVERING)
            self._step(incident, "Services restored", self.hooks.restore_services, incident)
            if incident.isolated:
                self._step(incident, "Network connections restored", self.hooks.restore_network, incident)
                incident.mark_isolated(False)
            self._step(incident, "Recovery verified", self.hooks.verify_recovery, incident)
            incident.add_action("Emergency response completed")
            self._set_status(incident, IncidentStatus.COMPLETED)
            return

        location = incident.backup_location
        if not location:
            self._fail(incident, f"system {report.overall_status.value} and no backup available")
            return
        self._set_status(incident, IncidentStatus.RECOVERING)
        incident.add_action(f"Restoring from backup: {location}")
        try:
            restored = self.backup.restore(location)
        except Exception as exc:
            log.exception("backup_restore_failed", incident_id=incident.id)
            self._fail(incident, f"backup restore failed: {exc}")
            return
        if not restored:
            self._fail(incident, f"backup restore failed: {location}")
            return
        incident.add_action("Recovered from backup")
        self._set_status(incident, IncidentStatus.COMPLETED)
