"""IDS guard service.

Wires the reputation store, detection engine, responder and emergency
coordinator together, checks every inbound request before the host
application sees it, and exposes the security admin API under ``/security``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog

# Flask exposes HTTP endpoints; CORS lets the dashboard poll from the browser
from flask import Blueprint, Flask, current_app, jsonify, make_response, request
from flask_cors import CORS

from clock import Clock, SystemClock
from collaborators import (
    ArchiveBackup,
    BackupCollaborator,
    CompositeNotifier,
    EventSink,
    IntegrityChecker,
    JsonFileEventSink,
    LogNotifier,
    MemoryEventSink,
    Notifier,
    ProbeIntegrityChecker,
    SlackNotifier,
)
from detection import DetectionEngine, RequestInfo
from emergency import (
    EmergencyCoordinator,
    EmergencyTrigger,
    EmergencyType,
    IncidentHooks,
    IncidentStateError,
    IncidentStatus,
)
from events import Severity
from firewall import CommandRunner, Enforcer, FirewallAdapter, build_backend, parse_ip
from hostscan import ConnectionMonitor, FileIntegrityMonitor, HostMonitor, SnapshotProvider
from observability import configure_logging
from reputation import PERMANENT, ReputationStore
from responder import ResponseOrchestrator
from settings import Settings
from workers import DeferredTasks, Scheduler, WorkerPool

log = structlog.get_logger(__name__)

ADMIN_PREFIX = "/security"
EXTENSION_KEY = "ids_guard"


@dataclass
class Guard:
    """Everything one guarded application needs, built once at startup."""

    settings: Settings
    clock: Clock
    store: ReputationStore
    firewall: FirewallAdapter
    enforcer: Enforcer
    events: EventSink
    notifier: Notifier
    pool: WorkerPool
    deferred: DeferredTasks
    coordinator: EmergencyCoordinator
    responder: ResponseOrchestrator
    engine: DetectionEngine
    integrity: IntegrityChecker
    host: HostMonitor
    scheduler: Scheduler = field(default_factory=Scheduler)

    def sweep(self) -> Dict[str, int]:
        expired = self.store.sweep()
        self.firewall.release_expired(expired)
        pruned = self.engine.rate_limiter.prune()
        stats = self.responder.sweep_statistics()
        incidents = self.coordinator.purge(timedelta(hours=self.settings.incident_retention_hours))
        return {"expired": len(expired), "rate_windows": pruned, "statistics": stats, "incidents": incidents}

    def check_integrity(self) -> Dict[str, Any]:
        report = self.integrity.check_system_integrity()
        findings = self.host.scan_files()
        return {"report": report.to_dict(), "file_findings": len(findings)}

    def _register_tasks(self) -> None:
        if self.scheduler.names():
            return
        cfg = self.settings
        self.scheduler.every("sweep", cfg.sweep_interval_seconds, self.sweep)
        self.scheduler.every("reconcile", cfg.reconcile_interval_seconds, lambda: self.firewall.reconcile(self.store))
        self.scheduler.every("host-scan", cfg.host_scan_interval_seconds, self.host.scan_network)
        self.scheduler.every("integrity", cfg.integrity_interval_seconds, self.host.scan_files)

    def start(self) -> None:
        self._register_tasks()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.deferred.cancel_all()
        self.pool.shutdown(wait=False)


def _default_notifier(settings: Settings) -> Notifier:
    channels: List[Notifier] = [LogNotifier()]
    if settings.slack_webhook_url:
        channels.append(SlackNotifier(settings.slack_webhook_url, settings.dashboard_url))
    return CompositeNotifier(channels)


def _writable_dir(path: str) -> bool:
    # a directory that does not exist yet is fine as long as its parent is writable
    target = os.path.abspath(path)
    while not os.path.exists(target):
        parent = os.path.dirname(target)
        if parent == target:
            return False
        target = parent
    return os.path.isdir(target) and os.access(target, os.W_OK)


def _default_integrity(store: ReputationStore, settings: Settings, clock: Clock) -> ProbeIntegrityChecker:
    probes = {
        "reputation_store": lambda: isinstance(store.list(), set),
        "backup_storage": lambda: _writable_dir(settings.backup_dir),
    }
    if settings.event_store_path:
        event_dir = os.path.dirname(os.path.abspath(settings.event_store_path))
        probes["event_store"] = lambda: _writable_dir(event_dir)
    return ProbeIntegrityChecker(probes, clock)


def build_guard(
    settings: Optional[Settings] = None,
    *,
    clock: Optional[Clock] = None,
    runner: Optional[CommandRunner] = None,
    events: Optional[EventSink] = None,
    notifier: Optional[Notifier] = None,
    backup: Optional[BackupCollaborator] = None,
    integrity: Optional[IntegrityChecker] = None,
    hooks: Optional[IncidentHooks] = None,
    pool: Optional[WorkerPool] = None,
    connection_provider: Optional[SnapshotProvider] = None,
) -> Guard:
    """Build a guard; any collaborator can be swapped in, the rest use defaults."""
    settings = settings or Settings.from_env()
    clock = clock or SystemClock()

    store = ReputationStore(clock)
    firewall = FirewallAdapter(build_backend(settings, runner), auto_unblock=settings.auto_unblock)
    enforcer = Enforcer(store, firewall)

    if events is None:
        if settings.event_store_path:
            events = JsonFileEventSink(settings.event_store_path, settings.max_events, clock)
        else:
            events = MemoryEventSink(settings.max_events, clock)
    notifier = notifier or _default_notifier(settings)
    backup = backup or ArchiveBackup(settings.backup_dir, settings.backup_paths, clock)
    integrity = integrity or _default_integrity(store, settings, clock)
    pool = pool or WorkerPool(settings.worker_threads, settings.worker_queue_size)
    deferred = DeferredTasks(clock)

    coordinator = EmergencyCoordinator(
        enforcer,
        firewall,
        backup,
        integrity,
        notifier,
        pool,
        deferred,
        settings=settings,
        hooks=hooks,
        clock=clock,
    )
    responder = ResponseOrchestrator(enforcer, events, notifier, pool, settings, coordinator, clock)
    engine = DetectionEngine(store, responder, settings=settings)

    host = HostMonitor(
        responder.submit,
        files=FileIntegrityMonitor(settings.integrity_paths),
        connections=ConnectionMonitor(
            connection_provider,
            portscan_threshold=settings.portscan_threshold,
            portscan_window_seconds=settings.portscan_window_seconds,
            connection_threshold=settings.connection_threshold,
            clock=clock,
        ),
        network_enabled=settings.network_monitoring_enabled,
    )

    log.info(
        "guard_built",
        firewall_backend=firewall.backend.name,
        rules=engine.rules.names(),
        ids_enabled=settings.ids_enabled,
    )
    return Guard(
        settings=settings,
        clock=clock,
        store=store,
        firewall=firewall,
        enforcer=enforcer,
        events=events,
        notifier=notifier,
        pool=pool,
        deferred=deferred,
        coordinator=coordinator,
        responder=responder,
        engine=engine,
        integrity=integrity,
        host=host,
    )


def request_info() -> RequestInfo:
    return RequestInfo(
        path=request.path,
        query=request.query_string.decode("latin-1"),
        method=request.method,
        headers=dict(request.headers),
        remote_addr=request.remote_addr,
    )


def install(app: Flask, guard: Guard) -> None:
    """Run the detection engine in front of every request of ``app``."""
    app.extensions[EXTENSION_KEY] = guard

    @app.before_request
    def _inspect_request() -> Any:
        if guard.settings.admin_bypass and request.path.startswith(ADMIN_PREFIX):
            return None
        verdict = guard.engine.evaluate(request_info())
        if verdict.allowed:
            return None
        return make_response(jsonify(verdict.to_dict()), verdict.status_code)


def _guard() -> Guard:
    return current_app.extensions[EXTENSION_KEY]


def _error(message: str, status: int = 400) -> Any:
    return jsonify({"status": "error", "message": message}), status


def _int_arg(name: str, default: int) -> int:
    try:
        return int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default


security = Blueprint("security", __name__, url_prefix=ADMIN_PREFIX)


@security.route("/health", methods=["GET"])
def health() -> Any:
    guard = _guard()
    return jsonify(
        {
            "status": "ok",
            "ids_enabled": guard.engine.enabled,
            "firewall_backend": guard.firewall.backend.name,
            "blocked": len(guard.store),
            "open_incidents": len(guard.coordinator.incidents(IncidentStatus.IN_PROGRESS)),
        }
    )


@security.route("/overview", methods=["GET"])
def overview() -> Any:
    guard = _guard()
    return jsonify(
        {
            "detection": guard.engine.metrics_snapshot(),
            "workers": guard.pool.stats(),
            "blocked_ips": sorted(guard.store.list()),
            "enforced_ips": sorted(guard.firewall.enforced()),
            "top_offenders": guard.responder.top_offenders(5),
            "watchlist": guard.responder.watchlist(),
            "advisories": guard.responder.advisories(),
            "incidents": [incident.to_dict() for incident in guard.coordinator.incidents()],
            "settings": guard.settings.as_dict(),
        }
    )


@security.route("/metrics", methods=["GET"])
def metrics() -> Any:
    guard = _guard()
    snapshot = guard.engine.metrics_snapshot()
    snapshot["workers"] = guard.pool.stats()
    return jsonify(snapshot)


@security.route("/firewall/blocked-ips", methods=["GET"])
def blocked_ips() -> Any:
    entries = sorted(_guard().store.entries(), key=lambda entry: entry.created_at)
    return jsonify({"blocked": [entry.to_dict() for entry in entries]})


@security.route("/firewall/block", methods=["POST"])
def block_ip() -> Any:
    payload = request.get_json(silent=True) or {}
    ip = str(payload.get("ip") or "").strip()
    if parse_ip(ip) is None:
        return _error("a valid ip is required")
    reason = str(payload.get("reason") or "manual block")
    minutes = payload.get("duration_minutes")
    ttl = PERMANENT
    if minutes is not None:
        try:
            minutes = int(minutes)
        except (TypeError, ValueError):
            return _error("duration_minutes must be an integer")
        if minutes <= 0:
            return _error("duration_minutes must be positive")
        ttl = timedelta(minutes=minutes)
    entry = _guard().enforcer.block(ip, reason, ttl)
    log.info("admin_block", ip=ip, reason=reason, duration_minutes=minutes)
    return jsonify({"status": "blocked", "entry": entry.to_dict()})


@security.route("/firewall/unblock", methods=["POST"])
def unblock_ip() -> Any:
    payload = request.get_json(silent=True) or {}
    ip = str(payload.get("ip") or "").strip()
    if not ip:
        return _error("ip is required")
    removed = _guard().enforcer.unblock(ip, str(payload.get("reason") or "manual unblock"))
    log.info("admin_unblock", ip=ip, removed=removed is not None)
    return jsonify({"status": "unblocked" if removed else "not_blocked", "ip": ip})


@security.route("/ddos/enable", methods=["POST"])
def enable_ddos() -> Any:
    guard = _guard()
    guard.pool.submit(guard.firewall.enable_ddos_protection)
    return jsonify({"status": "accepted"}), 202


@security.route("/rate-limit/set", methods=["POST"])
def set_rate_limit() -> Any:
    payload = request.get_json(silent=True) or {}
    try:
        threshold = int(payload.get("threshold"))
    except (TypeError, ValueError):
        return _error("threshold must be an integer")
    if threshold <= 0:
        return _error("threshold must be positive")
    guard = _guard()
    guard.pool.submit(guard.firewall.enable_rate_limiting, threshold)
    return jsonify({"status": "accepted", "threshold": threshold}), 202


@security.route("/emergency/trigger", methods=["POST"])
def trigger_emergency() -> Any:
    payload = request.get_json(silent=True) or {}
    try:
        kind = EmergencyType(str(payload.get("type", "")).upper())
        severity = Severity.parse(payload.get("severity", "HIGH"))
    except ValueError as exc:
        return _error(str(exc))
    reason = str(payload.get("reason") or "").strip()
    if not reason:
        return _error("reason is required")
    guard = _guard()
    trigger = EmergencyTrigger(
        type=kind,
        severity=severity,
        reason=reason,
        timestamp=guard.clock.now(),
        attacker_ip=payload.get("attacker_ip"),
        compromised_system=payload.get("compromised_system"),
        timeframe=payload.get("timeframe"),
    )
    incident = guard.coordinator.initiate(trigger)
    return jsonify(incident.to_dict()), 202


@security.route("/incidents", methods=["GET"])
def list_incidents() -> Any:
    status_raw = request.args.get("status")
    status = None
    if status_raw:
        try:
            status = IncidentStatus(status_raw.upper())
        except ValueError:
            return _error(f"unknown status {status_raw!r}")
    incidents = _guard().coordinator.incidents(status)
    return jsonify({"incidents": [incident.to_dict() for incident in incidents]})


@security.route("/incidents/<incident_id>", methods=["GET"])
def get_incident(incident_id: str) -> Any:
    incident = _guard().coordinator.get(incident_id)
    if incident is None:
        return jsonify({"status": "not_found", "id": incident_id}), 404
    return jsonify(incident.to_dict())


@security.route("/incidents/<incident_id>/resolve", methods=["POST"])
def resolve_incident(incident_id: str) -> Any:
    payload = request.get_json(silent=True) or {}
    try:
        incident = _guard().coordinator.resolve(incident_id, str(payload.get("note") or "resolved by operator"))
    except KeyError:
        return jsonify({"status": "not_found", "id": incident_id}), 404
    except IncidentStateError as exc:
        return _error(str(exc), 409)
    return jsonify(incident.to_dict())


@security.route("/integrity/check", methods=["POST"])
def check_integrity() -> Any:
    return jsonify(_guard().check_integrity())


@security.route("/events", methods=["GET"])
def recent_events() -> Any:
    limit = max(0, min(_int_arg("limit", 50), 1000))
    return jsonify({"events": _guard().events.recent(limit)})


@security.route("/statistics/<path:source>", methods=["GET"])
def source_statistics(source: str) -> Any:
    stats = _guard().responder.statistics(source)
    if stats is None:
        return jsonify({"status": "not_found", "source": source}), 404
    return jsonify(stats)


@security.route("/top", methods=["GET"])
def top_offenders() -> Any:
    return jsonify({"top": _guard().responder.top_offenders(_int_arg("n", 10))})


def create_app(
    settings: Optional[Settings] = None,
    guard: Optional[Guard] = None,
    start_background: bool = True,
) -> Flask:
    if guard is None:
        settings = settings or Settings.from_env()
        configure_logging(
            settings.environment,
            settings.log_level,
            settings.log_path,
            settings.log_max_bytes,
            settings.log_backups,
        )
        guard = build_guard(settings)

    app = Flask(__name__)
    CORS(app)  # let the dashboard running on a different port call the admin API
    install(app, guard)
    app.register_blueprint(security)
    if start_background:
        guard.start()
    return app


def main() -> None:
    port = int(os.environ.get("PORT", "8000"))
    create_app().run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
