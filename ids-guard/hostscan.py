"""Periodic host checks: watched-file hashes and the connection table.

These run on the scheduler, not on the request path, and hand what they find
to the responder like any other detection.
"""

from __future__ import annotations

import hashlib
import ipaddress
import os
import threading
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Sequence, Tuple

import psutil
import structlog

from clock import Clock, SystemClock
from events import SYSTEM_SOURCE, Detection, Severity

log = structlog.get_logger(__name__)

_CHUNK = 64 * 1024


def file_digest(path: str) -> str:
    sha = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            sha.update(chunk)
    return sha.hexdigest()


class FileIntegrityMonitor:
    """Compares watched files against the SHA-256 baseline taken at start."""

    def __init__(self, paths: Iterable[str]) -> None:
        self.paths = [os.path.abspath(path) for path in paths]
        self.baseline: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.refresh_baseline()

    def _hash(self, path: str) -> Optional[str]:
        try:
            return file_digest(path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            log.warning("integrity_hash_failed", path=path, error=str(exc))
            return None

    def refresh_baseline(self) -> None:
        baseline: Dict[str, str] = {}
        for path in self.paths:
            digest = self._hash(path)
            if digest is not None:
                baseline[path] = digest
        with self._lock:
            self.baseline = baseline
        log.info("integrity_baseline", files=len(baseline), watched=len(self.paths))

    def check(self) -> List[Detection]:
        # one check at a time, so a removal is reported once
        with self._lock:
            return self._check()

    def _check(self) -> List[Detection]:
        findings: List[Detection] = []
        for path in self.paths:
            expected = self.baseline.get(path)
            current = self._hash(path)
            if expected is None:
                # appeared after start: start watching it from here
                if current is not None:
                    self.baseline[path] = current
                continue
            if current == expected:
                continue
            if current is None:
                detail = f"watched file removed: {path}"
                del self.baseline[path]
            else:
                detail = f"watched file modified: {path} (sha256 {expected[:12]} -> {current[:12]})"
                self.baseline[path] = current
            log.warning("file_integrity_violation", path=path, removed=current is None)
            findings.append(Detection(SYSTEM_SOURCE, "FILE_INTEGRITY_VIOLATION", Severity.HIGH, detail))
        return findings


@dataclass(frozen=True)
class Connection:
    remote_ip: str
    local_port: int
    status: str = "ESTABLISHED"


SnapshotProvider = Callable[[], Sequence[Connection]]


def psutil_snapshot() -> List[Connection]:
    """Inbound-looking inet connections with a remote end."""
    try:
        raw = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        log.warning("connection_table_denied")
        return []
    connections: List[Connection] = []
    for conn in raw:
        if not conn.raddr or not conn.laddr:
            continue
        connections.append(Connection(conn.raddr.ip, conn.laddr.port, conn.status or ""))
    return connections


def _is_loopback(ip: str) -> bool:
    try:
        return ipaddress.ip_address(ip).is_loopback
    except ValueError:
        return False


class ConnectionMonitor:
    def __init__(
        self,
        snapshot_provider: Optional[SnapshotProvider] = None,
        portscan_threshold: int = 10,
        portscan_window_seconds: float = 60,
        connection_threshold: int = 100,
        clock: Optional[Clock] = None,
    ) -> None:
        self.snapshot_provider = snapshot_provider or psutil_snapshot
        self.portscan_threshold = portscan_threshold
        self.window = float(portscan_window_seconds)
        self.connection_threshold = connection_threshold
        self.clock = clock or SystemClock()
        self.port_events: Dict[str, Deque[Tuple[float, int]]] = defaultdict(deque)
        self.last_portscan_alert: Dict[str, float] = {}
        self.last_anomaly_alert: Dict[str, float] = {}

    def check(self) -> List[Detection]:
        try:
            connections = list(self.snapshot_provider())
        except Exception:
            log.exception("connection_snapshot_failed")
            return []
        now = self.clock.monotonic()
        connections = [conn for conn in connections if not _is_loopback(conn.remote_ip)]
        findings = self._port_scans(connections, now)
        findings.extend(self._anomalies(connections, now))
        self._forget_idle(now)
        return findings

    def _port_scans(self, connections: List[Connection], now: float) -> List[Detection]:
        window_start = now - self.window
        touched = set()
        for conn in connections:
            self.port_events[conn.remote_ip].append((now, conn.local_port))
            touched.add(conn.remote_ip)

        findings: List[Detection] = []
        for remote in sorted(touched):
            dq = self.port_events[remote]
            # drop old entries
            while dq and dq[0][0] < window_start:
                dq.popleft()
            unique_ports = {port for (_, port) in dq}
            if len(unique_ports) <= self.portscan_threshold:
                continue
            last_alert = self.last_portscan_alert.get(remote)
            if last_alert is not None and last_alert >= window_start:
                continue
            self.last_portscan_alert[remote] = now
            dq.clear()
            detail = f"{len(unique_ports)} distinct local ports within {int(self.window)}s: {sorted(unique_ports)[:20]}"
            log.warning("port_scan_detected", remote=remote, ports=len(unique_ports))
            findings.append(Detection(remote, "PORT_SCANNING", Severity.MEDIUM, detail))
        return findings

    def _anomalies(self, connections: List[Connection], now: float) -> List[Detection]:
        per_remote = Counter(conn.remote_ip for conn in connections)
        findings: List[Detection] = []
        for remote, count in sorted(per_remote.items()):
            if count <= self.connection_threshold:
                continue
            last_alert = self.last_anomaly_alert.get(remote)
            if last_alert is not None and last_alert >= now - self.window:
                continue
            self.last_anomaly_alert[remote] = now
            log.warning("connection_anomaly", remote=remote, connections=count)
            findings.append(
                Detection(remote, "CONNECTION_ANOMALY", Severity.MEDIUM, f"{count} simultaneous connections")
            )
        return findings

    def _forget_idle(self, now: float) -> None:
        window_start = now - self.window
        for remote in [ip for ip, dq in self.port_events.items() if not dq or dq[-1][0] < window_start]:
            del self.port_events[remote]
        for alerts in (self.last_portscan_alert, self.last_anomaly_alert):
            for remote in [ip for ip, at in alerts.items() if at < window_start]:
                del alerts[remote]


class HostMonitor:
    """Runs the host checks and forwards findings to the responder."""

    def __init__(
        self,
        dispatch: Callable[[Detection], Any],
        files: Optional[FileIntegrityMonitor] = None,
        connections: Optional[ConnectionMonitor] = None,
        network_enabled: bool = True,
    ) -> None:
        self.dispatch = dispatch
        self.files = files
        self.connections = connections
        self.network_enabled = network_enabled

    def _forward(self, findings: List[Detection]) -> List[Detection]:
        for finding in findings:
            self.dispatch(finding)
        return findings

    def scan_files(self) -> List[Detection]:
        if self.files is None:
            return []
        return self._forward(self.files.check())

    def scan_network(self) -> List[Detection]:
        if self.connections is None or not self.network_enabled:
            return []
        return self._forward(self.connections.check())
