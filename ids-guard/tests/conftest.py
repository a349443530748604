from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from clock import ManualClock
from collaborators import IntegrityReport, MemoryEventSink
from firewall import Enforcer, FirewallAdapter, IptablesBackend, NullBackend
from reputation import ReputationStore
from settings import Settings
from workers import WorkerPool


def _mentions(argv: Sequence[str], token: str) -> bool:
    return any(token in part for part in argv)


class RecordingRunner:
    """Stands in for subprocess: remembers argv and returns canned exit codes.

    ``codes`` maps a token (e.g. ``"-C"``) to the exit code returned for any
    command with an argument containing it; everything else gets ``default``.
    """

    def __init__(self, default: int = 0, codes: Optional[Dict[str, int]] = None) -> None:
        self.default = default
        self.codes = dict(codes or {})
        self.calls: List[List[str]] = []

    def __call__(self, argv: Sequence[str], timeout: float) -> int:
        self.calls.append(list(argv))
        for token, code in self.codes.items():
            if _mentions(argv, token):
                return code
        return self.default

    def commands_with(self, token: str) -> List[List[str]]:
        return [argv for argv in self.calls if _mentions(argv, token)]


class RecordingNotifier:
    def __init__(self) -> None:
        self.alerts: List[Tuple[str, str, str, str]] = []
        self.emergencies: List[str] = []

    def send_alert(self, audience: str, subject: str, body: str, severity: str = "medium") -> None:
        self.alerts.append((audience, subject, body, severity))

    def send_emergency_alert(self, body: str) -> None:
        self.emergencies.append(body)


class RecordingBackup:
    def __init__(self, location: str = "/backups/emergency_test", fail: bool = False, restore_ok: bool = True) -> None:
        self.location = location
        self.fail = fail
        self.restore_ok = restore_ok
        self.reasons: List[str] = []
        self.restored: List[str] = []

    def emergency_backup(self, reason: str) -> str:
        self.reasons.append(reason)
        if self.fail:
            raise OSError("backup volume unavailable")
        return self.location

    def restore(self, location: str) -> bool:
        self.restored.append(location)
        return self.restore_ok


class StaticIntegrity:
    def __init__(self, clock: ManualClock, components: Optional[Dict[str, bool]] = None, error: Optional[str] = None) -> None:
        self.clock = clock
        self.components = {"database": True, "application": True} if components is None else components
        self.error = error
        self.checks = 0

    def check_system_integrity(self) -> IntegrityReport:
        self.checks += 1
        if self.error == "raise":
            raise RuntimeError("integrity service unreachable")
        return IntegrityReport(dict(self.components), self.clock.now(), self.error)


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture()
def store(clock: ManualClock) -> ReputationStore:
    return ReputationStore(clock)


@pytest.fixture()
def inline_pool() -> WorkerPool:
    return WorkerPool(max_workers=0)


@pytest.fixture()
def runner() -> RecordingRunner:
    # "-C" is the iptables existence check: report "not present" by default
    return RecordingRunner(codes={"-C": 1})


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def backup() -> RecordingBackup:
    return RecordingBackup()


@pytest.fixture()
def integrity(clock: ManualClock) -> StaticIntegrity:
    return StaticIntegrity(clock)


@pytest.fixture()
def events(clock: ManualClock) -> MemoryEventSink:
    return MemoryEventSink(max_events=500, clock=clock)


@pytest.fixture()
def settings() -> Settings:
    return Settings(firewall_enabled=False, integrity_paths=(), worker_threads=0)


@pytest.fixture()
def firewall(runner: RecordingRunner) -> FirewallAdapter:
    return FirewallAdapter(IptablesBackend(runner=runner, timeout=1.0))


@pytest.fixture()
def enforcer(store: ReputationStore, firewall: FirewallAdapter) -> Enforcer:
    return Enforcer(store, firewall)


@pytest.fixture()
def null_enforcer(store: ReputationStore) -> Enforcer:
    return Enforcer(store, FirewallAdapter(NullBackend()))
