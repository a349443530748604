"""Tiered automated response to detections.

LOW is watched, MEDIUM is restricted for a while, HIGH is blocked for good and
CRITICAL also opens an emergency incident. Every detection then bumps the
per-source statistics, and a source that crosses the escalation threshold is
blocked permanently no matter how mild its individual hits were.
"""

from __future__ import annotations

import threading
from collections import Counter, deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional

import structlog

from alerts import advisory_for, build_alert
from clock import Clock, SystemClock
from collaborators import EventSink, Notifier
from detection import RATE_LIMIT_EXCEEDED
from emergency import EmergencyCoordinator, EmergencyTrigger, EmergencyType
from events import SYSTEM_SOURCE, Detection, Severity
from firewall import Enforcer
from reputation import PERMANENT
from settings import Settings
from workers import WorkerPool

log = structlog.get_logger(__name__)

ESCALATION_REASON = "ESCALATED_REPEATED_ATTACKS"

# rule name -> advisory flag raised next to a HIGH/CRITICAL block
ADVISORY_FLAGS: Dict[str, str] = {
    "SQL_INJECTION": "check_storage_layer",
    "XSS": "check_session_integrity",
    "PATH_TRAVERSAL": "check_file_exposure",
    "BRUTE_FORCE": "account_protection",
}
DEFAULT_ADVISORY_FLAG = "enhanced_monitoring"


@dataclass
class AttackStatistics:
    source: str
    first_seen: datetime
    last_seen: datetime
    total_attacks: int = 0
    attacks_by_type: Counter = field(default_factory=Counter)
    escalated: bool = False
    recent: Deque[datetime] = field(default_factory=deque, repr=False)

    def windowed_count(self, now: datetime, window: Optional[timedelta]) -> int:
        if window is None:
            return self.total_attacks
        cutoff = now - window
        while self.recent and self.recent[0] <= cutoff:
            self.recent.popleft()
        return len(self.recent)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "total_attacks": self.total_attacks,
            "attacks_by_type": dict(self.attacks_by_type),
            "first_seen": self.first_seen.isoformat(timespec="seconds"),
            "last_seen": self.last_seen.isoformat(timespec="seconds"),
            "escalated": self.escalated,
        }


class StatisticsRegistry:
    """Per-source attack counters, sharded so hot sources do not serialize everyone."""

    def __init__(self, clock: Optional[Clock] = None, window: Optional[timedelta] = None, shards: int = 16) -> None:
        self.clock = clock or SystemClock()
        self.window = window
        self._locks = [threading.Lock() for _ in range(max(1, shards))]
        self._maps: List[Dict[str, AttackStatistics]] = [{} for _ in self._locks]

    def _index(self, source: str) -> int:
        return hash(source) % len(self._locks)

    def record(self, source: str, attack_type: str) -> Dict[str, Any]:
        idx = self._index(source)
        now = self.clock.now()
        with self._locks[idx]:
            stats = self._maps[idx].get(source)
            if stats is None:
                stats = AttackStatistics(source, first_seen=now, last_seen=now)
                self._maps[idx][source] = stats
            stats.total_attacks += 1
            stats.attacks_by_type[attack_type] += 1
            stats.last_seen = now
            if self.window is not None:
                stats.recent.append(now)
            return stats.to_dict()

    def should_escalate(self, source: str, threshold: int) -> bool:
        """True exactly once per threshold crossing.

        The latch re-arms only with a sliding window, once the windowed count
        is back at or below the threshold.
        """
        idx = self._index(source)
        now = self.clock.now()
        with self._locks[idx]:
            stats = self._maps[idx].get(source)
            if stats is None:
                return False
            count = stats.windowed_count(now, self.window)
            if count > threshold:
                if stats.escalated:
                    return False
                stats.escalated = True
                return True
            if self.window is not None:
                stats.escalated = False
            return False

    def get(self, source: str) -> Optional[Dict[str, Any]]:
        idx = self._index(source)
        with self._locks[idx]:
            stats = self._maps[idx].get(source)
            return stats.to_dict() if stats is not None else None

    def snapshot(self) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for lock, stats_map in zip(self._locks, self._maps):
            with lock:
                out.extend(stats.to_dict() for stats in stats_map.values())
        return out

    def top(self, n: int = 10) -> List[Dict[str, Any]]:
        ranked = sorted(self.snapshot(), key=lambda item: (-item["total_attacks"], item["source"]))
        return ranked[: max(n, 0)]

    def sweep(self, retention: timedelta) -> int:
        cutoff = self.clock.now() - retention
        removed = 0
        for lock, stats_map in zip(self._locks, self._maps):
            with lock:
                stale = [source for source, stats in stats_map.items() if stats.last_seen < cutoff]
                for source in stale:
                    del stats_map[source]
                removed += len(stale)
        return removed

    def __len__(self) -> int:
        return sum(len(stats_map) for stats_map in self._maps)


class ResponseOrchestrator:
    def __init__(
        self,
        enforcer: Enforcer,
        events: EventSink,
        notifier: Notifier,
        pool: WorkerPool,
        settings: Optional[Settings] = None,
        coordinator: Optional[EmergencyCoordinator] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.enforcer = enforcer
        self.events = events
        self.notifier = notifier
        self.pool = pool
        self.settings = settings or Settings(firewall_enabled=False)
        self.coordinator = coordinator
        self.clock = clock or enforcer.store.clock
        self.stats = StatisticsRegistry(self.clock, self.escalation_window)
        self._watchlist: Counter = Counter()
        self._advisories: Deque[Dict[str, Any]] = deque(maxlen=200)
        self._lock = threading.Lock()

    @property
    def escalation_window(self) -> Optional[timedelta]:
        window = self.settings.escalation_window
        return timedelta(seconds=window) if window > 0 else None

    # -- entry points ---------------------------------------------------------

    def submit(self, detection: Detection) -> "Future[Any]":
        return self.pool.submit(self.handle, detection)

    def submit_rate_limit(self, source: str, detail: str) -> "Future[Any]":
        return self.pool.submit(self.handle_rate_limit, source, detail)

    def handle(self, detection: Detection) -> None:
        log.info(
            "response_started",
            source=detection.source,
            rule=detection.rule_name,
            severity=detection.severity.name,
        )
        self.events.record(detection.rule_name, detection.source, detection.detail, detection.severity)
        if detection.severity is Severity.LOW:
            self._watch(detection)
        elif detection.severity is Severity.MEDIUM:
            self._restrict(detection)
        else:
            self._block(detection)
            if detection.severity is Severity.CRITICAL:
                self._open_incident(detection)
        self._track(detection.source, detection.rule_name)

    def handle_rate_limit(self, source: str, detail: str) -> None:
        # the temporary block was already written by the detection engine
        self.events.record(RATE_LIMIT_EXCEEDED, source, detail, Severity.MEDIUM)
        self._track(source, RATE_LIMIT_EXCEEDED)

    # -- tiers ----------------------------------------------------------------

    def _watch(self, detection: Detection) -> None:
        with self._lock:
            self._watchlist[detection.source] += 1
            level = self._watchlist[detection.source]
        log.info("source_watched", source=detection.source, rule=detection.rule_name, level=level)

    def _restrict(self, detection: Detection) -> None:
        minutes = self.settings.medium_block_minutes
        if detection.source != SYSTEM_SOURCE:
            self.enforcer.block(detection.source, detection.rule_name, self.settings.medium_block_ttl)
            self.events.record(
                "IP_TEMPORARILY_RESTRICTED",
                detection.source,
                f"{detection.rule_name}: restricted for {minutes} minutes",
                Severity.MEDIUM,
            )
        alert = build_alert(
            "attack_medium",
            {
                "rule": detection.rule_name,
                "source": detection.source,
                "severity": detection.severity.name,
                "detail": detection.detail,
                "block_minutes": minutes,
            },
        )
        self.notifier.send_alert(self.settings.admin_audience, alert["title"], alert["body"], "medium")

    def _block(self, detection: Detection) -> None:
        if detection.source != SYSTEM_SOURCE:
            self.enforcer.block(detection.source, detection.rule_name, PERMANENT)
            self.events.record("IP_BLOCKED", detection.source, f"{detection.rule_name}: permanent block", Severity.HIGH)
        flag = self._raise_advisory(detection)
        alert = build_alert(
            "attack_high",
            {
                "rule": detection.rule_name,
                "source": detection.source,
                "severity": detection.severity.name,
                "detail": detection.detail,
                "advisory": f"[{flag}] {advisory_for(detection.rule_name)}",
            },
        )
        self.notifier.send_alert(
            self.settings.admin_audience,
            alert["title"],
            alert["body"],
            detection.severity.name.lower(),
        )

    def _raise_advisory(self, detection: Detection) -> str:
        flag = ADVISORY_FLAGS.get(detection.rule_name, DEFAULT_ADVISORY_FLAG)
        advisory = {
            "flag": flag,
            "rule": detection.rule_name,
            "source": detection.source,
            "raised_at": self.clock.now().isoformat(timespec="seconds"),
            "text": advisory_for(detection.rule_name),
        }
        with self._lock:
            self._advisories.append(advisory)
        log.warning("security_advisory", flag=flag, rule=detection.rule_name, source=detection.source)
        return flag

    def _open_incident(self, detection: Detection) -> None:
        if self.coordinator is None:
            log.warning("no_emergency_coordinator", source=detection.source, rule=detection.rule_name)
            return
        trigger = EmergencyTrigger(
            type=EmergencyType.CYBER_ATTACK,
            severity=Severity.CRITICAL,
            reason=f"{detection.rule_name} from {detection.source}: {detection.detail}",
            timestamp=self.clock.now(),
            attacker_ip=detection.source if detection.source != SYSTEM_SOURCE else None,
        )
        self.coordinator.initiate(trigger)

    # -- statistics and escalation -------------------------------------------

    def _track(self, source: str, attack_type: str) -> None:
        if attack_type in self.settings.escalation_exempt_rules:
            return
        stats = self.stats.record(source, attack_type)
        threshold = self.settings.escalation_threshold
        if self.stats.should_escalate(source, threshold):
            self._escalate(source, stats, threshold)

    def _escalate(self, source: str, stats: Dict[str, Any], threshold: int) -> None:
        attack_types = ", ".join(f"{name}={count}" for name, count in sorted(stats["attacks_by_type"].items()))
        log.warning("response_escalated", source=source, total_attacks=stats["total_attacks"], threshold=threshold)
        if source != SYSTEM_SOURCE:
            self.enforcer.block(source, ESCALATION_REASON, PERMANENT)
        self.events.record(
            "ATTACK_ESCALATED",
            source,
            f"{stats['total_attacks']} attacks ({attack_types})",
            Severity.HIGH,
        )
        alert = build_alert(
            "escalation",
            {
                "source": source,
                "total_attacks": stats["total_attacks"],
                "threshold": threshold,
                "attack_types": attack_types,
            },
        )
        self.notifier.send_alert(self.settings.admin_audience, alert["title"], alert["body"], "high")

    # -- queries --------------------------------------------------------------

    def statistics(self, source: str) -> Optional[Dict[str, Any]]:
        return self.stats.get(source)

    def top_offenders(self, n: int = 10) -> List[Dict[str, Any]]:
        return self.stats.top(n)

    def sweep_statistics(self) -> int:
        removed = self.stats.sweep(timedelta(hours=self.settings.stats_retention_hours))
        # watch levels go with the statistics of their source
        with self._lock:
            for source in [source for source in self._watchlist if self.stats.get(source) is None]:
                del self._watchlist[source]
        if removed:
            log.info("statistics_swept", removed=removed)
        return removed

    def watchlist(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._watchlist)

    def advisories(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._advisories)
