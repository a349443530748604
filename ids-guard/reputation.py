"""In-memory blacklist with TTL semantics.

Every blocking decision reads from here. The map is split into shards with
one lock each so request threads checking different clients do not contend.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

import structlog

from clock import Clock, SystemClock

log = structlog.get_logger(__name__)

PERMANENT: Optional[timedelta] = None


@dataclass(frozen=True)
class BlacklistEntry:
    identifier: str
    reason: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    active: bool = True

    @property
    def permanent(self) -> bool:
        return self.expires_at is None

    def expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "reason": self.reason,
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "expires_at": self.expires_at.isoformat(timespec="seconds") if self.expires_at else None,
            "permanent": self.permanent,
            "active": self.active,
        }


class _Shard:
    __slots__ = ("lock", "entries")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: Dict[str, BlacklistEntry] = {}


class ReputationStore:
    def __init__(self, clock: Optional[Clock] = None, shards: int = 16) -> None:
        self.clock = clock or SystemClock()
        self._shards = [_Shard() for _ in range(max(1, shards))]

    def _shard(self, identifier: str) -> _Shard:
        return self._shards[hash(identifier) % len(self._shards)]

    def lookup(self, identifier: str) -> Optional[BlacklistEntry]:
        """Return the active entry for ``identifier``, evicting it if it expired."""
        shard = self._shard(identifier)
        now = self.clock.now()
        with shard.lock:
            entry = shard.entries.get(identifier)
            if entry is None:
                return None
            if entry.expired(now):
                del shard.entries[identifier]
                return None
            return entry

    def is_blocked(self, identifier: str) -> bool:
        return self.lookup(identifier) is not None

    def block(self, identifier: str, reason: str, ttl: Optional[timedelta] = PERMANENT) -> BlacklistEntry:
        """Upsert a block. Never shortens an existing one; permanent always wins."""
        if ttl is not None and ttl <= timedelta(0):
            raise ValueError("ttl must be positive, use PERMANENT for an open-ended block")
        shard = self._shard(identifier)
        now = self.clock.now()
        expires_at = None if ttl is None else now + ttl
        with shard.lock:
            current = shard.entries.get(identifier)
            if current is not None and current.expired(now):
                current = None
            if current is None:
                entry = BlacklistEntry(identifier, reason, now, expires_at)
            elif current.permanent:
                entry = current
            elif expires_at is None:
                entry = replace(current, reason=reason, expires_at=None)
            elif current.expires_at is not None and expires_at > current.expires_at:
                entry = replace(current, reason=reason, expires_at=expires_at)
            else:
                entry = current
            shard.entries[identifier] = entry
        if entry is not current:
            log.info(
                "blacklist_upsert",
                identifier=identifier,
                reason=entry.reason,
                expires_at=entry.expires_at.isoformat() if entry.expires_at else None,
            )
        return entry

    def unblock(self, identifier: str, reason: str = "manual") -> Optional[BlacklistEntry]:
        shard = self._shard(identifier)
        with shard.lock:
            entry = shard.entries.pop(identifier, None)
        if entry is None:
            return None
        log.info("blacklist_removed", identifier=identifier, reason=reason)
        return replace(entry, active=False)

    def list(self) -> Set[str]:
        return {entry.identifier for entry in self.entries()}

    def entries(self) -> List[BlacklistEntry]:
        now = self.clock.now()
        out: List[BlacklistEntry] = []
        for shard in self._shards:
            with shard.lock:
                out.extend(entry for entry in shard.entries.values() if not entry.expired(now))
        return out

    def sweep(self) -> List[BlacklistEntry]:
        """Drop expired entries and hand them back so enforcement can be lifted."""
        now = self.clock.now()
        removed: List[BlacklistEntry] = []
        for shard in self._shards:
            with shard.lock:
                expired = [key for key, entry in shard.entries.items() if entry.expired(now)]
                for key in expired:
                    removed.append(replace(shard.entries.pop(key), active=False))
        if removed:
            log.info("blacklist_sweep", expired=len(removed))
        return removed

    def __len__(self) -> int:
        return len(self.entries())
