"""Per-request detection pipeline.

Order matters and is fixed: blacklist check, then the per-client rate limit,
then signature rules. Rules are evaluated in registration order; LOW/MEDIUM
hits are informational and scanning continues, the first HIGH/CRITICAL hit
blocks the client and stops evaluation. An internal error never rejects a
request.
"""

from __future__ import annotations

import enum
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple
from urllib.parse import unquote_plus

import ahocorasick
import structlog

from clock import Clock, SystemClock
from events import Detection, Severity
from reputation import PERMANENT, ReputationStore
from settings import DEFAULT_CLIENT_IP_HEADERS, Settings

log = structlog.get_logger(__name__)

RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RequestInfo:
    """The parts of an inbound request the rules look at."""

    path: str
    query: str = ""
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    remote_addr: Optional[str] = None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    @property
    def user_agent(self) -> str:
        return (self.header("User-Agent") or "").strip()

    def normalized_target(self) -> str:
        """Path plus query, lower-cased, raw and percent-decoded."""
        raw = f"{self.path}?{self.query}" if self.query else self.path
        decoded = unquote_plus(raw)
        text = raw if decoded == raw else f"{raw} {decoded}"
        return text.lower()

    def field_text(self, name: str) -> str:
        if name == "target":
            return self.normalized_target()
        if name == "user_agent":
            return self.user_agent
        return self.header(name) or ""


Matcher = Callable[[str], Optional[str]]


@dataclass(frozen=True)
class DetectionRule:
    name: str
    severity: Severity
    description: str
    matcher: Matcher = field(repr=False)
    field: str = "target"

    def match(self, request: RequestInfo) -> Optional[str]:
        """Return the matched content, or None."""
        return self.matcher(request.field_text(self.field))


def pattern_rule(
    name: str,
    patterns: Sequence[str],
    severity: Severity,
    description: str,
    field: str = "target",
) -> DetectionRule:
    compiled = re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)

    def matcher(text: str) -> Optional[str]:
        found = compiled.search(text)
        return found.group(0) if found else None

    return DetectionRule(name, severity, description, matcher, field)


def signature_rule(
    name: str,
    signatures: Iterable[str],
    severity: Severity,
    description: str,
    field: str = "user_agent",
    flag_missing: bool = False,
) -> DetectionRule:
    """Literal substring rule backed by an Aho-Corasick automaton."""
    automaton = ahocorasick.Automaton()
    for signature in signatures:
        automaton.add_word(signature.lower(), signature.lower())
    if len(automaton) == 0:
        raise ValueError(f"rule {name!r} needs at least one signature")
    automaton.make_automaton()

    def matcher(text: str) -> Optional[str]:
        if not text:
            return "<missing>" if flag_missing else None
        for _, signature in automaton.iter(text.lower()):
            return signature
        return None

    return DetectionRule(name, severity, description, matcher, field)


SQL_INJECTION_PATTERNS = (
    r"\bunion\b.*\bselect\b",
    r"\binsert\b.*\binto\b",
    r"\bdelete\b.*\bfrom\b",
    r"\bupdate\b.*\bset\b",
    r"\b(drop|create|alter)\b.*\btable\b",
    r"\bexec\b.*\b(sp|xp)_",
    r"\bxp_cmdshell\b",
    r"'\s*or\s*'[^']*'\s*=\s*'",
    r"\b(or|and|having)\b\s*\d+\s*=\s*\d+",
    r"\bwaitfor\b\s+\bdelay\b",
    r"\bbenchmark\s*\(",
    r"\bsleep\s*\(\s*\d+\s*\)",
)

XSS_PATTERNS = (
    r"<\s*script",
    r"javascript:",
    r"\b(eval|alert|confirm|prompt)\s*\(",
    r"\bon(load|error|click|mouseover)\s*=",
    r"document\.(cookie|write)",
    r"window\.location",
    r"<\s*(iframe|object|embed)\b",
)

PATH_TRAVERSAL_PATTERNS = (
    r"\.\./",
    r"\.\.\\",
    r"%2e%2e(%2f|%5c|/)",
    r"%252e%252e%252f",
    r"etc/(passwd|shadow)",
    r"windows/system32",
    r"\b(boot|win)\.ini\b",
    r"autoexec\.bat",
)

COMMAND_INJECTION_PATTERNS = (
    r"cmd\.exe",
    r"/bin/(ba)?sh\b",
    r"\bpowershell\b",
    # a separator then a command, but not a query key such as "&nc=123"
    r"[;&|`]\s*(wget|curl|nc|bash|sh)\b(?!\s*=)",
    r"\$\([^)]*\)",
)

SCANNER_USER_AGENTS = (
    "sqlmap", "nikto", "nessus", "openvas", "nmap", "masscan",
    "dirbuster", "dirb", "gobuster", "wfuzz", "burp", "zgrab",
    "python-requests", "curl", "wget", "scanner",
)


def default_rules() -> List[DetectionRule]:
    return [
        pattern_rule("SQL_INJECTION", SQL_INJECTION_PATTERNS, Severity.HIGH, "SQL injection attempt"),
        pattern_rule("XSS", XSS_PATTERNS, Severity.HIGH, "Cross-site scripting attempt"),
        pattern_rule("PATH_TRAVERSAL", PATH_TRAVERSAL_PATTERNS, Severity.HIGH, "Path traversal attempt"),
        pattern_rule("COMMAND_INJECTION", COMMAND_INJECTION_PATTERNS, Severity.CRITICAL, "OS command injection attempt"),
        signature_rule(
            "SUSPICIOUS_USER_AGENT",
            SCANNER_USER_AGENTS,
            Severity.LOW,
            "Scanner or missing user agent",
            flag_missing=True,
        ),
    ]


class RuleSet:
    """Ordered, immutable collection of rules with unique names."""

    def __init__(self, rules: Iterable[DetectionRule]) -> None:
        ordered = tuple(rules)
        seen = set()
        for rule in ordered:
            if rule.name in seen:
                raise ValueError(f"duplicate detection rule {rule.name!r}")
            seen.add(rule.name)
        self._rules: Tuple[DetectionRule, ...] = ordered

    def __iter__(self):
        return iter(self._rules)

    def __len__(self) -> int:
        return len(self._rules)

    def names(self) -> List[str]:
        return [rule.name for rule in self._rules]


class FixedWindowCounter:
    """Per-key request counter over fixed windows, sharded by key."""

    def __init__(self, limit: int, window_seconds: float, clock: Optional[Clock] = None, shards: int = 16) -> None:
        self.limit = limit
        self.window = float(window_seconds)
        self.clock = clock or SystemClock()
        self._locks = [threading.Lock() for _ in range(max(1, shards))]
        self._windows: List[Dict[str, List[float]]] = [{} for _ in self._locks]

    def _index(self, key: str) -> int:
        return hash(key) % len(self._locks)

    def hit(self, key: str) -> int:
        """Count one request for ``key`` and return the count in the current window."""
        idx = self._index(key)
        now = self.clock.monotonic()
        with self._locks[idx]:
            slot = self._windows[idx].get(key)
            if slot is None or now - slot[0] >= self.window:
                slot = [now, 0]
                self._windows[idx][key] = slot
            slot[1] += 1
            return int(slot[1])

    def exceeded(self, key: str) -> bool:
        return self.hit(key) > self.limit

    def prune(self) -> int:
        now = self.clock.monotonic()
        removed = 0
        for lock, windows in zip(self._locks, self._windows):
            with lock:
                stale = [key for key, slot in windows.items() if now - slot[0] >= self.window]
                for key in stale:
                    del windows[key]
                removed += len(stale)
        return removed

    def reset(self, key: str) -> None:
        idx = self._index(key)
        with self._locks[idx]:
            self._windows[idx].pop(key, None)


class ClientResolver:
    def __init__(self, headers: Sequence[str] = DEFAULT_CLIENT_IP_HEADERS) -> None:
        self.headers = tuple(headers)

    def resolve(self, request: RequestInfo) -> str:
        for name in self.headers:
            value = request.header(name)
            if not value:
                continue
            first_hop = value.split(",")[0].strip()
            if first_hop and first_hop.lower() != UNKNOWN_CLIENT:
                return first_hop
        return request.remote_addr or UNKNOWN_CLIENT


class Outcome(str, enum.Enum):
    ALLOWED = "allowed"
    BLACKLISTED = "blocked"
    RATE_LIMITED = "rate_limited"
    THREAT = "threat"


_COUNTER_FOR = {
    Outcome.ALLOWED: "allowed",
    Outcome.BLACKLISTED: "blacklisted",
    Outcome.RATE_LIMITED: "rate_limited",
    Outcome.THREAT: "threats",
}

ENGINE_COUNTERS = ("evaluated", *_COUNTER_FOR.values(), "informational", "errors", "rule_errors")

_STATUS = {
    Outcome.ALLOWED: 200,
    Outcome.BLACKLISTED: 403,
    Outcome.RATE_LIMITED: 429,
    Outcome.THREAT: 403,
}


@dataclass(frozen=True)
class Verdict:
    outcome: Outcome
    client_id: str
    reason: Optional[str] = None
    detections: Tuple[Detection, ...] = ()

    @property
    def allowed(self) -> bool:
        return self.outcome is Outcome.ALLOWED

    @property
    def status_code(self) -> int:
        return _STATUS[self.outcome]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "rate_limited" if self.outcome is Outcome.RATE_LIMITED else "blocked",
            "outcome": self.outcome.value,
            "client": self.client_id,
            "reason": self.reason,
        }


class ResponseDispatcher(Protocol):
    def submit(self, detection: Detection) -> Any: ...

    def submit_rate_limit(self, source: str, detail: str) -> Any: ...


class DetectionEngine:
    def __init__(
        self,
        store: ReputationStore,
        dispatcher: ResponseDispatcher,
        rules: Optional[Iterable[DetectionRule]] = None,
        rate_limiter: Optional[FixedWindowCounter] = None,
        resolver: Optional[ClientResolver] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or Settings(firewall_enabled=False)
        self.store = store
        self.dispatcher = dispatcher
        self.rules = RuleSet(default_rules() if rules is None else rules)
        self.rate_limiter = rate_limiter or FixedWindowCounter(
            self.settings.rate_limit, self.settings.rate_window_seconds, store.clock
        )
        self.resolver = resolver or ClientResolver(self.settings.client_ip_headers)
        self.enabled = self.settings.ids_enabled
        self._counters: Counter = Counter({name: 0 for name in ENGINE_COUNTERS})
        self._counter_lock = threading.Lock()

    def _count(self, name: str) -> None:
        with self._counter_lock:
            self._counters[name] += 1

    def evaluate(self, request: RequestInfo) -> Verdict:
        """Main entry point: run the pipeline for one request and return the verdict."""
        if not self.enabled:
            return Verdict(Outcome.ALLOWED, request.remote_addr or UNKNOWN_CLIENT)
        self._count("evaluated")
        try:
            verdict = self._evaluate(request)
        except Exception:
            # default-allow: a crafted input must not turn into a denial of service
            self._count("errors")
            log.exception("detection_pipeline_failed", path=request.path)
            return Verdict(Outcome.ALLOWED, request.remote_addr or UNKNOWN_CLIENT)
        self._count(_COUNTER_FOR[verdict.outcome])
        return verdict

    def _evaluate(self, request: RequestInfo) -> Verdict:
        client = self.resolver.resolve(request)

        entry = self.store.lookup(client)
        if entry is not None:
            outcome = Outcome.RATE_LIMITED if entry.reason == RATE_LIMIT_EXCEEDED else Outcome.BLACKLISTED
            log.debug("blacklisted_request", client=client, reason=entry.reason)
            return Verdict(outcome, client, entry.reason)

        if self.rate_limiter.exceeded(client):
            self.store.block(client, RATE_LIMIT_EXCEEDED, self.settings.rate_block_ttl)
            detail = (
                f"more than {self.rate_limiter.limit} requests in {int(self.rate_limiter.window)}s "
                f"({request.method} {request.path})"
            )
            log.warning("rate_limit_exceeded", client=client, limit=self.rate_limiter.limit)
            self.dispatcher.submit_rate_limit(client, detail)
            return Verdict(Outcome.RATE_LIMITED, client, RATE_LIMIT_EXCEEDED)

        hits: List[Detection] = []
        blocking: Optional[Detection] = None
        for rule in self.rules:
            try:
                matched = rule.match(request)
            except Exception:
                self._count("rule_errors")
                log.exception("detection_rule_failed", rule=rule.name, path=request.path)
                continue
            if matched is None:
                continue
            detection = Detection(
                source=client,
                rule_name=rule.name,
                severity=rule.severity,
                detail=f"matched {matched!r} in {request.method} {request.path}"
                + (f"?{request.query}" if request.query else ""),
            )
            hits.append(detection)
            if rule.severity.blocking:
                blocking = detection
                break
            self._count("informational")

        if blocking is not None:
            # intent must be visible before any asynchronous response work starts
            self.store.block(client, blocking.rule_name, PERMANENT)
            log.warning("threat_detected", client=client, rule=blocking.rule_name, severity=blocking.severity.name)
        for detection in hits:
            self.dispatcher.submit(detection)

        if blocking is not None:
            return Verdict(Outcome.THREAT, client, blocking.rule_name, tuple(hits))
        return Verdict(Outcome.ALLOWED, client, None, tuple(hits))

    def metrics_snapshot(self) -> Dict[str, Any]:
        with self._counter_lock:
            snapshot: Dict[str, Any] = dict(self._counters)
        snapshot["rules"] = self.rules.names()
        return snapshot
