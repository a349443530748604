"""Network-layer enforcement of blacklist decisions.

Each backend turns BLOCK/UNBLOCK into argv lists for one packet-filter tool and
judges success by exit status only. Nothing here raises past ``apply``: a
failed command is a logged ``False`` and the reconciliation pass re-applies
intent from the reputation store later.
"""

from __future__ import annotations

import enum
import ipaddress
import subprocess
import threading
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Sequence, Set, Union

import structlog

from events import SYSTEM_SOURCE
from reputation import PERMANENT, BlacklistEntry, ReputationStore
from settings import FIREWALL_BACKENDS, ConfigurationError, Settings

log = structlog.get_logger(__name__)

CommandRunner = Callable[[Sequence[str], float], int]


class FirewallAction(str, enum.Enum):
    BLOCK = "BLOCK"
    UNBLOCK = "UNBLOCK"


def run_command(argv: Sequence[str], timeout: float) -> int:
    """Run a firewall command and return its exit status; -1 on timeout or OS error."""
    try:
        completed = subprocess.run(list(argv), capture_output=True, text=True, timeout=timeout, check=False)
    except subprocess.TimeoutExpired:
        log.error("firewall_command_timeout", argv=list(argv), timeout=timeout)
        return -1
    except OSError as exc:
        log.error("firewall_command_failed", argv=list(argv), error=str(exc))
        return -1
    log.debug(
        "firewall_command_exit",
        argv=list(argv),
        exit_code=completed.returncode,
        stderr=(completed.stderr or "").strip()[:500],
    )
    return completed.returncode


def parse_ip(identifier: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    try:
        return ipaddress.ip_address(identifier.strip())
    except ValueError:
        return None


class FirewallBackend:
    """Base backend. Subclasses describe their commands; ``apply`` runs them."""

    name = "base"

    def __init__(self, runner: Optional[CommandRunner] = None, timeout: float = 10.0) -> None:
        self.runner = runner or run_command
        self.timeout = timeout

    def _run(self, argv: Sequence[str], check: bool = False) -> bool:
        """Run one command. ``check`` marks an existence query, where a miss is routine."""
        try:
            code = self.runner(argv, self.timeout)
        except Exception:
            log.exception("firewall_runner_error", backend=self.name, argv=list(argv))
            return False
        if code != 0:
            if check:
                log.debug("firewall_rule_absent", backend=self.name, argv=list(argv))
            else:
                log.error("firewall_command_nonzero", backend=self.name, argv=list(argv), exit_code=code)
        return code == 0

    # hooks for subclasses
    def is_present(self, ip: str) -> Optional[bool]:
        """Whether a block rule already exists; None when the tool cannot tell."""
        return None

    def block_commands(self, ip: str) -> List[List[str]]:
        raise NotImplementedError

    def unblock_commands(self, ip: str) -> List[List[str]]:
        raise NotImplementedError

    def rate_limit_commands(self, threshold: int) -> List[List[str]]:
        return []

    def ddos_commands(self) -> List[List[str]]:
        return []

    def apply(self, identifier: str, action: FirewallAction) -> bool:
        present = self.is_present(identifier)
        if action is FirewallAction.BLOCK:
            if present:
                return True
            commands = self.block_commands(identifier)
        else:
            if present is False:
                return True
            commands = self.unblock_commands(identifier)
        return all(self._run(argv) for argv in commands)

    def check_command(self, argv: List[str]) -> Optional[List[str]]:
        """Existence query for an append-style command; None when the tool has none."""
        return None

    def ensure_all(self, commands: List[List[str]]) -> bool:
        """Run commands whose rule is not there yet, so repeated calls add nothing."""
        ok = True
        for argv in commands:
            check = self.check_command(argv)
            if check is not None and self._run(check, check=True):
                continue
            ok = self._run(argv) and ok
        return ok


class NullBackend(FirewallBackend):
    """Used when the firewall is disabled: intent lives only in the store."""

    name = "disabled"

    def apply(self, identifier: str, action: FirewallAction) -> bool:
        log.debug("firewall_disabled_skip", identifier=identifier, action=action.value)
        return True


class IptablesBackend(FirewallBackend):
    name = "iptables"
    http_ports = (80, 443)

    @staticmethod
    def _binary(ip: str) -> str:
        parsed = parse_ip(ip)
        return "ip6tables" if parsed is not None and parsed.version == 6 else "iptables"

    def _rule(self, ip: str) -> List[str]:
        return ["INPUT", "-s", ip, "-j", "DROP"]

    def is_present(self, ip: str) -> Optional[bool]:
        return self._run([self._binary(ip), "-C", *self._rule(ip)], check=True)

    def block_commands(self, ip: str) -> List[List[str]]:
        return [[self._binary(ip), "-I", *self._rule(ip)]]

    def unblock_commands(self, ip: str) -> List[List[str]]:
        return [[self._binary(ip), "-D", *self._rule(ip)]]

    def check_command(self, argv: List[str]) -> Optional[List[str]]:
        if len(argv) > 1 and argv[1] == "-A":
            return [argv[0], "-C", *argv[2:]]
        return None

    def rate_limit_commands(self, threshold: int) -> List[List[str]]:
        return [
            ["iptables", "-A", "INPUT", "-p", "tcp", "--dport", "80", "-m", "state", "--state", "NEW",
             "-m", "recent", "--set"],
            ["iptables", "-A", "INPUT", "-p", "tcp", "--dport", "80", "-m", "state", "--state", "NEW",
             "-m", "recent", "--update", "--seconds", "60", "--hitcount", str(threshold), "-j", "DROP"],
        ]

    def ddos_commands(self) -> List[List[str]]:
        commands = [
            ["iptables", "-A", "INPUT", "-p", "tcp", "--dport", str(port), "-m", "connlimit",
             "--connlimit-above", "20", "-j", "REJECT"]
            for port in self.http_ports
        ]
        commands.extend(self.rate_limit_commands(10))
        return commands


class FirewalldBackend(FirewallBackend):
    name = "firewalld"

    @staticmethod
    def _rich_rule(ip: str) -> str:
        parsed = parse_ip(ip)
        family = "ipv6" if parsed is not None and parsed.version == 6 else "ipv4"
        return f"rule family='{family}' source address='{ip}' reject"

    def is_present(self, ip: str) -> Optional[bool]:
        return self._run(["firewall-cmd", "--permanent", f"--query-rich-rule={self._rich_rule(ip)}"], check=True)

    def block_commands(self, ip: str) -> List[List[str]]:
        return [
            ["firewall-cmd", "--permanent", f"--add-rich-rule={self._rich_rule(ip)}"],
            ["firewall-cmd", "--reload"],
        ]

    def unblock_commands(self, ip: str) -> List[List[str]]:
        return [
            ["firewall-cmd", "--permanent", f"--remove-rich-rule={self._rich_rule(ip)}"],
            ["firewall-cmd", "--reload"],
        ]


class UfwBackend(FirewallBackend):
    # ufw skips rules that already exist, so no presence check is needed
    name = "ufw"

    def block_commands(self, ip: str) -> List[List[str]]:
        return [["ufw", "insert", "1", "deny", "from", ip]]

    def unblock_commands(self, ip: str) -> List[List[str]]:
        return [["ufw", "delete", "deny", "from", ip]]


class WindowsFirewallBackend(FirewallBackend):
    name = "windows"

    @staticmethod
    def _rule_name(ip: str) -> str:
        return "Block_IP_" + ip.replace(".", "_").replace(":", "_")

    def is_present(self, ip: str) -> Optional[bool]:
        return self._run(["netsh", "advfirewall", "firewall", "show", "rule", f"name={self._rule_name(ip)}"], check=True)

    def block_commands(self, ip: str) -> List[List[str]]:
        return [[
            "netsh", "advfirewall", "firewall", "add", "rule",
            f"name={self._rule_name(ip)}", "dir=in", "action=block", f"remoteip={ip}",
        ]]

    def unblock_commands(self, ip: str) -> List[List[str]]:
        return [["netsh", "advfirewall", "firewall", "delete", "rule", f"name={self._rule_name(ip)}"]]


_BACKENDS = {
    "iptables": IptablesBackend,
    "firewalld": FirewalldBackend,
    "ufw": UfwBackend,
    "windows": WindowsFirewallBackend,
}


def build_backend(settings: Settings, runner: Optional[CommandRunner] = None) -> FirewallBackend:
    """Pick the backend once at startup."""
    if not settings.firewall_enabled:
        return NullBackend()
    backend_cls = _BACKENDS.get(settings.firewall_backend)
    if backend_cls is None:
        raise ConfigurationError(
            f"unsupported firewall backend {settings.firewall_backend!r}; expected one of {', '.join(FIREWALL_BACKENDS)}"
        )
    return backend_cls(runner=runner, timeout=settings.command_timeout_seconds)


class FirewallAdapter:
    """Boolean-only facade over a backend, plus reconciliation against the store."""

    def __init__(self, backend: FirewallBackend, auto_unblock: bool = True) -> None:
        self.backend = backend
        self.auto_unblock = auto_unblock
        self._enforced: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return not isinstance(self.backend, NullBackend)

    def enforced(self) -> Set[str]:
        with self._lock:
            return set(self._enforced)

    def apply(self, identifier: str, action: FirewallAction) -> bool:
        if identifier == SYSTEM_SOURCE or parse_ip(identifier) is None:
            log.info("firewall_skip_non_ip", identifier=identifier, action=action.value)
            return False
        try:
            ok = self.backend.apply(identifier, action)
        except Exception:
            log.exception("firewall_apply_error", identifier=identifier, action=action.value)
            ok = False
        if ok and self.enabled:
            with self._lock:
                if action is FirewallAction.BLOCK:
                    self._enforced.add(identifier)
                else:
                    self._enforced.discard(identifier)
        log.info(
            "firewall_apply",
            identifier=identifier,
            action=action.value,
            backend=self.backend.name,
            success=ok,
        )
        return ok

    def reconcile(self, store: ReputationStore) -> Dict[str, int]:
        """Bring the firewall back in line with the store's intent."""
        if not self.enabled:
            return {"blocked": 0, "unblocked": 0, "failed": 0}
        active = {entry.identifier for entry in store.entries() if parse_ip(entry.identifier) is not None}
        blocked = failed = unblocked = 0
        for identifier in sorted(active):
            if self.apply(identifier, FirewallAction.BLOCK):
                blocked += 1
            else:
                failed += 1
        if self.auto_unblock:
            for identifier in sorted(self.enforced() - active):
                if self.apply(identifier, FirewallAction.UNBLOCK):
                    unblocked += 1
                else:
                    failed += 1
        summary = {"blocked": blocked, "unblocked": unblocked, "failed": failed}
        log.info("firewall_reconciled", **summary)
        return summary

    def release_expired(self, expired: Sequence[BlacklistEntry]) -> None:
        """Lift network blocks for entries the store swept out."""
        if not self.auto_unblock:
            return
        for entry in expired:
            if entry.identifier in self.enforced():
                self.apply(entry.identifier, FirewallAction.UNBLOCK)

    def enable_rate_limiting(self, threshold: int) -> None:
        commands = self.backend.rate_limit_commands(threshold)
        if not commands:
            log.info("firewall_rate_limit_unsupported", backend=self.backend.name)
            return
        ok = self.backend.ensure_all(commands)
        log.info("firewall_rate_limit", backend=self.backend.name, threshold=threshold, success=ok)

    def enable_ddos_protection(self) -> None:
        commands = self.backend.ddos_commands()
        if not commands:
            log.info("firewall_ddos_unsupported", backend=self.backend.name)
            return
        ok = self.backend.ensure_all(commands)
        log.info("firewall_ddos_protection", backend=self.backend.name, success=ok)


class Enforcer:
    """Single path for blocking: store intent first, then the firewall.

    The store write is synchronous so the next request already sees the block;
    the firewall result is informational and repaired by reconciliation.
    """

    def __init__(self, store: ReputationStore, firewall: FirewallAdapter) -> None:
        self.store = store
        self.firewall = firewall

    def block(self, identifier: str, reason: str, ttl: Optional[timedelta] = PERMANENT) -> BlacklistEntry:
        entry = self.store.block(identifier, reason, ttl)
        self.firewall.apply(identifier, FirewallAction.BLOCK)
        return entry

    def unblock(self, identifier: str, reason: str) -> Optional[BlacklistEntry]:
        entry = self.store.unblock(identifier, reason)
        if parse_ip(identifier) is not None and (entry is not None or identifier in self.firewall.enforced()):
            self.firewall.apply(identifier, FirewallAction.UNBLOCK)
        return entry
