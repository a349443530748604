from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from conftest import RecordingRunner
from firewall import (
    Enforcer,
    FirewallAction,
    FirewallAdapter,
    FirewalldBackend,
    IptablesBackend,
    NullBackend,
    UfwBackend,
    WindowsFirewallBackend,
    build_backend,
)
from reputation import PERMANENT
from settings import ConfigurationError, Settings


def test_iptables_block_checks_then_inserts(runner):
    backend = IptablesBackend(runner=runner)
    assert backend.apply("203.0.113.5", FirewallAction.BLOCK)
    assert runner.calls == [
        ["iptables", "-C", "INPUT", "-s", "203.0.113.5", "-j", "DROP"],
        ["iptables", "-I", "INPUT", "-s", "203.0.113.5", "-j", "DROP"],
    ]


def test_iptables_block_is_idempotent_when_rule_exists():
    runner = RecordingRunner(default=0)
    backend = IptablesBackend(runner=runner)
    assert backend.apply("203.0.113.5", FirewallAction.BLOCK)
    assert runner.commands_with("-I") == []


def test_iptables_uses_ip6tables_for_ipv6(runner):
    IptablesBackend(runner=runner).apply("2001:db8::1", FirewallAction.BLOCK)
    assert {argv[0] for argv in runner.calls} == {"ip6tables"}


def test_nonzero_exit_is_false_not_raised():
    runner = RecordingRunner(default=1)
    assert not IptablesBackend(runner=runner).apply("203.0.113.9", FirewallAction.BLOCK)


def test_runner_exception_is_false():
    def broken(argv, timeout):
        raise OSError("no such binary")

    assert not UfwBackend(runner=broken).apply("203.0.113.9", FirewallAction.BLOCK)


def test_backend_command_shapes(runner):
    runner.codes = {"--query-rich-rule": 1}
    FirewalldBackend(runner=runner).apply("198.51.100.7", FirewallAction.BLOCK)
    assert ["firewall-cmd", "--reload"] in runner.calls
    assert any("--add-rich-rule=rule family='ipv4' source address='198.51.100.7' reject" in argv for argv in runner.calls)

    runner.calls.clear()
    UfwBackend(runner=runner).apply("198.51.100.7", FirewallAction.UNBLOCK)
    assert runner.calls == [["ufw", "delete", "deny", "from", "198.51.100.7"]]

    windows_runner = RecordingRunner(codes={"show": 1})
    WindowsFirewallBackend(runner=windows_runner).apply("198.51.100.7", FirewallAction.BLOCK)
    added = windows_runner.commands_with("add")
    assert added and "name=Block_IP_198_51_100_7" in added[0]
    assert added[0][-1] == "remoteip=198.51.100.7"


def test_build_backend_selects_by_name():
    assert isinstance(build_backend(Settings(firewall_enabled=False)), NullBackend)
    assert isinstance(build_backend(Settings(firewall_backend="ufw")), UfwBackend)
    assert isinstance(build_backend(Settings(firewall_backend="firewalld")), FirewalldBackend)


def test_unknown_backend_is_a_startup_error():
    with pytest.raises(ConfigurationError):
        Settings(firewall_backend="pf")


def test_adapter_never_sends_non_ip_identifiers(runner):
    adapter = FirewallAdapter(IptablesBackend(runner=runner))
    assert not adapter.apply("SYSTEM", FirewallAction.BLOCK)
    assert not adapter.apply("not-an-ip", FirewallAction.BLOCK)
    assert runner.calls == []


def test_enforcer_records_intent_even_when_firewall_fails(store):
    failing = RecordingRunner(default=1)
    enforcer = Enforcer(store, FirewallAdapter(IptablesBackend(runner=failing)))
    enforcer.block("203.0.113.20", "sqli", PERMANENT)

    assert store.is_blocked("203.0.113.20")
    assert enforcer.firewall.enforced() == set()


def test_reconcile_reapplies_failed_blocks(store):
    runner = RecordingRunner(default=1)
    adapter = FirewallAdapter(IptablesBackend(runner=runner))
    Enforcer(store, adapter).block("203.0.113.21", "sqli", PERMANENT)
    assert adapter.enforced() == set()

    # the firewall comes back; the rule is still missing
    runner.default = 0
    runner.codes = {"-C": 1}
    summary = adapter.reconcile(store)

    assert summary == {"blocked": 1, "unblocked": 0, "failed": 0}
    assert adapter.enforced() == {"203.0.113.21"}


def test_reconcile_lifts_blocks_no_longer_in_store(store, clock):
    runner = RecordingRunner(codes={"-C": 1})
    adapter = FirewallAdapter(IptablesBackend(runner=runner))
    Enforcer(store, adapter).block("203.0.113.22", "rate", timedelta(minutes=1))
    assert adapter.enforced() == {"203.0.113.22"}

    clock.advance(minutes=2)
    runner.codes = {"-C": 0}
    summary = adapter.reconcile(store)

    assert summary["unblocked"] == 1
    assert adapter.enforced() == set()
    assert runner.commands_with("-D")


def test_reconcile_keeps_expired_blocks_without_auto_unblock(store, clock):
    runner = RecordingRunner(codes={"-C": 1})
    adapter = FirewallAdapter(IptablesBackend(runner=runner), auto_unblock=False)
    Enforcer(store, adapter).block("203.0.113.23", "rate", timedelta(minutes=1))
    clock.advance(minutes=2)

    adapter.reconcile(store)
    assert adapter.enforced() == {"203.0.113.23"}
    assert runner.commands_with("-D") == []


def test_release_expired_after_sweep(store, clock):
    runner = RecordingRunner(codes={"-C": 1})
    adapter = FirewallAdapter(IptablesBackend(runner=runner))
    Enforcer(store, adapter).block("203.0.113.24", "rate", timedelta(minutes=1))
    clock.advance(minutes=2)

    runner.codes = {"-C": 0}
    adapter.release_expired(store.sweep())
    assert adapter.enforced() == set()


def test_enforcer_unblock_removes_rule(store):
    runner = RecordingRunner(codes={"-C": 1})
    enforcer = Enforcer(store, FirewallAdapter(IptablesBackend(runner=runner)))
    enforcer.block("203.0.113.25", "manual", PERMANENT)

    runner.codes = {"-C": 0}
    removed = enforcer.unblock("203.0.113.25", "operator")
    assert removed is not None
    assert not store.is_blocked("203.0.113.25")
    assert runner.commands_with("-D") == [["iptables", "-D", "INPUT", "-s", "203.0.113.25", "-j", "DROP"]]


def test_rate_limit_and_ddos_add_each_rule_once(runner):
    adapter = FirewallAdapter(IptablesBackend(runner=runner))
    adapter.enable_rate_limiting(25)
    adapter.enable_ddos_protection()

    assert any("--hitcount" in argv and "25" in argv for argv in runner.calls)
    appended = runner.commands_with("-A")
    assert len(appended) == 6
    assert all(["iptables", "-C", *argv[2:]] in runner.calls for argv in appended)

    # the rules are in place now: later calls only query
    runner.codes = {}
    adapter.enable_ddos_protection()
    adapter.enable_ddos_protection()
    adapter.enable_rate_limiting(25)
    assert len(runner.commands_with("-A")) == 6
    assert len([argv for argv in runner.commands_with("-A") if "connlimit" in argv]) == 2

    # backends without such commands just log
    FirewallAdapter(UfwBackend(runner=runner)).enable_ddos_protection()


def test_existence_check_miss_is_not_an_error(runner):
    backend = IptablesBackend(runner=runner)
    with capture_logs() as logs:
        assert backend.is_present("203.0.113.30") is False
        assert backend.apply("203.0.113.30", FirewallAction.BLOCK)
    assert [entry["event"] for entry in logs].count("firewall_rule_absent") == 2
    assert not [entry for entry in logs if entry["log_level"] == "error"]


def test_failed_command_is_logged_as_error():
    backend = IptablesBackend(runner=RecordingRunner(default=1))
    with capture_logs() as logs:
        assert not backend.apply("203.0.113.31", FirewallAction.BLOCK)
    assert [entry["event"] for entry in logs if entry["log_level"] == "error"] == ["firewall_command_nonzero"]
