import hashlib

from events import SYSTEM_SOURCE, Severity
from hostscan import Connection, ConnectionMonitor, FileIntegrityMonitor, HostMonitor, file_digest


class FakeTable:
    def __init__(self):
        self.connections = []

    def __call__(self):
        return list(self.connections)


def scanner_hits(remote, ports):
    return [Connection(remote, port) for port in ports]


def test_file_digest_is_sha256(tmp_path):
    target = tmp_path / "hosts"
    target.write_bytes(b"127.0.0.1 localhost\n")
    assert file_digest(str(target)) == hashlib.sha256(b"127.0.0.1 localhost\n").hexdigest()


def test_modified_file_reported_once(tmp_path):
    watched = tmp_path / "passwd"
    watched.write_text("root:x:0:0:root:/root:/bin/bash\n")
    monitor = FileIntegrityMonitor([str(watched)])
    assert monitor.check() == []

    watched.write_text("root:x:0:0:root:/root:/bin/bash\nmallory:x:0:0::/:/bin/sh\n")
    findings = monitor.check()
    assert len(findings) == 1
    finding = findings[0]
    assert finding.source == SYSTEM_SOURCE
    assert finding.rule_name == "FILE_INTEGRITY_VIOLATION"
    assert finding.severity is Severity.HIGH
    assert "modified" in finding.detail

    # the new content becomes the baseline
    assert monitor.check() == []


def test_removed_file_reported(tmp_path):
    watched = tmp_path / "sshd_config"
    watched.write_text("PermitRootLogin no\n")
    monitor = FileIntegrityMonitor([str(watched)])

    watched.unlink()
    findings = monitor.check()
    assert [f.detail.split(":")[0] for f in findings] == ["watched file removed"]
    assert monitor.check() == []


def test_file_created_after_start_becomes_baseline(tmp_path):
    watched = tmp_path / "late"
    monitor = FileIntegrityMonitor([str(watched)])
    assert monitor.baseline == {}

    watched.write_text("v1")
    assert monitor.check() == []
    watched.write_text("v2")
    assert len(monitor.check()) == 1


def test_port_scan_over_threshold(clock):
    table = FakeTable()
    monitor = ConnectionMonitor(table, portscan_threshold=10, portscan_window_seconds=60, clock=clock)

    table.connections = scanner_hits("198.51.100.80", range(8000, 8010))
    assert monitor.check() == []

    clock.advance(seconds=5)
    table.connections = scanner_hits("198.51.100.80", [22])
    findings = monitor.check()
    assert [(f.source, f.rule_name, f.severity) for f in findings] == [
        ("198.51.100.80", "PORT_SCANNING", Severity.MEDIUM)
    ]
    assert "11 distinct local ports" in findings[0].detail


def test_port_scan_alert_once_per_window(clock):
    table = FakeTable()
    monitor = ConnectionMonitor(table, portscan_threshold=3, portscan_window_seconds=60, clock=clock)

    table.connections = scanner_hits("198.51.100.81", range(1, 6))
    assert len(monitor.check()) == 1

    clock.advance(seconds=10)
    table.connections = scanner_hits("198.51.100.81", range(10, 16))
    assert monitor.check() == []

    clock.advance(seconds=61)
    table.connections = scanner_hits("198.51.100.81", range(20, 26))
    assert len(monitor.check()) == 1


def test_old_ports_fall_out_of_window(clock):
    table = FakeTable()
    monitor = ConnectionMonitor(table, portscan_threshold=5, portscan_window_seconds=60, clock=clock)

    table.connections = scanner_hits("198.51.100.82", range(1, 5))
    monitor.check()
    clock.advance(seconds=120)
    table.connections = scanner_hits("198.51.100.82", range(5, 9))
    assert monitor.check() == []


def test_connection_anomaly(clock):
    table = FakeTable()
    monitor = ConnectionMonitor(table, portscan_threshold=1000, connection_threshold=5, clock=clock)

    table.connections = [Connection("198.51.100.83", 443) for _ in range(6)]
    findings = monitor.check()
    assert [(f.rule_name, f.severity) for f in findings] == [("CONNECTION_ANOMALY", Severity.MEDIUM)]
    assert "6 simultaneous connections" in findings[0].detail

    clock.advance(seconds=5)
    assert monitor.check() == []


def test_loopback_is_ignored(clock):
    table = FakeTable()
    monitor = ConnectionMonitor(table, portscan_threshold=2, connection_threshold=2, clock=clock)
    table.connections = scanner_hits("127.0.0.1", range(1, 20)) + scanner_hits("::1", range(1, 20))
    assert monitor.check() == []


def test_snapshot_failure_yields_nothing(clock):
    def broken():
        raise OSError("proc unavailable")

    assert ConnectionMonitor(broken, clock=clock).check() == []


def test_host_monitor_forwards_findings(tmp_path, clock):
    watched = tmp_path / "hosts"
    watched.write_text("a")
    table = FakeTable()
    table.connections = scanner_hits("198.51.100.84", range(1, 5))
    dispatched = []

    monitor = HostMonitor(
        dispatched.append,
        files=FileIntegrityMonitor([str(watched)]),
        connections=ConnectionMonitor(table, portscan_threshold=2, clock=clock),
    )
    watched.write_text("b")

    assert len(monitor.scan_files()) == 1
    assert len(monitor.scan_network()) == 1
    assert [d.rule_name for d in dispatched] == ["FILE_INTEGRITY_VIOLATION", "PORT_SCANNING"]


def test_network_scan_can_be_disabled(clock):
    table = FakeTable()
    table.connections = scanner_hits("198.51.100.85", range(1, 50))
    dispatched = []
    monitor = HostMonitor(
        dispatched.append,
        connections=ConnectionMonitor(table, portscan_threshold=2, clock=clock),
        network_enabled=False,
    )
    assert monitor.scan_network() == []
    assert monitor.scan_files() == []
    assert dispatched == []
