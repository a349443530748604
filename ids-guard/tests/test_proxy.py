import pytest

from clock import ManualClock
from conftest import RecordingBackup, RecordingNotifier, StaticIntegrity
from proxy import EXTENSION_KEY, build_guard, create_app
from settings import Settings

BROWSER = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_5) Safari/605.1.15"


def make_app(**overrides):
    clock = ManualClock()
    options = dict(firewall_enabled=False, integrity_paths=(), worker_threads=0, rate_limit=5)
    options.update(overrides)
    guard = build_guard(
        Settings(**options),
        clock=clock,
        notifier=RecordingNotifier(),
        backup=RecordingBackup(),
        integrity=StaticIntegrity(clock),
        connection_provider=lambda: [],
    )
    app = create_app(guard=guard, start_background=False)

    @app.route("/products")
    def products():
        return "catalogue"

    app.config["TESTING"] = True
    return app


@pytest.fixture()
def app():
    return make_app()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def guard(app):
    return app.extensions[EXTENSION_KEY]


def from_ip(ip):
    return {"X-Forwarded-For": ip, "User-Agent": BROWSER}


def test_clean_request_reaches_application(client):
    response = client.get("/products?page=2", headers=from_ip("198.51.100.10"))
    assert response.status_code == 200
    assert response.data == b"catalogue"


def test_attack_is_rejected_then_source_stays_blocked(client, guard):
    response = client.get("/products?q=1%20union%20select%20password%20from%20users", headers=from_ip("198.51.100.20"))
    assert response.status_code == 403
    body = response.get_json()
    assert body["status"] == "blocked"
    assert body["reason"] == "SQL_INJECTION"
    assert body["client"] == "198.51.100.20"

    follow_up = client.get("/products", headers=from_ip("198.51.100.20"))
    assert follow_up.status_code == 403
    assert follow_up.get_json()["outcome"] == "blocked"
    assert guard.store.lookup("198.51.100.20").permanent


def test_rate_limited_client_gets_429(client):
    codes = [client.get("/products", headers=from_ip("198.51.100.30")).status_code for _ in range(6)]
    assert codes == [200] * 5 + [429]
    assert client.get("/products", headers=from_ip("198.51.100.30")).get_json()["status"] == "rate_limited"
    assert client.get("/products", headers=from_ip("198.51.100.31")).status_code == 200


def test_admin_block_and_unblock(client):
    response = client.post("/security/firewall/block", json={"ip": "203.0.113.40", "duration_minutes": 15})
    assert response.status_code == 200
    entry = response.get_json()["entry"]
    assert entry["identifier"] == "203.0.113.40"
    assert entry["permanent"] is False

    listed = client.get("/security/firewall/blocked-ips").get_json()["blocked"]
    assert [item["identifier"] for item in listed] == ["203.0.113.40"]
    assert client.get("/products", headers=from_ip("203.0.113.40")).status_code == 403

    response = client.post("/security/firewall/unblock", json={"ip": "203.0.113.40"})
    assert response.get_json()["status"] == "unblocked"
    assert client.get("/products", headers=from_ip("203.0.113.40")).status_code == 200

    response = client.post("/security/firewall/unblock", json={"ip": "203.0.113.40"})
    assert response.get_json()["status"] == "not_blocked"


@pytest.mark.parametrize(
    "path,payload",
    [
        ("/security/firewall/block", {"ip": "not-an-ip"}),
        ("/security/firewall/block", {"ip": "203.0.113.41", "duration_minutes": 0}),
        ("/security/firewall/block", {"ip": "203.0.113.41", "duration_minutes": "soon"}),
        ("/security/firewall/unblock", {}),
        ("/security/rate-limit/set", {"threshold": "many"}),
        ("/security/rate-limit/set", {"threshold": -3}),
        ("/security/emergency/trigger", {"type": "ALIENS", "reason": "x"}),
        ("/security/emergency/trigger", {"type": "CYBER_ATTACK", "severity": "EXTREME", "reason": "x"}),
        ("/security/emergency/trigger", {"type": "CYBER_ATTACK"}),
    ],
)
def test_admin_rejects_bad_input(client, path, payload):
    response = client.post(path, json=payload)
    assert response.status_code == 400
    assert response.get_json()["status"] == "error"


def test_rate_limit_and_ddos_are_accepted(client):
    response = client.post("/security/rate-limit/set", json={"threshold": 50})
    assert response.status_code == 202
    assert response.get_json()["threshold"] == 50
    assert client.post("/security/ddos/enable").status_code == 202


def test_emergency_trigger_and_resolve(client, guard):
    response = client.post(
        "/security/emergency/trigger",
        json={"type": "cyber_attack", "severity": "critical", "reason": "web shell found", "attacker_ip": "203.0.113.50"},
    )
    assert response.status_code == 202
    incident = response.get_json()
    assert incident["id"].startswith("ER-")
    assert incident["trigger"]["type"] == "CYBER_ATTACK"
    assert guard.store.is_blocked("203.0.113.50")

    listed = client.get("/security/incidents?status=in_progress").get_json()["incidents"]
    assert [item["id"] for item in listed] == [incident["id"]]
    assert client.get(f"/security/incidents/{incident['id']}").get_json()["status"] == "IN_PROGRESS"

    resolved = client.post(f"/security/incidents/{incident['id']}/resolve", json={"note": "contained"})
    assert resolved.status_code == 200
    assert resolved.get_json()["status"] == "COMPLETED"

    again = client.post(f"/security/incidents/{incident['id']}/resolve")
    assert again.status_code == 409


def test_unknown_incidents_and_sources_are_404(client):
    assert client.get("/security/incidents/ER-0-0").status_code == 404
    assert client.post("/security/incidents/ER-0-0/resolve").status_code == 404
    assert client.get("/security/statistics/203.0.113.99").status_code == 404
    assert client.get("/security/incidents?status=sleeping").status_code == 400


def test_events_statistics_and_top(client):
    client.get("/products?file=../../etc/passwd", headers=from_ip("198.51.100.60"))

    events = client.get("/security/events?limit=10").get_json()["events"]
    assert {"PATH_TRAVERSAL", "IP_BLOCKED"} <= {event["event_type"] for event in events}

    stats = client.get("/security/statistics/198.51.100.60").get_json()
    assert stats["attacks_by_type"] == {"PATH_TRAVERSAL": 1}

    top = client.get("/security/top?n=3").get_json()["top"]
    assert top[0]["source"] == "198.51.100.60"


def test_health_overview_and_metrics(client):
    client.get("/products", headers=from_ip("198.51.100.70"))

    health = client.get("/security/health").get_json()
    assert health["status"] == "ok"
    assert health["firewall_backend"] == "disabled"

    overview = client.get("/security/overview").get_json()
    assert overview["detection"]["allowed"] >= 1
    assert overview["settings"]["rate_limit"] == 5
    assert overview["blocked_ips"] == []

    metrics = client.get("/security/metrics").get_json()
    assert "SQL_INJECTION" in metrics["rules"]
    assert metrics["workers"]["max_workers"] == 0


def test_integrity_check_endpoint(client):
    body = client.post("/security/integrity/check").get_json()
    assert body["report"]["overall_status"] == "HEALTHY"
    assert body["file_findings"] == 0


def test_admin_bypass_skips_inspection_for_admin_api():
    app = make_app(admin_bypass=True, rate_limit=2)
    client = app.test_client()
    for _ in range(5):
        assert client.get("/security/health").status_code == 200

    strict = make_app(rate_limit=2).test_client()
    codes = [strict.get("/security/health").status_code for _ in range(3)]
    assert codes == [200, 200, 429]


def test_cors_headers_present(client):
    response = client.get("/security/health", headers={"Origin": "http://localhost:3000"})
    # older flask-cors answers "*", newer releases echo the origin back
    assert response.headers.get("Access-Control-Allow-Origin") in {"*", "http://localhost:3000"}


def test_guard_sweep(guard):
    assert guard.sweep() == {"expired": 0, "rate_windows": 0, "statistics": 0, "incidents": 0}


def test_guard_sweep_forgets_closed_incidents(client, guard):
    opened = client.post("/security/emergency/trigger", json={"type": "SYSTEM_FAILURE", "reason": "disk full"}).get_json()
    client.post(f"/security/incidents/{opened['id']}/resolve")

    guard.clock.advance(hours=73)
    assert guard.sweep()["incidents"] == 1
    assert client.get(f"/security/incidents/{opened['id']}").status_code == 404
