"""
API tests against an in-memory history database.
"""

import pytest
from fastapi.testclient import TestClient

from install_scheduler.api import create_app
from install_scheduler.schemas import Settings
from install_scheduler.service import ConflictService

from builders import DAY_RANGE, create_test_config, member, overlap_snapshot


@pytest.fixture(scope="function")
def client():
    """Test client with its own service and database."""
    service = ConflictService(config=create_test_config(), settings=Settings(database_url="sqlite://"))
    with TestClient(create_app(service)) as test_client:
        yield test_client


def request_body(snapshot, **extra):
    body = {
        "snapshot": snapshot.model_dump(mode="json"),
        "date_range": DAY_RANGE.model_dump(mode="json"),
    }
    body.update(extra)
    return body


def detect_and_propose(client, snapshot):
    conflict = client.post("/conflicts/detect", json=request_body(snapshot)).json()["conflicts"][0]
    proposed = client.post("/conflicts/propose", json=request_body(snapshot, conflict_id=conflict["id"]))
    assert proposed.status_code == 200
    return proposed.json()


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["geocoding_configured"] is True
    assert data["active_sweeps"] == 0


def test_detect_returns_conflicts(client):
    response = client.post("/conflicts/detect", json=request_body(overlap_snapshot(member("bob"))))

    assert response.status_code == 200
    data = response.json()
    assert data["version"] == 0
    assert len(data["conflicts"]) == 1
    conflict = data["conflicts"][0]
    assert conflict["type"] == "time_overlap"
    assert conflict["severity"] == "critical"
    assert conflict["auto_resolvable"] is True


def test_detect_requires_date_range(client):
    body = {"snapshot": overlap_snapshot().model_dump(mode="json")}

    assert client.post("/conflicts/detect", json=body).status_code == 422


def test_propose_unknown_conflict_is_404(client):
    body = request_body(overlap_snapshot(member("bob")), conflict_id="time_overlap:nobody:x+y")

    assert client.post("/conflicts/propose", json=body).status_code == 404


def test_apply_against_moved_snapshot_is_409(client):
    snap = overlap_snapshot(member("bob"))
    proposal = detect_and_propose(client, snap)
    selection = {"conflict": proposal["conflict"], "resolution": proposal["resolutions"][0]}

    moved_on = snap.model_copy(update={"version": 4})
    response = client.post("/conflicts/apply", json=request_body(moved_on, selection=selection))

    assert response.status_code == 409
    assert response.json()["detail"]["expected_version"] == 0
    assert response.json()["detail"]["actual_version"] == 4


def test_apply_records_history_and_analytics(client):
    snap = overlap_snapshot(member("bob"))
    proposal = detect_and_propose(client, snap)
    selection = {"conflict": proposal["conflict"], "resolution": proposal["resolutions"][0]}

    response = client.post("/conflicts/apply", json=request_body(snap, selection=selection,
                                                                  applied_by="dispatcher"))

    assert response.status_code == 200
    data = response.json()
    assert data["snapshot"]["version"] == 1
    assert data["history"][0]["outcome"] == "successful"

    history = client.get("/history/default/default").json()
    assert [h["id"] for h in history] == [data["history"][0]["id"]]
    assert client.get("/history/default/default", params={"outcome": "reverted"}).json() == []

    analytics = client.get("/analytics/default/default").json()
    assert analytics["total_conflicts"] == 1
    assert analytics["resolved_conflicts"] == 1
    assert analytics["resolution_success_rate"] == 100.0


def test_revert_round_trip(client):
    snap = overlap_snapshot(member("bob"))
    proposal = detect_and_propose(client, snap)
    selection = {"conflict": proposal["conflict"], "resolution": proposal["resolutions"][0]}
    applied = client.post("/conflicts/apply", json=request_body(snap, selection=selection)).json()

    response = client.post("/conflicts/revert", json={
        "snapshot": applied["snapshot"],
        "history_id": applied["history"][0]["id"],
    })

    assert response.status_code == 200
    data = response.json()
    assert data["snapshot"]["version"] == 2
    assert data["history"][0]["outcome"] == "reverted"
    assert client.post("/conflicts/revert", json={
        "snapshot": data["snapshot"], "history_id": "missing",
    }).status_code == 404


def test_auto_resolve(client):
    response = client.post("/conflicts/auto-resolve", json=request_body(overlap_snapshot(member("bob"))))

    assert response.status_code == 200
    data = response.json()
    assert len(data["history"]) == 1
    assert data["skipped"] == []
    assert data["history"][0]["applied_by"] == "auto-resolver"


def test_changed_hook_detects(client):
    response = client.post("/conflicts/changed", json=request_body(overlap_snapshot(version=3)))

    assert response.status_code == 200
    data = response.json()
    assert data["version"] == 3
    assert [c["type"] for c in data["conflicts"]] == ["time_overlap"]


def test_history_since_filter(client):
    client.post("/conflicts/auto-resolve", json=request_body(overlap_snapshot(member("bob"))))

    assert len(client.get("/history/default/default", params={"since": "2000-01-01T00:00:00Z"}).json()) == 1
    assert client.get("/history/default/default", params={"since": "2100-01-01T00:00:00Z"}).json() == []


def test_sweep_start_and_stop(client):
    assert client.post("/sweeps/default/default").status_code == 404

    client.post("/conflicts/changed", json=request_body(overlap_snapshot()))
    started = client.post("/sweeps/default/default")

    assert started.status_code == 200
    assert started.json()["running"] is True
    assert started.json()["active_sweeps"] == 1
    assert client.get("/health").json()["active_sweeps"] == 1

    stopped = client.delete("/sweeps/default/default").json()
    assert stopped["running"] is False
    assert stopped["active_sweeps"] == 0


def test_shutdown_stops_running_sweeps():
    service = ConflictService(config=create_test_config(), settings=Settings(database_url="sqlite://"))
    with TestClient(create_app(service)) as test_client:
        test_client.post("/conflicts/changed", json=request_body(overlap_snapshot()))
        assert test_client.post("/sweeps/default/default").json()["active_sweeps"] == 1

    assert service.sweeper.active == 0
    assert service.sweeper.tasks == {}
