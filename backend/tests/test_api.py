"""HTTP adapter tests: routes map one-to-one onto registry operations."""
import time

import pytest
from fastapi.testclient import TestClient

from tapecapture.launcher import EmulatedCaptureLauncher
from tapecapture.main import app
from tapecapture.registry import JobRegistry
from tapecapture.watchdog import Watchdog

from fakes import FakeLauncher, StaticProbe


def build(persistence, collections_dir, emulate=True, interval=(0.005, 0.01)):
    return JobRegistry(
        persistence=persistence,
        probe=StaticProbe(False),
        launcher=FakeLauncher(),
        emulated_launcher=EmulatedCaptureLauncher(start_delay=0.0, interval=interval) if emulate else None,
        watchdog=Watchdog(60),
        collections_dir=collections_dir,
    )


@pytest.fixture
def client(persistence, collections_dir):
    app.state.registry = build(persistence, collections_dir)
    with TestClient(app) as c:
        yield c
    app.state.registry = None


@pytest.fixture
def slow_client(persistence, collections_dir):
    app.state.registry = build(persistence, collections_dir, interval=(5.0, 5.0))
    with TestClient(app) as c:
        yield c
    app.state.registry = None


def poll_status(client, job_id, wanted, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = client.get(f"/captures/{job_id}").json()
        if job["status"] == wanted:
            return job
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} never reached {wanted}")


def test_start_and_complete_capture(client):
    resp = client.post("/captures", json={"collection_id": 3, "collection_name": "home-movies"})
    assert resp.status_code == 200
    job_id = resp.json()["job_id"]

    job = poll_status(client, job_id, "completed")
    assert job["progress"] == 100
    assert job["collection_id"] == 3

    assert [j["id"] for j in client.get("/captures").json()] == [job_id]
    assert [j["id"] for j in client.get("/collections/3/captures").json()] == [job_id]
    assert client.get("/collections/4/captures").json() == []


def test_unknown_job_is_404(client):
    assert client.get("/captures/nope").status_code == 404


def test_cancel_and_cleanup(slow_client):
    client = slow_client
    job_id = client.post("/captures", json={"collection_id": 1, "collection_name": "tapes"}).json()["job_id"]

    assert client.post(f"/captures/{job_id}/cancel").json() == {"cancelled": True}
    poll_status(client, job_id, "cancelled")
    assert client.post(f"/captures/{job_id}/cancel").json() == {"cancelled": False}

    assert client.post("/captures/cleanup", params={"max_age_ms": 0}).json() == {"removed": 1}
    assert client.get("/captures").json() == []


def test_progress_websocket_streams_until_terminal(client):
    job_id = client.post("/captures", json={"collection_id": 1, "collection_name": "tapes"}).json()["job_id"]

    statuses = []
    with client.websocket_connect(f"/capture-progress?jobId={job_id}") as ws:
        while True:
            msg = ws.receive_json()
            statuses.append(msg["status"])
            if msg["status"] in ("completed", "failed", "cancelled"):
                break
    assert statuses[-1] == "completed"


def test_progress_websocket_requires_job_id(client):
    with client.websocket_connect("/capture-progress") as ws:
        assert ws.receive_json() == {"error": "missing jobId query param"}


def test_no_device_without_emulation_is_503(persistence, collections_dir):
    app.state.registry = build(persistence, collections_dir, emulate=False)
    try:
        with TestClient(app) as c:
            resp = c.post("/captures", json={"collection_id": 1, "collection_name": "tapes"})
            assert resp.status_code == 503
            jobs = c.get("/captures").json()
            assert [j["status"] for j in jobs] == ["failed"]
    finally:
        app.state.registry = None


def test_capture_logs(client):
    job_id = client.post("/captures", json={"collection_id": 1, "collection_name": "tapes"}).json()["job_id"]
    poll_status(client, job_id, "completed")

    logs = client.get(f"/captures/{job_id}/logs").json()
    assert any(entry["message"].startswith("DV Emulator: Progress - ") for entry in logs)
    assert (logs[-1]["level"], logs[-1]["message"]) == ("info", "Process exited with code 0")
    assert client.get("/captures/nope/logs").status_code == 404


def test_devices_fall_back_to_emulated_list(client):
    assert client.get("/devices").json() == {
        "emulated": True,
        "devices": ["Sony DCR-TRV900 (Emulated)", "Canon XM2 (Emulated)"],
    }
