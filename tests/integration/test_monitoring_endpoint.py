"""Integration tests for health check and uptime API endpoints."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from govmon.config import settings
from tests.mocks.fake_clock import NOW


# ── GET /api/health ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["scheduler_state"] == "idle"
    assert data["version"] == "0.1.0"


# ── POST /api/health-check/run ──────────────────────────────────────────────


@pytest.mark.asyncio
async def test_manual_run_returns_summary(client, store):
    await store.create_system(name="Portal", url="https://portal.example.gov")
    await store.create_system(name="Broken", url="https://down.example.gov")
    await store.create_system(name="Unprobed")

    resp = await client.post("/api/health-check/run")

    assert resp.status_code == 200
    data = resp.json()
    assert data["total"] == 3
    assert data["checked"] == 2
    assert data["up"] == 1
    assert data["down"] == 1
    assert data["skipped"] == 1
    assert data["trigger"] == "manual"


@pytest.mark.asyncio
async def test_manual_run_conflict_while_running(client, scheduler):
    async with scheduler._lock:
        resp = await client.post("/api/health-check/run")

    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "cycle_in_progress"


@pytest.mark.asyncio
async def test_manual_run_failure_hides_internal_error(client, store):
    with patch.object(store, "list_probeable_systems", side_effect=RuntimeError("password=hunter2")):
        resp = await client.post("/api/health-check/run")

    assert resp.status_code == 500
    body = resp.json()
    assert body["error"]["code"] == "cycle_failed"
    assert "hunter2" not in resp.text


# ── GET /api/health-check/status ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_status_reflects_last_cycle(client):
    await client.post("/api/health-check/run")

    resp = await client.get("/api/health-check/status")

    assert resp.status_code == 200
    data = resp.json()
    assert data["state"] == "idle"
    assert data["active"] is False
    assert data["schedule"] == "every 5 minute(s)"
    assert data["cycles_completed"] == 1
    assert data["last_summary"]["trigger"] == "manual"
    assert data["last_error"] is None


# ── GET /api/systems/{id}/uptime ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_uptime_stats(client, store):
    system = await store.create_system(name="Portal", url="https://portal.example.gov")
    await store.insert_open_interval(system.id, NOW - timedelta(days=2), "Up → Down", "HTTP 503")
    await store.close_latest_open_interval(system.id, NOW - timedelta(days=2) + timedelta(minutes=1440))

    resp = await client.get(f"/api/systems/{system.id}/uptime")

    assert resp.status_code == 200
    data = resp.json()
    assert data["system_id"] == system.id
    assert data["uptime_percentage"] == 96.67
    assert data["total_incidents"] == 1
    assert data["total_downtime_minutes"] == 1440
    assert data["total_downtime_hours"] == 24.0
    assert data["currently_down"] is False
    assert data["recent_incidents"][0]["error_message"] == "HTTP 503"


@pytest.mark.asyncio
async def test_uptime_unknown_system_404(client):
    resp = await client.get("/api/systems/999/uptime")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


# ── GET /api/systems/{id}/uptime/trend ──────────────────────────────────────


@pytest.mark.asyncio
async def test_trend(client, store):
    system = await store.create_system(name="Portal")
    await store.insert_open_interval(system.id, NOW - timedelta(hours=3), "Up → Down", None)

    resp = await client.get(f"/api/systems/{system.id}/uptime/trend", params={"days": 3})

    assert resp.status_code == 200
    data = resp.json()
    assert data["days"] == 3
    assert [p["date"] for p in data["points"]] == ["2026-03-13", "2026-03-14", "2026-03-15"]
    assert data["points"][-1]["downtime"] == 180
    assert data["points"][-1]["uptime"] == 87.5


@pytest.mark.asyncio
@pytest.mark.parametrize("days", [0, 366])
async def test_trend_rejects_out_of_range_days(client, store, days):
    system = await store.create_system(name="Portal")
    resp = await client.get(f"/api/systems/{system.id}/uptime/trend", params={"days": days})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_trend_unknown_system_404(client):
    resp = await client.get("/api/systems/999/uptime/trend")
    assert resp.status_code == 404


# ── Operator gate ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_gate_disabled_by_default(client):
    resp = await client.post("/api/health-check/run")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_gate_blocks_post_without_key(client):
    with patch.object(settings, "govmon_operator_key", "s3cret"):
        resp = await client.post("/api/health-check/run")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "access_denied"


@pytest.mark.asyncio
async def test_gate_rejects_wrong_key(client):
    with patch.object(settings, "govmon_operator_key", "s3cret"):
        resp = await client.post("/api/health-check/run", headers={"X-Operator-Key": "nope"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_gate_accepts_matching_key(client):
    with patch.object(settings, "govmon_operator_key", "s3cret"):
        resp = await client.post("/api/health-check/run", headers={"X-Operator-Key": "s3cret"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_gate_leaves_reads_open(client):
    with patch.object(settings, "govmon_operator_key", "s3cret"):
        resp = await client.get("/api/health-check/status")
    assert resp.status_code == 200
