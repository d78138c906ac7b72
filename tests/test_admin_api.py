import asyncio
import time

import httpx
import pytest

from wellness.admin.app import create_app
from wellness.admin.schemas import RuntimeControl
from wellness.channels.notifier import LogNotifier
from wellness.core.context import ContextOptions, build_context

TOKEN = "test-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


@pytest.fixture
async def context(db_path, clock):
    context = await build_context(ContextOptions(db_path=db_path), notifier=LogNotifier(), clock=clock)
    yield context
    await context.shutdown()


@pytest.fixture
def control(context):
    return RuntimeControl(
        shutdown_event=asyncio.Event(),
        context=context,
        started_at=time.time(),
        auth_token=TOKEN,
    )


@pytest.fixture
async def client(control):
    transport = httpx.ASGITransport(app=create_app(control))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


class TestAuth:
    @pytest.mark.asyncio
    async def test_health_is_public(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.text == "ok"

        response = await client.get("/api/v1/health")
        assert response.json()["storage_available"] is True
        assert response.json()["now_utc"].endswith("Z")

    @pytest.mark.asyncio
    async def test_missing_or_wrong_token(self, client):
        assert (await client.get("/api/v1/status")).status_code == 401
        wrong = {"Authorization": "Bearer nope"}
        assert (await client.get("/api/v1/status", headers=wrong)).status_code == 401

    @pytest.mark.asyncio
    async def test_bearer_and_header_token(self, client):
        assert (await client.get("/api/v1/auth/check", headers=AUTH)).json() == {"ok": True}
        response = await client.get("/api/v1/auth/check", headers={"X-Wellness-Token": TOKEN})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_unconfigured_token_disables_api(self, context):
        control = RuntimeControl(shutdown_event=asyncio.Event(), context=context, started_at=time.time())
        transport = httpx.ASGITransport(app=create_app(control))
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/api/v1/status", headers=AUTH)
        assert response.status_code == 503


class TestReminders:
    @pytest.mark.asyncio
    async def test_list_reminders(self, client):
        response = await client.get("/api/v1/reminders", headers=AUTH)
        assert [item["kind"] for item in response.json()["items"]] == ["water", "standup"]

    @pytest.mark.asyncio
    async def test_start_and_pause(self, client):
        response = await client.post("/api/v1/reminders/water/start", headers=AUTH)
        body = response.json()
        assert body["ok"] is True
        assert body["status"]["phase"] == "running"

        response = await client.post("/api/v1/reminders/water/pause", headers=AUTH)
        assert response.json()["status"]["phase"] == "paused"

        response = await client.post("/api/v1/reminders/water/pause", headers=AUTH)
        assert response.json()["ok"] is False

    @pytest.mark.asyncio
    async def test_unknown_kind_or_action(self, client):
        assert (await client.post("/api/v1/reminders/coffee/start", headers=AUTH)).status_code == 404
        assert (await client.post("/api/v1/reminders/water/explode", headers=AUTH)).status_code == 404
        assert (await client.get("/api/v1/reminders/coffee", headers=AUTH)).status_code == 404

    @pytest.mark.asyncio
    async def test_snooze(self, client, clock):
        await client.post("/api/v1/reminders/standup/start", headers=AUTH)
        response = await client.post("/api/v1/reminders/standup/snooze", json={"minutes": 2}, headers=AUTH)
        body = response.json()
        assert body["ok"] is True
        assert body["status"]["next_reminder_at"] == clock.now + 120_000

        response = await client.post("/api/v1/reminders/standup/snooze", json={"minutes": 0}, headers=AUTH)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_update_settings(self, client):
        response = await client.patch(
            "/api/v1/reminders/water/settings", json={"interval_minutes": 10}, headers=AUTH
        )
        assert response.status_code == 200
        assert response.json()["status"]["interval_minutes"] == 10

        assert (
            await client.patch("/api/v1/reminders/water/settings", json={"interval_minutes": 0}, headers=AUTH)
        ).status_code == 422
        assert (
            await client.patch("/api/v1/reminders/water/settings", json={"volume": 3}, headers=AUTH)
        ).status_code == 422
        assert (await client.patch("/api/v1/reminders/water/settings", json={}, headers=AUTH)).status_code == 400

    @pytest.mark.asyncio
    async def test_disable_stops_active_reminder(self, client):
        await client.post("/api/v1/reminders/water/start", headers=AUTH)
        response = await client.patch("/api/v1/reminders/water/settings", json={"enabled": False}, headers=AUTH)
        status = response.json()["status"]
        assert status["is_active"] is False
        assert status["enabled"] is False

        response = await client.post("/api/v1/reminders/water/start", headers=AUTH)
        assert response.json()["ok"] is False


class TestActivityAndDaily:
    @pytest.mark.asyncio
    async def test_ping_and_visibility(self, client, context):
        response = await client.post("/api/v1/activity/ping", headers=AUTH)
        assert response.json() == {"ok": True, "is_user_active": True}

        response = await client.post("/api/v1/activity/visibility", json={"visible": False}, headers=AUTH)
        assert response.json()["ok"] is True

    @pytest.mark.asyncio
    async def test_threshold(self, client):
        response = await client.put("/api/v1/activity/threshold", json={"minutes": 2}, headers=AUTH)
        assert response.json() == {"ok": True, "away_threshold_ms": 120_000}

        response = await client.get("/api/v1/activity", headers=AUTH)
        assert response.json()["away_threshold_ms"] == 120_000

        assert (await client.put("/api/v1/activity/threshold", json={"minutes": -1}, headers=AUTH)).status_code == 422

    @pytest.mark.asyncio
    async def test_daily_goal(self, client):
        response = await client.put("/api/v1/daily/goal", json={"goal": 12}, headers=AUTH)
        assert response.json()["stats"]["goal"] == 12
        assert (await client.put("/api/v1/daily/goal", json={"goal": 30}, headers=AUTH)).status_code == 422
        assert (await client.get("/api/v1/daily", headers=AUTH)).json()["count"] == 0


class TestDiagnostics:
    @pytest.mark.asyncio
    async def test_errors_listing_and_clear(self, client, context):
        context.error_handler.report("storage", "disk full", source="test")

        body = (await client.get("/api/v1/errors", headers=AUTH)).json()
        assert body["stats"]["total"] == 1
        assert body["items"][0]["message"] == "disk full"

        assert (await client.delete("/api/v1/errors", headers=AUTH)).json() == {"ok": True}
        assert (await client.get("/api/v1/errors", headers=AUTH)).json()["stats"]["total"] == 0

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        body = (await client.get("/api/v1/metrics", headers=AUTH)).json()
        assert body["runtime"]["reminder_snoozed_count"] == 0
        assert body["state"]["initialized"] is True

    @pytest.mark.asyncio
    async def test_state_reset(self, client):
        await client.post("/api/v1/reminders/water/start", headers=AUTH)
        body = (await client.post("/api/v1/state/reset", headers=AUTH)).json()
        assert body["ok"] is True
        assert all(item["is_active"] is False for item in body["reminders"])

    @pytest.mark.asyncio
    async def test_shutdown_sets_event(self, client, control):
        response = await client.post("/api/v1/control/shutdown", json={"reason": "test"}, headers=AUTH)
        assert response.json() == {"ok": True, "action": "shutdown"}
        assert control.shutdown_event.is_set()
