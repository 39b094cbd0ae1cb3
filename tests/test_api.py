import time

import pytest
from fastapi.testclient import TestClient

from prospecting_api import config
from prospecting_api.main import app, get_manager
from prospecting_api.manager import CampaignManager
from prospecting_api.store import OutcomeLog
from tests.helpers import TENANT, FakeChannel, FakeDirectory, cand, seed_outcome, wait_until

AUTH = {"Authorization": "Bearer test-token"}
START_BODY = {
    "category": "bakery",
    "location": "Springfield",
    "template": "Hi {name}!",
    "pacing_interval_seconds": 0,
    "min_yield": 10,
}


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def pages():
    return [([cand(1), cand(2, phone=False), cand(3)], None)]


@pytest.fixture
def mgr(channel, pages):
    return CampaignManager(
        directory_factory=lambda: FakeDirectory(pages),
        channel_factory=lambda name: channel,
        runner_options={"poll_seconds": 0.02, "page_delay": 0.0},
    )


@pytest.fixture
def client(mgr):
    app.dependency_overrides[get_manager] = lambda: mgr
    with TestClient(app) as c:
        yield c
    mgr.stop_all()
    app.dependency_overrides.clear()


def _configure_channel(client):
    r = client.put(f"/v1/tenants/{TENANT}/channel", json={"instance_name": "shop-1"}, headers=AUTH)
    assert r.status_code == 200


def _wait_finished(client):
    def done():
        st = client.get(f"/v1/tenants/{TENANT}/campaign/status", headers=AUTH).json()["status"]
        return not st["running"]

    assert wait_until(done, timeout=10)


@pytest.mark.integration
class TestAuthAndHealth:
    def test_health_is_public(self, client):
        r = client.get("/v1/health")
        assert r.status_code == 200
        assert r.json()["ok"] is True

    def test_requires_token(self, client):
        assert client.get(f"/v1/tenants/{TENANT}/campaign/status").status_code == 401
        r = client.get(f"/v1/tenants/{TENANT}/campaign/status", headers={"Authorization": "Bearer nope"})
        assert r.status_code == 401

    def test_idle_status(self, client):
        r = client.get(f"/v1/tenants/{TENANT}/campaign/status", headers=AUTH)
        assert r.status_code == 200
        body = r.json()
        assert body["status"]["state"] == "idle"
        assert body["leads"] == []


@pytest.mark.integration
class TestChannel:
    def test_unconfigured_channel_is_404(self, client):
        assert client.get(f"/v1/tenants/{TENANT}/channel", headers=AUTH).status_code == 404

    def test_channel_state_refreshed(self, client, channel):
        _configure_channel(client)
        channel.state = "connecting"

        body = client.get(f"/v1/tenants/{TENANT}/channel", headers=AUTH).json()

        assert body["instance_name"] == "shop-1"
        assert body["status"] == "connecting"

    def test_blank_instance_name_rejected(self, client):
        r = client.put(f"/v1/tenants/{TENANT}/channel", json={"instance_name": "  "}, headers=AUTH)
        assert r.status_code == 400


@pytest.mark.integration
class TestCampaignLifecycle:
    def test_start_without_channel_is_409(self, client):
        r = client.post(f"/v1/tenants/{TENANT}/campaign/start", json=START_BODY, headers=AUTH)

        assert r.status_code == 409
        assert r.json()["detail"]["code"] == "channel_not_configured"

    def test_start_with_disconnected_channel_is_409(self, client, channel):
        _configure_channel(client)
        channel.state = "close"

        r = client.post(f"/v1/tenants/{TENANT}/campaign/start", json=START_BODY, headers=AUTH)

        assert r.status_code == 409
        assert r.json()["detail"]["code"] == "channel_not_connected"

    def test_incomplete_criteria_is_400(self, client):
        _configure_channel(client)

        r = client.post(f"/v1/tenants/{TENANT}/campaign/start", json={**START_BODY, "location": " "}, headers=AUTH)

        assert r.status_code == 400
        assert r.json()["detail"]["code"] == "incomplete_criteria"

    def test_quota_exhausted_is_429(self, client):
        _configure_channel(client)
        log = OutcomeLog()
        for i in range(2):
            seed_outcome(log, f"sent_{i}", sent=True, epoch=time.time())

        r = client.post(f"/v1/tenants/{TENANT}/campaign/start", json={**START_BODY, "daily_cap": 2}, headers=AUTH)

        assert r.status_code == 429
        assert r.json()["detail"]["code"] == "quota_exhausted"

    def test_invalid_pacing_is_422(self, client):
        _configure_channel(client)

        r = client.post(f"/v1/tenants/{TENANT}/campaign/start", json={**START_BODY, "daily_cap": 0}, headers=AUTH)

        assert r.status_code == 422

    def test_full_run(self, client, channel):
        _configure_channel(client)

        r = client.post(f"/v1/tenants/{TENANT}/campaign/start", json=START_BODY, headers=AUTH)
        assert r.status_code == 200
        run_id = r.json()["status"]["campaign_run_id"]
        assert run_id

        _wait_finished(client)

        body = client.get(f"/v1/tenants/{TENANT}/campaign/status", headers=AUTH).json()
        assert body["status"]["state"] == "complete"
        assert body["status"]["total_processed"] == 3
        assert body["status"]["total_messages_sent"] == 2
        assert [s["status"] for s in body["leads"]] == ["message_sent", "missing_phone", "message_sent"]
        assert body["logs"]
        assert [text for _, text in channel.sent] == ["Hi Bakery 1!", "Hi Bakery 3!"]

        quota = client.get(f"/v1/tenants/{TENANT}/quota", headers=AUTH).json()
        assert quota["used_today"] == 2

        outcomes = client.get(f"/v1/tenants/{TENANT}/outcomes", params={"message_sent": "true"}, headers=AUTH).json()
        assert outcomes["count"] == 2

        stats = client.get(f"/v1/tenants/{TENANT}/outcomes/stats", headers=AUTH).json()
        assert stats["total_prospected"] == 3
        assert stats["leads_saved"] == 2

        history = client.get(f"/v1/tenants/{TENANT}/outcomes/history", params={"days": 1}, headers=AUTH).json()
        assert len(history["items"]) == 2

        runs = client.get(f"/v1/tenants/{TENANT}/campaign-runs", headers=AUTH).json()
        assert [x["id"] for x in runs["items"]] == [run_id]

        run = client.get(f"/v1/campaign-runs/{run_id}", headers=AUTH).json()
        assert run["status"] == "complete"

        events = client.get(f"/v1/campaign-runs/{run_id}/events", headers=AUTH).json()["events"]
        assert "lead.missing_phone" in [e["type"] for e in events]

    def test_control_without_runner_is_404(self, client):
        for action in ("pause", "resume", "stop"):
            r = client.post(f"/v1/tenants/{TENANT}/campaign/{action}", headers=AUTH)
            assert r.status_code == 404

    def test_stop_running_campaign(self, client):
        _configure_channel(client)
        client.post(
            f"/v1/tenants/{TENANT}/campaign/start", json={**START_BODY, "pacing_interval_seconds": 60}, headers=AUTH
        )

        again = client.post(f"/v1/tenants/{TENANT}/campaign/start", json=START_BODY, headers=AUTH)
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "already_running"

        r = client.post(f"/v1/tenants/{TENANT}/campaign/stop", headers=AUTH)
        assert r.status_code == 200
        assert r.json()["changed"] is True

        _wait_finished(client)
        st = client.get(f"/v1/tenants/{TENANT}/campaign/status", headers=AUTH).json()["status"]
        assert st["state"] == "stopped"

    def test_quota_reports_active_run_cap(self, client):
        _configure_channel(client)
        assert client.get(f"/v1/tenants/{TENANT}/quota", headers=AUTH).json()["daily_cap"] == config.DAILY_DISPATCH_CAP

        client.post(
            f"/v1/tenants/{TENANT}/campaign/start",
            json={**START_BODY, "pacing_interval_seconds": 60, "daily_cap": 5},
            headers=AUTH,
        )
        assert wait_until(lambda: client.get(f"/v1/tenants/{TENANT}/quota", headers=AUTH).json()["used_today"] == 1)

        quota = client.get(f"/v1/tenants/{TENANT}/quota", headers=AUTH).json()
        assert quota["daily_cap"] == 5
        assert quota["remaining"] == 4

        client.post(f"/v1/tenants/{TENANT}/campaign/stop", headers=AUTH)
        _wait_finished(client)

    def test_unknown_run_is_404(self, client):
        assert client.get("/v1/campaign-runs/cr_missing", headers=AUTH).status_code == 404
