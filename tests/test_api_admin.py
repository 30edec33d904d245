"""
Tests — Authentication, health probes, dashboard and job administration API.
"""

import pytest

ADMIN = {"X-Actor-Role": "admin", "X-User-Id": "admin1"}
VIEWER = {"X-Actor-Role": "viewer"}


# ═══════════════════════════════════════════════════════════════════════════
#  Authentication
# ═══════════════════════════════════════════════════════════════════════════

class TestAuthDisabled:

    def test_role_defaults_to_admin(self, client):
        res = client.post("/api/v1/entities", json={"name": "Acme"})
        assert res.status_code == 201

    def test_unknown_role(self, client):
        res = client.get("/api/v1/services", headers={"X-Actor-Role": "superuser"})
        assert res.status_code == 400
        assert "superuser" in res.get_json()["error"]

    def test_json_content_type_required(self, client):
        res = client.post("/api/v1/entities", data="name=Acme",
                          content_type="application/x-www-form-urlencoded")
        assert res.status_code == 415


class TestAuthEnabled:

    @pytest.fixture(autouse=True)
    def _enable_auth(self, monkeypatch):
        monkeypatch.setenv("API_AUTH_ENABLED", "true")
        monkeypatch.setenv("API_KEYS", "k-admin:admin, k-viewer:viewer, k-legacy")

    def test_missing_key(self, client):
        res = client.get("/api/v1/services")
        assert res.status_code == 401

    def test_invalid_key(self, client):
        res = client.get("/api/v1/services", headers={"X-API-Key": "guess"})
        assert res.status_code == 401
        assert res.get_json()["error"] == "Invalid API key"

    def test_key_determines_role(self, client):
        # X-Actor-Role is ignored once keys are enforced
        res = client.post("/api/v1/entities", json={"name": "Acme"},
                          headers={"X-API-Key": "k-viewer", "X-Actor-Role": "admin"})
        assert res.status_code == 403

        res = client.post("/api/v1/entities", json={"name": "Acme"},
                          headers={"X-API-Key": "k-admin"})
        assert res.status_code == 201

    def test_key_without_role_is_viewer(self, client):
        res = client.post("/api/v1/entities", json={"name": "Acme"},
                          headers={"X-API-Key": "k-legacy"})
        assert res.status_code == 403

    def test_query_param_key(self, client):
        res = client.get("/api/v1/services?api_key=k-viewer")
        assert res.status_code == 200

    def test_health_is_public(self, client):
        assert client.get("/api/v1/health/ready").status_code == 200

    def test_keys_not_configured(self, app, client, monkeypatch):
        monkeypatch.delenv("API_KEYS")
        monkeypatch.setitem(app.config, "API_KEYS", "")
        res = client.get("/api/v1/services", headers={"X-API-Key": "k-admin"})
        assert res.status_code == 500


# ═══════════════════════════════════════════════════════════════════════════
#  Health & dashboard
# ═══════════════════════════════════════════════════════════════════════════

class TestHealth:

    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.get_json() == {"status": "ok"}

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "ok"
        assert body["checks"]["scheduler"] == {"status": "disabled"}
        assert body["checks"]["notifications"] == {"status": "ok",
                                                   "dispatcher": "LoggingNotificationDispatcher"}
        assert body["checks"]["app"]["testing"] is True


class TestDashboardApi:

    def test_stats(self, client, make_service, entity):
        make_service()
        client.post("/api/v1/obligations/schedule",
                    json={"service_key": "gst_returns", "entity_id": entity.id,
                          "period_key": "2025-02"},
                    headers=ADMIN)

        stats = client.get("/api/v1/dashboard/stats").get_json()
        assert stats["total_obligations"] == 1
        assert stats["by_status"]["scheduled"] == 1
        assert stats["configuration"]["published_templates"] == 1

        counts = client.get("/api/v1/dashboard/status-counts").get_json()
        assert counts["scheduled"] == 1
        assert counts["closed"] == 0

    def test_configuration_gaps(self, client, make_service):
        make_service(publish=False)
        body = client.get("/api/v1/dashboard/configuration-gaps").get_json()
        assert body["total"] == 1
        assert body["items"][0]["missing"] == ["workflow_template"]


# ═══════════════════════════════════════════════════════════════════════════
#  Job administration
# ═══════════════════════════════════════════════════════════════════════════

class TestJobsApi:

    def test_list_jobs(self, client):
        body = client.get("/api/v1/admin/jobs").get_json()
        assert body["total"] == 3
        assert {j["job_name"] for j in body["jobs"]} == {
            "obligation_materializer", "reminder_dispatch", "sla_watch",
        }

    def test_run_job(self, client):
        res = client.post("/api/v1/admin/jobs/sla_watch/run", headers=ADMIN)
        assert res.status_code == 200
        assert res.get_json()["status"] == "success"

        job = client.get("/api/v1/admin/jobs/sla_watch").get_json()
        assert job["run_count"] == 1

    def test_run_unknown_job(self, client):
        res = client.post("/api/v1/admin/jobs/nope/run", headers=ADMIN)
        assert res.status_code == 404

    def test_get_unknown_job(self, client):
        assert client.get("/api/v1/admin/jobs/nope").status_code == 404

    def test_viewer_cannot_run(self, client):
        res = client.post("/api/v1/admin/jobs/sla_watch/run", headers=VIEWER)
        assert res.status_code == 403

    def test_toggle(self, client):
        client.get("/api/v1/admin/jobs")
        res = client.patch("/api/v1/admin/jobs/reminder_dispatch/toggle",
                           json={"enabled": False}, headers=ADMIN)
        assert res.status_code == 200
        assert res.get_json()["status"] == "paused"

    def test_toggle_requires_enabled(self, client):
        res = client.patch("/api/v1/admin/jobs/reminder_dispatch/toggle", json={},
                           headers=ADMIN)
        assert res.status_code == 400
