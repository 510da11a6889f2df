"""
Tests: health probes and app-level JSON error handlers.
"""


class TestHealth:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json() == {"status": "ok"}

    def test_live_reports_database(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        data = res.get_json()
        assert data["status"] == "healthy"
        assert data["checks"]["database"]["status"] == "ok"
        assert data["checks"]["app"]["testing"] is True
        engine = data["checks"]["workflow_engine"]
        assert engine["dispatcher"] == "DatabaseNotificationDispatcher"
        assert engine["exporter"] is None

    def test_db_diag_counts_workflow_tables(self, client):
        res = client.get("/api/v1/health/db-diag")
        assert res.status_code == 200
        tables = res.get_json()["tables"]
        assert set(tables) == {
            "workflows", "workflow_steps", "missing_item_approvals",
            "workflow_step_documents", "notifications",
        }
        assert tables["workflows"]["count"] == 0


class TestAppErrorHandlers:
    def test_unknown_path_returns_json_404(self, client):
        res = client.get("/api/v1/nope")
        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/nope"

    def test_method_not_allowed(self, client):
        # POST to a GET-only probe
        res = client.post("/api/v1/health/ready")
        assert res.status_code == 405
        assert res.get_json()["error"] == "Method not allowed"
