"""Tests for FastAPI lifespan behaviour in main application."""

from datetime import datetime, timezone

from fastapi.testclient import TestClient

from gamedeploy import main
from gamedeploy.api import routes
from gamedeploy.core import config_validation


def _prepare(monkeypatch, tmp_path, config_result):
    monkeypatch.setattr(main.settings, "database_path", str(tmp_path / "data" / "deployer.db"))
    monkeypatch.setattr(main.settings, "dry_run", True)
    monkeypatch.setattr(main.settings, "worker_poll_interval_seconds", 0.01)
    monkeypatch.setattr(main, "run_config_checks", lambda: config_result)
    monkeypatch.setattr(routes, "get_config_validation_result", lambda: config_result)


def test_startup_runs_worker_with_valid_configuration(monkeypatch, tmp_path):
    config_result = config_validation.ConfigValidationResult(checked_at=datetime.now(timezone.utc))
    _prepare(monkeypatch, tmp_path, config_result)

    with TestClient(main.app) as client:
        worker = main.app.state.worker
        assert worker.is_running is True

        response = client.post(
            "/api/v1/deployments",
            json={"name": "survival1", "cores": 2, "memory_mb": 8192, "minecraft": {"version": "1.20.4"}},
        )
        assert response.status_code == 202

        health = client.get("/healthz").json()
        assert health["status"] == "healthy"
        assert health["worker_running"] is True

    assert worker.is_running is False
    assert (tmp_path / "data" / "deployer.db").exists()


def test_startup_skips_worker_when_configuration_invalid(monkeypatch, tmp_path):
    config_result = config_validation.ConfigValidationResult(checked_at=datetime.now(timezone.utc))
    config_result.errors.append(config_validation.ConfigIssue(message="NET_CIDR must be an IPv4 network."))
    _prepare(monkeypatch, tmp_path, config_result)

    with TestClient(main.app) as client:
        assert main.app.state.worker.is_running is False

        health = client.get("/healthz").json()
        assert health["status"] == "config_error"
        assert health["worker_running"] is False

        # Submissions are still accepted and queued.
        response = client.post(
            "/api/v1/deployments",
            json={"name": "survival1", "cores": 2, "memory_mb": 8192, "minecraft": {"version": "1.20.4"}},
        )
        assert response.status_code == 202
