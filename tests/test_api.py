"""Tests for the HTTP API."""

import json
import time
from contextlib import contextmanager

import pytest
from conftest import FakeRunner
from fastapi.testclient import TestClient

from runwarden.api.server import create_app, set_supervisor
from runwarden.core.supervisor import Supervisor
from runwarden.core.triggers import sign_payload
from runwarden.models import ApiAuthConfig, ApiConfig, RunWardenConfig, ThingConfig

TERMINAL = {"succeeded", "failed", "canceled", "partial_success"}

DEPLOY = {
    "id": "deploy",
    "name": "Deploy",
    "description": "Build then release",
    "steps": [
        {"step_id": "build", "thing_id": "make"},
        {"step_id": "release", "thing_id": "make", "depends_on": ["build"]},
    ],
}


@contextmanager
def api_client(db, runner=None, config=None):
    """Client for an app backed by a real supervisor and a fake runner."""
    supervisor = Supervisor(config=config or RunWardenConfig(), db=db, runner=runner or FakeRunner())
    set_supervisor(supervisor)
    try:
        with TestClient(create_app()) as client:
            client.portal.call(supervisor.self_healing.start)
            try:
                yield client, supervisor
            finally:
                client.portal.call(supervisor.stop)
    finally:
        set_supervisor(None)


def wait_for_execution(client, execution_id, statuses=TERMINAL, timeout=3.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        data = client.get(f"/api/v1/executions/{execution_id}").json()
        if data["status"] in statuses:
            return data
        time.sleep(0.02)
    raise AssertionError(f"Execution {execution_id} did not reach {statuses}")


def wait_for_healing(client, healing_id, statuses, timeout=3.0) -> dict:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        for execution in client.get("/api/v1/healing/executions").json()["executions"]:
            if execution["id"] == healing_id and execution["status"] in statuses:
                return execution
        time.sleep(0.02)
    raise AssertionError(f"Healing execution {healing_id} did not reach {statuses}")


class TestHealth:
    """Tests for the health endpoint."""

    def test_health(self, temp_db):
        with api_client(temp_db) as (client, _):
            response = client.get("/health")
            assert response.status_code == 200
            data = response.json()
            assert data["status"] == "healthy"
            assert data["runbooks_total"] == 0
            assert data["executions_active"] == 0
            assert data["pending_approvals"] == 0

    def test_supervisor_missing(self):
        set_supervisor(None)
        client = TestClient(create_app())
        assert client.get("/health").status_code == 503


class TestAuth:
    """Tests for bearer token authentication."""

    def config(self):
        return RunWardenConfig(api=ApiConfig(auth=ApiAuthConfig(enabled=True, token="t0ken")))

    def test_missing_token(self, temp_db):
        with api_client(temp_db, config=self.config()) as (client, _):
            response = client.get("/api/v1/runbooks")
            assert response.status_code == 401
            assert response.json()["detail"] == "Missing authorization token"

    def test_wrong_token(self, temp_db):
        with api_client(temp_db, config=self.config()) as (client, _):
            response = client.get("/api/v1/runbooks", headers={"Authorization": "Bearer nope"})
            assert response.status_code == 401
            assert response.json()["detail"] == "Invalid token"

    def test_valid_token(self, temp_db):
        with api_client(temp_db, config=self.config()) as (client, _):
            response = client.get("/api/v1/runbooks", headers={"Authorization": "Bearer t0ken"})
            assert response.status_code == 200

    def test_health_is_public(self, temp_db):
        with api_client(temp_db, config=self.config()) as (client, _):
            assert client.get("/health").status_code == 200


class TestRunbooks:
    """Tests for runbook management endpoints."""

    def test_create_and_get(self, temp_db):
        with api_client(temp_db) as (client, _):
            response = client.post("/api/v1/runbooks", json=DEPLOY)
            assert response.status_code == 201
            created = response.json()
            assert created["id"] == "deploy"
            assert created["version"] == 1

            response = client.get("/api/v1/runbooks/deploy")
            assert response.status_code == 200
            assert [s["step_id"] for s in response.json()["steps"]] == ["build", "release"]

            listing = client.get("/api/v1/runbooks").json()
            assert listing["total"] == 1

    def test_create_invalid(self, temp_db):
        with api_client(temp_db) as (client, _):
            payload = dict(DEPLOY, steps=[{"step_id": "a", "thing_id": "x", "depends_on": ["ghost"]}])
            response = client.post("/api/v1/runbooks", json=payload)
            assert response.status_code == 400
            assert response.json()["detail"] == ["Step 'a' depends on non-existent step 'ghost'"]

    def test_create_duplicate(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=DEPLOY)
            assert client.post("/api/v1/runbooks", json=DEPLOY).status_code == 409

    def test_validate(self, temp_db):
        with api_client(temp_db) as (client, _):
            ok = client.post("/api/v1/runbooks/validate", json=DEPLOY).json()
            assert ok == {"is_valid": True, "errors": []}

            cyclic = {
                "name": "Loop",
                "steps": [
                    {"step_id": "a", "thing_id": "x", "depends_on": ["b"]},
                    {"step_id": "b", "thing_id": "x", "depends_on": ["a"]},
                ],
            }
            result = client.post("/api/v1/runbooks/validate", json=cyclic).json()
            assert result == {"is_valid": False, "errors": ["Runbook contains a dependency cycle"]}

    def test_dry_run(self, temp_db):
        config = RunWardenConfig(things={"make": ThingConfig(cmd="make", profiles={"default": "all"})})
        with api_client(temp_db, config=config) as (client, supervisor):
            client.post("/api/v1/runbooks", json=DEPLOY)

            response = client.post("/api/v1/runbooks/deploy/dry-run")

            assert response.status_code == 200
            data = response.json()
            assert data["is_valid"]
            assert [s["step_id"] for s in data["steps"]] == ["build", "release"]
            assert data["steps"][1]["command"] == "make all"
            assert data["steps"][1]["depends_on"] == ["build"]
            assert supervisor.db.list_executions(runbook_id="deploy") == []

            assert client.post("/api/v1/runbooks/missing/dry-run").status_code == 404

    def test_update_bumps_version(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=DEPLOY)
            payload = dict(DEPLOY, name="Deploy v2")
            payload.pop("id")

            response = client.put("/api/v1/runbooks/deploy", json=payload)

            assert response.status_code == 200
            assert response.json()["version"] == 2
            assert client.get("/api/v1/runbooks/deploy").json()["name"] == "Deploy v2"

    def test_update_missing(self, temp_db):
        with api_client(temp_db) as (client, _):
            payload = dict(DEPLOY)
            payload.pop("id")
            assert client.put("/api/v1/runbooks/nope", json=payload).status_code == 404

    def test_delete(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=DEPLOY)

            response = client.delete("/api/v1/runbooks/deploy")

            assert response.json() == {"success": True, "runbook_id": "deploy"}
            assert client.get("/api/v1/runbooks/deploy").status_code == 404
            assert client.delete("/api/v1/runbooks/deploy").status_code == 404

    def test_filter_enabled(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=DEPLOY)
            client.post("/api/v1/runbooks", json=dict(DEPLOY, id="off", name="Off", is_enabled=False))

            enabled = client.get("/api/v1/runbooks", params={"enabled": True}).json()
            assert [r["id"] for r in enabled["runbooks"]] == ["deploy"]


class TestExecutions:
    """Tests for execution endpoints."""

    def test_execute(self, temp_db):
        with api_client(temp_db) as (client, supervisor):
            client.post("/api/v1/runbooks", json=DEPLOY)

            response = client.post("/api/v1/runbooks/deploy/execute", json={"trigger_info": "release 1.2"})

            assert response.status_code == 200
            execution_id = response.json()["execution_id"]
            data = wait_for_execution(client, execution_id)
            assert data["status"] == "succeeded"
            assert data["trigger_info"] == "release 1.2"
            assert [s["status"] for s in data["step_executions"]] == ["succeeded", "succeeded"]

            listing = client.get("/api/v1/executions", params={"runbook_id": "deploy"}).json()
            assert [e["id"] for e in listing["executions"]] == [execution_id]

            [history] = supervisor.db.get_trigger_history("deploy")
            assert history["trigger_type"] == "manual"
            assert history["execution_id"] == execution_id

    def test_execute_missing(self, temp_db):
        with api_client(temp_db) as (client, _):
            assert client.post("/api/v1/runbooks/nope/execute").status_code == 404

    def test_get_missing(self, temp_db):
        with api_client(temp_db) as (client, _):
            assert client.get("/api/v1/executions/nope").status_code == 404

    def test_cancel(self, temp_db):
        with api_client(temp_db, runner=FakeRunner(delay=5.0)) as (client, _):
            client.post("/api/v1/runbooks", json=DEPLOY)
            execution_id = client.post("/api/v1/runbooks/deploy/execute").json()["execution_id"]

            response = client.post(f"/api/v1/executions/{execution_id}/cancel")

            assert response.status_code == 200
            data = wait_for_execution(client, execution_id)
            assert data["status"] == "canceled"
            assert client.post(f"/api/v1/executions/{execution_id}/cancel").status_code in (404, 409)

    def test_pause_and_resume(self, temp_db):
        runner = FakeRunner(delays={"build": 0.3})
        with api_client(temp_db, runner=runner) as (client, _):
            client.post("/api/v1/runbooks", json=DEPLOY)
            execution_id = client.post("/api/v1/runbooks/deploy/execute").json()["execution_id"]

            assert client.post(f"/api/v1/executions/{execution_id}/pause").status_code == 200
            assert client.post(f"/api/v1/executions/{execution_id}/pause").status_code == 409

            time.sleep(0.5)
            data = client.get(f"/api/v1/executions/{execution_id}").json()
            assert data["status"] == "paused"
            assert "release" not in runner.called_steps()

            assert client.post(f"/api/v1/executions/{execution_id}/resume").status_code == 200
            assert wait_for_execution(client, execution_id)["status"] == "succeeded"


class TestWebhooks:
    """Tests for the webhook trigger endpoint."""

    def create_hook(self, client, **trigger):
        payload = dict(DEPLOY, id="hook", trigger={"type": "webhook", "secret": "s3cret", **trigger})
        assert client.post("/api/v1/runbooks", json=payload).status_code == 201

    def test_signed_request(self, temp_db):
        with api_client(temp_db) as (client, supervisor):
            self.create_hook(client)
            body = json.dumps({"ref": "main"}).encode()

            response = client.post(
                "/api/v1/webhooks/hook",
                content=body,
                headers={"X-Signature-256": sign_payload("s3cret", body)},
            )

            assert response.status_code == 200
            data = wait_for_execution(client, response.json()["execution_id"])
            assert data["trigger_info"].startswith("webhook")
            assert '"ref": "main"' in data["trigger_info"]

            [history] = supervisor.db.get_trigger_history("hook")
            assert history["payload"] == {"ref": "main"}

    def test_github_header(self, temp_db):
        with api_client(temp_db) as (client, _):
            self.create_hook(client)
            body = b"{}"
            response = client.post(
                "/api/v1/webhooks/hook",
                content=body,
                headers={"X-Hub-Signature-256": sign_payload("s3cret", body)},
            )
            assert response.status_code == 200

    def test_bad_signature(self, temp_db):
        with api_client(temp_db) as (client, supervisor):
            self.create_hook(client)

            response = client.post("/api/v1/webhooks/hook", content=b"{}", headers={"X-Signature-256": "sha256=00"})

            assert response.status_code == 401
            [history] = supervisor.db.get_trigger_history("hook")
            assert history["success"] is False
            assert history["message"] == "Invalid signature"

    def test_non_ascii_signature(self, temp_db):
        with api_client(temp_db) as (client, _):
            self.create_hook(client)

            response = client.post("/api/v1/webhooks/hook", content=b"{}", headers={"X-Signature-256": b"sha256=\xe9"})

            assert response.status_code == 401

    def test_ip_not_allowed(self, temp_db):
        with api_client(temp_db) as (client, _):
            self.create_hook(client, allowed_ip_range="10.0.0.0/8")
            body = b"{}"
            response = client.post(
                "/api/v1/webhooks/hook",
                content=body,
                headers={"X-Signature-256": sign_payload("s3cret", body)},
            )
            assert response.status_code == 403

    def test_not_webhook_triggered(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=DEPLOY)
            response = client.post("/api/v1/webhooks/deploy", content=b"{}", headers={"X-Signature-256": "x"})
            assert response.status_code == 400

    def test_unknown_runbook(self, temp_db):
        with api_client(temp_db) as (client, _):
            assert client.post("/api/v1/webhooks/ghost", content=b"{}").status_code == 404


def alert_payload(severity="error") -> dict:
    return {
        "alert": {"rule_id": "cpu", "rule_name": "High CPU", "severity": severity, "current_value": 97.0},
        "rule": {"id": "cpu", "name": "High CPU", "metric_name": "system.cpu_percent", "severity": severity},
    }


RULE = {
    "name": "Restart on CPU",
    "trigger_condition": "alert.metric == 'system.cpu_percent' && alert.severity >= Error",
    "remediation_runbook_id": "fix",
    "cooldown_seconds": 0,
    "max_executions_per_hour": 10,
}

FIX = {"id": "fix", "name": "Fix", "steps": [{"step_id": "restart", "thing_id": "svc"}]}


class TestSelfHealing:
    """Tests for alert ingestion and self-healing endpoints."""

    def test_rule_crud(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=FIX)

            response = client.post("/api/v1/healing/rules", json=RULE)
            assert response.status_code == 201
            rule_id = response.json()["id"]

            response = client.put(f"/api/v1/healing/rules/{rule_id}", json=dict(RULE, is_enabled=False))
            assert response.status_code == 200
            assert response.json()["is_enabled"] is False
            assert client.get("/api/v1/healing/rules", params={"enabled_only": True}).json()["total"] == 0

            assert client.delete(f"/api/v1/healing/rules/{rule_id}").status_code == 200
            assert client.delete(f"/api/v1/healing/rules/{rule_id}").status_code == 404
            assert client.put(f"/api/v1/healing/rules/{rule_id}", json=RULE).status_code == 404

    def test_rule_validation(self, temp_db):
        with api_client(temp_db) as (client, _):
            response = client.post("/api/v1/healing/rules", json=RULE)
            assert response.status_code == 400
            assert response.json()["detail"] == "Remediation runbook 'fix' not found"

            client.post("/api/v1/runbooks", json=FIX)
            response = client.post("/api/v1/healing/rules", json=dict(RULE, name=" "))
            assert response.status_code == 400
            assert response.json()["detail"] == "Name is required"

    def test_alert_runs_remediation(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=FIX)
            client.post("/api/v1/healing/rules", json=RULE)

            response = client.post("/api/v1/alerts/fire", json=alert_payload())
            assert response.json()["success"] is True

            deadline = time.monotonic() + 3.0
            executions = []
            while time.monotonic() < deadline:
                executions = client.get("/api/v1/healing/executions").json()["executions"]
                if executions and executions[0]["status"] == "succeeded":
                    break
                time.sleep(0.02)
            assert executions[0]["status"] == "succeeded"
            assert executions[0]["result"] == "succeeded"

    def test_low_severity_ignored(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=FIX)
            client.post("/api/v1/healing/rules", json=RULE)

            client.post("/api/v1/alerts/fire", json=alert_payload("warning"))

            assert client.get("/api/v1/healing/executions").json()["total"] == 0

    def test_approval_flow(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=FIX)
            client.post("/api/v1/healing/rules", json=dict(RULE, requires_approval=True))

            client.post("/api/v1/alerts/fire", json=alert_payload())
            pending = client.get("/api/v1/healing/executions", params={"pending": True}).json()
            assert pending["total"] == 1
            healing_id = pending["executions"][0]["id"]
            assert client.get("/health").json()["pending_approvals"] == 1

            response = client.post(f"/api/v1/healing/executions/{healing_id}/approve")
            assert response.status_code == 200

            finished = wait_for_healing(client, healing_id, {"succeeded"})
            assert finished["remediation_execution_id"] is not None
            assert client.post(f"/api/v1/healing/executions/{healing_id}/approve").status_code == 404

    def test_reject(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=FIX)
            client.post("/api/v1/healing/rules", json=dict(RULE, requires_approval=True))
            client.post("/api/v1/alerts/fire", json=alert_payload())
            healing_id = client.get("/api/v1/healing/executions", params={"pending": True}).json()["executions"][0]["id"]

            response = client.post(f"/api/v1/healing/executions/{healing_id}/reject")

            assert response.status_code == 200
            assert response.json()["status"] == "skipped"
            assert response.json()["result"] == "Rejected by user"
            assert client.post(f"/api/v1/healing/executions/{healing_id}/reject").status_code == 404

    def test_manual_trigger(self, temp_db):
        with api_client(temp_db) as (client, _):
            client.post("/api/v1/runbooks", json=FIX)
            rule_id = client.post("/api/v1/healing/rules", json=RULE).json()["id"]

            response = client.post(f"/api/v1/healing/rules/{rule_id}/trigger")

            assert response.status_code == 200
            wait_for_healing(client, response.json()["id"], {"succeeded"})
            assert client.post("/api/v1/healing/rules/missing/trigger").status_code == 404

    def test_manual_trigger_disabled_rule(self, temp_db):
        with api_client(temp_db) as (client, supervisor):
            client.post("/api/v1/runbooks", json=FIX)
            rule_id = client.post("/api/v1/healing/rules", json=dict(RULE, is_enabled=False)).json()["id"]

            response = client.post(f"/api/v1/healing/rules/{rule_id}/trigger")

            assert response.status_code == 404
            assert supervisor.db.list_executions(runbook_id="fix") == []

    def test_resolve_alert(self, temp_db):
        with api_client(temp_db) as (client, _):
            payload = alert_payload()["alert"]
            payload["id"] = "a1"
            response = client.post("/api/v1/alerts/resolve", json=payload)
            assert response.json() == {"success": True, "alert_id": "a1"}


@pytest.fixture(autouse=True)
def reset_supervisor():
    yield
    set_supervisor(None)
