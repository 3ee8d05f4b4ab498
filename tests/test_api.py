"""
Self-Healing Engine - API Tests
===============================

HTTP surface over a freshly started application per test.
"""

import pytest
from fastapi.testclient import TestClient

from healing_shared.constants import ActionType

from healing_engine.main import app

from conftest import ORG

NOTIFY_ALICE = {
    "recipients": [{"type": "person", "id": "alice"}],
    "message_template": "Heads up",
}


@pytest.fixture
def client():
    with TestClient(app) as client:
        directory = client.app.state.directory
        directory.add_person(ORG, "alice", "Alice", roles=["analyst"], manager_id="bob")
        directory.add_person(ORG, "bob", "Bob", roles=["admin"])
        yield client


def register(client, **fields):
    body = {
        "organization_id": ORG,
        "name": "Ping Alice",
        "trigger_type": "event",
        "action_type": "notify",
        "action_config": NOTIFY_ALICE,
        **fields,
    }
    response = client.post("/api/v1/actions", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def run_action(client, action_id, **fields):
    response = client.post(
        "/api/v1/jobs/action_execution",
        params={"wait": "true"},
        json={"organization_id": ORG, "action_id": action_id, **fields},
    )
    assert response.status_code == 200, response.text
    return response.json()


class TestHealth:
    """Tests for health and readiness."""

    def test_health(self, client):
        """Test the liveness endpoint."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_ready_lists_capabilities(self, client):
        """Test readiness reports registered action types and channels."""
        body = client.get("/ready").json()

        assert sorted(body["action_types"]) == [
            "custom", "escalation", "notify", "redistribute", "reminder", "retry",
        ]
        assert "webhook" in body["channels"]

    def test_correlation_id_echoed(self, client):
        """Test the caller's correlation ID is returned on the response."""
        response = client.get("/health", headers={"X-Correlation-ID": "req-123"})

        assert response.headers["X-Correlation-ID"] == "req-123"

    def test_shutdown_closes_webhook_clients(self):
        """Test stopping the application closes the custom action's HTTP client."""
        with TestClient(app) as client:
            custom = client.app.state.engine.registry.get(ActionType.CUSTOM)
            http_client = custom._get_client(1.0)

        assert http_client.is_closed is True


class TestActionsApi:
    """Tests for registering and listing actions."""

    def test_register_and_list(self, client):
        """Test a registered action is listed for its organization."""
        action = register(client)

        body = client.get("/api/v1/actions", params={"organization_id": ORG}).json()

        assert body["count"] == 1
        assert body["actions"][0]["id"] == action["id"]

    def test_invalid_config_is_422(self, client):
        """Test a malformed action config is rejected with its errors."""
        response = client.post("/api/v1/actions", json={
            "organization_id": ORG,
            "action_type": "custom",
            "action_config": {"webhook_url": "http://127.0.0.1/hook"},
        })

        assert response.status_code == 422
        assert response.json()["detail"]["errors"]

    def test_acknowledge_without_escalation_is_409(self, client):
        """Test acknowledging an escalation that never fired is a conflict."""
        action = register(
            client,
            action_type="escalation",
            action_config={"escalation_chain": [{"level": 1, "target_type": "manager"}]},
        )

        response = client.post(
            f"/api/v1/actions/{action['id']}/escalations/acknowledge",
            json={"organization_id": ORG, "pattern_id": "p1", "acknowledged_by": "bob"},
        )

        assert response.status_code == 409
        assert "No active escalation" in response.json()["detail"]

    def test_acknowledge_non_escalation_is_409(self, client):
        """Test only escalation actions can be acknowledged."""
        action = register(client)

        response = client.post(
            f"/api/v1/actions/{action['id']}/escalations/acknowledge",
            json={"organization_id": ORG, "pattern_id": "p1", "acknowledged_by": "bob"},
        )

        assert response.status_code == 409


class TestJobsApi:
    """Tests for job submission and results."""

    def test_run_action_inline(self, client):
        """Test waiting on an execution job returns its result."""
        action = register(client)

        result = run_action(client, action["id"], execution_id="exec-api")

        assert result["success"] is True
        assert result["data"]["execution"]["status"] == "completed"
        execution = client.get("/api/v1/executions/exec-api").json()
        assert execution["status"] == "completed"
        assert client.get(f"/api/v1/jobs/{result['job_id']}").json()["success"] is True

    def test_queued_job_accepted(self, client):
        """Test a job submitted without waiting is accepted with its id."""
        response = client.post("/api/v1/jobs/approval_maintenance", json={"organization_id": ORG})

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "accepted"
        assert body["job_type"] == "approval_maintenance"
        assert body["job_id"]

    def test_invalid_job_body(self, client):
        """Test a job body missing required fields is rejected."""
        response = client.post("/api/v1/jobs/action_execution", json={"organization_id": ORG})

        assert response.status_code == 422

    def test_unknown_job_kind(self, client):
        """Test unknown job kinds are rejected."""
        response = client.post("/api/v1/jobs/reboot", json={"organization_id": ORG})

        assert response.status_code == 422

    def test_unknown_job_result(self, client):
        """Test asking for an unknown job is a 404."""
        assert client.get("/api/v1/jobs/nope").status_code == 404


class TestApprovalsApi:
    """Tests for approval decisions over HTTP."""

    def test_approve_flow(self, client):
        """Test a gated execution is listed as pending and runs once approved."""
        action = register(client, requires_approval=True)
        result = run_action(client, action["id"])
        execution_id = result["data"]["execution"]["id"]

        pending = client.get("/api/v1/approvals", params={"organization_id": ORG, "pending": "true"}).json()
        assert pending["count"] == 1
        request_id = pending["approvals"][0]["id"]

        approved = client.post(f"/api/v1/approvals/{request_id}/approve", json={"decided_by": "bob"})
        again = client.post(f"/api/v1/approvals/{request_id}/approve", json={"decided_by": "bob"})

        assert approved.status_code == 200
        assert approved.json()["id"] == execution_id
        assert approved.json()["status"] == "completed"
        assert again.status_code == 409

    def test_reject(self, client):
        """Test rejecting blocks the execution."""
        action = register(client, requires_approval=True)
        run_action(client, action["id"])
        request_id = client.get("/api/v1/approvals", params={"organization_id": ORG}).json()["approvals"][0]["id"]

        response = client.post(
            f"/api/v1/approvals/{request_id}/reject",
            json={"decided_by": "bob", "reason": "not today"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "blocked"
        assert response.json()["blocked_reason"] == "Approval rejected by bob: not today"

    def test_unknown_request(self, client):
        """Test deciding an unknown request is a 404."""
        response = client.post("/api/v1/approvals/nope/approve", json={"decided_by": "bob"})

        assert response.status_code == 404

    def test_assign(self, client):
        """Test an open request can be handed to a reviewer, and unknown people are 404s."""
        action = register(client, requires_approval=True)
        run_action(client, action["id"])
        request_id = client.get("/api/v1/approvals", params={"organization_id": ORG}).json()["approvals"][0]["id"]

        assigned = client.post(f"/api/v1/approvals/{request_id}/assign", json={"assigned_to": "alice"})
        unknown = client.post(f"/api/v1/approvals/{request_id}/assign", json={"assigned_to": "zed"})

        assert assigned.status_code == 200
        assert assigned.json()["assigned_to"] == "alice"
        assert unknown.status_code == 404


class TestExecutionsApi:
    """Tests for execution queries, rollback and cancel."""

    def test_list_filters_by_status(self, client):
        """Test listing executions by status."""
        action = register(client)
        run_action(client, action["id"])

        completed = client.get(
            "/api/v1/executions", params={"organization_id": ORG, "execution_status": "completed"}
        ).json()
        blocked = client.get(
            "/api/v1/executions", params={"organization_id": ORG, "execution_status": "blocked"}
        ).json()

        assert completed["count"] == 1
        assert blocked["count"] == 0

    def test_rollback_not_supported_is_409(self, client):
        """Test rolling back a notification is a conflict."""
        action = register(client)
        execution_id = run_action(client, action["id"])["data"]["execution"]["id"]

        response = client.post(f"/api/v1/executions/{execution_id}/rollback", json={"performed_by": "ops"})

        assert response.status_code == 409

    def test_cancel_pending(self, client):
        """Test cancelling an execution awaiting approval."""
        action = register(client, requires_approval=True)
        execution_id = run_action(client, action["id"])["data"]["execution"]["id"]

        response = client.post(f"/api/v1/executions/{execution_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    def test_missing_execution(self, client):
        """Test unknown executions are 404s."""
        assert client.get("/api/v1/executions/nope").status_code == 404
        assert client.post("/api/v1/executions/nope/cancel").status_code == 404


class TestAuditAndStatisticsApi:
    """Tests for the read surfaces."""

    def test_audit_query(self, client):
        """Test audit entries can be filtered by entity."""
        action = register(client)
        execution_id = run_action(client, action["id"])["data"]["execution"]["id"]

        body = client.get("/api/v1/audit", params={"organization_id": ORG, "entity_id": execution_id}).json()

        assert [e["action"] for e in body["entries"]] == [
            "action_triggered", "safety_pass", "action_executed", "action_completed",
        ]

    def test_statistics(self, client):
        """Test the statistics endpoint summarizes executions."""
        action = register(client)
        run_action(client, action["id"])

        stats = client.get("/api/v1/statistics", params={"organization_id": ORG}).json()

        assert stats["executions"]["by_status"] == {"completed": 1}

    def test_user_activity(self, client):
        """Test a person's decisions are listed newest first."""
        action = register(client, requires_approval=True)
        run_action(client, action["id"])
        request_id = client.get("/api/v1/approvals", params={"organization_id": ORG}).json()["approvals"][0]["id"]
        client.post(f"/api/v1/approvals/{request_id}/approve", json={"decided_by": "bob"})

        body = client.get("/api/v1/audit/users/bob", params={"organization_id": ORG}).json()

        assert body["count"] == 1
        assert body["entries"][0]["action"] == "approval_granted"

    def test_export_csv(self, client):
        """Test the export is served as CSV with a header row."""
        action = register(client)
        run_action(client, action["id"])

        response = client.get("/api/v1/audit/export", params={"organization_id": ORG, "entity_type": "execution"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        lines = response.text.splitlines()
        assert lines[0].startswith("timestamp,action,entity_type")
        assert len(lines) == 5

    def test_safety_statistics(self, client):
        """Test gate outcomes are summarized."""
        action = register(client)
        run_action(client, action["id"])

        stats = client.get("/api/v1/safety/statistics", params={"organization_id": ORG}).json()

        assert stats["gated"] == 1
        assert stats["blocked_executions"] == 0
        assert stats["risk_score"] == 0


class TestLearningApi:
    """Tests for learned mappings over HTTP."""

    def test_no_mappings_yet(self, client):
        """Test an organization without history has no mappings."""
        body = client.get("/api/v1/learning/mappings", params={"organization_id": ORG}).json()

        assert body == {"mappings": [], "count": 0}

    def test_approve_unknown_mapping_is_404(self, client):
        """Test approving a pair that was never learned is a 404."""
        response = client.post(
            "/api/v1/learning/mappings/stuck_process/reminder/approve",
            json={"organization_id": ORG, "approved_by": "erin"},
        )

        assert response.status_code == 404
