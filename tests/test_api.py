"""
HTTP Tests for the office operations API

Test coverage for:
- Actor claim headers
- Failure -> status code mapping and error body shape
- Task, client, user, notification and admin routes
- Task comments and client history routes
- Blocked accounts may read their inbox but not change it
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from office_ops.api_router import get_service
from office_ops.main import app
from office_ops.office_service import reset_office_service

from tests.conftest import CONSULTANT_ID, EXECUTIVE_ID, PARTNER_ID, ADMIN_ID, make_client


def headers(actor_id, role, **extra):
    values = {"X-Actor-Id": actor_id, "X-Actor-Role": role}
    for key, value in extra.items():
        values[f"X-Actor-{key.replace('_', '-').title()}"] = str(value).lower()
    return values


ADMIN = headers(ADMIN_ID, "ADMIN")
PARTNER = headers(PARTNER_ID, "PARTNER")
EXECUTIVE = headers(EXECUTIVE_ID, "BUSINESS_EXECUTIVE")
CONSULTANT = headers(CONSULTANT_ID, "BUSINESS_CONSULTANT")


@pytest.fixture
def api(service):
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
    reset_office_service()


def create_task(api, **overrides):
    body = {"title": "Prepare GST return", "assignees": [EXECUTIVE_ID]}
    body.update(overrides)
    response = api.post("/tasks", json=body, headers=PARTNER)
    assert response.status_code == 201, response.text
    return response.json()


# -----------------------------------------------------------------------------
# Claims & Errors
# -----------------------------------------------------------------------------
class TestClaims:
    def test_missing_claim_is_401(self, api):
        response = api.get("/tasks")
        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"

    def test_unknown_role_denied(self, api):
        response = api.post("/clients", json={"contact_person": "Ravi", "email": "ravi@example.com"},
                            headers=headers("u-x", "WIZARD"))
        assert response.status_code == 403
        assert response.json()["error"] == "unspecified"

    def test_inactive_claim_is_blocked(self, api):
        response = api.post("/tasks", json={"title": "x", "assignees": [EXECUTIVE_ID]},
                            headers=headers(PARTNER_ID, "PARTNER", active=False))
        assert response.status_code == 403
        assert response.json()["error"] == "account_blocked"

    def test_role_header_case_insensitive(self, api):
        response = api.get("/users", headers=headers(ADMIN_ID, "admin"))
        assert response.status_code == 200
        assert response.json()["count"] == 4


class TestHealth:
    def test_root(self, api):
        body = api.get("/").json()
        assert body["status"] == "running"
        assert body["service"] == "Office Operations Engine"

    def test_health(self, api):
        body = api.get("/health").json()
        assert body["status"] == "healthy"
        assert body["components"]["store"] == "in_memory"


# -----------------------------------------------------------------------------
# Tasks
# -----------------------------------------------------------------------------
class TestTaskRoutes:
    def test_create_and_get(self, api):
        task = create_task(api, priority="high")
        assert task["status"] == "pending"
        assert task["priority"] == "high"
        assert task["version"] == 1

        response = api.get(f"/tasks/{task['id']}", headers=EXECUTIVE)
        assert response.status_code == 200
        assert response.json()["title"] == "Prepare GST return"

    def test_outsider_cannot_view(self, api):
        task = create_task(api)
        assert api.get(f"/tasks/{task['id']}", headers=CONSULTANT).status_code == 403

    def test_missing_task_is_404(self, api):
        response = api.get("/tasks/t-404", headers=ADMIN)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_executive_cannot_create(self, api):
        response = api.post("/tasks", json={"title": "x", "assignees": [EXECUTIVE_ID]}, headers=EXECUTIVE)
        assert response.status_code == 403

    def test_status_flow_and_invalid_transition(self, api):
        task = create_task(api)
        url = f"/tasks/{task['id']}"

        response = api.patch(url, json={"status": "completed"}, headers=EXECUTIVE)
        assert response.status_code == 200
        assert response.json()["status"] == "completed"

        response = api.patch(url, json={"status": "in_progress"}, headers=EXECUTIVE)
        assert response.status_code == 422
        assert response.json()["error"] == "invalid_transition"

    def test_billing_not_eligible_is_422(self, api):
        task = create_task(api)
        response = api.patch(f"/tasks/{task['id']}", json={"billing_status": "billed"}, headers=ADMIN)
        assert response.status_code == 422
        assert response.json()["error"] == "billing_not_eligible"

    def test_billing_by_flagged_partner(self, api):
        task = create_task(api)
        api.patch(f"/tasks/{task['id']}", json={"status": "completed"}, headers=EXECUTIVE)

        response = api.patch(f"/tasks/{task['id']}", json={"billing_status": "billed"},
                             headers=headers(PARTNER_ID, "PARTNER", can_approve_billing=True))
        assert response.status_code == 200
        assert response.json()["billing_date"] is not None
        assert response.json()["scheduled_deletion_date"] is not None

    def test_stale_version_is_409(self, api):
        task = create_task(api)
        response = api.patch(f"/tasks/{task['id']}", json={"status": "review", "expected_version": 9},
                             headers=EXECUTIVE)
        assert response.status_code == 409
        assert response.json()["error"] == "conflict"

    def test_empty_assignees_is_422(self, api):
        task = create_task(api)
        response = api.patch(f"/tasks/{task['id']}", json={"assignees": []}, headers=PARTNER)
        assert response.status_code == 422
        assert response.json()["error"] == "no_assignee_for_active_task"

    def test_comments(self, api):
        task = create_task(api)
        url = f"/tasks/{task['id']}/comments"

        response = api.post(url, json={"content": "Waiting on the bank statement"}, headers=EXECUTIVE)
        assert response.status_code == 201
        assert response.json()["user_id"] == EXECUTIVE_ID

        listing = api.get(url, headers=PARTNER).json()
        assert listing["count"] == 1
        assert listing["comments"][0]["content"] == "Waiting on the bank statement"
        assert api.post(url, json={"content": "Hi"}, headers=CONSULTANT).status_code == 403
        assert api.post(url, json={"content": ""}, headers=EXECUTIVE).status_code == 422

        titles = [n["title"] for n in api.get("/notifications", headers=PARTNER).json()["notifications"]]
        assert titles == ["New Comment on Task"]

    def test_list_and_delete(self, api):
        task = create_task(api)
        assert api.get("/tasks", headers=EXECUTIVE).json()["count"] == 1
        assert api.get("/tasks", headers=CONSULTANT).json()["count"] == 0
        assert api.get("/tasks?status=review", headers=PARTNER).json()["count"] == 0

        assert api.delete(f"/tasks/{task['id']}", headers=PARTNER).json() == {"deleted": task["id"]}


# -----------------------------------------------------------------------------
# Clients & Users
# -----------------------------------------------------------------------------
class TestClientRoutes:
    def test_create_guest_client(self, api):
        response = api.post("/clients", json={"contact_person": "Ravi", "email": "ravi@example.com", "is_guest": True},
                            headers=EXECUTIVE)
        assert response.status_code == 201
        body = response.json()
        assert body["is_guest"] is True
        assert body["access_expiry"] is not None
        assert body["manager_id"] == EXECUTIVE_ID

    def test_validation_error_is_400(self, api):
        response = api.post("/clients", json={"contact_person": "Ravi"}, headers=PARTNER)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_update_and_delete(self, api, service, now):
        service.store.insert_client(make_client("c-1", manager_id=PARTNER_ID))

        response = api.patch("/clients/c-1", json={"is_guest": True}, headers=PARTNER)
        assert response.status_code == 200
        assert response.json()["is_guest"] is True

        assert api.get("/clients/c-1", headers=CONSULTANT).json()["expiry_state"] == "active"
        assert api.delete("/clients/c-1", headers=EXECUTIVE).status_code == 403
        assert api.delete("/clients/c-1", headers=PARTNER).status_code == 200
        assert api.get("/clients", headers=ADMIN).json()["count"] == 0

    def test_client_history(self, api, service):
        service.store.insert_client(make_client("c-1"))
        task = create_task(api, client_id="c-1")
        api.patch(f"/tasks/{task['id']}", json={"status": "completed"}, headers=EXECUTIVE)

        response = api.post("/clients/c-1/history", json={"description": "Called about the audit"}, headers=CONSULTANT)
        assert response.status_code == 201
        note_id = response.json()["id"]

        history = api.get("/clients/c-1/history", headers=EXECUTIVE).json()
        assert history["count"] == 2
        assert sorted(h["type"] for h in history["history"]) == ["note", "task_completed"]

        assert api.delete(f"/clients/c-1/history/{note_id}", headers=EXECUTIVE).status_code == 403
        assert api.delete(f"/clients/c-1/history/{note_id}", headers=PARTNER).json() == {"deleted": note_id}
        assert api.delete(f"/clients/c-1/history/{note_id}", headers=PARTNER).status_code == 404


class TestUserRoutes:
    def test_partner_creates_junior_only(self, api):
        body = {"name": "Nisha", "email": "nisha@office.example.com", "role": "business_consultant"}
        assert api.post("/users", json=body, headers=PARTNER).status_code == 201

        body = {"name": "Boss", "email": "boss@office.example.com", "role": "ADMIN"}
        assert api.post("/users", json=body, headers=PARTNER).status_code == 403

    def test_role_change_ceiling(self, api):
        response = api.put(f"/users/{CONSULTANT_ID}/role", json={"role": "PARTNER"}, headers=PARTNER)
        assert response.status_code == 403

        response = api.put(f"/users/{CONSULTANT_ID}/role", json={"role": "PARTNER"}, headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["role"] == "PARTNER"

    def test_block_user_then_blocked_requests_fail(self, api):
        response = api.put(f"/users/{EXECUTIVE_ID}/status", json={"is_active": False}, headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        response = api.post("/clients", json={"contact_person": "Ravi", "email": "ravi@example.com"},
                            headers=EXECUTIVE)
        assert response.status_code == 403
        assert response.json()["error"] == "account_blocked"
        assert api.get(f"/users/{EXECUTIVE_ID}", headers=EXECUTIVE).status_code == 200

    def test_update_and_delete_user(self, api):
        response = api.patch(f"/users/{CONSULTANT_ID}", json={"can_approve_billing": True}, headers=ADMIN)
        assert response.json()["can_approve_billing"] is True
        assert api.delete(f"/users/{CONSULTANT_ID}", headers=PARTNER).status_code == 403
        assert api.delete(f"/users/{CONSULTANT_ID}", headers=ADMIN).json() == {"deleted": CONSULTANT_ID}


# -----------------------------------------------------------------------------
# Notifications, Activities, Admin
# -----------------------------------------------------------------------------
class TestInboxRoutes:
    def test_inbox_round(self, api):
        create_task(api)
        create_task(api, title="Second")

        inbox = api.get("/notifications", headers=EXECUTIVE).json()
        assert inbox["count"] == 2
        assert inbox["unread"] == 2

        notification_id = inbox["notifications"][0]["id"]
        assert api.post(f"/notifications/{notification_id}/read", headers=EXECUTIVE).json()["is_read"] is True
        assert api.post(f"/notifications/{notification_id}/read", headers=CONSULTANT).status_code == 404
        assert api.post("/notifications/read-all", headers=EXECUTIVE).json() == {"updated": 1}
        assert api.get("/notifications?unread_only=true", headers=EXECUTIVE).json()["count"] == 0

        response = api.post("/notifications/bulk-delete", json={"ids": [notification_id]}, headers=EXECUTIVE)
        assert response.json() == {"deleted": 1}
        assert api.post("/notifications/bulk-delete", json={}, headers=EXECUTIVE).json() == {"deleted": 1}

    def test_blocked_account_reads_but_cannot_change_inbox(self, api):
        create_task(api)
        api.put(f"/users/{EXECUTIVE_ID}/status", json={"is_active": False}, headers=ADMIN)

        inbox = api.get("/notifications", headers=EXECUTIVE)
        assert inbox.status_code == 200
        notification_id = inbox.json()["notifications"][0]["id"]

        for response in (
            api.post(f"/notifications/{notification_id}/read", headers=EXECUTIVE),
            api.post("/notifications/read-all", headers=EXECUTIVE),
            api.post("/notifications/bulk-delete", json={}, headers=EXECUTIVE),
        ):
            assert response.status_code == 403
            assert response.json()["error"] == "account_blocked"
        assert api.get("/notifications", headers=EXECUTIVE).json()["unread"] == 2

    def test_activities(self, api):
        create_task(api)
        feed = api.get("/activities", headers=PARTNER).json()
        assert feed["count"] == 1
        assert feed["activities"][0]["action"] == "created"
        assert api.get("/activities?type=billing", headers=PARTNER).json()["count"] == 0
        assert api.get("/activities", headers=EXECUTIVE).json()["count"] == 0


class TestAdminRoutes:
    def test_expiry_tick(self, api, service, now):
        service.store.insert_client(make_client("c-guest", is_guest=True, access_expiry=now - timedelta(seconds=1)))

        response = api.post("/admin/expiry-tick", json={"now": now.isoformat()}, headers=ADMIN)
        assert response.status_code == 200
        report = response.json()
        assert report["deleted_clients"] == ["c-guest"]
        assert report["decisions"][0]["actor_role"] == "SYSTEM"

    def test_expiry_tick_without_body(self, api):
        response = api.post("/admin/expiry-tick", headers=ADMIN)
        assert response.status_code == 200
        assert response.json()["skipped"] is False

    def test_expiry_tick_admin_only(self, api):
        assert api.post("/admin/expiry-tick", headers=PARTNER).status_code == 403
