"""
API Router for the office operations engine.

Thin HTTP layer: parse the request, build the actor claim from headers,
call the office service, map failures to status codes. No rules live here.

Actor claim headers (issued by the identity provider):
- X-Actor-Id, X-Actor-Role (required)
- X-Actor-Active, X-Actor-Can-Approve-Billing (booleans, optional)
- X-Actor-Client-Id (client-role actors, optional)
"""

import logging
from datetime import datetime
from typing import Optional, Dict, List, Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from .client_lifecycle import ClientCreateInput, ClientUpdateInput
from .entity_model import ActorClaim, Role
from .errors import ErrorCode, Failure
from .office_service import OfficeService, ServiceResult, get_office_service
from .task_lifecycle import TaskCreateInput, TaskTransitionRequest
from .user_lifecycle import UserCreateInput, UserUpdateInput

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
logger = logging.getLogger("api_router")

# -----------------------------------------------------------------------------
# Router Setup
# -----------------------------------------------------------------------------
router = APIRouter(tags=["Office Operations"])

STATUS_BY_CODE: Dict[ErrorCode, int] = {
    ErrorCode.ACCOUNT_BLOCKED: 403,
    ErrorCode.UNSPECIFIED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_TRANSITION: 422,
    ErrorCode.BILLING_NOT_ELIGIBLE: 422,
    ErrorCode.NO_ASSIGNEE_FOR_ACTIVE_TASK: 422,
}


# -----------------------------------------------------------------------------
# Request Models
# -----------------------------------------------------------------------------
class TaskCreateRequest(BaseModel):
    title: str
    assignees: List[str] = Field(default_factory=list)
    priority: str = "medium"
    client_id: Optional[str] = None
    description: str = ""
    due_date: Optional[datetime] = None


class TaskUpdateRequest(BaseModel):
    status: Optional[str] = None
    billing_status: Optional[str] = None
    assignees: Optional[List[str]] = None
    expected_version: Optional[int] = None


class ClientCreateRequest(BaseModel):
    contact_person: str
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    is_guest: bool = False
    access_expiry: Optional[datetime] = None
    manager_id: Optional[str] = None


class ClientUpdateRequest(BaseModel):
    contact_person: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_guest: Optional[bool] = None
    access_expiry: Optional[datetime] = None
    manager_id: Optional[str] = None
    expected_version: Optional[int] = None


class UserCreateRequest(BaseModel):
    name: str
    email: str
    role: str
    can_approve_billing: bool = False


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    can_approve_billing: Optional[bool] = None


class RoleChangeRequest(BaseModel):
    role: str


class UserStatusRequest(BaseModel):
    is_active: bool


class CommentRequest(BaseModel):
    content: str = Field(..., min_length=1)


class HistoryNoteRequest(BaseModel):
    description: str = Field(..., min_length=1)


class NotificationDeleteRequest(BaseModel):
    ids: Optional[List[str]] = Field(None, description="Ids to delete; omit to clear the inbox")


class ExpiryTickRequest(BaseModel):
    now: Optional[datetime] = None


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def _parse_flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
    x_actor_active: Optional[str] = Header(None),
    x_actor_can_approve_billing: Optional[str] = Header(None),
    x_actor_client_id: Optional[str] = Header(None),
) -> ActorClaim:
    """Build the actor claim. Unknown roles are passed through and denied by policy."""
    if not x_actor_id or not x_actor_role:
        raise HTTPException(
            status_code=401,
            detail={"error": "unauthenticated", "message": "Missing actor claim headers"},
        )
    try:
        role: Any = Role(x_actor_role.strip().upper())
    except ValueError:
        role = x_actor_role
    return ActorClaim(
        id=x_actor_id.strip(),
        role=role,
        is_active=_parse_flag(x_actor_active, True),
        can_approve_billing=_parse_flag(x_actor_can_approve_billing, False),
        client_id=x_actor_client_id or None,
    )


def get_service() -> OfficeService:
    return get_office_service()


def _raise_failure(failure: Failure) -> None:
    raise HTTPException(status_code=STATUS_BY_CODE.get(failure.code, 400), detail=failure.to_dict())


def _unwrap(result: ServiceResult) -> Any:
    if not result.ok:
        _raise_failure(result.failure)
    return result.data


# -----------------------------------------------------------------------------
# Task Endpoints
# -----------------------------------------------------------------------------

@router.post("/tasks", status_code=201)
def create_task_endpoint(
    request: TaskCreateRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    """Create a task. ADMIN/PARTNER only."""
    data = TaskCreateInput(
        title=request.title,
        assignees=request.assignees,
        priority=request.priority,
        client_id=request.client_id,
        description=request.description,
        due_date=request.due_date,
    )
    return _unwrap(service.create_task(actor, data)).to_dict()


@router.get("/tasks")
def list_tasks_endpoint(
    status: Optional[str] = Query(None),
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    tasks = _unwrap(service.list_tasks(actor, status=status))
    return {"tasks": [t.to_dict() for t in tasks], "count": len(tasks)}


@router.get("/tasks/{task_id}")
def get_task_endpoint(
    task_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.get_task(actor, task_id)).to_dict()


@router.patch("/tasks/{task_id}")
def update_task_endpoint(
    task_id: str,
    request: TaskUpdateRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    """
    Change status, billing status and/or assignees in one all-or-nothing call.

    Pass `expected_version` to reject the change when the task moved on.
    """
    transition = TaskTransitionRequest(
        new_status=request.status,
        new_billing_status=request.billing_status,
        new_assignees=request.assignees,
    )
    result = service.update_task(actor, task_id, transition, expected_version=request.expected_version)
    return _unwrap(result).to_dict()


@router.post("/tasks/{task_id}/comments", status_code=201)
def add_task_comment_endpoint(
    task_id: str,
    request: CommentRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.add_task_comment(actor, task_id, request.content)).to_dict()


@router.get("/tasks/{task_id}/comments")
def list_task_comments_endpoint(
    task_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    comments = _unwrap(service.list_task_comments(actor, task_id))
    return {"comments": [c.to_dict() for c in comments], "count": len(comments)}


@router.delete("/tasks/{task_id}")
def delete_task_endpoint(
    task_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    task = _unwrap(service.delete_task(actor, task_id))
    return {"deleted": task.id}


# -----------------------------------------------------------------------------
# Client Endpoints
# -----------------------------------------------------------------------------

@router.post("/clients", status_code=201)
def create_client_endpoint(
    request: ClientCreateRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    data = ClientCreateInput(
        contact_person=request.contact_person,
        email=request.email,
        phone=request.phone,
        company_name=request.company_name,
        is_guest=request.is_guest,
        access_expiry=request.access_expiry,
        manager_id=request.manager_id,
    )
    return _unwrap(service.create_client(actor, data)).to_dict()


@router.get("/clients")
def list_clients_endpoint(
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    clients = _unwrap(service.list_clients(actor))
    return {"clients": [c.to_dict() for c in clients], "count": len(clients)}


@router.get("/clients/{client_id}")
def get_client_endpoint(
    client_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.get_client(actor, client_id))


@router.patch("/clients/{client_id}")
def update_client_endpoint(
    client_id: str,
    request: ClientUpdateRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    data = ClientUpdateInput(
        contact_person=request.contact_person,
        company_name=request.company_name,
        email=request.email,
        phone=request.phone,
        is_guest=request.is_guest,
        access_expiry=request.access_expiry,
        manager_id=request.manager_id,
    )
    result = service.update_client(actor, client_id, data, expected_version=request.expected_version)
    return _unwrap(result).to_dict()


@router.delete("/clients/{client_id}")
def delete_client_endpoint(
    client_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    client = _unwrap(service.delete_client(actor, client_id))
    return {"deleted": client.id}


@router.get("/clients/{client_id}/history")
def list_client_history_endpoint(
    client_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    """Client history, newest first: staff notes and completed tasks."""
    entries = _unwrap(service.list_client_history(actor, client_id))
    return {"history": [h.to_dict() for h in entries], "count": len(entries)}


@router.post("/clients/{client_id}/history", status_code=201)
def add_client_history_endpoint(
    client_id: str,
    request: HistoryNoteRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.add_client_history_note(actor, client_id, request.description)).to_dict()


@router.delete("/clients/{client_id}/history/{entry_id}")
def delete_client_history_endpoint(
    client_id: str,
    entry_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    entry = _unwrap(service.delete_client_history_entry(actor, client_id, entry_id))
    return {"deleted": entry.id}


# -----------------------------------------------------------------------------
# User Endpoints
# -----------------------------------------------------------------------------

@router.post("/users", status_code=201)
def create_user_endpoint(
    request: UserCreateRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    data = UserCreateInput(
        name=request.name,
        email=request.email,
        role=request.role.strip().upper(),
        can_approve_billing=request.can_approve_billing,
    )
    return _unwrap(service.create_user(actor, data)).to_dict()


@router.get("/users")
def list_users_endpoint(
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    users = _unwrap(service.list_users(actor))
    return {"users": [u.to_dict() for u in users], "count": len(users)}


@router.get("/users/{user_id}")
def get_user_endpoint(
    user_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.get_user(actor, user_id)).to_dict()


@router.patch("/users/{user_id}")
def update_user_endpoint(
    user_id: str,
    request: UserUpdateRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    data = UserUpdateInput(
        name=request.name,
        email=request.email,
        can_approve_billing=request.can_approve_billing,
    )
    return _unwrap(service.update_user(actor, user_id, data)).to_dict()


@router.put("/users/{user_id}/role")
def change_user_role_endpoint(
    user_id: str,
    request: RoleChangeRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.change_user_role(actor, user_id, request.role.strip().upper())).to_dict()


@router.put("/users/{user_id}/status")
def set_user_status_endpoint(
    user_id: str,
    request: UserStatusRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    """Block (is_active=false) or unblock a user."""
    return _unwrap(service.set_user_active(actor, user_id, request.is_active)).to_dict()


@router.delete("/users/{user_id}")
def delete_user_endpoint(
    user_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    user = _unwrap(service.delete_user(actor, user_id))
    return {"deleted": user.id}


# -----------------------------------------------------------------------------
# Notification Endpoints
# -----------------------------------------------------------------------------

@router.get("/notifications")
def get_notifications(
    unread_only: bool = Query(False),
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    """Get the actor's own notifications, newest first."""
    inbox = _unwrap(service.list_notifications(actor, unread_only=unread_only))
    return {
        "notifications": [n.to_dict() for n in inbox["notifications"]],
        "count": len(inbox["notifications"]),
        "unread": inbox["unread"],
    }


@router.post("/notifications/read-all")
def mark_all_notifications_read(
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.mark_all_notifications_read(actor))


@router.post("/notifications/{notification_id}/read")
def mark_notification_read(
    notification_id: str,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.mark_notification_read(actor, notification_id)).to_dict()


@router.post("/notifications/bulk-delete")
def delete_notifications(
    request: NotificationDeleteRequest,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    return _unwrap(service.delete_notifications(actor, request.ids))


# -----------------------------------------------------------------------------
# Activity & Admin Endpoints
# -----------------------------------------------------------------------------

@router.get("/activities")
def get_activities(
    activity_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=500),
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    activities = _unwrap(service.list_activities(actor, activity_type=activity_type, limit=limit))
    return {"activities": [a.to_dict() for a in activities], "count": len(activities)}


@router.post("/admin/expiry-tick")
def run_expiry_tick(
    request: Optional[ExpiryTickRequest] = None,
    actor: ActorClaim = Depends(get_actor),
    service: OfficeService = Depends(get_service),
):
    """Run one expiry tick now and return its report. ADMIN only."""
    now = request.now if request else None
    return _unwrap(service.run_expiry_tick(actor, now=now)).to_dict()
