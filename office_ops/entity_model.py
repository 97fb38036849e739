"""
Entity Model

Immutable snapshots of the entities the engine reasons about.

The engine never holds live references to stored records. Callers read a
snapshot from the store, pass it in, and receive a NEW snapshot back
(`dataclasses.replace`). The store owns identity and versioning; the engine
owns the rules.

Entities:
- ActorClaim: who is acting (produced by the identity provider)
- ClientSnapshot: guest or permanent client
- TaskSnapshot: task with status and billing sub-state
- UserSnapshot: staff account (target of user-management actions)
- Activity: append-only audit record
- TaskComment: free-text comment on a task
- ClientHistoryEntry: staff note or completed-task record on a client
- Notification: message to one recipient (only `is_read` ever changes)
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet, Set


# -----------------------------------------------------------------------------
# Time Helpers
# -----------------------------------------------------------------------------
def utc_now() -> datetime:
    """Timezone-aware current UTC time used throughout the engine."""
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------
class Role(str, Enum):
    """
    Roles carried by an actor claim.

    Hierarchy: ADMIN > PARTNER > {BUSINESS_EXECUTIVE, BUSINESS_CONSULTANT} > client roles.
    SYSTEM is reserved for the background scanner and can never be granted to a user.
    """
    ADMIN = "ADMIN"
    PARTNER = "PARTNER"
    BUSINESS_EXECUTIVE = "BUSINESS_EXECUTIVE"
    BUSINESS_CONSULTANT = "BUSINESS_CONSULTANT"
    PERMANENT_CLIENT = "PERMANENT_CLIENT"
    GUEST_CLIENT = "GUEST_CLIENT"
    SYSTEM = "SYSTEM"

    @classmethod
    def staff_roles(cls) -> Set["Role"]:
        return {cls.ADMIN, cls.PARTNER, cls.BUSINESS_EXECUTIVE, cls.BUSINESS_CONSULTANT}

    @classmethod
    def junior_roles(cls) -> Set["Role"]:
        """Roles a PARTNER may manage."""
        return {cls.BUSINESS_EXECUTIVE, cls.BUSINESS_CONSULTANT}

    @classmethod
    def client_roles(cls) -> Set["Role"]:
        return {cls.PERMANENT_CLIENT, cls.GUEST_CLIENT}

    @classmethod
    def assignable_roles(cls) -> Set["Role"]:
        """Roles that may be stored on a user account."""
        return cls.staff_roles() | cls.client_roles()


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @classmethod
    def terminal_states(cls) -> Set["TaskStatus"]:
        return {cls.COMPLETED, cls.CANCELLED}

    @classmethod
    def active_states(cls) -> Set["TaskStatus"]:
        return {cls.PENDING, cls.IN_PROGRESS, cls.REVIEW}


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BillingStatus(str, Enum):
    PENDING_BILLING = "pending_billing"
    BILLED = "billed"
    PAID = "paid"


class EntityType(str, Enum):
    TASK = "task"
    CLIENT = "client"
    USER = "user"


class HistoryType(str, Enum):
    NOTE = "note"
    TASK_COMPLETED = "task_completed"


# -----------------------------------------------------------------------------
# Actor Claim
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ActorClaim:
    """
    Authenticated actor for one request.

    Produced by the identity provider, immutable within a request.
    `client_id` links a client-role actor to its client record; when absent
    the actor id is used.
    """
    id: str
    role: Role
    is_active: bool = True
    can_approve_billing: bool = False
    client_id: Optional[str] = None

    @property
    def is_system(self) -> bool:
        return self.role == Role.SYSTEM

    @property
    def effective_client_id(self) -> str:
        return self.client_id or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "is_active": self.is_active,
            "can_approve_billing": self.can_approve_billing,
            "client_id": self.client_id,
        }


SYSTEM_ACTOR_ID = "system"

# Reserved identity used by the expiry scanner.
SYSTEM_ACTOR = ActorClaim(
    id=SYSTEM_ACTOR_ID,
    role=Role.SYSTEM,
    is_active=True,
    can_approve_billing=True,
)


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ClientSnapshot:
    """
    Client record.

    Invariant: is_guest is True exactly when access_expiry is set.
    """
    id: str
    contact_person: str
    manager_id: str
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_guest: bool = False
    access_expiry: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    @property
    def label(self) -> str:
        kind = "Guest" if self.is_guest else "Permanent"
        return f"{kind} client: {self.contact_person}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "contact_person": self.contact_person,
            "manager_id": self.manager_id,
            "company_name": self.company_name,
            "email": self.email,
            "phone": self.phone,
            "is_guest": self.is_guest,
            "access_expiry": to_iso(self.access_expiry),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientSnapshot":
        return cls(
            id=data["id"],
            contact_person=data["contact_person"],
            manager_id=data["manager_id"],
            company_name=data.get("company_name"),
            email=data.get("email"),
            phone=data.get("phone"),
            is_guest=bool(data.get("is_guest", False)),
            access_expiry=from_iso(data.get("access_expiry")),
            created_at=from_iso(data.get("created_at")),
            updated_at=from_iso(data.get("updated_at")),
            version=data.get("version", 0),
        )


# -----------------------------------------------------------------------------
# Task
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TaskSnapshot:
    """
    Task record.

    `status` and `billing_status` are two orthogonal state machines; billing
    only moves once the task is completed. `assignees` is the TaskAssignee
    join relation projected onto the task.
    """
    id: str
    title: str
    assigned_by_id: str
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    billing_status: BillingStatus = BillingStatus.PENDING_BILLING
    assignees: FrozenSet[str] = frozenset()
    client_id: Optional[str] = None
    description: str = ""
    due_date: Optional[datetime] = None
    billing_date: Optional[datetime] = None
    scheduled_deletion_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "assigned_by_id": self.assigned_by_id,
            "status": self.status.value,
            "priority": self.priority.value,
            "billing_status": self.billing_status.value,
            "assignees": sorted(self.assignees),
            "client_id": self.client_id,
            "description": self.description,
            "due_date": to_iso(self.due_date),
            "billing_date": to_iso(self.billing_date),
            "scheduled_deletion_date": to_iso(self.scheduled_deletion_date),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskSnapshot":
        return cls(
            id=data["id"],
            title=data["title"],
            assigned_by_id=data["assigned_by_id"],
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            priority=TaskPriority(data.get("priority", TaskPriority.MEDIUM.value)),
            billing_status=BillingStatus(data.get("billing_status", BillingStatus.PENDING_BILLING.value)),
            assignees=frozenset(data.get("assignees", [])),
            client_id=data.get("client_id"),
            description=data.get("description", ""),
            due_date=from_iso(data.get("due_date")),
            billing_date=from_iso(data.get("billing_date")),
            scheduled_deletion_date=from_iso(data.get("scheduled_deletion_date")),
            created_at=from_iso(data.get("created_at")),
            updated_at=from_iso(data.get("updated_at")),
            version=data.get("version", 0),
        )


# -----------------------------------------------------------------------------
# User
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class UserSnapshot:
    id: str
    name: str
    email: str
    role: Role
    is_active: bool = True
    can_approve_billing: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "is_active": self.is_active,
            "can_approve_billing": self.can_approve_billing,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserSnapshot":
        return cls(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            role=Role(data["role"]),
            is_active=bool(data.get("is_active", True)),
            can_approve_billing=bool(data.get("can_approve_billing", False)),
            created_at=from_iso(data.get("created_at")),
            updated_at=from_iso(data.get("updated_at")),
            version=data.get("version", 0),
        )


# -----------------------------------------------------------------------------
# Audit & Notification Records
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Activity:
    """
    Immutable audit record.

    Never updated or deleted by normal flow.
    """
    id: str
    type: str
    action: str
    target: str
    user_id: str
    created_at: datetime
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "action": self.action,
            "target": self.target,
            "user_id": self.user_id,
            "created_at": to_iso(self.created_at),
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Activity":
        return cls(
            id=data["id"],
            type=data["type"],
            action=data["action"],
            target=data["target"],
            user_id=data["user_id"],
            created_at=from_iso(data["created_at"]),
            details=data.get("details") or {},
        )


@dataclass(frozen=True)
class TaskComment:
    id: str
    task_id: str
    user_id: str
    content: str
    created_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "user_id": self.user_id,
            "content": self.content,
            "created_at": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskComment":
        return cls(
            id=data["id"],
            task_id=data["task_id"],
            user_id=data["user_id"],
            content=data["content"],
            created_at=from_iso(data["created_at"]),
        )


@dataclass(frozen=True)
class ClientHistoryEntry:
    """
    One line of a client's history.

    NOTE entries are written by staff. TASK_COMPLETED entries are derived from
    a permanent client's task reaching `completed`, and later carry the
    billing details once the task is billed.
    """
    id: str
    client_id: str
    content: str
    created_by_id: str
    created_at: datetime
    type: HistoryType = HistoryType.NOTE
    task_id: Optional[str] = None
    task_title: Optional[str] = None
    task_description: str = ""
    task_completed_at: Optional[datetime] = None
    task_billed_at: Optional[datetime] = None
    billing_details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "content": self.content,
            "created_by_id": self.created_by_id,
            "created_at": to_iso(self.created_at),
            "type": self.type.value,
            "task_id": self.task_id,
            "task_title": self.task_title,
            "task_description": self.task_description,
            "task_completed_at": to_iso(self.task_completed_at),
            "task_billed_at": to_iso(self.task_billed_at),
            "billing_details": self.billing_details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientHistoryEntry":
        return cls(
            id=data["id"],
            client_id=data["client_id"],
            content=data["content"],
            created_by_id=data["created_by_id"],
            created_at=from_iso(data["created_at"]),
            type=HistoryType(data.get("type", HistoryType.NOTE.value)),
            task_id=data.get("task_id"),
            task_title=data.get("task_title"),
            task_description=data.get("task_description") or "",
            task_completed_at=from_iso(data.get("task_completed_at")),
            task_billed_at=from_iso(data.get("task_billed_at")),
            billing_details=data.get("billing_details") or {},
        )


@dataclass(frozen=True)
class Notification:
    id: str
    title: str
    content: str
    sent_by_id: str
    sent_to_id: str
    created_at: datetime
    is_read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "sent_by_id": self.sent_by_id,
            "sent_to_id": self.sent_to_id,
            "created_at": to_iso(self.created_at),
            "is_read": self.is_read,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            id=data["id"],
            title=data["title"],
            content=data["content"],
            sent_by_id=data["sent_by_id"],
            sent_to_id=data["sent_to_id"],
            created_at=from_iso(data["created_at"]),
            is_read=bool(data.get("is_read", False)),
        )
