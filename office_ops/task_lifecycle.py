"""
Task Lifecycle Machine

Validates and applies changes to a TaskSnapshot. Every change goes through
`apply_task_transition`, which returns a NEW snapshot plus the lifecycle
events the change produced, or a typed failure. Nothing is mutated and
nothing is raised for business outcomes.

Status:
    pending → in_progress → review → completed
    (forward steps may be skipped, review → in_progress is allowed for rework,
    cancelled is reachable from every non-terminal state)

Billing (only while status == completed):
    pending_billing → billed → paid

A request is all-or-nothing: if any part is rejected, no part is applied.

Comments do not change the task; `add_comment` validates them and reports
the event.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple, FrozenSet, Iterable

from .entity_model import (
    ActorClaim,
    BillingStatus,
    ClientSnapshot,
    Role,
    TaskComment,
    TaskPriority,
    TaskSnapshot,
    TaskStatus,
    utc_now,
)
from .errors import ErrorCode, Failure
from .policy_config import EngineConfig
from .side_effects import EventKind, LifecycleEvent

logger = logging.getLogger("task_lifecycle")


# -----------------------------------------------------------------------------
# Valid Transitions
# -----------------------------------------------------------------------------

# Map of current_status -> statuses it may move to
VALID_STATUS_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({
        TaskStatus.IN_PROGRESS, TaskStatus.REVIEW, TaskStatus.COMPLETED, TaskStatus.CANCELLED,
    }),
    TaskStatus.IN_PROGRESS: frozenset({
        TaskStatus.REVIEW, TaskStatus.COMPLETED, TaskStatus.CANCELLED,
    }),
    TaskStatus.REVIEW: frozenset({
        TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.CANCELLED,
    }),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Billing moves one step at a time
VALID_BILLING_TRANSITIONS: Dict[BillingStatus, Optional[BillingStatus]] = {
    BillingStatus.PENDING_BILLING: BillingStatus.BILLED,
    BillingStatus.BILLED: BillingStatus.PAID,
    BillingStatus.PAID: None,
}

# Roles that pass the billing guard without the canApproveBilling flag
BILLING_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.SYSTEM})


# -----------------------------------------------------------------------------
# Requests & Results
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class TaskTransitionRequest:
    """Any combination of fields may be set. None means "leave unchanged"."""
    new_status: Optional[Any] = None
    new_billing_status: Optional[Any] = None
    new_assignees: Optional[Iterable[str]] = None

    def is_empty(self) -> bool:
        return self.new_status is None and self.new_billing_status is None and self.new_assignees is None


@dataclass(frozen=True)
class TaskTransitionResult:
    ok: bool
    task: Optional[TaskSnapshot] = None
    failure: Optional[Failure] = None
    events: Tuple[LifecycleEvent, ...] = ()

    @classmethod
    def success(cls, task: TaskSnapshot, events: List[LifecycleEvent]) -> "TaskTransitionResult":
        return cls(ok=True, task=task, events=tuple(events))

    @classmethod
    def fail(cls, code: ErrorCode, message: str) -> "TaskTransitionResult":
        return cls(ok=False, failure=Failure(code, message))

    @property
    def changed(self) -> bool:
        return bool(self.events)


@dataclass(frozen=True)
class TaskCreateInput:
    title: str
    assignees: Iterable[str] = ()
    priority: Any = TaskPriority.MEDIUM
    client_id: Optional[str] = None
    description: str = ""
    due_date: Optional[datetime] = None


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------
def can_transition_status(current: TaskStatus, target: TaskStatus) -> Tuple[bool, str]:
    """
    Check a status move against the adjacency table.

    Returns (allowed, reason)
    """
    if current == target:
        return True, f"Task already {current.value}"
    allowed = VALID_STATUS_TRANSITIONS.get(current, frozenset())
    if target not in allowed:
        return False, (
            f"Invalid status transition '{current.value}' -> '{target.value}'. "
            f"Valid targets: {sorted(s.value for s in allowed)}"
        )
    return True, f"Transition allowed: {current.value} -> {target.value}"


def may_approve_billing(actor: ActorClaim) -> bool:
    return bool(actor.can_approve_billing) or actor.role in BILLING_ROLES


def get_valid_status_targets(current: TaskStatus) -> List[str]:
    return sorted(s.value for s in VALID_STATUS_TRANSITIONS.get(current, frozenset()))


def is_due_for_deletion(task: TaskSnapshot, now: datetime) -> bool:
    """True once the retention window after billing has elapsed."""
    return task.scheduled_deletion_date is not None and now >= task.scheduled_deletion_date


def normalize_assignees(assignees: Iterable[str]) -> FrozenSet[str]:
    return frozenset(str(a).strip() for a in assignees if a is not None and str(a).strip())


def _parse(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _is_permanent_client(task: TaskSnapshot, client: Optional[ClientSnapshot]) -> bool:
    return client is not None and client.id == task.client_id and not client.is_guest


def _role_value(actor: ActorClaim) -> str:
    return getattr(actor.role, "value", str(actor.role))


def _event(kind: EventKind, task: TaskSnapshot, actor: ActorClaim, now: datetime, **payload) -> LifecycleEvent:
    return LifecycleEvent(
        kind=kind,
        actor_id=actor.id,
        actor_role=_role_value(actor),
        subject_id=task.id,
        subject_label=task.title,
        occurred_at=now,
        payload=payload,
    )


# -----------------------------------------------------------------------------
# Transitions
# -----------------------------------------------------------------------------
def apply_task_transition(
    task: TaskSnapshot,
    request: TaskTransitionRequest,
    actor: ActorClaim,
    now: Optional[datetime] = None,
    config: Optional[EngineConfig] = None,
    client: Optional[ClientSnapshot] = None,
) -> TaskTransitionResult:
    """
    Apply status, billing and assignee changes to a task snapshot.

    The caller must already hold the matching policy decisions
    (UpdateTaskStatus / ApproveBilling / ReassignTask). The billing guard is
    re-checked here regardless. `client` is the task's client, if any; status
    and billing events note whether it is permanent so the dispatcher can
    write the client history.
    """
    now = now or utc_now()
    config = config or EngineConfig()
    permanent_client = _is_permanent_client(task, client)
    events: List[LifecycleEvent] = []
    updated = task

    # Step 1: Status
    if request.new_status is not None:
        target = _parse(TaskStatus, request.new_status)
        if target is None:
            return TaskTransitionResult.fail(ErrorCode.INVALID_TRANSITION, f"Unknown status: {request.new_status}")
        allowed, reason = can_transition_status(task.status, target)
        if not allowed:
            return TaskTransitionResult.fail(ErrorCode.INVALID_TRANSITION, reason)
        if target != task.status:
            updated = replace(updated, status=target)
            events.append(_event(
                EventKind.TASK_STATUS_CHANGED, task, actor, now,
                old_status=task.status.value,
                new_status=target.value,
                assigned_by_id=task.assigned_by_id,
                client_id=task.client_id,
                permanent_client=permanent_client,
                description=task.description,
            ))

    # Step 2: Billing, judged against the snapshot as read
    if request.new_billing_status is not None:
        target_billing = _parse(BillingStatus, request.new_billing_status)
        if target_billing is None:
            return TaskTransitionResult.fail(
                ErrorCode.INVALID_TRANSITION, f"Unknown billing status: {request.new_billing_status}"
            )
        if target_billing != task.billing_status:
            if task.status != TaskStatus.COMPLETED:
                return TaskTransitionResult.fail(
                    ErrorCode.BILLING_NOT_ELIGIBLE,
                    f"Billing can only change on completed tasks (task is {task.status.value})",
                )
            if not may_approve_billing(actor):
                return TaskTransitionResult.fail(
                    ErrorCode.BILLING_NOT_ELIGIBLE, "Actor is not allowed to approve billing"
                )
            if VALID_BILLING_TRANSITIONS.get(task.billing_status) != target_billing:
                return TaskTransitionResult.fail(
                    ErrorCode.INVALID_TRANSITION,
                    f"Invalid billing transition '{task.billing_status.value}' -> '{target_billing.value}'",
                )

            changes: Dict[str, Any] = {"billing_status": target_billing}
            if target_billing == BillingStatus.BILLED:
                changes["billing_date"] = now
                changes["scheduled_deletion_date"] = now + config.retention_window
            updated = replace(updated, **changes)
            events.append(_event(
                EventKind.TASK_BILLING_CHANGED, task, actor, now,
                old_billing_status=task.billing_status.value,
                new_billing_status=target_billing.value,
                billing_date=updated.billing_date.isoformat() if updated.billing_date else None,
                scheduled_deletion_date=(
                    updated.scheduled_deletion_date.isoformat() if updated.scheduled_deletion_date else None
                ),
                client_id=task.client_id,
                permanent_client=permanent_client,
            ))

    # Step 3: Assignees, checked against the resulting status
    if request.new_assignees is not None:
        new_assignees = normalize_assignees(request.new_assignees)
        if not new_assignees and updated.status != TaskStatus.CANCELLED:
            return TaskTransitionResult.fail(
                ErrorCode.NO_ASSIGNEE_FOR_ACTIVE_TASK,
                f"Task in status '{updated.status.value}' must keep at least one assignee",
            )
        if new_assignees != task.assignees:
            updated = replace(updated, assignees=new_assignees)
            events.append(_event(
                EventKind.TASK_REASSIGNED, task, actor, now,
                added=sorted(new_assignees - task.assignees),
                removed=sorted(task.assignees - new_assignees),
                assignees=sorted(new_assignees),
            ))

    if not events:
        return TaskTransitionResult.success(task, [])

    updated = replace(updated, updated_at=now)
    logger.info(
        f"Task {task.id}: {[e.kind.value for e in events]} "
        f"(status: {task.status.value} -> {updated.status.value}, by: {actor.id})"
    )
    return TaskTransitionResult.success(updated, events)


def create_task(
    task_id: str,
    data: TaskCreateInput,
    actor: ActorClaim,
    now: Optional[datetime] = None,
) -> TaskTransitionResult:
    """Validate input and build a new pending task created by `actor`."""
    now = now or utc_now()

    title = (data.title or "").strip()
    if not title:
        return TaskTransitionResult.fail(ErrorCode.VALIDATION_ERROR, "Task title is required")

    priority = _parse(TaskPriority, data.priority if data.priority is not None else TaskPriority.MEDIUM)
    if priority is None:
        return TaskTransitionResult.fail(ErrorCode.VALIDATION_ERROR, f"Unknown priority: {data.priority}")

    assignees = normalize_assignees(data.assignees)
    if not assignees:
        return TaskTransitionResult.fail(
            ErrorCode.NO_ASSIGNEE_FOR_ACTIVE_TASK, "A new task needs at least one assignee"
        )

    task = TaskSnapshot(
        id=task_id,
        title=title,
        assigned_by_id=actor.id,
        status=TaskStatus.PENDING,
        priority=priority,
        billing_status=BillingStatus.PENDING_BILLING,
        assignees=assignees,
        client_id=data.client_id or None,
        description=data.description or "",
        due_date=data.due_date,
        created_at=now,
        updated_at=now,
    )
    event = _event(
        EventKind.TASK_CREATED, task, actor, now,
        assignees=sorted(assignees),
        priority=priority.value,
        client_id=task.client_id,
    )
    logger.info(f"Task {task_id} created by {actor.id} with {len(assignees)} assignee(s)")
    return TaskTransitionResult.success(task, [event])


def delete_task(task: TaskSnapshot, actor: ActorClaim, now: Optional[datetime] = None) -> TaskTransitionResult:
    """Explicit deletion. The returned snapshot is the task being removed."""
    now = now or utc_now()
    event = _event(
        EventKind.TASK_DELETED, task, actor, now,
        assignees=sorted(task.assignees),
        assigned_by_id=task.assigned_by_id,
        client_id=task.client_id,
    )
    return TaskTransitionResult.success(task, [event])


def expire_task(task: TaskSnapshot, actor: ActorClaim, now: Optional[datetime] = None) -> TaskTransitionResult:
    """Scheduled deletion after the retention window."""
    now = now or utc_now()
    if not is_due_for_deletion(task, now):
        return TaskTransitionResult.fail(
            ErrorCode.INVALID_TRANSITION, f"Task {task.id} is not due for scheduled deletion"
        )
    event = _event(
        EventKind.TASK_SCHEDULED_DELETED, task, actor, now,
        assigned_by_id=task.assigned_by_id,
        billing_date=task.billing_date.isoformat() if task.billing_date else None,
        scheduled_deletion_date=task.scheduled_deletion_date.isoformat(),
    )
    return TaskTransitionResult.success(task, [event])


def detach_client(task: TaskSnapshot, now: Optional[datetime] = None) -> TaskSnapshot:
    """Drop the client reference (used when the client is deleted)."""
    return replace(task, client_id=None, updated_at=now or utc_now())


# -----------------------------------------------------------------------------
# Comments
# -----------------------------------------------------------------------------
MAX_COMMENT_LENGTH = 5000


@dataclass(frozen=True)
class CommentResult:
    ok: bool
    comment: Optional[TaskComment] = None
    failure: Optional[Failure] = None
    events: Tuple[LifecycleEvent, ...] = ()


def add_comment(
    comment_id: str,
    task: TaskSnapshot,
    content: str,
    actor: ActorClaim,
    now: Optional[datetime] = None,
) -> CommentResult:
    """Build a comment on `task`. The task creator and assignees are told about it."""
    now = now or utc_now()
    text = (content or "").strip()
    if not text:
        return CommentResult(ok=False, failure=Failure(ErrorCode.VALIDATION_ERROR, "Comment cannot be empty"))
    if len(text) > MAX_COMMENT_LENGTH:
        return CommentResult(ok=False, failure=Failure(
            ErrorCode.VALIDATION_ERROR, f"Comment is longer than {MAX_COMMENT_LENGTH} characters",
        ))

    comment = TaskComment(id=comment_id, task_id=task.id, user_id=actor.id, content=text, created_at=now)
    event = _event(
        EventKind.TASK_COMMENTED, task, actor, now,
        comment_id=comment_id,
        assigned_by_id=task.assigned_by_id,
        assignees=sorted(task.assignees),
    )
    logger.info(f"Comment {comment_id} added to task {task.id} by {actor.id}")
    return CommentResult(ok=True, comment=comment, events=(event,))
