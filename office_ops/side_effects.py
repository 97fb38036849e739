"""
Side-Effect Dispatcher

Turns lifecycle events into Activity, Notification and client history records.

`EVENT_MAPPINGS` is the single table that decides, for every event kind:
- the Activity type / action / target
- who gets notified, with which title and content
- which client history entries it writes (completed and billed tasks of
  permanent clients, staff notes)

dispatch() is pure: no I/O, no clock. Record ids are fingerprints of the
event, so dispatching the same event twice yields identical records and an
at-least-once writer can de-duplicate on id.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Tuple, Callable

from .entity_model import Activity, ClientHistoryEntry, HistoryType, Notification, to_iso


# -----------------------------------------------------------------------------
# Events
# -----------------------------------------------------------------------------
class EventKind(str, Enum):
    TASK_CREATED = "task-created"
    TASK_STATUS_CHANGED = "task-status-changed"
    TASK_BILLING_CHANGED = "task-billing-changed"
    TASK_REASSIGNED = "task-reassigned"
    TASK_COMMENTED = "task-commented"
    TASK_DELETED = "task-deleted"
    TASK_SCHEDULED_DELETED = "task-scheduled-deleted"
    CLIENT_CREATED = "client-created"
    CLIENT_UPDATED = "client-updated"
    CLIENT_DELETED = "client-deleted"
    CLIENT_EXPIRED_DELETED = "client-expired-deleted"
    CLIENT_HISTORY_ADDED = "client-history-added"
    CLIENT_HISTORY_DELETED = "client-history-deleted"
    USER_CREATED = "user-created"
    USER_ROLE_CHANGED = "user-role-changed"
    USER_BLOCKED = "user-blocked"
    USER_DELETED = "user-deleted"


@dataclass(frozen=True)
class LifecycleEvent:
    """
    What changed, as reported by a lifecycle machine.

    subject_label is the human-readable target (task title, client label,
    user name). payload carries the kind-specific details.
    """
    kind: EventKind
    actor_id: str
    actor_role: str
    subject_id: str
    subject_label: str
    occurred_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def actor_name(self) -> str:
        return self.payload.get("actor_name") or self.actor_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "subject_id": self.subject_id,
            "subject_label": self.subject_label,
            "occurred_at": to_iso(self.occurred_at),
            "payload": self.payload,
        }

    def fingerprint(self) -> str:
        """Deterministic hash of the event."""
        json_str = json.dumps(self.to_dict(), sort_keys=True, default=str)
        return hashlib.sha256(json_str.encode()).hexdigest()


@dataclass(frozen=True)
class DispatchResult:
    activities: Tuple[Activity, ...] = ()
    notifications: Tuple[Notification, ...] = ()
    history: Tuple[ClientHistoryEntry, ...] = ()

    def merge(self, other: "DispatchResult") -> "DispatchResult":
        return DispatchResult(
            activities=self.activities + other.activities,
            notifications=self.notifications + other.notifications,
            history=self.history + other.history,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activities": [a.to_dict() for a in self.activities],
            "notifications": [n.to_dict() for n in self.notifications],
            "history": [h.to_dict() for h in self.history],
        }


# (recipient_id, title, content)
Notice = Tuple[str, str, str]


def _no_history(event: LifecycleEvent) -> List[ClientHistoryEntry]:
    return []


@dataclass(frozen=True)
class EventMapping:
    activity_type: str
    action: Callable[[LifecycleEvent], str]
    target: Callable[[LifecycleEvent], str]
    notices: Callable[[LifecycleEvent], List[Notice]]
    history: Callable[[LifecycleEvent], List[ClientHistoryEntry]] = _no_history


# -----------------------------------------------------------------------------
# Mapping Helpers
# -----------------------------------------------------------------------------
def _fixed(value: str) -> Callable[[LifecycleEvent], str]:
    return lambda event: value


def _label(event: LifecycleEvent) -> str:
    return event.subject_label


def _no_notices(event: LifecycleEvent) -> List[Notice]:
    return []


def _status_action(event: LifecycleEvent) -> str:
    new_status = event.payload.get("new_status")
    if new_status in ("completed", "cancelled"):
        return new_status
    return "updated"


def _status_notices(event: LifecycleEvent) -> List[Notice]:
    new_status = event.payload.get("new_status")
    creator = event.payload.get("assigned_by_id")
    if new_status not in ("completed", "cancelled") or not creator:
        return []
    return [(
        creator,
        f"Task {new_status.capitalize()}",
        f'{event.actor_name} changed task "{event.subject_label}" status '
        f'from {event.payload.get("old_status")} to {new_status}',
    )]


def _task_created_notices(event: LifecycleEvent) -> List[Notice]:
    return [
        (user_id, "Task Assigned", f'{event.actor_name} assigned you a task: {event.subject_label}')
        for user_id in event.payload.get("assignees", [])
    ]


def _reassigned_notices(event: LifecycleEvent) -> List[Notice]:
    notices = [
        (user_id, "Task Assigned", f'{event.actor_name} assigned the task "{event.subject_label}" to you.')
        for user_id in event.payload.get("added", [])
    ]
    notices.extend(
        (user_id, "Task Reassigned", f'Your task "{event.subject_label}" has been reassigned.')
        for user_id in event.payload.get("removed", [])
    )
    return notices


def _comment_notices(event: LifecycleEvent) -> List[Notice]:
    recipients = [event.payload.get("assigned_by_id")] + list(event.payload.get("assignees", []))
    return [
        (user_id, "New Comment on Task", f"{event.actor_name} commented on task: {event.subject_label}")
        for user_id in recipients
    ]


def _task_deleted_notices(event: LifecycleEvent) -> List[Notice]:
    return [
        (user_id, "Task Deleted", f'Task "{event.subject_label}" was deleted by {event.actor_name}.')
        for user_id in event.payload.get("assignees", [])
    ]


def _task_scheduled_deleted_notices(event: LifecycleEvent) -> List[Notice]:
    creator = event.payload.get("assigned_by_id")
    if not creator:
        return []
    return [(
        creator,
        "Task Removed",
        f'Task "{event.subject_label}" reached the end of its retention window and was deleted.',
    )]


def _manager_notice(title: str, template: str) -> Callable[[LifecycleEvent], List[Notice]]:
    def notices(event: LifecycleEvent) -> List[Notice]:
        manager = event.payload.get("manager_id")
        if not manager:
            return []
        return [(manager, title, template.format(label=event.subject_label, actor=event.actor_name))]
    return notices


def _role_change_target(event: LifecycleEvent) -> str:
    return f'{event.subject_label} ({event.payload.get("old_role")} → {event.payload.get("new_role")})'


def _role_change_notices(event: LifecycleEvent) -> List[Notice]:
    return [(
        event.subject_id,
        "Role Changed",
        f'Your role was changed from {event.payload.get("old_role")} to {event.payload.get("new_role")}.',
    )]


def _blocked_action(event: LifecycleEvent) -> str:
    return "blocked" if event.payload.get("blocked") else "unblocked"


def _blocked_notices(event: LifecycleEvent) -> List[Notice]:
    if event.payload.get("blocked"):
        return [(event.subject_id, "Account Blocked", "Your account has been blocked by an administrator.")]
    return [(event.subject_id, "Account Unblocked", "Your account has been reactivated.")]


# -----------------------------------------------------------------------------
# Client History
# -----------------------------------------------------------------------------
def task_history_id(task_id: str) -> str:
    """One completed-task entry per task; billing later fills in the same entry."""
    return _record_id(f"task-history:{task_id}", "history", 0)


def _completion_history(event: LifecycleEvent) -> List[ClientHistoryEntry]:
    if event.payload.get("new_status") != "completed" or not event.payload.get("permanent_client"):
        return []
    return [ClientHistoryEntry(
        id=task_history_id(event.subject_id),
        client_id=event.payload["client_id"],
        content=f"Task completed: {event.subject_label}",
        created_by_id=event.actor_id,
        created_at=event.occurred_at,
        type=HistoryType.TASK_COMPLETED,
        task_id=event.subject_id,
        task_title=event.subject_label,
        task_description=event.payload.get("description") or "",
        task_completed_at=event.occurred_at,
    )]


def _billing_history(event: LifecycleEvent) -> List[ClientHistoryEntry]:
    if event.payload.get("new_billing_status") != "billed" or not event.payload.get("permanent_client"):
        return []
    return [ClientHistoryEntry(
        id=task_history_id(event.subject_id),
        client_id=event.payload["client_id"],
        content=f"Task completed and billed: {event.subject_label}",
        created_by_id=event.actor_id,
        created_at=event.occurred_at,
        type=HistoryType.TASK_COMPLETED,
        task_id=event.subject_id,
        task_title=event.subject_label,
        task_billed_at=event.occurred_at,
        billing_details={
            "billed_by": event.actor_id,
            "billed_by_name": event.actor_name,
            "billed_at": to_iso(event.occurred_at),
        },
    )]


def _note_history(event: LifecycleEvent) -> List[ClientHistoryEntry]:
    entry_id = event.payload.get("entry_id")
    if not entry_id:
        return []
    return [ClientHistoryEntry(
        id=entry_id,
        client_id=event.subject_id,
        content=event.payload.get("content", ""),
        created_by_id=event.actor_id,
        created_at=event.occurred_at,
    )]


# -----------------------------------------------------------------------------
# Mapping Table
# -----------------------------------------------------------------------------
EVENT_MAPPINGS: Dict[EventKind, EventMapping] = {
    EventKind.TASK_CREATED: EventMapping(
        "task", _fixed("created"), _label, _task_created_notices,
    ),
    EventKind.TASK_STATUS_CHANGED: EventMapping(
        "task", _status_action, _label, _status_notices, _completion_history,
    ),
    EventKind.TASK_BILLING_CHANGED: EventMapping(
        "billing", _fixed("updated"), _label, _no_notices, _billing_history,
    ),
    EventKind.TASK_REASSIGNED: EventMapping(
        "task", _fixed("assigned"), _label, _reassigned_notices,
    ),
    EventKind.TASK_COMMENTED: EventMapping(
        "task", _fixed("commented"), _label, _comment_notices,
    ),
    EventKind.TASK_DELETED: EventMapping(
        "task", _fixed("deleted"), _label, _task_deleted_notices,
    ),
    EventKind.TASK_SCHEDULED_DELETED: EventMapping(
        "task", _fixed("scheduled_deleted"), _label, _task_scheduled_deleted_notices,
    ),
    EventKind.CLIENT_CREATED: EventMapping(
        "client", _fixed("created"), _label,
        _manager_notice("Client Assigned", "{actor} made you the manager of {label}."),
    ),
    EventKind.CLIENT_UPDATED: EventMapping(
        "client", _fixed("updated"), _label, _no_notices,
    ),
    EventKind.CLIENT_DELETED: EventMapping(
        "client", _fixed("deleted"), _label,
        _manager_notice("Client Deleted", "{label} was deleted by {actor}."),
    ),
    EventKind.CLIENT_EXPIRED_DELETED: EventMapping(
        "client", _fixed("expired_deleted"), _label,
        _manager_notice("Guest Access Expired", "{label} reached its access expiry and was removed."),
    ),
    EventKind.CLIENT_HISTORY_ADDED: EventMapping(
        "client", _fixed("added_history"), _label, _no_notices, _note_history,
    ),
    EventKind.CLIENT_HISTORY_DELETED: EventMapping(
        "client", _fixed("deleted_history"), _label, _no_notices,
    ),
    EventKind.USER_CREATED: EventMapping(
        "user", _fixed("created"), _label, _no_notices,
    ),
    EventKind.USER_ROLE_CHANGED: EventMapping(
        "user", _fixed("role_changed"), _role_change_target, _role_change_notices,
    ),
    EventKind.USER_BLOCKED: EventMapping(
        "user", _blocked_action, _label, _blocked_notices,
    ),
    EventKind.USER_DELETED: EventMapping(
        "user", _fixed("deleted"), _label, _no_notices,
    ),
}


# -----------------------------------------------------------------------------
# Dispatch
# -----------------------------------------------------------------------------
def _record_id(fingerprint: str, record: str, index: int) -> str:
    return hashlib.sha256(f"{fingerprint}:{record}:{index}".encode()).hexdigest()[:32]


def dispatch(event: LifecycleEvent) -> DispatchResult:
    """
    Derive the activity, notifications and client history for one event.

    Exactly one Activity per event. Notifications go to the recipients the
    mapping names, de-duplicated, never to the actor.
    """
    mapping = EVENT_MAPPINGS.get(event.kind)
    if mapping is None:
        raise ValueError(f"No side-effect mapping for event kind: {event.kind}")

    fingerprint = event.fingerprint()
    details = dict(event.payload)
    details.pop("actor_name", None)
    details["subject_id"] = event.subject_id

    activity = Activity(
        id=_record_id(fingerprint, "activity", 0),
        type=mapping.activity_type,
        action=mapping.action(event),
        target=mapping.target(event),
        user_id=event.actor_id,
        created_at=event.occurred_at,
        details=details,
    )

    notifications: List[Notification] = []
    seen = set()
    for recipient, title, content in mapping.notices(event):
        if not recipient or recipient == event.actor_id or recipient in seen:
            continue
        seen.add(recipient)
        notifications.append(Notification(
            id=_record_id(fingerprint, "notification", len(notifications)),
            title=title,
            content=content,
            sent_by_id=event.actor_id,
            sent_to_id=recipient,
            created_at=event.occurred_at,
        ))

    return DispatchResult(
        activities=(activity,),
        notifications=tuple(notifications),
        history=tuple(mapping.history(event)),
    )


def dispatch_all(events: List[LifecycleEvent]) -> DispatchResult:
    result = DispatchResult()
    for event in events:
        result = result.merge(dispatch(event))
    return result
