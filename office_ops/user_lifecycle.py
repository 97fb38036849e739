"""
Staff account rules.

Create, update, role change, block/unblock and delete for user accounts.
Who may do these is the policy resolver's job; this module only checks that
the change itself is well-formed and reports what happened.
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Any, List, Tuple

from .entity_model import ActorClaim, Role, UserSnapshot, utc_now
from .errors import ErrorCode, Failure
from .side_effects import EventKind, LifecycleEvent

logger = logging.getLogger("user_lifecycle")


@dataclass(frozen=True)
class UserCreateInput:
    name: str
    email: str
    role: Any
    can_approve_billing: bool = False


@dataclass(frozen=True)
class UserUpdateInput:
    name: Optional[str] = None
    email: Optional[str] = None
    can_approve_billing: Optional[bool] = None


@dataclass(frozen=True)
class UserResult:
    ok: bool
    user: Optional[UserSnapshot] = None
    failure: Optional[Failure] = None
    events: Tuple[LifecycleEvent, ...] = ()

    @classmethod
    def success(cls, user: UserSnapshot, events: List[LifecycleEvent]) -> "UserResult":
        return cls(ok=True, user=user, events=tuple(events))

    @classmethod
    def fail(cls, code: ErrorCode, message: str) -> "UserResult":
        return cls(ok=False, failure=Failure(code, message))


def parse_account_role(value: Any) -> Optional[Role]:
    """Role that may be stored on a staff account, or None. SYSTEM never qualifies."""
    try:
        role = Role(value)
    except ValueError:
        return None
    return role if role in Role.staff_roles() else None


def _event(kind: EventKind, user: UserSnapshot, actor: ActorClaim, now: datetime, **payload) -> LifecycleEvent:
    return LifecycleEvent(
        kind=kind,
        actor_id=actor.id,
        actor_role=getattr(actor.role, "value", str(actor.role)),
        subject_id=user.id,
        subject_label=user.name,
        occurred_at=now,
        payload=payload,
    )


def _check_email(email: str) -> Optional[str]:
    if "@" not in email or email.startswith("@") or email.endswith("@"):
        return f"Invalid email address: {email}"
    return None


def create_user(user_id: str, data: UserCreateInput, actor: ActorClaim, now: Optional[datetime] = None) -> UserResult:
    now = now or utc_now()

    name = (data.name or "").strip()
    email = (data.email or "").strip().lower()
    if not name:
        return UserResult.fail(ErrorCode.VALIDATION_ERROR, "Name is required")
    if not email:
        return UserResult.fail(ErrorCode.VALIDATION_ERROR, "Email is required")
    email_error = _check_email(email)
    if email_error:
        return UserResult.fail(ErrorCode.VALIDATION_ERROR, email_error)

    role = parse_account_role(data.role)
    if role is None:
        return UserResult.fail(ErrorCode.VALIDATION_ERROR, f"Role cannot be assigned to an account: {data.role}")

    user = UserSnapshot(
        id=user_id,
        name=name,
        email=email,
        role=role,
        is_active=True,
        can_approve_billing=bool(data.can_approve_billing),
        created_at=now,
        updated_at=now,
    )
    event = _event(EventKind.USER_CREATED, user, actor, now, role=role.value)
    logger.info(f"User {user_id} created by {actor.id} with role {role.value}")
    return UserResult.success(user, [event])


def update_user(user: UserSnapshot, data: UserUpdateInput, actor: ActorClaim, now: Optional[datetime] = None) -> UserResult:
    """Profile fields only; role and active flag have their own operations."""
    now = now or utc_now()
    changes = {}

    if data.name is not None:
        name = data.name.strip()
        if not name:
            return UserResult.fail(ErrorCode.VALIDATION_ERROR, "Name cannot be empty")
        changes["name"] = name
    if data.email is not None:
        email = data.email.strip().lower()
        email_error = _check_email(email)
        if email_error:
            return UserResult.fail(ErrorCode.VALIDATION_ERROR, email_error)
        changes["email"] = email
    if data.can_approve_billing is not None:
        changes["can_approve_billing"] = bool(data.can_approve_billing)

    changes = {k: v for k, v in changes.items() if getattr(user, k) != v}
    if not changes:
        return UserResult.success(user, [])

    logger.info(f"User {user.id} updated by {actor.id}: {sorted(changes)}")
    return UserResult.success(replace(user, updated_at=now, **changes), [])


def change_role(user: UserSnapshot, new_role: Any, actor: ActorClaim, now: Optional[datetime] = None) -> UserResult:
    now = now or utc_now()

    role = parse_account_role(new_role)
    if role is None:
        return UserResult.fail(ErrorCode.VALIDATION_ERROR, f"Role cannot be assigned to an account: {new_role}")
    if role == user.role:
        return UserResult.success(user, [])

    updated = replace(user, role=role, updated_at=now)
    event = _event(
        EventKind.USER_ROLE_CHANGED, user, actor, now,
        old_role=user.role.value,
        new_role=role.value,
    )
    logger.info(f"User {user.id} role {user.role.value} -> {role.value} (by: {actor.id})")
    return UserResult.success(updated, [event])


def set_active(user: UserSnapshot, active: bool, actor: ActorClaim, now: Optional[datetime] = None) -> UserResult:
    """Block (active=False) or unblock a user."""
    now = now or utc_now()

    if user.id == actor.id and not active:
        return UserResult.fail(ErrorCode.VALIDATION_ERROR, "You cannot block your own account")
    if user.is_active == active:
        return UserResult.success(user, [])

    updated = replace(user, is_active=active, updated_at=now)
    event = _event(EventKind.USER_BLOCKED, user, actor, now, blocked=not active)
    logger.info(f"User {user.id} {'unblocked' if active else 'blocked'} by {actor.id}")
    return UserResult.success(updated, [event])


def delete_user(user: UserSnapshot, actor: ActorClaim, now: Optional[datetime] = None) -> UserResult:
    now = now or utc_now()
    if user.id == actor.id:
        return UserResult.fail(ErrorCode.VALIDATION_ERROR, "You cannot delete your own account")
    event = _event(EventKind.USER_DELETED, user, actor, now, role=user.role.value)
    return UserResult.success(user, [event])
