"""
Client Lifecycle Machine

Guest vs. permanent rules, access-expiry computation and expiry
classification. This module never deletes anything: it only classifies and
describes. The expiry scanner decides and executes destructive action.

Invariant kept by every function here:
    is_guest is True  <=>  access_expiry is not None
"""

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Tuple

from .entity_model import ActorClaim, ClientHistoryEntry, ClientSnapshot, utc_now
from .errors import ErrorCode, Failure
from .policy_config import EngineConfig
from .side_effects import EventKind, LifecycleEvent

logger = logging.getLogger("client_lifecycle")


class ExpiryState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass(frozen=True)
class ClientCreateInput:
    contact_person: str
    email: Optional[str] = None
    phone: Optional[str] = None
    company_name: Optional[str] = None
    is_guest: bool = False
    access_expiry: Optional[datetime] = None
    manager_id: Optional[str] = None


@dataclass(frozen=True)
class ClientUpdateInput:
    """None means "leave unchanged". An empty string clears email/phone/company."""
    contact_person: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    is_guest: Optional[bool] = None
    access_expiry: Optional[datetime] = None
    manager_id: Optional[str] = None


@dataclass(frozen=True)
class ClientResult:
    ok: bool
    client: Optional[ClientSnapshot] = None
    failure: Optional[Failure] = None
    events: Tuple[LifecycleEvent, ...] = ()

    @classmethod
    def success(cls, client: ClientSnapshot, events: List[LifecycleEvent]) -> "ClientResult":
        return cls(ok=True, client=client, events=tuple(events))

    @classmethod
    def fail(cls, code: ErrorCode, message: str) -> "ClientResult":
        return cls(ok=False, failure=Failure(code, message))


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------
def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _validate_email(email: Optional[str]) -> Optional[str]:
    if email is not None and ("@" not in email or email.startswith("@") or email.endswith("@")):
        return f"Invalid email address: {email}"
    return None


def _event(kind: EventKind, client: ClientSnapshot, actor: ActorClaim, now: datetime, **payload) -> LifecycleEvent:
    return LifecycleEvent(
        kind=kind,
        actor_id=actor.id,
        actor_role=getattr(actor.role, "value", str(actor.role)),
        subject_id=client.id,
        subject_label=client.label,
        occurred_at=now,
        payload=payload,
    )


def default_guest_expiry(now: datetime, config: Optional[EngineConfig] = None) -> datetime:
    return now + (config or EngineConfig()).guest_access_window


# -----------------------------------------------------------------------------
# Classification
# -----------------------------------------------------------------------------
def check_expiry(client: ClientSnapshot, now: datetime) -> ExpiryState:
    if client.is_guest and client.access_expiry is not None and now > client.access_expiry:
        return ExpiryState.EXPIRED
    return ExpiryState.ACTIVE


def is_expired(client: ClientSnapshot, now: datetime) -> bool:
    return check_expiry(client, now) == ExpiryState.EXPIRED


def schedule_guest_expiry(client: ClientSnapshot, expiry: datetime, now: Optional[datetime] = None) -> ClientSnapshot:
    """Make `client` a guest whose access ends at `expiry`."""
    return replace(client, is_guest=True, access_expiry=_aware(expiry), updated_at=now or utc_now())


# -----------------------------------------------------------------------------
# Create / Update
# -----------------------------------------------------------------------------
def create_client(
    client_id: str,
    data: ClientCreateInput,
    actor: ActorClaim,
    now: Optional[datetime] = None,
    config: Optional[EngineConfig] = None,
) -> ClientResult:
    """
    Validate input and build a new client.

    - contact_person is required
    - exactly one of email / phone
    - guests without an expiry get now + guest access window
    - permanent clients never carry an expiry, whatever the input says
    """
    now = now or utc_now()

    contact_person = _clean(data.contact_person)
    if not contact_person:
        return ClientResult.fail(ErrorCode.VALIDATION_ERROR, "Contact person is required")

    email, phone = _clean(data.email), _clean(data.phone)
    if (email is None) == (phone is None):
        return ClientResult.fail(ErrorCode.VALIDATION_ERROR, "Exactly one of email or phone must be provided")
    email_error = _validate_email(email)
    if email_error:
        return ClientResult.fail(ErrorCode.VALIDATION_ERROR, email_error)

    access_expiry = None
    if data.is_guest:
        access_expiry = _aware(data.access_expiry) or default_guest_expiry(now, config)
        if access_expiry <= now:
            return ClientResult.fail(ErrorCode.VALIDATION_ERROR, "Guest access expiry must be in the future")

    client = ClientSnapshot(
        id=client_id,
        contact_person=contact_person,
        manager_id=_clean(data.manager_id) or actor.id,
        company_name=_clean(data.company_name),
        email=email,
        phone=phone,
        is_guest=bool(data.is_guest),
        access_expiry=access_expiry,
        created_at=now,
        updated_at=now,
    )
    event = _event(
        EventKind.CLIENT_CREATED, client, actor, now,
        is_guest=client.is_guest,
        access_expiry=client.access_expiry.isoformat() if client.access_expiry else None,
        manager_id=client.manager_id,
    )
    logger.info(f"Client {client_id} created by {actor.id} ({'guest' if client.is_guest else 'permanent'})")
    return ClientResult.success(client, [event])


def update_client(
    client: ClientSnapshot,
    data: ClientUpdateInput,
    actor: ActorClaim,
    now: Optional[datetime] = None,
    config: Optional[EngineConfig] = None,
) -> ClientResult:
    """
    Apply contact/manager changes and guest <-> permanent conversion.

    Converting to permanent clears the expiry. Converting to guest uses the
    supplied expiry or the default window.
    """
    now = now or utc_now()
    changes = {}

    if data.contact_person is not None:
        contact_person = _clean(data.contact_person)
        if not contact_person:
            return ClientResult.fail(ErrorCode.VALIDATION_ERROR, "Contact person cannot be empty")
        changes["contact_person"] = contact_person
    if data.company_name is not None:
        changes["company_name"] = _clean(data.company_name)
    if data.email is not None:
        changes["email"] = _clean(data.email)
    if data.phone is not None:
        changes["phone"] = _clean(data.phone)
    if data.manager_id is not None:
        manager_id = _clean(data.manager_id)
        if not manager_id:
            return ClientResult.fail(ErrorCode.VALIDATION_ERROR, "Manager cannot be empty")
        changes["manager_id"] = manager_id

    email = changes.get("email", client.email)
    phone = changes.get("phone", client.phone)
    if email is None and phone is None:
        return ClientResult.fail(ErrorCode.VALIDATION_ERROR, "A client needs an email or a phone number")
    email_error = _validate_email(email)
    if email_error:
        return ClientResult.fail(ErrorCode.VALIDATION_ERROR, email_error)

    is_guest = client.is_guest if data.is_guest is None else bool(data.is_guest)
    if is_guest:
        if data.access_expiry is not None:
            access_expiry = _aware(data.access_expiry)
            if access_expiry <= now:
                return ClientResult.fail(ErrorCode.VALIDATION_ERROR, "Guest access expiry must be in the future")
        elif client.is_guest:
            access_expiry = client.access_expiry
        else:
            access_expiry = default_guest_expiry(now, config)
    else:
        access_expiry = None
    changes["is_guest"] = is_guest
    changes["access_expiry"] = access_expiry

    changed = sorted(k for k, v in changes.items() if getattr(client, k) != v)
    if not changed:
        return ClientResult.success(client, [])

    updated = replace(client, updated_at=now, **changes)
    event = _event(
        EventKind.CLIENT_UPDATED, updated, actor, now,
        changed_fields=changed,
        is_guest=updated.is_guest,
        manager_id=updated.manager_id,
    )
    logger.info(f"Client {client.id} updated by {actor.id}: {changed}")
    return ClientResult.success(updated, [event])


# -----------------------------------------------------------------------------
# Deletion
# -----------------------------------------------------------------------------
def delete_client(client: ClientSnapshot, actor: ActorClaim, now: Optional[datetime] = None) -> ClientResult:
    now = now or utc_now()
    event = _event(
        EventKind.CLIENT_DELETED, client, actor, now,
        manager_id=client.manager_id,
        is_guest=client.is_guest,
    )
    return ClientResult.success(client, [event])


def expire_client(client: ClientSnapshot, actor: ActorClaim, now: Optional[datetime] = None) -> ClientResult:
    """Describe the automatic deletion of an expired guest."""
    now = now or utc_now()
    if check_expiry(client, now) != ExpiryState.EXPIRED:
        return ClientResult.fail(ErrorCode.INVALID_TRANSITION, f"Client {client.id} has not expired")
    event = _event(
        EventKind.CLIENT_EXPIRED_DELETED, client, actor, now,
        manager_id=client.manager_id,
        access_expiry=client.access_expiry.isoformat(),
    )
    return ClientResult.success(client, [event])


# -----------------------------------------------------------------------------
# History Notes
# -----------------------------------------------------------------------------
MAX_HISTORY_NOTE_LENGTH = 5000


def add_history_note(
    entry_id: str,
    client: ClientSnapshot,
    content: str,
    actor: ActorClaim,
    now: Optional[datetime] = None,
) -> ClientResult:
    """
    Describe a staff note on the client's history.

    The entry itself is written by the dispatcher from the event, like the
    completed-task entries.
    """
    now = now or utc_now()
    text = _clean(content)
    if not text:
        return ClientResult.fail(ErrorCode.VALIDATION_ERROR, "Description is required")
    if len(text) > MAX_HISTORY_NOTE_LENGTH:
        return ClientResult.fail(
            ErrorCode.VALIDATION_ERROR, f"Description is longer than {MAX_HISTORY_NOTE_LENGTH} characters"
        )
    event = _event(
        EventKind.CLIENT_HISTORY_ADDED, client, actor, now,
        entry_id=entry_id,
        content=text,
    )
    return ClientResult.success(client, [event])


def delete_history_entry(
    client: ClientSnapshot,
    entry: ClientHistoryEntry,
    actor: ActorClaim,
    now: Optional[datetime] = None,
) -> ClientResult:
    now = now or utc_now()
    if entry.client_id != client.id:
        return ClientResult.fail(ErrorCode.NOT_FOUND, f"History entry {entry.id} does not belong to client {client.id}")
    event = _event(
        EventKind.CLIENT_HISTORY_DELETED, client, actor, now,
        entry_id=entry.id,
        entry_type=entry.type.value,
        task_id=entry.task_id,
    )
    logger.info(f"History entry {entry.id} of client {client.id} deleted by {actor.id}")
    return ClientResult.success(client, [event])


def summarize(client: ClientSnapshot, now: datetime) -> dict:
    """Client record plus its current expiry classification."""
    data: dict = client.to_dict()
    data["expiry_state"] = check_expiry(client, now).value
    return data
