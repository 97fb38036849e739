"""
Pytest configuration for Office Operations Engine tests.

This module provides:
1. A fixed clock and actor claims for every role
2. Store / service fixtures (in-memory, or on disk under tmp_path)
3. Snapshot builders for tasks, clients and users
"""

from datetime import datetime, timedelta, timezone

import pytest

from office_ops.entity_model import (
    ActorClaim,
    BillingStatus,
    ClientSnapshot,
    Role,
    TaskSnapshot,
    TaskStatus,
    UserSnapshot,
)
from office_ops.entity_store import EntityStore
from office_ops.office_service import OfficeService
from office_ops.policy_config import EngineConfig


# -----------------------------------------------------------------------------
# Test Constants
# -----------------------------------------------------------------------------
NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

ADMIN_ID = "u-admin"
PARTNER_ID = "u-partner"
EXECUTIVE_ID = "u-exec"
CONSULTANT_ID = "u-consultant"
CLIENT_USER_ID = "u-client"


# -----------------------------------------------------------------------------
# Builders
# -----------------------------------------------------------------------------
def make_actor(actor_id: str, role: Role, **kwargs) -> ActorClaim:
    return ActorClaim(id=actor_id, role=role, **kwargs)


def make_task(
    task_id: str = "t-1",
    status: TaskStatus = TaskStatus.PENDING,
    assignees=(EXECUTIVE_ID,),
    assigned_by_id: str = PARTNER_ID,
    **kwargs,
) -> TaskSnapshot:
    return TaskSnapshot(
        id=task_id,
        title=kwargs.pop("title", "Prepare GST return"),
        assigned_by_id=assigned_by_id,
        status=status,
        assignees=frozenset(assignees),
        created_at=kwargs.pop("created_at", NOW - timedelta(days=1)),
        **kwargs,
    )


def make_client(
    client_id: str = "c-1",
    is_guest: bool = False,
    access_expiry=None,
    manager_id: str = PARTNER_ID,
    **kwargs,
) -> ClientSnapshot:
    return ClientSnapshot(
        id=client_id,
        contact_person=kwargs.pop("contact_person", "Asha Rao"),
        manager_id=manager_id,
        email=kwargs.pop("email", "asha@example.com"),
        is_guest=is_guest,
        access_expiry=access_expiry,
        created_at=kwargs.pop("created_at", NOW - timedelta(days=40)),
        **kwargs,
    )


def make_user(user_id: str, role: Role, name: str = None, **kwargs) -> UserSnapshot:
    return UserSnapshot(
        id=user_id,
        name=name or user_id,
        email=f"{user_id}@office.example.com",
        role=role,
        **kwargs,
    )


def billed_task(task_id: str = "t-billed", billed_at: datetime = NOW, retention_days: int = 90) -> TaskSnapshot:
    return make_task(
        task_id,
        status=TaskStatus.COMPLETED,
        billing_status=BillingStatus.BILLED,
        billing_date=billed_at,
        scheduled_deletion_date=billed_at + timedelta(days=retention_days),
    )


# -----------------------------------------------------------------------------
# Actor Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def now():
    return NOW


@pytest.fixture
def admin():
    return make_actor(ADMIN_ID, Role.ADMIN)


@pytest.fixture
def partner():
    return make_actor(PARTNER_ID, Role.PARTNER)


@pytest.fixture
def billing_partner():
    return make_actor(PARTNER_ID, Role.PARTNER, can_approve_billing=True)


@pytest.fixture
def executive():
    return make_actor(EXECUTIVE_ID, Role.BUSINESS_EXECUTIVE)


@pytest.fixture
def consultant():
    return make_actor(CONSULTANT_ID, Role.BUSINESS_CONSULTANT)


@pytest.fixture
def client_actor():
    return make_actor(CLIENT_USER_ID, Role.PERMANENT_CLIENT, client_id="c-1")


# -----------------------------------------------------------------------------
# Store / Service Fixtures
# -----------------------------------------------------------------------------
@pytest.fixture
def config():
    return EngineConfig()


@pytest.fixture
def store():
    return EntityStore()


@pytest.fixture
def disk_store(tmp_path):
    return EntityStore(state_dir=tmp_path / "state")


@pytest.fixture
def service(store, config):
    """Service with one stored account per staff role."""
    svc = OfficeService(store, config=config)
    svc.register_user(make_user(ADMIN_ID, Role.ADMIN, name="Admin"))
    svc.register_user(make_user(PARTNER_ID, Role.PARTNER, name="Priya Partner"))
    svc.register_user(make_user(EXECUTIVE_ID, Role.BUSINESS_EXECUTIVE, name="Eshan Exec"))
    svc.register_user(make_user(CONSULTANT_ID, Role.BUSINESS_CONSULTANT, name="Chitra Consultant"))
    return svc


@pytest.fixture
def stored_task(store):
    """A pending task created by the partner, assigned to the executive."""
    return store.insert_task(make_task())


@pytest.fixture
def stored_client(store):
    return store.insert_client(make_client())
