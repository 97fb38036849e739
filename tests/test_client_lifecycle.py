"""
Unit Tests for the Client Lifecycle Machine

Test coverage for:
- Guest invariant (is_guest <=> access_expiry set) on create and update
- Default guest access window
- Contact validation
- Expiry classification and the expired-deletion event
- History notes and history entry deletion
"""

from datetime import timedelta

import pytest

from office_ops.client_lifecycle import (
    ClientCreateInput,
    ClientUpdateInput,
    ExpiryState,
    add_history_note,
    check_expiry,
    create_client,
    delete_client,
    delete_history_entry,
    expire_client,
    is_expired,
    schedule_guest_expiry,
    summarize,
    update_client,
)
from office_ops.entity_model import SYSTEM_ACTOR, ClientHistoryEntry, HistoryType
from office_ops.errors import ErrorCode
from office_ops.policy_config import EngineConfig
from office_ops.side_effects import EventKind, dispatch

from tests.conftest import EXECUTIVE_ID, PARTNER_ID, make_client


def assert_guest_invariant(client):
    assert client.is_guest == (client.access_expiry is not None)


# -----------------------------------------------------------------------------
# Create
# -----------------------------------------------------------------------------
class TestCreateClient:
    def test_guest_without_expiry_gets_default_window(self, partner, now):
        data = ClientCreateInput(contact_person="Ravi", email="ravi@example.com", is_guest=True)
        result = create_client("c-new", data, partner, now)

        assert result.ok
        client = result.client
        assert client.is_guest
        assert abs((client.access_expiry - (now + timedelta(days=30))).total_seconds()) <= 1
        assert_guest_invariant(client)

    def test_guest_window_from_config(self, partner, now):
        data = ClientCreateInput(contact_person="Ravi", phone="+91 98450 00000", is_guest=True)
        result = create_client("c-new", data, partner, now, EngineConfig(guest_access_days=7))
        assert result.client.access_expiry == now + timedelta(days=7)

    def test_guest_with_explicit_expiry(self, partner, now):
        expiry = now + timedelta(days=3)
        data = ClientCreateInput(contact_person="Ravi", email="ravi@example.com", is_guest=True, access_expiry=expiry)
        assert create_client("c-new", data, partner, now).client.access_expiry == expiry

    def test_guest_expiry_in_past_rejected(self, partner, now):
        data = ClientCreateInput(
            contact_person="Ravi", email="ravi@example.com", is_guest=True, access_expiry=now - timedelta(hours=1),
        )
        assert create_client("c-new", data, partner, now).failure.code == ErrorCode.VALIDATION_ERROR

    def test_permanent_client_never_carries_expiry(self, partner, now):
        data = ClientCreateInput(
            contact_person="Meera", email="meera@example.com", access_expiry=now + timedelta(days=5),
        )
        client = create_client("c-new", data, partner, now).client
        assert not client.is_guest
        assert client.access_expiry is None

    @pytest.mark.parametrize("email,phone", [
        (None, None),
        ("meera@example.com", "+91 98450 00000"),
        ("  ", None),
    ])
    def test_exactly_one_contact_channel(self, partner, now, email, phone):
        data = ClientCreateInput(contact_person="Meera", email=email, phone=phone)
        result = create_client("c-new", data, partner, now)
        assert not result.ok
        assert result.failure.code == ErrorCode.VALIDATION_ERROR

    def test_contact_person_required(self, partner, now):
        data = ClientCreateInput(contact_person="", email="x@example.com")
        assert create_client("c-new", data, partner, now).failure.code == ErrorCode.VALIDATION_ERROR

    def test_invalid_email(self, partner, now):
        data = ClientCreateInput(contact_person="Meera", email="meera.example.com")
        assert create_client("c-new", data, partner, now).failure.code == ErrorCode.VALIDATION_ERROR

    def test_manager_defaults_to_actor(self, executive, now):
        data = ClientCreateInput(contact_person="Meera", email="meera@example.com")
        result = create_client("c-new", data, executive, now)
        assert result.client.manager_id == EXECUTIVE_ID

    def test_created_event_notifies_assigned_manager(self, partner, now):
        data = ClientCreateInput(contact_person="Meera", email="meera@example.com", manager_id=EXECUTIVE_ID)
        result = create_client("c-new", data, partner, now)
        event = result.events[0]
        assert event.kind == EventKind.CLIENT_CREATED
        assert event.subject_label == "Permanent client: Meera"
        effects = dispatch(event)
        assert [n.sent_to_id for n in effects.notifications] == [EXECUTIVE_ID]


# -----------------------------------------------------------------------------
# Update
# -----------------------------------------------------------------------------
class TestUpdateClient:
    def test_guest_to_permanent_clears_expiry(self, partner, now):
        client = make_client(is_guest=True, access_expiry=now + timedelta(days=2))
        result = update_client(client, ClientUpdateInput(is_guest=False), partner, now)
        assert result.ok
        assert not result.client.is_guest
        assert result.client.access_expiry is None
        assert result.events[0].payload["changed_fields"] == ["access_expiry", "is_guest"]

    def test_permanent_to_guest_gets_default_window(self, partner, now):
        result = update_client(make_client(), ClientUpdateInput(is_guest=True), partner, now)
        assert result.client.is_guest
        assert result.client.access_expiry == now + timedelta(days=30)
        assert_guest_invariant(result.client)

    def test_extend_guest_access(self, partner, now):
        client = make_client(is_guest=True, access_expiry=now + timedelta(days=2))
        new_expiry = now + timedelta(days=20)
        result = update_client(client, ClientUpdateInput(access_expiry=new_expiry), partner, now)
        assert result.client.access_expiry == new_expiry

    def test_expiry_ignored_for_permanent_client(self, partner, now):
        result = update_client(make_client(), ClientUpdateInput(access_expiry=now + timedelta(days=9)), partner, now)
        assert result.ok
        assert result.client.access_expiry is None
        assert result.events == ()

    def test_cannot_remove_last_contact_channel(self, partner, now):
        result = update_client(make_client(), ClientUpdateInput(email=""), partner, now)
        assert result.failure.code == ErrorCode.VALIDATION_ERROR

    def test_switch_email_to_phone(self, partner, now):
        result = update_client(make_client(), ClientUpdateInput(email="", phone="+91 98450 00000"), partner, now)
        assert result.ok
        assert result.client.email is None
        assert result.client.phone == "+91 98450 00000"

    def test_noop_update(self, partner, now):
        client = make_client()
        result = update_client(client, ClientUpdateInput(contact_person="Asha Rao"), partner, now)
        assert result.ok
        assert result.client is client
        assert result.events == ()

    def test_update_event_has_no_notifications(self, partner, now):
        result = update_client(make_client(), ClientUpdateInput(company_name="Rao & Co"), partner, now)
        effects = dispatch(result.events[0])
        assert effects.activities[0].action == "updated"
        assert effects.notifications == ()


# -----------------------------------------------------------------------------
# Expiry
# -----------------------------------------------------------------------------
class TestExpiry:
    def test_check_expiry(self, now):
        guest = make_client(is_guest=True, access_expiry=now - timedelta(seconds=1))
        assert check_expiry(guest, now) == ExpiryState.EXPIRED
        assert is_expired(guest, now)

    def test_expiry_at_exact_instant_is_still_active(self, now):
        guest = make_client(is_guest=True, access_expiry=now)
        assert check_expiry(guest, now) == ExpiryState.ACTIVE

    def test_permanent_never_expires(self, now):
        assert check_expiry(make_client(), now + timedelta(days=3650)) == ExpiryState.ACTIVE

    def test_schedule_guest_expiry(self, now):
        client = schedule_guest_expiry(make_client(), now + timedelta(days=1), now)
        assert client.is_guest
        assert_guest_invariant(client)

    def test_expire_client_event(self, now):
        guest = make_client(is_guest=True, access_expiry=now - timedelta(seconds=1))
        result = expire_client(guest, SYSTEM_ACTOR, now)
        assert result.ok

        effects = dispatch(result.events[0])
        activity = effects.activities[0]
        assert activity.type == "client"
        assert activity.action == "expired_deleted"
        assert activity.user_id == "system"
        assert [n.sent_to_id for n in effects.notifications] == [PARTNER_ID]
        assert effects.notifications[0].title == "Guest Access Expired"

    def test_expire_active_client_rejected(self, now):
        guest = make_client(is_guest=True, access_expiry=now + timedelta(days=1))
        assert expire_client(guest, SYSTEM_ACTOR, now).failure.code == ErrorCode.INVALID_TRANSITION

    def test_delete_client_notifies_manager(self, admin, now):
        effects = dispatch(delete_client(make_client(), admin, now).events[0])
        assert effects.activities[0].action == "deleted"
        assert effects.notifications[0].sent_to_id == PARTNER_ID

    def test_summarize(self, now):
        guest = make_client(is_guest=True, access_expiry=now - timedelta(days=1))
        summary = summarize(guest, now)
        assert summary["expiry_state"] == "expired"
        assert summary["is_guest"] is True


# -----------------------------------------------------------------------------
# History
# -----------------------------------------------------------------------------
class TestHistoryNotes:
    def test_note_becomes_history_entry(self, executive, now):
        result = add_history_note("h-1", make_client(), "  Called about the audit ", executive, now)
        assert result.ok

        effects = dispatch(result.events[0])
        assert effects.activities[0].action == "added_history"
        entry = effects.history[0]
        assert entry.id == "h-1"
        assert entry.content == "Called about the audit"
        assert entry.type == HistoryType.NOTE
        assert entry.created_by_id == EXECUTIVE_ID

    @pytest.mark.parametrize("content", ["", "   ", None, "x" * 5001])
    def test_invalid_note_rejected(self, executive, now, content):
        result = add_history_note("h-1", make_client(), content, executive, now)
        assert result.failure.code == ErrorCode.VALIDATION_ERROR
        assert result.events == ()

    def test_delete_entry_event(self, partner, now):
        entry = ClientHistoryEntry(
            id="h-1", client_id="c-1", content="Task completed: Prepare GST return",
            created_by_id=EXECUTIVE_ID, created_at=now, type=HistoryType.TASK_COMPLETED, task_id="t-1",
        )
        result = delete_history_entry(make_client("c-1"), entry, partner, now)
        assert result.ok
        event = result.events[0]
        assert event.kind == EventKind.CLIENT_HISTORY_DELETED
        assert event.payload["entry_type"] == "task_completed"
        assert dispatch(event).history == ()

    def test_entry_of_other_client_rejected(self, partner, now):
        entry = ClientHistoryEntry(id="h-1", client_id="c-2", content="Note", created_by_id=PARTNER_ID, created_at=now)
        result = delete_history_entry(make_client("c-1"), entry, partner, now)
        assert result.failure.code == ErrorCode.NOT_FOUND
