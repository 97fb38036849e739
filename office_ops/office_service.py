"""
Office Service

Request-handler glue. Every operation follows the same path:

    policy resolver (gate) -> lifecycle machine (transition) ->
    store write -> activities -> notifications

The service owns no rules of its own. It loads snapshots, asks the resolver,
hands the snapshot to the machine, writes the result with optimistic
concurrency and passes the machine's events to the dispatcher.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Any, Dict, List, Iterable

from .client_lifecycle import (
    ClientCreateInput,
    ClientUpdateInput,
    add_history_note,
    create_client,
    delete_client,
    delete_history_entry,
    summarize,
    update_client,
)
from .entity_model import (
    ActorClaim,
    EntityType,
    Role,
    TaskSnapshot,
    UserSnapshot,
    utc_now,
)
from .entity_store import EntityStore
from .errors import ConflictError, ErrorCode, Failure, StaleSnapshotError
from .expiry_scanner import ExpiryScanner, ExpiryTickReport
from .notification_sink import NotificationSink, make_webhook_channel
from .policy_config import ClientCascade, EngineConfig
from .policy_resolver import Action, PolicyDecision, PolicySubject, evaluate, evaluate_all, first_denial
from .side_effects import DispatchResult, LifecycleEvent, dispatch_all
from .task_lifecycle import (
    TaskCreateInput,
    TaskTransitionRequest,
    add_comment,
    apply_task_transition,
    create_task,
    delete_task,
)
from .user_lifecycle import (
    UserCreateInput,
    UserUpdateInput,
    change_role,
    create_user,
    delete_user,
    parse_account_role,
    set_active,
    update_user,
)

logger = logging.getLogger("office_service")

# Roles that see the whole activity feed
FEED_ROLES = frozenset({Role.ADMIN, Role.PARTNER, Role.SYSTEM})


@dataclass(frozen=True)
class ServiceResult:
    """Outcome of one service call: data on success, a Failure otherwise."""
    ok: bool
    data: Any = None
    failure: Optional[Failure] = None
    decision: Optional[PolicyDecision] = None

    @classmethod
    def success(cls, data: Any = None) -> "ServiceResult":
        return cls(ok=True, data=data)

    @classmethod
    def fail(cls, code: ErrorCode, message: str) -> "ServiceResult":
        return cls(ok=False, failure=Failure(code, message))

    @classmethod
    def from_failure(cls, failure: Failure) -> "ServiceResult":
        return cls(ok=False, failure=failure)

    @classmethod
    def denied(cls, decision: PolicyDecision) -> "ServiceResult":
        return cls(ok=False, failure=decision.to_failure(), decision=decision)


class OfficeService:
    def __init__(
        self,
        store: EntityStore,
        sink: Optional[NotificationSink] = None,
        config: Optional[EngineConfig] = None,
        scanner: Optional[ExpiryScanner] = None,
    ):
        self.store = store
        self.sink = sink or NotificationSink(store)
        self.config = config or EngineConfig()
        self.scanner = scanner or ExpiryScanner(store, self.sink, self.config)

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _current_actor(self, actor: ActorClaim) -> ActorClaim:
        """Re-check the claim against the stored account: a blocked account stays blocked."""
        user = self.store.get_user(actor.id)
        if user is not None and not user.is_active and actor.is_active:
            return replace(actor, is_active=False)
        return actor

    def _gate(self, actor: ActorClaim, action: Action, subject: PolicySubject) -> Optional[ServiceResult]:
        """None when allowed, otherwise the denial to return."""
        return self._gate_all(actor, [action], subject)

    def _gate_all(self, actor: ActorClaim, actions: List[Action], subject: PolicySubject) -> Optional[ServiceResult]:
        """Every action must be allowed; the first denial is returned."""
        decision = first_denial(evaluate_all(actor, actions, subject))
        if decision is None:
            return None
        logger.warning(
            f"Denied {decision.action} for {decision.actor_id} ({decision.actor_role}): "
            f"{decision.rule} - {decision.message}"
        )
        return ServiceResult.denied(decision)

    def _named(self, event: LifecycleEvent) -> LifecycleEvent:
        user = self.store.get_user(event.actor_id)
        if user is None:
            return event
        return replace(event, payload={**event.payload, "actor_name": user.name})

    def _commit(self, events: Iterable[LifecycleEvent]) -> DispatchResult:
        """Activities first (audit of record), then client history, then notifications."""
        effects = dispatch_all([self._named(e) for e in events])
        self.store.append_activities(effects.activities)
        if effects.history:
            self.store.record_client_history(effects.history)
        if effects.notifications:
            self.sink.deliver(effects.notifications)
        return effects

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _not_found(entity: str, entity_id: str) -> ServiceResult:
        return ServiceResult.fail(ErrorCode.NOT_FOUND, f"{entity} not found: {entity_id}")

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def create_task(self, actor: ActorClaim, data: TaskCreateInput, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        denied = self._gate(actor, Action.CREATE_TASK, PolicySubject.for_new_task(data.client_id))
        if denied:
            return denied

        if data.client_id and self.store.get_client(data.client_id) is None:
            return self._not_found("Client", data.client_id)
        unknown = sorted(a for a in set(data.assignees) if self.store.get_user(a) is None)
        if unknown:
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, f"Unknown assignee(s): {unknown}")

        result = create_task(self._new_id(), data, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)

        stored = self.store.insert_task(result.task)
        self._commit(result.events)
        return ServiceResult.success(stored)

    def get_task(self, actor: ActorClaim, task_id: str) -> ServiceResult:
        actor = self._current_actor(actor)
        task = self.store.get_task(task_id)
        if task is None:
            return self._not_found("Task", task_id)
        denied = self._gate(actor, Action.VIEW_ENTITY, PolicySubject.for_task(task))
        if denied:
            return denied
        return ServiceResult.success(task)

    def list_tasks(self, actor: ActorClaim, status: Optional[str] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        if not actor.is_active:
            return ServiceResult.denied(evaluate(actor, Action.VIEW_ENTITY, PolicySubject.for_new_task()))
        visible = [
            t for t in self.store.list_tasks(status=status)
            if evaluate(actor, Action.VIEW_ENTITY, PolicySubject.for_task(t)).allowed
        ]
        return ServiceResult.success(visible)

    def apply_task_transition(
        self,
        actor: ActorClaim,
        task: TaskSnapshot,
        request: TaskTransitionRequest,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """
        Transition the snapshot the caller read.

        A snapshot older than the stored record yields a `conflict` failure;
        the caller re-reads and retries.
        """
        actor = self._current_actor(actor)
        if request.is_empty():
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, "Nothing to change")

        subject = PolicySubject.for_task(task)
        required = []
        if request.new_status is not None:
            required.append(Action.UPDATE_TASK_STATUS)
        if request.new_billing_status is not None:
            required.append(Action.APPROVE_BILLING)
        if request.new_assignees is not None:
            required.append(Action.REASSIGN_TASK)
        denied = self._gate_all(actor, required, subject)
        if denied:
            return denied

        if request.new_assignees is not None:
            unknown = sorted(a for a in set(request.new_assignees) if self.store.get_user(a) is None)
            if unknown:
                return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, f"Unknown assignee(s): {unknown}")

        client = self.store.get_client(task.client_id) if task.client_id else None
        result = apply_task_transition(task, request, actor, now, self.config, client=client)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        if not result.changed:
            return ServiceResult.success(task)

        try:
            stored = self.store.put_task(result.task)
        except StaleSnapshotError as e:
            logger.warning(f"Conflict writing task {task.id}: {e}")
            return ServiceResult.from_failure(e.to_failure())

        self._commit(result.events)
        return ServiceResult.success(stored)

    def update_task(
        self,
        actor: ActorClaim,
        task_id: str,
        request: TaskTransitionRequest,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        task = self.store.get_task(task_id)
        if task is None:
            return self._not_found("Task", task_id)
        if expected_version is not None and expected_version != task.version:
            return ServiceResult.from_failure(
                StaleSnapshotError("task", task_id, expected_version, task.version).to_failure()
            )
        return self.apply_task_transition(actor, task, request, now)

    def delete_task(self, actor: ActorClaim, task_id: str, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        task = self.store.get_task(task_id)
        if task is None:
            return self._not_found("Task", task_id)
        denied = self._gate(actor, Action.DELETE_TASK, PolicySubject.for_task(task))
        if denied:
            return denied

        result = delete_task(task, actor, now)
        try:
            self.store.delete_task(task.id, expected_version=task.version)
        except StaleSnapshotError as e:
            return ServiceResult.from_failure(e.to_failure())
        self._commit(result.events)
        return ServiceResult.success(task)

    # -------------------------------------------------------------------------
    # Task Comments
    # -------------------------------------------------------------------------

    def add_task_comment(
        self, actor: ActorClaim, task_id: str, content: str, now: Optional[datetime] = None
    ) -> ServiceResult:
        actor = self._current_actor(actor)
        task = self.store.get_task(task_id)
        if task is None:
            return self._not_found("Task", task_id)
        denied = self._gate(actor, Action.COMMENT_ON_TASK, PolicySubject.for_task(task))
        if denied:
            return denied

        result = add_comment(self._new_id(), task, content, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        try:
            stored = self.store.add_comment(result.comment)
        except ConflictError as e:
            return ServiceResult.fail(ErrorCode.CONFLICT, str(e))
        self._commit(result.events)
        return ServiceResult.success(stored)

    def list_task_comments(self, actor: ActorClaim, task_id: str) -> ServiceResult:
        actor = self._current_actor(actor)
        task = self.store.get_task(task_id)
        if task is None:
            return self._not_found("Task", task_id)
        denied = self._gate(actor, Action.VIEW_ENTITY, PolicySubject.for_task(task))
        if denied:
            return denied
        return ServiceResult.success(self.store.list_comments(task_id))

    # -------------------------------------------------------------------------
    # Clients
    # -------------------------------------------------------------------------

    def create_client(self, actor: ActorClaim, data: ClientCreateInput, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        denied = self._gate(actor, Action.CREATE_CLIENT, PolicySubject.for_new_client())
        if denied:
            return denied
        if data.manager_id and self.store.get_user(data.manager_id) is None:
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, f"Unknown manager: {data.manager_id}")

        result = create_client(self._new_id(), data, actor, now, self.config)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)

        stored = self.store.insert_client(result.client)
        self._commit(result.events)
        return ServiceResult.success(stored)

    def get_client(self, actor: ActorClaim, client_id: str, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        client = self.store.get_client(client_id)
        if client is None:
            return self._not_found("Client", client_id)
        denied = self._gate(actor, Action.VIEW_ENTITY, PolicySubject.for_client(client))
        if denied:
            return denied
        return ServiceResult.success(summarize(client, now or utc_now()))

    def list_clients(self, actor: ActorClaim) -> ServiceResult:
        actor = self._current_actor(actor)
        if not actor.is_active:
            return ServiceResult.denied(evaluate(actor, Action.VIEW_ENTITY, PolicySubject.for_new_client()))
        visible = [
            c for c in self.store.list_clients()
            if evaluate(actor, Action.VIEW_ENTITY, PolicySubject.for_client(c)).allowed
        ]
        return ServiceResult.success(visible)

    def update_client(
        self,
        actor: ActorClaim,
        client_id: str,
        data: ClientUpdateInput,
        expected_version: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        actor = self._current_actor(actor)
        client = self.store.get_client(client_id)
        if client is None:
            return self._not_found("Client", client_id)
        denied = self._gate(actor, Action.UPDATE_CLIENT, PolicySubject.for_client(client))
        if denied:
            return denied
        if expected_version is not None:
            client = replace(client, version=expected_version)
        if data.manager_id and self.store.get_user(data.manager_id) is None:
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, f"Unknown manager: {data.manager_id}")

        result = update_client(client, data, actor, now, self.config)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        if not result.events:
            return ServiceResult.success(client)

        try:
            stored = self.store.put_client(result.client)
        except StaleSnapshotError as e:
            return ServiceResult.from_failure(e.to_failure())
        self._commit(result.events)
        return ServiceResult.success(stored)

    def delete_client(self, actor: ActorClaim, client_id: str, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        now = now or utc_now()
        client = self.store.get_client(client_id)
        if client is None:
            return self._not_found("Client", client_id)
        denied = self._gate(actor, Action.DELETE_CLIENT, PolicySubject.for_client(client))
        if denied:
            return denied

        result = delete_client(client, actor, now)
        try:
            outcome = self.store.delete_client_cascade(
                client.id,
                expected_version=client.version,
                delete_tasks=self.config.client_cascade == ClientCascade.DELETE,
                now=now,
            )
        except StaleSnapshotError as e:
            logger.warning(f"Conflict deleting client {client.id}: {e}")
            return ServiceResult.from_failure(e.to_failure())
        if outcome is None:
            return self._not_found("Client", client_id)

        deleted_tasks, _ = outcome
        events: List[LifecycleEvent] = list(result.events)
        for task in deleted_tasks:
            events.extend(delete_task(task, actor, now).events)
        self._commit(events)
        return ServiceResult.success(client)

    # -------------------------------------------------------------------------
    # Client History
    # -------------------------------------------------------------------------

    def list_client_history(self, actor: ActorClaim, client_id: str) -> ServiceResult:
        actor = self._current_actor(actor)
        client = self.store.get_client(client_id)
        if client is None:
            return self._not_found("Client", client_id)
        denied = self._gate(actor, Action.VIEW_ENTITY, PolicySubject.for_client(client))
        if denied:
            return denied
        return ServiceResult.success(self.store.list_client_history(client_id))

    def add_client_history_note(
        self, actor: ActorClaim, client_id: str, content: str, now: Optional[datetime] = None
    ) -> ServiceResult:
        actor = self._current_actor(actor)
        client = self.store.get_client(client_id)
        if client is None:
            return self._not_found("Client", client_id)
        denied = self._gate(actor, Action.ADD_CLIENT_HISTORY, PolicySubject.for_client(client))
        if denied:
            return denied

        entry_id = self._new_id()
        result = add_history_note(entry_id, client, content, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        self._commit(result.events)
        return ServiceResult.success(self.store.get_history_entry(entry_id))

    def delete_client_history_entry(
        self, actor: ActorClaim, client_id: str, entry_id: str, now: Optional[datetime] = None
    ) -> ServiceResult:
        """ADMIN and PARTNER only; completed-task entries may be removed like notes."""
        actor = self._current_actor(actor)
        client = self.store.get_client(client_id)
        if client is None:
            return self._not_found("Client", client_id)
        denied = self._gate(actor, Action.DELETE_CLIENT_HISTORY, PolicySubject.for_client(client))
        if denied:
            return denied

        entry = self.store.get_history_entry(entry_id)
        if entry is None:
            return self._not_found("History entry", entry_id)
        result = delete_history_entry(client, entry, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        if not self.store.delete_history_entry(entry.id):
            return self._not_found("History entry", entry_id)
        self._commit(result.events)
        return ServiceResult.success(entry)

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def create_user(self, actor: ActorClaim, data: UserCreateInput, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        denied = self._gate(actor, Action.CREATE_USER, PolicySubject.for_new_user(parse_account_role(data.role)))
        if denied:
            return denied

        email = (data.email or "").strip().lower()
        if any(u.email == email for u in self.store.list_users()):
            return ServiceResult.fail(ErrorCode.VALIDATION_ERROR, f"Email already registered: {email}")

        result = create_user(self._new_id(), data, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        stored = self.store.insert_user(result.user)
        self._commit(result.events)
        return ServiceResult.success(stored)

    def register_user(self, user: UserSnapshot) -> UserSnapshot:
        """Seed an account directly (bootstrap and tests). Bypasses policy."""
        return self.store.insert_user(user)

    def get_user(self, actor: ActorClaim, user_id: str) -> ServiceResult:
        actor = self._current_actor(actor)
        user = self.store.get_user(user_id)
        if user is None:
            return self._not_found("User", user_id)
        denied = self._gate(actor, Action.VIEW_ENTITY, PolicySubject.for_user(user))
        if denied:
            return denied
        return ServiceResult.success(user)

    def list_users(self, actor: ActorClaim) -> ServiceResult:
        actor = self._current_actor(actor)
        visible = [
            u for u in self.store.list_users()
            if evaluate(actor, Action.VIEW_ENTITY, PolicySubject.for_user(u)).allowed
        ]
        return ServiceResult.success(visible)

    def _write_user(self, user: UserSnapshot, events) -> ServiceResult:
        try:
            stored = self.store.put_user(user)
        except StaleSnapshotError as e:
            return ServiceResult.from_failure(e.to_failure())
        self._commit(events)
        return ServiceResult.success(stored)

    def update_user(self, actor: ActorClaim, user_id: str, data: UserUpdateInput, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        user = self.store.get_user(user_id)
        if user is None:
            return self._not_found("User", user_id)
        denied = self._gate(actor, Action.UPDATE_USER, PolicySubject.for_user(user))
        if denied:
            return denied

        result = update_user(user, data, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        if result.user is user:
            return ServiceResult.success(user)
        return self._write_user(result.user, result.events)

    def change_user_role(self, actor: ActorClaim, user_id: str, new_role: Any, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        user = self.store.get_user(user_id)
        if user is None:
            return self._not_found("User", user_id)
        try:
            requested = Role(new_role)
        except ValueError:
            requested = None
        denied = self._gate(actor, Action.CHANGE_USER_ROLE, PolicySubject.for_user(user, new_role=requested))
        if denied:
            return denied

        result = change_role(user, new_role, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        if not result.events:
            return ServiceResult.success(user)
        return self._write_user(result.user, result.events)

    def set_user_active(self, actor: ActorClaim, user_id: str, active: bool, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        user = self.store.get_user(user_id)
        if user is None:
            return self._not_found("User", user_id)
        denied = self._gate(actor, Action.UPDATE_USER, PolicySubject.for_user(user))
        if denied:
            return denied

        result = set_active(user, active, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        if not result.events:
            return ServiceResult.success(user)
        return self._write_user(result.user, result.events)

    def delete_user(self, actor: ActorClaim, user_id: str, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        user = self.store.get_user(user_id)
        if user is None:
            return self._not_found("User", user_id)
        denied = self._gate(actor, Action.DELETE_USER, PolicySubject.for_user(user))
        if denied:
            return denied

        result = delete_user(user, actor, now)
        if not result.ok:
            return ServiceResult.from_failure(result.failure)
        try:
            self.store.delete_user(user.id, expected_version=user.version)
        except StaleSnapshotError as e:
            return ServiceResult.from_failure(e.to_failure())
        self._commit(result.events)
        return ServiceResult.success(user)

    # -------------------------------------------------------------------------
    # Notification Inbox
    # -------------------------------------------------------------------------

    def _inbox_gate(self, actor: ActorClaim, action: Action = Action.MANAGE_INBOX) -> Optional[ServiceResult]:
        """Reading is allowed to blocked accounts; changing the inbox is not."""
        own_profile = PolicySubject(entity_type=EntityType.USER, entity_id=actor.id)
        return self._gate(self._current_actor(actor), action, own_profile)

    def list_notifications(self, actor: ActorClaim, unread_only: bool = False) -> ServiceResult:
        denied = self._inbox_gate(actor, Action.VIEW_ENTITY)
        if denied:
            return denied
        items = self.store.list_notifications(actor.id, unread_only=unread_only)
        return ServiceResult.success({
            "notifications": items,
            "unread": self.store.unread_count(actor.id),
        })

    def mark_notification_read(self, actor: ActorClaim, notification_id: str) -> ServiceResult:
        denied = self._inbox_gate(actor)
        if denied:
            return denied
        notification = self.store.mark_read(actor.id, notification_id)
        if notification is None:
            return self._not_found("Notification", notification_id)
        return ServiceResult.success(notification)

    def mark_all_notifications_read(self, actor: ActorClaim) -> ServiceResult:
        denied = self._inbox_gate(actor)
        if denied:
            return denied
        return ServiceResult.success({"updated": self.store.mark_all_read(actor.id)})

    def delete_notifications(self, actor: ActorClaim, notification_ids: Optional[List[str]] = None) -> ServiceResult:
        denied = self._inbox_gate(actor)
        if denied:
            return denied
        return ServiceResult.success({"deleted": self.store.delete_notifications(actor.id, notification_ids)})

    # -------------------------------------------------------------------------
    # Activity Feed & Expiry
    # -------------------------------------------------------------------------

    def list_activities(self, actor: ActorClaim, activity_type: Optional[str] = None, limit: int = 50) -> ServiceResult:
        """Full feed for ADMIN/PARTNER, own activity for everyone else."""
        actor = self._current_actor(actor)
        if not actor.is_active:
            return ServiceResult.fail(ErrorCode.ACCOUNT_BLOCKED, "Account is blocked")
        denied = self._gate(actor, Action.VIEW_ENTITY, PolicySubject(entity_type=EntityType.USER, entity_id=actor.id))
        if denied:
            return denied
        user_filter = None if actor.role in FEED_ROLES else actor.id
        return ServiceResult.success(
            self.store.list_activities(limit=limit, activity_type=activity_type, user_id=user_filter)
        )

    def run_expiry_tick(self, actor: ActorClaim, now: Optional[datetime] = None) -> ServiceResult:
        actor = self._current_actor(actor)
        denied = self._gate(actor, Action.RUN_EXPIRY_TICK, PolicySubject())
        if denied:
            return denied
        logger.info(f"Manual expiry tick requested by {actor.id}")
        report: ExpiryTickReport = self.scanner.run_tick(now)
        return ServiceResult.success(report)

    def get_status(self) -> Dict[str, Any]:
        return {
            "store": self.store.get_summary(),
            "scanner": self.scanner.get_status(),
            "config": self.config.to_dict(),
            "channels": self.sink.channel_names,
        }


# -----------------------------------------------------------------------------
# Module-Level Functions
# -----------------------------------------------------------------------------

_service: Optional[OfficeService] = None


def get_office_service(config: Optional[EngineConfig] = None) -> OfficeService:
    """Get the office service singleton."""
    global _service
    if _service is None:
        config = config or EngineConfig()
        store = EntityStore(state_dir=config.state_dir)
        _service = OfficeService(store, config=config)
        if config.notification_webhook_url:
            _service.sink.register_channel("webhook", make_webhook_channel(config.notification_webhook_url))
    return _service


def reset_office_service() -> None:
    """Drop the singleton (tests)."""
    global _service
    if _service is not None:
        _service.scanner.stop()
    _service = None
