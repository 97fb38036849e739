"""
Entity Store

Reference implementation of the store the engine writes through.

- Owns identity and versioning: every stored snapshot carries `version`
- Optimistic concurrency: a write based on an outdated snapshot raises
  StaleSnapshotError, the caller re-reads and retries
- Activities are append-only and de-duplicated by id
- Notifications only change in `is_read`, or are deleted by their recipient
- Deleting a client and handling its linked tasks is one locked operation

When a state directory is given, records survive restarts:
- state.json        users, clients, tasks, comments, client history and
                    notifications (atomic replace)
- activities.jsonl  audit trail (append + fsync)
"""

import json
import logging
import os
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Iterable, Set, Tuple

from .entity_model import (
    Activity,
    ClientHistoryEntry,
    ClientSnapshot,
    Notification,
    TaskComment,
    TaskSnapshot,
    UserSnapshot,
    utc_now,
)
from .errors import ConflictError, StaleSnapshotError
from .task_lifecycle import detach_client, is_due_for_deletion

logger = logging.getLogger("entity_store")

STATE_FILE_NAME = "state.json"
ACTIVITY_LOG_NAME = "activities.jsonl"


class EntityStore:
    """
    Thread-safe in-memory store with optional file persistence.

    All reads return immutable snapshots, so callers never share mutable
    state with the store.
    """

    def __init__(self, state_dir: Optional[Path] = None):
        self._lock = threading.RLock()
        self._users: Dict[str, UserSnapshot] = {}
        self._clients: Dict[str, ClientSnapshot] = {}
        self._tasks: Dict[str, TaskSnapshot] = {}
        self._activities: List[Activity] = []
        self._activity_ids: Set[str] = set()
        self._notifications: Dict[str, Notification] = {}
        self._comments: Dict[str, TaskComment] = {}
        self._history: Dict[str, ClientHistoryEntry] = {}

        self._state_dir = Path(state_dir) if state_dir else None
        self._state_file = self._state_dir / STATE_FILE_NAME if self._state_dir else None
        self._activity_log = self._state_dir / ACTIVITY_LOG_NAME if self._state_dir else None

        if self._state_dir:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -------------------------------------------------------------------------
    # Generic Versioned Writes
    # -------------------------------------------------------------------------

    def _insert(self, table: Dict[str, Any], entity_type: str, snapshot):
        with self._lock:
            if snapshot.id in table:
                raise ConflictError(f"{entity_type} {snapshot.id} already exists")
            stored = replace(snapshot, version=1)
            table[snapshot.id] = stored
            self._save_state()
            return stored

    def _put(self, table: Dict[str, Any], entity_type: str, snapshot):
        with self._lock:
            current = table.get(snapshot.id)
            actual_version = current.version if current else 0
            if current is None or current.version != snapshot.version:
                raise StaleSnapshotError(entity_type, snapshot.id, snapshot.version, actual_version)
            stored = replace(snapshot, version=snapshot.version + 1)
            table[snapshot.id] = stored
            self._save_state()
            return stored

    def _delete(self, table: Dict[str, Any], entity_type: str, entity_id: str,
                expected_version: Optional[int] = None) -> bool:
        with self._lock:
            current = table.get(entity_id)
            if current is None:
                return False
            if expected_version is not None and current.version != expected_version:
                raise StaleSnapshotError(entity_type, entity_id, expected_version, current.version)
            del table[entity_id]
            self._save_state()
            return True

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def insert_user(self, user: UserSnapshot) -> UserSnapshot:
        return self._insert(self._users, "user", user)

    def put_user(self, user: UserSnapshot) -> UserSnapshot:
        return self._put(self._users, "user", user)

    def get_user(self, user_id: str) -> Optional[UserSnapshot]:
        with self._lock:
            return self._users.get(user_id)

    def list_users(self) -> List[UserSnapshot]:
        with self._lock:
            return sorted(self._users.values(), key=lambda u: u.name.lower())

    def delete_user(self, user_id: str, expected_version: Optional[int] = None) -> bool:
        return self._delete(self._users, "user", user_id, expected_version)

    # -------------------------------------------------------------------------
    # Clients
    # -------------------------------------------------------------------------

    def insert_client(self, client: ClientSnapshot) -> ClientSnapshot:
        return self._insert(self._clients, "client", client)

    def put_client(self, client: ClientSnapshot) -> ClientSnapshot:
        return self._put(self._clients, "client", client)

    def get_client(self, client_id: str) -> Optional[ClientSnapshot]:
        with self._lock:
            return self._clients.get(client_id)

    def list_clients(self, manager_id: Optional[str] = None) -> List[ClientSnapshot]:
        with self._lock:
            clients = list(self._clients.values())
        if manager_id:
            clients = [c for c in clients if c.manager_id == manager_id]
        return sorted(clients, key=lambda c: c.contact_person.lower())

    def delete_client(self, client_id: str, expected_version: Optional[int] = None) -> bool:
        with self._lock:
            deleted = self._delete(self._clients, "client", client_id, expected_version)
            if deleted and self._drop_client_history(client_id):
                self._save_state()
            return deleted

    def delete_client_cascade(
        self,
        client_id: str,
        expected_version: Optional[int],
        delete_tasks: bool = False,
        now: Optional[datetime] = None,
    ) -> Optional[Tuple[List[TaskSnapshot], List[TaskSnapshot]]]:
        """
        Delete a client and handle its linked tasks in one step.

        The client version is checked before anything changes, so a stale
        snapshot leaves the client and its tasks exactly as they were.
        Linked tasks are deleted when `delete_tasks` is set and detached
        otherwise.

        Returns (deleted_tasks, detached_tasks) as they were before the
        change, or None if the client no longer exists.
        """
        now = now or utc_now()
        with self._lock:
            current = self._clients.get(client_id)
            if current is None:
                return None
            if expected_version is not None and current.version != expected_version:
                raise StaleSnapshotError("client", client_id, expected_version, current.version)

            linked = sorted((t for t in self._tasks.values() if t.client_id == client_id), key=lambda t: t.id)
            deleted: List[TaskSnapshot] = []
            detached: List[TaskSnapshot] = []
            for task in linked:
                if delete_tasks:
                    del self._tasks[task.id]
                    self._drop_comments(task.id)
                    deleted.append(task)
                else:
                    self._tasks[task.id] = replace(detach_client(task, now), version=task.version + 1)
                    detached.append(task)

            del self._clients[client_id]
            self._drop_client_history(client_id)
            self._save_state()
            return deleted, detached

    def find_expired_guests(self, now: Optional[datetime] = None) -> List[ClientSnapshot]:
        """Guest clients whose access expired strictly before `now`, oldest first."""
        now = now or utc_now()
        with self._lock:
            expired = [
                c for c in self._clients.values()
                if c.is_guest and c.access_expiry is not None and c.access_expiry < now
            ]
        return sorted(expired, key=lambda c: c.access_expiry)

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def insert_task(self, task: TaskSnapshot) -> TaskSnapshot:
        return self._insert(self._tasks, "task", task)

    def put_task(self, task: TaskSnapshot) -> TaskSnapshot:
        return self._put(self._tasks, "task", task)

    def get_task(self, task_id: str) -> Optional[TaskSnapshot]:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(
        self,
        user_id: Optional[str] = None,
        client_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[TaskSnapshot]:
        """
        List tasks, newest first.

        user_id matches tasks the user is assigned to or created.
        """
        with self._lock:
            tasks = list(self._tasks.values())
        if user_id:
            tasks = [t for t in tasks if user_id in t.assignees or t.assigned_by_id == user_id]
        if client_id:
            tasks = [t for t in tasks if t.client_id == client_id]
        if status:
            tasks = [t for t in tasks if t.status.value == status]
        return sorted(tasks, key=lambda t: (t.created_at.isoformat() if t.created_at else "", t.id), reverse=True)

    def tasks_for_client(self, client_id: str) -> List[TaskSnapshot]:
        return self.list_tasks(client_id=client_id)

    def delete_task(self, task_id: str, expected_version: Optional[int] = None) -> bool:
        with self._lock:
            deleted = self._delete(self._tasks, "task", task_id, expected_version)
            if deleted and self._drop_comments(task_id):
                self._save_state()
            return deleted

    def find_tasks_due_for_deletion(self, now: Optional[datetime] = None) -> List[TaskSnapshot]:
        """Tasks whose scheduled deletion date has passed, earliest first."""
        now = now or utc_now()
        with self._lock:
            due = [t for t in self._tasks.values() if is_due_for_deletion(t, now)]
        return sorted(due, key=lambda t: t.scheduled_deletion_date)

    # -------------------------------------------------------------------------
    # Task Comments
    # -------------------------------------------------------------------------

    def add_comment(self, comment: TaskComment) -> TaskComment:
        with self._lock:
            if comment.task_id not in self._tasks:
                raise ConflictError(f"task {comment.task_id} no longer exists")
            if comment.id in self._comments:
                raise ConflictError(f"comment {comment.id} already exists")
            self._comments[comment.id] = comment
            self._save_state()
            return comment

    def list_comments(self, task_id: str) -> List[TaskComment]:
        """Oldest first."""
        with self._lock:
            comments = [c for c in self._comments.values() if c.task_id == task_id]
        return sorted(comments, key=lambda c: (c.created_at, c.id))

    def _drop_comments(self, task_id: str) -> int:
        doomed = [cid for cid, c in self._comments.items() if c.task_id == task_id]
        for comment_id in doomed:
            del self._comments[comment_id]
        return len(doomed)

    # -------------------------------------------------------------------------
    # Client History
    # -------------------------------------------------------------------------

    def record_client_history(self, entries: Iterable[ClientHistoryEntry]) -> int:
        """
        Store history entries produced by the dispatcher.

        An entry whose id is already stored is a later step of the same task
        (billing after completion): its billing fields and text are merged
        into the stored entry. Entries for clients that no longer exist are
        dropped. Returns the number of entries written.
        """
        written = 0
        with self._lock:
            for entry in entries:
                if entry.client_id not in self._clients:
                    continue
                current = self._history.get(entry.id)
                if current is None:
                    self._history[entry.id] = entry
                elif entry.task_billed_at is not None:
                    self._history[entry.id] = replace(
                        current,
                        content=entry.content,
                        task_billed_at=entry.task_billed_at,
                        billing_details=dict(entry.billing_details),
                    )
                else:
                    continue
                written += 1
            if written:
                self._save_state()
        return written

    def get_history_entry(self, entry_id: str) -> Optional[ClientHistoryEntry]:
        with self._lock:
            return self._history.get(entry_id)

    def list_client_history(self, client_id: str) -> List[ClientHistoryEntry]:
        """Newest first."""
        with self._lock:
            entries = [h for h in self._history.values() if h.client_id == client_id]
        return sorted(entries, key=lambda h: (h.created_at, h.id), reverse=True)

    def delete_history_entry(self, entry_id: str) -> bool:
        with self._lock:
            if entry_id not in self._history:
                return False
            del self._history[entry_id]
            self._save_state()
            return True

    def _drop_client_history(self, client_id: str) -> int:
        doomed = [hid for hid, h in self._history.items() if h.client_id == client_id]
        for entry_id in doomed:
            del self._history[entry_id]
        return len(doomed)

    # -------------------------------------------------------------------------
    # Activities (append-only)
    # -------------------------------------------------------------------------

    def append_activities(self, activities: Iterable[Activity]) -> int:
        """
        Append activities, skipping ids already recorded.

        Returns the number of records actually appended.
        """
        appended = 0
        with self._lock:
            for activity in activities:
                if activity.id in self._activity_ids:
                    continue
                self._activity_ids.add(activity.id)
                self._activities.append(activity)
                if self._activity_log:
                    self._append_record(self._activity_log, activity.to_dict())
                appended += 1
        return appended

    def list_activities(
        self,
        limit: int = 50,
        activity_type: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> List[Activity]:
        """Most recent first."""
        with self._lock:
            activities = list(self._activities)
        if activity_type:
            activities = [a for a in activities if a.type == activity_type]
        if user_id:
            activities = [a for a in activities if a.user_id == user_id]
        activities.sort(key=lambda a: a.created_at, reverse=True)
        return activities[:limit]

    # -------------------------------------------------------------------------
    # Notifications
    # -------------------------------------------------------------------------

    def add_notifications(self, notifications: Iterable[Notification]) -> List[Notification]:
        """Store notifications, skipping ids already present. Returns the new ones."""
        added = []
        with self._lock:
            for notification in notifications:
                if notification.id in self._notifications:
                    continue
                self._notifications[notification.id] = notification
                added.append(notification)
            if added:
                self._save_state()
        return added

    def list_notifications(self, user_id: str, unread_only: bool = False, limit: Optional[int] = None) -> List[Notification]:
        with self._lock:
            items = [n for n in self._notifications.values() if n.sent_to_id == user_id]
        if unread_only:
            items = [n for n in items if not n.is_read]
        items.sort(key=lambda n: n.created_at, reverse=True)
        return items[:limit] if limit else items

    def unread_count(self, user_id: str) -> int:
        return len(self.list_notifications(user_id, unread_only=True))

    def mark_read(self, user_id: str, notification_id: str) -> Optional[Notification]:
        """Mark one notification read. None if it does not exist or belongs to someone else."""
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None or notification.sent_to_id != user_id:
                return None
            if not notification.is_read:
                notification = replace(notification, is_read=True)
                self._notifications[notification_id] = notification
                self._save_state()
            return notification

    def mark_all_read(self, user_id: str) -> int:
        count = 0
        with self._lock:
            for notification_id, notification in list(self._notifications.items()):
                if notification.sent_to_id == user_id and not notification.is_read:
                    self._notifications[notification_id] = replace(notification, is_read=True)
                    count += 1
            if count:
                self._save_state()
        return count

    def delete_notifications(self, user_id: str, notification_ids: Optional[Iterable[str]] = None) -> int:
        """Delete the recipient's notifications: all of them, or only `notification_ids`."""
        wanted = set(notification_ids) if notification_ids is not None else None
        with self._lock:
            doomed = [
                n.id for n in self._notifications.values()
                if n.sent_to_id == user_id and (wanted is None or n.id in wanted)
            ]
            for notification_id in doomed:
                del self._notifications[notification_id]
            if doomed:
                self._save_state()
        return len(doomed)

    # -------------------------------------------------------------------------
    # Summary
    # -------------------------------------------------------------------------

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "users": len(self._users),
                "clients": len(self._clients),
                "guest_clients": sum(1 for c in self._clients.values() if c.is_guest),
                "tasks": len(self._tasks),
                "activities": len(self._activities),
                "notifications": len(self._notifications),
                "comments": len(self._comments),
                "client_history": len(self._history),
                "persistent": self._state_dir is not None,
            }

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load_state(self) -> None:
        """Load records from the state directory."""
        if self._state_file and self._state_file.exists():
            try:
                data = json.loads(self._state_file.read_text())
                for raw in data.get("users", []):
                    user = UserSnapshot.from_dict(raw)
                    self._users[user.id] = user
                for raw in data.get("clients", []):
                    client = ClientSnapshot.from_dict(raw)
                    self._clients[client.id] = client
                for raw in data.get("tasks", []):
                    task = TaskSnapshot.from_dict(raw)
                    self._tasks[task.id] = task
                for raw in data.get("notifications", []):
                    notification = Notification.from_dict(raw)
                    self._notifications[notification.id] = notification
                for raw in data.get("comments", []):
                    comment = TaskComment.from_dict(raw)
                    self._comments[comment.id] = comment
                for raw in data.get("client_history", []):
                    entry = ClientHistoryEntry.from_dict(raw)
                    self._history[entry.id] = entry
            except (json.JSONDecodeError, IOError, KeyError, ValueError) as e:
                logger.error(f"Failed to load state file: {e}")

        if self._activity_log:
            for raw in self._read_records(self._activity_log):
                try:
                    activity = Activity.from_dict(raw)
                except (KeyError, ValueError) as e:
                    logger.warning(f"Skipping malformed activity record: {e}")
                    continue
                if activity.id not in self._activity_ids:
                    self._activity_ids.add(activity.id)
                    self._activities.append(activity)

        logger.info(
            f"Loaded {len(self._users)} users, {len(self._clients)} clients, "
            f"{len(self._tasks)} tasks, {len(self._activities)} activities"
        )

    def _save_state(self) -> None:
        """Save records atomically. Caller holds the lock."""
        if not self._state_file:
            return
        state = {
            "updated_at": utc_now().isoformat(),
            "users": [u.to_dict() for u in self._users.values()],
            "clients": [c.to_dict() for c in self._clients.values()],
            "tasks": [t.to_dict() for t in self._tasks.values()],
            "notifications": [n.to_dict() for n in self._notifications.values()],
            "comments": [c.to_dict() for c in self._comments.values()],
            "client_history": [h.to_dict() for h in self._history.values()],
        }
        temp_file = self._state_file.with_suffix(".tmp")
        try:
            temp_file.write_text(json.dumps(state, indent=2, default=str))
            temp_file.replace(self._state_file)
        except IOError as e:
            logger.error(f"Failed to save state file: {e}")
            if temp_file.exists():
                temp_file.unlink()

    def _append_record(self, file_path: Path, record: Dict[str, Any]) -> None:
        """Append a record to a JSONL file with fsync."""
        with open(file_path, "a") as f:
            f.write(json.dumps(record, default=str) + "\n")
            f.flush()
            os.fsync(f.fileno())

    def _read_records(self, file_path: Path) -> List[Dict[str, Any]]:
        if not file_path.exists():
            return []
        records = []
        with open(file_path, "r") as f:
            for line in f:
                line = line.strip()
                if line:
                    try:
                        records.append(json.loads(line))
                    except json.JSONDecodeError:
                        # Skip malformed lines
                        continue
        return records
