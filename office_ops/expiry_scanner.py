"""
Expiry Scanner

Time-triggered job that removes:
- guest clients whose access expired (accessExpiry < now)
- tasks whose scheduled deletion date has passed

Every row goes through the same path as a human request, with the reserved
SYSTEM actor:
    policy decision (always Allow, kept as a trace) -> lifecycle machine ->
    dispatcher -> store delete -> activities -> notifications

A guest client and its linked tasks (detached, or deleted when the cascade
is configured that way) are removed in one store operation, so a client that
changed since it was read is left untouched together with its tasks.

Guarantees:
- Ticks never overlap; a tick due while another runs is skipped, not queued
- A failing row never aborts the batch; failures are collected in the report
- Rows left when the tick's time limit runs out are deferred to the next tick
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable

from .client_lifecycle import expire_client
from .entity_model import SYSTEM_ACTOR, ClientSnapshot, TaskSnapshot, to_iso, utc_now
from .entity_store import EntityStore
from .errors import ConflictError
from .notification_sink import NotificationSink
from .policy_config import ClientCascade, EngineConfig
from .policy_resolver import Action, PolicyDecision, PolicySubject, evaluate
from .side_effects import dispatch_all
from .task_lifecycle import delete_task, expire_task

logger = logging.getLogger("expiry_scanner")


@dataclass
class ExpiryTickReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    deleted_clients: List[str] = field(default_factory=list)
    deleted_tasks: List[str] = field(default_factory=list)
    detached_tasks: List[str] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)
    decisions: List[PolicyDecision] = field(default_factory=list)
    deferred: int = 0
    skipped: bool = False

    def add_error(self, entity_type: str, entity_id: str, error: str) -> None:
        self.errors.append({"entity_type": entity_type, "entity_id": entity_id, "error": error})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "deleted_clients": list(self.deleted_clients),
            "deleted_tasks": list(self.deleted_tasks),
            "detached_tasks": list(self.detached_tasks),
            "errors": list(self.errors),
            "decisions": [d.to_dict() for d in self.decisions],
            "deferred": self.deferred,
            "skipped": self.skipped,
        }


class ExpiryScanner:
    """
    Runs expiry ticks on demand (`run_tick`) or on a background thread.
    """

    def __init__(
        self,
        store: EntityStore,
        sink: NotificationSink,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._sink = sink
        self._config = config or EngineConfig()
        self._clock = clock
        self._tick_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._tick_count = 0
        self._last_report: Optional[ExpiryTickReport] = None

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def run_tick(self, now: Optional[datetime] = None) -> ExpiryTickReport:
        """
        Run one expiry pass.

        Returns a report; never raises for row-level failures.
        """
        now = now or utc_now()
        report = ExpiryTickReport(started_at=now)

        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Expiry tick skipped: previous tick still running")
            report.skipped = True
            report.finished_at = now
            return report

        try:
            deadline = self._clock() + self._config.expiry_tick_timeout_seconds

            clients = self._store.find_expired_guests(now)
            for index, client in enumerate(clients):
                if self._clock() >= deadline:
                    report.deferred += len(clients) - index
                    break
                self._process_client(client, now, report)

            tasks = self._store.find_tasks_due_for_deletion(now)
            for index, task in enumerate(tasks):
                if self._clock() >= deadline:
                    report.deferred += len(tasks) - index
                    break
                self._process_task(task, now, report)

            if report.deferred:
                logger.warning(f"Expiry tick out of time, deferred {report.deferred} row(s) to the next tick")
        finally:
            self._tick_count += 1
            report.finished_at = utc_now()
            self._last_report = report
            self._tick_lock.release()

        logger.info(
            f"Expiry tick done: {len(report.deleted_clients)} client(s), "
            f"{len(report.deleted_tasks)} task(s) deleted, {len(report.errors)} error(s)"
        )
        return report

    def _process_client(self, client: ClientSnapshot, now: datetime, report: ExpiryTickReport) -> None:
        try:
            decision = evaluate(SYSTEM_ACTOR, Action.DELETE_CLIENT, PolicySubject.for_client(client))
            report.decisions.append(decision)
            if not decision.allowed:
                report.add_error("client", client.id, decision.message)
                return

            result = expire_client(client, SYSTEM_ACTOR, now)
            if not result.ok:
                report.add_error("client", client.id, result.failure.message)
                return

            delete_tasks = self._config.client_cascade == ClientCascade.DELETE
            if delete_tasks:
                for task in self._store.tasks_for_client(client.id):
                    report.decisions.append(
                        evaluate(SYSTEM_ACTOR, Action.DELETE_TASK, PolicySubject.for_task(task))
                    )

            # Version check, cascade and delete happen under one store lock
            outcome = self._store.delete_client_cascade(
                client.id, expected_version=client.version, delete_tasks=delete_tasks, now=now,
            )
            if outcome is None:
                logger.info(f"[SYSTEM] Client {client.id} already gone, nothing to delete")
                return
            deleted_tasks, detached_tasks = outcome

            events = list(result.events)
            for task in deleted_tasks:
                events.extend(delete_task(task, SYSTEM_ACTOR, now).events)
            effects = dispatch_all(events)

            self._store.append_activities(effects.activities)
            self._sink.deliver(effects.notifications)
            report.deleted_clients.append(client.id)
            report.deleted_tasks.extend(t.id for t in deleted_tasks)
            report.detached_tasks.extend(t.id for t in detached_tasks)
            logger.info(
                f"[SYSTEM] Deleted expired guest client {client.id} (expired {to_iso(client.access_expiry)}), "
                f"{len(deleted_tasks)} task(s) deleted, {len(detached_tasks)} detached"
            )
        except ConflictError as e:
            logger.error(f"[SYSTEM] Client {client.id} changed during expiry, deferring: {e}")
            report.add_error("client", client.id, str(e))
        except Exception as e:
            logger.error(f"[SYSTEM] Failed to delete expired client {client.id}: {e}")
            report.add_error("client", client.id, str(e))

    def _process_task(self, task: TaskSnapshot, now: datetime, report: ExpiryTickReport) -> None:
        try:
            decision = evaluate(SYSTEM_ACTOR, Action.DELETE_TASK, PolicySubject.for_task(task))
            report.decisions.append(decision)
            if not decision.allowed:
                report.add_error("task", task.id, decision.message)
                return

            result = expire_task(task, SYSTEM_ACTOR, now)
            if not result.ok:
                report.add_error("task", task.id, result.failure.message)
                return
            effects = dispatch_all(list(result.events))

            if not self._store.delete_task(task.id, expected_version=task.version):
                logger.info(f"[SYSTEM] Task {task.id} already gone, nothing to delete")
                return

            self._store.append_activities(effects.activities)
            self._sink.deliver(effects.notifications)
            report.deleted_tasks.append(task.id)
            logger.info(f"[SYSTEM] Deleted task {task.id} after retention window")
        except ConflictError as e:
            logger.error(f"[SYSTEM] Task {task.id} changed during expiry, deferring: {e}")
            report.add_error("task", task.id, str(e))
        except Exception as e:
            logger.error(f"[SYSTEM] Failed to delete task {task.id}: {e}")
            report.add_error("task", task.id, str(e))

    # -------------------------------------------------------------------------
    # Background Thread
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start background ticking."""
        if self._running:
            logger.warning("Expiry scanner already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-scanner", daemon=True)
        self._thread.start()
        logger.info(f"Expiry scanner started (interval={self._config.expiry_tick_interval_seconds}s)")

    def stop(self) -> None:
        """Stop background ticking."""
        self._running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Expiry scanner stopped")

    def _loop(self) -> None:
        """Background loop."""
        while self._running:
            try:
                self.run_tick()
            except Exception as e:
                logger.error(f"Expiry tick failed: {e}")
            if self._stop_event.wait(self._config.expiry_tick_interval_seconds):
                break

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "interval_seconds": self._config.expiry_tick_interval_seconds,
            "timeout_seconds": self._config.expiry_tick_timeout_seconds,
            "tick_count": self._tick_count,
            "tick_in_progress": self._tick_lock.locked(),
            "last_report": self._last_report.to_dict() if self._last_report else None,
        }
