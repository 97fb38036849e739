"""
Error taxonomy.

Policy and lifecycle outcomes are returned as values (`Failure`), never
raised. The only exception in the taxonomy is `StaleSnapshotError`, raised by
the store when a write is based on an outdated snapshot.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any


class ErrorCode(str, Enum):
    ACCOUNT_BLOCKED = "account_blocked"
    UNSPECIFIED = "unspecified"
    INVALID_TRANSITION = "invalid_transition"
    BILLING_NOT_ELIGIBLE = "billing_not_eligible"
    NO_ASSIGNEE_FOR_ACTIVE_TASK = "no_assignee_for_active_task"
    VALIDATION_ERROR = "validation_error"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"

    @classmethod
    def policy_codes(cls) -> set:
        return {cls.ACCOUNT_BLOCKED, cls.UNSPECIFIED}

    @classmethod
    def lifecycle_codes(cls) -> set:
        return {cls.INVALID_TRANSITION, cls.BILLING_NOT_ELIGIBLE, cls.NO_ASSIGNEE_FOR_ACTIVE_TASK}


@dataclass(frozen=True)
class Failure:
    """Terminal (or, for CONFLICT, retryable) failure of one request."""
    code: ErrorCode
    message: str

    @property
    def retryable(self) -> bool:
        return self.code == ErrorCode.CONFLICT

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code.value, "message": self.message}


class ConflictError(Exception):
    """Base class for store-level write conflicts."""


class StaleSnapshotError(ConflictError):
    """The snapshot being written was read before the latest committed write."""

    def __init__(self, entity_type: str, entity_id: str, expected_version: int, actual_version: int):
        super().__init__(
            f"Stale {entity_type} snapshot {entity_id}: "
            f"written from version {expected_version}, store is at {actual_version}"
        )
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version

    def to_failure(self) -> Failure:
        return Failure(ErrorCode.CONFLICT, str(self))
