"""
Policy Resolver

The SINGLE source of truth for which role may act on which entity.

Every request handler consults `evaluate(actor, action, subject)` before it
touches a lifecycle machine. The resolver is a pure function:
- No I/O, no store access
- Deterministic for identical inputs
- Total: it never raises, malformed input yields Deny(unspecified)

Rule order (the most specific matching rule wins):
1. Malformed actor or unknown action -> Deny(unspecified)
2. Blocked account -> Deny(account_blocked), except viewing one's own profile
3. SYSTEM actor -> Allow (recorded as a system decision)
4. ADMIN -> Allow
5. Anyone may manage their own notification inbox
6. PARTNER / staff / client role tables below
7. Nothing matched -> Deny(unspecified)
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, List, FrozenSet

from .entity_model import (
    ActorClaim,
    ClientSnapshot,
    EntityType,
    Role,
    TaskSnapshot,
    UserSnapshot,
)
from .errors import ErrorCode, Failure

logger = logging.getLogger("policy_resolver")


# -----------------------------------------------------------------------------
# Action Enum
# -----------------------------------------------------------------------------
class Action(str, Enum):
    CREATE_CLIENT = "CreateClient"
    UPDATE_CLIENT = "UpdateClient"
    DELETE_CLIENT = "DeleteClient"
    ADD_CLIENT_HISTORY = "AddClientHistory"
    DELETE_CLIENT_HISTORY = "DeleteClientHistory"
    CREATE_TASK = "CreateTask"
    UPDATE_TASK_STATUS = "UpdateTaskStatus"
    REASSIGN_TASK = "ReassignTask"
    APPROVE_BILLING = "ApproveBilling"
    DELETE_TASK = "DeleteTask"
    COMMENT_ON_TASK = "CommentOnTask"
    CREATE_USER = "CreateUser"
    UPDATE_USER = "UpdateUser"
    CHANGE_USER_ROLE = "ChangeUserRole"
    DELETE_USER = "DeleteUser"
    VIEW_ENTITY = "ViewEntity"
    MANAGE_INBOX = "ManageInbox"
    RUN_EXPIRY_TICK = "RunExpiryTick"


# -----------------------------------------------------------------------------
# Role Tables
# -----------------------------------------------------------------------------
# Actions a PARTNER may always perform, independent of the subject.
PARTNER_UNCONDITIONAL_ACTIONS: FrozenSet[Action] = frozenset({
    Action.CREATE_CLIENT,
    Action.CREATE_TASK,
    Action.REASSIGN_TASK,
    Action.COMMENT_ON_TASK,
    Action.ADD_CLIENT_HISTORY,
    Action.DELETE_CLIENT_HISTORY,
    Action.VIEW_ENTITY,
})

# Actions a PARTNER may perform only on records it owns (manages or created).
PARTNER_OWNER_ACTIONS: FrozenSet[Action] = frozenset({
    Action.UPDATE_CLIENT,
    Action.DELETE_CLIENT,
    Action.DELETE_TASK,
})

# Roles a PARTNER may never grant.
PARTNER_ROLE_CEILING: FrozenSet[Role] = frozenset({Role.ADMIN, Role.PARTNER, Role.SYSTEM})

# Roles allowed to create clients.
CLIENT_CREATOR_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.PARTNER, Role.BUSINESS_EXECUTIVE})


# -----------------------------------------------------------------------------
# Subject & Decision
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class PolicySubject:
    """
    The part of the target entity the rules need.

    owner_id is the client manager or the task creator (assignedById).
    target_role is the current role of a target user, or the role of the
    user being created. new_role is the role requested by ChangeUserRole.
    """
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    owner_id: Optional[str] = None
    assignees: FrozenSet[str] = frozenset()
    status: Optional[str] = None
    client_id: Optional[str] = None
    target_role: Optional[Role] = None
    new_role: Optional[Role] = None

    @classmethod
    def for_task(cls, task: TaskSnapshot) -> "PolicySubject":
        return cls(
            entity_type=EntityType.TASK,
            entity_id=task.id,
            owner_id=task.assigned_by_id,
            assignees=frozenset(task.assignees),
            status=task.status.value,
            client_id=task.client_id,
        )

    @classmethod
    def for_client(cls, client: ClientSnapshot) -> "PolicySubject":
        return cls(
            entity_type=EntityType.CLIENT,
            entity_id=client.id,
            owner_id=client.manager_id,
            client_id=client.id,
        )

    @classmethod
    def for_user(cls, user: UserSnapshot, new_role: Optional[Role] = None) -> "PolicySubject":
        return cls(
            entity_type=EntityType.USER,
            entity_id=user.id,
            target_role=user.role,
            new_role=new_role,
        )

    @classmethod
    def for_new_user(cls, role: Role) -> "PolicySubject":
        return cls(entity_type=EntityType.USER, target_role=role)

    @classmethod
    def for_new_task(cls, client_id: Optional[str] = None) -> "PolicySubject":
        return cls(entity_type=EntityType.TASK, client_id=client_id)

    @classmethod
    def for_new_client(cls) -> "PolicySubject":
        return cls(entity_type=EntityType.CLIENT)


@dataclass(frozen=True)
class PolicyDecision:
    """
    Result of one policy evaluation.

    `rule` names the rule that decided, so every decision can be traced.
    """
    allowed: bool
    action: str
    actor_id: str
    actor_role: str
    rule: str
    reason: Optional[ErrorCode] = None
    message: str = ""
    system: bool = False

    def to_failure(self) -> Optional[Failure]:
        if self.allowed:
            return None
        return Failure(self.reason or ErrorCode.UNSPECIFIED, self.message or "Action not permitted")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "action": self.action,
            "actor_id": self.actor_id,
            "actor_role": self.actor_role,
            "rule": self.rule,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "system": self.system,
        }


def _allow(actor_id: str, role: str, action: str, rule: str, system: bool = False) -> PolicyDecision:
    return PolicyDecision(
        allowed=True,
        action=action,
        actor_id=actor_id,
        actor_role=role,
        rule=rule,
        system=system,
    )


def _deny(
    actor_id: str,
    role: str,
    action: str,
    rule: str,
    message: str,
    reason: ErrorCode = ErrorCode.UNSPECIFIED,
) -> PolicyDecision:
    return PolicyDecision(
        allowed=False,
        action=action,
        actor_id=actor_id,
        actor_role=role,
        rule=rule,
        reason=reason,
        message=message,
    )


# -----------------------------------------------------------------------------
# Evaluation
# -----------------------------------------------------------------------------
def evaluate(actor: ActorClaim, action: Any, subject: Optional[PolicySubject] = None) -> PolicyDecision:
    """
    Decide whether `actor` may perform `action` on `subject`.

    Never raises. Any unexpected input is denied with reason `unspecified`.
    """
    try:
        return _evaluate(actor, action, subject if subject is not None else PolicySubject())
    except Exception as e:
        actor_id = str(getattr(actor, "id", "unknown"))
        logger.error(f"Policy evaluation failed for actor={actor_id}, action={action!r}: {e}")
        return _deny(actor_id, "unknown", str(action), "evaluation_error", f"Policy evaluation failed: {e}")


# resolve(actor, action, subject) -> Decision
resolve = evaluate


def _evaluate(actor: ActorClaim, action: Any, subject: PolicySubject) -> PolicyDecision:
    # Step 1: Validate actor
    if not isinstance(actor, ActorClaim):
        return _deny("unknown", "unknown", str(action), "malformed_actor", "Actor claim is missing or malformed")

    actor_id = str(actor.id)
    try:
        role = Role(actor.role)
    except ValueError:
        return _deny(actor_id, str(actor.role), str(action), "unknown_role", f"Unknown role: {actor.role}")

    # Step 2: Validate action
    try:
        requested = Action(action)
    except ValueError:
        return _deny(actor_id, role.value, str(action), "unknown_action", f"Unknown action: {action}")

    # Step 3: Blocked accounts may only look at their own profile
    if not actor.is_active:
        if requested == Action.VIEW_ENTITY and _is_own_profile(actor, subject):
            return _allow(actor_id, role.value, requested.value, "blocked_own_profile")
        return _deny(
            actor_id, role.value, requested.value, "account_blocked",
            "Account is blocked", reason=ErrorCode.ACCOUNT_BLOCKED,
        )

    # Step 4: Reserved system identity
    if role == Role.SYSTEM:
        return _allow(actor_id, role.value, requested.value, "system_actor", system=True)

    # Step 5: Administrators
    if role == Role.ADMIN:
        return _allow(actor_id, role.value, requested.value, "admin_full_access")

    # Step 6: Own notification inbox
    if requested == Action.MANAGE_INBOX and _is_own_profile(actor, subject):
        return _allow(actor_id, role.value, requested.value, "own_inbox")

    # Step 7: Role tables
    if role == Role.PARTNER:
        decision = _partner_rule(actor, requested, subject)
    elif role in Role.junior_roles():
        decision = _staff_rule(actor, role, requested, subject)
    elif role in Role.client_roles():
        decision = _client_rule(actor, role, requested, subject)
    else:
        decision = None

    if decision is not None:
        return decision

    # Step 8: Default deny
    return _deny(
        actor_id, role.value, requested.value, "no_matching_rule",
        f"Role '{role.value}' cannot perform '{requested.value}'",
    )


def _is_own_profile(actor: ActorClaim, subject: PolicySubject) -> bool:
    return subject.entity_type == EntityType.USER and subject.entity_id == actor.id


def _is_task_participant(actor: ActorClaim, subject: PolicySubject) -> bool:
    return actor.id in subject.assignees or (subject.owner_id is not None and subject.owner_id == actor.id)


def _is_owner(actor: ActorClaim, subject: PolicySubject) -> bool:
    return subject.owner_id is not None and subject.owner_id == actor.id


# -----------------------------------------------------------------------------
# PARTNER
# -----------------------------------------------------------------------------
def _partner_rule(actor: ActorClaim, action: Action, subject: PolicySubject) -> Optional[PolicyDecision]:
    role = Role.PARTNER.value

    if action in PARTNER_UNCONDITIONAL_ACTIONS:
        return _allow(actor.id, role, action.value, "partner_allowed_action")

    if action in PARTNER_OWNER_ACTIONS:
        if _is_owner(actor, subject):
            return _allow(actor.id, role, action.value, "partner_owns_record")
        return _deny(actor.id, role, action.value, "partner_not_owner",
                     f"Partners may only {action.value} records they manage")

    if action == Action.UPDATE_TASK_STATUS:
        if _is_task_participant(actor, subject):
            return _allow(actor.id, role, action.value, "task_participant")
        return _deny(actor.id, role, action.value, "not_task_participant",
                     "Only assignees or the task creator may change its status")

    if action == Action.APPROVE_BILLING:
        if actor.can_approve_billing:
            return _allow(actor.id, role, action.value, "partner_billing_approver")
        return _deny(actor.id, role, action.value, "billing_approval_required",
                     "Billing approval permission required")

    if action in (Action.CREATE_USER, Action.UPDATE_USER):
        if subject.target_role not in Role.junior_roles():
            return _deny(actor.id, role, action.value, "partner_junior_only",
                         "Partners can only manage business executives and consultants")
        if subject.new_role is not None and subject.new_role not in Role.junior_roles():
            return _deny(actor.id, role, action.value, "partner_role_ceiling",
                         "You cannot promote users to Admin or Partner roles")
        return _allow(actor.id, role, action.value, "partner_manages_junior")

    if action == Action.CHANGE_USER_ROLE:
        if subject.new_role is None or subject.new_role in PARTNER_ROLE_CEILING:
            return _deny(actor.id, role, action.value, "partner_role_ceiling",
                         "You cannot promote users to Admin or Partner roles")
        if subject.target_role in Role.junior_roles() and subject.new_role in Role.junior_roles():
            return _allow(actor.id, role, action.value, "partner_manages_junior")
        return _deny(actor.id, role, action.value, "partner_junior_only",
                     "Partners can only manage business executives and consultants")

    if action == Action.DELETE_USER:
        return _deny(actor.id, role, action.value, "partner_cannot_delete_users",
                     "Only administrators can delete users")

    return None


# -----------------------------------------------------------------------------
# BUSINESS_EXECUTIVE / BUSINESS_CONSULTANT
# -----------------------------------------------------------------------------
def _staff_rule(actor: ActorClaim, role: Role, action: Action, subject: PolicySubject) -> Optional[PolicyDecision]:
    if action == Action.UPDATE_TASK_STATUS:
        if _is_task_participant(actor, subject):
            return _allow(actor.id, role.value, action.value, "task_participant")
        return _deny(actor.id, role.value, action.value, "not_task_participant",
                     "Only assignees or the task creator may change its status")

    if action == Action.COMMENT_ON_TASK:
        if _is_task_participant(actor, subject):
            return _allow(actor.id, role.value, action.value, "task_participant")
        return _deny(actor.id, role.value, action.value, "not_task_participant",
                     "Only assignees or the task creator may comment on a task")

    if action == Action.ADD_CLIENT_HISTORY and subject.entity_type == EntityType.CLIENT:
        return _allow(actor.id, role.value, action.value, "staff_adds_client_history")

    if action == Action.CREATE_CLIENT and role in CLIENT_CREATOR_ROLES:
        return _allow(actor.id, role.value, action.value, "executive_creates_client")

    if action == Action.UPDATE_CLIENT and _is_owner(actor, subject):
        return _allow(actor.id, role.value, action.value, "client_manager")

    if action == Action.VIEW_ENTITY:
        if subject.entity_type == EntityType.CLIENT:
            return _allow(actor.id, role.value, action.value, "staff_views_clients")
        if subject.entity_type == EntityType.TASK and _is_task_participant(actor, subject):
            return _allow(actor.id, role.value, action.value, "staff_views_own_task")
        if _is_own_profile(actor, subject):
            return _allow(actor.id, role.value, action.value, "own_profile")
        return _deny(actor.id, role.value, action.value, "staff_view_scope",
                     "Staff may only view clients, their own tasks and their own profile")

    return None


# -----------------------------------------------------------------------------
# PERMANENT_CLIENT / GUEST_CLIENT
# -----------------------------------------------------------------------------
def _client_rule(actor: ActorClaim, role: Role, action: Action, subject: PolicySubject) -> Optional[PolicyDecision]:
    if action != Action.VIEW_ENTITY:
        return _deny(actor.id, role.value, action.value, "client_read_only",
                     "Client accounts are read-only")

    own_client_id = actor.effective_client_id
    if subject.entity_type == EntityType.CLIENT and subject.entity_id == own_client_id:
        return _allow(actor.id, role.value, action.value, "client_views_own_record")
    if subject.entity_type == EntityType.TASK and subject.client_id == own_client_id:
        return _allow(actor.id, role.value, action.value, "client_views_own_task")
    if _is_own_profile(actor, subject):
        return _allow(actor.id, role.value, action.value, "own_profile")

    return _deny(actor.id, role.value, action.value, "client_view_scope",
                 "Clients may only view their own record and tasks")


# -----------------------------------------------------------------------------
# Convenience Functions
# -----------------------------------------------------------------------------
def evaluate_all(actor: ActorClaim, actions: List[Action], subject: PolicySubject) -> List[PolicyDecision]:
    """Evaluate several actions against the same subject, in order."""
    return [evaluate(actor, action, subject) for action in actions]


def first_denial(decisions: List[PolicyDecision]) -> Optional[PolicyDecision]:
    for decision in decisions:
        if not decision.allowed:
            return decision
    return None
