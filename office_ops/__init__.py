"""
Office Operations Engine

Role-scoped lifecycle and policy engine for an office-operations platform:
clients, tasks, staff accounts and billing.

Components:
- Policy Resolver: who may do what to which entity (pure, total)
- Task Lifecycle Machine: status, billing and assignee transitions
- Client Lifecycle Machine: guest vs. permanent rules, access expiry
- Side-Effect Dispatcher: lifecycle events -> activities + notifications
- Expiry Scanner: background removal of expired guests and retained tasks
  under the reserved SYSTEM actor

Everything else (store, notification sink, HTTP router) is a thin
collaborator around these.
"""

__version__ = "1.0.0"

SERVICE_NAME = "Office Operations Engine"
