"""Durable storage for timeline nodes, closure, policies and organizations."""

from .database import Database, translate_error
from .schema import Base, ClosureRow, NodeRow, OrganizationRow, OrgMemberRow, PolicyRow

__all__ = [
    "Base",
    "ClosureRow",
    "Database",
    "NodeRow",
    "OrgMemberRow",
    "OrganizationRow",
    "PolicyRow",
    "translate_error",
]
