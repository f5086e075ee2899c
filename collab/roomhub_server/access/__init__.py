"""
Access control for RoomHub.

This module provides:
- AccessController: room access, role assertions and feed visibility
- MemberManager: invite, remove, role update and ownership transfer
- The role transition table shared by every membership mutation
"""

from .controller import AccessController, VisibilityScope
from .members import InviteResult, MemberManager
from .transitions import MemberOperation, RoleChange, validate_role_change

__all__ = [
    "AccessController",
    "VisibilityScope",
    "InviteResult",
    "MemberManager",
    "MemberOperation",
    "RoleChange",
    "validate_role_change",
]
