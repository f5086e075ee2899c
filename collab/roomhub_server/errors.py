"""
Error types for RoomHub.

This module defines all exception types raised by the core:
- RoomHubError: Base exception
- AccessError: Authorization denial
- InvariantViolation: Membership change that would break a room invariant
- ValidationError: Malformed input
- NotFoundError: Missing user, room or message
- RateLimitedError: Caller is sending too fast
- InfrastructureError: Store/network failure (retryable reads)

Invariants:
    - All errors inherit from RoomHubError
    - Every error carries a machine-readable code
    - Only InfrastructureError is retryable
"""

from __future__ import annotations

from typing import Any, Dict, Optional

INSUFFICIENT_ROLE = "INSUFFICIENT_ROLE"
NOT_MEMBER = "NOT_MEMBER"
FORBIDDEN = "FORBIDDEN"
INVALID_REQUEST = "INVALID_REQUEST"
NOT_FOUND = "NOT_FOUND"
VALIDATION_ERROR = "VALIDATION_ERROR"
RATE_LIMITED = "RATE_LIMITED"
INFRASTRUCTURE_ERROR = "INFRASTRUCTURE_ERROR"
STORE_TIMEOUT = "STORE_TIMEOUT"

ACCESS_CODES = frozenset({INSUFFICIENT_ROLE, NOT_MEMBER, FORBIDDEN, INVALID_REQUEST})

# InvariantViolation.invariant values
LAST_OWNER = "last_owner"
SELF_CHANGE = "self_change"
OWNER_TRANSFER_ONLY = "owner_transfer_only"
ROLE_TRANSITION = "role_transition"


class RoomHubError(Exception):
    """Base exception for all RoomHub errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ROOMHUB_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Render as a transport-neutral payload."""
        return {
            "ok": False,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AccessError(RoomHubError):
    """Caller is not allowed to perform the operation.

    Raised when:
    - Caller lacks the required room or global role
    - Caller is not a member of the room
    - The requested role change is not permitted
    """

    def __init__(
        self,
        message: str,
        code: str = INSUFFICIENT_ROLE,
        user_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> None:
        if code not in ACCESS_CODES:
            raise ValueError(f"Unknown access error code: {code}")
        super().__init__(
            message,
            code=code,
            details={"user_id": user_id, "room_id": room_id},
        )
        self.user_id = user_id
        self.room_id = room_id


class InvariantViolation(AccessError):
    """State transition would break a membership invariant.

    Raised when:
    - A room would be left with members but no OWNER (LAST_OWNER)
    - A user targets their own membership (SELF_CHANGE)
    - OWNER would be granted or revoked outside ownership transfer (OWNER_TRANSFER_ONLY)
    """

    def __init__(
        self,
        message: str,
        invariant: str,
        user_id: Optional[str] = None,
        room_id: Optional[str] = None,
    ) -> None:
        super().__init__(message, code=INVALID_REQUEST, user_id=user_id, room_id=room_id)
        self.invariant = invariant
        self.details["invariant"] = invariant


class ValidationError(RoomHubError):
    """Input validation failed."""

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        code: str = VALIDATION_ERROR,
    ) -> None:
        super().__init__(message, code=code, details={"field": field_name})
        self.field_name = field_name


class NotFoundError(RoomHubError):
    """Referenced entity does not exist."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(
            f"{kind} not found: {entity_id}",
            code=NOT_FOUND,
            details={"kind": kind, "id": entity_id},
        )
        self.kind = kind
        self.entity_id = entity_id


class RateLimitedError(RoomHubError):
    """Too many requests inside the rate-limit window."""

    def __init__(self, message: str, retry_after_seconds: int) -> None:
        super().__init__(
            message,
            code=RATE_LIMITED,
            details={"retry_after_seconds": retry_after_seconds},
        )
        self.retry_after_seconds = retry_after_seconds


class InfrastructureError(RoomHubError):
    """Store or network failure.

    Reads may be retried with backoff. Writes are retried only when the
    operation is idempotent.
    """

    retryable = True

    def __init__(self, message: str, code: str = INFRASTRUCTURE_ERROR) -> None:
        super().__init__(message, code=code)


class StoreTimeoutError(InfrastructureError):
    """Store call exceeded its caller-imposed timeout."""

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Store operation '{operation}' timed out after {timeout_seconds}s",
            code=STORE_TIMEOUT,
        )
        self.details = {"operation": operation, "timeout_seconds": timeout_seconds}
        self.operation = operation
        self.timeout_seconds = timeout_seconds
