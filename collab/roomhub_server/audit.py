"""
Audit recorder for RoomHub.

Mutating operations (role changes, removals, deletions, status changes)
report what happened here. Records feed the activity aggregator.

Invariants:
    - Records are append-only, never mutated or deleted
    - A failed write never aborts the operation that triggered it

How to change safely:
    - New actions must be added to AuditAction first
    - Keep metadata keys stable, the activity feed reads them
"""

from __future__ import annotations

import logging
from typing import Any

from .models import AuditAction, AuditRecord, new_id, now_ms
from .store.base import AuditSink

logger = logging.getLogger(__name__)


class AuditRecorder:
    """Best-effort writer for the audit log.

    Example:
        >>> recorder = AuditRecorder(store)
        >>> await recorder.record(
        ...     AuditAction.MEMBER_REMOVE, "user_1", "member", "user_2", {"roomId": "r1"}
        ... )
    """

    def __init__(self, sink: AuditSink) -> None:
        self.sink = sink

    async def record(
        self,
        action: AuditAction | str,
        actor_id: str,
        target_type: str | None = None,
        target_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Append an audit record, logging and swallowing any failure."""
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        record = AuditRecord(
            id=new_id(),
            action=action_value,
            actor_id=actor_id,
            target_type=target_type,
            target_id=target_id,
            metadata=dict(metadata or {}),
            created_at=now_ms(),
        )
        try:
            await self.sink.append(record)
        except Exception as e:
            logger.error(
                f"Failed to write audit record: {e}",
                exc_info=True,
                extra={"action": action_value, "actor_id": actor_id, "target_id": target_id},
            )
            return

        logger.debug(
            "Audit record written",
            extra={"action": action_value, "actor_id": actor_id, "target_id": target_id},
        )
