"""Idempotency ledger: every applied provider event is recorded exactly once.

The insert is the gate: it runs in the same transaction as the state change it
guards, so a rollback removes both and a duplicate delivery never re-applies
side effects.
"""

import logging
from datetime import datetime

from sqlalchemy.ext.asyncio import AsyncSession

from billing_core.models import ProcessedEvent
from billing_core.database import insert_ignoring_conflicts

logger = logging.getLogger(__name__)


def event_key(event_name: str, object_id: str, updated_at: datetime | None = None) -> str:
    """Deterministic ledger key for one delivered event.

    Retries of a delivery carry the same object id and the same updated_at, so
    they collide. Two genuinely different updates of one subscription differ
    in updated_at and are both applied.
    """
    key = f"{event_name}:{object_id}"
    if updated_at is not None:
        key = f"{key}:{updated_at.isoformat()}"
    return key


class IdempotencyLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_if_new(self, key: str, event_name: str, payload: dict) -> bool:
        """Insert the ledger entry. Returns False if the key was already recorded."""
        stmt = insert_ignoring_conflicts(
            self.session,
            ProcessedEvent,
            "event_key",
            event_key=key,
            event_name=event_name,
            payload=payload,
        )
        result = await self.session.execute(stmt)
        is_new = result.rowcount == 1
        if not is_new:
            logger.info("Duplicate event %s already processed, skipping", key)
        return is_new
