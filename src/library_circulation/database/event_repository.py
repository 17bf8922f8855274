"""Notification outbox for circulation events."""

import logging

from sqlalchemy import select

from ..models.circulation import CirculationEvent as CirculationEventModel
from ..models.circulation import EventType
from .repository import LedgerBase, current_time, new_id
from .schema import CirculationEvent as CirculationEventDB
from .session import safe_query

logger = logging.getLogger(__name__)


class EventOutbox(LedgerBase):
    """
    Records events for an external notification service.

    Events are written inside the transaction that caused them, so a
    rolled-back operation never leaves a notification behind.
    """

    def record(self, event_type: EventType, member_id: str, subject_id: str) -> CirculationEventDB:
        event = CirculationEventDB(
            id=new_id("event"),
            event_type=event_type,
            member_id=member_id,
            subject_id=subject_id,
            created_at=current_time(),
        )
        self.session.add(event)
        self.session.flush()
        logger.debug("Outbox event %s for member %s (%s)", event_type.value, member_id, subject_id)
        return event

    def pending(self, limit: int = 100) -> list[CirculationEventModel]:
        """Undelivered events, oldest first."""
        query = (
            select(CirculationEventDB)
            .where(CirculationEventDB.delivered_at.is_(None))
            .order_by(CirculationEventDB.created_at, CirculationEventDB.id)
            .limit(limit)
        )
        rows = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to list pending events",
        )
        return [CirculationEventModel.model_validate(row) for row in rows]

    def mark_delivered(self, event_id: str) -> CirculationEventModel:
        row = self._get_row(CirculationEventDB, event_id, "Event", for_update=True)
        if row.delivered_at is None:
            row.delivered_at = current_time()
            self.session.flush()
        return CirculationEventModel.model_validate(row)
