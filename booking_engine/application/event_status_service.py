from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_engine.domain.event_lifecycle import EventStatus, compute_event_status
from booking_engine.infrastructure.repositories.event_repository import EventRepository


logger = logging.getLogger(__name__)


@dataclass
class StatusChange:
    event_id: str
    old_status: EventStatus
    new_status: EventStatus


@dataclass
class RecomputeSummary:
    scanned: int = 0
    changes: list[StatusChange] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class EventStatusService:
    """
    Re-derives every tracked event's status and writes only the deltas.
    Each write commits on its own so one bad row cannot abort the scan.
    """

    def __init__(self, db: Session):
        self.db = db
        self.event_repository = EventRepository(db)

    def recompute_event_statuses(self, now: datetime | None = None) -> RecomputeSummary:
        now = now or datetime.now(timezone.utc)
        summary = RecomputeSummary()

        rows = self.event_repository.list_status_inputs()
        summary.scanned = len(rows)

        for row in rows:
            new_status = compute_event_status(
                now=now,
                date=row.date,
                fee_cents=row.fee_cents,
                current_participants=row.current_participants,
                min_participants=row.min_participants,
                max_participants=row.max_participants,
            )
            if new_status == row.status:
                continue

            try:
                applied = self._write_status(row.id, row.status, new_status)
            except SQLAlchemyError:
                self.db.rollback()
                logger.exception("Failed to update status of event %s", row.id)
                summary.failed.append(row.id)
                continue

            if applied:
                summary.changes.append(StatusChange(row.id, row.status, new_status))
            else:
                logger.info("Event %s changed concurrently; will re-evaluate next tick", row.id)

        return summary

    def _write_status(self, event_id: str, old: EventStatus, new: EventStatus) -> bool:
        applied = self.event_repository.compare_and_set_status(event_id, old, new)
        self.db.commit()
        return applied
