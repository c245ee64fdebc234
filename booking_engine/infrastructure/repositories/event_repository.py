# booking_engine/infrastructure/repositories/event_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from booking_engine.domain.event_lifecycle import EventStatus, TERMINAL_EVENT_STATUSES
from booking_engine.infrastructure.db.models import Event


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str, for_update: bool = False) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        if for_update:
            # SELECT ... FOR UPDATE keeps participant counters consistent.
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def add(self, event: Event) -> Event:
        self.db.add(event)
        return event

    def list_status_inputs(self) -> list:
        """
        Snapshot of the columns the lifecycle rule needs,
        for every event the scheduler still tracks.
        """
        stmt = (
            select(
                Event.id,
                Event.date,
                Event.fee_cents,
                Event.current_participants,
                Event.min_participants,
                Event.max_participants,
                Event.status,
            )
            .where(Event.status.not_in(list(TERMINAL_EVENT_STATUSES)))
            .order_by(Event.date)
        )
        return list(self.db.execute(stmt).all())

    def compare_and_set_status(
        self,
        event_id: str,
        expected: EventStatus,
        new_status: EventStatus,
    ) -> bool:
        """
        Writes new_status only if the stored status is still `expected`.
        Returns False when another writer changed the row first.
        """
        stmt = (
            update(Event)
            .where(Event.id == event_id)
            .where(Event.status == expected)
            .values(status=new_status)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def adjust_participants(self, event: Event, delta: int) -> None:
        event.current_participants = max(0, event.current_participants + delta)
