from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from booking_engine.domain.event_lifecycle import compute_event_status
from booking_engine.infrastructure.db.models import Base, Event
from booking_engine.infrastructure.db.session import engine, get_db_session


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    now = datetime.now(timezone.utc)
    target = now + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


EVENT_DEFS = [
    {
        "host_id": "host-demo",
        "title": "Rooftop Jazz Night",
        "date": _dt(days_from_now=3, hour=19, minute=30),
        "fee_cents": 2500,
        "min_participants": 10,
        "max_participants": 80,
    },
    {
        "host_id": "host-demo",
        "title": "City Marathon Training Camp",
        "date": _dt(days_from_now=21, hour=6, minute=0),
        "fee_cents": 4000,
        "min_participants": 5,
        "max_participants": 40,
    },
    {
        "host_id": "host-demo",
        "title": "Open Source Meetup",
        "date": _dt(days_from_now=10, hour=18, minute=0),
        "fee_cents": 0,
        "min_participants": 3,
        "max_participants": 120,
    },
]


def seed_events(db) -> None:
    now = datetime.now(timezone.utc)

    for item in EVENT_DEFS:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        event = existing or Event(title=item["title"], current_participants=0)

        event.host_id = item["host_id"]
        event.date = item["date"]
        event.fee_cents = item["fee_cents"]
        event.min_participants = item["min_participants"]
        event.max_participants = item["max_participants"]
        event.status = compute_event_status(
            now=now,
            date=item["date"],
            fee_cents=item["fee_cents"],
            current_participants=event.current_participants,
            min_participants=item["min_participants"],
            max_participants=item["max_participants"],
        )
        if existing is None:
            db.add(event)


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        seed_events(db)
    print("Seed complete: jazz night, marathon camp, open source meetup added.")


if __name__ == "__main__":
    main()
