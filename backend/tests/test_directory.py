from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from events_web.directory import (
    EventDirectoryRepository,
    EventNotFoundError,
    InMemoryEventDirectoryRepository,
    ParticipantNotFoundError,
    SqlAlchemyEventDirectoryRepository,
    create_event_directory_repository,
)

NOW = datetime(2026, 4, 10, 3, 30, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request: pytest.FixtureRequest, tmp_path: Path) -> EventDirectoryRepository:
    if request.param == "inmemory":
        return InMemoryEventDirectoryRepository()
    return SqlAlchemyEventDirectoryRepository(f"sqlite:///{tmp_path / 'directory.db'}")


def test_create_and_get_event_normalizes_to_utc(repo: EventDirectoryRepository) -> None:
    local_start = datetime(2026, 4, 10, 11, 0, tzinfo=timezone(timedelta(hours=5, minutes=30)))

    created = repo.create_event(name="Annual Gala", starts_at=local_start, venue="Town Hall", food="veg")
    stored = repo.get_event(created.event_id)

    assert stored.name == "Annual Gala"
    assert stored.starts_at == datetime(2026, 4, 10, 5, 30, tzinfo=timezone.utc)
    assert stored.venue == "Town Hall"
    assert stored.active is True


def test_missing_records_raise_not_found(repo: EventDirectoryRepository) -> None:
    with pytest.raises(EventNotFoundError):
        repo.get_event("evt_missing")
    with pytest.raises(ParticipantNotFoundError):
        repo.get_participant("par_missing")
    with pytest.raises(EventNotFoundError):
        repo.add_participant(event_id="evt_missing", name="Asha", phone_number="+919123456789")


def test_events_window_excludes_start_and_includes_end(repo: EventDirectoryRepository) -> None:
    at_start = repo.create_event(name="At start", starts_at=NOW)
    inside = repo.create_event(name="Inside", starts_at=NOW + timedelta(hours=2))
    at_end = repo.create_event(name="At end", starts_at=NOW + timedelta(hours=3))
    repo.create_event(name="Cancelled", starts_at=NOW + timedelta(hours=1), active=False)

    events = repo.list_events_starting_between(NOW, NOW + timedelta(hours=3))

    assert [event.event_id for event in events] == [inside.event_id, at_end.event_id]
    assert at_start.event_id not in {event.event_id for event in events}


def test_pending_reminders_track_each_tier(repo: EventDirectoryRepository) -> None:
    event = repo.create_event(name="Annual Gala", starts_at=NOW + timedelta(hours=10))
    asha = repo.add_participant(event_id=event.event_id, name="Asha", phone_number="+919123456789")
    repo.add_participant(event_id=event.event_id, name="No phone", phone_number=None)
    repo.add_participant(event_id=event.event_id, name="Blank", phone_number="   ")

    assert [item.participant_id for item in repo.list_participants_pending_reminder(event.event_id, "12h")] == [
        asha.participant_id
    ]

    repo.mark_reminder_sent(asha.participant_id, "12h", NOW)

    assert repo.list_participants_pending_reminder(event.event_id, "12h") == []
    assert len(repo.list_participants_pending_reminder(event.event_id, "3h")) == 1
    stored = repo.get_participant(asha.participant_id)
    assert stored.reminder_12h_sent_at == NOW
    assert stored.reminder_sent_at("3h") is None


def test_find_by_phone_matches_punctuated_numbers(repo: EventDirectoryRepository) -> None:
    event = repo.create_event(name="Annual Gala", starts_at=NOW)
    punctuated = repo.add_participant(event_id=event.event_id, name="Asha", phone_number="+91 91234-56789")
    repo.add_participant(event_id=event.event_id, name="Ravi", phone_number="+919000000002")

    matches = repo.find_participants_by_phone(("919123456789", "+919123456789"))

    assert [item.participant_id for item in matches] == [punctuated.participant_id]
    assert repo.find_participants_by_phone(()) == []


def test_find_by_phone_stops_at_first_matching_form(repo: EventDirectoryRepository) -> None:
    event = repo.create_event(name="Annual Gala", starts_at=NOW)
    raw_stored = repo.add_participant(event_id=event.event_id, name="Asha", phone_number="9123456789")
    repo.add_participant(event_id=event.event_id, name="Asha again", phone_number="+919123456789")

    matches = repo.find_participants_by_phone(("9123456789", "+9123456789", "+919123456789"))

    assert [item.participant_id for item in matches] == [raw_stored.participant_id]


def test_update_attendance_requires_matching_event(repo: EventDirectoryRepository) -> None:
    event = repo.create_event(name="Annual Gala", starts_at=NOW)
    other = repo.create_event(name="Spring Meetup", starts_at=NOW)
    asha = repo.add_participant(event_id=event.event_id, name="Asha", phone_number="+919123456789")

    assert repo.update_attendance(asha.participant_id, other.event_id, "Yes") is False
    assert repo.update_attendance("par_missing", event.event_id, "Yes") is False
    assert repo.update_attendance(asha.participant_id, event.event_id, "No") is True
    assert repo.get_participant(asha.participant_id).attending == "No"


def test_reset_clears_everything(repo: EventDirectoryRepository) -> None:
    event = repo.create_event(name="Annual Gala", starts_at=NOW)
    repo.add_participant(event_id=event.event_id, name="Asha", phone_number="+919123456789")

    repo.reset()

    with pytest.raises(EventNotFoundError):
        repo.get_event(event.event_id)


def test_factory_rejects_unknown_backend() -> None:
    assert isinstance(
        create_event_directory_repository(backend="InMemory", database_url=""),
        InMemoryEventDirectoryRepository,
    )
    with pytest.raises(RuntimeError):
        create_event_directory_repository(backend="redis", database_url="")
    with pytest.raises(RuntimeError):
        create_event_directory_repository(backend="postgres", database_url="")
