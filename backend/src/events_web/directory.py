from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from typing import Literal, Protocol

from sqlalchemy import Boolean, DateTime, ForeignKey, String, Text, create_engine, func, or_, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

ReminderTierName = Literal["12h", "3h"]

_PHONE_PUNCTUATION = re.compile(r"[\s\-()]")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


class EventNotFoundError(KeyError):
    pass


class ParticipantNotFoundError(KeyError):
    pass


@dataclass(frozen=True)
class EventRecord:
    event_id: str
    name: str
    starts_at: datetime
    venue: str | None
    food: str | None
    active: bool
    created_at: datetime


@dataclass(frozen=True)
class ParticipantRecord:
    participant_id: str
    event_id: str
    name: str
    phone_number: str | None
    category: str | None
    city: str | None
    attending: str | None
    remarks: str | None
    reminder_12h_sent_at: datetime | None
    reminder_3h_sent_at: datetime | None
    created_at: datetime

    def reminder_sent_at(self, tier: ReminderTierName) -> datetime | None:
        return self.reminder_12h_sent_at if tier == "12h" else self.reminder_3h_sent_at


class EventDirectoryRepository(Protocol):
    def reset(self) -> None: ...

    def create_event(
        self,
        *,
        name: str,
        starts_at: datetime,
        venue: str | None = None,
        food: str | None = None,
        active: bool = True,
    ) -> EventRecord: ...

    def get_event(self, event_id: str) -> EventRecord: ...

    def list_events_starting_between(self, start: datetime, end: datetime) -> list[EventRecord]: ...

    def add_participant(
        self,
        *,
        event_id: str,
        name: str,
        phone_number: str | None,
        category: str | None = None,
        city: str | None = None,
        remarks: str | None = None,
    ) -> ParticipantRecord: ...

    def get_participant(self, participant_id: str) -> ParticipantRecord: ...

    def list_participants_pending_reminder(self, event_id: str, tier: ReminderTierName) -> list[ParticipantRecord]: ...

    def find_participants_by_phone(self, variants: tuple[str, ...]) -> list[ParticipantRecord]: ...

    def update_attendance(self, participant_id: str, event_id: str, attending: str) -> bool: ...

    def mark_reminder_sent(self, participant_id: str, tier: ReminderTierName, sent_at: datetime) -> None: ...


class InMemoryEventDirectoryRepository:
    def __init__(self) -> None:
        self._event_counter = count(1)
        self._participant_counter = count(1)
        self._events: dict[str, EventRecord] = {}
        self._participants: dict[str, ParticipantRecord] = {}

    def reset(self) -> None:
        self._event_counter = count(1)
        self._participant_counter = count(1)
        self._events.clear()
        self._participants.clear()

    def create_event(
        self,
        *,
        name: str,
        starts_at: datetime,
        venue: str | None = None,
        food: str | None = None,
        active: bool = True,
    ) -> EventRecord:
        event_id = f"evt_{next(self._event_counter):06d}"
        record = EventRecord(
            event_id=event_id,
            name=name,
            starts_at=_coerce_utc(starts_at),
            venue=venue,
            food=food,
            active=active,
            created_at=_now_utc(),
        )
        self._events[event_id] = record
        return record

    def get_event(self, event_id: str) -> EventRecord:
        record = self._events.get(event_id)
        if record is None:
            raise EventNotFoundError(event_id)
        return record

    def list_events_starting_between(self, start: datetime, end: datetime) -> list[EventRecord]:
        lower = _coerce_utc(start)
        upper = _coerce_utc(end)
        return sorted(
            (
                record
                for record in self._events.values()
                if record.active and lower < record.starts_at <= upper
            ),
            key=lambda value: value.starts_at,
        )

    def add_participant(
        self,
        *,
        event_id: str,
        name: str,
        phone_number: str | None,
        category: str | None = None,
        city: str | None = None,
        remarks: str | None = None,
    ) -> ParticipantRecord:
        self.get_event(event_id)
        participant_id = f"par_{next(self._participant_counter):06d}"
        record = ParticipantRecord(
            participant_id=participant_id,
            event_id=event_id,
            name=name,
            phone_number=phone_number,
            category=category,
            city=city,
            attending=None,
            remarks=remarks,
            reminder_12h_sent_at=None,
            reminder_3h_sent_at=None,
            created_at=_now_utc(),
        )
        self._participants[participant_id] = record
        return record

    def get_participant(self, participant_id: str) -> ParticipantRecord:
        record = self._participants.get(participant_id)
        if record is None:
            raise ParticipantNotFoundError(participant_id)
        return record

    def list_participants_pending_reminder(self, event_id: str, tier: ReminderTierName) -> list[ParticipantRecord]:
        return [
            record
            for record in self._participants.values()
            if record.event_id == event_id
            and record.phone_number
            and record.phone_number.strip()
            and record.reminder_sent_at(tier) is None
        ]

    def find_participants_by_phone(self, variants: tuple[str, ...]) -> list[ParticipantRecord]:
        for variant in variants:
            matches: list[tuple[int, ParticipantRecord]] = []
            for position, record in enumerate(self._participants.values()):
                if not record.phone_number:
                    continue
                stripped = _PHONE_PUNCTUATION.sub("", record.phone_number)
                if variant in (record.phone_number, stripped):
                    matches.append((position, record))
            if matches:
                matches.sort(key=lambda value: (value[1].created_at, value[0]), reverse=True)
                return [record for _, record in matches]
        return []

    def update_attendance(self, participant_id: str, event_id: str, attending: str) -> bool:
        record = self._participants.get(participant_id)
        if record is None or record.event_id != event_id:
            return False
        self._participants[participant_id] = replace(record, attending=attending)
        return True

    def mark_reminder_sent(self, participant_id: str, tier: ReminderTierName, sent_at: datetime) -> None:
        record = self.get_participant(participant_id)
        field_name = "reminder_12h_sent_at" if tier == "12h" else "reminder_3h_sent_at"
        self._participants[participant_id] = replace(record, **{field_name: _coerce_utc(sent_at)})


class EventDirectoryBase(DeclarativeBase):
    pass


class _EventRow(EventDirectoryBase):
    __tablename__ = "events"

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    starts_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    venue: Mapped[str | None] = mapped_column(String(255), nullable=True)
    food: Mapped[str | None] = mapped_column(String(32), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _ParticipantRow(EventDirectoryBase):
    __tablename__ = "participants"

    participant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), ForeignKey("events.event_id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    category: Mapped[str | None] = mapped_column(String(100), nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    attending: Mapped[str | None] = mapped_column(String(50), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    reminder_12h_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_3h_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _event_from_row(row: _EventRow) -> EventRecord:
    return EventRecord(
        event_id=row.event_id,
        name=row.name,
        starts_at=_coerce_utc(row.starts_at),
        venue=row.venue,
        food=row.food,
        active=row.active,
        created_at=_coerce_utc(row.created_at),
    )


def _participant_from_row(row: _ParticipantRow) -> ParticipantRecord:
    return ParticipantRecord(
        participant_id=row.participant_id,
        event_id=row.event_id,
        name=row.name,
        phone_number=row.phone_number,
        category=row.category,
        city=row.city,
        attending=row.attending,
        remarks=row.remarks,
        reminder_12h_sent_at=_coerce_optional_utc(row.reminder_12h_sent_at),
        reminder_3h_sent_at=_coerce_optional_utc(row.reminder_3h_sent_at),
        created_at=_coerce_utc(row.created_at),
    )


def _stripped_phone_column():
    column = _ParticipantRow.phone_number
    for character in (" ", "-", "(", ")"):
        column = func.replace(column, character, "")
    return column


class SqlAlchemyEventDirectoryRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            EventDirectoryBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ParticipantRow).delete()
                session.query(_EventRow).delete()

    def create_event(
        self,
        *,
        name: str,
        starts_at: datetime,
        venue: str | None = None,
        food: str | None = None,
        active: bool = True,
    ) -> EventRecord:
        row = _EventRow(
            event_id=f"evt_{secrets.token_hex(8)}",
            name=name,
            starts_at=_coerce_utc(starts_at),
            venue=venue,
            food=food,
            active=active,
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
        return _event_from_row(row)

    def get_event(self, event_id: str) -> EventRecord:
        with self._session() as session:
            row = session.get(_EventRow, event_id)
            if row is None:
                raise EventNotFoundError(event_id)
            return _event_from_row(row)

    def list_events_starting_between(self, start: datetime, end: datetime) -> list[EventRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_EventRow)
                .where(
                    _EventRow.active.is_(True),
                    _EventRow.starts_at > _coerce_utc(start),
                    _EventRow.starts_at <= _coerce_utc(end),
                )
                .order_by(_EventRow.starts_at)
            ).scalars()
            return [_event_from_row(row) for row in rows]

    def add_participant(
        self,
        *,
        event_id: str,
        name: str,
        phone_number: str | None,
        category: str | None = None,
        city: str | None = None,
        remarks: str | None = None,
    ) -> ParticipantRecord:
        with self._session() as session:
            with session.begin():
                if session.get(_EventRow, event_id) is None:
                    raise EventNotFoundError(event_id)
                row = _ParticipantRow(
                    participant_id=f"par_{secrets.token_hex(8)}",
                    event_id=event_id,
                    name=name,
                    phone_number=phone_number,
                    category=category,
                    city=city,
                    attending=None,
                    remarks=remarks,
                    reminder_12h_sent_at=None,
                    reminder_3h_sent_at=None,
                    created_at=_now_utc(),
                )
                session.add(row)
        return _participant_from_row(row)

    def get_participant(self, participant_id: str) -> ParticipantRecord:
        with self._session() as session:
            row = session.get(_ParticipantRow, participant_id)
            if row is None:
                raise ParticipantNotFoundError(participant_id)
            return _participant_from_row(row)

    def list_participants_pending_reminder(self, event_id: str, tier: ReminderTierName) -> list[ParticipantRecord]:
        sent_column = (
            _ParticipantRow.reminder_12h_sent_at if tier == "12h" else _ParticipantRow.reminder_3h_sent_at
        )
        with self._session() as session:
            rows = session.execute(
                select(_ParticipantRow)
                .where(
                    _ParticipantRow.event_id == event_id,
                    _ParticipantRow.phone_number.is_not(None),
                    func.trim(_ParticipantRow.phone_number) != "",
                    sent_column.is_(None),
                )
                .order_by(_ParticipantRow.created_at)
            ).scalars()
            return [_participant_from_row(row) for row in rows]

    def find_participants_by_phone(self, variants: tuple[str, ...]) -> list[ParticipantRecord]:
        with self._session() as session:
            for variant in variants:
                rows = session.execute(
                    select(_ParticipantRow)
                    .where(
                        or_(
                            _ParticipantRow.phone_number == variant,
                            _stripped_phone_column() == variant,
                        )
                    )
                    .order_by(_ParticipantRow.created_at.desc())
                ).scalars().all()
                if rows:
                    return [_participant_from_row(row) for row in rows]
        return []

    def update_attendance(self, participant_id: str, event_id: str, attending: str) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.get(_ParticipantRow, participant_id)
                if row is None or row.event_id != event_id:
                    return False
                row.attending = attending
        return True

    def mark_reminder_sent(self, participant_id: str, tier: ReminderTierName, sent_at: datetime) -> None:
        with self._session() as session:
            with session.begin():
                row = session.get(_ParticipantRow, participant_id)
                if row is None:
                    raise ParticipantNotFoundError(participant_id)
                if tier == "12h":
                    row.reminder_12h_sent_at = _coerce_utc(sent_at)
                else:
                    row.reminder_3h_sent_at = _coerce_utc(sent_at)


def create_event_directory_repository(*, backend: str, database_url: str) -> EventDirectoryRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyEventDirectoryRepository(database_url)
    if normalized == "inmemory":
        return InMemoryEventDirectoryRepository()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
