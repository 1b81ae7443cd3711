from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from itertools import count
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, create_engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class MessageTokenRecord:
    message_id: str
    participant_id: str
    event_id: str
    phone_number: str
    template_name: str | None = None
    processed: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True)
class MessageTokenStats:
    processed: int
    unprocessed: int

    @property
    def total(self) -> int:
        return self.processed + self.unprocessed


def new_message_token(
    *,
    message_id: str,
    participant_id: str,
    event_id: str,
    phone_number: str,
    template_name: str | None,
    created_at: datetime | None = None,
) -> MessageTokenRecord:
    return MessageTokenRecord(
        message_id=message_id,
        participant_id=participant_id,
        event_id=event_id,
        phone_number=phone_number,
        template_name=template_name,
        processed=False,
        created_at=_coerce_utc(created_at) if created_at is not None else _now_utc(),
    )


class MessageTokenRepository(Protocol):
    def reset(self) -> None: ...

    def put(self, record: MessageTokenRecord) -> bool: ...

    def get_by_message_id(self, message_id: str) -> MessageTokenRecord | None: ...

    def get_latest_unprocessed_by_phone(self, phone_number: str) -> MessageTokenRecord | None: ...

    def mark_processed(self, message_id: str) -> bool: ...

    def delete(self, message_id: str) -> bool: ...

    def stats(self) -> MessageTokenStats: ...

    def has_inbound_receipt(self, message_id: str) -> bool: ...

    def record_inbound_receipt(self, message_id: str, *, kind: str) -> bool: ...


class InMemoryMessageTokenRepository:
    def __init__(self) -> None:
        self._sequence = count(1)
        self._tokens: dict[str, tuple[int, MessageTokenRecord]] = {}
        self._receipts: dict[str, str] = {}

    def reset(self) -> None:
        self._sequence = count(1)
        self._tokens.clear()
        self._receipts.clear()

    def put(self, record: MessageTokenRecord) -> bool:
        if record.message_id in self._tokens:
            return False
        stored = record if record.created_at is not None else replace(record, created_at=_now_utc())
        self._tokens[record.message_id] = (next(self._sequence), stored)
        return True

    def get_by_message_id(self, message_id: str) -> MessageTokenRecord | None:
        entry = self._tokens.get(message_id)
        return entry[1] if entry else None

    def get_latest_unprocessed_by_phone(self, phone_number: str) -> MessageTokenRecord | None:
        candidates = [
            (record.created_at, sequence, record)
            for sequence, record in self._tokens.values()
            if record.phone_number == phone_number and not record.processed
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda value: (value[0], value[1]))[2]

    def mark_processed(self, message_id: str) -> bool:
        entry = self._tokens.get(message_id)
        if entry is None:
            return False
        sequence, record = entry
        self._tokens[message_id] = (sequence, replace(record, processed=True))
        return True

    def delete(self, message_id: str) -> bool:
        return self._tokens.pop(message_id, None) is not None

    def stats(self) -> MessageTokenStats:
        processed = sum(1 for _, record in self._tokens.values() if record.processed)
        return MessageTokenStats(processed=processed, unprocessed=len(self._tokens) - processed)

    def has_inbound_receipt(self, message_id: str) -> bool:
        return message_id in self._receipts

    def record_inbound_receipt(self, message_id: str, *, kind: str) -> bool:
        if message_id in self._receipts:
            return False
        self._receipts[message_id] = kind
        return True


class MessageTokensBase(DeclarativeBase):
    pass


class _MessageTokenRow(MessageTokensBase):
    __tablename__ = "whatsapp_message_tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    participant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    template_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class _WebhookReceiptRow(MessageTokensBase):
    __tablename__ = "whatsapp_webhook_receipts"

    message_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _record_from_row(row: _MessageTokenRow) -> MessageTokenRecord:
    return MessageTokenRecord(
        message_id=row.message_id,
        participant_id=row.participant_id,
        event_id=row.event_id,
        phone_number=row.phone_number,
        template_name=row.template_name,
        processed=row.processed,
        created_at=_coerce_utc(row.created_at),
    )


class SqlAlchemyMessageTokenRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            MessageTokensBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_WebhookReceiptRow).delete()
                session.query(_MessageTokenRow).delete()

    def put(self, record: MessageTokenRecord) -> bool:
        created_at = _coerce_utc(record.created_at) if record.created_at is not None else _now_utc()
        try:
            with self._session() as session:
                with session.begin():
                    existing = session.execute(
                        select(_MessageTokenRow.id).where(_MessageTokenRow.message_id == record.message_id)
                    ).first()
                    if existing is not None:
                        return False
                    session.add(
                        _MessageTokenRow(
                            message_id=record.message_id,
                            participant_id=record.participant_id,
                            event_id=record.event_id,
                            phone_number=record.phone_number,
                            template_name=record.template_name,
                            processed=record.processed,
                            created_at=created_at,
                            updated_at=created_at,
                        )
                    )
        except IntegrityError:
            # Concurrent insert of the same message id won the race.
            return False
        return True

    def get_by_message_id(self, message_id: str) -> MessageTokenRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_MessageTokenRow).where(_MessageTokenRow.message_id == message_id)
            ).scalar_one_or_none()
            return _record_from_row(row) if row is not None else None

    def get_latest_unprocessed_by_phone(self, phone_number: str) -> MessageTokenRecord | None:
        with self._session() as session:
            row = session.execute(
                select(_MessageTokenRow)
                .where(
                    _MessageTokenRow.phone_number == phone_number,
                    _MessageTokenRow.processed.is_(False),
                )
                .order_by(_MessageTokenRow.created_at.desc(), _MessageTokenRow.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _record_from_row(row) if row is not None else None

    def mark_processed(self, message_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                row = session.execute(
                    select(_MessageTokenRow).where(_MessageTokenRow.message_id == message_id)
                ).scalar_one_or_none()
                if row is None:
                    return False
                row.processed = True
                row.updated_at = _now_utc()
        return True

    def delete(self, message_id: str) -> bool:
        with self._session() as session:
            with session.begin():
                deleted = (
                    session.query(_MessageTokenRow)
                    .filter(_MessageTokenRow.message_id == message_id)
                    .delete()
                )
        return deleted > 0

    def stats(self) -> MessageTokenStats:
        with self._session() as session:
            rows = session.execute(
                select(_MessageTokenRow.processed, func.count()).group_by(_MessageTokenRow.processed)
            ).all()
        counts = {bool(processed): int(total) for processed, total in rows}
        return MessageTokenStats(processed=counts.get(True, 0), unprocessed=counts.get(False, 0))

    def has_inbound_receipt(self, message_id: str) -> bool:
        with self._session() as session:
            return session.get(_WebhookReceiptRow, message_id) is not None

    def record_inbound_receipt(self, message_id: str, *, kind: str) -> bool:
        try:
            with self._session() as session:
                with session.begin():
                    if session.get(_WebhookReceiptRow, message_id) is not None:
                        return False
                    session.add(_WebhookReceiptRow(message_id=message_id, kind=kind, received_at=_now_utc()))
        except IntegrityError:
            return False
        return True


def create_message_token_repository(*, backend: str, database_url: str) -> MessageTokenRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyMessageTokenRepository(database_url)
    if normalized == "inmemory":
        return InMemoryMessageTokenRepository()
    raise RuntimeError(f"unsupported STORE_BACKEND: {backend}")
