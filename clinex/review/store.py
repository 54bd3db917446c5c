"""SQLAlchemy persistence for review items and confirmed entities."""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager, nullcontext
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import JSON, Date, DateTime, Float, Integer, String, Text, create_engine, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from clinex.ai.types import Domain, Grounding, PendingReviewItem, ReviewStatus
from clinex.core.unified_config import get_config
from clinex.logging_config import get_logger

logger = get_logger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for review models."""

    pass


class ReviewItemRecord(Base):
    __tablename__ = "pending_review_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    seq: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    unit_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(32), nullable=False)
    extracted_data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    grounding: Mapped[str] = mapped_column(String(16), nullable=False)
    # pending | confirmed | confirmed_with_edits | dismissed
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=ReviewStatus.PENDING.value, index=True)
    duplicate_of: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    source_messages: Mapped[List[int]] = mapped_column(JSON, nullable=False, default=list)
    source_quote: Mapped[str] = mapped_column(Text, nullable=False, default="")
    flags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    dedup_key: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    anchor_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class ConfirmedEntityRecord(Base):
    """Entities a reviewer has accepted; the lookup side of deduplication."""

    __tablename__ = "confirmed_entities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    domain: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    dedup_key: Mapped[Optional[str]] = mapped_column(String, nullable=True, index=True)
    data: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    unit_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    review_item_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    observed_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    confirmed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


def build_engine(database_url: str, echo: bool = False) -> Engine:
    if database_url.startswith("sqlite"):
        options: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            # one shared connection, otherwise every session sees an empty database
            options["poolclass"] = StaticPool
        return create_engine(database_url, echo=echo, **options)
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


class ReviewStore:
    """Row-level access to the review tables. Ordering of transitions is the queue's job."""

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None, engine: Optional[Engine] = None):
        config = get_config()
        self.database_url = database_url or config.database_url
        self.engine = engine or build_engine(self.database_url, config.database_echo if echo is None else echo)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        # SQLite connections are shared across threads here; keep one session at a time
        self._sqlite_lock = threading.RLock() if self.engine.dialect.name == "sqlite" else None
        Base.metadata.create_all(self.engine)
        logger.info("Review store ready at %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def session(self) -> Iterator[Session]:
        with self._sqlite_lock or nullcontext():
            session = self._session_factory()
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # ------------------------------------------------------------------ review items
    @staticmethod
    def _to_item(record: ReviewItemRecord) -> PendingReviewItem:
        return PendingReviewItem(
            id=record.id,
            unit_id=record.unit_id,
            domain=Domain(record.domain),
            extracted_data=dict(record.extracted_data),
            confidence=record.confidence,
            grounding=Grounding(record.grounding),
            status=ReviewStatus(record.status),
            duplicate_of=record.duplicate_of,
            source_messages=list(record.source_messages or []),
            source_quote=record.source_quote or "",
            flags=list(record.flags or []),
            dedup_key=record.dedup_key,
            anchor_date=record.anchor_date,
            created_at=record.created_at,
            reviewed_at=record.reviewed_at,
        )

    def insert_item(self, item: PendingReviewItem) -> PendingReviewItem:
        with self.session() as session:
            next_seq = (session.scalar(select(func.max(ReviewItemRecord.seq))) or 0) + 1
            record = ReviewItemRecord(
                id=item.id,
                seq=next_seq,
                unit_id=item.unit_id,
                domain=item.domain.value,
                extracted_data=item.extracted_data,
                confidence=item.confidence,
                grounding=item.grounding.value,
                status=item.status.value,
                duplicate_of=item.duplicate_of,
                source_messages=list(item.source_messages),
                source_quote=item.source_quote,
                flags=list(item.flags),
                dedup_key=item.dedup_key,
                anchor_date=item.anchor_date,
                created_at=item.created_at or utcnow(),
            )
            session.add(record)
            session.flush()
            return self._to_item(record)

    def get_item(self, item_id: str) -> Optional[PendingReviewItem]:
        with self.session() as session:
            record = session.get(ReviewItemRecord, item_id)
            return self._to_item(record) if record is not None else None

    def list_pending(self) -> List[PendingReviewItem]:
        with self.session() as session:
            records = session.scalars(
                select(ReviewItemRecord)
                .where(ReviewItemRecord.status == ReviewStatus.PENDING.value)
                .order_by(ReviewItemRecord.created_at, ReviewItemRecord.seq)
            ).all()
            return [self._to_item(record) for record in records]

    def count_pending(self) -> int:
        with self.session() as session:
            return session.scalar(
                select(func.count()).select_from(ReviewItemRecord).where(
                    ReviewItemRecord.status == ReviewStatus.PENDING.value
                )
            ) or 0

    @staticmethod
    def _mark(session: Session, item_id: str, status: ReviewStatus, extracted_data: Optional[Dict[str, Any]]) -> bool:
        values: Dict[str, Any] = {"status": status.value, "reviewed_at": utcnow()}
        if extracted_data is not None:
            values["extracted_data"] = extracted_data
        result = session.execute(
            update(ReviewItemRecord)
            .where(ReviewItemRecord.id == item_id, ReviewItemRecord.status == ReviewStatus.PENDING.value)
            .values(**values)
        )
        return result.rowcount == 1

    def transition(
        self,
        item_id: str,
        status: ReviewStatus,
        extracted_data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a pending item to ``status``. False when it was no longer pending."""
        with self.session() as session:
            return self._mark(session, item_id, status, extracted_data)

    def confirm_item(
        self,
        item_id: str,
        domain: Domain,
        status: ReviewStatus,
        data: Dict[str, Any],
        dedup_key: Optional[str],
        *,
        extracted_data: Optional[Dict[str, Any]] = None,
        unit_id: Optional[str] = None,
        observed_on: Optional[date] = None,
    ) -> Optional[str]:
        """Close a pending item and record its confirmed entity in one transaction.

        Returns the new entity id, or ``None`` when the item was no longer pending.
        If the entity insert fails the item stays pending.
        """
        entity_id = str(uuid.uuid4())
        with self.session() as session:
            if not self._mark(session, item_id, status, extracted_data):
                return None
            session.add(
                self._confirmed_record(entity_id, domain, data, dedup_key, unit_id, item_id, observed_on)
            )
        return entity_id

    # ------------------------------------------------------------------ confirmed entities
    @staticmethod
    def _confirmed_record(
        entity_id: str,
        domain: Domain,
        data: Dict[str, Any],
        dedup_key: Optional[str],
        unit_id: Optional[str],
        review_item_id: Optional[str],
        observed_on: Optional[date],
    ) -> ConfirmedEntityRecord:
        return ConfirmedEntityRecord(
            id=entity_id,
            domain=Domain(domain).value,
            dedup_key=dedup_key,
            data=dict(data),
            unit_id=unit_id,
            review_item_id=review_item_id,
            observed_on=observed_on,
        )

    def add_confirmed(
        self,
        domain: Domain,
        data: Dict[str, Any],
        dedup_key: Optional[str],
        *,
        unit_id: Optional[str] = None,
        review_item_id: Optional[str] = None,
        observed_on: Optional[date] = None,
        entity_id: Optional[str] = None,
    ) -> str:
        """Record an entity confirmed outside the queue, e.g. by the host application."""
        entity_id = entity_id or str(uuid.uuid4())
        with self.session() as session:
            session.add(
                self._confirmed_record(entity_id, domain, data, dedup_key, unit_id, review_item_id, observed_on)
            )
        return entity_id

    def find_confirmed(
        self,
        domain: Domain,
        dedup_key: str,
        around: Optional[date] = None,
        window_days: Optional[int] = None,
    ) -> Optional[str]:
        """Id of the newest confirmed entity sharing ``dedup_key``.

        With ``around`` and ``window_days`` only entities observed within the window
        count; entities without an observation date never match a windowed lookup.
        """
        query = select(ConfirmedEntityRecord.id).where(
            ConfirmedEntityRecord.domain == Domain(domain).value,
            ConfirmedEntityRecord.dedup_key == dedup_key,
        )
        if around is not None and window_days is not None:
            query = query.where(
                ConfirmedEntityRecord.observed_on >= around - timedelta(days=window_days),
                ConfirmedEntityRecord.observed_on <= around + timedelta(days=window_days),
            )
        query = query.order_by(ConfirmedEntityRecord.confirmed_at.desc()).limit(1)
        with self.session() as session:
            return session.scalar(query)

    def confirmed_count(self) -> int:
        with self.session() as session:
            return session.scalar(select(func.count()).select_from(ConfirmedEntityRecord)) or 0


__all__ = ["Base", "ConfirmedEntityRecord", "ReviewItemRecord", "ReviewStore", "build_engine", "utcnow"]
