"""
Database Models - CDC Store Design

This module defines the persisted stores of the booking CDC pipeline:

Append-only stores:
- BookingChangeEvent: ingestion buffer of raw change events
- DerivedBooking: one derived record per change event
- AnalyticsSnapshotRow: recomputed aggregate snapshots (never updated in place)

Bookkeeping:
- ConsumerOffset: resumable cursor per downstream consumer
- JobRun: inspectable run log of scheduled pipeline jobs
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from booking_cdc.schemas import (
    AnalyticsSnapshot,
    ChangeAction,
    ChangeEvent,
    DerivedRecord,
    PriceCategory,
    SizeCategory,
    StatusCategory,
)

# SQLite only auto-increments INTEGER PRIMARY KEY columns
SequenceId = BigInteger().with_variant(Integer, "sqlite")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class BookingChangeEvent(Base):
    """
    Ingestion Buffer

    Append-only log of captured booking changes. ``sequence_id`` is the
    cursor handed to consumers; ``dedup_key`` rejects redelivered events.
    """
    __tablename__ = "booking_change_events"

    sequence_id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    dedup_key: Mapped[str] = mapped_column(Text, unique=True, nullable=False)

    # Booking snapshot
    booking_id: Mapped[Optional[str]] = mapped_column(Text)
    customer_id: Mapped[Optional[str]] = mapped_column(Text)
    movie_id: Mapped[Optional[str]] = mapped_column(Text)
    booking_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[Optional[str]] = mapped_column(Text)
    ticket_count: Mapped[Optional[int]] = mapped_column(Integer)
    ticket_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    source_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Capture metadata
    change_action: Mapped[ChangeAction] = mapped_column(SQLEnum(ChangeAction, name="change_action"), nullable=False)
    is_update: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    change_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    raw_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)

    ingested_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_change_events_booking", "booking_id", "change_timestamp"),
        Index("ix_change_events_timestamp", "change_timestamp"),
    )

    @classmethod
    def from_event(cls, event: ChangeEvent) -> "BookingChangeEvent":
        return cls(
            dedup_key=event.dedup_key,
            booking_id=event.booking_id,
            customer_id=event.customer_id,
            movie_id=event.movie_id,
            booking_date=event.booking_date,
            status=event.status,
            ticket_count=event.ticket_count,
            ticket_price=event.ticket_price,
            source_created_at=event.created_at,
            source_updated_at=event.updated_at,
            change_action=event.change_action,
            is_update=event.is_update,
            change_timestamp=event.change_timestamp,
            raw_payload=event.raw_payload,
        )

    def to_event(self) -> ChangeEvent:
        return ChangeEvent(
            sequence=self.sequence_id,
            booking_id=self.booking_id,
            customer_id=self.customer_id,
            movie_id=self.movie_id,
            booking_date=self.booking_date,
            status=self.status,
            ticket_count=self.ticket_count,
            ticket_price=self.ticket_price,
            created_at=self.source_created_at,
            updated_at=self.source_updated_at,
            change_action=self.change_action,
            is_update=self.is_update,
            change_timestamp=self.change_timestamp,
            raw_payload=self.raw_payload,
        )


class DerivedBooking(Base):
    """
    Derived Record Store

    Exactly one row per change event (unique ``event_sequence``). Invalid
    rows are kept for audit and filtered out of analytics queries.
    """
    __tablename__ = "derived_bookings"

    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    event_sequence: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("booking_change_events.sequence_id"), unique=True, nullable=False
    )

    booking_id: Mapped[Optional[str]] = mapped_column(Text)
    customer_id: Mapped[Optional[str]] = mapped_column(Text)
    movie_id: Mapped[Optional[str]] = mapped_column(Text)
    booking_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[Optional[str]] = mapped_column(Text)
    ticket_count: Mapped[Optional[int]] = mapped_column(Integer)
    ticket_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2))
    total_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 2))
    source_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    source_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    change_action: Mapped[ChangeAction] = mapped_column(SQLEnum(ChangeAction, name="change_action"), nullable=False)
    is_update: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    change_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    effective_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # Business derivations
    booking_status_category: Mapped[Optional[StatusCategory]] = mapped_column(
        SQLEnum(StatusCategory, name="booking_status_category")
    )
    booking_size_category: Mapped[Optional[SizeCategory]] = mapped_column(
        SQLEnum(SizeCategory, name="booking_size_category")
    )
    price_category: Mapped[Optional[PriceCategory]] = mapped_column(
        SQLEnum(PriceCategory, name="price_category")
    )
    active_revenue: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    lost_revenue: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    is_valid_booking: Mapped[bool] = mapped_column(Boolean, nullable=False)

    derived_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_derived_bookings_effective", "is_valid_booking", "effective_at"),
        Index("ix_derived_bookings_movie", "movie_id"),
        Index("ix_derived_bookings_status", "status"),
    )

    @classmethod
    def from_record(cls, record: DerivedRecord) -> "DerivedBooking":
        return cls(
            event_sequence=record.event_sequence,
            booking_id=record.booking_id,
            customer_id=record.customer_id,
            movie_id=record.movie_id,
            booking_date=record.booking_date,
            status=record.status,
            ticket_count=record.ticket_count,
            ticket_price=record.ticket_price,
            total_amount=record.total_amount,
            source_created_at=record.created_at,
            source_updated_at=record.updated_at,
            change_action=record.change_action,
            is_update=record.is_update,
            change_timestamp=record.change_timestamp,
            effective_at=record.effective_at,
            booking_status_category=record.booking_status_category,
            booking_size_category=record.booking_size_category,
            price_category=record.price_category,
            active_revenue=record.active_revenue,
            lost_revenue=record.lost_revenue,
            is_valid_booking=record.is_valid_booking,
        )

    def to_record(self) -> DerivedRecord:
        return DerivedRecord(
            event_sequence=self.event_sequence,
            booking_id=self.booking_id,
            customer_id=self.customer_id,
            movie_id=self.movie_id,
            booking_date=self.booking_date,
            status=self.status,
            ticket_count=self.ticket_count,
            ticket_price=self.ticket_price,
            total_amount=self.total_amount,
            created_at=self.source_created_at,
            updated_at=self.source_updated_at,
            change_action=self.change_action,
            is_update=self.is_update,
            change_timestamp=self.change_timestamp,
            effective_at=self.effective_at,
            booking_status_category=self.booking_status_category,
            booking_size_category=self.booking_size_category,
            price_category=self.price_category,
            active_revenue=self.active_revenue,
            lost_revenue=self.lost_revenue,
            is_valid_booking=self.is_valid_booking,
        )


class ConsumerOffset(Base):
    """Last processed buffer sequence per consumer"""
    __tablename__ = "consumer_offsets"

    consumer: Mapped[str] = mapped_column(String(100), primary_key=True)
    position: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


class AnalyticsSnapshotRow(Base):
    """
    Analytics Snapshot Store

    Each refresh appends a new row; the newest row per window wins.
    ``as_of_sequence`` is the highest derived record id folded in.
    """
    __tablename__ = "analytics_snapshots"

    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    window_key: Mapped[str] = mapped_column(String(120), nullable=False)
    window_start: Mapped[Optional[datetime]] = mapped_column(DateTime)
    window_end: Mapped[Optional[datetime]] = mapped_column(DateTime)
    as_of_sequence: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    refresh_mode: Mapped[str] = mapped_column(String(20), nullable=False)
    records_folded: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        Index("ix_analytics_snapshots_window", "window_key", "id"),
    )

    def to_snapshot(self) -> AnalyticsSnapshot:
        return AnalyticsSnapshot.model_validate_json(self.payload)


class JobRun(Base):
    """Scheduled job run history"""
    __tablename__ = "job_runs"

    id: Mapped[int] = mapped_column(SequenceId, primary_key=True, autoincrement=True)
    job_name: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    detail: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_job_runs_name_started", "job_name", "started_at"),
    )
