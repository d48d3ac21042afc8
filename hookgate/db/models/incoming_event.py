"""
Incoming Event Model - one row per logically unique webhook.

The unique constraint on (provider, external_id) is what serializes
deduplication; there is no check-then-insert anywhere.
"""
from sqlalchemy import JSON, Column, DateTime, Enum as SQLEnum, Index, LargeBinary, String, UniqueConstraint

from hookgate.db.database import Base
from hookgate.domain.entities import DedupState, EventStatus


class IncomingEventRow(Base):
    __tablename__ = "incoming_events"

    id = Column(String(36), primary_key=True)
    provider = Column(String(100), nullable=False)
    external_id = Column(String(255), nullable=False)
    event_type = Column(String(255), nullable=False)

    raw_payload = Column(LargeBinary, nullable=False)
    payload = Column(JSON, nullable=True)
    headers = Column(JSON, nullable=False, default=dict)
    # "metadata" שמור ב-declarative
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)

    received_at = Column(DateTime(timezone=True), nullable=False)
    dedup_state = Column(SQLEnum(DedupState), nullable=False, default=DedupState.UNIQUE)
    status = Column(SQLEnum(EventStatus), nullable=False, default=EventStatus.RECEIVED)

    __table_args__ = (
        UniqueConstraint("provider", "external_id", name="uq_incoming_events_provider_external_id"),
        Index("ix_incoming_events_status_received", "status", "received_at"),
    )
