"""
Execution Record Model - one handler run against one event
"""
from sqlalchemy import JSON, Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, String

from hookgate.db.database import Base
from hookgate.domain.entities import ExecutionStatus


class ExecutionRecordRow(Base):
    __tablename__ = "execution_records"

    id = Column(String(36), primary_key=True)
    event_id = Column(String(36), nullable=False, index=True)
    handler = Column(String(255), nullable=False)
    provider = Column(String(100), nullable=False)
    event_type = Column(String(255), nullable=False)
    priority = Column(Integer, nullable=False)
    is_async = Column(Boolean, nullable=False)

    # retry policy, copied from the definition at creation time
    max_attempts = Column(Integer, nullable=False)
    retry_delays = Column(JSON, nullable=False)

    status = Column(SQLEnum(ExecutionStatus), nullable=False, default=ExecutionStatus.PENDING)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(String(1000), nullable=True)

    version = Column(Integer, nullable=False, default=0)
    lock_holder = Column(String(100), nullable=True)
    lock_acquired_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_execution_records_status_next_retry", "status", "next_retry_at"),
    )
