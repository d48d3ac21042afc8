"""
Outbound Models - endpoints and deliveries
"""
from sqlalchemy import JSON, Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text

from hookgate.db.database import Base
from hookgate.domain.entities import DeliveryStatus


class OutboundEndpointRow(Base):
    __tablename__ = "outbound_endpoints"

    name = Column(String(100), primary_key=True)
    url = Column(String(2048), nullable=False)
    signing_secret = Column(String(500), nullable=True)
    signature_header = Column(String(100), nullable=False, default="X-Webhook-Signature")
    timestamp_header = Column(String(100), nullable=False, default="X-Webhook-Timestamp")
    default_headers = Column(JSON, nullable=False, default=lambda: {"Content-Type": "application/json"})

    retry_delays = Column(JSON, nullable=False, default=lambda: [30, 60, 300, 900, 3600])
    max_attempts = Column(Integer, nullable=False, default=5)
    circuit_failure_threshold = Column(Integer, nullable=False, default=5)
    circuit_cooldown_seconds = Column(Integer, nullable=False, default=300)
    retry_client_errors = Column(Boolean, nullable=False, default=True)


class OutboundDeliveryRow(Base):
    __tablename__ = "outbound_deliveries"

    id = Column(String(36), primary_key=True)
    endpoint = Column(String(100), nullable=False, index=True)
    target_url = Column(String(2048), nullable=False)
    payload = Column(JSON, nullable=True)
    headers = Column(JSON, nullable=False, default=dict)

    status = Column(SQLEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    attempt_count = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    retry_delays = Column(JSON, nullable=False)

    response_code = Column(Integer, nullable=True)
    response_body = Column(Text, nullable=True)  # truncated to 10k chars
    response_time_ms = Column(Integer, nullable=True)
    error = Column(String(1000), nullable=True)

    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_outbound_deliveries_status_next_retry", "status", "next_retry_at"),
    )
