"""
Provider Model - registered webhook sources
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from hookgate.db.database import Base


class ProviderRow(Base):
    """A webhook source and its intake policy"""

    __tablename__ = "providers"

    name = Column(String(100), primary_key=True)
    token = Column(String(255), nullable=False)
    signing_secret = Column(String(500), nullable=True)
    verifier = Column(String(50), nullable=False, default="hmac_sha256")
    active = Column(Boolean, nullable=False, default=True)

    timestamp_tolerance_seconds = Column(Integer, nullable=False, default=300)  # 0 = disabled
    max_payload_size_bytes = Column(Integer, nullable=True, default=1_048_576)
    rate_limit_requests = Column(Integer, nullable=True, default=100)
    rate_limit_period_seconds = Column(Integer, nullable=True, default=60)
    allow_unsigned = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
