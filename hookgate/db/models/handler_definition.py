"""
Handler Definition Model - routing rules, soft deleted via state
"""
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum as SQLEnum, Integer, String, UniqueConstraint

from hookgate.db.database import Base
from hookgate.domain.entities import DefinitionState


class HandlerDefinitionRow(Base):
    __tablename__ = "handler_definitions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(100), nullable=False, index=True)
    event_type = Column(String(255), nullable=False)  # exact, "prefix.*" or "*"
    handler = Column(String(255), nullable=False)
    priority = Column(Integer, nullable=False, default=100)
    is_async = Column(Boolean, nullable=False, default=True)
    max_attempts = Column(Integer, nullable=False, default=5)
    retry_delays = Column(JSON, nullable=False, default=lambda: [30, 60, 300, 900, 3600])
    state = Column(SQLEnum(DefinitionState), nullable=False, default=DefinitionState.ACTIVE)

    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("provider", "event_type", "handler", name="uq_handler_definitions_route"),
    )
