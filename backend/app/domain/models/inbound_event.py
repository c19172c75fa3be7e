import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.infrastructure.db.base import Base, JSONType


class Provider(StrEnum):
    HOTMART = "hotmart"
    KIWIFY = "kiwify"
    CAKTOR = "caktor"
    STRIPE = "stripe"
    GENERIC = "generic"


class InboundEventStatus(StrEnum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
    DISCARDED = "discarded"


TERMINAL_INBOUND_STATUSES = {InboundEventStatus.PROCESSED.value, InboundEventStatus.DISCARDED.value}


class InboundEvent(Base):
    __tablename__ = "inbound_events"
    __table_args__ = (
        UniqueConstraint("provider", "idempotency_key", name="uq_inbound_events_provider_idempotency_key"),
        CheckConstraint(
            "status IN ('received', 'processed', 'failed', 'discarded')",
            name="ck_inbound_events_status_values",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    raw_headers: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    raw_payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    verification_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    canonical_event: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=InboundEventStatus.RECEIVED.value, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
