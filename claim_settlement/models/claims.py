"""
Token claim model: one row per cash-out request, settled on-chain in batches.
Plain String status column (no Postgres enum); Python enum for validation.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from claim_settlement.core.config import DB_SCHEMA
from .bootstrap_db import Base


class ClaimStatus(str, enum.Enum):
    QUEUED = "QUEUED"          # Waiting for a batch
    PROCESSING = "PROCESSING"  # Owned by a batch pipeline, tx in flight
    COMPLETED = "COMPLETED"    # Settled on-chain (batch_transaction_hash filled)
    FAILED = "FAILED"          # Retry-eligible until retry_count hits the limit


# Audit-trail separator for error_message segments
AUDIT_SEPARATOR = " | "


class TokenClaim(Base):
    __tablename__ = "token_claims"
    __table_args__ = (
        Index("ix_token_claims_status_created_at", "status", "created_at"),
        Index("ix_token_claims_status_retry_count", "status", "retry_count"),
        Index("ix_token_claims_status_next_attempt_at", "status", "next_attempt_at"),
        Index("ix_token_claims_user_id_status", "user_id", "status"),
        Index("ix_token_claims_batch_transaction_hash", "batch_transaction_hash"),
        {"schema": DB_SCHEMA},
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey(f"{DB_SCHEMA}.users.id"), nullable=False)

    # Human-readable amount (what was debited) and ledger-precision integer as a string
    amount: Mapped[Decimal] = mapped_column(Numeric(36, 18), nullable=False)
    amount_atomic: Mapped[str | None] = mapped_column(Text, nullable=True)
    recipient_address: Mapped[str | None] = mapped_column(Text, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ClaimStatus.QUEUED.value)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    batch_transaction_hash: Mapped[str | None] = mapped_column(String(66), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Backoff gate for FAILED rows: created_at + base_delay * 2^retry_count
    next_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Set exactly once when the amount goes back to the user's balance
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
