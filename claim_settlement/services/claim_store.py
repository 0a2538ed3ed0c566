"""
Claim store adapter (ORM-based).

Every status transition is a conditional UPDATE (WHERE status = expected) and
callers check rowcount, so two pipelines or a pipeline and the janitor can
never both own the same claim.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Iterable, Sequence

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from claim_settlement.core.config import Settings, settings
from claim_settlement.models.claims import AUDIT_SEPARATOR, ClaimStatus, TokenClaim
from claim_settlement.models.user import User
from claim_settlement.services import notifications


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we write is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def append_audit(note: str):
    """SQL expression appending one segment to the error_message audit trail."""
    return func.coalesce(TokenClaim.error_message + AUDIT_SEPARATOR, "") + note


@dataclass(frozen=True)
class ClaimRef:
    """Detached snapshot of a claim row, safe to pass between threads."""
    id: uuid.UUID
    user_id: int
    amount: Decimal
    amount_atomic: str | None
    recipient_address: str | None
    status: str
    retry_count: int
    created_at: datetime
    # retry_count before this attempt charged it (set by mark_processing)
    prior_retry_count: int | None = None
    prior_status: str | None = None

    @classmethod
    def from_row(cls, row: TokenClaim) -> "ClaimRef":
        return cls(
            id=row.id,
            user_id=row.user_id,
            amount=Decimal(row.amount),
            amount_atomic=row.amount_atomic,
            recipient_address=row.recipient_address,
            status=row.status,
            retry_count=row.retry_count,
            created_at=as_utc(row.created_at),
        )


def backoff_deadline(created_at: datetime, retry_count: int, base_delay_seconds: float) -> datetime:
    """created_at + base_delay * 2^retry_count"""
    return as_utc(created_at) + timedelta(seconds=base_delay_seconds * (2 ** retry_count))


def credit_balance(session: Session, *, user_id: int, amount: Decimal) -> None:
    session.execute(
        update(User).where(User.id == user_id).values(reward_balance=User.reward_balance + amount)
    )


def refund_in_session(
    session: Session,
    *,
    claim_id: uuid.UUID,
    note: str,
    now: datetime,
    min_retry_count: int | None = None,
) -> Decimal | None:
    """
    Conditionally mark a FAILED, unrefunded claim refunded and credit the user.
    Returns the refunded amount, or None if another writer got there first.
    Caller owns the transaction: both writes commit together or not at all.
    """
    stmt = (
        update(TokenClaim)
        .where(TokenClaim.id == claim_id)
        .where(TokenClaim.status == ClaimStatus.FAILED.value)
        .where(TokenClaim.refunded_at.is_(None))
    )
    if min_retry_count is not None:
        stmt = stmt.where(TokenClaim.retry_count >= min_retry_count)
    r = session.execute(
        stmt.values(refunded_at=now, updated_at=now, next_attempt_at=None, error_message=append_audit(note))
    )
    if r.rowcount != 1:
        return None
    user_id, amount = session.execute(
        select(TokenClaim.user_id, TokenClaim.amount).where(TokenClaim.id == claim_id)
    ).one()
    amount = Decimal(amount)
    credit_balance(session, user_id=user_id, amount=amount)
    return amount


class ClaimStore:
    """Reads and atomic status transitions used by the batch pipelines."""

    def __init__(self, engine: Engine, cfg: Settings = settings) -> None:
        self.engine = engine
        self.max_retry_count = cfg.max_retry_count
        self.retry_base_delay_seconds = cfg.retry_base_delay_seconds
        self.token_decimals = cfg.token_decimals

    def _eligible_filter(self, now: datetime):
        retry_ready = and_(
            TokenClaim.status == ClaimStatus.FAILED.value,
            TokenClaim.retry_count < self.max_retry_count,
            TokenClaim.refunded_at.is_(None),
            or_(TokenClaim.next_attempt_at.is_(None), TokenClaim.next_attempt_at <= now),
        )
        return or_(TokenClaim.status == ClaimStatus.QUEUED.value, retry_ready)

    def fetch_eligible(self, limit: int, now: datetime | None = None) -> list[ClaimRef]:
        """Fresh QUEUED claims first (oldest first), then FAILED claims whose backoff has elapsed."""
        now = now or utcnow()
        q = (
            select(TokenClaim)
            .where(self._eligible_filter(now))
            .order_by(
                case((TokenClaim.status == ClaimStatus.QUEUED.value, 0), else_=1),
                TokenClaim.next_attempt_at,
                TokenClaim.created_at,
            )
            .limit(limit)
        )
        # plain snapshot read: ownership is taken by mark_processing's conditional update
        with Session(self.engine) as session:
            rows = session.execute(q).scalars().all()
            return [ClaimRef.from_row(r) for r in rows]

    def count_eligible(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with Session(self.engine) as session:
            return int(
                session.execute(select(func.count(TokenClaim.id)).where(self._eligible_filter(now))).scalar_one()
            )

    def mark_processing(self, claims: Iterable[ClaimRef]) -> list[ClaimRef]:
        """
        QUEUED/FAILED -> PROCESSING, one conditional update per claim.
        Only previously FAILED claims are charged a retry. Returns the claims
        this caller now owns; losers of a race are dropped.
        """
        now = utcnow()
        owned: list[ClaimRef] = []
        with Session(self.engine) as session:
            for c in claims:
                stmt = update(TokenClaim).where(TokenClaim.id == c.id).where(TokenClaim.status == c.status)
                if c.status == ClaimStatus.FAILED.value:
                    stmt = (
                        stmt.where(TokenClaim.refunded_at.is_(None))
                        .where(TokenClaim.retry_count < self.max_retry_count)
                        .values(
                            status=ClaimStatus.PROCESSING.value,
                            retry_count=TokenClaim.retry_count + 1,
                            updated_at=now,
                        )
                    )
                    new_retry = c.retry_count + 1
                elif c.status == ClaimStatus.QUEUED.value:
                    stmt = stmt.values(status=ClaimStatus.PROCESSING.value, updated_at=now)
                    new_retry = c.retry_count
                else:
                    continue
                r = session.execute(stmt)
                if r.rowcount == 1:
                    owned.append(
                        replace(
                            c,
                            status=ClaimStatus.PROCESSING.value,
                            retry_count=new_retry,
                            prior_retry_count=c.retry_count,
                            prior_status=c.status,
                        )
                    )
            session.commit()
        return owned

    def record_submission(self, claims: Sequence[ClaimRef], tx_hash: str) -> int:
        """Stamp the broadcast hash on claims still PROCESSING, so a stuck row can be checked on-chain."""
        now = utcnow()
        with Session(self.engine) as session:
            r = session.execute(
                update(TokenClaim)
                .where(TokenClaim.id.in_([c.id for c in claims]))
                .where(TokenClaim.status == ClaimStatus.PROCESSING.value)
                .values(batch_transaction_hash=tx_hash, updated_at=now)
            )
            session.commit()
            return r.rowcount

    def mark_completed(self, claims: Sequence[ClaimRef], tx_hash: str, *, notify: bool = True) -> int:
        """PROCESSING -> COMPLETED with the shared hash; success notifications queued in the same transaction."""
        now = utcnow()
        updated = 0
        with Session(self.engine) as session:
            for c in claims:
                r = session.execute(
                    update(TokenClaim)
                    .where(TokenClaim.id == c.id)
                    .where(TokenClaim.status == ClaimStatus.PROCESSING.value)
                    .values(
                        status=ClaimStatus.COMPLETED.value,
                        batch_transaction_hash=tx_hash,
                        next_attempt_at=None,
                        updated_at=now,
                    )
                )
                if r.rowcount == 1:
                    updated += 1
                    if notify and c.recipient_address:
                        session.add(
                            notifications.build_success_row(
                                claim_id=c.id,
                                recipient_address=c.recipient_address,
                                amount=c.amount,
                            )
                        )
            session.commit()
        return updated

    def mark_failed(
        self,
        claims: Sequence[ClaimRef],
        reason: str,
        *,
        tx_hash: str | None = None,
        restore_retry: bool = False,
    ) -> int:
        """
        PROCESSING -> FAILED with an audit note and the next backoff gate.
        restore_retry puts back the retry charged by mark_processing (used when
        the failure was not the claim's fault, e.g. the signer ran dry).
        """
        now = utcnow()
        updated = 0
        with Session(self.engine) as session:
            for c in claims:
                retry = c.retry_count
                if restore_retry and c.prior_retry_count is not None:
                    retry = c.prior_retry_count
                values = dict(
                    status=ClaimStatus.FAILED.value,
                    retry_count=retry,
                    error_message=append_audit(reason),
                    next_attempt_at=backoff_deadline(c.created_at, retry, self.retry_base_delay_seconds),
                    updated_at=now,
                )
                if tx_hash:
                    values["batch_transaction_hash"] = tx_hash
                r = session.execute(
                    update(TokenClaim)
                    .where(TokenClaim.id == c.id)
                    .where(TokenClaim.status == ClaimStatus.PROCESSING.value)
                    .values(**values)
                )
                updated += r.rowcount
            session.commit()
        return updated

    def fail_invalid(self, claim: ClaimRef, reason: str) -> bool:
        """
        QUEUED/FAILED -> FAILED for a structurally invalid claim. The retry budget
        is exhausted on the spot so the janitor refunds it instead of retrying.
        """
        now = utcnow()
        with Session(self.engine) as session:
            r = session.execute(
                update(TokenClaim)
                .where(TokenClaim.id == claim.id)
                .where(TokenClaim.status == claim.status)
                .values(
                    status=ClaimStatus.FAILED.value,
                    retry_count=max(claim.retry_count, self.max_retry_count),
                    error_message=append_audit(reason),
                    next_attempt_at=None,
                    updated_at=now,
                )
            )
            session.commit()
            return r.rowcount == 1

    def restore(self, claims: Sequence[ClaimRef], note: str) -> int:
        """Hand PROCESSING claims back to the state they were picked up from, charging nothing."""
        now = utcnow()
        updated = 0
        with Session(self.engine) as session:
            for c in claims:
                prior_status = c.prior_status or ClaimStatus.QUEUED.value
                prior_retry = c.prior_retry_count if c.prior_retry_count is not None else c.retry_count
                r = session.execute(
                    update(TokenClaim)
                    .where(TokenClaim.id == c.id)
                    .where(TokenClaim.status == ClaimStatus.PROCESSING.value)
                    .values(
                        status=prior_status,
                        retry_count=prior_retry,
                        error_message=append_audit(note),
                        updated_at=now,
                    )
                )
                updated += r.rowcount
            session.commit()
        return updated
