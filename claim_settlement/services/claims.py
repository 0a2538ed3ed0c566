"""
Claim intake, manual refund and operational stats (ORM-based).
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from claim_settlement.core.config import Settings, settings
from claim_settlement.models.claims import ClaimStatus, TokenClaim
from claim_settlement.models.user import User
from claim_settlement.services.claim_store import as_utc, refund_in_session, utcnow
from claim_settlement.services.chain import clean_address

ACTIVE_STATUSES = (ClaimStatus.QUEUED.value, ClaimStatus.PROCESSING.value)


@dataclass(frozen=True)
class ClaimStats:
    queued: int
    processing: int
    completed: int
    failed: int
    retry_eligible: int
    awaiting_refund: int
    refunded: int
    invalid: int
    oldest_queued_age_seconds: float | None
    in_flight_nonces: int | None = None

    def as_dict(self) -> dict:
        return {
            "queued": self.queued,
            "processing": self.processing,
            "completed": self.completed,
            "failed": self.failed,
            "retry_eligible": self.retry_eligible,
            "awaiting_refund": self.awaiting_refund,
            "refunded": self.refunded,
            "invalid": self.invalid,
            "oldest_queued_age_seconds": self.oldest_queued_age_seconds,
            "in_flight_nonces": self.in_flight_nonces,
        }


def _to_decimal(amount: Decimal | float | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def to_atomic(amount: Decimal, decimals: int) -> str:
    """Human amount -> base-10 integer string at ledger precision (truncating)."""
    return str(int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN)))


def create_claim(
    engine: Engine,
    *,
    user_id: int,
    amount: Decimal | float | int | str,
    cfg: Settings = settings,
) -> TokenClaim:
    """
    Debit the user's reward balance and queue a claim, in one transaction.
    Raises ValueError when the user is unknown, has no wallet, already has
    MAX_PENDING_CLAIMS claims in flight, or can't cover the amount.
    """
    amt = _to_decimal(amount)
    if amt <= 0:
        raise ValueError("amount must be > 0")
    atomic = to_atomic(amt, cfg.token_decimals)
    if int(atomic) <= 0:
        raise ValueError("amount is below ledger precision")

    with Session(engine, expire_on_commit=False) as session:
        q = select(User).where(User.id == user_id)
        if engine.dialect.name == "postgresql":
            q = q.with_for_update()
        user = session.execute(q).scalar_one_or_none()
        if not user or not user.is_active:
            raise ValueError("user not found")
        wallet = clean_address(user.wallet_address)
        if not wallet:
            raise ValueError("no valid wallet address linked to this account")

        pending = session.execute(
            select(func.count(TokenClaim.id))
            .where(TokenClaim.user_id == user_id)
            .where(TokenClaim.status.in_(ACTIVE_STATUSES))
        ).scalar_one()
        if pending >= cfg.max_pending_claims:
            raise ValueError(f"too many pending claims (max {cfg.max_pending_claims})")

        r = session.execute(
            update(User)
            .where(User.id == user_id)
            .where(User.reward_balance >= amt)
            .values(reward_balance=User.reward_balance - amt)
        )
        if r.rowcount != 1:
            session.rollback()
            raise ValueError("insufficient balance")

        now = utcnow()
        claim = TokenClaim(
            user_id=user_id,
            amount=amt,
            amount_atomic=atomic,
            recipient_address=wallet,
            status=ClaimStatus.QUEUED.value,
            retry_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(claim)
        session.commit()
        return claim


def refund_claim(engine: Engine, *, claim_id: uuid.UUID) -> Decimal:
    """Manual refund of a FAILED claim. Returns the amount credited; refuses a second refund."""
    with Session(engine) as session:
        claim = session.get(TokenClaim, claim_id)
        if not claim:
            raise ValueError("claim not found")
        if claim.status != ClaimStatus.FAILED.value:
            raise ValueError(f"only FAILED claims can be refunded (status is {claim.status})")
        if claim.refunded_at is not None:
            raise ValueError("claim already refunded")
        session.expunge(claim)

        amount = refund_in_session(
            session,
            claim_id=claim_id,
            note="Manually refunded to in-app balance.",
            now=utcnow(),
        )
        if amount is None:
            session.rollback()
            raise ValueError("claim already refunded")
        session.commit()
        return amount


def list_claims(
    engine: Engine,
    *,
    status: ClaimStatus | str | None = None,
    user_id: int | None = None,
    refunded: bool | None = None,
    limit: int = 100,
) -> list[TokenClaim]:
    q = select(TokenClaim)
    if status is not None:
        q = q.where(TokenClaim.status == ClaimStatus(status).value)
    if user_id is not None:
        q = q.where(TokenClaim.user_id == user_id)
    if refunded is True:
        q = q.where(TokenClaim.refunded_at.is_not(None))
    elif refunded is False:
        q = q.where(TokenClaim.refunded_at.is_(None))
    q = q.order_by(TokenClaim.created_at.desc()).limit(limit)
    with Session(engine, expire_on_commit=False) as session:
        return list(session.execute(q).scalars().all())


def get_claim_stats(
    engine: Engine,
    *,
    cfg: Settings = settings,
    in_flight_nonces: int | None = None,
    now: datetime | None = None,
) -> ClaimStats:
    now = now or utcnow()
    failed = TokenClaim.status == ClaimStatus.FAILED.value
    blank = or_(
        TokenClaim.recipient_address.is_(None),
        TokenClaim.recipient_address == "",
        TokenClaim.amount_atomic.is_(None),
        TokenClaim.amount_atomic == "",
    )
    with Session(engine) as session:
        counts = dict(
            session.execute(select(TokenClaim.status, func.count(TokenClaim.id)).group_by(TokenClaim.status)).all()
        )

        def _count(*conds) -> int:
            return int(session.execute(select(func.count(TokenClaim.id)).where(and_(*conds))).scalar_one())

        retry_eligible = _count(failed, TokenClaim.retry_count < cfg.max_retry_count, TokenClaim.refunded_at.is_(None))
        awaiting_refund = _count(failed, TokenClaim.retry_count >= cfg.max_retry_count, TokenClaim.refunded_at.is_(None))
        refunded = _count(TokenClaim.refunded_at.is_not(None))
        invalid = _count(TokenClaim.status.in_((ClaimStatus.QUEUED.value, ClaimStatus.FAILED.value)), blank)
        oldest = session.execute(
            select(func.min(TokenClaim.created_at)).where(TokenClaim.status == ClaimStatus.QUEUED.value)
        ).scalar_one_or_none()

    oldest_age = None
    if oldest is not None:
        oldest_age = max(0.0, (now - as_utc(oldest)).total_seconds())

    return ClaimStats(
        queued=int(counts.get(ClaimStatus.QUEUED.value, 0)),
        processing=int(counts.get(ClaimStatus.PROCESSING.value, 0)),
        completed=int(counts.get(ClaimStatus.COMPLETED.value, 0)),
        failed=int(counts.get(ClaimStatus.FAILED.value, 0)),
        retry_eligible=retry_eligible,
        awaiting_refund=awaiting_refund,
        refunded=refunded,
        invalid=invalid,
        oldest_queued_age_seconds=oldest_age,
        in_flight_nonces=in_flight_nonces,
    )


def claim_as_dict(c: TokenClaim) -> dict:
    return {
        "id": str(c.id),
        "user_id": c.user_id,
        "amount": str(c.amount),
        "amount_atomic": c.amount_atomic,
        "recipient_address": c.recipient_address,
        "status": c.status,
        "retry_count": c.retry_count,
        "batch_transaction_hash": c.batch_transaction_hash,
        "error_message": c.error_message,
        "next_attempt_at": c.next_attempt_at,
        "refunded_at": c.refunded_at,
        "created_at": c.created_at,
        "updated_at": c.updated_at,
    }
