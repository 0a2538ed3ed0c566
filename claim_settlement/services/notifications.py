"""
Success notifications for settled claims.
Rows are queued in notification_outbox by the settlement transaction and
delivered afterwards; delivery failures are recorded on the row, never raised.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from claim_settlement.core.config import Settings, settings
from claim_settlement.models.notification import NotificationOutbox, OutboxStatus

logger = logging.getLogger(__name__)

TOKEN_SYMBOL = "ROLU"
TITLE_MAX = 30
MESSAGE_MAX = 200
MAX_DELIVERY_ATTEMPTS = 3


def success_title() -> str:
    return f"{TOKEN_SYMBOL} Token Transfer Success"[:TITLE_MAX]


def success_message(amount: Decimal | float) -> str:
    msg = f"Congratulations! You received {Decimal(str(amount)):.2f} {TOKEN_SYMBOL} tokens in your wallet."
    return msg[:MESSAGE_MAX]


def build_success_row(*, claim_id: uuid.UUID, recipient_address: str, amount: Decimal) -> NotificationOutbox:
    return NotificationOutbox(
        claim_id=claim_id,
        recipient_address=recipient_address,
        title=success_title(),
        message=success_message(amount),
        status=OutboxStatus.PENDING.value,
        attempts=0,
    )


def send_notification(
    recipient_address: str,
    title: str,
    message: str,
    *,
    cfg: Settings = settings,
    client: Optional[httpx.Client] = None,
    mini_app_path: str = "/",
) -> Dict[str, Any]:
    """POST one notification. Returns {"success": bool, "error"?: str}."""
    if not cfg.notification_api_key or not cfg.notification_app_id:
        return {"success": False, "error": "NOTIFICATION_API_KEY or NOTIFICATION_APP_ID not set"}
    payload = {
        "app_id": cfg.notification_app_id,
        "wallet_addresses": [recipient_address],
        "title": title[:TITLE_MAX],
        "message": message[:MESSAGE_MAX],
        "mini_app_path": f"worldapp://mini-app?app_id={cfg.notification_app_id}&path={mini_app_path}",
    }
    headers = {"Authorization": f"Bearer {cfg.notification_api_key}"}
    try:
        if client is not None:
            response = client.post(cfg.notification_url, json=payload, headers=headers)
        else:
            with httpx.Client(timeout=10.0) as c:
                response = c.post(cfg.notification_url, json=payload, headers=headers)
        if response.status_code >= 400:
            return {"success": False, "error": f"HTTP {response.status_code}: {response.text[:200]}"}
        return {"success": True}
    except httpx.HTTPError as e:
        return {"success": False, "error": str(e)}


def dispatch_pending(
    engine: Engine,
    *,
    cfg: Settings = settings,
    client: Optional[httpx.Client] = None,
    limit: int = 100,
) -> Dict[str, int]:
    """Deliver PENDING outbox rows. Returns {"sent": n, "failed": n}."""
    sent = failed = 0
    with Session(engine) as session:
        rows = session.execute(
            select(NotificationOutbox.id, NotificationOutbox.recipient_address, NotificationOutbox.title, NotificationOutbox.message)
            .where(NotificationOutbox.status == OutboxStatus.PENDING.value)
            .order_by(NotificationOutbox.created_at)
            .limit(limit)
        ).all()

    for row_id, recipient, title, message in rows:
        result = send_notification(recipient, title, message, cfg=cfg, client=client)
        with Session(engine) as session:
            row = session.get(NotificationOutbox, row_id)
            if row is None:
                continue
            row.attempts += 1
            if result["success"]:
                row.status = OutboxStatus.SENT.value
                row.last_error = None
                row.sent_at = datetime.now(timezone.utc)
                sent += 1
            else:
                row.last_error = result.get("error")
                if row.attempts >= MAX_DELIVERY_ATTEMPTS:
                    row.status = OutboxStatus.FAILED.value
                failed += 1
                logger.warning("Notification to %s failed (attempt %s): %s", recipient, row.attempts, row.last_error)
            session.commit()
    if rows:
        logger.info("Notification outbox: %s sent, %s failed", sent, failed)
    return {"sent": sent, "failed": failed}
