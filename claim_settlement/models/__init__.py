from claim_settlement.models.bootstrap_db import Base
from claim_settlement.models.user import User
from claim_settlement.models.claims import TokenClaim, ClaimStatus
from claim_settlement.models.notification import NotificationOutbox, OutboxStatus

__all__ = [
    "Base",
    "User",
    "TokenClaim",
    "ClaimStatus",
    "NotificationOutbox",
    "OutboxStatus",
]
