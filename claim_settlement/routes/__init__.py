from claim_settlement.routes.cron import router as cron_router
from claim_settlement.routes.ops_claims import router as ops_claims_router
from claim_settlement.routes.admin_claims import router as admin_claims_router
from claim_settlement.routes.token_claims import router as token_claims_router

__all__ = [
    "cron_router",
    "ops_claims_router",
    "admin_claims_router",
    "token_claims_router",
]
