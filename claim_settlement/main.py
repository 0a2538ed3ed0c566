import logging
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from claim_settlement.core.config import settings
from claim_settlement.routes import admin_claims_router, cron_router, ops_claims_router, token_claims_router

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Reward Claim Settlement")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(cron_router)
app.include_router(ops_claims_router)
app.include_router(admin_claims_router)
app.include_router(token_claims_router)


@app.get("/health")
def health():
    return {"status": "ok", "env": settings.app_env}


PORT = int(os.getenv("PORT", "8990"))

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("claim_settlement.main:app", host="0.0.0.0", port=PORT, reload=settings.app_env == "dev")
