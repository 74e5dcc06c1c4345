import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import config
from database import check_connection
from routers.contracts import router as contracts_router
from routers.invoices import router as invoices_router
from routers.milestones import router as milestones_router
from routers.payouts import router as payouts_router
from scheduler import PayoutJobScheduler
from schemas.common import ApiResponse, ErrorDetail
from services.errors import (
    ConcurrentModificationError,
    EngineError,
    InsufficientFundsError,
    InvalidStateTransitionError,
    NotFoundError,
    PayoutFailedError,
    StorageUnavailableError,
    ValidationError,
)

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Engine error -> HTTP status
ERROR_STATUS = {
    ValidationError: 400,
    InsufficientFundsError: 402,
    NotFoundError: 404,
    InvalidStateTransitionError: 409,
    ConcurrentModificationError: 409,
    PayoutFailedError: 502,
    StorageUnavailableError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    payout_job = None
    if config.PAYOUT_JOB_ENABLED:
        payout_job = PayoutJobScheduler()
        payout_job.start()
    yield
    if payout_job is not None:
        payout_job.shutdown()


# App instance
app = FastAPI(title="Milestone Escrow Engine", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    if status_code >= 500:
        logger.error(f"❌ {exc.code} on {request.method} {request.url.path}: {exc.message}")
    body = ApiResponse(
        success=False,
        error=ErrorDetail(code=exc.code, message=exc.message, details=exc.details),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.get("/api/health")
def health():
    database_ok = check_connection()
    return {"success": database_ok, "database": "up" if database_ok else "down"}


app.include_router(contracts_router)
app.include_router(milestones_router)
app.include_router(payouts_router)
app.include_router(invoices_router)

if __name__ == "__main__":
    port = int(os.getenv("PORT", 10000))
    uvicorn.run("main:app", host="0.0.0.0", port=port, reload=True)
