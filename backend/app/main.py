"""Agent Commission Service - FastAPI Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.config import settings
from app.database import engine, Base
from app.middleware.error_capture import ErrorCaptureMiddleware
from app.api import batches, clawbacks, commissions, disbursements, statements, suspense, webhooks
from app.api.errors import commission_error_handler
from app.services.commission.errors import CommissionError

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (dev only); in prod use Alembic migrations."""
    if settings.environment == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    logger.info("Commission service started (%s)", settings.environment)
    yield
    await engine.dispose()


app = FastAPI(
    title="Agent Commission API",
    description="Commission batches, statements, disbursements, clawbacks and suspense",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(CommissionError, commission_error_handler)

# Error capture middleware (outermost, catches everything)
app.add_middleware(ErrorCaptureMiddleware)

# Routers
app.include_router(batches.router, prefix="/api/batches", tags=["Batches"])
app.include_router(commissions.router, prefix="/api/commissions", tags=["Commissions"])
app.include_router(statements.router, prefix="/api/statements", tags=["Statements"])
app.include_router(disbursements.router, prefix="/api/disbursements", tags=["Disbursements"])
app.include_router(clawbacks.router, prefix="/api/clawbacks", tags=["Clawbacks"])
app.include_router(suspense.router, prefix="/api/suspense", tags=["Suspense"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "agent-commission", "version": "0.1.0"}
