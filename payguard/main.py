import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from payguard.config import get_settings
from payguard.database import close_connection, get_connection, init_db
from payguard.dependencies import build_pipeline
from payguard.services.challenge import ChallengeOrchestrator

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def housekeeping(orchestrator: ChallengeOrchestrator, interval: float) -> None:
    """Expire overdue challenges and forget old finished ones, forever."""
    while True:
        await asyncio.sleep(interval)
        expired = orchestrator.expire_stale()
        pruned = orchestrator.prune_finished()
        if expired or pruned:
            logger.info("Housekeeping: expired %d challenge(s), pruned %d", len(expired), pruned)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.pipeline = build_pipeline(settings, get_connection())
    cleaner = asyncio.create_task(
        housekeeping(app.state.pipeline.orchestrator, settings.housekeeping_interval_seconds)
    )
    logger.info("Payguard ready (database: %s)", settings.database_path)
    yield
    cleaner.cancel()
    with suppress(asyncio.CancelledError):
        await cleaner
    expired = app.state.pipeline.orchestrator.expire_stale()
    if expired:
        logger.info("Expired %d open challenge(s) on shutdown", len(expired))
    close_connection()


app = FastAPI(
    title="Payguard Payment Authorization API",
    description="Risk-based payment authorization with step-up challenges and 3-D Secure",
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "InternalServerError", "message": "An unexpected error occurred."},
    )


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


from payguard.routers import challenges, patterns, payments, risk  # noqa: E402

app.include_router(payments.router, prefix="/api/v1")
app.include_router(risk.router, prefix="/api/v1")
app.include_router(challenges.router, prefix="/api/v1")
app.include_router(patterns.router, prefix="/api/v1")


def run_server():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    run_server()
