import os
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from config import settings
from api import opportunities_router, platforms_router, scanner_router
from models.database import AsyncSessionLocal, async_engine, init_database
from utils.logger import get_logger, setup_logging
from utils.utcnow import utcnow

# Setup logging
setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON, log_file=settings.LOG_FILE)
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting TradeSmart backend...")
    try:
        await init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.critical("Startup failed", error=str(e), traceback=traceback.format_exc())
        raise

    logger.info(
        "Integrations configured",
        odds_api=bool(settings.ODDS_API_KEY),
        ai_enrichment=bool(settings.ANTHROPIC_API_KEY),
        email_alerts=bool(settings.RESEND_API_KEY),
        whatsapp_alerts=bool(settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN),
        betfair_oauth=bool(settings.BETFAIR_CLIENT_ID and settings.BETFAIR_APP_KEY),
    )

    yield

    logger.info("Shutting down...")
    await async_engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="TradeSmart API",
    description="Opportunity scanning, alerting and brokerage account sync",
    version="1.0.0",
    lifespan=lifespan,
)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(status_code=500, content={"error": "Internal server error", "details": str(exc)})


# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# API routes
app.include_router(scanner_router, prefix="/api", tags=["Scanner"])
app.include_router(opportunities_router, prefix="/api", tags=["Opportunities"])
app.include_router(platforms_router, prefix="/api", tags=["Platforms"])


# Health checks
@app.get("/health")
async def health_check():
    """Basic health check - for load balancers"""
    return {"status": "ok"}


@app.get("/health/live")
async def liveness_check():
    """Liveness probe - is the service running?"""
    return {"status": "alive", "timestamp": utcnow().isoformat()}


@app.get("/health/ready")
async def readiness_check():
    """Readiness probe - can the service reach its database?"""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        database_ok = True
    except Exception as e:
        logger.warning("Readiness database check failed", error=str(e))
        database_ok = False

    checks = {
        "database": database_ok,
        "odds_api_configured": bool(settings.ODDS_API_KEY),
        "ai_configured": bool(settings.ANTHROPIC_API_KEY),
    }
    return JSONResponse(
        status_code=200 if database_ok else 503,
        content={
            "status": "ready" if database_ok else "not_ready",
            "checks": checks,
            "timestamp": utcnow().isoformat(),
        },
    )


if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port, timeout_keep_alive=30)
