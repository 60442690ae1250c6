from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging

from quota_orchestrator.config import settings
from quota_orchestrator.database import init_db
from quota_orchestrator.errors import PersistenceFailure, SessionNotFoundError, UnknownServiceError
from quota_orchestrator.observability.tracing import configure_tracing
from quota_orchestrator.reliability.recovery import SessionSweeper, get_recovery_manager
from quota_orchestrator.routers import rate_limit, sessions

# Configure logging
logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic"""
    # Startup
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    configure_tracing()
    init_db()

    # Settle sessions abandoned by a previous process, then keep sweeping
    sweeper = SessionSweeper(get_recovery_manager(), settings.SESSION_SWEEP_INTERVAL_SEC)
    await sweeper.start()

    yield

    # Shutdown
    await sweeper.stop()
    logger.info("Shutting down application")

app = FastAPI(
    title=settings.APP_NAME,
    description="Quota-aware orchestration of calls to rate-limited external services",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
)

# CORS Middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(UnknownServiceError)
async def unknown_service_handler(request: Request, exc: UnknownServiceError):
    return JSONResponse(status_code=400, content={"error": str(exc), "success": False})

@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
    return JSONResponse(status_code=404, content={"error": str(exc), "success": False})

@app.exception_handler(PersistenceFailure)
async def persistence_failure_handler(request: Request, exc: PersistenceFailure):
    logger.error(f"Store failure on {request.url.path}: {exc}")
    content = {
        "error": str(exc) if settings.DEBUG else "Storage error",
        "success": False,
    }
    # Quota callers must never read a store failure as an admission
    if request.url.path.startswith(f"{settings.API_V1_PREFIX}/rate-limit"):
        content["allowed"] = False
    return JSONResponse(status_code=500, content=content)

# Global error handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error": str(exc) if settings.DEBUG else "An error occurred"
        },
    )

# Health check
@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }

# Include API routers
app.include_router(
    rate_limit.router,
    prefix=f"{settings.API_V1_PREFIX}/rate-limit",
    tags=["rate-limit"],
)
app.include_router(
    sessions.router,
    prefix=f"{settings.API_V1_PREFIX}/mining-sessions",
    tags=["mining-sessions"],
)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
