from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
import os
import logging
from pathlib import Path
import sys

# Add backend to path for imports
sys.path.insert(0, str(Path(__file__).parent))

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from services.logging_service import setup_logging, RequestLoggingMiddleware  # noqa: E402
from services.errors import LifecycleError  # noqa: E402
from services.rate_limit import limiter, rate_limit_exceeded_handler  # noqa: E402

# Configure logging
setup_logging(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    json_format=os.environ.get("LOG_FORMAT", "json") == "json",
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(
    title="Cupid's Arrow API",
    description="Personalized valentine experiences with paid delivery",
    version="1.0.0"
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(LifecycleError)
async def lifecycle_error_handler(request: Request, exc: LifecycleError):
    """Render domain errors with the status they carry"""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error_code": type(exc).__name__},
    )


# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# Import and include route modules
from routes.experiences import router as experiences_router  # noqa: E402
from routes.payments import router as payments_router  # noqa: E402
from routes.webhooks import router as webhooks_router  # noqa: E402
from routes.admin import router as admin_router  # noqa: E402

api_router.include_router(experiences_router)
api_router.include_router(payments_router)
api_router.include_router(webhooks_router)
api_router.include_router(admin_router)


# Health check endpoint
@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "cupids-arrow"}

# Include the router in the main app
app.include_router(api_router)

# Request correlation and timing
app.add_middleware(RequestLoggingMiddleware)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Create tables when a database is configured"""
    from db import init_db, engine

    logger.info("Starting Cupid's Arrow API...")
    if engine is None:
        logger.warning("DATABASE_URL not set - running without a database")
        return
    await init_db()
    logger.info("Cupid's Arrow API started successfully")


@app.on_event("shutdown")
async def shutdown_event():
    from db import engine

    if engine is not None:
        await engine.dispose()
    logger.info("Cupid's Arrow API shutdown complete")
