"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.core.config import settings
from app.core.errors import BadRequestError, ErrorKind, ProcessingError
from app.core.logging import setup_logging
from app.core.middleware import request_context_middleware, setup_cors_middleware
from app.db.session import init_db

# Import routers
from app.api import forms, stripe_webhook

setup_logging()

logger = logging.getLogger(__name__)

# Seconds Stripe (or any client) should wait before retrying a busy event
RETRY_AFTER_SECONDS = 5


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    logger.info("Initializing database...")
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Formpay Backend",
    description="Form submissions, Stripe payments and idempotent webhook processing",
    version="1.0.0",
    lifespan=lifespan
)

setup_cors_middleware(app)
app.middleware("http")(request_context_middleware)

# Include routers
app.include_router(forms.router)
app.include_router(stripe_webhook.router)


def jsonable_errors(exc: RequestValidationError):
    # Pydantic v2 error contexts can hold exception instances
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


@app.exception_handler(BadRequestError)
async def bad_request_handler(request: Request, exc: BadRequestError):
    content = {"error": exc.message}
    if exc.details is not None:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are a 400, not FastAPI's default 422"""
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request body", "details": jsonable_errors(exc)},
    )


@app.exception_handler(ProcessingError)
async def processing_error_handler(request: Request, exc: ProcessingError):
    """Map core processing failures onto HTTP statuses.

    A busy event is a 503 with Retry-After; everything else is a 500 so Stripe
    redelivers and the journal decides what happens next.
    """
    if exc.kind == ErrorKind.ALREADY_PROCESSING:
        logger.warning(f"Returning 503 for busy request {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=503,
            content={"ok": False, "error": exc.kind.value},
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
        )

    logger.error(f"Processing error on {request.url.path} ({exc.kind.value}): {exc.message}")
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": exc.kind.value, "retryable": exc.retryable},
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "environment": settings.ENVIRONMENT}
