# pyright: reportMissingTypeStubs=false
"""
Clinic Billing Backend API

A FastAPI application exposing the clinic billing consistency engine.

Features:
- Invoice maintenance (items, discounts, holds, cancellation)
- Partial payments with installment limits
- Invoice completion that keeps visits consistent with payment state
- PostgreSQL database with SQLAlchemy ORM
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import billing
from core.constants import CORS_ORIGINS
from services.billing_errors import BillingError, RollbackIncompleteError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)

logger = logging.getLogger(__name__)
logger.info("🏥 Clinic Billing API starting...")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("🚀 Starting Clinic Billing Backend API")
    yield
    logger.info("🛑 Shutting down Clinic Billing Backend API")


# Create FastAPI application
app = FastAPI(
    title="Clinic Billing Backend",
    description="Invoice, payment and visit-completion consistency engine for clinics",
    version="1.0.0",
    docs_url="/docs",  # Swagger UI
    redoc_url="/redoc",  # ReDoc
    lifespan=lifespan,
)

# CORS middleware for frontend integration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routers
app.include_router(
    billing.router,
    prefix="/api/billing",
    tags=["billing"],
    responses={
        400: {"description": "Invalid billing input or payment"},
        404: {"description": "Resource not found"},
        409: {"description": "Version conflict or invalid invoice state"},
        422: {"description": "Invoice data integrity error"},
        500: {"description": "Rollback incomplete or internal server error"},
        502: {"description": "Visit completion failed"},
        503: {"description": "Storage unavailable"},
    },
)


@app.get(
    "/",
    summary="Root endpoint",
    description="Returns basic API information",
)
async def root() -> dict[str, str]:
    """Get API information."""
    return {
        "message": "Clinic Billing Backend API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get(
    "/health",
    summary="Health check",
    description="Returns the health status of the API",
)
async def health_check() -> dict[str, str]:
    """Check if the API is healthy and responding."""
    return {"status": "healthy"}


# Global exception handlers
@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    """Render billing engine errors with their stable error code."""
    if isinstance(exc, RollbackIncompleteError):
        logger.critical(f"Rollback incomplete on {request.method} {request.url.path}: {exc.message}")
    elif exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions globally."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"success": False, "error_code": "INTERNAL_ERROR", "message": "Internal server error"},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle ValueError exceptions."""
    logger.warning(f"ValueError: {exc}")
    return JSONResponse(
        status_code=400,
        content={"success": False, "error_code": "VALIDATION_ERROR", "message": str(exc)},
    )
