"""
Storefront backend: order fulfillment and Indira Coin ledger.
"""
import logging
import os
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).resolve().parent / ".env", override=False)

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from database import check_db_health, init_db
from exceptions import StorefrontError
from observability import ObservabilityMiddleware, get_correlation_id, metrics_registry, setup_logging
from routes.orders import router as orders_router
from routes.referrals import referral_router
from routes.wallet import wallet_router

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Storefront Backend",
    description="Order fulfillment, delivery verification and coin rewards",
    version="0.1.0",
)

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=CORS_ORIGINS != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(ObservabilityMiddleware)

app.include_router(orders_router)
app.include_router(wallet_router)
app.include_router(referral_router)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    """Business and infrastructure errors raised by the services."""
    if exc.status_code >= 500:
        logger.error(
            "Request failed with %s: %s", exc.__class__.__name__, exc.message,
            extra={"path": request.url.path},
        )
    else:
        logger.info(
            "Request rejected with %s: %s", exc.__class__.__name__, exc.message,
            extra={"path": request.url.path},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unhandled errors.

    - Logs full traceback
    - Returns safe error message to client
    """
    error_id = get_correlation_id() or f"ERR-{datetime.utcnow().strftime('%Y%m%d%H%M%S')}-{id(exc)}"
    logger.exception("Unhandled exception %s on %s %s", error_id, request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "error_id": error_id,
            "message": "An unexpected error occurred. Please try again.",
        },
    )


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "version": "0.1.0",
        "database_pool": await check_db_health(),
    }


@app.get("/metrics")
async def metrics():
    return Response(content=generate_latest(metrics_registry), media_type=CONTENT_TYPE_LATEST)


@app.on_event("startup")
async def startup_event():
    """Run on application startup"""
    logger.info("Storefront backend starting (environment=%s)", os.getenv("ENVIRONMENT", "development"))
    await init_db()


@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Storefront backend shutting down")
