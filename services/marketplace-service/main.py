"""Main application entry point."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import redis
import httpx
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    API_VERSION,
    CORS_ORIGINS,
    JWT_ALGORITHM,
    JWT_SECRET,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_PER_MINUTE_IP,
    RATE_LIMIT_PER_MINUTE_USER,
    REDIS_URL,
    USER_DIRECTORY_TIMEOUT,
)
from auth import IdentityProvider
from database import init_db, engine
from errors import MarketplaceError
from monitoring import init_profiling
from logging_config import setup_logging
from routers import products, orders
from redis_rate_limiter import RedisRateLimiter

setup_logging()
logger = logging.getLogger(__name__)


# Rate limiting middleware is registered before startup, so the client is created here
redis_client = redis.from_url(REDIS_URL, decode_responses=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info("Starting application...")

    init_db()

    if RATE_LIMIT_ENABLED:
        RedisInstrumentor().instrument(redis_client=redis_client)

    app.state.identity_provider = IdentityProvider(
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
        expire_minutes=ACCESS_TOKEN_EXPIRE_MINUTES
    )

    http_client = httpx.AsyncClient(timeout=USER_DIRECTORY_TIMEOUT)
    HTTPXClientInstrumentor().instrument_client(http_client)
    app.state.http_client = http_client
    logger.info("HTTP client initialized")

    init_profiling()

    logger.info("Application startup complete")

    yield

    logger.info("Shutting down application...")
    await http_client.aclose()
    redis_client.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title="Farm Marketplace Service",
    version=API_VERSION,
    lifespan=lifespan
)

if RATE_LIMIT_ENABLED:
    app.add_middleware(
        RedisRateLimiter,
        redis_client=redis_client,
        requests_per_minute_ip=RATE_LIMIT_PER_MINUTE_IP,
        requests_per_minute_user=RATE_LIMIT_PER_MINUTE_USER
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

FastAPIInstrumentor.instrument_app(app)
SQLAlchemyInstrumentor().instrument(engine=engine)


@app.exception_handler(MarketplaceError)
async def marketplace_error_handler(request: Request, exc: MarketplaceError):
    """Render business-rule violations with enough detail to find the offending item."""
    logger.warning("Request rejected", extra={
        "path": request.url.path,
        "error": exc.code,
        "status_code": exc.status_code,
        "detail": exc.message
    })
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.code, "context": exc.context}
    )


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and query parameters are client validation errors (400)."""
    errors = jsonable_encoder(exc.errors())
    logger.warning("Request rejected", extra={
        "path": request.url.path,
        "error": "ValidationError",
        "status_code": 400,
        "fields": [".".join(str(part) for part in error["loc"]) for error in errors]
    })
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request", "error": "ValidationError", "context": {"errors": errors}}
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error", extra={"path": request.url.path})
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


app.include_router(products.router)
app.include_router(orders.router)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
