"""
Main FastAPI application entry point.

Responsibilities:
- Initialize FastAPI app
- Configure CORS
- Include routers
- Setup startup/shutdown events
"""
from __future__ import annotations

import logging
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from ticketsync.api.routes import sync, tickets
from ticketsync.config import log_missing_env_vars, settings
from ticketsync.models.database import close_db, get_pool_status, get_session, init_db

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    stream=sys.stdout,
)

app = FastAPI(title="Ticket Sync API", version="1.0.0")


def _normalize_origin(origin: str) -> str:
    """Normalize origin values for CORS checks."""
    return origin.strip().rstrip("/")


cors_origins: list[str] = [
    "http://localhost:5173",  # Vite dev server
    "http://localhost:3000",
]
if settings.FRONTEND_URL:
    cors_origins.append(settings.FRONTEND_URL)

allowed_origins = {_normalize_origin(origin) for origin in cors_origins}


def get_cors_headers(origin: str | None) -> dict[str, str]:
    """Return CORS headers if origin is allowed."""
    normalized_origin = _normalize_origin(origin) if origin else None
    if normalized_origin and normalized_origin in allowed_origins:
        return {
            "Access-Control-Allow-Origin": normalized_origin,
            "Access-Control-Allow-Credentials": "true",
            "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
            "Access-Control-Allow-Headers": "*",
        }
    return {}


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle all uncaught exceptions with CORS headers."""
    origin = request.headers.get("origin")
    logging.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
        headers=get_cors_headers(origin),
    )


# Routes
app.include_router(sync.router, prefix="/api/sync", tags=["sync"])
app.include_router(tickets.router, prefix="/api/tickets", tags=["tickets"])


@app.on_event("startup")
async def startup() -> None:
    """Create tables on startup unless disabled."""
    log_missing_env_vars(logging.getLogger("ticketsync.config"))
    if settings.AUTO_CREATE_TABLES:
        await init_db()
        logging.info("Database tables ready")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Clean up database connections on shutdown."""
    logging.info("Shutting down, closing database connections...")
    await close_db()
    logging.info("Database connections closed")


@app.get("/")
async def root_health_check() -> dict[str, str]:
    """Root endpoint exposing the health check payload."""
    return await health_check()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/health/db")
async def db_health_check() -> dict[str, object]:
    """Database health check with pool status."""
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        return {
            "status": "error",
            "error": str(e),
        }
    return {
        "status": "ok",
        "pool": get_pool_status(),
    }
