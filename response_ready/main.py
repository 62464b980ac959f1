from __future__ import annotations

import logging
import sys

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pythonjsonlogger import jsonlogger

from . import __version__
from .config import settings
from .database import Base, engine
from . import models as _models  # noqa: F401 – registers ORM mappings with Base.metadata
from .security import build_security
from .auth.routes_auth import router as auth_router
from .auth.seed import seed_admin
from .api.routes_admin import router as admin_router

# ---------------------------------------------------------------------------
# Structured logging
# ---------------------------------------------------------------------------

def _configure_logging() -> None:
    """Configure structured JSON logging when log_format=json (default)."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_format == "json":
        handler.setFormatter(jsonlogger.JsonFormatter(
            "%(asctime)s %(name)s %(levelname)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level"},
        ))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s"))
    root.addHandler(handler)

_configure_logging()

# Initialise database tables on startup
Base.metadata.create_all(bind=engine)

# Seed default admin if no users exist
seed_admin()

app = FastAPI(
    title="Response Ready API",
    version=__version__,
    description=(
        "Account, session and request-security core for the Response Ready "
        "objection-handling practice app: rate limiting, token issuance, "
        "brute-force lockout and a uniform per-endpoint request pipeline."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)

# Rate limiter, lockout tracker and token service for every pipeline stage
app.state.security = build_security(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allow_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-RateLimit-Remaining", "Retry-After"],
)

app.include_router(auth_router)
app.include_router(admin_router)


@app.get("/", tags=["meta"])
def root() -> dict:
    return {"status": "ok", "service": "response-ready", "version": __version__}


@app.get("/health", tags=["meta"])
def health() -> dict:
    return {"status": "healthy"}
