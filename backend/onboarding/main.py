import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from onboarding.config import settings
from onboarding.middleware.exceptions import register_exception_handlers
from onboarding.middleware.rate_limit import RateLimitMiddleware
from onboarding.middleware.security import HTTPSRedirectMiddleware, SecurityHeadersMiddleware
from onboarding.routers import cleanup, health, onboarding, recovery
from onboarding.services.scheduler import lifespan

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Onboarding Sessions",
    description="Anonymous onboarding wizard sessions: storage, recovery and cleanup",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware (outermost first) ─────────────────────────────
app.add_middleware(SecurityHeadersMiddleware)

# HTTPS redirect (production only)
app.add_middleware(HTTPSRedirectMiddleware, force_https=False)

app.add_middleware(
    RateLimitMiddleware,
    default_limit=100,  # 100 requests per minute per IP
    default_window=60,
    exempt_paths=["/health", "/health/ready", "/docs", "/openapi.json"],
    enabled=settings.rate_limit_enabled,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(onboarding.router, prefix="/api/onboarding", tags=["onboarding"])
app.include_router(recovery.router, prefix="/api/onboarding/recovery", tags=["recovery"])
app.include_router(cleanup.router, prefix="/api/onboarding/cleanup", tags=["maintenance"])
