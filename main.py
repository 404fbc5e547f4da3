"""
Subscription billing backend
Keeps user subscription profiles in sync with Stripe webhooks and user plan changes
"""

import logging
import traceback

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

# Import routers
from routers.billing_router import billing_router
from routers.profile_router import profile_router, subscription_check_router
from database import init_db, close_db, AsyncSessionLocal
from dependencies import build_services
from config.settings import settings, IS_PRODUCTION

# ============================================================================
# LOGGING
# ============================================================================

# Logging setup - write ALL events to <LOGS_DIR>/app.log
settings.logs_dir.mkdir(parents=True, exist_ok=True)
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.logs_dir / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="Subscription Billing")


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return JSONResponse(
                status_code=500,
                content={"ok": False, "error": "Internal Server Error"}
            )


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: CSP, HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        # JSON API only: nothing may be loaded or framed from our responses
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        # Strict-Transport-Security: only where HTTPS is guaranteed
        if IS_PRODUCTION:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# STARTUP
# ============================================================================
@app.on_event("startup")
async def check_env_keys_on_startup():
    """Check for missing environment variables on startup (non-fatal warning)"""
    key_checks = {
        "STRIPE_SECRET_KEY": settings.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
        "STRIPE_PRICE_WEEK": settings.stripe_price_week,
        "STRIPE_PRICE_MONTH": settings.stripe_price_month,
        "STRIPE_PRICE_YEAR": settings.stripe_price_year,
        "JWT_SECRET_KEY": settings.jwt_secret_key,
    }
    missing = [env_key for env_key, value in key_checks.items() if not value]
    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All critical environment variables are set")


# Initialize database on startup
@app.on_event("startup")
async def initialize_database():
    """Create tables and wire the billing collaborators."""
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise
    build_services(app, settings, AsyncSessionLocal)


@app.on_event("shutdown")
async def shutdown_database():
    await close_db()


# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(billing_router)
app.include_router(profile_router)
app.include_router(subscription_check_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
