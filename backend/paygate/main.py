"""Main FastAPI application and composition root."""

import asyncio
import logging
from typing import Mapping, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paygate.api import payments, realtime, webhooks
from paygate.config import Settings, settings as default_settings
from paygate.core.envelope import TransactionEnvelope
from paygate.core.errors import ConfigurationError, StoreUnavailableError
from paygate.core.locks import TransactionLock
from paygate.core.realtime import ConnectionRegistry
from paygate.core.signer import IntegritySigner
from paygate.database import build_engine, build_session_factory
from paygate.middleware.security import RateLimitMiddleware, RequestLoggingMiddleware, SecurityHeadersMiddleware
from paygate.providers import PaymentProvider, build_providers
from paygate.services.commands import PaymentCommands
from paygate.services.settlement_service import SettlementEngine

logger = logging.getLogger(__name__)


async def sweep_periodically(engine: SettlementEngine, interval_seconds: int) -> None:
    """Background loop discarding expired pending transactions."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await engine.sweep_expired()
        except StoreUnavailableError as e:
            logger.warning(f"Pending transaction sweep deferred: {e.message}")
        except Exception as e:
            logger.error(f"Pending transaction sweep failed: {e}", exc_info=True)


def create_app(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    providers: Optional[Mapping[str, PaymentProvider]] = None,
    registry: Optional[ConnectionRegistry] = None
) -> FastAPI:
    """
    Build the application and wire its services.

    Every dependency can be injected; anything not supplied is built from
    ``settings``. Raises ConfigurationError in production when required
    secrets are missing.
    """
    settings = settings or default_settings

    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )

    if settings.is_production:
        missing = settings.missing_production_secrets()
        if missing:
            raise ConfigurationError(f"Missing required secrets: {', '.join(missing)}")

    db_engine = None
    if session_factory is None:
        db_engine = build_engine(settings)
        session_factory = build_session_factory(db_engine)

    if registry is None:
        registry = ConnectionRegistry()
    engine = SettlementEngine(
        session_factory=session_factory,
        envelope=TransactionEnvelope(settings.PAYMENT_ENC_KEY),
        signer=IntegritySigner(settings.PAYMENT_HMAC_KEY),
        lock=TransactionLock(session_factory, stale_after_seconds=settings.LOCK_STALE_AFTER_SECONDS),
        providers=providers if providers is not None else build_providers(settings),
        registry=registry,
        settings=settings,
    )

    app = FastAPI(
        title="PayGate API",
        version="1.0.0",
        description="Payment gateway with exactly-once settlement against a per-user balance ledger"
    )

    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.registry = registry
    app.state.engine = engine
    app.state.commands = PaymentCommands(engine, session_factory)

    # Capabilities resolved once, here
    if settings.ENABLE_RATE_LIMIT:
        # Provider webhooks are never throttled
        app.add_middleware(
            RateLimitMiddleware,
            max_requests=settings.RATE_LIMIT_PER_MINUTE,
            window_seconds=60,
            exempt_prefixes=(f"{settings.API_V1_PREFIX}/payment/webhook",)
        )
    if settings.ENABLE_REQUEST_LOGGING:
        app.add_middleware(RequestLoggingMiddleware)
    if settings.ENABLE_SECURITY_HEADERS:
        app.add_middleware(SecurityHeadersMiddleware, hsts=settings.is_production)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(
        payments.router,
        prefix=f"{settings.API_V1_PREFIX}/payment",
        tags=["payment"]
    )
    app.include_router(
        webhooks.router,
        prefix=f"{settings.API_V1_PREFIX}/payment",
        tags=["webhooks"]
    )
    app.include_router(
        realtime.router,
        prefix=f"{settings.API_V1_PREFIX}/payment",
        tags=["realtime"]
    )

    @app.on_event("startup")
    async def startup():
        """Application startup tasks."""
        logger.info(f"🚀 PayGate API starting ({settings.ENVIRONMENT})")
        logger.info(f"💳 Payment providers: {', '.join(sorted(engine.providers))}")

        app.state.sweeper = None
        if settings.PENDING_TRANSACTION_TTL_SECONDS > 0:
            app.state.sweeper = asyncio.create_task(
                sweep_periodically(engine, settings.PENDING_SWEEP_INTERVAL_SECONDS)
            )

    @app.on_event("shutdown")
    async def shutdown():
        """Application shutdown tasks."""
        sweeper = getattr(app.state, "sweeper", None)
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        if db_engine is not None:
            await db_engine.dispose()
        logger.info("👋 PayGate API shutting down...")

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "message": "PayGate API",
            "version": "1.0.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "environment": settings.ENVIRONMENT,
            "realtimeConnections": len(registry),
        }

    # Consistent error format
    @app.exception_handler(HTTPException)
    async def http_exception_handler(request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None)
        )

    return app


app = create_app()
