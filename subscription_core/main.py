"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from subscription_core.config import Config, get_config
from subscription_core.logging_config import configure_logging, get_logger
from subscription_core.middleware import ContextMiddleware, RequestLoggingMiddleware
from subscription_core.repositories.subscription_store import SubscriptionStore
from subscription_core.repositories.tier_repository import TierRepository
from subscription_core.services.billing_gateway import QiwiBillingGateway
from subscription_core.services.expiration_scheduler import ExpirationScheduler
from subscription_core.services.payment_poller import PaymentPoller
from subscription_core.services.subscription_service import SubscriptionService
from subscription_core.services.time_controller import TimeController

logger = get_logger(__name__)

VERSION = "0.1.0"


@dataclass
class Components:
    """Wired service components of one application instance."""

    config: Config
    clock: TimeController
    tiers: TierRepository
    store: SubscriptionStore
    gateway: QiwiBillingGateway
    scheduler: ExpirationScheduler
    service: SubscriptionService
    poller: PaymentPoller


def build_components(
        config: Config,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Optional[TimeController] = None,
) -> Components:
    """Wire store, gateway, scheduler and service from configuration.

    Args:
        config: Loaded configuration
        transport: Optional httpx transport for the billing client
        clock: Optional shared clock (tests pass one to fast-forward)

    Raises:
        StoreUnavailableError: If the store snapshot cannot be loaded
    """
    clock = clock or TimeController()
    tiers = TierRepository(config=config)
    store = SubscriptionStore(snapshot_path=config.snapshot_path)
    gateway = QiwiBillingGateway(config.billing, tiers, transport=transport, time_controller=clock)
    scheduler = ExpirationScheduler(time_controller=clock, max_workers=config.scheduler.max_workers)
    service = SubscriptionService(
        store=store,
        gateway=gateway,
        scheduler=scheduler,
        tier_repository=tiers,
        time_controller=clock,
        invoice_lifetime_millis=config.billing.invoice_lifetime_millis,
    )
    poller = PaymentPoller(
        service=service,
        gateway=gateway,
        store=store,
        scheduler=scheduler,
        interval_seconds=config.billing.poll_interval_seconds,
    )
    return Components(
        config=config,
        clock=clock,
        tiers=tiers,
        store=store,
        gateway=gateway,
        scheduler=scheduler,
        service=service,
        poller=poller,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Startup: start the scheduler, restore expiration jobs, start the poller.
    Shutdown: stop the poller, drain the scheduler, close the billing client.
    """
    components: Components = app.state.components
    logger.info("service_starting", version=VERSION)

    try:
        components.scheduler.start()
        components.service.restore_schedules()
        components.poller.start()

        logger.info("service_started", status="ready", subscriptions=components.store.count())
        yield
    finally:
        logger.info("service_shutting_down")
        components.poller.stop()
        components.scheduler.shutdown(wait=components.config.scheduler.shutdown_wait)
        components.gateway.close()
        logger.info("service_stopped")


def create_app(
        config: Optional[Config] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock: Optional[TimeController] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        config: Configuration (defaults to the global one)
        transport: Optional httpx transport for the billing client
        clock: Optional shared clock

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    config = config or get_config()

    app = FastAPI(
        title="Subscription Core",
        description="Paid subscription lifecycle with invoice billing and expiration scheduling",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.components = build_components(config, transport=transport, clock=clock)

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    from subscription_core.api.notifications import router as notifications_router
    from subscription_core.api.subscriptions import router as subscriptions_router

    app.include_router(subscriptions_router)
    app.include_router(notifications_router)

    @app.get("/health")
    def health() -> dict:
        """Detailed health check."""
        components: Components = app.state.components
        return {
            "status": "healthy",
            "version": VERSION,
            "scheduler": "running" if components.scheduler.running else "stopped",
            "live_jobs": components.scheduler.live_count(),
            "tiers": len(components.tiers),
            "subscriptions": components.store.get_statistics(),
            "payment_poller": "enabled" if components.poller.enabled else "disabled",
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app
