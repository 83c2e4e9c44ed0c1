from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

import sentry_sdk
from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sqlalchemy.ext.asyncio import AsyncEngine

from .api.routes import checkout as checkout_routes
from .api.routes import operator as operator_routes
from .api.routes import webhooks as webhook_routes
from .db.core import SessionLocal, build_session_factory, init_db
from .db.core import engine as default_engine
from .health import health_checker
from .logging_config import SERVICE_NAME, SERVICE_VERSION, configure_structlog, get_logger
from .metrics import PrometheusMiddleware, get_metrics
from .services import CheckoutServices, build_services
from .settings import settings
from .sweeper import ExpirySweeper
from .utils import (
    add_cors,
    add_rate_limiting,
    add_request_id_tracing,
    add_security_headers,
)

# Configure structured logging (must be done before any logging calls)
configure_structlog(json_logs=not settings.DEBUG)

if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        release=settings.SENTRY_RELEASE or f"{SERVICE_NAME}@dev",
        integrations=[FastApiIntegration()],
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        send_default_pii=False,
    )

# Use structlog for structured logging
logger = get_logger(__name__)


def create_app(
    *,
    engine: AsyncEngine | None = None,
    services: CheckoutServices | None = None,
    sweep_interval: float | None = None,
) -> FastAPI:
    """Build the API. Tests pass their own engine/services; production uses settings."""
    db_engine = engine or default_engine
    interval = settings.EXPIRY_SWEEP_INTERVAL_SECONDS if sweep_interval is None else sweep_interval

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(db_engine)
        session_factory = SessionLocal if engine is None else build_session_factory(db_engine)
        app.state.services = services or build_services(settings, session_factory)
        sweeper = ExpirySweeper(app.state.services.orchestrator, interval)
        app.state.sweeper = sweeper
        sweeper.start()
        logger.info(
            "checkout_core_started",
            payments_mode=settings.PAYMENTS_MODE,
            rails=sorted(rail.value for rail in app.state.services.adapters),
        )
        try:
            yield
        finally:
            await sweeper.stop()
            await app.state.services.dispatcher.drain()
            logger.info("checkout_core_stopped")

    app = FastAPI(
        title="Storefront Checkout API",
        version=SERVICE_VERSION,
        description="Checkout orchestration and payment-state reconciliation",
        lifespan=lifespan,
    )
    add_cors(app)
    add_security_headers(app)
    add_request_id_tracing(app)
    add_rate_limiting(app)
    app.add_middleware(PrometheusMiddleware)

    app.include_router(checkout_routes.router)
    app.include_router(webhook_routes.router)
    app.include_router(operator_routes.router)

    @app.get("/health")
    async def health():
        """Return service health including upstream dependency checks."""
        services_ready = getattr(app.state, "services", None)
        health_status = await health_checker.check_all(
            db_engine, services_ready.adapters if services_ready else None
        )
        status_code = 200 if health_status["status"] == "healthy" else 503
        body = {
            "status": health_status["status"],
            "timestamp": health_status.get("timestamp"),
            "checks": _scrub_health_details(health_status.get("checks", {}))
            if not settings.DEBUG
            else health_status.get("checks", {}),
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
        }
        return JSONResponse(content=body, status_code=status_code)

    @app.get("/metrics")
    def metrics():
        """Expose Prometheus metrics."""
        try:
            return get_metrics()
        except Exception:  # pragma: no cover - defensive path
            logger.exception("metrics_export_failed")
            raise HTTPException(status_code=503, detail="metrics unavailable")

    return app


def _scrub_health_details(payload: dict[str, Any]) -> dict[str, Any]:
    """Remove sensitive error fields before returning health details."""

    def _scrub(value: Any) -> Any:
        if isinstance(value, dict):
            cleaned: dict[str, Any] = {}
            for key, inner in value.items():
                if key in {"error", "error_type", "traceback"}:
                    continue
                cleaned[key] = _scrub(inner)
            return cleaned
        if isinstance(value, list):
            return [_scrub(item) for item in value]
        return value

    return _scrub(payload)


app = create_app()
