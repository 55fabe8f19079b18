"""FastAPI application for the QueryStudio billing core.

Routes:
- POST /api/polar/webhooks    provider lifecycle events
- GET  /api/realtime          realtime channel authorization
- WS   /ws/realtime           realtime channel stream
- GET  /api/billing/entitlement
- GET  /health
"""

from __future__ import annotations

import argparse
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from billing.config import Settings
from billing.config import settings as default_settings
from billing.entitlements.routes import router as entitlement_router
from billing.realtime.routes import register_realtime_routes
from billing.security.middleware import install_security_middleware
from billing.services import BillingServices, build_services
from billing.webhooks.handlers import register_webhook_routes

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    services: BillingServices | None = None,
) -> FastAPI:
    """Build the app. Tests pass explicit settings/services."""
    settings = settings or default_settings
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        services.admission.close()

    app = FastAPI(title="QueryStudio Billing", lifespan=lifespan)
    app.state.services = services

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    register_webhook_routes(app)
    register_realtime_routes(app)
    app.include_router(entitlement_router)

    install_security_middleware(app, settings.cors_allowed_origins)
    return app


app = create_app()


def main(argv: list[str] | None = None) -> None:
    import uvicorn

    parser = argparse.ArgumentParser(
        prog="billing.serve",
        description="Run the QueryStudio billing service",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind address")
    parser.add_argument("--port", type=int, default=8080, help="Listen port")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=default_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("billing.serve:app", host=args.host, port=args.port)


if __name__ == "__main__":
    main()
