from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing_engine.core.config import settings
from billing_engine.routers import billing, invoices, webhooks
from billing_engine.services.container import BillingServices, build_services

OPENAPI_TAGS = [
    {"name": "Invoices", "description": "Manage invoices and their lifecycle."},
    {"name": "Billing", "description": "Reconciled subscription state and billing history."},
    {"name": "Webhooks", "description": "Inbound payment provider events."},
]


def create_app(services: BillingServices | None = None) -> FastAPI:
    """Build the API around an explicitly constructed service graph."""
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.version,
        description=(
            "Invoice lifecycle and billing reconciliation API. "
            "Manage invoices, recurring schedules and provider billing events."
        ),
        openapi_tags=OPENAPI_TAGS,
    )

    services = services or build_services()
    app.state.services = services
    app.state.facade = services.facade
    app.state.reconciler = services.reconciler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Total-Count", "ETag"],
    )

    app.include_router(invoices.router, prefix="/v1/invoices", tags=["Invoices"])
    app.include_router(billing.router, prefix="/v1/billing", tags=["Billing"])
    app.include_router(webhooks.router, prefix="/v1/webhooks", tags=["Webhooks"])

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "app": settings.APP_NAME,
            "version": settings.version,
            "status": "running",
        }

    return app


app = create_app()
