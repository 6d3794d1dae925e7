# app/main.py
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.logging import configure_logging
import app.models  # noqa: F401  # force model registration

from app.api.v1.appointments import router as appointments_router
from app.api.v1.commission_roles import router as commission_roles_router
from app.api.v1.commissions import router as commissions_router
from app.api.v1.companies import router as companies_router
from app.api.v1.payments import router as payments_router
from app.api.v1.pcn_review import router as pcn_review_router
from app.api.v1.webhooks import router as webhooks_router


def create_application() -> FastAPI:
    configure_logging(settings.LOG_LEVEL)

    app = FastAPI(title="RevLedger API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    def root():
        return {"status": "ok", "service": "revledger", "environment": settings.ENVIRONMENT}

    # Routers
    app.include_router(webhooks_router, prefix="/api/v1")
    app.include_router(appointments_router, prefix="/api/v1")
    app.include_router(pcn_review_router, prefix="/api/v1")
    app.include_router(payments_router, prefix="/api/v1")
    app.include_router(commissions_router, prefix="/api/v1")
    app.include_router(commission_roles_router, prefix="/api/v1")
    app.include_router(companies_router, prefix="/api/v1")

    return app


app = create_application()
