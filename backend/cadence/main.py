from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cadence.core.config import settings
from cadence.core.database import init_db
from cadence.core.logging import configure_logging
from cadence.routers import invoices, plans, subscriptions

configure_logging()

OPENAPI_TAGS = [
    {"name": "Plans", "description": "Read the plan catalog offered by the payment gateway."},
    {"name": "Subscriptions", "description": "Create, change, cancel and resume subscriptions."},
    {"name": "Invoices", "description": "Display-ready invoices built from billing history."},
]


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    init_db()
    yield


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description=(
        "Recurring-billing subscription API. "
        "Manage plan subscriptions, frequency changes with carried-over credit, "
        "cancellation grace periods and invoices."
    ),
    openapi_tags=OPENAPI_TAGS,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(plans.router, prefix="/v1/plans", tags=["Plans"])
app.include_router(subscriptions.router, prefix="/v1/customers", tags=["Subscriptions"])
app.include_router(invoices.router, prefix="/v1/customers", tags=["Invoices"])


@app.get("/")
async def root() -> dict[str, str]:
    return {
        "app": settings.APP_NAME,
        "version": settings.version,
        "gateway": settings.PAYMENT_GATEWAY,
        "status": "running",
    }
