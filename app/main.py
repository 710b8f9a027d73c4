import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.database import create_db_and_tables
from app.dependencies.services import get_invoice_template
from app.exceptions import OrderError
from app.jobs.order_expiry import run_once
from app.routes import admin_orders, health, orders, webhooks

logger = logging.getLogger(__name__)


async def _sweep_forever(interval: int):
    while True:
        try:
            await run_in_threadpool(run_once)
        except Exception as e:
            logger.exception(f"Pending order sweep failed: {e}")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Run DB creation ONLY in local
    if settings.ENV == "local":
        create_db_and_tables()

    get_invoice_template()

    sweeper = None
    if settings.ENABLE_EXPIRY_SWEEPER:
        sweeper = asyncio.create_task(_sweep_forever(settings.EXPIRY_SWEEP_INTERVAL_SECONDS))

    yield

    if sweeper:
        sweeper.cancel()


app = FastAPI(title="Order & Payment API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(OrderError)
async def order_error_handler(request: Request, exc: OrderError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder({"detail": exc.message, "code": exc.code, **exc.extra}),
    )


app.include_router(orders.router, prefix="/orders", tags=["Orders"])
app.include_router(webhooks.router, prefix="/webhook", tags=["Payment Webhooks"])
app.include_router(admin_orders.router, prefix="/admin", tags=["Admin Orders"])
app.include_router(health.router, prefix="/health", tags=["Health"])


@app.get("/")
def root():
    return {
        "order_endpoints": [
            "/orders", "/orders/verify-payment", "/orders/payment-status",
            "/orders/{order_id}", "/orders/by-code/{order_code}",
            "/orders/{order_id}/cancel", "/orders/{order_id}/status",
            "/orders/pending/{pending_id}", "/orders/pending/{pending_id}/cancel",
        ],
        "webhook_endpoints": ["/webhook/payment-gateway"],
        "admin_endpoints": [
            "/admin/orders/stats", "/admin/payment-reviews",
            "/admin/payment-reviews/{review_id}/resolve", "/admin/orders/{order_id}/invoice",
        ],
    }
