"""
Orderflow - FastAPI application entrypoint
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

import orderflow.models  # noqa: F401  registers tables on Base.metadata
from orderflow.api import admin, health, kitchen, orders, reviews
from orderflow.core.config import get_settings
from orderflow.core.errors import OrderFlowError
from orderflow.core.redis_client import close_redis
from orderflow.db.database import Base, engine
from orderflow.middleware.idempotency import IdempotencyMiddleware
from orderflow.services.broadcast import build_broadcast_channel

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    await app.state.broadcast.start()
    logger.info("%s %s started (broadcast=%s)", settings.SERVICE_NAME, settings.SERVICE_VERSION, settings.BROADCAST_BACKEND)
    yield
    await app.state.broadcast.stop()
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title="Orderflow",
    description="Restaurant order lifecycle: payment confirmation, kitchen dispatch, live kitchen feed, order history.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)
app.state.broadcast = build_broadcast_channel()


@app.exception_handler(OrderFlowError)
async def orderflow_error_handler(request: Request, exc: OrderFlowError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(IdempotencyMiddleware)

if settings.METRICS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")

app.include_router(orders.router)
app.include_router(kitchen.router)
app.include_router(reviews.router)
app.include_router(admin.router)
app.include_router(health.router)


@app.get("/")
async def root():
    return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}
