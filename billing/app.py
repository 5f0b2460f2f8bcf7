import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from billing.api import routes_health, routes_reports, routes_subscription, routes_webhook
from billing.core.config import settings
from billing.core.exceptions import BillingError
from billing.core.logging_config import configure_logging
from billing.db import session
from billing.redis import close_redis
from billing.workers.report_scheduler import report_scheduler

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    if settings.ENV == "development":
        await session.init_db()

    scheduler_task = None
    if settings.REPORT_SCHEDULER_ENABLED:
        scheduler_task = asyncio.create_task(report_scheduler.run_forever())
        logger.info("report scheduler started")
    yield
    if scheduler_task is not None:
        scheduler_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler_task
    await close_redis()
    await session.dispose_db()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.PROJECT_VERSION,
        description="Subscription webhooks and periodic reports with an idempotent event ledger",
        lifespan=lifespan,
    )

    for module in (routes_health, routes_webhook, routes_reports, routes_subscription):
        app.include_router(module.router, prefix=settings.API_V1_PREFIX)

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, ex: BillingError):
        if ex.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {ex.message}")
        return JSONResponse(status_code=ex.status_code, content={"error": ex.message})

    @app.get("/")
    async def root():
        return {"message": "Subscription billing backend is running"}
    return app


app = create_app()
