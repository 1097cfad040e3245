from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.orm import Session

from scrapedeck.api.analytics import router as analytics_router
from scrapedeck.api.errors import router as errors_router
from scrapedeck.api.jobs import router as jobs_router
from scrapedeck.api.notifications import router as notifications_router
from scrapedeck.api.products import router as products_router
from scrapedeck.api.realtime import router as realtime_router
from scrapedeck.api.templates import router as templates_router
from scrapedeck.api.websites import router as websites_router
from scrapedeck.core.celery_settings import is_test_env
from scrapedeck.core.config import require_settings, settings
from scrapedeck.core.errors import AppError, AppErrorType, get_error_handler
from scrapedeck.core.logging import configure_logging
from scrapedeck.core.sentry import init_sentry
from scrapedeck.db.session import get_db
from scrapedeck.services.realtime import RealtimeJobMonitor, connect_change_relay

HTTP_STATUS = {
    AppErrorType.JOB_NOT_FOUND: 404,
    AppErrorType.VALIDATION_ERROR: 400,
    AppErrorType.INVALID_URL: 400,
    AppErrorType.PERMISSION_ERROR: 403,
    AppErrorType.AUTHENTICATION_ERROR: 401,
    AppErrorType.RATE_LIMIT_ERROR: 429,
    AppErrorType.QUOTA_EXCEEDED: 429,
    AppErrorType.DATA_INTEGRITY_ERROR: 409,
    AppErrorType.SERVICE_UNAVAILABLE: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_sentry()
    if not is_test_env():
        require_settings(settings)

    # worker-side row changes arrive over Redis
    relay = connect_change_relay(listen=True)
    monitor = RealtimeJobMonitor()
    monitor.start_monitoring()
    app.state.monitor = monitor
    try:
        yield
    finally:
        monitor.stop_monitoring()
        if relay is not None:
            relay.stop()


app = FastAPI(title="ScrapeDeck API", version="0.1.0", lifespan=lifespan)
app.include_router(jobs_router)
app.include_router(templates_router)
app.include_router(products_router)
app.include_router(websites_router)
app.include_router(notifications_router)
app.include_router(analytics_router)
app.include_router(errors_router)
app.include_router(realtime_router)


@app.exception_handler(AppError)
def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    context = {"path": request.url.path, "method": request.method}
    caller = request.headers.get("x-user-id")
    if caller:
        context["user_id"] = caller.strip()
    get_error_handler().handle(exc, context)
    return JSONResponse(
        status_code=HTTP_STATUS.get(exc.type, 500),
        content={"ok": False, "error": jsonable_encoder(exc.to_dict(include_message=not settings.is_production))},
    )


class HealthResponse(BaseModel):
    ok: bool
    service: str
    version: str
    db_ok: bool


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    db_ok = False
    gen = get_db()
    try:
        db: Session = next(gen)
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception:
        db_ok = False
    finally:
        gen.close()

    return HealthResponse(ok=True, service="api", version=app.version, db_ok=db_ok)
