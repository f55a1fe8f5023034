"""
CleanBook - cleaning subscriptions, bookings and payment reconciliation.

create_app() wires routers, CORS, correlation IDs and the domain error handler.
The lifespan starts the task processor and stops it again on shutdown.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from cleanbook.api.health import APP_VERSION
from cleanbook.api.router import api_router
from cleanbook.config import get_settings
from cleanbook.database import dispose_engine
from cleanbook.errors import BookingServiceError
from cleanbook.utils.dedup import close_redis
from cleanbook.utils.logging import bound_correlation_id, configure_structured_logging

logger = logging.getLogger("cleanbook")

SHUTDOWN_GRACE_SECONDS = 10.0
DEV_ORIGINS = ("http://localhost:3000", "http://localhost:5173")

# Settings that degrade a feature rather than stop the app when empty
_OPTIONAL_SECRETS = (
    ("jwt_secret", "JWT_SECRET not set - tokens are checked against APP_SECRET_KEY instead."),
    ("stripe_webhook_secret", "STRIPE_WEBHOOK_SECRET not set - payment webhooks will be refused with 503."),
)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Honours an incoming X-Correlation-ID, or mints one, and echoes it back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        with bound_correlation_id(request.headers.get("X-Correlation-ID")) as cid:
            response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


async def booking_error_handler(request: Request, exc: BookingServiceError) -> JSONResponse:
    """Render domain errors as {"message", "code"} with the error's status code."""
    log = logger.error if exc.status_code >= 500 else logger.info
    log("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _warn_on_missing_secrets(settings) -> None:
    for attr, message in _OPTIONAL_SECRETS:
        if not getattr(settings, attr):
            logger.warning(message)


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.app_env,
            release=f"cleanbook@{APP_VERSION}",
            traces_sample_rate=0.1,
            send_default_pii=False,
        )
        logger.info("Sentry enabled for %s", settings.app_env)
    except Exception as e:
        logger.warning("Sentry not enabled: %s", str(e))


def _start_workers(settings) -> list[asyncio.Task]:
    if not settings.task_worker_enabled:
        logger.info("Task processor disabled (TASK_WORKER_ENABLED=false)")
        return []

    from cleanbook.workers.task_processor import run_task_processor
    logger.info("Starting task processor")
    return [asyncio.create_task(run_task_processor())]


async def _stop_workers(workers: list[asyncio.Task]) -> None:
    """Cancel workers; whatever is still running after the grace period is abandoned."""
    for worker in workers:
        worker.cancel()
    if not workers:
        return
    _, stragglers = await asyncio.wait(workers, timeout=SHUTDOWN_GRACE_SECONDS)
    if stragglers:
        logger.warning("%d worker(s) did not stop within %.0fs", len(stragglers), SHUTDOWN_GRACE_SECONDS)
        for worker in stragglers:
            worker.cancel()
        await asyncio.gather(*stragglers, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("CleanBook %s starting (env=%s)", APP_VERSION, settings.app_env)

    _warn_on_missing_secrets(settings)
    _init_sentry(settings)
    workers = _start_workers(settings)

    yield

    logger.info("CleanBook stopping %d worker(s)", len(workers))
    await _stop_workers(workers)
    await dispose_engine()
    await close_redis()
    logger.info("CleanBook stopped")


def _cors_origins(settings) -> list[str]:
    configured = [o.strip() for o in settings.allowed_origins.split(",") if o.strip()]
    origins = []
    for origin in (*DEV_ORIGINS, settings.app_base_url, *configured):
        if origin and origin not in origins:
            origins.append(origin)
    return origins


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level, settings.app_env)

    application = FastAPI(
        title="CleanBook",
        description="Cleaning subscriptions, bookings and payment reconciliation",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept", "Origin"],
    )
    # Added last so it wraps CORS and every response carries the ID
    application.add_middleware(CorrelationIdMiddleware)

    application.add_exception_handler(BookingServiceError, booking_error_handler)
    application.include_router(api_router)
    return application


app = create_app()
