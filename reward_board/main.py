from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from reward_board.api.router import api_router
from reward_board.core.config import Settings, get_settings
from reward_board.core.telemetry import configure_logging, setup_api_telemetry, shutdown_api_telemetry
from reward_board.services.repository import get_repository

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        yield
    finally:
        shutdown_api_telemetry(app, app.state.telemetry)
        await get_repository().close()
        get_repository.cache_clear()


async def log_listing_requests(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s -> %s in %.2fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started_at) * 1000.0,
    )
    return response


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(component="api")

    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.state.telemetry = setup_api_telemetry(application, settings)
    application.middleware("http")(log_listing_requests)
    application.include_router(api_router)
    return application


app = create_app()
