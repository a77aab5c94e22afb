import logging
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request

from masix.api.health import router as health_router
from masix.api.whatsapp import router as whatsapp_router
from masix.config.loader import ConfigLoader
from masix.config.settings import get_settings
from masix.logging.setup import configure_logging
from masix.monitoring.metrics import HTTP_LATENCY
from masix.persistence.migrations import run_migrations
from masix.persistence.store import Store

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()

    # Config and schema problems are fatal: the runtime never starts half-configured.
    try:
        config = ConfigLoader(settings.config_path).load_and_validate()
    except Exception as exc:
        logger.error("Config validation error: %s", exc)
        raise

    try:
        run_migrations(settings.database_url)
    except Exception as exc:
        logger.error("DB migration failed: %s", exc, exc_info=True)
        raise

    from masix.services.runtime import Runtime

    store = Store.from_url(settings.database_url)
    runtime = Runtime(config, settings, store)
    app.state.store = store
    app.state.runtime = runtime
    await runtime.start()

    yield

    try:
        await runtime.stop()
    except Exception as exc:  # pragma: no cover
        logger.warning("Runtime stop error: %s", exc, exc_info=True)
    if store.engine is not None:
        store.engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)
    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        start = perf_counter()
        response = await call_next(request)
        HTTP_LATENCY.labels(path=request.url.path, method=request.method).observe(perf_counter() - start)
        return response

    app.include_router(health_router)
    app.include_router(whatsapp_router)
    return app


app = create_app()
