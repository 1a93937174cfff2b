import asyncio
import sys
import time
from contextlib import asynccontextmanager
from typing import Callable, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from gas_relayer.config import Settings, load_settings
from gas_relayer.db import Database
from gas_relayer.errors import StartupError, StartupErrorKind
from gas_relayer.obs import logger as obs_logger
from gas_relayer.obs.logger import log_event
from gas_relayer.obs.metrics import MetricRegistrationError, MetricRegistry
from gas_relayer.obs.middleware import RequestInstrumentationMiddleware
from gas_relayer.routes import router
from gas_relayer.shutdown import (
    FORCE_EXIT_MARGIN_SECONDS,
    CoordinatedServer,
    ShutdownCoordinator,
    bind_socket,
)
from gas_relayer.state import ApplicationState


VERSION = "0.1.0"


def create_app(state: ApplicationState) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_event("service_started", environment=state.settings.APP_ENVIRONMENT, version=VERSION)
        yield
        log_event("service_stopping")

    app = FastAPI(title="Gas Relayer", version=VERSION, lifespan=lifespan)
    app.state.app_state = state
    app.include_router(router)
    app.add_middleware(RequestInstrumentationMiddleware, metrics=state.metrics)
    return app


def build_registry(settings: Settings, registry_factory: Callable[..., MetricRegistry] = MetricRegistry) -> MetricRegistry:
    try:
        return registry_factory(prefix=settings.METRICS_PREFIX)
    except MetricRegistrationError as e:
        raise StartupError(StartupErrorKind.METRICS_REGISTRATION, str(e)) from e


async def run(
    settings: Settings,
    registry_factory: Callable[..., MetricRegistry] = MetricRegistry,
    database_factory: Callable = Database.connect,
    server_factory: Callable[[uvicorn.Config], uvicorn.Server] = CoordinatedServer,
    coordinator: Optional[ShutdownCoordinator] = None,
    started_at: Optional[float] = None,
) -> None:
    started_at = time.monotonic() if started_at is None else started_at
    # Registry first: a bad catalogue must abort before the DB or the port is touched
    metrics = build_registry(settings, registry_factory)
    db = await database_factory(settings, metrics)
    try:
        state = ApplicationState.create(settings, db, metrics, started_at=started_at)
        app = create_app(state)

        host, port = settings.listening_addr
        sock = bind_socket(host, port)
        config = uvicorn.Config(
            app,
            log_level=settings.LOG_LEVEL.lower(),
            access_log=False,
            timeout_graceful_shutdown=settings.SHUTDOWN_GRACE_SECONDS,
        )
        server = server_factory(config)
        coordinator = coordinator or ShutdownCoordinator(
            grace_period=settings.SHUTDOWN_GRACE_SECONDS + FORCE_EXIT_MARGIN_SECONDS
        )

        log_event("server_listening", host=host, port=port)
        await coordinator.serve(server, sockets=[sock])
    finally:
        await db.dispose()


def main() -> int:
    started_at = time.monotonic()
    load_dotenv()
    try:
        settings = load_settings()
        obs_logger.configure(settings.LOG_LEVEL)
        asyncio.run(run(settings, started_at=started_at))
    except StartupError as e:
        log_event("startup_failed", level="CRITICAL", kind=e.kind.value, error=e.message)
        return 1
    log_event("service_exited")
    return 0


if __name__ == "__main__":
    sys.exit(main())
