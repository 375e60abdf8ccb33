import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from feishu_channel.configuration.config import get_settings
from feishu_channel.configuration.di_container import DIContainer
from feishu_channel.infrastructure.adapters.primary.web.routers import feishu

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Feishu channel...")
    container: DIContainer = getattr(app.state, "container", None) or DIContainer(get_settings())
    app.state.container = container

    if not container.accounts():
        logger.warning("No Feishu accounts configured; set FEISHU_ACCOUNTS or FEISHU_APP_ID")
    await container.start()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await container.shutdown()


def create_app(container: DIContainer | None = None) -> FastAPI:
    app = FastAPI(
        title="Feishu Channel",
        description="Feishu/Lark chat adapter for multi-bot agent deployments.",
        version="0.1.0",
        lifespan=lifespan,
    )
    if container is not None:
        app.state.container = container

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "healthy"}

    app.include_router(feishu.router)

    return app
