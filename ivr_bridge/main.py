"""
FastAPI Application Entry Point
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ivr_bridge.api.v1.dependencies import ServiceContainer, build_container
from ivr_bridge.api.v1.routes import api_router
from ivr_bridge.core.config import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup:
    - Creates database tables
    - Starts the Redis notification relay when Redis fan-out is enabled

    Shutdown:
    - Stops the relay and disposes the database engine
    """
    container: ServiceContainer = app.state.container
    logger.info("Starting IVR Bridge...")

    await asyncio.to_thread(container.database.create_all)

    relay_task = None
    if container.relay is not None:
        relay_task = asyncio.create_task(container.relay.relay_forever())

    logger.info(f"IVR Bridge started (transfer_mode={container.settings.transfer_mode.value})")

    yield

    logger.info("Shutting down IVR Bridge...")
    if relay_task is not None:
        relay_task.cancel()
        try:
            await relay_task
        except asyncio.CancelledError:
            pass
        await container.relay.close()
    container.database.dispose()
    logger.info("IVR Bridge shutdown complete")


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    settings = container.settings if container else get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="IVR Bridge",
        description="AI call transfer and agent queue routing",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.container = container or build_container(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/")
    async def root():
        return {"message": "IVR Bridge API", "status": "running"}

    @app.get("/health")
    async def health_check():
        """Basic health status and notification fan-out details."""
        state = app.state.container
        return {
            "status": "healthy",
            "transfer_mode": state.settings.transfer_mode.value,
            "notifications": state.settings.notifications_backend if state.relay else "websocket",
            "agent_consoles": state.websockets.connection_count,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
