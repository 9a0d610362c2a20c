import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, HTTPException

from common.config import BridgeConfig
from common.errors import ConfigurationError
from common.logging_service import configure_logging, recent_sync_events
from calendar_sync import CalendarBridge

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    bridge: CalendarBridge = app.state.bridge
    try:
        await bridge.start()
    except ConfigurationError as e:
        # Fail fast: nothing syncs with missing credentials
        logger.error(f"Configuration error: {e}")
        raise
    try:
        yield
    finally:
        await bridge.stop()


def create_app(config: Optional[BridgeConfig] = None, bridge: Optional[CalendarBridge] = None) -> FastAPI:
    """
    Application factory. Served directly with:

        uvicorn main:create_app --factory --port 3000

    Without an explicit config, settings and logging come from the environment.
    """
    if config is None:
        config = BridgeConfig.from_env()
        configure_logging(config.log_level)
    app = FastAPI(title="Discord Calendar Sync", lifespan=lifespan)
    app.state.config = config
    app.state.bridge = bridge or CalendarBridge(config)

    @app.get("/")
    async def root():
        return {"status": "Discord Calendar Sync is running"}

    @app.get("/health")
    async def health_check():
        """
        Liveness plus last-known sync state.
        Returns component health, both mapping counts, queue depths and the
        most recent sync events.
        """
        report = app.state.bridge.health_report().to_dict()
        report["environment"] = app.state.config.environment
        report["recent_events"] = recent_sync_events(limit=10)
        return report

    @app.post("/sync/calendar")
    async def sync_calendar():
        """
        Run one Google Calendar → Discord reconciliation pass now.
        """
        try:
            logger.info("Starting calendar sync via API")
            result = await app.state.bridge.trigger_sync()
        except Exception as e:
            logger.error(f"Calendar sync failed: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        if result is None:
            return {
                "status": "skipped",
                "reason": "sync_already_in_progress",
                "message": "A calendar sync is already running. Try again later.",
            }
        return {
            "status": "completed" if result.success else "error",
            "result": result.to_dict(),
        }

    return app


if __name__ == "__main__":
    settings = BridgeConfig.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.health_check_port,
        log_level=settings.log_level.lower(),
    )
