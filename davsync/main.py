"""
davsync Daemon - FastAPI Application
A local daemon that mirrors a WebDAV media library into a catalog and backs up
local media to the server.
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from davsync.api.middleware import register_middleware
from davsync.api.routes import all_routers
from davsync.config import config
from davsync.container import get_container

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting davsync daemon...")

    try:
        config.validate()
        container = get_container()
        await container.start()

        stats = container.db.get_stats()
        logger.info(
            f"Catalog: {stats['media_count']} item(s) in "
            f"{stats['selected_folder_count']} selected folder(s)"
        )
        logger.info("davsync daemon started successfully")

    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise
    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down davsync daemon...")
    await get_container().stop()
    logger.info("davsync daemon stopped")


# Create FastAPI app
app = FastAPI(
    title="davsync API",
    description="Local API for syncing a WebDAV media library and backing up local media",
    version="1.0.0",
    lifespan=lifespan
)

register_middleware(app)

for router in all_routers:
    app.include_router(router)


# Exception handlers
@app.exception_handler(ValueError)
async def value_error_handler(request, exc):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "detail": str(exc)}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "detail": str(exc)}
    )


def run() -> None:
    import uvicorn

    uvicorn.run(
        "davsync.main:app",
        host=config.API_HOST,
        port=config.API_PORT,
        reload=False,
        log_level=config.LOG_LEVEL.lower()
    )


# Entry point for running with uvicorn directly
if __name__ == "__main__":
    run()
