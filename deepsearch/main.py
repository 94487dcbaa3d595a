"""Main FastAPI application."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deepsearch import __version__
from deepsearch.api.endpoints import router
from deepsearch.services.channel import get_channel_manager
from deepsearch.utils.logging import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(f"DeepSearch {__version__} starting")
    yield
    await get_channel_manager().shutdown()


app = FastAPI(
    title="DeepSearch",
    description=(
        "A multi-step research assistant that decomposes questions, searches the web "
        "and streams a cited research brief over a WebSocket session channel."
    ),
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Sessions", "description": "Create research sessions and manage their history."},
        {"name": "Schedules", "description": "Background tasks that notify a session's connections."},
        {"name": "Health", "description": "Service health monitoring and status checks."},
    ],
)

# Browser clients connect from other origins during development
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("deepsearch.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
