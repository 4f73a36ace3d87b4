"""Main FastAPI application."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_engine import __version__
from agent_engine.api.endpoints import router, shutdown_agent_service
from agent_engine.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    setup_logging()
    yield
    await shutdown_agent_service()
    logger.info("Agent service shut down")


app = FastAPI(
    title="Agent Engine",
    description=(
        "Conversational agent service that streams model replies, runs tool calls "
        "and keeps per-thread conversation history."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Conversation",
            "description": "Post messages to threads, cancel pending replies and manage thread history.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("agent_engine.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
