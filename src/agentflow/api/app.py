"""
Core API backend for agentflow.

This module exposes the query engine through a RESTful API used by the CLI and other frontends:
- **GET /health**  - liveness check.
- **POST /threads** - create a thread for a user.
- **GET /threads/{user_id}** - list a user's threads.
- **POST /query**   - answer a query, streamed as Server-Sent Events.
- **POST /tasks/{task_id}/cancel** - cancel a running remote task.
- **POST /threads/{thread_id}/cancel** - cancel the open remote task of a thread.
- **GET /intents**, **POST /intents** - read and extend the intent catalog.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from typing import (
    AsyncIterator,
    List,
)

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from agentflow.agent.agent_loop import (
    QueryEngine,
    build_engine,
)
from agentflow.api.models import (
    CancelResponse,
    IntentRequest,
    QueryRequest,
    ThreadRequest,
    ThreadResponse,
)
from agentflow.common import (
    AnsiColors,
    colored_print,
)
from agentflow.config import settings
from agentflow.core.events import EventChannel
from agentflow.core.schema import Intent

logger = logging.getLogger(__name__)

_engine: QueryEngine | None = None


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    """Build the engine and connect the MCP servers for the lifetime of the app."""
    global _engine  # pylint: disable=global-statement
    engine, local = build_engine(settings)
    await engine.memory.connect()
    await local.connect()
    _engine = engine
    try:
        yield
    finally:
        _engine = None
        await local.cleanup()
        await engine.toolset.remote.aclose()
        await engine.memory.disconnect()


app = FastAPI(
    title="agentflow API",
    version="0.1.0",
    description="agentflow query fulfillment API",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[f"http://localhost:{settings.API_PORT}"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine() -> QueryEngine:
    """Dependency returning the running engine."""
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine is not ready")
    return _engine


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.post("/threads", response_model=ThreadResponse, summary="Create a new thread")
async def create_thread(
    req: ThreadRequest, engine: QueryEngine = Depends(get_engine)
) -> ThreadResponse:
    if engine.memory.threads is None:
        raise HTTPException(status_code=501, detail="No thread memory configured")
    thread = await engine.memory.threads.create_thread(
        req.type, req.user_id, str(uuid.uuid4()), req.title
    )
    return ThreadResponse(**thread.model_dump(include={"user_id", "thread_id", "title", "type"}))


@app.get("/threads/{user_id}", response_model=List[ThreadResponse], summary="List threads")
async def list_threads(
    user_id: str, engine: QueryEngine = Depends(get_engine)
) -> List[ThreadResponse]:
    if engine.memory.threads is None:
        return []
    threads = await engine.memory.threads.list_threads(user_id)
    return [
        ThreadResponse(**t.model_dump(include={"user_id", "thread_id", "title", "type"}))
        for t in threads
    ]


@app.post("/query", summary="Answer a query as an event stream")
async def query(req: QueryRequest, engine: QueryEngine = Depends(get_engine)) -> StreamingResponse:
    """Stream the engine's events; a disconnecting client cancels the query."""
    channel = EventChannel(engine.stream_query(req.message, req.user_id, req.thread_id, req.type))

    async def body() -> AsyncIterator[str]:
        async for event in channel:
            yield event.to_sse()

    return StreamingResponse(
        body(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post("/tasks/{task_id}/cancel", response_model=CancelResponse, summary="Cancel a remote task")
async def cancel_task(task_id: str, engine: QueryEngine = Depends(get_engine)) -> CancelResponse:
    engine.cancel_task(task_id)
    return CancelResponse(task_id=task_id, canceled=True)


@app.post(
    "/threads/{thread_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel the open remote task of a thread",
)
async def cancel_thread(
    thread_id: str, engine: QueryEngine = Depends(get_engine)
) -> CancelResponse:
    task_id = engine.cancel_thread(thread_id)
    return CancelResponse(task_id=task_id, canceled=task_id is not None)


@app.get("/intents", response_model=List[Intent], summary="List the intent catalog")
async def list_intents(engine: QueryEngine = Depends(get_engine)) -> List[Intent]:
    if engine.memory.intents is None:
        return []
    return await engine.memory.intents.list_intents()


@app.post("/intents", response_model=Intent, summary="Add or replace an intent")
async def save_intent(req: IntentRequest, engine: QueryEngine = Depends(get_engine)) -> Intent:
    if engine.memory.intents is None:
        raise HTTPException(status_code=501, detail="No intent memory configured")
    intent = Intent(**req.model_dump(exclude_none=True))
    await engine.memory.intents.save_intent(intent)
    return intent


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in dev docker-compose).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting agentflow API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug("API settings: %s", settings.model_dump())

    colored_print(f"agentflow API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "agentflow.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m agentflow.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
