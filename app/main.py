"""FastAPI application entry point for the link resolver service.

This module configures the FastAPI application with middleware, lifecycle
management, error handling and route registration.

Application Lifecycle Diagram
=============================
::
    ┌──────────────────┐
    │ uvicorn startup  │
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ lifespan()       │
    │ init_db()        │
    │ manager.init()   │  settings, logger, click queue, geo client
    │ start_workers()  │  CLICK_WORKER_COUNT ingestion tasks
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ Serve HTTP       │  redirects enqueue clicks, workers persist them
    └────────┬─────────┘
             ▼
    ┌──────────────────┐
    │ lifespan()       │
    │ manager.cleanup()│  stop workers, drain queue, close geo client
    │ close_db()       │
    │ close_redis()    │
    └──────────────────┘

How to Use
===========
**Step 1 — Run with uvicorn**::
    uvicorn app.main:app --host 0.0.0.0 --port 8080

**Step 2 — Make API calls**::
    curl -X POST http://localhost:8080/api/shorten \
         -H "Content-Type: application/json" \
         -d '{"url": "https://example.com", "click_limit": 100}'

    curl -i http://localhost:8080/<code>
    curl http://localhost:8080/api/analytics/<code>

Key Behaviours
===============
- Database tables are created automatically on startup.
- Queued clicks are flushed before the database engine is disposed.
- StorageError becomes a 503 for every route.
- Prometheus metrics are exposed at /metrics.

Configuration:
    The app uses environment variables for configuration.
    See app/config.py for all available settings.
"""

__all__ = ["app"]

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from app.config import get_settings
from app.database import close_db, init_db
from app.dependencies import _service_manager
from app.exceptions import StorageError
from app.redis import close_redis
from app.routes import router

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup
    await init_db()
    await _service_manager.initialize()
    _service_manager.start_workers()
    yield
    # Shutdown: workers drain the click queue before the engine goes away
    await _service_manager.cleanup()
    await close_db()
    await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Short link resolution with click analytics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": "Storage temporarily unavailable"})


Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_respect_env_var=False,
).instrument(app).expose(app)

app.include_router(router)
