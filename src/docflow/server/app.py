"""FastAPI app factory.

Endpoints are thin wrappers over the workflow engine: definitions come from a
workflow store, runs are driven by a shared runner.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docflow import __version__
from docflow.engine.config import EngineSettings
from docflow.engine.errors import (
    InvalidContextError,
    InvalidStateError,
    RunNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from docflow.engine.workflow.controller import build_runner
from docflow.engine.workflow.handlers import ActionHandlerRegistry
from docflow.engine.workflow.run_state import RunStore
from docflow.engine.workflow.storage import JsonWorkflowStore, WorkflowCatalog
from docflow.server.config import ServerSettings
from docflow.server.router import router
from docflow.server.run_manager import RunManager

logger = logging.getLogger(__name__)

_ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (WorkflowNotFoundError, 404),
    (RunNotFoundError, 404),
    (WorkflowValidationError, 422),
    (InvalidContextError, 422),
    (InvalidStateError, 409),
]


def create_app(
    *,
    settings: EngineSettings | None = None,
    server_settings: ServerSettings | None = None,
    registry: ActionHandlerRegistry | None = None,
    workflow_store: WorkflowCatalog | None = None,
    run_store: RunStore | None = None,
) -> FastAPI:
    settings = settings or EngineSettings()
    server_settings = server_settings or ServerSettings()
    runs = RunManager(build_runner(settings, registry=registry, store=run_store))

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        runs.close()

    app = FastAPI(
        title="docflow",
        version=__version__,
        description="Document workflow definitions, runs and run control.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.server_settings = server_settings
    app.state.runs = runs
    app.state.workflows = workflow_store or JsonWorkflowStore(settings.workflow_dir)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=server_settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    for exc_type, status_code in _ERROR_STATUS:
        app.add_exception_handler(exc_type, _error_handler(status_code))

    app.include_router(router, prefix="/api")
    return app


def _error_handler(status_code: int) -> Callable[[Request, Exception], Awaitable[JSONResponse]]:
    async def handle(request: Request, exc: Exception) -> JSONResponse:
        logger.info(
            "Request rejected",
            extra={"path": request.url.path, "status_code": status_code, "error": str(exc)},
        )
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handle
