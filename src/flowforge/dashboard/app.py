"""FastAPI application exposing the workflow engine over HTTP."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from flowforge._version import __version__
from flowforge.config.loader import DefinitionError
from flowforge.core.errors import AccessDeniedError, NotFoundError, PreconditionError
from flowforge.dashboard.routes import create_routes
from flowforge.dashboard.ws import WebSocketManager, create_ws_router

_log = logging.getLogger(__name__)


def create_app(forge: Any, recover: bool = False) -> FastAPI:
    """Build the API app around a ``FlowForge`` instance.

    With ``recover=True`` runs left pending or running by a previous
    process are re-driven in the background on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if recover:
            recovered = await forge.runs.recover(wait=False)
            if recovered:
                _log.info("Recovering %d interrupted run(s)", len(recovered))
        yield
        await forge.runs.wait_idle()

    app = FastAPI(
        title="FlowForge",
        description="Workflow run engine for multi-agent pipelines",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.forge = forge

    ws_manager = WebSocketManager()
    forge.event_bus.subscribe(ws_manager.on_run_event)
    app.state.ws_manager = ws_manager

    _register_error_handlers(app)
    app.include_router(create_routes(forge))
    app.include_router(create_ws_router(ws_manager))
    return app


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(DefinitionError)
    async def definition_error(request: Request, exc: DefinitionError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(AccessDeniedError)
    async def access_denied(request: Request, exc: AccessDeniedError):
        _log.info("Denied %s on %s for %s", exc.action, exc.workflow_id, exc.actor or "anonymous")
        return JSONResponse(status_code=403, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def not_found(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(PreconditionError)
    async def precondition_failed(request: Request, exc: PreconditionError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})
