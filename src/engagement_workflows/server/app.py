"""FastAPI app factory.

Endpoints are thin wrappers over :class:`WorkflowService`; engine errors are
mapped to HTTP statuses here.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from engagement_workflows import __version__
from engagement_workflows.engine.errors import (
    DependencyError,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
    WorkflowEngineError,
)
from engagement_workflows.engine.logging import configure_logging
from engagement_workflows.engine.service import WorkflowService, build_service
from engagement_workflows.server.config import ServerSettings
from engagement_workflows.server.workflow_router import router as workflow_router

logger = logging.getLogger(__name__)

# Stage gating reports 400, like any other rejected request.
_STATUS_BY_KIND: dict[str, int] = {
    ValidationError.kind: 400,
    NotFoundError.kind: 404,
    PreconditionFailed.kind: 400,
    DependencyError.kind: 502,
}


def _error_response(status_code: int, kind: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"error": {"kind": kind, "message": message}}
    )


def create_app(
    settings: ServerSettings | None = None, service: WorkflowService | None = None
) -> FastAPI:
    settings = settings or ServerSettings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Engagement Workflows",
        version=__version__,
        description="REST API over the template-driven workflow engine.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )

    app.state.settings = settings
    app.state.service = service or build_service(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(WorkflowEngineError)
    async def engine_error(request: Request, exc: WorkflowEngineError) -> JSONResponse:
        status_code = _STATUS_BY_KIND.get(exc.kind, 500)
        log = logger.warning if status_code >= 500 else logger.info
        log(
            "Request rejected",
            extra={"path": request.url.path, "kind": exc.kind, "status_code": status_code},
        )
        return _error_response(status_code, exc.kind, exc.message)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', '')}"
            for err in exc.errors()
        )
        return _error_response(400, ValidationError.kind, f"Invalid request: {details}")

    app.include_router(workflow_router, prefix="/api")
    return app
