"""FastAPI application factory for the intake service."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from .api import error_status, router
from .errors import UploadError

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Build and configure the FastAPI application."""
    logging.basicConfig(level=logging.INFO)
    app = FastAPI(
        title="File Intake Service",
        description="Validates, names, transforms and stores uploaded files and images.",
        version="0.1.0",
    )
    app.include_router(router)

    @app.exception_handler(UploadError)
    async def handle_upload_error(request: Request, exc: UploadError) -> JSONResponse:
        """Translate intake errors into JSON error responses."""
        status_code = error_status(exc)
        context = {"path": request.url.path, "kind": exc.kind.value, "detail": exc.message}
        if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
            logger.error("Upload failed", extra=context, exc_info=exc)
        else:
            logger.warning("Upload rejected", extra=context)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    return app


app = create_app()
