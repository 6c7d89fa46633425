# autonotify/main.py
from __future__ import annotations

from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from autonotify.api.middleware import AutoNotifyMiddleware, RequestIDMiddleware
from autonotify.api.routers.health import router as health_router
from autonotify.core.config import Settings, settings
from autonotify.core.error_reporting import error_reporting_configuration
from autonotify.core.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _error_response_payload(
    *,
    message: str,
    code: str,
    status: int,
    details: Any | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {
            "message": message,
            "code": code,
            "status": status,
        }
    }
    if details is not None:
        payload["error"]["details"] = details
    return payload


def create_app(
    *,
    logging_replace_handlers: bool | None = None,
    app_settings: Settings | None = None,
) -> FastAPI:
    app_settings = app_settings or settings
    if logging_replace_handlers is None:
        logging_replace_handlers = app_settings.environment.lower() != "test"

    configure_logging(
        level=app_settings.log_level,
        json_logs=app_settings.json_logs,
        replace_handlers=logging_replace_handlers,
    )
    reporting_configuration = error_reporting_configuration(app_settings)

    logger.info(
        "app.startup",
        extra={
            "app_name": app_settings.app_name,
            "environment": app_settings.environment,
            "json_logs": app_settings.json_logs,
            "error_reporting_enabled": reporting_configuration is not None,
        },
    )

    app = FastAPI(title=app_settings.app_name)
    # Starlette's ServerErrorMiddleware stays outermost and renders the 500 page
    # for exceptions the auto-notify middleware re-raises.
    app.add_middleware(
        AutoNotifyMiddleware,
        raw_data=(reporting_configuration,) if reporting_configuration is not None else (),
    )
    app.add_middleware(RequestIDMiddleware)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        request_id = getattr(request.state, "request_id", "-")
        detail = exc.detail
        message = detail if isinstance(detail, str) else "request failed"
        details = None if isinstance(detail, str) else jsonable_encoder(detail)
        request_context = {
            "request_id": request_id,
            "method": request.method,
            "path": str(request.url.path),
            "status_code": exc.status_code,
            "internal_error_code": "http_error",
        }

        if exc.status_code >= 500:
            logger.error(
                "http.exception.server", extra={**request_context, "event_name": "http.exception.server"}
            )

        return JSONResponse(
            status_code=exc.status_code,
            content=_error_response_payload(
                message=message,
                code="http_error",
                status=exc.status_code,
                details=details,
            ),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        request_id = getattr(request.state, "request_id", "-")
        logger.info(
            "request.validation_error",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": str(request.url.path),
                "status_code": 422,
                "internal_error_code": "validation_error",
                "event_name": "request.validation_error",
            },
        )
        return JSONResponse(
            status_code=422,
            content=_error_response_payload(
                message="validation error",
                code="validation_error",
                status=422,
                details=jsonable_encoder(exc.errors()),
            ),
        )

    app.include_router(health_router)

    return app


app = create_app()
