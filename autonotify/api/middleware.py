from __future__ import annotations

import time
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from typing import Any

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from autonotify.core.logging import get_logger
from autonotify.core.metrics import record_request_latency
from autonotify.core.request_context import (
    reset_report_context,
    reset_request_id,
    set_report_context,
    set_request_id,
)
from autonotify.schemas.report import (
    Configuration,
    HandledState,
    ReportContext,
    RequestData,
    Severity,
    SeverityReason,
)
from autonotify.services import notifier

logger = get_logger("autonotify.request")

FRAMEWORK_NAME = "FastAPI"

DispatchFunction = Callable[[Request, RequestResponseEndpoint], Awaitable[Response]]


async def _notify_while_streaming(
    body_iterator: AsyncIterator[Any], request_notifier: notifier.Notifier, *raw_data: Any
) -> AsyncIterator[Any]:
    with request_notifier.auto_notify(*raw_data):
        async for chunk in body_iterator:
            yield chunk


def auto_notify_middleware(*raw_data: Any) -> DispatchFunction:
    """Build a dispatch function that reports unhandled exceptions, then re-raises them.

    Install it inside a layer that renders an error page for the client, such as
    Starlette's ``ServerErrorMiddleware``. The arguments can be any values the
    notifier understands; usually a ``Configuration``, which is also applied to
    the process-wide client for manual notifications.
    """
    for datum in raw_data:
        if isinstance(datum, Configuration):
            notifier.configure(datum)

    state = HandledState(
        severity_reason=SeverityReason.UNHANDLED_MIDDLEWARE_ERROR,
        original_severity=Severity.ERROR,
        unhandled=True,
        framework=FRAMEWORK_NAME,
    )
    bound_data = (*raw_data, state)

    async def dispatch(request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_data = RequestData.from_request(request)
        ctx = ReportContext(request_id=getattr(request.state, "request_id", None))
        ctx = notifier.start_session(ctx)
        ctx = notifier.attach_request_data(ctx, request_data)
        request.state.report_context = ctx
        report_context_token = set_report_context(ctx)

        # one notifier per request, bound to the request snapshot
        request_notifier = notifier.new(*bound_data, request_data)
        request_notifier.flush_sessions_on_repanic(False)
        try:
            with request_notifier.auto_notify(ctx, request_data):
                response = await call_next(request)
        finally:
            reset_report_context(report_context_token)

        # call_next returns once headers are ready; the body can still fail
        body_iterator = getattr(response, "body_iterator", None)
        if body_iterator is not None:
            response.body_iterator = _notify_while_streaming(body_iterator, request_notifier, ctx, request_data)
        return response

    return dispatch


class AutoNotifyMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: ASGIApp, raw_data: Sequence[Any] = ()) -> None:
        super().__init__(app, dispatch=auto_notify_middleware(*raw_data))


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        request_id_token = set_request_id(request_id)

        start = time.perf_counter()

        logger.info(
            "request.start",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
            },
        )

        try:
            response = await call_next(request)
        except Exception:
            duration_seconds = time.perf_counter() - start
            duration_ms = int(duration_seconds * 1000)
            logger.exception(
                "request.unhandled_exception",
                extra={
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": duration_ms,
                },
            )
            record_request_latency(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_seconds=duration_seconds,
            )
            reset_request_id(request_id_token)
            raise

        duration_seconds = time.perf_counter() - start
        duration_ms = int(duration_seconds * 1000)

        logger.info(
            "request.end",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )

        record_request_latency(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_seconds=duration_seconds,
        )

        response.headers["x-request-id"] = request_id
        reset_request_id(request_id_token)
        return response
