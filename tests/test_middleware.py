from __future__ import annotations

import asyncio
import logging

import anyio
import pytest
from fastapi import FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from starlette.responses import PlainTextResponse, StreamingResponse

from autonotify.api.middleware import FRAMEWORK_NAME, AutoNotifyMiddleware, auto_notify_middleware
from autonotify.core import error_reporting
from autonotify.core.request_context import get_report_context
from autonotify.schemas.report import Configuration, HandledState, Severity, SeverityReason
from autonotify.services import notifier

MIDDLEWARE_SEVERITY = {
    "reason": "unhandledErrorMiddleware",
    "original_severity": "error",
    "unhandled": True,
    "framework": "FastAPI",
}


def crashy_handler():
    send_stream, receive_stream = anyio.create_memory_object_stream(1)
    receive_stream.close()
    send_stream.close()
    send_stream.send_nowait(1)


def _build_app(*raw_data) -> FastAPI:
    app = FastAPI()
    app.add_middleware(AutoNotifyMiddleware, raw_data=raw_data)

    @app.get("/ok")
    def _ok():
        return {"status": "ok"}

    @app.get("/crash")
    def _crash():
        crashy_handler()

    @app.get("/eggs")
    def _eggs():
        raise RuntimeError("eggs")

    @app.get("/stream")
    def _stream(fail: bool = True):
        def _chunks():
            yield b"a"
            if fail:
                raise RuntimeError("mid-stream")
            yield b"b"

        return StreamingResponse(_chunks(), media_type="text/plain")

    @app.get("/teapot")
    def _teapot():
        raise HTTPException(status_code=418, detail="short and stout")

    return app


def test_successful_request_is_returned_untouched_and_not_reported(configured_transport):
    with TestClient(_build_app()) as client:
        response = client.get("/ok")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert configured_transport.events == []


def test_http_exception_is_rendered_by_the_app_and_not_reported(configured_transport):
    with TestClient(_build_app()) as client:
        response = client.get("/teapot")

    assert response.status_code == 418
    assert configured_transport.events == []


def test_send_on_closed_stream_is_reported_then_reraised(configured_transport):
    with TestClient(_build_app()) as client:
        with pytest.raises(anyio.ClosedResourceError) as exc_info:
            client.get("/crash?foo=bar", headers={"Accept-Encoding": "gzip"})

    events = configured_transport.events
    assert len(events) == 1
    event = events[0]

    exception = event["exception"]["values"][-1]
    assert exception["type"] == "ClosedResourceError"
    assert exception.get("value", "") == str(exc_info.value)
    assert event["level"] == "error"
    assert event["contexts"]["severity"] == MIDDLEWARE_SEVERITY
    assert event["tags"]["framework"] == FRAMEWORK_NAME

    assert event["request"]["method"] == "GET"
    assert event["request"]["url"] == "http://testserver/crash?foo=bar"
    assert event["request"]["headers"]["accept-encoding"] == "gzip"
    assert event["contexts"]["request_params"] == {"foo": ["bar"]}
    assert event["transaction"] == "/crash"
    assert event["contexts"]["session"]["events"] == {"handled": 0, "unhandled": 1}


def test_configured_middleware_reports_eggs_to_configured_client(transport, sample_config):
    app = _build_app(sample_config)

    with TestClient(app) as client:
        with pytest.raises(RuntimeError, match="^eggs$"):
            client.get("/eggs")

    assert notifier.config.dsn == sample_config.dsn
    events = transport.events
    assert len(events) == 1
    event = events[0]
    assert event["exception"]["values"][-1]["type"] == "RuntimeError"
    assert event["exception"]["values"][-1]["value"] == "eggs"
    assert event["level"] == "error"
    assert event["contexts"]["severity"]["reason"] == "unhandledErrorMiddleware"
    assert event["tags"]["app_type"] == "foo"
    assert event["release"] == "1.2.3"
    assert event["server_name"] == "web1"


def test_outer_recovery_layer_still_renders_500(configured_transport):
    with TestClient(_build_app(), raise_server_exceptions=False) as client:
        response = client.get("/eggs")

    assert response.status_code == 500
    assert len(configured_transport.events) == 1


def test_dispatch_reraises_the_original_exception_object(configured_transport, make_request):
    dispatch = auto_notify_middleware()
    error = RuntimeError("eggs")

    async def _call_next(_request):
        raise error

    with pytest.raises(RuntimeError) as exc_info:
        asyncio.run(dispatch(make_request("/eggs"), _call_next))

    assert exc_info.value is error
    assert len(configured_transport.events) == 1


def test_dispatch_returns_downstream_response(configured_transport, make_request):
    dispatch = auto_notify_middleware()
    expected = PlainTextResponse("fine", status_code=202)

    async def _call_next(_request):
        return expected

    response = asyncio.run(dispatch(make_request(), _call_next))

    assert response is expected
    assert configured_transport.events == []


def test_builder_applies_configuration_values_in_order_and_ignores_others(transport):
    first = Configuration(release_stage="staging", transport=transport)
    second = Configuration(release_stage="prod", app_version="2.0.0")

    auto_notify_middleware("not-a-config", first, 42, second, {"release_stage": "ignored"})

    assert notifier.config.release_stage == "prod"
    assert notifier.config.app_version == "2.0.0"
    assert notifier.config.transport is transport


def test_builder_without_configuration_leaves_client_untouched(monkeypatch):
    configured = []
    monkeypatch.setattr(notifier, "configure", configured.append)

    auto_notify_middleware("extra", 1)

    assert configured == []


def test_session_is_started_before_request_data_and_visible_downstream(monkeypatch, configured_transport):
    calls = []
    original_start_session = notifier.start_session
    original_attach_request_data = notifier.attach_request_data

    def _start_session(ctx):
        calls.append("start_session")
        assert ctx.request is None
        return original_start_session(ctx)

    def _attach_request_data(ctx, request):
        calls.append("attach_request_data")
        assert ctx.session is not None
        return original_attach_request_data(ctx, request)

    monkeypatch.setattr(notifier, "start_session", _start_session)
    monkeypatch.setattr(notifier, "attach_request_data", _attach_request_data)

    seen = {}
    app = _build_app()

    @app.get("/inspect")
    def _inspect(request: Request):
        seen["state"] = request.state.report_context
        seen["context_var"] = get_report_context()
        return {"ok": True}

    with TestClient(app) as client:
        response = client.get("/inspect?q=1")

    assert response.status_code == 200
    assert calls == ["start_session", "attach_request_data"]
    ctx = seen["state"]
    assert ctx.session is not None
    assert ctx.request.path == "/inspect"
    assert ctx.request.params == {"q": ["1"]}
    assert seen["context_var"] == ctx
    assert get_report_context() is None


def test_building_twice_gives_equal_handled_states(monkeypatch, make_request):
    bound = []
    original_new = notifier.new

    def _new(*raw_data):
        bound.append(raw_data)
        return original_new(*raw_data)

    monkeypatch.setattr(notifier, "new", _new)

    async def _call_next(_request):
        return PlainTextResponse("ok")

    for _ in range(2):
        asyncio.run(auto_notify_middleware()(make_request(), _call_next))

    states = [next(datum for datum in raw_data if isinstance(datum, HandledState)) for raw_data in bound]
    assert states[0] == states[1] == HandledState(
        severity_reason=SeverityReason.UNHANDLED_MIDDLEWARE_ERROR,
        original_severity=Severity.ERROR,
        unhandled=True,
        framework=FRAMEWORK_NAME,
    )


def test_request_sessions_are_not_flushed_on_reraise(monkeypatch, configured_transport):
    flushed = []
    monkeypatch.setattr(notifier._tracker, "flush_sessions", lambda: flushed.append(True))

    with TestClient(_build_app()) as client:
        with pytest.raises(RuntimeError):
            client.get("/eggs")

    assert flushed == []
    assert len(configured_transport.events) == 1


def test_reporting_failure_does_not_replace_original_exception(monkeypatch, configured_transport, caplog):
    def _broken_capture(_event, _hint):
        raise ConnectionError("delivery down")

    monkeypatch.setattr(error_reporting, "capture_event", _broken_capture)

    with caplog.at_level(logging.ERROR, logger="autonotify.services.notifier"):
        with TestClient(_build_app()) as client:
            with pytest.raises(RuntimeError, match="^eggs$"):
                client.get("/eggs")

    failure = next(record for record in caplog.records if record.message == "error_reporting.failed")
    assert failure.error_class == "RuntimeError"
    assert configured_transport.events == []


def test_error_while_streaming_body_is_reported_then_reraised(configured_transport):
    with TestClient(_build_app()) as client:
        with pytest.raises(RuntimeError, match="^mid-stream$"):
            client.get("/stream")

    events = configured_transport.events
    assert len(events) == 1
    event = events[0]
    assert event["exception"]["values"][-1]["value"] == "mid-stream"
    assert event["contexts"]["severity"] == MIDDLEWARE_SEVERITY
    assert event["transaction"] == "/stream"
    assert event["contexts"]["session"]["events"] == {"handled": 0, "unhandled": 1}


def test_completed_stream_is_returned_untouched_and_not_reported(configured_transport):
    with TestClient(_build_app()) as client:
        response = client.get("/stream?fail=false")

    assert response.status_code == 200
    assert response.text == "ab"
    assert configured_transport.events == []
