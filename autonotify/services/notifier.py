"""Error reporting client facade.

Module-level functions work against one process-wide configuration, session
tracker and callback list; ``Notifier`` instances take all of these explicitly
and bind extra values (users, metadata, request snapshots, severity) to every
report they send.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Any

from starlette.requests import Request

from autonotify.core import error_reporting
from autonotify.core.logging import get_logger, redact_sensitive_data
from autonotify.core.metrics import record_error_report
from autonotify.schemas.report import (
    Configuration,
    ErrorContext,
    GroupingHash,
    HandledState,
    MetaData,
    ReportContext,
    RequestData,
    Severity,
    SeverityReason,
    User,
)
from autonotify.services.sessions import SessionTracker

logger = get_logger(__name__)

BeforeNotifyCallback = Callable[[dict[str, Any], Configuration], None]

DEFAULT_MECHANISM = "autonotify"

HANDLED_ERROR_STATE = HandledState(
    severity_reason=SeverityReason.HANDLED_ERROR,
    original_severity=Severity.WARNING,
    unhandled=False,
)
AUTO_NOTIFY_STATE = HandledState(
    severity_reason=SeverityReason.HANDLED_PANIC,
    original_severity=Severity.ERROR,
    unhandled=True,
)
RECOVER_STATE = HandledState(
    severity_reason=SeverityReason.HANDLED_PANIC,
    original_severity=Severity.WARNING,
    unhandled=False,
)


@dataclass
class _ReportData:
    config: Configuration
    state: HandledState | None = None
    severity: Severity | None = None
    context: ReportContext | None = None
    request: RequestData | None = None
    user: User | None = None
    error_context: str | None = None
    grouping_hash: str | None = None
    metadata: MetaData = field(default_factory=MetaData)


def _collect(config: Configuration, raw_data: tuple[Any, ...]) -> _ReportData:
    data = _ReportData(config=config)
    for datum in raw_data:
        if isinstance(datum, Configuration):
            data.config = data.config.merge(datum)
        elif isinstance(datum, HandledState):
            data.state = datum
        elif isinstance(datum, Severity):
            data.severity = datum
        elif isinstance(datum, ReportContext):
            data.context = datum
        elif isinstance(datum, RequestData):
            data.request = datum
        elif isinstance(datum, Request):
            data.request = RequestData.from_request(datum)
        elif isinstance(datum, User):
            data.user = datum
        elif isinstance(datum, ErrorContext):
            data.error_context = datum.name
        elif isinstance(datum, GroupingHash):
            data.grouping_hash = datum.value
        elif isinstance(datum, MetaData):
            data.metadata.update_tabs(datum)

    if data.request is None and data.context is not None:
        data.request = data.context.request
    return data


def _request_payload(request: RequestData, filtered_keys: set[str]) -> dict[str, Any]:
    return {
        "url": request.url,
        "method": request.method,
        "headers": redact_sensitive_data(dict(request.headers), filtered_keys),
        "query_string": request.query_string,
    }


def _user_payload(user: User) -> dict[str, str]:
    fields = {"id": user.id, "username": user.name, "email": user.email}
    return {key: value for key, value in fields.items() if value}


class Notifier:
    def __init__(
        self,
        config: Configuration,
        *raw_data: Any,
        tracker: SessionTracker | None = None,
        callbacks: list[BeforeNotifyCallback] | tuple[BeforeNotifyCallback, ...] = (),
    ) -> None:
        self.config = config
        for datum in raw_data:
            if isinstance(datum, Configuration):
                self.config = self.config.merge(datum)
        self.raw_data = raw_data
        self.tracker = tracker if tracker is not None else SessionTracker()
        self.callbacks = list(callbacks)
        self._flush_sessions_on_repanic = True

    def flush_sessions_on_repanic(self, enabled: bool) -> None:
        """Whether ``auto_notify`` flushes session data before re-raising."""
        self._flush_sessions_on_repanic = enabled

    def notify(self, error: BaseException | None, *raw_data: Any) -> str | None:
        """Report a handled error. Returns the event id when the client accepted it."""
        if error is None:
            logger.error("error_reporting.not_notified", extra={"reason": "missing_error"})
            return None
        return self._report_safely(error, raw_data, default_state=HANDLED_ERROR_STATE)

    @contextmanager
    def auto_notify(self, *raw_data: Any) -> Iterator[None]:
        """Report any exception raised in the block, then re-raise it unchanged."""
        try:
            yield
        except Exception as exc:
            self._report_safely(exc, raw_data, default_state=AUTO_NOTIFY_STATE)
            if self._flush_sessions_on_repanic:
                self._flush_sessions_safely()
            raise

    @contextmanager
    def recover(self, *raw_data: Any) -> Iterator[None]:
        """Report any exception raised in the block and suppress it."""
        try:
            yield
        except Exception as exc:
            self._report_safely(exc, raw_data, default_state=RECOVER_STATE)

    def _report_safely(
        self, error: BaseException, raw_data: tuple[Any, ...], *, default_state: HandledState
    ) -> str | None:
        try:
            return self._report(error, raw_data, default_state=default_state)
        except Exception:
            logger.exception(
                "error_reporting.failed",
                extra={"error_class": type(error).__name__},
            )
            record_error_report(
                severity=default_state.original_severity.value,
                unhandled=default_state.unhandled,
                outcome="failed",
            )
            return None

    def _flush_sessions_safely(self) -> None:
        try:
            self.tracker.flush_sessions()
        except Exception:
            logger.exception("error_reporting.sessions.flush_failed")

    def _report(
        self, error: BaseException, raw_data: tuple[Any, ...], *, default_state: HandledState
    ) -> str | None:
        data = _collect(self.config, (*self.raw_data, *raw_data))
        config = data.config

        state = data.state
        if state is None:
            state = default_state
            if data.severity is not None:
                state = replace(
                    state,
                    severity_reason=SeverityReason.USER_SPECIFIED_SEVERITY,
                    original_severity=data.severity,
                )
        level = data.severity or state.original_severity

        if not config.should_notify():
            logger.info(
                "error_reporting.skipped",
                extra={
                    "reason": "release_stage_not_enabled",
                    "release_stage": config.release_stage,
                    "notify_release_stages": config.notify_release_stages,
                },
            )
            record_error_report(severity=level.value, unhandled=state.unhandled, outcome="skipped")
            return None

        event, hint = error_reporting.build_event(
            error,
            mechanism_type=state.framework.lower() or DEFAULT_MECHANISM,
            handled=not state.unhandled,
        )
        event["level"] = level.value

        filtered_keys = config.filtered_keys()
        tags = event.setdefault("tags", {})
        contexts = event.setdefault("contexts", {})
        for tab, values in data.metadata.items():
            contexts[tab] = redact_sensitive_data(values, filtered_keys)

        if state.framework:
            tags["framework"] = state.framework
        if config.app_type:
            tags["app_type"] = config.app_type
        if data.context is not None and data.context.request_id:
            tags["request_id"] = data.context.request_id

        request = data.request
        if request is not None:
            event["request"] = _request_payload(request, filtered_keys)
            contexts["request_params"] = redact_sensitive_data(request.params, filtered_keys)
            if request.client_host and config.send_default_pii:
                event["user"] = {"ip_address": request.client_host}
        if data.user is not None:
            event["user"] = _user_payload(data.user)

        error_context = data.error_context or (request.path if request is not None else None)
        if error_context:
            event["transaction"] = error_context
        if data.grouping_hash:
            event["fingerprint"] = [data.grouping_hash]

        for callback in self.callbacks:
            try:
                callback(event, config)
            except Exception:
                logger.warning(
                    "error_reporting.callback_failed",
                    exc_info=True,
                    extra={"callback": getattr(callback, "__name__", repr(callback))},
                )
                record_error_report(severity=level.value, unhandled=state.unhandled, outcome="dropped")
                return None

        session = self.tracker.get_session(data.context)
        if session is not None:
            self.tracker.record_event(session, unhandled=state.unhandled)
            event.setdefault("contexts", {})["session"] = session.to_payload()

        severity_reason = state.severity_reason
        if event.get("level") != level.value:
            severity_reason = SeverityReason.USER_CALLBACK_SET_SEVERITY
        event.setdefault("contexts", {})["severity"] = {
            "reason": severity_reason.value,
            "original_severity": state.original_severity.value,
            "unhandled": state.unhandled,
            "framework": state.framework,
        }

        event_id = error_reporting.capture_event(event, hint)
        if config.synchronous:
            error_reporting.flush()

        logger.info(
            "error_reporting.notified",
            extra={
                "event_id": event_id,
                "error_class": type(error).__name__,
                "severity": event.get("level"),
                "severity_reason": severity_reason.value,
                "unhandled": state.unhandled,
            },
        )
        record_error_report(severity=str(event.get("level")), unhandled=state.unhandled, outcome="sent")
        return event_id


config = Configuration()
_config_lock = threading.Lock()
_tracker = SessionTracker(flush_delivery=lambda: error_reporting.flush())
_before_notify_callbacks: list[BeforeNotifyCallback] = []


def configure(configuration: Configuration) -> Configuration:
    """Merge ``configuration`` into the process-wide settings and restart the client."""
    global config
    with _config_lock:
        config = config.merge(configuration)
        error_reporting.init_client(config)
        return config


def on_before_notify(callback: BeforeNotifyCallback) -> BeforeNotifyCallback:
    _before_notify_callbacks.append(callback)
    return callback


def start_session(context: ReportContext | None = None) -> ReportContext:
    context = context if context is not None else ReportContext()
    if not config.is_auto_capture_sessions():
        return context
    return _tracker.start_session(context)


def attach_request_data(context: ReportContext, request: Request | RequestData) -> ReportContext:
    if isinstance(request, Request):
        request = RequestData.from_request(request)
    return context.with_request(request)


def new(*raw_data: Any) -> Notifier:
    return Notifier(config, *raw_data, tracker=_tracker, callbacks=_before_notify_callbacks)


def notify(error: BaseException | None, *raw_data: Any) -> str | None:
    return new().notify(error, *raw_data)


def auto_notify(*raw_data: Any):
    return new().auto_notify(*raw_data)


def recover(*raw_data: Any):
    return new().recover(*raw_data)
