from __future__ import annotations

import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from autonotify.core.logging import get_logger
from autonotify.core.metrics import record_session_started
from autonotify.schemas.report import ReportContext, Session

logger = get_logger(__name__)


@dataclass
class SessionWindow:
    """Aggregate counts for every session started since the last flush."""

    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    sessions_started: int = 0
    handled_events: int = 0
    unhandled_events: int = 0


class SessionTracker:
    def __init__(self, *, flush_delivery: Callable[[], None] | None = None) -> None:
        self._lock = threading.Lock()
        self._window = SessionWindow()
        self._flush_delivery = flush_delivery

    def start_session(self, context: ReportContext) -> ReportContext:
        session = Session()
        with self._lock:
            self._window.sessions_started += 1
        record_session_started()
        return context.with_session(session)

    def get_session(self, context: ReportContext | None) -> Session | None:
        if context is None:
            return None
        return context.session

    def record_event(self, session: Session, *, unhandled: bool) -> None:
        with self._lock:
            if unhandled:
                session.unhandled_events += 1
                self._window.unhandled_events += 1
            else:
                session.handled_events += 1
                self._window.handled_events += 1

    def flush_sessions(self) -> SessionWindow:
        with self._lock:
            window, self._window = self._window, SessionWindow()

        logger.info(
            "error_reporting.sessions.flushed",
            extra={
                "window_started_at": window.started_at.isoformat(),
                "sessions_started": window.sessions_started,
                "handled_events": window.handled_events,
                "unhandled_events": window.unhandled_events,
            },
        )
        if self._flush_delivery is not None:
            self._flush_delivery()
        return window
