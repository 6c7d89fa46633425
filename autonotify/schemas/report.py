from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from starlette.requests import Request

DEFAULT_PARAMS_FILTERS = ["password", "secret", "authorization", "cookie"]


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class SeverityReason(str, Enum):
    HANDLED_ERROR = "handledError"
    HANDLED_PANIC = "handledPanic"
    UNHANDLED_ERROR = "unhandledError"
    UNHANDLED_MIDDLEWARE_ERROR = "unhandledErrorMiddleware"
    USER_SPECIFIED_SEVERITY = "userSpecifiedSeverity"
    USER_CALLBACK_SET_SEVERITY = "userCallbackSetSeverity"


@dataclass(frozen=True)
class HandledState:
    """How a reported error was detected and how severe it started out."""

    severity_reason: SeverityReason
    original_severity: Severity
    unhandled: bool
    framework: str = ""


class Configuration(BaseModel):
    """Settings for the error reporting client.

    Only fields set explicitly on a value take part in a merge, so applying
    ``Configuration(release_stage="prod")`` over an existing configuration leaves
    every other field alone.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    # The DSN carries both the API key and the endpoint events are delivered to.
    dsn: str | None = None
    release_stage: str | None = None
    notify_release_stages: list[str] | None = None
    app_type: str | None = None
    app_version: str | None = None
    hostname: str | None = None
    project_packages: list[str] | None = None
    params_filters: list[str] | None = None
    auto_capture_sessions: bool | None = None
    synchronous: bool | None = None
    send_default_pii: bool | None = None
    traces_sample_rate: float | None = None
    transport: Any = None

    def merge(self, other: Configuration) -> Configuration:
        return self.model_copy(update={name: getattr(other, name) for name in other.model_fields_set})

    def is_auto_capture_sessions(self) -> bool:
        return self.auto_capture_sessions is not False

    def should_notify(self) -> bool:
        if self.notify_release_stages is None:
            return True
        stage = (self.release_stage or "").strip().lower()
        return stage in {s.strip().lower() for s in self.notify_release_stages}

    def filtered_keys(self) -> set[str]:
        filters = self.params_filters if self.params_filters is not None else DEFAULT_PARAMS_FILTERS
        return {f.lower() for f in filters}


@dataclass
class Session:
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    handled_events: int = 0
    unhandled_events: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "started_at": self.started_at.isoformat(),
            "events": {"handled": self.handled_events, "unhandled": self.unhandled_events},
        }


@dataclass(frozen=True)
class RequestData:
    """Snapshot of an inbound request, taken before downstream handlers run."""

    method: str
    url: str
    path: str
    query_string: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, list[str]] = field(default_factory=dict)
    client_host: str | None = None

    @classmethod
    def from_request(cls, request: Request) -> RequestData:
        query_params = request.query_params
        return cls(
            method=request.method,
            url=str(request.url),
            path=request.url.path,
            query_string=request.url.query,
            headers=dict(request.headers),
            params={key: query_params.getlist(key) for key in query_params.keys()},
            client_host=request.client.host if request.client else None,
        )


@dataclass(frozen=True)
class ReportContext:
    request_id: str | None = None
    session: Session | None = None
    request: RequestData | None = None

    def with_session(self, session: Session) -> ReportContext:
        return replace(self, session=session)

    def with_request(self, request: RequestData) -> ReportContext:
        return replace(self, request=request)


@dataclass(frozen=True)
class User:
    id: str | None = None
    name: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class ErrorContext:
    """Where the error happened, e.g. the request path or job name."""

    name: str


@dataclass(frozen=True)
class GroupingHash:
    value: str


class MetaData(dict[str, dict[str, Any]]):
    """Extra diagnostics grouped into named tabs."""

    def add(self, tab: str, key: str, value: Any) -> None:
        self.setdefault(tab, {})[key] = value

    def update_tabs(self, other: dict[str, dict[str, Any]]) -> None:
        for tab, values in other.items():
            self.setdefault(tab, {}).update(values)
