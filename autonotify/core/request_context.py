from __future__ import annotations

from contextvars import ContextVar, Token
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from autonotify.schemas.report import ReportContext

NO_REQUEST_ID = "-"

_request_id_ctx: ContextVar[str] = ContextVar("request_id", default=NO_REQUEST_ID)
_report_context_ctx: ContextVar[ReportContext | None] = ContextVar("report_context", default=None)


def set_request_id(request_id: str) -> Token[str]:
    return _request_id_ctx.set(request_id)


def get_request_id() -> str:
    return _request_id_ctx.get()


def reset_request_id(token: Token[str]) -> None:
    _request_id_ctx.reset(token)


def set_report_context(context: ReportContext) -> Token[ReportContext | None]:
    return _report_context_ctx.set(context)


def get_report_context() -> ReportContext | None:
    return _report_context_ctx.get()


def reset_report_context(token: Token[ReportContext | None]) -> None:
    _report_context_ctx.reset(token)
