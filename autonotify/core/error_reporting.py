from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.utils import event_from_exception

from autonotify.core.config import Settings
from autonotify.core.logging import get_logger
from autonotify.core.request_context import NO_REQUEST_ID, get_request_id
from autonotify.schemas.report import Configuration

logger = get_logger(__name__)

FLUSH_TIMEOUT_SECONDS = 2.0


def _normalized(values: Sequence[str]) -> set[str]:
    return {value.strip().lower() for value in values if value.strip()}


def _before_send(event: dict[str, Any], _hint: dict[str, Any]) -> dict[str, Any]:
    request_id = get_request_id()
    if request_id == NO_REQUEST_ID:
        return event
    event.setdefault("tags", {}).setdefault("request_id", request_id)
    event.setdefault("extra", {}).setdefault("request_id", request_id)
    return event


def error_reporting_configuration(settings: Settings) -> Configuration | None:
    """Translate application settings into a reporting client configuration.

    Returns ``None`` when reporting is disabled for this deployment.
    """
    enabled_environments = _normalized(settings.sentry_enabled_environments)
    environment = settings.environment.strip().lower()

    if not settings.sentry_dsn:
        logger.info("error_reporting.disabled", extra={"reason": "missing_dsn", "environment": environment})
        return None

    if environment not in enabled_environments:
        logger.info(
            "error_reporting.disabled",
            extra={
                "reason": "environment_not_enabled",
                "environment": environment,
                "enabled_environments": sorted(enabled_environments),
            },
        )
        return None

    release_stage = settings.sentry_environment or settings.environment
    logger.info(
        "error_reporting.enabled",
        extra={
            "environment": release_stage,
            "traces_sample_rate": settings.sentry_traces_sample_rate,
        },
    )
    return Configuration(
        dsn=settings.sentry_dsn,
        release_stage=release_stage,
        app_type=settings.app_name,
        app_version=settings.app_version,
        hostname=settings.hostname,
        project_packages=settings.error_reporting_project_packages,
        auto_capture_sessions=settings.error_reporting_auto_capture_sessions,
        synchronous=settings.error_reporting_synchronous,
        send_default_pii=settings.sentry_send_default_pii,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )


def init_client(configuration: Configuration) -> None:
    # sentry_sdk.init swaps the global client without shutting the old one down
    sentry_sdk.get_client().close(timeout=FLUSH_TIMEOUT_SECONDS)

    # Framework integrations stay off: the auto-notify middleware is the only
    # source of unhandled request events, and log records only become breadcrumbs.
    sentry_sdk.init(
        dsn=configuration.dsn,
        environment=configuration.release_stage,
        release=configuration.app_version,
        server_name=configuration.hostname,
        in_app_include=list(configuration.project_packages or []),
        send_default_pii=bool(configuration.send_default_pii),
        traces_sample_rate=configuration.traces_sample_rate,
        transport=configuration.transport,
        before_send=_before_send,
        default_integrations=False,
        auto_enabling_integrations=False,
        integrations=[LoggingIntegration(level=logging.INFO, event_level=None)],
    )
    logger.debug(
        "error_reporting.client.initialized",
        extra={
            "dsn": configuration.dsn,
            "release_stage": configuration.release_stage,
            "custom_transport": configuration.transport is not None,
        },
    )


def build_event(
    error: BaseException, *, mechanism_type: str, handled: bool
) -> tuple[dict[str, Any], dict[str, Any]]:
    event, hint = event_from_exception(
        error,
        client_options=sentry_sdk.get_client().options,
        mechanism={"type": mechanism_type, "handled": handled},
    )
    return event, hint


def capture_event(event: dict[str, Any], hint: dict[str, Any]) -> str | None:
    return sentry_sdk.capture_event(event, hint=hint)


def flush(timeout: float = FLUSH_TIMEOUT_SECONDS) -> None:
    sentry_sdk.flush(timeout=timeout)
