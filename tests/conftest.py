from __future__ import annotations

import os
from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sentry_sdk.envelope import Envelope
from sentry_sdk.transport import Transport
from starlette.requests import Request

# --- Force test settings early (before app import) ---
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_LEVEL", "INFO")
os.environ.setdefault("JSON_LOGS", "false")
# Never deliver events from a developer's shell environment.
os.environ["SENTRY_DSN"] = ""

from autonotify.core import error_reporting  # noqa: E402
from autonotify.main import create_app  # noqa: E402
from autonotify.schemas.report import Configuration  # noqa: E402
from autonotify.services import notifier  # noqa: E402
from autonotify.services.sessions import SessionTracker  # noqa: E402

TEST_API_KEY = "166f5ad3590596f9aa8d601ea89af845"
TEST_DSN = f"https://{TEST_API_KEY}@errors.example.com/1"


class CapturingTransport(Transport):
    """Keeps every envelope the client hands over instead of sending it."""

    def __init__(self, options: dict[str, Any] | None = None) -> None:
        super().__init__(options)
        self.envelopes: list[Envelope] = []

    def capture_envelope(self, envelope: Envelope) -> None:
        self.envelopes.append(envelope)

    @property
    def events(self) -> list[dict[str, Any]]:
        events = []
        for envelope in self.envelopes:
            event = envelope.get_event()
            if event is not None:
                events.append(event)
        return events


def _build_request(
    path: str = "/ok",
    *,
    method: str = "GET",
    query_string: bytes = b"",
    headers: list[tuple[bytes, bytes]] | None = None,
) -> Request:
    return Request(
        {
            "type": "http",
            "http_version": "1.1",
            "method": method,
            "scheme": "http",
            "server": ("testserver", 80),
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": query_string,
            "headers": headers or [(b"host", b"testserver")],
            "client": ("127.0.0.1", 50000),
        }
    )


@pytest.fixture(autouse=True)
def _isolated_notifier(monkeypatch) -> Iterator[None]:
    monkeypatch.setattr(notifier, "config", Configuration())
    monkeypatch.setattr(notifier, "_tracker", SessionTracker())
    monkeypatch.setattr(notifier, "_before_notify_callbacks", [])
    yield
    error_reporting.init_client(Configuration())


@pytest.fixture()
def make_request():
    return _build_request


@pytest.fixture()
def transport() -> CapturingTransport:
    return CapturingTransport()


@pytest.fixture()
def sample_config(transport: CapturingTransport) -> Configuration:
    return Configuration(
        dsn=TEST_DSN,
        release_stage="test",
        app_type="foo",
        app_version="1.2.3",
        hostname="web1",
        project_packages=["autonotify"],
        transport=transport,
    )


@pytest.fixture()
def configured_transport(
    transport: CapturingTransport, sample_config: Configuration
) -> CapturingTransport:
    notifier.configure(sample_config)
    return transport


@pytest.fixture()
def client() -> Iterator[TestClient]:
    app = create_app()

    with TestClient(app) as c:
        yield c
