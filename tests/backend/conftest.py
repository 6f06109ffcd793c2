from __future__ import annotations

import json
from collections.abc import Callable
from typing import Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.settings import Settings, load_settings

ISOLATED_ENV = {
    "PERSISTENCE_ENABLED": "false",
    "AUTH_ENABLED": "false",
    "META_PIXEL_ID": "",
    "META_ACCESS_TOKEN": "",
    "META_TEST_EVENT_CODE": "",
    "CHAT_WEBHOOK_SECRET": "",
    "PAYMENT_WEBHOOK_SECRET": "",
    "DEFAULT_EVENT_SOURCE_URL": "",
    "DEFAULT_CONTACT_PHONE": "",
}


class FakeMetaApi:
    """Records conversion API calls and answers them from a queue of status codes."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.statuses: list[int] = []
        self.fail_with: Optional[Callable[[httpx.Request], Exception]] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            raise self.fail_with(request)
        status_code = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status_code, json={"events_received": 1})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def events(self) -> list[dict]:
        return [json.loads(request.content)["data"][0] for request in self.requests]


def isolate_env(monkeypatch: pytest.MonkeyPatch, **overrides: str) -> None:
    monkeypatch.delenv("CLIENT_REF_START", raising=False)
    monkeypatch.delenv("CLIENT_REF_FORCE", raising=False)
    for key, value in {**ISOLATED_ENV, **overrides}.items():
        monkeypatch.setenv(key, value)


@pytest.fixture()
def meta_api() -> FakeMetaApi:
    return FakeMetaApi()


@pytest.fixture()
def settings(monkeypatch: pytest.MonkeyPatch) -> Settings:
    isolate_env(monkeypatch, META_PIXEL_ID="pixel-1", META_ACCESS_TOKEN="token-1")
    return load_settings()


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch) -> TestClient:
    isolate_env(monkeypatch)
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def delivering_client(monkeypatch: pytest.MonkeyPatch, meta_api: FakeMetaApi) -> TestClient:
    isolate_env(monkeypatch, META_PIXEL_ID="pixel-1", META_ACCESS_TOKEN="token-1")
    app = create_app(transport=meta_api.transport)
    return TestClient(app)


@pytest.fixture()
def make_client(monkeypatch: pytest.MonkeyPatch) -> Callable[..., TestClient]:
    def factory(transport: Optional[httpx.AsyncBaseTransport] = None, **env: str) -> TestClient:
        isolate_env(monkeypatch, **env)
        return TestClient(create_app(transport=transport))

    return factory
