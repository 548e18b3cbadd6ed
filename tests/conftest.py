from __future__ import annotations

from collections.abc import Iterator
from typing import Any

import pytest
from fastapi.testclient import TestClient
from support import Clock, FakeEmailSender, FakeHttpClient, FakeLLMAdapter, Seed

from taskflow_api.app.memory_store import build_memory_stores
from taskflow_api.app.settings import Settings
from taskflow_api.app.storage import StoreHandle
from taskflow_api.main import create_app


@pytest.fixture
def stores() -> StoreHandle:
    return build_memory_stores()


@pytest.fixture
def seed(stores: StoreHandle) -> Seed:
    return Seed(stores)


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def http_client() -> FakeHttpClient:
    return FakeHttpClient()


@pytest.fixture
def llm_adapter() -> FakeLLMAdapter:
    return FakeLLMAdapter()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="",
        app_base_url="https://app.example.com",
        cron_secret="",
        ai_assign_cap=5,
    )


@pytest.fixture
def client(
    stores: StoreHandle,
    settings: Settings,
    email_sender: FakeEmailSender,
    http_client: FakeHttpClient,
    llm_adapter: FakeLLMAdapter,
) -> Iterator[TestClient]:
    app = create_app(
        stores=stores,
        settings_override=settings,
        email_sender=email_sender,
        http_client=http_client,
        llm_adapter=llm_adapter,
    )
    with TestClient(app) as test_client:
        yield test_client


def as_user(user_id: str) -> dict[str, str]:
    return {"X-User-Id": user_id}


@pytest.fixture
def headers() -> Any:
    return as_user
