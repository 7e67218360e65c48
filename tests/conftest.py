"""
Pytest configuration and shared fixtures.

Every test gets its own SQLite file and service container, and a fake SMS
API (httpx.MockTransport) that records each call so tests can assert the
transport was never reached for opted-out numbers.
"""

import json

import httpx
import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports so test settings are used
from optout_gate.config import Settings, get_settings
get_settings.cache_clear()

from optout_gate.main import create_app  # noqa: E402
from optout_gate.storage import (  # noqa: E402
    RecordStore,
    SqlRecordBackend,
    create_db_engine,
    create_session_factory,
    init_db,
)

SMS_API_BASE = "https://sms-api.test"
SERVICE_NUMBER = "447418317717"


class FakeSmsApi:
    """Stands in for the provider's SMS API and records every call."""

    def __init__(self):
        self.sent: list[dict] = []
        self.status = "0"
        self.error_text = "Throttled"
        self.fail_with = None
        self.numbers = [
            {"msisdn": SERVICE_NUMBER, "country": "GB", "type": "mobile-lvn", "features": ["SMS"]},
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail_with is not None:
            raise self.fail_with

        if request.url.path == "/sms/json":
            body = json.loads(request.content)
            self.sent.append(body)
            message = {"to": body["to"], "status": self.status}
            if self.status == "0":
                message["message-id"] = f"msg-{len(self.sent)}"
            else:
                message["error-text"] = self.error_text
            return httpx.Response(200, json={"message-count": "1", "messages": [message]})

        if request.url.path == "/account/numbers":
            return httpx.Response(200, json={"count": len(self.numbers), "numbers": self.numbers})

        return httpx.Response(404, json={"error": "not found"})

    @property
    def recipients(self) -> list[str]:
        return [body["to"] for body in self.sent]


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "DATABASE_URL": f"sqlite:///{tmp_path / 'optout.db'}",
        "LOG_LEVEL": "DEBUG",
        "SMS_API_BASE_URL": SMS_API_BASE,
        "BULK_SEND_DELAY_MS": 0,
        "VONAGE_API_KEY": None,
        "VONAGE_API_SECRET": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def mock_http_client(sms_api: FakeSmsApi) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(sms_api.handler), base_url=SMS_API_BASE)


@pytest.fixture
def sms_api() -> FakeSmsApi:
    return FakeSmsApi()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def records(tmp_path) -> RecordStore:
    """Record store on a fresh SQLite database."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'records.db'}")
    init_db(engine)
    store = RecordStore(SqlRecordBackend(create_session_factory(engine)))
    store.initialize()
    yield store
    engine.dispose()


@pytest.fixture
def client(settings, sms_api):
    """Test client on a fresh database with the fake SMS API."""
    app = create_app(settings, http_client=mock_http_client(sms_api))
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def configured_client(client):
    """Client with saved credentials and STOP/START rules on SERVICE_NUMBER."""
    response = client.post("/api/credentials", json={"apiKey": "key", "apiSecret": "secret"})
    assert response.status_code == 200

    response = client.post("/api/configs", json={"optoutNumber": SERVICE_NUMBER})
    assert response.status_code == 200
    client.config_id = response.json()["config"]["id"]
    return client
