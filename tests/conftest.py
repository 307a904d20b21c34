"""Shared fixtures for driver support assistant tests."""

import asyncio
import os

import pytest

# No real provider or relay credentials during tests
for _name in ("GROQ_API_KEY", "GROQ_CLOUD_API_KEY", "LIVEKIT_URL", "LIVEKIT_API_KEY",
              "LIVEKIT_API_SECRET", "DRIVER_SUPPORT_CONFIG"):
    os.environ.pop(_name, None)

from config import DriverSupportConfig, LiveKitConfig  # noqa: E402
from dialogue import DialogueSession  # noqa: E402
from gateway import NotConfigured, UpstreamError  # noqa: E402


class StubGateway:
    """Stands in for GroqChatGateway; records every history it is handed."""

    def __init__(self, reply=None, error=None, configured=True, delay=0.0):
        self.reply = reply
        self.error = error
        self.configured = configured
        self.delay = delay
        self.calls = []

    @property
    def is_configured(self):
        return self.configured

    async def complete(self, history, options=None):
        self.calls.append(tuple(history))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply

    async def health_check(self):
        return self.configured and self.error is None


@pytest.fixture
def session():
    return DialogueSession.create("You are a helpful Ola support agent.")


@pytest.fixture
def failing_gateway():
    return StubGateway(error=UpstreamError("Groq API error (503)", status_code=503))


@pytest.fixture
def unconfigured_gateway():
    return StubGateway(error=NotConfigured("GROQ_API_KEY is not set"), configured=False)


@pytest.fixture
def livekit_config():
    return LiveKitConfig(
        url="wss://example.livekit.cloud",
        api_key="APItestkey",
        api_secret="secret-secret-secret-secret-secret-42",
    )


@pytest.fixture
def make_client(monkeypatch):
    """Build a TestClient over server.app with injected services."""
    from fastapi.testclient import TestClient

    import server

    clients = []

    def _make(gateway=None, config=None):
        services = server.Services.build(
            config or DriverSupportConfig(),
            gateway=gateway or StubGateway(error=NotConfigured("no key"), configured=False),
        )
        monkeypatch.setattr(server, "services", services)
        client = TestClient(server.app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)
