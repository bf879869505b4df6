"""
Shared fixtures: the Values API driven in-process, no sockets or certificates.
"""
import httpx
import pytest

import values_service


@pytest.fixture
def slow_delay(monkeypatch):
    """Shortens the slow route so batches of slow calls stay quick."""
    delay = 0.05
    monkeypatch.setattr(values_service, "SLOW_DELAY_SECONDS", delay)
    return delay


@pytest.fixture
def asgi_transport():
    return httpx.ASGITransport(app=values_service.app)
