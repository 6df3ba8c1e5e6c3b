# Ensure tests import the package from this checkout first.
import os
import sys

import httpx
import pytest

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from fastapi.testclient import TestClient  # noqa: E402

from hostproxy.registry import Registry  # noqa: E402
from hostproxy.server import create_app  # noqa: E402
from hostproxy.utils_tests.backend_mock import (  # noqa: E402
    API_DOMAIN,
    API_KEY,
    FakeBackend,
)


@pytest.fixture
def registry(tmp_path):
    store = Registry(tmp_path / "proxy.db")
    yield store
    store.close()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def app(registry, backend):
    return create_app(
        registry=registry,
        api_key=API_KEY,
        api_domain=API_DOMAIN,
        timeout=5,
        transport=httpx.MockTransport(backend),
    )


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def admin_headers():
    return {"host": API_DOMAIN, "authorization": f"Bearer {API_KEY}"}
