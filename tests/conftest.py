import os
import sys

import pytest
from fastapi.testclient import TestClient

# Ensure the project packages and the test helpers are importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from ca_service.config import Settings
from ca_service.db import ConsentRegistry
from ca_service.main import create_app
from mydata_ca import ConsentSigner

from factories import CLIENT_ID, CLIENT_SECRET, ORG_CODE


@pytest.fixture
def settings(tmp_path):
    return Settings(
        env="test",
        db_path=str(tmp_path / "ca.db"),
        api_log_path=str(tmp_path / "logs" / "api_logs.csv"),
        ca_signing_key_path=str(tmp_path / "secrets" / "ca_signing_key.json"),
        token_rpm=60,
        log_level="WARNING",
        log_json=False,
    )


@pytest.fixture
def registry(settings):
    registry = ConsentRegistry(settings.db_path)
    registry.open()
    registry.add_organization({
        "org_code": ORG_CODE,
        "name": "Test Bank",
        "org_type": "01",
        "industry": "bank",
        "serial_num": "0001",
        "auth_type": "01",
    })
    registry.add_client(CLIENT_ID, CLIENT_SECRET, ORG_CODE)
    yield registry
    registry.close()


@pytest.fixture
def make_client(settings, registry):
    """Build a fresh app per test; the context manager runs startup and shutdown."""
    def _make(**overrides):
        for key, value in overrides.items():
            setattr(settings, key, value)
        app = create_app(settings, registry=registry, signer=ConsentSigner.generate(kid="test-key"))
        return TestClient(app)
    return _make


@pytest.fixture
def client(make_client):
    with make_client() as c:
        yield c
