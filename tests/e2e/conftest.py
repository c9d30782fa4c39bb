"""
E2E fixtures for the model engine.

These tests need live databases (MongoDB, MySQL, PostgreSQL) reachable
with the usual MONGO_* / MYSQL_* / POSTGRES_* environment variables.
"""

import os
import socket
import time
from dataclasses import replace

import pytest

from datastore.model_engine.config import DatabaseKind, EngineConfig
from datastore.model_engine.engine import Engine
from datastore.model_engine.schema import build_models

from tests.conftest import STRUCTURE

E2E_ENABLED = os.environ.get("MODEL_ENGINE_E2E_TESTS", "0") == "1"

LIVE_DATABASES = [DatabaseKind.MONGODB, DatabaseKind.MYSQL, DatabaseKind.POSTGRES]


def wait_for_service(host: str, port: int, timeout: int = 30) -> bool:
    """Wait for a service to become available."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1):
                return True
        except OSError:
            time.sleep(1)
    return False


def _address(config: EngineConfig):
    if config.database == DatabaseKind.MONGODB:
        return "localhost", 27017
    if config.database == DatabaseKind.MYSQL:
        return config.mysql.host, config.mysql.port
    return config.postgres.host or "localhost", config.postgres.port


@pytest.fixture(params=LIVE_DATABASES, ids=lambda kind: kind.value)
def live_engine(request):
    """Engine on one live database, emptied before and after the test."""
    if not E2E_ENABLED:
        pytest.skip("E2E tests disabled. Set MODEL_ENGINE_E2E_TESTS=1 to enable.")
    config = replace(EngineConfig.from_env(), database=request.param)
    host, port = _address(config)
    if not wait_for_service(host, port):
        pytest.skip(f"{request.param.value} is not reachable on {host}:{port}")

    engine = Engine(config, build_models(STRUCTURE))

    def wipe():
        for name in ("Invoice", "Client"):
            engine.query(name).delete({"id": {"exists": True}})

    wipe()
    yield engine
    wipe()
    engine.close()
