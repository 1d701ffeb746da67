"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB job store) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Lifespan is not run, so no MongoDB is needed."""
    return TestClient(app)

