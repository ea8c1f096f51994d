import os

# Settings are read at import time, so they must be in place before loan_prepay loads
os.environ["RATE_LIMIT_DEFAULT"] = "10000/minute"
os.environ["RATE_LIMIT_EXPORT"] = "10000/minute"
os.environ.pop("API_KEY", None)

import pytest
from fastapi.testclient import TestClient

from loan_prepay import storage


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "loan.db"
    monkeypatch.setattr(storage, "DB_PATH", path)
    return path


@pytest.fixture
def client(db_path):
    from loan_prepay.api import app
    return TestClient(app)
