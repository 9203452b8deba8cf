# paygate/conftest.py
import os
import tempfile

import pytest

# Settings are read at import time, so the test environment must be in place first
_DB_DIR = tempfile.mkdtemp(prefix="paygate-tests-")
os.environ["ENV"] = "test"
os.environ["SKIP_ENV_VALIDATION"] = "1"
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'paygate.db')}"
os.environ["ADMIN_KEY"] = "test-admin-key"
os.environ["GATE_BOT_TOKEN"] = "123456:test-token"
os.environ["LEDGER_BACKEND"] = "memory"


@pytest.fixture(scope="session")
def db_url():
    return os.environ["TEST_DATABASE_URL"]


@pytest.fixture(scope="function", autouse=True)
def reset_db(db_url):
    """Fresh schema and metrics for every test."""
    from paygate.core.database import init_engine, dispose_engine, reset_database
    from paygate.core.metrics import METRICS

    init_engine(db_url)
    reset_database()
    METRICS.reset()
    yield
    dispose_engine()
