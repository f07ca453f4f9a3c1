import os
import tempfile

# Must be set before floodwatch.config is imported
os.environ.setdefault("DATABASE_URL", f"sqlite:///{tempfile.mkdtemp()}/floodwatch-test.db")
os.environ.setdefault("MDP_SEED", "7")
os.environ.setdefault("ESTIMATOR_TIMEOUT_S", "5")

import pytest  # noqa: E402

from floodwatch.database import init_db  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _database():
    init_db()
    yield
