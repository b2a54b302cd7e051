# tests/conftest.py
import os
import tempfile

import pytest

# Point the app at a throwaway SQLite file unless a DATABASE_URL is provided
_TMPDIR = tempfile.mkdtemp(prefix="capex-ledger-tests-")
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(_TMPDIR, "test.db"))
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "1")
os.environ.setdefault("METRICS_ENABLED", "1")

from app import create_app  # noqa: E402
from models.base import Base, init_engine_and_session  # noqa: E402


@pytest.fixture(scope="session")
def app():
    return create_app({"TESTING": True})


@pytest.fixture(scope="session")
def db_engine(app):
    engine, _Session = init_engine_and_session()
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture(autouse=True)
def _db_clean(db_engine):
    # children before parents
    with db_engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture()
def client(app):
    return app.test_client()
