# tests/conftest.py
import datetime as dt
import os
import tempfile

# must be set before surplus_market.config is imported
_BOOTSTRAP_DIR = tempfile.mkdtemp(prefix="surplus-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_BOOTSTRAP_DIR, 'bootstrap.db')}"
os.environ["CODE_ROTATION_ENABLED"] = "0"
os.environ["EVENTS_ENABLED"] = "0"
os.environ["PICKUP_CODE_HASH_ROUNDS"] = "4"
os.environ["PASSWORD_HASH_ROUNDS"] = "4"
os.environ["IMAGE_UPLOAD_URL"] = ""

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from surplus_market.database import get_db  # noqa: E402
from surplus_market.main import app  # noqa: E402
from surplus_market.models import Base  # noqa: E402


@pytest.fixture()
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    # no context manager: startup hooks (code rotation) stay off
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def now():
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0)
