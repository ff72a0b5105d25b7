import sys
from pathlib import Path

import pytest
from sqlalchemy.orm import sessionmaker

# Ensure project root on sys.path for direct execution.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from custody_store import users  # noqa: E402
from custody_store.db import init_db, make_engine  # noqa: E402
from custody_store.schemas import CreateUserRequest  # noqa: E402


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    return users.create_user(db, CreateUserRequest(email="a@x.com", password="correct-horse"))
