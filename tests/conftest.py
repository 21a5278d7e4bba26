from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
import sys

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from cobranca import main
from cobranca.database import Base


@pytest.fixture()
def engine(tmp_path):
    db_path = tmp_path / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def register_now(dbapi_conn, _):
        dbapi_conn.create_function("NOW", 0, lambda: datetime.now().isoformat(sep=" "))

    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(engine):
    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    db = SessionTesting()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def client(engine):
    SessionTesting = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    def override_get_db():
        db = SessionTesting()
        try:
            yield db
        finally:
            db.close()

    original_startup = list(main.app.router.on_startup)
    original_shutdown = list(main.app.router.on_shutdown)
    original_lifespan = main.app.router.lifespan_context

    @asynccontextmanager
    async def _noop_lifespan(_app):
        yield

    main.app.router.on_startup = []
    main.app.router.on_shutdown = []
    main.app.router.lifespan_context = _noop_lifespan
    main.app.dependency_overrides[main.get_db] = override_get_db
    main.app.dependency_overrides[main.get_engine] = lambda: engine

    test_client = TestClient(main.app)
    try:
        yield test_client
    finally:
        test_client.close()
        main.app.dependency_overrides.clear()
        main.app.router.on_startup = original_startup
        main.app.router.on_shutdown = original_shutdown
        main.app.router.lifespan_context = original_lifespan
