import os
from datetime import datetime, timezone
from typing import Callable, Generator, Optional, Tuple

import pytest
from sqlalchemy.exc import CompileError

os.environ.setdefault("DATABASE_ALLOW_NON_POSTGRES", "1")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("DATABASE_URL", os.getenv("DATABASE_URL", os.environ["TEST_DATABASE_URL"]))

try:
    from sqlalchemy import create_engine, event
    from sqlalchemy.dialects.postgresql import JSONB
    from sqlalchemy.engine import Engine
    from sqlalchemy.orm import Session, scoped_session, sessionmaker
    from sqlalchemy.ext.compiler import compiles
    from sqlalchemy.pool import StaticPool
except Exception as exc:  # pragma: no cover
    Engine = Session = sessionmaker = None  # type: ignore
    create_engine = None  # type: ignore
    _SQLALCHEMY_IMPORT_ERROR: Optional[Exception] = exc
else:
    _SQLALCHEMY_IMPORT_ERROR = None

try:
    import database as database_module
    from database import Base, IS_POSTGRES
except Exception as exc:  # pragma: no cover
    database_module = None  # type: ignore
    Base = None  # type: ignore
    IS_POSTGRES = False
    _DATABASE_IMPORT_ERROR: Optional[Exception] = exc
else:
    _DATABASE_IMPORT_ERROR = None

# Provide lightweight fallbacks for PostgreSQL-only column types when using SQLite.
if not IS_POSTGRES and _SQLALCHEMY_IMPORT_ERROR is None and Base is not None:
    @compiles(JSONB, "sqlite")  # type: ignore[misc]
    def _compile_jsonb_sqlite(_element, _compiler, **_kw):  # pragma: no cover - sqlite compat
        return "TEXT"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "postgres: requires a PostgreSQL database")


def _resolve_test_database_url() -> Tuple[str, bool]:
    candidate = os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL")
    url = candidate or "sqlite+pysqlite:///:memory:"
    return url, url.lower().startswith("postgresql")


@pytest.fixture(scope="session")
def engine(request: pytest.FixtureRequest) -> Generator["Engine", None, None]:
    if _SQLALCHEMY_IMPORT_ERROR or create_engine is None:
        pytest.skip(f"SQLAlchemy is unavailable: {_SQLALCHEMY_IMPORT_ERROR}")
    if Base is None or database_module is None:
        pytest.skip(f"Database metadata unavailable: {_DATABASE_IMPORT_ERROR}")

    # Ensure all model metadata is registered before creating tables.
    try:  # pragma: no cover - import side effect only
        import models  # noqa: F401
    except Exception as exc:  # pragma: no cover
        pytest.skip(f"Failed to import models: {exc}")

    database_url, is_postgres = _resolve_test_database_url()
    if request.node.get_closest_marker("postgres") and not is_postgres:
        pytest.skip("PostgreSQL is required for this test")

    engine_kwargs = {}
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if ":memory:" in database_url:
            engine_kwargs["poolclass"] = StaticPool
    test_engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if database_url.startswith("sqlite"):
        # pysqlite defers BEGIN; emit it ourselves so SAVEPOINTs nest inside the test transaction.
        @event.listens_for(test_engine, "connect")
        def _sqlite_connect(dbapi_connection, _record):  # pragma: no cover - sqlite compat
            dbapi_connection.isolation_level = None

        @event.listens_for(test_engine, "begin")
        def _sqlite_begin(conn):  # pragma: no cover - sqlite compat
            conn.exec_driver_sql("BEGIN")

    try:
        Base.metadata.create_all(bind=test_engine)
    except CompileError as exc:
        pytest.skip(f"Active test database cannot render schema: {exc}")

    SessionFactory = scoped_session(sessionmaker(bind=test_engine, autoflush=False, expire_on_commit=False))
    original_session_local = database_module.SessionLocal
    original_engine = database_module.engine
    database_module.SessionLocal = SessionFactory
    database_module.engine = test_engine

    try:
        yield test_engine
    finally:
        database_module.SessionLocal = original_session_local
        database_module.engine = original_engine
        Base.metadata.drop_all(bind=test_engine)
        SessionFactory.remove()
        test_engine.dispose()


@pytest.fixture()
def db_session(engine: "Engine") -> Generator["Session", None, None]:
    """Session whose commits and rollbacks stay inside a per-test outer transaction."""

    if _SQLALCHEMY_IMPORT_ERROR or sessionmaker is None:
        pytest.skip(f"SQLAlchemy is unavailable: {_SQLALCHEMY_IMPORT_ERROR}")

    session_factory = database_module.SessionLocal
    connection = engine.connect()
    transaction = connection.begin()
    session_factory.configure(bind=connection, join_transaction_mode="create_savepoint")
    session = session_factory()

    try:
        yield session
    finally:
        session.close()
        session_factory.remove()
        session_factory.configure(bind=engine, join_transaction_mode="conservative_savepoint")
        transaction.rollback()
        connection.close()


@pytest.fixture()
def side_session_factory(db_session: "Session") -> Callable[[], "Session"]:
    """Short-lived sessions sharing the test connection, for code that opens its own."""

    connection = db_session.connection()
    return lambda: Session(bind=connection, join_transaction_mode="create_savepoint")


@pytest.fixture()
def fixed_now() -> datetime:
    return datetime(2025, 3, 20, 12, 0, tzinfo=timezone.utc)
