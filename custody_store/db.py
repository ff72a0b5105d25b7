import logging
import os

from sqlalchemy import create_engine, create_mock_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import StoreError

logger = logging.getLogger(__name__)

DB_URL = os.getenv("CUSTODY_DB_URL", "sqlite:///./custody.db")

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_engine(url: str = DB_URL, **kwargs):
    """Create an engine; SQLite connections get FK enforcement switched on."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_engine(url, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    kwargs.setdefault("pool_size", 20)
    kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("pool_recycle", 1800)
    kwargs.setdefault("pool_timeout", 30)
    return create_engine(url, **kwargs)


engine = make_engine(DB_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    # Import models to register metadata before create_all.
    from . import models  # noqa: WPS433

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def render_ddl(dialect: str = "postgresql") -> str:
    """Render the CREATE statements for the whole schema as SQL text."""
    from . import models  # noqa: WPS433

    statements = []

    def _dump(sql, *multiparams, **params):
        statements.append(str(sql.compile(dialect=mock.dialect)).strip() + ";")

    mock = create_mock_engine(f"{dialect}://", _dump)
    Base.metadata.create_all(mock, checkfirst=False)
    return "\n\n".join(statements) + "\n"


def health_check(db: Session) -> bool:
    try:
        db.execute(text("SELECT 1")).scalar_one()
        return True
    except SQLAlchemyError as exc:
        logger.warning("Database health check failed: %s", exc)
        return False


def dialect_insert(db: Session, table):
    """INSERT construct that supports ON CONFLICT for the session's backend."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StoreError(f"Upserts are not supported on {name}")
    return insert(table)
