"""Database engine and session factory."""
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from .config import settings


def _enable_sqlite_foreign_keys(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(url: str, **kwargs) -> Engine:
    """Create an engine with the configured isolation level.

    SQLite connections enforce foreign keys so constraint failures surface
    the same way they do on PostgreSQL.
    """
    is_sqlite = make_url(url).get_backend_name() == "sqlite"
    options = {
        "isolation_level": settings.DATABASE_ISOLATION_LEVEL,
        "pool_pre_ping": True,
    }
    if not is_sqlite:
        options["pool_size"] = settings.DATABASE_POOL_SIZE
        options["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    options.update(kwargs)

    engine = create_engine(url, **options)
    if is_sqlite:
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
    return engine


engine = create_db_engine(settings.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    """Yield a session for one request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
