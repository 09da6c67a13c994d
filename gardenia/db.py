from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from .config import settings

connect_args = {}
if settings.DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, echo=False, connect_args=connect_args)

if settings.DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def init_schema() -> None:
    # models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    if settings.DATABASE_URL.startswith("sqlite") or bool(settings.DB_AUTO_CREATE_ALL):
        Base.metadata.create_all(bind=engine)
        return
    if bool(settings.DB_SCHEMA_CHECK_ON_STARTUP):
        try:
            with SessionLocal() as db:
                db.execute(text("SELECT 1 FROM clinics LIMIT 1"))
        except Exception as exc:
            raise RuntimeError("Database schema check failed. Run migrations before starting API.") from exc


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
