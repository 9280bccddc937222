"""Database configuration and session management"""

from pathlib import Path

from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Any, Dict, Generator
from app.config import settings
import logging

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> Dict[str, Any]:
    """Pool options per backend; SQLite ignores server-side pooling."""
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
        "pool_timeout": 30,
        "pool_recycle": 3600,
        "pool_pre_ping": True,
    }


DATABASE_URL = settings.get_database_url()

engine = create_engine(DATABASE_URL, echo=settings.DEBUG, **_engine_options(DATABASE_URL))

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Create base class for models
Base = declarative_base()

# Import models after Base is defined so metadata is populated.
from app import models  # noqa: E402,F401


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database session

    Yields:
        Session: Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


_ALEMBIC_INI = Path(__file__).resolve().parents[2] / "alembic.ini"


def _migration_heads() -> set:
    config = Config(str(_ALEMBIC_INI))
    config.set_main_option("script_location", str(_ALEMBIC_INI.parent / "alembic"))
    return set(ScriptDirectory.from_config(config).get_heads())


def init_db() -> None:
    """
    Check or create the schema according to DB_INIT_MODE.

      - migrate: schema is owned by Alembic; refuse to start on an unmigrated
        database, and with DB_REQUIRE_HEAD on an outdated one
      - create_all: create tables from metadata (local development only)
      - off: do nothing
    """
    mode = settings.DB_INIT_MODE.lower().strip()
    if mode == "off":
        logger.info("DB initialization check skipped (DB_INIT_MODE=off)")
        return

    if mode == "create_all":
        Base.metadata.create_all(bind=engine)
        logger.warning("Schema created with create_all; use Alembic migrations outside local development.")
        return

    if mode != "migrate":
        raise RuntimeError(f"Unknown DB_INIT_MODE: {settings.DB_INIT_MODE}")

    with engine.connect() as conn:
        current = set(MigrationContext.configure(conn).get_current_heads())

    if not current:
        raise RuntimeError("Database is not migrated. Run `alembic upgrade head` before starting the API.")

    if settings.DB_REQUIRE_HEAD:
        expected = _migration_heads()
        if current != expected:
            raise RuntimeError(
                f"Database revision {sorted(current)} does not match migration head {sorted(expected)}."
            )
    logger.info("Database schema at revision %s", ", ".join(sorted(current)))
