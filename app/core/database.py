"""
Database engine, session factory and schema revision check
"""
import logging
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from alembic.config import Config
from alembic.script import ScriptDirectory

from app.core.config import settings

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]
IS_SQLITE = settings.DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # One shared connection, so in-memory databases survive across sessions
    engine = create_engine(
        settings.DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False
    )

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        # Deleting a stock must cascade to its prices and alerts
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
else:
    engine = create_engine(
        settings.DATABASE_URL,
        pool_pre_ping=True,
        echo=False
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_alembic_head() -> str:
    alembic_ini = PROJECT_ROOT / "alembic.ini"
    alembic_dir = PROJECT_ROOT / "alembic"
    if not alembic_ini.exists() or not alembic_dir.exists():
        raise RuntimeError("Alembic configuration is missing. Cannot verify the price store schema.")

    alembic_cfg = Config(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(alembic_dir))
    heads = ScriptDirectory.from_config(alembic_cfg).get_heads()
    if len(heads) != 1:
        raise RuntimeError(f"Expected a single Alembic head revision, found {len(heads)}.")
    return heads[0]


def get_current_revision():
    """Revision stamped in alembic_version, or None for an unmigrated database."""
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT version_num FROM alembic_version LIMIT 1")).fetchone()
    except SQLAlchemyError:
        return None
    return row[0] if row else None


async def init_db():
    """Refuse to start unless the schema (latest-price index, credential counters, leases) is at head."""
    expected_head = get_alembic_head()
    current_revision = get_current_revision()
    if current_revision != expected_head:
        raise RuntimeError(
            f"Database revision mismatch. Current={current_revision}, Expected={expected_head}. "
            "Run `python -m alembic upgrade head` before starting PriceWatch."
        )
    logger.info("Database revision verified at head: %s", expected_head)
