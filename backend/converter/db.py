"""Database layer. SQLite by default; set DATABASE_URL for MySQL (e.g. localhost:3306).
Startup ensures required tables exist; on MySQL connection failure logs verbosely and falls back to a local SQLite file."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from converter import config as app_config

logger = logging.getLogger("converter.db")

_engine: Optional[Engine] = None

# Tables required for the pipeline (created at startup if missing)
REQUIRED_TABLES = ("conversion_tasks", "task_queue")


def _db_kind(engine: Engine) -> str:
    return {"sqlite": "SQLite", "mysql": "MySQL"}.get(engine.dialect.name, engine.dialect.name)


def make_engine(url: str) -> Engine:
    kwargs = {}
    if url.startswith("sqlite"):
        # Worker threads share the engine; wait on the file lock instead of failing fast
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        _engine = make_engine(app_config.DATABASE_URL)
        logger.info("Database engine created (%s)", _db_kind(_engine))
    return _engine


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversion_tasks (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            input_method TEXT NOT NULL,
            input_location TEXT NOT NULL,
            filename TEXT NOT NULL,
            input_format TEXT NOT NULL,
            file_size INTEGER,
            output_format TEXT NOT NULL,
            options_json TEXT NOT NULL,
            engine TEXT NOT NULL,
            state TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            attempts INTEGER NOT NULL DEFAULT 0,
            progress INTEGER NOT NULL DEFAULT 0,
            output_location TEXT,
            output_size INTEGER,
            duration_seconds REAL,
            error_class TEXT,
            error_message TEXT,
            retry_of TEXT,
            tag TEXT,
            callback_url TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            started_at TEXT,
            completed_at TEXT
        )
    """))
    conn.execute(text("CREATE INDEX IF NOT EXISTS idx_tasks_state ON conversion_tasks (state, created_at)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS idx_tasks_user ON conversion_tasks (user_id)"))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS task_queue (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL UNIQUE,
            available_at REAL NOT NULL,
            claimed_by TEXT,
            claimed_at REAL,
            enqueued_at TEXT NOT NULL
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS conversion_tasks (
            id VARCHAR(64) PRIMARY KEY,
            user_id VARCHAR(64),
            input_method VARCHAR(20) NOT NULL,
            input_location TEXT NOT NULL,
            filename VARCHAR(512) NOT NULL,
            input_format VARCHAR(20) NOT NULL,
            file_size BIGINT,
            output_format VARCHAR(20) NOT NULL,
            options_json TEXT NOT NULL,
            engine VARCHAR(50) NOT NULL,
            state VARCHAR(20) NOT NULL,
            version INT NOT NULL DEFAULT 0,
            attempts INT NOT NULL DEFAULT 0,
            progress INT NOT NULL DEFAULT 0,
            output_location VARCHAR(1024),
            output_size BIGINT,
            duration_seconds DOUBLE,
            error_class VARCHAR(50),
            error_message TEXT,
            retry_of VARCHAR(64),
            tag VARCHAR(255),
            callback_url VARCHAR(1024),
            created_at VARCHAR(50) NOT NULL,
            updated_at VARCHAR(50) NOT NULL,
            started_at VARCHAR(50),
            completed_at VARCHAR(50),
            INDEX idx_tasks_state (state, created_at),
            INDEX idx_tasks_user (user_id)
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS task_queue (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            task_id VARCHAR(64) NOT NULL UNIQUE,
            available_at DOUBLE NOT NULL,
            claimed_by VARCHAR(255),
            claimed_at DOUBLE,
            enqueued_at VARCHAR(50) NOT NULL
        )
    """))
    conn.commit()


def ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if engine.dialect.name == "mysql":
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> Engine:
    """Prepare database at startup: ensure required tables exist. If MySQL is unreachable, fall back to a SQLite file."""
    global _engine
    engine = get_engine()
    kind = _db_kind(engine)
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))
    try:
        ensure_tables(engine)
        logger.info("Database ready: %s", kind)
        return engine
    except OperationalError as e:
        if engine.dialect.name != "mysql":
            raise
        logger.warning("Database connection failed (%s): %s. Will try fallback.", kind, e.orig, exc_info=True)

    sqlite_path = app_config.BASE_DIR / "data" / "converter.db"
    sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    app_config.DATABASE_URL = f"sqlite:///{sqlite_path}"
    _engine = None
    engine = get_engine()
    ensure_tables(engine)
    logger.warning("MySQL unavailable. Using SQLite at %s. Fix MYSQL_* in .env to use MySQL.", sqlite_path)
    return engine


@contextmanager
def session(engine: Optional[Engine] = None):
    with (engine or get_engine()).connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
