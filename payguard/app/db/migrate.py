"""
Database migration utilities.

Alembic is the schema manager; the baseline revision under alembic/versions
creates the approval tables. Runtime access goes through plain sqlite3.

DB path resolution:
  1. DATABASE_URL env var  (full SQLAlchemy URL, migrations only)
  2. PAYGUARD_DB_PATH env var  (SQLite file path)
  3. Default: /tmp/payguard.db (SQLite)
"""

import logging
import os
import sqlite3
import stat
from pathlib import Path

logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).parent.parent.parent.parent


def get_db_path() -> Path:
    """
    Get the path to the SQLite database file.

    Returns the path from PAYGUARD_DB_PATH env var, or /tmp/payguard.db by default.
    """
    db_path_env = os.getenv("PAYGUARD_DB_PATH")
    if db_path_env:
        return Path(db_path_env)

    # Default to /tmp so the DB is never written inside the source tree.
    return Path("/tmp/payguard.db")


def get_database_url() -> str:
    database_url = os.getenv("DATABASE_URL")
    if database_url:
        return database_url

    return f"sqlite:///{get_db_path()}"


def ensure_db_permissions_secure(db_path: Path):
    """
    Restrict the database file to owner read/write (0600).

    Raises:
        PermissionError: If unable to set secure permissions
    """
    if not db_path.exists():
        return

    try:
        os.chmod(db_path, stat.S_IRUSR | stat.S_IWUSR)
    except OSError as e:
        raise PermissionError(f"Failed to set secure permissions on database: {e}")


def enable_wal_mode(conn: sqlite3.Connection):
    conn.execute("PRAGMA journal_mode=WAL")
    conn.commit()


def ensure_schema():
    """
    Bring the database schema to the latest Alembic revision.

    For SQLite, WAL mode and secure file permissions are applied after
    migrations run. Idempotent.
    """
    from alembic import command as alembic_command
    from alembic.config import Config

    database_url = get_database_url()

    alembic_cfg = Config()
    alembic_cfg.set_main_option("script_location", str(REPO_ROOT / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", database_url)

    alembic_command.upgrade(alembic_cfg, "head")
    logger.info("Schema at head (%s)", "sqlite" if database_url.startswith("sqlite") else "external")

    if database_url.startswith("sqlite"):
        db_path = get_db_path()
        conn = sqlite3.connect(db_path)
        try:
            enable_wal_mode(conn)
        finally:
            conn.close()
        ensure_db_permissions_secure(db_path)


def get_connection() -> sqlite3.Connection:
    """
    Get a SQLite database connection.

    Returns:
        SQLite connection with Row factory enabled.
    """
    conn = sqlite3.connect(get_db_path())
    conn.row_factory = sqlite3.Row
    return conn
