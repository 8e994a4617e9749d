"""Database layer. SQLite by default; set DATABASE_URL (or MYSQL_* vars) for MySQL.
Holds the host option store and asset metadata. Startup ensures required tables exist; on connection
failure logs verbosely and falls back to in-memory SQLite so the app can start."""
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from webp_converter import config as app_config
from webp_converter.conversion.models import Derivative, SourceAsset

logger = logging.getLogger("webp_converter.db")

_engine: Optional[Engine] = None

# Tables required for the app (created at startup if missing)
REQUIRED_TABLES = ("options", "assets", "derivatives")


def _is_sqlite() -> bool:
    return "sqlite" in app_config.DATABASE_URL


def _is_mysql() -> bool:
    return "mysql" in app_config.DATABASE_URL


def _db_kind() -> str:
    return "MySQL" if _is_mysql() else "SQLite"


def get_engine() -> Engine:
    global _engine
    if _engine is None:
        kwargs = {}
        if _is_sqlite():
            kwargs["connect_args"] = {"check_same_thread": False}
            db_file = app_config.DATABASE_URL.replace("sqlite:///", "", 1)
            if db_file and db_file != ":memory:":
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(app_config.DATABASE_URL, **kwargs)
        logger.info("Database engine created (%s)", _db_kind())
    return _engine


def dispose_engine() -> None:
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None


def _create_sqlite_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS options (
            option_key TEXT PRIMARY KEY,
            option_value TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS assets (
            asset_id INTEGER PRIMARY KEY AUTOINCREMENT,
            file_path TEXT NOT NULL,
            mime_type TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS derivatives (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            asset_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            file_path TEXT NOT NULL,
            mime_type TEXT NOT NULL,
            UNIQUE (asset_id, name)
        )
    """))
    conn.commit()


def _create_mysql_tables(conn) -> None:
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS options (
            option_key VARCHAR(191) PRIMARY KEY,
            option_value TEXT NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS assets (
            asset_id BIGINT AUTO_INCREMENT PRIMARY KEY,
            file_path VARCHAR(1024) NOT NULL,
            mime_type VARCHAR(50) NOT NULL,
            created_at VARCHAR(50) NOT NULL,
            updated_at VARCHAR(50) NOT NULL
        )
    """))
    conn.execute(text("""
        CREATE TABLE IF NOT EXISTS derivatives (
            id BIGINT AUTO_INCREMENT PRIMARY KEY,
            asset_id BIGINT NOT NULL,
            name VARCHAR(191) NOT NULL,
            file_path VARCHAR(1024) NOT NULL,
            mime_type VARCHAR(50) NOT NULL,
            UNIQUE KEY uq_derivative (asset_id, name)
        )
    """))
    conn.commit()


def _ensure_tables(engine: Engine) -> None:
    """Create required tables if they do not exist."""
    with engine.connect() as conn:
        if _is_mysql():
            _create_mysql_tables(conn)
        else:
            _create_sqlite_tables(conn)
    logger.info("Required tables ensured: %s", ", ".join(REQUIRED_TABLES))


def init_db() -> None:
    """Prepare database at startup. On failure, fall back to in-memory SQLite so the app can start."""
    kind = _db_kind()
    logger.info("Database init: preparing %s (tables: %s)", kind, ", ".join(REQUIRED_TABLES))
    try:
        _ensure_tables(get_engine())
        logger.info("Database ready: %s", kind)
        return
    except OperationalError as e:
        logger.warning("Database connection failed (%s): %s. Using in-memory SQLite.", kind, e.orig, exc_info=True)

    # Last resort: options and asset metadata will not persist across restarts
    app_config.DATABASE_URL = "sqlite:///:memory:"
    dispose_engine()
    _ensure_tables(get_engine())
    logger.warning("Database unavailable. Using in-memory SQLite. Settings will not persist across restarts.")


@contextmanager
def session():
    with get_engine().connect() as conn:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# Options


def get_option(key: str, default: Any = None) -> Any:
    with get_engine().connect() as conn:
        row = conn.execute(
            text("SELECT option_value FROM options WHERE option_key = :key"),
            {"key": key},
        ).fetchone()
    return default if row is None else row[0]


def set_option(key: str, value: Any) -> None:
    params = {"key": key, "value": "" if value is None else str(value)}
    with session() as conn:
        if _is_mysql():
            conn.execute(
                text("""
                    INSERT INTO options (option_key, option_value) VALUES (:key, :value)
                    ON DUPLICATE KEY UPDATE option_value = :value
                """),
                params,
            )
        else:
            conn.execute(
                text("INSERT OR REPLACE INTO options (option_key, option_value) VALUES (:key, :value)"),
                params,
            )


class OptionStore:
    """Key-value configuration store backed by the options table."""

    def get(self, key: str, default: Any = None) -> Any:
        return get_option(key, default)

    def set(self, key: str, value: Any) -> None:
        set_option(key, value)


# Assets


def _insert_derivatives(conn, asset_id: int, derivatives: Iterable[Derivative]) -> None:
    for d in derivatives:
        conn.execute(
            text("""
                INSERT INTO derivatives (asset_id, name, file_path, mime_type)
                VALUES (:asset_id, :name, :file_path, :mime_type)
            """),
            {"asset_id": asset_id, "name": d.name, "file_path": d.file_path, "mime_type": d.mime_type},
        )


def save_asset(file_path: str, mime_type: str, derivatives: Iterable[Derivative] = ()) -> SourceAsset:
    """Register an uploaded asset and its derivatives. Returns it with the assigned id."""
    derivatives = tuple(derivatives)
    now = _now_iso()
    with session() as conn:
        result = conn.execute(
            text("""
                INSERT INTO assets (file_path, mime_type, created_at, updated_at)
                VALUES (:file_path, :mime_type, :now, :now)
            """),
            {"file_path": file_path, "mime_type": mime_type, "now": now},
        )
        asset_id = int(result.lastrowid)
        _insert_derivatives(conn, asset_id, derivatives)
    return SourceAsset(asset_id=asset_id, file_path=file_path, mime_type=mime_type, derivatives=derivatives)


def get_asset(asset_id: int) -> Optional[SourceAsset]:
    with get_engine().connect() as conn:
        row = conn.execute(
            text("SELECT asset_id, file_path, mime_type FROM assets WHERE asset_id = :id"),
            {"id": asset_id},
        ).fetchone()
        if not row:
            return None
        rows = conn.execute(
            text("SELECT name, file_path, mime_type FROM derivatives WHERE asset_id = :id ORDER BY id"),
            {"id": asset_id},
        ).fetchall()
    derivatives = tuple(Derivative(name=r[0], file_path=r[1], mime_type=r[2]) for r in rows)
    return SourceAsset(asset_id=int(row[0]), file_path=row[1], mime_type=row[2], derivatives=derivatives)


def update_asset(asset: SourceAsset) -> None:
    """Persist primary path, MIME type and derivative entries after a convert-and-delete."""
    with session() as conn:
        conn.execute(
            text("""
                UPDATE assets SET file_path = :file_path, mime_type = :mime_type, updated_at = :now
                WHERE asset_id = :id
            """),
            {"file_path": asset.file_path, "mime_type": asset.mime_type, "now": _now_iso(), "id": asset.asset_id},
        )
        conn.execute(text("DELETE FROM derivatives WHERE asset_id = :id"), {"id": asset.asset_id})
        _insert_derivatives(conn, asset.asset_id, asset.derivatives)


def list_convertible_asset_ids() -> list[int]:
    """Ids of JPEG/PNG assets, oldest first."""
    with get_engine().connect() as conn:
        rows = conn.execute(
            text("SELECT asset_id FROM assets WHERE mime_type IN (:jpeg, :png) ORDER BY asset_id"),
            {"jpeg": app_config.SOURCE_MIME_TYPES[0], "png": app_config.SOURCE_MIME_TYPES[1]},
        ).fetchall()
    return [int(r[0]) for r in rows]


def ensure_default_options() -> None:
    """Seed options that have never been set (first start)."""
    for key, value in app_config.OPTION_DEFAULTS.items():
        if get_option(key) is None:
            set_option(key, value)
