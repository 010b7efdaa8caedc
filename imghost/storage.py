import json
import logging
import math
import os
import shutil
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterator, List, Optional


BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("IMGHOST_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("IMGHOST_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("IMGHOST_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("IMGHOST_LOGS_DIR", STORAGE_ROOT / "logs")
ANONYMOUS_DIR = UPLOADS_DIR / "public"
USERS_DIR = UPLOADS_DIR / "users"
# Lives under UPLOADS_DIR so finished temp files can be hard-linked into place.
INCOMING_DIR = UPLOADS_DIR / ".incoming"
PENDING_DIR = DATA_DIR / "pending"
DB_PATH = DATA_DIR / "imghost.db"
CONFIG_PATH = DATA_DIR / "config.json"

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
TEMP_FILE_MAX_AGE_SECONDS = 3600


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("imghost.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _domain_from_env() -> str:
    value = os.environ.get("IMGHOST_DOMAIN", "x02.me").strip().lower().strip(".")
    return value or "x02.me"


PUBLIC_DOMAIN = _domain_from_env()
PUBLIC_SCHEME = os.environ.get("IMGHOST_PUBLIC_SCHEME", "https").strip().lower() or "https"

DEFAULT_MAX_UPLOAD_MB = _safe_int_env("IMGHOST_MAX_UPLOAD_SIZE_MB", 30)
DEFAULT_ANONYMOUS_HOURLY_LIMIT = _safe_int_env("IMGHOST_ANONYMOUS_HOURLY_LIMIT", 10)
DEFAULT_DAILY_LIMIT = _safe_int_env("IMGHOST_DEFAULT_DAILY_LIMIT", 100)
DEFAULT_HOURLY_LIMIT = _safe_int_env("IMGHOST_DEFAULT_HOURLY_LIMIT", 25)
DEFAULT_WATERMARK_WORKERS = _safe_int_env("IMGHOST_WATERMARK_WORKERS", 2)

SUBDOMAIN_MODES = ("enabled", "disabled")

DEFAULT_CONFIG: Dict[str, Any] = {
    "subdomain_mode": "enabled",
    "anonymous_hourly_limit": float(DEFAULT_ANONYMOUS_HOURLY_LIMIT),
    "default_daily_limit": float(DEFAULT_DAILY_LIMIT),
    "default_hourly_limit": float(DEFAULT_HOURLY_LIMIT),
    "max_upload_size_mb": float(DEFAULT_MAX_UPLOAD_MB),
    "download_rate_limit_per_minute": 240.0,
    "auth_rate_limit_per_minute": 10.0,
    "rate_limit_fail_open": True,
}

CONFIG_NUMERIC_KEYS = {
    "anonymous_hourly_limit",
    "default_daily_limit",
    "default_hourly_limit",
    "max_upload_size_mb",
    "download_rate_limit_per_minute",
    "auth_rate_limit_per_minute",
}

CONFIG_BOOLEAN_KEYS = {"rate_limit_fail_open"}


def get_config_mtime() -> float:
    """Return the last modified timestamp for the persisted config file."""

    ensure_directories()
    try:
        return CONFIG_PATH.stat().st_mtime_ns / 1e9
    except OSError:
        return 0.0


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity."""
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _normalize_config(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            config[key] = _coerce_numeric(raw_config.get(key), config[key])
        if config[key] < 1:
            config[key] = float(DEFAULT_CONFIG[key])

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            value = raw_config.get(key)
            if isinstance(value, str):
                config[key] = value.strip().lower() in {"1", "true", "yes", "on"}
            else:
                config[key] = bool(value)

    mode = raw_config.get("subdomain_mode")
    if isinstance(mode, str) and mode.strip().lower() in SUBDOMAIN_MODES:
        config["subdomain_mode"] = mode.strip().lower()

    return config


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    ANONYMOUS_DIR.mkdir(parents=True, exist_ok=True)
    USERS_DIR.mkdir(parents=True, exist_ok=True)
    INCOMING_DIR.mkdir(parents=True, exist_ok=True)
    PENDING_DIR.mkdir(parents=True, exist_ok=True)


def load_config() -> Dict[str, Any]:
    ensure_directories()
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as config_file:
            try:
                raw = json.load(config_file)
            except json.JSONDecodeError:
                raw = DEFAULT_CONFIG.copy()
    else:
        raw = DEFAULT_CONFIG.copy()
        save_config(raw)

    data = _normalize_config(raw)
    if raw != data:
        save_config(data)
    return data


def save_config(config: Dict[str, Any]) -> None:
    ensure_directories()
    normalized = _normalize_config(config)
    write_atomic(
        CONFIG_PATH,
        json.dumps(normalized, indent=2).encode("utf-8"),
        mode=0o644,
    )


_config_lock = threading.RLock()
_CONFIG_CACHE: Optional[Dict[str, Any]] = None
_CONFIG_CACHE_MTIME: float = 0.0


def get_config(refresh: bool = False) -> Dict[str, Any]:
    """Return the cached settings, reloading when the file changed on disk."""

    global _CONFIG_CACHE, _CONFIG_CACHE_MTIME
    with _config_lock:
        current_mtime = get_config_mtime()
        if current_mtime != _CONFIG_CACHE_MTIME:
            refresh = True
        if refresh or _CONFIG_CACHE is None:
            _CONFIG_CACHE = load_config()
            _CONFIG_CACHE_MTIME = get_config_mtime()
        return dict(_CONFIG_CACHE)


def update_config(changes: Dict[str, Any]) -> Dict[str, Any]:
    with _config_lock:
        config = get_config(refresh=True)
        config.update(changes)
        save_config(config)
        return get_config(refresh=True)


def config_int(config: Dict[str, Any], key: str) -> int:
    try:
        return max(1, int(float(config.get(key, DEFAULT_CONFIG[key]))))
    except (TypeError, ValueError):
        return int(DEFAULT_CONFIG[key])


def write_atomic(path: Path, data: bytes, mode: int = 0o600) -> None:
    """Replace *path* with *data* so readers only ever see a complete file."""

    path = Path(path)
    temp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


_path_locks: Dict[str, threading.Lock] = {}
_path_locks_guard = threading.Lock()


@contextmanager
def path_lock(path: Path) -> Iterator[None]:
    """Serialise in-process rewrites and deletions of a single stored file."""

    key = str(Path(path).resolve())
    with _path_locks_guard:
        lock = _path_locks.setdefault(key, threading.Lock())
    with lock:
        yield


@contextmanager
def get_db() -> Generator[sqlite3.Connection, None, None]:
    ensure_directories()
    conn = sqlite3.connect(DB_PATH, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def init_db() -> None:
    with get_db() as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS owners (
                id TEXT PRIMARY KEY,
                handle TEXT NOT NULL UNIQUE,
                password_hash TEXT NOT NULL,
                token_hash TEXT NOT NULL UNIQUE,
                token_encrypted TEXT,
                daily_limit INTEGER NOT NULL,
                hourly_limit INTEGER NOT NULL,
                usage_count INTEGER NOT NULL DEFAULT 0,
                last_used_at REAL,
                storage_root TEXT NOT NULL,
                watermark TEXT,
                suspended INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                created_ip TEXT
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_counters (
                key TEXT PRIMARY KEY,
                count INTEGER NOT NULL CHECK (count >= 0),
                reset_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_rate_counters_reset_at ON rate_counters(reset_at)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS assets (
                id TEXT PRIMARY KEY,
                owner_id TEXT,
                directory TEXT NOT NULL,
                filename TEXT NOT NULL,
                size INTEGER NOT NULL,
                content_type TEXT,
                created_at REAL NOT NULL,
                uploader_ip TEXT,
                UNIQUE (directory, filename)
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_assets_owner_id ON assets(owner_id)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS subdomain_overrides (
                owner_id TEXT PRIMARY KEY,
                enabled INTEGER NOT NULL,
                updated_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS analytics (
                day TEXT NOT NULL,
                handle TEXT NOT NULL,
                file_type TEXT NOT NULL,
                uploads INTEGER NOT NULL DEFAULT 0,
                bytes INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (day, handle, file_type)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS watermark_jobs (
                id TEXT PRIMARY KEY,
                asset_id TEXT NOT NULL,
                target_path TEXT NOT NULL,
                source_path TEXT NOT NULL,
                spec TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                attempts INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_watermark_jobs_status ON watermark_jobs(status)"
        )
        conn.commit()


def migrate_asset_watermark_state() -> None:
    """Add the watermark_state column to assets tables created before it existed."""

    with get_db() as conn:
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(assets)")}
        if "watermark_state" not in columns:
            conn.execute(
                "ALTER TABLE assets ADD COLUMN watermark_state TEXT NOT NULL DEFAULT 'none'"
            )
            conn.commit()
            logger.info("Added watermark_state column to assets table")


def directory_key(directory: Path) -> str:
    """Return the uploads-relative POSIX key used to index *directory*."""

    return Path(directory).resolve().relative_to(UPLOADS_DIR.resolve()).as_posix()


def register_asset(
    directory: Path,
    filename: str,
    size: int,
    content_type: Optional[str],
    *,
    owner_id: Optional[str] = None,
    uploader_ip: Optional[str] = None,
    watermark_state: str = "none",
) -> str:
    asset_id = uuid.uuid4().hex
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO assets (
                id, owner_id, directory, filename, size, content_type,
                created_at, uploader_ip, watermark_state
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                asset_id,
                owner_id,
                directory_key(directory),
                filename,
                int(size),
                content_type,
                time.time(),
                uploader_ip,
                watermark_state,
            ),
        )
        conn.commit()

    logger.info(
        "asset_registered asset_id=%s directory=%s filename=%s size=%d owner_id=%s",
        asset_id,
        directory_key(directory),
        filename,
        size,
        owner_id or "-",
    )
    return asset_id


def get_asset(directory: Path, filename: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute(
            "SELECT * FROM assets WHERE directory = ? AND filename = ?",
            (directory_key(directory), filename),
        )
        return cursor.fetchone()


def get_asset_by_id(asset_id: str) -> Optional[sqlite3.Row]:
    with get_db() as conn:
        cursor = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,))
        return cursor.fetchone()


def list_assets(owner_id: Optional[str] = None, *, limit: Optional[int] = None) -> List[sqlite3.Row]:
    with get_db() as conn:
        params: List[object] = []
        if owner_id is None:
            query = "SELECT * FROM assets WHERE owner_id IS NULL"
        else:
            query = "SELECT * FROM assets WHERE owner_id = ?"
            params.append(owner_id)
        query += " ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(max(int(limit), 0))
        return conn.execute(query, tuple(params)).fetchall()


def set_asset_watermark_state(asset_id: str, state: str) -> None:
    with get_db() as conn:
        conn.execute(
            "UPDATE assets SET watermark_state = ? WHERE id = ?", (state, asset_id)
        )
        conn.commit()


def delete_asset_record(asset_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
        conn.commit()
        return cursor.rowcount > 0


def record_upload_analytics(handle: str, file_type: str, size: int) -> None:
    """Increment the per-day upload counters for *handle* and *file_type*."""

    day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    with get_db() as conn:
        conn.execute(
            """
            INSERT INTO analytics (day, handle, file_type, uploads, bytes)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT (day, handle, file_type) DO UPDATE SET
                uploads = uploads + 1,
                bytes = bytes + excluded.bytes
            """,
            (day, handle, file_type or "unknown", int(size)),
        )
        conn.commit()


def get_analytics_summary(days: int = 30) -> Dict[str, object]:
    with get_db() as conn:
        volume = conn.execute(
            """
            SELECT day, SUM(uploads) AS count, SUM(bytes) AS bytes
            FROM analytics GROUP BY day ORDER BY day DESC LIMIT ?
            """,
            (max(int(days), 1),),
        ).fetchall()
        file_types = conn.execute(
            "SELECT file_type, SUM(uploads) AS count FROM analytics GROUP BY file_type ORDER BY count DESC"
        ).fetchall()
        activity = conn.execute(
            "SELECT handle, SUM(uploads) AS count FROM analytics GROUP BY handle ORDER BY count DESC"
        ).fetchall()

    return {
        "uploadVolume": [
            {"date": row["day"], "count": int(row["count"]), "bytes": int(row["bytes"])}
            for row in reversed(volume)
        ],
        "fileTypeDistribution": [
            {"type": row["file_type"], "count": int(row["count"])} for row in file_types
        ],
        "userActivity": [
            {"username": row["handle"], "count": int(row["count"])} for row in activity
        ],
    }


def get_storage_statistics() -> Dict[str, int]:
    """Return aggregate metrics about stored assets."""

    with get_db() as conn:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS count,
                COALESCE(SUM(size), 0) AS total_size,
                COALESCE(SUM(CASE WHEN owner_id IS NULL THEN 1 ELSE 0 END), 0) AS anonymous_count
            FROM assets
            """
        ).fetchone()
        owners_row = conn.execute("SELECT COUNT(*) AS count FROM owners").fetchone()

    return {
        "asset_count": int(row["count"] or 0),
        "total_bytes": int(row["total_size"] or 0),
        "anonymous_count": int(row["anonymous_count"] or 0),
        "owner_count": int(owners_row["count"] or 0),
    }


def cleanup_temp_files() -> int:
    """Remove lingering temporary upload files."""

    ensure_directories()
    removed = 0
    cutoff = time.time() - TEMP_FILE_MAX_AGE_SECONDS

    for temp_file in INCOMING_DIR.glob("*.tmp"):
        try:
            if temp_file.stat().st_mtime < cutoff:
                temp_file.unlink()
                removed += 1
                logger.info("temp_file_removed path=%s", temp_file)
        except OSError as error:
            logger.warning(
                "temp_cleanup_failed path=%s error=%s",
                temp_file,
                error,
            )

    return removed


def remove_tree(path: Path, root: Path) -> bool:
    """Delete *path* recursively, but only if it lives strictly inside *root*."""

    try:
        resolved = Path(path).resolve()
        root_resolved = Path(root).resolve()
    except OSError:
        return False
    if root_resolved not in resolved.parents:
        logger.error("remove_tree_refused path=%s root=%s", resolved, root_resolved)
        return False
    if not resolved.exists():
        return True
    shutil.rmtree(resolved)
    return True


logger = logging.getLogger("imghost.storage")

ensure_directories()
init_db()
migrate_asset_watermark_state()
