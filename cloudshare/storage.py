import json
import logging
import math
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple

from .errors import CloudShareError, StoreError

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("CLOUDSHARE_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("CLOUDSHARE_DATA_DIR", STORAGE_ROOT / "data")
LOGS_DIR = _resolve_env_path("CLOUDSHARE_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "store.db"
CONFIG_PATH = DATA_DIR / "config.json"

META_PREFIX = "meta:"
CONTENT_PREFIX = "content:"

BYTES_PER_MB = 1024 * 1024
META_CACHE_TTL = 3600
ADMIN_LIST_CACHE_TTL = 300
META_CACHE_MAX_ENTRIES = 1024

DEFAULT_CONFIG: Dict[str, Any] = {
    "admin_password": "",
    "admin_path": "admin",
    "site_name": "CloudShare",
    "telegram_bot": "",
    "footer_text": "Private file sharing service",
    "max_upload_size_mb": 25.0,
    "meta_cache_ttl": float(META_CACHE_TTL),
    "cleanup_interval_minutes": 30.0,
    "upstream_timeout": 15.0,
    "upstream_user_agent": "ClashForAndroid/2.5.12",
    "upstream_ssrf_protection": True,
    "upload_rate_limit_per_hour": 100.0,
    "download_rate_limit_per_minute": 120.0,
    "login_rate_limit_per_minute": 10.0,
}

CONFIG_NUMERIC_KEYS = {
    "max_upload_size_mb",
    "meta_cache_ttl",
    "cleanup_interval_minutes",
    "upstream_timeout",
    "upload_rate_limit_per_hour",
    "download_rate_limit_per_minute",
    "login_rate_limit_per_minute",
}

CONFIG_BOOLEAN_KEYS = {"upstream_ssrf_protection"}

CONFIG_STRING_KEYS = {
    "admin_password",
    "admin_path",
    "site_name",
    "telegram_bot",
    "footer_text",
    "upstream_user_agent",
}

CONFIG_ENV_KEYS = {
    "admin_password": "CLOUDSHARE_ADMIN_PASSWORD",
    "admin_path": "CLOUDSHARE_ADMIN_PATH",
    "site_name": "CLOUDSHARE_SITE_NAME",
    "telegram_bot": "CLOUDSHARE_TELEGRAM_BOT",
    "footer_text": "CLOUDSHARE_FOOTER_TEXT",
    "max_upload_size_mb": "MAX_UPLOAD_SIZE_MB",
    "meta_cache_ttl": "CLOUDSHARE_META_CACHE_TTL",
    "cleanup_interval_minutes": "CLOUDSHARE_CLEANUP_INTERVAL_MINUTES",
    "upstream_timeout": "CLOUDSHARE_UPSTREAM_TIMEOUT",
    "upstream_user_agent": "CLOUDSHARE_UPSTREAM_USER_AGENT",
    "upstream_ssrf_protection": "CLOUDSHARE_UPSTREAM_SSRF_PROTECTION",
    "upload_rate_limit_per_hour": "CLOUDSHARE_RATE_LIMIT_UPLOADS_PER_HOUR",
    "download_rate_limit_per_minute": "CLOUDSHARE_RATE_LIMIT_DOWNLOADS_PER_MINUTE",
    "login_rate_limit_per_minute": "CLOUDSHARE_RATE_LIMIT_LOGINS_PER_MINUTE",
}

config_logger = logging.getLogger("cloudshare.config")
logger = logging.getLogger("cloudshare.storage")


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def _coerce_numeric(value, default):
    """Coerce a value to float, rejecting NaN and infinity."""
    try:
        coerced = float(value)
        if math.isnan(coerced) or math.isinf(coerced):
            return float(default)
    except (TypeError, ValueError):
        return float(default)
    return float(coerced)


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default
    if value is None:
        return default
    return bool(value)


def _normalize_config(raw_config: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw_config, dict):
        raw_config = {}

    config = DEFAULT_CONFIG.copy()
    for key in CONFIG_NUMERIC_KEYS:
        if key in raw_config:
            coerced = _coerce_numeric(raw_config.get(key), config[key])
            if coerced <= 0:
                config_logger.warning(
                    "Invalid value for %s: %s. Using default: %s",
                    key,
                    raw_config.get(key),
                    config[key],
                )
                continue
            config[key] = coerced

    for key in CONFIG_BOOLEAN_KEYS:
        if key in raw_config:
            config[key] = _coerce_bool(raw_config.get(key), config[key])

    for key in CONFIG_STRING_KEYS:
        if key in raw_config and isinstance(raw_config.get(key), str):
            value = raw_config.get(key).strip()
            if key == "admin_path":
                value = value.strip("/")
            if value or key in {"admin_password", "telegram_bot"}:
                config[key] = value

    return config


def _env_overrides() -> Dict[str, str]:
    overrides = {}
    for key, env_key in CONFIG_ENV_KEYS.items():
        value = os.environ.get(env_key)
        if value is not None and value != "":
            overrides[key] = value
    return overrides


def load_config() -> Dict[str, Any]:
    """Load the persisted configuration file and apply environment overrides."""

    ensure_directories()
    raw: Dict[str, Any] = {}
    if CONFIG_PATH.exists():
        with CONFIG_PATH.open("r", encoding="utf-8") as config_file:
            try:
                loaded = json.load(config_file)
            except json.JSONDecodeError:
                config_logger.warning("config_file_invalid path=%s", CONFIG_PATH)
                loaded = {}
        if isinstance(loaded, dict):
            raw.update(loaded)
    raw.update(_env_overrides())
    return _normalize_config(raw)


def meta_key(record_id: str) -> str:
    return META_PREFIX + record_id


def content_key(record_id: str) -> str:
    return CONTENT_PREFIX + record_id


class KeyValueStore:
    """Contract of the backend holding record metadata and content.

    Every operation may fail with :class:`StoreError`. Reads may be served
    from a cache and can therefore be stale.
    """

    def get(self, key: str, cache_ttl: Optional[float] = None) -> Optional[str]:
        raise NotImplementedError

    def put(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> List[str]:
        raise NotImplementedError


class SqliteKeyValueStore(KeyValueStore):
    """Key-value table in a local SQLite database."""

    def __init__(self, db_path: Path = DB_PATH) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_schema()

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
        except sqlite3.Error as error:
            raise StoreError("Store unavailable", detail=str(error)) from error
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            conn.row_factory = sqlite3.Row
            yield conn
            if conn.in_transaction:
                conn.commit()
        except sqlite3.Error as error:
            if conn.in_transaction:
                conn.rollback()
            raise StoreError("Store operation failed", detail=str(error)) from error
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
                """
            )
            conn.commit()

    def get(self, key: str, cache_ttl: Optional[float] = None) -> Optional[str]:
        with self.connection() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    def put(self, key: str, value: str) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (key, value, time.time()),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.commit()

    def list_keys(self, prefix: str = "") -> List[str]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT key FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (escaped + "%",),
            )
            return [row["key"] for row in cursor.fetchall()]

    def ping(self) -> None:
        with self.connection() as conn:
            conn.execute("SELECT 1").fetchone()


class CachedKeyValueStore(KeyValueStore):
    """Read-through cache with a per-read freshness window.

    Only metadata entries are cached; content is always read from the
    backend. Writes and deletes made through this instance update the local
    cache; changes made by other processes become visible once the window
    lapses. Entries older than ``default_ttl`` are pruned on every write and
    the oldest entries are evicted beyond ``max_entries``.
    """

    def __init__(
        self,
        backend: KeyValueStore,
        default_ttl: float = META_CACHE_TTL,
        max_entries: int = META_CACHE_MAX_ENTRIES,
    ) -> None:
        self.backend = backend
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._cache: Dict[str, Tuple[float, str]] = {}
        # Bumped by every put/delete so a slow backend read cannot overwrite
        # a newer value in the cache.
        self._generation = 0
        self._lock = threading.RLock()

    @staticmethod
    def _cacheable(key: str) -> bool:
        return key.startswith(META_PREFIX)

    def _store_entry(self, key: str, stamp: float, value: str) -> None:
        self._cache.pop(key, None)
        self._cache[key] = (stamp, value)
        self._prune(stamp)

    def _prune(self, now: float) -> None:
        stale = [key for key, (stamp, _) in self._cache.items() if now - stamp >= self.default_ttl]
        for key in stale:
            del self._cache[key]
        while len(self._cache) > self.max_entries:
            del self._cache[next(iter(self._cache))]

    def get(self, key: str, cache_ttl: Optional[float] = None) -> Optional[str]:
        if not self._cacheable(key):
            return self.backend.get(key)

        ttl = self.default_ttl if cache_ttl is None else cache_ttl
        now = time.monotonic()
        with self._lock:
            cached = self._cache.get(key)
            if cached is not None and now - cached[0] < ttl:
                return cached[1]
            generation = self._generation

        value = self.backend.get(key)
        with self._lock:
            if generation != self._generation:
                return value
            if value is None:
                self._cache.pop(key, None)
            else:
                self._store_entry(key, now, value)
        return value

    def put(self, key: str, value: str) -> None:
        try:
            self.backend.put(key, value)
        except CloudShareError:
            self._forget(key)
            raise
        with self._lock:
            self._generation += 1
            if self._cacheable(key):
                self._store_entry(key, time.monotonic(), value)
            else:
                self._cache.pop(key, None)

    def _forget(self, key: str) -> None:
        with self._lock:
            self._generation += 1
            self._cache.pop(key, None)

    def delete(self, key: str) -> None:
        try:
            self.backend.delete(key)
        finally:
            self._forget(key)

    def list_keys(self, prefix: str = "") -> List[str]:
        return self.backend.list_keys(prefix)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def ping(self) -> None:
        ping = getattr(self.backend, "ping", None)
        if ping is not None:
            ping()


def build_store(config: Dict[str, Any], db_path: Optional[Path] = None) -> CachedKeyValueStore:
    backend = SqliteKeyValueStore(db_path or DB_PATH)
    ttl = _coerce_numeric(config.get("meta_cache_ttl"), META_CACHE_TTL)
    logger.info("store_initialized path=%s cache_ttl=%.0f", backend.db_path, ttl)
    return CachedKeyValueStore(backend, default_ttl=ttl)
