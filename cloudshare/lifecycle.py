import base64
import binascii
import json
import logging
import re
import secrets
import string
import time
from datetime import datetime, timezone
from secrets import compare_digest
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse

from .errors import BadRequestError, CloudShareError, GoneError, NotFoundError, StoreError
from .storage import BYTES_PER_MB, META_PREFIX, KeyValueStore, content_key, meta_key
from .subscription import SUBSCRIPTION_INFO_FIELDS

RECORD_TYPES = ("file", "text", "subscription")
ID_ALPHABET = string.ascii_letters + string.digits
ID_LENGTH = 8
MAX_ID_ATTEMPTS = 5
MAX_ACCESS_LOGS = 50
DEFAULT_MAX_UPLOAD_BYTES = 25 * BYTES_PER_MB
MAX_FILENAME_LENGTH = 255

BLOCKED_MIME_PREFIXES = ("image/", "video/", "audio/")
DANGEROUS_CONTENT_TYPES = {
    "application/x-executable",
    "application/x-msdownload",
    "application/x-msdos-program",
    "application/x-sh",
    "application/x-csh",
    "application/x-bat",
    "application/x-apple-diskimage",
    "application/vnd.microsoft.portable-executable",
    "application/x-sharedlib",
    "application/x-elf",
    "application/x-dosexec",
}

_SLUG_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")

logger = logging.getLogger("cloudshare.lifecycle")


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: Any) -> Optional[float]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text[-1] in "Zz":
        text = text[:-1] + "+00:00"
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.timestamp()


def generate_id(length: int = ID_LENGTH) -> str:
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def record_kind(record: Dict[str, Any]) -> str:
    kind = record.get("type")
    return kind if kind in RECORD_TYPES else "file"


def record_url(record: Dict[str, Any]) -> str:
    prefix = "/sub/" if record_kind(record) == "subscription" else "/raw/"
    return prefix + record["id"]


def is_blocked_content_type(content_type: Optional[str]) -> bool:
    """Media and executable uploads are refused; this service holds documents."""

    if not content_type:
        return False
    normalized = content_type.lower().split(";")[0].strip()
    if normalized.startswith(BLOCKED_MIME_PREFIXES):
        return True
    return normalized in DANGEROUS_CONTENT_TYPES


def is_expired(record: Dict[str, Any], now: Optional[float] = None) -> bool:
    expires_at = parse_timestamp(record.get("expiresAt"))
    if expires_at is None:
        return False
    current = time.time() if now is None else now
    return current > expires_at


def limit_reached(record: Dict[str, Any]) -> bool:
    max_downloads = record.get("maxDownloads")
    if not max_downloads:
        return False
    return int(record.get("downloadCount") or 0) >= int(max_downloads)


def _coerce_optional_int(value: Any, field: str) -> Optional[int]:
    if value is None or value == "" or value is False:
        return None
    if isinstance(value, bool):
        raise BadRequestError(f"Invalid {field}")
    try:
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(value)
            coerced = int(value)
        else:
            coerced = int(str(value).strip())
    except (TypeError, ValueError) as error:
        raise BadRequestError(f"Invalid {field}") from error
    if coerced < 0:
        raise BadRequestError(f"Invalid {field}")
    return coerced or None


def coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def normalize_subscription_info(value: Any) -> Optional[Dict[str, str]]:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as error:
            raise BadRequestError("Invalid subscriptionInfo") from error
    if not isinstance(value, dict):
        raise BadRequestError("Invalid subscriptionInfo")

    info: Dict[str, str] = {}
    for field in SUBSCRIPTION_INFO_FIELDS:
        entry = value.get(field)
        if entry is None:
            continue
        if isinstance(entry, (dict, list, bool)):
            raise BadRequestError(f"Invalid subscriptionInfo.{field}")
        info[field] = str(entry)
    return info


def clean_filename(filename: Optional[str], default: str) -> str:
    cleaned = _CONTROL_CHAR_PATTERN.sub("", filename or "").strip()
    cleaned = cleaned.replace("\\", "/").rsplit("/", 1)[-1]
    if not cleaned:
        return default
    return cleaned[:MAX_FILENAME_LENGTH]


def load_record(
    store: KeyValueStore, record_id: str, cache_ttl: Optional[float] = None
) -> Optional[Dict[str, Any]]:
    raw = store.get(meta_key(record_id), cache_ttl)
    if not raw:
        return None
    try:
        record = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("record_metadata_corrupt record_id=%s", record_id)
        return None
    if not isinstance(record, dict):
        logger.warning("record_metadata_corrupt record_id=%s", record_id)
        return None
    return record


def save_record(store: KeyValueStore, record: Dict[str, Any]) -> None:
    store.put(meta_key(record["id"]), json.dumps(record, ensure_ascii=False))


def _delete_entries(store: KeyValueStore, record_id: str) -> None:
    try:
        store.delete(meta_key(record_id))
    finally:
        store.delete(content_key(record_id))


def _id_available(store: KeyValueStore, record_id: str) -> bool:
    return store.get(meta_key(record_id), cache_ttl=0) is None


def _assign_id(store: KeyValueStore, custom_slug: Optional[str]) -> str:
    if custom_slug:
        if not _SLUG_PATTERN.match(custom_slug):
            raise BadRequestError(
                "Invalid custom slug",
                detail="Use 1-64 letters, digits, '-' or '_'",
            )
        if not _id_available(store, custom_slug):
            raise BadRequestError("Custom slug already in use")
        return custom_slug

    for _ in range(MAX_ID_ATTEMPTS):
        candidate = generate_id()
        if _id_available(store, candidate):
            return candidate
    raise StoreError("Could not allocate a record id")


def create_record(
    store: KeyValueStore,
    content: str,
    *,
    filename: str,
    content_type: str,
    kind: str = "file",
    raw_size: Optional[int] = None,
    burn_after_read: bool = False,
    expires_in: Any = None,
    max_downloads: Any = None,
    custom_slug: Optional[str] = None,
    subscription_info: Any = None,
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Validate an upload and write its content and metadata entries.

    ``content`` is the encoded payload as it will be stored: base64 for
    files, the text itself for text and subscription uploads. ``raw_size``
    is the decoded size used for the upload ceiling when it differs.

    Raises:
        BadRequestError: oversized or blocked payloads, invalid options and
            custom slugs that are malformed or already taken.
    """

    if kind not in RECORD_TYPES:
        raise BadRequestError("Invalid type", detail=f"Expected one of {', '.join(RECORD_TYPES)}")

    payload_size = raw_size if raw_size is not None else len(content.encode("utf-8"))
    if payload_size > max_upload_bytes:
        raise BadRequestError("Too large")

    if is_blocked_content_type(content_type):
        raise BadRequestError("File type blocked")

    if kind != "file" and not content.strip():
        raise BadRequestError("No content")

    if kind == "subscription":
        content = content.strip()
        if urlparse(content).scheme not in ("http", "https"):
            raise BadRequestError("Subscription content must be an http(s) URL")

    expires_hours = _coerce_optional_int(expires_in, "expiresIn")
    download_limit = _coerce_optional_int(max_downloads, "maxDownloads")
    info = normalize_subscription_info(subscription_info)
    if custom_slug is not None and not isinstance(custom_slug, str):
        raise BadRequestError("Invalid custom slug")
    slug = custom_slug.strip() if custom_slug else None

    created = time.time() if now is None else now
    expires_at = None
    if expires_hours:
        try:
            expires_at = isoformat_utc(created + expires_hours * 3600)
        except (ValueError, OverflowError, OSError) as error:
            raise BadRequestError("Invalid expiresIn") from error

    record_id = _assign_id(store, slug)

    record: Dict[str, Any] = {
        "id": record_id,
        "filename": clean_filename(filename, "file" if kind == "file" else "text.txt"),
        "contentType": content_type or "application/octet-stream",
        "size": len(content),
        "type": kind,
        "createdAt": isoformat_utc(created),
        "burnAfterRead": bool(burn_after_read),
        "downloadCount": 0,
    }
    if expires_at:
        record["expiresAt"] = expires_at
    if download_limit:
        record["maxDownloads"] = download_limit
    if info is not None:
        record["subscriptionInfo"] = info

    store.put(content_key(record_id), content)
    save_record(store, record)

    logger.info(
        "record_created record_id=%s type=%s size=%d custom_slug=%s burn_after_read=%s "
        "expires_at=%s max_downloads=%s",
        record_id,
        kind,
        record["size"],
        bool(slug),
        record["burnAfterRead"],
        record.get("expiresAt"),
        record.get("maxDownloads"),
    )
    return record


def consume_record(
    store: KeyValueStore,
    record_id: str,
    *,
    now: Optional[float] = None,
    access: Optional[Dict[str, str]] = None,
) -> Tuple[Dict[str, Any], str]:
    """Perform one read of a record, applying expiry, limits and burn rules.

    Returns the updated metadata and the stored (still encoded) content.
    The counter is incremented before deciding between persisting the
    metadata and deleting the record for burn-after-read.
    """

    record = load_record(store, record_id)
    if record is None:
        raise NotFoundError("Not found")

    if is_expired(record, now):
        try:
            _delete_entries(store, record_id)
        except StoreError as error:
            logger.warning("record_expiry_delete_failed record_id=%s error=%s", record_id, error)
        else:
            logger.info("record_expired_deleted record_id=%s", record_id)
        raise GoneError("File expired")

    if limit_reached(record):
        logger.info(
            "record_limit_reached record_id=%s downloads=%s max=%s",
            record_id,
            record.get("downloadCount"),
            record.get("maxDownloads"),
        )
        raise GoneError("Download limit reached")

    content = store.get(content_key(record_id))
    if content is None:
        logger.warning("record_content_missing record_id=%s", record_id)
        raise NotFoundError("No content")

    record["downloadCount"] = int(record.get("downloadCount") or 0) + 1
    if access:
        logs: List[Dict[str, str]] = list(record.get("accessLogs") or [])
        entry = {"timestamp": isoformat_utc(time.time() if now is None else now)}
        entry.update(access)
        logs.append(entry)
        record["accessLogs"] = logs[-MAX_ACCESS_LOGS:]

    burned = bool(record.get("burnAfterRead"))
    if burned:
        _delete_entries(store, record_id)
    else:
        save_record(store, record)

    logger.info(
        "record_consumed record_id=%s downloads=%d burned=%s",
        record_id,
        record["downloadCount"],
        burned,
    )
    return record, content


def decode_content(record: Dict[str, Any], content: str) -> bytes:
    if record_kind(record) != "file":
        return content.encode("utf-8")
    try:
        return base64.b64decode(content, validate=True)
    except (binascii.Error, ValueError) as error:
        raise StoreError("Stored content is corrupt", detail=str(error)) from error


def delete_record(store: KeyValueStore, record_id: str) -> bool:
    """Delete a record's metadata and content. Returns whether it existed."""

    existed = store.get(meta_key(record_id), cache_ttl=0) is not None
    _delete_entries(store, record_id)
    logger.info("record_deleted record_id=%s existed=%s", record_id, existed)
    return existed


def batch_delete_records(store: KeyValueStore, record_ids: Iterable[str]) -> Dict[str, int]:
    deleted = 0
    failed = 0
    for record_id in record_ids:
        if not isinstance(record_id, str) or not record_id:
            failed += 1
            continue
        try:
            _delete_entries(store, record_id)
            deleted += 1
        except CloudShareError as error:
            failed += 1
            logger.warning("record_batch_delete_failed record_id=%s error=%s", record_id, error)
    logger.info("record_batch_delete_completed deleted=%d failed=%d", deleted, failed)
    return {"deleted": deleted, "failed": failed}


def cleanup_expired_records(store: KeyValueStore, now: Optional[float] = None) -> Dict[str, int]:
    """Delete every expired record; a failing record is counted, not fatal."""

    current = time.time() if now is None else now
    deleted = 0
    errors = 0
    for key in store.list_keys(META_PREFIX):
        record_id = key[len(META_PREFIX):]
        try:
            record = load_record(store, record_id, cache_ttl=0)
            if record is None or not is_expired(record, current):
                continue
            _delete_entries(store, record_id)
            deleted += 1
        except CloudShareError as error:
            errors += 1
            logger.warning("cleanup_record_failed record_id=%s error=%s", record_id, error)
    if deleted or errors:
        logger.info("cleanup_completed deleted=%d errors=%d", deleted, errors)
    return {"deleted": deleted, "errors": errors}


def iter_records(store: KeyValueStore, cache_ttl: Optional[float] = None) -> Iterable[Dict[str, Any]]:
    for key in store.list_keys(META_PREFIX):
        record = load_record(store, key[len(META_PREFIX):], cache_ttl)
        if record is not None:
            yield record


def _matches_status(record: Dict[str, Any], status: str, now: float) -> bool:
    expired = is_expired(record, now)
    if status == "expired":
        return expired
    if status == "active":
        return not expired and not limit_reached(record)
    if status == "burnAfterRead":
        return bool(record.get("burnAfterRead"))
    return True


def list_records(
    store: KeyValueStore,
    *,
    search: Optional[str] = None,
    kind: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 100,
    cache_ttl: Optional[float] = None,
    now: Optional[float] = None,
) -> Tuple[List[Dict[str, Any]], int]:
    """Return newest-first records matching the filters and the match count."""

    current = time.time() if now is None else now
    query = (search or "").strip().lower()
    matched = []
    for record in iter_records(store, cache_ttl):
        if query:
            in_id = query in str(record.get("id", "")).lower()
            in_name = query in str(record.get("filename", "")).lower()
            if not in_id and not in_name:
                continue
        if kind and kind != "all" and record_kind(record) != kind:
            continue
        if status and status != "all" and not _matches_status(record, status, current):
            continue
        matched.append(record)

    matched.sort(key=lambda item: parse_timestamp(item.get("createdAt")) or 0.0, reverse=True)
    return matched[: max(int(limit), 0)], len(matched)


def get_record_statistics(
    store: KeyValueStore, cache_ttl: Optional[float] = None, now: Optional[float] = None
) -> Dict[str, int]:
    current = time.time() if now is None else now
    stats = {"total": 0, "files": 0, "texts": 0, "subscriptions": 0, "totalSize": 0, "expired": 0}
    for record in iter_records(store, cache_ttl):
        stats["total"] += 1
        kind = record_kind(record)
        if kind == "file":
            stats["files"] += 1
        elif kind == "text":
            stats["texts"] += 1
        else:
            stats["subscriptions"] += 1
        try:
            stats["totalSize"] += int(record.get("size") or 0)
        except (TypeError, ValueError):
            pass
        if is_expired(record, current):
            stats["expired"] += 1
    return stats


def verify_admin(credential: Optional[str], secret: Optional[str]) -> bool:
    """Check a presented credential against the configured admin secret.

    An empty secret locks the admin API.
    """

    if not secret or not credential:
        return False
    return compare_digest(credential.encode("utf-8"), secret.encode("utf-8"))
