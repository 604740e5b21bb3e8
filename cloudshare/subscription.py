"""Subscription header handling for proxied subscription feeds.

Custom overlay fields (``name``, ``upload``, ``download``, ``total`` and
``expire``) are rendered into the ``subscription-userinfo`` and
``content-disposition`` headers understood by proxy clients. When the feed
is relayed from an upstream URL, the upstream's own header is merged in:
custom fields win and keep their order, upstream fields fill the gaps.
"""

import ipaddress
import logging
import math
import re
import socket
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import quote, urlparse

import requests

from .errors import UpstreamFetchError
from .units import parse_size

USERINFO_HEADER = "subscription-userinfo"
DISPOSITION_HEADER = "content-disposition"
UPDATE_INTERVAL_HEADER = "profile-update-interval"

USERINFO_FIELDS = ("upload", "download", "total")
SUBSCRIPTION_INFO_FIELDS = ("name", "expire", "upload", "download", "total")

DEFAULT_USER_AGENT = "ClashForAndroid/2.5.12"
DEFAULT_TIMEOUT = 15.0

# Bare dates are read as the last second of that day in UTC+8.
_BARE_DATE_PATTERN = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
EXPIRE_TIMEZONE = timezone(timedelta(hours=8))
_DATE_TIME_PATTERN = re.compile(
    r"^(\d{4})[/-](\d{1,2})[/-](\d{1,2})(?:[ T](\d{1,2}):(\d{2})(?::(\d{2}))?)?$"
)

logger = logging.getLogger("cloudshare.subscription")


def _clean(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _parse_free_form_date(text: str) -> Optional[datetime]:
    candidate = text[:-1] + "+00:00" if text[-1] in "Zz" else text
    try:
        moment = datetime.fromisoformat(candidate)
    except ValueError:
        match = _DATE_TIME_PATTERN.match(text)
        if match:
            # Raises ValueError for impossible dates such as 2025/13/01.
            parts = [int(part) for part in match.groups(default="0")]
            return datetime(*parts, tzinfo=timezone.utc)
        try:
            moment = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def parse_expire(value: Any) -> Optional[int]:
    """Return the Unix timestamp for an expire field, or None if unusable."""

    text = _clean(value)
    if not text:
        return None

    match = _BARE_DATE_PATTERN.match(text)
    try:
        if match:
            year, month, day = (int(part) for part in match.groups())
            moment = datetime(year, month, day, 23, 59, 59, tzinfo=EXPIRE_TIMEZONE)
        else:
            moment = _parse_free_form_date(text)
        if moment is None:
            return None
        return math.floor(moment.timestamp())
    except (ValueError, OverflowError, OSError):
        return None


def build_subscription_headers(info: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Render custom subscription info into response headers.

    Each field is optional and handled on its own; a field that is empty or
    cannot be parsed is left out rather than failing the whole header.
    """

    if not info or not isinstance(info, Mapping):
        return {}

    parts = []
    for field in USERINFO_FIELDS:
        value = _clean(info.get(field))
        if value:
            parts.append(f"{field}={parse_size(value)}")

    expire = parse_expire(info.get("expire"))
    if expire is not None:
        parts.append(f"expire={expire}")

    headers: Dict[str, str] = {}
    if parts:
        headers[USERINFO_HEADER] = "; ".join(parts)

    name = _clean(info.get("name"))
    if name:
        headers[DISPOSITION_HEADER] = f"attachment; filename*=UTF-8''{quote(name, safe='')}"

    return headers


def parse_userinfo(header: Optional[str]) -> Dict[str, str]:
    """Split a ``subscription-userinfo`` value into an ordered field map."""

    fields: Dict[str, str] = {}
    if not header:
        return fields
    for segment in header.split(";"):
        segment = segment.strip()
        if "=" not in segment:
            continue
        key, value = segment.split("=", 1)
        key = key.strip()
        if key:
            fields[key] = value.strip()
    return fields


def _header_value(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    if not headers:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


def merge_subscription_headers(
    custom_headers: Mapping[str, str],
    upstream_headers: Optional[Mapping[str, str]],
) -> Dict[str, str]:
    """Overlay custom headers onto the upstream feed's headers."""

    merged: Dict[str, str] = {}
    upstream_userinfo = _header_value(upstream_headers, USERINFO_HEADER)
    custom_userinfo = custom_headers.get(USERINFO_HEADER)

    if custom_userinfo:
        parts = [part.strip() for part in custom_userinfo.split(";") if part.strip()]
        custom_fields = {part.split("=", 1)[0].strip() for part in parts}
        for field, value in parse_userinfo(upstream_userinfo).items():
            if field not in custom_fields:
                parts.append(f"{field}={value}")
        merged[USERINFO_HEADER] = "; ".join(parts)
    elif upstream_userinfo:
        merged[USERINFO_HEADER] = upstream_userinfo

    disposition = custom_headers.get(DISPOSITION_HEADER) or _header_value(
        upstream_headers, DISPOSITION_HEADER
    )
    if disposition:
        merged[DISPOSITION_HEADER] = disposition

    update_interval = _header_value(upstream_headers, UPDATE_INTERVAL_HEADER)
    if update_interval:
        merged[UPDATE_INTERVAL_HEADER] = update_interval

    return merged


def is_safe_url(url: str) -> Tuple[bool, Optional[str]]:
    """Reject non-HTTP(S) URLs and hosts resolving to internal addresses."""

    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return False, f"Unsupported URL scheme: {parsed.scheme or 'none'}"

    hostname = parsed.hostname
    if not hostname:
        return False, "Invalid URL: missing hostname"

    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except socket.gaierror as error:
        return False, f"Could not resolve hostname '{hostname}': {error}"
    except OSError as error:
        return False, f"Network error resolving hostname '{hostname}': {error}"

    for _family, _, _, _, sockaddr in addr_info:
        try:
            ip = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if ip.is_private or ip.is_loopback or ip.is_link_local:
            return False, f"Access to internal address is not allowed: {ip}"
        if ip.is_reserved or ip.is_multicast or ip.is_unspecified:
            return False, f"Access to reserved address is not allowed: {ip}"

    return True, None


def _decode_body(response: requests.Response) -> str:
    content_type = response.headers.get("content-type", "")
    if "charset=" in content_type.lower():
        return response.text
    return response.content.decode("utf-8", errors="replace")


def fetch_subscription(
    url: str,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
    check_url: bool = True,
) -> Tuple[str, Mapping[str, str]]:
    """Fetch an upstream subscription feed, returning its body and headers.

    Raises:
        UpstreamFetchError: on network failure, an unsafe URL or a non-2xx
            status. No retry is attempted.
    """

    if check_url:
        is_safe, reason = is_safe_url(url)
        if not is_safe:
            logger.warning("upstream_blocked url=%s reason=%s", url, reason)
            raise UpstreamFetchError("Failed to fetch subscription", detail=reason)

    headers = {
        "User-Agent": user_agent,
        "Accept": "*/*",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }
    try:
        response = requests.get(url, headers=headers, timeout=timeout)
    except requests.RequestException as error:
        logger.warning("upstream_fetch_failed url=%s error=%s", url, error)
        raise UpstreamFetchError("Failed to fetch subscription", detail=str(error)) from error

    try:
        if not 200 <= response.status_code < 300:
            logger.warning(
                "upstream_fetch_rejected url=%s status=%d", url, response.status_code
            )
            raise UpstreamFetchError(
                "Failed to fetch subscription", detail=f"HTTP {response.status_code}"
            )
        body = _decode_body(response)
        upstream_headers = response.headers
    finally:
        response.close()

    logger.info("upstream_fetched url=%s bytes=%d", url, len(body))
    return body, upstream_headers


def resolve_subscription(
    url: str,
    info: Optional[Mapping[str, Any]],
    *,
    timeout: float = DEFAULT_TIMEOUT,
    user_agent: str = DEFAULT_USER_AGENT,
    check_url: bool = True,
) -> Tuple[str, Dict[str, str]]:
    """Fetch *url* and return the feed body with merged subscription headers."""

    body, upstream_headers = fetch_subscription(
        url, timeout=timeout, user_agent=user_agent, check_url=check_url
    )
    custom_headers = build_subscription_headers(info)
    return body, merge_subscription_headers(custom_headers, upstream_headers)
