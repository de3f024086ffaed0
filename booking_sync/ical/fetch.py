from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from urllib.parse import urljoin, urlsplit

import httpx

from .errors import FeedUnreachableError, SyncCancelledError

_REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
_ACCEPT_HEADER = "text/calendar,text/plain;q=0.9,*/*;q=0.8"
_logger = logging.getLogger(__name__)


def _is_loopback_hostname(hostname: str) -> bool:
    normalized = hostname.strip().lower().rstrip(".")
    if normalized == "localhost" or normalized.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(normalized).is_loopback
    except ValueError:
        return False


def _resolves_to_loopback(hostname: str) -> bool:
    try:
        addr_info = socket.getaddrinfo(hostname, None)
    except socket.gaierror:
        return False
    for _family, _socktype, _proto, _canonname, sockaddr in addr_info:
        raw_ip = str(sockaddr[0]).split("%", 1)[0]
        try:
            if ipaddress.ip_address(raw_ip).is_loopback:
                return True
        except ValueError:
            continue
    return False


def validate_feed_url(raw_url: str) -> str:
    url = str(raw_url or "").strip()
    if not url:
        raise ValueError("iCal URL is required")
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in {"http", "https"}:
        raise ValueError("iCal URL must use http or https")
    if parts.username or parts.password:
        raise ValueError("iCal URL must not include credentials")
    if not parts.hostname:
        raise ValueError("iCal URL must include a host")
    if _is_loopback_hostname(parts.hostname) or _resolves_to_loopback(parts.hostname):
        raise ValueError("iCal URL host must not resolve to localhost/loopback")
    return parts.geturl()


def redacted_feed_host(raw_url: str | None) -> str | None:
    url = str(raw_url or "").strip()
    if not url:
        return None
    try:
        host = str(urlsplit(url).hostname or "").strip()
    except ValueError:
        return None
    return host or None


def _raise_if_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError("Sync cancelled while fetching the feed")


def _decode_body(body: bytes, charset: str | None) -> str:
    encoding = charset or "utf-8"
    try:
        text = body.decode(encoding, errors="replace")
    except LookupError:
        text = body.decode("utf-8", errors="replace")
    return text.lstrip("\ufeff")


def fetch_feed(
    url: str,
    *,
    timeout_seconds: float,
    max_bytes: int,
    max_redirects: int,
    cancel_event: threading.Event | None = None,
) -> str:
    """Download an iCal feed and return its text.

    Any transport failure, non-2xx status, redirect overflow or oversized
    body raises :class:`FeedUnreachableError`.
    """
    try:
        current_url = validate_feed_url(url)
    except ValueError as exc:
        raise FeedUnreachableError(str(exc)) from exc
    redirects = 0
    timeout = httpx.Timeout(timeout_seconds)
    headers = {"Accept": _ACCEPT_HEADER}
    with httpx.Client(timeout=timeout, follow_redirects=False) as client:
        while True:
            _raise_if_cancelled(cancel_event)
            try:
                with client.stream("GET", current_url, headers=headers) as response:
                    if response.status_code in _REDIRECT_STATUS_CODES:
                        location = response.headers.get("location")
                        if not location:
                            raise FeedUnreachableError(
                                "Feed redirect did not provide a location",
                                status_code=response.status_code,
                                reason=response.reason_phrase,
                            )
                        if redirects >= max_redirects:
                            raise FeedUnreachableError(
                                "Feed fetch exceeded redirect limit",
                                status_code=response.status_code,
                                reason=response.reason_phrase,
                            )
                        try:
                            current_url = validate_feed_url(urljoin(current_url, location))
                        except ValueError as exc:
                            raise FeedUnreachableError(str(exc)) from exc
                        redirects += 1
                        continue
                    if not response.is_success:
                        status_code = int(response.status_code)
                        reason = response.reason_phrase
                        raise FeedUnreachableError(
                            f"Failed to fetch feed: HTTP {status_code} {reason}".rstrip(),
                            status_code=status_code,
                            reason=reason,
                        )
                    chunks: list[bytes] = []
                    total_bytes = 0
                    for chunk in response.iter_bytes():
                        _raise_if_cancelled(cancel_event)
                        if not chunk:
                            continue
                        total_bytes += len(chunk)
                        if total_bytes > max_bytes:
                            raise FeedUnreachableError(
                                "Feed exceeded maximum allowed size",
                                status_code=response.status_code,
                                reason=response.reason_phrase,
                            )
                        chunks.append(chunk)
                    _logger.debug(
                        "fetched ical feed host=%s bytes=%d redirects=%d",
                        redacted_feed_host(current_url),
                        total_bytes,
                        redirects,
                    )
                    return _decode_body(b"".join(chunks), response.charset_encoding)
            except httpx.TimeoutException as exc:
                raise FeedUnreachableError("Feed fetch timed out") from exc
            except httpx.HTTPError as exc:
                raise FeedUnreachableError(f"Feed fetch failed: {exc}") from exc


__all__ = ["fetch_feed", "redacted_feed_host", "validate_feed_url"]
