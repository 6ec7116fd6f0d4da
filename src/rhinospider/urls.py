from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_ALLOWED_SCHEMES = {"http", "https"}
_DENY_HOSTS = {"localhost", "127.0.0.1", "0.0.0.0", "example.com", "test.com"}
_DENY_SUFFIXES = (".test", ".invalid", ".local", ".example", ".localhost", ".example.com")
_MIN_HOST_LENGTH = 3
UNIQUENESS_PARAM = "_cb"


class UrlValidationError(ValueError):
    pass


@dataclass(frozen=True)
class UrlVerdict:
    accepted: bool
    url: str | None
    reason: str | None = None


def validate_url(raw: str | None) -> UrlVerdict:
    if not raw or not isinstance(raw, str):
        return UrlVerdict(False, None, "empty")
    candidate = raw.strip()
    try:
        split = urlsplit(candidate)
        hostname = split.hostname
    except ValueError:
        return UrlVerdict(False, None, "unparseable")
    scheme = split.scheme.lower()
    if scheme not in _ALLOWED_SCHEMES:
        return UrlVerdict(False, None, f"scheme:{scheme or 'none'}")
    if not hostname or len(hostname) < _MIN_HOST_LENGTH:
        return UrlVerdict(False, None, "hostname")
    if is_placeholder_host(hostname):
        return UrlVerdict(False, None, f"placeholder:{hostname}")
    return UrlVerdict(True, candidate)


def require_valid_url(raw: str | None) -> str:
    verdict = validate_url(raw)
    if not verdict.accepted or verdict.url is None:
        raise UrlValidationError(f"invalid url {raw!r}: {verdict.reason}")
    return verdict.url


def is_placeholder_host(hostname: str) -> bool:
    host = hostname.lower().rstrip(".")
    if host in _DENY_HOSTS:
        return True
    return host.endswith(_DENY_SUFFIXES)


def normalize_url(url: str) -> str:
    if not url:
        return ""
    split = urlsplit(url.strip())
    scheme = (split.scheme or "http").lower()
    netloc = split.netloc.lower()
    if ":" in netloc and not netloc.endswith("]"):
        host, port = netloc.rsplit(":", 1)
        if (scheme == "http" and port == "80") or (scheme == "https" and port == "443"):
            netloc = host
    path = split.path.rstrip("/")
    return urlunsplit((scheme, netloc, path, "", ""))


def url_host(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def add_uniqueness_token(url: str, value: str | int | None = None) -> str:
    stamp = str(value) if value is not None else str(int(time.time() * 1000))
    token = f"{stamp}-{uuid.uuid4().hex[:12]}"
    try:
        split = urlsplit(url)
        if not split.scheme or not split.netloc:
            raise ValueError("relative url")
        query = [
            (key, val)
            for key, val in parse_qsl(split.query, keep_blank_values=True)
            if key != UNIQUENESS_PARAM
        ]
        query.append((UNIQUENESS_PARAM, token))
        return urlunsplit((split.scheme, split.netloc, split.path, urlencode(query), split.fragment))
    except ValueError:
        separator = "&" if "?" in url else "?"
        return f"{url}{separator}{UNIQUENESS_PARAM}={token}"
