"""
Crypto and header helpers shared by every verifier.

Pure functions, no state. Nothing here raises on malformed input: a header
that cannot be parsed is simply absent.
"""
import base64
import hashlib
import hmac
import time
from datetime import datetime, timezone
from typing import Any, Mapping
from urllib.parse import urlencode


def _to_bytes(value: str | bytes) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def secure_compare(a: str | bytes | None, b: str | bytes | None) -> bool:
    """
    Constant-time equality check.

    Every byte is XOR-accumulated so the running time does not depend on
    where (or whether) the inputs differ. Empty inputs never match.
    """
    if not a or not b:
        return False

    left = _to_bytes(a)
    right = _to_bytes(b)
    if len(left) != len(right):
        return False

    result = 0
    for x, y in zip(left, right):
        result |= x ^ y
    return result == 0


def generate_hmac(secret: str | bytes, data: str | bytes, encoding: str = "hex") -> str:
    """
    HMAC-SHA256 of ``data`` keyed by ``secret``.

    Args:
        encoding: "hex" or "base64"
    """
    digest = hmac.new(_to_bytes(secret), _to_bytes(data), hashlib.sha256)
    if encoding == "hex":
        return digest.hexdigest()
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    raise ValueError(f"Unsupported HMAC encoding: {encoding}")


def _header_variants(key: str) -> tuple[str, ...]:
    return (
        key,
        key.lower(),
        key.upper(),
        "HTTP_" + key.upper().replace("-", "_"),
    )


def extract_header(headers: Mapping[str, Any] | None, *keys: str) -> str | None:
    """
    Return the first non-empty header value among ``keys``.

    Each key is tried as given, lower-cased, upper-cased and in its
    ``HTTP_X_FOO`` (WSGI/Rack environ) form.
    """
    if not headers:
        return None

    for key in keys:
        for variant in _header_variants(key):
            value = headers.get(variant)
            if value:
                return str(value)
    return None


def parse_kv_header(value: str | None) -> dict[str, str | list[str]]:
    """
    Parse ``"t=123,v1=abc,v1=def"`` style headers.

    Whitespace around keys and values is stripped; pairs without a key or
    value are skipped. A repeated key collects its values into a list so
    providers that send several signatures under one name keep all of them.
    """
    parsed: dict[str, str | list[str]] = {}
    if not value:
        return parsed

    for pair in value.split(","):
        key, sep, item = pair.partition("=")
        key = key.strip()
        item = item.strip()
        if not sep or not key or not item:
            continue

        if key in parsed:
            existing = parsed[key]
            if isinstance(existing, list):
                existing.append(item)
            else:
                parsed[key] = [existing, item]
        else:
            parsed[key] = item
    return parsed


def header_values(parsed: Mapping[str, str | list[str]], key: str) -> list[str]:
    """All values parsed for ``key`` as a list (empty when absent)."""
    value = parsed.get(key)
    if value is None:
        return []
    if isinstance(value, list):
        return list(value)
    return [value]


def parse_timestamp(value: Any) -> int | None:
    """
    Parse a Unix timestamp from an int, a digit string, or an ISO-8601 /
    RFC-3339 string. Returns None for anything else.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)

    text = str(value).strip()
    if text.isdigit():
        return int(text)

    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def timestamp_within_tolerance(
    timestamp: int | None,
    tolerance: int,
    now: float | None = None,
) -> bool:
    """True when ``|now - timestamp| <= tolerance`` (inclusive on both sides)."""
    if timestamp is None:
        return False
    current = int(now if now is not None else time.time())
    return abs(current - int(timestamp)) <= tolerance


def build_webhook_url(base_url: str, path: str, token: str | None = None) -> str:
    """Join a public base URL and a webhook path, optionally adding ``?token=``."""
    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    if token:
        url = f"{url}?{urlencode({'token': token})}"
    return url
