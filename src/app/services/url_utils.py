from __future__ import annotations

import base64
import hashlib
from urllib.parse import parse_qsl, quote, urlsplit

from src.app.domain.errors import InvalidPayloadError

ALLOWED_SCHEMES = ("http", "https")
DEFAULT_PORTS = {"http": 80, "https": 443}
URL_HASH_LENGTH = 22

TRACKING_PARAMETERS = frozenset({
    "fbclid",
    "fb_action_ids",
    "fb_action_types",
    "fb_source",
    "fb_ref",
    "msclkid",
    "gclid",
    "gclsrc",
    "dclid",
    "twclid",
    "mc_cid",
    "mc_eid",
    "ref",
    "ref_src",
    "ref_url",
    "_ga",
    "_gl",
    "oly_enc_id",
    "oly_anon_id",
    "vero_id",
    "nr_email_referer",
    "mkt_tok",
})
TRACKING_PREFIXES = ("utm_", "hsa_")


def is_tracking_parameter(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMETERS or lowered.startswith(TRACKING_PREFIXES)


def _split_http_url(url: str):
    if not url or not url.strip():
        raise InvalidPayloadError("URL cannot be empty", code="MISSING_URL")

    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as error:
        raise InvalidPayloadError(f"Invalid URL format: {url}", code="INVALID_URL_FORMAT") from error

    scheme = parts.scheme.lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidPayloadError(
            f"Only http and https schemes are supported, got: {parts.scheme or 'none'}",
            code="INVALID_SCHEME",
        )
    if not parts.hostname:
        raise InvalidPayloadError(f"Invalid URL format: {url}", code="INVALID_URL_FORMAT")

    return parts, scheme, port


def normalize_url(url: str, remove_tracking_params: bool = True) -> str:
    """
    Canonical form used for duplicate detection.

    Lowercases scheme and host, drops the default port, the fragment and a
    trailing slash (except the root path), removes tracking parameters and
    sorts the remaining query parameters by key then value.
    """
    parts, scheme, port = _split_http_url(url)

    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None or port == DEFAULT_PORTS[scheme] else f"{host}:{port}"

    path = parts.path or "/"
    if len(path) > 1 and path.endswith("/"):
        path = path.rstrip("/") or "/"

    params = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not (remove_tracking_params and is_tracking_parameter(key))
    ]
    params.sort(key=lambda item: (item[0].lower(), item[1]))

    normalized = f"{scheme}://{netloc}{path}"
    if params:
        normalized += "?" + "&".join(f"{quote(key, safe='')}={quote(value, safe='')}" for key, value in params)
    return normalized


def compute_url_hash(url: str) -> str:
    """SHA-256 of the normalized URL, base64url without padding, 22 characters."""
    digest = hashlib.sha256(normalize_url(url).encode("utf-8")).digest()
    encoded = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return encoded[:URL_HASH_LENGTH]


def origin_of(url: str) -> str:
    """scheme://host:port, the key the circuit breaker counts failures under."""
    parts, scheme, port = _split_http_url(url)
    effective_port = port or DEFAULT_PORTS[scheme]
    return f"{scheme}://{parts.hostname.lower()}:{effective_port}"
