# ingest/normalize.py
import re
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import idna

from .errors import InvalidUrlError
from .utils import compute_url_hash

TRACKING_PARAMS = frozenset(
    [
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "gclid",
        "fbclid",
        "mc_cid",
        "mc_eid",
        "igshid",
        "msclkid",
    ]
)

AMAZON_HOST_RE = re.compile(r"amazon\.", re.IGNORECASE)
ASIN_RE = re.compile(r"/([A-Z0-9]{10})(?:/|$)", re.IGNORECASE)
HOSTNAME_RE = re.compile(r"^[\w.\-:]+$")
SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")


@dataclass(frozen=True)
class NormalizedUrl:
    normalized: str
    hash: str
    hostname: str


def _is_fetchable_host(hostname):
    """True if every label is valid IDNA and the HTTP client accepts the host."""
    if ":" in hostname:
        return True
    try:
        for label in hostname.lower().split("."):
            if label.startswith("xn--"):
                idna.decode(label)
        httpx.URL(f"https://{hostname}/").host
    except (idna.IDNAError, httpx.InvalidURL, UnicodeError):
        return False
    return True


def _parse(candidate):
    try:
        parts = urlsplit(candidate)
        parts.port  # raises ValueError for a malformed port
    except ValueError:
        return None
    if not parts.netloc or not parts.hostname:
        return None
    if not HOSTNAME_RE.match(parts.hostname):
        return None
    if not _is_fetchable_host(parts.hostname):
        return None
    return parts


def _is_tracking_param(name):
    return name in TRACKING_PARAMS or name.startswith("utm_")


def _build_netloc(parts):
    host = parts.hostname.lower()
    if ":" in host:
        host = f"[{host}]"
    userinfo = ""
    if parts.username is not None:
        userinfo = parts.username
        if parts.password is not None:
            userinfo += f":{parts.password}"
        userinfo += "@"
    port = parts.port
    if port is not None and port != 443:
        return f"{userinfo}{host}:{port}"
    return f"{userinfo}{host}"


def normalize_url(raw):
    """
    Canonicalize a user-supplied URL into a cache identity.

    Args:
        raw (str): URL as pasted by the user, scheme optional

    Returns:
        NormalizedUrl: normalized URL string, its SHA-256 hex digest and the
            lower-cased hostname

    Raises:
        InvalidUrlError: if the input is not a URL even with ``https://``
            prepended

    Normalization:
        - scheme is forced to https, default port dropped
        - tracking parameters (utm_*, gclid, fbclid, ...) are removed
        - Amazon product URLs collapse to /dp/<ASIN> without a query
        - trailing slashes are stripped unless the path is just "/"
    """
    if not isinstance(raw, str) or not raw.strip():
        raise InvalidUrlError()
    raw = raw.strip()

    parts = _parse(raw)
    if parts is None and not SCHEME_RE.match(raw):
        parts = _parse(f"https://{raw}")
    if parts is None:
        raise InvalidUrlError()

    hostname = parts.hostname.lower()
    path = parts.path or "/"
    query = parts.query

    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        kept = [(k, v) for k, v in pairs if not _is_tracking_param(k)]
        if len(kept) != len(pairs):
            query = urlencode(kept)

    if AMAZON_HOST_RE.search(hostname):
        asin_match = ASIN_RE.search(path)
        if asin_match:
            path = f"/dp/{asin_match.group(1).upper()}"
            query = ""

    if path != "/":
        path = path.rstrip("/") or "/"

    normalized = urlunsplit(("https", _build_netloc(parts), path, query, parts.fragment))
    return NormalizedUrl(
        normalized=normalized,
        hash=compute_url_hash(normalized),
        hostname=hostname,
    )
