# ingest/utils.py
import hashlib
import math
import re


def compute_url_hash(normalized_url):
    """
    Generate the cache key for a normalized URL.

    Args:
        normalized_url (str): Output of the URL normalizer

    Returns:
        str: Hexadecimal SHA-256 hash string (64 characters)
    """
    return hashlib.sha256(normalized_url.encode("utf-8")).hexdigest()


def first_non_empty(*candidates):
    """
    Return the first candidate that carries a value.

    Candidates are checked in order; ``None``, empty strings, whitespace-only
    strings and empty lists are skipped. Strings are returned stripped.

    Returns:
        The first usable candidate, or None if there is none.
    """
    for candidate in candidates:
        if candidate is None:
            continue
        if isinstance(candidate, str):
            stripped = candidate.strip()
            if stripped:
                return stripped
            continue
        if isinstance(candidate, (list, tuple)) and not candidate:
            continue
        return candidate
    return None


def parse_price(raw):
    """
    Best-effort conversion of a price value to a non-negative float.

    Numbers are accepted as they are. Strings have every character except
    digits and the decimal point removed first, so "$1,299.00" parses as
    1299.0. Booleans, containers, NaN, infinities and negative numbers
    yield None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        cleaned = re.sub(r"[^0-9.]", "", raw)
        if not cleaned:
            return None
        try:
            value = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(value) or value < 0:
        return None
    return value
