# ingest/price_heuristics.py
import re
from dataclasses import dataclass

CONTEXT_CHARS = 50

LIST_PRICE_WORDS = ("list", "msrp", "was", "original", "typical", "strikethrough")
BUY_BOX_WORDS = ("buybox", "buying", "apex")
SALE_WORDS = ("sale", "now", "current", "offer", "deal")

AMAZON_BUY_BOX_PATTERNS = [
    re.compile(r'<span[^>]*class="[^"]*a-offscreen[^"]*"[^>]*>\$?([0-9,]+\.?[0-9]*)</span>', re.IGNORECASE),
    re.compile(r'"corePriceDisplay"\s*:\s*{\s*"price"\s*:\s*"?\$?([0-9,]+\.?[0-9]*)"', re.IGNORECASE),
    re.compile(r'"apex_desktop"\s*:\s*"?\$?([0-9,]+\.?[0-9]*)"', re.IGNORECASE),
    re.compile(r'buyingPrice["\s:]+\$?([0-9,]+\.?[0-9]*)', re.IGNORECASE),
]

DOLLAR_RE = re.compile(r"\$\s*([0-9]{1,3}(?:[0-9,]*)?(?:\.[0-9]{2})?)")
JSON_PRICE_RE = re.compile(r'"(?:price|lowPrice|buyingPrice)"\s*:\s*"?([0-9.,]+)"?', re.IGNORECASE)


@dataclass
class PriceCandidate:
    value: float
    context: str
    index: int
    score: float = 0.0


def _to_number(text):
    try:
        value = float(text.replace(",", ""))
    except ValueError:
        return None
    return value if value > 0 else None


def find_amazon_buy_box_price(html):
    """Return the first positive price matched by an Amazon buy-box pattern."""
    for pattern in AMAZON_BUY_BOX_PATTERNS:
        match = pattern.search(html)
        if match:
            value = _to_number(match.group(1))
            if value is not None:
                return value
    return None


def collect_price_candidates(html):
    candidates = []
    for regex in (DOLLAR_RE, JSON_PRICE_RE):
        for match in regex.finditer(html):
            value = _to_number(match.group(1))
            if value is None:
                continue
            start = max(0, match.start() - CONTEXT_CHARS)
            end = min(len(html), match.end() + CONTEXT_CHARS)
            candidates.append(
                PriceCandidate(value=value, context=html[start:end].lower(), index=match.start())
            )
    return candidates


def score_candidate(candidate, html_length):
    score = (1 - candidate.index / html_length) * 10
    if any(word in candidate.context for word in BUY_BOX_WORDS):
        score += 30
    if any(word in candidate.context for word in SALE_WORDS):
        score += 20
    if candidate.value > 1000:
        score -= 5
    return score


def regex_find_price(html):
    """
    Heuristic price scan over raw HTML.

    Many storefronts render the price only as visual markup, so this looks
    for dollar amounts and JSON price fields directly in the page source.

    Args:
        html (str): Raw page HTML

    Returns:
        float or None: Best-scoring price candidate, or None if the page
            contains no positive price-like numbers

    Scoring:
        - Amazon buy-box patterns short-circuit the scan when they match
        - candidates whose surrounding text mentions list/msrp/was/original/
          typical/strikethrough are dropped (unless that drops all of them)
        - earlier position: up to +10
        - buy box context (buybox, buying, apex): +30
        - sale/current context (sale, now, current, offer, deal): +20
        - value over 1000: -5
    """
    if not html:
        return None

    buy_box = find_amazon_buy_box_price(html)
    if buy_box is not None:
        return buy_box

    candidates = collect_price_candidates(html)
    if not candidates:
        return None

    filtered = [
        c for c in candidates if not any(word in c.context for word in LIST_PRICE_WORDS)
    ]
    pool = filtered or candidates

    for candidate in pool:
        candidate.score = score_candidate(candidate, len(html))

    # max() keeps the earliest candidate on ties
    best = max(pool, key=lambda c: c.score)
    return best.value
