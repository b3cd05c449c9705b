# ingest/html_extractor.py
import json
import logging
import re

import httpx
from bs4 import BeautifulSoup

from .models import PreviewSource, ProductPreview, StageResult
from .price_heuristics import regex_find_price
from .utils import first_non_empty, parse_price

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

DEFAULT_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

AMAZON_IMAGE_PATTERNS = [
    re.compile(r'"hiRes":"([^"]+)"', re.IGNORECASE),
    re.compile(r'"large":"([^"]+)"', re.IGNORECASE),
    re.compile(r'data-old-hires="([^"]+)"', re.IGNORECASE),
    re.compile(r'id="landingImage"[^>]+src="([^"]+)"', re.IGNORECASE),
]

META_CURRENCY_KEYS = ("product:price:currency", "og:price:currency", "price:currency")
META_PRICE_KEYS = ("product:price:amount", "og:price:amount", "price")

logger = logging.getLogger("ingest.html")


def parse_meta_tags(soup):
    """Map lower-cased meta name/property to content; first occurrence wins."""
    meta = {}
    for tag in soup.find_all("meta"):
        key = tag.get("property") or tag.get("name") or tag.get("itemprop")
        content = tag.get("content")
        if not key or not content or not content.strip():
            continue
        meta.setdefault(key.strip().lower(), content.strip())
    return meta


def _flatten_json_ld(data, out):
    if isinstance(data, list):
        for item in data:
            _flatten_json_ld(item, out)
    elif isinstance(data, dict):
        out.append(data)
        if isinstance(data.get("@graph"), list):
            _flatten_json_ld(data["@graph"], out)


def extract_json_ld(soup, warnings):
    """Parse every ld+json script block; malformed blocks become warnings."""
    entries = []
    for tag in soup.find_all("script", type=lambda t: t and "ld+json" in t.lower()):
        raw = (tag.string or tag.get_text() or "").strip()
        if not raw:
            continue
        try:
            data = json.loads(raw)
        except ValueError:
            warnings.append("Skipped malformed JSON-LD block")
            continue
        _flatten_json_ld(data, entries)
    return entries


def pick_product(entries):
    for entry in entries:
        types = entry.get("@type")
        if not isinstance(types, list):
            types = [types]
        if "Product" in types:
            return entry
    return None


def _image_url(value):
    if isinstance(value, list):
        return first_non_empty(*[_image_url(v) for v in value])
    if isinstance(value, dict):
        return first_non_empty(value.get("url"), value.get("contentUrl"))
    if isinstance(value, str):
        return value
    return None


def _first_offer(product):
    offers = product.get("offers") if product else None
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    return offers if isinstance(offers, dict) else {}


def _price_specification(offer):
    spec = offer.get("priceSpecification")
    if isinstance(spec, list):
        spec = spec[0] if spec else None
    return spec if isinstance(spec, dict) else {}


def find_amazon_image(html):
    for pattern in AMAZON_IMAGE_PATTERNS:
        match = pattern.search(html)
        if match:
            return match.group(1)
    return None


def _text(value):
    return value if isinstance(value, str) else None


def parse_product_page(html, url, hostname="", warnings=None):
    """
    Build a preview from a product page's HTML.

    Args:
        html (str): Raw page HTML
        url (str): Normalized URL the page was fetched from
        hostname (str): Lower-cased host, used to enable Amazon fallbacks
        warnings (list[str], optional): Collector for non-fatal problems

    Returns:
        ProductPreview: Unscored preview tagged with source "html"

    Resolution order:
        - title: og:title, twitter:title, JSON-LD name, <title>
        - description: og:description, description, twitter:description,
          JSON-LD description
        - image: og:image, twitter:image, JSON-LD image, then Amazon embedded
          image patterns on Amazon hosts
        - price: JSON-LD offer lowPrice, price, priceSpecification.price,
          highPrice, then meta price tags, then the regex price scan
        - currency: JSON-LD offer priceCurrency, priceSpecification
          currency, then meta currency tags
    """
    warnings = warnings if warnings is not None else []
    soup = BeautifulSoup(html, "lxml")
    meta = parse_meta_tags(soup)
    product = pick_product(extract_json_ld(soup, warnings)) or {}
    offer = _first_offer(product)
    spec = _price_specification(offer)

    title_tag = soup.find("title")
    canonical_link = soup.find("link", rel="canonical")

    title = first_non_empty(
        meta.get("og:title"),
        meta.get("twitter:title"),
        _text(product.get("name")),
        title_tag.get_text() if title_tag else None,
    )
    description = first_non_empty(
        meta.get("og:description"),
        meta.get("description"),
        meta.get("twitter:description"),
        _text(product.get("description")),
    )
    image = first_non_empty(
        meta.get("og:image"),
        meta.get("twitter:image"),
        _image_url(product.get("image")),
    )
    if not image and "amazon." in hostname:
        image = find_amazon_image(html)

    price = first_non_empty(
        parse_price(offer.get("lowPrice")),
        parse_price(offer.get("price")),
        parse_price(spec.get("price")),
        parse_price(offer.get("highPrice")),
        *[parse_price(meta.get(key)) for key in META_PRICE_KEYS],
    )
    if price is None:
        price = regex_find_price(html)

    currency = first_non_empty(
        _text(offer.get("priceCurrency")),
        _text(spec.get("priceCurrency")),
        *[meta.get(key) for key in META_CURRENCY_KEYS],
    )

    return ProductPreview(
        url=url,
        canonical_url=first_non_empty(
            meta.get("og:url"), canonical_link.get("href") if canonical_link else None
        ),
        title=title,
        description=description,
        price=price,
        currency=currency,
        image=image,
        images=[image] if image else [],
        availability=_text(offer.get("availability")),
        source=PreviewSource.HTML,
        warnings=warnings,
    )


class HtmlExtractor:
    """Stage 1: fetch the page directly and read its metadata."""

    def __init__(self, client, timeout=12.0):
        self.client = client
        self.timeout = timeout

    async def fetch(self, url):
        resp = await self.client.get(
            url, headers=DEFAULT_HEADERS, timeout=self.timeout, follow_redirects=True
        )
        return resp.status_code, resp.text

    async def extract(self, url, hostname=""):
        """
        Fetch and parse a product page; never raises.

        Args:
            url (str): Normalized URL to fetch
            hostname (str): Lower-cased hostname of ``url``

        Returns:
            StageResult: preview plus warnings. On fetch error or timeout the
                preview carries only ``url``, confidence 0 and a warning.
        """
        warnings = []
        try:
            status_code, html = await self.fetch(url)
        except httpx.TimeoutException as e:
            logger.warning(f"HTML fetch timed out for {url}: {e!r}")
            warnings.append(f"HTML fetch timed out after {self.timeout:g}s")
            return StageResult(ProductPreview(url=url, warnings=warnings), warnings)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"HTML fetch failed for {url}: {e!r}")
            warnings.append(f"HTML fetch failed: {e!r}")
            return StageResult(ProductPreview(url=url, warnings=warnings), warnings)

        if status_code >= 400:
            warnings.append(f"HTML fetch returned status {status_code}")

        preview = parse_product_page(html, url, hostname=hostname, warnings=warnings)
        return StageResult(preview, warnings)
