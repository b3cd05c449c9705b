# ingest/structured_service.py
import logging

import httpx

from .models import PreviewSource, ProductPreview, StageResult
from .utils import first_non_empty, parse_price

logger = logging.getLogger("ingest.structured")


def _image_urls(images):
    if not isinstance(images, list):
        return []
    urls = []
    for image in images:
        url = image.get("url") if isinstance(image, dict) else image
        if isinstance(url, str) and url:
            urls.append(url)
    return urls


def _text(value):
    return value if isinstance(value, str) else None


def map_analyze_object(obj, url):
    """Translate the first object of an Analyze API response into a preview."""
    images = _image_urls(obj.get("images"))
    return ProductPreview(
        url=url,
        canonical_url=first_non_empty(_text(obj.get("pageUrl")), _text(obj.get("resolvedPageUrl"))),
        title=first_non_empty(_text(obj.get("title"))),
        description=first_non_empty(_text(obj.get("text"))),
        price=parse_price(obj.get("offerPrice")),
        currency=first_non_empty(_text(obj.get("offerCurrency"))),
        image=images[0] if images else None,
        images=images,
        availability=first_non_empty(_text(obj.get("availability"))),
        source=PreviewSource.STRUCTURED_SERVICE,
    )


class StructuredServiceExtractor:
    """
    Stage 2: general-purpose page analysis through a third-party API.

    Returns a ``None`` preview, never an exception, when the token is not
    configured, the call fails or times out, or the service finds nothing.
    """

    def __init__(self, client, settings):
        self.client = client
        self.token = settings.diffbot_token
        self.api_url = settings.diffbot_api_url
        self.timeout = settings.structured_service_timeout

    async def extract(self, url):
        warnings = []
        if not self.token:
            warnings.append("Structured extraction service not configured")
            return StageResult(None, warnings)

        try:
            resp = await self.client.get(
                self.api_url,
                params={"token": self.token, "url": url},
                timeout=self.timeout,
            )
        except httpx.TimeoutException:
            logger.warning(f"Structured service timed out for {url}")
            warnings.append(f"Structured service timed out after {self.timeout:g}s")
            return StageResult(None, warnings)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Structured service error for {url}: {e!r}")
            warnings.append(f"Structured service fetch error: {e!r}")
            return StageResult(None, warnings)

        if resp.status_code >= 400:
            warnings.append(f"Structured service request failed ({resp.status_code})")
            return StageResult(None, warnings)

        try:
            data = resp.json()
        except ValueError:
            warnings.append("Structured service returned invalid JSON")
            return StageResult(None, warnings)

        objects = data.get("objects") if isinstance(data, dict) else None
        if not isinstance(objects, list) or not objects or not isinstance(objects[0], dict):
            warnings.append("Structured service returned no objects")
            return StageResult(None, warnings)

        preview = map_analyze_object(objects[0], url)
        return StageResult(preview, warnings)
