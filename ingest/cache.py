# ingest/cache.py
import logging
from datetime import datetime, timedelta, timezone

from pydantic import ValidationError

from .models import CacheEntry

logger = logging.getLogger("ingest.cache")

DEFAULT_TTL_DAYS = 30


def utcnow():
    return datetime.now(timezone.utc)


def _as_aware(value):
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class PreviewCache:
    """
    Content-addressed store of previews keyed by normalized URL hash.

    Backed by a Motor collection. Entries whose ``expiresAt`` has passed, or
    whose preview is weak (missing title, image, price or currency), read
    as misses so the caller re-enriches instead of serving a partial result.
    """

    def __init__(self, collection, ttl_days=DEFAULT_TTL_DAYS, now=utcnow):
        self.collection = collection
        self.ttl = timedelta(days=ttl_days)
        self.now = now

    async def get(self, url_hash):
        """
        Fetch a usable cached preview.

        Args:
            url_hash (str): SHA-256 of the normalized URL

        Returns:
            ProductPreview or None: None when the entry is absent, expired,
                unreadable or weak
        """
        doc = await self.collection.find_one({"_id": url_hash})
        if not doc:
            return None

        try:
            entry = CacheEntry.model_validate(doc)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable cache entry {url_hash}: {e}")
            return None

        if _as_aware(entry.expires_at) <= self.now():
            logger.info(f"Cache entry {url_hash} expired at {entry.expires_at}")
            return None

        if entry.preview.is_weak():
            logger.info(f"Cache entry {url_hash} is weak, forcing re-enrichment")
            return None

        return entry.preview

    async def put(self, url_hash, normalized_url, preview):
        """
        Store a preview, replacing any existing entry (last write wins).

        Unset fields are stripped from the stored preview; ``createdAt`` is
        now and ``expiresAt`` is now plus the TTL.
        """
        now = self.now()
        doc = {
            "_id": url_hash,
            "hash": url_hash,
            "normalizedUrl": normalized_url,
            "preview": preview.to_document(),
            "createdAt": now,
            "expiresAt": now + self.ttl,
        }
        await self.collection.replace_one({"_id": url_hash}, doc, upsert=True)
        return doc
