# ingest/db.py
from motor.motor_asyncio import AsyncIOMotorClient

from .config import get_settings

PREVIEWS_COLLECTION = "product_previews"
RATE_LIMITS_COLLECTION = "product_ingest_rate_limits"
API_TOKENS_COLLECTION = "api_tokens"

_client = None
_db = None


def get_client():
    """Initialize and return the MongoDB AsyncIOMotorClient singleton."""
    global _client, _db
    if _client is None:
        settings = get_settings()
        _client = AsyncIOMotorClient(settings.mongo_uri, tz_aware=True)
        _db = _client[settings.mongo_db]
    return _client


def get_db():
    """Return the MongoDB database instance, initializing if needed."""
    global _db
    if _db is None:
        get_client()
    return _db


def close_client():
    """Close the client and forget the singleton."""
    global _client, _db
    if _client is not None:
        _client.close()
    _client = None
    _db = None


async def ensure_indexes(db):
    """
    Create the indexes the pipeline relies on.

    The TTL index lets MongoDB drop expired previews on its own; reads still
    check ``expiresAt`` because the TTL monitor only runs once a minute.
    """
    await db[PREVIEWS_COLLECTION].create_index(
        [("expiresAt", 1)], expireAfterSeconds=0, name="preview_ttl"
    )
    await db[RATE_LIMITS_COLLECTION].create_index(
        [("userId", 1), ("bucket", 1)], name="user_bucket"
    )
    await db[API_TOKENS_COLLECTION].create_index([("user_id", 1)], name="token_user")
