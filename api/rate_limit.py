# api/rate_limit.py
from datetime import datetime, timezone

from pymongo import ReturnDocument

DEFAULT_LIMIT_PER_HOUR = 30


def utcnow():
    return datetime.now(timezone.utc)


def hour_bucket(now):
    """UTC year/month/day/hour as a zero-padded ``YYYYMMDDHH`` string."""
    return now.astimezone(timezone.utc).strftime("%Y%m%d%H")


class RateLimiter:
    """
    Per-user, per-hour request quota kept in a MongoDB collection.

    One document per ``(userId, hourBucket)`` holds an integer ``count``.
    Buckets are created on first use and never deleted; a new hour simply
    starts a new bucket.
    """

    def __init__(self, collection, limit=DEFAULT_LIMIT_PER_HOUR, now=utcnow):
        self.collection = collection
        self.limit = limit
        self.now = now

    async def check_and_increment(self, user_id):
        """
        Count one request against the caller's current hour bucket.

        Args:
            user_id (str): Verified user identifier

        Returns:
            bool: True if the request is allowed (and was counted), False if
                the bucket already holds ``limit`` requests (nothing changes)

        Atomicity:
            The bucket document is created idempotently with ``$setOnInsert``.
            The check and the increment are then a single conditional
            ``find_one_and_update`` matching ``count < limit``, so concurrent
            requests can never push the count past the limit.
        """
        now = self.now()
        bucket = hour_bucket(now)
        key = f"{user_id}_{bucket}"

        await self.collection.update_one(
            {"_id": key},
            {"$setOnInsert": {"userId": user_id, "bucket": bucket, "count": 0}},
            upsert=True,
        )
        doc = await self.collection.find_one_and_update(
            {"_id": key, "count": {"$lt": self.limit}},
            {"$inc": {"count": 1}, "$set": {"updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        return doc is not None
