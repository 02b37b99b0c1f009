"""Cache Repository - String key/value cache with TTL backed by MongoDB"""
from datetime import timedelta
from typing import Optional
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import APPROVER_CACHE, get_collection
from ..utils.time import ensure_utc, utc_now


class CacheRepository:
    """
    Minimal ``get`` / ``set`` cache.

    Entries expire through the TTL index on ``expires_at``; reads also check
    the expiry since the TTL monitor only sweeps once a minute.
    """

    def __init__(self, db: Optional[Database] = None):
        self._entries: Collection = get_collection(APPROVER_CACHE, db)

    def get(self, key: str) -> Optional[str]:
        """Cached value, or None when absent or expired"""
        doc = self._entries.find_one({"_id": key})
        if not doc:
            return None
        expires_at = ensure_utc(doc.get("expires_at"))
        if expires_at is not None and expires_at <= utc_now():
            return None
        return doc.get("value")

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value for ``ttl_seconds``"""
        self._entries.replace_one(
            {"_id": key},
            {"_id": key, "value": value, "expires_at": utc_now() + timedelta(seconds=ttl_seconds)},
            upsert=True
        )

