import json
import hashlib
import logging
from typing import Optional

import redis

from crewboard.config.settings import get_settings
from crewboard.models.rules import RuleTables

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "rules:snapshot"


class RuleCache:
    """Serialized rule tables in Redis, so a restart or a second worker can skip the rule queries."""

    def __init__(self, redis_url: Optional[str] = None, client=None):
        if client is None:
            client = redis.from_url(redis_url or get_settings().redis_url, decode_responses=True)
        self.redis_client = client

    def get(self) -> Optional[RuleTables]:
        """Retrieve the cached rule snapshot, if any."""
        try:
            cached = self.redis_client.get(SNAPSHOT_KEY)
        except redis.RedisError as exc:
            logger.warning(f"Rule cache unavailable: {exc}")
            return None
        if cached:
            return RuleTables.from_dict(json.loads(cached))
        return None

    def set(self, tables: RuleTables, ttl_seconds: int = 3600) -> None:
        """Cache rule snapshot with TTL (default 1 hour)."""
        try:
            self.redis_client.setex(SNAPSHOT_KEY, ttl_seconds, json.dumps(tables.to_dict(), sort_keys=True))
        except redis.RedisError as exc:
            logger.warning(f"Could not cache rule snapshot: {exc}")

    @staticmethod
    def fingerprint(tables: RuleTables) -> str:
        """Short hash identifying a rule table's content."""
        data = json.dumps(tables.to_dict(), sort_keys=True)
        return hashlib.sha256(data.encode()).hexdigest()[:16]

    def health_check(self) -> bool:
        """Check Redis connection."""
        try:
            self.redis_client.ping()
            return True
        except redis.RedisError:
            return False
