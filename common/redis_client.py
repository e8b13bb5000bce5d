"""
Redis client utilities for persisted payment state
"""
import json
import logging
from typing import Optional, Dict, Any

import redis

from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper storing JSON documents under plain keys"""

    def __init__(self, url: str = None, client=None):
        self.client = client if client is not None else redis.Redis.from_url(
            url or settings.redis_url, decode_responses=True
        )

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.warning(f"Redis ping failed: {e}")
            return False

    def set_json(self, key: str, value: Dict[str, Any], ttl_seconds: Optional[int] = None) -> None:
        data = json.dumps(value, default=str)
        if ttl_seconds:
            self.client.setex(key, ttl_seconds, data)
        else:
            self.client.set(key, data)

    def get_json(self, key: str) -> Optional[Dict[str, Any]]:
        value = self.client.get(key)
        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError:
            logger.warning(f"Discarding undecodable value under {key}")
            return None

    def delete(self, key: str) -> bool:
        return bool(self.client.delete(key))
