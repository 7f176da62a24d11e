"""
Profile Cache Repository - Redis cache for loyalty profiles
"""
import json
import os
from typing import Dict, Optional

import redis


class ProfileCacheRepository:
    """Repository for the loyalty profile cache in Redis"""

    def __init__(self, host: str = None, port: int = None, ttl: int = None, client: redis.Redis = None):
        self.client = client or redis.Redis(
            host=host or os.getenv('REDIS_HOST', 'localhost'),
            port=int(port or os.getenv('REDIS_PORT', '6379')),
            decode_responses=True
        )
        self.ttl = int(ttl or os.getenv('LOYALTY_CACHE_TTL', '300'))

    @staticmethod
    def _key(email: str) -> str:
        return f"loyalty:v1:{email}"

    def get_profile(self, email: str) -> Optional[Dict]:
        """Retrieve a cached profile"""
        data = self.client.get(self._key(email))
        if data:
            return json.loads(data)
        return None

    def store_profile(self, email: str, profile: Dict) -> None:
        """Store a profile with TTL"""
        self.client.setex(self._key(email), self.ttl, json.dumps(profile, default=str))

    def invalidate(self, email: str) -> None:
        self.client.delete(self._key(email))

    def ping(self) -> bool:
        return bool(self.client.ping())
