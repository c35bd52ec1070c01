"""Redis cache of the order-status view polled by the storefront."""
import json
import logging
from typing import Any, Dict, Optional
from uuid import UUID

from redis import asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

STALE_CHANNEL = "order_views_stale"


class OrderViewCache:
    """Cache errors are logged and treated as misses; they never fail a request."""

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int = 30):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(order_id: UUID) -> str:
        return f"order:{order_id}:status"

    async def get_status(self, order_id: UUID) -> Optional[Dict[str, Any]]:
        try:
            cached = await self.redis.get(self.key(order_id))
        except RedisError as e:
            logger.warning(f"Order cache read failed for {order_id}: {str(e)}")
            return None
        return json.loads(cached) if cached else None

    async def set_status(self, order_id: UUID, view: Dict[str, Any]):
        try:
            await self.redis.set(self.key(order_id), json.dumps(view), ex=self.ttl_seconds)
        except RedisError as e:
            logger.warning(f"Order cache write failed for {order_id}: {str(e)}")

    async def invalidate(self, order_id: UUID):
        """Drop the cached view and tell other listeners (e.g. the web tier) it is stale."""
        try:
            await self.redis.delete(self.key(order_id))
            await self.redis.publish(STALE_CHANNEL, str(order_id))
        except RedisError as e:
            logger.warning(f"Order cache invalidation failed for {order_id}: {str(e)}")
            return
        logger.debug(f"Invalidated cached views for order {order_id}")
