import redis.asyncio as redis
from typing import Optional, Dict, Any, Sequence
import json
import structlog

from .config import Settings, get_settings
from .core.concurrency import ConcurrencyLimiter
from .core.work_queue import ALL_QUEUES, WorkDispatcher, WorkItem
from .models.agent import AgentKind

logger = structlog.get_logger()

QUEUE_KEY_PREFIX = "taskhive:queue:"
QUOTA_KEY_PREFIX = "taskhive:quota:"

# Global Redis client instance
redis_client: Optional[redis.Redis] = None


async def init_redis(settings: Optional[Settings] = None) -> redis.Redis:
    """Initialize Redis client"""
    global redis_client
    settings = settings or get_settings()

    redis_url = settings.upstash_redis_url or settings.redis_url
    if not redis_url:
        raise ValueError("Redis URL must be set in environment")

    try:
        redis_client = redis.from_url(
            redis_url,
            decode_responses=True,
            health_check_interval=30
        )

        # Test connection
        await redis_client.ping()
        logger.info("Redis connected successfully")

        return redis_client

    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        raise


def get_redis() -> redis.Redis:
    """Get Redis client instance"""
    if redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client

async def publish(channel: str, data: Dict[str, Any]) -> bool:
    """Publish message to channel"""
    await get_redis().publish(channel, json.dumps(data))
    return True

class RedisWorkQueue(WorkDispatcher):
    """
    One sorted set per queue name, scored by priority. ZPOPMAX hands out
    the highest priority item first.
    """

    def __init__(self, client: Optional[redis.Redis] = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        return self._client or get_redis()

    async def enqueue(self, item: WorkItem, queue_name: str) -> None:
        await self.client.zadd(f"{QUEUE_KEY_PREFIX}{queue_name}", {item.model_dump_json(): item.priority})

    async def dequeue(self, queue_names: Sequence[str] = ALL_QUEUES) -> Optional[WorkItem]:
        for name in queue_names:
            result = await self.client.zpopmax(f"{QUEUE_KEY_PREFIX}{name}")
            if result:
                item_json, _ = result[0]
                return WorkItem.model_validate_json(item_json)
        return None

    async def size(self, queue_name: Optional[str] = None) -> int:
        names = [queue_name] if queue_name is not None else list(ALL_QUEUES)
        total = 0
        for name in names:
            total += await self.client.zcard(f"{QUEUE_KEY_PREFIX}{name}")
        return total

# KEYS[1] = counter, ARGV[1] = limit
ACQUIRE_SCRIPT = """
local used = tonumber(redis.call('GET', KEYS[1]) or '0')
if used >= tonumber(ARGV[1]) then
    return 0
end
redis.call('INCR', KEYS[1])
return 1
"""

RELEASE_SCRIPT = """
local used = tonumber(redis.call('GET', KEYS[1]) or '0')
if used <= 0 then
    return 0
end
redis.call('DECR', KEYS[1])
return 1
"""

class RedisConcurrencyLimiter(ConcurrencyLimiter):
    """
    Counting semaphore per agent kind shared across processes. Check and
    increment run as one Lua script.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[redis.Redis] = None):
        self.settings = settings or get_settings()
        self._client = client
        self.logger = logger.bind(component="RedisConcurrencyLimiter")

    @property
    def client(self) -> redis.Redis:
        return self._client or get_redis()

    def _key(self, kind: AgentKind) -> str:
        return f"{QUOTA_KEY_PREFIX}{kind.value}"

    async def try_acquire(self, kind: AgentKind) -> bool:
        acquired = await self.client.eval(ACQUIRE_SCRIPT, 1, self._key(kind), self.limit(kind))
        if not int(acquired):
            self.logger.info(f"Quota exhausted for {kind.value}", limit=self.limit(kind))
        return bool(int(acquired))

    async def release(self, kind: AgentKind) -> None:
        released = await self.client.eval(RELEASE_SCRIPT, 1, self._key(kind))
        if not int(released):
            self.logger.warning(f"Release without acquire for {kind.value}")

    async def in_use(self, kind: AgentKind) -> int:
        value = await self.client.get(self._key(kind))
        return int(value or 0)

    def limit(self, kind: AgentKind) -> int:
        return self.settings.concurrency_limit_for(kind.value)
