import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def run_lock(redis_client, name: str, ttl_seconds: int):
    """
    Best-effort cross-instance lock so two triggers of the same sweep don't
    overlap. Yields False when another run holds it.

    With Redis unreachable it yields True: the sweep runs unlocked, which the
    write-time preconditions of every expiry keep safe.
    """
    key = f"sweep_lock:{name}"
    token = str(uuid.uuid4())
    try:
        acquired = await redis_client.set(key, token, nx=True, ex=ttl_seconds)
    except RedisError as e:
        logger.warning("Sweep lock %s unavailable, running unlocked: %s", name, e)
        yield True
        return

    try:
        yield bool(acquired)
    finally:
        if acquired:
            await _release(redis_client, key, token)


async def _release(redis_client, key: str, token: str):
    try:
        if await redis_client.get(key) == token:
            await redis_client.delete(key)
    except RedisError as e:
        # the TTL frees it
        logger.warning("Could not release %s: %s", key, e)


async def run_sweep_once(name: str, job, redis_client=None, lock_ttl_seconds: int = 300):
    if redis_client is None:
        return await job()

    async with run_lock(redis_client, name, lock_ttl_seconds) as acquired:
        if not acquired:
            logger.info("Sweep %s already running elsewhere, skipping", name)
            return None
        return await job()


async def sweep_loop(
    name: str,
    job,
    interval_seconds: float,
    stop_event: asyncio.Event,
    redis_client=None,
):
    while not stop_event.is_set():
        try:
            await run_sweep_once(name, job, redis_client)
        except Exception:
            logger.exception("Sweep %s failed", name)
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
