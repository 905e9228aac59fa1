import logging
import time

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Payment-processor breaker whose state lives in Redis, so every service
    instance trips and recovers together.

      - CLOSED: calls go through; failures are counted in a rolling window
      - OPEN: calls are rejected until the cool-down has passed
      - HALF_OPEN: exactly one caller holds the trial token and goes through;
        its outcome closes or re-opens the breaker

    A Redis outage must not take payments down with it: every breaker
    operation fails open and logs instead.
    """

    def __init__(
        self,
        redis_client,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 30,
        failure_window_seconds: int = 60,
        trial_timeout_seconds: int = 30,
    ):
        self.redis = redis_client
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.failure_window_seconds = failure_window_seconds
        self.trial_timeout_seconds = trial_timeout_seconds

    def _key(self, part: str) -> str:
        return f"cb:{self.name}:{part}"

    async def state(self) -> str:
        return await self.redis.get(self._key("state")) or CLOSED

    async def allow_request(self) -> None:
        try:
            await self._admit()
        except RedisError as e:
            logger.warning("Circuit breaker %s unreachable, letting call through: %s", self.name, e)

    async def record_success(self) -> None:
        try:
            await self.close()
        except RedisError as e:
            logger.warning("Circuit breaker %s could not record success: %s", self.name, e)

    async def record_failure(self) -> None:
        try:
            await self._count_failure()
        except RedisError as e:
            logger.warning("Circuit breaker %s could not record failure: %s", self.name, e)

    async def _admit(self) -> None:
        state = await self.state()
        if state == CLOSED:
            return

        if state == OPEN:
            opened_at = await self.redis.get(self._key("opened_at"))
            if opened_at and time.time() - float(opened_at) < self.reset_timeout_seconds:
                raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

        # cool-down over: only the caller that wins the token goes through
        won = await self.redis.set(self._key("trial"), "1", nx=True, ex=self.trial_timeout_seconds)
        if not won:
            raise CircuitBreakerOpen(f"Circuit breaker HALF_OPEN for {self.name}, trial call in flight")
        await self.redis.set(
            self._key("state"),
            HALF_OPEN,
            ex=self.trial_timeout_seconds + self.reset_timeout_seconds,
        )
        logger.info("Circuit breaker %s half-open, sending trial call to processor", self.name)

    async def _count_failure(self) -> None:
        if await self.state() == HALF_OPEN:
            await self.open()
            return

        failures = await self.redis.incr(self._key("failures"))
        if failures == 1:
            await self.redis.expire(self._key("failures"), self.failure_window_seconds)

        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + self.trial_timeout_seconds
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), OPEN, ex=ttl)
        pipe.set(self._key("opened_at"), str(time.time()), ex=ttl)
        pipe.delete(self._key("trial"))
        await pipe.execute()
        logger.warning("Circuit breaker %s opened", self.name)

    async def close(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), CLOSED, ex=3600)
        pipe.delete(self._key("failures"), self._key("opened_at"), self._key("trial"))
        await pipe.execute()
