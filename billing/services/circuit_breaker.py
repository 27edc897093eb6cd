"""
Named pybreaker breakers for outbound provider calls.

State lives in Redis when CB_STORAGE=redis so every API and worker process sees the
same open/closed state for the refund provider; CB_STORAGE=memory keeps it per process.
"""
import logging
from datetime import datetime

import pybreaker
import redis

from billing.core.config import settings
from billing.utils.metrics import circuit_breaker_state

logger = logging.getLogger(__name__)


class RedisBreakerStorage(pybreaker.CircuitBreakerStorage):
    """Failure counter, state and open timestamp under `cb:<name>:*` keys."""

    def __init__(self, name: str, client: redis.Redis | None = None) -> None:
        super().__init__(name)
        self.breaker_name = name
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.ttl = settings.cb_open_seconds * 2

    def _key(self, suffix: str) -> str:
        return f"cb:{self.breaker_name}:{suffix}"

    @property
    def state(self) -> str:
        return self.client.get(self._key("state")) or pybreaker.STATE_CLOSED

    @state.setter
    def state(self, value: str) -> None:
        self.client.set(self._key("state"), value, ex=self.ttl)
        circuit_breaker_state.labels(name=self.breaker_name).set(int(value == pybreaker.STATE_OPEN))

    @property
    def counter(self) -> int:
        return int(self.client.get(self._key("failures")) or 0)

    def increment_counter(self) -> None:
        pipe = self.client.pipeline()
        pipe.incr(self._key("failures"))
        pipe.expire(self._key("failures"), settings.cb_open_seconds)
        pipe.execute()

    def reset_counter(self) -> None:
        self.client.delete(self._key("failures"))

    @property
    def success_counter(self) -> int:
        return int(self.client.get(self._key("successes")) or 0)

    def increment_success_counter(self) -> None:
        pipe = self.client.pipeline()
        pipe.incr(self._key("successes"))
        pipe.expire(self._key("successes"), settings.cb_open_seconds)
        pipe.execute()

    def reset_success_counter(self) -> None:
        self.client.delete(self._key("successes"))

    @property
    def opened_at(self) -> datetime | None:
        raw = self.client.get(self._key("opened_at"))
        return datetime.fromisoformat(raw) if raw else None

    @opened_at.setter
    def opened_at(self, value: datetime) -> None:
        self.client.set(self._key("opened_at"), value.isoformat(), ex=self.ttl)


class BreakerLogListener(pybreaker.CircuitBreakerListener):
    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb, old_state, new_state) -> None:
        new_name = getattr(new_state, "name", str(new_state))
        circuit_breaker_state.labels(name=self.name).set(int(new_name == pybreaker.STATE_OPEN))
        logger.warning(
            "provider_breaker_state_change",
            extra={
                "breaker_name": self.name,
                "old_state": getattr(old_state, "name", str(old_state)),
                "new_state": new_name,
            },
        )

    def failure(self, cb, exc) -> None:
        logger.info("provider_breaker_failure", extra={"breaker_name": self.name, "error": type(exc).__name__})


_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def get_circuit_breaker(name: str, exclude: list | None = None) -> pybreaker.CircuitBreaker:
    """Breaker for `name`, created on first use so importing never connects to Redis."""
    breaker = _breakers.get(name)
    if breaker is None:
        if settings.cb_storage == "redis":
            storage = RedisBreakerStorage(name)
        else:
            storage = pybreaker.CircuitMemoryStorage(pybreaker.STATE_CLOSED)
        breaker = pybreaker.CircuitBreaker(
            fail_max=settings.cb_failure_threshold,
            reset_timeout=settings.cb_open_seconds,
            state_storage=storage,
            listeners=[BreakerLogListener(name)],
            exclude=exclude or [],
            name=name,
        )
        _breakers[name] = breaker
    return breaker


def reset_circuit_breakers() -> None:
    _breakers.clear()
