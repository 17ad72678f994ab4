from typing import Dict, Any, Optional, Callable
from enum import Enum
import time
import structlog

from parley.infrastructure.errors import CircuitOpenError, ProviderClientError

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fail fast when a provider keeps failing.

    CLOSED passes every call through. After `failure_threshold` consecutive
    failures the breaker OPENs and rejects calls with CircuitOpenError until
    `recovery_timeout` seconds have passed; it then goes HALF_OPEN and lets at
    most `half_open_max_calls` trial calls through. `success_threshold`
    successes close it again, a single failure re-opens it.

    Client errors (4xx-equivalent) say nothing about provider health and are
    not counted.

    Usage:
        breaker = CircuitBreaker("openai.completion")

        async with breaker:
            result = await client.chat.completions.create(...)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        success_threshold: int = 2,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.success_threshold = success_threshold
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time: Optional[float] = None

    async def __aenter__(self):
        """Reject the call if the circuit is open"""

        if self.state == CircuitState.OPEN:
            if self._recovery_elapsed():
                logger.info("circuit_breaker_half_open", name=self.name)
                self.state = CircuitState.HALF_OPEN
                self.half_open_calls = 0
                self.success_count = 0
            else:
                raise CircuitOpenError(self.name, self.failure_count)

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.half_open_max_calls:
                raise CircuitOpenError(self.name, self.failure_count)
            self.half_open_calls += 1

        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Record the outcome; never suppresses the exception"""

        if exc_type is None:
            self._on_success()
        elif not issubclass(exc_type, ProviderClientError):
            self._on_failure()

        return False

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN and not self._recovery_elapsed()

    def _recovery_elapsed(self) -> bool:
        return (
            self.last_failure_time is not None
            and self._clock() - self.last_failure_time >= self.recovery_timeout
        )

    def _on_success(self):
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                logger.info("circuit_breaker_closed", name=self.name)
                self.reset()
        else:
            self.failure_count = 0

    def _on_failure(self):
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN:
            logger.warning("circuit_breaker_open", name=self.name, reason="failure_in_half_open")
            self.state = CircuitState.OPEN
            self.success_count = 0
        elif self.failure_count >= self.failure_threshold and self.state == CircuitState.CLOSED:
            logger.error(
                "circuit_breaker_open",
                name=self.name,
                failure_count=self.failure_count,
                threshold=self.failure_threshold
            )
            self.state = CircuitState.OPEN

    def reset(self):
        """Force the breaker back to CLOSED"""
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.last_failure_time = None

    def get_stats(self) -> Dict[str, Any]:
        """Get circuit breaker statistics"""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
        }
