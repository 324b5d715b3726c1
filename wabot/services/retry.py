import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from wabot.logging_config import get_logger
from wabot.services.errors import UpstreamUnavailableError

logger = get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry for idempotent upstream reads. Sends are never retried."""

    name: str
    max_attempts: int = 3
    backoff_seconds: tuple[float, ...] = field(default_factory=lambda: (0.2, 0.5))

    def delay_for(self, attempt: int) -> float:
        """Delay before attempt number ``attempt + 1`` (``attempt`` is 1-based)."""
        if not self.backoff_seconds:
            return 0.0
        index = min(attempt - 1, len(self.backoff_seconds) - 1)
        return self.backoff_seconds[index]


def call_with_retry(
    policy: RetryPolicy,
    func: Callable[[], T],
    *,
    sleep: Callable[[float], None] = time.sleep,
    context: dict | None = None,
) -> T:
    attempts = max(1, policy.max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except UpstreamUnavailableError as exc:
            if attempt >= attempts:
                logger.warning(
                    f"{policy.name} failed after {attempt} attempts: {exc}",
                    extra={"context": {**(context or {}), "policy": policy.name, "attempt": attempt}},
                )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                f"{policy.name} attempt {attempt} failed, retrying in {delay}s",
                extra={"context": {**(context or {}), "policy": policy.name, "attempt": attempt}},
            )
            if delay > 0:
                sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
