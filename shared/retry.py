"""
Retry mechanism for resilient operations.

The loop is explicit rather than decorator-driven: each call carries a
``RetryState`` (attempt counter, last error, delays taken) and sleeps through
an injectable coroutine so backoff timing can be tested without real waits.
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Tuple, Type

from shared.logging import get_logger


SleepFunc = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = False

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be non-negative")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")


@dataclass
class RetryState:
    """Progress of one retried operation."""

    attempt: int = 0
    last_error: Optional[BaseException] = None
    delays: List[float] = field(default_factory=list)


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""

    def __init__(self, message: str, last_exception: BaseException, attempts: int, delays: List[float]):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts
        self.delays = delays


def calculate_delay(attempt: int, config: RetryConfig, hint: Optional[float] = None) -> float:
    """Delay to wait after ``attempt`` failed.

    ``hint`` is a server-provided minimum (e.g. a Retry-After header); it can
    raise the delay but never past ``max_delay``.
    """
    delay = config.base_delay * (config.backoff_multiplier ** (attempt - 1))
    if hint is not None and hint > delay:
        delay = hint

    delay = min(delay, config.max_delay)

    if config.jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay += random.uniform(-jitter_amount, jitter_amount)
        delay = min(delay, config.max_delay)

    return max(0.0, delay)


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    *,
    config: RetryConfig,
    retry_on: Tuple[Type[BaseException], ...],
    name: str = "operation",
    sleep: SleepFunc = asyncio.sleep,
    delay_hint: Optional[Callable[[BaseException], Optional[float]]] = None,
) -> Any:
    """Run ``operation`` until it succeeds or ``config.max_attempts`` is reached.

    Only exceptions in ``retry_on`` are retried; anything else propagates
    from the failing attempt unchanged.
    """
    logger = get_logger(f"retry.{name}")
    state = RetryState()

    while state.attempt < config.max_attempts:
        state.attempt += 1
        try:
            result = await operation()
        except retry_on as exc:
            state.last_error = exc

            if state.attempt >= config.max_attempts:
                logger.error(
                    "All retry attempts exhausted",
                    attempt=state.attempt,
                    max_attempts=config.max_attempts,
                    error=str(exc),
                )
                break

            hint = delay_hint(exc) if delay_hint else None
            delay = calculate_delay(state.attempt, config, hint)
            state.delays.append(delay)

            logger.warning(
                "Retry attempt failed, waiting before next attempt",
                attempt=state.attempt,
                delay=delay,
                error=str(exc),
            )
            await sleep(delay)
            continue

        if state.attempt > 1:
            logger.info("Retry succeeded", attempt=state.attempt)
        return result

    raise RetryError(
        f"{name} failed after {state.attempt} attempts",
        last_exception=state.last_error,
        attempts=state.attempt,
        delays=list(state.delays),
    )
