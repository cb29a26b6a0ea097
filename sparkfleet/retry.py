"""Retry and polling policies backed by tenacity.

Every blocking wait in sparkfleet (tagging, address resolution, termination
confirmation, SSH connects, remote commands) goes through a RetryPolicy so
that attempt budgets come from configuration and every retry is logged.

Example:
    policy = RetryPolicy(attempts=5, initial_delay=1.0)

    async for attempt in policy.retrying(TransientProviderError, description="tagging"):
        with attempt:
            await provider.tag_instance(instance_id, name)

    node = await poll(lookup, policy, description="address")
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeAlias, TypeVar

from loguru import logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sparkfleet.config import RetryConfig

log = logger.bind(component="retry")

ExceptionTypes: TypeAlias = type[BaseException] | tuple[type[BaseException], ...]

T = TypeVar("T")


class NotReady(Exception):
    """Raised by a poll probe when the observed state is not there yet."""


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt budget with exponential backoff.

    Args:
        attempts: Maximum number of attempts, including the first one.
        initial_delay: Delay before the second attempt, doubled afterwards.
        max_delay: Backoff cap in seconds.
    """

    attempts: int
    initial_delay: float = 1.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, config: RetryConfig, attempts: int) -> RetryPolicy:
        return cls(
            attempts=attempts,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
        )

    def retrying(
        self,
        on: ExceptionTypes = Exception,
        *,
        description: str = "operation",
    ) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.initial_delay, max=self.max_delay),
            retry=retry_if_exception_type(on),
            before_sleep=_log_retry(description, self.attempts),
            reraise=True,
        )


def _log_retry(description: str, attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        log.info(
            "{what}. Attempts: {n}/{total}. {err} Waiting {delay:.1f}s...",
            what=description,
            n=state.attempt_number,
            total=attempts,
            err=f"{type(exc).__name__}: {exc}." if exc else "",
            delay=delay,
        )

    return before_sleep


async def poll(
    probe: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    on: ExceptionTypes = NotReady,
    description: str = "resource",
) -> T:
    """Call ``probe`` until it stops raising NotReady (or whatever ``on`` names).

    Raises:
        NotReady: The last probe failure, once the attempt budget is spent.
    """
    result: T | None = None
    async for attempt in policy.retrying(on, description=description):
        with attempt:
            result = await probe()
    return result  # type: ignore[return-value]


__all__ = [
    "NotReady",
    "RetryPolicy",
    "poll",
]
