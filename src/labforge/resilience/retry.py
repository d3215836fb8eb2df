from __future__ import annotations
import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

from labforge.core.classifier import ClassifiedError, ErrorKind, classify
from labforge.core.errors import ProviderFailedError, UnauthorizedError, UserCancelledError
from labforge.core.ports import CancellationToken, StatusCallback

logger = logging.getLogger(__name__)

T = TypeVar("T")
SleepFn = Callable[[float, CancellationToken], Awaitable[None]]


class RetryPolicy:
    def __init__(self, max_retries=6, base_delay=2.0, busy_base_delay=15.0, busy_jitter=5.0,
                 sleep_tick=0.25):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.busy_base_delay = busy_base_delay
        self.busy_jitter = busy_jitter
        self.sleep_tick = sleep_tick

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def compute_backoff(self, attempt: int, kind: ErrorKind, rand: Callable[[], float] = random.random) -> float:
        """Seconds to wait after the 0-based attempt failed with the given kind."""
        if kind.is_busy:
            # Back off much harder when the backend says it is struggling
            return self.busy_base_delay * (2 ** attempt) + rand() * self.busy_jitter
        return self.base_delay * (2 ** attempt)


async def cancellable_sleep(delay: float, token: CancellationToken, tick: float = 0.25) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, delay)
    while True:
        token.raise_if_cancelled()
        remaining = deadline - loop.time()
        if remaining <= 0:
            return
        await asyncio.sleep(min(tick, remaining))


def _notify(on_status: Optional[StatusCallback], message: str) -> None:
    if on_status is None:
        return
    try:
        on_status(message)
    except Exception:
        logger.exception("status callback failed")


class RetryController:
    """
    Runs one logical provider call with bounded retry.
    Cancellation and bad credentials end the call immediately; everything
    else is retried with exponential backoff until max_retries is used up.
    """

    def __init__(self, provider_name: str, policy: Optional[RetryPolicy] = None, *,
                 sleep: Optional[SleepFn] = None, rand: Optional[Callable[[], float]] = None):
        self.provider_name = provider_name
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or (lambda delay, token: cancellable_sleep(delay, token, self.policy.sleep_tick))
        self._rand = rand or random.random

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        token: CancellationToken,
        on_status: Optional[StatusCallback] = None,
        *,
        label: str = "process text",
    ) -> T:
        max_retries = self.policy.max_retries
        for attempt in range(max_retries + 1):
            token.raise_if_cancelled()
            try:
                result = await operation()
            except UserCancelledError:
                raise
            except Exception as e:
                if token.cancelled:
                    raise UserCancelledError() from e
                err = classify(e, self.provider_name)
                if err.kind is ErrorKind.USER_CANCELLED:
                    raise UserCancelledError() from e
                if err.kind is ErrorKind.UNAUTHORIZED:
                    logger.error("%s rejected the credentials: %s", self.provider_name, err.message)
                    raise UnauthorizedError(
                        f"Your {self.provider_name} API key is invalid or has expired. "
                        "Please check your API key settings.",
                        status_code=err.code or 401,
                    ) from e
                if attempt >= max_retries:
                    logger.error("All %s attempts failed to %s: %s", self.provider_name, label, err)
                    raise self._final_error(err, label) from e

                delay = self.policy.compute_backoff(attempt, err.kind, self._rand)
                logger.warning("%s attempt %d failed to %s (%s), retrying in %.1fs",
                               self.provider_name, attempt + 1, label, err.kind.value, delay)
                _notify(on_status, f"The AI model is busy. Retrying in {round(delay)}s... "
                                   f"(Attempt {attempt + 2}/{max_retries + 1})")
                await self._sleep(delay, token)
                continue

            _notify(on_status, "")
            return result
        raise AssertionError("unreachable")

    def _final_error(self, err: ClassifiedError, label: str) -> ProviderFailedError:
        name = self.provider_name
        if err.kind is ErrorKind.RATE_LIMITED:
            msg = f"You have exceeded your {name} API quota. Please check your plan and billing details."
        elif err.kind is ErrorKind.OVERLOADED:
            msg = f"The {name} model is currently overloaded. Please wait a few moments and try again."
        else:
            msg = (f"Failed to {label} with {name} after {self.policy.max_attempts} attempts: "
                   f"{err.message or 'Unknown error'}")
        return ProviderFailedError(msg, provider=name, kind=err.kind, status_code=err.code or None)
