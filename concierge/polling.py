"""One polling loop shared by the webhook waiter, vendor polling and workflow-engine polling."""

import asyncio
import enum
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from concierge.logging_config import get_logger

logger = get_logger(__name__)


class Decision(str, enum.Enum):
    """What the predicate says about the latest observation."""
    CONTINUE = "continue"
    DONE = "done"
    GIVE_UP = "give_up"


class PollOutcome(str, enum.Enum):
    DONE = "done"
    GAVE_UP = "gave_up"
    TIMED_OUT = "timed_out"


@dataclass
class PollResult:
    outcome: PollOutcome
    value: Any = None
    attempts: int = 0

    @property
    def done(self) -> bool:
        return self.outcome == PollOutcome.DONE


async def poll_until(
    fetch: Callable[[], Awaitable[Any]],
    check: Callable[[Any], Decision],
    *,
    interval: float,
    timeout: float,
    label: str = "poll",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """
    Call `fetch` every `interval` seconds until `check` returns DONE or GIVE_UP,
    or until `timeout` seconds have elapsed.

    Exceptions raised by `fetch` or `check` propagate to the caller. The last
    observed value is returned with every outcome.
    """
    deadline = clock() + timeout
    attempts = 0
    value: Optional[Any] = None

    while True:
        attempts += 1
        value = await fetch()
        decision = check(value)

        if decision == Decision.DONE:
            return PollResult(PollOutcome.DONE, value, attempts)
        if decision == Decision.GIVE_UP:
            logger.info("poll_gave_up", label=label, attempts=attempts)
            return PollResult(PollOutcome.GAVE_UP, value, attempts)

        if clock() + interval > deadline:
            logger.info("poll_timed_out", label=label, attempts=attempts, timeout=timeout)
            return PollResult(PollOutcome.TIMED_OUT, value, attempts)

        await sleep(interval)
