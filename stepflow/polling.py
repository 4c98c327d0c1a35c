"""Bounded completion polling for remote jobs and nested runs."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Literal, Optional

from pydantic import BaseModel

from .constants import SUCCESSFUL_RUN_STATUSES, TERMINAL_RUN_STATUSES

logger = logging.getLogger(__name__)

PollOutcome = Literal["completed", "failed", "timeout"]


class PollCheck(BaseModel):
    """One observation of a remote status endpoint.

    ``done`` is ``False`` while the remote side has not reached a terminal
    state (including when no status exists yet). A ``partial`` run is done
    and counts as completed: its result is kept.
    """

    status: Optional[str] = None
    output: Any = None
    error: Any = None
    metadata: Dict[str, Any] = {}

    @property
    def done(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


class PollResult(BaseModel):
    outcome: PollOutcome
    status: Optional[str] = None
    output: Any = None
    error: Any = None
    metadata: Dict[str, Any] = {}
    attempts: int = 0
    elapsed_ms: float = 0.0


async def poll_until_done(
    check: Callable[[], Awaitable[PollCheck]],
    *,
    interval_ms: int,
    timeout_ms: Optional[int] = None,
    max_retries: Optional[int] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "job",
) -> PollResult:
    """Call ``check`` until it reports a terminal state or a bound is hit.

    The first check runs immediately, then every ``interval_ms``. Polling
    stops once ``timeout_ms`` of wall-clock time has elapsed or
    ``max_retries`` checks have been made, whichever comes first. Errors
    raised by ``check`` are logged and count as "not done yet".
    """
    started = time.monotonic()
    attempts = 0
    last: Optional[PollCheck] = None

    def elapsed_ms() -> float:
        return (time.monotonic() - started) * 1000

    while True:
        attempts += 1
        try:
            last = await check()
        except Exception as e:
            logger.warning(f"Status check {attempts} for {label} failed: {e}")
            last = None

        if last is not None and last.done:
            logger.info(f"{label} reached {last.status} after {attempts} checks")
            return PollResult(
                outcome="completed" if last.status in SUCCESSFUL_RUN_STATUSES else "failed",
                status=last.status,
                output=last.output,
                error=last.error,
                metadata=last.metadata,
                attempts=attempts,
                elapsed_ms=elapsed_ms(),
            )

        if max_retries is not None and attempts >= max_retries:
            break
        remaining = None if timeout_ms is None else timeout_ms - elapsed_ms()
        if remaining is not None and remaining <= 0:
            break
        delay = interval_ms if remaining is None else min(interval_ms, remaining)
        await sleep(delay / 1000)
        if timeout_ms is not None and elapsed_ms() >= timeout_ms:
            break

    logger.warning(
        f"{label} not done after {attempts} checks ({elapsed_ms():.0f}ms), "
        f"last status {last.status if last else None!r}"
    )
    return PollResult(
        outcome="timeout",
        status=last.status if last else None,
        output=last.output if last else None,
        metadata=last.metadata if last else {},
        attempts=attempts,
        elapsed_ms=elapsed_ms(),
    )
