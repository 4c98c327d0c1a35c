"""Base interface for the durable wait and timer substrate."""

from __future__ import annotations

import abc
import asyncio
from typing import Any, Optional


class _TimedOut:
    def __repr__(self) -> str:
        return "TIMED_OUT"

    def __bool__(self) -> bool:
        return False


TIMED_OUT: Any = _TimedOut()
"""Returned by :meth:`BaseHost.wait_for_event` when the timeout elapses."""


class BaseHost(metaclass=abc.ABCMeta):
    """Abstract host providing event waits and sleeps to the engine."""

    async def connect(self) -> None:
        """Open connection to the backing service (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backing service (no-op by default)."""
        pass

    @abc.abstractmethod
    async def wait_for_event(self, token: str, timeout_s: Optional[float] = None) -> Any:
        """Suspend until an event for ``token`` arrives.

        Args:
            token: Correlation token the event is addressed to.
            timeout_s: Seconds to wait. ``None`` waits indefinitely.

        Returns:
            The event payload, or :data:`TIMED_OUT`.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def send_event(self, token: str, payload: Any) -> bool:
        """Deliver ``payload`` to the waiter on ``token``.

        Returns ``True`` when a waiter received it immediately; otherwise the
        event is kept for the next waiter. Backends that cannot observe
        delivery always return ``False``.
        """
        raise NotImplementedError

    async def sleep(self, seconds: float) -> None:
        """Suspend for ``seconds``."""
        if seconds > 0:
            await asyncio.sleep(seconds)
