"""In-process host for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict, deque
from typing import Any, Deque, Dict, List, Optional

from .base import TIMED_OUT, BaseHost

logger = logging.getLogger(__name__)


class InMemoryHost(BaseHost):
    """Resolve hook waits with asyncio futures.

    Events sent while nobody waits on the token are buffered in order.
    """

    def __init__(self) -> None:
        self._waiters: Dict[str, List[asyncio.Future]] = defaultdict(list)
        self._pending: Dict[str, Deque[Any]] = defaultdict(deque)

    def is_waiting(self, token: str) -> bool:
        return any(not f.done() for f in self._waiters.get(token, []))

    async def wait_for_event(self, token: str, timeout_s: Optional[float] = None) -> Any:
        if self._pending.get(token):
            return self._pending[token].popleft()

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._waiters[token].append(future)
        try:
            return await asyncio.wait_for(future, timeout=timeout_s)
        except asyncio.TimeoutError:
            logger.info(f"Wait for event {token!r} timed out after {timeout_s}s")
            return TIMED_OUT
        finally:
            waiters = self._waiters.get(token)
            if waiters and future in waiters:
                waiters.remove(future)
            if not waiters:
                self._waiters.pop(token, None)

    async def send_event(self, token: str, payload: Any) -> bool:
        for future in self._waiters.get(token, []):
            if not future.done():
                future.set_result(payload)
                return True
        logger.debug(f"No waiter for {token!r}; buffering event")
        self._pending[token].append(payload)
        return False
