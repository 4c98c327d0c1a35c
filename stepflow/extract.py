"""Extraction of a usable result from agent response envelopes.

Agents answer with a list of message envelopes, each carrying typed
``parts``. The first usable payload is found by trying an ordered list of
strategies; every strategy scans all messages before the next one is tried.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)


class _NoMatch:
    def __repr__(self) -> str:
        return "NO_MATCH"


NO_MATCH: Any = _NoMatch()

Strategy = Callable[[Sequence[Any]], Any]


def _parts(messages: Sequence[Any]) -> Iterator[Mapping[str, Any]]:
    for message in messages:
        if not isinstance(message, Mapping):
            continue
        parts = message.get("parts")
        if isinstance(parts, list):
            for part in parts:
                if isinstance(part, Mapping):
                    yield part


def tool_call_result(messages: Sequence[Any]) -> Any:
    """``{"type": "tool-call-result", "output"|"result": ...}``."""
    for part in _parts(messages):
        if part.get("type") != "tool-call-result":
            continue
        if "output" in part:
            return part["output"]
        if "result" in part:
            return part["result"]
    return NO_MATCH


def tool_output(messages: Sequence[Any]) -> Any:
    """Any ``tool-<name>`` part carrying an ``output``."""
    for part in _parts(messages):
        part_type = part.get("type")
        if isinstance(part_type, str) and part_type.startswith("tool-") and "output" in part:
            return part["output"]
    return NO_MATCH


def data_part(messages: Sequence[Any]) -> Any:
    """A generic ``data`` or ``data-end`` part."""
    for part in _parts(messages):
        if part.get("type") in ("data", "data-end") and "data" in part:
            return part["data"]
    return NO_MATCH


def bare_result(messages: Sequence[Any]) -> Any:
    """A single part-less message: its ``result`` or the object itself."""
    if len(messages) != 1:
        return NO_MATCH
    message = messages[0]
    if not isinstance(message, Mapping) or message.get("parts"):
        return NO_MATCH
    if "result" in message:
        return message["result"]
    if "id" not in message and "parts" not in message:
        return dict(message)
    return NO_MATCH


DEFAULT_STRATEGIES: List[Strategy] = [tool_call_result, tool_output, data_part, bare_result]


class ResultExtractor:
    """Apply extraction strategies in order and return the first match.

    Returns ``None`` when no strategy matches.
    """

    def __init__(self, strategies: Optional[Sequence[Strategy]] = None) -> None:
        self.strategies: List[Strategy] = list(
            DEFAULT_STRATEGIES if strategies is None else strategies
        )

    def extract(self, response: Any) -> Any:
        if response is None:
            return None
        messages = response if isinstance(response, list) else [response]
        if not messages:
            return None
        for strategy in self.strategies:
            value = strategy(messages)
            if value is not NO_MATCH:
                return value
        logger.debug("No extraction strategy matched the agent response")
        return None

    __call__ = extract
