"""Shared fixtures: a scriptable stand-in for remote agents, workers and workflows."""

from __future__ import annotations

import json
from collections import defaultdict
from typing import Any, Callable, Dict, List

import httpx
import pytest

from stepflow.config import DispatchConfig
from stepflow.dispatch import DispatchClient

BASE_URL = "http://remote"


class FakeRemote:
    """Routes dispatch-client requests to in-process handlers.

    ``agents`` maps an agent path (``"/x"``) to a function of the request
    body returning the JSON reply. ``worker_states`` maps a worker id to the
    list of status payloads returned by successive status checks (the last
    one repeats). ``workflow_states`` does the same for nested runs.
    """

    def __init__(self) -> None:
        self.agents: Dict[str, Callable[[Dict[str, Any]], Any]] = {}
        self.worker_states: Dict[str, List[Dict[str, Any]]] = {}
        self.workflow_states: Dict[str, List[Dict[str, Any]]] = {}
        self.calls: List[tuple] = []
        self.triggers: List[Dict[str, Any]] = []
        self.started: List[Dict[str, Any]] = []
        self._checks: Dict[str, int] = defaultdict(int)

    def count(self, method: str, path: str) -> int:
        return sum(1 for m, p in self.calls if m == method and p == path)

    def _next_state(self, key: str, states: List[Dict[str, Any]]) -> Dict[str, Any]:
        index = min(self._checks[key], len(states) - 1)
        self._checks[key] += 1
        return states[index]

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        body = json.loads(request.content) if request.content else None

        if request.method == "POST" and path == "/workers/trigger":
            self.triggers.append(body)
            return httpx.Response(200, json={"messageId": f"msg-{len(self.triggers)}"})

        if path.startswith("/api/workflows/workers/"):
            _, worker_id, job_id = path.rsplit("/", 2)
            states = self.worker_states.get(worker_id)
            if not states:
                return httpx.Response(404)
            return httpx.Response(200, json=self._next_state(job_id, states))

        if path.startswith("/api/workflows/"):
            parts = path[len("/api/workflows/"):].split("/")
            if request.method == "POST":
                workflow = parts[0]
                self.started.append({"workflow": workflow, **body})
                return httpx.Response(
                    200, json={"runId": f"{workflow}-run-{len(self.started)}", "status": "running"}
                )
            workflow, run_id = parts
            states = self.workflow_states.get(workflow)
            if not states:
                return httpx.Response(404)
            return httpx.Response(200, json=self._next_state(run_id, states))

        agent = self.agents.get(path)
        if agent is None:
            return httpx.Response(404, text=f"no agent at {path}")
        reply = agent(body)
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=reply)

    def client(self, job_store=None, **config: Any) -> DispatchClient:
        config.setdefault("base_url", BASE_URL)
        http = httpx.AsyncClient(transport=httpx.MockTransport(self.handle))
        return DispatchClient(DispatchConfig(**config), job_store=job_store, client=http)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()
