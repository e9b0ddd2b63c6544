"""Shared fixtures: deterministic clock, governor, vault and a fake provider API."""

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from bridgeport_connector.clock import ManualClock
from bridgeport_connector.governor import ResilienceGovernor
from bridgeport_connector.vault import LocalTokenVault

Reply = tuple[int, Any] | tuple[int, Any, dict[str, str]] | Callable[[httpx.Request], httpx.Response]


class FakeProvider:
    """
    Route table for httpx.MockTransport.

    Each route holds a list of replies served in order; the last one repeats.
    A reply is (status, json_body[, headers]) or a callable taking the request.
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Reply]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *replies: Reply) -> None:
        self.routes[(method.upper(), path)] = list(replies)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method.upper() and r.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        replies = self.routes.get((request.method, request.url.path))
        if not replies:
            return httpx.Response(404, json={"message": f"no route for {request.url.path}"})

        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if callable(reply):
            return reply(request)

        status, body, *rest = reply
        headers = rest[0] if rest else None
        if isinstance(body, bytes):
            return httpx.Response(status, content=body, headers=headers)
        if body is None:
            return httpx.Response(status, headers=headers)
        return httpx.Response(status, content=json.dumps(body).encode(), headers={
            "Content-Type": "application/json",
            **(headers or {}),
        })

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def clock():
    """Clock that only moves when a test advances it."""
    return ManualClock()


@pytest.fixture
def governor(clock):
    """Isolated governor driven by the manual clock."""
    return ResilienceGovernor(clock=clock)


@pytest.fixture
def vault():
    """In-memory AES-GCM vault."""
    return LocalTokenVault(encryption_key="test-encryption-key")


@pytest.fixture
def fake_api():
    return FakeProvider()
