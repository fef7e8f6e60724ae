"""
Toolhost · Shared Test-Fixtures.

Alle Tests laufen mit create_test_config() (leise Logs, kurze Timeouts)
und, wo Zeit eine Rolle spielt, mit einer manuell gestellten Uhr.
"""

from __future__ import annotations

from typing import Any

import pytest

from toolhost.config import ServerConfig, create_test_config
from toolhost.core.server import ServerCore
from toolhost.models import HandlerRegistration, ToolCategory
from toolhost.telemetry.metrics import MetricsCollector


class FakeClock:
    """Millisekunden-Uhr, die nur auf Anweisung weiterläuft."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


ECHO_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {"message": {"type": "string"}},
    "required": ["message"],
}


async def echo_handler(params: dict[str, Any]) -> dict[str, Any]:
    return {"echo": params["message"]}


def failing_handler(params: dict[str, Any]) -> Any:
    raise RuntimeError("boom")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> ServerConfig:
    """ServerConfig für Tests."""
    return create_test_config("test-server")


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector("test-server")


@pytest.fixture
def echo_registration() -> HandlerRegistration:
    return HandlerRegistration(
        name="echo",
        handler=echo_handler,
        description="Echo back the message",
        input_schema=ECHO_SCHEMA,
        category=ToolCategory.UTILITY,
    )


@pytest.fixture
def server(config: ServerConfig, echo_registration: HandlerRegistration) -> ServerCore:
    """ServerCore mit echo- und fail-Handler, noch nicht gestartet."""
    core = ServerCore(config)
    core.register_handler(echo_registration)
    core.register_handler(HandlerRegistration(
        name="fail", handler=failing_handler, description="Always fails",
    ))
    return core
