"""
CaptureHub Test Configuration

Pytest fixtures and fakes shared by all tests.
"""

import asyncio
from typing import Any, Callable

import pytest
import structlog

from capturehub.agents.coordinator import CaptureSessionCoordinator
from capturehub.agents.models import (
    Agent,
    AgentError,
    AgentResponse,
    CaptureState,
    InterfaceInfo,
    StatusSnapshot,
)
from capturehub.filters.presets import FilterPresetStore, MemoryStore


def make_snapshot(
    status: str = "idle",
    interface: str = "",
    interfaces: tuple[str, ...] = ("eth0", "wlan0"),
    packets: int = 0,
    connected: bool = True,
) -> StatusSnapshot:
    return StatusSnapshot(
        status=CaptureState(status),
        interface=interface,
        interfaces=[InterfaceInfo(name=name) for name in interfaces],
        packets_captured=packets,
        connected=connected,
    )


class FakeAgentClient:
    """
    In-process stand-in for AgentClient.

    Command results are taken from per-method queues and default to
    success. ``get_status`` returns queued results first, then ``status``.
    Setting ``status_gate`` holds every status call until the event is set.
    """

    def __init__(self, status: StatusSnapshot | AgentError | None = None):
        self.status = status if status is not None else make_snapshot()
        self.status_results: list[Any] = []
        self.start_results: list[Any] = []
        self.stop_results: list[Any] = []
        self.set_interface_results: list[Any] = []
        self.health_result: AgentResponse | AgentError = AgentResponse()
        self.status_gate: asyncio.Event | None = None
        self.calls: list[tuple] = []
        self.closed = False

    @property
    def command_calls(self) -> list[tuple]:
        return [call for call in self.calls if call[0] not in ("get_status", "health")]

    async def get_status(self):
        self.calls.append(("get_status",))
        if self.status_gate is not None:
            await self.status_gate.wait()
        if self.status_results:
            result = self.status_results.pop(0)
        else:
            result = self.status
        if isinstance(result, Exception):
            raise result
        return result

    async def start_capture(self, interface: str, bpf_filter: str | None = None):
        self.calls.append(("start_capture", interface, bpf_filter))
        return self.start_results.pop(0) if self.start_results else AgentResponse()

    async def stop_capture(self):
        self.calls.append(("stop_capture",))
        return self.stop_results.pop(0) if self.stop_results else AgentResponse()

    async def set_interface(self, interface: str):
        self.calls.append(("set_interface", interface))
        return self.set_interface_results.pop(0) if self.set_interface_results else AgentResponse()

    async def health(self):
        self.calls.append(("health",))
        return self.health_result

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def snapshot() -> Callable[..., StatusSnapshot]:
    """Factory for status snapshots."""
    return make_snapshot


@pytest.fixture
def agent() -> Agent:
    return Agent(
        id="agent-1",
        name="Sensor One",
        url="http://10.0.0.2:5000",
        interfaces=["eth0", "wlan0"],
    )


@pytest.fixture
def fake_client() -> FakeAgentClient:
    return FakeAgentClient()


@pytest.fixture
def coordinator(agent: Agent, fake_client: FakeAgentClient) -> CaptureSessionCoordinator:
    return CaptureSessionCoordinator(
        agent,
        client=fake_client,
        unreachable_message="Connection to agent failed",
        release_timeout=0.2,
        release_poll_interval=0.01,
    )


@pytest.fixture
def fake_factory() -> Callable[[Agent], CaptureSessionCoordinator]:
    """
    Coordinator factory backed by fake clients.

    The clients it creates are available as ``factory.clients[agent_id]``.
    """
    clients: dict[str, FakeAgentClient] = {}

    def factory(agent: Agent) -> CaptureSessionCoordinator:
        client = FakeAgentClient()
        clients[agent.id] = client
        return CaptureSessionCoordinator(
            agent,
            client=client,
            release_timeout=0.2,
            release_poll_interval=0.01,
        )

    factory.clients = clients
    return factory


@pytest.fixture
def preset_store() -> FilterPresetStore:
    return FilterPresetStore(MemoryStore())


@pytest.fixture(autouse=True)
def uncached_loggers():
    """Loggers must not hold on to a stdout that pytest swaps per test."""
    structlog.configure(cache_logger_on_first_use=False)
