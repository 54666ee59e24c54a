"""
CaptureHub Agents

Remote capture agents: HTTP clients, capture coordination, status
polling and the agent registry.
"""

from capturehub.agents.client import AgentClient
from capturehub.agents.coordinator import CaptureSessionCoordinator
from capturehub.agents.directory import DirectoryClient
from capturehub.agents.models import (
    Agent,
    AgentError,
    AgentStatus,
    CaptureState,
    CommandOutcome,
    StatusSnapshot,
)
from capturehub.agents.poller import AgentStatusPoller, Poller
from capturehub.agents.registry import AgentRegistry

__all__ = [
    "AgentClient",
    "CaptureSessionCoordinator",
    "DirectoryClient",
    "Agent",
    "AgentError",
    "AgentStatus",
    "CaptureState",
    "CommandOutcome",
    "StatusSnapshot",
    "AgentStatusPoller",
    "Poller",
    "AgentRegistry",
]
