"""
CaptureHub Agent Registry

The set of known capture agents and their coordinators, refreshed
periodically from the central server's directory.
"""

from datetime import datetime, timezone
from typing import Callable

import structlog

from capturehub.agents.client import AgentClient
from capturehub.agents.coordinator import CaptureSessionCoordinator
from capturehub.agents.directory import DirectoryClient
from capturehub.agents.models import Agent, AgentError
from capturehub.agents.poller import AgentStatusPoller, Poller
from capturehub.config import settings

logger = structlog.get_logger(__name__)

CoordinatorFactory = Callable[[Agent], CaptureSessionCoordinator]


def _default_coordinator(agent: Agent) -> CaptureSessionCoordinator:
    return CaptureSessionCoordinator(agent, client=AgentClient(agent.url))


class RosterPoller(Poller):
    """Periodic directory refresh for a registry."""

    def __init__(self, registry: "AgentRegistry", interval: float):
        super().__init__(interval=interval, name="roster")
        self.registry = registry

    async def _fetch(self) -> list[Agent] | AgentError:
        await self.registry._drain_retired()
        return await self.registry.directory.list_agents()

    def _apply(self, result: list[Agent] | AgentError) -> None:
        self.registry._merge(result)

    def _on_error(self, error: Exception) -> None:
        self.registry.last_error = str(error)


class AgentRegistry:
    """
    Known agents and their coordinators.

    Features:
    - Directory refresh adds, updates and removes agents
    - Descriptive fields refresh without touching capture state
    - Scoped status pollers per watched agent
    - Agents added locally survive directory refreshes
    """

    def __init__(
        self,
        directory: DirectoryClient | None = None,
        coordinator_factory: CoordinatorFactory | None = None,
        refresh_interval: float | None = None,
        poll_interval: float | None = None,
        auto_watch: bool = False,
    ):
        """
        Initialize the registry.

        Args:
            directory: Directory server client
            coordinator_factory: Builds a coordinator for a newly seen agent
            refresh_interval: Seconds between directory refreshes
            poll_interval: Default seconds between status polls of watched agents
            auto_watch: Start a status poller for every agent as it is added
        """
        self.directory = directory or DirectoryClient()
        self._coordinator_factory = coordinator_factory or _default_coordinator
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.status_poll_seconds
        )

        self._coordinators: dict[str, CaptureSessionCoordinator] = {}
        self._watchers: dict[str, AgentStatusPoller] = {}
        self._local_ids: set[str] = set()
        self.auto_watch = auto_watch

        # Torn down outside the synchronous merge
        self._retired_pollers: list[Poller] = []
        self._retired_coordinators: list[CaptureSessionCoordinator] = []

        self.last_error = ""
        self.last_refreshed_at: datetime | None = None

        self._roster = RosterPoller(
            self,
            refresh_interval if refresh_interval is not None else settings.registry_refresh_seconds,
        )

    # =========================================================================
    # Lookup
    # =========================================================================

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._coordinators

    def __len__(self) -> int:
        return len(self._coordinators)

    def agents(self) -> list[Agent]:
        """All known agents, in registration order."""
        return [c.agent for c in self._coordinators.values()]

    def get(self, agent_id: str) -> Agent | None:
        coordinator = self._coordinators.get(agent_id)
        return coordinator.agent if coordinator else None

    def coordinator(self, agent_id: str) -> CaptureSessionCoordinator:
        """
        Get an agent's coordinator.

        Raises:
            KeyError: unknown agent
        """
        return self._coordinators[agent_id]

    # =========================================================================
    # Membership
    # =========================================================================

    def add_agent(self, agent: Agent) -> CaptureSessionCoordinator:
        """
        Register an agent locally; it is kept even if the directory omits it.

        With auto_watch enabled this must run inside the event loop.
        """
        self._local_ids.add(agent.id)
        if agent.id in self._coordinators:
            return self._coordinators[agent.id]
        return self._add(agent)

    def _add(self, agent: Agent) -> CaptureSessionCoordinator:
        coordinator = self._coordinator_factory(agent)
        self._coordinators[agent.id] = coordinator
        logger.info("agent_added", agent_id=agent.id, url=agent.url)
        if self.auto_watch:
            self.watch(agent.id)
        return coordinator

    def _remove(self, agent_id: str) -> None:
        coordinator = self._coordinators.pop(agent_id)
        watcher = self._watchers.pop(agent_id, None)
        if watcher is not None:
            watcher.stop()
            self._retired_pollers.append(watcher)
        self._retired_coordinators.append(coordinator)
        logger.info("agent_removed", agent_id=agent_id)

    @staticmethod
    def _update_details(agent: Agent, incoming: Agent) -> None:
        """Copy directory-owned fields; capture state stays with the coordinator."""
        agent.name = incoming.name
        agent.hostname = incoming.hostname
        agent.os = incoming.os
        agent.uptime = incoming.uptime
        agent.version = incoming.version
        agent.last_heartbeat = incoming.last_heartbeat
        if incoming.interfaces:
            agent.interfaces = incoming.interfaces
            agent.interface_addresses = incoming.interface_addresses

    def _merge(self, result: list[Agent] | AgentError) -> bool:
        """Apply a directory listing to the roster."""
        if isinstance(result, AgentError):
            self.last_error = result.message
            logger.warning(
                "registry_refresh_failed",
                error_type=result.error_type,
                error=result.message,
            )
            return False

        seen: set[str] = set()
        for incoming in result:
            seen.add(incoming.id)
            existing = self._coordinators.get(incoming.id)

            if existing is None:
                self._add(incoming)
                continue

            if existing.agent.url != incoming.url:
                # Re-registered under a new address: start over with a new client
                interval = self._watchers[incoming.id].interval if incoming.id in self._watchers else None
                logger.info(
                    "agent_url_changed",
                    agent_id=incoming.id,
                    old_url=existing.agent.url,
                    new_url=incoming.url,
                )
                self._remove(incoming.id)
                self._add(incoming)
                if interval is not None and not self.is_watched(incoming.id):
                    self.watch(incoming.id, interval)
                continue

            self._update_details(existing.agent, incoming)

        vanished = [
            agent_id for agent_id in self._coordinators
            if agent_id not in seen and agent_id not in self._local_ids
        ]
        for agent_id in vanished:
            self._remove(agent_id)

        self.last_error = ""
        self.last_refreshed_at = datetime.now(timezone.utc)
        logger.info(
            "registry_refreshed",
            agents=len(self._coordinators),
            removed=len(vanished),
        )
        return True

    async def refresh(self) -> bool:
        """
        Refresh the roster from the directory now.

        Returns:
            True if the directory was read; on failure the roster is kept
        """
        result = await self.directory.list_agents()
        merged = self._merge(result)
        await self._drain_retired()
        return merged

    async def _drain_retired(self) -> None:
        pollers, self._retired_pollers = self._retired_pollers, []
        coordinators, self._retired_coordinators = self._retired_coordinators, []

        for poller in pollers:
            await poller.aclose()
        for coordinator in coordinators:
            await coordinator.close()

    # =========================================================================
    # Polling
    # =========================================================================

    def watch(self, agent_id: str, interval: float | None = None) -> AgentStatusPoller:
        """
        Start polling an agent's status.

        Raises:
            KeyError: unknown agent
        """
        if agent_id in self._watchers:
            return self._watchers[agent_id]

        poller = AgentStatusPoller(
            self.coordinator(agent_id),
            interval=interval if interval is not None else self.poll_interval,
        )
        self._watchers[agent_id] = poller.start()
        return poller

    async def unwatch(self, agent_id: str) -> None:
        """Stop polling an agent's status."""
        poller = self._watchers.pop(agent_id, None)
        if poller is not None:
            await poller.aclose()

    def is_watched(self, agent_id: str) -> bool:
        return agent_id in self._watchers

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start periodic directory refreshes."""
        self._roster.start()

    async def aclose(self) -> None:
        """Stop all polling and release every agent client."""
        await self._roster.aclose()

        watchers, self._watchers = self._watchers, {}
        for poller in watchers.values():
            await poller.aclose()

        for coordinator in self._coordinators.values():
            await coordinator.close()
        await self._drain_retired()

        logger.info("registry_closed", agents=len(self._coordinators))
