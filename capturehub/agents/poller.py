"""
CaptureHub Pollers

Interval polling with an explicit lifecycle. A poller runs only between
``start()`` and ``stop()``/``aclose()``, or inside ``async with``.

Stopping does not cancel a request that is already in flight; its result
is discarded when it arrives. Each start issues a new disposal token, so
a result fetched under an earlier start is never applied either.
"""

import asyncio
from typing import Any

import structlog

from capturehub.agents.coordinator import CaptureSessionCoordinator
from capturehub.agents.models import AgentError
from capturehub.config import settings

logger = structlog.get_logger(__name__)


class Poller:
    """
    Base interval poller.

    Subclasses implement ``_fetch`` (async, may suspend) and ``_apply``
    (sync, runs only while the fetch's token is still live).
    """

    def __init__(self, interval: float, name: str = "poller"):
        """
        Initialize the poller.

        Args:
            interval: Seconds between the end of one poll and the next
            name: Label used in logs and for the task name
        """
        self.interval = interval
        self.name = name
        self._token: object | None = None
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._token is not None

    async def _fetch(self) -> Any:
        raise NotImplementedError

    def _apply(self, result: Any) -> None:
        raise NotImplementedError

    def _on_error(self, error: Exception) -> None:
        """Called when a fetch raises unexpectedly."""

    def start(self) -> "Poller":
        """Start polling. Must be called from a running event loop."""
        if self.running:
            return self

        token = object()
        self._token = token
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(
            self._run(token, self._stop_event),
            name=f"poll:{self.name}",
        )
        logger.debug("poller_started", poller=self.name, interval=self.interval)
        return self

    def stop(self) -> None:
        """Stop polling. Results still in flight will be discarded."""
        if self._token is None:
            return
        self._token = None
        if self._stop_event is not None:
            self._stop_event.set()
        logger.debug("poller_stopped", poller=self.name)

    async def aclose(self) -> None:
        """Stop polling and wait for the loop to finish."""
        self.stop()
        task, self._task = self._task, None
        if task is not None:
            await task

    async def __aenter__(self) -> "Poller":
        return self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def poll_once(self) -> bool:
        """
        Fetch once and apply the result if this poller was not stopped
        or restarted meanwhile.

        Returns:
            True if the result was applied
        """
        token = self._token
        try:
            result = await self._fetch()
        except Exception as e:
            if self._token is not token:
                return False
            logger.error("poll_failed", poller=self.name, error=str(e), exc_info=True)
            self._on_error(e)
            return False

        if self._token is not token:
            logger.debug("poll_result_discarded", poller=self.name)
            return False

        self._apply(result)
        return True

    async def _run(self, token: object, stop_event: asyncio.Event) -> None:
        while self._token is token:
            try:
                await self.poll_once()
            except Exception as e:
                logger.error("poll_apply_failed", poller=self.name, error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass


class AgentStatusPoller(Poller):
    """
    Periodically fetches one agent's status and feeds it to its coordinator.

    Unreachable agents and malformed responses are recorded on the agent
    and polling continues.
    """

    def __init__(self, coordinator: CaptureSessionCoordinator, interval: float | None = None):
        """
        Initialize the poller.

        Args:
            coordinator: The agent's CaptureSessionCoordinator
            interval: Poll interval in seconds (defaults to settings)
        """
        super().__init__(
            interval=interval if interval is not None else settings.status_poll_seconds,
            name=f"status:{coordinator.agent.id}",
        )
        self.coordinator = coordinator

    async def _fetch(self) -> tuple[int, Any]:
        generation = self.coordinator.generation
        result = await self.coordinator.client.get_status()
        return generation, result

    def _apply(self, result: tuple[int, Any]) -> None:
        generation, status = result
        if isinstance(status, AgentError):
            self.coordinator.mark_unreachable(status)
        else:
            self.coordinator.reconcile(status, generation)

    def _on_error(self, error: Exception) -> None:
        self.coordinator.mark_unreachable(str(error))
