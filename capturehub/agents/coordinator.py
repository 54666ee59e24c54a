"""
CaptureHub Capture Session Coordinator

Owns one agent's capture state and issues its start/stop/set-interface
commands. Remote outcomes are converted into agent state here: nothing
raised or returned by the client escapes as a failure past this class.

State machine:

    idle/error --start ok--> capturing      (packets reset, filter stored)
    idle/error --start fail-> error
    any        --stop ok---> idle           (filter cleared)
    any        --stop fail-> unchanged, error set

A filter change while capturing restarts the capture: stop, wait until the
agent reports it no longer captures, then start with the new filter on
the same interface.

Each command bumps a generation counter when it begins and when it ends;
a polled snapshot taken under an older generation, or while a command is
in flight, may only refresh reachability and the interface list.

Restarts run one at a time under a lock and the latest filter change
wins: a restart overtaken by a newer one returns before sending its
start. A start is refused while another start is in flight.
"""

import asyncio
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

import structlog

from capturehub.agents.client import AgentClient
from capturehub.agents.models import (
    Agent,
    AgentError,
    CaptureState,
    CommandOutcome,
    StatusSnapshot,
)
from capturehub.config import settings
from capturehub.filters.compiler import BpfCompiler, get_compiler
from capturehub.filters.models import FilterExpression, FilterSpec, FilterValidationError

logger = structlog.get_logger(__name__)


def _normalize_spec(spec: FilterSpec | None) -> FilterSpec | None:
    """Treat empty filters as no filter."""
    if isinstance(spec, FilterExpression) and spec.is_empty:
        return None
    if isinstance(spec, str) and not spec:
        return None
    return spec


class CaptureSessionCoordinator:
    """
    Capture lifecycle for a single agent.

    Coordinates between:
    - The agent's HTTP control API
    - The BPF compiler for structured filters
    - Status snapshots delivered by pollers
    """

    def __init__(
        self,
        agent: Agent,
        client: AgentClient | None = None,
        compiler: BpfCompiler | None = None,
        unreachable_message: str | None = None,
        release_timeout: float | None = None,
        release_poll_interval: float | None = None,
    ):
        """
        Initialize the coordinator.

        Args:
            agent: The agent whose state this coordinator owns
            client: Agent API client (created from agent.url if not provided)
            compiler: BPF compiler (uses global if not provided)
            unreachable_message: Operator message for transport failures
            release_timeout: Max seconds a filter restart waits for the
                agent to stop capturing
            release_poll_interval: Status poll cadence during that wait
        """
        self.agent = agent
        self.client = client or AgentClient(agent.url)
        self.compiler = compiler or get_compiler()
        self.unreachable_message = unreachable_message or settings.agent_unreachable_message
        self.release_timeout = (
            release_timeout if release_timeout is not None
            else settings.restart_release_timeout_seconds
        )
        self.release_poll_interval = (
            release_poll_interval if release_poll_interval is not None
            else settings.restart_poll_interval_seconds
        )

        self._generation = 0
        self._inflight = 0
        self._starting = False
        self._restart_lock = asyncio.Lock()
        self._restarts = 0
        self._restart_token: object | None = None
        self._restart_filter: FilterSpec | None = None
        self._log = logger.bind(agent_id=agent.id)

    # =========================================================================
    # Command bookkeeping
    # =========================================================================

    @property
    def generation(self) -> int:
        """Current command generation; pollers record it before fetching."""
        return self._generation

    @property
    def busy(self) -> bool:
        """Whether a command is in flight."""
        return self._inflight > 0

    @contextmanager
    def _command(self) -> Iterator[None]:
        self._inflight += 1
        self._generation += 1
        try:
            yield
        finally:
            self._inflight -= 1
            self._generation += 1

    def _reject(self, message: str) -> CommandOutcome:
        """Refuse a command locally, before any network call."""
        self._log.info("command_rejected", reason=message)
        self.agent.error = message
        return CommandOutcome(success=False, error=message, error_type="validation")

    def _failure_message(self, result: AgentError, fallback: str) -> str:
        """Operator-facing message for a failed call."""
        if result.is_application_error:
            return result.message or fallback
        self._log.warning(
            "agent_unreachable",
            error_type=result.error_type,
            error=result.message,
        )
        return self.unreachable_message

    # =========================================================================
    # Commands
    # =========================================================================

    async def set_interface(self, interface: str) -> CommandOutcome:
        """
        Select the capture interface.

        Allowed in any state. Failures keep the state and set the error.
        """
        interface = (interface or "").strip()
        if not interface:
            return self._reject("No interface selected")

        with self._command():
            result = await self.client.set_interface(interface)

        if isinstance(result, AgentError):
            message = self._failure_message(result, "Failed to set interface")
            self.agent.error = message
            return CommandOutcome(success=False, error=message, error_type=result.error_type)

        self.agent.interface = interface
        self.agent.error = ""
        self._log.info("interface_set", interface=interface)
        return CommandOutcome(success=True)

    async def start_capture(
        self,
        interface: str | None = None,
        spec: FilterSpec | None = None,
    ) -> CommandOutcome:
        """
        Start a capture.

        Args:
            interface: Interface to capture on (defaults to the selected one)
            spec: Structured expression (compiled) or raw BPF (sent as-is)

        Returns:
            CommandOutcome; on remote failure the agent is left in error
        """
        if self.agent.is_capturing or self._starting:
            return self._reject("Capture already in progress")

        interface = (interface or self.agent.interface or "").strip()
        if not interface:
            return self._reject("No interface selected")

        spec = _normalize_spec(spec)
        try:
            bpf = self.compiler.resolve(spec)
        except FilterValidationError as e:
            return self._reject(str(e))

        self._starting = True
        try:
            with self._command():
                result = await self.client.start_capture(interface, bpf)
        finally:
            self._starting = False

        if isinstance(result, AgentError):
            message = self._failure_message(result, "Failed to start capture")
            self.agent.state = CaptureState.ERROR
            self.agent.error = message
            self._log.warning("capture_start_failed", interface=interface, error=message)
            return CommandOutcome(success=False, error=message, error_type=result.error_type)

        self.agent.state = CaptureState.CAPTURING
        self.agent.interface = interface
        self.agent.packets_captured = 0
        self.agent.active_filter = spec
        self.agent.error = ""
        self._log.info("capture_started", interface=interface, filter=bpf)
        return CommandOutcome(success=True)

    async def stop_capture(self) -> CommandOutcome:
        """
        Stop the capture.

        Allowed in any state. Failures keep the state and set the error.
        """
        with self._command():
            result = await self.client.stop_capture()

        if isinstance(result, AgentError):
            message = self._failure_message(result, "Failed to stop capture")
            self.agent.error = message
            self._log.warning("capture_stop_failed", error=message)
            return CommandOutcome(success=False, error=message, error_type=result.error_type)

        self.agent.state = CaptureState.IDLE
        self.agent.active_filter = None
        self.agent.error = ""
        self._log.info("capture_stopped")
        return CommandOutcome(success=True)

    async def apply_filter(self, spec: FilterSpec | None) -> CommandOutcome:
        """
        Change the filter, restarting a running capture to apply it.

        The new filter is recorded immediately. When capturing, the capture
        is stopped, the agent is polled until it reports it released the
        interface, and a new capture is started on the same interface.

        Overlapping changes are applied in order and only the latest one
        is started; earlier ones return with ``error_type="superseded"``.
        """
        spec = _normalize_spec(spec)
        try:
            self.compiler.resolve(spec)
        except FilterValidationError as e:
            return self._reject(str(e))

        self.agent.active_filter = spec
        if not (self.agent.is_capturing or self._restarts):
            self._log.info("filter_recorded", restart=False)
            return CommandOutcome(success=True)

        token = object()
        self._restart_token = token
        self._restart_filter = spec
        self._restarts += 1
        try:
            async with self._restart_lock:
                return await self._restart(spec, token)
        finally:
            self._restarts -= 1

    def _superseded(self) -> CommandOutcome:
        self._log.info("filter_restart_superseded")
        return CommandOutcome(
            success=False,
            error="Superseded by a newer filter change",
            error_type="superseded",
        )

    async def _restart(self, spec: FilterSpec | None, token: object) -> CommandOutcome:
        if self._restart_token is not token:
            return self._superseded()

        interface = self.agent.interface
        self._log.info("filter_restart", interface=interface)

        with self._command():
            if self.agent.is_capturing:
                stopped = await self.stop_capture()
                if not stopped.success:
                    return stopped

            # stop clears the filter; keep showing the latest one requested
            self.agent.active_filter = self._restart_filter
            if self._restart_token is not token:
                return self._superseded()

            released = await self._wait_for_release()
            if self._restart_token is not token:
                return self._superseded()

            if not released:
                message = (
                    f"Agent did not release interface {interface} "
                    f"within {self.release_timeout:g}s"
                )
                self.agent.state = CaptureState.ERROR
                self.agent.error = message
                self._log.warning("filter_restart_timeout", interface=interface)
                return CommandOutcome(success=False, error=message, error_type="timeout")

            return await self.start_capture(interface, spec)

    async def _wait_for_release(self) -> bool:
        """Poll status until the agent no longer reports capturing."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.release_timeout

        while True:
            result = await self.client.get_status()
            if isinstance(result, StatusSnapshot) and result.status != CaptureState.CAPTURING:
                return True
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(self.release_poll_interval)

    # =========================================================================
    # Observed state
    # =========================================================================

    def reconcile(self, snapshot: StatusSnapshot, generation: int | None = None) -> bool:
        """
        Merge a polled status snapshot into the agent.

        Reachability and the interface list are always refreshed. Capture
        state, interface and packet count are taken only from a fresh
        snapshot: one fetched under the current generation with no command
        in flight. The active filter and the error are never touched.

        Args:
            snapshot: Observed agent status
            generation: Value of ``generation`` when the fetch began

        Returns:
            True if the snapshot was fresh and fully applied
        """
        agent = self.agent
        agent.connected = snapshot.connected
        agent.interfaces = [i.name for i in snapshot.interfaces]
        agent.interface_addresses = {i.name: i.ips for i in snapshot.interfaces if i.ips}
        agent.last_poll_error = ""
        agent.last_polled_at = datetime.now(timezone.utc)

        if generation is None:
            generation = self._generation
        if generation != self._generation or self.busy:
            self._log.debug(
                "snapshot_stale",
                snapshot_generation=generation,
                generation=self._generation,
                observed=snapshot.status.value,
            )
            return False

        agent.state = snapshot.status
        agent.packets_captured = snapshot.packets_captured
        if snapshot.interface:
            agent.interface = snapshot.interface
        return True

    def mark_unreachable(self, error: AgentError | str) -> None:
        """Record a failed poll. Capture state and error are left alone."""
        message = error.message if isinstance(error, AgentError) else error
        self.agent.connected = False
        self.agent.last_poll_error = message
        self.agent.last_polled_at = datetime.now(timezone.utc)
        self._log.warning("agent_poll_failed", error=message)

    async def refresh(self) -> StatusSnapshot | AgentError:
        """Fetch status once and apply it."""
        generation = self._generation
        result = await self.client.get_status()
        if isinstance(result, AgentError):
            self.mark_unreachable(result)
        else:
            self.reconcile(result, generation)
        return result

    async def close(self) -> None:
        """Release the agent client."""
        await self.client.close()
