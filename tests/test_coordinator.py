"""
Tests for the CaptureHub capture session coordinator.
"""

import asyncio

import pytest

from capturehub.agents.coordinator import CaptureSessionCoordinator
from capturehub.agents.models import (
    Agent,
    AgentError,
    AgentResponse,
    AgentStatus,
    CaptureState,
    InterfaceInfo,
    StatusSnapshot,
)
from capturehub.filters.models import FilterExpression, FilterRule, LogicalOperator


def web_filter() -> FilterExpression:
    expression = FilterExpression()
    expression.add(FilterRule.create("protocol", "tcp"))
    expression.add(FilterRule.create("port", "dst", "80"))
    return expression


class SlowAgent:
    """
    Agent client whose commands take time to complete.

    Like a real agent it refuses a start while a capture is running.
    """

    def __init__(self, capturing: bool = True):
        self.capturing = capturing
        self.calls: list[tuple] = []

    async def get_status(self):
        await asyncio.sleep(0)
        return StatusSnapshot(
            status=CaptureState.CAPTURING if self.capturing else CaptureState.IDLE,
            interface="eth0",
            interfaces=[InterfaceInfo(name="eth0")],
        )

    async def stop_capture(self):
        self.calls.append(("stop_capture",))
        await asyncio.sleep(0.01)
        self.capturing = False
        return AgentResponse()

    async def start_capture(self, interface: str, bpf_filter: str | None = None):
        self.calls.append(("start_capture", interface, bpf_filter))
        await asyncio.sleep(0.01)
        if self.capturing:
            return AgentError(error_type="application", message="capture already running")
        self.capturing = True
        return AgentResponse()

    async def close(self) -> None:
        pass


def slow_coordinator(capturing: bool = True) -> CaptureSessionCoordinator:
    agent = Agent(id="agent-1", name="Sensor One", url="http://10.0.0.2:5000", interface="eth0")
    if capturing:
        agent.state = CaptureState.CAPTURING
        agent.active_filter = "tcp"
    return CaptureSessionCoordinator(
        agent,
        client=SlowAgent(capturing),
        release_timeout=0.5,
        release_poll_interval=0.01,
    )


class TestStartStop:
    """Tests for the capture state machine."""

    @pytest.mark.asyncio
    async def test_start_compiles_structured_filter(self, coordinator, fake_client):
        spec = web_filter()
        coordinator.agent.packets_captured = 999

        outcome = await coordinator.start_capture("eth0", spec)

        assert outcome.success
        assert fake_client.command_calls == [("start_capture", "eth0", "tcp and dst port 80")]
        agent = coordinator.agent
        assert agent.state == CaptureState.CAPTURING
        assert agent.interface == "eth0"
        assert agent.packets_captured == 0
        assert agent.active_filter is spec
        assert agent.error == ""

    @pytest.mark.asyncio
    async def test_start_sends_raw_filter_verbatim(self, coordinator, fake_client):
        raw = "tcp port 80 and not host 10.0.0.1"

        await coordinator.start_capture("eth0", raw)

        assert fake_client.command_calls == [("start_capture", "eth0", raw)]
        assert coordinator.agent.active_filter == raw

    @pytest.mark.asyncio
    async def test_start_defaults_to_selected_interface(self, coordinator, fake_client):
        coordinator.agent.interface = "wlan0"

        await coordinator.start_capture()

        assert fake_client.command_calls == [("start_capture", "wlan0", None)]

    @pytest.mark.asyncio
    async def test_stop_returns_to_idle(self, coordinator):
        await coordinator.start_capture("eth0", "udp")
        outcome = await coordinator.stop_capture()

        assert outcome.success
        assert coordinator.agent.state == CaptureState.IDLE
        assert coordinator.agent.active_filter is None

    @pytest.mark.asyncio
    async def test_application_failure_enters_error(self, coordinator, fake_client):
        fake_client.start_results.append(
            AgentError(error_type="application", message="Permission denied on eth0")
        )

        outcome = await coordinator.start_capture("eth0")

        assert not outcome.success
        assert outcome.error == "Permission denied on eth0"
        assert outcome.error_type == "application"
        assert coordinator.agent.state == CaptureState.ERROR
        assert coordinator.agent.error == "Permission denied on eth0"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_type", ["transport", "malformed"])
    async def test_transport_failure_shows_fixed_message(self, coordinator, fake_client, error_type):
        fake_client.start_results.append(AgentError(error_type=error_type, message="ECONNREFUSED"))

        outcome = await coordinator.start_capture("eth0")

        assert outcome.error == "Connection to agent failed"
        assert coordinator.agent.error == "Connection to agent failed"
        assert coordinator.agent.state == CaptureState.ERROR

    @pytest.mark.asyncio
    async def test_start_after_error_recovers(self, coordinator, fake_client):
        fake_client.start_results.append(AgentError(error_type="transport", message="down"))
        await coordinator.start_capture("eth0")

        outcome = await coordinator.start_capture("eth0")

        assert outcome.success
        assert coordinator.agent.state == CaptureState.CAPTURING
        assert coordinator.agent.error == ""

    @pytest.mark.asyncio
    async def test_failed_stop_keeps_state(self, coordinator, fake_client):
        await coordinator.start_capture("eth0", "tcp")
        fake_client.stop_results.append(AgentError(error_type="application", message="busy"))

        outcome = await coordinator.stop_capture()

        assert not outcome.success
        assert coordinator.agent.state == CaptureState.CAPTURING
        assert coordinator.agent.active_filter == "tcp"
        assert coordinator.agent.error == "busy"

    @pytest.mark.asyncio
    async def test_sequences_never_leave_capturing_after_failure(self, coordinator, fake_client):
        """Each step lands in exactly one state; failed starts never capture."""
        failure = AgentError(error_type="application", message="no")
        script = [
            ("start", None), ("stop", None), ("start", failure),
            ("stop", None), ("start", None), ("start", None), ("stop", failure),
        ]

        for action, result in script:
            if action == "start":
                if result is not None:
                    fake_client.start_results.append(result)
                was_capturing = coordinator.agent.is_capturing
                outcome = await coordinator.start_capture("eth0")
                if not outcome.success and not was_capturing:
                    assert coordinator.agent.state == CaptureState.ERROR
                if outcome.success:
                    assert coordinator.agent.packets_captured == 0
            else:
                if result is not None:
                    fake_client.stop_results.append(result)
                await coordinator.stop_capture()

            assert coordinator.agent.state in set(CaptureState)


class TestValidation:
    """Tests for locally rejected commands."""

    @pytest.mark.asyncio
    async def test_start_without_interface(self, coordinator, fake_client):
        outcome = await coordinator.start_capture()

        assert not outcome.success
        assert outcome.error_type == "validation"
        assert coordinator.agent.error == "No interface selected"
        assert coordinator.agent.state == CaptureState.IDLE
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_start_while_capturing(self, coordinator, fake_client):
        await coordinator.start_capture("eth0")

        outcome = await coordinator.start_capture("wlan0")

        assert outcome.error_type == "validation"
        assert coordinator.agent.state == CaptureState.CAPTURING
        assert coordinator.agent.interface == "eth0"
        assert len(fake_client.command_calls) == 1

    @pytest.mark.asyncio
    async def test_invalid_filter_never_reaches_agent(self, coordinator, fake_client):
        bad = FilterExpression([FilterRule(kind="vlan", sub_kind="src", value="10")])

        outcome = await coordinator.start_capture("eth0", bad)

        assert outcome.error_type == "validation"
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_empty_interface_name(self, coordinator, fake_client):
        outcome = await coordinator.set_interface("  ")

        assert outcome.error_type == "validation"
        assert fake_client.calls == []


class TestSetInterface:
    """Tests for interface selection."""

    @pytest.mark.asyncio
    async def test_success(self, coordinator, fake_client):
        coordinator.agent.error = "old problem"

        outcome = await coordinator.set_interface("wlan0")

        assert outcome.success
        assert fake_client.command_calls == [("set_interface", "wlan0")]
        assert coordinator.agent.interface == "wlan0"
        assert coordinator.agent.error == ""

    @pytest.mark.asyncio
    async def test_failure_keeps_state(self, coordinator, fake_client):
        await coordinator.start_capture("eth0")
        fake_client.set_interface_results.append(AgentError(error_type="transport", message="timeout"))

        outcome = await coordinator.set_interface("wlan0")

        assert not outcome.success
        assert coordinator.agent.state == CaptureState.CAPTURING
        assert coordinator.agent.interface == "eth0"
        assert coordinator.agent.error == "Connection to agent failed"


class TestApplyFilter:
    """Tests for filter changes and the capture restart."""

    @pytest.mark.asyncio
    async def test_idle_records_filter_without_calls(self, coordinator, fake_client):
        spec = web_filter()

        outcome = await coordinator.apply_filter(spec)

        assert outcome.success
        assert coordinator.agent.active_filter is spec
        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_restart_stops_then_starts_on_same_interface(self, coordinator, fake_client, snapshot):
        await coordinator.start_capture("eth0", "tcp")
        fake_client.calls.clear()
        fake_client.status = snapshot("idle", interface="eth0")

        new_filter = FilterExpression()
        new_filter.add(FilterRule.create("protocol", "tcp"))
        new_filter.add(FilterRule.create("protocol", "udp"), LogicalOperator.OR)

        outcome = await coordinator.apply_filter(new_filter)

        assert outcome.success
        assert fake_client.command_calls == [
            ("stop_capture",),
            ("start_capture", "eth0", "tcp or udp"),
        ]
        assert coordinator.agent.state == CaptureState.CAPTURING
        assert coordinator.agent.active_filter is new_filter

    @pytest.mark.asyncio
    async def test_restart_waits_for_release(self, coordinator, fake_client, snapshot):
        await coordinator.start_capture("eth0")
        fake_client.calls.clear()
        fake_client.status_results = [
            snapshot("capturing", interface="eth0"),
            snapshot("capturing", interface="eth0"),
            snapshot("idle", interface="eth0"),
        ]

        await coordinator.apply_filter("udp")

        names = [call[0] for call in fake_client.calls]
        assert names == ["stop_capture", "get_status", "get_status", "get_status", "start_capture"]

    @pytest.mark.asyncio
    async def test_restart_times_out(self, coordinator, fake_client, snapshot):
        await coordinator.start_capture("eth0")
        fake_client.calls.clear()
        fake_client.status = snapshot("capturing", interface="eth0")

        outcome = await coordinator.apply_filter("udp")

        assert not outcome.success
        assert outcome.error_type == "timeout"
        assert coordinator.agent.state == CaptureState.ERROR
        assert "did not release" in coordinator.agent.error
        assert ("start_capture", "eth0", "udp") not in fake_client.calls
        assert coordinator.agent.active_filter == "udp"

    @pytest.mark.asyncio
    async def test_failed_stop_aborts_restart(self, coordinator, fake_client):
        await coordinator.start_capture("eth0", "tcp")
        fake_client.calls.clear()
        fake_client.stop_results.append(AgentError(error_type="application", message="busy"))

        outcome = await coordinator.apply_filter("udp")

        assert not outcome.success
        assert fake_client.command_calls == [("stop_capture",)]
        assert coordinator.agent.state == CaptureState.CAPTURING

    @pytest.mark.asyncio
    async def test_invalid_filter_rejected(self, coordinator, fake_client):
        await coordinator.start_capture("eth0", "tcp")

        outcome = await coordinator.apply_filter(
            FilterExpression([FilterRule(kind="vlan", sub_kind="src", value="1")])
        )

        assert outcome.error_type == "validation"
        assert coordinator.agent.active_filter == "tcp"

    @pytest.mark.asyncio
    async def test_overlapping_changes_start_only_the_latest(self):
        coordinator = slow_coordinator()

        first, second = await asyncio.gather(
            coordinator.apply_filter("udp"),
            coordinator.apply_filter("icmp"),
        )

        assert coordinator.client.calls == [
            ("stop_capture",),
            ("start_capture", "eth0", "icmp"),
        ]
        assert first.error_type == "superseded"
        assert second.success
        assert coordinator.agent.state == CaptureState.CAPTURING
        assert coordinator.agent.active_filter == "icmp"
        assert coordinator.agent.error == ""

    @pytest.mark.asyncio
    async def test_start_refused_while_another_start_in_flight(self):
        coordinator = slow_coordinator(capturing=False)

        first, second = await asyncio.gather(
            coordinator.start_capture("eth0", "tcp"),
            coordinator.start_capture("eth0", "udp"),
        )

        assert first.success
        assert second.error_type == "validation"
        assert coordinator.client.calls == [("start_capture", "eth0", "tcp")]
        assert coordinator.agent.active_filter == "tcp"


class TestReconcile:
    """Tests for merging polled status."""

    @pytest.mark.asyncio
    async def test_fresh_snapshot_applies(self, coordinator, snapshot):
        generation = coordinator.generation

        applied = coordinator.reconcile(
            snapshot("capturing", interface="eth0", packets=42),
            generation,
        )

        agent = coordinator.agent
        assert applied
        assert agent.state == CaptureState.CAPTURING
        assert agent.packets_captured == 42
        assert agent.interface == "eth0"

    @pytest.mark.asyncio
    async def test_stale_snapshot_keeps_local_state(self, coordinator, snapshot):
        """A poll fetched before a start must not undo it."""
        generation = coordinator.generation
        spec = web_filter()
        await coordinator.start_capture("eth0", spec)

        applied = coordinator.reconcile(
            snapshot("idle", interface="", interfaces=("eth0", "eth1")),
            generation,
        )

        agent = coordinator.agent
        assert not applied
        assert agent.state == CaptureState.CAPTURING
        assert agent.active_filter is spec
        assert agent.interfaces == ["eth0", "eth1"]

    @pytest.mark.asyncio
    async def test_never_touches_filter_or_error(self, coordinator, snapshot):
        coordinator.agent.active_filter = "tcp"
        coordinator.agent.error = "Permission denied"

        coordinator.reconcile(snapshot("idle"), coordinator.generation)

        assert coordinator.agent.active_filter == "tcp"
        assert coordinator.agent.error == "Permission denied"

    @pytest.mark.asyncio
    async def test_disconnected_display(self, coordinator, snapshot):
        coordinator.reconcile(snapshot("idle", connected=False), coordinator.generation)
        assert coordinator.agent.status == AgentStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_mark_unreachable(self, coordinator):
        await coordinator.start_capture("eth0")

        coordinator.mark_unreachable(AgentError(error_type="transport", message="refused"))

        agent = coordinator.agent
        assert not agent.connected
        assert agent.last_poll_error == "refused"
        assert agent.state == CaptureState.CAPTURING
        assert agent.status == AgentStatus.CAPTURING
        assert agent.error == ""

    @pytest.mark.asyncio
    async def test_refresh_applies_status(self, coordinator, fake_client, snapshot):
        fake_client.status = snapshot("capturing", interface="eth0", packets=7)

        result = await coordinator.refresh()

        assert result is fake_client.status
        assert coordinator.agent.packets_captured == 7
        assert coordinator.agent.connected
