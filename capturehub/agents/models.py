"""
CaptureHub Agent Data Models

Defines remote capture agents, their observed status snapshots and
the result types returned by agent calls and coordinator commands.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from capturehub.filters.models import FilterSpec, describe_spec, spec_to_json


class CaptureState(str, Enum):
    """Capture lifecycle states driven by the coordinator."""

    IDLE = "idle"
    CAPTURING = "capturing"
    ERROR = "error"


class AgentStatus(str, Enum):
    """Displayed agent status."""

    IDLE = "idle"
    CAPTURING = "capturing"
    ERROR = "error"
    DISCONNECTED = "disconnected"  # unreachable while idle or in error


@dataclass
class InterfaceInfo:
    """A network interface reported by an agent."""

    name: str
    ips: list[str] = field(default_factory=list)

    @classmethod
    def from_data(cls, item: Any) -> "InterfaceInfo":
        """Accept either a bare interface name or ``{name, ips}``."""
        if isinstance(item, str):
            return cls(name=item)
        if isinstance(item, dict) and isinstance(item.get("name"), str):
            ips = item.get("ips") or []
            if not isinstance(ips, list):
                raise ValueError(f"Interface ips must be a list, got {type(ips).__name__}")
            return cls(name=item["name"], ips=[str(ip) for ip in ips])
        raise ValueError(f"Unrecognized interface entry: {item!r}")

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "ips": self.ips}


@dataclass
class StatusSnapshot:
    """
    One observed status report from an agent's ``GET /status``.

    Built only through ``from_dict`` so malformed payloads are rejected
    before they can reach agent state.
    """

    status: CaptureState
    interface: str
    interfaces: list[InterfaceInfo]
    packets_captured: int
    connected: bool = True

    @classmethod
    def from_dict(cls, data: Any) -> "StatusSnapshot":
        """
        Parse the ``data`` object of a status response.

        Raises:
            ValueError: the payload does not have the expected shape
        """
        if not isinstance(data, dict):
            raise ValueError(f"Status data must be an object, got {type(data).__name__}")

        try:
            status = CaptureState(data.get("status"))
        except ValueError:
            raise ValueError(f"Unknown agent status: {data.get('status')!r}") from None

        raw_interfaces = data.get("interfaces") or []
        if not isinstance(raw_interfaces, list):
            raise ValueError("Status interfaces must be a list")

        packets = data.get("packets_captured", 0) or 0
        if isinstance(packets, bool) or not isinstance(packets, int):
            raise ValueError(f"packets_captured must be an integer, got {packets!r}")

        return cls(
            status=status,
            interface=str(data.get("interface") or ""),
            interfaces=[InterfaceInfo.from_data(item) for item in raw_interfaces],
            packets_captured=packets,
            connected=bool(data.get("connected", True)),
        )


def _parse_timestamp(value: Any) -> datetime | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class Agent:
    """
    A remote capture agent as known locally.

    Capture fields (state, error, active_filter, packets_captured,
    interface) are written by the agent's coordinator; descriptive fields
    come from the directory server.
    """

    id: str
    name: str
    url: str

    # Capture session
    state: CaptureState = CaptureState.IDLE
    interface: str = ""
    interfaces: list[str] = field(default_factory=list)
    interface_addresses: dict[str, list[str]] = field(default_factory=dict)
    packets_captured: int = 0
    active_filter: FilterSpec | None = None
    error: str = ""

    # Reachability, as last observed by a poller
    connected: bool = True
    last_poll_error: str = ""
    last_polled_at: datetime | None = None

    # Host details
    hostname: str = ""
    os: str = ""
    uptime: str = ""
    version: str = ""
    last_heartbeat: datetime | None = None

    @property
    def status(self) -> AgentStatus:
        """Displayed status; an unreachable idle or failed agent is disconnected."""
        if not self.connected and self.state != CaptureState.CAPTURING:
            return AgentStatus.DISCONNECTED
        return AgentStatus(self.state.value)

    @property
    def is_capturing(self) -> bool:
        return self.state == CaptureState.CAPTURING

    @classmethod
    def from_directory(cls, data: dict[str, Any]) -> "Agent":
        """
        Build an agent from a directory server entry.

        Entries without an ``id`` are keyed by their name.

        Raises:
            ValueError: the entry has neither id nor name, or no URL
        """
        if not isinstance(data, dict):
            raise ValueError(f"Agent entry must be an object, got {type(data).__name__}")

        agent_id = str(data.get("id") or data.get("name") or "")
        url = str(data.get("url") or "").rstrip("/")
        if not agent_id or not url:
            raise ValueError("Agent entry requires an id or name and a url")

        interfaces = [InterfaceInfo.from_data(i) for i in data.get("interfaces") or []]

        raw_status = str(data.get("status") or "idle").lower()
        state = CaptureState.IDLE
        if raw_status == "capturing":
            state = CaptureState.CAPTURING
        elif raw_status == "error":
            state = CaptureState.ERROR

        return cls(
            id=agent_id,
            name=str(data.get("name") or agent_id),
            url=url,
            state=state,
            interface=str(data.get("interface") or data.get("active_interface") or ""),
            interfaces=[i.name for i in interfaces],
            interface_addresses={i.name: i.ips for i in interfaces if i.ips},
            packets_captured=int(data.get("packets_captured") or 0),
            error=str(data.get("error") or ""),
            connected=raw_status not in ("offline", "disconnected"),
            hostname=str(data.get("hostname") or ""),
            os=str(data.get("os") or ""),
            uptime=str(data.get("uptime") or ""),
            version=str(data.get("version") or ""),
            last_heartbeat=_parse_timestamp(data.get("last_heartbeat") or data.get("last_seen")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "status": self.status.value,
            "state": self.state.value,
            "connected": self.connected,
            "interface": self.interface,
            "interfaces": self.interfaces,
            "interface_addresses": self.interface_addresses,
            "packets_captured": self.packets_captured,
            "active_filter": spec_to_json(self.active_filter),
            "active_filter_label": describe_spec(self.active_filter),
            "error": self.error,
            "last_poll_error": self.last_poll_error,
            "last_polled_at": self.last_polled_at.isoformat() if self.last_polled_at else None,
            "hostname": self.hostname,
            "os": self.os,
            "uptime": self.uptime,
            "version": self.version,
            "last_heartbeat": self.last_heartbeat.isoformat() if self.last_heartbeat else None,
        }


# =============================================================================
# Call Results
# =============================================================================


@dataclass
class AgentResponse:
    """Successful response from an agent or the directory server."""

    data: Any = None
    message: str | None = None


@dataclass
class AgentError:
    """
    Failed call to an agent or the directory server.

    error_type is "application" when the remote answered with
    ``success: false``, "transport" when the request could not complete,
    and "malformed" when the answer did not have the expected shape.
    """

    error_type: str
    message: str
    status_code: int | None = None

    @property
    def is_application_error(self) -> bool:
        return self.error_type == "application"


@dataclass
class CommandOutcome:
    """Result of a coordinator command, after conversion into agent state."""

    success: bool
    error: str = ""
    error_type: str | None = None  # validation, application, transport, malformed, timeout, superseded

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "error": self.error,
            "error_type": self.error_type,
        }
