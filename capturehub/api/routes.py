"""
CaptureHub REST API Routes

Control endpoints for remote capture agents, filter compilation
and saved filter presets.
"""

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from capturehub.agents.coordinator import CaptureSessionCoordinator
from capturehub.agents.models import Agent, AgentError, CommandOutcome
from capturehub.agents.registry import AgentRegistry
from capturehub.filters.compiler import compile_filter
from capturehub.filters.models import FilterSpec, FilterValidationError, describe_spec, spec_from_json
from capturehub.filters.presets import FilterPresetStore

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["capture"])

# Raw BPF string, or a list of serialized rules
FilterPayload = str | list[dict[str, Any]] | None


# =============================================================================
# Request Models
# =============================================================================


class InterfaceRequest(BaseModel):
    """Select an agent's capture interface."""

    interface: str = Field(..., description="Interface name")


class StartCaptureRequest(BaseModel):
    """Start a capture."""

    interface: str | None = Field(None, description="Interface (defaults to the selected one)")
    filter: FilterPayload = Field(None, description="Raw BPF string or list of filter rules")


class ApplyFilterRequest(BaseModel):
    """Change the active filter, restarting a running capture."""

    filter: FilterPayload = Field(None, description="Raw BPF string or list of filter rules")
    preset_id: int | None = Field(None, description="Apply a saved preset instead")


class CompileRequest(BaseModel):
    """Compile a filter to BPF."""

    filter: FilterPayload = Field(None, description="Raw BPF string or list of filter rules")


class SavePresetRequest(BaseModel):
    """Save a filter preset."""

    name: str = Field(..., description="Preset display name")
    filter: str | list[dict[str, Any]] = Field(..., description="Raw BPF string or list of filter rules")
    id: int | None = Field(None, description="Replace the preset with this id")


# =============================================================================
# Dependencies
# =============================================================================


def get_registry(request: Request) -> AgentRegistry:
    return request.app.state.registry


def get_presets(request: Request) -> FilterPresetStore:
    return request.app.state.presets


Registry = Annotated[AgentRegistry, Depends(get_registry)]
Presets = Annotated[FilterPresetStore, Depends(get_presets)]


def _coordinator(registry: AgentRegistry, agent_id: str) -> CaptureSessionCoordinator:
    try:
        return registry.coordinator(agent_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown agent: {agent_id}")


def _decode_filter(data: Any) -> FilterSpec | None:
    try:
        return spec_from_json(data)
    except FilterValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


def _command_response(outcome: CommandOutcome, agent: Agent) -> dict[str, Any]:
    return {**outcome.to_dict(), "agent": agent.to_dict()}


# =============================================================================
# Agents
# =============================================================================


@router.get("/agents")
async def list_agents(registry: Registry) -> dict[str, Any]:
    """List known agents with their capture state."""
    return {
        "agents": [agent.to_dict() for agent in registry.agents()],
        "last_error": registry.last_error,
        "last_refreshed_at": (
            registry.last_refreshed_at.isoformat() if registry.last_refreshed_at else None
        ),
    }


@router.post("/agents/refresh")
async def refresh_agents(registry: Registry) -> dict[str, Any]:
    """Reload the roster from the directory server now."""
    success = await registry.refresh()
    return {
        "success": success,
        "error": registry.last_error,
        "agents": [agent.to_dict() for agent in registry.agents()],
    }


@router.get("/agents/{agent_id}")
async def get_agent(agent_id: str, registry: Registry) -> dict[str, Any]:
    """Get one agent."""
    coordinator = _coordinator(registry, agent_id)
    return {**coordinator.agent.to_dict(), "watched": registry.is_watched(agent_id)}


@router.post("/agents/{agent_id}/interface")
async def set_interface(agent_id: str, request: InterfaceRequest, registry: Registry) -> dict[str, Any]:
    """Select the interface an agent captures on."""
    coordinator = _coordinator(registry, agent_id)
    outcome = await coordinator.set_interface(request.interface)
    return _command_response(outcome, coordinator.agent)


@router.post("/agents/{agent_id}/capture/start")
async def start_capture(agent_id: str, request: StartCaptureRequest, registry: Registry) -> dict[str, Any]:
    """Start capturing, optionally with a filter."""
    coordinator = _coordinator(registry, agent_id)
    spec = _decode_filter(request.filter)
    outcome = await coordinator.start_capture(request.interface, spec)
    return _command_response(outcome, coordinator.agent)


@router.post("/agents/{agent_id}/capture/stop")
async def stop_capture(agent_id: str, registry: Registry) -> dict[str, Any]:
    """Stop the running capture."""
    coordinator = _coordinator(registry, agent_id)
    outcome = await coordinator.stop_capture()
    return _command_response(outcome, coordinator.agent)


@router.post("/agents/{agent_id}/filter")
async def apply_filter(
    agent_id: str,
    request: ApplyFilterRequest,
    registry: Registry,
    presets: Presets,
) -> dict[str, Any]:
    """
    Change an agent's filter.

    A running capture is restarted on the same interface with the new filter.
    """
    coordinator = _coordinator(registry, agent_id)

    if request.preset_id is not None:
        preset = presets.get(agent_id, request.preset_id)
        if preset is None:
            raise HTTPException(status_code=404, detail=f"Unknown preset: {request.preset_id}")
        spec = preset.spec
    else:
        spec = _decode_filter(request.filter)

    outcome = await coordinator.apply_filter(spec)
    return _command_response(outcome, coordinator.agent)


@router.post("/agents/{agent_id}/poll")
async def poll_agent(agent_id: str, registry: Registry) -> dict[str, Any]:
    """Fetch an agent's status once and merge it."""
    coordinator = _coordinator(registry, agent_id)
    result = await coordinator.refresh()
    error = result.message if isinstance(result, AgentError) else ""
    return {
        "success": not error,
        "error": error,
        "agent": coordinator.agent.to_dict(),
    }


# =============================================================================
# Filters
# =============================================================================


@router.post("/filters/compile")
async def compile_bpf(request: CompileRequest) -> dict[str, Any]:
    """Compile a filter to the BPF string an agent would receive."""
    spec = _decode_filter(request.filter)
    try:
        bpf = compile_filter(spec)
    except FilterValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"bpf": bpf, "label": describe_spec(spec)}


# =============================================================================
# Presets
# =============================================================================


@router.get("/presets/{scope}")
async def list_presets(scope: str, presets: Presets) -> dict[str, Any]:
    """List presets visible in a scope (an agent id or "global")."""
    return {
        "scope": scope,
        "presets": [preset.to_dict() for preset in presets.list(scope)],
    }


@router.post("/presets/{scope}")
async def save_preset(scope: str, request: SavePresetRequest, presets: Presets) -> dict[str, Any]:
    """Save a preset, replacing an existing one when an id is given."""
    spec = _decode_filter(request.filter)
    try:
        preset_id = presets.save(scope, request.name, spec, preset_id=request.id)
    except FilterValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "id": preset_id}


@router.delete("/presets/{scope}/{preset_id}")
async def delete_preset(scope: str, preset_id: int, presets: Presets) -> dict[str, Any]:
    """Delete a preset from a scope's own storage."""
    if not presets.delete(scope, preset_id):
        raise HTTPException(status_code=404, detail=f"Unknown preset: {preset_id}")
    return {"success": True}
