"""
CaptureHub Directory Client

Reads the roster of registered agents from the central server
(``GET /api/agents``).
"""

import httpx
import structlog

from capturehub.agents.models import Agent, AgentError
from capturehub.config import settings

logger = structlog.get_logger(__name__)


class DirectoryClient:
    """Client for the central server's agent directory."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Central server URL (defaults to settings)
            timeout: Request timeout in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.base_url = (base_url or settings.directory_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._transport = transport

    async def list_agents(self) -> list[Agent] | AgentError:
        """
        Fetch all registered agents.

        Entries that cannot be parsed are skipped with a warning so one bad
        registration does not hide the rest of the roster.

        Returns:
            List of agents, or AgentError if the roster could not be read
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.get("/api/agents")
        except httpx.TimeoutException:
            logger.warning("directory_timeout", url=self.base_url)
            return AgentError(error_type="transport", message="Request timed out")
        except httpx.RequestError as e:
            logger.error("directory_request_error", url=self.base_url, error=str(e))
            return AgentError(error_type="transport", message=str(e))

        try:
            payload = response.json()
        except ValueError:
            logger.warning("directory_invalid_json", status=response.status_code)
            return AgentError(
                error_type="transport",
                message=f"Directory returned a non-JSON response (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        if not isinstance(payload, dict) or not payload.get("success"):
            message = payload.get("error") if isinstance(payload, dict) else None
            logger.warning("directory_rejected", status=response.status_code, error=message)
            return AgentError(
                error_type="application",
                message=message or "Failed to load agents",
                status_code=response.status_code,
            )

        entries = payload.get("data") or []
        if not isinstance(entries, list):
            return AgentError(error_type="malformed", message="Agent list must be an array")

        agents = []
        for entry in entries:
            try:
                agents.append(Agent.from_directory(entry))
            except (ValueError, TypeError) as e:
                logger.warning("directory_entry_skipped", error=str(e))

        logger.debug("directory_loaded", agents=len(agents))
        return agents
