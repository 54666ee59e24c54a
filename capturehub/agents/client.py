"""
CaptureHub Agent Client

HTTP client for a remote capture agent's control API:

    GET  /status
    POST /capture/start          {interface, filter?}
    POST /capture/stop
    POST /capture/set-interface  {interface}

Every call returns either a result or an AgentError; nothing is raised
for remote or network failures.
"""

from typing import Any

import httpx
import structlog

from capturehub.agents.models import AgentError, AgentResponse, StatusSnapshot
from capturehub.config import settings

logger = structlog.get_logger(__name__)


class AgentClient:
    """
    Client for one capture agent.

    Features:
    - Persistent connection pool, created lazily
    - ``{success, data, error}`` envelope handling
    - Application vs transport failure classification
    """

    def __init__(
        self,
        base_url: str,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: The agent's own URL
            timeout: Request timeout in seconds (defaults to settings)
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None = None,
    ) -> AgentResponse | AgentError:
        """
        Send a request and unwrap the response envelope.

        The agent reports failures as ``{success: false, error}`` with a
        non-2xx status, so the body is decoded regardless of status code.

        Args:
            method: HTTP method
            path: Endpoint path
            body: Optional JSON body

        Returns:
            AgentResponse on success, AgentError otherwise
        """
        try:
            client = await self._get_client()
            response = await client.request(method, path, json=body)
        except httpx.TimeoutException:
            logger.warning("agent_request_timeout", url=self.base_url, path=path)
            return AgentError(error_type="transport", message="Request timed out")
        except httpx.RequestError as e:
            logger.error("agent_request_error", url=self.base_url, path=path, error=str(e))
            return AgentError(error_type="transport", message=str(e))

        try:
            payload = response.json()
        except ValueError:
            logger.warning(
                "agent_invalid_json",
                url=self.base_url,
                path=path,
                status=response.status_code,
            )
            return AgentError(
                error_type="transport",
                message=f"Agent returned a non-JSON response (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        if not isinstance(payload, dict) or "success" not in payload:
            logger.warning("agent_unexpected_payload", url=self.base_url, path=path)
            return AgentError(
                error_type="malformed",
                message="Agent response is missing the success flag",
                status_code=response.status_code,
            )

        if not payload["success"]:
            message = str(payload.get("error") or "")
            logger.info(
                "agent_request_rejected",
                url=self.base_url,
                path=path,
                status=response.status_code,
                error=message,
            )
            return AgentError(
                error_type="application",
                message=message,
                status_code=response.status_code,
            )

        return AgentResponse(data=payload.get("data"), message=payload.get("message"))

    async def get_status(self) -> StatusSnapshot | AgentError:
        """
        Fetch the agent's live status.

        Returns:
            StatusSnapshot, or AgentError for failed or malformed responses
        """
        result = await self._request("GET", "/status")
        if isinstance(result, AgentError):
            return result

        try:
            return StatusSnapshot.from_dict(result.data)
        except ValueError as e:
            logger.warning("agent_status_malformed", url=self.base_url, error=str(e))
            return AgentError(error_type="malformed", message=str(e))

    async def start_capture(
        self,
        interface: str,
        bpf_filter: str | None = None,
    ) -> AgentResponse | AgentError:
        """
        Start capturing on an interface.

        Args:
            interface: Interface name
            bpf_filter: BPF string, sent exactly as given when present
        """
        body: dict[str, Any] = {"interface": interface}
        if bpf_filter:
            body["filter"] = bpf_filter

        logger.info("agent_capture_start", url=self.base_url, interface=interface, filter=bpf_filter)
        return await self._request("POST", "/capture/start", body)

    async def stop_capture(self) -> AgentResponse | AgentError:
        """Stop the running capture."""
        logger.info("agent_capture_stop", url=self.base_url)
        return await self._request("POST", "/capture/stop")

    async def set_interface(self, interface: str) -> AgentResponse | AgentError:
        """Select the interface the agent captures on."""
        logger.info("agent_set_interface", url=self.base_url, interface=interface)
        return await self._request("POST", "/capture/set-interface", {"interface": interface})

    async def health(self) -> AgentResponse | AgentError:
        """Check the agent's health endpoint."""
        return await self._request("GET", "/health")
