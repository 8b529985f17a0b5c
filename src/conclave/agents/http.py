"""
HTTP agent invoker for Ollama-compatible /api/generate endpoints.
"""

import time
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config.settings import AgentEndpoint
from ..core.errors import ParticipantInvocationFailed, ParticipantTimeout
from ..observability.logging import get_logger
from ..observability.tracing import trace_span
from .base import Participant

logger = get_logger(__name__)


class HttpAgentInvoker:
    """
    Default AgentInvoker: one POST per participant call.

    Per-position `api_config` may override `model`, `base_url`, `api_key` and
    any generation option (e.g. `temperature`). Connect errors are retried at the
    transport level; everything else surfaces as a participant error so the
    action's own retry policy decides.
    """

    def __init__(self, endpoint: AgentEndpoint, http_client: httpx.AsyncClient | None = None):
        self.endpoint = endpoint
        self._http_client = http_client
        self._owned_client = http_client is None

    async def __aenter__(self):
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.endpoint.timeout),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owned_client and self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _get_headers(self, api_key: str | None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def build_payload(
        self, participant: Participant, prompt: str, api_config: dict[str, Any]
    ) -> dict[str, Any]:
        options = {
            k: v for k, v in api_config.items() if k not in {"model", "base_url", "api_key"}
        }
        return {
            "model": api_config.get("model", self.endpoint.model),
            "system": participant.position.system_prompt,
            "prompt": prompt,
            "stream": False,
            "options": options,
        }

    @trace_span("agent.invoke")
    async def invoke(
        self, participant: Participant, prompt: str, api_config: dict[str, Any]
    ) -> Any:
        if self._http_client is None:
            await self.__aenter__()

        base_url = str(api_config.get("base_url", self.endpoint.base_url)).rstrip("/")
        payload = self.build_payload(participant, prompt, api_config)
        headers = self._get_headers(api_config.get("api_key", self.endpoint.api_key))
        start = time.perf_counter()

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.endpoint.max_retries + 1),
                wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
                retry=retry_if_exception_type(httpx.ConnectError),
                reraise=True,
            ):
                with attempt:
                    response = await self._http_client.post(
                        f"{base_url}/api/generate", json=payload, headers=headers
                    )
                    response.raise_for_status()
        except httpx.TimeoutException as e:
            raise ParticipantTimeout(
                f"Model call timed out for {participant.name}", participant_id=participant.id
            ) from e
        except httpx.HTTPError as e:
            raise ParticipantInvocationFailed(
                f"Model call failed for {participant.name}: {e}", participant_id=participant.id
            ) from e

        logger.timed(
            "Model call complete",
            (time.perf_counter() - start) * 1000,
            participant_id=participant.id,
            model=payload["model"],
        )
        try:
            return response.json().get("response", "")
        except ValueError as e:
            raise ParticipantInvocationFailed(
                f"Malformed model response for {participant.name}", participant_id=participant.id
            ) from e
