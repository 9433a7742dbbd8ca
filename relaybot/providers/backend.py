"""HTTP client for the backend agent API."""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from relaybot.agent.policy import strip_bold
from relaybot.errors import BackendError
from relaybot.utils.helpers import preview, short_id

DEFAULT_RESPONSE = "Response received"
_HEALTH_TIMEOUT = 5.0


class BackendClient:
    """Forward a turn to ``POST {api_url}/api/v1/agents/{agent_id}/xmtp``."""

    def __init__(
        self,
        api_url: str,
        default_agent_id: str,
        service_url: str = "",
        timeout: float = 120.0,
        chain_id: int = 8453,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.default_agent_id = default_agent_id
        self.service_url = service_url
        self.timeout = timeout
        self.chain_id = chain_id
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def process_message(
        self,
        message: str,
        sender_address: str,
        conversation_id: str,
        agent_id: str | None = None,
    ) -> str:
        """Return the backend's reply text with bold markers removed.

        Raises :class:`BackendError` on timeout, transport/HTTP errors, or an
        unsuccessful response body.
        """
        target = agent_id or self.default_agent_id
        url = f"{self.api_url}/api/v1/agents/{target}/xmtp"
        payload = {
            "message": message,
            "userAddress": sender_address,
            "ensName": "",
            "chainId": self.chain_id,
            "conversationId": conversation_id,
            "xmtpServiceUrl": self.service_url,
        }
        logger.info(
            f"Backend request: agent={target} sender={short_id(sender_address)} "
            f"conversation={short_id(conversation_id)} message={preview(message)!r}"
        )

        try:
            async with self._client(self.timeout) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
                data: Any = resp.json()
        except httpx.TimeoutException as exc:
            logger.error(f"Backend timed out after {self.timeout}s ({short_id(conversation_id)})")
            raise BackendError(f"backend timed out after {self.timeout}s") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(f"Backend HTTP error {exc.response.status_code} ({short_id(conversation_id)})")
            raise BackendError(f"backend returned HTTP {exc.response.status_code}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(f"Backend request failed ({short_id(conversation_id)}): {exc}")
            raise BackendError(str(exc)) from exc

        if not isinstance(data, dict) or not data.get("success"):
            error = data.get("error") if isinstance(data, dict) else None
            raise BackendError(error or "Backend returned unsuccessful response")

        text = (data.get("data") or {}).get("response") or DEFAULT_RESPONSE
        cleaned = strip_bold(text)
        logger.info(f"Backend response: agent={target} length={len(cleaned)}")
        return cleaned

    async def health_check(self) -> bool:
        url = f"{self.api_url}/health"
        try:
            async with self._client(_HEALTH_TIMEOUT) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            logger.error(f"Backend health check failed at {url}: {exc}")
            return False
        if resp.status_code != 200:
            logger.error(f"Backend health check failed at {url}: HTTP {resp.status_code}")
            return False
        logger.info(f"Backend health check passed: {resp.status_code}")
        return True
