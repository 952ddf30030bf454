"""
ElevenLabs conversational AI client.

Obtains short-lived signed WebSocket URLs so browsers can open a realtime
conversation without ever seeing the server's API key.
"""

import logging
from typing import Optional

import httpx

from ..config import settings

logger = logging.getLogger(__name__)

SIGNED_URL_PATH = "/v1/convai/conversation/get-signed-url"


class ElevenLabsError(Exception):
    """Raised when the ElevenLabs API cannot produce a signed URL."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ElevenLabsConfigError(ElevenLabsError):
    """Raised when API key or agent id are not configured."""
    pass


class ElevenLabsClient:
    """Minimal async client for the ElevenLabs conversational AI API."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        agent_id: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the client.

        Args:
            api_key: ``xi-api-key`` credential, defaults to settings
            agent_id: Conversational agent id, defaults to settings
            base_url: API base URL, defaults to settings
            timeout: Request timeout in seconds, defaults to settings
            transport: Optional httpx transport (tests)
        """
        self.api_key = api_key if api_key is not None else settings.elevenlabs_api_key
        self.agent_id = agent_id if agent_id is not None else settings.elevenlabs_agent_id
        self.base_url = (base_url or settings.elevenlabs_api_base).rstrip("/")
        self.timeout = timeout or settings.http_timeout_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.agent_id)

    async def get_signed_url(self, agent_id: Optional[str] = None) -> str:
        """
        Request a signed conversation URL for the agent.

        Args:
            agent_id: Override of the configured agent id

        Returns:
            Signed ``wss://`` URL

        Raises:
            ElevenLabsConfigError: If credentials are missing
            ElevenLabsError: On timeout, HTTP error or malformed response
        """
        agent_id = agent_id or self.agent_id
        if not self.api_key:
            raise ElevenLabsConfigError("ElevenLabs API key is not configured")
        if not agent_id:
            raise ElevenLabsConfigError("ElevenLabs agent id is not configured")

        url = f"{self.base_url}{SIGNED_URL_PATH}"
        headers = {"xi-api-key": self.api_key, "accept": "application/json"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                logger.info(f"Requesting ElevenLabs signed URL for agent {agent_id}")
                response = await client.get(url, params={"agent_id": agent_id}, headers=headers)
                response.raise_for_status()
                payload = response.json()

        except httpx.TimeoutException as e:
            logger.error(f"Timeout requesting ElevenLabs signed URL: {e}")
            raise ElevenLabsError(f"Timeout requesting signed URL: {e}")
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            if status_code == 401:
                logger.error("ElevenLabs rejected the API key (401)")
            else:
                logger.error(f"HTTP error requesting ElevenLabs signed URL: {status_code}")
            raise ElevenLabsError(f"ElevenLabs returned HTTP {status_code}", status_code=status_code)
        except httpx.HTTPError as e:
            logger.error(f"Transport error requesting ElevenLabs signed URL: {e}")
            raise ElevenLabsError(f"Failed to reach ElevenLabs: {e}")
        except ValueError as e:
            logger.error(f"ElevenLabs returned a non-JSON body: {e}")
            raise ElevenLabsError("ElevenLabs returned a malformed response")

        signed_url = payload.get("signed_url") if isinstance(payload, dict) else None
        if not signed_url:
            logger.error("ElevenLabs response missing signed_url")
            raise ElevenLabsError("ElevenLabs response missing signed_url")

        logger.info("Obtained ElevenLabs signed URL")
        return signed_url
