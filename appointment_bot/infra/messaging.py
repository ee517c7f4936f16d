"""
HTTP client for the Z-API WhatsApp gateway.

Z-API exposes, per instance:
- POST /instances/{instance_id}/token/{token}/send-text  {phone, message}
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from appointment_bot.config import get_settings
from appointment_bot.core.phone import mask_phone

logger = logging.getLogger(__name__)


class MessagingError(Exception):
    """Raised when the gateway rejects or fails a send. Carries the provider payload."""

    def __init__(self, message: str, payload: Any = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.payload = payload
        self.status_code = status_code

    def detail(self) -> str:
        """Compact description for ledgers and logs."""
        parts = [str(self)]
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        if self.payload:
            parts.append(f"payload={self.payload}")
        return " ".join(parts)[:1000]


class MessagingConfigError(MessagingError):
    """Raised when gateway credentials are missing."""
    pass


@dataclass
class SendResult:
    """Result of a successful send."""

    message_id: Optional[str] = None
    raw: Optional[dict] = None

    @classmethod
    def from_dict(cls, data: Any) -> "SendResult":
        """Create from gateway response body."""
        if not isinstance(data, dict):
            return cls(raw=None)
        return cls(
            message_id=data.get("messageId") or data.get("zaapId") or data.get("id"),
            raw=data,
        )


class ZApiGateway:
    """Outbound WhatsApp text messages through Z-API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        instance_id: Optional[str] = None,
        token: Optional[str] = None,
        client_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            base_url: Z-API base URL (defaults to settings)
            instance_id: Instance identifier
            token: Instance token
            client_token: Account security token sent as Client-Token header
            timeout: Request timeout in seconds
            transport: Custom transport (for testing)
        """
        settings = get_settings()
        self.base_url = (base_url or settings.zapi_base_url).rstrip("/")
        self.instance_id = instance_id if instance_id is not None else settings.zapi_instance_id
        self.token = token if token is not None else settings.zapi_token
        self.client_token = client_token if client_token is not None else settings.zapi_client_token
        self.timeout = timeout or settings.messaging_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def check_config(self) -> None:
        """Raise MessagingConfigError when credentials are missing."""
        if not (self.instance_id and self.token):
            raise MessagingConfigError("Missing Z-API credentials (ZAPI_INSTANCE_ID, ZAPI_TOKEN)")

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.client_token:
                headers["Client-Token"] = self.client_token
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_text(self, phone: str, message: str) -> SendResult:
        """Send a text message.

        Args:
            phone: Destination, digits with country code
            message: Message body

        Returns:
            SendResult with the provider message id when reported

        Raises:
            MessagingConfigError: If credentials are missing
            MessagingError: On transport errors or non-2xx responses
        """
        self.check_config()
        client = await self._get_client()
        path = f"/instances/{self.instance_id}/token/{self.token}/send-text"

        try:
            response = await client.post(path, json={"phone": phone, "message": message})
        except httpx.HTTPError as e:
            logger.error(f"Z-API send-text to {mask_phone(phone)} failed: {e}")
            raise MessagingError(f"send-text failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = response.text

        if response.is_error:
            logger.error(
                f"Z-API send-text to {mask_phone(phone)} rejected: "
                f"status={response.status_code} body={body}"
            )
            raise MessagingError("send-text rejected", payload=body, status_code=response.status_code)

        result = SendResult.from_dict(body)
        logger.info(f"Message sent to {mask_phone(phone)} id={result.message_id}")
        return result


# Singleton
_gateway: Optional[ZApiGateway] = None


def get_messaging_gateway() -> ZApiGateway:
    """Get singleton ZApiGateway."""
    global _gateway
    if _gateway is None:
        _gateway = ZApiGateway()
    return _gateway
