"""
Outbound delivery of agent replies to WhatsApp.

Supports the Meta WhatsApp Cloud API and the Evolution API gateway. Delivery
failures are reported in the result, never raised: a failed send does not
fail the turn.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from config import settings
from observability import trace_logger


@dataclass
class DeliveryResult:
    """Outcome of one outbound send."""
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {"success": self.success, "message_id": self.message_id, "error": self.error}


class MessageSender(ABC):
    """Abstract outbound delivery collaborator."""

    @abstractmethod
    def send(
        self,
        organization_id: str,
        to: str,
        text: str,
        provider: str,
        provider_config: Dict[str, Any]
    ) -> DeliveryResult:
        """Send a text message to a lead."""
        pass


def _digits(identity: str) -> str:
    return re.sub(r"\D", "", identity or "")


class WhatsAppSender(MessageSender):
    """Sends text messages through the organization's configured provider."""

    def __init__(self, timeout: float = None, base_url: str = None, client: httpx.Client = None):
        self.timeout = timeout or settings.delivery_timeout_seconds
        self.base_url = (base_url or settings.whatsapp_api_base_url).rstrip("/")
        self.client = client or httpx.Client(timeout=self.timeout)

    def close(self) -> None:
        self.client.close()

    def send(
        self,
        organization_id: str,
        to: str,
        text: str,
        provider: str,
        provider_config: Dict[str, Any]
    ) -> DeliveryResult:
        senders = {
            "whatsapp_cloud_api": self._send_cloud_api,
            "evolution_api": self._send_evolution,
        }

        handler = senders.get(provider)
        if not handler:
            result = DeliveryResult(success=False, error=f"Unknown messaging provider: {provider}")
        else:
            try:
                result = handler(to, text, provider_config or {})
            except httpx.HTTPStatusError as e:
                result = DeliveryResult(
                    success=False,
                    error=f"HTTP {e.response.status_code}: {e.response.text[:200]}"
                )
            except (httpx.HTTPError, ValueError, KeyError) as e:
                result = DeliveryResult(success=False, error=f"Delivery failed: {e}")

        trace_logger.delivery_result(
            organization_id=organization_id,
            to=to,
            success=result.success,
            message_id=result.message_id,
            error=result.error
        )
        return result

    def _send_cloud_api(self, to: str, text: str, config: Dict[str, Any]) -> DeliveryResult:
        phone_number_id = config.get("phone_number_id")
        access_token = config.get("access_token")
        if not phone_number_id or not access_token:
            return DeliveryResult(success=False, error="Cloud API credentials not configured")

        response = self.client.post(
            f"{self.base_url}/{phone_number_id}/messages",
            json={
                "messaging_product": "whatsapp",
                "to": _digits(to),
                "type": "text",
                "text": {"body": text},
            },
            headers={"Authorization": f"Bearer {access_token}"},
        )
        response.raise_for_status()
        data = response.json()
        messages = data.get("messages") or [{}]
        return DeliveryResult(success=True, message_id=messages[0].get("id"))

    def _send_evolution(self, to: str, text: str, config: Dict[str, Any]) -> DeliveryResult:
        api_url = config.get("api_url")
        instance_name = config.get("instance_name")
        api_key = config.get("api_key")
        if not api_url or not instance_name or not api_key:
            return DeliveryResult(success=False, error="Evolution API credentials not configured")

        response = self.client.post(
            f"{api_url.rstrip('/')}/message/sendText/{instance_name}",
            json={"number": _digits(to), "text": text},
            headers={"apikey": api_key},
        )
        response.raise_for_status()
        data = response.json()
        return DeliveryResult(success=True, message_id=(data.get("key") or {}).get("id"))
