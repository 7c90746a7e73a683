"""
Webhook authenticity checks.
"""

import hashlib
import hmac
from typing import Any, Dict, Mapping, Optional

from config import Settings, settings as default_settings
from models import AgentConfig
from models.errors import Unauthorized


SIGNATURE_HEADER = "x-hub-signature-256"


def _lower(headers: Mapping[str, str]) -> Dict[str, str]:
    return {str(k).lower(): v for k, v in (headers or {}).items()}


def _equal(expected: Optional[str], given: Optional[str]) -> bool:
    if not expected or not given:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), given.encode("utf-8"))


def cloud_api_signature(raw_body: bytes, app_secret: str) -> str:
    """X-Hub-Signature-256 value Meta computes for a body."""
    digest = hmac.new(app_secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(
    provider: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    body: Any,
    agent_config: AgentConfig,
    settings: Settings = None
) -> None:
    """
    Check that a webhook delivery came from the configured provider.

    Cloud API deliveries carry an HMAC-SHA256 of the raw body keyed with the
    app secret; Evolution deliveries carry the instance API key.

    Raises:
        Unauthorized: signature or key missing or wrong
    """
    settings = settings or default_settings
    config = agent_config.whatsapp_config or {}
    headers = _lower(headers)

    if provider == "cloud_api":
        secret = config.get("app_secret") or settings.whatsapp_app_secret
        if not secret:
            raise Unauthorized("No app secret configured for signature verification")
        if not _equal(cloud_api_signature(raw_body, secret), headers.get(SIGNATURE_HEADER)):
            raise Unauthorized("Invalid X-Hub-Signature-256")
        return

    if provider == "evolution":
        given = headers.get("apikey")
        if not given and isinstance(body, dict):
            given = body.get("apikey")
        if not _equal(config.get("api_key"), given):
            raise Unauthorized("Invalid Evolution API key")
        return

    raise Unauthorized(f"Unknown provider: {provider}")


def verify_subscription(
    mode: Optional[str],
    token: Optional[str],
    challenge: Optional[str],
    agent_config: Optional[AgentConfig]
) -> Optional[str]:
    """
    Cloud API subscription handshake.

    Returns the challenge to echo back, or None when the request is not a
    valid subscription for this organization.
    """
    if mode != "subscribe" or not token or not challenge or agent_config is None:
        return None
    stored = (agent_config.whatsapp_config or {}).get("webhook_verify_token")
    if _equal(stored, token):
        return challenge
    return None
