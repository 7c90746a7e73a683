"""
Webhook payload normalization.

Both WhatsApp providers are reduced to one NormalizedMessage. Payloads that
carry no lead message (delivery receipts, reactions, group chats, status
broadcasts) normalize to None and are acknowledged without processing.
"""

from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from models import NormalizedMessage
from models.errors import InvalidPayload


MEDIA_PLACEHOLDER = "[mídia]"

CLOUD_MEDIA_TYPES = ("image", "audio", "video", "document", "sticker")
EVOLUTION_CAPTIONED = ("imageMessage", "videoMessage", "documentMessage")
EVOLUTION_MEDIA = ("imageMessage", "audioMessage", "videoMessage", "documentMessage", "stickerMessage")

# Webhook path name -> AgentConfig.whatsapp_provider
PROVIDERS = {
    "cloud_api": "whatsapp_cloud_api",
    "evolution": "evolution_api",
}


def _first(items: Any) -> Any:
    if isinstance(items, list) and items:
        return items[0]
    return None


def _dict(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _timestamp(value: Any) -> datetime:
    if value in (None, ""):
        return datetime.now(timezone.utc)
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        raise InvalidPayload(f"Invalid message timestamp: {value!r}")


def _build(**fields) -> NormalizedMessage:
    try:
        return NormalizedMessage(**fields)
    except ValidationError as e:
        raise InvalidPayload(f"Invalid message fields: {e.errors()[0].get('msg')}")


def normalize_cloud_api(body: Dict[str, Any]) -> Optional[NormalizedMessage]:
    """Normalize a Meta WhatsApp Cloud API webhook body."""
    entry = _dict(_first(body.get("entry")))
    change = _dict(_first(entry.get("changes")))
    value = _dict(change.get("value"))
    msg = _first(value.get("messages"))
    if msg is None:
        return None
    if not isinstance(msg, dict):
        raise InvalidPayload("Cloud API message is not an object")

    # Status updates and reactions carry no lead text
    msg_type = msg.get("type")
    if not msg_type or msg_type == "reaction":
        return None

    sender, message_id = msg.get("from"), msg.get("id")
    if not sender or not message_id:
        raise InvalidPayload("Cloud API message missing 'from' or 'id'")

    media = next((_dict(msg.get(kind)) for kind in CLOUD_MEDIA_TYPES if msg.get(kind)), {})
    text = _dict(msg.get("text")).get("body") or media.get("caption") or msg.get("caption")
    contact = _dict(_first(value.get("contacts")))

    return _build(
        from_=str(sender),
        push_name=_dict(contact.get("profile")).get("name"),
        message=text or MEDIA_PLACEHOLDER,
        type=str(msg_type),
        media_url=media.get("id"),
        message_id=str(message_id),
        timestamp=_timestamp(msg.get("timestamp")),
    )


def normalize_evolution(body: Dict[str, Any]) -> Optional[NormalizedMessage]:
    """Normalize an Evolution API (messages.upsert) webhook body."""
    data = _dict(body.get("data"))
    content = data.get("message")
    if not content:
        return None
    if not isinstance(content, dict):
        raise InvalidPayload("Evolution message is not an object")

    key = _dict(data.get("key"))
    remote_jid = key.get("remoteJid") or ""
    if remote_jid.endswith("@g.us") or remote_jid == "status@broadcast":
        return None
    # Echo of a message the instance itself sent
    if key.get("fromMe"):
        return None

    sender = remote_jid.replace("@s.whatsapp.net", "")
    message_id = key.get("id")
    if not sender or not message_id:
        raise InvalidPayload("Evolution message missing 'remoteJid' or 'id'")

    text = content.get("conversation") or _dict(content.get("extendedTextMessage")).get("text")
    if not text:
        text = next(
            (_dict(content.get(kind)).get("caption") for kind in EVOLUTION_CAPTIONED
             if _dict(content.get(kind)).get("caption")),
            None
        )
    media_url = next(
        (_dict(content.get(kind)).get("url") for kind in EVOLUTION_MEDIA
         if _dict(content.get(kind)).get("url")),
        None
    )

    return _build(
        from_=sender,
        push_name=data.get("pushName"),
        message=text or MEDIA_PLACEHOLDER,
        type=str(data.get("messageType") or "text"),
        media_url=media_url,
        message_id=str(message_id),
        timestamp=_timestamp(data.get("messageTimestamp")),
    )


NORMALIZERS: Dict[str, Callable[[Dict[str, Any]], Optional[NormalizedMessage]]] = {
    "cloud_api": normalize_cloud_api,
    "evolution": normalize_evolution,
}


def normalize(provider: str, body: Any) -> Optional[NormalizedMessage]:
    """
    Reduce a provider webhook body to a NormalizedMessage.

    Returns None for payloads to acknowledge and ignore.

    Raises:
        InvalidPayload: unknown provider, non-object body or missing
            required fields
    """
    normalizer = NORMALIZERS.get(provider)
    if normalizer is None:
        raise InvalidPayload(f"Unknown provider: {provider}")
    if not isinstance(body, dict):
        raise InvalidPayload("Webhook body must be a JSON object")
    return normalizer(body)
