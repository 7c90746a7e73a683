"""Inbound WhatsApp webhooks: normalization, verification and ingestion."""

from webhooks.normalize import normalize, PROVIDERS, MEDIA_PLACEHOLDER
from webhooks.verify import verify_signature, verify_subscription, cloud_api_signature
from webhooks.ingestion import WebhookIngestion, IngestionResult

__all__ = [
    "normalize", "PROVIDERS", "MEDIA_PLACEHOLDER",
    "verify_signature", "verify_subscription", "cloud_api_signature",
    "WebhookIngestion", "IngestionResult"
]
