"""Relay of analysis jobs to the external automation webhook."""

from datetime import datetime, timezone
from typing import Any, Optional
import logging

import httpx

from core.exceptions import ConfigurationError, WebhookRelayError
from core.integrations.openai_files import Attachment

logger = logging.getLogger(__name__)

PAYLOAD_SOURCE = "enigma_radar_api"
PAYLOAD_VERSION = "1.0.0"


def build_job_payload(
    job_id: str,
    user_id: str,
    user_email: Optional[str],
    input_text: str,
    attachments: Optional[list[Attachment]] = None,
    callback_url: Optional[str] = None,
) -> dict[str, Any]:
    """Payload the automation expects; it writes the result back under ``job_id``."""
    timestamp = datetime.now(timezone.utc).isoformat()
    payload = {
        "job_id": job_id,
        "user_id": user_id,
        "user_email": user_email,
        "input_text": input_text,
        "attachments": [
            {
                "file_name": attachment.name,
                "file_type": attachment.content_type,
                "file_size": attachment.size,
                "data": attachment.base64_data,
            }
            for attachment in attachments or []
        ],
        "status": "pending",
        "created_at": timestamp,
        "updated_at": timestamp,
        "source": PAYLOAD_SOURCE,
        "version": PAYLOAD_VERSION,
    }
    if callback_url:
        payload["callback_url"] = callback_url
    return payload


class WebhookRelay:
    """Posts job payloads to the automation webhook."""

    def __init__(self, http_client: httpx.AsyncClient, webhook_url: Optional[str], timeout: float = 30.0):
        self.http_client = http_client
        self.webhook_url = webhook_url
        self.timeout = timeout

    async def send(self, payload: dict[str, Any]) -> None:
        if not self.webhook_url:
            raise ConfigurationError(
                "Automation webhook URL not configured",
                remediation="Set ANALYSIS_WEBHOOK_URL (or MAKE_WEBHOOK_URL), or use INTEGRATION_MODE=direct.",
            )

        try:
            response = await self.http_client.post(self.webhook_url, json=payload, timeout=self.timeout)
        except httpx.HTTPError as exc:
            raise WebhookRelayError(f"Webhook request failed: {exc}") from exc

        if response.is_error:
            raise WebhookRelayError(
                f"Webhook request failed: {response.status_code} {response.reason_phrase}",
                details={"status_code": response.status_code},
            )
        logger.info(f"Job {payload.get('job_id')} relayed to automation webhook")
