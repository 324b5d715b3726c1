from typing import Optional

import httpx

from wabot.logging_config import get_logger
from wabot.services.result import Result

logger = get_logger("whatsapp_service")


class WhatsAppClient:
    """WhatsApp Cloud API sender. A send is attempted exactly once."""

    def __init__(self, access_token: str, api_base: str = "https://graph.facebook.com/v19.0", timeout_seconds: float = 10.0):
        self.access_token = access_token
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds

    def send_text_message(self, phone_number_id: str, to: str, text: str) -> Result[Optional[str]]:
        """Send a text message; the result value is the provider message id."""
        if not self.access_token:
            logger.error("WhatsApp access token is missing (WHATSAPP_ACCESS_TOKEN env var not set)")
            return Result.failure("WhatsApp access token is missing", "missing_token")
        if not phone_number_id or not to or not text:
            logger.warning(f"send_text_message: missing phone_number_id={phone_number_id} or recipient or text")
            return Result.failure("Missing phone_number_id, recipient or text", "invalid_request")

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"preview_url": False, "body": text},
        }
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    f"{self.api_base}/{phone_number_id}/messages",
                    headers={
                        "Authorization": f"Bearer {self.access_token}",
                        "Content-Type": "application/json",
                    },
                    json=payload,
                )
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp message: {e}")
            return Result.failure(str(e), "upstream_unavailable")

        logger.info(f"WhatsApp send response: status={response.status_code}, to={to}, body={response.text[:200]}")
        if response.status_code != 200:
            return Result.failure(f"WhatsApp API error: {response.status_code}", "send_failed")

        try:
            messages = response.json().get("messages") or []
            provider_id = messages[0].get("id") if messages else None
        except (ValueError, AttributeError, TypeError) as e:
            # Accepted by the API; only the id is unreadable
            logger.warning(f"Unreadable WhatsApp send response: {e}")
            provider_id = None
        return Result.success(provider_id)
