import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from app.logging_config import get_logger

logger = get_logger("channel_service")

CHATFLOW_API_URL = os.environ.get("CHATFLOW_API_URL", "https://app.chatflow.kz/api/v1/send-text")
CHATFLOW_TOKEN = os.environ.get("CHATFLOW_TOKEN")
CHATFLOW_INSTANCE_ID = os.environ.get("CHATFLOW_INSTANCE_ID")
CHATFLOW_TIMEOUT_SECONDS = float(os.environ.get("CHATFLOW_TIMEOUT_SECONDS", "30"))

_sender: Optional["ChannelSender"] = None


@dataclass(frozen=True)
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class ChannelSender(ABC):
    @abstractmethod
    def send_text(
        self,
        recipient: str,
        text: str,
        provider: str = "whatsapp",
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        """Send ``text``; any non-success is reported, never raised."""


def _extract_message_id(payload) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("message_id", "messageId", "id", "msg_id"):
        value = payload.get(key)
        if value:
            return str(value)
    nested = payload.get("key") or payload.get("data")
    if isinstance(nested, dict):
        return _extract_message_id(nested)
    return None


class ChatFlowSender(ChannelSender):
    """WhatsApp text delivery through the ChatFlow HTTP API."""

    def __init__(
        self,
        token: Optional[str] = None,
        instance_id: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.token = token or CHATFLOW_TOKEN
        self.instance_id = instance_id or CHATFLOW_INSTANCE_ID
        self.api_url = api_url or CHATFLOW_API_URL
        self.timeout_seconds = timeout_seconds or CHATFLOW_TIMEOUT_SECONDS

    def send_text(
        self,
        recipient: str,
        text: str,
        provider: str = "whatsapp",
        idempotency_key: Optional[str] = None,
    ) -> SendResult:
        if not self.token:
            logger.error("ChatFlow token is missing (CHATFLOW_TOKEN env var not set)")
            return SendResult(success=False, error="missing_chatflow_token")
        if not self.instance_id or not recipient or not text:
            logger.warning(f"send_text: missing instance_id={self.instance_id}, recipient or text")
            return SendResult(success=False, error="missing_send_parameters")
        if provider != "whatsapp":
            return SendResult(success=False, error=f"unsupported_provider:{provider}")

        params = {
            "token": self.token,
            "instance_id": self.instance_id,
            "jid": recipient,
            "msg": text,
        }
        if idempotency_key:
            params["msg_id"] = idempotency_key

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(self.api_url, params=params)
        except httpx.HTTPError as e:
            logger.error(f"Error sending WhatsApp message: {e}")
            return SendResult(success=False, error=str(e))

        logger.info(f"ChatFlow response: status={response.status_code}, jid={recipient}, body={response.text[:200]}")
        if response.status_code != 200:
            return SendResult(success=False, error=f"http_{response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            payload = None
        return SendResult(success=True, provider_message_id=_extract_message_id(payload) or idempotency_key)


def get_channel_sender() -> ChannelSender:
    global _sender
    if _sender is None:
        _sender = ChatFlowSender()
    return _sender
