"""
sms_gateway.py — SMS delivery via a provider HTTP API.

Delivery mechanism:
    • Primary: HTTP POST to the configured SMS provider endpoint
    • Payload: {"to": E.164 phone, "from": sender id, "message": text}
    • Success = any 2xx; anything else is a DependencyError

═══════════════════════════════════════════════════════════════════════════
SMS GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    Core  →  SmsGateway.send()  →  Provider API  →  Carrier  →  Handset

    Providers:
        - simulation: log the message and keep it in memory (dev / tests)
        - http:       POST to SMS_GATEWAY_URL with a bearer API key

Sends are synchronous and never retried here. Panic alerts are longer
than one 160-char GSM segment; the provider concatenates segments.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from backend.carenest.core.config import Settings
from backend.carenest.core.errors import DependencyError

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160      # GSM 7-bit single segment


def _segments(text: str) -> int:
    return 1 + (len(text) - 1) // SMS_MAX_GSM7 if text else 0


@dataclass
class SentMessage:
    phone: str
    text: str
    sent_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SmsGateway(ABC):
    """Messaging primitive: ``send(phone, text)`` or raise DependencyError."""

    provider = "abstract"

    @abstractmethod
    def send(self, phone: str, text: str) -> None:
        ...

    def close(self) -> None:
        pass


class SimulatedSmsGateway(SmsGateway):
    """Logs every message and keeps it in ``sent``."""

    provider = "simulation"

    def __init__(self) -> None:
        self.sent: List[SentMessage] = []
        self._lock = threading.Lock()

    def send(self, phone: str, text: str) -> None:
        logger.info(
            "[SMS] → %s: %d chars, %d segment(s) → '%s'",
            phone, len(text), _segments(text),
            text[:80].replace("\n", " ") + ("..." if len(text) > 80 else ""),
        )
        with self._lock:
            self.sent.append(SentMessage(phone=phone, text=text))

    def messages_to(self, phone: str) -> List[str]:
        with self._lock:
            return [m.text for m in self.sent if m.phone == phone]


class HttpSmsGateway(SmsGateway):
    """Provider-agnostic JSON-over-HTTP SMS gateway."""

    provider = "http"

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        sender_id: str = "CareNest",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.sender_id = sender_id
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = client or httpx.Client(timeout=timeout_seconds, headers=headers)

    def send(self, phone: str, text: str) -> None:
        try:
            response = self._client.post(
                self.url,
                json={"to": phone, "from": self.sender_id, "message": text},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise DependencyError(
                "sms_gateway",
                f"HTTP {exc.response.status_code}",
                phone=phone,
            ) from exc
        except httpx.HTTPError as exc:
            raise DependencyError("sms_gateway", str(exc), phone=phone) from exc

        logger.info(
            "[SMS/http] → %s: %d chars, %d segment(s)",
            phone, len(text), _segments(text),
        )

    def close(self) -> None:
        self._client.close()


def build_sms_gateway(settings: Settings) -> SmsGateway:
    """Instantiate the gateway selected by ``SMS_PROVIDER``."""
    provider = settings.SMS_PROVIDER.lower()
    if provider == "simulation":
        return SimulatedSmsGateway()
    if provider == "http":
        if not settings.SMS_GATEWAY_URL:
            raise ValueError("SMS_GATEWAY_URL is required when SMS_PROVIDER=http")
        return HttpSmsGateway(
            settings.SMS_GATEWAY_URL,
            api_key=settings.SMS_API_KEY,
            sender_id=settings.SMS_SENDER_ID,
            timeout_seconds=settings.SMS_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unknown SMS provider: {settings.SMS_PROVIDER}")
