"""
tally.services.delivery — Report Delivery Channels
===================================================

Outbound delivery of a rendered report to one recipient at a time.

Channels:
    EmailChannel        Resend HTTP API (``RESEND_API_KEY``, ``EMAIL_FROM``)
    ChatWebhookChannel  Slack-compatible incoming webhook

Both talk HTTP through a synchronous :class:`httpx.Client` with an
explicit timeout.  A channel's ``send`` reports failure through the
returned :class:`DeliveryOutcome` or by raising; :func:`deliver_with_retry`
treats both the same way, retries with exponential backoff, and never
raises.

Delivery is best-effort: a message may arrive twice if the provider
accepted it but the response was lost.
"""

from __future__ import annotations

import base64
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import httpx

from tally.constants import (
    DELIVERY_BASE_DELAY,
    DELIVERY_MAX_ATTEMPTS,
    DELIVERY_TIMEOUT_SECONDS,
    PERIOD_LABELS,
)

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass(frozen=True, slots=True)
class DeliveryMessage:
    recipient: str
    subject: str
    text: str
    html: str | None = None
    attachment: bytes | None = None
    attachment_filename: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryOutcome:
    success: bool
    provider_message_id: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class DeliveryAttempt:
    """Final result of a retried delivery."""

    recipient: str
    channel: str
    success: bool
    attempts: int
    provider_message_id: str | None = None
    error: str | None = None


class DeliveryChannel(Protocol):
    name: str

    def send(self, message: DeliveryMessage) -> DeliveryOutcome: ...


# ---------------------------------------------------------------------------
# Message content
# ---------------------------------------------------------------------------
def report_subject(workspace_name: str, period_type: str, period_label: str) -> str:
    return f"[Tally] {workspace_name} - {period_label} {PERIOD_LABELS.get(period_type, '')} 리포트"


def report_text(
    workspace_name: str,
    period_type: str,
    period_label: str,
    *,
    recipient_name: str | None = None,
    preview_url: str | None = None,
) -> str:
    greeting = f"{recipient_name}님," if recipient_name else "안녕하세요,"
    lines = [
        greeting,
        "",
        f"{workspace_name}의 {period_label} {PERIOD_LABELS.get(period_type, '')} 리포트가 준비되었습니다.",
        "첨부된 파일에서 상세한 분석 결과를 확인하실 수 있습니다.",
    ]
    if preview_url:
        lines += ["", f"웹에서 보기: {preview_url}"]
    lines += ["", "이 메일은 자동 발송되었습니다."]
    return "\n".join(lines)


def report_filename(workspace_name: str, period_label: str, extension: str = "pdf") -> str:
    return f"{workspace_name}_{period_label}_report.{extension}".replace("/", "-")


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------
class EmailChannel:
    """Send email through the Resend HTTP API."""

    name = "email"

    def __init__(
        self,
        api_key: str,
        sender: str,
        *,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
        api_url: str = RESEND_API_URL,
    ) -> None:
        self.sender = sender
        self.api_url = api_url
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))
        self._headers = {"Authorization": f"Bearer {api_key}"}

    @classmethod
    def from_env(cls, **kwargs) -> EmailChannel:
        """Build from ``RESEND_API_KEY`` / ``EMAIL_FROM``.

        Raises
        ------
        RuntimeError
            If either variable is unset.
        """
        api_key = os.getenv("RESEND_API_KEY")
        sender = os.getenv("EMAIL_FROM")
        if not api_key or not sender:
            raise RuntimeError(
                "RESEND_API_KEY and EMAIL_FROM must be set to send report email.  "
                "Copy .env.example → .env and fill them in."
            )
        return cls(api_key, sender, **kwargs)

    def send(self, message: DeliveryMessage) -> DeliveryOutcome:
        body: dict = {
            "from": self.sender,
            "to": [message.recipient],
            "subject": message.subject,
            "text": message.text,
        }
        if message.html:
            body["html"] = message.html
        if message.attachment is not None:
            body["attachments"] = [{
                "filename": message.attachment_filename or "report.pdf",
                "content": base64.b64encode(message.attachment).decode("ascii"),
            }]

        response = self._client.post(self.api_url, json=body, headers=self._headers)
        if response.is_error:
            return DeliveryOutcome(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
            )
        return DeliveryOutcome(success=True, provider_message_id=response.json().get("id"))

    def close(self) -> None:
        self._client.close()


class ChatWebhookChannel:
    """Post a short notice to a Slack-compatible incoming webhook.

    The webhook URL is the recipient; chat posts carry no attachment.
    """

    name = "chat"

    def __init__(
        self,
        *,
        timeout: float = DELIVERY_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def send(self, message: DeliveryMessage) -> DeliveryOutcome:
        payload = {"text": f"*{message.subject}*\n{message.text}"}
        response = self._client.post(message.recipient, json=payload)
        if response.is_error:
            return DeliveryOutcome(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
            )
        return DeliveryOutcome(success=True)

    def close(self) -> None:
        self._client.close()


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------
def deliver_with_retry(
    channel: DeliveryChannel,
    message: DeliveryMessage,
    *,
    max_attempts: int = DELIVERY_MAX_ATTEMPTS,
    base_delay: float = DELIVERY_BASE_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> DeliveryAttempt:
    """Send *message* with up to *max_attempts* tries.

    Waits ``base_delay * 2 ** (attempt - 1)`` seconds between tries.
    Exceptions and unsuccessful outcomes both count as a failed attempt.
    """
    last_error: str | None = None
    for attempt in range(1, max_attempts + 1):
        try:
            outcome = channel.send(message)
        except Exception as exc:
            outcome = DeliveryOutcome(success=False, error=f"{type(exc).__name__}: {exc}")

        if outcome.success:
            if attempt > 1:
                logger.info(
                    "%s delivery to %s succeeded on attempt %d",
                    channel.name, message.recipient, attempt,
                )
            return DeliveryAttempt(
                recipient=message.recipient,
                channel=channel.name,
                success=True,
                attempts=attempt,
                provider_message_id=outcome.provider_message_id,
            )

        last_error = outcome.error or "unknown error"
        logger.warning(
            "%s delivery to %s failed (attempt %d/%d): %s",
            channel.name, message.recipient, attempt, max_attempts, last_error,
        )
        if attempt < max_attempts:
            sleep(base_delay * 2 ** (attempt - 1))

    return DeliveryAttempt(
        recipient=message.recipient,
        channel=channel.name,
        success=False,
        attempts=max_attempts,
        error=last_error,
    )
