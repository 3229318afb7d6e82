"""Email gateway boundary.

The gateway is the only place where a delivery failure is classified as
retryable or not.  Every implementation returns a :class:`SendResult`
instead of raising for delivery problems:

- ``OK``               the provider accepted the message
- ``TRANSIENT_ERROR``  timeout, connection failure, 408/429, 5xx
- ``PERMANENT_ERROR``  invalid recipient or any other 4xx

:class:`HttpEmailGateway` talks to a Postmark-style ``POST /email`` API
using ``httpx`` (synchronous, since workers are threads).
:class:`StubEmailGateway` accepts everything and is used when no
``EMAIL_BASE_URL`` is configured.

Safety: recipient addresses are never logged unmasked.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import httpx

from newsletter.core.logging import mask_email
from newsletter.normalization.email_address import InvalidEmailAddress, SubscriberEmail

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class SendOutcome(str, Enum):
    OK = "ok"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


@dataclass(frozen=True, slots=True)
class SendResult:
    outcome: SendOutcome
    detail: str | None = None

    @classmethod
    def ok(cls) -> SendResult:
        return cls(SendOutcome.OK)

    @classmethod
    def transient(cls, detail: str) -> SendResult:
        return cls(SendOutcome.TRANSIENT_ERROR, detail)

    @classmethod
    def permanent(cls, detail: str) -> SendResult:
        return cls(SendOutcome.PERMANENT_ERROR, detail)


class EmailGateway(Protocol):
    def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> SendResult:
        ...


def classify_status(status_code: int) -> SendOutcome:
    """Map an HTTP status from the provider to a :class:`SendOutcome`."""
    if 200 <= status_code < 300:
        return SendOutcome.OK
    if status_code >= 500 or status_code in _TRANSIENT_STATUS_CODES:
        return SendOutcome.TRANSIENT_ERROR
    return SendOutcome.PERMANENT_ERROR


class HttpEmailGateway:
    """Synchronous client for a Postmark-compatible send-email API.

    Parameters
    ----------
    base_url:
        Provider base URL; requests go to ``{base_url}/email``.
    sender:
        ``From`` address.  Validated once at construction.
    auth_token:
        Sent as ``X-Postmark-Server-Token``.
    timeout_s:
        Per-request timeout.  A timeout is a transient failure.
    client:
        Optional pre-built ``httpx.Client`` (tests inject a mock transport).
    """

    def __init__(
        self,
        *,
        base_url: str,
        sender: str,
        auth_token: str,
        timeout_s: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.sender = SubscriberEmail.parse(sender)
        self._auth_token = auth_token
        self._client = client or httpx.Client(timeout=timeout_s)

    def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> SendResult:
        try:
            to = SubscriberEmail.parse(recipient)
        except InvalidEmailAddress as exc:
            return SendResult.permanent(f"invalid recipient: {exc}")

        payload = {
            "From": str(self.sender),
            "To": str(to),
            "Subject": subject,
            "HtmlBody": html_body,
            "TextBody": text_body,
        }
        try:
            response = self._client.post(
                f"{self.base_url}/email",
                json=payload,
                headers={"X-Postmark-Server-Token": self._auth_token},
            )
        except httpx.TimeoutException as exc:
            return SendResult.transient(f"timeout: {exc}")
        except httpx.TransportError as exc:
            return SendResult.transient(f"transport error: {exc}")

        outcome = classify_status(response.status_code)
        if outcome is SendOutcome.OK:
            return SendResult.ok()

        detail = f"HTTP {response.status_code}: {response.text[:500]}"
        logger.warning(
            "Email provider rejected message for %s (%s)", mask_email(str(to)), outcome.value
        )
        return SendResult(outcome, detail)

    def close(self) -> None:
        self._client.close()


class StubEmailGateway:
    """Accepts every message without sending it.  For local development.

    Only the most recent *max_recorded* messages are kept in ``sent``.
    """

    def __init__(self, max_recorded: int = 1000) -> None:
        self.sent: deque[tuple[str, str]] = deque(maxlen=max_recorded)

    def send(self, recipient: str, subject: str, html_body: str, text_body: str) -> SendResult:
        try:
            to = SubscriberEmail.parse(recipient)
        except InvalidEmailAddress as exc:
            return SendResult.permanent(f"invalid recipient: {exc}")
        self.sent.append((str(to), subject))
        logger.info("Stub gateway accepted %r for %s", subject, mask_email(str(to)))
        return SendResult.ok()


def build_email_gateway(settings) -> EmailGateway:
    """Return the HTTP gateway when ``EMAIL_BASE_URL`` is set, else the stub."""
    if not settings.email_base_url:
        logger.warning("EMAIL_BASE_URL is not set; using the stub email gateway")
        return StubEmailGateway()
    return HttpEmailGateway(
        base_url=settings.email_base_url,
        sender=settings.email_sender,
        auth_token=settings.email_auth_token,
        timeout_s=settings.email_timeout_ms / 1000,
    )
