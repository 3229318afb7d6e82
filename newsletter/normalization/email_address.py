"""Subscriber email address parsing.

Addresses are stripped and syntax-checked with ``email-validator`` (via
pydantic's ``EmailStr``).  No DNS lookups are performed: deliverability is
the gateway's call, and a rejected recipient comes back as a permanent
failure from the gateway.

Safety rule: raw addresses are never logged.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from pydantic import EmailStr, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)

_EMAIL_ADAPTER = TypeAdapter(EmailStr)


class InvalidEmailAddress(ValueError):
    """Raised when a stored address is not a syntactically valid email."""


def normalize_email(raw: str) -> str:
    """Return *raw* stripped of surrounding whitespace.

    The local part is case-sensitive in principle, so only whitespace is
    touched here; ``email-validator`` lowercases the domain.
    """
    return raw.strip()


@dataclass(frozen=True, slots=True)
class SubscriberEmail:
    value: str

    @classmethod
    def parse(cls, raw: str) -> SubscriberEmail:
        candidate = normalize_email(raw)
        if not candidate:
            raise InvalidEmailAddress("email address is empty")
        try:
            validated = _EMAIL_ADAPTER.validate_python(candidate)
        except ValidationError as exc:
            logger.debug("Rejected email address (length=%d)", len(candidate))
            raise InvalidEmailAddress("not a valid subscriber email address") from exc
        return cls(str(validated))

    def __str__(self) -> str:
        return self.value
