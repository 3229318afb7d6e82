from __future__ import annotations

from dataclasses import dataclass

MAX_KEY_LENGTH = 50


@dataclass(frozen=True, slots=True)
class IdempotencyKey:
    """Caller-supplied opaque token scoping one logical request."""

    value: str

    @classmethod
    def parse(cls, raw: str) -> IdempotencyKey:
        if not raw or not raw.strip():
            raise ValueError("The idempotency key cannot be empty")
        if len(raw) >= MAX_KEY_LENGTH:
            raise ValueError(f"The idempotency key must be shorter than {MAX_KEY_LENGTH} characters")
        return cls(raw)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class SavedResponse:
    """Status, ordered raw headers, and body of a completed command."""

    status_code: int
    headers: list[tuple[str, bytes]]
    body: bytes
