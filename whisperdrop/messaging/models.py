"""Pydantic models for ephemeral messages."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, field_validator


class Message(BaseModel):
    """An encrypted message. ``expires_at=None`` means it never expires."""
    id: str
    ciphertext: str
    expires_at: datetime | None = None
    burn_after_reading: bool = False

    @field_validator("expires_at")
    @classmethod
    def _aware(cls, value: datetime | None) -> datetime | None:
        # Naive timestamps are taken as UTC so they compare with the clock
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_ephemeral(self) -> bool:
        return self.expires_at is not None or self.burn_after_reading


class ExpiryState(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class ExpiryTier(str, Enum):
    """Display urgency of a countdown; has no effect on scheduling."""
    NORMAL = "normal"
    WARNING = "warning"
    CRITICAL = "critical"


class ExpiryTick(BaseModel):
    """Remaining lifetime of one message, reported once per tick."""
    message_id: str
    remaining_seconds: int
    tier: ExpiryTier
    display: str
