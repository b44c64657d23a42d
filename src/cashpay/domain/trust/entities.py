"""Trust domain entities: cached signing key sets and signature envelopes."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_serializer, field_validator

SUPPORTED_SIGNATURE_TYPE = "ECC"


class TrustedKeySet(BaseModel):
    """Signing public keys published by one trusted server."""

    owner: str
    endpoint: str
    expiration_date: datetime
    # Hex-encoded SEC1 points, in the order the server published them.
    public_keys: List[str] = Field(default_factory=list)

    @field_validator("expiration_date")
    @classmethod
    def ensure_aware(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @field_serializer("expiration_date")
    def serialize_expiration_date(self, value: datetime) -> str:
        return value.isoformat()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now > self.expiration_date


class SignatureEnvelope(BaseModel):
    """Detached signature accompanying a webhook call or push message.

    ``digest`` and ``signature`` are base64 text in transit, or raw bytes.
    """

    digest: Union[bytes, str]
    identity: str
    signature: Union[bytes, str]
    signature_type: str
