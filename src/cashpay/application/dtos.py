"""Data Transfer Objects for pay server and push channel payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..domain.invoice.entities import InvoiceSnapshot


class SigningKeysDTO(BaseModel):
    """Body of ``GET {endpoint}/signingKeys/paymentProtocol.json``."""

    model_config = ConfigDict(populate_by_name=True)

    owner: str
    expiration_date: datetime = Field(alias="expirationDate")
    public_keys: List[str] = Field(alias="publicKeys")


class SubscribeRequestDTO(BaseModel):
    """Control message sent on the push channel once connected."""

    model_config = ConfigDict(populate_by_name=True)

    invoice_id: str = Field(alias="invoiceId")


class PushMessageDTO(BaseModel):
    """A lifecycle message received over the push channel.

    Unknown fields are preserved so callbacks receive the message as sent.
    """

    model_config = ConfigDict(extra="allow")

    invoice: Optional[InvoiceSnapshot] = None
    signature: Optional[Dict[str, Any]] = None


class WebhookEventDTO(BaseModel):
    """Body of a webhook call made by the pay server."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    event: str
    invoice_id: Optional[str] = Field(default=None, alias="invoiceId")
    invoice: Optional[InvoiceSnapshot] = None

    def resolved_invoice_id(self) -> Optional[str]:
        if self.invoice_id:
            return self.invoice_id
        return self.invoice.id if self.invoice else None
