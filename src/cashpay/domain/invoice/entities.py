"""Invoice domain entities: parameters, server-assigned details and derived status."""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

logger = logging.getLogger(__name__)


class InvoiceStatus(str, Enum):
    """Lifecycle status of an invoice, derived from details and the latest event."""

    PENDING_CREATION = "pending-creation"
    AWAITING_PAYMENT = "awaiting-payment"
    REQUESTED = "requested"
    BROADCASTING = "broadcasting"
    BROADCASTED = "broadcasted"
    CONFIRMED = "confirmed"
    EXPIRED = "expired"
    FAILED = "failed"


# Events that move an invoice forward, ranked so a late message never regresses it.
PROGRESS_EVENT_RANK: Dict[str, int] = {
    "requested": 1,
    "expired": 2,
    "broadcasting": 3,
    "broadcasted": 4,
    "confirmed": 5,
}


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Output(_WireModel):
    """A single payment output paying either an address or a raw script."""

    address: Optional[str] = None
    script: Optional[str] = None
    # Base units, or a string with a currency suffix (e.g. "2.50USD") converted server-side.
    amount: Union[int, str] = 0

    @model_validator(mode="after")
    def check_destination(self) -> "Output":
        if bool(self.address) == bool(self.script):
            raise ValueError("Output requires exactly one of address or script")
        return self


class StaticOptions(_WireModel):
    """Reuse window of a static invoice."""

    quantity: Optional[int] = None
    valid_until: Optional[int] = Field(default=None, alias="validUntil")


class InvoiceParameters(_WireModel):
    """Caller-set fields sent to the pay server when the invoice is created."""

    network: str = "main"
    behavior: str = "normal"
    outputs: List[Output] = Field(default_factory=list)
    memo: Optional[str] = None
    expires: Optional[int] = None
    user_currency: str = Field(default="USD", alias="userCurrency")
    merchant_data: Optional[str] = Field(default=None, alias="merchantData")
    api_key: Optional[str] = Field(default=None, alias="apiKey")
    private_data: Optional[str] = Field(default=None, alias="privateData")
    webhooks: Dict[str, str] = Field(default_factory=dict)
    static: Optional[StaticOptions] = None

    def to_request_body(self) -> Dict[str, Any]:
        """JSON body for ``POST /invoice/create``."""
        exclude = set() if self.behavior == "static" else {"static"}
        return self.model_dump(by_alias=True, exclude_none=True, exclude=exclude)


class InvoiceTotals(_WireModel):
    satoshi_total: Optional[int] = Field(default=None, alias="satoshiTotal")
    user_currency_total: Optional[float] = Field(
        default=None, alias="userCurrencyTotal"
    )
    user_currency: Optional[str] = Field(default=None, alias="userCurrency")


class ServiceLocators(_WireModel):
    """Server-issued URIs for wallets, the push channel and state polling."""

    wallet_uri: Optional[str] = Field(default=None, alias="walletURI")
    web_socket_uri: Optional[str] = Field(default=None, alias="webSocketURI")
    state_uri: Optional[str] = Field(default=None, alias="stateURI")


class InvoiceSnapshot(_WireModel):
    """Invoice fields as reported by the pay server (creation response or push message)."""

    id: Optional[str] = None
    behavior: Optional[str] = None
    time: Optional[float] = None
    # Unix timestamp in a server snapshot, unlike the duration in InvoiceParameters.
    expires: Optional[float] = None
    totals: Optional[InvoiceTotals] = None
    tx_ids: Optional[List[str]] = Field(default=None, alias="txIds")
    usage_count: Optional[int] = Field(default=None, alias="usageCount")
    service: Optional[ServiceLocators] = None


class InvoiceDetails(BaseModel):
    """Server-assigned facts about an invoice."""

    behavior: Optional[str] = None
    created_at: Optional[float] = None
    expires_at: Optional[float] = None
    totals: InvoiceTotals = Field(default_factory=InvoiceTotals)
    tx_ids: List[str] = Field(default_factory=list)
    usage_count: int = 0


class InvoiceState(BaseModel):
    """Canonical in-memory representation of one invoice."""

    id: Optional[str] = None
    parameters: InvoiceParameters = Field(default_factory=InvoiceParameters)
    details: InvoiceDetails = Field(default_factory=InvoiceDetails)
    service: ServiceLocators = Field(default_factory=ServiceLocators)
    latest_event: Optional[str] = None
    creation_failed: bool = False

    @property
    def is_static(self) -> bool:
        return (self.details.behavior or self.parameters.behavior) == "static"

    def assign_id(self, invoice_id: str) -> None:
        """Set the invoice id. The id is write-once."""
        if self.id is not None and self.id != invoice_id:
            raise ValueError(f"Invoice id already assigned ({self.id})")
        self.id = invoice_id

    def apply_server_update(self, snapshot: InvoiceSnapshot) -> None:
        """Merge the fixed set of server-owned fields from ``snapshot``.

        An id is only adopted when none is assigned yet; a differing id is ignored.
        """
        if snapshot.id is not None:
            if self.id is None:
                self.assign_id(snapshot.id)
            elif snapshot.id != self.id:
                logger.warning(
                    "Ignoring server update id %s for invoice %s", snapshot.id, self.id
                )

        details = self.details
        if snapshot.behavior is not None:
            details.behavior = snapshot.behavior
        if snapshot.time is not None:
            details.created_at = snapshot.time
        if snapshot.expires is not None:
            details.expires_at = snapshot.expires
        if snapshot.totals is not None:
            details.totals = snapshot.totals
        if snapshot.tx_ids is not None:
            details.tx_ids = list(snapshot.tx_ids)
        if snapshot.usage_count is not None:
            details.usage_count = snapshot.usage_count

        if snapshot.service is not None:
            merged = self.service.model_dump()
            merged.update(snapshot.service.model_dump(exclude_none=True))
            self.service = ServiceLocators(**merged)

    def record_event(self, event: str) -> None:
        """Remember a lifecycle event if it moves the invoice forward."""
        rank = PROGRESS_EVENT_RANK.get(event)
        if rank is None:
            return
        current = PROGRESS_EVENT_RANK.get(self.latest_event or "", 0)
        if rank > current:
            self.latest_event = event

    def seconds_remaining(self, now: Optional[float] = None) -> Optional[int]:
        if self.is_static or self.details.expires_at is None:
            return None
        now = time.time() if now is None else now
        return max(0, round(self.details.expires_at - now))

    def status_at(self, now: float) -> InvoiceStatus:
        if self.id is None:
            if self.creation_failed:
                return InvoiceStatus.FAILED
            return InvoiceStatus.PENDING_CREATION
        if self.latest_event is not None:
            return InvoiceStatus(self.latest_event)
        if self.details.tx_ids:
            return InvoiceStatus.BROADCASTED
        if (
            not self.is_static
            and self.details.expires_at is not None
            and now > self.details.expires_at
        ):
            return InvoiceStatus.EXPIRED
        return InvoiceStatus.AWAITING_PAYMENT

    @property
    def status(self) -> InvoiceStatus:
        return self.status_at(time.time())

    def payload(self, public_only: bool = True) -> Dict[str, Any]:
        """Flat snapshot suitable for handing the invoice to a browser or another process.

        ``public_only`` drops ``apiKey`` and ``privateData``.
        """
        exclude = {"apiKey", "privateData"} if public_only else set()
        data = {
            key: value
            for key, value in self.parameters.to_request_body().items()
            if key not in exclude
        }
        snapshot = InvoiceSnapshot(
            id=self.id,
            behavior=self.details.behavior,
            time=self.details.created_at,
            expires=self.details.expires_at,
            totals=self.details.totals,
            tx_ids=self.details.tx_ids or None,
            usage_count=self.details.usage_count if self.is_static else None,
            service=self.service,
        )
        data.update(snapshot.model_dump(by_alias=True, exclude_none=True))
        return data

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "InvoiceState":
        """Rebuild state from a ``payload()`` dict or a raw server response.

        ``expires`` is the server's expiry timestamp once the invoice has an id,
        and the requested duration in seconds before that.
        """
        without_expires = {key: value for key, value in payload.items() if key != "expires"}
        if payload.get("id"):
            snapshot = InvoiceSnapshot.model_validate(payload)
            parameters = InvoiceParameters.model_validate(without_expires)
        else:
            snapshot = InvoiceSnapshot.model_validate(without_expires)
            parameters = InvoiceParameters.model_validate(payload)
        state = cls(parameters=parameters)
        state.apply_server_update(snapshot)
        if snapshot.behavior is not None:
            state.parameters.behavior = snapshot.behavior
        return state
