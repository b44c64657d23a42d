"""Invoice lifecycle: creation, push subscription, expiry countdown and teardown."""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

import httpx
from pydantic import ValidationError

from ..domain.errors import CashPayError, CreationError, MalformedEnvelope
from ..domain.invoice.entities import (
    InvoiceParameters,
    InvoiceState,
    InvoiceStatus,
    Output,
    StaticOptions,
)
from ..domain.shared.push_channel_protocol import (
    PushChannelFactory,
    PushChannelProtocol,
)
from ..envs.client_env import Settings
from ..infrastructure.pay_server.pay_server_client import AsyncPayServerClient
from .countdown import ExpiryCountdown
from .dtos import PushMessageDTO, SubscribeRequestDTO
from .events import Callback, EventBus
from .verification.signature_verifier import SignatureVerifier

logger = logging.getLogger(__name__)

PUSH_EVENTS = (
    "subscribed",
    "requested",
    "broadcasting",
    "broadcasted",
    "confirmed",
    "failed",
)
TERMINAL_EVENTS = ("broadcasted", "expired")
DEFAULT_WEBHOOK_EVENTS = ("broadcasting", "broadcasted", "confirmed")


class Invoice:
    """A pay server invoice and its lifecycle.

    Configure the invoice with the chainable setters, register callbacks with
    :meth:`on`, then ``await create()``. Creation posts the parameters to the
    pay server unless the invoice already has an id (adopted through
    :meth:`from_existing` or :meth:`from_server_endpoint`), in which case
    ``create()`` resumes it. When listening, the invoice then subscribes to its
    push channel and, for normal invoices, counts down to expiry.

    Supported events: ``created``, ``connected``, ``subscribed``, ``requested``,
    ``broadcasting``, ``broadcasted``, ``confirmed``, ``expired``, ``timer``
    (seconds remaining) and ``failed`` (error or server message).

    Example::

        invoice = (
            Invoice(settings, push_channel_factory=SocketChannel)
            .add_address("bitcoincash:qpfsrgdeq49fsjrg5qk4xqhswjl7g248950nzsrwvn", 100000)
            .set_expires(15 * 60)
            .on("broadcasted", lambda msg: print("paid", msg))
        )
        await invoice.create()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        pay_server: Optional[AsyncPayServerClient] = None,
        push_channel_factory: Optional[PushChannelFactory] = None,
        verifier: Optional[SignatureVerifier] = None,
        require_signed_events: bool = False,
        state: Optional[InvoiceState] = None,
        clock: Callable[[], float] = time.time,
        tick_interval: float = 1.0,
    ) -> None:
        self._settings = settings or Settings()
        self._owns_pay_server = pay_server is None
        self._pay_server = pay_server or AsyncPayServerClient(
            self._settings.endpoint, timeout=self._settings.http_timeout
        )
        self._push_channel_factory = push_channel_factory
        self._verifier = verifier
        self._require_signed_events = require_signed_events
        self._clock = clock
        self._tick_interval = tick_interval

        self._state = state or InvoiceState(
            parameters=InvoiceParameters(
                network=self._settings.network,
                user_currency=self._settings.user_currency,
            )
        )
        self._events = EventBus()
        self._countdown: Optional[ExpiryCountdown] = None
        self._channel: Optional[PushChannelProtocol] = None
        self._created = False
        self._live = False
        self._torn_down = False
        self._create_lock = asyncio.Lock()
        self._message_lock = asyncio.Lock()

        self._events.on(TERMINAL_EVENTS, self._on_terminal)

    # Alternate entry points

    @classmethod
    def from_existing(
        cls,
        payload: Mapping[str, Any],
        settings: Optional[Settings] = None,
        **kwargs: Any,
    ) -> "Invoice":
        """Adopt an invoice created elsewhere, e.g. server-side via :meth:`payload`."""
        state = InvoiceState.from_payload(dict(payload))
        return cls(settings, state=state, **kwargs)

    @classmethod
    async def from_server_endpoint(
        cls,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        settings: Optional[Settings] = None,
        *,
        pay_server: Optional[AsyncPayServerClient] = None,
        **kwargs: Any,
    ) -> "Invoice":
        """Adopt the invoice returned by a merchant endpoint that created it server-side."""
        settings = settings or Settings()
        owns_pay_server = pay_server is None
        pay_server = pay_server or AsyncPayServerClient(
            settings.endpoint, timeout=settings.http_timeout
        )
        try:
            data = await pay_server.post_json(url, params or {})
            invoice = cls.from_existing(data, settings, pay_server=pay_server, **kwargs)
        except (httpx.HTTPError, ValidationError, TypeError, ValueError) as e:
            if owns_pay_server:
                await pay_server.aclose()
            raise CreationError(f"Could not load invoice from {url}: {e}") from e
        invoice._owns_pay_server = owns_pay_server
        return invoice

    # Builder-style mutators

    def add_address(self, address: str, amount: Union[int, str] = 0) -> "Invoice":
        """Pay ``amount`` (base units, or e.g. ``"2.50USD"``) to ``address``."""
        self._state.parameters.outputs.append(Output(address=address, amount=amount or 0))
        return self

    def add_output(self, script: str, amount: int = 0) -> "Invoice":
        """Add a raw (hex) script output, e.g. OP_RETURN data."""
        self._state.parameters.outputs.append(Output(script=script, amount=amount))
        return self

    def set_expires(self, seconds: int) -> "Invoice":
        self._state.parameters.expires = seconds
        return self

    def set_memo(self, memo: str) -> "Invoice":
        self._state.parameters.memo = memo
        return self

    def set_merchant_data(self, data_b64: str) -> "Invoice":
        """Merchant data must already be base64 encoded."""
        self._state.parameters.merchant_data = data_b64
        return self

    def set_api_key(self, key: str) -> "Invoice":
        self._state.parameters.api_key = key
        return self

    def set_private_data(self, data: Union[str, Mapping[str, Any]]) -> "Invoice":
        if not isinstance(data, str):
            data = json.dumps(dict(data))
        self._state.parameters.private_data = data
        return self

    def set_user_currency(self, currency: str) -> "Invoice":
        self._state.parameters.user_currency = currency
        return self

    def set_network(self, network: str) -> "Invoice":
        self._state.parameters.network = network
        return self

    def set_webhook(
        self,
        endpoint: str,
        events: Union[str, Iterable[str]] = DEFAULT_WEBHOOK_EVENTS,
    ) -> "Invoice":
        if isinstance(events, str):
            events = [events]
        for event in events:
            self._state.parameters.webhooks[event] = endpoint
        return self

    def set_static(
        self, quantity: Optional[int] = None, valid_until: Optional[int] = None
    ) -> "Invoice":
        """Make the invoice reusable; it then never counts down to expiry."""
        self._state.parameters.behavior = "static"
        self._state.parameters.static = StaticOptions(
            quantity=quantity, valid_until=valid_until
        )
        return self

    def on(self, events: Union[str, Iterable[str]], callback: Callback) -> "Invoice":
        self._events.on(events, callback)
        return self

    # Read-only view for UI layers

    @property
    def state(self) -> InvoiceState:
        return self._state

    @property
    def id(self) -> Optional[str]:
        return self._state.id

    @property
    def status(self) -> InvoiceStatus:
        return self._state.status_at(self._clock())

    @property
    def wallet_uri(self) -> str:
        return self._state.service.wallet_uri or ""

    @property
    def total_amount(self) -> int:
        """Server total if known, else the sum of the integer output amounts."""
        if self._state.details.totals.satoshi_total is not None:
            return self._state.details.totals.satoshi_total
        return sum(
            output.amount
            for output in self._state.parameters.outputs
            if isinstance(output.amount, int)
        )

    @property
    def seconds_remaining(self) -> Optional[int]:
        return self._state.seconds_remaining(self._clock())

    @property
    def is_requested(self) -> bool:
        return self.status in (
            InvoiceStatus.REQUESTED,
            InvoiceStatus.BROADCASTING,
            InvoiceStatus.BROADCASTED,
            InvoiceStatus.CONFIRMED,
        )

    @property
    def is_broadcasted(self) -> bool:
        return self.status in (InvoiceStatus.BROADCASTED, InvoiceStatus.CONFIRMED)

    @property
    def is_live(self) -> bool:
        return self._live

    @property
    def is_counting_down(self) -> bool:
        return self._countdown is not None and not self._countdown.finished

    def payload(self, public_only: bool = True) -> Dict[str, Any]:
        """Invoice payload for :meth:`from_existing`; ``public_only`` hides private fields."""
        return self._state.payload(public_only=public_only)

    # Lifecycle

    async def create(self) -> "Invoice":
        """Create (or resume) the invoice and start listening for lifecycle events.

        Calling it again never submits the invoice a second time. Failures fire
        ``failed`` with the error and are re-raised; there is no retry. A failed
        creation ends the invoice: it is torn down and an owned pay server
        client is closed.
        """
        async with self._create_lock:
            try:
                if self._state.id is None:
                    await self._submit()
                if self._settings.listen and not (self._live or self._torn_down):
                    await self._go_live()
            except Exception as e:
                logger.error("Invoice %s failed to start: %s", self._state.id, e)
                self._events.emit("failed", e)
                if isinstance(e, CreationError):
                    self._stop()
                    await self._close_pay_server()
                raise

            if not self._created:
                self._created = True
                self._events.emit("created")
        return self

    async def _submit(self) -> None:
        if self._torn_down:
            raise CreationError("Invoice was torn down before it was created")
        logger.info("Requesting new invoice from %s", self._settings.endpoint)
        try:
            snapshot = await self._pay_server.create_invoice(self._state.parameters)
        except (httpx.HTTPError, ValidationError, ValueError) as e:
            self._state.creation_failed = True
            raise CreationError(f"Invoice creation failed: {e}") from e
        if not snapshot.id:
            self._state.creation_failed = True
            raise CreationError("Pay server response did not include an invoice id")

        self._state.creation_failed = False
        self._state.apply_server_update(snapshot)
        logger.info("Invoice %s created", self._state.id)

    async def _go_live(self) -> None:
        self._live = True
        expires_at = self._state.details.expires_at
        if not self._state.is_static and expires_at is not None:
            self._countdown = ExpiryCountdown(
                expires_at,
                on_tick=functools.partial(self._events.emit, "timer"),
                on_expired=self._on_expired,
                clock=self._clock,
                interval=self._tick_interval,
            )
            self._countdown.start()

        try:
            await self._listen()
        except Exception:
            # Leave the invoice resumable by a later create() call.
            self._live = False
            if self._countdown is not None:
                self._countdown.cancel()
                self._countdown = None
            await self._disconnect()
            raise

    async def _listen(self) -> None:
        if self._push_channel_factory is None:
            logger.debug("No push channel configured for invoice %s", self._state.id)
            return
        uri = self._state.service.web_socket_uri
        if not uri:
            logger.warning("Invoice %s has no push channel URI", self._state.id)
            return

        channel = self._push_channel_factory()
        self._channel = channel
        channel.on("connect", self._on_connect)
        for event in PUSH_EVENTS:
            channel.on(event, functools.partial(self._on_push_message, event))
        await channel.connect(uri)

    async def _on_connect(self, _data: Any = None) -> None:
        if self._channel is None or self._state.id is None:
            return
        request = SubscribeRequestDTO(invoice_id=self._state.id)
        await self._channel.emit("subscribe", request.model_dump(by_alias=True))
        self._events.emit("connected")

    async def _on_push_message(self, event: str, message: Any) -> None:
        async with self._message_lock:
            if self._torn_down or not self._live:
                return
            if not isinstance(message, Mapping):
                logger.warning("Dropping non-object %r message: %r", event, message)
                return

            message = dict(message)
            try:
                if self._verifier is not None and "signature" in message:
                    message = await self._verifier.verify_event(message)
                elif self._require_signed_events:
                    raise MalformedEnvelope(f"Unsigned {event!r} message rejected")
                parsed = PushMessageDTO.model_validate(message)
            except (CashPayError, ValidationError) as e:
                logger.warning("Rejected %r message for invoice %s: %s", event, self._state.id, e)
                self._events.emit("failed", e)
                return

            snapshot = parsed.invoice
            if snapshot is not None:
                if snapshot.id and self._state.id and snapshot.id != self._state.id:
                    logger.debug("Ignoring %r message for invoice %s", event, snapshot.id)
                    return
                self._state.apply_server_update(snapshot)

            self._state.record_event(event)
            logger.info("Invoice %s: %s", self._state.id, event)
            self._events.emit(event, message)

    def _on_expired(self) -> None:
        self._state.record_event("expired")
        logger.info("Invoice %s expired", self._state.id)
        self._events.emit("expired")

    def _stop(self) -> None:
        self._torn_down = True
        self._live = False
        if self._countdown is not None:
            self._countdown.cancel()

    def _on_terminal(self, *_args: Any) -> Any:
        if self._torn_down or not self._live:
            return None
        self._stop()
        # The bus schedules the returned coroutine on the running loop.
        return self._disconnect()

    async def _disconnect(self) -> None:
        channel, self._channel = self._channel, None
        if channel is not None:
            await channel.disconnect()

    async def destroy(self) -> None:
        """Stop the countdown and close the push channel without a terminal status."""
        self._stop()
        await self._disconnect()
        await self._events.drain()
        await self._close_pay_server()

    async def _close_pay_server(self) -> None:
        if self._owns_pay_server and not self._pay_server.is_closed:
            await self._pay_server.aclose()

    async def wait_for_callbacks(self) -> None:
        """Wait until async callbacks (including teardown) scheduled so far have run."""
        await self._events.drain()
