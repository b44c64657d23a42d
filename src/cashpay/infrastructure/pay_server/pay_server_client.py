from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Type
from types import TracebackType

import httpx

from ...application.dtos import SigningKeysDTO
from ...domain.invoice.entities import InvoiceParameters, InvoiceSnapshot

logger = logging.getLogger(__name__)

SIGNING_KEYS_PATH = "/signingKeys/paymentProtocol.json"


class AsyncPayServerClient:
    """Asynchronous client for talking to a pay server HTTP API.

    Relative paths resolve against the pay server endpoint; absolute URLs
    (other trusted servers, merchant endpoints) are requested as given.
    Non-2xx responses raise ``httpx.HTTPStatusError`` and every response is
    validated against the wire contract.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def is_closed(self) -> bool:
        return self._client.is_closed

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}/{path.lstrip('/')}"

    async def _request(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Any:
        url = self._url(path)
        logger.debug("%s %s", method, url)
        resp = await self._client.request(method, url, json=json)
        resp.raise_for_status()
        return resp.json()

    async def create_invoice(self, params: InvoiceParameters) -> InvoiceSnapshot:
        data = await self._request(
            "POST", "/invoice/create", json=params.to_request_body()
        )
        return InvoiceSnapshot.model_validate(data)

    async def get_signing_keys(self, endpoint: str) -> SigningKeysDTO:
        """Fetch the signing keys published by ``endpoint`` (any trusted server)."""
        data = await self._request("GET", f"{endpoint.rstrip('/')}{SIGNING_KEYS_PATH}")
        return SigningKeysDTO.model_validate(data)

    async def post_json(self, url: str, json: Dict[str, Any]) -> Dict[str, Any]:
        """POST to an arbitrary (usually merchant-owned) endpoint and return the JSON body."""
        data = await self._request("POST", url, json=json)
        if not isinstance(data, dict):
            raise ValueError(f"Expected a JSON object from {url}")
        return data

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AsyncPayServerClient":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_value: Optional[BaseException],
        traceback: Optional[TracebackType],
    ) -> None:
        await self.aclose()
