"""Process-wide cache of trusted signing key sets."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from ...domain.errors import KeyFetchError, TrustError
from ...domain.trust.entities import TrustedKeySet
from ...infrastructure.pay_server.pay_server_client import AsyncPayServerClient

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KeyStore:
    """Signing public keys per trusted server identity.

    Entries are created on the first successful fetch from an endpoint and
    replaced wholesale on refresh; a failed refresh never touches the stored
    entry. Refreshes are serialized per identity, so refreshing one identity
    never blocks a reader of another.
    """

    def __init__(
        self,
        pay_server: AsyncPayServerClient,
        trusted_endpoints: Iterable[str] = (),
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._pay_server = pay_server
        self._clock = clock
        self._entries: Dict[str, TrustedKeySet] = {}
        # Configured endpoints whose keys have not been fetched yet.
        self._pending_endpoints: List[str] = [e.rstrip("/") for e in trusted_endpoints]
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @property
    def identities(self) -> List[str]:
        return list(self._entries)

    def peek(self, identity: str) -> Optional[TrustedKeySet]:
        """Return the cached entry for ``identity`` without refreshing it."""
        return self._entries.get(identity)

    async def _fetch(self, endpoint: str) -> TrustedKeySet:
        try:
            dto = await self._pay_server.get_signing_keys(endpoint)
        except (httpx.HTTPError, ValidationError, ValueError) as e:
            raise KeyFetchError(
                f"Could not fetch signing keys from {endpoint}: {e}"
            ) from e
        return TrustedKeySet(
            owner=dto.owner,
            endpoint=endpoint,
            expiration_date=dto.expiration_date,
            public_keys=list(dto.public_keys),
        )

    async def register_trusted(self, endpoint: str) -> TrustedKeySet:
        """Fetch the key set published by ``endpoint`` and trust its owner."""
        endpoint = endpoint.rstrip("/")
        async with self._lock_for(f"endpoint:{endpoint}"):
            return await self._register_locked(endpoint)

    async def _register_locked(self, endpoint: str) -> TrustedKeySet:
        key_set = await self._fetch(endpoint)
        self._entries[key_set.owner] = key_set
        if endpoint in self._pending_endpoints:
            self._pending_endpoints.remove(endpoint)
        logger.info(
            "Trusted %s via %s (%d keys, expires %s)",
            key_set.owner,
            endpoint,
            len(key_set.public_keys),
            key_set.expiration_date.isoformat(),
        )
        return key_set

    async def _refresh_locked(self, entry: TrustedKeySet) -> TrustedKeySet:
        key_set = await self._fetch(entry.endpoint)
        self._entries[key_set.owner] = key_set
        if key_set.owner != entry.owner:
            # The endpoint vouches for a different identity now.
            del self._entries[entry.owner]
            logger.warning(
                "Endpoint %s now signs as %s; dropped trust in %s",
                entry.endpoint,
                key_set.owner,
                entry.owner,
            )
            raise TrustError(
                f"{entry.owner} is no longer published by {entry.endpoint}"
            )
        return key_set

    async def refresh(self, identity: str) -> TrustedKeySet:
        """Re-fetch the key set of a known identity.

        Raises KeyFetchError on failure, and TrustError when the endpoint now
        publishes under another owner (the old identity is then forgotten).
        """
        async with self._lock_for(identity):
            entry = self._entries.get(identity)
            if entry is None:
                raise TrustError(f"No trusted endpoint registered for {identity}")
            return await self._refresh_locked(entry)

    async def _fetch_pending_endpoints(self) -> List[KeyFetchError]:
        errors: List[KeyFetchError] = []
        for endpoint in list(self._pending_endpoints):
            try:
                async with self._lock_for(f"endpoint:{endpoint}"):
                    # A concurrent lookup may have fetched it while we waited.
                    if endpoint in self._pending_endpoints:
                        await self._register_locked(endpoint)
            except KeyFetchError as e:
                logger.warning("%s", e)
                errors.append(e)
        return errors

    async def get(self, identity: str) -> TrustedKeySet:
        """Return a usable key set for ``identity``.

        Expired entries are refreshed first. If that refresh fails, the stale
        entry is returned so verification fails on the signature check rather
        than on a missing key set.
        """
        entry = self._entries.get(identity)
        if entry is None:
            errors = await self._fetch_pending_endpoints()
            entry = self._entries.get(identity)
            if entry is None:
                if errors:
                    raise errors[0]
                raise TrustError(f"No trusted endpoint registered for {identity}")

        if not entry.is_expired(self._clock()):
            return entry

        async with self._lock_for(identity):
            entry = self._entries.get(identity)
            if entry is None:
                raise TrustError(f"No trusted endpoint registered for {identity}")
            if not entry.is_expired(self._clock()):
                return entry
            try:
                return await self._refresh_locked(entry)
            except KeyFetchError as e:
                logger.warning("Keeping expired key set for %s: %s", identity, e)
                return entry
