"""Verification of signed webhook calls and push channel messages."""

from __future__ import annotations

import hmac
import logging
from typing import Any, Dict, Mapping, Union

from pydantic import BaseModel, ValidationError

from ...crypto.signatures import (
    decode_transport_bytes,
    load_public_key_from_hex,
    payload_to_bytes,
    sha256,
    verify_digest_signature,
)
from ...domain.errors import (
    DigestMismatch,
    MalformedEnvelope,
    SignatureInvalid,
    UnsupportedSignatureType,
)
from ...domain.trust.entities import SUPPORTED_SIGNATURE_TYPE, SignatureEnvelope
from .key_store import KeyStore

logger = logging.getLogger(__name__)

Payload = Union[bytes, str, Mapping[str, Any], BaseModel]

DIGEST_HEADER = "digest"
IDENTITY_HEADER = "x-identity"
SIGNATURE_HEADER = "x-signature"
SIGNATURE_TYPE_HEADER = "x-signature-type"


def _strip_digest_prefix(digest: Union[bytes, str]) -> Union[bytes, str]:
    # RFC 3230 style "SHA-256=<b64>" digest headers
    if isinstance(digest, str) and digest.upper().startswith("SHA-256="):
        return digest[len("SHA-256=") :]
    return digest


class SignatureVerifier:
    """Authenticates payloads against the key sets held by a ``KeyStore``.

    Every method either returns normally or raises a ``VerificationError``
    subclass (or ``TrustError``/``KeyFetchError`` from the key store). A payload
    that fails verification must be rejected by the caller.
    """

    def __init__(self, key_store: KeyStore) -> None:
        self._key_store = key_store

    @property
    def key_store(self) -> KeyStore:
        return self._key_store

    async def verify(self, payload: Payload, envelope: SignatureEnvelope) -> bool:
        payload_bytes = payload_to_bytes(payload)

        if envelope.signature_type != SUPPORTED_SIGNATURE_TYPE:
            raise UnsupportedSignatureType(
                f"Signature type must be {SUPPORTED_SIGNATURE_TYPE} "
                f"(got {envelope.signature_type!r})"
            )

        try:
            digest = decode_transport_bytes(_strip_digest_prefix(envelope.digest))
            signature = decode_transport_bytes(envelope.signature)
        except ValueError as e:
            raise MalformedEnvelope(f"Could not decode envelope: {e}") from e

        key_set = await self._key_store.get(envelope.identity)

        payload_digest = sha256(payload_bytes)
        if not hmac.compare_digest(payload_digest, digest):
            raise DigestMismatch("Payload digest did not match envelope digest")

        for public_key_hex in key_set.public_keys:
            try:
                public_key = load_public_key_from_hex(public_key_hex)
            except ValueError:
                logger.warning(
                    "Skipping unparseable public key %s of %s",
                    public_key_hex,
                    key_set.owner,
                )
                continue
            if verify_digest_signature(public_key, payload_digest, signature):
                return True

        raise SignatureInvalid(
            f"Signature verification failed for {envelope.identity} "
            f"({len(key_set.public_keys)} keys tried)"
        )

    async def verify_webhook(self, body: Payload, headers: Mapping[str, str]) -> bool:
        """Verify a webhook call whose envelope travels in HTTP headers."""
        lowered = {key.lower(): value for key, value in headers.items()}
        missing = [
            name
            for name in (
                DIGEST_HEADER,
                IDENTITY_HEADER,
                SIGNATURE_HEADER,
                SIGNATURE_TYPE_HEADER,
            )
            if not lowered.get(name)
        ]
        if missing:
            raise MalformedEnvelope(f"Missing webhook headers: {', '.join(missing)}")

        envelope = SignatureEnvelope(
            digest=lowered[DIGEST_HEADER],
            identity=lowered[IDENTITY_HEADER],
            signature=lowered[SIGNATURE_HEADER],
            signature_type=lowered[SIGNATURE_TYPE_HEADER],
        )
        return await self.verify(body, envelope)

    async def verify_event(self, message: Mapping[str, Any]) -> Dict[str, Any]:
        """Verify a push message carrying an embedded ``signature`` object.

        Returns a copy of the message without ``signature``; that copy is the
        signed payload and what application callbacks should receive.
        """
        stripped = dict(message)
        embedded = stripped.pop("signature", None)
        if not isinstance(embedded, Mapping):
            raise MalformedEnvelope("Push message carries no signature object")

        try:
            envelope = SignatureEnvelope(
                digest=embedded.get("digest"),
                identity=embedded.get("identity"),
                signature=embedded.get("signature"),
                signature_type=embedded.get("signatureType"),
            )
        except ValidationError as e:
            raise MalformedEnvelope(f"Invalid signature object: {e}") from e

        await self.verify(stripped, envelope)
        return stripped
