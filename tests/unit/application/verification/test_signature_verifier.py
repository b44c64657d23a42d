"""Unit tests for webhook and push message signature verification."""

import base64
from datetime import datetime, timedelta, timezone

import pytest

from cashpay.application.verification.key_store import KeyStore
from cashpay.application.verification.signature_verifier import SignatureVerifier
from cashpay.crypto.signatures import json_to_bytes, sha256
from cashpay.domain.errors import (
    DigestMismatch,
    MalformedEnvelope,
    SignatureInvalid,
    TrustError,
    UnsupportedSignatureType,
)
from cashpay.domain.trust.entities import SignatureEnvelope
from cashpay.infrastructure.pay_server.pay_server_client import AsyncPayServerClient
from tests.fixtures import FakePayServer, SigningIdentity, b64

BODY = b'{"event":"broadcasted","invoiceId":"abc"}'


def _flip_byte(encoded: str, index: int = 0) -> str:
    raw = bytearray(base64.b64decode(encoded))
    raw[index] ^= 0x01
    return b64(bytes(raw))


def _envelope(fields: dict) -> SignatureEnvelope:
    return SignatureEnvelope(
        digest=fields["digest"],
        identity=fields["identity"],
        signature=fields["signature"],
        signature_type=fields["signatureType"],
    )


class TestVerify:
    """Test verification of a payload against a detached envelope."""

    @pytest.mark.asyncio
    async def test_signed_payload_verifies(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        envelope = _envelope(server_identity.signature_fields(BODY))
        assert await verifier.verify(BODY, envelope) is True

    @pytest.mark.asyncio
    async def test_raw_byte_envelope_verifies(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        fields = server_identity.signature_fields(BODY)
        envelope = SignatureEnvelope(
            digest=sha256(BODY),
            identity="pay.test",
            signature=base64.b64decode(fields["signature"]),
            signature_type="ECC",
        )
        assert await verifier.verify(BODY, envelope)

    @pytest.mark.asyncio
    async def test_mutated_payload_is_a_digest_mismatch(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        envelope = _envelope(server_identity.signature_fields(BODY))
        tampered = BODY.replace(b"abc", b"abd")

        with pytest.raises(DigestMismatch):
            await verifier.verify(tampered, envelope)

    @pytest.mark.asyncio
    async def test_mutated_digest_is_a_digest_mismatch(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        fields = server_identity.signature_fields(BODY)
        fields["digest"] = _flip_byte(fields["digest"], 5)

        with pytest.raises(DigestMismatch):
            await verifier.verify(BODY, _envelope(fields))

    @pytest.mark.asyncio
    async def test_mutated_signature_is_invalid(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        fields = server_identity.signature_fields(BODY)
        fields["signature"] = _flip_byte(fields["signature"], 10)

        with pytest.raises(SignatureInvalid):
            await verifier.verify(BODY, _envelope(fields))

    @pytest.mark.asyncio
    async def test_untrusted_key_is_invalid(self, verifier: SignatureVerifier) -> None:
        impostor = SigningIdentity("pay.test")
        envelope = _envelope(impostor.signature_fields(BODY))

        with pytest.raises(SignatureInvalid):
            await verifier.verify(BODY, envelope)

    @pytest.mark.asyncio
    async def test_unknown_identity_is_not_trusted(
        self, verifier: SignatureVerifier
    ) -> None:
        envelope = _envelope(SigningIdentity("evil.test").signature_fields(BODY))

        with pytest.raises(TrustError):
            await verifier.verify(BODY, envelope)

    @pytest.mark.asyncio
    async def test_unsupported_type_rejected_before_key_fetch(
        self,
        verifier: SignatureVerifier,
        server_identity: SigningIdentity,
        pay_server: FakePayServer,
    ) -> None:
        fields = server_identity.signature_fields(BODY)
        fields["signatureType"] = "RSA"

        with pytest.raises(UnsupportedSignatureType):
            await verifier.verify(BODY, _envelope(fields))
        assert pay_server.key_requests == []

    @pytest.mark.asyncio
    async def test_undecodable_signature_is_malformed(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        fields = server_identity.signature_fields(BODY)
        fields["signature"] = "%%%"

        with pytest.raises(MalformedEnvelope):
            await verifier.verify(BODY, _envelope(fields))

    @pytest.mark.asyncio
    async def test_mapping_payload_uses_compact_json(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        payload = {"event": "broadcasted", "invoiceId": "abc"}
        envelope = _envelope(server_identity.signature_fields(json_to_bytes(payload)))

        assert await verifier.verify(payload, envelope)

    @pytest.mark.asyncio
    async def test_any_published_key_may_sign(
        self,
        pay_server_client: AsyncPayServerClient,
        pay_server: FakePayServer,
    ) -> None:
        retiring = SigningIdentity("pay.test")
        current = SigningIdentity("pay.test")
        pay_server.publish_keys(
            "pay.test",
            ["zz-not-a-key", retiring.public_key_hex, current.public_key_hex],
            datetime.now(timezone.utc) + timedelta(days=1),
        )
        verifier = SignatureVerifier(KeyStore(pay_server_client, ["https://pay.test"]))

        assert await verifier.verify(BODY, _envelope(retiring.signature_fields(BODY)))
        assert await verifier.verify(BODY, _envelope(current.signature_fields(BODY)))

    @pytest.mark.asyncio
    async def test_rotated_key_fails_while_refresh_is_unavailable(
        self,
        pay_server_client: AsyncPayServerClient,
        pay_server: FakePayServer,
    ) -> None:
        now = datetime.now(timezone.utc)
        old = SigningIdentity("pay.test")
        pay_server.publish_keys("pay.test", [old.public_key_hex], now + timedelta(hours=1))

        class Clock:
            value = now

            def __call__(self) -> datetime:
                return self.value

        clock = Clock()
        store = KeyStore(pay_server_client, ["https://pay.test"], clock=clock)
        verifier = SignatureVerifier(store)
        assert await verifier.verify(BODY, _envelope(old.signature_fields(BODY)))

        clock.value = now + timedelta(hours=2)
        pay_server.fail_keys = True
        rotated = SigningIdentity("pay.test")

        with pytest.raises(SignatureInvalid):
            await verifier.verify(BODY, _envelope(rotated.signature_fields(BODY)))


class TestVerifyWebhook:
    """Test envelopes carried in HTTP headers."""

    @pytest.mark.asyncio
    async def test_headers_are_case_insensitive(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        headers = {
            k.upper(): v for k, v in server_identity.webhook_headers(BODY).items()
        }
        assert await verifier.verify_webhook(BODY, headers)

    @pytest.mark.asyncio
    async def test_digest_prefix_is_accepted(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        headers = server_identity.webhook_headers(BODY)
        headers["Digest"] = "SHA-256=" + headers["Digest"]

        assert await verifier.verify_webhook(BODY, headers)

    @pytest.mark.asyncio
    async def test_missing_headers_are_malformed(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        headers = server_identity.webhook_headers(BODY)
        del headers["X-Signature"]
        del headers["X-Identity"]

        with pytest.raises(MalformedEnvelope, match="x-identity, x-signature"):
            await verifier.verify_webhook(BODY, headers)


class TestVerifyEvent:
    """Test push messages carrying an embedded signature."""

    @pytest.mark.asyncio
    async def test_returns_message_without_signature(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        message = {"invoice": {"id": "inv-1", "txIds": ["tx"]}}
        signed = server_identity.sign_event(message)

        stripped = await verifier.verify_event(signed)

        assert stripped == message
        assert "signature" in signed

    @pytest.mark.asyncio
    async def test_tampered_message_fails(
        self, verifier: SignatureVerifier, server_identity: SigningIdentity
    ) -> None:
        signed = server_identity.sign_event({"invoice": {"id": "inv-1"}})
        signed["invoice"] = {"id": "inv-2"}

        with pytest.raises(DigestMismatch):
            await verifier.verify_event(signed)

    @pytest.mark.asyncio
    async def test_missing_signature_is_malformed(
        self, verifier: SignatureVerifier
    ) -> None:
        with pytest.raises(MalformedEnvelope):
            await verifier.verify_event({"invoice": {"id": "inv-1"}})

    @pytest.mark.asyncio
    async def test_incomplete_signature_is_malformed(
        self, verifier: SignatureVerifier
    ) -> None:
        with pytest.raises(MalformedEnvelope):
            await verifier.verify_event(
                {"invoice": {"id": "inv-1"}, "signature": {"digest": "AA=="}}
            )
