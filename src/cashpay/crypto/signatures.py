from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any, Mapping, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, utils
from pydantic import BaseModel

# Pay servers sign with Bitcoin-style keys.
CURVE = ec.SECP256K1()
PREHASHED_ECDSA = ec.ECDSA(utils.Prehashed(hashes.SHA256()))


def json_to_bytes(data: Mapping[str, Any]) -> bytes:
    """Serialize a mapping the way the pay server does before hashing.

    Keys keep their insertion order; equivalence of key order is the caller's concern.
    """
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def payload_to_bytes(payload: Union[bytes, str, Mapping[str, Any], BaseModel]) -> bytes:
    """Canonical bytes for a webhook body or push message payload."""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, BaseModel):
        return json_to_bytes(payload.model_dump(by_alias=True))
    return json_to_bytes(payload)


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def decode_transport_bytes(value: Union[bytes, str]) -> bytes:
    """Decode a base64 transport value; raw bytes pass through. Raises ValueError."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Invalid base64 value: {e}") from e


def load_public_key_from_hex(public_key_hex: str) -> ec.EllipticCurvePublicKey:
    """Load a public key from a hex-encoded SEC1 point (compressed or not)."""
    return ec.EllipticCurvePublicKey.from_encoded_point(
        CURVE, bytes.fromhex(public_key_hex)
    )


def public_key_to_hex(public_key: ec.EllipticCurvePublicKey) -> str:
    """Hex-encoded compressed SEC1 point, the format servers publish keys in."""
    return public_key.public_bytes(
        encoding=serialization.Encoding.X962,
        format=serialization.PublicFormat.CompressedPoint,
    ).hex()


def sign_digest(private_key: ec.EllipticCurvePrivateKey, digest: bytes) -> bytes:
    """Sign an already computed SHA-256 digest and return the DER signature."""
    return private_key.sign(digest, PREHASHED_ECDSA)


def verify_digest_signature(
    public_key: ec.EllipticCurvePublicKey, digest: bytes, signature: bytes
) -> bool:
    """Verify a DER or 64-byte compact (r||s) ECDSA signature over ``digest``."""
    try:
        public_key.verify(signature, digest, PREHASHED_ECDSA)
        return True
    except (InvalidSignature, ValueError):
        pass

    if len(signature) != 64:
        return False
    r = int.from_bytes(signature[:32], "big")
    s = int.from_bytes(signature[32:], "big")
    try:
        public_key.verify(utils.encode_dss_signature(r, s), digest, PREHASHED_ECDSA)
        return True
    except (InvalidSignature, ValueError):
        return False
