"""Domain-specific exceptions."""

from __future__ import annotations


class CashPayError(Exception):
    """Base class for every error raised by this library."""


class CreationError(CashPayError):
    """Raised when the pay server could not create an invoice."""


class KeyFetchError(CashPayError):
    """Raised when a trusted signing key set could not be fetched or parsed."""


class TrustError(CashPayError):
    """Raised when an identity has no registered trusted endpoint."""


class VerificationError(CashPayError):
    """Base class for failures of a single signature verification attempt."""


class UnsupportedSignatureType(VerificationError):
    """Raised when the envelope names a signature scheme other than ECC."""


class MalformedEnvelope(VerificationError):
    """Raised when envelope fields are missing or cannot be decoded."""


class DigestMismatch(VerificationError):
    """Raised when sha256(payload) does not match the envelope digest."""


class SignatureInvalid(VerificationError):
    """Raised when no trusted public key verifies the signature."""
