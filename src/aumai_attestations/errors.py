"""Error classes for aumai-attestations."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Terminal reasons a verification can be rejected for."""

    unsupported_version = "unsupported_version"
    untrusted_certificate = "untrusted_certificate"
    identity_mismatch = "identity_mismatch"
    signature_invalid = "signature_invalid"
    transparency_check_failed = "transparency_check_failed"
    malformed_inclusion_proof = "malformed_inclusion_proof"


class AttestationError(Exception):
    """The base class for aumai-attestations errors."""


class EncodingError(AttestationError):
    """Happens when a value cannot be canonically encoded (e.g. invalid UTF-8)."""


class SigningError(AttestationError):
    """Happens when the signing key does not fit the cryptographic suite."""


class ConfigurationError(AttestationError):
    """Happens when there is an error in the verification policy (.ini) file."""


class ConcurrentModificationError(AttestationError):
    """Happens when a provenance append races another writer."""


class VerificationError(AttestationError):
    """The base class for rejected attestations."""

    kind: FailureKind


class UnsupportedVersion(VerificationError):
    """The attestation declares a version this verifier has no suite for."""

    kind = FailureKind.unsupported_version


class UntrustedCertificate(VerificationError):
    """The signing certificate does not chain to a trust root."""

    kind = FailureKind.untrusted_certificate


class IdentityMismatch(VerificationError):
    """The certificate identity is not the one the caller expects."""

    kind = FailureKind.identity_mismatch


class SignatureInvalid(VerificationError):
    """The signature does not match the reconstructed payload."""

    kind = FailureKind.signature_invalid


class TransparencyCheckFailed(VerificationError):
    """A transparency log entry failed verification."""

    kind = FailureKind.transparency_check_failed


class MalformedInclusionProof(VerificationError):
    """An inclusion proof is structurally inconsistent."""

    kind = FailureKind.malformed_inclusion_proof


ERRORS_BY_KIND: dict[FailureKind, type[VerificationError]] = {
    cls.kind: cls
    for cls in (
        UnsupportedVersion,
        UntrustedCertificate,
        IdentityMismatch,
        SignatureInvalid,
        TransparencyCheckFailed,
        MalformedInclusionProof,
    )
}


__all__ = [
    "ERRORS_BY_KIND",
    "AttestationError",
    "ConcurrentModificationError",
    "ConfigurationError",
    "EncodingError",
    "FailureKind",
    "IdentityMismatch",
    "MalformedInclusionProof",
    "SignatureInvalid",
    "SigningError",
    "TransparencyCheckFailed",
    "UnsupportedVersion",
    "UntrustedCertificate",
    "VerificationError",
]
