"""aumai-attestations: Digital attestations for package distributions."""

from aumai_attestations.canonical import encode
from aumai_attestations.config import VerificationPolicy, load_policy
from aumai_attestations.core import (
    SUITES,
    AttestationBuilder,
    AttestationVerifier,
    KeyManager,
    TrustRoots,
)
from aumai_attestations.digest import digest, digest_file
from aumai_attestations.errors import (
    AttestationError,
    EncodingError,
    FailureKind,
    IdentityMismatch,
    MalformedInclusionProof,
    SignatureInvalid,
    SigningError,
    TransparencyCheckFailed,
    UnsupportedVersion,
    UntrustedCertificate,
    VerificationError,
)
from aumai_attestations.identity import Identity, IdentityPolicy, policy_for_publisher
from aumai_attestations.models import (
    Attestation,
    AttestationBundle,
    AttestationPayload,
    Check,
    DistributionFile,
    InclusionProof,
    Provenance,
    Publisher,
    TransparencyLogEntry,
    VerificationMaterial,
    VerificationResult,
)
from aumai_attestations.provenance import ProvenanceLedger, merge
from aumai_attestations.transparency import TransparencyLog, verify_inclusion

__version__ = "0.1.0"

__all__ = [
    "SUITES",
    "Attestation",
    "AttestationBuilder",
    "AttestationBundle",
    "AttestationError",
    "AttestationPayload",
    "AttestationVerifier",
    "Check",
    "DistributionFile",
    "EncodingError",
    "FailureKind",
    "Identity",
    "IdentityMismatch",
    "IdentityPolicy",
    "InclusionProof",
    "KeyManager",
    "MalformedInclusionProof",
    "Provenance",
    "ProvenanceLedger",
    "Publisher",
    "SignatureInvalid",
    "SigningError",
    "TransparencyCheckFailed",
    "TransparencyLog",
    "TransparencyLogEntry",
    "TrustRoots",
    "UnsupportedVersion",
    "UntrustedCertificate",
    "VerificationError",
    "VerificationMaterial",
    "VerificationPolicy",
    "VerificationResult",
    "digest",
    "digest_file",
    "encode",
    "load_policy",
    "merge",
    "policy_for_publisher",
    "verify_inclusion",
]
