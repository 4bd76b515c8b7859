"""Pydantic models for aumai-attestations."""

from __future__ import annotations

import base64
import binascii
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from aumai_attestations.errors import ERRORS_BY_KIND, FailureKind

ATTESTATION_VERSION = 1
PROVENANCE_VERSION = 1


def _check_base64(value: str) -> str:
    try:
        base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"not valid base64: {exc}") from exc
    return value


class _OpenModel(BaseModel):
    """Base for transport objects whose unknown keys are carried through verbatim."""

    model_config = ConfigDict(extra="allow")


class Check(str, Enum):
    """Verification steps reported back in a :class:`VerificationResult`."""

    version = "version"
    certificate_chain = "certificate_chain"
    identity = "identity"
    signature = "signature"
    transparency = "transparency"


class DistributionFile(BaseModel):
    """A distribution file as listed on the index: its filename and raw bytes."""

    model_config = ConfigDict(frozen=True)

    name: str
    contents: bytes

    @classmethod
    def from_path(cls, path: str | Path, name: str | None = None) -> DistributionFile:
        file_path = Path(path)
        return cls(name=name or file_path.name, contents=file_path.read_bytes())


class AttestationPayload(BaseModel):
    """The statement that gets canonicalised and signed."""

    distribution: str
    digest: str = Field(pattern=r"^[0-9a-f]{64}$")


class InclusionProof(_OpenModel):
    """Merkle audit path for a transparency log entry."""

    log_index: int = Field(ge=0)
    root_hash: str
    tree_size: int = Field(ge=0)
    hashes: list[str] = Field(default_factory=list)  # hex, leaf to root
    checkpoint: str
    cosigned_checkpoints: list[str] = Field(default_factory=list)


class TransparencyLogEntry(_OpenModel):
    """A record in an append-only transparency log."""

    log_index: int = Field(ge=0)
    log_id: str
    entry_kind: str
    entry_version: str
    integrated_time: int
    inclusion_proof: InclusionProof
    canonicalized_body: str  # Base-64 encoded canonical log entry
    inclusion_promise: str | None = None  # Base-64 signed entry timestamp

    @field_validator("canonicalized_body")
    @classmethod
    def _body_is_base64(cls, v: str) -> str:
        return _check_base64(v)

    @field_validator("inclusion_promise")
    @classmethod
    def _promise_is_base64(cls, v: str | None) -> str | None:
        return v if v is None else _check_base64(v)

    @property
    def body_bytes(self) -> bytes:
        return base64.b64decode(self.canonicalized_body)


class VerificationMaterial(_OpenModel):
    """Everything a verifier needs besides the signature itself."""

    certificate: str  # Base-64 encoded DER
    transparency_entries: list[TransparencyLogEntry] = Field(default_factory=list)

    @field_validator("certificate")
    @classmethod
    def _certificate_is_base64(cls, v: str) -> str:
        return _check_base64(v)

    @property
    def certificate_der(self) -> bytes:
        return base64.b64decode(self.certificate)


class Attestation(_OpenModel):
    """A signed claim binding a distribution filename to its content digest.

    ``version`` is a plain int so that objects from a newer suite still parse
    and can be rejected with an explicit reason.
    """

    version: int
    verification_material: VerificationMaterial
    message_signature: str  # Base-64 encoded raw signature

    @field_validator("message_signature")
    @classmethod
    def _signature_is_base64(cls, v: str) -> str:
        return _check_base64(v)

    @property
    def signature_bytes(self) -> bytes:
        return base64.b64decode(self.message_signature)


class Publisher(_OpenModel):
    """Identity of the party whose key produced a set of attestations."""

    kind: str
    claims: dict[str, Any] = Field(default_factory=dict)


class AttestationBundle(_OpenModel):
    """All attestations produced by one publisher."""

    publisher: Publisher
    attestations: list[Attestation] = Field(default_factory=list)


class Provenance(_OpenModel):
    """Index-served aggregate of attestation bundles for one distribution file."""

    version: int = PROVENANCE_VERSION
    attestation_bundles: list[AttestationBundle] = Field(default_factory=list)

    def iter_attestations(self) -> list[tuple[Publisher, Attestation]]:
        return [
            (bundle.publisher, attestation)
            for bundle in self.attestation_bundles
            for attestation in bundle.attestations
        ]


class VerificationResult(BaseModel):
    """Outcome of verifying one attestation against a distribution."""

    valid: bool
    checks: list[Check] = Field(default_factory=list)
    failure: FailureKind | None = None
    error: str | None = None
    distribution: str | None = None
    digest: str | None = None

    def raise_for_failure(self) -> None:
        """Raise the typed verification error if this result is a rejection."""
        if self.failure is not None:
            raise ERRORS_BY_KIND[self.failure](self.error or self.failure.value)


__all__ = [
    "ATTESTATION_VERSION",
    "PROVENANCE_VERSION",
    "Attestation",
    "AttestationBundle",
    "AttestationPayload",
    "Check",
    "DistributionFile",
    "InclusionProof",
    "Provenance",
    "Publisher",
    "TransparencyLogEntry",
    "VerificationMaterial",
    "VerificationResult",
]
