"""Signing identity policies and publisher identity keys."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from cryptography import x509
from cryptography.x509.oid import ObjectIdentifier

from aumai_attestations import canonical
from aumai_attestations.errors import IdentityMismatch
from aumai_attestations.models import Publisher

logger: logging.Logger = logging.getLogger(__name__)

# Fulcio certificate extensions carrying the OIDC issuer.
OIDC_ISSUER_OID = ObjectIdentifier("1.3.6.1.4.1.57264.1.1")
OIDC_ISSUER_V2_OID = ObjectIdentifier("1.3.6.1.4.1.57264.1.8")

GITHUB_OIDC_ISSUER = "https://token.actions.githubusercontent.com"
GITLAB_OIDC_ISSUER = "https://gitlab.com"

# Fields that make two publishers of the same kind the same signing identity.
IDENTITY_FIELDS: dict[str, tuple[str, ...]] = {
    "GitHub": ("repository", "workflow", "environment"),
    "GitLab": ("repository", "environment"),
}


# ---------------------------------------------------------------------------
# Certificate helpers
# ---------------------------------------------------------------------------


def certificate_identities(certificate: x509.Certificate) -> list[str]:
    """Return the URI and email subject alternative names of *certificate*."""
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return [
        *san.value.get_values_for_type(x509.UniformResourceIdentifier),
        *san.value.get_values_for_type(x509.RFC822Name),
    ]


def _der_utf8_string(raw: bytes) -> str | None:
    if len(raw) < 2 or raw[0] != 0x0C:
        return None
    length = raw[1]
    offset = 2
    if length & 0x80:
        size = length & 0x7F
        if size == 0 or len(raw) < 2 + size:
            return None
        length = int.from_bytes(raw[2 : 2 + size], "big")
        offset = 2 + size
    value = raw[offset : offset + length]
    if len(value) != length:
        return None
    return value.decode("utf-8", errors="strict")


def certificate_issuer(certificate: x509.Certificate) -> str | None:
    """Return the OIDC issuer recorded in a Fulcio-style certificate, if any."""
    for ext in certificate.extensions:
        value = ext.value
        if not isinstance(value, x509.UnrecognizedExtension):
            continue
        try:
            if ext.oid == OIDC_ISSUER_V2_OID:
                return _der_utf8_string(value.value)
            if ext.oid == OIDC_ISSUER_OID:
                return value.value.decode("utf-8")
        except UnicodeDecodeError:
            return None
    return None


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------


class IdentityPolicy(ABC):
    """A predicate over the signing certificate's identity."""

    @abstractmethod
    def verify(self, certificate: x509.Certificate) -> None:
        """Raise :class:`IdentityMismatch` unless *certificate* satisfies the policy."""


class Identity(IdentityPolicy):
    """Require an exact subject alternative name and, optionally, an OIDC issuer."""

    def __init__(self, identity: str, issuer: str | None = None) -> None:
        self._identity = identity
        self._issuer = issuer

    def verify(self, certificate: x509.Certificate) -> None:
        identities = certificate_identities(certificate)
        if self._identity not in identities:
            raise IdentityMismatch(
                f"certificate identities {identities} do not include {self._identity!r}"
            )
        if self._issuer is not None:
            issuer = certificate_issuer(certificate)
            if issuer != self._issuer:
                raise IdentityMismatch(
                    f"certificate issuer {issuer!r} is not {self._issuer!r}"
                )


class IdentityPrefix(IdentityPolicy):
    """Require a subject alternative name starting with *prefix* from *issuer*."""

    def __init__(self, prefix: str, issuer: str) -> None:
        self._prefix = prefix
        self._issuer = issuer

    def verify(self, certificate: x509.Certificate) -> None:
        issuer = certificate_issuer(certificate)
        if issuer != self._issuer:
            raise IdentityMismatch(f"certificate issuer {issuer!r} is not {self._issuer!r}")
        identities = certificate_identities(certificate)
        if not any(identity.startswith(self._prefix) for identity in identities):
            raise IdentityMismatch(
                f"no certificate identity in {identities} starts with {self._prefix!r}"
            )


class PredicatePolicy(IdentityPolicy):
    """Wrap a caller-supplied boolean predicate."""

    def __init__(
        self, predicate: Callable[[x509.Certificate], bool], description: str = "predicate"
    ) -> None:
        self._predicate = predicate
        self._description = description

    def verify(self, certificate: x509.Certificate) -> None:
        if not self._predicate(certificate):
            raise IdentityMismatch(f"certificate rejected by {self._description}")


class AllOf(IdentityPolicy):
    def __init__(self, *policies: IdentityPolicy) -> None:
        self._policies = policies

    def verify(self, certificate: x509.Certificate) -> None:
        for policy in self._policies:
            policy.verify(certificate)


class AnyOf(IdentityPolicy):
    def __init__(self, *policies: IdentityPolicy) -> None:
        if not policies:
            raise ValueError("AnyOf needs at least one policy")
        self._policies = policies

    def verify(self, certificate: x509.Certificate) -> None:
        errors: list[str] = []
        for policy in self._policies:
            try:
                policy.verify(certificate)
            except IdentityMismatch as exc:
                errors.append(str(exc))
            else:
                return
        raise IdentityMismatch("; ".join(errors))


class UnsafeNoOp(IdentityPolicy):
    """Accept any identity. Only the certificate chain is then trusted."""

    def verify(self, certificate: x509.Certificate) -> None:
        logger.warning("Identity check skipped: UnsafeNoOp policy in use")


# ---------------------------------------------------------------------------
# Publishers
# ---------------------------------------------------------------------------


def publisher_field(publisher: Publisher, name: str) -> Any:
    """Look up *name* in the publisher's extra fields, then in its claims."""
    extra = publisher.model_extra or {}
    if name in extra:
        return extra[name]
    return publisher.claims.get(name)


def publisher_identity(publisher: Publisher) -> bytes:
    """Return a canonical key under which equal signing identities collide."""
    fields = IDENTITY_FIELDS.get(publisher.kind)
    if fields is None:
        return canonical.encode({"kind": publisher.kind, "claims": publisher.claims})
    return canonical.encode(
        {"kind": publisher.kind, **{name: publisher_field(publisher, name) for name in fields}}
    )


def policy_for_publisher(publisher: Publisher) -> IdentityPolicy:
    """Derive the certificate identity policy a trusted publisher implies.

    Raises:
        ValueError: for publisher kinds without a known certificate identity.
    """
    repository = publisher_field(publisher, "repository")
    if publisher.kind == "GitHub":
        workflow = publisher_field(publisher, "workflow")
        if not repository or not workflow:
            raise ValueError("GitHub publishers need repository and workflow")
        return IdentityPrefix(
            f"https://github.com/{repository}/.github/workflows/{workflow}@",
            GITHUB_OIDC_ISSUER,
        )
    if publisher.kind == "GitLab":
        if not repository:
            raise ValueError("GitLab publishers need a repository")
        return IdentityPrefix(f"https://gitlab.com/{repository}//", GITLAB_OIDC_ISSUER)
    raise ValueError(f"No identity policy for publisher kind {publisher.kind!r}")


__all__ = [
    "GITHUB_OIDC_ISSUER",
    "GITLAB_OIDC_ISSUER",
    "IDENTITY_FIELDS",
    "OIDC_ISSUER_OID",
    "OIDC_ISSUER_V2_OID",
    "AllOf",
    "AnyOf",
    "Identity",
    "IdentityPolicy",
    "IdentityPrefix",
    "PredicatePolicy",
    "UnsafeNoOp",
    "certificate_identities",
    "certificate_issuer",
    "policy_for_publisher",
    "publisher_field",
    "publisher_identity",
]
