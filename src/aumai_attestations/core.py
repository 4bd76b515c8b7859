"""Attestation construction, signing and verification for distribution files."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID

from aumai_attestations import canonical
from aumai_attestations.config import VerificationPolicy
from aumai_attestations.digest import digest
from aumai_attestations.errors import (
    EncodingError,
    IdentityMismatch,
    MalformedInclusionProof,
    SignatureInvalid,
    SigningError,
    TransparencyCheckFailed,
    UnsupportedVersion,
    UntrustedCertificate,
    VerificationError,
)
from aumai_attestations.identity import IdentityPolicy, PredicatePolicy, policy_for_publisher
from aumai_attestations.models import (
    ATTESTATION_VERSION,
    Attestation,
    AttestationPayload,
    Check,
    Provenance,
    Publisher,
    TransparencyLogEntry,
    VerificationMaterial,
    VerificationResult,
)
from aumai_attestations.transparency import (
    TransparencyLogClient,
    parse_entry_body,
    verify_inclusion,
    verify_inclusion_promise,
)

logger: logging.Logger = logging.getLogger(__name__)

IdentityLike = IdentityPolicy | Callable[[x509.Certificate], bool]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _distribution_name(name: str | bytes) -> str:
    if isinstance(name, bytes):
        try:
            return name.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise EncodingError(f"Distribution name is not valid UTF-8: {name!r}") from exc
    return name


def canonical_payload(distribution_name: str | bytes, contents: bytes) -> bytes:
    """Rebuild the exact bytes that get signed for *distribution_name* and *contents*."""
    name = _distribution_name(distribution_name)
    payload = AttestationPayload(distribution=name, digest=digest(contents))
    return canonical.encode(payload)


def _spki(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_certificate(data: bytes) -> x509.Certificate:
    """Load a PEM or DER certificate."""
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


# ---------------------------------------------------------------------------
# Cryptographic suites
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CryptoSuite:
    """One attestation ``version``: certificate format, signature and digest algorithms."""

    version: int
    curve: type[ec.EllipticCurve]
    hash_algorithm: type[hashes.HashAlgorithm]

    def signing_key(self, key: object) -> ec.EllipticCurvePrivateKey:
        if not isinstance(key, ec.EllipticCurvePrivateKey) or not isinstance(
            key.curve, self.curve
        ):
            raise SigningError(
                f"Unsupported key type: {type(key).__name__}. "
                f"Attestation version {self.version} signs with ECDSA {self.curve.name}."
            )
        return key

    def accepts_public_key(self, key: object) -> bool:
        return isinstance(key, ec.EllipticCurvePublicKey) and isinstance(key.curve, self.curve)

    def sign(self, key: ec.EllipticCurvePrivateKey, data: bytes) -> bytes:
        return key.sign(data, ec.ECDSA(self.hash_algorithm()))

    def verify(self, key: ec.EllipticCurvePublicKey, signature: bytes, data: bytes) -> None:
        try:
            key.verify(signature, data, ec.ECDSA(self.hash_algorithm()))
        except InvalidSignature as exc:
            raise SignatureInvalid("Signature does not match the reconstructed payload") from exc


SUITES: dict[int, CryptoSuite] = {
    1: CryptoSuite(version=1, curve=ec.SECP256R1, hash_algorithm=hashes.SHA256),
}


# ---------------------------------------------------------------------------
# KeyManager
# ---------------------------------------------------------------------------


class KeyManager:
    """Generate, persist, and load ECDSA P-256 signing keys and certificates."""

    def generate_keypair(self, passphrase: bytes | None = None) -> tuple[bytes, bytes]:
        """Generate a fresh P-256 key pair.

        Args:
            passphrase: Optional passphrase to encrypt the private key PEM.

        Returns:
            A tuple of ``(private_key_bytes, public_key_bytes)`` in PEM format.
        """
        encryption: serialization.KeySerializationEncryption = (
            serialization.BestAvailableEncryption(passphrase)
            if passphrase is not None
            else serialization.NoEncryption()
        )
        private_key = ec.generate_private_key(ec.SECP256R1())
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return private_pem, public_pem

    def save_keypair(self, private_key: bytes, public_key: bytes, path: str) -> None:
        """Write the PEM-encoded key pair to *path*/private.pem and *path*/public.pem.

        The private key file is written with mode 0o600 on POSIX systems.
        """
        out_dir = Path(path)
        out_dir.mkdir(parents=True, exist_ok=True)

        private_file = out_dir / "private.pem"
        public_file = out_dir / "public.pem"

        private_file.write_bytes(private_key)
        public_file.write_bytes(public_key)

        try:
            os.chmod(private_file, 0o600)
        except NotImplementedError:
            pass  # Windows

    def load_private_key(self, path: str, password: bytes | None = None) -> bytes:
        """Read and return raw PEM bytes from *path*, checking they decrypt with *password*."""
        pem_bytes = Path(path).read_bytes()
        serialization.load_pem_private_key(pem_bytes, password=password)
        return pem_bytes

    def load_certificates(self, path: str) -> list[x509.Certificate]:
        """Read every PEM certificate in the bundle at *path*."""
        return x509.load_pem_x509_certificates(Path(path).read_bytes())


# ---------------------------------------------------------------------------
# AttestationBuilder
# ---------------------------------------------------------------------------


class AttestationBuilder:
    """Build and sign attestation objects for distribution files."""

    def __init__(self, version: int = ATTESTATION_VERSION) -> None:
        if version not in SUITES:
            raise UnsupportedVersion(f"No cryptographic suite for attestation version {version}")
        self._suite = SUITES[version]

    def build(
        self,
        distribution_name: str | bytes,
        contents: bytes,
        signing_key: ec.EllipticCurvePrivateKey | bytes,
        certificate: x509.Certificate | bytes,
        transparency_entries: Sequence[TransparencyLogEntry] = (),
        transparency_log: TransparencyLogClient | None = None,
        password: bytes | None = None,
    ) -> Attestation:
        """Sign the canonical payload for *distribution_name* and *contents*.

        Args:
            distribution_name: The filename as listed on the index.
            contents: The distribution's bytes.
            signing_key: A P-256 private key, or its PEM encoding.
            certificate: The signing certificate (object, PEM or DER).
            transparency_entries: Entries already recorded for this signature.
            transparency_log: Optional log the signed attestation is submitted
                to; the returned entry is appended after *transparency_entries*.
            password: Passphrase for an encrypted PEM *signing_key*.

        Returns:
            A complete :class:`Attestation`. Nothing is returned on failure.

        Raises:
            EncodingError: if *distribution_name* is not valid UTF-8.
            SigningError: if the key is not ECDSA P-256 or does not match *certificate*.
        """
        payload = canonical_payload(distribution_name, contents)
        key = self._load_signing_key(signing_key, password)
        cert = self._load_certificate(certificate)

        if _spki(cert.public_key()) != _spki(key.public_key()):  # type: ignore[arg-type]
            raise SigningError("Signing key does not match the certificate's public key")

        raw_sig = self._suite.sign(key, payload)
        cert_der = cert.public_bytes(serialization.Encoding.DER)

        entries = list(transparency_entries)
        if transparency_log is not None:
            entry = transparency_log.submit(
                raw_sig, cert_der, hashlib.sha256(payload).hexdigest()
            )
            entries.append(entry)
            logger.debug("Recorded signature in transparency log at index %d", entry.log_index)

        attestation = Attestation(
            version=self._suite.version,
            verification_material=VerificationMaterial(
                certificate=base64.b64encode(cert_der).decode("ascii"),
                transparency_entries=entries,
            ),
            message_signature=base64.b64encode(raw_sig).decode("ascii"),
        )
        logger.debug("Built attestation for %s", _distribution_name(distribution_name))
        return attestation

    def _load_signing_key(
        self, signing_key: ec.EllipticCurvePrivateKey | bytes, password: bytes | None
    ) -> ec.EllipticCurvePrivateKey:
        key: object = signing_key
        if isinstance(signing_key, bytes):
            try:
                key = serialization.load_pem_private_key(signing_key, password=password)
            except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
                raise SigningError(f"Cannot load signing key: {exc}") from exc
        return self._suite.signing_key(key)

    def _load_certificate(self, certificate: x509.Certificate | bytes) -> x509.Certificate:
        if isinstance(certificate, x509.Certificate):
            return certificate
        try:
            return load_certificate(certificate)
        except ValueError as exc:
            raise SigningError(f"Cannot load signing certificate: {exc}") from exc


# ---------------------------------------------------------------------------
# AttestationVerifier
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TrustRoots:
    """Certificates a verifier trusts: anchors, plus intermediates used for path building."""

    anchors: tuple[x509.Certificate, ...]
    intermediates: tuple[x509.Certificate, ...] = ()

    @classmethod
    def from_pem(cls, anchors: bytes, intermediates: bytes | None = None) -> TrustRoots:
        return cls(
            anchors=tuple(x509.load_pem_x509_certificates(anchors)),
            intermediates=tuple(x509.load_pem_x509_certificates(intermediates))
            if intermediates
            else (),
        )

    def is_anchor(self, certificate: x509.Certificate) -> bool:
        return certificate in self.anchors


class AttestationVerifier:
    """Verify attestation objects against a distribution and a trust configuration."""

    def __init__(
        self,
        trust_roots: TrustRoots,
        policy: VerificationPolicy | None = None,
        log_keys: Mapping[str, ec.EllipticCurvePublicKey] | None = None,
        witness_keys: Mapping[str, ec.EllipticCurvePublicKey] | None = None,
    ) -> None:
        self._trust_roots = trust_roots
        self._policy = policy or VerificationPolicy()
        self._log_keys = dict(log_keys or {})
        self._witness_keys = dict(witness_keys) if witness_keys is not None else None

    def verify(
        self,
        attestation: Attestation,
        distribution_name: str | bytes,
        contents: bytes,
        identity: IdentityLike | None = None,
        at: datetime | None = None,
    ) -> VerificationResult:
        """Verify *attestation* for *distribution_name* with *contents*.

        Mandatory checks run cheapest first: version, certificate path,
        identity (when *identity* is given), then the signature over the
        independently reconstructed payload. Transparency entries are checked
        when the policy enables it.

        Args:
            attestation: The attestation object to verify.
            distribution_name: The filename the caller expects.
            contents: The distribution's bytes.
            identity: Policy or predicate the signing certificate must satisfy.
            at: Time to validate the certificate path at.

        Returns:
            A :class:`VerificationResult` listing the checks that passed, or
            the failure kind of the first one that did not.

        Raises:
            EncodingError: if *distribution_name* is not valid UTF-8.
        """
        name = _distribution_name(distribution_name)
        checks: list[Check] = []
        try:
            self._verify(attestation, name, contents, identity, at, checks)
        except VerificationError as exc:
            logger.warning("Attestation for %s rejected (%s): %s", name, exc.kind.value, exc)
            return VerificationResult(
                valid=False,
                checks=checks,
                failure=exc.kind,
                error=str(exc),
                distribution=name,
            )

        logger.debug("Attestation for %s verified: %s", name, [c.value for c in checks])
        return VerificationResult(
            valid=True, checks=checks, distribution=name, digest=digest(contents)
        )

    def verify_provenance(
        self,
        provenance: Provenance,
        distribution_name: str | bytes,
        contents: bytes,
        identity: IdentityLike | None = None,
        use_publisher_identity: bool = False,
        at: datetime | None = None,
    ) -> list[VerificationResult]:
        """Verify every attestation in *provenance*, in parallel, preserving order.

        With *use_publisher_identity*, each bundle's publisher determines the
        identity policy for its own attestations instead of *identity*.
        """
        jobs = provenance.iter_attestations()

        def run(job: tuple[Publisher, Attestation]) -> VerificationResult:
            publisher, attestation = job
            policy: IdentityLike | None = identity
            if use_publisher_identity:
                try:
                    policy = policy_for_publisher(publisher)
                except ValueError as exc:
                    return VerificationResult(
                        valid=False,
                        failure=IdentityMismatch.kind,
                        error=str(exc),
                        distribution=_distribution_name(distribution_name),
                    )
            return self.verify(attestation, distribution_name, contents, policy, at)

        with ThreadPoolExecutor(max_workers=self._policy.max_workers) as pool:
            return list(pool.map(run, jobs))

    def _verify(
        self,
        attestation: Attestation,
        name: str,
        contents: bytes,
        identity: IdentityLike | None,
        at: datetime | None,
        checks: list[Check],
    ) -> None:
        suite = SUITES.get(attestation.version)
        if suite is None:
            raise UnsupportedVersion(
                f"Unsupported attestation version {attestation.version}; "
                f"supported: {sorted(SUITES)}"
            )
        checks.append(Check.version)

        material = attestation.verification_material
        try:
            certificate = x509.load_der_x509_certificate(material.certificate_der)
        except ValueError as exc:
            raise UntrustedCertificate(f"Certificate is not valid DER: {exc}") from exc

        entries = material.transparency_entries
        when = at or self._validation_time(entries)
        self._validate_path(certificate, when, suite)
        checks.append(Check.certificate_chain)

        if identity is not None:
            policy = identity if isinstance(identity, IdentityPolicy) else PredicatePolicy(identity)
            policy.verify(certificate)
            checks.append(Check.identity)

        payload = canonical_payload(name, contents)
        suite.verify(
            certificate.public_key(),  # type: ignore[arg-type]
            attestation.signature_bytes,
            payload,
        )
        checks.append(Check.signature)

        if self._policy.verify_transparency:
            self._verify_transparency(attestation, certificate, payload)
            checks.append(Check.transparency)

    def _validation_time(self, entries: Sequence[TransparencyLogEntry]) -> datetime:
        # Only integration times the log itself signed may move the clock back.
        if self._policy.verify_transparency:
            promised = [e.integrated_time for e in entries if self._promise_verifies(e)]
            if promised:
                return datetime.fromtimestamp(min(promised), tz=UTC)
        return datetime.now(tz=UTC)

    def _promise_verifies(self, entry: TransparencyLogEntry) -> bool:
        try:
            verify_inclusion_promise(entry, self._log_keys)
        except MalformedInclusionProof:
            return False
        return True

    # ------------------------------------------------------------------
    # Certificate path validation
    # ------------------------------------------------------------------

    def _find_issuer(self, certificate: x509.Certificate) -> x509.Certificate | None:
        for candidate in (*self._trust_roots.anchors, *self._trust_roots.intermediates):
            if candidate == certificate or candidate.subject != certificate.issuer:
                continue
            try:
                certificate.verify_directly_issued_by(candidate)
            except (ValueError, TypeError, InvalidSignature):
                continue
            return candidate
        return None

    def _build_path(self, leaf: x509.Certificate) -> list[x509.Certificate]:
        path = [leaf]
        current = leaf
        for _ in range(self._policy.max_chain_depth):
            issuer = self._find_issuer(current)
            if issuer is None:
                raise UntrustedCertificate(
                    f"No trusted issuer for {current.subject.rfc4514_string()}"
                )
            path.append(issuer)
            if self._trust_roots.is_anchor(issuer):
                return path
            current = issuer
        raise UntrustedCertificate(
            f"Certificate chain exceeds maximum depth {self._policy.max_chain_depth}"
        )

    def _validate_path(
        self, leaf: x509.Certificate, when: datetime, suite: CryptoSuite
    ) -> None:
        if not suite.accepts_public_key(leaf.public_key()):
            raise UntrustedCertificate(
                f"Certificate key is not ECDSA {suite.curve.name} as version {suite.version} requires"
            )

        path = self._build_path(leaf)
        for cert in path:
            if not cert.not_valid_before_utc <= when <= cert.not_valid_after_utc:
                raise UntrustedCertificate(
                    f"{cert.subject.rfc4514_string()} is not valid at {when.isoformat()}"
                )

        self._check_leaf_usage(leaf)
        for depth, issuer in enumerate(path[1:]):
            self._check_issuer_usage(issuer, depth)

    def _check_leaf_usage(self, leaf: x509.Certificate) -> None:
        try:
            constraints = leaf.extensions.get_extension_for_class(x509.BasicConstraints)
            if constraints.value.ca:
                raise UntrustedCertificate("Signing certificate must not be a CA")
        except x509.ExtensionNotFound:
            pass

        try:
            usage = leaf.extensions.get_extension_for_class(x509.KeyUsage)
        except x509.ExtensionNotFound as exc:
            raise UntrustedCertificate("Signing certificate has no key usage") from exc
        if not usage.value.digital_signature:
            raise UntrustedCertificate("Signing certificate lacks digitalSignature usage")

        try:
            ext_usage = leaf.extensions.get_extension_for_class(x509.ExtendedKeyUsage)
        except x509.ExtensionNotFound:
            return
        if ExtendedKeyUsageOID.CODE_SIGNING not in ext_usage.value:
            raise UntrustedCertificate("Signing certificate lacks codeSigning extended usage")

    def _check_issuer_usage(self, issuer: x509.Certificate, intermediates_below: int) -> None:
        subject = issuer.subject.rfc4514_string()
        try:
            constraints = issuer.extensions.get_extension_for_class(x509.BasicConstraints)
        except x509.ExtensionNotFound as exc:
            raise UntrustedCertificate(f"{subject} has no basic constraints") from exc
        if not constraints.value.ca:
            raise UntrustedCertificate(f"{subject} is not a CA")
        path_length = constraints.value.path_length
        if path_length is not None and intermediates_below > path_length:
            raise UntrustedCertificate(f"{subject} path length constraint exceeded")

        try:
            usage = issuer.extensions.get_extension_for_class(x509.KeyUsage)
        except x509.ExtensionNotFound:
            return
        if not usage.value.key_cert_sign:
            raise UntrustedCertificate(f"{subject} may not sign certificates")

    # ------------------------------------------------------------------
    # Transparency
    # ------------------------------------------------------------------

    def _verify_transparency(
        self, attestation: Attestation, certificate: x509.Certificate, payload: bytes
    ) -> None:
        entries = attestation.verification_material.transparency_entries
        if len(entries) < self._policy.min_transparency_entries:
            raise TransparencyCheckFailed(
                f"Expected at least {self._policy.min_transparency_entries} "
                f"transparency entries, got {len(entries)}"
            )

        not_before = certificate.not_valid_before_utc.timestamp()
        not_after = certificate.not_valid_after_utc.timestamp()
        payload_digest = hashlib.sha256(payload).hexdigest()

        for entry in entries:
            if not verify_inclusion(entry, self._log_keys, self._witness_keys):
                raise TransparencyCheckFailed(
                    f"Inclusion proof for log entry {entry.log_index} did not verify"
                )
            self._check_entry_binding(entry, attestation, payload_digest)
            if not not_before <= entry.integrated_time <= not_after:
                raise TransparencyCheckFailed(
                    f"Log entry {entry.log_index} was integrated outside the "
                    "certificate validity window"
                )

    @staticmethod
    def _check_entry_binding(
        entry: TransparencyLogEntry, attestation: Attestation, payload_digest: str
    ) -> None:
        try:
            body = parse_entry_body(entry)
            spec = body["spec"]
            signature = base64.b64decode(spec["signature"]["content"], validate=True)
            certificate = base64.b64decode(
                spec["signature"]["publicKey"]["content"], validate=True
            )
            recorded_digest = spec["data"]["hash"]["value"]
        except (MalformedInclusionProof, KeyError, TypeError, ValueError) as exc:
            raise TransparencyCheckFailed(
                f"Log entry {entry.log_index} body is malformed: {exc}"
            ) from exc

        if body.get("kind") != entry.entry_kind or body.get("apiVersion") != entry.entry_version:
            raise TransparencyCheckFailed(
                f"Log entry {entry.log_index} kind/version does not match its body"
            )
        if signature != attestation.signature_bytes:
            raise TransparencyCheckFailed(
                f"Log entry {entry.log_index} records a different signature"
            )
        if certificate != attestation.verification_material.certificate_der:
            raise TransparencyCheckFailed(
                f"Log entry {entry.log_index} records a different certificate"
            )
        if recorded_digest != payload_digest:
            raise TransparencyCheckFailed(
                f"Log entry {entry.log_index} records a different payload"
            )


__all__ = [
    "SUITES",
    "AttestationBuilder",
    "AttestationVerifier",
    "CryptoSuite",
    "KeyManager",
    "TrustRoots",
    "canonical_payload",
    "load_certificate",
]
