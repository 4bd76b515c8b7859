"""Shared test fixtures for aumai-attestations."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from aumai_attestations.config import VerificationPolicy
from aumai_attestations.core import AttestationBuilder, AttestationVerifier, KeyManager, TrustRoots
from aumai_attestations.identity import GITHUB_OIDC_ISSUER, OIDC_ISSUER_V2_OID
from aumai_attestations.models import Attestation, AttestationBundle, Publisher
from aumai_attestations.transparency import TransparencyLog

DIST_NAME = "sampleproject-1.2.0-py2.py3-none-any.whl"
DIST_CONTENTS = b"X"
WORKFLOW_IDENTITY = (
    "https://github.com/pypa/sampleproject/.github/workflows/release.yml@refs/heads/main"
)

CertFactory = Callable[..., x509.Certificate]


def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def _key_usage(*, digital_signature: bool, key_cert_sign: bool) -> x509.KeyUsage:
    return x509.KeyUsage(
        digital_signature=digital_signature,
        content_commitment=False,
        key_encipherment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=key_cert_sign,
        crl_sign=key_cert_sign,
        encipher_only=False,
        decipher_only=False,
    )


def _der_utf8(value: str) -> bytes:
    raw = value.encode("utf-8")
    return bytes([0x0C, len(raw)]) + raw


def make_certificate(
    subject: str,
    public_key: ec.EllipticCurvePublicKey,
    issuer: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    *,
    ca: bool = False,
    path_length: int | None = None,
    not_before: datetime | None = None,
    not_after: datetime | None = None,
    identity: str | None = WORKFLOW_IDENTITY,
    oidc_issuer: str | None = GITHUB_OIDC_ISSUER,
    key_usage: bool = True,
    code_signing: bool = True,
) -> x509.Certificate:
    """Issue a test certificate; leaf defaults mirror a CI workflow identity."""
    now = datetime.now(tz=UTC)
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject))
        .issuer_name(_name(issuer))
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(hours=1))
        .not_valid_after(not_after or now + timedelta(hours=1))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=path_length), critical=True)
    )
    if key_usage:
        builder = builder.add_extension(
            _key_usage(digital_signature=not ca, key_cert_sign=ca), critical=True
        )
    if not ca:
        if code_signing:
            builder = builder.add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]), critical=False
            )
        if identity is not None:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.UniformResourceIdentifier(identity)]),
                critical=False,
            )
        if oidc_issuer is not None:
            builder = builder.add_extension(
                x509.UnrecognizedExtension(OIDC_ISSUER_V2_OID, _der_utf8(oidc_issuer)),
                critical=False,
            )
    return builder.sign(issuer_key, hashes.SHA256())


# ---------------------------------------------------------------------------
# Keys and certificate authority
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def key_manager() -> KeyManager:
    return KeyManager()


@pytest.fixture(scope="session")
def root_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def intermediate_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def root_cert(root_key: ec.EllipticCurvePrivateKey) -> x509.Certificate:
    now = datetime.now(tz=UTC)
    return make_certificate(
        "Test Root CA",
        root_key.public_key(),
        "Test Root CA",
        root_key,
        ca=True,
        path_length=1,
        not_before=now - timedelta(days=365),
        not_after=now + timedelta(days=365),
    )


@pytest.fixture(scope="session")
def intermediate_cert(
    root_key: ec.EllipticCurvePrivateKey, intermediate_key: ec.EllipticCurvePrivateKey
) -> x509.Certificate:
    now = datetime.now(tz=UTC)
    return make_certificate(
        "Test Intermediate CA",
        intermediate_key.public_key(),
        "Test Root CA",
        root_key,
        ca=True,
        path_length=0,
        not_before=now - timedelta(days=30),
        not_after=now + timedelta(days=30),
    )


@pytest.fixture(scope="session")
def signing_cert(
    intermediate_key: ec.EllipticCurvePrivateKey, signing_key: ec.EllipticCurvePrivateKey
) -> x509.Certificate:
    return make_certificate(
        "sigstore",
        signing_key.public_key(),
        "Test Intermediate CA",
        intermediate_key,
    )


@pytest.fixture(scope="session")
def issue_leaf(
    intermediate_key: ec.EllipticCurvePrivateKey,
) -> Callable[..., x509.Certificate]:
    """Issue further leaf certificates from the test intermediate."""

    def _issue(public_key: ec.EllipticCurvePublicKey, **kwargs: object) -> x509.Certificate:
        return make_certificate(
            "sigstore", public_key, "Test Intermediate CA", intermediate_key, **kwargs
        )

    return _issue


@pytest.fixture(scope="session")
def trust_roots(root_cert: x509.Certificate, intermediate_cert: x509.Certificate) -> TrustRoots:
    return TrustRoots(anchors=(root_cert,), intermediates=(intermediate_cert,))


@pytest.fixture(scope="session")
def signing_key_pem(signing_key: ec.EllipticCurvePrivateKey) -> bytes:
    return signing_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


# ---------------------------------------------------------------------------
# Transparency log
# ---------------------------------------------------------------------------


@pytest.fixture()
def transparency_log() -> TransparencyLog:
    return TransparencyLog()


@pytest.fixture()
def verifier(trust_roots: TrustRoots, transparency_log: TransparencyLog) -> AttestationVerifier:
    return AttestationVerifier(
        trust_roots, log_keys={transparency_log.log_id: transparency_log.public_key}
    )


@pytest.fixture()
def offline_verifier(trust_roots: TrustRoots) -> AttestationVerifier:
    """A verifier that skips transparency checks."""
    return AttestationVerifier(trust_roots, policy=VerificationPolicy(verify_transparency=False))


# ---------------------------------------------------------------------------
# Attestations
# ---------------------------------------------------------------------------


@pytest.fixture()
def attestation(
    signing_key: ec.EllipticCurvePrivateKey,
    signing_cert: x509.Certificate,
    transparency_log: TransparencyLog,
) -> Attestation:
    """An attestation for DIST_NAME recorded in the test transparency log."""
    return AttestationBuilder().build(
        DIST_NAME,
        DIST_CONTENTS,
        signing_key,
        signing_cert,
        transparency_log=transparency_log,
    )


@pytest.fixture()
def github_publisher() -> Publisher:
    return Publisher(
        kind="GitHub",
        repository="pypa/sampleproject",
        workflow="release.yml",
        environment=None,
        claims={"ref": "refs/heads/main", "sha": "0" * 40},
    )


@pytest.fixture()
def github_bundle(github_publisher: Publisher, attestation: Attestation) -> AttestationBundle:
    return AttestationBundle(publisher=github_publisher, attestations=[attestation])
