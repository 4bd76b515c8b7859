"""aumai-attestations quickstart — working demonstrations of the major features.

Run this file directly to verify your installation and see the features in action:

    python examples/quickstart.py

A throwaway certificate authority is created in memory; nothing is written to disk
except inside a temporary directory that is cleaned up afterwards.
"""

from __future__ import annotations

import tempfile
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from aumai_attestations import (
    AttestationBuilder,
    AttestationBundle,
    AttestationVerifier,
    DistributionFile,
    Identity,
    ProvenanceLedger,
    Publisher,
    TransparencyLog,
    TrustRoots,
)
from aumai_attestations.identity import GITHUB_OIDC_ISSUER, OIDC_ISSUER_V2_OID

WORKFLOW = "https://github.com/pypa/sampleproject/.github/workflows/release.yml@refs/heads/main"


# ---------------------------------------------------------------------------
# A throwaway CA issuing CI-style signing certificates
# ---------------------------------------------------------------------------


def _issue(
    subject: str,
    key: ec.EllipticCurvePublicKey,
    issuer: str,
    issuer_key: ec.EllipticCurvePrivateKey,
    ca: bool,
) -> x509.Certificate:
    now = datetime.now(tz=UTC)
    builder = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)]))
        .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer)]))
        .public_key(key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(now + timedelta(minutes=10 if not ca else 60 * 24))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=not ca,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=ca,
                crl_sign=ca,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
    )
    if not ca:
        issuer_value = GITHUB_OIDC_ISSUER.encode()
        builder = (
            builder.add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]), critical=False
            )
            .add_extension(
                x509.SubjectAlternativeName([x509.UniformResourceIdentifier(WORKFLOW)]),
                critical=False,
            )
            .add_extension(
                x509.UnrecognizedExtension(
                    OIDC_ISSUER_V2_OID, bytes([0x0C, len(issuer_value)]) + issuer_value
                ),
                critical=False,
            )
        )
    return builder.sign(issuer_key, hashes.SHA256())


def _setup() -> tuple[TrustRoots, ec.EllipticCurvePrivateKey, x509.Certificate]:
    root_key = ec.generate_private_key(ec.SECP256R1())
    root = _issue("Demo Root", root_key.public_key(), "Demo Root", root_key, ca=True)
    signing_key = ec.generate_private_key(ec.SECP256R1())
    leaf = _issue("sigstore", signing_key.public_key(), "Demo Root", root_key, ca=False)
    return TrustRoots(anchors=(root,)), signing_key, leaf


# ---------------------------------------------------------------------------
# Demo 1 — Attest and verify with a transparency log
# ---------------------------------------------------------------------------


def demo_attest_and_verify() -> None:
    """Sign a distribution, record it in a log, and verify it end to end."""

    print("\n=== Demo 1: Attest & Verify ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        wheel = Path(tmpdir) / "sampleproject-1.2.0-py2.py3-none-any.whl"
        wheel.write_bytes(b"PK\x03\x04 demo wheel")
        dist = DistributionFile.from_path(wheel)

        roots, signing_key, cert = _setup()
        log = TransparencyLog()
        attestation = AttestationBuilder().build(
            dist.name, dist.contents, signing_key, cert, transparency_log=log
        )
        print(f"  Attestation version : {attestation.version}")
        print(f"  Log entries         : {len(attestation.verification_material.transparency_entries)}")

        verifier = AttestationVerifier(roots, log_keys={log.log_id: log.public_key})
        result = verifier.verify(
            attestation,
            dist.name,
            dist.contents,
            identity=Identity(WORKFLOW, issuer=GITHUB_OIDC_ISSUER),
        )
        print(f"  Valid               : {result.valid}")
        print(f"  Checks              : {[check.value for check in result.checks]}")


# ---------------------------------------------------------------------------
# Demo 2 — A renamed distribution is rejected
# ---------------------------------------------------------------------------


def demo_rename_rejected() -> None:
    """The filename is part of the signed payload, so renaming breaks the signature."""

    print("\n=== Demo 2: Renamed Distribution ===")

    roots, signing_key, cert = _setup()
    log = TransparencyLog()
    contents = b"demo sdist"
    attestation = AttestationBuilder().build(
        "sampleproject-1.2.0.tar.gz", contents, signing_key, cert, transparency_log=log
    )

    verifier = AttestationVerifier(roots, log_keys={log.log_id: log.public_key})
    result = verifier.verify(attestation, "sampleproject-1.2.1.tar.gz", contents)
    print(f"  Valid   : {result.valid}")
    print(f"  Failure : {result.failure.value if result.failure else None}")


# ---------------------------------------------------------------------------
# Demo 3 — Provenance records and publisher identities
# ---------------------------------------------------------------------------


def demo_provenance() -> None:
    """Collect attestations into a persisted provenance record and verify it."""

    print("\n=== Demo 3: Provenance ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        roots, signing_key, cert = _setup()
        log = TransparencyLog()
        name = "sampleproject-1.2.0-py2.py3-none-any.whl"
        contents = b"PK\x03\x04 demo wheel"
        publisher = Publisher(
            kind="GitHub",
            repository="pypa/sampleproject",
            workflow="release.yml",
            claims={"ref": "refs/heads/main"},
        )

        ledger = ProvenanceLedger(str(Path(tmpdir) / "ledger.json"))
        for _ in range(2):
            attestation = AttestationBuilder().build(
                name, contents, signing_key, cert, transparency_log=log
            )
            ledger.append(name, AttestationBundle(publisher=publisher, attestations=[attestation]))

        record = ledger.get(name)
        assert record is not None
        print(f"  Sequence     : {ledger.sequence(name)}")
        print(f"  Bundles      : {len(record.attestation_bundles)}")
        print(f"  Attestations : {len(record.attestation_bundles[0].attestations)}")

        verifier = AttestationVerifier(roots, log_keys={log.log_id: log.public_key})
        results = verifier.verify_provenance(
            record, name, contents, use_publisher_identity=True
        )
        print(f"  All valid    : {all(r.valid for r in results)}")


if __name__ == "__main__":
    demo_attest_and_verify()
    demo_rename_rejected()
    demo_provenance()
    print("\nAll demos complete.")
