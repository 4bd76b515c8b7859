"""CLI entry point for aumai-attestations."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from pydantic import ValidationError

from aumai_attestations.config import VerificationPolicy, load_policy
from aumai_attestations.core import AttestationBuilder, AttestationVerifier, KeyManager, TrustRoots
from aumai_attestations.errors import AttestationError
from aumai_attestations.identity import Identity
from aumai_attestations.models import (
    Attestation,
    AttestationBundle,
    DistributionFile,
    Provenance,
    Publisher,
    VerificationResult,
)
from aumai_attestations.provenance import merge
from aumai_attestations.transparency import log_id_for_key

LOG_FORMAT = "%(asctime)s [%(name)s:%(funcName)s:%(lineno)d] [%(levelname)s] %(message)s"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_document(path: str) -> Attestation | Provenance:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(raw, dict) and "attestation_bundles" in raw:
        return Provenance.model_validate(raw)
    return Attestation.model_validate(raw)


def _load_log_keys(paths: tuple[str, ...]) -> dict[str, ec.EllipticCurvePublicKey]:
    keys: dict[str, ec.EllipticCurvePublicKey] = {}
    for path in paths:
        key = serialization.load_pem_public_key(Path(path).read_bytes())
        if not isinstance(key, ec.EllipticCurvePublicKey):
            raise click.BadParameter(f"{path} is not an EC public key", param_hint="--log-key")
        keys[log_id_for_key(key)] = key
    return keys


def _echo_result(label: str, result: VerificationResult) -> None:
    if result.valid:
        checks = ", ".join(check.value for check in result.checks)
        click.echo(f"{label}: VALID ({checks})")
    else:
        failure = result.failure.value if result.failure else "unknown"
        click.echo(f"{label}: INVALID [{failure}] {result.error}")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(package_name="aumai-attestations")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """AumAI Attestations — sign and verify package distribution attestations."""
    logging.basicConfig(
        format=LOG_FORMAT,
        level=logging.DEBUG if verbose else logging.WARNING,
        force=True,
    )


@main.command("keygen")
@click.option(
    "--output",
    default="keys",
    show_default=True,
    metavar="DIR",
    help="Directory to write private.pem and public.pem.",
)
def keygen_command(output: str) -> None:
    """Generate an ECDSA P-256 key pair for attestation signing."""
    km = KeyManager()
    private_pem, public_pem = km.generate_keypair()
    km.save_keypair(private_pem, public_pem, output)
    click.echo(f"Key pair (ecdsa-p256) written to '{output}/'")
    click.echo(f"  Private: {output}/private.pem")
    click.echo(f"  Public : {output}/public.pem")


@main.command("attest")
@click.option("--dist", "dist_path", required=True, metavar="PATH", help="Distribution file.")
@click.option("--key", required=True, metavar="PATH", help="Private PEM key file.")
@click.option("--cert", "cert_path", required=True, metavar="PATH", help="Signing certificate (PEM or DER).")
@click.option("--name", default=None, help="Filename on the index (defaults to the file's name).")
@click.option(
    "--output",
    default=None,
    metavar="PATH",
    help="Output path for the attestation JSON (default: <dist>.attestation.json).",
)
def attest_command(
    dist_path: str, key: str, cert_path: str, name: str | None, output: str | None
) -> None:
    """Sign a distribution file and write its attestation to disk."""
    try:
        dist = DistributionFile.from_path(dist_path, name=name)
        private_pem = KeyManager().load_private_key(key)
        attestation = AttestationBuilder().build(
            dist.name, dist.contents, private_pem, Path(cert_path).read_bytes()
        )
    except (AttestationError, OSError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    out_path = Path(output) if output else Path(f"{dist_path}.attestation.json")
    out_path.write_text(attestation.model_dump_json(indent=2), encoding="utf-8")

    click.echo(f"Attestation written to: {out_path}")
    click.echo(f"  Distribution: {dist.name}")
    click.echo(f"  Version     : {attestation.version}")


@main.command("verify")
@click.option(
    "--attestation",
    "document_path",
    required=True,
    metavar="PATH",
    help="Attestation or provenance JSON.",
)
@click.option("--dist", "dist_path", required=True, metavar="PATH", help="Distribution file.")
@click.option("--name", default=None, help="Filename on the index (defaults to the file's name).")
@click.option("--trust-root", required=True, metavar="PATH", help="PEM bundle of trust anchors.")
@click.option("--intermediates", default=None, metavar="PATH", help="PEM bundle of intermediate CAs.")
@click.option("--identity", default=None, help="Required certificate identity (SAN).")
@click.option("--issuer", default=None, help="Required OIDC issuer (with --identity).")
@click.option("--log-key", multiple=True, metavar="PATH", help="Transparency log public key (PEM).")
@click.option("--policy", "policy_path", default=None, metavar="PATH", help="Verification policy .ini file.")
@click.option("--skip-transparency", is_flag=True, help="Do not check transparency entries.")
def verify_command(
    document_path: str,
    dist_path: str,
    name: str | None,
    trust_root: str,
    intermediates: str | None,
    identity: str | None,
    issuer: str | None,
    log_key: tuple[str, ...],
    policy_path: str | None,
    skip_transparency: bool,
) -> None:
    """Verify an attestation or every attestation in a provenance record."""
    try:
        policy = load_policy(policy_path) if policy_path else VerificationPolicy()
        if skip_transparency:
            policy = policy.model_copy(update={"verify_transparency": False})
        roots = TrustRoots.from_pem(
            Path(trust_root).read_bytes(),
            Path(intermediates).read_bytes() if intermediates else None,
        )
        document = _load_document(document_path)
        dist = DistributionFile.from_path(dist_path, name=name)
        verifier = AttestationVerifier(roots, policy=policy, log_keys=_load_log_keys(log_key))
    except (AttestationError, OSError, ValueError, ValidationError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    policy_identity = Identity(identity, issuer) if identity else None
    if isinstance(document, Provenance):
        results = verifier.verify_provenance(
            document, dist.name, dist.contents, identity=policy_identity
        )
    else:
        results = [verifier.verify(document, dist.name, dist.contents, identity=policy_identity)]

    for index, result in enumerate(results):
        _echo_result(f"Attestation {index}", result)
    if not results or not all(result.valid for result in results):
        sys.exit(2)


@main.command("merge")
@click.option("--provenance", "provenance_path", required=True, metavar="PATH", help="Provenance JSON (created if absent).")
@click.option("--publisher", "publisher_json", required=True, help="Publisher as a JSON object.")
@click.option("--attestation", "attestation_paths", required=True, multiple=True, metavar="PATH")
def merge_command(
    provenance_path: str, publisher_json: str, attestation_paths: tuple[str, ...]
) -> None:
    """Append attestations from one publisher to a provenance record."""
    try:
        publisher = Publisher.model_validate_json(publisher_json)
        attestations = [
            Attestation.model_validate_json(Path(path).read_text(encoding="utf-8"))
            for path in attestation_paths
        ]
        path = Path(provenance_path)
        existing = (
            Provenance.model_validate_json(path.read_text(encoding="utf-8"))
            if path.exists()
            else None
        )
        record = merge(existing, AttestationBundle(publisher=publisher, attestations=attestations))
    except (AttestationError, OSError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    path.write_text(record.model_dump_json(indent=2), encoding="utf-8")
    total = sum(len(bundle.attestations) for bundle in record.attestation_bundles)
    click.echo(f"Provenance written to: {path}")
    click.echo(f"  Bundles     : {len(record.attestation_bundles)}")
    click.echo(f"  Attestations: {total}")


@main.command("inspect")
@click.option("--file", "document_path", required=True, metavar="PATH", help="Attestation or provenance JSON.")
@click.option("--json-output", is_flag=True, help="Emit raw JSON.")
def inspect_command(document_path: str, json_output: bool) -> None:
    """Display the contents of an attestation or provenance record."""
    try:
        document = _load_document(document_path)
    except (OSError, ValueError) as exc:
        click.echo(f"Error loading document: {exc}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(document.model_dump_json(indent=2))
        return

    if isinstance(document, Provenance):
        click.echo(f"Provenance version : {document.version}")
        click.echo(f"Bundles            : {len(document.attestation_bundles)}")
        for bundle in document.attestation_bundles:
            click.echo(f"\nPublisher    : {bundle.publisher.kind}")
            for field_name, value in (bundle.publisher.model_extra or {}).items():
                click.echo(f"  {field_name}: {value}")
            click.echo(f"Attestations : {len(bundle.attestations)}")
        return

    material = document.verification_material
    click.echo(f"Version      : {document.version}")
    click.echo(f"Signature    : {document.message_signature[:24]}...")
    click.echo(f"Certificate  : {len(material.certificate_der):,} bytes")
    click.echo(f"Log entries  : {len(material.transparency_entries)}")
    for entry in material.transparency_entries:
        click.echo(
            f"  [{entry.log_index}] log {entry.log_id[:16]}...  "
            f"{entry.entry_kind}/{entry.entry_version}  integrated {entry.integrated_time}"
        )


if __name__ == "__main__":
    main()
