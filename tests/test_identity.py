"""Tests for aumai_attestations.identity — certificate identity policies."""

from __future__ import annotations

import logging
from collections.abc import Callable

import pytest
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import ec

from aumai_attestations.errors import IdentityMismatch
from aumai_attestations.identity import (
    GITHUB_OIDC_ISSUER,
    GITLAB_OIDC_ISSUER,
    AllOf,
    AnyOf,
    Identity,
    IdentityPrefix,
    PredicatePolicy,
    UnsafeNoOp,
    _der_utf8_string,
    certificate_identities,
    certificate_issuer,
    policy_for_publisher,
    publisher_identity,
)
from aumai_attestations.models import Publisher
from tests.conftest import WORKFLOW_IDENTITY

IssueLeaf = Callable[..., x509.Certificate]


def _leaf(issue_leaf: IssueLeaf, **kwargs: object) -> x509.Certificate:
    return issue_leaf(ec.generate_private_key(ec.SECP256R1()).public_key(), **kwargs)


class TestCertificateHelpers:
    def test_identities_from_san(self, signing_cert: x509.Certificate) -> None:
        assert certificate_identities(signing_cert) == [WORKFLOW_IDENTITY]

    def test_no_san_means_no_identities(self, issue_leaf: IssueLeaf) -> None:
        assert certificate_identities(_leaf(issue_leaf, identity=None)) == []

    def test_issuer_from_v2_extension(self, signing_cert: x509.Certificate) -> None:
        assert certificate_issuer(signing_cert) == GITHUB_OIDC_ISSUER

    def test_missing_issuer(self, issue_leaf: IssueLeaf) -> None:
        assert certificate_issuer(_leaf(issue_leaf, oidc_issuer=None)) is None

    def test_long_form_utf8_string(self) -> None:
        assert _der_utf8_string(b"\x0c\x81\x03abc") == "abc"

    @pytest.mark.parametrize(
        "raw",
        [
            b"\x0c\x80",  # indefinite length
            b"\x0c\x80abc",
            b"\x0c\x82\x01",  # length octets cut short
            b"\x0c\x05abc",
            b"\x04\x03abc",  # OCTET STRING, not UTF8String
        ],
    )
    def test_malformed_utf8_string_rejected(self, raw: bytes) -> None:
        assert _der_utf8_string(raw) is None


class TestIdentity:
    def test_exact_match(self, signing_cert: x509.Certificate) -> None:
        Identity(WORKFLOW_IDENTITY, issuer=GITHUB_OIDC_ISSUER).verify(signing_cert)

    def test_issuer_optional(self, signing_cert: x509.Certificate) -> None:
        Identity(WORKFLOW_IDENTITY).verify(signing_cert)

    def test_prefix_is_not_enough(self, signing_cert: x509.Certificate) -> None:
        with pytest.raises(IdentityMismatch):
            Identity(WORKFLOW_IDENTITY.rsplit("@", 1)[0]).verify(signing_cert)

    def test_wrong_issuer(self, signing_cert: x509.Certificate) -> None:
        with pytest.raises(IdentityMismatch, match="issuer"):
            Identity(WORKFLOW_IDENTITY, issuer=GITLAB_OIDC_ISSUER).verify(signing_cert)


class TestIdentityPrefix:
    def test_matching_prefix(self, signing_cert: x509.Certificate) -> None:
        IdentityPrefix(
            "https://github.com/pypa/sampleproject/.github/workflows/release.yml@",
            GITHUB_OIDC_ISSUER,
        ).verify(signing_cert)

    def test_sibling_repository_rejected(self, signing_cert: x509.Certificate) -> None:
        with pytest.raises(IdentityMismatch):
            IdentityPrefix(
                "https://github.com/pypa/sample/", GITHUB_OIDC_ISSUER
            ).verify(signing_cert)

    def test_missing_issuer_rejected(self, issue_leaf: IssueLeaf) -> None:
        cert = _leaf(issue_leaf, oidc_issuer=None)
        with pytest.raises(IdentityMismatch):
            IdentityPrefix("https://github.com/", GITHUB_OIDC_ISSUER).verify(cert)


class TestCombinators:
    def test_predicate(self, signing_cert: x509.Certificate) -> None:
        PredicatePolicy(lambda cert: True).verify(signing_cert)
        with pytest.raises(IdentityMismatch, match="no-forks"):
            PredicatePolicy(lambda cert: False, "no-forks").verify(signing_cert)

    def test_all_of(self, signing_cert: x509.Certificate) -> None:
        good = Identity(WORKFLOW_IDENTITY)
        bad = Identity("mailto:someone@example.com")
        AllOf(good, good).verify(signing_cert)
        with pytest.raises(IdentityMismatch):
            AllOf(good, bad).verify(signing_cert)

    def test_any_of(self, signing_cert: x509.Certificate) -> None:
        good = Identity(WORKFLOW_IDENTITY)
        bad = Identity("mailto:someone@example.com")
        AnyOf(bad, good).verify(signing_cert)
        with pytest.raises(IdentityMismatch):
            AnyOf(bad, bad).verify(signing_cert)

    def test_any_of_requires_policies(self) -> None:
        with pytest.raises(ValueError):
            AnyOf()

    def test_unsafe_no_op_warns(
        self, signing_cert: x509.Certificate, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.WARNING, logger="aumai_attestations.identity"):
            UnsafeNoOp().verify(signing_cert)
        assert "UnsafeNoOp" in caplog.text


class TestPublishers:
    def test_github_policy_accepts_workflow_certificate(
        self, github_publisher: Publisher, signing_cert: x509.Certificate
    ) -> None:
        policy_for_publisher(github_publisher).verify(signing_cert)

    def test_gitlab_policy(self, issue_leaf: IssueLeaf) -> None:
        cert = _leaf(
            issue_leaf,
            identity="https://gitlab.com/acme/tool//.gitlab-ci.yml@refs/heads/main",
            oidc_issuer=GITLAB_OIDC_ISSUER,
        )
        policy_for_publisher(Publisher(kind="GitLab", repository="acme/tool")).verify(cert)

    def test_github_without_workflow_rejected(self) -> None:
        with pytest.raises(ValueError):
            policy_for_publisher(Publisher(kind="GitHub", repository="a/b"))

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValueError, match="Custom"):
            policy_for_publisher(Publisher(kind="Custom"))

    def test_identity_key_ignores_run_claims(self) -> None:
        a = Publisher(kind="GitHub", repository="a/b", workflow="w.yml", claims={"sha": "1"})
        b = Publisher(kind="GitHub", repository="a/b", workflow="w.yml", claims={"sha": "2"})
        assert publisher_identity(a) == publisher_identity(b)

    def test_identity_key_distinguishes_environment(self) -> None:
        a = Publisher(kind="GitHub", repository="a/b", workflow="w.yml", environment="pypi")
        b = Publisher(kind="GitHub", repository="a/b", workflow="w.yml")
        assert publisher_identity(a) != publisher_identity(b)

    def test_identity_key_distinguishes_kind(self) -> None:
        a = Publisher(kind="GitHub", repository="a/b")
        b = Publisher(kind="GitLab", repository="a/b")
        assert publisher_identity(a) != publisher_identity(b)
