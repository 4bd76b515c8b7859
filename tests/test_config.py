"""Tests for aumai_attestations.config — verification policy loading."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from aumai_attestations.config import VerificationPolicy, load_policy
from aumai_attestations.errors import ConfigurationError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "policy.ini"
    path.write_text(text, encoding="utf-8")
    return path


class TestVerificationPolicy:
    def test_defaults(self) -> None:
        policy = VerificationPolicy()
        assert policy.verify_transparency is True
        assert policy.min_transparency_entries == 1
        assert policy.max_chain_depth == 4

    def test_negative_entries_rejected(self) -> None:
        with pytest.raises(ValidationError):
            VerificationPolicy(min_transparency_entries=-1)

    def test_zero_depth_rejected(self) -> None:
        with pytest.raises(ValidationError):
            VerificationPolicy(max_chain_depth=0)


class TestLoadPolicy:
    def test_reads_section(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            "[verification]\n"
            "verify_transparency = no\n"
            "min_transparency_entries = 2\n"
            "max_chain_depth = 3\n"
            "max_workers = 8\n",
        )
        assert load_policy(path) == VerificationPolicy(
            verify_transparency=False,
            min_transparency_entries=2,
            max_chain_depth=3,
            max_workers=8,
        )

    def test_partial_section_keeps_defaults(self, tmp_path: Path) -> None:
        policy = load_policy(_write(tmp_path, "[verification]\nmax_chain_depth = 2\n"))
        assert policy.max_chain_depth == 2
        assert policy.verify_transparency is True

    def test_missing_section_gives_defaults(self, tmp_path: Path) -> None:
        assert load_policy(_write(tmp_path, "[other]\nkey = value\n")) == VerificationPolicy()

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Cannot read"):
            load_policy(tmp_path / "absent.ini")

    def test_unparseable_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError):
            load_policy(_write(tmp_path, "no section header\n"))

    def test_unknown_option(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="Unknown"):
            load_policy(_write(tmp_path, "[verification]\nstrictness = high\n"))

    @pytest.mark.parametrize(
        "line",
        [
            "verify_transparency = maybe",
            "min_transparency_entries = many",
            "max_chain_depth = 0",
        ],
    )
    def test_invalid_values(self, tmp_path: Path, line: str) -> None:
        with pytest.raises(ConfigurationError, match="Invalid"):
            load_policy(_write(tmp_path, f"[verification]\n{line}\n"))
