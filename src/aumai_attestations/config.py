"""Verification policy and its ``.ini`` loader."""

from __future__ import annotations

import configparser
import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from aumai_attestations.errors import ConfigurationError

logger: logging.Logger = logging.getLogger(__name__)

POLICY_SECTION = "verification"


class VerificationPolicy(BaseModel):
    """Caller trust policy applied on top of the mandatory checks.

    Version, certificate trust, and signature checks always run. Transparency
    checks are policy-gated; ``min_transparency_entries`` is only enforced when
    ``verify_transparency`` is set.
    """

    verify_transparency: bool = True
    min_transparency_entries: int = Field(default=1, ge=0)
    max_chain_depth: int = Field(default=4, ge=1)
    max_workers: int = Field(default=4, ge=1)


def load_policy(path: str | Path) -> VerificationPolicy:
    """Read a :class:`VerificationPolicy` from the ``[verification]`` section of *path*.

    Example file::

        [verification]
        verify_transparency = yes
        min_transparency_entries = 1
        max_chain_depth = 4

    Raises:
        ConfigurationError: if the file is missing, unreadable, or holds invalid values.
    """
    parser = configparser.ConfigParser()
    try:
        with Path(path).open(encoding="utf-8") as fh:
            parser.read_file(fh)
    except (OSError, configparser.Error) as exc:
        raise ConfigurationError(f"Cannot read policy file {path}: {exc}") from exc

    if not parser.has_section(POLICY_SECTION):
        logger.debug("No [%s] section in %s, using defaults", POLICY_SECTION, path)
        return VerificationPolicy()

    section = parser[POLICY_SECTION]
    unknown = set(section) - set(VerificationPolicy.model_fields)
    if unknown:
        raise ConfigurationError(f"Unknown policy options in {path}: {sorted(unknown)}")

    values: dict[str, object] = {}
    try:
        for name in section:
            if name == "verify_transparency":
                values[name] = section.getboolean(name)
            else:
                values[name] = section.getint(name)
        return VerificationPolicy(**values)
    except (ValueError, ValidationError) as exc:
        raise ConfigurationError(f"Invalid policy in {path}: {exc}") from exc


__all__ = ["POLICY_SECTION", "VerificationPolicy", "load_policy"]
