"""Append-only aggregation of attestation bundles into provenance records."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path

from aumai_attestations.errors import ConcurrentModificationError, UnsupportedVersion
from aumai_attestations.identity import publisher_identity
from aumai_attestations.models import (
    PROVENANCE_VERSION,
    Attestation,
    AttestationBundle,
    Provenance,
)

logger: logging.Logger = logging.getLogger(__name__)


def _append_new(target: list[Attestation], attestations: list[Attestation]) -> int:
    seen = {attestation.signature_bytes for attestation in target}
    added = 0
    for attestation in attestations:
        signature = attestation.signature_bytes
        if signature in seen:
            logger.debug("Skipping attestation already present in bundle")
            continue
        target.append(attestation.model_copy(deep=True))
        seen.add(signature)
        added += 1
    return added


def merge(existing: Provenance | None, new_bundle: AttestationBundle) -> Provenance:
    """Return *existing* with *new_bundle* folded in. Neither input is modified.

    A bundle whose publisher has the same identity as an existing bundle has
    its attestations appended to that bundle, in order; otherwise it becomes a
    new bundle at the end. Attestations whose signature is already present in
    the target bundle are skipped, so re-adding one is a no-op.

    Raises:
        UnsupportedVersion: if *existing* has a provenance version other than 1.
    """
    if existing is not None and existing.version != PROVENANCE_VERSION:
        raise UnsupportedVersion(f"Unsupported provenance version {existing.version}")

    record = existing.model_copy(deep=True) if existing is not None else Provenance()
    identity = publisher_identity(new_bundle.publisher)

    for bundle in record.attestation_bundles:
        if publisher_identity(bundle.publisher) == identity:
            added = _append_new(bundle.attestations, new_bundle.attestations)
            logger.debug("Appended %d attestation(s) to %s bundle", added, bundle.publisher.kind)
            return record

    bundle = AttestationBundle(publisher=new_bundle.publisher.model_copy(deep=True))
    _append_new(bundle.attestations, new_bundle.attestations)
    record.attestation_bundles.append(bundle)
    logger.debug("Added new %s bundle", bundle.publisher.kind)
    return record


class ProvenanceLedger:
    """Provenance records keyed by distribution filename, with optional JSON persistence.

    Appends to one record are serialised by a per-record lock; readers never
    block and see the last committed record. Every committed append bumps the
    record's sequence number, which callers can pass back as
    ``expected_sequence`` for compare-and-swap appends. Records are never
    deleted.
    """

    def __init__(self, ledger_path: str | None = None) -> None:
        self._ledger_path = Path(ledger_path) if ledger_path else None
        self._records: dict[str, tuple[int, Provenance]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._save_lock = threading.Lock()

        if self._ledger_path and self._ledger_path.exists():
            self._load()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, distribution: str) -> Provenance | None:
        """Return a copy of the provenance record for *distribution*, or None."""
        committed = self._records.get(distribution)
        if committed is None:
            return None
        return committed[1].model_copy(deep=True)

    def sequence(self, distribution: str) -> int:
        """Return the number of committed appends for *distribution* (0 if none)."""
        committed = self._records.get(distribution)
        return committed[0] if committed else 0

    def list_distributions(self) -> list[str]:
        return sorted(self._records)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(
        self,
        distribution: str,
        bundle: AttestationBundle,
        expected_sequence: int | None = None,
    ) -> Provenance:
        """Merge *bundle* into the record for *distribution* and persist it.

        Raises:
            ConcurrentModificationError: if *expected_sequence* is given and
                another append has been committed since it was read.
        """
        with self._lock_for(distribution):
            sequence, current = self._records.get(distribution, (0, None))
            if expected_sequence is not None and expected_sequence != sequence:
                raise ConcurrentModificationError(
                    f"Provenance for {distribution} is at sequence {sequence}, "
                    f"expected {expected_sequence}"
                )
            updated = merge(current, bundle)
            self._commit(distribution, (sequence + 1, updated))

        logger.info("Provenance for %s updated (sequence %d)", distribution, sequence + 1)
        return updated.model_copy(deep=True)

    def _lock_for(self, distribution: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(distribution, threading.Lock())

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _commit(self, distribution: str, committed: tuple[int, Provenance]) -> None:
        # Memory only changes once the new state is on disk.
        with self._save_lock:
            self._save({**self._records, distribution: committed})
            self._records[distribution] = committed

    def _save(self, records: dict[str, tuple[int, Provenance]]) -> None:
        if self._ledger_path is None:
            return
        self._ledger_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            name: {"sequence": sequence, "provenance": record.model_dump(mode="json")}
            for name, (sequence, record) in sorted(records.items())
        }
        tmp_path = self._ledger_path.with_suffix(self._ledger_path.suffix + ".tmp")
        try:
            tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(tmp_path, self._ledger_path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _load(self) -> None:
        if self._ledger_path is None or not self._ledger_path.exists():
            return
        raw = json.loads(self._ledger_path.read_text(encoding="utf-8"))
        for name, entry in raw.items():
            record = Provenance.model_validate(entry["provenance"])
            self._records[name] = (int(entry["sequence"]), record)


__all__ = ["ProvenanceLedger", "merge"]
