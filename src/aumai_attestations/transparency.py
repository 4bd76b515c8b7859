"""Transparency log inclusion proofs, signed checkpoints, and an in-memory log.

Leaf and node hashing follow RFC 6962: ``SHA256(0x00 || leaf)`` for leaves and
``SHA256(0x01 || left || right)`` for interior nodes. Checkpoints use the
signed-note text format::

    <origin>
    <tree size>
    <base64 root hash>

    — <signer name> <base64(key hint || signature)>

where the key hint is the first four bytes of the signer's log id (the SHA-256
of its DER ``SubjectPublicKeyInfo``).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from aumai_attestations import canonical
from aumai_attestations.errors import MalformedInclusionProof
from aumai_attestations.models import InclusionProof, TransparencyLogEntry

logger: logging.Logger = logging.getLogger(__name__)

LEAF_PREFIX = b"\x00"
NODE_PREFIX = b"\x01"
SIGNATURE_DASH = "—"
KEY_HINT_SIZE = 4

DEFAULT_ENTRY_KIND = "hashedrekord"
DEFAULT_ENTRY_VERSION = "0.0.1"


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def log_id_for_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """Return the hex log id of *public_key*: SHA-256 of its DER SPKI."""
    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return hashlib.sha256(der).hexdigest()


def _key_hint(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return bytes.fromhex(log_id_for_key(public_key))[:KEY_HINT_SIZE]


# ---------------------------------------------------------------------------
# Merkle hashing
# ---------------------------------------------------------------------------


def hash_leaf(leaf: bytes) -> bytes:
    return hashlib.sha256(LEAF_PREFIX + leaf).digest()


def hash_children(left: bytes, right: bytes) -> bytes:
    return hashlib.sha256(NODE_PREFIX + left + right).digest()


def _largest_power_of_two_below(n: int) -> int:
    return 1 << ((n - 1).bit_length() - 1)


def _subtree_root(leaf_hashes: list[bytes]) -> bytes:
    if not leaf_hashes:
        return hashlib.sha256(b"").digest()
    if len(leaf_hashes) == 1:
        return leaf_hashes[0]
    split = _largest_power_of_two_below(len(leaf_hashes))
    return hash_children(
        _subtree_root(leaf_hashes[:split]), _subtree_root(leaf_hashes[split:])
    )


def _audit_path(index: int, leaf_hashes: list[bytes]) -> list[bytes]:
    if len(leaf_hashes) <= 1:
        return []
    split = _largest_power_of_two_below(len(leaf_hashes))
    if index < split:
        return _audit_path(index, leaf_hashes[:split]) + [
            _subtree_root(leaf_hashes[split:])
        ]
    return _audit_path(index - split, leaf_hashes[split:]) + [
        _subtree_root(leaf_hashes[:split])
    ]


def _decompose_inclusion_proof(index: int, size: int) -> tuple[int, int]:
    """Split an audit path length into its inner and right-border parts."""
    inner = (index ^ (size - 1)).bit_length()
    border = bin(index >> inner).count("1")
    return inner, border


def _chain_inner(seed: bytes, proof: list[bytes], index: int) -> bytes:
    for level, sibling in enumerate(proof):
        if (index >> level) & 1 == 0:
            seed = hash_children(seed, sibling)
        else:
            seed = hash_children(sibling, seed)
    return seed


def _chain_border_right(seed: bytes, proof: list[bytes]) -> bytes:
    for sibling in proof:
        seed = hash_children(sibling, seed)
    return seed


def _decode_hex(value: str, what: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError as exc:
        raise MalformedInclusionProof(f"{what} is not valid hex: {value!r}") from exc


def verify_merkle_inclusion(entry: TransparencyLogEntry) -> None:
    """Check that *entry*'s body is a leaf of the tree described by its proof.

    Raises:
        MalformedInclusionProof: on any structural or hash mismatch.
    """
    proof = entry.inclusion_proof
    if proof.log_index != entry.log_index:
        raise MalformedInclusionProof(
            f"entry log index {entry.log_index} differs from proof log index {proof.log_index}"
        )
    if proof.log_index >= proof.tree_size:
        raise MalformedInclusionProof(
            f"log index {proof.log_index} is outside a tree of size {proof.tree_size}"
        )

    inner, border = _decompose_inclusion_proof(proof.log_index, proof.tree_size)
    if len(proof.hashes) != inner + border:
        raise MalformedInclusionProof(
            f"expected {inner + border} proof hashes, got {len(proof.hashes)}"
        )

    path = [_decode_hex(h, "proof hash") for h in proof.hashes]
    try:
        leaf = hash_leaf(entry.body_bytes)
    except (binascii.Error, ValueError) as exc:
        raise MalformedInclusionProof("entry body is not valid base64") from exc

    computed = _chain_inner(leaf, path[:inner], proof.log_index)
    computed = _chain_border_right(computed, path[inner:])

    expected = _decode_hex(proof.root_hash, "root hash")
    if computed != expected:
        raise MalformedInclusionProof(
            f"computed root {computed.hex()} does not match {proof.root_hash}"
        )


# ---------------------------------------------------------------------------
# Checkpoints
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NoteSignature:
    name: str
    key_hint: bytes
    signature: bytes


@dataclass(frozen=True)
class Checkpoint:
    """A parsed signed tree head."""

    origin: str
    tree_size: int
    root_hash: bytes
    body: str
    signatures: list[NoteSignature] = field(default_factory=list)


def _encode_signature_line(name: str, public_key: ec.EllipticCurvePublicKey, sig: bytes) -> str:
    blob = base64.b64encode(_key_hint(public_key) + sig).decode("ascii")
    return f"{SIGNATURE_DASH} {name} {blob}\n"


def format_checkpoint_body(origin: str, tree_size: int, root_hash: bytes) -> str:
    root = base64.b64encode(root_hash).decode("ascii")
    return f"{origin}\n{tree_size}\n{root}\n"


def sign_checkpoint(
    body: str, name: str, private_key: ec.EllipticCurvePrivateKey
) -> str:
    """Return the signed note for *body*, signed by *name*."""
    sig = private_key.sign(body.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
    return body + "\n" + _encode_signature_line(name, private_key.public_key(), sig)


def cosign_checkpoint(
    checkpoint: str, name: str, private_key: ec.EllipticCurvePrivateKey
) -> str:
    """Append a witness signature line to an already signed *checkpoint*."""
    parsed = parse_checkpoint(checkpoint)
    sig = private_key.sign(parsed.body.encode("utf-8"), ec.ECDSA(hashes.SHA256()))
    text = checkpoint if checkpoint.endswith("\n") else checkpoint + "\n"
    return text + _encode_signature_line(name, private_key.public_key(), sig)


def parse_checkpoint(text: str) -> Checkpoint:
    """Parse a signed-note checkpoint.

    Raises:
        MalformedInclusionProof: if the text is not a well-formed signed note.
    """
    body, sep, signature_block = text.partition("\n\n")
    if not sep:
        raise MalformedInclusionProof("checkpoint has no signature block")
    body += "\n"

    lines = body.splitlines()
    if len(lines) < 3:
        raise MalformedInclusionProof("checkpoint body needs origin, size and root hash")
    origin, size_text, root_text = lines[0], lines[1], lines[2]
    if not origin:
        raise MalformedInclusionProof("checkpoint origin is empty")
    if not (size_text.isascii() and size_text.isdigit()):
        raise MalformedInclusionProof(f"checkpoint tree size is not a number: {size_text!r}")
    try:
        root_hash = base64.b64decode(root_text, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedInclusionProof("checkpoint root hash is not base64") from exc

    signatures: list[NoteSignature] = []
    for line in signature_block.splitlines():
        if not line:
            continue
        parts = line.split(" ")
        if len(parts) != 3 or parts[0] != SIGNATURE_DASH:
            raise MalformedInclusionProof(f"malformed checkpoint signature line: {line!r}")
        try:
            blob = base64.b64decode(parts[2], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise MalformedInclusionProof("checkpoint signature is not base64") from exc
        if len(blob) <= KEY_HINT_SIZE:
            raise MalformedInclusionProof("checkpoint signature is too short")
        signatures.append(
            NoteSignature(
                name=parts[1],
                key_hint=blob[:KEY_HINT_SIZE],
                signature=blob[KEY_HINT_SIZE:],
            )
        )
    if not signatures:
        raise MalformedInclusionProof("checkpoint carries no signatures")

    return Checkpoint(
        origin=origin,
        tree_size=int(size_text),
        root_hash=root_hash,
        body=body,
        signatures=signatures,
    )


def _signature_verifies(
    public_key: ec.EllipticCurvePublicKey, signature: bytes, message: bytes
) -> bool:
    try:
        public_key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
    except InvalidSignature:
        return False
    return True


def verify_checkpoint(
    entry: TransparencyLogEntry,
    log_keys: Mapping[str, ec.EllipticCurvePublicKey],
) -> Checkpoint:
    """Verify that the entry's checkpoint is signed by its log and commits to its root.

    Raises:
        MalformedInclusionProof: on an unknown log, bad signature, or mismatch.
    """
    proof = entry.inclusion_proof
    log_key = log_keys.get(entry.log_id)
    if log_key is None:
        raise MalformedInclusionProof(f"no key known for log {entry.log_id}")

    checkpoint = parse_checkpoint(proof.checkpoint)
    hint = _decode_hex(entry.log_id, "log id")[:KEY_HINT_SIZE]
    candidates = [s for s in checkpoint.signatures if s.key_hint == hint]
    message = checkpoint.body.encode("utf-8")
    if not any(_signature_verifies(log_key, s.signature, message) for s in candidates):
        raise MalformedInclusionProof(f"checkpoint is not signed by log {entry.log_id}")

    if checkpoint.tree_size != proof.tree_size:
        raise MalformedInclusionProof(
            f"checkpoint tree size {checkpoint.tree_size} differs from proof {proof.tree_size}"
        )
    if checkpoint.root_hash != _decode_hex(proof.root_hash, "root hash"):
        raise MalformedInclusionProof("checkpoint root hash differs from proof root hash")
    return checkpoint


def verify_cosignatures(
    checkpoint: Checkpoint,
    cosigned: list[str],
    witness_keys: Mapping[str, ec.EllipticCurvePublicKey] | None,
) -> None:
    """Check witness cosigned checkpoints against the log's own checkpoint.

    Each cosigned checkpoint must carry the same note body. With *witness_keys*,
    every signature line from a known witness must verify and each cosigned
    checkpoint needs at least one of them.
    """
    for text in cosigned:
        other = parse_checkpoint(text)
        if other.body != checkpoint.body:
            raise MalformedInclusionProof("cosigned checkpoint is for a different tree head")
        if witness_keys is None:
            continue
        verified = 0
        for sig in other.signatures:
            key = witness_keys.get(sig.name)
            if key is None:
                continue
            if sig.key_hint != _key_hint(key) or not _signature_verifies(
                key, sig.signature, other.body.encode("utf-8")
            ):
                raise MalformedInclusionProof(f"invalid cosignature from witness {sig.name}")
            verified += 1
        if not verified:
            raise MalformedInclusionProof("cosigned checkpoint has no known witness signature")


# ---------------------------------------------------------------------------
# Inclusion promises
# ---------------------------------------------------------------------------


def encode_entry_timestamp(entry: TransparencyLogEntry) -> bytes:
    """Return the canonical bytes a log signs to promise *entry*'s integration.

    The promise covers the body, log id, log index and ``integrated_time``, so
    none of them can be changed without invalidating it.
    """
    return canonical.encode(
        {
            "body": entry.canonicalized_body,
            "integratedTime": entry.integrated_time,
            "logID": entry.log_id,
            "logIndex": entry.log_index,
        }
    )


def verify_inclusion_promise(
    entry: TransparencyLogEntry,
    log_keys: Mapping[str, ec.EllipticCurvePublicKey],
) -> None:
    """Check the signed entry timestamp of *entry* against its log's key.

    Raises:
        MalformedInclusionProof: if the promise is missing, the log is
            unknown, or the signature does not verify.
    """
    if entry.inclusion_promise is None:
        raise MalformedInclusionProof("entry carries no inclusion promise")
    log_key = log_keys.get(entry.log_id)
    if log_key is None:
        raise MalformedInclusionProof(f"no key known for log {entry.log_id}")
    signature = base64.b64decode(entry.inclusion_promise)
    if not _signature_verifies(log_key, signature, encode_entry_timestamp(entry)):
        raise MalformedInclusionProof("inclusion promise signature is invalid")


def verify_inclusion(
    entry: TransparencyLogEntry,
    log_keys: Mapping[str, ec.EllipticCurvePublicKey],
    witness_keys: Mapping[str, ec.EllipticCurvePublicKey] | None = None,
) -> bool:
    """Return True if *entry* is provably included in its signed log tree.

    The inclusion promise is checked when the entry carries one. Never raises:
    any structural mismatch or bad signature yields False.
    """
    try:
        verify_merkle_inclusion(entry)
        checkpoint = verify_checkpoint(entry, log_keys)
        verify_cosignatures(checkpoint, entry.inclusion_proof.cosigned_checkpoints, witness_keys)
        if entry.inclusion_promise is not None:
            verify_inclusion_promise(entry, log_keys)
    except MalformedInclusionProof as exc:
        logger.warning("Inclusion proof rejected for log index %d: %s", entry.log_index, exc)
        return False

    logger.debug("Verified inclusion proof: index=%d", entry.log_index)
    return True


# ---------------------------------------------------------------------------
# Log entry bodies
# ---------------------------------------------------------------------------


def build_entry_body(
    signature: bytes,
    certificate_der: bytes,
    payload_digest: str,
    kind: str = DEFAULT_ENTRY_KIND,
    api_version: str = DEFAULT_ENTRY_VERSION,
) -> bytes:
    """Return the canonical log entry recording one signature over one payload."""
    return canonical.encode(
        {
            "apiVersion": api_version,
            "kind": kind,
            "spec": {
                "data": {"hash": {"algorithm": "sha256", "value": payload_digest}},
                "signature": {
                    "content": base64.b64encode(signature).decode("ascii"),
                    "publicKey": {
                        "content": base64.b64encode(certificate_der).decode("ascii")
                    },
                },
            },
        }
    )


def parse_entry_body(entry: TransparencyLogEntry) -> dict[str, Any]:
    """Decode the JSON body of *entry*.

    Raises:
        MalformedInclusionProof: if the body is not a JSON object.
    """
    try:
        body = json.loads(entry.body_bytes)
    except (ValueError, binascii.Error) as exc:
        raise MalformedInclusionProof("entry body is not JSON") from exc
    if not isinstance(body, dict):
        raise MalformedInclusionProof("entry body is not a JSON object")
    return body


# ---------------------------------------------------------------------------
# In-memory log
# ---------------------------------------------------------------------------


class TransparencyLogClient(Protocol):
    """Collaborator the builder hands freshly signed attestations to."""

    def submit(
        self, signature: bytes, certificate_der: bytes, payload_digest: str
    ) -> TransparencyLogEntry: ...


class TransparencyLog:
    """Append-only Merkle log that issues entries with proofs and checkpoints.

    Intended for tests and offline pipelines; a production deployment talks to
    a real log through its own :class:`TransparencyLogClient`.
    """

    def __init__(
        self,
        private_key: ec.EllipticCurvePrivateKey | None = None,
        origin: str = "aumai-attestations.local/log",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._private_key = private_key or ec.generate_private_key(ec.SECP256R1())
        self._origin = origin
        self._clock = clock
        self._leaf_hashes: list[bytes] = []
        self._lock = threading.Lock()

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._private_key.public_key()

    @property
    def log_id(self) -> str:
        return log_id_for_key(self.public_key)

    @property
    def size(self) -> int:
        return len(self._leaf_hashes)

    def root_hash(self) -> bytes:
        return _subtree_root(self._leaf_hashes)

    def checkpoint(self) -> str:
        """Return a signed checkpoint for the current tree head."""
        with self._lock:
            return self._checkpoint_locked()

    def _checkpoint_locked(self) -> str:
        body = format_checkpoint_body(
            self._origin, len(self._leaf_hashes), _subtree_root(self._leaf_hashes)
        )
        return sign_checkpoint(body, self._origin, self._private_key)

    def _proof_locked(self, index: int) -> InclusionProof:
        return InclusionProof(
            log_index=index,
            root_hash=_subtree_root(self._leaf_hashes).hex(),
            tree_size=len(self._leaf_hashes),
            hashes=[h.hex() for h in _audit_path(index, self._leaf_hashes)],
            checkpoint=self._checkpoint_locked(),
        )

    def append(
        self,
        body: bytes,
        kind: str = DEFAULT_ENTRY_KIND,
        api_version: str = DEFAULT_ENTRY_VERSION,
    ) -> TransparencyLogEntry:
        """Integrate *body* as a new leaf and return its entry with a fresh proof."""
        with self._lock:
            index = len(self._leaf_hashes)
            self._leaf_hashes.append(hash_leaf(body))
            entry = TransparencyLogEntry(
                log_index=index,
                log_id=self.log_id,
                entry_kind=kind,
                entry_version=api_version,
                integrated_time=int(self._clock()),
                inclusion_proof=self._proof_locked(index),
                canonicalized_body=base64.b64encode(body).decode("ascii"),
            )
            promise = self._private_key.sign(
                encode_entry_timestamp(entry), ec.ECDSA(hashes.SHA256())
            )
            entry = entry.model_copy(
                update={"inclusion_promise": base64.b64encode(promise).decode("ascii")}
            )
        logger.debug("Integrated log entry %d (tree size %d)", index, index + 1)
        return entry

    def submit(
        self, signature: bytes, certificate_der: bytes, payload_digest: str
    ) -> TransparencyLogEntry:
        return self.append(build_entry_body(signature, certificate_der, payload_digest))

    def refresh(self, entry: TransparencyLogEntry) -> TransparencyLogEntry:
        """Return *entry* with an inclusion proof against the current tree head."""
        with self._lock:
            if entry.log_index >= len(self._leaf_hashes):
                raise MalformedInclusionProof(f"log has no entry {entry.log_index}")
            proof = self._proof_locked(entry.log_index)
        return entry.model_copy(update={"inclusion_proof": proof})


__all__ = [
    "Checkpoint",
    "NoteSignature",
    "TransparencyLog",
    "TransparencyLogClient",
    "build_entry_body",
    "cosign_checkpoint",
    "encode_entry_timestamp",
    "format_checkpoint_body",
    "hash_children",
    "hash_leaf",
    "log_id_for_key",
    "parse_checkpoint",
    "parse_entry_body",
    "sign_checkpoint",
    "verify_checkpoint",
    "verify_cosignatures",
    "verify_inclusion",
    "verify_inclusion_promise",
    "verify_merkle_inclusion",
]
