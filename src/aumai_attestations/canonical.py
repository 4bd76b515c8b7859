"""RFC 8785 (JSON Canonicalization Scheme) encoding of signed payloads."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import BaseModel

from aumai_attestations.errors import EncodingError

# Largest integer magnitude an IEEE-754 double represents exactly.
_MAX_SAFE_INTEGER = 2**53 - 1


def _utf16_sort_key(name: str) -> bytes:
    try:
        return name.encode("utf-16-be")
    except UnicodeEncodeError as exc:
        raise EncodingError(f"Object key is not valid Unicode: {name!r}") from exc


def _encode_string(value: str) -> str:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise EncodingError(f"String is not valid UTF-8: {value!r}") from exc
    return json.dumps(value, ensure_ascii=False)


def _encode_float(value: float) -> str:
    """Serialise *value* the way ECMAScript ``Number.prototype.toString`` does."""
    if not math.isfinite(value):
        raise EncodingError(f"Non-finite numbers cannot be canonicalised: {value!r}")
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    text = repr(abs(value))
    mantissa, _, exponent = text.partition("e")
    int_part, _, frac_part = mantissa.partition(".")

    digits = int_part + frac_part
    point = len(int_part) + (int(exponent) if exponent else 0)
    stripped = digits.lstrip("0")
    point -= len(digits) - len(stripped)
    digits = stripped.rstrip("0")

    k = len(digits)
    n = point
    if k <= n <= 21:
        body = digits + "0" * (n - k)
    elif 0 < n <= 21:
        body = f"{digits[:n]}.{digits[n:]}"
    elif -6 < n <= 0:
        body = "0." + "0" * (-n) + digits
    else:
        exp = n - 1
        exp_text = f"e{'+' if exp >= 0 else '-'}{abs(exp)}"
        body = digits + exp_text if k == 1 else f"{digits[0]}.{digits[1:]}{exp_text}"
    return sign + body


def _encode_int(value: int) -> str:
    if abs(value) <= _MAX_SAFE_INTEGER:
        return str(value)
    as_float = float(value)
    if as_float != value:
        raise EncodingError(f"Integer is not exactly representable as a double: {value}")
    return _encode_float(as_float)


def _encode(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return _encode_string(value)
    if isinstance(value, int):
        return _encode_int(value)
    if isinstance(value, float):
        return _encode_float(value)
    if isinstance(value, BaseModel):
        return _encode(value.model_dump(mode="json"))
    if isinstance(value, Mapping):
        for key in value:
            if not isinstance(key, str):
                raise EncodingError(f"Object keys must be strings, got {type(key).__name__}")
        members = sorted(value.items(), key=lambda item: _utf16_sort_key(item[0]))
        return "{" + ",".join(f"{_encode_string(k)}:{_encode(v)}" for k, v in members) + "}"
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return "[" + ",".join(_encode(item) for item in value) + "]"
    raise EncodingError(f"Unsupported type for canonical JSON: {type(value).__name__}")


def encode(value: Any) -> bytes:
    """Return the RFC 8785 canonical UTF-8 encoding of *value*.

    Structurally equal inputs always produce byte-identical output, independent
    of the order in which mapping keys were inserted.

    Raises:
        EncodingError: if *value* holds non-finite numbers, non-string keys,
            invalid Unicode, or types with no JSON representation.
    """
    return _encode(value).encode("utf-8")


__all__ = ["encode"]
