"""
Canonical JSON encoding shared by the signer and the verifier.

The output is byte-identical to what a browser produces with JSON.stringify
once object keys are sorted, so a message signed in a browser verifies here
and vice versa:

  - object keys sorted by UTF-16 code units, at every nesting level
  - arrays keep their order
  - no insignificant whitespace
  - numbers use the ECMAScript Number::toString rendering (1.0 -> "1",
    1e-7 -> "1e-7", 1e21 -> "1e+21"); NaN/Infinity render as null
  - None renders as null
"""
import hashlib
import json
import math
import re
from typing import Any, Mapping

from pydantic import BaseModel

SEPARATOR = "|"

# JavaScript numbers are IEEE doubles; integers beyond this are rounded there.
_MAX_SAFE_INTEGER = 2 ** 53 - 1
_LONE_SURROGATE = re.compile("[\ud800-\udfff]")


def canonicalize(value: Any) -> str:
    """Deterministic JSON text for ``value``."""
    if isinstance(value, BaseModel):
        value = value.model_dump(by_alias=True)

    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, int):
        if abs(value) > _MAX_SAFE_INTEGER:
            return _format_float(float(value))
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    if isinstance(value, str):
        return _format_string(value)
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(canonicalize(v) for v in value) + "]"
    if isinstance(value, Mapping):
        for key in value:
            if not isinstance(key, str):
                raise TypeError(f"object keys must be strings, got {type(key).__name__}")
        keys = sorted(value.keys(), key=lambda k: k.encode("utf-16-be", "surrogatepass"))
        return "{" + ",".join(f"{_format_string(k)}:{canonicalize(value[k])}" for k in keys) + "}"
    raise TypeError(f"value of type {type(value).__name__} is not JSON-like")


def build_signing_message(action: Any, proof: Any, nonce: str) -> str:
    """The exact text that gets signed: action|proof|nonce."""
    return SEPARATOR.join((canonicalize(action), canonicalize(proof), nonce))


def action_hash(action: Any) -> str:
    """SHA-256 over the identifying fields of an action (payload excluded)."""
    if isinstance(action, BaseModel):
        action = action.model_dump(by_alias=True)
    subset = {
        "kind": action.get("kind"),
        "context": action.get("context"),
        "displayName": action.get("displayName"),
    }
    return hashlib.sha256(canonicalize(subset).encode("utf-8")).hexdigest()


def _format_string(s: str) -> str:
    out = json.dumps(s, ensure_ascii=False)
    # JSON.stringify escapes unpaired surrogates instead of emitting them raw
    return _LONE_SURROGATE.sub(lambda m: "\\u%04x" % ord(m.group()), out)


def _format_float(value: float) -> str:
    if not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    text = repr(abs(value))  # shortest round-trip digits
    if "e" in text:
        mantissa, exp_text = text.split("e")
        exponent = int(exp_text)
    else:
        mantissa, exponent = text, 0
    int_part, _, frac_part = mantissa.partition(".")

    digits = int_part + frac_part
    # value == 0.<digits> * 10**point
    point = len(int_part) + exponent
    stripped = digits.lstrip("0")
    point -= len(digits) - len(stripped)
    digits = stripped.rstrip("0")
    k = len(digits)

    if k <= point <= 21:
        body = digits + "0" * (point - k)
    elif 0 < point <= 21:
        body = digits[:point] + "." + digits[point:]
    elif -6 < point <= 0:
        body = "0." + "0" * (-point) + digits
    else:
        e = point - 1
        e_text = ("+" if e >= 0 else "-") + str(abs(e))
        if k == 1:
            body = f"{digits}e{e_text}"
        else:
            body = f"{digits[0]}.{digits[1:]}e{e_text}"
    return sign + body
