"""X-PAYMENT header codec.

The header value is base64 of a JSON object::

    {"type": "eip3009", "chainId": 338, "token": "0x...",
     "from": "0x...", "to": "0x...", "value": "100000",
     "validAfter": 0, "validBefore": 1735689600, "nonce": "0x...",
     "v": 27, "r": "0x...", "s": "0x..."}

The signature may be carried as ``v``/``r``/``s`` or as one combined
``signature`` value (``r || s || v``). Decoding accepts either, or both when
they agree.
"""

import base64
import json
import re
from typing import Any, Dict, Literal

from pydantic import ValidationError

from ..constants import AUTHORIZATION_TYPE
from ..errors import MalformedPaymentError
from ..models import PaymentPayload, TransferAuthorization

SignatureFormat = Literal["vrs", "combined"]

_HEX32_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

_REQUIRED_FIELDS = ("chainId", "token", "from", "to", "value", "validAfter", "validBefore", "nonce")


def encode(payload: PaymentPayload, signature_format: SignatureFormat = "vrs") -> str:
    """Serialize a payment payload to an X-PAYMENT header value."""
    auth = payload.authorization
    body: Dict[str, Any] = {
        "type": payload.type,
        "chainId": payload.chain_id,
        "token": payload.token,
        "from": auth.payer,
        "to": auth.payee,
        "value": str(auth.value),
        "validAfter": auth.valid_after,
        "validBefore": auth.valid_before,
        "nonce": auth.nonce,
    }
    if signature_format == "vrs":
        body.update({"v": auth.v, "r": auth.r, "s": auth.s})
    elif signature_format == "combined":
        body["signature"] = auth.signature
    else:
        raise ValueError(f"Unknown signature format: {signature_format}")

    raw = json.dumps(body, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _as_uint(name: str, value: Any) -> int:
    # JSON numbers and decimal strings are both accepted; booleans are not
    if isinstance(value, bool):
        raise MalformedPaymentError(f"{name} must be an unsigned integer")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.isascii() and value.isdigit():
        result = int(value)
    else:
        raise MalformedPaymentError(f"{name} must be an unsigned integer")
    if result < 0:
        raise MalformedPaymentError(f"{name} must be an unsigned integer")
    return result


def _signature_from_vrs(body: Dict[str, Any]) -> str:
    v = _as_uint("v", body["v"])
    if v > 0xFF:
        raise MalformedPaymentError("v must fit in one byte")
    r, s = body["r"], body["s"]
    if not (isinstance(r, str) and _HEX32_RE.match(r) and isinstance(s, str) and _HEX32_RE.match(s)):
        raise MalformedPaymentError("r and s must be 32 bytes of 0x-prefixed hex")
    return "0x" + r[2:].lower() + s[2:].lower() + f"{v:02x}"


def decode(header: str) -> PaymentPayload:
    """Parse an X-PAYMENT header value.

    Raises:
        MalformedPaymentError: If the value is not a well-formed authorization.
    """
    if not header or not isinstance(header, str):
        raise MalformedPaymentError("Empty payment header")

    try:
        raw = base64.b64decode(header.strip(), validate=True)
        body = json.loads(raw.decode("utf-8"))
    except ValueError as e:
        raise MalformedPaymentError(f"Payment header is not base64 JSON: {e}") from e

    if not isinstance(body, dict):
        raise MalformedPaymentError("Payment header must encode a JSON object")

    auth_type = body.get("type", AUTHORIZATION_TYPE)
    if auth_type != AUTHORIZATION_TYPE:
        raise MalformedPaymentError(f"Unsupported authorization type: {auth_type!r}")

    missing = [name for name in _REQUIRED_FIELDS if name not in body]
    if missing:
        raise MalformedPaymentError(f"Payment header missing fields: {', '.join(missing)}")

    has_vrs = all(name in body for name in ("v", "r", "s"))
    combined = body.get("signature")
    if not has_vrs and combined is None:
        raise MalformedPaymentError("Payment header carries no signature")

    signature = _signature_from_vrs(body) if has_vrs else None
    if combined is not None:
        if not isinstance(combined, str):
            raise MalformedPaymentError("signature must be a hex string")
        if signature is not None and combined.lower() != signature:
            raise MalformedPaymentError("Combined signature disagrees with v/r/s")
        signature = combined

    try:
        authorization = TransferAuthorization(
            payer=body["from"],
            payee=body["to"],
            value=_as_uint("value", body["value"]),
            valid_after=_as_uint("validAfter", body["validAfter"]),
            valid_before=_as_uint("validBefore", body["validBefore"]),
            nonce=body["nonce"],
            signature=signature,
        )
        return PaymentPayload(
            chain_id=_as_uint("chainId", body["chainId"]),
            token=body["token"],
            authorization=authorization,
        )
    except ValidationError as e:
        raise MalformedPaymentError(f"Invalid authorization: {e.errors()[0]['msg']}") from e
