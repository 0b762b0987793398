"""
Parameter signing for the epay-compatible gateway protocol.

The canonical string is every non-empty field except ``sign`` and
``sign_type``, sorted by key, rendered as ``k1=v1&k2=v2`` with the merchant
key appended directly. The digest is MD5 in lowercase hex. MD5 is what the
gateway speaks; it is kept for interoperability only.

The same canonicalization serves outbound requests and inbound
notifications, so both sides always agree.
"""
from __future__ import annotations
import hashlib
import hmac
from typing import Mapping

RESERVED_FIELDS = ("sign", "sign_type")


def canonicalize(params: Mapping[str, str]) -> str:
    items = sorted(
        (k, v) for k, v in params.items()
        if v and k not in RESERVED_FIELDS
    )
    return "&".join(f"{k}={v}" for k, v in items)


def sign(params: Mapping[str, str], secret: str) -> str:
    payload = canonicalize(params) + secret
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def verify(params: Mapping[str, str], secret: str) -> bool:
    given = params.get("sign")
    if not given:
        return False
    expected = sign(params, secret)
    return hmac.compare_digest(given.lower().encode(), expected.encode())
