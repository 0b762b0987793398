# Idempotency tokens (the gateway's out_trade_no).
#   card purchase:  CARD_{code}_{quantity}_{epoch_millis}
#   tip:            TIP_{code}_{epoch_millis}
from __future__ import annotations
import os
import re
from dataclasses import dataclass
from typing import Optional

from .errors import MalformedToken
from .helpers import now_ms

MAX_QUANTITY = int(os.getenv("MAX_QUANTITY", "10"))

CARD = "CARD"
TIP = "TIP"

_CARD_RE = re.compile(r"^CARD_([^_]+)_(\d+)_(\d+)$")
_TIP_RE = re.compile(r"^TIP_([^_]+)_(\d+)$")


@dataclass(frozen=True)
class PurchaseToken:
    family: str
    code: str
    quantity: int
    timestamp: int

    @property
    def is_card(self) -> bool:
        return self.family == CARD


def clamp_quantity(qty: Optional[int]) -> int:
    try:
        q = int(qty or 1)
    except (TypeError, ValueError):
        q = 1
    return max(1, min(MAX_QUANTITY, q))


def new_card_token(code: str, quantity: int,
                   ts_ms: Optional[int] = None) -> str:
    if "_" in code:
        raise ValueError("product code must not contain '_'")
    return f"{CARD}_{code}_{quantity}_{ts_ms or now_ms()}"


def parse_token(token: Optional[str]) -> PurchaseToken:
    if not token:
        raise MalformedToken("empty token")

    m = _CARD_RE.match(token)
    if m:
        qty = int(m.group(2))
        if not 1 <= qty <= MAX_QUANTITY:
            raise MalformedToken(f"quantity out of range in {token!r}")
        return PurchaseToken(CARD, m.group(1), qty, int(m.group(3)))

    m = _TIP_RE.match(token)
    if m:
        return PurchaseToken(TIP, m.group(1), 0, int(m.group(2)))

    raise MalformedToken(f"unrecognized token {token!r}")
