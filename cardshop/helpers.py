import time
import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
SHORT_CODE_ALPHABET = (
    "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789"
)


def now_ts() -> float:
    return time.time()


def now_ms() -> int:
    return int(time.time() * 1000)


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def short_code(length: int = 8) -> str:
    return "".join(
        secrets.choice(SHORT_CODE_ALPHABET) for _ in range(length)
    )


def to_cents(value) -> int:
    # "12.5", 12.5 and Decimal("12.50") all become 1250
    d = Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(d * 100)


def fmt_money(cents: int) -> str:
    return f"{Decimal(cents) / 100:.2f}"
