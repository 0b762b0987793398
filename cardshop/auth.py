"""
Seam to the authentication collaborator.

Login happens elsewhere; it leaves the buyer handle in the signed cookie
session under "buyer". Everything here only reads (or, for development,
writes) that handle.
"""
from dataclasses import dataclass, asdict
from typing import Optional

from fastapi import HTTPException, Request

SESSION_KEY = "buyer"


@dataclass(frozen=True)
class Buyer:
    id: str
    username: str
    trust_level: int = 0


def current_buyer(request: Request) -> Optional[Buyer]:
    raw = request.session.get(SESSION_KEY)
    if not raw or not raw.get("id"):
        return None
    return Buyer(
        id=str(raw["id"]),
        username=str(raw.get("username") or ""),
        trust_level=int(raw.get("trust_level") or 0),
    )


def require_buyer(request: Request) -> Buyer:
    buyer = current_buyer(request)
    if buyer is None:
        raise HTTPException(status_code=401, detail="login required")
    return buyer


def remember_buyer(request: Request, buyer: Buyer) -> None:
    request.session[SESSION_KEY] = asdict(buyer)
