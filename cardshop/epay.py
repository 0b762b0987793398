from abc import ABC, abstractmethod
from typing import Dict, Mapping, NamedTuple, Tuple
import logging
import os

from . import signing
from .errors import MerchantNotConfigured
from .helpers import fmt_money, to_cents
from .model.merchants import MerchantStore

log = logging.getLogger(__name__)

EPAY_GATEWAY_URL = os.environ.get(
    "EPAY_GATEWAY_URL",
    "https://credit.linux.do/epay/pay/submit.php"
)

TRADE_SUCCESS = "TRADE_SUCCESS"
SIGN_TYPE = "MD5"


class Notification(NamedTuple):
    token: str
    amount: int  # cents
    gateway_ref: str
    trade_status: str


# ----------------------------
# Merchant-keyed signer
# ----------------------------
class MerchantSigner:
    """
    The one place merchant keys are looked up. Outbound requests and
    inbound notifications both sign through here.
    """

    def __init__(self, merchants: MerchantStore) -> None:
        self.merchants = merchants

    async def credentials(self, merchant_id: str) -> Tuple[str, str]:
        creds = await self.merchants.credentials(merchant_id)
        if creds is None:
            raise MerchantNotConfigured(merchant_id)
        return creds

    async def verify_for(self, merchant_id: str,
                         params: Mapping[str, str]) -> bool:
        _, key = await self.credentials(merchant_id)
        return signing.verify(params, key)


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def payment_form(
        self, pid: str, key: str, token: str, name: str, amount: int,
        notify_url: str, return_url: str,
    ) -> Dict[str, str]: ...

    # "succeeded" | "failed"
    @abstractmethod
    def event_kind(self, params: Mapping[str, str]) -> str: ...

    @abstractmethod
    def notification(self, params: Mapping[str, str]) -> Notification: ...


# ----------------------------
# epay-compatible gateway
# ----------------------------
class EPay(PaymentAdapter):
    gateway_url = EPAY_GATEWAY_URL

    def payment_form(self, pid, key, token, name, amount,
                     notify_url, return_url):
        form = {
            "pid": pid,
            "type": "epay",
            "out_trade_no": token,
            "name": name,
            "money": fmt_money(amount),
            "notify_url": notify_url,
            "return_url": return_url,
            "sign_type": SIGN_TYPE,
        }
        form["sign"] = signing.sign(form, key)
        return form

    def event_kind(self, params):
        if params.get("trade_status") == TRADE_SUCCESS:
            return "succeeded"
        return "failed"

    def notification(self, params):
        try:
            amount = to_cents(params.get("money") or "0")
        except ArithmeticError:
            log.warning("unparseable money %r", params.get("money"))
            amount = 0
        return Notification(
            token=params.get("out_trade_no", "") or "",
            amount=amount,
            gateway_ref=params.get("trade_no", "") or "",
            trade_status=params.get("trade_status", "") or "",
        )


def product_display_name(title: str, quantity: int) -> str:
    if quantity > 1:
        return f"{title[:15]} x{quantity}"
    return title[:20]


def build_notification(
    form: Mapping[str, str], key: str, trade_no: str,
    trade_status: str = TRADE_SUCCESS,
) -> Dict[str, str]:
    """What the gateway posts back for a submitted payment form."""
    params = {
        "pid": form.get("pid", ""),
        "trade_no": trade_no,
        "out_trade_no": form.get("out_trade_no", ""),
        "type": form.get("type", "epay"),
        "name": form.get("name", ""),
        "money": form.get("money", ""),
        "trade_status": trade_status,
        "sign_type": SIGN_TYPE,
    }
    params["sign"] = signing.sign(params, key)
    return params

