"""Test fixtures for the card shop tests."""

import os
import tempfile

# the app reads its configuration at import time
_TMP = tempfile.mkdtemp(prefix="cardshop-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/app.db"
os.environ["GATE_BACKEND"] = "sql"
os.environ["MOCKPAY_ENABLED"] = "1"
os.environ["RESERVATION_SWEEP_SECONDS"] = "0"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"
os.environ.pop("STRICT_SIGNATURES", None)
os.environ.pop("MAX_QUANTITY", None)

import pytest  # noqa: E402

from cardshop.auth import Buyer  # noqa: E402
from cardshop.checkout import CheckoutService  # noqa: E402
from cardshop.epay import EPay, MerchantSigner, build_notification  # noqa: E402
from cardshop.fulfillment import new_fulfillment  # noqa: E402
from cardshop.helpers import fmt_money, now_ms  # noqa: E402
from cardshop.infra.sql import create_schema, make_async_engine  # noqa: E402
from cardshop.merchant import MerchantService, ProductDraft  # noqa: E402
from cardshop.model.catalog import CatalogStore  # noqa: E402
from cardshop.model.db import Base  # noqa: E402
from cardshop.model.inventory import InventoryStore  # noqa: E402
from cardshop.model.ledger import OrderLedger  # noqa: E402
from cardshop.model.merchants import MerchantStore  # noqa: E402
from cardshop.tokens import new_card_token  # noqa: E402

MERCHANT = Buyer(id="m-1", username="merchant", trust_level=3)
OTHER_MERCHANT = Buyer(id="m-2", username="someone-else", trust_level=3)
BUYER = Buyer(id="b-1", username="buyer", trust_level=1)
PID = "1001"
KEY = "merchant-signing-key"


class Shop:
    """Stores and services over one session, plus fresh sessions on demand."""

    def __init__(self, SessionAsync, gated):
        self.SessionAsync = SessionAsync
        self.gated = gated
        self.session = SessionAsync()
        self._sessions = [self.session]
        self._seq = 0

        db = self.session
        self.catalog = CatalogStore(db=db, gated=gated)
        self.inventory = InventoryStore(db=db, gated=gated)
        self.ledger = OrderLedger(db=db, gated=gated)
        self.merchants = MerchantStore(db=db, gated=gated)
        self.merchant = MerchantService(
            catalog=self.catalog, inventory=self.inventory, ledger=self.ledger
        )
        self.checkout = CheckoutService(
            catalog=self.catalog,
            inventory=self.inventory,
            ledger=self.ledger,
            signer=MerchantSigner(self.merchants),
            adapter=EPay(),
        )

    def fulfillment(self, strict_signatures=False, fresh_session=False):
        db = self.session
        if fresh_session:
            db = self.SessionAsync()
            self._sessions.append(db)
        return new_fulfillment(
            db=db, gated=self.gated, strict_signatures=strict_signatures
        )

    async def product(self, cards=("card-1", "card-2"), mode="exclusive",
                      merchant=MERCHANT, configure=True, **fields):
        if configure:
            await self.merchants.save(merchant.id, PID, KEY)
        draft = ProductDraft(
            title=fields.pop("title", "Gift card"),
            price=fields.pop("price", "1.50"),
            cards=list(cards),
            allocation_mode=mode,
            **fields,
        )
        return await self.merchant.create_product(merchant, draft)

    async def notify(self, f, product, quantity=1, token=None, key=KEY,
                     trade_no="T-1"):
        """Deliver a signed TRADE_SUCCESS notification for `product`."""
        token = token or self.token(product, quantity)
        amount = product.price * quantity
        params = build_notification(
            {
                "pid": PID,
                "type": "epay",
                "out_trade_no": token,
                "name": product.title,
                "money": fmt_money(amount),
            },
            key,
            trade_no,
        )
        return await f.on_payment_notification(
            token, amount, trade_no, params
        )

    def token(self, product, quantity=1):
        # distinct even within one millisecond
        self._seq += 1
        return new_card_token(product.code, quantity, now_ms() + self._seq)

    async def close(self):
        for s in self._sessions:
            await s.close()


@pytest.fixture
async def shop(tmp_path):
    """A shop on its own SQLite file with a DB gate of one."""
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/shop.db", gate_limit=1
    )
    await create_schema(engine, Base.metadata)
    s = Shop(SessionAsync, gated)
    yield s
    await s.close()
    await engine.dispose()

