from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    Boolean,
    ForeignKey,
    Index,
)
from typing import List, Optional


Base = declarative_base()

# allocation modes
EXCLUSIVE = "exclusive"
SHARED = "shared"
BUNDLE = "bundle"
ALLOCATION_MODES = (EXCLUSIVE, SHARED, BUNDLE)

# inventory unit states
AVAILABLE = "available"
RESERVED = "reserved"
SOLD = "sold"

# order states; there is no failed/cancelled once money has moved
PENDING = "pending"
PAID = "paid"


# ----------------------------
# ORM models
# ----------------------------
class MerchantSettings(Base):
    __tablename__ = "merchant_settings"
    merchant_id = Column(String, primary_key=True)
    epay_pid = Column(String, nullable=False, default="")
    epay_key = Column(String, nullable=False, default="")
    updated_at = Column(Float, nullable=False)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    merchant_id = Column(String, nullable=False, index=True)
    merchant_name = Column(String, nullable=False, default="")
    code = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)  # cents

    # exclusive | shared | bundle
    allocation_mode = Column(String, nullable=False, default=EXCLUSIVE)
    bundle_size = Column(Integer, nullable=False, default=1)
    # exclusive: units loaded; bundle: whole bundles loaded;
    # shared: max purchase events, <= 0 is unlimited
    stock_limit = Column(Integer, nullable=False, default=0)
    units_sold = Column(Integer, nullable=False, default=0)

    active = Column(Boolean, nullable=False, default=True)
    per_buyer_limit = Column(Integer, nullable=False, default=0)
    min_trust_tier = Column(Integer, nullable=False, default=0)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    @property
    def unlimited(self) -> bool:
        return self.allocation_mode == SHARED and self.stock_limit <= 0

    def remaining(self) -> Optional[int]:
        """Remaining purchase capacity, None when unlimited."""
        if self.unlimited:
            return None
        return self.stock_limit - self.units_sold

    def has_capacity(self, quantity: int) -> bool:
        left = self.remaining()
        return left is None or left >= quantity


class InventoryUnit(Base):
    __tablename__ = "inventory_units"
    id = Column(String, primary_key=True)
    product_id = Column(
        String, ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False
    )
    secret = Column(Text, nullable=False)

    # available | reserved | sold
    state = Column(String, nullable=False, default=AVAILABLE)
    # "{token}#{n}" while reserved by a notification
    reservation_tag = Column(String, nullable=True)
    reserved_at = Column(Float, nullable=True)

    order_token = Column(String, nullable=True)
    buyer_id = Column(String, nullable=True)
    buyer_name = Column(String, nullable=True)
    sold_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("inventory_units_product_state_idx", "product_id", "state"),
        Index("inventory_units_state_reserved_idx", "state", "reserved_at"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    product_id = Column(
        String, ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False, index=True
    )
    # the gateway's out_trade_no; one row per token, ever
    token = Column(String, nullable=False, unique=True)
    buyer_id = Column(String, nullable=True, index=True)
    buyer_name = Column(String, nullable=True)
    quantity = Column(Integer, nullable=False)
    amount = Column(Integer, nullable=False)  # cents

    # pending | paid
    status = Column(String, nullable=False, default=PENDING)
    # comma separated inventory unit ids, in claim order
    unit_ids = Column(Text, nullable=False, default="")
    units_expected = Column(Integer, nullable=False, default=0)
    shortfall = Column(Integer, nullable=False, default=0)
    gateway_ref = Column(String, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)

    @property
    def unit_id_list(self) -> List[str]:
        return [u for u in (self.unit_ids or "").split(",") if u]

    @property
    def is_paid(self) -> bool:
        return self.status == PAID


class FulfillmentGate(Base):
    __tablename__ = "fulfillment_gates"
    token = Column(String, primary_key=True)
    created_at = Column(Float, nullable=False)


class FulfillmentIncident(Base):
    __tablename__ = "fulfillment_incidents"
    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=True)
    # unfulfilled | short | sold_out
    kind = Column(String, nullable=False)
    expected = Column(Integer, nullable=False, default=0)
    allocated = Column(Integer, nullable=False, default=0)
    amount = Column(Integer, nullable=True)  # cents
    gateway_ref = Column(String, nullable=True)
    detail = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
