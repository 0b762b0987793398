class CardShopError(Exception):
    """Base class for domain errors raised by the card shop."""


class MalformedToken(CardShopError):
    pass


class MerchantNotConfigured(CardShopError):
    def __init__(self, merchant_id: str):
        super().__init__(f"merchant {merchant_id!r} has no payment settings")
        self.merchant_id = merchant_id


class ProductNotFound(CardShopError):
    def __init__(self, code: str):
        super().__init__(f"product {code!r} not found")
        self.code = code


class DuplicateToken(CardShopError):
    def __init__(self, token: str):
        super().__init__(f"order token {token!r} already exists")
        self.token = token


class NotOwner(CardShopError):
    pass


class PurchaseNotAllowed(CardShopError):
    """Raised by the advisory admission check; `reason` is buyer-facing."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidProduct(CardShopError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class OrderNotFound(CardShopError):
    def __init__(self, order_id: str):
        super().__init__(f"order {order_id!r} not found")
        self.order_id = order_id
