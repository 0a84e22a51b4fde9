"""
Error taxonomy of the fulfillment core.

Business outcomes (OutOfStock, AmountMismatch) never leave the webhook
reconciler as exceptions; they end up on the order or in the acknowledgment.
Infrastructure faults derive from RetriableError and travel up to the
transport layer, which answers 503 so the gateway redelivers.
"""
from typing import Optional


class FulfillmentError(Exception):
    pass


class MalformedEvent(FulfillmentError):
    pass


class InvalidSignature(MalformedEvent):
    pass


class AmountMismatch(FulfillmentError):
    def __init__(self, order_id: str, expected: int, received: int):
        super().__init__(
            f"amount mismatch for {order_id}: expected {expected}, "
            f"received {received}"
        )
        self.order_id = order_id
        self.expected = expected
        self.received = received


class OrderNotFound(FulfillmentError):
    def __init__(self, order_id: str):
        super().__init__(f"order not found: {order_id}")
        self.order_id = order_id


class DuplicateOrderId(FulfillmentError):
    def __init__(self, order_id: str):
        super().__init__(f"order already exists: {order_id}")
        self.order_id = order_id


class OutOfStock(FulfillmentError):
    reason = "OutOfStock"

    def __init__(self, product_id: str):
        super().__init__(f"no available unit for product {product_id}")
        self.product_id = product_id


class UnitUnavailable(FulfillmentError):
    def __init__(self, unit_id: int, detail: str):
        super().__init__(f"unit {unit_id} unavailable: {detail}")
        self.unit_id = unit_id


class ConflictError(FulfillmentError):
    def __init__(self, order_id: str, expected: Optional[str] = None,
                 actual: Optional[str] = None):
        if expected is not None:
            msg = (f"order {order_id} is {actual!r}, "
                   f"expected {expected!r}")
        else:
            msg = f"concurrent update on order {order_id}"
        super().__init__(msg)
        self.order_id = order_id
        self.expected = expected
        self.actual = actual


class NotificationFailure(FulfillmentError):
    pass


class RetriableError(FulfillmentError):
    pass


class RepositoryUnavailable(RetriableError):
    pass


class DeadlineExceeded(RetriableError):
    pass
