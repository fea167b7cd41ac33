# storefront/services/errors.py
from __future__ import annotations


class EngineError(Exception):
    pass


# -------------------------
# Stock / reservation
# -------------------------
class InsufficientStock(EngineError):
    """Fewer claimable cards than requested. Nothing stays allocated."""


class StaleReservationRace(InsufficientStock):
    """A conditional claim hit zero rows because another buyer got there first."""


# -------------------------
# Order lifecycle
# -------------------------
class InvalidTransition(EngineError):
    def __init__(self, order_id: str, current: str | None, target: str):
        self.order_id = order_id
        self.current = current
        self.target = target
        super().__init__(f"Order {order_id}: cannot move from {current} to {target}.")


class DuplicateCallback(EngineError):
    """Payment callback for an order that is already paid or delivered."""


class PaymentMismatch(EngineError):
    pass


class OrderNotFound(EngineError):
    pass


# -------------------------
# Cache refresh
# -------------------------
class AggregateRecomputeFailure(EngineError):
    pass


# -------------------------
# Purchase validation
# -------------------------
class ProductUnavailable(EngineError):
    pass


class InvalidQuantity(EngineError):
    pass


class PurchaseLimitExceeded(EngineError):
    pass


class InsufficientPoints(EngineError):
    pass


class UserBlocked(EngineError):
    pass
