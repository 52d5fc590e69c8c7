"""
Fulfillment Errors

Typed failures raised at the subsystem boundary. Every error keeps the
identity of the entity that caused it so callers can act on it.
"""

from typing import Any, Dict, Optional


class FulfillmentError(Exception):
    """Base class for all fulfillment failures"""

    retryable: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Structured representation for logging and API mapping"""
        fields = {k: v for k, v in vars(self).items() if not k.startswith("_")}
        return {"error": type(self).__name__, "message": str(self), **fields}


# =============================================================================
# INVENTORY
# =============================================================================

class InsufficientStockError(FulfillmentError):
    """A reservation asked for more units than the variant holds"""

    retryable = True

    def __init__(self, variant_id: str, requested: int, available: int):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for variant {variant_id}: "
            f"requested {requested}, available {available}"
        )


class InvalidQuantityError(FulfillmentError, ValueError):
    """Quantity or amount outside the accepted range"""

    def __init__(self, quantity: Any, message: Optional[str] = None):
        self.quantity = quantity
        super().__init__(message or f"Invalid quantity: {quantity}")


# =============================================================================
# PRICING
# =============================================================================

class MissingRateError(FulfillmentError):
    """The rate table cannot convert between two currencies"""

    def __init__(self, from_currency: str, to_currency: str):
        self.from_currency = str(from_currency)
        self.to_currency = str(to_currency)
        super().__init__(f"No exchange rate for {self.from_currency} -> {self.to_currency}")


class RateProviderError(FulfillmentError):
    """Live quotes could not be fetched and nothing is cached"""

    retryable = True


# =============================================================================
# LOOKUPS
# =============================================================================

class UnknownEntityError(FulfillmentError):
    """Referenced record does not exist"""

    entity = "record"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"Unknown {self.entity}: {entity_id}")


class UnknownVariantError(UnknownEntityError):
    entity = "variant"

    @property
    def variant_id(self) -> str:
        return self.entity_id


class UnknownProductError(UnknownEntityError):
    entity = "product"


class UnknownOrderError(UnknownEntityError):
    entity = "order"


class UnknownCustomerError(UnknownEntityError):
    entity = "customer"


class UnknownStaffError(UnknownEntityError):
    entity = "staff"


class UnknownReviewError(UnknownEntityError):
    entity = "review"


# =============================================================================
# INVARIANT VIOLATIONS
# =============================================================================

class DuplicateSettlementError(FulfillmentError):
    """The order already has an offline sale attached"""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order {order_id} already has an offline sale")


class DuplicateReviewError(FulfillmentError):
    """The customer already reviewed this product"""

    def __init__(self, product_id: str, customer_id: str):
        self.product_id = product_id
        self.customer_id = customer_id
        super().__init__(f"Customer {customer_id} already reviewed product {product_id}")


class InvalidTransitionError(FulfillmentError):
    """Requested status change is not in the allowed transition table"""

    def __init__(self, order_id: str, current: Any, requested: Any):
        self.order_id = order_id
        self.current = getattr(current, "value", current)
        self.requested = getattr(requested, "value", requested)
        super().__init__(
            f"Order {order_id} cannot move from {self.current} to {self.requested}"
        )


class InvalidOrderError(FulfillmentError):
    """Order request is malformed"""

    def __init__(self, message: str, variant_id: Optional[str] = None):
        self.variant_id = variant_id
        super().__init__(message)


class InvalidReviewError(FulfillmentError):
    """Review payload failed validation"""


class ConcurrentModificationError(FulfillmentError):
    """A concurrent writer changed the same stock or rating row"""

    retryable = True

    def __init__(self, message: str = "Concurrent modification detected", entity_id: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(message)
