"""
Typed exception hierarchy for the costing kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Request handlers that call the engine must react differently to "the
product does not exist", "the quantity is invalid" and "another request is
replaying this product's history". Parsing messages for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE class attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

A stock shortage on a sale is deliberately NOT an exception: the sale is
costed at the product's fallback cost and the result carries a warning.
Blocking the sale would halt the till; an approximately-costed sale is
corrected later when the missing purchase is entered.  Goods sent back to
a supplier must physically exist, so a supplier return that finds too few
units raises InsufficientStockError.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CostingError (base)
    |
    +-- NotFoundError
    |   +-- ProductNotFoundError
    |   +-- StockLotNotFoundError
    |   +-- SaleLineNotFoundError
    |   +-- SupplierReturnNotFoundError
    |
    +-- ValidationError
    |   +-- InvalidQuantityError
    |   +-- InvalidCostError
    |   +-- InsufficientStockError
    |
    +-- LotError
    |   +-- LotRetiredError
    |
    +-- ConcurrencyError
    |   +-- ProductLockTimeoutError
    |
    +-- ImmutabilityError
    |   +-- ImmutabilityViolationError
    |
    +-- TransactionError
        +-- TransactionFailureError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                      | When Raised
--------------|---------------------------|------------------------------------------
Not found     | PRODUCT_NOT_FOUND         | Product ID doesn't exist
              | STOCK_LOT_NOT_FOUND       | Lot ID doesn't exist
              | SALE_LINE_NOT_FOUND       | Sale line ID doesn't exist
              | SUPPLIER_RETURN_NOT_FOUND | No draws recorded for a return document
--------------|---------------------------|------------------------------------------
Validation    | INVALID_QUANTITY          | Quantity <= 0, NaN/Infinity, > 9 decimals
              | INVALID_COST              | Unit cost < 0, NaN/Infinity, > 9 decimals
              | INSUFFICIENT_STOCK        | Supplier return larger than eligible stock
--------------|---------------------------|------------------------------------------
Lot           | LOT_RETIRED               | Revising or retiring a retired lot
--------------|---------------------------|------------------------------------------
Concurrency   | PRODUCT_LOCK_TIMEOUT      | Product timeline lock not acquired in time
--------------|---------------------------|------------------------------------------
Immutability  | IMMUTABILITY_VIOLATION    | Updating/deleting a cost audit entry,
              |                           | deleting a lot still referenced
--------------|---------------------------|------------------------------------------
Transaction   | TRANSACTION_FAILURE       | Persistence failure during a cascade

===============================================================================
HANDLING PATTERNS
===============================================================================

    try:
        result = engine.sales.record_sale_line(...)
    except ProductNotFoundError as e:
        return {"error": e.code, "product_id": e.product_id}
    except ConcurrencyError:
        # Safe to retry the whole request: the cascade is idempotent
        ...

TransactionFailureError means the caller's transaction must be rolled back;
nothing the failed cascade wrote may be committed.
"""


class CostingError(Exception):
    """
    Base exception for all costing kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    error identification.
    """

    code: str = "COSTING_ERROR"


# Not-found exceptions


class NotFoundError(CostingError):
    """Base exception for missing referenced records."""

    code: str = "NOT_FOUND"


class ProductNotFoundError(NotFoundError):
    """Product with given ID was not found."""

    code: str = "PRODUCT_NOT_FOUND"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class StockLotNotFoundError(NotFoundError):
    """Stock lot with given ID was not found."""

    code: str = "STOCK_LOT_NOT_FOUND"

    def __init__(self, lot_id: str):
        self.lot_id = lot_id
        super().__init__(f"Stock lot not found: {lot_id}")


class SaleLineNotFoundError(NotFoundError):
    """Sale line with given ID was not found."""

    code: str = "SALE_LINE_NOT_FOUND"

    def __init__(self, sale_line_id: str):
        self.sale_line_id = sale_line_id
        super().__init__(f"Sale line not found: {sale_line_id}")


class SupplierReturnNotFoundError(NotFoundError):
    """No supplier return draws exist for the given return document."""

    code: str = "SUPPLIER_RETURN_NOT_FOUND"

    def __init__(self, return_ref: str):
        self.return_ref = return_ref
        super().__init__(f"Supplier return not found: {return_ref}")


# Validation exceptions


class ValidationError(CostingError):
    """Base exception for rejected inputs."""

    code: str = "VALIDATION_ERROR"


class InvalidQuantityError(ValidationError):
    """Quantity must be a finite number greater than zero with at most 9 decimal places."""

    code: str = "INVALID_QUANTITY"

    def __init__(self, quantity: str, context: str):
        self.quantity = quantity
        self.context = context
        super().__init__(
            f"Quantity must be a positive number with at most 9 decimal places "
            f"for {context}, got {quantity}"
        )


class InvalidCostError(ValidationError):
    """Unit cost must be a finite, non-negative number with at most 9 decimal places."""

    code: str = "INVALID_COST"

    def __init__(self, unit_cost: str, context: str):
        self.unit_cost = unit_cost
        self.context = context
        super().__init__(
            f"Unit cost must be a non-negative number with at most 9 decimal places "
            f"for {context}, got {unit_cost}"
        )


class InsufficientStockError(ValidationError):
    """
    Too few eligible units to send back to the supplier.

    Nothing has been written when this is raised.
    """

    code: str = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: str, available: str):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock of product {product_id} to return: "
            f"requested {requested}, available {available}"
        )


# Lot lifecycle exceptions


class LotError(CostingError):
    """Base exception for stock lot lifecycle errors."""

    code: str = "LOT_ERROR"


class LotRetiredError(LotError):
    """The lot has been retired and no longer takes part in FIFO."""

    code: str = "LOT_RETIRED"

    def __init__(self, lot_id: str):
        self.lot_id = lot_id
        super().__init__(f"Stock lot {lot_id} is retired")


# Concurrency exceptions


class ConcurrencyError(CostingError):
    """Base exception for concurrency-related errors."""

    code: str = "CONCURRENCY_ERROR"


class ProductLockTimeoutError(ConcurrencyError):
    """Another transaction kept the product's lot timeline locked too long."""

    code: str = "PRODUCT_LOCK_TIMEOUT"

    def __init__(self, product_id: str, timeout_seconds: float):
        self.product_id = product_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Could not lock lot timeline of product {product_id} "
            f"within {timeout_seconds}s"
        )


# Immutability exceptions


class ImmutabilityError(CostingError):
    """Base exception for immutability-related errors."""

    code: str = "IMMUTABILITY_ERROR"


class ImmutabilityViolationError(ImmutabilityError):
    """
    Attempted to modify or delete a protected record.

    Cost audit entries are append-only. Stock lots may not be physically
    deleted while a consumption still references them.
    """

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Transaction exceptions


class TransactionError(CostingError):
    """Base exception for persistence failures."""

    code: str = "TRANSACTION_ERROR"


class TransactionFailureError(TransactionError):
    """
    The persistence layer failed part-way through a multi-step operation.

    The caller must roll back its transaction; the operation may then be
    retried from scratch.
    """

    code: str = "TRANSACTION_FAILURE"

    def __init__(self, operation: str, product_id: str, detail: str):
        self.operation = operation
        self.product_id = product_id
        self.detail = detail
        super().__init__(
            f"{operation} failed for product {product_id}: {detail}"
        )
