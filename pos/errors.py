"""
Register errors.

Message constants, the exception hierarchy raised by the cart, promotion and
settlement layers, and keyword classification of collaborator failures into
the fixed set of categories shown to the cashier.
"""
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

# Cart errors
ERROR_OUT_OF_STOCK = "Product out of stock"
ERROR_LINE_NOT_FOUND = "Cart line not found"

# Checkout validation errors
ERROR_CASH_REGISTER_CLOSED = "Cash register is closed"
ERROR_EMPTY_CART = "Cart is empty"
ERROR_NO_PAYMENT_METHOD = "Select a payment method"
ERROR_INSUFFICIENT_CASH = "Cash received is less than the total"
ERROR_UNDERPAID = "Payments do not cover the total"
ERROR_OVERPAID = "Payments exceed the total"
ERROR_INVALID_SPLIT_AMOUNT = "Every payment must be greater than zero"
ERROR_MISSING_CARD_DIGITS = "Card payments need the last 4 digits"
ERROR_MISSING_TRANSFER_REFERENCE = "Transfer payments need a reference"
ERROR_NO_SPLITS = "Add at least one payment"
ERROR_CREDIT_REQUIRES_CUSTOMER = "Credit payments need a selected customer"
ERROR_PAYMENT_CHANGED = "A sale in progress must be completed with the same payment"
ERROR_CHECKOUT_BUSY = "A payment is already being processed"

# Promotion errors
ERROR_INVALID_CODE = "Invalid promotion code"
ERROR_NO_ELIGIBLE_ITEMS = "No items in the cart qualify for this promotion"
ERROR_ZERO_BASE = "Eligible items have no value to discount"
ERROR_PROMOTION_INACTIVE = "Promotion is inactive"
ERROR_PROMOTION_NOT_YET_VALID = "Promotion is not valid yet"
ERROR_PROMOTION_EXPIRED = "Promotion has expired"
ERROR_USAGE_LIMIT_REACHED = "Promotion usage limit reached"
ERROR_MIN_PURCHASE_NOT_MET = "Minimum purchase not met"
ERROR_ALREADY_APPLIED = "Promotion already applied to this cart"
ERROR_NOT_APPLIED = "Promotion is not applied to this cart"


class POSError(Exception):
    """Base error for the register core."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class OutOfStockError(POSError):
    """Adding a product that has no available stock."""

    def __init__(self, item_id: str) -> None:
        super().__init__(ERROR_OUT_OF_STOCK, code="OUT_OF_STOCK")
        self.item_id = item_id


class LineNotFoundError(POSError):
    """Cart operation on a line id that is not in the cart."""

    def __init__(self, line_id: str) -> None:
        super().__init__(ERROR_LINE_NOT_FOUND, code="LINE_NOT_FOUND")
        self.line_id = line_id


class ValidationCode(str, Enum):
    """Checkout validation failures."""
    CASH_REGISTER_CLOSED = "CASH_REGISTER_CLOSED"
    EMPTY_CART = "EMPTY_CART"
    NO_PAYMENT_METHOD = "NO_PAYMENT_METHOD"
    INSUFFICIENT_CASH = "INSUFFICIENT_CASH"
    UNDERPAID = "UNDERPAID"
    OVERPAID = "OVERPAID"
    INVALID_SPLIT_AMOUNT = "INVALID_SPLIT_AMOUNT"
    MISSING_CARD_DIGITS = "MISSING_CARD_DIGITS"
    MISSING_TRANSFER_REFERENCE = "MISSING_TRANSFER_REFERENCE"
    NO_SPLITS = "NO_SPLITS"
    CREDIT_REQUIRES_CUSTOMER = "CREDIT_REQUIRES_CUSTOMER"
    PAYMENT_CHANGED = "PAYMENT_CHANGED"


VALIDATION_MESSAGES: dict[ValidationCode, str] = {
    ValidationCode.CASH_REGISTER_CLOSED: ERROR_CASH_REGISTER_CLOSED,
    ValidationCode.EMPTY_CART: ERROR_EMPTY_CART,
    ValidationCode.NO_PAYMENT_METHOD: ERROR_NO_PAYMENT_METHOD,
    ValidationCode.INSUFFICIENT_CASH: ERROR_INSUFFICIENT_CASH,
    ValidationCode.UNDERPAID: ERROR_UNDERPAID,
    ValidationCode.OVERPAID: ERROR_OVERPAID,
    ValidationCode.INVALID_SPLIT_AMOUNT: ERROR_INVALID_SPLIT_AMOUNT,
    ValidationCode.MISSING_CARD_DIGITS: ERROR_MISSING_CARD_DIGITS,
    ValidationCode.MISSING_TRANSFER_REFERENCE: ERROR_MISSING_TRANSFER_REFERENCE,
    ValidationCode.NO_SPLITS: ERROR_NO_SPLITS,
    ValidationCode.CREDIT_REQUIRES_CUSTOMER: ERROR_CREDIT_REQUIRES_CUSTOMER,
    ValidationCode.PAYMENT_CHANGED: ERROR_PAYMENT_CHANGED,
}


class CheckoutValidationError(POSError):
    """Checkout input rejected before any collaborator is called.

    ``amount`` carries the signed difference for under/over payment:
    positive is still owed, negative is excess.
    """

    def __init__(self, code: ValidationCode, amount: Optional[Decimal] = None, detail: str | None = None) -> None:
        message = VALIDATION_MESSAGES[code]
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, code=code.value)
        self.validation_code = code
        self.amount = amount


class CheckoutBusyError(POSError):
    """Confirm or cancel while a commit is in flight."""

    def __init__(self) -> None:
        super().__init__(ERROR_CHECKOUT_BUSY, code="CHECKOUT_BUSY")


class PromotionCode(str, Enum):
    """Reasons a promotion code is not applied."""
    INVALID_CODE = "INVALID_CODE"
    NO_ELIGIBLE_ITEMS = "NO_ELIGIBLE_ITEMS"
    ZERO_BASE = "ZERO_BASE"
    INACTIVE = "INACTIVE"
    NOT_YET_VALID = "NOT_YET_VALID"
    EXPIRED = "EXPIRED"
    USAGE_LIMIT_REACHED = "USAGE_LIMIT_REACHED"
    MIN_PURCHASE_NOT_MET = "MIN_PURCHASE_NOT_MET"
    ALREADY_APPLIED = "ALREADY_APPLIED"
    NOT_APPLIED = "NOT_APPLIED"


PROMOTION_MESSAGES: dict[PromotionCode, str] = {
    PromotionCode.INVALID_CODE: ERROR_INVALID_CODE,
    PromotionCode.NO_ELIGIBLE_ITEMS: ERROR_NO_ELIGIBLE_ITEMS,
    PromotionCode.ZERO_BASE: ERROR_ZERO_BASE,
    PromotionCode.INACTIVE: ERROR_PROMOTION_INACTIVE,
    PromotionCode.NOT_YET_VALID: ERROR_PROMOTION_NOT_YET_VALID,
    PromotionCode.EXPIRED: ERROR_PROMOTION_EXPIRED,
    PromotionCode.USAGE_LIMIT_REACHED: ERROR_USAGE_LIMIT_REACHED,
    PromotionCode.MIN_PURCHASE_NOT_MET: ERROR_MIN_PURCHASE_NOT_MET,
    PromotionCode.ALREADY_APPLIED: ERROR_ALREADY_APPLIED,
    PromotionCode.NOT_APPLIED: ERROR_NOT_APPLIED,
}


class PromotionError(POSError):
    """Promotion code rejected."""

    def __init__(self, code: PromotionCode, detail: str | None = None) -> None:
        message = PROMOTION_MESSAGES[code]
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, code=code.value)
        self.promotion_code = code


# ==================== COLLABORATOR ERRORS ====================

class ErrorCategory(str, Enum):
    """User-facing categories for backend failures."""
    NETWORK = "network"
    PERMISSION = "permission"
    DUPLICATE = "duplicate"
    TIMEOUT = "timeout"
    MISSING_DATA = "missing_data"
    GENERIC = "generic"


CATEGORY_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.NETWORK: "Connection problem. Check the network and try again.",
    ErrorCategory.PERMISSION: "You do not have permission to complete this sale.",
    ErrorCategory.DUPLICATE: "This sale was already registered.",
    ErrorCategory.TIMEOUT: "The server took too long to respond. Try again.",
    ErrorCategory.MISSING_DATA: "Required sale data is missing.",
    ErrorCategory.GENERIC: "The sale could not be processed.",
}

# Checked in order; timeout before network so "connection timed out" is a timeout
_CATEGORY_KEYWORDS: tuple[tuple[ErrorCategory, tuple[str, ...]], ...] = (
    (ErrorCategory.TIMEOUT, ("timeout", "timed out", "deadline exceeded", "57014")),
    (ErrorCategory.NETWORK, ("network", "fetch", "connection", "connect", "econnrefused",
                             "econnreset", "unreachable", "offline", "dns")),
    (ErrorCategory.PERMISSION, ("permission", "unauthorized", "forbidden", "not allowed",
                                "row-level security", "rls", "jwt", "401", "403", "42501")),
    (ErrorCategory.DUPLICATE, ("duplicate", "unique constraint", "already exists", "23505")),
    (ErrorCategory.MISSING_DATA, ("null value", "not-null", "required", "missing",
                                  "23502", "foreign key", "23503")),
)

_SCHEMA_MISSING_MARKERS = (
    "pgrst205",
    "42p01",
    "could not find the table",
    "schema cache",
)


def _error_text(exc: BaseException) -> str:
    parts = [str(exc)]
    for attr in ("code", "message", "details", "hint"):
        value = getattr(exc, attr, None)
        if value:
            parts.append(str(value))
    parts.append(type(exc).__name__)
    return " ".join(parts).lower()


def classify_error(exc: BaseException) -> ErrorCategory:
    """Classify a collaborator failure by keywords in its text and code."""
    if isinstance(exc, TimeoutError):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorCategory.NETWORK
    text = _error_text(exc)
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return ErrorCategory.GENERIC


def user_message(category: ErrorCategory) -> str:
    return CATEGORY_MESSAGES[category]


def is_schema_missing(exc: BaseException) -> bool:
    """True when a backend error means the expected table does not exist."""
    text = _error_text(exc)
    if any(marker in text for marker in _SCHEMA_MISSING_MARKERS):
        return True
    return "relation" in text and "does not exist" in text


class CollaboratorError(POSError):
    """Inventory, persistence or ledger call failed."""

    def __init__(self, category: ErrorCategory, stage: str, raw_error: Any = None) -> None:
        super().__init__(user_message(category), code=category.value)
        self.category = category
        self.stage = stage
        self.raw_error = raw_error

    @classmethod
    def from_exception(cls, exc: BaseException, stage: str) -> "CollaboratorError":
        return cls(classify_error(exc), stage, raw_error=exc)


class SchemaMissingWarning(POSError):
    """Expected storage table is absent; the write is skipped."""

    def __init__(self, table: str, raw_error: Any = None) -> None:
        super().__init__(f"Table '{table}' not found, write skipped", code="SCHEMA_MISSING")
        self.table = table
        self.raw_error = raw_error
