"""Checkout validation for single and mixed payments."""
from decimal import Decimal
from typing import Optional, Sequence

from pos.errors import CheckoutValidationError, ValidationCode
from pos.payments.constants import PaymentMethod, normalize_method
from pos.payments.models import PaymentSplit
from pos.pricing import change_due, is_settled, remaining_amount
from pos.services.models import Customer
from pos.services.money import ZERO, round_money, to_decimal


def validate_single(
    method: Optional[PaymentMethod],
    total: Decimal,
    cash_received=None,
    customer: Optional[Customer] = None,
) -> Decimal:
    """
    Validate a single-instrument payment.

    Returns:
        Change due (cash only, zero otherwise)
    """
    if method is None or method == "":
        raise CheckoutValidationError(ValidationCode.NO_PAYMENT_METHOD)
    method = normalize_method(method)

    if method == PaymentMethod.CASH:
        received = to_decimal(cash_received)
        if cash_received is None or received < total:
            raise CheckoutValidationError(
                ValidationCode.INSUFFICIENT_CASH,
                amount=round_money(total - received),
            )
        return change_due(total, received)

    if method == PaymentMethod.CREDIT and customer is None:
        raise CheckoutValidationError(ValidationCode.CREDIT_REQUIRES_CUSTOMER)
    return ZERO


def validate_split(split: PaymentSplit, customer: Optional[Customer] = None) -> None:
    if split.amount <= 0:
        raise CheckoutValidationError(ValidationCode.INVALID_SPLIT_AMOUNT, amount=split.amount)
    if split.method == PaymentMethod.CARD and not split.has_card_digits:
        raise CheckoutValidationError(ValidationCode.MISSING_CARD_DIGITS)
    if split.method == PaymentMethod.TRANSFER and not split.transfer_reference:
        raise CheckoutValidationError(ValidationCode.MISSING_TRANSFER_REFERENCE)
    if split.method == PaymentMethod.CREDIT and customer is None:
        raise CheckoutValidationError(ValidationCode.CREDIT_REQUIRES_CUSTOMER)


def validate_mixed(
    splits: Sequence[PaymentSplit],
    total: Decimal,
    customer: Optional[Customer] = None,
) -> Decimal:
    """
    Validate a mixed payment.

    Returns:
        Signed remaining amount (within tolerance of zero)

    Raises:
        CheckoutValidationError: UNDERPAID / OVERPAID carry the signed
            remaining amount (positive owed, negative excess)
    """
    if not splits:
        raise CheckoutValidationError(ValidationCode.NO_SPLITS)
    for split in splits:
        validate_split(split, customer)

    remaining = remaining_amount(total, (split.amount for split in splits))
    if is_settled(remaining):
        return remaining
    if remaining > 0:
        raise CheckoutValidationError(ValidationCode.UNDERPAID, amount=remaining, detail=f"{remaining} remaining")
    raise CheckoutValidationError(ValidationCode.OVERPAID, amount=remaining, detail=f"{-remaining} excess")


def ledger_amounts(splits: Sequence[PaymentSplit]) -> dict[str, Decimal]:
    """Amount per distinct method, in order of first use."""
    amounts: dict[str, Decimal] = {}
    for split in splits:
        key = split.method.value
        amounts[key] = round_money(amounts.get(key, ZERO) + split.amount)
    return amounts
