"""Payment constants, enums, and aliases."""
from enum import Enum
from typing import Set


class PaymentMethod(str, Enum):
    """Payment instruments accepted at the register."""
    CASH = "cash"
    CARD = "card"
    TRANSFER = "transfer"
    CREDIT = "credit"


class PaymentStatus(str, Enum):
    """
    Checkout state machine.

    Flow:
        idle -> processing -> success -> idle
                           -> failed  -> idle
        idle -> failed (validation rejected)
    """
    IDLE = "idle"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class AttemptStatus(str, Enum):
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class AttemptMethod(str, Enum):
    SINGLE = "single"
    MIXED = "mixed"


# Method recorded on a sale settled with more than one instrument
MIXED_METHOD = "mixed"

# Method name aliases (input -> canonical)
METHOD_ALIASES: dict[str, str] = {
    "cash": PaymentMethod.CASH.value,
    "efectivo": PaymentMethod.CASH.value,
    "card": PaymentMethod.CARD.value,
    "tarjeta": PaymentMethod.CARD.value,
    "debit": PaymentMethod.CARD.value,
    "credit_card": PaymentMethod.CARD.value,
    "transfer": PaymentMethod.TRANSFER.value,
    "transferencia": PaymentMethod.TRANSFER.value,
    "bank_transfer": PaymentMethod.TRANSFER.value,
    "credit": PaymentMethod.CREDIT.value,
    "credito": PaymentMethod.CREDIT.value,
    "store_credit": PaymentMethod.CREDIT.value,
}

# Allowed state transitions
TRANSITIONS: dict[PaymentStatus, Set[PaymentStatus]] = {
    PaymentStatus.IDLE: {PaymentStatus.PROCESSING, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {PaymentStatus.SUCCESS, PaymentStatus.FAILED},
    PaymentStatus.SUCCESS: {PaymentStatus.IDLE},
    PaymentStatus.FAILED: {PaymentStatus.IDLE},
}


def normalize_method(value) -> PaymentMethod:
    """Canonical payment method from an enum, name or alias."""
    if isinstance(value, PaymentMethod):
        return value
    key = str(value or "").strip().lower()
    if key not in METHOD_ALIASES:
        raise ValueError(f"Unknown payment method: {value!r}")
    return PaymentMethod(METHOD_ALIASES[key])
