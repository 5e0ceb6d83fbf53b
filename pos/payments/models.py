"""Payment splits and the payment attempt log."""
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional

from pos.services.money import to_decimal, to_float
from .constants import AttemptMethod, AttemptStatus, PaymentMethod, normalize_method


@dataclass(frozen=True)
class PaymentSplit:
    """One instrument in a mixed payment."""
    method: PaymentMethod
    amount: Decimal
    card_last4: Optional[str] = None
    transfer_reference: Optional[str] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        object.__setattr__(self, "method", normalize_method(self.method))
        object.__setattr__(self, "amount", to_decimal(self.amount))
        if self.card_last4 is not None:
            object.__setattr__(self, "card_last4", str(self.card_last4).strip() or None)
        if self.transfer_reference is not None:
            object.__setattr__(self, "transfer_reference", str(self.transfer_reference).strip() or None)

    @property
    def has_card_digits(self) -> bool:
        return bool(self.card_last4) and len(self.card_last4) == 4 and self.card_last4.isdigit()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "method": self.method.value,
            "amount": to_float(self.amount),
            "card_last4": self.card_last4,
            "transfer_reference": self.transfer_reference,
        }


@dataclass(frozen=True)
class PaymentAttempt:
    """Write-once record of a checkout attempt."""
    status: AttemptStatus
    method: AttemptMethod
    amount: Decimal
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error_code: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "status": self.status.value,
            "method": self.method.value,
            "amount": to_float(self.amount),
            "message": self.message,
            "error_code": self.error_code,
        }


class PaymentAttemptLog:
    """Append-only ring buffer of payment attempts; the oldest entry is evicted when full."""

    def __init__(self, max_size: int = 10):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._entries: deque[PaymentAttempt] = deque(maxlen=max_size)

    @property
    def max_size(self) -> int:
        return self._entries.maxlen

    def append(self, attempt: PaymentAttempt) -> None:
        self._entries.append(attempt)

    @property
    def latest(self) -> Optional[PaymentAttempt]:
        return self._entries[-1] if self._entries else None

    def entries(self) -> list[PaymentAttempt]:
        """Oldest first."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[PaymentAttempt]:
        return iter(list(self._entries))
