"""Register configuration read from the environment."""
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import cache

from pos.logging import get_logger

logger = get_logger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
BACKENDS = ("memory", "supabase")


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.environ.get(name, default)
    try:
        return Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        raise ValueError(f"{name} must be a decimal number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass(frozen=True)
class POSSettings:
    """Immutable register settings."""
    tax_rate: Decimal = Decimal("0.10")
    prices_include_tax: bool = False
    wholesale_discount_rate: Decimal = Decimal("0.10")
    payment_attempt_log_size: int = 10
    checkout_close_delay: float = 1.5
    currency: str = "PYG"
    cash_rounding_step: Decimal = Decimal("0")  # 0 = change is not rounded
    backend: str = "memory"
    supabase_url: str = ""
    supabase_key: str = ""

    def __post_init__(self):
        if not Decimal("0") <= self.tax_rate <= Decimal("1"):
            raise ValueError("POS_TAX_RATE must be a fraction between 0 and 1")
        if not Decimal("0") <= self.wholesale_discount_rate <= Decimal("1"):
            raise ValueError("POS_WHOLESALE_DISCOUNT_RATE must be a fraction between 0 and 1")
        if self.payment_attempt_log_size < 1:
            raise ValueError("POS_PAYMENT_ATTEMPT_LOG_SIZE must be at least 1")
        if self.cash_rounding_step < 0:
            raise ValueError("POS_CASH_ROUNDING_STEP must not be negative")
        if self.backend not in BACKENDS:
            raise ValueError(f"POS_BACKEND must be one of {BACKENDS}, got {self.backend!r}")


def load_settings() -> POSSettings:
    """Build settings from environment variables."""
    return POSSettings(
        tax_rate=_env_decimal("POS_TAX_RATE", "0.10"),
        prices_include_tax=_env_bool("POS_PRICES_INCLUDE_TAX", False),
        wholesale_discount_rate=_env_decimal("POS_WHOLESALE_DISCOUNT_RATE", "0.10"),
        payment_attempt_log_size=_env_int("POS_PAYMENT_ATTEMPT_LOG_SIZE", 10),
        checkout_close_delay=float(_env_decimal("POS_CHECKOUT_CLOSE_DELAY", "1.5")),
        currency=os.environ.get("POS_CURRENCY", "PYG"),
        cash_rounding_step=_env_decimal("POS_CASH_ROUNDING_STEP", "0"),
        backend=os.environ.get("POS_BACKEND", "memory").strip().lower(),
        supabase_url=os.environ.get("SUPABASE_URL", ""),
        supabase_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""),
    )


@cache
def get_settings() -> POSSettings:
    """Get settings singleton (read once per process)."""
    settings = load_settings()
    logger.info(
        f"Register settings loaded: backend={settings.backend}, tax_rate={settings.tax_rate}, "
        f"prices_include_tax={settings.prices_include_tax}"
    )
    return settings
