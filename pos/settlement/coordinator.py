"""
Settlement Coordinator

Validates the payment for the current cart and runs the commit sequence:
inventory sale, then sale persistence, then one ledger entry per payment
method. The three calls are awaited one after another; a failure after the
inventory call leaves a pending commit that the next confirm for the same
cart resumes instead of repeating, provided it pays the same way.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Optional

from pos.adapters.base import (
    InventoryAdapter,
    RegisterLedger,
    SaleItem,
    SalePersistence,
    SaleRecord,
)
from pos.cart.models import CartSnapshot
from pos.cart.service import CartStore
from pos.errors import (
    CheckoutBusyError,
    CheckoutValidationError,
    CollaboratorError,
    SchemaMissingWarning,
    ValidationCode,
)
from pos.logging import get_logger, sanitize_id_for_logging
from pos.payments.constants import (
    MIXED_METHOD,
    TRANSITIONS,
    AttemptMethod,
    AttemptStatus,
    PaymentMethod,
    PaymentStatus,
    normalize_method,
)
from pos.payments.models import PaymentAttempt, PaymentAttemptLog, PaymentSplit
from pos.pricing import Totals, effective_unit_price, price, remaining_amount
from pos.services.money import ZERO, apply_cash_rounding, format_money, to_decimal, to_float
from .validation import ledger_amounts, validate_mixed, validate_single

logger = get_logger(__name__)


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of a successful checkout."""
    status: PaymentStatus
    sale_id: str
    payment_method: str
    total: Decimal
    change: Decimal
    attempt: PaymentAttempt
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "sale_id": self.sale_id,
            "payment_method": self.payment_method,
            "total": to_float(self.total),
            "change": to_float(self.change),
            "attempt": self.attempt.to_dict(),
            "warnings": list(self.warnings),
        }


@dataclass
class PendingCommit:
    """
    Progress of a commit that has not finished, keyed on the cart version.

    ``method_name`` and ``amounts`` are the payment the sale is committed
    with; once persistence has started a retry must use the same payment.
    """
    cart_version: int
    method_name: str = ""
    amounts: dict[str, Decimal] = field(default_factory=dict)
    sale_id: Optional[str] = None
    persistence_started: bool = False
    persisted: bool = False
    ledger_done: set[str] = field(default_factory=set)

    @property
    def payment_locked(self) -> bool:
        return self.persistence_started or bool(self.ledger_done)

    def same_payment(self, method_name: str, amounts: dict[str, Decimal]) -> bool:
        return self.method_name == method_name and self.amounts == amounts


def build_sale_items(snapshot: CartSnapshot, totals: Totals) -> list[SaleItem]:
    """Lines as handed to the collaborators, priced from ``totals``."""
    return [
        SaleItem(
            id=line.item_id,
            name=line.name,
            sku=line.sku,
            price=effective_unit_price(line, snapshot.wholesale_mode, snapshot.wholesale_rate),
            quantity=line.quantity,
            stock=line.stock,
            stock_id=line.stock_id,
            kind=line.kind.value,
            discount_percent=line.discount_percent,
            line_total=line_totals.total,
            promo_code=line.promo_code,
        )
        for line, line_totals in zip(snapshot.lines, totals.lines)
    ]


class SettlementCoordinator:
    """
    Payment state machine for one register.

    States: idle -> processing -> success | failed, and back to idle.
    Validation failures move idle -> failed without entering processing.
    """

    def __init__(
        self,
        cart: CartStore,
        inventory: InventoryAdapter,
        persistence: SalePersistence,
        ledger: RegisterLedger,
        attempt_log_size: int = 10,
        close_delay: float = 1.5,
        on_close: Optional[Callable[[], None]] = None,
        cash_rounding_step: Decimal = ZERO,
    ):
        self.cart = cart
        self.inventory = inventory
        self.persistence = persistence
        self.ledger = ledger
        self.attempts = PaymentAttemptLog(attempt_log_size)
        self.close_delay = close_delay
        self.on_close = on_close
        self.cash_rounding_step = to_decimal(cash_rounding_step)

        self._state = PaymentStatus.IDLE
        self._busy = False
        self._checkout_open = False
        self._close_handle: Optional[asyncio.TimerHandle] = None
        self._selected_method: Optional[PaymentMethod] = None
        self._cash_received: Optional[Decimal] = None
        self._splits: list[PaymentSplit] = []
        self._pending: Optional[PendingCommit] = None
        self.last_error: Optional[str] = None

    # ==================== STATE ====================

    @property
    def state(self) -> PaymentStatus:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._busy or self._state == PaymentStatus.PROCESSING

    @property
    def is_checkout_open(self) -> bool:
        return self._checkout_open

    @property
    def splits(self) -> tuple[PaymentSplit, ...]:
        return tuple(self._splits)

    @property
    def selected_method(self) -> Optional[PaymentMethod]:
        return self._selected_method

    @property
    def pending_sale_id(self) -> Optional[str]:
        return self._pending.sale_id if self._pending else None

    def _transition(self, target: PaymentStatus) -> None:
        if target not in TRANSITIONS[self._state]:
            raise RuntimeError(f"Invalid payment state transition {self._state.value} -> {target.value}")
        logger.info(f"Payment state {self._state.value} -> {target.value}")
        self._state = target

    # ==================== CHECKOUT SURFACE ====================

    def open_checkout(self) -> None:
        if self._close_handle is not None:
            self._close_handle.cancel()
            self._close_handle = None
        if self._state in (PaymentStatus.SUCCESS, PaymentStatus.FAILED):
            self._transition(PaymentStatus.IDLE)
        self._checkout_open = True

    def cancel(self) -> None:
        """Close the checkout and drop unconfirmed payment selections."""
        if self.is_busy:
            raise CheckoutBusyError()
        self._reset_selections()
        if self._state in (PaymentStatus.SUCCESS, PaymentStatus.FAILED):
            self._transition(PaymentStatus.IDLE)
        self._close_checkout()

    def select_method(self, method) -> PaymentMethod:
        self._selected_method = normalize_method(method)
        return self._selected_method

    def set_cash_received(self, amount) -> None:
        self._cash_received = to_decimal(amount) if amount is not None else None

    def add_split(self, method, amount, card_last4: Optional[str] = None,
                  transfer_reference: Optional[str] = None) -> PaymentSplit:
        if self.is_busy:
            raise CheckoutBusyError()
        split = PaymentSplit(
            method=method,
            amount=amount,
            card_last4=card_last4,
            transfer_reference=transfer_reference,
        )
        self._splits.append(split)
        return split

    def remove_split(self, split_id: str) -> None:
        if self.is_busy:
            raise CheckoutBusyError()
        remaining = [s for s in self._splits if s.id != split_id]
        if len(remaining) == len(self._splits):
            raise KeyError(split_id)
        self._splits = remaining

    def totals(self) -> Totals:
        return price(self.cart.snapshot())

    def remaining(self) -> Decimal:
        """Signed amount the current splits still owe."""
        return remaining_amount(self.totals().total, (s.amount for s in self._splits))

    # ==================== CONFIRM ====================

    async def confirm_single(self, method=None, cash_received=None) -> SettlementResult:
        """Settle with one instrument. Falls back to the selected method and cash received."""
        if method is not None:
            self.select_method(method)
        if cash_received is not None:
            self.set_cash_received(cash_received)
        chosen = self._selected_method
        received = self._cash_received

        def validate(totals: Totals) -> Decimal:
            change = validate_single(chosen, totals.total, received, self.cart.customer)
            if chosen == PaymentMethod.CASH and change > 0 and self.cash_rounding_step > 0:
                # Change is handed back in the smallest note or coin in circulation
                change = apply_cash_rounding(change, self.cash_rounding_step)
            return change

        def payments(totals: Totals) -> tuple[str, dict[str, Decimal], tuple[PaymentSplit, ...]]:
            return chosen.value, {chosen.value: totals.total}, ()

        return await self._confirm(AttemptMethod.SINGLE, validate, payments)

    async def confirm_mixed(self, splits: Optional[list[PaymentSplit]] = None) -> SettlementResult:
        """Settle with the given splits, or the ones added so far."""
        if splits is not None:
            if self.is_busy:
                raise CheckoutBusyError()
            self._splits = list(splits)
        current = tuple(self._splits)

        def validate(totals: Totals) -> Decimal:
            validate_mixed(current, totals.total, self.cart.customer)
            return ZERO

        def payments(totals: Totals) -> tuple[str, dict[str, Decimal], tuple[PaymentSplit, ...]]:
            amounts = ledger_amounts(current)
            method = MIXED_METHOD if len(amounts) > 1 else next(iter(amounts))
            return method, amounts, current

        return await self._confirm(AttemptMethod.MIXED, validate, payments)

    async def _confirm(self, attempt_method: AttemptMethod, validate, payments) -> SettlementResult:
        if self.is_busy:
            logger.warning("Confirm rejected: payment already processing")
            raise CheckoutBusyError()
        self._busy = True
        try:
            return await self._run(attempt_method, validate, payments)
        finally:
            self._busy = False

    async def _run(self, attempt_method: AttemptMethod, validate, payments) -> SettlementResult:
        if self._state in (PaymentStatus.SUCCESS, PaymentStatus.FAILED):
            self._transition(PaymentStatus.IDLE)

        try:
            register_open = await self.ledger.is_open()
        except Exception as e:
            error = CollaboratorError.from_exception(e, "ledger")
            logger.error(f"Register status check failed: {error.category.value}", exc_info=True)
            self._fail(attempt_method, ZERO, error.message, error.code)
            raise error from e
        if not register_open:
            logger.warning("Confirm rejected: cash register is closed")
            raise CheckoutValidationError(ValidationCode.CASH_REGISTER_CLOSED)

        snapshot = self.cart.snapshot()
        if snapshot.is_empty:
            logger.warning("Confirm rejected: cart is empty")
            raise CheckoutValidationError(ValidationCode.EMPTY_CART)

        totals = price(snapshot)
        try:
            change = validate(totals)
            method_name, amounts, splits = payments(totals)
            self._check_resumable(snapshot.version, method_name, amounts)
        except CheckoutValidationError as e:
            logger.warning(f"Checkout validation failed: {e.code} (amount={e.amount})")
            self._fail(attempt_method, totals.total, e.message, e.code)
            raise

        self._transition(PaymentStatus.PROCESSING)
        try:
            sale_id, warnings = await self._commit(snapshot, totals, method_name, amounts, splits)
        except CollaboratorError as e:
            self._fail(attempt_method, totals.total, e.message, e.code)
            raise

        self._transition(PaymentStatus.SUCCESS)
        attempt = PaymentAttempt(
            status=AttemptStatus.SUCCESS,
            method=attempt_method,
            amount=totals.total,
            message=f"Payment of {format_money(totals.total)} completed",
        )
        self.attempts.append(attempt)
        self.last_error = None
        self._pending = None

        self.cart.clear(keep_preferences=True)
        self._reset_selections()
        self._schedule_close()

        logger.info(
            f"Sale {sanitize_id_for_logging(sale_id)} settled: {totals.total} via {method_name}"
        )
        return SettlementResult(
            status=PaymentStatus.SUCCESS,
            sale_id=sale_id,
            payment_method=method_name,
            total=totals.total,
            change=change,
            attempt=attempt,
            warnings=tuple(warnings),
        )

    async def _commit(
        self,
        snapshot: CartSnapshot,
        totals: Totals,
        method_name: str,
        amounts: dict[str, Decimal],
        splits: tuple[PaymentSplit, ...],
    ) -> tuple[str, list[str]]:
        pending = self._pending
        if pending is not None and pending.cart_version != snapshot.version:
            logger.error(
                f"Cart changed after a partial commit; sale {sanitize_id_for_logging(pending.sale_id)} "
                f"is orphaned (persisted={pending.persisted})"
            )
            pending = None
        if pending is None:
            pending = PendingCommit(cart_version=snapshot.version)
            self._pending = pending
        elif pending.sale_id:
            logger.info(f"Resuming commit for sale {sanitize_id_for_logging(pending.sale_id)}")
        pending.method_name = method_name
        pending.amounts = dict(amounts)

        warnings: list[str] = []
        items = build_sale_items(snapshot, totals)

        if pending.sale_id is None:
            try:
                receipt = await self.inventory.process_sale(items, totals.total, method_name)
            except Exception as e:
                error = CollaboratorError.from_exception(e, "inventory")
                logger.error(f"Inventory sale failed: {error.category.value}", exc_info=True)
                raise error from e
            pending.sale_id = receipt.sale_id

        if not pending.persisted:
            record = SaleRecord(
                items=tuple(items),
                payment_method=method_name,
                discount=totals.general_discount_amount,
                tax=totals.tax,
                total=totals.total,
                subtotal=totals.subtotal,
                customer_id=snapshot.customer_id,
                payments=splits,
            )
            pending.persistence_started = True
            try:
                await self.persistence.create_or_attach_sale(record, existing_sale_id=pending.sale_id)
            except SchemaMissingWarning as w:
                logger.warning(f"Sale {sanitize_id_for_logging(pending.sale_id)} not fully persisted: {w.message}")
                warnings.append(w.message)
            except Exception as e:
                error = CollaboratorError.from_exception(e, "persistence")
                logger.error(
                    f"Inventory committed sale {sanitize_id_for_logging(pending.sale_id)} "
                    f"but persistence failed: {error.category.value}",
                    exc_info=True,
                )
                raise error from e
            pending.persisted = True

        for method, amount in amounts.items():
            if method in pending.ledger_done:
                continue
            try:
                await self.ledger.register_sale(pending.sale_id, amount, method)
            except Exception as e:
                error = CollaboratorError.from_exception(e, "ledger")
                logger.error(
                    f"Ledger entry for sale {sanitize_id_for_logging(pending.sale_id)} ({method}) failed: "
                    f"{error.category.value}",
                    exc_info=True,
                )
                raise error from e
            pending.ledger_done.add(method)

        return pending.sale_id, warnings

    # ==================== INTERNAL ====================

    def _check_resumable(self, cart_version: int, method_name: str, amounts: dict[str, Decimal]) -> None:
        """Reject a retry that would finish a partly written sale with another payment."""
        pending = self._pending
        if pending is None or pending.cart_version != cart_version or not pending.payment_locked:
            return
        if pending.same_payment(method_name, amounts):
            return
        logger.warning(
            f"Retry for sale {sanitize_id_for_logging(pending.sale_id)} changed payment "
            f"from {pending.method_name} to {method_name}"
        )
        raise CheckoutValidationError(
            ValidationCode.PAYMENT_CHANGED,
            detail=f"use {pending.method_name}",
        )

    def _fail(self, attempt_method: AttemptMethod, amount: Decimal, message: str, code: Optional[str]) -> None:
        self._transition(PaymentStatus.FAILED)
        self.last_error = message
        self.attempts.append(PaymentAttempt(
            status=AttemptStatus.FAILED,
            method=attempt_method,
            amount=amount,
            message=message,
            error_code=code,
        ))

    def _reset_selections(self) -> None:
        self._selected_method = None
        self._cash_received = None
        self._splits = []

    def _schedule_close(self) -> None:
        if self.close_delay <= 0:
            self._close_checkout()
            return
        loop = asyncio.get_running_loop()
        self._close_handle = loop.call_later(self.close_delay, self._close_checkout)

    def _close_checkout(self) -> None:
        self._close_handle = None
        self._checkout_open = False
        if self.on_close is not None:
            self.on_close()
