"""
Tests for checkout settlement
"""
import asyncio
from decimal import Decimal

import pytest

from pos.adapters.memory import MemoryInventory, MemoryRegisterLedger, MemorySalePersistence
from pos.errors import (
    CheckoutBusyError,
    CheckoutValidationError,
    CollaboratorError,
    ErrorCategory,
    SchemaMissingWarning,
    ValidationCode,
)
from pos.payments import AttemptStatus, PaymentSplit, PaymentStatus
from pos.settlement import SettlementCoordinator
from pos.settlement.validation import ledger_amounts, validate_mixed, validate_single


class CountingInventory(MemoryInventory):
    """Memory inventory that counts process_sale calls."""

    def __init__(self, products):
        super().__init__(products)
        self.calls = 0

    async def process_sale(self, items, total, payment_method):
        self.calls += 1
        return await super().process_sale(items, total, payment_method)


class BlockingInventory(MemoryInventory):
    """Memory inventory that waits on an event before committing."""

    def __init__(self, products):
        super().__init__(products)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def process_sale(self, items, total, payment_method):
        self.entered.set()
        await self.release.wait()
        return await super().process_sale(items, total, payment_method)


class OfflineInventory(MemoryInventory):
    async def process_sale(self, items, total, payment_method):
        raise ConnectionError("connection refused")


class FlakyPersistence(MemorySalePersistence):
    """Fails the first write, then stores normally."""

    def __init__(self, error):
        super().__init__()
        self.error = error
        self.calls = []

    async def create_or_attach_sale(self, record, existing_sale_id=None):
        self.calls.append(existing_sale_id)
        if len(self.calls) == 1:
            raise self.error
        return await super().create_or_attach_sale(record, existing_sale_id)


class SchemaMissingPersistence(MemorySalePersistence):
    async def create_or_attach_sale(self, record, existing_sale_id=None):
        raise SchemaMissingWarning("sale_items")


class FlakyLedger(MemoryRegisterLedger):
    """Fails the first movement, then records normally."""

    def __init__(self, error):
        super().__init__(is_open=True)
        self.error = error
        self.failed = False

    async def register_sale(self, sale_id, amount, method):
        if not self.failed:
            self.failed = True
            raise self.error
        await super().register_sale(sale_id, amount, method)


def make_coordinator(cart, inventory, persistence, ledger, **kwargs):
    kwargs.setdefault("close_delay", 0)
    return SettlementCoordinator(cart=cart, inventory=inventory, persistence=persistence, ledger=ledger, **kwargs)


@pytest.fixture
def cart_242(cart, product_a):
    """2 x 100 at 21% tax: total 242.00"""
    cart.add(product_a, 2)
    return cart


class TestValidation:
    """Pure validation helpers."""

    def test_single_cash_change(self):
        """Cash above the total returns the change."""
        assert validate_single("cash", Decimal("242.00"), 300) == Decimal("58.00")

    def test_single_cash_short(self):
        """Short cash reports the missing amount."""
        with pytest.raises(CheckoutValidationError) as exc:
            validate_single("cash", Decimal("242.00"), 200)
        assert exc.value.validation_code == ValidationCode.INSUFFICIENT_CASH
        assert exc.value.amount == Decimal("42.00")

    def test_single_no_method(self):
        """A missing method is rejected."""
        with pytest.raises(CheckoutValidationError) as exc:
            validate_single(None, Decimal("10"))
        assert exc.value.validation_code == ValidationCode.NO_PAYMENT_METHOD

    def test_single_card_no_change(self):
        """Non-cash methods never produce change."""
        assert validate_single("card", Decimal("242.00")) == Decimal("0")

    def test_single_credit_needs_customer(self, regular_customer):
        """Credit is only accepted with a customer."""
        with pytest.raises(CheckoutValidationError) as exc:
            validate_single("credit", Decimal("10"))
        assert exc.value.validation_code == ValidationCode.CREDIT_REQUIRES_CUSTOMER
        assert validate_single("credit", Decimal("10"), customer=regular_customer) == Decimal("0")

    def test_mixed_underpaid_and_overpaid(self):
        """Under/over payment carry the signed remaining amount."""
        total = Decimal("242.00")
        with pytest.raises(CheckoutValidationError) as exc:
            validate_mixed([PaymentSplit("cash", 100), PaymentSplit("cash", 100)], total)
        assert exc.value.validation_code == ValidationCode.UNDERPAID
        assert exc.value.amount == Decimal("42.00")

        with pytest.raises(CheckoutValidationError) as exc:
            validate_mixed([PaymentSplit("cash", 100), PaymentSplit("cash", 150)], total)
        assert exc.value.validation_code == ValidationCode.OVERPAID
        assert exc.value.amount == Decimal("-8.00")

    def test_mixed_tolerance(self):
        """A one-cent difference is accepted."""
        splits = [PaymentSplit("cash", 100), PaymentSplit("cash", "141.99")]
        assert validate_mixed(splits, Decimal("242.00")) == Decimal("0.01")

    @pytest.mark.parametrize("split,code", [
        (PaymentSplit("card", 10), ValidationCode.MISSING_CARD_DIGITS),
        (PaymentSplit("card", 10, card_last4="42"), ValidationCode.MISSING_CARD_DIGITS),
        (PaymentSplit("transfer", 10), ValidationCode.MISSING_TRANSFER_REFERENCE),
        (PaymentSplit("cash", 0), ValidationCode.INVALID_SPLIT_AMOUNT),
        (PaymentSplit("cash", -5), ValidationCode.INVALID_SPLIT_AMOUNT),
        (PaymentSplit("credit", 10), ValidationCode.CREDIT_REQUIRES_CUSTOMER),
    ])
    def test_split_rules(self, split, code):
        """Each split is checked for its method's requirements."""
        with pytest.raises(CheckoutValidationError) as exc:
            validate_mixed([split], Decimal("10"))
        assert exc.value.validation_code == code

    def test_no_splits(self):
        """An empty split list is rejected."""
        with pytest.raises(CheckoutValidationError) as exc:
            validate_mixed([], Decimal("10"))
        assert exc.value.validation_code == ValidationCode.NO_SPLITS

    def test_ledger_amounts_grouped(self):
        """Ledger amounts are summed per method in first-use order."""
        splits = [PaymentSplit("cash", 50), PaymentSplit("card", 100, card_last4="4242"), PaymentSplit("cash", 92)]
        assert ledger_amounts(splits) == {"cash": Decimal("142.00"), "card": Decimal("100.00")}


class TestSingleSettlement:
    """confirm_single."""

    @pytest.mark.asyncio
    async def test_insufficient_cash_fails_without_side_effects(self, cart_242, coordinator, inventory, ledger):
        """200 cash on 242 fails with 42 short and touches nothing."""
        with pytest.raises(CheckoutValidationError) as exc:
            await coordinator.confirm_single("cash", cash_received=200)

        assert exc.value.validation_code == ValidationCode.INSUFFICIENT_CASH
        assert exc.value.amount == Decimal("42.00")
        assert coordinator.state == PaymentStatus.FAILED
        assert len(coordinator.attempts) == 1
        assert coordinator.attempts.latest.status == AttemptStatus.FAILED
        assert coordinator.attempts.latest.error_code == "INSUFFICIENT_CASH"
        assert inventory.get_product("prod-a").stock == 10
        assert ledger.movements == []
        assert len(cart_242.lines) == 1

    @pytest.mark.asyncio
    async def test_cash_success(self, cart_242, coordinator, inventory, persistence, ledger):
        """300 cash on 242 settles with 58 change."""
        result = await coordinator.confirm_single("cash", cash_received=300)

        assert result.status == PaymentStatus.SUCCESS
        assert result.change == Decimal("58.00")
        assert result.total == Decimal("242.00")
        assert result.payment_method == "cash"
        assert coordinator.state == PaymentStatus.SUCCESS
        assert inventory.get_product("prod-a").stock == 8
        assert persistence.sales[result.sale_id].total == Decimal("242.00")
        assert ledger.movements == [{
            "type": "sale",
            "sale_id": result.sale_id,
            "amount": Decimal("242.00"),
            "method": "cash",
            "reason": f"Sale {result.sale_id}",
        }]
        assert cart_242.is_empty

    @pytest.mark.asyncio
    async def test_cash_change_rounded_to_step(self, cart_242, inventory, persistence, ledger):
        """With a rounding step the change is rounded to it."""
        coordinator = make_coordinator(cart_242, inventory, persistence, ledger, cash_rounding_step=Decimal("5"))

        result = await coordinator.confirm_single("cash", cash_received=300)

        assert result.change == Decimal("60.00")
        assert ledger.movements[0]["amount"] == Decimal("242.00")

    @pytest.mark.asyncio
    async def test_selected_method_is_used(self, cart_242, coordinator):
        """Previously selected method and cash are used when not passed."""
        coordinator.select_method("efectivo")
        coordinator.set_cash_received(250)

        result = await coordinator.confirm_single()

        assert result.payment_method == "cash"
        assert result.change == Decimal("8.00")
        assert coordinator.selected_method is None

    @pytest.mark.asyncio
    async def test_no_method(self, cart_242, coordinator):
        """Confirming without a method fails validation."""
        with pytest.raises(CheckoutValidationError) as exc:
            await coordinator.confirm_single()
        assert exc.value.validation_code == ValidationCode.NO_PAYMENT_METHOD
        assert coordinator.state == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_register_closed(self, cart_242, coordinator, ledger):
        """A closed register is rejected with no attempt recorded."""
        ledger.close()

        with pytest.raises(CheckoutValidationError) as exc:
            await coordinator.confirm_single("card")

        assert exc.value.validation_code == ValidationCode.CASH_REGISTER_CLOSED
        assert coordinator.state == PaymentStatus.IDLE
        assert len(coordinator.attempts) == 0

        ledger.open(opening_amount=50)
        await coordinator.confirm_single("cash", cash_received=242)
        assert ledger.cash_balance == Decimal("292.00")

    @pytest.mark.asyncio
    async def test_empty_cart(self, coordinator):
        """An empty cart is rejected with no attempt recorded."""
        with pytest.raises(CheckoutValidationError) as exc:
            await coordinator.confirm_single("card")

        assert exc.value.validation_code == ValidationCode.EMPTY_CART
        assert coordinator.state == PaymentStatus.IDLE
        assert len(coordinator.attempts) == 0

    @pytest.mark.asyncio
    async def test_retry_after_validation_failure(self, cart_242, coordinator):
        """A failed attempt can be followed by a successful one."""
        with pytest.raises(CheckoutValidationError):
            await coordinator.confirm_single("cash", cash_received=10)

        result = await coordinator.confirm_single("cash", cash_received=242)

        assert result.status == PaymentStatus.SUCCESS
        assert result.change == Decimal("0.00")
        assert [a.status for a in coordinator.attempts] == [AttemptStatus.FAILED, AttemptStatus.SUCCESS]
        assert coordinator.last_error is None

    @pytest.mark.asyncio
    async def test_keeps_wholesale_after_success(self, cart_242, coordinator):
        """Wholesale mode survives the post-sale cart clear."""
        cart_242.toggle_wholesale(True)
        await coordinator.confirm_single("card")
        assert cart_242.wholesale_mode is True
        assert cart_242.is_empty

    @pytest.mark.asyncio
    async def test_services_not_decremented(self, cart, product_a, service_repair, coordinator, inventory):
        """Service lines are sold without stock changes."""
        cart.add(product_a, 1)
        cart.add(service_repair, 3)

        result = await coordinator.confirm_single("card")

        assert inventory.get_product("prod-a").stock == 9
        assert inventory.get_product("svc-repair") is None
        assert result.total == Decimal("302.50")

    @pytest.mark.asyncio
    async def test_stock_listener_notified(self, cart_242, coordinator, inventory):
        """Inventory notifies subscribers with the new stock."""
        seen = []
        inventory.subscribe(lambda product_id, stock: seen.append((product_id, stock)))

        await coordinator.confirm_single("card")

        assert seen == [("prod-a", 8)]


class TestMixedSettlement:
    """confirm_mixed."""

    @pytest.mark.asyncio
    async def test_cash_and_card(self, cart_242, coordinator, persistence, ledger):
        """100 cash + 142 card settles as a mixed sale with two ledger entries."""
        coordinator.add_split("cash", 100)
        coordinator.add_split("card", 142, card_last4="4242")
        assert coordinator.remaining() == Decimal("0.00")

        result = await coordinator.confirm_mixed()

        assert result.payment_method == "mixed"
        assert persistence.sales[result.sale_id].payment_method == "mixed"
        assert len(persistence.sales[result.sale_id].payments) == 2
        assert [(m["method"], m["amount"]) for m in ledger.movements] == [
            ("cash", Decimal("100.00")),
            ("card", Decimal("142.00")),
        ]
        assert ledger.cash_balance == Decimal("100.00")
        assert coordinator.splits == ()

    @pytest.mark.asyncio
    async def test_single_method_splits(self, cart_242, coordinator, ledger):
        """Splits that all use one method record that method, not mixed."""
        result = await coordinator.confirm_mixed([PaymentSplit("cash", 200), PaymentSplit("cash", 42)])

        assert result.payment_method == "cash"
        assert len(ledger.movements) == 1
        assert ledger.movements[0]["amount"] == Decimal("242.00")

    @pytest.mark.asyncio
    async def test_underpaid_records_failure(self, cart_242, coordinator, inventory):
        """Underpayment fails before inventory is touched."""
        coordinator.add_split("cash", 100)
        coordinator.add_split("cash", 100)

        with pytest.raises(CheckoutValidationError) as exc:
            await coordinator.confirm_mixed()

        assert exc.value.validation_code == ValidationCode.UNDERPAID
        assert exc.value.amount == Decimal("42.00")
        assert coordinator.attempts.latest.method.value == "mixed"
        assert inventory.get_product("prod-a").stock == 10
        assert len(coordinator.splits) == 2

    @pytest.mark.asyncio
    async def test_credit_with_customer(self, cart_242, coordinator, regular_customer):
        """Credit splits are accepted once a customer is selected."""
        cart_242.set_customer(regular_customer)
        result = await coordinator.confirm_mixed([
            PaymentSplit("credit", 142),
            PaymentSplit("transfer", 100, transfer_reference="TRX-1"),
        ])
        assert result.payment_method == "mixed"

    def test_remove_split(self, coordinator):
        """Splits can be removed by id; unknown ids raise KeyError."""
        split = coordinator.add_split("cash", 10)
        coordinator.remove_split(split.id)
        assert coordinator.splits == ()

        with pytest.raises(KeyError):
            coordinator.remove_split("missing")


class TestCommitFailures:
    """Collaborator failures and retry."""

    @pytest.mark.asyncio
    async def test_network_failure(self, cart_242, product_a, persistence, ledger):
        """A connection error is classified as network at the inventory stage."""
        coordinator = make_coordinator(cart_242, OfflineInventory([product_a]), persistence, ledger)

        with pytest.raises(CollaboratorError) as exc:
            await coordinator.confirm_single("card")

        assert exc.value.category == ErrorCategory.NETWORK
        assert exc.value.stage == "inventory"
        assert coordinator.state == PaymentStatus.FAILED
        assert coordinator.last_error == exc.value.message
        assert coordinator.attempts.latest.error_code == "network"
        assert persistence.sales == {}
        assert len(cart_242.lines) == 1

    @pytest.mark.asyncio
    async def test_retry_resumes_pending_sale(self, cart_242, product_a, ledger):
        """After a persistence failure the retry reuses the sale id and skips inventory."""
        inventory = CountingInventory([product_a])
        persistence = FlakyPersistence(Exception("duplicate key value violates unique constraint"))
        coordinator = make_coordinator(cart_242, inventory, persistence, ledger)

        with pytest.raises(CollaboratorError) as exc:
            await coordinator.confirm_single("card")
        assert exc.value.category == ErrorCategory.DUPLICATE
        assert exc.value.stage == "persistence"
        sale_id = coordinator.pending_sale_id
        assert sale_id is not None

        result = await coordinator.confirm_single("card")

        assert result.sale_id == sale_id
        assert inventory.calls == 1
        assert persistence.calls == [sale_id, sale_id]
        assert inventory.get_product("prod-a").stock == 8
        assert coordinator.pending_sale_id is None

    @pytest.mark.asyncio
    async def test_cart_change_starts_new_sale(self, cart_242, product_a, ledger):
        """Changing the cart after a partial commit starts a fresh sale."""
        inventory = CountingInventory([product_a])
        persistence = FlakyPersistence(Exception("timeout"))
        coordinator = make_coordinator(cart_242, inventory, persistence, ledger)

        with pytest.raises(CollaboratorError) as exc:
            await coordinator.confirm_single("card")
        assert exc.value.category == ErrorCategory.TIMEOUT
        first_sale = coordinator.pending_sale_id

        cart_242.update("prod-a", 1)
        result = await coordinator.confirm_single("card")

        assert result.sale_id != first_sale
        assert inventory.calls == 2

    @pytest.mark.asyncio
    async def test_schema_missing_is_a_warning(self, cart_242, inventory, ledger):
        """A missing table does not fail the sale."""
        coordinator = make_coordinator(cart_242, inventory, SchemaMissingPersistence(), ledger)

        result = await coordinator.confirm_single("card")

        assert result.status == PaymentStatus.SUCCESS
        assert result.warnings == ("Table 'sale_items' not found, write skipped",)
        assert len(ledger.movements) == 1

    @pytest.mark.asyncio
    async def test_ledger_closed_mid_commit(self, cart_242, inventory, persistence, ledger):
        """A ledger refusal after inventory is a permission failure at the ledger stage."""
        async def refuse(sale_id, amount, method):
            raise PermissionError("permission denied for cash_movements")

        ledger.register_sale = refuse

        with pytest.raises(CollaboratorError) as exc:
            await make_coordinator(cart_242, inventory, persistence, ledger).confirm_single("card")

        assert exc.value.category == ErrorCategory.PERMISSION
        assert exc.value.stage == "ledger"

    @pytest.mark.asyncio
    async def test_retry_with_other_method_rejected(self, cart_242, product_a, persistence):
        """A sale already stored as card cannot be finished as cash."""
        inventory = CountingInventory([product_a])
        ledger = FlakyLedger(TimeoutError())
        coordinator = make_coordinator(cart_242, inventory, persistence, ledger)

        with pytest.raises(CollaboratorError) as exc:
            await coordinator.confirm_single("card")
        assert exc.value.category == ErrorCategory.TIMEOUT
        assert exc.value.stage == "ledger"
        sale_id = coordinator.pending_sale_id

        with pytest.raises(CheckoutValidationError) as exc:
            await coordinator.confirm_single("cash", cash_received=500)

        assert exc.value.validation_code == ValidationCode.PAYMENT_CHANGED
        assert exc.value.message.endswith("use card")
        assert coordinator.state == PaymentStatus.FAILED
        assert coordinator.attempts.latest.error_code == "PAYMENT_CHANGED"
        assert ledger.movements == []
        assert persistence.sales[sale_id].payment_method == "card"

        result = await coordinator.confirm_single("card")

        assert result.sale_id == sale_id
        assert result.payment_method == "card"
        assert inventory.calls == 1
        assert [(m["sale_id"], m["method"]) for m in ledger.movements] == [(sale_id, "card")]

    @pytest.mark.asyncio
    async def test_retry_with_other_splits_rejected(self, cart_242, product_a, persistence):
        """Mixed retries must keep the per-method amounts already persisted."""
        ledger = FlakyLedger(ConnectionError("connection reset"))
        coordinator = make_coordinator(cart_242, CountingInventory([product_a]), persistence, ledger)
        original = [PaymentSplit("cash", 100), PaymentSplit("card", 142, card_last4="4242")]

        with pytest.raises(CollaboratorError):
            await coordinator.confirm_mixed(original)

        with pytest.raises(CheckoutValidationError) as exc:
            await coordinator.confirm_mixed([PaymentSplit("cash", 42), PaymentSplit("card", 200, card_last4="4242")])
        assert exc.value.validation_code == ValidationCode.PAYMENT_CHANGED

        result = await coordinator.confirm_mixed(original)

        assert result.payment_method == "mixed"
        assert [(m["method"], m["amount"]) for m in ledger.movements] == [
            ("cash", Decimal("100.00")),
            ("card", Decimal("142.00")),
        ]
        assert len(persistence.sales) == 1


class TestConcurrencyAndLifecycle:
    """Busy guard, attempt log and checkout close."""

    @pytest.mark.asyncio
    async def test_second_confirm_rejected_while_processing(self, cart_242, product_a, persistence, ledger):
        """A confirm during an in-flight commit raises CheckoutBusyError."""
        inventory = BlockingInventory([product_a])
        coordinator = make_coordinator(cart_242, inventory, persistence, ledger)

        task = asyncio.create_task(coordinator.confirm_single("card"))
        await inventory.entered.wait()

        assert coordinator.is_busy
        assert coordinator.state == PaymentStatus.PROCESSING
        with pytest.raises(CheckoutBusyError):
            await coordinator.confirm_single("card")
        with pytest.raises(CheckoutBusyError):
            coordinator.cancel()

        inventory.release.set()
        result = await task

        assert result.status == PaymentStatus.SUCCESS
        assert len(persistence.sales) == 1
        assert len(coordinator.attempts) == 1

    @pytest.mark.asyncio
    async def test_attempt_log_is_bounded(self, cart_242, inventory, persistence, ledger):
        """Only the newest attempts are kept."""
        coordinator = make_coordinator(cart_242, inventory, persistence, ledger, attempt_log_size=3)

        for received in (1, 2, 3, 4, 5):
            with pytest.raises(CheckoutValidationError):
                await coordinator.confirm_single("cash", cash_received=received)

        assert len(coordinator.attempts) == 3
        assert [a.error_code for a in coordinator.attempts] == ["INSUFFICIENT_CASH"] * 3
        assert coordinator.attempts.max_size == 3

    @pytest.mark.asyncio
    async def test_checkout_closes_after_delay(self, cart_242, inventory, persistence, ledger):
        """The checkout closes after the configured delay and calls on_close."""
        closed = []
        coordinator = make_coordinator(
            cart_242, inventory, persistence, ledger, close_delay=0.01, on_close=lambda: closed.append(True),
        )
        coordinator.open_checkout()

        await coordinator.confirm_single("card")
        assert coordinator.is_checkout_open is True

        await asyncio.sleep(0.05)
        assert coordinator.is_checkout_open is False
        assert closed == [True]

    @pytest.mark.asyncio
    async def test_reopen_cancels_pending_close(self, cart_242, inventory, persistence, ledger):
        """Opening the checkout again before the delay keeps it open."""
        coordinator = make_coordinator(cart_242, inventory, persistence, ledger, close_delay=0.01)
        coordinator.open_checkout()
        await coordinator.confirm_single("card")

        coordinator.open_checkout()
        await asyncio.sleep(0.05)

        assert coordinator.is_checkout_open is True
        assert coordinator.state == PaymentStatus.IDLE

    def test_cancel_clears_selections(self, coordinator):
        """Cancel drops method, cash and splits and closes the checkout."""
        coordinator.open_checkout()
        coordinator.select_method("card")
        coordinator.add_split("cash", 5)

        coordinator.cancel()

        assert coordinator.selected_method is None
        assert coordinator.splits == ()
        assert coordinator.is_checkout_open is False
