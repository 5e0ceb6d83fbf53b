"""
Register Router

Interactive register actions: cart edits, discounts, promotion codes and
checkout. Amounts in responses are floats; everything is computed in Decimal.

Error mapping:
- checkout validation -> 422
- busy checkout, out of stock -> 409
- unknown line or split -> 404
- inventory/persistence/ledger failure -> 502
"""
from fastapi import APIRouter, Depends, HTTPException

from pos.errors import (
    CheckoutBusyError,
    CheckoutValidationError,
    CollaboratorError,
    LineNotFoundError,
    OutOfStockError,
    POSError,
)
from pos.logging import get_logger, sanitize_id_for_logging
from pos.payments.models import PaymentSplit
from pos.pricing import price
from pos.services.models import Customer
from pos.services.money import format_money, to_float
from pos.terminal import RegisterTerminal
from .deps import get_terminal
from .models import (
    AddItemRequest,
    ApplyPromoRequest,
    ConfirmMixedRequest,
    ConfirmSingleRequest,
    CustomerRequest,
    DiscountRequest,
    SplitRequest,
    UpdateItemRequest,
    WholesaleRequest,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/register", tags=["register"])


def _http_error(e: POSError) -> HTTPException:
    detail = {"code": e.code, "message": e.message}
    if isinstance(e, CheckoutValidationError):
        if e.amount is not None:
            detail["amount"] = to_float(e.amount)
        return HTTPException(status_code=422, detail=detail)
    if isinstance(e, (CheckoutBusyError, OutOfStockError)):
        return HTTPException(status_code=409, detail=detail)
    if isinstance(e, LineNotFoundError):
        return HTTPException(status_code=404, detail=detail)
    if isinstance(e, CollaboratorError):
        detail["stage"] = e.stage
        return HTTPException(status_code=502, detail=detail)
    return HTTPException(status_code=400, detail=detail)


def _ensure_not_busy(terminal: RegisterTerminal) -> None:
    """The cart is frozen while a payment is processing."""
    if terminal.coordinator.is_busy:
        raise _http_error(CheckoutBusyError())


def _cart_response(terminal: RegisterTerminal) -> dict:
    snapshot = terminal.cart.snapshot()
    totals = price(snapshot)
    customer = terminal.cart.customer
    return {
        "cart": snapshot.to_dict(),
        "totals": totals.to_dict(),
        "total_display": format_money(totals.total, terminal.settings.currency),
        "customer": customer.model_dump(mode="json") if customer else None,
        "currency": terminal.settings.currency,
    }


def _checkout_response(terminal: RegisterTerminal) -> dict:
    coordinator = terminal.coordinator
    return {
        "state": coordinator.state.value,
        "is_open": coordinator.is_checkout_open,
        "selected_method": coordinator.selected_method.value if coordinator.selected_method else None,
        "splits": [split.to_dict() for split in coordinator.splits],
        "total": to_float(coordinator.totals().total),
        "remaining": to_float(coordinator.remaining()),
        "last_error": coordinator.last_error,
    }


# ==================== CATALOG ====================

@router.get("/products")
async def list_products(terminal: RegisterTerminal = Depends(get_terminal)):
    """Active products and services."""
    try:
        products = await terminal.refresh_products()
    except Exception as e:
        logger.error(f"Failed to load products: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail="Failed to load products")
    return {"products": [p.model_dump(mode="json") for p in products]}


# ==================== CART ====================

@router.get("/cart")
async def get_cart(terminal: RegisterTerminal = Depends(get_terminal)):
    """Cart lines with freshly computed totals."""
    return _cart_response(terminal)


@router.get("/totals")
async def get_totals(terminal: RegisterTerminal = Depends(get_terminal)):
    return price(terminal.cart.snapshot()).to_dict()


@router.post("/cart/items")
async def add_item(request: AddItemRequest, terminal: RegisterTerminal = Depends(get_terminal)):
    """Add a product or service (merges with an existing line)."""
    _ensure_not_busy(terminal)
    product = await terminal.find_product(request.product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    try:
        terminal.cart.add(product, request.quantity, variant=request.variant)
    except POSError as e:
        raise _http_error(e)
    except ValueError as ve:
        raise HTTPException(status_code=422, detail=str(ve))
    return _cart_response(terminal)


@router.patch("/cart/items/{line_id}")
async def update_item(line_id: str, request: UpdateItemRequest,
                      terminal: RegisterTerminal = Depends(get_terminal)):
    """Set line quantity (0 removes it), bounded by the product's current stock."""
    _ensure_not_busy(terminal)
    try:
        line = terminal.cart.get_line(line_id)
        product = await terminal.find_product(line.item_id)
        available = product.stock if product is not None else None
        terminal.cart.update(line_id, request.quantity, available_stock=available)
    except POSError as e:
        raise _http_error(e)
    except ValueError as ve:
        raise HTTPException(status_code=422, detail=str(ve))
    return _cart_response(terminal)


@router.delete("/cart/items/{line_id}")
async def remove_item(line_id: str, terminal: RegisterTerminal = Depends(get_terminal)):
    _ensure_not_busy(terminal)
    try:
        terminal.cart.remove(line_id)
    except POSError as e:
        raise _http_error(e)
    return _cart_response(terminal)


@router.post("/cart/clear")
async def clear_cart(terminal: RegisterTerminal = Depends(get_terminal)):
    _ensure_not_busy(terminal)
    terminal.cart.clear(keep_preferences=True)
    return _cart_response(terminal)


@router.post("/cart/wholesale")
async def toggle_wholesale(request: WholesaleRequest, terminal: RegisterTerminal = Depends(get_terminal)):
    _ensure_not_busy(terminal)
    terminal.cart.toggle_wholesale(request.enabled)
    return _cart_response(terminal)


@router.post("/cart/items/{line_id}/discount")
async def set_line_discount(line_id: str, request: DiscountRequest,
                            terminal: RegisterTerminal = Depends(get_terminal)):
    _ensure_not_busy(terminal)
    try:
        terminal.cart.set_line_discount(line_id, request.discount_percent)
    except POSError as e:
        raise _http_error(e)
    return _cart_response(terminal)


@router.post("/cart/discount")
async def set_general_discount(request: DiscountRequest, terminal: RegisterTerminal = Depends(get_terminal)):
    """Cart-wide discount percent (0 lets a VIP discount apply)."""
    _ensure_not_busy(terminal)
    terminal.cart.set_general_discount(request.discount_percent)
    return _cart_response(terminal)


@router.post("/cart/customer")
async def set_customer(request: CustomerRequest | None = None,
                       terminal: RegisterTerminal = Depends(get_terminal)):
    """Select a customer; an empty body clears the selection."""
    _ensure_not_busy(terminal)
    customer = Customer(**request.model_dump()) if request is not None else None
    terminal.cart.set_customer(customer)
    return _cart_response(terminal)


@router.post("/cart/promo")
async def apply_promo(request: ApplyPromoRequest, terminal: RegisterTerminal = Depends(get_terminal)):
    """Apply a promotion code. Rejections are reported in the outcome, not as errors."""
    _ensure_not_busy(terminal)
    try:
        outcome = await terminal.resolver.apply_code(request.code, terminal.cart)
    except Exception as e:
        logger.error(f"Promotion lookup failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail="Failed to look up promotion")
    response = _cart_response(terminal)
    response["promotion"] = outcome.to_dict()
    return response


@router.post("/cart/promo/preview")
async def preview_promo(request: ApplyPromoRequest, terminal: RegisterTerminal = Depends(get_terminal)):
    """What a promotion code would take off the cart, without applying it."""
    try:
        outcome = await terminal.resolver.preview_code(request.code, terminal.cart)
    except Exception as e:
        logger.error(f"Promotion lookup failed: {e}", exc_info=True)
        raise HTTPException(status_code=502, detail="Failed to look up promotion")
    return {"promotion": outcome.to_dict()}


@router.delete("/cart/promo/{code}")
async def remove_promo(code: str, terminal: RegisterTerminal = Depends(get_terminal)):
    """Remove an applied promotion code and restore the lines it discounted."""
    _ensure_not_busy(terminal)
    outcome = terminal.resolver.remove_code(code, terminal.cart)
    if outcome.error_code is not None:
        raise HTTPException(
            status_code=404,
            detail={"code": outcome.error_code.value, "message": outcome.reason},
        )
    response = _cart_response(terminal)
    response["promotion"] = outcome.to_dict()
    return response


# ==================== CHECKOUT ====================

@router.post("/checkout/open")
async def open_checkout(terminal: RegisterTerminal = Depends(get_terminal)):
    terminal.coordinator.open_checkout()
    return _checkout_response(terminal)


@router.get("/checkout")
async def get_checkout(terminal: RegisterTerminal = Depends(get_terminal)):
    return _checkout_response(terminal)


@router.post("/checkout/splits")
async def add_split(request: SplitRequest, terminal: RegisterTerminal = Depends(get_terminal)):
    """Add one instrument to a mixed payment."""
    try:
        terminal.coordinator.add_split(
            request.method,
            request.amount,
            card_last4=request.card_last4,
            transfer_reference=request.transfer_reference,
        )
    except POSError as e:
        raise _http_error(e)
    except ValueError as ve:
        raise HTTPException(status_code=422, detail=str(ve))
    return _checkout_response(terminal)


@router.delete("/checkout/splits/{split_id}")
async def remove_split(split_id: str, terminal: RegisterTerminal = Depends(get_terminal)):
    try:
        terminal.coordinator.remove_split(split_id)
    except POSError as e:
        raise _http_error(e)
    except KeyError:
        raise HTTPException(status_code=404, detail="Payment split not found")
    return _checkout_response(terminal)


@router.post("/checkout/single")
async def confirm_single(request: ConfirmSingleRequest, terminal: RegisterTerminal = Depends(get_terminal)):
    """Confirm a single-instrument payment."""
    try:
        result = await terminal.coordinator.confirm_single(
            method=request.method,
            cash_received=request.cash_received,
        )
    except POSError as e:
        raise _http_error(e)
    except ValueError as ve:
        raise HTTPException(status_code=422, detail=str(ve))
    logger.info(f"Checkout completed: sale {sanitize_id_for_logging(result.sale_id)}")
    return result.to_dict()


@router.post("/checkout/mixed")
async def confirm_mixed(request: ConfirmMixedRequest, terminal: RegisterTerminal = Depends(get_terminal)):
    """Confirm a mixed payment, with the given splits or the ones added so far."""
    try:
        splits = None
        if request.splits is not None:
            splits = [
                PaymentSplit(
                    method=s.method,
                    amount=s.amount,
                    card_last4=s.card_last4,
                    transfer_reference=s.transfer_reference,
                )
                for s in request.splits
            ]
        result = await terminal.coordinator.confirm_mixed(splits)
    except POSError as e:
        raise _http_error(e)
    except ValueError as ve:
        raise HTTPException(status_code=422, detail=str(ve))
    logger.info(f"Checkout completed: sale {sanitize_id_for_logging(result.sale_id)}")
    return result.to_dict()


@router.post("/checkout/cancel")
async def cancel_checkout(terminal: RegisterTerminal = Depends(get_terminal)):
    """Close the checkout and discard unconfirmed splits."""
    try:
        terminal.coordinator.cancel()
    except POSError as e:
        raise _http_error(e)
    return _checkout_response(terminal)


@router.get("/checkout/attempts")
async def list_attempts(terminal: RegisterTerminal = Depends(get_terminal)):
    """Recent payment attempts, oldest first."""
    return {"attempts": [a.to_dict() for a in terminal.coordinator.attempts.entries()]}
