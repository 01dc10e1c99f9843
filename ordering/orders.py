"""Order materialization and order lifecycle changes.

``create_order`` writes the order header and all of its items in one
database transaction, so an order can never be left without items. The
cart is cleared only after that commit.
"""

import logging
import random
import string
from typing import List, Optional, Sequence

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from . import cart, crud, errors, models, schemas
from .pricing import OrderTotals, PricedLine, price_lines

logger = logging.getLogger(__name__)

TERMINAL_ORDER_STATUSES = {"cancelled", "completed"}

# failed -> paid is a new payment attempt; paid and refunded never go back
PAYMENT_TRANSITIONS = {
    "pending": {"paid", "failed"},
    "failed": {"paid"},
    "paid": {"refunded"},
    "refunded": set(),
}


def rand_order_number(prefix="ORD-"):
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=8))
    return f"{prefix}{suffix}"


def validate_checkout(
    lines: Sequence[PricedLine],
    draft: schemas.CheckoutRequest,
    config: schemas.RestaurantConfig,
    user: models.User,
) -> OrderTotals:
    """Shared checks for hosted-payment and direct orders; returns the totals."""
    if not lines:
        raise errors.ValidationError("Cart is empty")
    if config.require_email_verification and not user.email_verified:
        raise errors.Forbidden("Please verify your email address before ordering")

    if draft.order_type == "delivery":
        if not config.enable_delivery:
            raise errors.ValidationError("Delivery is currently unavailable")
        if not (draft.delivery_address or "").strip():
            raise errors.ValidationError("Delivery address is required")
        unavailable = [line.product_name for line in lines if not line.available_for_delivery]
    else:
        if not config.enable_pickup:
            raise errors.ValidationError("Pickup is currently unavailable")
        unavailable = [line.product_name for line in lines if not line.available_for_pickup]
    if unavailable:
        raise errors.ValidationError(
            f"Not available for {draft.order_type}: {', '.join(unavailable)}"
        )

    fee = config.delivery_fee if draft.order_type == "delivery" else None
    totals = price_lines(lines, fee)
    if totals.subtotal < config.minimum_order:
        raise errors.ValidationError(f"Minimum order is £{config.minimum_order:.2f}")
    return totals


def lines_from_request(db: Session, items: Sequence[schemas.CartItemCreate]) -> List[PricedLine]:
    """Price items sent directly with an order against the current catalog."""
    lines = []
    for item_in in items:
        if item_in.quantity < 1:
            raise errors.ValidationError("Quantity must be at least 1")
        product = crud.get_product(db, item_in.product_id)
        if not product or not product.is_available:
            raise errors.NotFound("Product not found")
        lines.append(
            PricedLine(
                product_id=product.id,
                product_name=product.name,
                base_price=product.price,
                quantity=item_in.quantity,
                selected_options=cart.resolve_selected_options(product, item_in.selected_options),
                special_instructions=item_in.special_instructions,
                available_for_delivery=product.available_for_delivery,
                available_for_pickup=product.available_for_pickup,
            )
        )
    return lines


def _build_order_item(order: models.Order, line: PricedLine) -> models.OrderItem:
    return models.OrderItem(
        order=order,
        product_id=line.product_id,
        product_name=line.product_name,
        quantity=line.quantity,
        unit_price=line.base_price,
        subtotal=line.line_total,
        selected_options=[opt.model_dump(mode="json") for opt in line.selected_options],
        special_instructions=line.special_instructions,
    )


def create_order(
    db: Session,
    user_id: int,
    lines: Sequence[PricedLine],
    draft: schemas.CheckoutRequest,
    totals: OrderTotals,
    *,
    payment_method: Optional[str],
    payment_status: str = "pending",
    stripe_session_id: Optional[str] = None,
    stripe_payment_intent_id: Optional[str] = None,
) -> models.Order:
    if not lines:
        raise errors.ValidationError("Cart is empty")

    order = models.Order(
        order_number=rand_order_number(),
        user_id=user_id,
        status="confirmed" if payment_status == "paid" else "pending",
        payment_status=payment_status,
        payment_method=payment_method,
        order_type=draft.order_type,
        delivery_address=draft.delivery_address if draft.order_type == "delivery" else None,
        phone=draft.phone,
        notes=draft.notes,
        subtotal=totals.subtotal,
        delivery_fee=totals.delivery_fee if draft.order_type == "delivery" else None,
        total=totals.total,
        stripe_session_id=stripe_session_id,
        stripe_payment_intent_id=stripe_payment_intent_id,
    )
    db.add(order)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        if stripe_session_id and get_order_by_session(db, stripe_session_id) is not None:
            raise errors.ConflictOrRace("Payment session already processed")
        logger.exception("Order header insert failed for user %s", user_id)
        raise errors.PartialInsertFailure()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Order header insert failed for user %s", user_id)
        raise errors.PartialInsertFailure()

    try:
        for line in lines:
            db.add(_build_order_item(order, line))
        db.flush()
        db.commit()
    except SQLAlchemyError:
        logger.exception("Order items insert failed for user %s, rolling back order", user_id)
        db.rollback()
        raise errors.PartialInsertFailure()

    db.refresh(order)
    logger.info(
        "Order %s created for user %s total=%s payment=%s",
        order.order_number,
        user_id,
        order.total,
        order.payment_status,
    )

    try:
        cart.clear(db, user_id)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Order %s created but cart clear failed for user %s", order.order_number, user_id)
    return order


def get_order(db: Session, order_id: int, user: Optional[models.User] = None) -> models.Order:
    query = (
        db.query(models.Order)
        .options(selectinload(models.Order.items))
        .filter(models.Order.id == order_id)
    )
    if user is not None and not user.is_admin:
        query = query.filter(models.Order.user_id == user.id)
    order = query.first()
    if order is None:
        raise errors.NotFound("Order not found")
    return order


def get_order_by_session(db: Session, session_id: str) -> Optional[models.Order]:
    return (
        db.query(models.Order)
        .filter(models.Order.stripe_session_id == session_id)
        .first()
    )


def list_orders(db: Session, user_id: Optional[int] = None, status: Optional[str] = None):
    query = db.query(models.Order).options(selectinload(models.Order.items))
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    if status:
        query = query.filter(models.Order.status == status)
    return query.order_by(models.Order.created_at.desc(), models.Order.id.desc()).all()


def _commit_order_change(db: Session, order: models.Order):
    try:
        db.commit()
    except StaleDataError:
        db.rollback()
        logger.warning("Concurrent update on order %s", order.id)
        raise errors.ConflictOrRace()
    db.refresh(order)


def cancel_order(
    db: Session, user_id: int, order_id: int, config: schemas.RestaurantConfig
) -> models.Order:
    order = (
        db.query(models.Order)
        .filter(models.Order.id == order_id, models.Order.user_id == user_id)
        .first()
    )
    if order is None:
        raise errors.NotFound("Order not found")
    if not config.allow_order_cancellation:
        raise errors.CancellationNotAllowed("Order cancellation is disabled")
    if order.status != "pending":
        raise errors.CancellationNotAllowed(
            f"Order is already {order.status} and can no longer be cancelled"
        )
    order.status = "cancelled"
    _commit_order_change(db, order)
    logger.info("Order %s cancelled by user %s", order.order_number, user_id)
    return order


def update_order_status(db: Session, order_id: int, status: str):
    """Admin status change. Returns ``(order, changed)``."""
    order = get_order(db, order_id)
    if order.status == status:
        return order, False
    if order.status in TERMINAL_ORDER_STATUSES:
        raise errors.InvalidTransition(f"Order is already {order.status}")
    order.status = status
    _commit_order_change(db, order)
    logger.info("Order %s status -> %s", order.order_number, status)
    return order, True


def apply_payment_status(order: models.Order, payment_status: str) -> bool:
    """Move ``order`` along the payment state machine without committing.

    Returns False when the order is already in that state.
    """
    current = order.payment_status
    if current == payment_status:
        return False
    if payment_status not in PAYMENT_TRANSITIONS.get(current, set()):
        raise errors.InvalidTransition(
            f"Payment status cannot change from {current} to {payment_status}"
        )
    order.payment_status = payment_status
    return True


def update_payment_status(db: Session, order_id: int, payment_status: str):
    order = get_order(db, order_id)
    changed = apply_payment_status(order, payment_status)
    if changed:
        _commit_order_change(db, order)
        logger.info("Order %s payment -> %s", order.order_number, payment_status)
    return order, changed
