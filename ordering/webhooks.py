"""Payment provider webhooks.

Events are verified against the raw body and recorded by event id in
``processed_webhook_events`` in the same commit as the order change they
cause. Redelivery of an event therefore changes nothing. Any validly
signed event gets an ack, including unknown types and events for orders
that do not exist here.
"""

import logging
from typing import Optional

import pydantic
import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from . import errors, models, orders, schemas
from .config import settings

logger = logging.getLogger(__name__)

PAID_EVENTS = {"checkout.session.completed", "payment_intent.succeeded"}
FAILED_EVENTS = {"checkout.session.expired", "payment_intent.payment_failed"}


def verify_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> None:
    if not signature or not secret:
        logger.warning("Webhook rejected: missing signature or secret")
        raise errors.InvalidSignature()
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            signature,
            secret,
            tolerance=settings.WEBHOOK_TOLERANCE_SECONDS,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise errors.InvalidSignature()


def parse_envelope(payload: bytes) -> schemas.EventEnvelope:
    try:
        return schemas.EventEnvelope.model_validate_json(payload)
    except pydantic.ValidationError as e:
        logger.warning("Webhook body rejected: %s", e)
        raise errors.ValidationError("Malformed event payload")


def parse_event(payload: bytes) -> schemas.PaymentEvent:
    try:
        return schemas.PaymentEvent.model_validate_json(payload)
    except pydantic.ValidationError as e:
        logger.warning("Webhook body rejected: %s", e)
        raise errors.ValidationError("Malformed event payload")


def find_order(db: Session, event: schemas.PaymentEvent) -> Optional[models.Order]:
    obj = event.data.object
    order_id = obj.metadata.get("order_id")
    if order_id:
        try:
            return db.get(models.Order, int(order_id))
        except ValueError:
            logger.warning("Event %s has non-numeric order_id %r", event.id, order_id)
            return None
    if event.type.startswith("checkout.session."):
        order = orders.get_order_by_session(db, obj.id)
        if order is not None or not obj.payment_intent:
            return order
        intent_id = obj.payment_intent
    else:
        intent_id = obj.id
    return (
        db.query(models.Order)
        .filter(models.Order.stripe_payment_intent_id == intent_id)
        .first()
    )


def _mark_paid(order: models.Order, event: schemas.PaymentEvent) -> bool:
    changed = orders.apply_payment_status(order, "paid")
    if order.status == "pending":
        order.status = "confirmed"
        changed = True
    elif order.status == "cancelled" and changed:
        logger.warning("Order %s was paid after being cancelled, needs review", order.order_number)
    intent_id = event.data.object.payment_intent
    if event.type == "payment_intent.succeeded":
        intent_id = event.data.object.id
    if intent_id and not order.stripe_payment_intent_id:
        order.stripe_payment_intent_id = intent_id
        changed = True
    return changed


def _mark_failed(order: models.Order, event: schemas.PaymentEvent) -> bool:
    changed = orders.apply_payment_status(order, "failed")
    if changed and order.status == "pending":
        order.status = "cancelled"
    elif changed:
        logger.warning(
            "Payment failed for order %s in status %s, needs review", order.order_number, order.status
        )
    return changed


def _apply(db: Session, event: schemas.PaymentEvent) -> str:
    transition = _mark_paid if event.type in PAID_EVENTS else _mark_failed

    order = find_order(db, event)
    if order is None:
        logger.info("Event %s (%s): no matching order", event.id, event.type)
        return "order_not_found"
    try:
        changed = transition(order, event)
    except errors.InvalidTransition as e:
        logger.warning("Event %s for order %s rejected: %s", event.id, order.order_number, e.message)
        return "rejected"
    if not changed:
        return "unchanged"
    logger.info(
        "Order %s payment=%s status=%s via %s",
        order.order_number,
        order.payment_status,
        order.status,
        event.type,
    )
    return "applied"


def handle_event(
    db: Session, payload: bytes, signature: Optional[str], secret: Optional[str]
) -> schemas.WebhookAck:
    verify_signature(payload, signature, secret)
    event = parse_envelope(payload)

    if db.get(models.ProcessedWebhookEvent, event.id) is not None:
        logger.info("Event %s already processed", event.id)
        return schemas.WebhookAck(outcome="duplicate")

    if event.type in PAID_EVENTS or event.type in FAILED_EVENTS:
        outcome = _apply(db, parse_event(payload))
    else:
        logger.info("Unhandled event type: %s", event.type)
        outcome = "ignored"
    db.add(models.ProcessedWebhookEvent(event_id=event.id, event_type=event.type, outcome=outcome))
    try:
        db.commit()
    except IntegrityError:
        # a concurrent delivery of the same event committed first
        db.rollback()
        logger.info("Event %s processed concurrently", event.id)
        return schemas.WebhookAck(outcome="duplicate")
    except StaleDataError:
        db.rollback()
        raise errors.ConflictOrRace()
    return schemas.WebhookAck(outcome=outcome)
