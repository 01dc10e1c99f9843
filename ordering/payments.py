"""Hosted payment sessions: opening them and reconciling the browser return.

Nothing is written to ``orders`` when a session is opened. The session
metadata (:class:`schemas.OrderMetadata`) carries the order details to the
provider and back. ``process_session`` then materializes the order from the
user's cart. It is keyed on the session id, so a repeated return does not
create a second order.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import pydantic
import stripe
from sqlalchemy.orm import Session

from . import cart, errors, models, orders, schemas
from .config import settings
from .pricing import OrderTotals, PricedLine, price_lines, to_minor_units

logger = logging.getLogger(__name__)

METADATA_KEYS = tuple(schemas.OrderMetadata.model_fields) + ("order_id",)


@dataclass(frozen=True)
class LineItem:
    name: str
    description: Optional[str]
    unit_amount: int  # minor units
    quantity: int


@dataclass
class ProviderSession:
    id: str
    url: Optional[str] = None
    payment_status: str = "unpaid"
    amount_total: Optional[int] = None
    payment_intent: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class PaymentProvider(ABC):
    @abstractmethod
    def create_checkout_session(
        self,
        *,
        line_items: Sequence[LineItem],
        metadata: Dict[str, str],
        customer_email: Optional[str],
        success_url: str,
        cancel_url: str,
    ) -> ProviderSession:
        pass

    @abstractmethod
    def retrieve_checkout_session(self, session_id: str) -> ProviderSession:
        pass


def _intent_id(value) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


class StripeProvider(PaymentProvider):
    def __init__(self, api_key: str, currency: str = "gbp", timeout: float = 20.0):
        self.api_key = api_key
        self.currency = currency
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return fn(*args, api_key=self.api_key, **kwargs)
        except stripe.APIConnectionError as e:
            logger.error("Stripe %s unreachable: %s", operation, e)
            raise errors.GatewayUnavailable()
        except stripe.StripeError as e:
            logger.error("Stripe %s failed: %s", operation, e)
            raise errors.GatewayError()

    def _to_session(self, session) -> ProviderSession:
        metadata = getattr(session, "metadata", None)
        values = {}
        if metadata:
            for key in METADATA_KEYS:
                value = getattr(metadata, key, None)
                if value is not None:
                    values[key] = str(value)
        return ProviderSession(
            id=session.id,
            url=getattr(session, "url", None),
            payment_status=getattr(session, "payment_status", None) or "unpaid",
            amount_total=getattr(session, "amount_total", None),
            payment_intent=_intent_id(getattr(session, "payment_intent", None)),
            metadata=values,
        )

    def create_checkout_session(self, *, line_items, metadata, customer_email, success_url, cancel_url):
        stripe_items = []
        for item in line_items:
            product_data = {"name": item.name}
            if item.description:
                product_data["description"] = item.description
            stripe_items.append(
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": product_data,
                        "unit_amount": item.unit_amount,
                    },
                    "quantity": item.quantity,
                }
            )
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": stripe_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
        }
        if customer_email:
            params["customer_email"] = customer_email
        session = self._call("checkout.Session.create", stripe.checkout.Session.create, **params)
        return self._to_session(session)

    def retrieve_checkout_session(self, session_id):
        session = self._call("checkout.Session.retrieve", stripe.checkout.Session.retrieve, session_id)
        return self._to_session(session)


def build_line_items(lines: Sequence[PricedLine], totals: OrderTotals) -> List[LineItem]:
    items = []
    for line in lines:
        if line.unit_price < 0:
            raise errors.ValidationError(f"{line.product_name} has a negative price")
        items.append(
            LineItem(
                name=line.product_name,
                description=line.description,
                unit_amount=to_minor_units(line.unit_price),
                quantity=line.quantity,
            )
        )
    if totals.delivery_fee > 0:
        items.append(LineItem("Delivery fee", None, to_minor_units(totals.delivery_fee), 1))

    charged = sum(item.unit_amount * item.quantity for item in items)
    if charged != to_minor_units(totals.total):
        logger.error("Line items charge %s but order total is %s", charged, totals.total)
        raise errors.ValidationError("Order total could not be priced")
    return items


def create_session(
    db: Session,
    provider: PaymentProvider,
    user: models.User,
    draft: schemas.CheckoutRequest,
    config: schemas.RestaurantConfig,
) -> schemas.CheckoutSessionOut:
    lines = cart.priced_lines(db, user.id)
    totals = orders.validate_checkout(lines, draft, config, user)
    metadata = schemas.OrderMetadata(
        user_id=str(user.id),
        order_type=draft.order_type,
        delivery_address=draft.delivery_address,
        phone=draft.phone,
        notes=draft.notes,
    )
    session = provider.create_checkout_session(
        line_items=build_line_items(lines, totals),
        metadata=metadata.as_metadata(),
        customer_email=user.email,
        success_url=f"{settings.APP_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.APP_URL}/checkout",
    )
    if not session.url:
        raise errors.GatewayError()
    logger.info("Checkout session %s opened for user %s total=%s", session.id, user.id, totals.total)
    return schemas.CheckoutSessionOut(session_id=session.id, url=session.url)


def process_session(
    db: Session,
    provider: PaymentProvider,
    user: models.User,
    session_id: str,
    config: schemas.RestaurantConfig,
) -> Tuple[models.Order, bool]:
    """Materialize the order for a paid session. Returns ``(order, created)``."""
    existing = orders.get_order_by_session(db, session_id)
    if existing is not None:
        if existing.user_id != user.id:
            raise errors.NotFound("Payment session not found")
        return existing, False

    session = provider.retrieve_checkout_session(session_id)
    if session.payment_status != "paid":
        raise errors.PaymentNotCompleted()
    try:
        metadata = schemas.OrderMetadata.model_validate(session.metadata)
    except pydantic.ValidationError:
        logger.error("Session %s carries malformed metadata: %s", session_id, session.metadata)
        raise errors.ValidationError("Payment session is missing order details")
    if metadata.user_id != str(user.id):
        raise errors.NotFound("Payment session not found")

    # the cart as it is now is what gets ordered
    lines = cart.priced_lines(db, user.id)
    if not lines:
        raise errors.ValidationError("Cart is empty")
    draft = schemas.CheckoutRequest(
        order_type=metadata.order_type,
        delivery_address=metadata.delivery_address,
        phone=metadata.phone,
        notes=metadata.notes,
    )
    fee = config.delivery_fee if draft.order_type == "delivery" else None
    totals = price_lines(lines, fee)
    if session.amount_total is not None and session.amount_total != to_minor_units(totals.total):
        logger.warning(
            "Session %s charged %s minor units but cart now totals %s",
            session_id,
            session.amount_total,
            totals.total,
        )

    try:
        order = orders.create_order(
            db,
            user.id,
            lines,
            draft,
            totals,
            payment_method="card",
            payment_status="paid",
            stripe_session_id=session_id,
            stripe_payment_intent_id=session.payment_intent,
        )
    except errors.ConflictOrRace:
        return orders.get_order_by_session(db, session_id), False
    return order, True
