import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Tuple

import httpx

from . import models, schemas
from .config import settings

logger = logging.getLogger(__name__)

DEFAULT_SENDER = "orders@yourdomain.com"


@dataclass(frozen=True)
class OrderEmail:
    order_number: str
    recipient: str
    customer_name: str
    order_type: str
    status: str
    total: Decimal
    items: Tuple[Tuple[str, int, Decimal], ...]


def order_email(order: models.Order, user: models.User) -> OrderEmail:
    """Detach the fields an email needs so it can be sent after the session closes."""
    return OrderEmail(
        order_number=order.order_number,
        recipient=user.email,
        customer_name=user.full_name or user.email,
        order_type=order.order_type,
        status=order.status,
        total=order.total,
        items=tuple((item.product_name, item.quantity, item.subtotal) for item in order.items),
    )


def _item_lines(email: OrderEmail) -> List[str]:
    return [f"{qty} x {name} - £{subtotal:.2f}" for name, qty, subtotal in email.items]


def _send(config: schemas.RestaurantConfig, to: str, subject: str, text: str) -> bool:
    if not config.email_notifications_enabled:
        logger.info("Email notifications are disabled")
        return False
    if not settings.RESEND_API_KEY:
        logger.warning("Resend API key not configured, skipping email to %s", to)
        return False
    try:
        with httpx.Client(timeout=settings.NOTIFICATION_TIMEOUT_SECONDS) as client:
            r = client.post(
                settings.RESEND_API_URL,
                headers={"Authorization": f"Bearer {settings.RESEND_API_KEY}"},
                json={
                    "from": config.notification_email or DEFAULT_SENDER,
                    "to": [to],
                    "subject": subject,
                    "text": text,
                },
            )
            r.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Failed to send order email to %s: %s", to, e)
        return False
    return True


def send_order_confirmation(email: OrderEmail, config: schemas.RestaurantConfig) -> bool:
    text = "\n".join(
        [
            f"Thank you for your order, {email.customer_name}!",
            f"Order: #{email.order_number} ({email.order_type})",
            "",
            *_item_lines(email),
            "",
            f"Total: £{email.total:.2f}",
        ]
    )
    return _send(config, email.recipient, f"Order Confirmation - #{email.order_number}", text)


def send_order_status_update(email: OrderEmail, config: schemas.RestaurantConfig) -> bool:
    text = "\n".join(
        [
            f"Hi {email.customer_name},",
            f"Your order #{email.order_number} is now: {email.status.replace('_', ' ')}.",
            f"Total: £{email.total:.2f}",
        ]
    )
    return _send(config, email.recipient, f"Order Status Update - #{email.order_number}", text)
