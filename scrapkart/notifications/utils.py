from typing import Any, Dict
from scrapkart.notifications.constants import (
    TOPIC_ORDER_CANCELLED, TOPIC_ORDER_CONFIRMED, TOPIC_ORDER_REFUNDED, TOPIC_PAYMENT_FAILED,
)


def _rupees(paise: Any) -> str:
    try:
        return f"{int(paise) / 100:.2f}"
    except (TypeError, ValueError):
        return "-"


TEMPLATES = {
    TOPIC_ORDER_CONFIRMED: (
        "Order Confirmed - ScrapPickup",
        "Your ScrapPickup order #{ref} has been confirmed! Payment of Rs {amount} received. "
        "Our team will arrive at your scheduled time to collect the materials.",
    ),
    TOPIC_PAYMENT_FAILED: (
        "Payment Failed - ScrapPickup",
        "Payment for your ScrapPickup order #{ref} did not go through. You can retry from your dashboard.",
    ),
    TOPIC_ORDER_REFUNDED: (
        "Order Cancelled and Refunded - ScrapPickup",
        "Your ScrapPickup order #{ref} has been cancelled and Rs {amount} has been refunded.",
    ),
    TOPIC_ORDER_CANCELLED: (
        "Order Cancelled - ScrapPickup",
        "Your ScrapPickup order #{ref} has been cancelled.",
    ),
}


def render_message(topic: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Build the request body the notification service accepts."""
    subject, body = TEMPLATES.get(topic, ("ScrapPickup update", "There is an update on your order #{ref}."))
    return {
        "action": "send_push",
        "recipient": payload.get("user_id"),
        "subject": subject,
        "message": body.format(ref=payload.get("order_ref", ""), amount=_rupees(payload.get("amount"))),
        "type": topic,
        "orderId": payload.get("order_id"),
    }
