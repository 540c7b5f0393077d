"""Order notifications: an in-memory outbox and a Resend e-mail sender."""

import logging
from typing import Any, Protocol

import resend

from src.core.config import Settings, get_settings
from src.models.events import DomainEvent, OrderCancelled, OrderCreated, OrderStatusChanged

logger = logging.getLogger(__name__)


class NotificationService(Protocol):
    async def notify(self, event: DomainEvent) -> None: ...


class InMemoryNotificationService:
    """Collects every event it is handed."""

    def __init__(self) -> None:
        self.sent: list[DomainEvent] = []

    async def notify(self, event: DomainEvent) -> None:
        self.sent.append(event)


class EmailNotificationService:
    """Service for sending order e-mails via Resend."""

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize email service with Resend API key."""
        settings = settings or get_settings()
        resend.api_key = settings.resend_api_key
        self.from_email = settings.email_from_address
        self.app_name = settings.app_name

    async def notify(self, event: DomainEvent) -> None:
        """Send the customer e-mail for an order event, if it has one."""
        if isinstance(event, OrderCreated):
            await self.send_order_confirmation(event)
        elif isinstance(event, OrderCancelled):
            await self.send_order_cancelled(event)
        elif isinstance(event, OrderStatusChanged) and event.to_status != "cancelled":
            await self.send_status_update(event)

    async def send_order_confirmation(self, event: OrderCreated) -> dict[str, Any]:
        """Send the order-received e-mail.

        Args:
            event: The order creation event.

        Returns:
            dict: Send outcome with ``success`` and the Resend email id or error.
        """
        subject = f"Your order {event.order_number} has been received"
        text_content = f"""
Thank you for your order!

Order number: {event.order_number}
Total: {event.total}

We will let you know as soon as it ships.
"""
        return await self._send(event.customer_email, subject, text_content)

    async def send_status_update(self, event: OrderStatusChanged) -> dict[str, Any]:
        subject = f"Order {event.order_number} is now {event.to_status}"
        text_content = f"""
Your order {event.order_number} moved from {event.from_status} to {event.to_status}.
"""
        return await self._send(event.customer_email, subject, text_content)

    async def send_order_cancelled(self, event: OrderCancelled) -> dict[str, Any]:
        subject = f"Order {event.order_number} has been cancelled"
        reason = f"\nReason: {event.reason}\n" if event.reason else ""
        text_content = f"""
Your order {event.order_number} has been cancelled.
{reason}
Any captured payment will be refunded to your original payment method.
"""
        return await self._send(event.customer_email, subject, text_content)

    async def _send(self, to_email: str | None, subject: str, text_content: str) -> dict[str, Any]:
        if not to_email:
            logger.debug("No customer email for notification %r, skipping", subject)
            return {"success": False, "error": "no recipient"}

        try:
            response = resend.Emails.send({
                "from": self.from_email,
                "to": [to_email],
                "subject": f"[{self.app_name}] {subject}",
                "text": text_content,
            })

            logger.info("Order email sent to %s, id: %s", to_email, response.get("id"))
            return {"success": True, "email_id": response.get("id")}

        except Exception as e:
            logger.error("Failed to send order email to %s: %s", to_email, str(e))
            return {"success": False, "error": str(e)}
