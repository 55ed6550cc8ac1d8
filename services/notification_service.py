"""
Outbound notifications (emails are rendered and sent by another service).

Notifications are fire-and-forget: they run after the booking transaction
has committed, and a failure is logged without undoing the booking.
"""
import enum
from typing import Any, Dict, Optional, Protocol

from loguru import logger


class NotificationEvent(enum.Enum):
    RESERVATION_CONFIRMED = "reservation_confirmed"
    RESERVATION_PAYMENT_LINK = "reservation_payment_link"
    RESERVATION_PAID = "reservation_paid"
    PROLONGATION_ACCEPTED = "prolongation_accepted"
    PROLONGATION_PAYMENT_LINK = "prolongation_payment_link"
    PROLONGATION_REJECTED = "prolongation_rejected"


class NotificationDispatcher(Protocol):
    async def send(self, event_type: NotificationEvent, payload: Dict[str, Any]) -> None:
        ...


class LogNotificationDispatcher:
    """Dispatcher that only records events in the log"""

    async def send(self, event_type: NotificationEvent, payload: Dict[str, Any]) -> None:
        logger.info(f"Notification {event_type.value}: {payload}")


async def dispatch(notifier: Optional[NotificationDispatcher], event_type: NotificationEvent,
                   payload: Dict[str, Any]) -> None:
    """Send a notification, never raising"""
    if notifier is None:
        return
    try:
        await notifier.send(event_type, payload)
    except Exception as e:
        logger.error(f"Notification {event_type.value} failed: {e}")
