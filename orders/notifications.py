"""
Customer notifications, sent as plain-text email through Django's mail
framework. Sending is best-effort: callers on the order workflow go through
`notify_quietly`, which never raises.
"""
import logging
from dataclasses import dataclass
from enum import Enum

from django.conf import settings
from django.core.mail import send_mail
from django.template.loader import render_to_string

from .models import DeliveryStatus, OrderStatus

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    RESERVATION_CONFIRMED = 'reservation-confirmed'
    PAYMENT_SUCCESS = 'payment-success'
    STATUS_UPDATE = 'status-update'

    @property
    def template_name(self):
        return f"orders/emails/{self.value.replace('-', '_')}.txt"


@dataclass(frozen=True)
class StatusMessage:
    title: str
    message: str


# Every order and delivery status must have an entry here
ORDER_STATUS_MESSAGES = {
    OrderStatus.PENDING: StatusMessage(
        'Reservation Received',
        'Your reservation has been sent to the pharmacy and is awaiting confirmation.',
    ),
    OrderStatus.ACCEPTED: StatusMessage(
        'Order Accepted',
        'Good news! Your reservation has been accepted by the pharmacy.',
    ),
    OrderStatus.REJECTED: StatusMessage(
        'Order Rejected',
        'Unfortunately, your reservation has been rejected by the pharmacy.',
    ),
    OrderStatus.DELIVERED: StatusMessage(
        'Order Delivered',
        'Your medicine has been successfully delivered!',
    ),
}

DELIVERY_STATUS_MESSAGES = {
    DeliveryStatus.PENDING: StatusMessage(
        'Delivery Scheduled',
        'The pharmacy is preparing your order for delivery.',
    ),
    DeliveryStatus.OUT_FOR_DELIVERY: StatusMessage(
        'Out for Delivery',
        'Your order is on its way.',
    ),
    DeliveryStatus.DELIVERED: StatusMessage(
        'Order Delivered',
        'Your medicine has been successfully delivered!',
    ),
}

SUBJECTS = {
    NotificationKind.RESERVATION_CONFIRMED: 'Reservation Confirmed - MedLink',
    NotificationKind.PAYMENT_SUCCESS: 'Payment Successful - MedLink Receipt',
}


def order_status_message(status):
    return ORDER_STATUS_MESSAGES[OrderStatus(status)]


def delivery_status_message(status):
    return DELIVERY_STATUS_MESSAGES[DeliveryStatus(status)]


@dataclass(frozen=True)
class NotificationResult:
    success: bool
    error: str = ''


def _subject(kind, template_data):
    if kind == NotificationKind.STATUS_UPDATE:
        title = order_status_message(template_data['status']).title
        return f"{title} - Reservation #{template_data['order_id']}"
    return SUBJECTS[kind]


def send(kind, recipient, template_data):
    """Render and send one notification. Failures are reported, not raised."""
    kind = NotificationKind(kind)
    if not recipient:
        return NotificationResult(False, 'Recipient has no email address')

    try:
        body = render_to_string(kind.template_name, template_data)
        send_mail(
            _subject(kind, template_data),
            body,
            settings.DEFAULT_FROM_EMAIL,
            [recipient],
            fail_silently=False,
        )
    except Exception as e:
        return NotificationResult(False, str(e))

    logger.info(f"Sent {kind.value} notification to {recipient}")
    return NotificationResult(True)


def notify_quietly(kind, recipient, template_data):
    result = send(kind, recipient, template_data)
    if not result.success:
        logger.warning(f"Failed to send {NotificationKind(kind).value} notification to {recipient}: {result.error}")
    return result


def order_template_data(order):
    items = [
        {
            'name': item.medicine.name,
            'quantity': item.quantity,
            'price': f'{item.price_at_order:.2f}',
            'line_total': f'{item.line_total:.2f}',
        }
        for item in order.items.select_related('medicine')
    ]
    status_message = order_status_message(order.status)
    return {
        'order_id': order.id,
        'customer_name': order.customer.get_full_name() or order.customer.get_username(),
        'pharmacy_name': order.pharmacy.name,
        'pharmacy_address': order.pharmacy.address,
        'pharmacy_phone': order.pharmacy.phone or '',
        'transaction_id': order.transaction_id,
        'delivery_type': order.get_delivery_type_display(),
        'delivery_address': order.delivery_address,
        'items': items,
        'total_price': f'{order.total_price:.2f}',
        'delivery_charge': f'{order.delivery_charge:.2f}',
        'status': order.status,
        'status_title': status_message.title,
        'status_message': status_message.message,
    }
