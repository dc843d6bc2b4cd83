"""
Order workflow: cart edits, checkout against the payment gateway, the
gateway callback that turns a paid cart into one order per pharmacy, and the
order/delivery status machines.

Every status change is a compare-and-set on the current status, so two
concurrent requests on the same order can never both win. Notifications are
queued with `transaction.on_commit` and never affect the outcome.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal, InvalidOperation

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Count, F, Q, Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound, PermissionDenied

from pharmacies.models import Pharmacy, PharmacyInventory

from .cart import (
    cart_version,
    compute_order_totals,
    delivery_flat_fee,
    group_by_pharmacy,
    group_platform_fee,
    quantize_money,
)
from .exceptions import (
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    PaymentClosedError,
    StateConflictError,
    ValidationError,
)
from .gateway import CALLBACK_OUTCOMES, VALID_PAYMENT_STATUSES, get_gateway
from .models import (
    CartItem,
    Delivery,
    DeliveryStatus,
    DeliveryType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentOutcome,
    PaymentSession,
)
from .notifications import NotificationKind, notify_quietly, order_template_data

logger = logging.getLogger(__name__)

CART_CHANGED = 'cart_changed'
SESSION_EXPIRED = 'expired'

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ACCEPTED, OrderStatus.REJECTED},
    OrderStatus.ACCEPTED: {OrderStatus.DELIVERED},
    OrderStatus.REJECTED: set(),
    OrderStatus.DELIVERED: set(),
}

DELIVERY_SEQUENCE = [
    DeliveryStatus.PENDING,
    DeliveryStatus.OUT_FOR_DELIVERY,
    DeliveryStatus.DELIVERED,
]


class ListingUnavailable(Exception):
    pass


@dataclass
class CallbackResult:
    session: PaymentSession
    orders: list = field(default_factory=list)
    failures: list = field(default_factory=list)
    replayed: bool = False


# Cart

def _available_listing(pharmacy_id, medicine_id):
    try:
        return PharmacyInventory.objects.select_related('pharmacy', 'medicine').get(
            pharmacy_id=pharmacy_id,
            medicine_id=medicine_id,
            availability=True,
            pharmacy__status=Pharmacy.Status.APPROVED,
        )
    except PharmacyInventory.DoesNotExist:
        raise NotFound('Medicine not available at this pharmacy')


def _parse_quantity(quantity):
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise ValidationError('Quantity must be a whole number')
    if quantity < 1:
        raise ValidationError('Quantity must be at least 1')
    return quantity


def add_to_cart(customer, pharmacy_id, medicine_id, quantity=1):
    """
    Add a listing to the cart, or increase the quantity of the line already
    holding it. Returns (cart_item, created).
    """
    quantity = _parse_quantity(quantity)
    listing = _available_listing(pharmacy_id, medicine_id)

    with transaction.atomic():
        item = CartItem.objects.select_for_update().filter(
            customer=customer, pharmacy_id=pharmacy_id, medicine_id=medicine_id
        ).first()
        wanted = quantity + (item.quantity if item else 0)
        if wanted > listing.stock:
            if item:
                raise ValidationError(
                    f'Cannot add more. Only {listing.stock} available and you already have {item.quantity} in cart'
                )
            raise ValidationError(f'Insufficient stock. Only {listing.stock} available')

        if item:
            # the line keeps the price snapshotted when it was first added
            item.quantity = wanted
            item.save(update_fields=['quantity', 'updated_at'])
            return item, False

        item = CartItem.objects.create(
            customer=customer,
            pharmacy_id=pharmacy_id,
            medicine_id=medicine_id,
            quantity=quantity,
            unit_price=listing.price,
        )
    logger.info(f"User {customer.id} added {quantity} x {listing.medicine.name} from pharmacy {pharmacy_id} to cart")
    return item, True


def update_cart_quantity(customer, item_id, quantity):
    quantity = _parse_quantity(quantity)
    try:
        item = CartItem.objects.get(pk=item_id, customer=customer)
    except CartItem.DoesNotExist:
        raise NotFound('Cart item not found')

    stock = PharmacyInventory.objects.filter(
        pharmacy_id=item.pharmacy_id, medicine_id=item.medicine_id, availability=True
    ).values_list('stock', flat=True).first() or 0
    if quantity > stock:
        raise ValidationError(f'Insufficient stock. Only {stock} available')

    item.quantity = quantity
    item.save(update_fields=['quantity', 'updated_at'])
    return item


def cart_items_for(customer):
    return CartItem.objects.filter(customer=customer).select_related('pharmacy', 'medicine').order_by('id')


# Checkout

def _validate_delivery(delivery_type, delivery_address):
    if delivery_type not in DeliveryType.values:
        raise ValidationError('Valid delivery type is required (pickup or delivery)')
    address = (delivery_address or '').strip()
    if delivery_type == DeliveryType.DELIVERY and not address:
        raise ValidationError('Delivery address is required for home delivery')
    return address if delivery_type == DeliveryType.DELIVERY else ''


def new_transaction_id():
    return f"TXN-{timezone.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:12].upper()}"


def init_checkout(customer, delivery_type, delivery_address=None, gateway=None):
    """
    Price the cart and open a payment session for it.

    The cart is only read: its totals and content hash are snapshotted on a
    new pending PaymentSession. If the gateway cannot open a session, the
    PaymentSession is marked failed and the gateway error propagates.
    """
    address = _validate_delivery(delivery_type, delivery_address)
    items = list(cart_items_for(customer))
    groups = group_by_pharmacy(items)
    if not groups:
        raise ValidationError('Cart is empty')

    totals = compute_order_totals(groups, delivery_type)
    currency = getattr(settings, 'PAYMENT_CURRENCY', 'BDT')
    session = PaymentSession.objects.create(
        transaction_id=new_transaction_id(),
        customer=customer,
        delivery_type=delivery_type,
        delivery_address=address,
        medicine_total=totals.medicine_total,
        delivery_charge=totals.delivery_charge,
        platform_fee=totals.platform_fee,
        grand_total=totals.grand_total,
        currency=currency,
        cart_version=cart_version(items),
    )

    gateway = gateway or get_gateway()
    try:
        gateway_session = gateway.create_session(
            totals.grand_total,
            currency,
            {
                'transaction_id': session.transaction_id,
                'customer_id': customer.id,
                'customer_name': customer.get_full_name() or customer.get_username(),
                'customer_email': customer.email,
                'delivery_address': address,
                'item_count': sum(group.quantity for group in groups),
                'product_name': ', '.join(item.medicine.name for item in items)[:255],
            },
        )
    except ExternalServiceError as e:
        PaymentSession.objects.filter(pk=session.pk, outcome=PaymentOutcome.PENDING).update(
            outcome=PaymentOutcome.FAILED,
            failure_reason=e.message,
            resolved_at=timezone.now(),
        )
        logger.warning(f"Checkout {session.transaction_id} failed at the gateway: {e.message}")
        raise

    session.gateway_session_id = gateway_session['gateway_session_id']
    session.redirect_url = gateway_session['redirect_url']
    session.save(update_fields=['gateway_session_id', 'redirect_url'])
    logger.info(
        f"Checkout {session.transaction_id} opened for user {customer.id}: "
        f"{totals.pharmacy_count} pharmacy(ies), total {totals.grand_total}"
    )
    return session


def _create_group_order(session, group, paid_at):
    pharmacy = group.pharmacy
    if pharmacy is None or not pharmacy.is_approved:
        raise ListingUnavailable('Pharmacy is no longer accepting orders')

    listings = {
        listing.medicine_id: listing
        for listing in PharmacyInventory.objects.select_related('pharmacy').filter(
            pharmacy_id=group.pharmacy_id,
            medicine_id__in=[item.medicine_id for item in group.items],
        )
    }
    for item in group.items:
        listing = listings.get(item.medicine_id)
        if listing is None or not listing.is_purchasable:
            raise ListingUnavailable(f'{item.medicine.name} is no longer available')
        if listing.stock < item.quantity:
            raise ListingUnavailable(f'Insufficient stock for {item.medicine.name}')

    order = Order.objects.create(
        customer_id=session.customer_id,
        pharmacy_id=group.pharmacy_id,
        payment_session=session,
        transaction_id=session.transaction_id,
        delivery_type=session.delivery_type,
        delivery_address=session.delivery_address,
        status=OrderStatus.PENDING,
        total_price=quantize_money(group.subtotal),
        delivery_charge=quantize_money(delivery_flat_fee() if session.delivery_type == DeliveryType.DELIVERY else 0),
        platform_fee=group_platform_fee(group),
        paid_at=paid_at,
    )
    OrderItem.objects.bulk_create([
        OrderItem(
            order=order,
            medicine_id=item.medicine_id,
            quantity=item.quantity,
            price_at_order=item.unit_price,
        )
        for item in group.items
    ])
    return order


def _create_orders(session, groups):
    """One order per pharmacy group, each in its own savepoint."""
    paid_at = timezone.now()
    orders, failures = [], []
    for group in groups:
        try:
            with transaction.atomic():
                order = _create_group_order(session, group, paid_at)
        except ListingUnavailable as e:
            pharmacy = group.pharmacy
            failures.append({
                'pharmacy_id': group.pharmacy_id,
                'pharmacy_name': pharmacy.name if pharmacy else '',
                'reason': str(e),
            })
            logger.warning(f"Checkout {session.transaction_id}: no order for pharmacy {group.pharmacy_id}: {e}")
            continue
        orders.append(order)
    return orders, failures


def _send_checkout_notifications(order_ids):
    for order in Order.objects.filter(pk__in=order_ids).select_related('customer', 'pharmacy'):
        data = order_template_data(order)
        notify_quietly(NotificationKind.PAYMENT_SUCCESS, order.customer.email, data)
        notify_quietly(NotificationKind.RESERVATION_CONFIRMED, order.customer.email, data)


def _resolve(session, outcome, order_ids=(), failures=(), reason='', refund_required=False):
    session.outcome = outcome
    session.failure_reason = reason
    session.resolved_at = timezone.now()
    session.result = {
        'order_ids': list(order_ids),
        'failures': list(failures),
    }
    if refund_required:
        session.result['refund_required'] = True
    session.save(update_fields=['outcome', 'failure_reason', 'resolved_at', 'result'])


def _record_late_payment(session):
    """A captured payment reached a failed or cancelled session: keep the outcome, flag the refund."""
    session.result = {
        'order_ids': [],
        'failures': [],
        'refund_required': True,
        'paid_after': session.failure_reason or session.outcome,
    }
    session.save(update_fields=['result'])


def _replay(session):
    order_ids = session.result.get('order_ids', [])
    orders = list(Order.objects.filter(pk__in=order_ids).order_by('id'))
    return CallbackResult(session, orders, session.result.get('failures', []), replayed=True)


def _recorded_conflict(session):
    if not session.result.get('refund_required'):
        return None
    payload = {'transaction_id': session.transaction_id, 'refund_required': True}
    if session.failure_reason == CART_CHANGED and session.outcome == PaymentOutcome.SUCCESS:
        return StateConflictError(payload=payload)
    return PaymentClosedError(payload=payload)


def _verify_payment(session, validation_id, gateway):
    """Check with the gateway that `validation_id` is a captured payment of this session's total."""
    if not validation_id:
        raise ValidationError('Missing payment validation id')

    data = gateway.validate_payment(validation_id)
    if data.get('status') not in VALID_PAYMENT_STATUSES:
        logger.error(f"Payment {session.transaction_id} not validated by the gateway: {data.get('status')}")
        raise ValidationError('Payment could not be verified with the gateway', code='payment_not_verified')
    if data.get('tran_id') != session.transaction_id:
        logger.error(f"Validation {validation_id} belongs to {data.get('tran_id')}, not {session.transaction_id}")
        raise ValidationError('Payment does not belong to this transaction', code='payment_not_verified')
    try:
        amount = quantize_money(Decimal(str(data.get('amount'))))
    except (InvalidOperation, TypeError, ValueError):
        amount = None
    if amount != session.grand_total:
        logger.error(f"Payment {session.transaction_id} paid {data.get('amount')}, expected {session.grand_total}")
        raise ValidationError('Paid amount does not match the checkout total', code='payment_not_verified')


def handle_gateway_callback(transaction_id, outcome, gateway_session_id=None, validation_id=None, gateway=None):
    """
    Apply the gateway's verdict on a payment session.

    A successful outcome is first confirmed against the gateway's validation
    API. It then becomes one pending order per pharmacy group of the cart,
    provided the cart still matches the checkout snapshot; a group whose
    listing disappeared is reported in `failures` while the other groups
    keep their orders. A repeated callback returns the recorded result with
    `replayed=True` and creates nothing. A payment captured after the
    session failed or expired is flagged for refund and reported as a
    conflict, like a cart that changed during payment.
    """
    if outcome not in CALLBACK_OUTCOMES:
        raise ValidationError(f"Unknown payment outcome '{outcome}'")

    conflict = None
    with transaction.atomic():
        try:
            session = PaymentSession.objects.select_for_update().get(transaction_id=transaction_id)
        except PaymentSession.DoesNotExist:
            raise NotFound('Payment session not found')

        if gateway_session_id and session.gateway_session_id and gateway_session_id != session.gateway_session_id:
            raise ValidationError('Gateway session does not match this transaction')

        late_payment = (
            session.is_terminal
            and outcome == PaymentOutcome.SUCCESS
            and session.outcome != PaymentOutcome.SUCCESS
            and not session.result.get('refund_required')
        )

        if late_payment:
            _verify_payment(session, validation_id, gateway or get_gateway())
            _record_late_payment(session)
            logger.error(
                f"Payment {transaction_id} captured after the session was {session.outcome} "
                f"({session.result['paid_after']}), refund required"
            )
            result = CallbackResult(session)
            conflict = _recorded_conflict(session)

        elif session.is_terminal:
            if outcome != session.outcome:
                logger.warning(
                    f"Callback '{outcome}' for {transaction_id} ignored, session already {session.outcome}"
                )
            logger.info(f"Replaying recorded result for {transaction_id}")
            result = _replay(session)
            conflict = _recorded_conflict(session)

        elif outcome != PaymentOutcome.SUCCESS:
            _resolve(session, outcome)
            logger.info(f"Payment {transaction_id} {outcome}, cart left untouched")
            result = CallbackResult(session)

        else:
            _verify_payment(session, validation_id, gateway or get_gateway())
            items = list(
                CartItem.objects.select_for_update()
                .filter(customer_id=session.customer_id)
                .select_related('pharmacy', 'medicine')
                .order_by('id')
            )
            if cart_version(items) != session.cart_version:
                _resolve(session, PaymentOutcome.SUCCESS, reason=CART_CHANGED, refund_required=True)
                logger.error(f"Cart changed during payment {transaction_id}, refund required")
                result = CallbackResult(session)
                conflict = _recorded_conflict(session)
            else:
                orders, failures = _create_orders(session, group_by_pharmacy(items))
                CartItem.objects.filter(pk__in=[item.pk for item in items]).delete()
                order_ids = [order.id for order in orders]
                _resolve(session, PaymentOutcome.SUCCESS, order_ids, failures)
                transaction.on_commit(lambda: _send_checkout_notifications(order_ids))
                logger.info(
                    f"Payment {transaction_id} succeeded: {len(orders)} order(s), {len(failures)} failed group(s)"
                )
                result = CallbackResult(session, orders, failures)

    if conflict:
        raise conflict
    return result


def expire_stale_payment_sessions(now=None):
    """Fail pending sessions older than PAYMENT_SESSION_TTL_MINUTES. Returns how many."""
    now = now or timezone.now()
    cutoff = now - timedelta(minutes=getattr(settings, 'PAYMENT_SESSION_TTL_MINUTES', 30))
    expired = PaymentSession.objects.filter(
        outcome=PaymentOutcome.PENDING,
        created_at__lt=cutoff,
    ).update(
        outcome=PaymentOutcome.FAILED,
        failure_reason=SESSION_EXPIRED,
        resolved_at=now,
    )
    if expired:
        logger.info(f"Expired {expired} stale payment session(s)")
    return expired


# Status machines

def _get_owned(queryset, pk, actor, label):
    try:
        obj = queryset.get(pk=pk)
    except (queryset.model.DoesNotExist, ValueError):
        raise NotFound(f'{label} not found')
    if not obj.pharmacy.is_owned_by(actor):
        raise PermissionDenied(f'This {label.lower()} belongs to another pharmacy')
    return obj


def _notify_status(order_id):
    order = Order.objects.select_related('customer', 'pharmacy').get(pk=order_id)
    notify_quietly(NotificationKind.STATUS_UPDATE, order.customer.email, order_template_data(order))


def allowed_order_transitions(order):
    if order.status == OrderStatus.ACCEPTED and order.is_delivery:
        return set()
    return ORDER_TRANSITIONS[OrderStatus(order.status)]


def _reserve_stock(order):
    for item in order.items.select_related('medicine'):
        reserved = PharmacyInventory.objects.filter(
            pharmacy_id=order.pharmacy_id,
            medicine_id=item.medicine_id,
            stock__gte=item.quantity,
        ).update(stock=F('stock') - item.quantity)
        if not reserved:
            raise ValidationError(f'Insufficient stock for {item.medicine.name}')


def update_order_status(order_id, actor, new_status):
    """
    Move an order of the actor's pharmacy to `new_status`.

    pending -> accepted|rejected, and accepted -> delivered for pickup
    orders; delivery orders are completed through their Delivery.
    Accepting takes the ordered quantities out of stock.
    """
    if new_status not in OrderStatus.values:
        raise ValidationError(f"Unknown order status '{new_status}'")

    order = _get_owned(Order.objects.select_related('pharmacy'), order_id, actor, 'Reservation')
    current = order.status
    if new_status not in allowed_order_transitions(order):
        message = None
        if new_status == OrderStatus.DELIVERED and order.is_delivery:
            message = 'Home delivery orders are marked delivered through their delivery.'
        raise InvalidTransitionError(current, new_status, message)

    with transaction.atomic():
        updated = Order.objects.filter(pk=order.pk, status=current).update(
            status=new_status,
            updated_at=timezone.now(),
        )
        if not updated:
            order.refresh_from_db(fields=['status'])
            raise InvalidTransitionError(order.status, new_status)
        if new_status == OrderStatus.ACCEPTED:
            _reserve_stock(order)
        transaction.on_commit(lambda: _notify_status(order.pk))

    logger.info(f"Order {order.pk} moved {current} -> {new_status} by user {actor.id}")
    order.refresh_from_db()
    return order


def create_delivery(order_id, actor, address=None, delivery_person=''):
    order = _get_owned(Order.objects.select_related('pharmacy'), order_id, actor, 'Reservation')

    if Delivery.objects.filter(order=order).exists():
        raise ConflictError('A delivery already exists for this reservation')
    if not order.is_delivery:
        raise ValidationError('Deliveries can only be created for home delivery reservations')
    if order.status != OrderStatus.ACCEPTED:
        raise ValidationError('The reservation must be accepted before a delivery is created')

    address = (address or '').strip() or order.delivery_address
    if not address:
        raise ValidationError('Delivery address is required')

    try:
        with transaction.atomic():
            delivery = Delivery.objects.create(
                order=order,
                address=address,
                delivery_person=(delivery_person or '').strip(),
            )
    except IntegrityError:
        raise ConflictError('A delivery already exists for this reservation')

    logger.info(f"Delivery {delivery.pk} created for order {order.pk}")
    return delivery


def advance_delivery(delivery_id, actor, new_status=None, delivery_person=None):
    """
    Move a delivery one step along pending -> out_for_delivery -> delivered.

    The delivery person can be set with the step to out_for_delivery or
    later, or re-set on its own once the delivery is out. Reaching delivered
    also marks the order delivered, in the same transaction.
    """
    delivery = _get_owned(
        Delivery.objects.select_related('order', 'order__pharmacy'), delivery_id, actor, 'Delivery'
    )
    current = delivery.status
    new_status = new_status or current
    if new_status not in DeliveryStatus.values:
        raise ValidationError(f"Unknown delivery status '{new_status}'")

    if new_status == current:
        if delivery_person is None:
            raise InvalidTransitionError(current, new_status)
        if current == DeliveryStatus.PENDING:
            raise ValidationError('A delivery person can be assigned once the delivery is out')
    elif DELIVERY_SEQUENCE.index(new_status) != DELIVERY_SEQUENCE.index(current) + 1:
        raise InvalidTransitionError(current, new_status)

    changes = {'status': new_status, 'updated_at': timezone.now()}
    if delivery_person is not None:
        changes['delivery_person'] = delivery_person.strip()

    with transaction.atomic():
        updated = Delivery.objects.filter(pk=delivery.pk, status=current).update(**changes)
        if not updated:
            delivery.refresh_from_db(fields=['status'])
            raise InvalidTransitionError(delivery.status, new_status)

        if new_status == DeliveryStatus.DELIVERED:
            order_updated = Order.objects.filter(pk=delivery.order_id, status=OrderStatus.ACCEPTED).update(
                status=OrderStatus.DELIVERED,
                updated_at=timezone.now(),
            )
            if not order_updated:
                delivery.order.refresh_from_db(fields=['status'])
                raise InvalidTransitionError(delivery.order.status, OrderStatus.DELIVERED)
            transaction.on_commit(lambda: _notify_status(delivery.order_id))

    if new_status != current:
        logger.info(f"Delivery {delivery.pk} moved {current} -> {new_status} by user {actor.id}")
    delivery.refresh_from_db()
    return delivery


# Stats

def pharmacy_stats(pharmacy):
    completed = Order.objects.filter(
        pharmacy=pharmacy,
        status__in=[OrderStatus.ACCEPTED, OrderStatus.DELIVERED],
    )
    totals = completed.aggregate(
        order_count=Count('id'),
        pickup_count=Count('id', filter=Q(delivery_type=DeliveryType.PICKUP)),
        delivery_count=Count('id', filter=Q(delivery_type=DeliveryType.DELIVERY)),
        medicine_value=Sum('total_price'),
        delivery_charges=Sum('delivery_charge'),
    )
    quantity_sold = OrderItem.objects.filter(order__in=completed).aggregate(total=Sum('quantity'))['total'] or 0
    medicine_value = quantize_money(totals['medicine_value'] or 0)
    delivery_charges = quantize_money(totals['delivery_charges'] or 0)

    return {
        'pharmacy_id': pharmacy.id,
        'order_count': totals['order_count'],
        'pickup_count': totals['pickup_count'],
        'delivery_count': totals['delivery_count'],
        'pending_count': Order.objects.filter(pharmacy=pharmacy, status=OrderStatus.PENDING).count(),
        'medicine_value': f'{medicine_value:.2f}',
        'total_earnings': f'{medicine_value + delivery_charges:.2f}',
        'quantity_sold': quantity_sold,
    }
