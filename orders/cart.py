"""
Cart aggregation: split a customer's flat cart into one group per pharmacy
and price the checkout.

Everything here is pure. The functions take cart rows (or anything exposing
`pharmacy_id`, `medicine_id`, `quantity` and `unit_price`) and never touch the
database, so they can be called on every request.
"""
import hashlib
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

from django.conf import settings

from .models import DeliveryType

CENTS = Decimal('0.01')
DEFAULT_DELIVERY_FLAT_FEE = Decimal('60.00')
DEFAULT_PLATFORM_FEE_RATE = Decimal('0.003')


def quantize_money(value):
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def delivery_flat_fee():
    return Decimal(str(getattr(settings, 'DELIVERY_FLAT_FEE', DEFAULT_DELIVERY_FLAT_FEE)))


def platform_fee_rate():
    return Decimal(str(getattr(settings, 'PLATFORM_FEE_RATE', DEFAULT_PLATFORM_FEE_RATE)))


@dataclass
class PharmacyGroup:
    pharmacy_id: int
    items: list = field(default_factory=list)

    @property
    def pharmacy(self):
        return getattr(self.items[0], 'pharmacy', None) if self.items else None

    @property
    def subtotal(self):
        return sum((item.unit_price * item.quantity for item in self.items), Decimal('0'))

    @property
    def quantity(self):
        return sum(item.quantity for item in self.items)


@dataclass(frozen=True)
class OrderTotals:
    medicine_total: Decimal
    delivery_charge: Decimal
    platform_fee: Decimal
    grand_total: Decimal
    pharmacy_count: int = 0

    def as_dict(self):
        return {
            'medicine_total': f'{self.medicine_total:.2f}',
            'delivery_charge': f'{self.delivery_charge:.2f}',
            'platform_fee': f'{self.platform_fee:.2f}',
            'grand_total': f'{self.grand_total:.2f}',
            'pharmacy_count': self.pharmacy_count,
        }


def group_by_pharmacy(cart_items):
    """
    Group cart items by pharmacy, keeping the order in which each pharmacy
    first appears. Items with a quantity below one are skipped.
    """
    groups = {}
    for item in cart_items:
        if item.quantity < 1:
            continue
        group = groups.get(item.pharmacy_id)
        if group is None:
            group = groups[item.pharmacy_id] = PharmacyGroup(pharmacy_id=item.pharmacy_id)
        group.items.append(item)
    return list(groups.values())


def compute_order_totals(groups, delivery_type):
    if not groups:
        zero = quantize_money(0)
        return OrderTotals(zero, zero, zero, zero, 0)

    medicine_total = quantize_money(sum((group.subtotal for group in groups), Decimal('0')))
    if delivery_type == DeliveryType.DELIVERY:
        delivery_charge = quantize_money(delivery_flat_fee() * len(groups))
    else:
        delivery_charge = quantize_money(0)
    platform_fee = quantize_money(medicine_total * platform_fee_rate())

    return OrderTotals(
        medicine_total=medicine_total,
        delivery_charge=delivery_charge,
        platform_fee=platform_fee,
        grand_total=medicine_total + delivery_charge + platform_fee,
        pharmacy_count=len(groups),
    )


def group_platform_fee(group):
    """Platform fee share recorded on the order of one pharmacy group."""
    return quantize_money(group.subtotal * platform_fee_rate())


def cart_version(cart_items):
    """
    Content hash of a cart. Two carts hash the same iff they hold the same
    listings with the same quantities and snapshot prices.
    """
    lines = sorted(
        (item.pharmacy_id, item.medicine_id, item.quantity, f'{quantize_money(item.unit_price):.2f}')
        for item in cart_items
        if item.quantity >= 1
    )
    payload = '|'.join(f'{p}:{m}:{q}:{price}' for p, m, q, price in lines)
    return hashlib.sha256(payload.encode('utf-8')).hexdigest()
