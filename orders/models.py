from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models

from pharmacies.models import Medicine, Pharmacy

ZERO = Decimal('0.00')


class DeliveryType(models.TextChoices):
    PICKUP = 'pickup', 'Pickup'
    DELIVERY = 'delivery', 'Home delivery'


class OrderStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    ACCEPTED = 'accepted', 'Accepted'
    REJECTED = 'rejected', 'Rejected'
    DELIVERED = 'delivered', 'Delivered'


class DeliveryStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    OUT_FOR_DELIVERY = 'out_for_delivery', 'Out for delivery'
    DELIVERED = 'delivered', 'Delivered'


class PaymentOutcome(models.TextChoices):
    PENDING = 'pending', 'Pending'
    SUCCESS = 'success', 'Success'
    FAILED = 'failed', 'Failed'
    CANCELLED = 'cancelled', 'Cancelled'


class CartItem(models.Model):
    customer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='cart_items')
    pharmacy = models.ForeignKey(Pharmacy, on_delete=models.CASCADE, related_name='cart_items')
    medicine = models.ForeignKey(Medicine, on_delete=models.CASCADE, related_name='cart_items')
    quantity = models.PositiveIntegerField(default=1)
    # Listing price when the item was added; checkout never re-reads the live price
    unit_price = models.DecimalField(max_digits=10, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(fields=['customer', 'pharmacy', 'medicine'], name='unique_cart_line'),
            models.CheckConstraint(condition=models.Q(quantity__gte=1), name='cart_quantity_positive'),
        ]

    def __str__(self):
        return f"{self.quantity} x {self.medicine.name} from {self.pharmacy.name}"

    @property
    def line_total(self):
        return self.unit_price * self.quantity


class PaymentSession(models.Model):
    """
    One checkout attempt, from the gateway redirect to its terminal outcome.

    The totals and `cart_version` are a snapshot of the cart at checkout-init;
    the gateway callback is only honoured against that same cart content.
    """

    transaction_id = models.CharField(max_length=64, unique=True)
    customer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='payment_sessions')
    delivery_type = models.CharField(max_length=16, choices=DeliveryType.choices)
    delivery_address = models.TextField(blank=True, default='')
    medicine_total = models.DecimalField(max_digits=12, decimal_places=2)
    delivery_charge = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    platform_fee = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    grand_total = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3)
    cart_version = models.CharField(max_length=64)
    gateway_session_id = models.CharField(max_length=255, blank=True, default='')
    redirect_url = models.URLField(max_length=1024, blank=True, default='')
    outcome = models.CharField(max_length=16, choices=PaymentOutcome.choices, default=PaymentOutcome.PENDING, db_index=True)
    failure_reason = models.TextField(blank=True, default='')
    # Recorded callback result, replayed verbatim on duplicate callbacks
    result = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    resolved_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.transaction_id} ({self.outcome})"

    @property
    def is_terminal(self):
        return self.outcome != PaymentOutcome.PENDING


class Order(models.Model):
    """
    A reservation placed with one pharmacy: every cart line of that pharmacy
    from one checkout. Orders of the same checkout share `transaction_id`.
    """

    customer = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='orders')
    pharmacy = models.ForeignKey(Pharmacy, on_delete=models.PROTECT, related_name='orders')
    payment_session = models.ForeignKey(
        PaymentSession,
        on_delete=models.SET_NULL,
        related_name='orders',
        blank=True,
        null=True,
    )
    transaction_id = models.CharField(max_length=64, db_index=True)
    delivery_type = models.CharField(max_length=16, choices=DeliveryType.choices, default=DeliveryType.PICKUP)
    delivery_address = models.TextField(blank=True, default='')
    status = models.CharField(max_length=16, choices=OrderStatus.choices, default=OrderStatus.PENDING, db_index=True)
    # Medicine value only, fixed at creation from the snapshot prices
    total_price = models.DecimalField(max_digits=12, decimal_places=2)
    delivery_charge = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    platform_fee = models.DecimalField(max_digits=12, decimal_places=2, default=ZERO)
    paid_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        constraints = [
            models.UniqueConstraint(fields=['payment_session', 'pharmacy'], name='one_order_per_pharmacy_per_checkout'),
        ]

    def __str__(self):
        return f"Order {self.id} at {self.pharmacy.name}"

    def clean(self):
        if self.delivery_type == DeliveryType.DELIVERY and not self.delivery_address.strip():
            raise ValidationError({'delivery_address': 'A delivery address is required for home delivery.'})
        if self.delivery_type == DeliveryType.PICKUP and self.delivery_address:
            raise ValidationError({'delivery_address': 'Pickup orders do not take a delivery address.'})

    @property
    def is_delivery(self):
        return self.delivery_type == DeliveryType.DELIVERY


class OrderItem(models.Model):
    order = models.ForeignKey(Order, related_name='items', on_delete=models.CASCADE)
    medicine = models.ForeignKey(Medicine, on_delete=models.PROTECT, related_name='order_items')
    quantity = models.PositiveIntegerField(default=1)
    price_at_order = models.DecimalField(max_digits=10, decimal_places=2)

    class Meta:
        ordering = ['id']

    def __str__(self):
        return f"{self.quantity} x {self.medicine.name} for Order {self.order_id}"

    @property
    def line_total(self):
        return self.price_at_order * self.quantity


class Delivery(models.Model):
    order = models.OneToOneField(Order, on_delete=models.CASCADE, related_name='delivery')
    address = models.TextField()
    delivery_person = models.CharField(max_length=255, blank=True, default='')
    status = models.CharField(max_length=20, choices=DeliveryStatus.choices, default=DeliveryStatus.PENDING, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at', '-id']
        verbose_name_plural = 'Deliveries'

    def __str__(self):
        return f"Delivery {self.id} for Order {self.order_id} ({self.status})"

    @property
    def pharmacy(self):
        return self.order.pharmacy
