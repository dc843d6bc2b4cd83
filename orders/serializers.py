from rest_framework import serializers

from .models import CartItem, Delivery, DeliveryStatus, DeliveryType, Order, OrderItem, OrderStatus, PaymentSession


class CartItemSerializer(serializers.ModelSerializer):
    pharmacy_id = serializers.IntegerField(read_only=True)
    medicine_id = serializers.IntegerField(read_only=True)
    pharmacy_name = serializers.CharField(source='pharmacy.name', read_only=True)
    medicine_name = serializers.CharField(source='medicine.name', read_only=True)
    line_total = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = CartItem
        fields = [
            'id', 'pharmacy_id', 'pharmacy_name', 'medicine_id', 'medicine_name',
            'quantity', 'unit_price', 'line_total', 'created_at'
        ]
        read_only_fields = ['unit_price', 'created_at']


class CartAddSerializer(serializers.Serializer):
    pharmacy_id = serializers.IntegerField()
    medicine_id = serializers.IntegerField()
    quantity = serializers.IntegerField(min_value=1, default=1)


class CartQuantitySerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=1)


class PharmacyGroupSerializer(serializers.Serializer):
    """Read-only view of one pharmacy group of the cart."""
    pharmacy_id = serializers.IntegerField()
    pharmacy_name = serializers.SerializerMethodField()
    subtotal = serializers.DecimalField(max_digits=12, decimal_places=2)
    quantity = serializers.IntegerField()
    items = CartItemSerializer(many=True)

    def get_pharmacy_name(self, group):
        pharmacy = group.pharmacy
        return pharmacy.name if pharmacy else None


class CheckoutSerializer(serializers.Serializer):
    delivery_type = serializers.ChoiceField(choices=DeliveryType.choices)
    delivery_address = serializers.CharField(required=False, allow_blank=True, default='')


class OrderItemSerializer(serializers.ModelSerializer):
    medicine_name = serializers.CharField(source='medicine.name', read_only=True)
    line_total = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)

    class Meta:
        model = OrderItem
        fields = ['id', 'medicine', 'medicine_name', 'quantity', 'price_at_order', 'line_total']


class DeliverySerializer(serializers.ModelSerializer):
    reservation_id = serializers.IntegerField(source='order_id', read_only=True)
    pharmacy_name = serializers.CharField(source='order.pharmacy.name', read_only=True)
    customer = serializers.CharField(source='order.customer.get_username', read_only=True)

    class Meta:
        model = Delivery
        fields = [
            'id', 'reservation_id', 'pharmacy_name', 'customer', 'address',
            'delivery_person', 'status', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class OrderSerializer(serializers.ModelSerializer):
    items = OrderItemSerializer(many=True, read_only=True)
    pharmacy_name = serializers.CharField(source='pharmacy.name', read_only=True)
    customer = serializers.CharField(source='customer.get_username', read_only=True)
    delivery = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            'id', 'transaction_id', 'customer', 'pharmacy', 'pharmacy_name', 'delivery_type',
            'delivery_address', 'status', 'total_price', 'delivery_charge', 'platform_fee',
            'items', 'delivery', 'paid_at', 'created_at', 'updated_at'
        ]
        read_only_fields = fields

    def get_delivery(self, obj):
        delivery = getattr(obj, 'delivery', None)
        return DeliverySerializer(delivery).data if delivery else None


class OrderStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=OrderStatus.choices)


class DeliveryCreateSerializer(serializers.Serializer):
    reservation_id = serializers.IntegerField()
    address = serializers.CharField(required=False, allow_blank=True, default='')
    delivery_person = serializers.CharField(required=False, allow_blank=True, default='')


class DeliveryStatusSerializer(serializers.Serializer):
    delivery_status = serializers.ChoiceField(choices=DeliveryStatus.choices, required=False)
    delivery_person = serializers.CharField(required=False, allow_blank=True)

    def validate(self, attrs):
        if 'delivery_status' not in attrs and 'delivery_person' not in attrs:
            raise serializers.ValidationError('Provide delivery_status or delivery_person.')
        return attrs


class PaymentSessionSerializer(serializers.ModelSerializer):
    order_ids = serializers.SerializerMethodField()
    failures = serializers.SerializerMethodField()

    class Meta:
        model = PaymentSession
        fields = [
            'transaction_id', 'outcome', 'failure_reason', 'delivery_type', 'medicine_total',
            'delivery_charge', 'platform_fee', 'grand_total', 'currency', 'order_ids',
            'failures', 'created_at', 'resolved_at'
        ]
        read_only_fields = fields

    def get_order_ids(self, obj):
        return obj.result.get('order_ids', [])

    def get_failures(self, obj):
        return obj.result.get('failures', [])
