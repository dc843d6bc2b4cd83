from django.contrib import admin

from .models import CartItem, Delivery, Order, OrderItem, PaymentSession


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ['medicine', 'quantity', 'price_at_order']
    can_delete = False


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ['id', 'customer', 'pharmacy', 'delivery_type', 'status', 'total_price', 'paid_at', 'created_at']
    list_filter = ['status', 'delivery_type']
    search_fields = ['transaction_id', 'customer__username', 'pharmacy__name']
    list_select_related = ['customer', 'pharmacy']
    readonly_fields = ['transaction_id', 'payment_session', 'total_price', 'delivery_charge', 'platform_fee', 'paid_at']
    inlines = [OrderItemInline]


@admin.register(Delivery)
class DeliveryAdmin(admin.ModelAdmin):
    list_display = ['id', 'order', 'status', 'delivery_person', 'updated_at']
    list_filter = ['status']
    search_fields = ['address', 'delivery_person']


@admin.register(PaymentSession)
class PaymentSessionAdmin(admin.ModelAdmin):
    list_display = ['transaction_id', 'customer', 'outcome', 'grand_total', 'currency', 'created_at', 'resolved_at']
    list_filter = ['outcome', 'delivery_type']
    search_fields = ['transaction_id', 'gateway_session_id', 'customer__username']
    readonly_fields = ['cart_version', 'result']


@admin.register(CartItem)
class CartItemAdmin(admin.ModelAdmin):
    list_display = ['customer', 'medicine', 'pharmacy', 'quantity', 'unit_price']
    list_select_related = ['customer', 'medicine', 'pharmacy']
