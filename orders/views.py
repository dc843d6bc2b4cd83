import logging

from django.db.models import Q
from django.shortcuts import get_object_or_404
from rest_framework import mixins, permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.parsers import FormParser, JSONParser
from rest_framework.response import Response
from rest_framework.views import APIView

from pharmacies.pagination import StandardResultsSetPagination
from pharmacies.permissions import IsPharmacyUser, get_owned_pharmacy

from . import services
from .cart import compute_order_totals, group_by_pharmacy
from .gateway import verify_callback_signature
from .models import Delivery, DeliveryType, Order, PaymentSession
from .serializers import (
    CartAddSerializer,
    CartItemSerializer,
    CartQuantitySerializer,
    CheckoutSerializer,
    DeliveryCreateSerializer,
    DeliverySerializer,
    DeliveryStatusSerializer,
    OrderSerializer,
    OrderStatusSerializer,
    PaymentSessionSerializer,
    PharmacyGroupSerializer,
)

logger = logging.getLogger(__name__)


def cart_payload(items, delivery_type):
    groups = group_by_pharmacy(items)
    totals = compute_order_totals(groups, delivery_type)
    return {
        'delivery_type': delivery_type,
        'groups': PharmacyGroupSerializer(groups, many=True).data,
        'totals': totals.as_dict(),
    }


class CartViewSet(mixins.DestroyModelMixin, viewsets.GenericViewSet):
    """
    The caller's cart.

    GET returns the lines grouped by pharmacy with pickup totals;
    `summary/?delivery_type=` prices the cart for either option.
    """
    serializer_class = CartItemSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_value_regex = r'\d+'

    def get_queryset(self):
        return services.cart_items_for(self.request.user)

    def list(self, request, *args, **kwargs):
        items = list(self.get_queryset())
        data = cart_payload(items, DeliveryType.PICKUP)
        data['items'] = CartItemSerializer(items, many=True).data
        data['count'] = len(items)
        return Response(data)

    def create(self, request, *args, **kwargs):
        serializer = CartAddSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        item, created = services.add_to_cart(request.user, **serializer.validated_data)
        return Response(
            CartItemSerializer(item).data,
            status=status.HTTP_201_CREATED if created else status.HTTP_200_OK
        )

    def partial_update(self, request, *args, **kwargs):
        serializer = CartQuantitySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        item = services.update_cart_quantity(request.user, kwargs['pk'], serializer.validated_data['quantity'])
        return Response(CartItemSerializer(item).data)

    @action(detail=False, methods=['delete'])
    def clear(self, request):
        deleted, _ = self.get_queryset().delete()
        logger.info(f"User {request.user.id} cleared their cart ({deleted} line(s))")
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=False, methods=['get'])
    def summary(self, request):
        delivery_type = request.query_params.get('delivery_type', DeliveryType.PICKUP)
        if delivery_type not in DeliveryType.values:
            return Response(
                {'error': 'Valid delivery type is required (pickup or delivery)'},
                status=status.HTTP_400_BAD_REQUEST
            )
        return Response(cart_payload(list(self.get_queryset()), delivery_type))

    @action(detail=False, methods=['post'], url_path='payment-init')
    def payment_init(self, request):
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        session = services.init_checkout(
            request.user,
            serializer.validated_data['delivery_type'],
            serializer.validated_data['delivery_address'],
        )
        return Response({
            'gateway_page_url': session.redirect_url,
            'transaction_id': session.transaction_id,
            'amount': f'{session.grand_total:.2f}',
        })


class PaymentCallbackView(APIView):
    """
    Gateway callback: ?transaction_id&outcome&signature[&gateway_session_id],
    as query parameters or form fields, which is how the signed outcome URLs
    of `PaymentGatewayClient` come back. Unsigned callbacks are refused
    before anything is looked up; a success also needs the gateway's `val_id`.
    """
    authentication_classes = []
    parser_classes = [JSONParser, FormParser]
    permission_classes = [permissions.AllowAny]

    def get(self, request, *args, **kwargs):
        params = request.query_params.copy()
        return self.handle_callback(params)

    def post(self, request, *args, **kwargs):
        params = request.query_params.copy()
        params.update(request.data)
        return self.handle_callback(params)

    def handle_callback(self, params):
        transaction_id = params.get('transaction_id', '')
        outcome = params.get('outcome', '')
        gateway_session_id = params.get('gateway_session_id', '')

        if not transaction_id or not outcome:
            return Response(
                {'error': 'Missing transaction_id or outcome', 'code': 'validation_error'},
                status=status.HTTP_400_BAD_REQUEST
            )
        if not verify_callback_signature(transaction_id, outcome, gateway_session_id, params.get('signature')):
            logger.warning(f"Rejected unsigned payment callback for {transaction_id}")
            return Response(
                {'error': 'Invalid callback signature', 'code': 'invalid_signature'},
                status=status.HTTP_401_UNAUTHORIZED
            )

        result = services.handle_gateway_callback(
            transaction_id,
            outcome,
            gateway_session_id or None,
            validation_id=params.get('val_id') or None,
        )
        return Response({
            'transaction_id': result.session.transaction_id,
            'outcome': result.session.outcome,
            'order_ids': [order.id for order in result.orders],
            'failures': result.failures,
            'replayed': result.replayed,
        })


class PaymentStatusView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request, transaction_id, *args, **kwargs):
        session = get_object_or_404(PaymentSession, transaction_id=transaction_id, customer=request.user)
        return Response(PaymentSessionSerializer(session).data)


class ReservationViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Reservations visible to the caller: the ones they placed, and the ones
    received by their pharmacy. Filter with ?status=.
    """
    serializer_class = OrderSerializer
    permission_classes = [permissions.IsAuthenticated]
    pagination_class = StandardResultsSetPagination
    lookup_value_regex = r'\d+'

    def get_queryset(self):
        user = self.request.user
        queryset = Order.objects.select_related('pharmacy', 'customer', 'delivery').prefetch_related('items__medicine')
        if not user.is_staff:
            queryset = queryset.filter(Q(customer=user) | Q(pharmacy__owner=user))
        status_filter = self.request.query_params.get('status')
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        return queryset

    @action(detail=True, methods=['put'], url_path='status')
    def update_status(self, request, pk=None):
        serializer = OrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = services.update_order_status(pk, request.user, serializer.validated_data['status'])
        return Response(OrderSerializer(order).data)


class DeliveryViewSet(mixins.CreateModelMixin, viewsets.ReadOnlyModelViewSet):
    serializer_class = DeliverySerializer
    pagination_class = StandardResultsSetPagination
    lookup_value_regex = r'\d+'

    def get_permissions(self):
        if self.action in ('create', 'update_status'):
            return [permissions.IsAuthenticated(), IsPharmacyUser()]
        return [permissions.IsAuthenticated()]

    def get_queryset(self):
        user = self.request.user
        queryset = Delivery.objects.select_related('order', 'order__pharmacy', 'order__customer')
        if not user.is_staff:
            queryset = queryset.filter(Q(order__pharmacy__owner=user) | Q(order__customer=user))
        return queryset

    def create(self, request, *args, **kwargs):
        serializer = DeliveryCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        delivery = services.create_delivery(
            serializer.validated_data['reservation_id'],
            request.user,
            serializer.validated_data['address'],
            serializer.validated_data['delivery_person'],
        )
        return Response(DeliverySerializer(delivery).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=['put'], url_path='status')
    def update_status(self, request, pk=None):
        serializer = DeliveryStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        delivery = services.advance_delivery(
            pk,
            request.user,
            serializer.validated_data.get('delivery_status'),
            serializer.validated_data.get('delivery_person'),
        )
        return Response(DeliverySerializer(delivery).data)


class PharmacyStatsView(APIView):
    permission_classes = [permissions.IsAuthenticated, IsPharmacyUser]

    def get(self, request, *args, **kwargs):
        return Response(services.pharmacy_stats(get_owned_pharmacy(request.user)))
