from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import (
    CartViewSet,
    DeliveryViewSet,
    PaymentCallbackView,
    PaymentStatusView,
    PharmacyStatsView,
    ReservationViewSet,
)

router = DefaultRouter()
router.register(r'cart', CartViewSet, basename='cart')
router.register(r'reservations', ReservationViewSet, basename='reservation')
router.register(r'deliveries', DeliveryViewSet, basename='delivery')

urlpatterns = [
    path('payment/callback/', PaymentCallbackView.as_view(), name='payment-callback'),
    path('payment/<str:transaction_id>/status/', PaymentStatusView.as_view(), name='payment-status'),
    path('pharmacy/stats/', PharmacyStatsView.as_view(), name='pharmacy-stats'),
] + router.urls
