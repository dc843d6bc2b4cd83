from django.urls import path
from rest_framework.routers import DefaultRouter

from .views import (
    FindPharmaciesByMedicinesView,
    MedicineSearchView,
    MedicineViewSet,
    PharmacyInventoryViewSet,
    PharmacyViewSet,
)

router = DefaultRouter()
router.register(r'pharmacies', PharmacyViewSet, basename='pharmacy')
router.register(r'medicines', MedicineViewSet, basename='medicine')
router.register(r'inventory', PharmacyInventoryViewSet, basename='inventory')

urlpatterns = [
    path('pharmacies/find-by-medicines/', FindPharmaciesByMedicinesView.as_view(), name='find-pharmacies-by-medicines'),
    path('search/', MedicineSearchView.as_view(), name='medicine-search'),
] + router.urls
