import logging

from django.db.models import Count, OuterRef, Q, Subquery
from rest_framework import permissions, serializers, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView

from .models import Medicine, Pharmacy, PharmacyInventory
from .pagination import LargeResultsSetPagination, StandardResultsSetPagination
from .permissions import CatalogueWritePermission, IsPharmacyOwnerOrStaff, IsPharmacyUser, get_owned_pharmacy
from .search import MIN_QUERY_LENGTH, distance_km, match_medicines, parse_coordinates, sort_by_distance
from .serializers import (
    MedicineSerializer,
    PharmacyCreateSerializer,
    PharmacyInventorySerializer,
    PharmacySerializer,
)

logger = logging.getLogger(__name__)


def in_stock_listings():
    return PharmacyInventory.objects.filter(
        stock__gt=0,
        availability=True,
        pharmacy__status=Pharmacy.Status.APPROVED,
    )


class PharmacyViewSet(viewsets.ModelViewSet):
    """
    Pharmacies: public listing of approved pharmacies, registration by a
    pharmacy account, owner edits and admin approval.
    """
    pagination_class = StandardResultsSetPagination
    lookup_value_regex = r'\d+'

    def get_serializer_class(self):
        if self.action == 'create':
            return PharmacyCreateSerializer
        return PharmacySerializer

    def get_permissions(self):
        if self.action in ('list', 'retrieve', 'inventory'):
            return [permissions.AllowAny()]
        if self.action in ('approve', 'reject'):
            return [permissions.IsAdminUser()]
        if self.action == 'create':
            return [permissions.IsAuthenticated()]
        return [permissions.IsAuthenticated(), IsPharmacyOwnerOrStaff()]

    def get_queryset(self):
        """
        Non-staff callers only see approved pharmacies, plus their own.

        `medicine_id` keeps the pharmacies holding that medicine in stock and
        annotates its price and stock; `lat`/`lon` orders the list by distance.
        """
        user = self.request.user
        queryset = Pharmacy.objects.all()
        if not user.is_staff:
            visible = Q(status=Pharmacy.Status.APPROVED)
            if user.is_authenticated:
                visible |= Q(owner=user)
            queryset = queryset.filter(visible)

        if self.action != 'list':
            return queryset

        medicine_id = self.request.query_params.get('medicine_id')
        if medicine_id:
            try:
                medicine_id = int(medicine_id)
            except (ValueError, TypeError):
                raise serializers.ValidationError({'error': 'Invalid medicine identifier'})
            listing = PharmacyInventory.objects.filter(pharmacy=OuterRef('pk'), medicine_id=medicine_id)
            queryset = queryset.filter(
                inventory__medicine_id=medicine_id,
                inventory__stock__gt=0,
                inventory__availability=True,
            ).annotate(
                medicine_price=Subquery(listing.values('price')[:1]),
                medicine_stock=Subquery(listing.values('stock')[:1]),
            )

        origin = parse_coordinates(
            self.request.query_params.get('lat'),
            self.request.query_params.get('lon'),
        )
        if origin:
            return sort_by_distance(queryset, origin)
        return queryset

    def perform_create(self, serializer):
        user = self.request.user
        if get_owned_pharmacy(user) is not None:
            raise serializers.ValidationError({'error': 'This account already has a registered pharmacy.'})
        pharmacy = serializer.save(owner=user, status=Pharmacy.Status.PENDING)
        logger.info(f"Pharmacy {pharmacy.id} registered by user {user.id}, awaiting approval")

    @action(detail=True, methods=['get'])
    def inventory(self, request, pk=None):
        pharmacy = self.get_object()
        queryset = PharmacyInventory.objects.filter(pharmacy=pharmacy).select_related('medicine', 'pharmacy')
        serializer = PharmacyInventorySerializer(queryset, many=True)
        return Response(serializer.data)

    @action(detail=True, methods=['post'])
    def approve(self, request, pk=None):
        return self._set_status(Pharmacy.Status.APPROVED)

    @action(detail=True, methods=['post'])
    def reject(self, request, pk=None):
        return self._set_status(Pharmacy.Status.REJECTED)

    def _set_status(self, new_status):
        pharmacy = self.get_object()
        pharmacy.status = new_status
        pharmacy.save(update_fields=['status', 'updated_at'])
        logger.info(f"Pharmacy {pharmacy.id} marked {new_status} by {self.request.user}")
        return Response(PharmacySerializer(pharmacy).data)


class MedicineViewSet(viewsets.ModelViewSet):
    serializer_class = MedicineSerializer
    pagination_class = LargeResultsSetPagination
    permission_classes = [CatalogueWritePermission]
    lookup_value_regex = r'\d+'

    def get_queryset(self):
        queryset = Medicine.objects.all()
        category = self.request.query_params.get('category')
        if category:
            queryset = queryset.filter(category__iexact=category)
        return queryset


class PharmacyInventoryViewSet(viewsets.ModelViewSet):
    """
    Inventory listings. Anyone can browse them; a pharmacy account can only
    create and edit listings of its own pharmacy.
    """
    serializer_class = PharmacyInventorySerializer
    pagination_class = LargeResultsSetPagination
    lookup_value_regex = r'\d+'

    def get_permissions(self):
        if self.action in ('list', 'retrieve'):
            return [permissions.AllowAny()]
        return [permissions.IsAuthenticated(), IsPharmacyUser(), IsPharmacyOwnerOrStaff()]

    def get_queryset(self):
        queryset = PharmacyInventory.objects.select_related('pharmacy', 'medicine')
        pharmacy_id = self.request.query_params.get('pharmacy')
        if pharmacy_id:
            queryset = queryset.filter(pharmacy_id=pharmacy_id)
        return queryset

    def perform_create(self, serializer):
        pharmacy = get_owned_pharmacy(self.request.user)
        medicine = serializer.validated_data['medicine']
        if PharmacyInventory.objects.filter(pharmacy=pharmacy, medicine=medicine).exists():
            raise serializers.ValidationError({'error': f'{medicine.name} is already listed by this pharmacy.'})
        listing = serializer.save(pharmacy=pharmacy)
        logger.info(f"Pharmacy {pharmacy.id} listed {medicine.name} (stock {listing.stock}, price {listing.price})")


class FindPharmaciesByMedicinesView(APIView):
    """
    Find pharmacies for a list of medicines.

    Pharmacies holding all of them come first; when none does, the ones
    holding the most of them are returned instead.
    """
    permission_classes = [permissions.AllowAny]

    def post(self, request, *args, **kwargs):
        medicine_ids = request.data.get('medicine_ids', [])

        if not medicine_ids or not isinstance(medicine_ids, list):
            return Response(
                {'error': 'Please select at least one medicine'},
                status=status.HTTP_400_BAD_REQUEST
            )

        try:
            medicine_ids = sorted({int(mid) for mid in medicine_ids})
        except (ValueError, TypeError):
            return Response(
                {'error': 'Invalid medicine identifiers'},
                status=status.HTTP_400_BAD_REQUEST
            )

        candidates = Pharmacy.objects.filter(
            status=Pharmacy.Status.APPROVED,
            inventory__medicine_id__in=medicine_ids,
            inventory__stock__gt=0,
            inventory__availability=True,
        ).annotate(
            match_count=Count('inventory__medicine_id', distinct=True)
        )

        complete = candidates.filter(match_count=len(medicine_ids))
        pharmacies = list(complete if complete.exists() else candidates.order_by('-match_count', 'name'))

        if not pharmacies:
            logger.info(f"No pharmacy found for medicines {medicine_ids}")
            return Response(
                {'message': 'No pharmacy has these medicines in stock', 'results': []},
                status=status.HTTP_200_OK
            )

        listings = PharmacyInventory.objects.filter(
            pharmacy__in=pharmacies,
            medicine_id__in=medicine_ids,
        ).select_related('medicine', 'pharmacy')

        response_data = []
        for pharmacy in pharmacies:
            data = PharmacySerializer(pharmacy).data
            data['match_count'] = pharmacy.match_count
            data['total_medicines_in_search'] = len(medicine_ids)
            data['medicines'] = PharmacyInventorySerializer(
                [listing for listing in listings if listing.pharmacy_id == pharmacy.id],
                many=True
            ).data
            response_data.append(data)

        logger.info(f"Found {len(response_data)} pharmacies for {len(medicine_ids)} medicines")
        return Response(response_data, status=status.HTTP_200_OK)


class MedicineSearchView(APIView):
    """
    GET /api/search/?query=<name>[&lat=..&lon=..]

    Matches medicine name, generic name or brand; a misspelled query falls back
    to fuzzy matching. Only medicines with an in-stock listing at an approved
    pharmacy are returned, each with the pharmacies selling it.
    """
    permission_classes = [permissions.AllowAny]

    def get(self, request, *args, **kwargs):
        query = (request.query_params.get('query') or '').strip()
        if len(query) < MIN_QUERY_LENGTH:
            return Response(
                {'error': f'Search query must be at least {MIN_QUERY_LENGTH} characters long'},
                status=status.HTTP_400_BAD_REQUEST
            )

        available = Medicine.objects.filter(inventory__in=in_stock_listings()).distinct()
        direct = list(available.filter(
            Q(name__icontains=query) | Q(generic_name__icontains=query) | Q(brand__icontains=query)
        ))
        if direct:
            medicines = direct
        else:
            medicines = [medicine for medicine, _score in match_medicines(query, available)]

        origin = parse_coordinates(request.query_params.get('lat'), request.query_params.get('lon'))
        listings = in_stock_listings().filter(medicine__in=medicines).select_related('pharmacy')

        results = []
        for medicine in medicines:
            pharmacies = []
            for listing in listings:
                if listing.medicine_id != medicine.id:
                    continue
                pharmacy = listing.pharmacy
                distance = distance_km(origin, pharmacy) if origin else None
                pharmacies.append({
                    'id': pharmacy.id,
                    'name': pharmacy.name,
                    'address': pharmacy.address,
                    'phone': pharmacy.phone,
                    'latitude': pharmacy.latitude,
                    'longitude': pharmacy.longitude,
                    'price': f'{listing.price:.2f}',
                    'stock': listing.stock,
                    'inventory_id': listing.id,
                    'distance_km': round(distance, 2) if distance is not None else None,
                })
            if origin:
                pharmacies.sort(key=lambda p: (p['distance_km'] is None, p['distance_km'] or 0))

            data = MedicineSerializer(medicine).data
            data['pharmacies_count'] = len(pharmacies)
            data['pharmacies'] = pharmacies
            results.append(data)

        logger.info(f"Search '{query}': {len(results)} medicine(s)")
        return Response({'query': query, 'count': len(results), 'results': results})
