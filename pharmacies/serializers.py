import logging

from django.utils import timezone
from geopy.exc import GeocoderServiceError
from geopy.geocoders import Nominatim
from rest_framework import serializers

from .models import Medicine, Pharmacy, PharmacyInventory

logger = logging.getLogger(__name__)


class PharmacyCreateSerializer(serializers.ModelSerializer):
    class Meta:
        model = Pharmacy
        fields = [
            'id', 'name', 'address', 'phone', 'email', 'opening_time', 'closing_time',
            'latitude', 'longitude', 'status'
        ]
        read_only_fields = ['id', 'latitude', 'longitude', 'status']

    def create(self, validated_data):
        # Geocode the address; registration still succeeds without coordinates
        geolocator = Nominatim(user_agent="medlink-app")
        try:
            location = geolocator.geocode(validated_data['address'], timeout=5)
            if location:
                validated_data['latitude'] = round(location.latitude, 8)
                validated_data['longitude'] = round(location.longitude, 8)
        except GeocoderServiceError as e:
            logger.warning(f"Geocoding failed for '{validated_data['address']}': {e}")

        return Pharmacy.objects.create(**validated_data)


class PharmacySerializer(serializers.ModelSerializer):
    distance_km = serializers.SerializerMethodField()
    is_open = serializers.SerializerMethodField()
    opening_time = serializers.TimeField(format='%H:%M', required=False, allow_null=True)
    closing_time = serializers.TimeField(format='%H:%M', required=False, allow_null=True)
    medicine_price = serializers.SerializerMethodField()
    medicine_stock = serializers.SerializerMethodField()

    class Meta:
        model = Pharmacy
        fields = [
            'id', 'name', 'address', 'phone', 'email', 'opening_time', 'closing_time',
            'is_open', 'latitude', 'longitude', 'rating', 'status', 'owner',
            'distance_km', 'medicine_price', 'medicine_stock'
        ]
        read_only_fields = ['rating', 'status', 'owner']

    def get_is_open(self, obj):
        if not obj.opening_time or not obj.closing_time:
            return None

        current_time = timezone.localtime(timezone.now()).time()

        # Overnight opening hours, e.g. 22:00 to 06:00
        if obj.opening_time > obj.closing_time:
            return current_time >= obj.opening_time or current_time <= obj.closing_time
        return obj.opening_time <= current_time <= obj.closing_time

    def get_distance_km(self, obj):
        # Annotated by the view when the caller sent a location
        distance = getattr(obj, 'distance_km', None)
        return round(distance, 2) if distance is not None else None

    def get_medicine_price(self, obj):
        price = getattr(obj, 'medicine_price', None)
        return f'{price:.2f}' if price is not None else None

    def get_medicine_stock(self, obj):
        return getattr(obj, 'medicine_stock', None)


class MedicineSerializer(serializers.ModelSerializer):
    class Meta:
        model = Medicine
        fields = [
            'id', 'name', 'generic_name', 'brand', 'category', 'dosage_form',
            'strength', 'description', 'requires_prescription'
        ]


class PharmacyInventorySerializer(serializers.ModelSerializer):
    medicine_name = serializers.CharField(source='medicine.name', read_only=True)
    generic_name = serializers.CharField(source='medicine.generic_name', read_only=True)
    brand = serializers.CharField(source='medicine.brand', read_only=True)
    category = serializers.CharField(source='medicine.category', read_only=True)
    pharmacy_name = serializers.CharField(source='pharmacy.name', read_only=True)

    class Meta:
        model = PharmacyInventory
        fields = [
            'id', 'pharmacy', 'pharmacy_name', 'medicine', 'medicine_name', 'generic_name',
            'brand', 'category', 'stock', 'price', 'availability'
        ]
        read_only_fields = ['pharmacy']

    def validate_price(self, value):
        if value <= 0:
            raise serializers.ValidationError('Price must be greater than zero.')
        return value

    def validate_medicine(self, value):
        # The medicine of an existing listing cannot be swapped
        if self.instance is not None and value != self.instance.medicine:
            raise serializers.ValidationError('The medicine of a listing cannot be changed.')
        return value
