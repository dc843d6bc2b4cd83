"""
Safe seed command: does NOT delete existing data.
Usage: python manage.py seed_data_safe
"""
from datetime import time
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction

from pharmacies.models import Medicine, Pharmacy, PharmacyInventory


class Command(BaseCommand):
    help = 'Seeds the catalogue ONLY if empty (safe for production).'

    def handle(self, *args, **options):
        self.stdout.write(self.style.SUCCESS('Checking database...'))

        medicine_count = Medicine.objects.count()
        pharmacy_count = Pharmacy.objects.count()

        if medicine_count > 0 or pharmacy_count > 0:
            self.stdout.write(self.style.WARNING(
                f'Database already contains data ({medicine_count} medicines, {pharmacy_count} pharmacies).'
            ))
            self.stdout.write(self.style.WARNING('Seeding aborted to prevent data loss.'))
            return

        self.stdout.write(self.style.SUCCESS('Database is empty. Starting safe seed...'))

        with transaction.atomic():
            pharmacies = self.seed_pharmacies()
            medicines = self.seed_medicines()
            listings = self.seed_inventory(pharmacies, medicines)

        self.stdout.write(self.style.SUCCESS(
            f'Created {len(pharmacies)} pharmacies, {len(medicines)} medicines and {listings} inventory listings.'
        ))
        self.stdout.write(self.style.SUCCESS('Safe seeding complete!'))

    def seed_pharmacies(self):
        pharmacies_data = [
            ('City Care Pharmacy', 'Dhanmondi 27, Dhaka 1209, Bangladesh', '+880-1711-123456', '23.7465', '90.3826', '4.5'),
            ('Green Life Pharmacy', 'Gulshan 2, Dhaka 1212, Bangladesh', '+880-1722-234567', '23.7925', '90.4078', '4.2'),
            ('MediPlus Pharmacy', 'Uttara Sector 3, Dhaka 1230, Bangladesh', '+880-1733-345678', '23.8759', '90.3795', '4.0'),
            ('Health First Pharmacy', 'Mirpur 10, Dhaka 1216, Bangladesh', '+880-1744-456789', '23.8067', '90.3685', '4.3'),
        ]
        pharmacies = {}
        for name, address, phone, latitude, longitude, rating in pharmacies_data:
            pharmacies[name] = Pharmacy.objects.create(
                name=name,
                address=address,
                phone=phone,
                opening_time=time(8, 0),
                closing_time=time(22, 0),
                latitude=Decimal(latitude),
                longitude=Decimal(longitude),
                rating=Decimal(rating),
                status=Pharmacy.Status.APPROVED,
            )
        return pharmacies

    def seed_medicines(self):
        medicines_data = [
            ('Paracip 500', 'Paracetamol', 'Cipla', 'over-the-counter', 'tablet', '500mg', False),
            ('Panadol', 'Paracetamol', 'GSK', 'over-the-counter', 'tablet', '500mg', False),
            ('Amoxil 250', 'Amoxicillin', 'GSK', 'prescription', 'capsule', '250mg', True),
            ('Augmentin', 'Amoxicillin + Clavulanic Acid', 'GSK', 'prescription', 'tablet', '625mg', True),
            ('Aspirin Cardio', 'Acetylsalicylic Acid', 'Bayer', 'prescription', 'tablet', '75mg', True),
            ('Disprin', 'Acetylsalicylic Acid', 'Reckitt Benckiser', 'over-the-counter', 'tablet', '325mg', False),
            ('Zyrtec', 'Cetirizine', 'Johnson & Johnson', 'over-the-counter', 'tablet', '10mg', False),
            ('Seclo 20', 'Omeprazole', 'Square', 'over-the-counter', 'capsule', '20mg', False),
        ]
        medicines = {}
        for name, generic_name, brand, category, dosage_form, strength, requires_prescription in medicines_data:
            medicines[name] = Medicine.objects.create(
                name=name,
                generic_name=generic_name,
                brand=brand,
                category=category,
                dosage_form=dosage_form,
                strength=strength,
                requires_prescription=requires_prescription,
            )
        return medicines

    def seed_inventory(self, pharmacies, medicines):
        # (pharmacy, medicine, stock, price)
        inventory_data = [
            ('City Care Pharmacy', 'Paracip 500', 120, '10.00'),
            ('City Care Pharmacy', 'Amoxil 250', 40, '35.00'),
            ('City Care Pharmacy', 'Zyrtec', 60, '5.00'),
            ('City Care Pharmacy', 'Seclo 20', 80, '7.00'),
            ('Green Life Pharmacy', 'Panadol', 90, '12.00'),
            ('Green Life Pharmacy', 'Augmentin', 25, '55.00'),
            ('Green Life Pharmacy', 'Disprin', 50, '4.50'),
            ('MediPlus Pharmacy', 'Paracip 500', 30, '10.50'),
            ('MediPlus Pharmacy', 'Aspirin Cardio', 45, '6.00'),
            ('MediPlus Pharmacy', 'Zyrtec', 15, '5.50'),
            ('Health First Pharmacy', 'Panadol', 70, '11.50'),
            ('Health First Pharmacy', 'Seclo 20', 0, '7.50'),
        ]
        PharmacyInventory.objects.bulk_create([
            PharmacyInventory(
                pharmacy=pharmacies[pharmacy_name],
                medicine=medicines[medicine_name],
                stock=stock,
                price=Decimal(price),
            )
            for pharmacy_name, medicine_name, stock, price in inventory_data
        ])
        return len(inventory_data)
