# -*- coding: utf-8 -*-
from decimal import Decimal
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.test import TestCase
from geopy.exc import GeocoderTimedOut
from rest_framework import status
from rest_framework.test import APIClient

from .models import Medicine, Pharmacy, PharmacyInventory
from .search import adaptive_similarity_threshold, match_medicines, normalize_name, parse_coordinates

User = get_user_model()


def make_pharmacy(name, owner=None, status=Pharmacy.Status.APPROVED, latitude='23.7465', longitude='90.3826'):
    return Pharmacy.objects.create(
        name=name,
        address=f'{name} street, Dhaka',
        phone='+880-1711-000000',
        latitude=Decimal(latitude) if latitude else None,
        longitude=Decimal(longitude) if longitude else None,
        rating=Decimal('4.5'),
        owner=owner,
        status=status,
    )


class PharmacyAPITestCase(TestCase):
    """Tests for the pharmacy API"""

    def setUp(self):
        self.client = APIClient()
        self.owner = User.objects.create_user('citycare', 'owner@citycare.test', 'secret123')
        self.approved = make_pharmacy('City Care Pharmacy', owner=self.owner)
        self.pending = make_pharmacy('New Pharmacy', status=Pharmacy.Status.PENDING)

    def test_get_all_pharmacies(self):
        response = self.client.get('/api/pharmacies/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('results', response.data)
        self.assertEqual(response.data['total_pages'], 1)
        names = [p['name'] for p in response.data['results']]
        self.assertEqual(names, ['City Care Pharmacy'])

    def test_get_pharmacy_by_id(self):
        response = self.client.get(f'/api/pharmacies/{self.approved.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['name'], 'City Care Pharmacy')

    def test_pending_pharmacy_hidden_from_public(self):
        response = self.client.get(f'/api/pharmacies/{self.pending.id}/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_staff_sees_pending_pharmacies(self):
        admin = User.objects.create_user('admin', 'admin@medlink.test', 'secret123', is_staff=True)
        self.client.force_authenticate(admin)
        response = self.client.get('/api/pharmacies/')
        self.assertEqual(response.data['count'], 2)

    def test_sort_by_distance(self):
        far = make_pharmacy('Uttara Pharmacy', latitude='23.8759', longitude='90.3795')
        response = self.client.get('/api/pharmacies/?lat=23.8700&lon=90.3800')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        results = response.data['results']
        self.assertEqual(results[0]['id'], far.id)
        self.assertLess(results[0]['distance_km'], results[1]['distance_km'])

    @patch('pharmacies.serializers.Nominatim')
    def test_register_pharmacy_is_pending_and_geocoded(self, nominatim):
        nominatim.return_value.geocode.return_value.latitude = 23.7925
        nominatim.return_value.geocode.return_value.longitude = 90.4078
        user = User.objects.create_user('greenlife', 'owner@greenlife.test', 'secret123')
        self.client.force_authenticate(user)

        response = self.client.post('/api/pharmacies/', {
            'name': 'Green Life Pharmacy',
            'address': 'Gulshan 2, Dhaka',
            'phone': '+880-1722-234567',
        })

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        pharmacy = Pharmacy.objects.get(name='Green Life Pharmacy')
        self.assertEqual(pharmacy.owner, user)
        self.assertEqual(pharmacy.status, Pharmacy.Status.PENDING)
        self.assertEqual(pharmacy.latitude, Decimal('23.79250000'))

    @patch('pharmacies.serializers.Nominatim')
    def test_register_pharmacy_survives_geocoder_failure(self, nominatim):
        nominatim.return_value.geocode.side_effect = GeocoderTimedOut('timeout')
        user = User.objects.create_user('mediplus', 'owner@mediplus.test', 'secret123')
        self.client.force_authenticate(user)

        response = self.client.post('/api/pharmacies/', {'name': 'MediPlus', 'address': 'Uttara, Dhaka'})

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertIsNone(Pharmacy.objects.get(name='MediPlus').latitude)

    @patch('pharmacies.serializers.Nominatim')
    def test_one_pharmacy_per_account(self, nominatim):
        nominatim.return_value.geocode.return_value = None
        self.client.force_authenticate(self.owner)
        response = self.client.post('/api/pharmacies/', {'name': 'Second', 'address': 'Dhaka'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_admin_approves_pharmacy(self):
        admin = User.objects.create_user('admin', 'admin@medlink.test', 'secret123', is_staff=True)
        self.client.force_authenticate(admin)
        response = self.client.post(f'/api/pharmacies/{self.pending.id}/approve/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.pending.refresh_from_db()
        self.assertEqual(self.pending.status, Pharmacy.Status.APPROVED)

    def test_owner_cannot_approve(self):
        self.client.force_authenticate(self.owner)
        response = self.client.post(f'/api/pharmacies/{self.approved.id}/reject/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_only_owner_edits_pharmacy(self):
        other = User.objects.create_user('other', 'other@test.test', 'secret123')
        self.client.force_authenticate(other)
        response = self.client.patch(f'/api/pharmacies/{self.approved.id}/', {'phone': '123'})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.owner)
        response = self.client.patch(f'/api/pharmacies/{self.approved.id}/', {'phone': '123'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)


class MedicineAPITestCase(TestCase):
    """Tests for the medicine catalogue"""

    def setUp(self):
        self.client = APIClient()
        self.medicine = Medicine.objects.create(
            name='Panadol', generic_name='Paracetamol', brand='GSK',
            category='over-the-counter', strength='500mg'
        )

    def test_get_all_medicines(self):
        response = self.client.get('/api/medicines/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['results'][0]['name'], 'Panadol')

    def test_filter_by_category(self):
        Medicine.objects.create(name='Amoxil 250', generic_name='Amoxicillin', category='prescription')
        response = self.client.get('/api/medicines/?category=prescription')
        self.assertEqual([m['name'] for m in response.data['results']], ['Amoxil 250'])

    def test_customers_cannot_edit_catalogue(self):
        customer = User.objects.create_user('customer', 'c@test.test', 'secret123')
        self.client.force_authenticate(customer)
        response = self.client.post('/api/medicines/', {'name': 'Napa'})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class InventoryAPITestCase(TestCase):

    def setUp(self):
        self.client = APIClient()
        self.owner = User.objects.create_user('citycare', 'owner@citycare.test', 'secret123')
        self.pharmacy = make_pharmacy('City Care Pharmacy', owner=self.owner)
        self.other_owner = User.objects.create_user('greenlife', 'owner@greenlife.test', 'secret123')
        self.other_pharmacy = make_pharmacy('Green Life Pharmacy', owner=self.other_owner)
        self.medicine = Medicine.objects.create(name='Panadol', generic_name='Paracetamol')

    def test_owner_adds_listing_to_own_pharmacy(self):
        self.client.force_authenticate(self.owner)
        response = self.client.post('/api/inventory/', {
            'medicine': self.medicine.id, 'stock': 20, 'price': '12.00',
            'pharmacy': self.other_pharmacy.id,
        })
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        listing = PharmacyInventory.objects.get()
        self.assertEqual(listing.pharmacy, self.pharmacy)

    def test_duplicate_listing_rejected(self):
        PharmacyInventory.objects.create(pharmacy=self.pharmacy, medicine=self.medicine, stock=5, price='12.00')
        self.client.force_authenticate(self.owner)
        response = self.client.post('/api/inventory/', {'medicine': self.medicine.id, 'stock': 20, 'price': '12.00'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_price_must_be_positive(self):
        self.client.force_authenticate(self.owner)
        response = self.client.post('/api/inventory/', {'medicine': self.medicine.id, 'stock': 20, 'price': '0.00'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_cannot_edit_other_pharmacy_listing(self):
        listing = PharmacyInventory.objects.create(
            pharmacy=self.other_pharmacy, medicine=self.medicine, stock=5, price='12.00'
        )
        self.client.force_authenticate(self.owner)
        response = self.client.patch(f'/api/inventory/{listing.id}/', {'stock': 0})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_customer_cannot_add_listing(self):
        customer = User.objects.create_user('customer', 'c@test.test', 'secret123')
        self.client.force_authenticate(customer)
        response = self.client.post('/api/inventory/', {'medicine': self.medicine.id, 'stock': 1, 'price': '1.00'})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class PharmacyMedicineSearchTestCase(TestCase):
    """Tests for medicine search and pharmacy lookup by medicines"""

    def setUp(self):
        self.client = APIClient()
        self.pharmacy = make_pharmacy('City Care Pharmacy')
        self.pharmacy2 = make_pharmacy('Green Life Pharmacy', latitude='23.7925', longitude='90.4078')
        self.panadol = Medicine.objects.create(name='Panadol', generic_name='Paracetamol', brand='GSK')
        self.amoxil = Medicine.objects.create(name='Amoxil 250', generic_name='Amoxicillin', brand='GSK')
        self.zyrtec = Medicine.objects.create(name='Zyrtec', generic_name='Cetirizine', brand='Johnson & Johnson')
        PharmacyInventory.objects.create(pharmacy=self.pharmacy, medicine=self.panadol, stock=50, price='12.00')
        PharmacyInventory.objects.create(pharmacy=self.pharmacy, medicine=self.amoxil, stock=10, price='35.00')
        PharmacyInventory.objects.create(pharmacy=self.pharmacy2, medicine=self.panadol, stock=5, price='11.50')
        PharmacyInventory.objects.create(pharmacy=self.pharmacy2, medicine=self.zyrtec, stock=0, price='5.00')

    def test_find_pharmacy_by_single_medicine(self):
        response = self.client.get(f'/api/pharmacies/?medicine_id={self.amoxil.id}')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        results = response.data['results']
        self.assertEqual(len(results), 1)
        self.assertEqual(results[0]['medicine_price'], '35.00')
        self.assertEqual(results[0]['medicine_stock'], 10)

    def test_invalid_medicine_id_rejected(self):
        response = self.client.get('/api/pharmacies/?medicine_id=panadol')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'Invalid medicine identifier')

    def test_out_of_stock_listing_not_found(self):
        response = self.client.get(f'/api/pharmacies/?medicine_id={self.zyrtec.id}')
        self.assertEqual(response.data['count'], 0)

    def test_find_pharmacies_holding_all_medicines(self):
        data = {'medicine_ids': [self.panadol.id, self.amoxil.id]}
        response = self.client.post('/api/pharmacies/find-by-medicines/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([p['id'] for p in response.data], [self.pharmacy.id])
        self.assertEqual(response.data[0]['match_count'], 2)
        self.assertEqual(len(response.data[0]['medicines']), 2)

    def test_find_pharmacies_falls_back_to_best_match(self):
        data = {'medicine_ids': [self.amoxil.id, self.zyrtec.id]}
        response = self.client.post('/api/pharmacies/find-by-medicines/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data[0]['id'], self.pharmacy.id)
        self.assertEqual(response.data[0]['match_count'], 1)

    def test_find_pharmacies_requires_medicines(self):
        response = self.client.post('/api/pharmacies/find-by-medicines/', {'medicine_ids': []}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_search_by_generic_name(self):
        response = self.client.get('/api/search/?query=paracetamol')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 1)
        result = response.data['results'][0]
        self.assertEqual(result['name'], 'Panadol')
        self.assertEqual(result['pharmacies_count'], 2)

    def test_search_tolerates_typos(self):
        response = self.client.get('/api/search/?query=panadl')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([m['name'] for m in response.data['results']], ['Panadol'])

    def test_search_skips_out_of_stock_medicines(self):
        response = self.client.get('/api/search/?query=zyrtec')
        self.assertEqual(response.data['count'], 0)

    def test_search_orders_pharmacies_by_distance(self):
        response = self.client.get('/api/search/?query=panadol&lat=23.7930&lon=90.4070')
        pharmacies = response.data['results'][0]['pharmacies']
        self.assertEqual(pharmacies[0]['id'], self.pharmacy2.id)
        self.assertEqual(pharmacies[0]['price'], '11.50')

    def test_search_query_too_short(self):
        response = self.client.get('/api/search/?query=p')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class SearchHelpersTestCase(TestCase):

    def test_normalize_name(self):
        self.assertEqual(normalize_name('  Paracétamol  Extra '), 'paracetamol extra')

    def test_adaptive_threshold(self):
        self.assertEqual(adaptive_similarity_threshold(4), 90)
        self.assertEqual(adaptive_similarity_threshold(8), 80)
        self.assertEqual(adaptive_similarity_threshold(20), 70)

    def test_match_medicines_ranks_best_first(self):
        panadol = Medicine(name='Panadol', generic_name='Paracetamol')
        napa = Medicine(name='Napa', generic_name='Paracetamol')
        seclo = Medicine(name='Seclo 20', generic_name='Omeprazole')
        matches = match_medicines('panadol', [napa, seclo, panadol])
        self.assertEqual(matches[0][0], panadol)
        self.assertNotIn(seclo, [medicine for medicine, _ in matches])

    def test_parse_coordinates(self):
        self.assertEqual(parse_coordinates('23.7', '90.4'), (23.7, 90.4))
        self.assertIsNone(parse_coordinates('abc', '90.4'))
        self.assertIsNone(parse_coordinates('123', '90.4'))
        self.assertIsNone(parse_coordinates(None, '90.4'))


class ManagementCommandTestCase(TestCase):

    def test_seed_data_safe(self):
        out = StringIO()
        call_command('seed_data_safe', stdout=out)
        self.assertEqual(Pharmacy.objects.count(), 4)
        self.assertEqual(Medicine.objects.count(), 8)
        self.assertEqual(PharmacyInventory.objects.count(), 12)
        self.assertIn('Safe seeding complete', out.getvalue())

    def test_seed_data_safe_never_touches_existing_data(self):
        make_pharmacy('Existing Pharmacy')
        out = StringIO()
        call_command('seed_data_safe', stdout=out)
        self.assertEqual(Pharmacy.objects.count(), 1)
        self.assertEqual(Medicine.objects.count(), 0)
        self.assertIn('Seeding aborted', out.getvalue())

    def test_create_pharmacy(self):
        owner = User.objects.create_user('lazz', 'lazz@medlink.test', 'secret123')
        call_command('create_pharmacy', 'Lazz Pharma', 'Kalabagan, Dhaka', owner='lazz', approve=True, stdout=StringIO())
        pharmacy = Pharmacy.objects.get(name='Lazz Pharma')
        self.assertEqual(pharmacy.owner, owner)
        self.assertTrue(pharmacy.is_approved)

        with self.assertRaises(CommandError):
            call_command('create_pharmacy', 'Second Branch', 'Banani, Dhaka', owner='lazz', stdout=StringIO())
        with self.assertRaises(CommandError):
            call_command('create_pharmacy', 'Ghost Pharmacy', 'Mirpur, Dhaka', owner='nobody', stdout=StringIO())

    def test_create_pharmacy_defaults_to_pending(self):
        call_command('create_pharmacy', 'Corner Pharmacy', 'Mohakhali, Dhaka', stdout=StringIO())
        pharmacy = Pharmacy.objects.get(name='Corner Pharmacy')
        self.assertEqual(pharmacy.status, Pharmacy.Status.PENDING)
        self.assertIsNone(pharmacy.owner)
