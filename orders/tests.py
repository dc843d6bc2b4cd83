# -*- coding: utf-8 -*-
from datetime import timedelta
from decimal import Decimal
from io import StringIO
from smtplib import SMTPException
from types import SimpleNamespace
from unittest.mock import patch
from urllib.parse import parse_qs, urlencode, urlsplit

import requests
from django.contrib.auth import get_user_model
from django.core import mail
from django.core.management import call_command
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from pharmacies.models import Medicine, Pharmacy, PharmacyInventory

from . import services
from .cart import cart_version, compute_order_totals, group_by_pharmacy
from .exceptions import (
    ExternalServiceError,
    GatewayTimeout,
    InvalidTransitionError,
    PaymentClosedError,
    StateConflictError,
)
from .gateway import PaymentGatewayClient, sign_callback, verify_callback_signature
from .models import (
    CartItem,
    Delivery,
    DeliveryStatus,
    DeliveryType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentOutcome,
    PaymentSession,
)
from .notifications import DELIVERY_STATUS_MESSAGES, ORDER_STATUS_MESSAGES, NotificationKind, send

User = get_user_model()

WEBHOOK_SECRET = 'test-webhook-secret'
ADDRESS = 'House 5, Road 2, Dhanmondi, Dhaka'


class FakeGateway:
    """Stands in for the hosted payment page."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.amounts = {}
        self.validated = []

    def create_session(self, amount, currency, metadata):
        self.calls.append((amount, currency, metadata))
        if self.error:
            raise self.error
        self.amounts[metadata['transaction_id']] = amount
        return {
            'redirect_url': f"https://gateway.test/pay/{metadata['transaction_id']}",
            'gateway_session_id': f"gw-{metadata['transaction_id']}",
        }

    def validate_payment(self, validation_id):
        self.validated.append(validation_id)
        transaction_id = validation_id.replace('VAL-', '', 1)
        if transaction_id not in self.amounts:
            return {'status': 'INVALID_TRANSACTION'}
        return {'status': 'VALID', 'tran_id': transaction_id, 'amount': f'{self.amounts[transaction_id]:.2f}'}


def validation_id(session):
    return f'VAL-{session.transaction_id}'


def line(pharmacy_id, medicine_id, price, quantity):
    return SimpleNamespace(pharmacy_id=pharmacy_id, medicine_id=medicine_id, unit_price=Decimal(price), quantity=quantity)


class MarketplaceTestCase(TestCase):
    """Two approved pharmacies, each selling one medicine, and a customer."""

    def setUp(self):
        self.client = APIClient()
        self.customer = User.objects.create_user('customer', 'customer@medlink.test', 'secret123')
        self.owner1 = User.objects.create_user('citycare', 'owner@citycare.test', 'secret123')
        self.owner2 = User.objects.create_user('greenlife', 'owner@greenlife.test', 'secret123')
        self.p1 = Pharmacy.objects.create(
            name='City Care Pharmacy', address='Dhanmondi 27, Dhaka', owner=self.owner1,
            status=Pharmacy.Status.APPROVED
        )
        self.p2 = Pharmacy.objects.create(
            name='Green Life Pharmacy', address='Gulshan 2, Dhaka', owner=self.owner2,
            status=Pharmacy.Status.APPROVED
        )
        self.m1 = Medicine.objects.create(name='Panadol', generic_name='Paracetamol')
        self.m2 = Medicine.objects.create(name='Zyrtec', generic_name='Cetirizine')
        self.listing1 = PharmacyInventory.objects.create(pharmacy=self.p1, medicine=self.m1, stock=10, price='10.00')
        self.listing2 = PharmacyInventory.objects.create(pharmacy=self.p2, medicine=self.m2, stock=10, price='5.00')

    def fill_cart(self):
        services.add_to_cart(self.customer, self.p1.id, self.m1.id, 2)
        services.add_to_cart(self.customer, self.p2.id, self.m2.id, 3)

    def make_order(self, pharmacy=None, medicine=None, quantity=2, price='10.00',
                   delivery_type=DeliveryType.PICKUP, status=OrderStatus.PENDING):
        pharmacy = pharmacy or self.p1
        order = Order.objects.create(
            customer=self.customer,
            pharmacy=pharmacy,
            transaction_id='TXN-TEST',
            delivery_type=delivery_type,
            delivery_address=ADDRESS if delivery_type == DeliveryType.DELIVERY else '',
            status=status,
            total_price=Decimal(price) * quantity,
            delivery_charge=Decimal('60.00') if delivery_type == DeliveryType.DELIVERY else Decimal('0.00'),
        )
        OrderItem.objects.create(order=order, medicine=medicine or self.m1, quantity=quantity, price_at_order=price)
        return order


class CartAggregationTestCase(TestCase):

    def test_groups_keep_first_seen_order(self):
        items = [line(2, 20, '5.00', 1), line(1, 10, '10.00', 1), line(2, 21, '3.00', 2)]
        groups = group_by_pharmacy(items)
        self.assertEqual([g.pharmacy_id for g in groups], [2, 1])
        self.assertEqual(len(groups[0].items), 2)

    def test_zero_quantity_items_are_skipped(self):
        groups = group_by_pharmacy([line(1, 10, '10.00', 0), line(2, 20, '5.00', 1)])
        self.assertEqual([g.pharmacy_id for g in groups], [2])

    def test_group_subtotals_add_up_to_cart_value(self):
        items = [
            line(1, 10, '10.00', 2), line(2, 20, '5.00', 3), line(1, 11, '0.99', 7),
            line(3, 30, '120.50', 1), line(2, 21, '33.33', 3),
        ]
        groups = group_by_pharmacy(items)
        self.assertEqual(
            sum(g.subtotal for g in groups),
            sum(item.unit_price * item.quantity for item in items)
        )

    def test_delivery_charge_scales_with_pharmacies(self):
        for pharmacy_count in range(1, 5):
            groups = group_by_pharmacy([line(p, p, '10.00', 1) for p in range(pharmacy_count)])
            pickup = compute_order_totals(groups, DeliveryType.PICKUP)
            delivery = compute_order_totals(groups, DeliveryType.DELIVERY)
            self.assertEqual(pickup.delivery_charge, Decimal('0.00'))
            self.assertEqual(delivery.delivery_charge, Decimal('60.00') * pharmacy_count)

    def test_two_pharmacy_delivery_totals(self):
        groups = group_by_pharmacy([line(1, 10, '10.00', 2), line(2, 20, '5.00', 3)])
        totals = compute_order_totals(groups, DeliveryType.DELIVERY)
        self.assertEqual(totals.medicine_total, Decimal('35.00'))
        self.assertEqual(totals.delivery_charge, Decimal('120.00'))
        self.assertEqual(totals.platform_fee, Decimal('0.11'))
        self.assertEqual(totals.grand_total, Decimal('155.11'))
        self.assertEqual(totals.as_dict()['grand_total'], '155.11')

    @override_settings(DELIVERY_FLAT_FEE=Decimal('45.00'), PLATFORM_FEE_RATE=Decimal('0.01'))
    def test_fees_come_from_settings(self):
        groups = group_by_pharmacy([line(1, 10, '10.00', 2)])
        totals = compute_order_totals(groups, DeliveryType.DELIVERY)
        self.assertEqual(totals.delivery_charge, Decimal('45.00'))
        self.assertEqual(totals.platform_fee, Decimal('0.20'))

    def test_empty_cart_totals(self):
        totals = compute_order_totals([], DeliveryType.DELIVERY)
        self.assertEqual(totals.grand_total, Decimal('0.00'))
        self.assertEqual(totals.pharmacy_count, 0)

    def test_cart_version_ignores_line_order(self):
        a = [line(1, 10, '10.00', 2), line(2, 20, '5.00', 3)]
        self.assertEqual(cart_version(a), cart_version(list(reversed(a))))
        self.assertNotEqual(cart_version(a), cart_version([line(1, 10, '10.00', 3), line(2, 20, '5.00', 3)]))


class CartAPITestCase(MarketplaceTestCase):

    def setUp(self):
        super().setUp()
        self.client.force_authenticate(self.customer)

    def test_add_item_snapshots_price(self):
        response = self.client.post('/api/cart/', {'pharmacy_id': self.p1.id, 'medicine_id': self.m1.id, 'quantity': 2})
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['unit_price'], '10.00')
        self.assertEqual(response.data['line_total'], '20.00')

    def test_adding_same_listing_increments_quantity(self):
        self.client.post('/api/cart/', {'pharmacy_id': self.p1.id, 'medicine_id': self.m1.id, 'quantity': 2})
        response = self.client.post('/api/cart/', {'pharmacy_id': self.p1.id, 'medicine_id': self.m1.id, 'quantity': 3})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(CartItem.objects.get().quantity, 5)

    def test_adding_again_keeps_snapshot_price(self):
        self.client.post('/api/cart/', {'pharmacy_id': self.p1.id, 'medicine_id': self.m1.id, 'quantity': 2})
        PharmacyInventory.objects.filter(pk=self.listing1.pk).update(price='12.00')
        response = self.client.post('/api/cart/', {'pharmacy_id': self.p1.id, 'medicine_id': self.m1.id, 'quantity': 1})
        self.assertEqual(response.data['unit_price'], '10.00')
        self.assertEqual(response.data['line_total'], '30.00')
        item = CartItem.objects.get()
        self.assertEqual(item.quantity, 3)
        self.assertEqual(item.unit_price, Decimal('10.00'))

    def test_cannot_add_more_than_stock(self):
        response = self.client.post('/api/cart/', {'pharmacy_id': self.p1.id, 'medicine_id': self.m1.id, 'quantity': 11})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'validation_error')

    def test_unlisted_medicine_not_found(self):
        response = self.client.post('/api/cart/', {'pharmacy_id': self.p1.id, 'medicine_id': self.m2.id, 'quantity': 1})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_quantity_must_be_positive(self):
        response = self.client.post('/api/cart/', {'pharmacy_id': self.p1.id, 'medicine_id': self.m1.id, 'quantity': 0})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_cart_grouped_by_pharmacy(self):
        self.fill_cart()
        response = self.client.get('/api/cart/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)
        self.assertEqual([g['pharmacy_id'] for g in response.data['groups']], [self.p1.id, self.p2.id])
        self.assertEqual(response.data['groups'][0]['subtotal'], '20.00')
        self.assertEqual(response.data['totals']['delivery_charge'], '0.00')

    def test_summary_for_delivery(self):
        self.fill_cart()
        response = self.client.get('/api/cart/summary/?delivery_type=delivery')
        self.assertEqual(response.data['totals'], {
            'medicine_total': '35.00',
            'delivery_charge': '120.00',
            'platform_fee': '0.11',
            'grand_total': '155.11',
            'pharmacy_count': 2,
        })

    def test_summary_rejects_unknown_delivery_type(self):
        response = self.client.get('/api/cart/summary/?delivery_type=drone')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_update_quantity(self):
        item, _ = services.add_to_cart(self.customer, self.p1.id, self.m1.id, 1)
        response = self.client.patch(f'/api/cart/{item.id}/', {'quantity': 4})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        item.refresh_from_db()
        self.assertEqual(item.quantity, 4)

    def test_cannot_touch_another_customers_cart(self):
        other = User.objects.create_user('other', 'other@medlink.test', 'secret123')
        item, _ = services.add_to_cart(other, self.p1.id, self.m1.id, 1)
        self.assertEqual(self.client.patch(f'/api/cart/{item.id}/', {'quantity': 2}).status_code, 404)
        self.assertEqual(self.client.delete(f'/api/cart/{item.id}/').status_code, 404)

    def test_remove_and_clear(self):
        self.fill_cart()
        item = CartItem.objects.filter(customer=self.customer).first()
        self.assertEqual(self.client.delete(f'/api/cart/{item.id}/').status_code, status.HTTP_204_NO_CONTENT)
        self.assertEqual(CartItem.objects.count(), 1)
        self.assertEqual(self.client.delete('/api/cart/clear/').status_code, status.HTTP_204_NO_CONTENT)
        self.assertEqual(CartItem.objects.count(), 0)

    def test_cart_requires_login(self):
        self.client.force_authenticate(None)
        self.assertIn(self.client.get('/api/cart/').status_code, (401, 403))


@override_settings(PAYMENT_WEBHOOK_SECRET=WEBHOOK_SECRET)
class CheckoutTestCase(MarketplaceTestCase):

    def setUp(self):
        super().setUp()
        self.fill_cart()
        self.gateway = FakeGateway()
        self.client.force_authenticate(self.customer)

    def checkout(self, delivery_type=DeliveryType.DELIVERY, address=ADDRESS):
        return services.init_checkout(self.customer, delivery_type, address, gateway=self.gateway)

    def callback(self, session, outcome='success', gateway_session_id=None, val_id=None):
        return services.handle_gateway_callback(
            session.transaction_id,
            outcome,
            gateway_session_id or session.gateway_session_id,
            validation_id=val_id or validation_id(session),
            gateway=self.gateway,
        )

    def outcome_path(self, session, outcome):
        parts = urlsplit(PaymentGatewayClient().outcome_url(session.transaction_id, outcome))
        return f'{parts.path}?{parts.query}'

    def post_form(self, path, data):
        return self.client.post(path, urlencode(data), content_type='application/x-www-form-urlencoded')

    def test_payment_init_returns_gateway_page(self):
        with patch('orders.services.get_gateway', return_value=self.gateway):
            response = self.client.post('/api/cart/payment-init/', {
                'delivery_type': 'delivery', 'delivery_address': ADDRESS
            })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['amount'], '155.11')
        self.assertTrue(response.data['gateway_page_url'].startswith('https://gateway.test/pay/'))

        session = PaymentSession.objects.get(transaction_id=response.data['transaction_id'])
        self.assertEqual(session.outcome, PaymentOutcome.PENDING)
        self.assertEqual(session.grand_total, Decimal('155.11'))
        self.assertEqual(self.gateway.calls[0][0], Decimal('155.11'))
        self.assertEqual(CartItem.objects.count(), 2)

    def test_delivery_requires_address(self):
        response = self.client.post('/api/cart/payment-init/', {'delivery_type': 'delivery', 'delivery_address': '  '})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertFalse(PaymentSession.objects.exists())

    def test_empty_cart_cannot_checkout(self):
        CartItem.objects.all().delete()
        response = self.client.post('/api/cart/payment-init/', {'delivery_type': 'pickup'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error'], 'Cart is empty')

    def test_gateway_timeout_fails_session(self):
        with patch('orders.services.get_gateway', return_value=FakeGateway(error=GatewayTimeout())):
            response = self.client.post('/api/cart/payment-init/', {'delivery_type': 'pickup'})
        self.assertEqual(response.status_code, status.HTTP_504_GATEWAY_TIMEOUT)
        self.assertEqual(response.data['code'], 'gateway_timeout')
        session = PaymentSession.objects.get()
        self.assertEqual(session.outcome, PaymentOutcome.FAILED)
        self.assertEqual(CartItem.objects.count(), 2)

    def test_gateway_error_propagates(self):
        self.gateway.error = ExternalServiceError('Failed to initiate payment: Store credential error')
        with self.assertRaises(ExternalServiceError):
            self.checkout()
        self.assertEqual(PaymentSession.objects.get().outcome, PaymentOutcome.FAILED)

    def test_successful_payment_creates_one_order_per_pharmacy(self):
        session = self.checkout()
        with self.captureOnCommitCallbacks(execute=True):
            result = self.callback(session)

        self.assertFalse(result.replayed)
        self.assertEqual(result.failures, [])
        self.assertEqual(len(result.orders), 2)
        orders = {order.pharmacy_id: order for order in Order.objects.all()}
        self.assertEqual(set(orders), {self.p1.id, self.p2.id})
        self.assertEqual(orders[self.p1.id].total_price, Decimal('20.00'))
        self.assertEqual(orders[self.p2.id].total_price, Decimal('15.00'))
        for order in orders.values():
            self.assertEqual(order.status, OrderStatus.PENDING)
            self.assertEqual(order.transaction_id, session.transaction_id)
            self.assertEqual(order.delivery_charge, Decimal('60.00'))
            self.assertEqual(order.delivery_address, ADDRESS)
            self.assertIsNotNone(order.paid_at)
        self.assertEqual(sum(o.platform_fee for o in orders.values()), Decimal('0.11'))
        self.assertEqual(orders[self.p2.id].items.get().quantity, 3)

        self.assertEqual(CartItem.objects.count(), 0)
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.SUCCESS)
        # payment receipt and reservation confirmation for each order
        self.assertEqual(len(mail.outbox), 4)

    def test_duplicate_callback_replays_result(self):
        session = self.checkout()
        first = self.callback(session)
        second = self.callback(session)

        self.assertTrue(second.replayed)
        self.assertEqual([o.id for o in second.orders], sorted(o.id for o in first.orders))
        self.assertEqual(Order.objects.count(), 2)

    def test_cancelled_payment_leaves_cart(self):
        session = self.checkout()
        result = self.callback(session, 'cancelled')

        self.assertEqual(result.orders, [])
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.CANCELLED)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(CartItem.objects.count(), 2)

    def test_payment_after_failure_is_flagged_for_refund(self):
        session = self.checkout()
        self.callback(session, 'failed')

        with self.assertRaises(PaymentClosedError) as ctx:
            self.callback(session, 'success')
        self.assertTrue(ctx.exception.payload['refund_required'])

        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.FAILED)
        self.assertTrue(session.result['refund_required'])
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(CartItem.objects.count(), 2)

        # the refund stays recorded for retried callbacks
        with self.assertRaises(PaymentClosedError):
            self.callback(session, 'success')
        self.assertEqual(self.gateway.validated, [validation_id(session)])

    def test_payment_after_expiry_is_flagged_for_refund(self):
        session = self.checkout()
        PaymentSession.objects.filter(pk=session.pk).update(created_at=timezone.now() - timedelta(minutes=31))
        self.assertEqual(services.expire_stale_payment_sessions(), 1)

        with self.assertRaises(PaymentClosedError):
            self.callback(session, 'success')

        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.FAILED)
        self.assertEqual(session.failure_reason, services.SESSION_EXPIRED)
        self.assertEqual(session.result['paid_after'], services.SESSION_EXPIRED)
        self.assertTrue(session.result['refund_required'])
        self.assertEqual(Order.objects.count(), 0)

    def test_unverified_late_payment_is_not_flagged(self):
        session = self.checkout()
        self.callback(session, 'cancelled')
        with self.assertRaises(services.ValidationError):
            self.callback(session, 'success', val_id='VAL-forged')
        session.refresh_from_db()
        self.assertNotIn('refund_required', session.result)

    def test_success_requires_validated_payment(self):
        session = self.checkout()
        with self.assertRaises(services.ValidationError):
            self.callback(session, 'success', val_id='VAL-TXN-unknown')
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.PENDING)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(CartItem.objects.count(), 2)

    def test_success_rejects_wrong_amount(self):
        session = self.checkout()
        self.gateway.amounts[session.transaction_id] = Decimal('1.00')
        with self.assertRaises(services.ValidationError) as ctx:
            self.callback(session)
        self.assertEqual(ctx.exception.code, 'payment_not_verified')
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.PENDING)

    def test_cart_changed_during_payment(self):
        session = self.checkout()
        services.add_to_cart(self.customer, self.p1.id, self.m1.id, 1)

        with self.assertRaises(StateConflictError):
            self.callback(session)
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.SUCCESS)
        self.assertEqual(session.failure_reason, services.CART_CHANGED)
        self.assertEqual(Order.objects.count(), 0)
        self.assertEqual(CartItem.objects.count(), 2)

        # the recorded conflict is reported again on a retried callback
        with self.assertRaises(StateConflictError):
            self.callback(session)

    def test_unavailable_listing_fails_only_its_group(self):
        session = self.checkout()
        PharmacyInventory.objects.filter(pk=self.listing2.pk).update(availability=False)

        result = self.callback(session)

        self.assertEqual([o.pharmacy_id for o in result.orders], [self.p1.id])
        self.assertEqual(len(result.failures), 1)
        self.assertEqual(result.failures[0]['pharmacy_id'], self.p2.id)
        self.assertEqual(Order.objects.count(), 1)
        self.assertEqual(OrderItem.objects.count(), 1)
        session.refresh_from_db()
        self.assertEqual(session.result['failures'][0]['pharmacy_id'], self.p2.id)

    def test_gateway_session_mismatch_rejected(self):
        session = self.checkout()
        with self.assertRaises(services.ValidationError):
            self.callback(session, gateway_session_id='gw-someone-else')
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.PENDING)

    def test_callback_endpoint_requires_signature(self):
        session = self.checkout()
        response = self.client.get('/api/payment/callback/', {
            'transaction_id': session.transaction_id,
            'outcome': 'success',
            'gateway_session_id': session.gateway_session_id,
            'signature': 'forged',
        })
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.PENDING)

    def test_signed_callback_endpoint(self):
        session = self.checkout()
        params = {
            'transaction_id': session.transaction_id,
            'outcome': 'success',
            'gateway_session_id': session.gateway_session_id,
        }
        params['signature'] = sign_callback(**params)
        params['val_id'] = validation_id(session)

        with patch('orders.services.get_gateway', return_value=self.gateway):
            response = self.client.get('/api/payment/callback/', params)
            self.assertEqual(response.status_code, status.HTTP_200_OK)
            self.assertEqual(len(response.data['order_ids']), 2)
            self.assertFalse(response.data['replayed'])

            response = self.client.post('/api/payment/callback/', params)
        self.assertTrue(response.data['replayed'])
        self.assertEqual(Order.objects.count(), 2)

    def test_gateway_redirects_to_outcome_urls(self):
        cancelled = self.checkout()
        response = self.client.get(self.outcome_path(cancelled, 'cancelled'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], 'cancelled')

        session = self.checkout()
        with patch('orders.services.get_gateway', return_value=self.gateway):
            response = self.post_form(self.outcome_path(session, 'success'), {
                'tran_id': session.transaction_id,
                'val_id': validation_id(session),
                'status': 'VALID',
            })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], 'success')
        self.assertEqual(len(response.data['order_ids']), 2)
        self.assertEqual(self.gateway.validated, [validation_id(session)])

    def test_success_redirect_without_validation_id(self):
        session = self.checkout()
        with patch('orders.services.get_gateway', return_value=self.gateway):
            response = self.post_form(self.outcome_path(session, 'success'), {'tran_id': session.transaction_id})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'validation_error')
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.PENDING)
        self.assertEqual(Order.objects.count(), 0)

    def test_outcome_url_signature_is_bound_to_its_outcome(self):
        session = self.checkout()
        path = self.outcome_path(session, 'failed').replace('outcome=failed', 'outcome=success')
        response = self.client.get(path)
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        session.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.PENDING)

    def test_callback_endpoint_reports_cart_conflict(self):
        session = self.checkout()
        CartItem.objects.filter(pharmacy=self.p2).delete()
        params = {
            'transaction_id': session.transaction_id,
            'outcome': 'success',
            'gateway_session_id': session.gateway_session_id,
        }
        params['signature'] = sign_callback(**params)
        params['val_id'] = validation_id(session)

        with patch('orders.services.get_gateway', return_value=self.gateway):
            response = self.client.get('/api/payment/callback/', params)
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'cart_changed')
        self.assertTrue(response.data['refund_required'])

    def test_callback_endpoint_reports_closed_checkout(self):
        session = self.checkout()
        self.callback(session, 'failed')
        with patch('orders.services.get_gateway', return_value=self.gateway):
            response = self.post_form(self.outcome_path(session, 'success'), {'val_id': validation_id(session)})
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'payment_closed')
        self.assertTrue(response.data['refund_required'])
        self.assertEqual(response.data['transaction_id'], session.transaction_id)

    @override_settings(PAYMENT_WEBHOOK_SECRET='')
    def test_callbacks_refused_without_secret(self):
        self.assertFalse(verify_callback_signature('TXN-1', 'success', 'gw-1', sign_callback('TXN-1', 'success', 'gw-1', secret='x')))

    def test_payment_status(self):
        session = self.checkout()
        self.callback(session)
        response = self.client.get(f'/api/payment/{session.transaction_id}/status/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['outcome'], 'success')
        self.assertEqual(response.data['grand_total'], '155.11')
        self.assertEqual(len(response.data['order_ids']), 2)

        self.client.force_authenticate(self.owner1)
        response = self.client.get(f'/api/payment/{session.transaction_id}/status/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_stale_sessions_expire(self):
        session = self.checkout()
        fresh = self.checkout()
        PaymentSession.objects.filter(pk=session.pk).update(created_at=timezone.now() - timedelta(minutes=31))

        out = StringIO()
        call_command('expire_payment_sessions', stdout=out)
        self.assertIn('1 payment session(s) expired', out.getvalue())

        session.refresh_from_db()
        fresh.refresh_from_db()
        self.assertEqual(session.outcome, PaymentOutcome.FAILED)
        self.assertEqual(session.failure_reason, services.SESSION_EXPIRED)
        self.assertEqual(fresh.outcome, PaymentOutcome.PENDING)
        self.assertEqual(services.expire_stale_payment_sessions(), 0)


class OrderStatusTestCase(MarketplaceTestCase):

    def test_pending_order_cannot_jump_to_delivered(self):
        order = self.make_order()
        with self.assertRaises(InvalidTransitionError) as ctx:
            services.update_order_status(order.id, self.owner1, OrderStatus.DELIVERED)
        self.assertEqual(ctx.exception.current_status, OrderStatus.PENDING)
        self.assertEqual(ctx.exception.requested_status, OrderStatus.DELIVERED)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PENDING)

    def test_illegal_transitions_leave_status_unchanged(self):
        legal = {
            (OrderStatus.PENDING, OrderStatus.ACCEPTED),
            (OrderStatus.PENDING, OrderStatus.REJECTED),
            (OrderStatus.ACCEPTED, OrderStatus.DELIVERED),
        }
        for delivery_type in DeliveryType.values:
            for current in OrderStatus.values:
                for requested in OrderStatus.values:
                    allowed = (current, requested) in legal
                    if current == OrderStatus.ACCEPTED and delivery_type == DeliveryType.DELIVERY:
                        allowed = False
                    if allowed:
                        continue
                    order = self.make_order(status=current, delivery_type=delivery_type)
                    with self.assertRaises(InvalidTransitionError):
                        services.update_order_status(order.id, self.owner1, requested)
                    order.refresh_from_db()
                    self.assertEqual(order.status, current)

    def test_accepting_reserves_stock(self):
        order = self.make_order(quantity=3)
        order = services.update_order_status(order.id, self.owner1, OrderStatus.ACCEPTED)
        self.assertEqual(order.status, OrderStatus.ACCEPTED)
        self.listing1.refresh_from_db()
        self.assertEqual(self.listing1.stock, 7)

    def test_accept_without_stock_changes_nothing(self):
        order = self.make_order(quantity=11)
        with self.assertRaises(services.ValidationError):
            services.update_order_status(order.id, self.owner1, OrderStatus.ACCEPTED)
        order.refresh_from_db()
        self.listing1.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(self.listing1.stock, 10)

    def test_second_decision_loses(self):
        order = self.make_order()
        services.update_order_status(order.id, self.owner1, OrderStatus.ACCEPTED)
        with self.assertRaises(InvalidTransitionError) as ctx:
            services.update_order_status(order.id, self.owner1, OrderStatus.REJECTED)
        self.assertEqual(ctx.exception.current_status, OrderStatus.ACCEPTED)

    def test_pickup_order_delivered_by_pharmacy(self):
        order = self.make_order(status=OrderStatus.ACCEPTED)
        order = services.update_order_status(order.id, self.owner1, OrderStatus.DELIVERED)
        self.assertEqual(order.status, OrderStatus.DELIVERED)

    def test_one_notification_per_transition(self):
        order = self.make_order()
        with self.captureOnCommitCallbacks(execute=True):
            services.update_order_status(order.id, self.owner1, OrderStatus.REJECTED)
        self.assertEqual(len(mail.outbox), 1)
        self.assertEqual(mail.outbox[0].to, ['customer@medlink.test'])
        self.assertIn('Order Rejected', mail.outbox[0].subject)

        with self.captureOnCommitCallbacks(execute=True):
            with self.assertRaises(InvalidTransitionError):
                services.update_order_status(order.id, self.owner1, OrderStatus.ACCEPTED)
        self.assertEqual(len(mail.outbox), 1)

    def test_notification_failure_does_not_undo_transition(self):
        order = self.make_order()
        with patch('orders.notifications.send_mail', side_effect=SMTPException('mail server down')):
            with self.assertLogs('orders.notifications', level='WARNING'):
                with self.captureOnCommitCallbacks(execute=True):
                    services.update_order_status(order.id, self.owner1, OrderStatus.ACCEPTED)
        order.refresh_from_db()
        self.assertEqual(order.status, OrderStatus.ACCEPTED)

    def test_only_owning_pharmacy_updates(self):
        order = self.make_order()
        self.client.force_authenticate(self.owner2)
        response = self.client.put(f'/api/reservations/{order.id}/status/', {'status': 'accepted'})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_status_endpoint_reports_transition_error(self):
        order = self.make_order()
        self.client.force_authenticate(self.owner1)
        response = self.client.put(f'/api/reservations/{order.id}/status/', {'status': 'delivered'})
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'invalid_transition')
        self.assertEqual(response.data['current_status'], 'pending')
        self.assertEqual(response.data['requested_status'], 'delivered')

    def test_status_endpoint_accepts(self):
        order = self.make_order()
        self.client.force_authenticate(self.owner1)
        response = self.client.put(f'/api/reservations/{order.id}/status/', {'status': 'accepted'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'accepted')

    def test_reservation_lists(self):
        self.make_order()
        self.make_order(pharmacy=self.p2, medicine=self.m2)

        self.client.force_authenticate(self.customer)
        self.assertEqual(self.client.get('/api/reservations/').data['count'], 2)

        self.client.force_authenticate(self.owner1)
        response = self.client.get('/api/reservations/')
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['pharmacy_name'], 'City Care Pharmacy')
        self.assertEqual(self.client.get('/api/reservations/?status=accepted').data['count'], 0)

    def test_status_messages_cover_every_status(self):
        self.assertEqual(set(ORDER_STATUS_MESSAGES), set(OrderStatus))
        self.assertEqual(set(DELIVERY_STATUS_MESSAGES), set(DeliveryStatus))


class DeliveryTestCase(MarketplaceTestCase):

    def setUp(self):
        super().setUp()
        self.order = self.make_order(delivery_type=DeliveryType.DELIVERY, status=OrderStatus.ACCEPTED)

    def test_delivery_completes_the_order(self):
        delivery = services.create_delivery(self.order.id, self.owner1)
        self.assertEqual(delivery.address, ADDRESS)
        self.assertEqual(delivery.status, DeliveryStatus.PENDING)

        delivery = services.advance_delivery(delivery.id, self.owner1, DeliveryStatus.OUT_FOR_DELIVERY, 'Rahim')
        self.order.refresh_from_db()
        self.assertEqual(delivery.delivery_person, 'Rahim')
        self.assertEqual(self.order.status, OrderStatus.ACCEPTED)

        with self.captureOnCommitCallbacks(execute=True):
            delivery = services.advance_delivery(delivery.id, self.owner1, DeliveryStatus.DELIVERED)
        self.order.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.DELIVERED)
        self.assertEqual(self.order.status, OrderStatus.DELIVERED)
        self.assertEqual(len(mail.outbox), 1)

    def test_delivery_steps_cannot_be_skipped(self):
        delivery = services.create_delivery(self.order.id, self.owner1)
        with self.assertRaises(InvalidTransitionError):
            services.advance_delivery(delivery.id, self.owner1, DeliveryStatus.DELIVERED)
        delivery.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.PENDING)
        self.assertEqual(self.order.status, OrderStatus.ACCEPTED)

    def test_delivery_and_order_roll_back_together(self):
        delivery = services.create_delivery(self.order.id, self.owner1)
        services.advance_delivery(delivery.id, self.owner1, DeliveryStatus.OUT_FOR_DELIVERY)
        Order.objects.filter(pk=self.order.pk).update(status=OrderStatus.REJECTED)

        with self.assertRaises(InvalidTransitionError):
            services.advance_delivery(delivery.id, self.owner1, DeliveryStatus.DELIVERED)
        delivery.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.OUT_FOR_DELIVERY)

    def test_delivery_not_marked_delivered_when_order_update_fails(self):
        delivery = services.create_delivery(self.order.id, self.owner1)
        services.advance_delivery(delivery.id, self.owner1, DeliveryStatus.OUT_FOR_DELIVERY)
        seen = []

        def order_update_fails(**changes):
            seen.append(Delivery.objects.get(pk=delivery.pk).status)
            raise DatabaseError('order row unavailable')

        with patch('orders.services.Order') as order_model:
            order_model.objects.filter.return_value.update.side_effect = order_update_fails
            with self.assertRaises(DatabaseError):
                services.advance_delivery(delivery.id, self.owner1, DeliveryStatus.DELIVERED)

        # the delivery row had moved before the order update failed
        self.assertEqual(seen, [DeliveryStatus.DELIVERED])
        delivery.refresh_from_db()
        self.order.refresh_from_db()
        self.assertEqual(delivery.status, DeliveryStatus.OUT_FOR_DELIVERY)
        self.assertEqual(self.order.status, OrderStatus.ACCEPTED)
        self.assertFalse(
            Delivery.objects.filter(status=DeliveryStatus.DELIVERED)
            .exclude(order__status=OrderStatus.DELIVERED).exists()
        )

    def test_second_delivery_conflicts(self):
        self.client.force_authenticate(self.owner1)
        response = self.client.post('/api/deliveries/', {'reservation_id': self.order.id})
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['reservation_id'], self.order.id)

        response = self.client.post('/api/deliveries/', {'reservation_id': self.order.id})
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'conflict')
        self.assertEqual(Delivery.objects.count(), 1)

    def test_delivery_only_for_accepted_delivery_orders(self):
        pickup = self.make_order(status=OrderStatus.ACCEPTED)
        pending = self.make_order(delivery_type=DeliveryType.DELIVERY)
        with self.assertRaises(services.ValidationError):
            services.create_delivery(pickup.id, self.owner1)
        with self.assertRaises(services.ValidationError):
            services.create_delivery(pending.id, self.owner1)

    def test_delivery_order_not_marked_delivered_directly(self):
        with self.assertRaises(InvalidTransitionError):
            services.update_order_status(self.order.id, self.owner1, OrderStatus.DELIVERED)

    def test_delivery_person_assigned_once_out(self):
        delivery = services.create_delivery(self.order.id, self.owner1, address='Road 11, Banani')
        self.assertEqual(delivery.address, 'Road 11, Banani')
        with self.assertRaises(services.ValidationError):
            services.advance_delivery(delivery.id, self.owner1, delivery_person='Karim')

        services.advance_delivery(delivery.id, self.owner1, DeliveryStatus.OUT_FOR_DELIVERY)
        delivery = services.advance_delivery(delivery.id, self.owner1, delivery_person='Karim')
        self.assertEqual(delivery.delivery_person, 'Karim')
        self.assertEqual(delivery.status, DeliveryStatus.OUT_FOR_DELIVERY)

    def test_delivery_status_endpoint(self):
        delivery = services.create_delivery(self.order.id, self.owner1)
        self.client.force_authenticate(self.owner2)
        response = self.client.put(f'/api/deliveries/{delivery.id}/status/', {'delivery_status': 'out_for_delivery'})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(self.owner1)
        response = self.client.put(f'/api/deliveries/{delivery.id}/status/', {
            'delivery_status': 'out_for_delivery', 'delivery_person': 'Rahim'
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['delivery_person'], 'Rahim')

        response = self.client.put(f'/api/deliveries/{delivery.id}/status/', {'delivery_status': 'delivered'})
        self.assertEqual(response.data['status'], 'delivered')
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, OrderStatus.DELIVERED)

    def test_customer_sees_their_delivery(self):
        delivery = services.create_delivery(self.order.id, self.owner1)
        self.client.force_authenticate(self.customer)
        response = self.client.get(f'/api/deliveries/{delivery.id}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        response = self.client.post('/api/deliveries/', {'reservation_id': self.order.id})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)


class PharmacyStatsTestCase(MarketplaceTestCase):

    def test_stats_count_accepted_and_delivered_orders(self):
        self.make_order(quantity=2, status=OrderStatus.ACCEPTED)
        self.make_order(quantity=3, price='5.00', delivery_type=DeliveryType.DELIVERY, status=OrderStatus.DELIVERED)
        self.make_order(quantity=1)
        self.make_order(quantity=4, status=OrderStatus.REJECTED)

        self.client.force_authenticate(self.owner1)
        response = self.client.get('/api/pharmacy/stats/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['order_count'], 2)
        self.assertEqual(response.data['pickup_count'], 1)
        self.assertEqual(response.data['delivery_count'], 1)
        self.assertEqual(response.data['pending_count'], 1)
        self.assertEqual(response.data['medicine_value'], '35.00')
        self.assertEqual(response.data['total_earnings'], '95.00')
        self.assertEqual(response.data['quantity_sold'], 5)

    def test_customers_have_no_stats(self):
        self.client.force_authenticate(self.customer)
        self.assertEqual(self.client.get('/api/pharmacy/stats/').status_code, status.HTTP_403_FORBIDDEN)


class NotificationTestCase(MarketplaceTestCase):

    def test_send_reports_missing_recipient(self):
        result = send(NotificationKind.STATUS_UPDATE, '', {'status': 'accepted', 'order_id': 1})
        self.assertFalse(result.success)

    def test_status_update_email(self):
        order = self.make_order(status=OrderStatus.ACCEPTED)
        result = send('status-update', 'customer@medlink.test', services.order_template_data(order))
        self.assertTrue(result.success)
        self.assertEqual(mail.outbox[0].subject, f'Order Accepted - Reservation #{order.id}')
        self.assertIn('Panadol x 2', mail.outbox[0].body)


class PaymentGatewayClientTestCase(TestCase):

    def setUp(self):
        self.client_ = PaymentGatewayClient(
            store_id='store', store_password='secret', session_url='https://gateway.test/session',
            callback_url='https://api.test/api/payment/callback/', timeout=3
        )
        self.metadata = {'transaction_id': 'TXN-1', 'customer_id': 7, 'item_count': 5}

    @patch('orders.gateway.requests.post')
    def test_create_session(self, post):
        post.return_value.json.return_value = {
            'status': 'SUCCESS', 'GatewayPageURL': 'https://gateway.test/pay/abc', 'sessionkey': 'abc'
        }
        session = self.client_.create_session(Decimal('155.11'), 'BDT', self.metadata)

        self.assertEqual(session, {'redirect_url': 'https://gateway.test/pay/abc', 'gateway_session_id': 'abc'})
        kwargs = post.call_args.kwargs
        self.assertEqual(kwargs['timeout'], 3)
        self.assertEqual(kwargs['data']['total_amount'], '155.11')
        self.assertIn('outcome=cancelled', kwargs['data']['cancel_url'])

    @patch('orders.gateway.requests.post', side_effect=requests.exceptions.Timeout('read timeout'))
    def test_timeout(self, post):
        with self.assertRaises(GatewayTimeout):
            self.client_.create_session(Decimal('10.00'), 'BDT', self.metadata)

    @patch('orders.gateway.requests.post', side_effect=requests.exceptions.ConnectionError('refused'))
    def test_unreachable(self, post):
        with self.assertRaises(ExternalServiceError):
            self.client_.create_session(Decimal('10.00'), 'BDT', self.metadata)

    @patch('orders.gateway.requests.post')
    def test_refused_session(self, post):
        post.return_value.json.return_value = {'status': 'FAILED', 'failedreason': 'Store Credential Error'}
        with self.assertRaises(ExternalServiceError) as ctx:
            self.client_.create_session(Decimal('10.00'), 'BDT', self.metadata)
        self.assertIn('Store Credential Error', ctx.exception.message)

    @patch('orders.gateway.requests.get')
    def test_validate_payment(self, get):
        get.return_value.json.return_value = {'status': 'VALID', 'tran_id': 'TXN-1', 'amount': '155.11'}
        data = self.client_.validate_payment('val-123')

        self.assertEqual(data['status'], 'VALID')
        kwargs = get.call_args.kwargs
        self.assertEqual(kwargs['params']['val_id'], 'val-123')
        self.assertEqual(kwargs['params']['store_id'], 'store')
        self.assertEqual(kwargs['timeout'], 3)

    @patch('orders.gateway.requests.get', side_effect=requests.exceptions.Timeout('read timeout'))
    def test_validation_timeout(self, get):
        with self.assertRaises(GatewayTimeout):
            self.client_.validate_payment('val-123')

    @override_settings(PAYMENT_WEBHOOK_SECRET=WEBHOOK_SECRET)
    @patch('orders.gateway.requests.post')
    def test_outcome_urls_are_signed(self, post):
        post.return_value.json.return_value = {'status': 'SUCCESS', 'GatewayPageURL': 'https://gateway.test/pay/abc'}
        self.client_.create_session(Decimal('10.00'), 'BDT', self.metadata)
        data = post.call_args.kwargs['data']

        for key, outcome in (('success_url', 'success'), ('fail_url', 'failed'),
                             ('cancel_url', 'cancelled'), ('ipn_url', 'success')):
            query = parse_qs(urlsplit(data[key]).query)
            self.assertEqual(query['outcome'], [outcome])
            self.assertTrue(verify_callback_signature('TXN-1', outcome, '', query['signature'][0]))

    def test_signature_round_trip(self):
        signature = sign_callback('TXN-1', 'success', 'abc', secret='s3cret')
        self.assertTrue(verify_callback_signature('TXN-1', 'success', 'abc', signature, secret='s3cret'))
        self.assertFalse(verify_callback_signature('TXN-1', 'failed', 'abc', signature, secret='s3cret'))
        self.assertFalse(verify_callback_signature('TXN-1', 'success', 'abc', None, secret='s3cret'))
