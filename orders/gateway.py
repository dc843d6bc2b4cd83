"""
Client for the hosted payment gateway (SSLCommerz-style session API).

The gateway is asked for a checkout session and answers with the page the
customer is redirected to. The session carries one callback URL per outcome,
each built on `PAYMENT_CALLBACK_URL` with the transaction id, the outcome and
an HMAC signature of both, so the gateway's redirects verify as they are.
A successful outcome also carries the gateway's `val_id`, which is checked
against the validation API before any order is created.
"""
import hashlib
import hmac
import logging
from decimal import Decimal
from urllib.parse import urlencode

import requests
from django.conf import settings

from .exceptions import ExternalServiceError, GatewayTimeout

logger = logging.getLogger(__name__)

DEFAULT_SESSION_URL = 'https://sandbox.sslcommerz.com/gwprocess/v4/api.php'
DEFAULT_VALIDATION_URL = 'https://sandbox.sslcommerz.com/validator/api/validationserverAPI.php'
CALLBACK_OUTCOMES = ('success', 'failed', 'cancelled')
VALID_PAYMENT_STATUSES = ('VALID', 'VALIDATED')


class PaymentGatewayClient:
    def __init__(self, store_id=None, store_password=None, session_url=None, callback_url=None, timeout=None,
                 validation_url=None):
        self.store_id = store_id if store_id is not None else settings.PAYMENT_GATEWAY_STORE_ID
        self.store_password = store_password if store_password is not None else settings.PAYMENT_GATEWAY_STORE_PASSWORD
        self.session_url = session_url or getattr(settings, 'PAYMENT_GATEWAY_SESSION_URL', DEFAULT_SESSION_URL)
        self.validation_url = validation_url or getattr(
            settings, 'PAYMENT_GATEWAY_VALIDATION_URL', DEFAULT_VALIDATION_URL
        )
        self.callback_url = callback_url or settings.PAYMENT_CALLBACK_URL
        self.timeout = timeout or getattr(settings, 'PAYMENT_GATEWAY_TIMEOUT', 10)

    def outcome_url(self, transaction_id, outcome):
        """
        Callback URL handed to the gateway for one outcome. It is signed
        without a gateway session id, which the gateway only assigns later.
        """
        params = {
            'transaction_id': transaction_id,
            'outcome': outcome,
            'signature': sign_callback(transaction_id, outcome, ''),
        }
        return f"{self.callback_url}?{urlencode(params)}"

    def create_session(self, amount, currency, metadata):
        """
        Open a checkout session for `amount`.

        Returns {'redirect_url', 'gateway_session_id'}. Raises GatewayTimeout
        when the gateway does not answer within the timeout, and
        ExternalServiceError on any other transport or gateway-side failure.
        """
        transaction_id = metadata['transaction_id']
        payload = {
            'store_id': self.store_id,
            'store_passwd': self.store_password,
            'total_amount': f'{Decimal(amount):.2f}',
            'currency': currency,
            'tran_id': transaction_id,
            'success_url': self.outcome_url(transaction_id, 'success'),
            'fail_url': self.outcome_url(transaction_id, 'failed'),
            'cancel_url': self.outcome_url(transaction_id, 'cancelled'),
            'ipn_url': self.outcome_url(transaction_id, 'success'),
            'product_name': metadata.get('product_name', 'Medicines'),
            'product_category': 'Medicine',
            'product_profile': 'general',
            'cus_name': metadata.get('customer_name', ''),
            'cus_email': metadata.get('customer_email', ''),
            'cus_add1': metadata.get('delivery_address') or 'N/A',
            'shipping_method': 'YES' if metadata.get('delivery_address') else 'NO',
            'num_of_item': metadata.get('item_count', 1),
            'value_a': str(metadata.get('customer_id', '')),
        }

        try:
            response = requests.post(self.session_url, data=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            logger.error(f"Payment gateway timed out for {transaction_id}: {e}")
            raise GatewayTimeout()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.exception(f"Payment gateway request failed for {transaction_id}: {e}")
            raise ExternalServiceError()

        if data.get('status') != 'SUCCESS' or not data.get('GatewayPageURL'):
            reason = data.get('failedreason') or 'Unknown error'
            logger.error(f"Payment gateway refused session for {transaction_id}: {reason}")
            raise ExternalServiceError(f'Failed to initiate payment: {reason}')

        logger.info(f"Payment gateway session opened for {transaction_id}")
        return {
            'redirect_url': data['GatewayPageURL'],
            'gateway_session_id': data.get('sessionkey', ''),
        }

    def validate_payment(self, validation_id):
        """
        Ask the gateway's validation API about the payment behind
        `validation_id` (the `val_id` posted with a successful outcome).

        Returns the gateway's answer; only a `status` in
        VALID_PAYMENT_STATUSES means the money was captured.
        """
        params = {
            'val_id': validation_id,
            'store_id': self.store_id,
            'store_passwd': self.store_password,
            'format': 'json',
        }
        try:
            response = requests.get(self.validation_url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
        except requests.exceptions.Timeout as e:
            logger.error(f"Payment validation timed out for {validation_id}: {e}")
            raise GatewayTimeout()
        except (requests.exceptions.RequestException, ValueError) as e:
            logger.exception(f"Payment validation request failed for {validation_id}: {e}")
            raise ExternalServiceError()

        logger.info(f"Payment validation {validation_id}: {data.get('status')}")
        return data


def _signing_payload(transaction_id, outcome, gateway_session_id):
    return f"{transaction_id}:{outcome}:{gateway_session_id or ''}".encode('utf-8')


def sign_callback(transaction_id, outcome, gateway_session_id, secret=None):
    secret = secret if secret is not None else settings.PAYMENT_WEBHOOK_SECRET
    return hmac.new(
        secret.encode('utf-8'),
        _signing_payload(transaction_id, outcome, gateway_session_id),
        hashlib.sha256
    ).hexdigest()


def verify_callback_signature(transaction_id, outcome, gateway_session_id, signature, secret=None):
    """False for a missing or wrong signature, and always False without a configured secret."""
    secret = secret if secret is not None else getattr(settings, 'PAYMENT_WEBHOOK_SECRET', '')
    if not secret or not signature:
        return False
    expected = sign_callback(transaction_id, outcome, gateway_session_id, secret=secret)
    return hmac.compare_digest(expected, signature)


def get_gateway():
    return PaymentGatewayClient()
