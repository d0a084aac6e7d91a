"""
Payment Gateway Adapters

One interface for every payment provider the platform can run on:

- initialize_payment: create a hosted payment link for a payment intent
- verify_payment / verify_by_reference: confirm a charge with the provider
- transfer_to_bank: pay out to a creator's bank account
- verify_webhook_signature / parse_webhook: authenticate and normalize webhooks

Callers only ever see the normalized dicts returned here, never raw
provider payloads (those are kept under 'raw' for auditing).
"""

import hashlib
import hmac
import logging
from typing import Any, Dict

import requests

from utils.errors import PaymentProviderError, PaymentProviderUnavailableError, ValidationError

logger = logging.getLogger(__name__)

# Normalized charge statuses that mean the charge will never succeed
FAILED_PROVIDER_STATUSES = ('failed', 'abandoned', 'cancelled', 'reversed')


class PaymentGateway:
    """Base class for provider adapters"""

    name = 'base'

    def __init__(self, secret_key, base_url, timeout=15, currency='NGN'):
        self.secret_key = secret_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.currency = currency

    def _headers(self):
        return {
            'Authorization': f'Bearer {self.secret_key}',
            'Content-Type': 'application/json'
        }

    def _request(self, method, endpoint, data=None, params=None):
        """Make an authenticated request and return the decoded JSON body"""
        url = f"{self.base_url}{endpoint}"
        try:
            response = requests.request(
                method,
                url,
                headers=self._headers(),
                json=data,
                params=params,
                timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"[{self.name.upper()}] {method} {endpoint} failed: {e}")
            raise PaymentProviderUnavailableError(f'Payment service unavailable: {e}')

        logger.info(f"[{self.name.upper()}] {method} {endpoint}: {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 500:
            raise PaymentProviderUnavailableError(
                f'Payment service error: HTTP {response.status_code}'
            )
        if response.status_code >= 400 and not isinstance(body, dict):
            raise PaymentProviderError(
                f'Payment service error: HTTP {response.status_code}'
            )
        if not isinstance(body, dict):
            raise PaymentProviderUnavailableError('Payment service returned an invalid response')
        return body

    def initialize_payment(self, tx_ref, amount, customer, redirect_url,
                           metadata=None, title=None, description=None, currency=None):
        raise NotImplementedError

    def verify_payment(self, provider_reference):
        raise NotImplementedError

    def verify_by_reference(self, tx_ref):
        raise NotImplementedError

    def transfer_to_bank(self, bank_code, account_number, amount, reference,
                         narration='Creator Payout', account_name=None):
        raise NotImplementedError

    def verify_webhook_signature(self, raw_body: bytes, headers) -> bool:
        raise NotImplementedError

    def parse_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError


class FlutterwaveGateway(PaymentGateway):
    """Flutterwave v3 (amounts in major currency units)"""

    name = 'flutterwave'

    def __init__(self, secret_key, base_url='https://api.flutterwave.com/v3',
                 webhook_hash='', timeout=15, currency='NGN'):
        super().__init__(secret_key, base_url, timeout=timeout, currency=currency)
        self.webhook_hash = webhook_hash

    def initialize_payment(self, tx_ref, amount, customer, redirect_url,
                           metadata=None, title=None, description=None, currency=None):
        payload = {
            'tx_ref': tx_ref,
            'amount': amount,
            'currency': currency or self.currency,
            'redirect_url': redirect_url,
            'customer': {
                'email': customer.get('email'),
                'name': customer.get('name')
            },
            'meta': metadata or {},
            'customizations': {
                'title': title or 'OnlyAccess Payment',
                'description': description or ''
            }
        }

        result = self._request('POST', '/payments', data=payload)

        if result.get('status') != 'success' or not result.get('data', {}).get('link'):
            raise PaymentProviderError(result.get('message') or 'Failed to initialize payment')

        return {
            'status': 'success',
            'paymentLink': result['data']['link'],
            'reference': tx_ref
        }

    def _normalize_charge(self, result):
        data = result.get('data') or {}
        return {
            'successful': result.get('status') == 'success' and data.get('status') == 'successful',
            'status': data.get('status') or result.get('status'),
            'amount': data.get('amount'),
            'currency': data.get('currency'),
            'txRef': data.get('tx_ref'),
            'providerTransactionId': str(data['id']) if data.get('id') is not None else None,
            'raw': result
        }

    def verify_payment(self, provider_reference):
        if not provider_reference:
            raise ValidationError('Transaction ID is required')
        result = self._request('GET', f'/transactions/{provider_reference}/verify')
        return self._normalize_charge(result)

    def verify_by_reference(self, tx_ref):
        result = self._request('GET', '/transactions/verify_by_reference', params={'tx_ref': tx_ref})
        return self._normalize_charge(result)

    def transfer_to_bank(self, bank_code, account_number, amount, reference,
                         narration='Creator Payout', account_name=None):
        payload = {
            'account_bank': bank_code,
            'account_number': account_number,
            'amount': amount,
            'narration': narration,
            'currency': self.currency,
            'reference': reference
        }
        result = self._request('POST', '/transfers', data=payload)
        data = result.get('data') or {}
        return {
            'successful': result.get('status') == 'success',
            'status': data.get('status') or result.get('status'),
            'message': result.get('message'),
            'reference': reference,
            'raw': result
        }

    def verify_webhook_signature(self, raw_body, headers):
        signature = headers.get('verif-hash')
        if not signature or not self.webhook_hash:
            return False
        return hmac.compare_digest(signature, self.webhook_hash)

    def parse_webhook(self, payload):
        event = payload.get('event')
        data = payload.get('data') or {}
        # Flutterwave reports card/bank charges as charge.completed
        if event == 'charge.completed' and data.get('status') == 'successful':
            event = 'charge.success'
        return {
            'event': event,
            'txRef': data.get('tx_ref') or payload.get('tx_ref'),
            'providerReference': str(data['id']) if data.get('id') is not None else None,
            'metadata': payload.get('metadata') or payload.get('meta_data') or data.get('meta') or {}
        }


class PaystackGateway(PaymentGateway):
    """Paystack (amounts in kobo on the wire)"""

    name = 'paystack'

    def __init__(self, secret_key, base_url='https://api.paystack.co', timeout=15, currency='NGN'):
        super().__init__(secret_key, base_url, timeout=timeout, currency=currency)

    def initialize_payment(self, tx_ref, amount, customer, redirect_url,
                           metadata=None, title=None, description=None, currency=None):
        payload = {
            'email': customer.get('email'),
            'amount': int(round(float(amount) * 100)),
            'currency': currency or self.currency,
            'reference': tx_ref,
            'callback_url': redirect_url,
            'metadata': dict(metadata or {}, title=title, description=description)
        }

        result = self._request('POST', '/transaction/initialize', data=payload)

        if not result.get('status'):
            raise PaymentProviderError(result.get('message') or 'Failed to initialize payment')

        return {
            'status': 'success',
            'paymentLink': result['data']['authorization_url'],
            'reference': tx_ref
        }

    def _normalize_charge(self, result):
        data = result.get('data') or {}
        amount = data.get('amount')
        return {
            'successful': bool(result.get('status')) and data.get('status') == 'success',
            'status': data.get('status'),
            'amount': amount / 100.0 if amount is not None else None,
            'currency': data.get('currency'),
            'txRef': data.get('reference'),
            'providerTransactionId': str(data['id']) if data.get('id') is not None else None,
            'raw': result
        }

    def verify_payment(self, provider_reference):
        if not provider_reference:
            raise ValidationError('Payment reference is required')
        result = self._request('GET', f'/transaction/verify/{provider_reference}')
        return self._normalize_charge(result)

    def verify_by_reference(self, tx_ref):
        # Paystack verifies by our own reference
        return self.verify_payment(tx_ref)

    def _create_recipient(self, bank_code, account_number, account_name):
        result = self._request('POST', '/transferrecipient', data={
            'type': 'nuban',
            'name': account_name or account_number,
            'account_number': account_number,
            'bank_code': bank_code,
            'currency': self.currency
        })
        if not result.get('status'):
            raise PaymentProviderError(result.get('message') or 'Failed to create transfer recipient')
        return result['data']['recipient_code']

    def transfer_to_bank(self, bank_code, account_number, amount, reference,
                         narration='Creator Payout', account_name=None):
        recipient = self._create_recipient(bank_code, account_number, account_name)
        result = self._request('POST', '/transfer', data={
            'source': 'balance',
            'amount': int(round(float(amount) * 100)),
            'recipient': recipient,
            'reason': narration,
            'reference': reference
        })
        data = result.get('data') or {}
        return {
            'successful': bool(result.get('status')) and data.get('status') in ('success', 'pending'),
            'status': data.get('status'),
            'message': result.get('message'),
            'reference': reference,
            'raw': result
        }

    def verify_webhook_signature(self, raw_body, headers):
        signature = headers.get('x-paystack-signature')
        if not signature:
            return False
        expected_signature = hmac.new(
            self.secret_key.encode('utf-8'),
            raw_body,
            hashlib.sha512
        ).hexdigest()
        return hmac.compare_digest(signature, expected_signature)

    def parse_webhook(self, payload):
        data = payload.get('data') or {}
        return {
            'event': payload.get('event'),
            'txRef': data.get('reference'),
            'providerReference': data.get('reference'),
            'metadata': payload.get('metadata') or data.get('metadata') or {}
        }


def get_payment_gateway(settings) -> PaymentGateway:
    """Build the adapter selected by PAYMENT_PROVIDER"""
    provider = settings.PAYMENT_PROVIDER
    if provider == 'flutterwave':
        return FlutterwaveGateway(
            settings.FLUTTERWAVE_SECRET_KEY,
            base_url=settings.FLUTTERWAVE_BASE_URL,
            webhook_hash=settings.FLUTTERWAVE_WEBHOOK_HASH,
            timeout=settings.PAYMENT_TIMEOUT_SECONDS,
            currency=settings.CURRENCY
        )
    if provider == 'paystack':
        return PaystackGateway(
            settings.PAYSTACK_SECRET_KEY,
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.PAYMENT_TIMEOUT_SECONDS,
            currency=settings.CURRENCY
        )
    raise ValueError(f"Unsupported payment provider: {provider}")
