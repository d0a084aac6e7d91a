"""
Shared fixtures for the test suite: an in-memory Mongo wrapper, a scripted
payment gateway and small document builders.
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import mongomock
from bson import ObjectId

from config.settings import Settings
from services.payment_gateway import FlutterwaveGateway, PaymentGateway
from utils.encryption import encrypt_sensitive_data, mask_sensitive_data
from utils.errors import PaymentProviderError


class MockMongo:
    """Mimics flask_pymongo.PyMongo: .cx is the client, .db the database"""

    def __init__(self, db_name='onlyaccess_test'):
        self.cx = mongomock.MongoClient()
        self.db = self.cx[db_name]


class FakeSession:
    """ClientSession stand-in: with_transaction runs the callback once"""

    def __init__(self):
        self.transactions = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        return False

    def with_transaction(self, callback):
        self.transactions += 1
        return callback(self)


class _RecordingCollection:
    """Forwards to a mongomock collection, logging (collection, method, session) per call"""

    def __init__(self, collection, calls):
        self._collection = collection
        self._calls = calls

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            # mongomock rejects real sessions
            session = kwargs.pop('session', None)
            self._calls.append((self._collection.name, name, session))
            return attr(*args, **kwargs)
        return call


class _RecordingDatabase:

    def __init__(self, db, calls):
        self._db = db
        self._calls = calls

    def __getitem__(self, name):
        return _RecordingCollection(self._db[name], self._calls)

    def __getattr__(self, name):
        return self[name]


class TransactionalMockMongo(MockMongo):
    """
    MockMongo with transactions on: cx.start_session() hands out one
    FakeSession and every collection call is recorded in .calls.
    """

    def __init__(self, db_name='onlyaccess_test'):
        super().__init__(db_name)
        self.session = FakeSession()
        self.calls = []
        self.store = self.db
        self.db = _RecordingDatabase(self.store, self.calls)
        self.cx = MagicMock()
        self.cx.start_session.return_value = self.session


class FakeGateway(PaymentGateway):
    """
    Scripted provider. Charges are registered with set_charge(); transfers
    succeed unless transfer_results says otherwise.
    """

    name = 'flutterwave'

    def __init__(self, currency='NGN', webhook_hash='test-webhook-hash'):
        super().__init__('FLWSECK_TEST-123', 'https://gateway.test', currency=currency)
        self.webhook_hash = webhook_hash
        self.charges = {}
        self.initialized = []
        self.transfers = []
        self.transfer_results = []
        self.fail_initialize = False
        self.verify_error = None

    def initialize_payment(self, tx_ref, amount, customer, redirect_url,
                           metadata=None, title=None, description=None, currency=None):
        if self.fail_initialize:
            raise PaymentProviderError('Payment service unavailable: connection refused')
        self.initialized.append({
            'tx_ref': tx_ref,
            'amount': amount,
            'customer': customer,
            'redirect_url': redirect_url,
            'metadata': metadata or {},
            'currency': currency or self.currency
        })
        return {'status': 'success', 'paymentLink': f'https://checkout.test/pay/{tx_ref}', 'reference': tx_ref}

    def set_charge(self, tx_ref, amount, currency='NGN', status='successful', provider_id='900001'):
        charge = {
            'successful': status == 'successful',
            'status': status,
            'amount': amount,
            'currency': currency,
            'txRef': tx_ref,
            'providerTransactionId': provider_id,
            'raw': {}
        }
        self.charges[tx_ref] = charge
        self.charges[provider_id] = charge
        return charge

    def _lookup(self, key):
        if self.verify_error is not None:
            raise self.verify_error
        if key not in self.charges:
            raise PaymentProviderError(f'Transaction {key} not found')
        return dict(self.charges[key])

    def verify_payment(self, provider_reference):
        return self._lookup(provider_reference)

    def verify_by_reference(self, tx_ref):
        return self._lookup(tx_ref)

    def transfer_to_bank(self, bank_code, account_number, amount, reference,
                         narration='Creator Payout', account_name=None):
        self.transfers.append({
            'bank_code': bank_code,
            'account_number': account_number,
            'amount': amount,
            'reference': reference
        })
        outcome = self.transfer_results.pop(0) if self.transfer_results else True
        if isinstance(outcome, Exception):
            raise outcome
        return {
            'successful': outcome,
            'status': 'NEW' if outcome else 'FAILED',
            'message': 'Transfer queued' if outcome else 'Insufficient payout balance',
            'reference': reference,
            'raw': {}
        }

    def verify_webhook_signature(self, raw_body, headers):
        return headers.get('verif-hash') == self.webhook_hash

    def parse_webhook(self, payload):
        return FlutterwaveGateway.parse_webhook(self, payload)


def make_settings(**overrides):
    return Settings.for_testing(**overrides)


def make_user(mongo, role='user', **fields):
    user_id = fields.pop('_id', ObjectId())
    now = datetime.utcnow()
    user = {
        '_id': user_id,
        'email': f'{user_id}@example.com',
        'username': f'user_{user_id}',
        'password': 'not-a-real-hash',
        'role': role,
        'profileName': f'User {str(user_id)[-4:]}',
        'subscriptions': [],
        'purchasedContent': [],
        'bookmarks': [],
        'totalEarnings': 0.0,
        'subscriberCount': 0,
        'freeMode': False,
        'creatorSince': now - timedelta(days=365) if role == 'creator' else None,
        'referredBy': None,
        'banks': [],
        'fcmTokens': [],
        'createdAt': now,
    }
    user.update(fields)
    mongo.db.users.insert_one(user)
    return user


def make_bundle(mongo, creator_id, price=1000.0, duration='1 month', is_free=False, **fields):
    bundle = {
        '_id': ObjectId(),
        'creatorId': creator_id,
        'price': price,
        'currency': 'NGN',
        'duration': duration,
        'durationWeight': {'1 day': 1, '1 month': 30, '3 months': 90, '6 months': 180, '1 year': 365}[duration],
        'description': f'{duration} access',
        'isFree': is_free,
        'discountPercent': 0.0,
        'discountExpiresAt': None,
        'createdAt': datetime.utcnow(),
    }
    bundle.update(fields)
    mongo.db.subscription_bundles.insert_one(bundle)
    return bundle


def make_post(mongo, creator_id, special=False, unlock_price=None, **fields):
    post = {
        '_id': ObjectId(),
        'creator': creator_id,
        'contentUrl': 'https://cdn.example.com/post.jpg',
        'mediaItems': [{'url': 'https://cdn.example.com/post.jpg', 'type': 'image'}],
        'type': 'image',
        'writeUp': 'Hello subscribers',
        'special': special,
        'unlockPrice': unlock_price,
        'likes': [],
        'comments': [],
        'totalTips': 0.0,
        'createdAt': datetime.utcnow(),
    }
    post.update(fields)
    mongo.db.posts.insert_one(post)
    return post


def make_pending_payment(mongo, user_id, creator_id, payment_type='subscription', amount=1000.0,
                         tx_ref=None, created_at=None, **fields):
    created_at = created_at or datetime.utcnow()
    payment = {
        '_id': ObjectId(),
        'txRef': tx_ref or f'SUB_{int(created_at.timestamp() * 1000)}_{creator_id}_{ObjectId()}',
        'userId': user_id,
        'creatorId': creator_id,
        'bundleId': None,
        'postId': None,
        'type': payment_type,
        'amount': amount,
        'currency': 'NGN',
        'message': None,
        'duration': None,
        'status': 'pending',
        'provider': 'flutterwave',
        'createdAt': created_at,
        'updatedAt': created_at,
    }
    payment.update(fields)
    mongo.db.payment_transactions.insert_one(payment)
    return payment


def add_bank(mongo, settings, user, account_number='0123456789', bank_code='058'):
    bank = {
        '_id': ObjectId(),
        'bankName': 'GTBank',
        'bankCode': bank_code,
        'accountNumber': encrypt_sensitive_data(account_number, settings),
        'accountNumberMasked': mask_sensitive_data(account_number),
        'accountName': 'Test Creator',
    }
    mongo.db.users.update_one({'_id': user['_id']}, {'$push': {'banks': bank}})
    return bank


def reload(mongo, user):
    return mongo.db.users.find_one({'_id': user['_id']})
