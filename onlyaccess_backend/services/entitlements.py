"""
Entitlement granting

settle_payment is the only place a verified payment turns into state:

    pending (or cancelled / failed) payment --claim--> completed
        + subscription / purchased content / post tip total
        + ledger row with the revenue split
        + creator (and referrer) earnings

All of it runs in one MongoDB transaction keyed by txRef. The claim is a
compare-and-swap on status, so a second verification of the same txRef
(redirect and webhook racing, a user refreshing the callback page) finds
nothing to claim and returns the existing ledger row instead of granting
twice.
"""

import logging
from datetime import datetime

from bson import ObjectId
from pymongo import ReturnDocument

from blueprints.notifications import create_user_notification
from services import chat
from services.access import has_active_subscription
from services.payment_gateway import FAILED_PROVIDER_STATUSES
from services.payments import parse_object_id
from utils.atomic_transactions import (
    mark_payment_for_reconciliation, run_atomically, session_kwargs
)
from utils.durations import compute_expiry
from utils.errors import (
    AmountMismatchError, ConflictError, NotFoundError, PaymentStateError,
    PaymentVerificationError, ValidationError
)
from utils.revenue_split import amounts_match, split_from_settings

logger = logging.getLogger(__name__)

LEDGER_DESCRIPTIONS = {
    'subscription': 'Subscription payment',
    'special': 'Special content unlock',
    'tip': 'Tip',
}

# A provider-confirmed charge may still settle a row the redirect cancelled or
# an earlier check failed; needs_reconciliation rows are left to an admin
SETTLEABLE_STATUSES = ('pending', 'cancelled', 'failed')


def _mark_failed(mongo, tx_ref, reason, verified=None):
    update = {
        'status': 'failed',
        'failureReason': reason,
        'updatedAt': datetime.utcnow()
    }
    if verified and verified.get('providerTransactionId'):
        update['providerTransactionId'] = verified['providerTransactionId']

    # Only a pending row may fail; a concurrent settlement wins
    result = mongo.db.payment_transactions.update_one(
        {'txRef': tx_ref, 'status': 'pending'},
        {'$set': update}
    )
    if result.modified_count:
        logger.warning(f"[SETTLE] {tx_ref} marked failed: {reason}")


def mark_payment_failed(mongo, tx_ref, reason):
    _mark_failed(mongo, tx_ref, reason)


def refresh_subscriber_count(mongo, creator_id, session=None):
    count = mongo.db.users.count_documents(
        {'subscriptions': {'$elemMatch': {'creatorId': creator_id, 'status': 'active'}}},
        **session_kwargs(session)
    )
    mongo.db.users.update_one(
        {'_id': creator_id},
        {'$set': {'subscriberCount': count}},
        **session_kwargs(session)
    )
    return count


def grant_subscription(mongo, user_id, creator_id, bundle_id, duration, now,
                       is_free=False, tx_ref=None, session=None):
    """Replace any active subscription to creator_id with a fresh one."""
    entry = {
        'creatorId': creator_id,
        'subscriptionBundle': bundle_id,
        'subscribedAt': now,
        'subscriptionExpiry': compute_expiry(duration, now),
        'status': 'active',
        'isFree': is_free,
        'txRef': tx_ref
    }
    mongo.db.users.update_one(
        {'_id': user_id},
        {'$pull': {'subscriptions': {'creatorId': creator_id, 'status': 'active'}}},
        **session_kwargs(session)
    )
    mongo.db.users.update_one(
        {'_id': user_id},
        {'$push': {'subscriptions': entry}},
        **session_kwargs(session)
    )
    refresh_subscriber_count(mongo, creator_id, session=session)
    return entry


def _grant_special(mongo, payment, ledger_id, now, session):
    kw = session_kwargs(session)
    owned = mongo.db.users.find_one(
        {'_id': payment['userId'], 'purchasedContent.contentId': payment['postId']},
        {'_id': 1},
        **kw
    )
    if owned:
        logger.info(f"[SETTLE] {payment['txRef']}: content already owned, entitlement unchanged")
        return

    mongo.db.users.update_one(
        {'_id': payment['userId']},
        {'$push': {'purchasedContent': {
            'contentId': payment['postId'],
            'purchasedAt': now,
            'amount': payment['amount'],
            'transactionId': ledger_id,
            'txRef': payment['txRef']
        }}},
        **kw
    )


def _apply_grant(mongo, settings, payment, now, session):
    """Everything that must happen exactly once after a successful claim."""
    kw = session_kwargs(session)
    payment_type = payment['type']

    creator = mongo.db.users.find_one({'_id': payment['creatorId']}, **kw)
    if not creator:
        raise NotFoundError('Creator not found')

    ledger_id = ObjectId()

    if payment_type == 'subscription':
        duration = payment.get('duration')
        if not duration:
            bundle = mongo.db.subscription_bundles.find_one({'_id': payment['bundleId']}, **kw)
            if not bundle:
                raise NotFoundError('Subscription bundle not found')
            duration = bundle['duration']
        grant_subscription(
            mongo, payment['userId'], payment['creatorId'], payment['bundleId'],
            duration, now, tx_ref=payment['txRef'], session=session
        )
    elif payment_type == 'special':
        _grant_special(mongo, payment, ledger_id, now, session)
    elif payment_type == 'tip':
        if payment.get('postId'):
            mongo.db.posts.update_one(
                {'_id': payment['postId']},
                {'$inc': {'totalTips': payment['amount']}},
                **kw
            )
    else:
        raise ValidationError(f"Unknown payment type: {payment_type}")

    split = split_from_settings(payment['amount'], creator, settings, now=now)

    ledger = {
        '_id': ledger_id,
        'user': payment['userId'],
        'creator': payment['creatorId'],
        'post': payment.get('postId'),
        'subscriptionBundle': payment.get('bundleId'),
        'type': payment_type,
        'amount': payment['amount'],
        'currency': payment.get('currency'),
        'description': LEDGER_DESCRIPTIONS[payment_type],
        'creatorShare': split['creatorShare'],
        'platformShare': split['platformShare'],
        'referrerShare': split['referrerShare'],
        'referrerId': split['referrerId'],
        'txRef': payment['txRef'],
        'createdAt': now
    }
    mongo.db.transactions.insert_one(ledger, **kw)

    mongo.db.users.update_one(
        {'_id': payment['creatorId']},
        {'$inc': {'totalEarnings': split['creatorShare']}},
        **kw
    )
    if split['referrerId'] and split['referrerShare'] > 0:
        mongo.db.users.update_one(
            {'_id': split['referrerId']},
            {'$inc': {'totalEarnings': split['referrerShare']}},
            **kw
        )

    mongo.db.payment_transactions.update_one(
        {'txRef': payment['txRef']},
        {'$set': {'ledgerTransactionId': ledger_id}},
        **kw
    )
    return ledger


def _after_grant(mongo, payment, ledger, push_service=None):
    """Notifications, chat and push. Failures here never undo the grant."""
    payment_type = payment['type']
    amount = payment['amount']
    currency = payment.get('currency') or ''

    titles = {
        'subscription': ('New subscriber', 'Subscription active'),
        'special': ('Content unlocked', 'Content unlocked'),
        'tip': ('You received a tip', 'Tip sent'),
    }
    creator_title, payer_title = titles[payment_type]

    create_user_notification(
        mongo, payment['creatorId'], 'earning' if payment_type != 'tip' else 'tip',
        creator_title,
        f"You earned {ledger['creatorShare']:.2f} {currency} from a {payment_type} payment",
        related_id=str(ledger['_id']),
        metadata={'txRef': payment['txRef'], 'amount': amount}
    )
    create_user_notification(
        mongo, payment['userId'], 'purchase' if payment_type == 'special' else payment_type,
        payer_title,
        f"Your payment of {amount:.2f} {currency} was successful",
        related_id=str(ledger['_id']),
        metadata={'txRef': payment['txRef']}
    )

    if payment_type == 'tip' and payment.get('message'):
        try:
            chat.append_tip_message(mongo, payment['userId'], payment['creatorId'],
                                    payment['message'], amount)
        except Exception as e:
            logger.error(f"[SETTLE] {payment['txRef']}: tip chat message failed: {e}")

    if push_service is not None:
        try:
            push_service.send_to_user(
                mongo, payment['creatorId'], creator_title,
                f"{amount:.2f} {currency} {payment_type} payment received",
                data={'type': payment_type, 'txRef': payment['txRef']}
            )
        except Exception as e:
            logger.error(f"[SETTLE] {payment['txRef']}: push notification failed: {e}")


def settle_payment(mongo, settings, tx_ref, verified, push_service=None, now=None):
    """
    Settle a verified payment exactly once.

    Args:
        mongo: PyMongo wrapper
        settings: Settings
        tx_ref: Payment reference (idempotency key)
        verified: Normalized charge from PaymentGateway.verify_payment
        push_service: Optional PushService for the creator alert

    Returns:
        dict: {'alreadySettled': bool, 'payment': doc, 'transaction': ledger doc}

    Raises:
        NotFoundError, PaymentStateError, PaymentVerificationError, AmountMismatchError
    """
    payment = mongo.db.payment_transactions.find_one({'txRef': tx_ref})
    if not payment:
        raise NotFoundError('Payment transaction not found')

    if payment['status'] == 'completed':
        logger.info(f"[SETTLE] {tx_ref} already completed, skipping")
        return {
            'alreadySettled': True,
            'payment': payment,
            'transaction': mongo.db.transactions.find_one({'txRef': tx_ref})
        }
    if payment['status'] not in SETTLEABLE_STATUSES or payment.get('reconciliationResolved'):
        raise PaymentStateError(f"Payment is {payment['status']}")

    # A charge for another reference says nothing about this payment
    if verified.get('txRef') and verified['txRef'] != tx_ref:
        logger.warning(f"[SETTLE] {tx_ref}: provider charge belongs to {verified['txRef']}")
        raise PaymentVerificationError('Payment reference does not match')

    if not verified.get('successful'):
        if payment['status'] != 'pending':
            raise PaymentStateError(f"Payment is {payment['status']}")
        provider_status = verified.get('status')
        if provider_status in FAILED_PROVIDER_STATUSES:
            _mark_failed(mongo, tx_ref, f"provider_status:{provider_status}", verified)
            raise PaymentVerificationError('Payment was not successful')
        # Still in flight at the provider; the webhook or the sweep settles it
        logger.info(f"[SETTLE] {tx_ref} not complete at provider ({provider_status}), left pending")
        raise PaymentVerificationError('Payment is not complete yet')

    currency_ok = (verified.get('currency') or '').upper() == (payment.get('currency') or '').upper()
    if not amounts_match(payment['amount'], verified.get('amount')) or not currency_ok:
        logger.error(
            f"[SETTLE] {tx_ref} amount mismatch: expected {payment['amount']} {payment.get('currency')}, "
            f"got {verified.get('amount')} {verified.get('currency')}"
        )
        _mark_failed(mongo, tx_ref, 'amount_mismatch', verified)
        raise AmountMismatchError('Paid amount does not match the expected amount')

    now = now or datetime.utcnow()

    def _grant(session):
        claimed = mongo.db.payment_transactions.find_one_and_update(
            {'txRef': tx_ref, 'status': {'$in': list(SETTLEABLE_STATUSES)}, 'reconciliationResolved': {'$ne': True}},
            {'$set': {
                'status': 'completed',
                'providerTransactionId': verified.get('providerTransactionId'),
                'settledAt': now,
                'updatedAt': now
            }, '$unset': {'failureReason': ''}},
            return_document=ReturnDocument.BEFORE,
            **session_kwargs(session)
        )
        if claimed is None:
            return None
        if claimed['status'] != 'pending':
            logger.warning(f"[SETTLE] {tx_ref} was {claimed['status']}, provider confirms payment; settling")
        claimed.update({
            'status': 'completed',
            'providerTransactionId': verified.get('providerTransactionId'),
            'settledAt': now,
            'updatedAt': now
        })
        claimed.pop('failureReason', None)
        try:
            return claimed, _apply_grant(mongo, settings, claimed, now, session)
        except Exception as e:
            if session is None:
                # Without a transaction the claim stays committed
                mark_payment_for_reconciliation(mongo, tx_ref, f'grant_failed: {e}')
            raise

    result = run_atomically(mongo, _grant, use_transactions=settings.MONGO_TRANSACTIONS)

    if result is None:
        logger.info(f"[SETTLE] {tx_ref} claimed concurrently, skipping")
        return {
            'alreadySettled': True,
            'payment': mongo.db.payment_transactions.find_one({'txRef': tx_ref}),
            'transaction': mongo.db.transactions.find_one({'txRef': tx_ref})
        }

    claimed, ledger = result
    logger.info(
        f"[SETTLE] {tx_ref} settled: {payment['type']} {payment['amount']} "
        f"(creator {ledger['creatorShare']}, platform {ledger['platformShare']}, "
        f"referrer {ledger['referrerShare']})"
    )

    _after_grant(mongo, claimed, ledger, push_service=push_service)

    return {'alreadySettled': False, 'payment': claimed, 'transaction': ledger}


def subscribe_free(mongo, settings, user, creator_id, bundle_id, now=None):
    """Grant a free bundle: no payment, no ledger row."""
    creator_id = parse_object_id(creator_id, 'creatorId')
    bundle_id = parse_object_id(bundle_id, 'bundleId')
    now = now or datetime.utcnow()

    if creator_id == user['_id']:
        raise ValidationError('You cannot subscribe to yourself')

    bundle = mongo.db.subscription_bundles.find_one({'_id': bundle_id})
    if not bundle or bundle['creatorId'] != creator_id:
        raise NotFoundError('Subscription bundle not found')
    if not bundle.get('isFree'):
        raise ValidationError('This bundle requires payment')

    if has_active_subscription(user, creator_id, now=now):
        raise ConflictError('You already have an active subscription to this creator')

    def _grant(session):
        return grant_subscription(
            mongo, user['_id'], creator_id, bundle_id, bundle['duration'], now,
            is_free=True, session=session
        )

    entry = run_atomically(mongo, _grant, use_transactions=settings.MONGO_TRANSACTIONS)
    logger.info(f"[FREE SUBSCRIBE] {user['_id']} -> {creator_id} until {entry['subscriptionExpiry']}")

    create_user_notification(
        mongo, creator_id, 'subscription', 'New subscriber',
        f"{user.get('username')} subscribed to your free bundle",
        related_id=str(bundle_id)
    )
    return entry
