"""
Payment initialization

Turns a user action (subscribe, unlock, tip) into a pending payment intent:

1. validate the target (bundle, post or creator)
2. reserve a unique txRef in payment_transactions (status 'pending')
3. ask the gateway for a hosted payment link

If the gateway call fails the reserved row is removed again, so a provider
error never leaves a pending record behind.
"""

import logging
import time
from datetime import datetime

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from utils.errors import (
    ConflictError, NotFoundError, PaymentProviderError, ValidationError
)
from utils.revenue_split import round_money

logger = logging.getLogger(__name__)

REFERENCE_PREFIXES = {
    'subscription': 'SUB',
    'special': 'SPECIAL',
    'tip': 'TIP',
}

MAX_REFERENCE_ATTEMPTS = 3


def build_reference(payment_type, first_id, second_id, now_ms=None):
    """
    SUB_<ms>_<creatorId>_<bundleId>, SPECIAL_<ms>_<userId>_<postId>
    or TIP_<ms>_<userId>_<creatorId>.
    """
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{REFERENCE_PREFIXES[payment_type]}_{now_ms}_{first_id}_{second_id}"


def parse_object_id(value, field_name):
    if not value or not ObjectId.is_valid(str(value)):
        raise ValidationError(
            f'Invalid {field_name}',
            errors={field_name: [f'A valid {field_name} is required']}
        )
    return ObjectId(str(value))


def effective_price(bundle, now=None):
    """Bundle price after any unexpired discount, rounded to 2 decimals."""
    price = float(bundle.get('price') or 0)
    discount = float(bundle.get('discountPercent') or 0)
    expires_at = bundle.get('discountExpiresAt')
    now = now or datetime.utcnow()

    if discount > 0 and (expires_at is None or expires_at > now):
        return round_money(price * (1 - discount / 100.0))
    return round_money(price)


def _customer(user):
    return {
        'email': user.get('email'),
        'name': user.get('profileName') or user.get('username')
    }


def create_pending_payment(mongo, settings, gateway, payment_type, user, creator_id,
                           amount, reference_ids, redirect_path, bundle_id=None,
                           post_id=None, message=None, duration=None,
                           title=None, description=None):
    """
    Reserve a txRef, then initialize the payment with the provider.

    Returns:
        dict with paymentLink and txRef
    """
    now = datetime.utcnow()
    doc = {
        'userId': user['_id'],
        'creatorId': creator_id,
        'bundleId': bundle_id,
        'postId': post_id,
        'type': payment_type,
        'amount': amount,
        'currency': settings.CURRENCY,
        'message': message,
        'duration': duration,
        'status': 'pending',
        'provider': gateway.name,
        'createdAt': now,
        'updatedAt': now,
    }

    tx_ref = None
    for _ in range(MAX_REFERENCE_ATTEMPTS):
        candidate = build_reference(payment_type, *reference_ids)
        try:
            mongo.db.payment_transactions.insert_one(dict(doc, _id=ObjectId(), txRef=candidate))
            tx_ref = candidate
            break
        except DuplicateKeyError:
            logger.warning(f"[PAYMENT INIT] Reference collision on {candidate}, regenerating")
            time.sleep(0.001)

    if tx_ref is None:
        raise ConflictError('Could not allocate a payment reference, please retry')

    metadata = {
        'user_id': str(user['_id']),
        'creator_id': str(creator_id),
        'type': payment_type,
    }
    if bundle_id:
        metadata['bundle_id'] = str(bundle_id)
    if post_id:
        metadata['post_id'] = str(post_id)

    try:
        result = gateway.initialize_payment(
            tx_ref,
            amount,
            _customer(user),
            f"{settings.BASE_URL}{redirect_path}",
            metadata=metadata,
            title=title,
            description=description,
            currency=settings.CURRENCY
        )
    except PaymentProviderError:
        mongo.db.payment_transactions.delete_one({'txRef': tx_ref, 'status': 'pending'})
        logger.error(f"[PAYMENT INIT] Provider failed for {tx_ref}, pending record removed")
        raise

    mongo.db.payment_transactions.update_one(
        {'txRef': tx_ref},
        {'$set': {'paymentLink': result['paymentLink'], 'updatedAt': datetime.utcnow()}}
    )
    logger.info(f"[PAYMENT INIT] {payment_type} {tx_ref} for {amount} {settings.CURRENCY}")

    return {'paymentLink': result['paymentLink'], 'txRef': tx_ref}


def _load_creator(mongo, creator_id):
    creator = mongo.db.users.find_one({'_id': creator_id})
    if not creator or creator.get('role') != 'creator':
        raise NotFoundError('Creator not found')
    return creator


def init_subscription_payment(mongo, settings, gateway, user, creator_id, bundle_id):
    creator_id = parse_object_id(creator_id, 'creatorId')
    bundle_id = parse_object_id(bundle_id, 'bundleId')

    if creator_id == user['_id']:
        raise ValidationError('You cannot subscribe to yourself')

    creator = _load_creator(mongo, creator_id)
    bundle = mongo.db.subscription_bundles.find_one({'_id': bundle_id, 'creatorId': creator_id})
    if not bundle:
        raise NotFoundError('Subscription bundle not found')
    if bundle.get('isFree'):
        raise ValidationError('This bundle is free, use the free subscription endpoint')

    amount = effective_price(bundle)
    if amount <= 0:
        raise ValidationError('Bundle price must be greater than zero')

    return create_pending_payment(
        mongo, settings, gateway, 'subscription', user, creator_id, amount,
        reference_ids=(creator_id, bundle_id),
        redirect_path='/profile/verify-payment',
        bundle_id=bundle_id,
        duration=bundle['duration'],
        title='Subscription',
        description=f"{bundle['duration']} subscription to {creator.get('username')}"
    )


def init_special_payment(mongo, settings, gateway, user, post_id):
    post_id = parse_object_id(post_id, 'postId')
    post = mongo.db.posts.find_one({'_id': post_id})
    if not post:
        raise NotFoundError('Post not found')
    if not post.get('special') or not post.get('unlockPrice'):
        raise ValidationError('This post is not special content')
    if post['creator'] == user['_id']:
        raise ValidationError('You already own this content')

    already = mongo.db.users.find_one({'_id': user['_id'], 'purchasedContent.contentId': post_id})
    if already:
        raise ConflictError('You have already unlocked this content')

    amount = round_money(post['unlockPrice'])
    return create_pending_payment(
        mongo, settings, gateway, 'special', user, post['creator'], amount,
        reference_ids=(user['_id'], post_id),
        redirect_path='/profile/verify-special-payment',
        post_id=post_id,
        title='Unlock Special Content',
        description='One-time content unlock'
    )


def init_tip_payment(mongo, settings, gateway, user, creator_id, amount, message=None, post_id=None):
    try:
        amount = round_money(amount)
    except (ValueError, TypeError, ArithmeticError):
        raise ValidationError('Invalid tip amount', errors={'amount': ['Amount must be a number']})

    if amount < settings.MIN_TIP_AMOUNT:
        raise ValidationError(
            f'Minimum tip is {settings.MIN_TIP_AMOUNT:.0f} {settings.CURRENCY}',
            errors={'amount': [f'Minimum tip is {settings.MIN_TIP_AMOUNT:.0f}']}
        )

    if post_id is not None:
        post_id = parse_object_id(post_id, 'postId')
        post = mongo.db.posts.find_one({'_id': post_id})
        if not post:
            raise NotFoundError('Post not found')
        creator_id = post['creator']
    else:
        creator_id = parse_object_id(creator_id, 'creatorId')

    if creator_id == user['_id']:
        raise ValidationError('You cannot tip yourself')

    creator = _load_creator(mongo, creator_id)
    message = (message or '').strip() or None

    return create_pending_payment(
        mongo, settings, gateway, 'tip', user, creator_id, amount,
        reference_ids=(user['_id'], creator_id),
        redirect_path='/profile/verify-tip-payment',
        post_id=post_id,
        message=message,
        title='Tip',
        description=f"Tip to {creator.get('username')}"
    )


def cancel_pending_payment(mongo, tx_ref):
    """Provider redirect said the user cancelled; pending -> cancelled."""
    result = mongo.db.payment_transactions.update_one(
        {'txRef': tx_ref, 'status': 'pending'},
        {'$set': {'status': 'cancelled', 'updatedAt': datetime.utcnow()}}
    )
    if result.modified_count:
        logger.info(f"[PAYMENT CANCEL] {tx_ref} cancelled by user")
    return result.modified_count > 0


def find_pending_subscription(mongo, user_id, creator_id, bundle_id):
    """Newest pending subscription payment for a (user, creator, bundle) triple."""
    return mongo.db.payment_transactions.find_one(
        {
            'userId': ObjectId(str(user_id)),
            'creatorId': ObjectId(str(creator_id)),
            'bundleId': ObjectId(str(bundle_id)),
            'type': 'subscription',
            'status': 'pending'
        },
        sort=[('createdAt', -1)]
    )
