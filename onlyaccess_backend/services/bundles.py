"""
Subscription bundle catalog

A creator runs in exactly one of two modes:

- paid: any number of priced bundles
- free: a single free bundle and nothing else

Switching modes swaps the catalog atomically; switching back to paid also
ends every active free subscription to that creator.
"""

import logging
from datetime import datetime

from bson import ObjectId

from services.entitlements import refresh_subscriber_count
from services.payments import effective_price, parse_object_id
from utils.atomic_transactions import run_atomically, session_kwargs
from utils.durations import duration_weight, is_valid_duration, VALID_DURATIONS
from utils.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

FREE_BUNDLE_DESCRIPTION = 'Free subscription'
FREE_BUNDLE_DURATION = '1 month'


def _require_creator(user):
    if user.get('role') != 'creator':
        raise PermissionDeniedError('Only creators can manage bundles')


def _parse_discount(data):
    errors = {}
    discount = data.get('discountPercent', 0) or 0
    try:
        discount = float(discount)
    except (TypeError, ValueError):
        errors['discountPercent'] = ['Discount must be a number']
        return None, None, errors
    if not 0 <= discount <= 100:
        errors['discountPercent'] = ['Discount must be between 0 and 100']

    expires_at = data.get('discountExpiresAt')
    if expires_at:
        try:
            expires_at = datetime.fromisoformat(str(expires_at).replace('Z', ''))
        except ValueError:
            errors['discountExpiresAt'] = ['Use an ISO 8601 date']
    else:
        expires_at = None
    return discount, expires_at, errors


def create_bundle(mongo, settings, user, data):
    """Create a paid bundle for the calling creator."""
    _require_creator(user)

    if user.get('freeMode'):
        raise ConflictError('Disable free mode before creating paid bundles')

    errors = {}
    try:
        price = float(data.get('price'))
        if price <= 0:
            errors['price'] = ['Price must be greater than zero']
    except (TypeError, ValueError):
        price = None
        errors['price'] = ['Price must be a number']

    duration = data.get('duration')
    if not is_valid_duration(duration):
        errors['duration'] = [f'Must be one of: {", ".join(VALID_DURATIONS)}']

    description = data.get('description')
    description = description.strip() if isinstance(description, str) else ''
    if not description:
        errors['description'] = ['Description is required']

    discount, discount_expires_at, discount_errors = _parse_discount(data)
    errors.update(discount_errors)

    if errors:
        raise ValidationError('Validation failed', errors=errors)

    now = datetime.utcnow()
    bundle = {
        '_id': ObjectId(),
        'creatorId': user['_id'],
        'price': round(price, 2),
        'currency': data.get('currency') or settings.CURRENCY,
        'duration': duration,
        'durationWeight': duration_weight(duration),
        'description': description,
        'isFree': False,
        'discountPercent': discount,
        'discountExpiresAt': discount_expires_at,
        'createdAt': now,
        'updatedAt': now
    }
    mongo.db.subscription_bundles.insert_one(bundle)
    logger.info(f"[BUNDLE] Creator {user['_id']} created {duration} bundle at {bundle['price']}")
    return bundle


def list_bundles(mongo, creator_id, now=None):
    """Bundles for a creator, shortest duration first, with their effective price."""
    creator_id = parse_object_id(creator_id, 'creatorId')
    bundles = list(mongo.db.subscription_bundles.find({'creatorId': creator_id}).sort('durationWeight', 1))
    for bundle in bundles:
        bundle['effectivePrice'] = effective_price(bundle, now=now)
    return bundles


def delete_bundle(mongo, user, bundle_id):
    _require_creator(user)
    bundle_id = parse_object_id(bundle_id, 'bundleId')

    bundle = mongo.db.subscription_bundles.find_one({'_id': bundle_id})
    if not bundle:
        raise NotFoundError('Bundle not found')
    if bundle['creatorId'] != user['_id']:
        raise PermissionDeniedError('You can only delete your own bundles')
    if bundle.get('isFree'):
        raise ConflictError('Disable free mode to remove the free bundle')

    mongo.db.subscription_bundles.delete_one({'_id': bundle_id})
    logger.info(f"[BUNDLE] Creator {user['_id']} deleted bundle {bundle_id}")


def _expire_free_subscriptions(mongo, creator_id, now, session):
    """Expire every active free subscription to creator_id and return the affected user ids."""
    kw = session_kwargs(session)
    subscribers = list(mongo.db.users.find(
        {'subscriptions': {'$elemMatch': {'creatorId': creator_id, 'status': 'active', 'isFree': True}}},
        {'subscriptions': 1},
        **kw
    ))

    affected = []
    for subscriber in subscribers:
        # Positional update per entry; the array itself is never rewritten
        while mongo.db.users.update_one(
            {'_id': subscriber['_id'], 'subscriptions': {'$elemMatch': {
                'creatorId': creator_id, 'status': 'active', 'isFree': True
            }}},
            {'$set': {'subscriptions.$.status': 'expired', 'subscriptions.$.subscriptionExpiry': now}},
            **kw
        ).modified_count:
            pass
        affected.append(subscriber['_id'])
    return affected


def set_free_mode(mongo, settings, user, enabled, duration=None, description=None, now=None):
    """
    Switch a creator between free and paid mode.

    enabled=True: delete all paid bundles, create one free bundle.
    enabled=False: delete the free bundle, expire free subscriptions, drop the
    creator's posts from those subscribers' bookmarks.
    """
    _require_creator(user)
    now = now or datetime.utcnow()
    creator_id = user['_id']
    duration = duration or FREE_BUNDLE_DURATION
    if enabled and not is_valid_duration(duration):
        raise ValidationError('Invalid duration', errors={'duration': [f'Must be one of: {", ".join(VALID_DURATIONS)}']})

    def _toggle(session):
        kw = session_kwargs(session)
        summary = {'freeMode': enabled, 'deletedBundles': 0, 'expiredSubscriptions': 0}

        if enabled:
            deleted = mongo.db.subscription_bundles.delete_many(
                {'creatorId': creator_id, 'isFree': {'$ne': True}}, **kw
            )
            summary['deletedBundles'] = deleted.deleted_count

            existing_free = mongo.db.subscription_bundles.find_one(
                {'creatorId': creator_id, 'isFree': True}, **kw
            )
            if existing_free is None:
                free_bundle = {
                    '_id': ObjectId(),
                    'creatorId': creator_id,
                    'price': 0.0,
                    'currency': settings.CURRENCY,
                    'duration': duration,
                    'durationWeight': duration_weight(duration),
                    'description': description or FREE_BUNDLE_DESCRIPTION,
                    'isFree': True,
                    'discountPercent': 0.0,
                    'discountExpiresAt': None,
                    'createdAt': now,
                    'updatedAt': now
                }
                mongo.db.subscription_bundles.insert_one(free_bundle, **kw)
                summary['freeBundleId'] = free_bundle['_id']
            else:
                summary['freeBundleId'] = existing_free['_id']
        else:
            deleted = mongo.db.subscription_bundles.delete_many(
                {'creatorId': creator_id, 'isFree': True}, **kw
            )
            summary['deletedBundles'] = deleted.deleted_count

            affected = _expire_free_subscriptions(mongo, creator_id, now, session)
            summary['expiredSubscriptions'] = len(affected)

            if affected:
                post_ids = [p['_id'] for p in mongo.db.posts.find({'creator': creator_id}, {'_id': 1}, **kw)]
                if post_ids:
                    mongo.db.users.update_many(
                        {'_id': {'$in': affected}},
                        {'$pull': {'bookmarks': {'$in': post_ids}}},
                        **kw
                    )
            refresh_subscriber_count(mongo, creator_id, session=session)

        mongo.db.users.update_one(
            {'_id': creator_id},
            {'$set': {'freeMode': enabled, 'updatedAt': now}},
            **kw
        )
        return summary

    summary = run_atomically(mongo, _toggle, use_transactions=settings.MONGO_TRANSACTIONS)
    logger.info(f"[FREE MODE] Creator {creator_id}: {summary}")
    return summary
