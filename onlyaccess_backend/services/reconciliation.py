"""
Background reconciliation

- reconcile_stale_payments: settle or fail pending payments whose redirect
  and webhook never arrived
- expire_subscriptions: flip lapsed active subscriptions to expired
"""

import logging
from datetime import datetime, timedelta

from services.entitlements import mark_payment_failed, refresh_subscriber_count, settle_payment
from services.payment_gateway import FAILED_PROVIDER_STATUSES
from utils.atomic_transactions import (
    get_reconciliation_payments, mark_payment_for_reconciliation, resolve_reconciliation_payment
)
from utils.errors import PaymentProviderError, PlatformError, ValidationError

logger = logging.getLogger(__name__)


def reconcile_stale_payments(mongo, settings, gateway, now=None, older_than_minutes=None,
                             push_service=None, batch_size=100):
    """
    Ask the provider about pending payments older than the threshold, and
    about redirect-cancelled ones still inside the pending TTL in case the
    charge went through after all.

    Returns:
        dict: counts of settled / failed / abandoned / still_pending / errors
    """
    now = now or datetime.utcnow()
    older_than_minutes = older_than_minutes or settings.RECONCILE_AFTER_MINUTES
    cutoff = now - timedelta(minutes=older_than_minutes)
    abandon_cutoff = now - timedelta(hours=settings.PENDING_PAYMENT_TTL_HOURS)
    summary = {'settled': 0, 'failed': 0, 'abandoned': 0, 'still_pending': 0, 'errors': 0}

    stale = list(mongo.db.payment_transactions.find({'$or': [
        {'status': 'pending', 'createdAt': {'$lte': cutoff}},
        {'status': 'cancelled', 'createdAt': {'$lte': cutoff, '$gt': abandon_cutoff}},
    ]}).sort('createdAt', 1).limit(batch_size))

    for payment in stale:
        tx_ref = payment['txRef']
        try:
            verified = gateway.verify_by_reference(tx_ref)
        except PaymentProviderError as e:
            logger.warning(f"[RECONCILE] {tx_ref}: provider lookup failed: {e.message}")
            verified = None

        if verified and verified['successful']:
            try:
                result = settle_payment(mongo, settings, tx_ref, verified, push_service=push_service, now=now)
                if not result['alreadySettled']:
                    summary['settled'] += 1
            except PlatformError as e:
                logger.error(f"[RECONCILE] {tx_ref}: settlement failed: {e.message}")
                summary['errors'] += 1
            continue

        if payment['status'] == 'cancelled':
            continue

        provider_status = (verified or {}).get('status')
        if provider_status in FAILED_PROVIDER_STATUSES:
            mark_payment_failed(mongo, tx_ref, f'provider_status:{provider_status}')
            summary['failed'] += 1
        elif payment['createdAt'] <= abandon_cutoff:
            mark_payment_failed(mongo, tx_ref, 'abandoned')
            summary['abandoned'] += 1
        else:
            summary['still_pending'] += 1

    if stale:
        logger.info(f"[RECONCILE] {len(stale)} stale payments: {summary}")
    return summary


def expire_subscriptions(mongo, now=None):
    """Mark active subscriptions past their expiry as expired. Returns the number expired."""
    now = now or datetime.utcnow()
    lapsed = {'status': 'active', 'subscriptionExpiry': {'$lte': now}}
    users = mongo.db.users.find(
        {'subscriptions': {'$elemMatch': lapsed}},
        {'subscriptions': 1}
    )

    expired = 0
    creators = set()
    for user in users:
        creator_ids = {
            sub['creatorId'] for sub in user.get('subscriptions') or []
            if sub.get('status') == 'active' and sub.get('subscriptionExpiry') and sub['subscriptionExpiry'] <= now
        }
        # Positional update: entries granted after the read stay as they are
        for creator_id in creator_ids:
            while mongo.db.users.update_one(
                {'_id': user['_id'], 'subscriptions': {'$elemMatch': dict(lapsed, creatorId=creator_id)}},
                {'$set': {'subscriptions.$.status': 'expired'}}
            ).modified_count:
                creators.add(creator_id)
                expired += 1

    for creator_id in creators:
        refresh_subscriber_count(mongo, creator_id)

    if expired:
        logger.info(f"[SUBSCRIPTION EXPIRY] Expired {expired} subscriptions across {len(creators)} creators")
    return expired


def list_reconciliation_payments(mongo, limit=50):
    return get_reconciliation_payments(mongo, limit=limit)


def mark_for_reconciliation(mongo, tx_ref, reason, provider_response=None):
    return mark_payment_for_reconciliation(mongo, tx_ref, reason, provider_response)


def resolve_reconciliation(mongo, tx_ref, resolution_status, admin_notes=None):
    if resolution_status not in ('completed', 'failed'):
        raise ValidationError(
            'Invalid resolution status',
            errors={'status': ['Must be completed or failed']}
        )
    return resolve_reconciliation_payment(mongo, tx_ref, resolution_status, admin_notes)
