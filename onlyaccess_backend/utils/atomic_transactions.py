"""
Atomic Transaction Utilities for Payment Operations

Every multi-document money movement (entitlement grant, bundle mode toggle)
goes through run_atomically so it either fully applies or not at all.
Payments whose post-claim writes fail without a transaction are flagged
for manual reconciliation instead of being left half-applied.
"""

from datetime import datetime
import logging

from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


def session_kwargs(session):
    """Keyword args for pymongo calls that may or may not run inside a session."""
    return {'session': session} if session is not None else {}


def run_atomically(mongo, callback, use_transactions=True):
    """
    Run callback(session) inside a MongoDB multi-document transaction.

    Args:
        mongo: PyMongo wrapper exposing .cx (client) and .db
        callback: Function taking the session (or None) and returning a result
        use_transactions: False for standalone servers without replica sets

    Returns:
        Whatever the callback returns. Exceptions abort the transaction and propagate.
    """
    if not use_transactions:
        return callback(None)

    with mongo.cx.start_session() as session:
        # with_transaction retries on TransientTransactionError
        return session.with_transaction(callback)


def mark_payment_for_reconciliation(mongo, tx_ref, reason, provider_response=None):
    """
    Park a payment in needs_reconciliation after a partial grant.

    Completed rows are flagged too: without a transaction the claim is
    already committed when the grant fails.

    Returns:
        bool: True if a row was flagged
    """
    now = datetime.utcnow()
    flags = {
        'status': 'needs_reconciliation',
        'failureReason': reason,
        'reconciliationRequired': True,
        'reconciliationTimestamp': now,
        'updatedAt': now
    }
    if provider_response:
        flags['providerResponse'] = provider_response

    try:
        result = mongo.db.payment_transactions.update_one(
            {'txRef': tx_ref, 'status': {'$in': ['pending', 'completed']}},
            {'$set': flags}
        )
    except PyMongoError as e:
        # Leave the original error to the caller; this one is only logged
        logger.critical(f"[RECONCILIATION] Could not flag {tx_ref} ({reason}): {e}")
        return False

    if result.modified_count:
        logger.warning(f"[RECONCILIATION] {tx_ref} flagged: {reason}")
        return True
    logger.error(f"[RECONCILIATION] {tx_ref} not flagged, no pending or completed row")
    return False


def get_reconciliation_payments(mongo, limit=50):
    """Flagged payments, most recently flagged first"""
    return list(mongo.db.payment_transactions.find(
        {'status': 'needs_reconciliation'}
    ).sort('reconciliationTimestamp', -1).limit(limit))


def resolve_reconciliation_payment(mongo, tx_ref, resolution_status, admin_notes=None):
    """
    Close a flagged payment as 'completed' or 'failed' after manual review.

    Returns:
        bool: False when tx_ref is not currently flagged
    """
    now = datetime.utcnow()
    resolution = {
        'status': resolution_status,
        'reconciliationResolved': True,
        'reconciliationResolvedAt': now,
        'updatedAt': now
    }
    if admin_notes:
        resolution['adminNotes'] = admin_notes

    result = mongo.db.payment_transactions.update_one(
        {'txRef': tx_ref, 'status': 'needs_reconciliation'},
        {'$set': resolution, '$unset': {'reconciliationRequired': ''}}
    )
    if not result.modified_count:
        return False
    logger.info(f"[RECONCILIATION] {tx_ref} resolved as {resolution_status}")
    return True
