"""
Creator withdrawals

Two entry points share one payout helper:

- request_withdrawal: pay out now
- schedule_withdrawal: queue for the sweep (process_due_withdrawals)

The requested amount is reserved from totalEarnings with a conditional
decrement before any transfer is attempted. A rejected transfer gives the
reservation back. A transfer the provider never confirmed keeps it and is
retried by the sweep with the same reference.
"""

import logging
import time
from datetime import datetime, timedelta

from bson import ObjectId
from cryptography.fernet import InvalidToken
from pymongo import ReturnDocument

from blueprints.notifications import create_user_notification
from utils.encryption import decrypt_sensitive_data, encrypt_sensitive_data, mask_sensitive_data
from utils.errors import (
    InsufficientFundsError, NotFoundError, PaymentProviderError,
    PaymentProviderUnavailableError, PermissionDeniedError, ValidationError
)
from utils.revenue_split import round_money

logger = logging.getLogger(__name__)

BANK_CODES = {
    'Access Bank': '044',
    'GTBank': '058',
    'Zenith Bank': '057',
    'First Bank': '011',
    'Sterling Bank': '232',
    'UBA': '033',
    'Fidelity Bank': '070',
    'Union Bank': '032',
    'Wema Bank': '035',
    'Kuda Bank': '50211',
}

DEFAULT_BANK_CODE = '044'


def map_bank_name_to_code(bank_name):
    return BANK_CODES.get(bank_name, DEFAULT_BANK_CODE)


def public_bank(bank):
    """Bank entry without the encrypted account number"""
    return {
        '_id': bank['_id'],
        'bankName': bank.get('bankName'),
        'bankCode': bank.get('bankCode'),
        'accountNumberMasked': bank.get('accountNumberMasked'),
        'accountName': bank.get('accountName'),
    }


def add_bank_account(mongo, settings, user, bank_name, account_number, account_name=None, bank_code=None):
    account_number = (account_number or '').strip()
    if not bank_name:
        raise ValidationError('Bank name is required', errors={'bankName': ['Bank name is required']})
    if not account_number.isdigit() or len(account_number) != 10:
        raise ValidationError(
            'Invalid account number',
            errors={'accountNumber': ['Account number must be 10 digits']}
        )

    bank = {
        '_id': ObjectId(),
        'bankName': bank_name,
        'bankCode': bank_code or map_bank_name_to_code(bank_name),
        'accountNumber': encrypt_sensitive_data(account_number, settings),
        'accountNumberMasked': mask_sensitive_data(account_number),
        'accountName': account_name,
        'createdAt': datetime.utcnow()
    }
    mongo.db.users.update_one(
        {'_id': user['_id']},
        {'$push': {'banks': bank}, '$set': {'updatedAt': datetime.utcnow()}}
    )
    logger.info(f"[BANK DETAILS] Added {bank_name} {bank['accountNumberMasked']} for {user['_id']}")
    return public_bank(bank)


def compute_withdrawal_fee(amount, fee_rate):
    """(fee, payoutAmount) with the fee at fee_rate of the requested amount."""
    fee = round_money(amount * fee_rate)
    return fee, round_money(amount - fee)


def _find_bank(user, bank_id):
    for bank in user.get('banks') or []:
        if bank['_id'] == bank_id:
            return bank
    return None


def _validate_request(settings, user, amount, bank_id):
    if user.get('role') != 'creator':
        raise PermissionDeniedError('Only creators can withdraw earnings')

    try:
        amount = round_money(amount)
    except (ValueError, TypeError, ArithmeticError):
        raise ValidationError('Invalid amount', errors={'amount': ['Amount must be a number']})

    if amount < settings.MIN_WITHDRAWAL_AMOUNT:
        raise ValidationError(
            f'Minimum withdrawal is {settings.MIN_WITHDRAWAL_AMOUNT:.0f} {settings.CURRENCY}',
            errors={'amount': [f'Minimum withdrawal is {settings.MIN_WITHDRAWAL_AMOUNT:.0f}']}
        )

    if not bank_id or not ObjectId.is_valid(str(bank_id)):
        raise ValidationError('A bank account is required', errors={'bankId': ['Select a bank account']})

    bank = _find_bank(user, ObjectId(str(bank_id)))
    if not bank:
        raise NotFoundError('Bank account not found')

    return amount, bank


def _reserve_funds(mongo, user_id, amount):
    """Conditional decrement: two concurrent requests cannot both pass"""
    result = mongo.db.users.update_one(
        {'_id': user_id, 'totalEarnings': {'$gte': amount}},
        {'$inc': {'totalEarnings': -amount}}
    )
    if result.modified_count == 0:
        raise InsufficientFundsError('Insufficient balance')


def _refund_funds(mongo, user_id, amount):
    mongo.db.users.update_one({'_id': user_id}, {'$inc': {'totalEarnings': amount}})
    logger.info(f"[WITHDRAWAL] Refunded {amount} to {user_id}")


def _new_withdrawal(settings, user, amount, bank, status, process_at, now):
    fee, payout_amount = compute_withdrawal_fee(amount, settings.WITHDRAWAL_FEE_RATE)
    return {
        '_id': ObjectId(),
        'user': user['_id'],
        'amount': amount,
        'fee': fee,
        'payoutAmount': payout_amount,
        'bankId': bank['_id'],
        'status': status,
        'processAt': process_at,
        'processedAt': None,
        'attempts': 0,
        'reason': '',
        'reference': f"WITHDRAW_{int(time.time() * 1000)}_{user['_id']}",
        'createdAt': now,
        'updatedAt': now
    }


# Payout outcomes
PAYOUT_SENT = 'sent'
PAYOUT_REJECTED = 'rejected'
PAYOUT_UNCONFIRMED = 'unconfirmed'


def _send_payout(settings, gateway, withdrawal, bank):
    """
    Transfer payoutAmount to the bank.

    Returns:
        (outcome, reason): PAYOUT_SENT, PAYOUT_REJECTED when nothing left the
        payout account, or PAYOUT_UNCONFIRMED when the provider gave no
        usable answer and the transfer may still go through
    """
    try:
        account_number = decrypt_sensitive_data(bank['accountNumber'], settings)
    except InvalidToken:
        return PAYOUT_REJECTED, 'Stored bank details could not be decrypted'

    try:
        result = gateway.transfer_to_bank(
            bank['bankCode'],
            account_number,
            withdrawal['payoutAmount'],
            withdrawal['reference'],
            narration='Creator Payout',
            account_name=bank.get('accountName')
        )
    except PaymentProviderUnavailableError as e:
        return PAYOUT_UNCONFIRMED, e.message
    except PaymentProviderError as e:
        return PAYOUT_REJECTED, e.message

    if result['successful']:
        return PAYOUT_SENT, ''
    return PAYOUT_REJECTED, result.get('message') or f"Transfer {result.get('status')}"


def _complete(mongo, withdrawal, now):
    mongo.db.withdrawal_requests.update_one(
        {'_id': withdrawal['_id']},
        {'$set': {'status': 'completed', 'processedAt': now, 'updatedAt': now},
         '$inc': {'attempts': 1}}
    )
    create_user_notification(
        mongo, withdrawal['user'], 'withdrawal', 'Withdrawal sent',
        f"{withdrawal['payoutAmount']:.2f} has been sent to your bank account",
        related_id=str(withdrawal['_id'])
    )


def _fail(mongo, withdrawal, reason, now):
    """Terminal failure: mark failed and give the reservation back"""
    result = mongo.db.withdrawal_requests.update_one(
        {'_id': withdrawal['_id'], 'status': {'$ne': 'failed'}},
        {'$set': {'status': 'failed', 'reason': reason, 'updatedAt': now},
         '$inc': {'attempts': 1}}
    )
    if result.modified_count:
        _refund_funds(mongo, withdrawal['user'], withdrawal['amount'])
        create_user_notification(
            mongo, withdrawal['user'], 'withdrawal', 'Withdrawal failed',
            f"Your withdrawal of {withdrawal['amount']:.2f} failed and was returned to your balance",
            related_id=str(withdrawal['_id'])
        )


def _defer(mongo, withdrawal, reason, now):
    """Outcome unknown: keep the reservation, the sweep retries with the same reference"""
    mongo.db.withdrawal_requests.update_one(
        {'_id': withdrawal['_id'], 'status': 'processing'},
        {'$set': {'status': 'pending', 'processAt': now, 'transferUnconfirmed': True,
                  'reason': reason, 'updatedAt': now},
         '$inc': {'attempts': 1}}
    )


def _hold_for_review(mongo, withdrawal, reason, now):
    """Out of attempts after an unconfirmed transfer: no automatic refund"""
    mongo.db.withdrawal_requests.update_one(
        {'_id': withdrawal['_id'], 'status': 'processing'},
        {'$set': {'status': 'needs_review', 'reason': reason, 'updatedAt': now},
         '$inc': {'attempts': 1}}
    )
    logger.critical(
        f"[WITHDRAWAL] {withdrawal['reference']} needs manual review: transfer may have been sent ({reason})"
    )


def request_withdrawal(mongo, settings, gateway, user, amount, bank_id, now=None):
    """
    Immediate withdrawal. Raises PaymentProviderError if the provider rejects
    the transfer; an unconfirmed transfer is returned as a pending row.
    """
    amount, bank = _validate_request(settings, user, amount, bank_id)
    now = now or datetime.utcnow()

    _reserve_funds(mongo, user['_id'], amount)

    withdrawal = _new_withdrawal(settings, user, amount, bank, 'processing', now, now)
    mongo.db.withdrawal_requests.insert_one(withdrawal)

    outcome, reason = _send_payout(settings, gateway, withdrawal, bank)
    if outcome == PAYOUT_UNCONFIRMED:
        logger.warning(f"[WITHDRAWAL] {withdrawal['reference']} unconfirmed, queued for the sweep: {reason}")
        _defer(mongo, withdrawal, reason, now)
        return mongo.db.withdrawal_requests.find_one({'_id': withdrawal['_id']})
    if outcome == PAYOUT_REJECTED:
        logger.error(f"[WITHDRAWAL] {withdrawal['reference']} failed: {reason}")
        _fail(mongo, withdrawal, reason, now)
        raise PaymentProviderError(f'Transfer failed: {reason}')

    _complete(mongo, withdrawal, now)
    logger.info(f"[WITHDRAWAL] {withdrawal['reference']} paid {withdrawal['payoutAmount']} (fee {withdrawal['fee']})")
    return mongo.db.withdrawal_requests.find_one({'_id': withdrawal['_id']})


def schedule_withdrawal(mongo, settings, user, amount, bank_id, now=None):
    """Reserve funds now, pay out after WITHDRAWAL_DELAY_HOURS."""
    amount, bank = _validate_request(settings, user, amount, bank_id)
    now = now or datetime.utcnow()

    _reserve_funds(mongo, user['_id'], amount)

    process_at = now + timedelta(hours=settings.WITHDRAWAL_DELAY_HOURS)
    withdrawal = _new_withdrawal(settings, user, amount, bank, 'pending', process_at, now)
    mongo.db.withdrawal_requests.insert_one(withdrawal)

    logger.info(f"[WITHDRAWAL] {withdrawal['reference']} scheduled for {process_at.isoformat()}")
    return withdrawal


def reclaim_stuck_withdrawals(mongo, settings, now=None):
    """
    Return rows left in processing past WITHDRAWAL_PROCESSING_TIMEOUT_MINUTES
    to pending. The earlier attempt may have reached the provider, so they are
    marked unconfirmed and never refunded automatically.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=settings.WITHDRAWAL_PROCESSING_TIMEOUT_MINUTES)
    result = mongo.db.withdrawal_requests.update_many(
        {'status': 'processing', 'updatedAt': {'$lte': cutoff}},
        {'$set': {'status': 'pending', 'transferUnconfirmed': True,
                  'reason': 'processing_timeout', 'updatedAt': now}}
    )
    if result.modified_count:
        logger.warning(f"[WITHDRAWAL SWEEP] Reclaimed {result.modified_count} stuck withdrawals")
    return result.modified_count


def process_due_withdrawals(mongo, settings, gateway, now=None):
    """
    Sweep due pending withdrawals.

    Each row is claimed pending -> processing before the transfer, so two
    sweeps never pay the same row. Rejected transfers go back to pending until
    WITHDRAWAL_MAX_ATTEMPTS, then fail for good and are refunded. Rows whose
    transfer was ever unconfirmed retry with the same reference and end in
    needs_review instead of a refund.

    Returns:
        dict: counts of completed / retried / failed / review / reclaimed rows
    """
    now = now or datetime.utcnow()
    summary = {'completed': 0, 'retried': 0, 'failed': 0, 'review': 0,
               'reclaimed': reclaim_stuck_withdrawals(mongo, settings, now=now)}

    due_ids = [w['_id'] for w in mongo.db.withdrawal_requests.find(
        {'status': 'pending', 'processAt': {'$lte': now}},
        {'_id': 1}
    ).sort('processAt', 1)]

    for withdrawal_id in due_ids:
        withdrawal = mongo.db.withdrawal_requests.find_one_and_update(
            {'_id': withdrawal_id, 'status': 'pending'},
            {'$set': {'status': 'processing', 'updatedAt': now}},
            return_document=ReturnDocument.AFTER
        )
        if withdrawal is None:
            continue

        user = mongo.db.users.find_one({'_id': withdrawal['user']})
        if not user:
            mongo.db.withdrawal_requests.update_one(
                {'_id': withdrawal_id},
                {'$set': {'status': 'failed', 'reason': 'User not found', 'updatedAt': now}}
            )
            summary['failed'] += 1
            continue

        bank = _find_bank(user, withdrawal['bankId'])
        if not bank:
            if withdrawal.get('transferUnconfirmed'):
                _hold_for_review(mongo, withdrawal, 'Bank account not found', now)
                summary['review'] += 1
            else:
                _fail(mongo, withdrawal, 'Bank account not found', now)
                summary['failed'] += 1
            continue

        outcome, reason = _send_payout(settings, gateway, withdrawal, bank)
        if outcome == PAYOUT_SENT:
            _complete(mongo, withdrawal, now)
            summary['completed'] += 1
            continue

        attempts = withdrawal.get('attempts', 0) + 1
        unconfirmed = outcome == PAYOUT_UNCONFIRMED or withdrawal.get('transferUnconfirmed')
        logger.warning(f"[WITHDRAWAL SWEEP] {withdrawal['reference']} attempt {attempts} {outcome}: {reason}")

        if attempts >= settings.WITHDRAWAL_MAX_ATTEMPTS:
            if unconfirmed:
                _hold_for_review(mongo, withdrawal, reason, now)
                summary['review'] += 1
            else:
                _fail(mongo, withdrawal, reason, now)
                summary['failed'] += 1
        elif outcome == PAYOUT_UNCONFIRMED:
            _defer(mongo, withdrawal, reason, now)
            summary['retried'] += 1
        else:
            mongo.db.withdrawal_requests.update_one(
                {'_id': withdrawal_id},
                {'$set': {'status': 'pending', 'reason': reason, 'updatedAt': now},
                 '$inc': {'attempts': 1}}
            )
            summary['retried'] += 1

    if due_ids or summary['reclaimed']:
        logger.info(f"[WITHDRAWAL SWEEP] {summary}")
    return summary


def list_withdrawals(mongo, user_id, limit=50):
    return list(mongo.db.withdrawal_requests.find({'user': user_id}).sort('createdAt', -1).limit(limit))
