"""Revenue split between creator, platform and referrer.

Every settled payment is divided as:

- 75% creator / 25% platform, or
- 75% creator / 20% platform / 5% referrer when the creator was referred
  and is still inside the referral window (90 days from creatorSince).

Shares are rounded to kobo precision and the platform share absorbs the
rounding, so creatorShare + platformShare + referrerShare == amount.
"""

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

_CENT = Decimal('0.01')


def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


def round_money(value) -> float:
    return float(_money(value))


def is_within_referral_window(creator, now=None, window_days=90) -> bool:
    """True if the creator has a referrer and creatorSince is less than window_days ago."""
    if not creator or not creator.get('referredBy'):
        return False
    creator_since = creator.get('creatorSince')
    if not creator_since:
        return False
    now = now or datetime.utcnow()
    return now < creator_since + timedelta(days=window_days)


def compute_revenue_split(amount, creator=None, now=None, creator_rate=0.75,
                          referrer_rate=0.05, window_days=90):
    """
    Split a payment amount.

    Args:
        amount: Gross amount paid by the user
        creator: Creator user document (needs referredBy / creatorSince)
        now: Reference time for the referral window
        creator_rate: Creator's fraction of the amount
        referrer_rate: Referrer's fraction (taken from the platform share)
        window_days: Length of the referral window in days

    Returns:
        dict with creatorShare, platformShare, referrerShare, referrerId
    """
    total = _money(amount)
    creator_share = _money(total * Decimal(str(creator_rate)))
    referrer_share = Decimal('0.00')
    referrer_id = None

    if is_within_referral_window(creator, now=now, window_days=window_days):
        referrer_share = _money(total * Decimal(str(referrer_rate)))
        referrer_id = creator['referredBy']

    platform_share = total - creator_share - referrer_share

    return {
        'creatorShare': float(creator_share),
        'platformShare': float(platform_share),
        'referrerShare': float(referrer_share),
        'referrerId': referrer_id,
    }


def split_from_settings(amount, creator, settings, now=None):
    return compute_revenue_split(
        amount,
        creator=creator,
        now=now,
        creator_rate=settings.CREATOR_SHARE,
        referrer_rate=settings.REFERRER_SHARE,
        window_days=settings.REFERRAL_WINDOW_DAYS,
    )


def amounts_match(expected, actual) -> bool:
    """Compare two money amounts at kobo precision."""
    try:
        return _money(expected) == _money(actual)
    except (InvalidOperation, TypeError, ValueError):
        return False
