"""Subscription duration helpers.

Bundle durations are stored as the human-readable labels creators pick
('1 day', '1 month', ...). This module is the single place that maps a
label to a fixed number of days:

- duration_days(label) -> int
- duration_weight(label) -> int (sort key for bundle listings)
- compute_expiry(label, start) -> datetime
"""

from datetime import datetime, timedelta
from typing import Optional

from utils.errors import ValidationError

# Keep labels stable: they are persisted on bundles.
DURATION_DAYS = {
    '1 day': 1,
    '1 month': 30,
    '3 months': 90,
    '6 months': 180,
    '1 year': 365,
}

VALID_DURATIONS = tuple(DURATION_DAYS.keys())


def is_valid_duration(label: Optional[str]) -> bool:
    return isinstance(label, str) and label in DURATION_DAYS


def duration_days(label: str) -> int:
    """Return the number of days a bundle duration grants."""
    if not is_valid_duration(label):
        raise ValidationError(
            f'Invalid duration: {label}',
            errors={'duration': [f'Must be one of: {", ".join(VALID_DURATIONS)}']}
        )
    return DURATION_DAYS[label]


def duration_weight(label: str) -> int:
    # Longer bundles sort after shorter ones
    return duration_days(label)


def compute_expiry(label: str, start: Optional[datetime] = None) -> datetime:
    """Expiry for a subscription that starts at `start` (defaults to now)."""
    start = start or datetime.utcnow()
    return start + timedelta(days=duration_days(label))
