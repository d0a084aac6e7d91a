"""
Application settings for the OnlyAccess backend.

All environment lookups happen here, once, at startup. The resulting
Settings object is immutable and handed to blueprints and services
explicitly instead of each module reading os.environ on its own.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Tuple

from dotenv import load_dotenv


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value not in (None, '') else default


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


@dataclass(frozen=True)
class Settings:
    SECRET_KEY: str = 'onlyaccess-secret-key-change-me'
    MONGO_URI: str = 'mongodb://localhost:27017/onlyaccess'
    # Multi-document transactions need a replica set; disable for standalone mongod
    MONGO_TRANSACTIONS: bool = True
    JWT_EXPIRATION_HOURS: int = 24

    BASE_URL: str = 'http://localhost:5000'
    FRONTEND_URL: str = 'http://localhost:3000'

    # Payment provider
    PAYMENT_PROVIDER: str = 'flutterwave'
    FLUTTERWAVE_SECRET_KEY: str = ''
    FLUTTERWAVE_BASE_URL: str = 'https://api.flutterwave.com/v3'
    FLUTTERWAVE_WEBHOOK_HASH: str = ''
    PAYSTACK_SECRET_KEY: str = ''
    PAYSTACK_BASE_URL: str = 'https://api.paystack.co'
    PAYMENT_TIMEOUT_SECONDS: int = 15
    CURRENCY: str = 'NGN'

    # Revenue rules
    CREATOR_SHARE: float = 0.75
    REFERRER_SHARE: float = 0.05
    REFERRAL_WINDOW_DAYS: int = 90
    MIN_TIP_AMOUNT: float = 100.0

    # Withdrawals
    WITHDRAWAL_FEE_RATE: float = 0.25
    MIN_WITHDRAWAL_AMOUNT: float = 1000.0
    WITHDRAWAL_DELAY_HOURS: int = 24
    WITHDRAWAL_MAX_ATTEMPTS: int = 3
    WITHDRAWAL_PROCESSING_TIMEOUT_MINUTES: int = 30

    # Background jobs
    SCHEDULER_ENABLED: bool = True
    WITHDRAWAL_SWEEP_MINUTES: int = 15
    RECONCILE_INTERVAL_MINUTES: int = 10
    RECONCILE_AFTER_MINUTES: int = 15
    PENDING_PAYMENT_TTL_HOURS: int = 24

    # Storage / push / encryption
    GCS_BUCKET_NAME: str = 'onlyaccess-content'
    SIGNED_URL_MINUTES: int = 15
    FIREBASE_KEY_PATH: str = ''
    ENCRYPTION_KEY: str = ''

    RATE_LIMIT_DEFAULTS: Tuple[str, ...] = field(default=('5000 per day', '500 per hour'))
    RATELIMIT_ENABLED: bool = True
    LOG_LEVEL: str = 'INFO'

    @property
    def platform_share(self):
        return round(1 - self.CREATOR_SHARE, 4)

    @classmethod
    def from_env(cls):
        """Build settings from the process environment (and a .env file if present)."""
        load_dotenv()
        defaults = cls()
        limits = os.environ.get('RATE_LIMIT_DEFAULTS')
        return cls(
            SECRET_KEY=os.environ.get('SECRET_KEY', defaults.SECRET_KEY),
            MONGO_URI=os.environ.get('MONGO_URI', defaults.MONGO_URI),
            MONGO_TRANSACTIONS=_env_bool('MONGO_TRANSACTIONS', defaults.MONGO_TRANSACTIONS),
            JWT_EXPIRATION_HOURS=_env_int('JWT_EXPIRATION_HOURS', defaults.JWT_EXPIRATION_HOURS),
            BASE_URL=os.environ.get('BASE_URL', defaults.BASE_URL).rstrip('/'),
            FRONTEND_URL=os.environ.get('FRONTEND_URL', defaults.FRONTEND_URL).rstrip('/'),
            PAYMENT_PROVIDER=os.environ.get('PAYMENT_PROVIDER', defaults.PAYMENT_PROVIDER).lower(),
            FLUTTERWAVE_SECRET_KEY=os.environ.get('FLUTTERWAVE_SECRET_KEY', ''),
            FLUTTERWAVE_BASE_URL=os.environ.get('FLUTTERWAVE_BASE_URL', defaults.FLUTTERWAVE_BASE_URL),
            FLUTTERWAVE_WEBHOOK_HASH=os.environ.get('FLUTTERWAVE_WEBHOOK_HASH', ''),
            PAYSTACK_SECRET_KEY=os.environ.get('PAYSTACK_SECRET_KEY', ''),
            PAYSTACK_BASE_URL=os.environ.get('PAYSTACK_BASE_URL', defaults.PAYSTACK_BASE_URL),
            PAYMENT_TIMEOUT_SECONDS=_env_int('PAYMENT_TIMEOUT_SECONDS', defaults.PAYMENT_TIMEOUT_SECONDS),
            CURRENCY=os.environ.get('CURRENCY', defaults.CURRENCY),
            CREATOR_SHARE=_env_float('CREATOR_SHARE', defaults.CREATOR_SHARE),
            REFERRER_SHARE=_env_float('REFERRER_SHARE', defaults.REFERRER_SHARE),
            REFERRAL_WINDOW_DAYS=_env_int('REFERRAL_WINDOW_DAYS', defaults.REFERRAL_WINDOW_DAYS),
            MIN_TIP_AMOUNT=_env_float('MIN_TIP_AMOUNT', defaults.MIN_TIP_AMOUNT),
            WITHDRAWAL_FEE_RATE=_env_float('WITHDRAWAL_FEE_RATE', defaults.WITHDRAWAL_FEE_RATE),
            MIN_WITHDRAWAL_AMOUNT=_env_float('MIN_WITHDRAWAL_AMOUNT', defaults.MIN_WITHDRAWAL_AMOUNT),
            WITHDRAWAL_DELAY_HOURS=_env_int('WITHDRAWAL_DELAY_HOURS', defaults.WITHDRAWAL_DELAY_HOURS),
            WITHDRAWAL_MAX_ATTEMPTS=_env_int('WITHDRAWAL_MAX_ATTEMPTS', defaults.WITHDRAWAL_MAX_ATTEMPTS),
            WITHDRAWAL_PROCESSING_TIMEOUT_MINUTES=_env_int(
                'WITHDRAWAL_PROCESSING_TIMEOUT_MINUTES', defaults.WITHDRAWAL_PROCESSING_TIMEOUT_MINUTES
            ),
            SCHEDULER_ENABLED=_env_bool('SCHEDULER_ENABLED', defaults.SCHEDULER_ENABLED),
            WITHDRAWAL_SWEEP_MINUTES=_env_int('WITHDRAWAL_SWEEP_MINUTES', defaults.WITHDRAWAL_SWEEP_MINUTES),
            RECONCILE_INTERVAL_MINUTES=_env_int('RECONCILE_INTERVAL_MINUTES', defaults.RECONCILE_INTERVAL_MINUTES),
            RECONCILE_AFTER_MINUTES=_env_int('RECONCILE_AFTER_MINUTES', defaults.RECONCILE_AFTER_MINUTES),
            PENDING_PAYMENT_TTL_HOURS=_env_int('PENDING_PAYMENT_TTL_HOURS', defaults.PENDING_PAYMENT_TTL_HOURS),
            GCS_BUCKET_NAME=os.environ.get('GCS_BUCKET_NAME', defaults.GCS_BUCKET_NAME),
            SIGNED_URL_MINUTES=_env_int('SIGNED_URL_MINUTES', defaults.SIGNED_URL_MINUTES),
            FIREBASE_KEY_PATH=os.environ.get('FIREBASE_KEY_PATH', ''),
            ENCRYPTION_KEY=os.environ.get('ENCRYPTION_KEY', ''),
            RATE_LIMIT_DEFAULTS=tuple(l.strip() for l in limits.split(';')) if limits else defaults.RATE_LIMIT_DEFAULTS,
            RATELIMIT_ENABLED=_env_bool('RATELIMIT_ENABLED', defaults.RATELIMIT_ENABLED),
            LOG_LEVEL=os.environ.get('LOG_LEVEL', defaults.LOG_LEVEL).upper(),
        )

    @classmethod
    def for_testing(cls, **overrides):
        """Deterministic settings for the test suite (no transactions, no scheduler)."""
        base = cls(
            SECRET_KEY='test-secret',
            MONGO_URI='mongodb://localhost:27017/onlyaccess_test',
            MONGO_TRANSACTIONS=False,
            SCHEDULER_ENABLED=False,
            RATELIMIT_ENABLED=False,
            FLUTTERWAVE_SECRET_KEY='FLWSECK_TEST-123',
            FLUTTERWAVE_WEBHOOK_HASH='test-webhook-hash',
            PAYSTACK_SECRET_KEY='sk_test_123',
            ENCRYPTION_KEY='',
        )
        return replace(base, **overrides)
