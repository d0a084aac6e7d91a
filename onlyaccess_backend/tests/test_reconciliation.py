"""
Tests for background reconciliation and subscription expiry
"""
import unittest
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import mongomock

from services import reconciliation
from services.entitlements import grant_subscription
from utils.errors import PaymentProviderError, ValidationError
from utils.payout_scheduler import PayoutScheduler
from support import FakeGateway, MockMongo, make_pending_payment, make_settings, make_user, reload


class TestStalePaymentReconciliation(unittest.TestCase):

    def setUp(self):
        self.mongo = MockMongo()
        self.settings = make_settings()
        self.gateway = FakeGateway()
        self.now = datetime(2026, 3, 1, 12, 0, 0)
        self.fan = make_user(self.mongo)
        self.creator = make_user(self.mongo, role='creator')

    def _pending(self, tx_ref, minutes_old, **fields):
        return make_pending_payment(
            self.mongo, self.fan['_id'], self.creator['_id'], payment_type='tip', amount=500.0,
            tx_ref=tx_ref, created_at=self.now - timedelta(minutes=minutes_old), **fields
        )

    def _status(self, tx_ref):
        return self.mongo.db.payment_transactions.find_one({'txRef': tx_ref})['status']

    def test_paid_but_never_redirected_is_settled(self):
        """
        Scenario: user paid, closed the tab, webhook lost
        Expected: sweep verifies with the provider and settles the tip
        """
        self._pending('TIP_paid', 30)
        self.gateway.set_charge('TIP_paid', 500.0)

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['settled'], 1)
        self.assertEqual(self._status('TIP_paid'), 'completed')
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 375.0)

    def test_recent_payments_are_left_alone(self):
        self._pending('TIP_fresh', 2)
        self.gateway.set_charge('TIP_fresh', 500.0)

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['settled'], 0)
        self.assertEqual(self._status('TIP_fresh'), 'pending')

    def test_provider_failure_status_fails_payment(self):
        self._pending('TIP_failed', 30)
        self.gateway.set_charge('TIP_failed', 500.0, status='failed')

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['failed'], 1)
        self.assertEqual(self._status('TIP_failed'), 'failed')

    def test_unknown_to_provider_is_abandoned_after_ttl(self):
        """
        Scenario: provider has no record of two stale payments, one older than 24h
        Expected: the old one is abandoned, the other stays pending
        """
        self._pending('TIP_old', 60 * 25)
        self._pending('TIP_young', 30)

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['abandoned'], 1)
        self.assertEqual(summary['still_pending'], 1)
        self.assertEqual(self._status('TIP_old'), 'failed')
        self.assertEqual(
            self.mongo.db.payment_transactions.find_one({'txRef': 'TIP_old'})['failureReason'], 'abandoned'
        )
        self.assertEqual(self._status('TIP_young'), 'pending')

    def test_amount_mismatch_counted_as_error(self):
        self._pending('TIP_short', 30)
        self.gateway.set_charge('TIP_short', 5.0)

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['errors'], 1)
        self.assertEqual(self._status('TIP_short'), 'failed')

    def test_provider_outage_keeps_payment_pending(self):
        self._pending('TIP_outage', 30)
        self.gateway.verify_error = PaymentProviderError('Payment service unavailable')

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['still_pending'], 1)
        self.assertEqual(self._status('TIP_outage'), 'pending')

    def test_provider_still_processing_stays_pending(self):
        self._pending('TIP_slow', 30)
        self.gateway.set_charge('TIP_slow', 500.0, status='pending')

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['still_pending'], 1)
        self.assertEqual(self._status('TIP_slow'), 'pending')

    def test_cancelled_redirect_settled_when_provider_confirms(self):
        """
        Scenario: redirect came back with status=cancelled but the charge went through
        Expected: the sweep re-checks the cancelled row and settles it
        """
        self._pending('TIP_cancelled', 30, status='cancelled')
        self.gateway.set_charge('TIP_cancelled', 500.0)

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['settled'], 1)
        self.assertEqual(self._status('TIP_cancelled'), 'completed')
        self.assertEqual(self.mongo.db.transactions.count_documents({'txRef': 'TIP_cancelled'}), 1)

    def test_cancelled_rows_left_cancelled_without_a_charge(self):
        self._pending('TIP_gone', 30, status='cancelled')
        self._pending('TIP_old_cancel', 60 * 48, status='cancelled')
        self.gateway.set_charge('TIP_gone', 500.0, status='cancelled')

        summary = reconciliation.reconcile_stale_payments(self.mongo, self.settings, self.gateway, now=self.now)

        self.assertEqual(summary['failed'], 0)
        self.assertEqual(self._status('TIP_gone'), 'cancelled')
        self.assertEqual(self._status('TIP_old_cancel'), 'cancelled')


class TestManualReconciliation(unittest.TestCase):

    def setUp(self):
        self.mongo = MockMongo()
        fan = make_user(self.mongo)
        creator = make_user(self.mongo, role='creator')
        make_pending_payment(self.mongo, fan['_id'], creator['_id'], tx_ref='SUB_stuck')

    def test_flag_list_and_resolve(self):
        self.assertTrue(reconciliation.mark_for_reconciliation(self.mongo, 'SUB_stuck', 'grant_failed: boom'))

        flagged = reconciliation.list_reconciliation_payments(self.mongo)
        self.assertEqual([p['txRef'] for p in flagged], ['SUB_stuck'])

        self.assertTrue(reconciliation.resolve_reconciliation(self.mongo, 'SUB_stuck', 'failed', 'refunded manually'))
        payment = self.mongo.db.payment_transactions.find_one({'txRef': 'SUB_stuck'})
        self.assertEqual(payment['status'], 'failed')
        self.assertEqual(payment['adminNotes'], 'refunded manually')
        self.assertFalse(reconciliation.resolve_reconciliation(self.mongo, 'SUB_stuck', 'completed'))

    def test_resolution_status_validated(self):
        with self.assertRaises(ValidationError):
            reconciliation.resolve_reconciliation(self.mongo, 'SUB_stuck', 'pending')


class TestSubscriptionExpiry(unittest.TestCase):

    def setUp(self):
        self.mongo = MockMongo()
        self.now = datetime(2026, 3, 1, 12, 0, 0)
        self.creator = make_user(self.mongo, role='creator', subscriberCount=2)

    def _subscriber(self, expiry):
        return make_user(self.mongo, subscriptions=[{
            'creatorId': self.creator['_id'],
            'subscriptionBundle': None,
            'subscribedAt': expiry - timedelta(days=30),
            'subscriptionExpiry': expiry,
            'status': 'active',
            'isFree': False
        }])

    def test_lapsed_subscriptions_expire(self):
        lapsed = self._subscriber(self.now - timedelta(hours=1))
        current = self._subscriber(self.now + timedelta(days=5))

        expired = reconciliation.expire_subscriptions(self.mongo, now=self.now)

        self.assertEqual(expired, 1)
        self.assertEqual(reload(self.mongo, lapsed)['subscriptions'][0]['status'], 'expired')
        self.assertEqual(reload(self.mongo, current)['subscriptions'][0]['status'], 'active')
        self.assertEqual(reload(self.mongo, self.creator)['subscriberCount'], 1)

    def test_grant_during_sweep_is_kept(self):
        """
        Scenario: a paid subscription to another creator is granted while the
                  sweep sits between reading the fan and expiring the lapsed entry
        Expected: the lapsed entry expires and the new subscription stays active
        """
        fan = self._subscriber(self.now - timedelta(hours=1))
        other_creator = make_user(self.mongo, role='creator')
        original_update_one = mongomock.Collection.update_one
        granted = []

        def grant_first(collection, *args, **kwargs):
            if collection.name == 'users' and not granted:
                granted.append('SUB_mid_sweep')
                grant_subscription(
                    self.mongo, fan['_id'], other_creator['_id'], None, '1 month', self.now, tx_ref='SUB_mid_sweep'
                )
            return original_update_one(collection, *args, **kwargs)

        with patch.object(mongomock.Collection, 'update_one', autospec=True, side_effect=grant_first):
            expired = reconciliation.expire_subscriptions(self.mongo, now=self.now)

        self.assertEqual(len(granted), 1)
        self.assertEqual(expired, 1)
        by_creator = {s['creatorId']: s for s in reload(self.mongo, fan)['subscriptions']}
        self.assertEqual(by_creator[self.creator['_id']]['status'], 'expired')
        self.assertEqual(by_creator[other_creator['_id']]['status'], 'active')
        self.assertEqual(by_creator[other_creator['_id']]['txRef'], 'SUB_mid_sweep')


class TestPayoutScheduler(unittest.TestCase):

    def test_jobs_registered_and_stopped(self):
        scheduler = PayoutScheduler(MockMongo(), make_settings(), FakeGateway())
        scheduler.start()
        try:
            status = scheduler.get_scheduler_status()
            self.assertTrue(status['is_running'])
            self.assertEqual(
                sorted(job['id'] for job in status['jobs']),
                ['expire_subscriptions', 'process_due_withdrawals', 'reconcile_stale_payments']
            )
        finally:
            scheduler.stop()
        self.assertFalse(scheduler.get_scheduler_status()['is_running'])

    def test_job_errors_are_logged_not_raised(self):
        mongo = MagicMock()
        mongo.db.withdrawal_requests.find.side_effect = RuntimeError('mongo down')
        scheduler = PayoutScheduler(mongo, make_settings(), FakeGateway())

        with self.assertLogs('utils.payout_scheduler', level='ERROR'):
            scheduler._run_withdrawal_sweep()


if __name__ == '__main__':
    unittest.main()
