"""
Tests for creator withdrawals and the scheduled payout sweep
"""
import unittest
from datetime import datetime, timedelta

from services import withdrawals
from utils.encryption import decrypt_sensitive_data
from utils.errors import (
    InsufficientFundsError, PaymentProviderError, PaymentProviderUnavailableError,
    PermissionDeniedError, ValidationError
)
from support import FakeGateway, MockMongo, add_bank, make_settings, make_user, reload


class WithdrawalTestCase(unittest.TestCase):

    def setUp(self):
        self.mongo = MockMongo()
        self.settings = make_settings()
        self.gateway = FakeGateway()
        self.now = datetime(2026, 3, 1, 12, 0, 0)
        self.creator = make_user(self.mongo, role='creator', totalEarnings=5000.0)
        self.bank = add_bank(self.mongo, self.settings, self.creator)
        self.creator = reload(self.mongo, self.creator)


class TestBankDetails(WithdrawalTestCase):

    def test_account_number_stored_encrypted(self):
        """
        Scenario: creator adds a Zenith account
        Expected: only the mask is returned, the stored number decrypts back
        """
        bank = withdrawals.add_bank_account(
            self.mongo, self.settings, self.creator, 'Zenith Bank', '1234567890', account_name='Ada'
        )

        self.assertEqual(bank['accountNumberMasked'], '***7890')
        self.assertEqual(bank['bankCode'], '057')
        self.assertNotIn('accountNumber', bank)

        stored = [b for b in reload(self.mongo, self.creator)['banks'] if b['_id'] == bank['_id']][0]
        self.assertNotEqual(stored['accountNumber'], '1234567890')
        self.assertEqual(decrypt_sensitive_data(stored['accountNumber'], self.settings), '1234567890')

    def test_account_number_must_be_ten_digits(self):
        with self.assertRaises(ValidationError):
            withdrawals.add_bank_account(self.mongo, self.settings, self.creator, 'GTBank', '12345')

    def test_unknown_bank_falls_back_to_default_code(self):
        self.assertEqual(withdrawals.map_bank_name_to_code('Kuda Bank'), '50211')
        self.assertEqual(withdrawals.map_bank_name_to_code('Some Microfinance'), '044')


class TestImmediateWithdrawal(WithdrawalTestCase):

    def test_withdrawal_deducts_fee(self):
        """
        Scenario: creator with 5000 NGN withdraws 1000
        Expected: fee 250, 750 transferred, balance 4000, withdrawal completed
        """
        withdrawal = withdrawals.request_withdrawal(
            self.mongo, self.settings, self.gateway, self.creator, 1000, str(self.bank['_id']), now=self.now
        )

        self.assertEqual(withdrawal['status'], 'completed')
        self.assertEqual(withdrawal['fee'], 250.0)
        self.assertEqual(withdrawal['payoutAmount'], 750.0)
        self.assertTrue(withdrawal['reference'].startswith('WITHDRAW_'))
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 4000.0)

        transfer = self.gateway.transfers[0]
        self.assertEqual(transfer['amount'], 750.0)
        self.assertEqual(transfer['account_number'], '0123456789')
        self.assertEqual(transfer['bank_code'], '058')

    def test_failed_transfer_refunds_balance(self):
        """
        Scenario: the provider rejects the transfer
        Expected: PaymentProviderError, withdrawal failed, balance untouched
        """
        self.gateway.transfer_results = [False]

        with self.assertRaises(PaymentProviderError):
            withdrawals.request_withdrawal(
                self.mongo, self.settings, self.gateway, self.creator, 1000, self.bank['_id'], now=self.now
            )

        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 5000.0)
        row = self.mongo.db.withdrawal_requests.find_one({'user': self.creator['_id']})
        self.assertEqual(row['status'], 'failed')
        self.assertEqual(row['reason'], 'Insufficient payout balance')

    def test_rejected_by_provider_refunds_balance(self):
        self.gateway.transfer_results = [PaymentProviderError('Invalid account number')]

        with self.assertRaises(PaymentProviderError):
            withdrawals.request_withdrawal(
                self.mongo, self.settings, self.gateway, self.creator, 2000, self.bank['_id'], now=self.now
            )
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 5000.0)

    def test_unreachable_provider_keeps_reservation(self):
        """
        Scenario: the transfer request times out, so the money may already be on its way
        Expected: no refund, row back to pending with transferUnconfirmed for the sweep
        """
        self.gateway.transfer_results = [PaymentProviderUnavailableError('Payment service unavailable: timed out')]

        withdrawal = withdrawals.request_withdrawal(
            self.mongo, self.settings, self.gateway, self.creator, 2000, self.bank['_id'], now=self.now
        )

        self.assertEqual(withdrawal['status'], 'pending')
        self.assertTrue(withdrawal['transferUnconfirmed'])
        self.assertEqual(withdrawal['attempts'], 1)
        self.assertEqual(withdrawal['processAt'], self.now)
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 3000.0)
        self.assertIsNone(self.mongo.db.user_notifications.find_one({'title': 'Withdrawal failed'}))

    def test_insufficient_balance(self):
        with self.assertRaises(InsufficientFundsError):
            withdrawals.request_withdrawal(
                self.mongo, self.settings, self.gateway, self.creator, 6000, self.bank['_id'], now=self.now
            )
        self.assertEqual(self.gateway.transfers, [])
        self.assertEqual(self.mongo.db.withdrawal_requests.count_documents({}), 0)

    def test_below_minimum(self):
        with self.assertRaises(ValidationError):
            withdrawals.request_withdrawal(
                self.mongo, self.settings, self.gateway, self.creator, 500, self.bank['_id'], now=self.now
            )

    def test_non_creator_cannot_withdraw(self):
        fan = make_user(self.mongo, totalEarnings=5000.0)
        with self.assertRaises(PermissionDeniedError):
            withdrawals.request_withdrawal(
                self.mongo, self.settings, self.gateway, fan, 1000, self.bank['_id'], now=self.now
            )

    def test_compute_fee(self):
        self.assertEqual(withdrawals.compute_withdrawal_fee(1000, 0.25), (250.0, 750.0))
        self.assertEqual(withdrawals.compute_withdrawal_fee(1333.33, 0.25), (333.33, 1000.0))


class TestScheduledWithdrawals(WithdrawalTestCase):

    def test_schedule_reserves_funds_for_later(self):
        withdrawal = withdrawals.schedule_withdrawal(
            self.mongo, self.settings, self.creator, 2000, self.bank['_id'], now=self.now
        )

        self.assertEqual(withdrawal['status'], 'pending')
        self.assertEqual(withdrawal['processAt'], self.now + timedelta(hours=24))
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 3000.0)
        self.assertEqual(self.gateway.transfers, [])

    def test_sweep_pays_only_due_rows(self):
        """
        Scenario: one scheduled withdrawal, sweep before and after processAt
        Expected: nothing paid early, paid once when due
        """
        withdrawal = withdrawals.schedule_withdrawal(
            self.mongo, self.settings, self.creator, 2000, self.bank['_id'], now=self.now
        )

        early = withdrawals.process_due_withdrawals(self.mongo, self.settings, self.gateway, now=self.now)
        self.assertEqual(early, {'completed': 0, 'retried': 0, 'failed': 0, 'review': 0, 'reclaimed': 0})

        due = withdrawals.process_due_withdrawals(
            self.mongo, self.settings, self.gateway, now=self.now + timedelta(hours=25)
        )
        self.assertEqual(due['completed'], 1)
        self.assertEqual(len(self.gateway.transfers), 1)
        self.assertEqual(self.gateway.transfers[0]['amount'], 1500.0)

        row = self.mongo.db.withdrawal_requests.find_one({'_id': withdrawal['_id']})
        self.assertEqual(row['status'], 'completed')

        again = withdrawals.process_due_withdrawals(
            self.mongo, self.settings, self.gateway, now=self.now + timedelta(hours=26)
        )
        self.assertEqual(again['completed'], 0)
        self.assertEqual(len(self.gateway.transfers), 1)

    def test_sweep_retries_then_fails_and_refunds(self):
        """
        Scenario: every transfer attempt fails (max 3 attempts)
        Expected: retried twice, failed on the third sweep, reservation refunded
        """
        withdrawal = withdrawals.schedule_withdrawal(
            self.mongo, self.settings, self.creator, 2000, self.bank['_id'], now=self.now
        )
        self.gateway.transfer_results = [False, False, False]
        due = self.now + timedelta(hours=25)

        first = withdrawals.process_due_withdrawals(self.mongo, self.settings, self.gateway, now=due)
        second = withdrawals.process_due_withdrawals(self.mongo, self.settings, self.gateway, now=due)
        third = withdrawals.process_due_withdrawals(self.mongo, self.settings, self.gateway, now=due)

        self.assertEqual(first['retried'], 1)
        self.assertEqual(second['retried'], 1)
        self.assertEqual(third['failed'], 1)

        row = self.mongo.db.withdrawal_requests.find_one({'_id': withdrawal['_id']})
        self.assertEqual(row['status'], 'failed')
        self.assertEqual(row['attempts'], 3)
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 5000.0)

        notification = self.mongo.db.user_notifications.find_one(
            {'userId': self.creator['_id'], 'title': 'Withdrawal failed'}
        )
        self.assertIsNotNone(notification)

    def test_removed_bank_fails_and_refunds(self):
        withdrawals.schedule_withdrawal(self.mongo, self.settings, self.creator, 2000, self.bank['_id'], now=self.now)
        self.mongo.db.users.update_one({'_id': self.creator['_id']}, {'$set': {'banks': []}})

        summary = withdrawals.process_due_withdrawals(
            self.mongo, self.settings, self.gateway, now=self.now + timedelta(hours=25)
        )

        self.assertEqual(summary['failed'], 1)
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 5000.0)

    def test_unconfirmed_transfer_retried_with_same_reference(self):
        """
        Scenario: immediate withdrawal times out, next sweep reaches the provider
        Expected: second transfer reuses the reference, row completed, no refund
        """
        self.gateway.transfer_results = [PaymentProviderUnavailableError('Payment service unavailable: timed out')]
        withdrawal = withdrawals.request_withdrawal(
            self.mongo, self.settings, self.gateway, self.creator, 2000, self.bank['_id'], now=self.now
        )

        summary = withdrawals.process_due_withdrawals(
            self.mongo, self.settings, self.gateway, now=self.now + timedelta(minutes=5)
        )

        self.assertEqual(summary['completed'], 1)
        self.assertEqual(len(self.gateway.transfers), 2)
        self.assertEqual(self.gateway.transfers[0]['reference'], withdrawal['reference'])
        self.assertEqual(self.gateway.transfers[1]['reference'], withdrawal['reference'])
        self.assertEqual(
            self.mongo.db.withdrawal_requests.find_one({'_id': withdrawal['_id']})['status'], 'completed'
        )
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 3000.0)

    def test_unconfirmed_transfer_out_of_attempts_needs_review(self):
        """
        Scenario: timeout, timeout, then a rejection on the last allowed attempt
        Expected: needs_review instead of failed, reservation kept
        """
        self.gateway.transfer_results = [
            PaymentProviderUnavailableError('Payment service error: HTTP 503'),
            PaymentProviderUnavailableError('Payment service error: HTTP 503'),
            False
        ]
        withdrawal = withdrawals.request_withdrawal(
            self.mongo, self.settings, self.gateway, self.creator, 2000, self.bank['_id'], now=self.now
        )
        later = self.now + timedelta(minutes=5)

        second = withdrawals.process_due_withdrawals(self.mongo, self.settings, self.gateway, now=later)
        third = withdrawals.process_due_withdrawals(self.mongo, self.settings, self.gateway, now=later)

        self.assertEqual(second['retried'], 1)
        self.assertEqual(third['review'], 1)
        self.assertEqual(third['failed'], 0)

        row = self.mongo.db.withdrawal_requests.find_one({'_id': withdrawal['_id']})
        self.assertEqual(row['status'], 'needs_review')
        self.assertEqual(row['attempts'], 3)
        self.assertEqual(reload(self.mongo, self.creator)['totalEarnings'], 3000.0)

    def test_stuck_processing_row_reclaimed_and_paid(self):
        """
        Scenario: a sweep died after claiming a row; it sat in processing for 45 minutes
        Expected: next sweep reclaims it and pays it with the original reference
        """
        withdrawal = withdrawals.schedule_withdrawal(
            self.mongo, self.settings, self.creator, 2000, self.bank['_id'], now=self.now
        )
        due = self.now + timedelta(hours=25)
        self.mongo.db.withdrawal_requests.update_one(
            {'_id': withdrawal['_id']},
            {'$set': {'status': 'processing', 'updatedAt': due - timedelta(minutes=45)}}
        )

        summary = withdrawals.process_due_withdrawals(self.mongo, self.settings, self.gateway, now=due)

        self.assertEqual(summary['reclaimed'], 1)
        self.assertEqual(summary['completed'], 1)
        self.assertEqual(self.gateway.transfers[0]['reference'], withdrawal['reference'])
        row = self.mongo.db.withdrawal_requests.find_one({'_id': withdrawal['_id']})
        self.assertEqual(row['status'], 'completed')
        self.assertTrue(row['transferUnconfirmed'])

    def test_recent_processing_row_left_alone(self):
        withdrawal = withdrawals.schedule_withdrawal(
            self.mongo, self.settings, self.creator, 2000, self.bank['_id'], now=self.now
        )
        due = self.now + timedelta(hours=25)
        self.mongo.db.withdrawal_requests.update_one(
            {'_id': withdrawal['_id']},
            {'$set': {'status': 'processing', 'updatedAt': due - timedelta(minutes=5)}}
        )

        summary = withdrawals.process_due_withdrawals(self.mongo, self.settings, self.gateway, now=due)

        self.assertEqual(summary['reclaimed'], 0)
        self.assertEqual(self.gateway.transfers, [])
        self.assertEqual(
            self.mongo.db.withdrawal_requests.find_one({'_id': withdrawal['_id']})['status'], 'processing'
        )


if __name__ == '__main__':
    unittest.main()
