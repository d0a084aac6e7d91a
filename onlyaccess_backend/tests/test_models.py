"""
Tests for collection and index initialization
"""
import unittest

from pymongo.errors import DuplicateKeyError

from models import DatabaseInitializer
from support import MockMongo


class TestDatabaseInitializer(unittest.TestCase):

    def setUp(self):
        self.mongo = MockMongo()
        self.initializer = DatabaseInitializer(self.mongo.db)

    def test_creates_collections_and_indexes(self):
        results = self.initializer.initialize_collections()

        self.assertEqual(results['errors'], [])
        self.assertIn('payment_transactions', results['created'])
        self.assertIn('payment_transactions.tx_ref_unique', results['indexes_created'])
        self.assertIn('transactions.ledger_tx_ref_unique', results['indexes_created'])

    def test_second_run_is_a_no_op(self):
        self.initializer.initialize_collections()
        again = self.initializer.initialize_collections()

        self.assertEqual(again['created'], [])
        self.assertEqual(again['indexes_created'], [])
        self.assertIn('users', again['existing'])

    def test_tx_ref_is_unique(self):
        """
        Scenario: two payment rows with the same txRef
        Expected: the second insert is rejected
        """
        self.initializer.initialize_collections()
        self.mongo.db.payment_transactions.insert_one({'txRef': 'SUB_1', 'status': 'pending'})

        with self.assertRaises(DuplicateKeyError):
            self.mongo.db.payment_transactions.insert_one({'txRef': 'SUB_1', 'status': 'pending'})

    def test_one_ledger_row_per_tx_ref(self):
        self.initializer.initialize_collections()
        self.mongo.db.transactions.insert_one({'txRef': 'TIP_1', 'amount': 500.0})

        with self.assertRaises(DuplicateKeyError):
            self.mongo.db.transactions.insert_one({'txRef': 'TIP_1', 'amount': 500.0})


if __name__ == '__main__':
    unittest.main()
