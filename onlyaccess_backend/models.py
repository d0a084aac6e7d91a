from datetime import datetime
from typing import Dict, List, Optional, Any
from bson import ObjectId


class DatabaseSchema:
    """
    Centralized database schema definitions for all collections.
    Provides schema documentation and index definitions.
    """

    # ==================== USERS COLLECTION ====================

    @staticmethod
    def get_user_schema() -> Dict[str, Any]:
        """
        Schema for users collection.
        Stores identity, embedded entitlements, creator earnings and bank details.
        """
        return {
            '_id': ObjectId,
            'email': str,  # Required, unique, lowercase
            'username': str,  # Required, unique
            'password': str,  # Hashed with werkzeug.security
            'role': str,  # 'user', 'creator' or 'admin'
            'profileName': Optional[str],
            'bio': Optional[str],
            'createdAt': datetime,
            'updatedAt': Optional[datetime],

            # Entitlements
            'subscriptions': List[Dict[str, Any]],
            # subscriptions structure:
            # [{
            #     'creatorId': ObjectId,
            #     'subscriptionBundle': ObjectId,
            #     'subscribedAt': datetime,
            #     'subscriptionExpiry': datetime,
            #     'status': str,  # 'active', 'expired', 'cancelled'
            #     'isFree': bool,
            #     'txRef': Optional[str]  # None for free subscriptions
            # }]
            'purchasedContent': List[Dict[str, Any]],
            # purchasedContent structure:
            # [{'contentId': ObjectId, 'purchasedAt': datetime, 'amount': float,
            #   'transactionId': ObjectId, 'txRef': str}]
            'bookmarks': List[ObjectId],  # Post ids

            # Creator fields
            'totalEarnings': float,  # Withdrawable balance, never negative
            'subscriberCount': int,
            'freeMode': bool,  # True while the creator offers a free bundle
            'creatorSince': Optional[datetime],
            'referredBy': Optional[ObjectId],  # Referrer user id
            'banks': List[Dict[str, Any]],
            # banks structure:
            # [{'_id': ObjectId, 'bankName': str, 'bankCode': str,
            #   'accountNumber': str (encrypted), 'accountNumberMasked': str,
            #   'accountName': Optional[str]}]
            'fcmTokens': List[str],  # Push notification targets
        }

    @staticmethod
    def get_user_indexes() -> List[Dict[str, Any]]:
        """Define indexes for users collection."""
        return [
            {'keys': [('email', 1)], 'unique': True, 'name': 'email_unique'},
            {'keys': [('username', 1)], 'unique': True, 'name': 'username_unique'},
            {'keys': [('role', 1)], 'name': 'role_index'},
            {'keys': [('referredBy', 1)], 'sparse': True, 'name': 'referred_by'},
            {'keys': [('subscriptions.creatorId', 1), ('subscriptions.status', 1)], 'name': 'subscriptions_creator_status'},
        ]

    # ==================== SUBSCRIPTION BUNDLES COLLECTION ====================

    @staticmethod
    def get_subscription_bundle_schema() -> Dict[str, Any]:
        """
        Schema for subscription_bundles collection.
        Creator-defined tiers; a creator has either paid bundles or a single free bundle.
        """
        return {
            '_id': ObjectId,
            'creatorId': ObjectId,  # Required, reference to users._id
            'price': float,  # 0 for the free bundle
            'currency': str,  # Default 'NGN'
            'duration': str,  # One of VALID_DURATIONS
            'durationWeight': int,  # Derived from duration for sort order
            'description': str,
            'isFree': bool,
            'discountPercent': float,  # 0-100
            'discountExpiresAt': Optional[datetime],
            'createdAt': datetime,
            'updatedAt': datetime,
        }

    @staticmethod
    def get_subscription_bundle_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('creatorId', 1), ('durationWeight', 1)], 'name': 'creator_duration_weight'},
            {'keys': [('creatorId', 1), ('isFree', 1)], 'name': 'creator_is_free'},
        ]

    # ==================== PAYMENT TRANSACTIONS COLLECTION ====================

    @staticmethod
    def get_payment_transaction_schema() -> Dict[str, Any]:
        """
        Schema for payment_transactions collection.
        One document per payment intent, keyed by txRef (idempotency key).
        """
        return {
            '_id': ObjectId,
            'txRef': str,  # Required, unique
            'userId': ObjectId,  # Payer
            'creatorId': ObjectId,  # Payee
            'bundleId': Optional[ObjectId],  # subscription payments
            'postId': Optional[ObjectId],  # special unlocks and post tips
            'type': str,  # 'subscription', 'special', 'tip'
            'amount': float,
            'currency': str,
            'message': Optional[str],  # Tip message
            'status': str,  # 'pending', 'completed', 'failed', 'cancelled', 'needs_reconciliation'
            'provider': str,
            'paymentLink': Optional[str],
            'providerTransactionId': Optional[str],
            'failureReason': Optional[str],
            'ledgerTransactionId': Optional[ObjectId],
            'createdAt': datetime,
            'updatedAt': datetime,
            'settledAt': Optional[datetime],
        }

    @staticmethod
    def get_payment_transaction_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('txRef', 1)], 'unique': True, 'name': 'tx_ref_unique'},
            {'keys': [('userId', 1), ('createdAt', -1)], 'name': 'user_created_desc'},
            {'keys': [('status', 1), ('createdAt', 1)], 'name': 'status_created'},
        ]

    # ==================== TRANSACTIONS (LEDGER) COLLECTION ====================

    @staticmethod
    def get_transaction_schema() -> Dict[str, Any]:
        """
        Schema for transactions collection.
        Immutable ledger of settled payments with the revenue split.
        """
        return {
            '_id': ObjectId,
            'user': ObjectId,  # Who paid
            'creator': ObjectId,  # Who earned
            'post': Optional[ObjectId],
            'subscriptionBundle': Optional[ObjectId],
            'type': str,  # 'special', 'subscription', 'tip'
            'amount': float,
            'currency': str,
            'description': str,
            'creatorShare': float,
            'platformShare': float,
            'referrerShare': float,
            'referrerId': Optional[ObjectId],
            'txRef': str,  # Unique, one ledger row per payment
            'createdAt': datetime,
        }

    @staticmethod
    def get_transaction_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('txRef', 1)], 'unique': True, 'name': 'ledger_tx_ref_unique'},
            {'keys': [('creator', 1), ('createdAt', -1)], 'name': 'creator_created_desc'},
            {'keys': [('user', 1), ('createdAt', -1)], 'name': 'user_created_desc'},
            {'keys': [('referrerId', 1)], 'sparse': True, 'name': 'referrer'},
        ]

    # ==================== POSTS COLLECTION ====================

    @staticmethod
    def get_post_schema() -> Dict[str, Any]:
        return {
            '_id': ObjectId,
            'creator': ObjectId,
            'contentUrl': Optional[str],  # Blob name or absolute URL
            'mediaItems': List[Dict[str, str]],  # [{'url', 'type', 'contentType'}]
            'type': str,  # 'image', 'video', 'text', 'mixed'
            'writeUp': Optional[str],
            'special': bool,
            'unlockPrice': Optional[float],
            'likes': List[ObjectId],
            'comments': List[Dict[str, Any]],
            'totalTips': float,
            'createdAt': datetime,
        }

    @staticmethod
    def get_post_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('creator', 1), ('createdAt', -1)], 'name': 'creator_created_desc'},
        ]

    # ==================== WITHDRAWAL REQUESTS COLLECTION ====================

    @staticmethod
    def get_withdrawal_request_schema() -> Dict[str, Any]:
        """
        Schema for withdrawal_requests collection.
        The requested amount is reserved from totalEarnings when the row is created.
        """
        return {
            '_id': ObjectId,
            'user': ObjectId,
            'amount': float,  # Deducted from totalEarnings
            'fee': float,
            'payoutAmount': float,  # Sent to the bank
            'bankId': ObjectId,
            'status': str,  # 'pending', 'processing', 'completed', 'failed'
            'processAt': datetime,
            'processedAt': Optional[datetime],
            'attempts': int,
            'reason': str,
            'reference': str,
            'createdAt': datetime,
            'updatedAt': datetime,
        }

    @staticmethod
    def get_withdrawal_request_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('status', 1), ('processAt', 1)], 'name': 'status_process_at'},
            {'keys': [('user', 1), ('createdAt', -1)], 'name': 'user_created_desc'},
            {'keys': [('reference', 1)], 'unique': True, 'name': 'reference_unique'},
        ]

    # ==================== CHATS COLLECTION ====================

    @staticmethod
    def get_chat_schema() -> Dict[str, Any]:
        return {
            '_id': ObjectId,
            'participants': List[ObjectId],
            'messages': List[Dict[str, Any]],
            # messages structure:
            # [{'_id', 'sender', 'text', 'timestamp', 'isTip', 'tipAmount', 'readBy'}]
            'createdAt': datetime,
            'updatedAt': datetime,
        }

    @staticmethod
    def get_chat_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('participants', 1)], 'name': 'participants'},
        ]

    # ==================== USER NOTIFICATIONS COLLECTION ====================

    @staticmethod
    def get_notification_indexes() -> List[Dict[str, Any]]:
        return [
            {'keys': [('userId', 1), ('isArchived', 1), ('timestamp', -1)], 'name': 'user_archived_timestamp'},
            {'keys': [('userId', 1), ('isRead', 1)], 'name': 'user_read'},
        ]


class DatabaseInitializer:
    """
    Database initialization and management utilities.
    Handles collection creation and index setup.
    """

    def __init__(self, mongo_db):
        """
        Initialize with MongoDB database instance.

        Args:
            mongo_db: PyMongo database instance
        """
        self.db = mongo_db
        self.schema = DatabaseSchema()

    def get_collection_indexes(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            'users': self.schema.get_user_indexes(),
            'subscription_bundles': self.schema.get_subscription_bundle_indexes(),
            'payment_transactions': self.schema.get_payment_transaction_indexes(),
            'transactions': self.schema.get_transaction_indexes(),
            'posts': self.schema.get_post_indexes(),
            'withdrawal_requests': self.schema.get_withdrawal_request_indexes(),
            'chats': self.schema.get_chat_indexes(),
            'user_notifications': self.schema.get_notification_indexes(),
        }

    def initialize_collections(self):
        """
        Initialize all collections with proper indexes.
        Safe to run multiple times - existing collections and indexes are skipped.
        """
        results = {
            'created': [],
            'existing': [],
            'indexes_created': [],
            'errors': []
        }

        existing_collections = self.db.list_collection_names()

        for collection_name, indexes in self.get_collection_indexes().items():
            try:
                if collection_name in existing_collections:
                    results['existing'].append(collection_name)
                else:
                    # Collections must exist before they can be used inside a transaction
                    self.db.create_collection(collection_name)
                    results['created'].append(collection_name)

                collection = self.db[collection_name]
                existing_indexes = collection.index_information()

                for index_def in indexes:
                    index_name = index_def.get('name')
                    if index_name and index_name in existing_indexes:
                        continue

                    created_index_name = collection.create_index(
                        index_def['keys'],
                        unique=index_def.get('unique', False),
                        sparse=index_def.get('sparse', False),
                        name=index_name
                    )
                    results['indexes_created'].append(f"{collection_name}.{created_index_name}")

            except Exception as e:
                error_msg = f"Failed to initialize collection {collection_name}: {str(e)}"
                results['errors'].append(error_msg)

        return results
