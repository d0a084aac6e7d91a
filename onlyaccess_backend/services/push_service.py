"""
Firebase Push Notification Service
Realtime push to a user's registered devices (tips and payments)
"""
import logging
from typing import Optional, Dict, Any, List

from bson import ObjectId

from config.credentials import CredentialManager

logger = logging.getLogger(__name__)


class PushService:
    """Service for sending push notifications via Firebase Cloud Messaging"""

    def __init__(self, credential_manager: CredentialManager):
        self.credential_manager = credential_manager

    @property
    def is_available(self) -> bool:
        return self.credential_manager.is_firebase_available()

    def send_to_tokens(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, int]:
        """
        Send a push notification to several devices

        Args:
            tokens: List of FCM tokens
            title: Notification title
            body: Notification body
            data: Optional data payload (values are sent as strings)

        Returns:
            dict: success_count / failure_count
        """
        if not tokens:
            return {'success_count': 0, 'failure_count': 0}

        if not self.is_available:
            logger.warning("Firebase not available, skipping push notification")
            return {'success_count': 0, 'failure_count': len(tokens)}

        from firebase_admin import messaging

        message = messaging.MulticastMessage(
            notification=messaging.Notification(title=title, body=body),
            data={k: str(v) for k, v in (data or {}).items()},
            tokens=tokens
        )
        response = messaging.send_each_for_multicast(message)

        logger.info(f"Push notifications sent: {response.success_count} success, {response.failure_count} failures")
        return {
            'success_count': response.success_count,
            'failure_count': response.failure_count
        }

    def send_to_user(self, mongo, user_id, title, body, data=None):
        """Push to every device registered on the user document"""
        user = mongo.db.users.find_one({'_id': ObjectId(user_id)}, {'fcmTokens': 1})
        tokens = (user or {}).get('fcmTokens') or []
        return self.send_to_tokens(tokens, title, body, data)
