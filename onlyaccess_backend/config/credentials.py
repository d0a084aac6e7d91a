"""
Credential management for Firebase and Google Cloud Storage
Clients are created lazily, on first use, from the application Settings
"""
import os
import json
import logging

import firebase_admin
from firebase_admin import credentials
from google.cloud import storage

logger = logging.getLogger(__name__)


class CredentialManager:
    """Lazily builds the Firebase app and the GCS client for one Settings instance"""

    def __init__(self, settings):
        self.settings = settings
        self._firebase_app = None
        self._firebase_checked = False
        self._gcs_client = None

    def _initialize_firebase(self):
        """Initialize Firebase Admin SDK"""
        self._firebase_checked = True

        # Another CredentialManager (or a previous app) may have initialized it
        if firebase_admin._apps:
            self._firebase_app = firebase_admin.get_app()
            return

        firebase_key_path = self.settings.FIREBASE_KEY_PATH

        try:
            if firebase_key_path and os.path.exists(firebase_key_path):
                logger.info(f"Initializing Firebase with key file: {firebase_key_path}")
                cred = credentials.Certificate(firebase_key_path)
                self._firebase_app = firebase_admin.initialize_app(cred)

            elif os.environ.get('FIREBASE_CREDENTIALS_JSON'):
                logger.info("Initializing Firebase with environment variable JSON")
                cred = credentials.Certificate(json.loads(os.environ['FIREBASE_CREDENTIALS_JSON']))
                self._firebase_app = firebase_admin.initialize_app(cred)

            else:
                logger.warning("No Firebase credentials found. Push notifications will not work.")

        except (ValueError, IOError) as e:
            # App keeps working without push notifications
            logger.error(f"Failed to initialize Firebase: {e}")

    def get_firebase_app(self):
        if not self._firebase_checked:
            self._initialize_firebase()
        return self._firebase_app

    def is_firebase_available(self):
        return self.get_firebase_app() is not None

    def get_gcs_client(self):
        """Get GCS client instance (default application credentials unless GCS_KEY_PATH is set)"""
        if self._gcs_client is None:
            gcs_key_path = os.environ.get('GCS_KEY_PATH')
            if gcs_key_path and os.path.exists(gcs_key_path):
                logger.info(f"Initializing GCS with key file: {gcs_key_path}")
                self._gcs_client = storage.Client.from_service_account_json(gcs_key_path)
            else:
                logger.info("Initializing GCS with default credentials")
                self._gcs_client = storage.Client()
        return self._gcs_client
