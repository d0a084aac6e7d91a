"""Signed URL generation for post media stored in Google Cloud Storage"""
import logging
from datetime import timedelta

logger = logging.getLogger(__name__)


class CloudStorage:

    def __init__(self, credential_manager, bucket_name, expiry_minutes=15):
        self.credential_manager = credential_manager
        self.bucket_name = bucket_name
        self.expiry_minutes = expiry_minutes

    def generate_signed_url(self, blob_name):
        """
        Return a short-lived V4 GET URL for a stored blob.

        Values that are already absolute URLs are returned unchanged.
        """
        if not blob_name:
            return None
        if blob_name.startswith('http'):
            return blob_name

        client = self.credential_manager.get_gcs_client()
        blob = client.bucket(self.bucket_name).blob(blob_name)
        url = blob.generate_signed_url(
            version="v4",
            expiration=timedelta(minutes=self.expiry_minutes),
            method="GET"
        )
        logger.debug(f"Generated signed URL for: {blob_name}")
        return url

    def sign_media(self, post):
        """Copy of the post's media with every URL signed."""
        media = []
        for item in post.get('mediaItems') or []:
            signed = dict(item)
            signed['url'] = self.generate_signed_url(item.get('url'))
            media.append(signed)
        return {
            'contentUrl': self.generate_signed_url(post.get('contentUrl')),
            'mediaItems': media
        }
