"""
Profile Service for EcoChallenge Platform
Identity/role lookups backing every permission check
"""

import logging

from utils.error_handler import translate_store_errors
from utils.permissions import normalize_role

logger = logging.getLogger(__name__)

class ProfileService:
    def __init__(self, db):
        self.db = db
        self.users_ref = db.collection('users')

    @translate_store_errors
    def get_user_by_uid(self, uid):
        """
        Get user profile by Firebase UID, or None when it doesn't exist
        """
        user_doc = self.users_ref.document(uid).get()
        if not user_doc.exists:
            return None
        return user_doc.to_dict()

    def get_role(self, uid):
        """
        Role of the user; missing profiles and unknown roles map to 'other'
        """
        profile = self.get_user_by_uid(uid)
        if profile is None:
            logger.warning(f"No profile for user {uid}, treating as 'other'")
            return normalize_role(None)
        return normalize_role(profile.get('role'))
