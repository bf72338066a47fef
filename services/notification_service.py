"""
Notification Service for EcoChallenge Platform
Fire-and-forget user notifications; a failed notification never fails the caller
"""

import logging

import requests

from config import Settings
from utils.clock import utc_now

logger = logging.getLogger(__name__)

class NotificationService:
    def __init__(self, db, settings=None, http=None, clock=utc_now):
        self.db = db
        self.settings = settings or Settings()
        self.http = http or requests
        self.clock = clock
        self.notifications_ref = db.collection('notifications')

    def notify(self, user_id, title, message, notification_type='info', metadata=None):
        """
        Store a notification for the user and forward it to the webhook, if one is configured.
        Returns True when every delivery succeeded.
        """
        notification_data = {
            'user_id': user_id,
            'title': title,
            'message': message,
            'type': notification_type,
            'metadata': metadata or {},
            'read': False,
            'created_at': self.clock()
        }

        delivered = True
        try:
            self.notifications_ref.add(notification_data)
        except Exception as e:
            logger.error(f"Error storing notification for user {user_id}: {str(e)}")
            delivered = False

        if self.settings.notification_webhook_url:
            try:
                response = self.http.post(
                    self.settings.notification_webhook_url,
                    json={**notification_data, 'created_at': notification_data['created_at'].isoformat()},
                    timeout=self.settings.notification_timeout_seconds
                )
                response.raise_for_status()
            except Exception as e:
                logger.error(f"Error posting notification webhook for user {user_id}: {str(e)}")
                delivered = False

        if delivered:
            logger.info(f"Notification '{notification_type}' sent to user {user_id}")
        return delivered
