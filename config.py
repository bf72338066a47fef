"""
Configuration for EcoChallenge backend.
Values come from the environment, with a local .env file loaded first.
"""

import os

from dotenv import load_dotenv

load_dotenv()


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value not in (None, '') else default


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


class Settings:
    def __init__(self):
        self.environment = os.environ.get('ENVIRONMENT', 'production')
        self.log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
        self.api_version = os.environ.get('API_VERSION', '1.0.0')
        self.allowed_origins = [
            origin.strip()
            for origin in os.environ.get('ALLOWED_ORIGINS', '*').split(',')
            if origin.strip()
        ]

        # Firebase
        self.firebase_project_id = os.environ.get('FIREBASE_PROJECT_ID')
        self.storage_bucket = os.environ.get('STORAGE_BUCKET')
        self.service_account_path = os.environ.get(
            'GOOGLE_APPLICATION_CREDENTIALS',
            os.path.join(os.path.dirname(os.path.abspath(__file__)), 'serviceAccountKey.json')
        )

        # Notifications
        self.notification_webhook_url = os.environ.get('NOTIFICATION_WEBHOOK_URL') or None
        self.notification_timeout_seconds = _env_float('NOTIFICATION_TIMEOUT_SECONDS', 5.0)

        # Challenge rules
        self.completion_score = _env_float('COMPLETION_SCORE', 100.0)
        self.default_geofence_radius_km = _env_float('DEFAULT_GEOFENCE_RADIUS_KM', 5.0)
        self.nearby_search_radius_km = _env_float('NEARBY_SEARCH_RADIUS_KM', 50.0)
        self.leaderboard_limit = _env_int('LEADERBOARD_LIMIT', 10)

        # Request bodies above this size are refused before they are read
        self.max_request_bytes = _env_int('MAX_REQUEST_BYTES', 16 * 1024 * 1024)

    @property
    def is_development(self):
        return self.environment == 'development'
