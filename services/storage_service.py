"""
Storage Service for EcoChallenge Platform
Uploads submission proof photos to Firebase Storage and hands back their URLs
"""

import logging
import mimetypes
import uuid

from firebase_admin import storage
from google.api_core.exceptions import GoogleAPICallError
from werkzeug.utils import secure_filename

from config import Settings
from utils.clock import utc_now
from utils.error_handler import InfrastructureError, ValidationError

logger = logging.getLogger(__name__)

MAX_PHOTO_BYTES = 10 * 1024 * 1024

class StorageService:
    def __init__(self, settings=None, bucket=None, clock=utc_now):
        self.settings = settings or Settings()
        self._bucket = bucket
        self.clock = clock

    @property
    def bucket(self):
        if self._bucket is None:
            self._bucket = storage.bucket(self.settings.storage_bucket)
        return self._bucket

    def upload_submission_photo(self, user_id, challenge_id, content, filename, content_type=None):
        """
        Upload image bytes and return the public URL to attach to a submission
        """
        if not content:
            raise ValidationError("Photo is empty", field='photo')
        if len(content) > MAX_PHOTO_BYTES:
            raise ValidationError("Photo is larger than 10 MB", field='photo')

        content_type = content_type or mimetypes.guess_type(filename or '')[0]
        if not content_type or not content_type.startswith('image/'):
            raise ValidationError("Only image uploads are accepted as proof", field='photo')

        filename = secure_filename(filename or '')
        extension = mimetypes.guess_extension(content_type) or ''
        if filename and '.' in filename:
            extension = '.' + filename.rsplit('.', 1)[1].lower()

        timestamp = int(self.clock().timestamp() * 1000)
        path = f"submissions/{user_id}/{challenge_id}/{timestamp}-{uuid.uuid4().hex}{extension}"

        try:
            blob = self.bucket.blob(path)
            blob.upload_from_string(content, content_type=content_type)
            blob.make_public()
        except GoogleAPICallError as e:
            logger.error(f"Error uploading photo to {path}: {str(e)}")
            raise InfrastructureError(f"Photo upload failed: {str(e)}", service_name='storage')

        logger.info(f"Uploaded submission photo {path} for user {user_id}")
        return {
            'path': path,
            'url': blob.public_url,
            'content_type': content_type,
            'size': len(content)
        }
