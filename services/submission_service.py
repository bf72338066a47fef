"""
Submission Service for EcoChallenge Platform
Records proof-of-completion submissions and lists them for reviewers and owners
"""

import logging

from utils.clock import utc_now
from utils.error_handler import (
    MissingRequiredProof, NotParticipating, PermissionDenied, ValidationError, translate_store_errors
)
from utils.geo import is_valid_coordinate
from utils.permissions import VIEW_ALL_SUBMISSIONS, has_capability

logger = logging.getLogger(__name__)

PENDING = 'pending'
APPROVED = 'approved'
REJECTED = 'rejected'
VERIFICATION_STATUSES = (PENDING, APPROVED, REJECTED)

class SubmissionService:
    def __init__(self, db, challenge_service, participation_service, profile_service, clock=utc_now):
        self.db = db
        self.challenges = challenge_service
        self.participations = participation_service
        self.profiles = profile_service
        self.clock = clock
        self.submissions_ref = db.collection('submissions')

    @translate_store_errors
    def submit(self, user_id, challenge_id, text=None, photo_urls=None, location=None):
        """
        Create a pending submission for the caller's participation.

        ``location`` is an optional dict with ``lat``, ``lng`` and ``address``.
        Challenges can demand at least one photo and/or a location.
        """
        challenge = self.challenges.get_challenge(challenge_id)

        participation = self.participations.get_participation(user_id, challenge_id)
        if participation is None:
            logger.warning(f"User {user_id} submitted to challenge {challenge_id} without joining")
            raise NotParticipating()

        photo_urls = self._validate_photo_urls(photo_urls)
        location = self._validate_location(location)

        if challenge.get('verification_photos_required') and not photo_urls:
            raise MissingRequiredProof("This challenge requires at least one photo as proof", proof_type='photo')

        if challenge.get('requires_location_verification') and location is None:
            raise MissingRequiredProof("This challenge requires your location as proof", proof_type='location')

        if text is not None and not isinstance(text, str):
            raise ValidationError("submission_text must be a string", field='submission_text')

        now = self.clock()
        location = location or {}
        submission_data = {
            'challenge_id': challenge_id,
            'participation_id': participation['id'],
            'user_id': user_id,
            'submission_text': text,
            'photo_urls': photo_urls,
            'submission_location_lat': location.get('lat'),
            'submission_location_lng': location.get('lng'),
            'submission_location_address': location.get('address'),
            'verification_status': PENDING,
            'verification_notes': None,
            'verified_by': None,
            'verified_at': None,
            'created_at': now,
            'updated_at': now
        }

        _, submission_ref = self.submissions_ref.add(submission_data)

        logger.info(f"Submission {submission_ref.id} created by {user_id} for challenge {challenge_id}")
        return {**submission_data, 'id': submission_ref.id}

    def _validate_photo_urls(self, photo_urls):
        if photo_urls is None:
            return []
        if not isinstance(photo_urls, list) or not all(isinstance(url, str) and url for url in photo_urls):
            raise ValidationError("photo_urls must be a list of non-empty strings", field='photo_urls')
        return list(photo_urls)

    def _validate_location(self, location):
        if not location:
            return None
        if not isinstance(location, dict):
            raise ValidationError("location must be an object with lat and lng", field='location')

        lat, lng = location.get('lat'), location.get('lng')
        if lat is None or lng is None:
            # A partial location is not a location
            return None
        if not is_valid_coordinate(lat, lng):
            raise ValidationError("Submission location is out of range", field='location')

        return {'lat': float(lat), 'lng': float(lng), 'address': location.get('address')}

    @translate_store_errors
    def get_submission(self, submission_id):
        submission_doc = self.submissions_ref.document(submission_id).get()
        if not submission_doc.exists:
            return None

        submission_data = submission_doc.to_dict()
        submission_data['id'] = submission_doc.id
        return submission_data

    @translate_store_errors
    def list_for_challenge(self, challenge_id, requestor_id):
        """
        All submissions for a challenge with submitter profiles, newest first.
        Creator, admins and NGOs only.
        """
        challenge = self.challenges.get_challenge(challenge_id)

        if challenge.get('created_by') != requestor_id:
            role = self.profiles.get_role(requestor_id)
            if not has_capability(role, VIEW_ALL_SUBMISSIONS):
                logger.warning(f"User {requestor_id} attempted to list submissions of challenge {challenge_id}")
                raise PermissionDenied("Insufficient permissions to view submissions")

        query = self.submissions_ref.where('challenge_id', '==', challenge_id)
        return self._attach_profiles(self._collect(query))

    @translate_store_errors
    def list_mine(self, user_id, challenge_id):
        """
        The caller's own submissions for a challenge in any status, newest first
        """
        query = self.submissions_ref.where('challenge_id', '==', challenge_id).where('user_id', '==', user_id)
        return self._collect(query)

    def _collect(self, query):
        submissions = []
        for submission_doc in query.order_by('created_at', direction='DESCENDING').stream():
            submission_data = submission_doc.to_dict()
            submission_data['id'] = submission_doc.id
            submissions.append(submission_data)
        return submissions

    def _attach_profiles(self, submissions):
        """
        Embed each submitter's display name and avatar for reviewers
        """
        profiles = {}
        for submission in submissions:
            user_id = submission['user_id']
            if user_id not in profiles:
                user_data = self.profiles.get_user_by_uid(user_id) or {}
                profiles[user_id] = {
                    'full_name': user_data.get('name', 'EcoWarrior'),
                    'avatar_url': user_data.get('avatar_url', '')
                }
            submission['profile'] = profiles[user_id]
        return submissions
