"""
Verification Service for EcoChallenge Platform

Submissions move pending -> approved or pending -> rejected, and both end
states are final. The status write is a compare-and-set on the document's
update time, so two reviewers racing on one submission cannot both win.
An approval completes the owning participation and announces it on the
event bus, which is how the challenge leaderboard learns about it. The
status write, the completion and the leaderboard entry share one write
batch; a lost race re-reads and starts over.
"""

import logging

from google.api_core.exceptions import AlreadyExists, FailedPrecondition

from config import Settings
from services.submission_service import APPROVED, PENDING, REJECTED
from utils.clock import utc_now
from utils.error_handler import (
    MAX_WRITE_ATTEMPTS, AlreadyVerified, NotFound, PermissionDenied, ValidationError, contention_error,
    translate_store_errors
)
from utils.events import ParticipationCompleted
from utils.permissions import VERIFY_ANY_SUBMISSION, has_capability

logger = logging.getLogger(__name__)

DECISIONS = (APPROVED, REJECTED)

class VerificationService:
    def __init__(self, db, challenge_service, participation_service, profile_service,
                 event_bus, notification_service=None, settings=None, clock=utc_now):
        self.db = db
        self.challenges = challenge_service
        self.participations = participation_service
        self.profiles = profile_service
        self.events = event_bus
        self.notifications = notification_service
        self.settings = settings or Settings()
        self.clock = clock
        self.submissions_ref = db.collection('submissions')

    @translate_store_errors
    def verify(self, submission_id, verifier_id, decision, notes=None):
        if decision not in DECISIONS:
            raise ValidationError(f"decision must be one of: {', '.join(DECISIONS)}", field='verification_status')

        submission_ref = self.submissions_ref.document(submission_id)
        challenge = None

        for _ in range(MAX_WRITE_ATTEMPTS):
            snapshot = submission_ref.get()
            if not snapshot.exists:
                raise NotFound("Submission not found")
            submission = snapshot.to_dict()

            if challenge is None:
                challenge = self.challenges.get_challenge(submission['challenge_id'])
                self._check_verifier(challenge, verifier_id)

            if submission.get('verification_status', PENDING) != PENDING:
                raise AlreadyVerified()

            now = self.clock()
            verification_data = {
                'verification_status': decision,
                'verification_notes': notes,
                'verified_by': verifier_id,
                'verified_at': now,
                'updated_at': now
            }

            # Status, completion and leaderboard land in one commit or not at all
            batch = self.db.batch()
            batch.update(submission_ref, verification_data,
                         option=self.db.write_option(last_update_time=snapshot.update_time))
            if decision == APPROVED:
                self._stage_completion(batch, submission, now)

            try:
                batch.commit()
            except (AlreadyExists, FailedPrecondition):
                logger.warning(f"Submission {submission_id} changed while being verified, re-reading")
                continue
            break
        else:
            raise contention_error("Submission verification")

        logger.info(f"Submission {submission_id} {decision} by {verifier_id}")

        if self.notifications:
            self.notifications.notify(
                submission['user_id'],
                title='Submission verified',
                message=f"Your submission for '{challenge.get('title', 'a challenge')}' was {decision}.",
                notification_type='submission_verified',
                metadata={
                    'challenge_id': submission['challenge_id'],
                    'submission_id': submission_id,
                    'verification_status': decision
                }
            )

        return {
            **submission,
            **verification_data,
            'id': submission_id,
            'message': 'Submission verified successfully'
        }

    def _check_verifier(self, challenge, verifier_id):
        if challenge.get('created_by') == verifier_id:
            return
        role = self.profiles.get_role(verifier_id)
        if not has_capability(role, VERIFY_ANY_SUBMISSION):
            logger.warning(f"User {verifier_id} attempted to verify a submission of challenge {challenge['id']}")
            raise PermissionDenied("Insufficient permissions to verify this submission")

    def _stage_completion(self, batch, submission, now):
        self.participations.stage_completion(batch, submission['participation_id'], now)

        # Published even when the participation was already complete; the
        # leaderboard keeps the best score per user, so it still counts once.
        self.events.publish(ParticipationCompleted(
            challenge_id=submission['challenge_id'],
            user_id=submission['user_id'],
            participation_id=submission['participation_id'],
            score=self.settings.completion_score,
            completed_at=now,
            source='verification',
            batch=batch
        ))
