"""
Participation Service for EcoChallenge Platform
Tracks who joined which challenge and their progress towards its target
"""

import logging

from google.api_core.exceptions import AlreadyExists, FailedPrecondition

from services.challenge_service import is_challenge_active
from utils.clock import utc_now
from utils.error_handler import (
    MAX_WRITE_ATTEMPTS, AlreadyJoined, ChallengeInactive, NotFound, NotParticipating, ValidationError,
    contention_error, is_finite_number, translate_store_errors
)
from utils.events import ParticipationCompleted

logger = logging.getLogger(__name__)

PARTICIPATION_STATUSES = ('all', 'active', 'completed')

def participation_id_for(challenge_id, user_id):
    """
    Participations are keyed by (challenge, user) so a second join collides on create
    """
    return f"{challenge_id}_{user_id}"

class ParticipationService:
    def __init__(self, db, challenge_service, event_bus, notification_service=None, clock=utc_now):
        self.db = db
        self.challenges = challenge_service
        self.events = event_bus
        self.notifications = notification_service
        self.clock = clock
        self.participations_ref = db.collection('participations')

    @translate_store_errors
    def join(self, user_id, challenge_id):
        """
        Enrol a user in an active challenge. Each user may join a challenge once.
        """
        challenge = self.challenges.get_challenge(challenge_id)
        now = self.clock()

        if not is_challenge_active(challenge, now):
            raise ChallengeInactive()

        participation_id = participation_id_for(challenge_id, user_id)
        participation_data = {
            'challenge_id': challenge_id,
            'user_id': user_id,
            'current_progress': 0,
            'completed': False,
            'joined_at': now,
            'completed_at': None,
            'updated_at': now
        }

        try:
            self.participations_ref.document(participation_id).create(participation_data)
        except AlreadyExists:
            logger.warning(f"User {user_id} tried to join challenge {challenge_id} twice")
            raise AlreadyJoined()

        logger.info(f"User {user_id} joined challenge {challenge_id}")

        if self.notifications:
            self.notifications.notify(
                user_id,
                title='Challenge joined',
                message=f"You joined '{challenge.get('title', 'a challenge')}'. Good luck!",
                notification_type='challenge_joined',
                metadata={'challenge_id': challenge_id}
            )

        return {
            **participation_data,
            'id': participation_id,
            'message': 'Successfully joined challenge'
        }

    @translate_store_errors
    def get_participation(self, user_id, challenge_id):
        """
        The caller's participation in a challenge, or None when they never joined
        """
        participation_doc = self.participations_ref.document(participation_id_for(challenge_id, user_id)).get()
        if not participation_doc.exists:
            return None

        participation_data = participation_doc.to_dict()
        participation_data['id'] = participation_doc.id
        return participation_data

    @translate_store_errors
    def update_progress(self, user_id, challenge_id, new_progress):
        """
        Record progress, clamped to [0, target]. Completion never reverts once reached.

        Reaching the target commits the participation write together with whatever
        the ParticipationCompleted subscribers stage, in one batch.
        """
        if not is_finite_number(new_progress):
            raise ValidationError("progress_value must be a finite number", field='progress_value')

        challenge = self.challenges.get_challenge(challenge_id)
        target_value = challenge['target_value']
        participation_ref = self.participations_ref.document(participation_id_for(challenge_id, user_id))

        for _ in range(MAX_WRITE_ATTEMPTS):
            snapshot = participation_ref.get()
            if not snapshot.exists:
                raise NotParticipating("You must join this challenge before updating progress")

            participation = snapshot.to_dict()
            participation['id'] = snapshot.id
            progress = min(max(new_progress, 0), target_value)
            now = self.clock()

            update_data = {
                'current_progress': progress,
                'updated_at': now
            }
            if progress >= target_value and not participation.get('completed'):
                update_data['completed'] = True
                update_data['completed_at'] = now

            batch = self.db.batch()
            batch.update(participation_ref, update_data,
                         option=self.db.write_option(last_update_time=snapshot.update_time))

            if 'completed_at' in update_data:
                self.events.publish(ParticipationCompleted(
                    challenge_id=challenge_id,
                    user_id=user_id,
                    participation_id=participation['id'],
                    score=target_value,
                    completed_at=now,
                    source='progress',
                    batch=batch
                ))

            try:
                batch.commit()
            except (AlreadyExists, FailedPrecondition):
                logger.warning(f"Participation {participation['id']} changed during progress update, re-reading")
                continue

            participation.update(update_data)
            logger.info(f"Progress for user {user_id} on challenge {challenge_id}: {progress}/{target_value}")
            return participation

        raise contention_error("Participation progress")

    def stage_completion(self, batch, participation_id, completed_at):
        """
        Stage the first completion of a participation on ``batch``, guarded by the
        document's update time. Returns False, staging nothing, if already complete.
        """
        participation_ref = self.participations_ref.document(participation_id)
        snapshot = participation_ref.get()
        if not snapshot.exists:
            raise NotFound("Participation not found")

        if snapshot.to_dict().get('completed'):
            return False

        batch.update(participation_ref, {
            'completed': True,
            'completed_at': completed_at,
            'updated_at': completed_at
        }, option=self.db.write_option(last_update_time=snapshot.update_time))
        return True

    @translate_store_errors
    def mark_completed(self, participation_id, completed_at):
        """
        Flag a participation complete. Returns True only on the first transition.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            batch = self.db.batch()
            if not self.stage_completion(batch, participation_id, completed_at):
                return False

            try:
                batch.commit()
            except FailedPrecondition:
                logger.warning(f"Participation {participation_id} changed before completion, re-reading")
                continue

            logger.info(f"Participation {participation_id} completed")
            return True

        raise contention_error("Participation completion")

    @translate_store_errors
    def list_for_user(self, user_id, status='all'):
        """
        The user's participations, most recently joined first, with challenge details
        """
        if status not in PARTICIPATION_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(PARTICIPATION_STATUSES)}", field='status')

        query = self.participations_ref.where('user_id', '==', user_id)
        if status == 'active':
            query = query.where('completed', '==', False)
        elif status == 'completed':
            query = query.where('completed', '==', True)

        participations = []
        for participation_doc in query.order_by('joined_at', direction='DESCENDING').stream():
            participation_data = participation_doc.to_dict()
            participation_data['id'] = participation_doc.id
            try:
                participation_data['challenge'] = self.challenges.get_challenge(participation_data['challenge_id'])
            except NotFound:
                participation_data['challenge'] = None
            participations.append(participation_data)

        return participations
