"""
Leaderboard Service for EcoChallenge Platform
Per-challenge rankings fed by participation completion events
"""

import logging

from google.api_core.exceptions import AlreadyExists, FailedPrecondition

from utils.clock import to_utc, utc_now
from utils.error_handler import (
    MAX_WRITE_ATTEMPTS, ValidationError, contention_error, is_finite_number, translate_store_errors
)

logger = logging.getLogger(__name__)

def leaderboard_entry_id(challenge_id, user_id):
    return f"{challenge_id}_{user_id}"

class LeaderboardService:
    def __init__(self, db, clock=utc_now):
        self.db = db
        self.clock = clock
        self.leaderboards_ref = db.collection('challenge_leaderboards')

    def handle_participation_completed(self, event):
        """
        Event bus subscriber for ParticipationCompleted. When the event carries a
        write batch the entry is staged on it; the publisher commits.
        """
        if event.batch is None:
            self.upsert(event.challenge_id, event.user_id, event.score, event.completed_at)
        else:
            self.stage_upsert(event.batch, event.challenge_id, event.user_id, event.score, event.completed_at)

    @translate_store_errors
    def stage_upsert(self, batch, challenge_id, user_id, score, completed_at=None):
        """
        Stage the insert or score raise of the (challenge, user) entry on ``batch``.

        Returns ``(entry, staged)``. Nothing is staged when the stored score already
        matches or beats ``score``. Staged writes are guarded so the commit fails if
        another writer got to the entry first.
        """
        if not is_finite_number(score) or score < 0:
            raise ValidationError("score must be a non-negative number", field='score')

        completed_at = to_utc(completed_at) if completed_at else self.clock()
        entry_ref = self.leaderboards_ref.document(leaderboard_entry_id(challenge_id, user_id))
        snapshot = entry_ref.get()

        if not snapshot.exists:
            entry = {
                'challenge_id': challenge_id,
                'user_id': user_id,
                'score': score,
                'rank': None,
                'completed_at': completed_at,
                'updated_at': self.clock()
            }
            batch.create(entry_ref, entry)
            return entry, True

        entry = snapshot.to_dict()
        if score <= entry.get('score', 0):
            return entry, False

        update_data = {
            'score': score,
            'completed_at': completed_at,
            'updated_at': self.clock()
        }
        batch.update(entry_ref, update_data, option=self.db.write_option(last_update_time=snapshot.update_time))
        entry.update(update_data)
        return entry, True

    @translate_store_errors
    def upsert(self, challenge_id, user_id, score, completed_at=None):
        """
        Insert the (challenge, user) entry or keep the better of the old and new score.
        completed_at records when the best score was first reached.
        """
        for _ in range(MAX_WRITE_ATTEMPTS):
            batch = self.db.batch()
            entry, staged = self.stage_upsert(batch, challenge_id, user_id, score, completed_at)
            if not staged:
                return entry

            try:
                batch.commit()
            except (AlreadyExists, FailedPrecondition):
                logger.warning(f"Leaderboard entry for user {user_id} on challenge {challenge_id} changed, merging again")
                continue

            logger.info(f"Leaderboard entry for user {user_id} on challenge {challenge_id} now {score}")
            return entry

        raise contention_error("Leaderboard entry")

    @translate_store_errors
    def rank(self, challenge_id, limit=10):
        """
        Yield entries by score (highest first), earlier completion breaking ties,
        each annotated with its 1-based rank
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer", field='limit')

        query = (self.leaderboards_ref
                 .where('challenge_id', '==', challenge_id)
                 .order_by('score', direction='DESCENDING')
                 .order_by('completed_at', direction='ASCENDING')
                 .limit(limit))

        for position, entry_doc in enumerate(query.stream(), 1):
            entry = entry_doc.to_dict()
            entry['id'] = entry_doc.id
            entry['rank'] = position
            yield entry

    @translate_store_errors
    def find_user_rank(self, challenge_id, user_id):
        """
        The user's ranked entry on a challenge, or None when they have none
        """
        entry_doc = self.leaderboards_ref.document(leaderboard_entry_id(challenge_id, user_id)).get()
        if not entry_doc.exists:
            return None

        entry = entry_doc.to_dict()
        score = entry.get('score', 0)
        completed_at = entry.get('completed_at')

        # Count entries that sort ahead: higher score, or same score reached earlier
        ahead = 0
        for other_doc in self.leaderboards_ref.where('challenge_id', '==', challenge_id).where('score', '>=', score).stream():
            if other_doc.id == entry_doc.id:
                continue
            other = other_doc.to_dict()
            if other.get('score', 0) > score or (completed_at is not None and other.get('completed_at') is not None
                                                  and other['completed_at'] < completed_at):
                ahead += 1

        entry['id'] = entry_doc.id
        entry['rank'] = ahead + 1
        return entry
