from datetime import timedelta

import pytest

from services.participation_service import participation_id_for
from utils.error_handler import (
    AlreadyJoined, ChallengeInactive, InfrastructureError, NotFound, NotParticipating, ValidationError
)

class TestJoin:

    def test_join_creates_participation(self, services, make_challenge, clock, db):
        """Joining creates a fresh, incomplete participation"""
        challenge = make_challenge()

        participation = services.participations.join('student-a', challenge['id'])

        assert participation['id'] == participation_id_for(challenge['id'], 'student-a')
        stored = db.docs('participations')[participation['id']]
        assert stored['current_progress'] == 0
        assert stored['completed'] is False
        assert stored['joined_at'] == clock()
        assert stored['completed_at'] is None

    def test_join_twice_fails(self, services, make_challenge, db):
        """A second join yields AlreadyJoined and leaves exactly one row"""
        challenge = make_challenge()
        services.participations.join('student-a', challenge['id'])

        with pytest.raises(AlreadyJoined):
            services.participations.join('student-a', challenge['id'])

        assert len(db.docs('participations')) == 1

    def test_join_ended_challenge(self, services, make_challenge):
        challenge = make_challenge()
        services.challenges.end_challenge(challenge['id'], 'teacher-1')

        with pytest.raises(ChallengeInactive):
            services.participations.join('student-a', challenge['id'])

    def test_join_expired_challenge(self, services, make_challenge, clock):
        challenge = make_challenge(end_date=clock() + timedelta(hours=1))
        clock.advance(hours=2)

        with pytest.raises(ChallengeInactive):
            services.participations.join('student-a', challenge['id'])

    def test_join_missing_challenge(self, services):
        with pytest.raises(NotFound):
            services.participations.join('student-a', 'missing')

    def test_join_sends_notification(self, services, make_challenge, db):
        challenge = make_challenge()
        services.participations.join('student-a', challenge['id'])

        notifications = list(db.docs('notifications').values())
        assert len(notifications) == 1
        assert notifications[0]['user_id'] == 'student-a'
        assert notifications[0]['type'] == 'challenge_joined'

    def test_join_survives_notification_failure(self, services, make_challenge, mocker):
        """Notification sink failures never fail the join"""
        challenge = make_challenge()
        mocker.patch.object(services.notifications.notifications_ref, 'add', side_effect=RuntimeError('sink down'))

        participation = services.participations.join('student-a', challenge['id'])

        assert participation['completed'] is False

class TestUpdateProgress:

    def test_progress_below_target(self, services, make_challenge, db):
        challenge = make_challenge(target_value=10)
        services.participations.join('student-a', challenge['id'])

        participation = services.participations.update_progress('student-a', challenge['id'], 4)

        assert participation['current_progress'] == 4
        assert participation['completed'] is False
        assert db.docs('challenge_leaderboards') == {}

    def test_progress_is_clamped(self, services, make_challenge):
        """Progress stays within [0, target]"""
        challenge = make_challenge(target_value=10)
        services.participations.join('student-a', challenge['id'])

        assert services.participations.update_progress('student-a', challenge['id'], -3)['current_progress'] == 0
        assert services.participations.update_progress('student-a', challenge['id'], 25)['current_progress'] == 10

    def test_reaching_target_completes_and_ranks(self, services, make_challenge, clock, db):
        """Reaching the target completes the participation and feeds the leaderboard"""
        challenge = make_challenge(target_value=10)
        services.participations.join('student-a', challenge['id'])

        participation = services.participations.update_progress('student-a', challenge['id'], 10)

        assert participation['completed'] is True
        assert participation['completed_at'] == clock()
        entries = list(db.docs('challenge_leaderboards').values())
        assert len(entries) == 1
        assert entries[0]['user_id'] == 'student-a'
        assert entries[0]['score'] == 10

    def test_completion_is_monotonic(self, services, make_challenge, clock, db):
        """Once complete, lower progress never resets the flag or the completion time"""
        challenge = make_challenge(target_value=10)
        services.participations.join('student-a', challenge['id'])
        services.participations.update_progress('student-a', challenge['id'], 10)
        completed_at = clock()

        for value in (9, 0, 10, 3):
            clock.advance(minutes=5)
            participation = services.participations.update_progress('student-a', challenge['id'], value)
            assert participation['completed'] is True
            assert participation['completed_at'] == completed_at

        stored = db.docs('participations')[participation_id_for(challenge['id'], 'student-a')]
        assert stored['completed'] is True
        assert stored['current_progress'] == 3
        assert len(db.docs('challenge_leaderboards')) == 1

    def test_progress_without_joining(self, services, make_challenge):
        challenge = make_challenge()
        with pytest.raises(NotParticipating):
            services.participations.update_progress('student-b', challenge['id'], 1)

    @pytest.mark.parametrize('value', ['3', None, True, float('nan'), float('inf'), float('-inf')])
    def test_progress_must_be_numeric(self, services, make_challenge, value):
        challenge = make_challenge()
        services.participations.join('student-a', challenge['id'])
        with pytest.raises(ValidationError):
            services.participations.update_progress('student-a', challenge['id'], value)

class TestMarkCompleted:

    def test_mark_completed_once(self, services, make_challenge, clock):
        challenge = make_challenge()
        participation = services.participations.join('student-a', challenge['id'])

        assert services.participations.mark_completed(participation['id'], clock()) is True
        assert services.participations.mark_completed(participation['id'], clock()) is False

    def test_mark_completed_missing(self, services, clock):
        with pytest.raises(NotFound):
            services.participations.mark_completed('missing', clock())

    def test_mark_completed_loses_to_concurrent_completion(self, services, make_challenge, clock, db, mocker):
        """A completion that lands between read and write wins; completed_at is stamped once"""
        challenge = make_challenge()
        participation = services.participations.join('student-a', challenge['id'])
        participation_ref = db.collection('participations').document(participation['id'])
        first_completed_at = clock()

        batch_type = type(db.batch())
        original_commit = batch_type.commit

        def complete_then_commit(batch):
            if not participation_ref.get().to_dict()['completed']:
                participation_ref.update({'completed': True, 'completed_at': first_completed_at})
            return original_commit(batch)

        mocker.patch.object(batch_type, 'commit', complete_then_commit)
        clock.advance(minutes=5)

        assert services.participations.mark_completed(participation['id'], clock()) is False
        assert db.docs('participations')[participation['id']]['completed_at'] == first_completed_at

class TestProgressAtomicity:

    def test_failed_leaderboard_write_rolls_back_completion(self, services, make_challenge, db, mocker):
        """Nothing is written when the leaderboard cannot be updated, so a retry completes cleanly"""
        challenge = make_challenge(target_value=3)
        participation = services.participations.join('student-a', challenge['id'])
        mocker.patch.object(services.leaderboard, 'stage_upsert', side_effect=InfrastructureError('down'))

        with pytest.raises(InfrastructureError):
            services.participations.update_progress('student-a', challenge['id'], 3)

        stored = db.docs('participations')[participation['id']]
        assert stored['completed'] is False
        assert stored['current_progress'] == 0
        assert db.docs('challenge_leaderboards') == {}

        mocker.stopall()
        result = services.participations.update_progress('student-a', challenge['id'], 3)

        assert result['completed'] is True
        entries = list(db.docs('challenge_leaderboards').values())
        assert [(e['user_id'], e['score']) for e in entries] == [('student-a', 3)]

    def test_concurrent_progress_is_reapplied(self, services, make_challenge, db, mocker):
        """A write racing the progress update forces a re-read instead of clobbering it"""
        challenge = make_challenge(target_value=10)
        participation = services.participations.join('student-a', challenge['id'])
        participation_ref = db.collection('participations').document(participation['id'])

        batch_type = type(db.batch())
        original_commit = batch_type.commit
        raced = []

        def race_then_commit(batch):
            if not raced:
                raced.append(True)
                participation_ref.update({'note': 'touched elsewhere'})
            return original_commit(batch)

        mocker.patch.object(batch_type, 'commit', race_then_commit)

        result = services.participations.update_progress('student-a', challenge['id'], 4)

        assert result['current_progress'] == 4
        stored = db.docs('participations')[participation['id']]
        assert stored['current_progress'] == 4
        assert stored['note'] == 'touched elsewhere'

class TestListForUser:

    def test_status_filters(self, services, make_challenge, clock):
        """Participations come back newest-joined first, with their challenge"""
        done = make_challenge(title='Done')
        open_ = make_challenge(title='Open', target_value=5)
        services.participations.join('student-a', done['id'])
        clock.advance(minutes=1)
        services.participations.join('student-a', open_['id'])
        services.participations.update_progress('student-a', done['id'], 1)

        everything = services.participations.list_for_user('student-a')
        active = services.participations.list_for_user('student-a', 'active')
        completed = services.participations.list_for_user('student-a', 'completed')

        assert [p['challenge']['title'] for p in everything] == ['Open', 'Done']
        assert [p['challenge_id'] for p in active] == [open_['id']]
        assert [p['challenge_id'] for p in completed] == [done['id']]

    def test_unknown_status(self, services):
        with pytest.raises(ValidationError):
            services.participations.list_for_user('student-a', 'archived')
