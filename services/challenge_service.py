"""
Challenge Service for EcoChallenge Platform
Challenge catalog: creation, validation, active/nearby listings and ending
"""

import logging

from config import Settings
from utils.clock import to_utc, utc_now
from utils.error_handler import NotFound, PermissionDenied, ValidationError, is_finite_number, translate_store_errors
from utils.geo import distance_km, is_valid_coordinate
from utils.permissions import CREATE_CHALLENGE, END_ANY_CHALLENGE, has_capability

logger = logging.getLogger(__name__)

BOOLEAN_FLAGS = ('requires_location_verification', 'verification_photos_required')

def is_challenge_active(challenge, now):
    """
    A challenge is active while flagged active and before its end date (if any)
    """
    if not challenge.get('is_active'):
        return False
    end_date = challenge.get('end_date')
    return end_date is None or now < to_utc(end_date)

class ChallengeService:
    def __init__(self, db, profile_service, settings=None, clock=utc_now):
        self.db = db
        self.profiles = profile_service
        self.settings = settings or Settings()
        self.clock = clock
        self.challenges_ref = db.collection('challenges')
        self.participations_ref = db.collection('participations')

    @translate_store_errors
    def create_challenge(self, creator_id, fields):
        """
        Create a new challenge. Only teachers, admins, NGOs and institutions may create.
        """
        role = self.profiles.get_role(creator_id)
        if not has_capability(role, CREATE_CHALLENGE):
            logger.warning(f"User {creator_id} with role '{role}' attempted to create a challenge")
            raise PermissionDenied("Insufficient permissions to create challenges")

        now = self.clock()
        challenge_data = self._validate_fields(fields or {}, now)
        challenge_data.update({
            'created_by': creator_id,
            'is_active': True,
            'created_at': now,
            'updated_at': now
        })

        _, challenge_ref = self.challenges_ref.add(challenge_data)

        logger.info(f"Created challenge {challenge_ref.id} '{challenge_data['title']}' by {creator_id}")
        return {**challenge_data, 'id': challenge_ref.id}

    def _validate_fields(self, fields, now):
        title = fields.get('title')
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Challenge title is required", field='title')

        target_value = fields.get('target_value')
        if not is_finite_number(target_value) or target_value < 1:
            raise ValidationError("target_value must be a number of at least 1", field='target_value')

        points_reward = fields.get('points_reward')
        if not is_finite_number(points_reward) or points_reward < 1:
            raise ValidationError("points_reward must be a number of at least 1", field='points_reward')

        try:
            start_date = to_utc(fields.get('start_date')) or now
            end_date = to_utc(fields.get('end_date'))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid date: {str(e)}", field='end_date')

        if end_date is not None and end_date <= now:
            raise ValidationError("end_date must be in the future", field='end_date')
        if end_date is not None and end_date <= start_date:
            raise ValidationError("end_date must be after start_date", field='end_date')

        challenge_data = {
            'title': title.strip(),
            'description': fields.get('description') or '',
            'challenge_type': fields.get('challenge_type') or 'general',
            'target_value': target_value,
            'points_reward': points_reward,
            'start_date': start_date,
            'end_date': end_date,
        }

        for flag in BOOLEAN_FLAGS:
            value = fields.get(flag, False)
            if not isinstance(value, bool):
                raise ValidationError(f"{flag} must be a boolean", field=flag)
            challenge_data[flag] = value

        challenge_data.update(self._validate_geofence(fields))
        return challenge_data

    def _validate_geofence(self, fields):
        lat = fields.get('location_lat')
        lng = fields.get('location_lng')

        if lat is None and lng is None:
            return {
                'location_lat': None,
                'location_lng': None,
                'location_radius_km': None,
                'location_address': fields.get('location_address')
            }

        if not (is_finite_number(lat) and is_finite_number(lng) and is_valid_coordinate(lat, lng)):
            raise ValidationError("Geofence needs a valid location_lat and location_lng", field='location_lat')

        radius = fields.get('location_radius_km')
        if radius is None:
            radius = self.settings.default_geofence_radius_km
        if not is_finite_number(radius) or radius <= 0:
            raise ValidationError("location_radius_km must be positive", field='location_radius_km')

        return {
            'location_lat': lat,
            'location_lng': lng,
            'location_radius_km': radius,
            'location_address': fields.get('location_address')
        }

    @translate_store_errors
    def get_challenge(self, challenge_id):
        challenge_doc = self.challenges_ref.document(challenge_id).get()
        if not challenge_doc.exists:
            raise NotFound("Challenge not found")

        challenge_data = challenge_doc.to_dict()
        challenge_data['id'] = challenge_doc.id
        return challenge_data

    @translate_store_errors
    def list_active(self, now=None, user_id=None):
        """
        Yield active challenges, newest first. Each call re-runs the query.
        With ``user_id`` each challenge carries that user's participation (or None).
        """
        now = now or self.clock()
        query = self.challenges_ref.where('is_active', '==', True).order_by('created_at', direction='DESCENDING')
        participations = self._participations_by_challenge(user_id) if user_id else {}

        for challenge_doc in query.stream():
            challenge_data = challenge_doc.to_dict()
            if is_challenge_active(challenge_data, now):
                challenge_data['id'] = challenge_doc.id
                if user_id:
                    challenge_data['participation'] = participations.get(challenge_doc.id)
                yield challenge_data

    def _participations_by_challenge(self, user_id):
        participations = {}
        for participation_doc in self.participations_ref.where('user_id', '==', user_id).stream():
            participation_data = participation_doc.to_dict()
            participations[participation_data['challenge_id']] = {
                'id': participation_doc.id,
                'current_progress': participation_data.get('current_progress', 0),
                'completed': participation_data.get('completed', False),
                'joined_at': participation_data.get('joined_at'),
                'completed_at': participation_data.get('completed_at')
            }
        return participations

    def list_nearby(self, lat, lng, radius_km=None, now=None, user_id=None):
        """
        Active geofenced challenges whose centre lies within reach of the point.
        A challenge's own radius wins over the requested search radius.
        """
        if lat is None or lng is None:
            raise ValidationError("Location coordinates are required")
        if not is_valid_coordinate(lat, lng):
            raise ValidationError("Location coordinates are out of range")
        if radius_km is None:
            radius_km = self.settings.nearby_search_radius_km
        if not is_finite_number(radius_km) or radius_km <= 0:
            raise ValidationError("radius_km must be a positive number", field='radius_km')

        lat, lng = float(lat), float(lng)
        nearby = []
        for challenge in self.list_active(now, user_id):
            if challenge.get('location_lat') is None or challenge.get('location_lng') is None:
                continue

            distance = distance_km(lat, lng, challenge['location_lat'], challenge['location_lng'])
            if distance <= (challenge.get('location_radius_km') or radius_km):
                challenge['distance_km'] = round(distance, 2)
                nearby.append(challenge)

        return nearby

    @translate_store_errors
    def end_challenge(self, challenge_id, actor_id):
        """
        Soft-end a challenge. Only its creator or an admin may do this.
        """
        challenge = self.get_challenge(challenge_id)

        if challenge.get('created_by') != actor_id:
            role = self.profiles.get_role(actor_id)
            if not has_capability(role, END_ANY_CHALLENGE):
                logger.warning(f"User {actor_id} attempted to end challenge {challenge_id}")
                raise PermissionDenied("Insufficient permissions to end this challenge")

        now = self.clock()
        self.challenges_ref.document(challenge_id).update({
            'is_active': False,
            'end_date': now,
            'updated_at': now
        })

        logger.info(f"Challenge {challenge_id} ended by {actor_id}")
        return {
            'challenge_id': challenge_id,
            'is_active': False,
            'end_date': now,
            'message': 'Challenge ended successfully'
        }
