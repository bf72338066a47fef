"""
EcoChallenge Backend - Challenge, Submission and Verification API
Firebase Cloud Functions + Firestore Backend

Main entry point for the Flask API wrapped as Firebase Functions
"""

import os
from types import SimpleNamespace
import logging

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from firebase_functions import https_fn, options
from firebase_admin import credentials, firestore, get_app, initialize_app

from config import Settings
from services.challenge_service import ChallengeService
from services.leaderboard_service import LeaderboardService
from services.notification_service import NotificationService
from services.participation_service import ParticipationService
from services.profile_service import ProfileService
from services.storage_service import StorageService
from services.submission_service import SubmissionService
from services.verification_service import VerificationService
from utils.auth_middleware import current_user_id, require_auth
from utils.clock import utc_now
from utils.error_handler import (
    ValidationError, format_error_response, format_success_response, handle_error, validate_request_data
)
from utils.events import EventBus, ParticipationCompleted

logger = logging.getLogger(__name__)

bp = Blueprint('ecochallenge', __name__)

def init_firebase(settings):
    """
    Initialize Firebase Admin SDK once per process and return a Firestore client
    """
    try:
        get_app()
    except ValueError:
        app_options = {'storageBucket': settings.storage_bucket} if settings.storage_bucket else None
        # For local development, use service account key
        if os.path.exists(settings.service_account_path):
            initialize_app(credentials.Certificate(settings.service_account_path), app_options)
        else:
            # Use default credentials in production
            initialize_app(options=app_options)
    return firestore.client()

def build_services(db, settings, storage_service=None, notification_service=None, clock=utc_now):
    """
    Wire the workflow services together around one event bus
    """
    events = EventBus()
    notifications = notification_service or NotificationService(db, settings, clock=clock)
    profiles = ProfileService(db)
    challenges = ChallengeService(db, profiles, settings, clock=clock)
    participations = ParticipationService(db, challenges, events, notifications, clock=clock)
    submissions = SubmissionService(db, challenges, participations, profiles, clock=clock)
    verification = VerificationService(db, challenges, participations, profiles, events,
                                       notifications, settings, clock=clock)
    leaderboard = LeaderboardService(db, clock=clock)

    events.subscribe(ParticipationCompleted, leaderboard.handle_participation_completed)

    return SimpleNamespace(
        events=events,
        notifications=notifications,
        profiles=profiles,
        challenges=challenges,
        participations=participations,
        submissions=submissions,
        verification=verification,
        leaderboard=leaderboard,
        storage=storage_service or StorageService(settings, clock=clock),
    )

def create_app(db=None, settings=None, storage_service=None, notification_service=None, clock=utc_now):
    settings = settings or Settings()

    # Configure logging
    logging.basicConfig(level=settings.log_level)

    if db is None:
        db = init_firebase(settings)

    app = Flask(__name__)
    CORS(app, origins=settings.allowed_origins)

    app.config['SETTINGS'] = settings
    app.config['MAX_CONTENT_LENGTH'] = settings.max_request_bytes
    app.extensions['ecochallenge'] = build_services(db, settings, storage_service, notification_service, clock)
    app.register_blueprint(bp)

    @app.errorhandler(404)
    def not_found(error):
        return jsonify(format_error_response('Endpoint not found', 'NOT_FOUND')), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify(format_error_response('Method not allowed', 'METHOD_NOT_ALLOWED')), 405

    @app.errorhandler(413)
    def request_too_large(error):
        return jsonify(format_error_response('Request body is too large', 'REQUEST_ENTITY_TOO_LARGE')), 413

    @app.errorhandler(500)
    def internal_error(error):
        logger.error(f"Internal server error: {str(error)}")
        return jsonify(format_error_response('Internal server error', 'INTERNAL_ERROR')), 500

    return app

def services():
    return current_app.extensions['ecochallenge']

def _query_number(name, cast, default=None):
    value = request.args.get(name)
    if value is None or value == '':
        return default
    try:
        return cast(value)
    except ValueError:
        raise ValidationError(f"Query parameter '{name}' must be a number", field=name)

def _location_from(data):
    """
    Accepts a nested ``location`` object or flat submission_location_* fields
    """
    if data.get('location') is not None:
        return data['location']
    if data.get('submission_location_lat') is None and data.get('submission_location_lng') is None:
        return None
    return {
        'lat': data.get('submission_location_lat'),
        'lng': data.get('submission_location_lng'),
        'address': data.get('submission_location_address')
    }

# Health check endpoint
@bp.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({
        'status': 'healthy',
        'service': 'ecochallenge-backend',
        'version': current_app.config['SETTINGS'].api_version
    })

# ============= CHALLENGE ENDPOINTS =============

@bp.route('/challenges', methods=['POST'])
@require_auth
def create_challenge():
    """Teacher, NGO, institution or admin creates a challenge"""
    try:
        data = request.get_json(silent=True)
        validate_request_data(data, ['title', 'target_value', 'points_reward'])

        challenge = services().challenges.create_challenge(current_user_id(), data)
        return jsonify(format_success_response(challenge, 'Challenge created successfully')), 201
    except Exception as e:
        return handle_error(e)

@bp.route('/challenges', methods=['GET'])
@require_auth
def list_active_challenges():
    """Get all active challenges"""
    try:
        challenges = list(services().challenges.list_active(user_id=current_user_id()))
        return jsonify(format_success_response({'challenges': challenges}))
    except Exception as e:
        return handle_error(e)

@bp.route('/challenges/nearby', methods=['GET'])
@require_auth
def list_nearby_challenges():
    """Get active challenges near a location"""
    try:
        challenges = services().challenges.list_nearby(
            _query_number('lat', float),
            _query_number('lng', float),
            _query_number('radius_km', float),
            user_id=current_user_id()
        )
        return jsonify(format_success_response({'challenges': challenges}))
    except Exception as e:
        return handle_error(e)

@bp.route('/challenge/<challenge_id>', methods=['GET'])
@require_auth
def get_challenge(challenge_id):
    try:
        return jsonify(format_success_response(services().challenges.get_challenge(challenge_id)))
    except Exception as e:
        return handle_error(e)

@bp.route('/challenge/<challenge_id>/end', methods=['POST'])
@require_auth
def end_challenge(challenge_id):
    """Creator or admin ends a challenge"""
    try:
        result = services().challenges.end_challenge(challenge_id, current_user_id())
        return jsonify(format_success_response(result, result['message']))
    except Exception as e:
        return handle_error(e)

# ============= PARTICIPATION ENDPOINTS =============

@bp.route('/challenge/<challenge_id>/join', methods=['POST'])
@require_auth
def join_challenge(challenge_id):
    try:
        participation = services().participations.join(current_user_id(), challenge_id)
        return jsonify(format_success_response(participation, participation['message'])), 201
    except Exception as e:
        return handle_error(e)

@bp.route('/challenge/<challenge_id>/progress', methods=['POST'])
@require_auth
def update_challenge_progress(challenge_id):
    try:
        data = request.get_json(silent=True)
        validate_request_data(data, ['progress_value'])

        participation = services().participations.update_progress(
            current_user_id(), challenge_id, data['progress_value']
        )
        return jsonify(format_success_response(participation))
    except Exception as e:
        return handle_error(e)

@bp.route('/me/challenges', methods=['GET'])
@require_auth
def get_my_challenges():
    """Caller's participations: all, active or completed"""
    try:
        status = request.args.get('status', 'all')
        participations = services().participations.list_for_user(current_user_id(), status)
        return jsonify(format_success_response({'participations': participations}))
    except Exception as e:
        return handle_error(e)

# ============= SUBMISSION ENDPOINTS =============

@bp.route('/challenge/<challenge_id>/photos', methods=['POST'])
@require_auth
def upload_submission_photo(challenge_id):
    """Upload one proof photo; the returned URL goes into photo_urls"""
    try:
        photo = request.files.get('photo')
        if photo is None:
            raise ValidationError("Multipart field 'photo' is required", field='photo')

        uploaded = services().storage.upload_submission_photo(
            current_user_id(), challenge_id, photo.read(), photo.filename, photo.mimetype
        )
        return jsonify(format_success_response(uploaded)), 201
    except Exception as e:
        return handle_error(e)

@bp.route('/challenge/<challenge_id>/submissions', methods=['POST'])
@require_auth
def submit_challenge(challenge_id):
    try:
        data = request.get_json(silent=True) or {}
        if data:
            validate_request_data(data, [], {'photo_urls': list, 'location': dict})

        submission = services().submissions.submit(
            current_user_id(),
            challenge_id,
            data.get('submission_text'),
            data.get('photo_urls'),
            _location_from(data)
        )
        return jsonify(format_success_response(submission, 'Submission created successfully')), 201
    except Exception as e:
        return handle_error(e)

@bp.route('/challenge/<challenge_id>/submissions', methods=['GET'])
@require_auth
def list_challenge_submissions(challenge_id):
    """Challenge creator, admin or NGO lists all submissions"""
    try:
        submissions = services().submissions.list_for_challenge(challenge_id, current_user_id())
        return jsonify(format_success_response({'submissions': submissions}))
    except Exception as e:
        return handle_error(e)

@bp.route('/challenge/<challenge_id>/submissions/mine', methods=['GET'])
@require_auth
def list_my_submissions(challenge_id):
    try:
        submissions = services().submissions.list_mine(current_user_id(), challenge_id)
        return jsonify(format_success_response({'submissions': submissions}))
    except Exception as e:
        return handle_error(e)

@bp.route('/submission/<submission_id>/verify', methods=['POST'])
@require_auth
def verify_submission(submission_id):
    """Approve or reject a pending submission"""
    try:
        data = request.get_json(silent=True)
        validate_request_data(data, ['verification_status'], {'verification_notes': str})

        result = services().verification.verify(
            submission_id,
            current_user_id(),
            data['verification_status'],
            data.get('verification_notes')
        )
        return jsonify(format_success_response(result, result['message']))
    except Exception as e:
        return handle_error(e)

# ============= LEADERBOARD ENDPOINTS =============

@bp.route('/challenge/<challenge_id>/leaderboard', methods=['GET'])
@require_auth
def get_challenge_leaderboard(challenge_id):
    try:
        limit = _query_number('limit', int, current_app.config['SETTINGS'].leaderboard_limit)
        leaderboard = services().leaderboard

        entries = list(leaderboard.rank(challenge_id, limit))
        current_user = leaderboard.find_user_rank(challenge_id, current_user_id())

        return jsonify(format_success_response({
            'challenge_id': challenge_id,
            'entries': entries,
            'current_user': current_user,
            'total_entries': len(entries)
        }))
    except Exception as e:
        return handle_error(e)

_app = None

def get_flask_app():
    global _app
    if _app is None:
        _app = create_app()
    return _app

# Firebase Cloud Function wrapper
@https_fn.on_request(
    cors=options.CorsOptions(
        cors_origins=["*"],
        cors_methods=["GET", "POST", "OPTIONS"]
    )
)
def api(req):
    """Main Cloud Function entry point"""
    app = get_flask_app()
    with app.request_context(req.environ):
        return app.full_dispatch_request()

# For local development
if __name__ == '__main__':
    get_flask_app().run(debug=True, host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))
