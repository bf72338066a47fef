"""
Error Handler for EcoChallenge Platform
Centralized error taxonomy, store error translation and JSON error responses
"""

from functools import wraps
import inspect
import logging
import math
import traceback

from flask import jsonify
from google.api_core.exceptions import GoogleAPICallError
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)

# Lost compare-and-set races are re-read and re-applied at most this many times
MAX_WRITE_ATTEMPTS = 3

class EcoError(Exception):
    """Base exception class for EcoChallenge platform"""
    def __init__(self, message, status_code=500, error_code=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code

class ValidationError(EcoError):
    """Raised when input validation fails"""
    def __init__(self, message, field=None):
        super().__init__(message, status_code=400, error_code='VALIDATION_ERROR')
        self.field = field

class AuthenticationError(EcoError):
    """Raised when authentication fails"""
    def __init__(self, message):
        super().__init__(message, status_code=401, error_code='AUTH_ERROR')

class PermissionDenied(EcoError):
    """Raised when a role or ownership check fails"""
    def __init__(self, message):
        super().__init__(message, status_code=403, error_code='PERMISSION_DENIED')

class NotFound(EcoError):
    """Raised when a referenced entity is missing"""
    def __init__(self, message):
        super().__init__(message, status_code=404, error_code='NOT_FOUND')

class AlreadyJoined(EcoError):
    def __init__(self, message="You have already joined this challenge"):
        super().__init__(message, status_code=409, error_code='ALREADY_JOINED')

class ChallengeInactive(EcoError):
    def __init__(self, message="This challenge is no longer active"):
        super().__init__(message, status_code=409, error_code='CHALLENGE_INACTIVE')

class NotParticipating(EcoError):
    def __init__(self, message="You must join this challenge before submitting"):
        super().__init__(message, status_code=403, error_code='NOT_PARTICIPATING')

class MissingRequiredProof(EcoError):
    """Raised when a submission lacks the photos or location the challenge demands"""
    def __init__(self, message, proof_type=None):
        super().__init__(message, status_code=422, error_code='MISSING_REQUIRED_PROOF')
        self.proof_type = proof_type

class AlreadyVerified(EcoError):
    def __init__(self, message="This submission has already been verified"):
        super().__init__(message, status_code=409, error_code='ALREADY_VERIFIED')

class InfrastructureError(EcoError):
    """Raised when the durable store or blob store fails"""
    def __init__(self, message, service_name=None):
        super().__init__(message, status_code=503, error_code='INFRASTRUCTURE_ERROR')
        self.service_name = service_name

def translate_store_errors(f):
    """
    Decorator turning Firestore/Storage API failures into InfrastructureError.
    Platform errors pass through unchanged; nothing is retried.
    """
    def _translate(error):
        logger.error(f"Store failure in {f.__qualname__}: {str(error)}")
        return InfrastructureError(f"Storage backend unavailable: {str(error)}", service_name='firestore')

    if inspect.isgeneratorfunction(f):
        @wraps(f)
        def generator_wrapper(*args, **kwargs):
            try:
                yield from f(*args, **kwargs)
            except GoogleAPICallError as e:
                raise _translate(e) from e
        return generator_wrapper

    @wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except GoogleAPICallError as e:
            raise _translate(e) from e
    return wrapper

def handle_error(error):
    """
    Central error handler that converts exceptions to JSON responses
    """
    if isinstance(error, EcoError):
        if error.status_code >= 500:
            logger.error(f"EcoChallenge error: {error.message}")
        else:
            logger.warning(f"EcoChallenge error: {error.message}")
        return jsonify(format_error_response(error.message, error.error_code)), error.status_code

    if isinstance(error, HTTPException):
        logger.warning(f"HTTP error {error.code}: {error.description}")
        error_code = error.name.upper().replace(' ', '_')
        return jsonify(format_error_response(error.description, error_code)), error.code

    if isinstance(error, KeyError):
        logger.warning(f"Missing key error: {str(error)}")
        return jsonify(format_error_response(f'Missing required field: {str(error)}', 'MISSING_FIELD')), 400

    # Log full traceback for debugging
    logger.error(f"Unhandled error: {str(error)}")
    logger.error(traceback.format_exc())
    return jsonify(format_error_response('An unexpected error occurred', 'INTERNAL_ERROR')), 500

def contention_error(what):
    logger.error(f"Gave up on {what} after {MAX_WRITE_ATTEMPTS} lost races")
    return InfrastructureError(f"{what} is under heavy contention, try again", service_name='firestore')

def is_finite_number(value):
    """
    True for ints and floats, excluding bools, NaN and infinities
    """
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)

def validate_request_data(data, required_fields, optional_fields=None):
    """
    Validate request data against required and optional fields
    """
    if not data:
        raise ValidationError("Request body cannot be empty")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")

    missing_fields = [field for field in required_fields if field not in data or data[field] is None]
    if missing_fields:
        raise ValidationError(f"Missing required fields: {', '.join(missing_fields)}")

    if optional_fields:
        for field, expected_type in optional_fields.items():
            if field in data and data[field] is not None:
                if not isinstance(data[field], expected_type):
                    type_name = getattr(expected_type, '__name__', None) or ' or '.join(t.__name__ for t in expected_type)
                    raise ValidationError(f"Field '{field}' must be of type {type_name}", field=field)

    return True

def format_success_response(data, message=None):
    """
    Format successful API response
    """
    response = {
        'status': 'success',
        'data': data
    }

    if message:
        response['message'] = message

    return response

def format_error_response(error_message, error_code=None):
    """
    Format error API response
    """
    response = {
        'status': 'error',
        'error': error_message
    }

    if error_code:
        response['error_code'] = error_code

    return response
