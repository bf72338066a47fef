"""
Authentication Middleware for EcoChallenge Platform
Handles Firebase token validation and request authentication
"""

from functools import wraps
from flask import request
from firebase_admin import auth
import logging

from utils.error_handler import AuthenticationError, handle_error

logger = logging.getLogger(__name__)

def _extract_token():
    auth_header = request.headers.get('Authorization')
    if not auth_header:
        raise AuthenticationError('Authorization header required')

    # Remove 'Bearer ' prefix
    token = auth_header.replace('Bearer ', '').strip()
    if not token:
        raise AuthenticationError('Valid token required')
    return token

def require_auth(f):
    """
    Decorator to require authentication for API endpoints.
    The decoded token is exposed as ``request.current_user``.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        try:
            token = _extract_token()
            decoded_token = auth.verify_id_token(token)
        except AuthenticationError as e:
            return handle_error(e)
        except auth.ExpiredIdTokenError:
            logger.warning("Expired token provided")
            return handle_error(AuthenticationError('Token expired'))
        except auth.RevokedIdTokenError:
            logger.warning("Revoked token provided")
            return handle_error(AuthenticationError('Token revoked'))
        except auth.InvalidIdTokenError:
            logger.warning("Invalid token provided")
            return handle_error(AuthenticationError('Invalid token'))
        except (ValueError, auth.CertificateFetchError) as e:
            logger.error(f"Authentication error: {str(e)}")
            return handle_error(AuthenticationError('Authentication failed'))

        request.current_user = decoded_token
        return f(*args, **kwargs)

    return decorated_function

def current_user_id():
    """
    UID of the authenticated caller; only valid inside a @require_auth view
    """
    return request.current_user['uid']
