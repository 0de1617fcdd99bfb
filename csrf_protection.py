"""
CSRF protection
Double-submit token pattern for cookie-authenticated mutations, behind the CSRF_ENFORCE flag
"""

import hmac
import os
import secrets
import logging

from flask import request, jsonify, session, make_response, g

from cookies import CSRF_COOKIE_NAME, set_csrf_cookie, clear_csrf_cookie

logger = logging.getLogger(__name__)

MUTATING_METHODS = ('POST', 'PUT', 'PATCH', 'DELETE')


def generate_csrf_token():
    """Generate a cryptographically secure CSRF token (>=128 bits)"""
    return secrets.token_urlsafe(32)


def get_csrf_enforcement():
    """Check if CSRF enforcement is enabled via feature flag"""
    return os.environ.get('CSRF_ENFORCE', 'false').lower() == 'true'


def _equal(a, b):
    return bool(a and b) and hmac.compare_digest(a, b)


def validate_csrf_token():
    """
    Validate the CSRF token using the double-submit pattern
    Returns (is_valid, error_code, error_message)
    """
    csrf_header = request.headers.get('X-CSRF-Token')
    csrf_cookie = request.cookies.get(CSRF_COOKIE_NAME)
    stored_csrf = session.get('csrf')

    header_eq_cookie = _equal(csrf_header, csrf_cookie)
    header_eq_store = _equal(csrf_header, stored_csrf)

    logger.info(f"csrf_validate header_present={bool(csrf_header)} cookie_present={bool(csrf_cookie)} "
                f"store_present={bool(stored_csrf)} header_eq_cookie={header_eq_cookie} "
                f"header_eq_store={header_eq_store}")

    if not csrf_header:
        return False, 'CSRF_MISSING', 'CSRF token missing'
    if not csrf_cookie:
        return False, 'CSRF_COOKIE_MISSING', 'CSRF cookie missing'
    if not header_eq_cookie or not header_eq_store:
        return False, 'CSRF_INVALID', 'CSRF validation failed'
    return True, None, None


def enforce_csrf():
    """
    Check CSRF for the current authenticated request.
    Returns None to proceed, or a (response, 403) tuple when the request must be blocked.
    Bearer-token requests and safe methods are not subject to CSRF.
    """
    if request.method not in MUTATING_METHODS:
        return None
    if getattr(g, 'auth_method', None) != 'session':
        return None

    is_valid, error_code, error_message = validate_csrf_token()
    if is_valid:
        return None

    session_id = session.get('session_id', 'unknown')
    logger.warning(f"csrf_fail session_id={session_id} reason={error_code}")

    if not get_csrf_enforcement():
        logger.info(f"csrf_shadow_mode would_block=true reason={error_code} session_id={session_id}")
        return None

    response = jsonify({
        'ok': False,
        'code': error_code,
        'error': error_message,
    })
    response.headers['Cache-Control'] = 'no-store'
    response.headers['Vary'] = 'Origin'
    return response, 403


def issue_csrf_token(response, csrf_token=None):
    """Store a (new) token in the session and set the cookie. Call from login."""
    csrf_token = csrf_token or generate_csrf_token()
    session['csrf'] = csrf_token
    set_csrf_cookie(response, csrf_token)
    logger.info(f"csrf_issue session_id={session.get('session_id')}")
    return csrf_token


def clear_csrf_on_logout(response):
    session.pop('csrf', None)
    return clear_csrf_cookie(response)


def create_csrf_endpoints(app, require_auth):
    """Create CSRF-related endpoints"""

    @app.route('/api/auth/csrf', methods=['GET'])
    @require_auth
    def get_csrf_token():
        """Fetch/rotate the CSRF token for the current session"""
        csrf_token = generate_csrf_token()
        response = make_response(jsonify({'ok': True, 'csrf': csrf_token}))
        issue_csrf_token(response, csrf_token)
        response.headers['Cache-Control'] = 'no-store'
        response.headers['Vary'] = 'Origin'

        app.logger.info(f"csrf_rotate user_id={g.user.id} session_id={session.get('session_id')}")
        return response, 200

    return get_csrf_token
