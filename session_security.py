"""
Session security middleware
Validates the cookie session on every request, flags suspicious activity,
rotates the session identifier and keeps activity/limits current.
"""

import logging

from flask import request, session, jsonify, g

from rate_limit import get_client_ip

logger = logging.getLogger(__name__)

SECURITY_WARNING_HEADER = 'X-Security-Warning'
SECURITY_WARNING_VALUE = 'suspicious-activity-detected'


def init_session_security(app, service, exempt_endpoints=()):
    exempt = set(exempt_endpoints)

    @app.before_request
    def check_session_security():
        if request.method == 'OPTIONS' or request.endpoint in exempt:
            return None

        session_id = session.get('session_id')
        if not session_id:
            return None

        result = service.validate_session_security(session_id, request)
        if not result['valid']:
            logger.warning(f"session_validation_failed session_id={session_id} reason={result['reason']} "
                           f"ip={get_client_ip(request)} path={request.path}")
            session.clear()
            return jsonify({
                'ok': False,
                'error': 'session_invalid',
                'code': 'SESSION_INVALID',
                'message': 'Session expired or invalid. Please log in again.',
                'reason': result['reason'],
            }), 401

        user_session = result['session']
        activity = service.detect_suspicious_activity(session_id, request)
        if activity['suspicious']:
            logger.critical(f"session_security_alert session_id={session_id} user_id={user_session.user_id} "
                            f"flags={activity['flags']} ip={get_client_ip(request)} "
                            f"ua={request.headers.get('User-Agent', '')[:80]}")
            g.security_warning = activity['flags']
            return None

        if service.should_rotate(user_session):
            new_session_id = service.rotate_session_id(session_id)
            if new_session_id:
                session['session_id'] = new_session_id
                session_id = new_session_id

        service.update_session_activity(session_id)

        user = service.user_for_session(user_session)
        if user:
            service.enforce_concurrent_session_limit(user)
        return None

    @app.after_request
    def add_security_warning(resp):
        if getattr(g, 'security_warning', None):
            resp.headers[SECURITY_WARNING_HEADER] = SECURITY_WARNING_VALUE
        return resp

    return check_session_security
