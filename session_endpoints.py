"""
Session listing and revocation endpoints
Logout-all, per-device revocation, session stats and the admin security report
"""

import logging

from flask import request, jsonify, session, make_response, g

from cookies import clear_all_auth_cookies
from models import db, UserSession
from rate_limit import get_client_ip

logger = logging.getLogger(__name__)

MAX_REPORT_DAYS = 90


def _no_store(response):
    response.headers['Cache-Control'] = 'no-store'
    return response


def create_session_endpoints(app, service, jwt_service, require_auth, require_admin):
    """Create session management endpoints"""

    @app.route('/api/auth/sessions', methods=['GET'])
    @require_auth
    def list_sessions():
        current_session_id = session.get('session_id')
        sessions = service.get_active_sessions(g.user)
        return jsonify({
            'ok': True,
            'sessions': [s.to_dict(current_session_id) for s in sessions],
            'total': len(sessions),
        })

    @app.route('/api/auth/sessions/<session_id>', methods=['DELETE'])
    @require_auth
    def revoke_session(session_id):
        user_session = UserSession.query.filter_by(
            session_id=session_id, user_id=g.user.id, is_active=True
        ).first()
        if not user_session:
            return jsonify({
                'ok': False,
                'error': 'Session not found',
                'code': 'NOT_FOUND'
            }), 404

        try:
            service.invalidate_session(session_id, 'user_revoked')
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Session revoke error: {e}")
            return jsonify({
                'ok': False,
                'error': 'Session revoke failed',
                'code': 'INTERNAL_ERROR'
            }), 500

        self_revoked = session_id == session.get('session_id')
        app.logger.info(f"auth_session_revoke user_id={g.user.id} session_id={session_id} self_revoked={self_revoked}")

        response = make_response(jsonify({'ok': True, 'self_revoked': self_revoked}))
        if self_revoked:
            session.clear()
            clear_all_auth_cookies(response)
        return _no_store(response), 200

    @app.route('/api/auth/logout-all', methods=['POST'])
    @require_auth
    def logout_all():
        """Invalidate every other session and all JWTs; ?include_current=1 ends this one too"""
        user = g.user
        current_session_id = session.get('session_id')
        include_current = request.args.get('include_current', '0').lower() in ('1', 'true', 'yes')

        try:
            revoked_count = service.invalidate_other_sessions(user, current_session_id)
            refresh_revoked = jwt_service.blacklist_all_user_tokens(user.id)

            self_revoked = False
            if include_current and current_session_id:
                self_revoked = service.invalidate_session(current_session_id, 'logout_all_devices')
                if self_revoked:
                    revoked_count += 1
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Logout-all error: {e}")
            return jsonify({
                'ok': False,
                'error': 'Logout-all failed',
                'code': 'INTERNAL_ERROR'
            }), 500

        app.logger.info(f"auth_logout_all user_id={user.id} count_revoked={revoked_count} "
                        f"refresh_revoked={refresh_revoked} self_revoked={self_revoked} "
                        f"ip={get_client_ip(request)}")

        response = make_response(jsonify({
            'ok': True,
            'revoked_count': revoked_count,
            'refresh_tokens_revoked': refresh_revoked,
            'self_revoked': self_revoked,
        }))
        if self_revoked:
            session.clear()
            clear_all_auth_cookies(response)
        return _no_store(response), 200

    @app.route('/api/auth/sessions/stats', methods=['GET'])
    @require_auth
    def session_stats():
        return jsonify({'ok': True, 'stats': service.get_session_stats(g.user)})

    @app.route('/api/auth/security-report', methods=['GET'])
    @require_admin
    def security_report():
        days = request.args.get('days', 7, type=int)
        if not days or days < 1 or days > MAX_REPORT_DAYS:
            return jsonify({
                'ok': False,
                'error': 'Validation failed',
                'code': 'VALIDATION_ERROR',
                'errors': {'days': [f'must be between 1 and {MAX_REPORT_DAYS}']}
            }), 422

        report = service.get_security_report(days)
        logger.info(f"security_report_viewed admin_id={g.user.id} days={days}")
        return jsonify({'ok': True, 'report': report})

    return list_sessions, revoke_session, logout_all, session_stats, security_report
