"""
Request/response logging for /api/ routes, with secrets filtered out
"""

import logging
import time
import uuid

from flask import request, g

from rate_limit import get_client_ip

logger = logging.getLogger('nutritrack.api')

FILTERED = '***FILTERED***'
SENSITIVE_HEADERS = ('authorization', 'cookie', 'x-api-key', 'x-auth-token')
SENSITIVE_FIELDS = (
    'password', 'password_confirmation', 'current_password', 'new_password',
    'token', 'refresh_token', 'api_key', 'secret',
)
SLOW_REQUEST_MS = 1000


def filter_headers(headers):
    return {
        name: FILTERED if name.lower() in SENSITIVE_HEADERS else value
        for name, value in headers.items()
    }


def filter_body(data):
    if isinstance(data, dict):
        return {
            key: FILTERED if key.lower() in SENSITIVE_FIELDS else filter_body(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [filter_body(item) for item in data]
    return data


def init_api_logger(app, resolve_user_id=None):
    """Request and response logging for /api/ routes

    resolve_user_id identifies the caller before require_auth has run.
    """

    @app.before_request
    def log_api_request():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())
        g.request_started = time.time()

        if not request.path.startswith('/api/'):
            return None

        body = request.get_json(silent=True) if request.is_json else None
        user_id = resolve_user_id() if resolve_user_id else None
        logger.info(f"api_request id={g.request_id} method={request.method} path={request.path} "
                    f"ip={get_client_ip(request)} ua={request.headers.get('User-Agent', '')[:120]} "
                    f"user_id={user_id} headers={filter_headers(request.headers)} "
                    f"body={filter_body(body)}")
        return None

    @app.after_request
    def log_api_response(resp):
        request_id = getattr(g, 'request_id', None) or str(uuid.uuid4())
        resp.headers['X-Request-ID'] = request_id

        if not request.path.startswith('/api/'):
            return resp

        duration_ms = round((time.time() - getattr(g, 'request_started', time.time())) * 1000, 2)
        user = getattr(g, 'user', None)
        message = (f"api_response id={request_id} method={request.method} path={request.path} "
                   f"status={resp.status_code} duration_ms={duration_ms} user_id={user.id if user else None}")

        if resp.status_code >= 400 and resp.is_json:
            message += f" body={filter_body(resp.get_json(silent=True))}"

        if resp.status_code >= 500:
            logger.error(message)
        elif resp.status_code >= 400:
            logger.warning(message)
        else:
            logger.info(message)

        if duration_ms > SLOW_REQUEST_MS:
            logger.warning(f"api_slow_request id={request_id} method={request.method} path={request.path} "
                           f"duration_ms={duration_ms}")
        return resp
