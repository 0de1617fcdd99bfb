# Login failure throttling and Flask-Limiter helpers for the API
import time
import os
import logging
from collections import defaultdict, deque

from flask import jsonify, make_response, request

logger = logging.getLogger(__name__)


def get_client_ip(request):
    forwarded = request.headers.get('X-Forwarded-For')
    return forwarded.split(',')[0].strip() if forwarded else (request.remote_addr or 'unknown')


class LoginRateLimiter:
    def __init__(self):
        self.buckets = defaultdict(deque)
        self.enabled = os.environ.get('LOGIN_RATELIMIT_ENABLED', '1') == '1'
        self.max_fails_email = int(os.environ.get('LOGIN_RATELIMIT_MAX_FAILS_EMAIL', '5'))
        self.max_fails_ip = int(os.environ.get('LOGIN_RATELIMIT_MAX_FAILS_IP', '10'))
        self.window_sec = int(os.environ.get('LOGIN_RATELIMIT_WINDOW_SEC', '900'))

    def _keys(self, request, email):
        client_ip = get_client_ip(request)
        return [
            ('email', f"email::{email.lower()}", self.max_fails_email),
            ('ip', f"ip::{client_ip}", self.max_fails_ip),
        ]

    def _cleanup_bucket(self, bucket):
        cutoff = time.time() - self.window_sec
        while bucket and bucket[0] < cutoff:
            bucket.popleft()

    def check_rate_limit(self, request, email):
        """Return seconds until retry when either bucket is full, else None"""
        if not self.enabled:
            self._emit_diagnostic('disabled', 'n/a', 0, 0)
            return None

        for key_type, key, max_fails in self._keys(request, email):
            bucket = self.buckets[key]
            self._cleanup_bucket(bucket)
            if len(bucket) >= max_fails:
                retry_after = max(1, int(bucket[0] + self.window_sec - time.time()))
                self._emit_diagnostic('hit', key_type, max_fails, len(bucket))
                return retry_after
        return None

    def record_failed_attempt(self, request, email):
        if not self.enabled:
            return

        current_time = time.time()
        for key_type, key, max_fails in self._keys(request, email):
            bucket = self.buckets[key]
            self._cleanup_bucket(bucket)
            bucket.append(current_time)
            self._emit_diagnostic('recorded_fail', key_type, max_fails, len(bucket))

    def clear_user_bucket(self, request, email):
        if not self.enabled:
            return

        email_key = f"email::{email.lower()}"
        if email_key in self.buckets:
            del self.buckets[email_key]
            self._emit_diagnostic('cleared_on_success', 'email', self.max_fails_email, 0)

    def reset(self):
        self.buckets.clear()

    def _emit_diagnostic(self, event, key_type, max_fails, hits):
        logger.info(f"login_rate_limit event={event} key_type={key_type} window={self.window_sec} "
                    f"max_fails={max_fails} hits={hits}")


login_rate_limiter = LoginRateLimiter()


# ============================================================================
# API RATE LIMITING (Flask-Limiter)
# ============================================================================

EXEMPT_PATHS = ('/api/health', '/health', '/up')


def format_retry_after(seconds):
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds} second{'s' if seconds != 1 else ''}"
    if seconds < 3600:
        minutes = seconds // 60
        return f"{minutes} minute{'s' if minutes != 1 else ''}"
    hours = seconds // 3600
    return f"{hours} hour{'s' if hours != 1 else ''}"


def make_api_key_func(resolve_user_id):
    """Limiter key: per user when the request identifies one, else per IP"""
    def api_rate_limit_key():
        user_id = resolve_user_id()
        if user_id:
            return f"api:user:{user_id}"
        return f"api:ip:{get_client_ip(request)}"
    return api_rate_limit_key


def make_default_limit(resolve_user_id, authenticated_limit, guest_limit):
    def default_api_limit():
        return authenticated_limit if resolve_user_id() else guest_limit
    return default_api_limit


def is_exempt_path():
    return request.method == 'OPTIONS' or request.path in EXEMPT_PATHS


def register_rate_limit_handler(app, limiter):
    """JSON 429 body carrying the retry hint alongside Flask-Limiter's headers"""

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        current = limiter.current_limit
        if current is not None:
            retry_after = max(1, int(current.reset_at - time.time()))
            limit = current.limit.amount
        else:
            retry_after = 60
            limit = None

        human = format_retry_after(retry_after)
        app.logger.warning(f"api_rate_limit_exceeded key={current.key if current else 'n/a'} "
                           f"retry_after={retry_after}")

        response = make_response(jsonify({
            'ok': False,
            'error': 'rate_limited',
            'code': 'RATE_LIMIT_EXCEEDED',
            'message': f'Too many requests. Please try again in {human}.',
            'rate_limit': {
                'limit': limit,
                'retry_after_seconds': retry_after,
                'retry_after_human': human,
            },
        }), 429)
        response.headers['Retry-After'] = str(retry_after)
        return response

    return rate_limit_exceeded
