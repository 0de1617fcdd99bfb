"""
Security headers for every response
"""

from flask import request

STATIC_HEADERS = {
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'X-XSS-Protection': '1; mode=block',
    'Referrer-Policy': 'strict-origin-when-cross-origin',
    'X-Permitted-Cross-Domain-Policies': 'none',
    'X-Download-Options': 'noopen',
    'Cross-Origin-Embedder-Policy': 'require-corp',
    'Cross-Origin-Opener-Policy': 'same-origin',
    'Cross-Origin-Resource-Policy': 'same-origin',
}

# JSON-only API: nothing may load from it
API_CSP = (
    "default-src 'none'; "
    "frame-ancestors 'none'; "
    "base-uri 'none'; "
    "form-action 'none'"
)

DEFAULT_CSP = (
    "default-src 'self'; "
    "script-src 'self'; "
    "style-src 'self' 'unsafe-inline'; "
    "img-src 'self' data: https:; "
    "font-src 'self' data:; "
    "connect-src 'self'; "
    "frame-ancestors 'none'; "
    "base-uri 'self'; "
    "form-action 'self'"
)

PERMISSIONS_POLICY = (
    "accelerometer=(), ambient-light-sensor=(), autoplay=(), battery=(), camera=(), "
    "display-capture=(), document-domain=(), encrypted-media=(), fullscreen=(self), "
    "geolocation=(), gyroscope=(), magnetometer=(), microphone=(), midi=(), payment=(), "
    "picture-in-picture=(), publickey-credentials-get=(), usb=(), xr-spatial-tracking=()"
)

HSTS_VALUE = 'max-age=31536000; includeSubDomains; preload'

SENSITIVE_PREFIXES = (
    '/api/auth',
    '/api/user',
    '/api/profile',
    '/api/food-logs',
    '/api/health-metrics',
)


def is_sensitive_path(path):
    return any(path.startswith(prefix) for prefix in SENSITIVE_PREFIXES)


def apply_security_headers(resp):
    for name, value in STATIC_HEADERS.items():
        resp.headers[name] = value

    if request.is_secure:
        resp.headers['Strict-Transport-Security'] = HSTS_VALUE

    if request.path.startswith('/api/'):
        resp.headers['Content-Security-Policy'] = API_CSP
    else:
        resp.headers['Content-Security-Policy-Report-Only'] = DEFAULT_CSP

    resp.headers['Permissions-Policy'] = PERMISSIONS_POLICY

    resp.headers.pop('Server', None)
    resp.headers.pop('X-Powered-By', None)

    if is_sensitive_path(request.path):
        resp.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, private'
        resp.headers['Pragma'] = 'no-cache'
        resp.headers['Expires'] = '0'
    return resp


def init_security_headers(app):
    """Register the security header hook on the app"""
    app.after_request(apply_security_headers)
