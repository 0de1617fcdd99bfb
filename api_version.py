"""
API versioning
Resolves the requested API version from the Accept header, the X-API-Version
header or a /api/vN/ path prefix, and stamps the version on every API response.
"""

import re

from flask import request, jsonify, g

SUPPORTED_VERSIONS = {'v1': '1.0'}
DEFAULT_VERSION = 'v1'

PATH_VERSION_RE = re.compile(r'^/api/(v\d+)(/.*)?$')
ACCEPT_VERSION_RE = re.compile(r'version\s*=\s*v?(\d+)', re.IGNORECASE)

PATH_VERSION_ENVIRON_KEY = 'nutritrack.api_path_version'


class APIVersionMiddleware:
    """WSGI wrapper that strips /api/vN so versioned and unversioned paths share routes"""

    def __init__(self, wsgi_app):
        self.wsgi_app = wsgi_app

    def __call__(self, environ, start_response):
        match = PATH_VERSION_RE.match(environ.get('PATH_INFO', ''))
        if match:
            environ[PATH_VERSION_ENVIRON_KEY] = match.group(1)
            environ['PATH_INFO'] = '/api' + (match.group(2) or '/')
        return self.wsgi_app(environ, start_response)


def _normalize(value):
    value = (value or '').strip().lower()
    if not value:
        return None
    return value if value.startswith('v') else f"v{value}"


def resolve_api_version():
    accept = request.headers.get('Accept', '')
    match = ACCEPT_VERSION_RE.search(accept)
    if match:
        return f"v{match.group(1)}"

    header_version = _normalize(request.headers.get('X-API-Version'))
    if header_version:
        return header_version

    return request.environ.get(PATH_VERSION_ENVIRON_KEY) or DEFAULT_VERSION


def init_api_versioning(app):
    app.wsgi_app = APIVersionMiddleware(app.wsgi_app)

    @app.before_request
    def select_api_version():
        if not request.path.startswith('/api/'):
            return None

        version = resolve_api_version()
        if version not in SUPPORTED_VERSIONS:
            return jsonify({
                'ok': False,
                'error': f'API version {version} is not supported',
                'code': 'UNSUPPORTED_API_VERSION',
                'supported_versions': list(SUPPORTED_VERSIONS),
            }), 400

        g.api_version = version
        return None

    @app.after_request
    def add_version_headers(resp):
        if request.path.startswith('/api/'):
            version = getattr(g, 'api_version', DEFAULT_VERSION)
            resp.headers['X-API-Version'] = version
            resp.headers['X-API-Version-Number'] = SUPPORTED_VERSIONS.get(version, SUPPORTED_VERSIONS[DEFAULT_VERSION])
        return resp
