"""
Security headers, API versioning, request logging, CORS, CSRF and JSON errors
"""
import logging

import pytest

from api_logger import FILTERED, filter_body, filter_headers
from api_version import resolve_api_version
from conftest import login


# ---------------------------------------------------------------------------
# Security headers
# ---------------------------------------------------------------------------

def test_security_headers_on_api(client):
    response = client.get('/api/health')

    assert response.status_code == 200
    assert response.headers['X-Content-Type-Options'] == 'nosniff'
    assert response.headers['X-Frame-Options'] == 'DENY'
    assert response.headers['Referrer-Policy'] == 'strict-origin-when-cross-origin'
    assert response.headers['Content-Security-Policy'].startswith("default-src 'none'")
    assert 'camera=()' in response.headers['Permissions-Policy']
    assert 'Server' not in response.headers
    # Plain HTTP in tests
    assert 'Strict-Transport-Security' not in response.headers


def test_hsts_only_over_https(client):
    response = client.get('/api/health', base_url='https://localhost')
    assert response.headers['Strict-Transport-Security'].startswith('max-age=31536000')


def test_hsts_behind_proxy(client):
    response = client.get('/api/health', headers={'X-Forwarded-Proto': 'https'})
    assert 'Strict-Transport-Security' in response.headers


def test_sensitive_paths_are_not_cached(client):
    response = client.get('/api/auth/me')
    assert response.headers['Cache-Control'] == 'no-store, no-cache, must-revalidate, private'
    assert response.headers['Pragma'] == 'no-cache'

    assert 'Pragma' not in client.get('/api/health').headers


def test_non_api_paths_get_report_only_csp(client):
    response = client.get('/nowhere')
    assert response.status_code == 404
    assert 'Content-Security-Policy-Report-Only' in response.headers
    assert 'Content-Security-Policy' not in response.headers


# ---------------------------------------------------------------------------
# API versioning
# ---------------------------------------------------------------------------

def test_version_headers_default(client):
    response = client.get('/api/health')
    assert response.headers['X-API-Version'] == 'v1'
    assert response.headers['X-API-Version-Number'] == '1.0'


def test_versioned_path_reaches_same_route(client):
    response = client.get('/api/v1/health')
    assert response.status_code == 200
    assert response.get_json()['status'] == 'healthy'
    assert response.headers['X-API-Version'] == 'v1'


@pytest.mark.parametrize('headers,path', [
    ({'X-API-Version': '2'}, '/api/health'),
    ({'Accept': 'application/json; version=3'}, '/api/health'),
    ({}, '/api/v9/health'),
])
def test_unsupported_version(client, headers, path):
    response = client.get(path, headers=headers)

    assert response.status_code == 400
    data = response.get_json()
    assert data['code'] == 'UNSUPPORTED_API_VERSION'
    assert data['supported_versions'] == ['v1']


def test_accept_header_wins_over_custom_header(test_app):
    with test_app.test_request_context('/api/health', headers={
        'Accept': 'application/json; version=1',
        'X-API-Version': 'v2',
    }):
        assert resolve_api_version() == 'v1'


# ---------------------------------------------------------------------------
# Request logging
# ---------------------------------------------------------------------------

def test_request_id_is_echoed_or_generated(client):
    response = client.get('/api/health', headers={'X-Request-ID': 'req-123'})
    assert response.headers['X-Request-ID'] == 'req-123'

    generated = client.get('/api/health').headers['X-Request-ID']
    assert len(generated) == 36


def test_api_logger_filters_secrets(client, user, caplog):
    caplog.set_level(logging.INFO, logger='nutritrack.api')

    login(client, user.email, 'Wrong!Pass1')

    request_logs = [r.getMessage() for r in caplog.records if r.getMessage().startswith('api_request')]
    assert request_logs
    assert 'Wrong!Pass1' not in request_logs[-1]
    assert FILTERED in request_logs[-1]

    warnings = [r for r in caplog.records if r.getMessage().startswith('api_response') and 'status=401' in r.getMessage()]
    assert warnings and warnings[-1].levelno == logging.WARNING


def test_api_logger_records_caller_id(client, user, jwt_headers, caplog):
    caplog.set_level(logging.INFO, logger='nutritrack.api')

    client.get('/api/profile', headers=jwt_headers)
    client.get('/api/health')

    request_logs = [r.getMessage() for r in caplog.records if r.getMessage().startswith('api_request')]
    assert f'user_id={user.id} ' in request_logs[-2]
    assert 'user_id=None ' in request_logs[-1]


def test_filter_helpers():
    assert filter_headers({'Authorization': 'Bearer x', 'Accept': 'json'}) == {
        'Authorization': FILTERED, 'Accept': 'json'
    }
    assert filter_body({'user': {'password': 'x', 'name': 'y'}, 'items': [{'token': 't'}]}) == {
        'user': {'password': FILTERED, 'name': 'y'}, 'items': [{'token': FILTERED}]
    }
    assert filter_body(None) is None


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------

def test_preflight_allowed_origin(client):
    response = client.options('/api/profile', headers={
        'Origin': 'http://localhost:3000',
        'Access-Control-Request-Method': 'PUT',
    })

    assert response.status_code in (200, 204)
    assert response.headers['Access-Control-Allow-Origin'] == 'http://localhost:3000'
    assert response.headers['Access-Control-Allow-Credentials'] == 'true'


def test_preflight_unknown_origin(client):
    response = client.options('/api/profile', headers={
        'Origin': 'https://evil.example',
        'Access-Control-Request-Method': 'PUT',
    })
    assert 'Access-Control-Allow-Origin' not in response.headers


def test_cors_on_simple_request(client):
    response = client.get('/api/health', headers={'Origin': 'http://127.0.0.1:5173'})
    assert response.headers['Access-Control-Allow-Origin'] == 'http://127.0.0.1:5173'


# ---------------------------------------------------------------------------
# CSRF
# ---------------------------------------------------------------------------

def test_csrf_endpoint_issues_token(auth_client):
    response = auth_client.get('/api/auth/csrf')
    token = response.get_json()['csrf']

    assert response.status_code == 200
    assert auth_client.get_cookie('nt_csrf').value == token


def test_csrf_enforced_for_session_mutations(client, user, monkeypatch):
    monkeypatch.setenv('CSRF_ENFORCE', 'true')
    login(client, user.email)

    response = client.put('/api/profile', json={'first_name': 'Janet'})
    assert response.status_code == 403
    assert response.get_json()['code'] == 'CSRF_MISSING'

    response = client.put('/api/profile', json={'first_name': 'Janet'}, headers={'X-CSRF-Token': 'forged'})
    assert response.status_code == 403
    assert response.get_json()['code'] == 'CSRF_INVALID'

    token = client.get_cookie('nt_csrf').value
    response = client.put('/api/profile', json={'first_name': 'Janet'}, headers={'X-CSRF-Token': token})
    assert response.status_code == 200

    # Safe methods are never checked
    assert client.get('/api/profile').status_code == 200


def test_csrf_shadow_mode_allows_request(client, user, monkeypatch):
    monkeypatch.setenv('CSRF_ENFORCE', 'false')
    login(client, user.email)

    response = client.put('/api/profile', json={'first_name': 'Janet'})
    assert response.status_code == 200


# ---------------------------------------------------------------------------
# JSON errors and health
# ---------------------------------------------------------------------------

def test_json_404_and_405(client):
    response = client.get('/api/does-not-exist')
    assert response.status_code == 404
    assert response.get_json() == {'ok': False, 'error': 'Endpoint not found', 'code': 'NOT_FOUND'}

    response = client.delete('/api/health')
    assert response.status_code == 405
    assert response.get_json()['code'] == 'METHOD_NOT_ALLOWED'


def test_health_check(client):
    data = client.get('/api/health').get_json()
    assert data['status'] == 'healthy'
    assert data['database'] == 'connected'
    assert data['cache'] == 'memory'
