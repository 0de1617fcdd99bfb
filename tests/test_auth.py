"""
Registration, email verification, login/logout, /me, password change and reset
"""
from datetime import datetime, timedelta

from conftest import TEST_PASSWORD, login
from app import generate_email_verification_token
from models import db, User, UserSession, LoginAttempt, PasswordResetToken

NEW_PASSWORD = 'N3w!Passw0rdX'


def register_payload(**overrides):
    payload = {
        'first_name': 'Maria',
        'last_name': "O'Neil",
        'email': 'Maria@Example.com',
        'password': TEST_PASSWORD,
        'password_confirmation': TEST_PASSWORD,
        'gender': 'female',
        'date_of_birth': '1992-03-14',
        'height_cm': 170,
        'current_weight_kg': 68,
        'activity_level': 'lightly_active',
        'primary_goal': 'maintenance',
    }
    payload.update(overrides)
    return payload


# ---------------------------------------------------------------------------
# Registration and email verification
# ---------------------------------------------------------------------------

def test_register_creates_unverified_user(client):
    response = client.post('/api/auth/register', json=register_payload())

    assert response.status_code == 201
    data = response.get_json()
    assert data['ok'] is True
    assert data['user']['email'] == 'maria@example.com'
    assert data['user']['email_verified'] is False
    # Mailgun is not configured in tests
    assert data['email_verification_sent'] is False

    user = User.query.filter_by(email='maria@example.com').one()
    assert user.password_hash.startswith('$argon2')
    assert user.daily_calorie_target is not None


def test_register_duplicate_email(client, user):
    response = client.post('/api/auth/register', json=register_payload(email=user.email))

    assert response.status_code == 422
    assert response.get_json()['errors'] == {'email': ['has already been taken']}


def test_register_validation_errors(client):
    response = client.post('/api/auth/register', json=register_payload(
        first_name='R2D2',
        email='maria+promo@example.com',
        password='weakpassword',
        password_confirmation='weakpassword',
    ))

    assert response.status_code == 422
    data = response.get_json()
    assert data['code'] == 'VALIDATION_ERROR'
    assert set(data['errors']) >= {'first_name', 'email', 'password'}
    assert 'plus addressing is not allowed' in data['errors']['email']


def test_register_password_confirmation_mismatch(client):
    response = client.post('/api/auth/register', json=register_payload(password_confirmation='Other!Pass9'))
    assert response.status_code == 422
    assert response.get_json()['errors'] == {'password_confirmation': ['does not match password']}


def test_register_weak_password_reports_only_strength(client):
    response = client.post('/api/auth/register', json=register_payload(
        password='weakpassword', password_confirmation='other'))
    assert set(response.get_json()['errors']) == {'password'}


def test_email_verification_flow(client, user_factory):
    user = user_factory(email='new@example.com', verified=False)

    response = login(client, 'new@example.com')
    assert response.status_code == 403
    assert response.get_json()['code'] == 'EMAIL_NOT_VERIFIED'
    assert response.get_json()['email_verification_required'] is True

    token = generate_email_verification_token(user)
    response = client.get(f'/api/auth/email/verify/{token}')
    assert response.status_code == 200
    assert response.get_json()['already_verified'] is False
    assert user.has_verified_email()

    response = client.get(f'/api/auth/email/verify/{token}')
    assert response.get_json()['already_verified'] is True

    assert login(client, 'new@example.com').status_code == 200


def test_email_verification_rejects_tampered_token(client):
    response = client.get('/api/auth/email/verify/not-a-real-token')
    assert response.status_code == 400
    assert response.get_json()['code'] == 'VERIFICATION_INVALID'


def test_email_resend_is_generic(client, user):
    for email in (user.email, 'nobody@example.com'):
        response = client.post('/api/auth/email/resend', json={'email': email})
        assert response.status_code == 200
        assert response.get_json()['ok'] is True


def test_email_status_requires_auth(client, auth_client):
    response = auth_client.get('/api/auth/email/status')
    assert response.status_code == 200
    assert response.get_json()['email_verified'] is True


# ---------------------------------------------------------------------------
# Login / logout / me
# ---------------------------------------------------------------------------

def test_login_success_creates_tracked_session(client, user):
    response = login(client, 'JANE@example.com')

    assert response.status_code == 200
    assert 'no-store' in response.headers['Cache-Control']
    data = response.get_json()
    assert data['user']['id'] == user.id
    assert data['session']['remember_me'] is False

    assert client.get_cookie('nt_session') is not None
    assert client.get_cookie('nt_csrf') is not None
    assert UserSession.query.filter_by(user_id=user.id, is_active=True).count() == 1
    assert LoginAttempt.query.filter_by(email=user.email, successful=True).count() == 1
    assert user.last_login_at is not None


def test_login_remember_me_extends_session(client, user):
    response = login(client, user.email, remember_me=True)
    assert response.status_code == 200

    user_session = UserSession.query.filter_by(user_id=user.id).one()
    assert user_session.expires_at > datetime.utcnow() + timedelta(days=29)
    assert user_session.remember_me is True


def test_login_invalid_credentials(client, user):
    for email, password in ((user.email, 'Wrong!Pass1'), ('ghost@example.com', TEST_PASSWORD)):
        response = login(client, email, password)
        assert response.status_code == 401
        assert response.get_json() == {'ok': False, 'error': 'Invalid credentials', 'code': 'INVALID_CREDENTIALS'}

    failed = LoginAttempt.query.filter_by(successful=False).all()
    assert {a.failure_reason for a in failed} == {'invalid_credentials'}


def test_login_deactivated_account(client, user_factory):
    user_factory(email='off@example.com', is_active=False)
    response = login(client, 'off@example.com')
    assert response.status_code == 403
    assert response.get_json()['code'] == 'ACCOUNT_DEACTIVATED'


def test_login_locked_after_recent_failures(client, user):
    for _ in range(5):
        LoginAttempt.record(user.email, '10.9.9.9', 'pytest', successful=False,
                            failure_reason='invalid_credentials')
    db.session.commit()

    response = login(client, user.email)
    assert response.status_code == 423
    data = response.get_json()
    assert data['code'] == 'ACCOUNT_LOCKED'
    assert data['retry_after'] == 900


def test_login_failure_throttle_returns_429(client, user):
    for _ in range(5):
        assert login(client, user.email, 'Wrong!Pass1').status_code == 401

    response = login(client, user.email, 'Wrong!Pass1')
    assert response.status_code == 429
    assert response.get_json()['code'] == 'RATE_LIMIT_LOGIN'
    assert int(response.headers['Retry-After']) > 0


def test_login_validation_error(client):
    response = client.post('/api/auth/login', json={'email': 'jane@example.com'})
    assert response.status_code == 422
    assert 'password' in response.get_json()['errors']


def test_me_with_session(auth_client, user):
    response = auth_client.get('/api/auth/me')

    assert response.status_code == 200
    assert 'no-store' in response.headers['Cache-Control']
    data = response.get_json()
    assert data['user']['email'] == user.email
    assert data['auth_method'] == 'session'
    assert data['session']['is_current'] is True


def test_me_without_auth(client):
    response = client.get('/api/auth/me')
    assert response.status_code == 401
    assert response.get_json()['code'] == 'AUTH_REQUIRED'


def test_logout_ends_session_and_is_idempotent(auth_client, user):
    response = auth_client.post('/api/auth/logout')

    assert response.status_code == 200
    assert 'no-store' in response.headers['Cache-Control']
    assert response.get_json() == {'ok': True, 'message': 'Logged out', 'idempotent': True}
    assert UserSession.query.filter_by(user_id=user.id, is_active=True).count() == 0

    response = auth_client.post('/api/auth/logout')
    assert response.status_code == 200
    assert response.get_json()['message'] == 'No active session'

    assert auth_client.get('/api/auth/me').status_code == 401


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------

def test_change_password_rotates_session_and_revokes_others(client, auth_client, user, test_app):
    other_client = test_app.test_client()
    assert login(other_client, user.email).status_code == 200
    current_id = UserSession.query.filter_by(user_id=user.id).order_by(UserSession.id.asc()).first().session_id

    response = auth_client.post('/api/auth/change-password', json={
        'current_password': TEST_PASSWORD,
        'new_password': NEW_PASSWORD,
        'new_password_confirmation': NEW_PASSWORD,
    })

    assert response.status_code == 200
    data = response.get_json()
    assert data['others_revoked'] == 1
    assert data['session_rotated'] is True
    assert 'tokens' not in data

    active = UserSession.query.filter_by(user_id=user.id, is_active=True).all()
    assert len(active) == 1
    assert active[0].session_id != current_id

    assert auth_client.get('/api/auth/me').status_code == 200
    assert other_client.get('/api/auth/me').status_code == 401
    assert login(client, user.email, NEW_PASSWORD).status_code == 200


def test_change_password_wrong_current(auth_client):
    response = auth_client.post('/api/auth/change-password', json={
        'current_password': 'Wrong!Pass1',
        'new_password': NEW_PASSWORD,
    })
    assert response.status_code == 422
    assert response.get_json()['errors'] == {'current_password': ['is incorrect']}


def test_change_password_must_differ(auth_client):
    response = auth_client.post('/api/auth/change-password', json={
        'current_password': TEST_PASSWORD,
        'new_password': TEST_PASSWORD,
    })
    assert response.status_code == 422
    assert response.get_json()['errors'] == {'new_password': ['must differ from the current password']}


def test_change_password_confirmation_mismatch(auth_client):
    response = auth_client.post('/api/auth/change-password', json={
        'current_password': TEST_PASSWORD,
        'new_password': NEW_PASSWORD,
        'new_password_confirmation': 'Other!Pass9',
    })
    assert response.status_code == 422
    assert response.get_json()['errors'] == {'new_password_confirmation': ['does not match new_password']}


def test_change_password_with_jwt_returns_new_tokens(client, jwt_headers, jwt_tokens):
    response = client.post('/api/auth/change-password', headers=jwt_headers, json={
        'current_password': TEST_PASSWORD,
        'new_password': NEW_PASSWORD,
    })

    assert response.status_code == 200
    tokens = response.get_json()['tokens']
    assert tokens['access_token'] and tokens['refresh_token']

    # Tokens issued before the change no longer work
    assert client.get('/api/auth/me', headers=jwt_headers).status_code == 401
    fresh = {'Authorization': f"Bearer {tokens['access_token']}"}
    assert client.get('/api/auth/me', headers=fresh).status_code == 200


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------

def test_password_forgot_is_generic_and_creates_token(client, user):
    known = client.post('/api/auth/password/forgot', json={'email': user.email})
    unknown = client.post('/api/auth/password/forgot', json={'email': 'nobody@example.com'})

    assert known.status_code == unknown.status_code == 200
    assert known.get_json()['message'] == unknown.get_json()['message']
    assert PasswordResetToken.query.filter_by(email=user.email).count() == 1
    assert PasswordResetToken.query.filter_by(email='nobody@example.com').count() == 0


def test_password_forgot_throttles_repeat_requests(client, user):
    assert client.post('/api/auth/password/forgot', json={'email': user.email}).status_code == 200

    response = client.post('/api/auth/password/forgot', json={'email': user.email})
    assert response.status_code == 429
    assert response.get_json()['code'] == 'PASSWORD_RESET_THROTTLED'
    assert response.headers['Retry-After'] == '900'


def test_password_verify_token(client, user):
    reset_token = PasswordResetToken.create_token(user.email, '127.0.0.1')

    response = client.post('/api/auth/password/verify-token', json={'token': reset_token.token})
    assert response.status_code == 200
    assert response.get_json()['valid'] is True

    response = client.post('/api/auth/password/verify-token', json={'token': 'bogus'})
    assert response.status_code == 400
    assert response.get_json()['code'] == 'INVALID_RESET_TOKEN'


def test_password_reset_flow(client, auth_client, user, test_app):
    reset_token = PasswordResetToken.create_token(user.email, '127.0.0.1')
    anonymous = test_app.test_client()

    response = anonymous.post('/api/auth/password/reset', json={
        'token': reset_token.token,
        'password': NEW_PASSWORD,
        'password_confirmation': NEW_PASSWORD,
    })

    assert response.status_code == 200
    assert reset_token.used is True
    # Every existing session is signed out
    assert UserSession.query.filter_by(user_id=user.id, is_active=True).count() == 0
    assert auth_client.get('/api/auth/me').status_code == 401
    assert login(anonymous, user.email, NEW_PASSWORD).status_code == 200

    # Single use
    response = anonymous.post('/api/auth/password/reset', json={
        'token': reset_token.token,
        'password': NEW_PASSWORD,
        'password_confirmation': NEW_PASSWORD,
    })
    assert response.status_code == 400


def test_password_reset_expired_token(client, user):
    reset_token = PasswordResetToken.create_token(user.email, '127.0.0.1')
    reset_token.expires_at = datetime.utcnow() - timedelta(minutes=1)
    db.session.commit()

    response = client.post('/api/auth/password/reset', json={
        'token': reset_token.token,
        'password': NEW_PASSWORD,
        'password_confirmation': NEW_PASSWORD,
    })
    assert response.status_code == 400
    assert response.get_json()['code'] == 'INVALID_RESET_TOKEN'


def test_password_reset_confirmation_mismatch(client, user):
    reset_token = PasswordResetToken.create_token(user.email, '127.0.0.1')

    response = client.post('/api/auth/password/reset', json={
        'token': reset_token.token,
        'password': NEW_PASSWORD,
        'password_confirmation': TEST_PASSWORD,
    })

    assert response.status_code == 422
    assert response.get_json()['errors'] == {'password_confirmation': ['does not match password']}
    assert reset_token.used is False
