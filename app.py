"""
NutriTrack Backend
Nutrition tracking API: accounts, profile, health metrics, foods and food logs,
with tracked sessions, JWT auth and request hardening
"""

# ============================================================================
# IMPORTS AND CONFIGURATION
# ============================================================================
import os
import hashlib
import logging
import requests
from datetime import datetime, timedelta
from functools import wraps

from flask import Flask, request, jsonify, session, make_response, g
from flask_limiter import Limiter
from flask_cors import CORS
from sqlalchemy import text
from werkzeug.middleware.proxy_fix import ProxyFix
from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError, VerificationError, InvalidHashError
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired
from pydantic import ValidationError

from models import db, User, UserSession, LoginAttempt, PasswordResetToken, JWTRefreshToken
from cache_store import get_cache_store, RedisCacheStore
from cookies import SESSION_COOKIE_NAME, SESSION_SECURE, SESSION_SAMESITE, clear_all_auth_cookies
from csrf_protection import enforce_csrf, issue_csrf_token, clear_csrf_on_logout, create_csrf_endpoints
from rate_limit import (
    login_rate_limiter, get_client_ip, make_api_key_func, make_default_limit,
    is_exempt_path, register_rate_limit_handler,
)
from jwt_service import JWTService
from session_management import SessionManagementService, generate_session_id
from session_security import init_session_security
from session_endpoints import create_session_endpoints
from security_headers import init_security_headers
from api_version import init_api_versioning
from api_logger import init_api_logger
from profile_endpoints import create_profile_endpoints
from health_metric_endpoints import create_health_metric_endpoints
from food_endpoints import create_food_endpoints
from cleanup_commands import register_cleanup_commands
from schemas import (
    RegisterSchema, LoginSchema, ChangePasswordSchema, ForgotPasswordSchema,
    ResetPasswordSchema, validation_error_response,
)

APP_NAME = 'NutriTrack'
APP_VERSION = '1.0.0'

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

# ============================================================================
# APPLICATION SETUP
# ============================================================================
app = Flask(__name__)

# Correct scheme/host behind the platform proxy
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)


def _env_flag(name, default):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    """Environment-driven configuration"""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'nutritrack-dev-secret-key-change-in-production'
    APP_ENV = os.environ.get('APP_ENV', 'development')
    APP_URL = os.environ.get('APP_URL', 'http://localhost:5000')

    # Database configuration with platform URL handling
    DATABASE_URL = os.environ.get('DATABASE_URL')
    if DATABASE_URL and DATABASE_URL.startswith('postgres://'):
        DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_DATABASE_URI = DATABASE_URL or 'sqlite:///nutritrack_dev.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Cache (counters, locks, JWT blacklist)
    REDIS_URL = os.environ.get('REDIS_URL')
    CACHE_BACKEND = os.environ.get('CACHE_BACKEND', 'memory')

    # Flask's signed cookie only carries the session id; state lives in user_sessions
    SESSION_COOKIE_NAME = SESSION_COOKIE_NAME
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SECURE = SESSION_SECURE
    SESSION_COOKIE_SAMESITE = SESSION_SAMESITE
    SESSION_COOKIE_PATH = '/'
    PERMANENT_SESSION_LIFETIME = timedelta(days=30)

    # Session security
    SESSION_LIFETIME_MINUTES = int(os.environ.get('SESSION_LIFETIME_MINUTES', '120'))
    SESSION_REMEMBER_ME_DAYS = 30
    SESSION_ROTATION_THRESHOLD = int(os.environ.get('SESSION_ROTATION_THRESHOLD', '900'))
    SESSION_MAX_LIFETIME = int(os.environ.get('SESSION_MAX_LIFETIME', '43200'))
    SESSION_MAX_CONCURRENT = int(os.environ.get('SESSION_MAX_CONCURRENT', '5'))
    SESSION_SUSPICIOUS_THRESHOLD = 10
    SESSION_STRICT_IP_CHECK = _env_flag('SESSION_STRICT_IP_CHECK', 'false')
    APP_TIMEZONE = os.environ.get('APP_TIMEZONE', 'UTC')

    # JWT
    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY') or SECRET_KEY
    JWT_ALGORITHM = 'HS256'
    JWT_ACCESS_TOKEN_TTL = int(os.environ.get('JWT_ACCESS_TOKEN_TTL', '900'))
    JWT_REFRESH_TOKEN_TTL = int(os.environ.get('JWT_REFRESH_TOKEN_TTL', '604800'))
    JWT_ISSUER = APP_NAME

    # Rate limiting (Flask-Limiter)
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    RATELIMIT_HEADERS_ENABLED = True
    API_RATE_LIMIT_AUTHENTICATED = '200 per minute'
    API_RATE_LIMIT_GUEST = '60 per minute'
    AUTH_RATE_LIMIT_LOGIN = '10 per minute'
    AUTH_RATE_LIMIT_REGISTER = '5 per minute'
    AUTH_RATE_LIMIT_PASSWORD_RESET = '3 per minute'

    # Accounts
    PASSWORD_RESET_EXPIRE_MINUTES = 60
    EMAIL_VERIFICATION_MAX_AGE = 3600
    REQUIRE_EMAIL_VERIFICATION = _env_flag('REQUIRE_EMAIL_VERIFICATION', 'true')

    # Outbound email
    MAILGUN_API_KEY = os.environ.get('MAILGUN_API_KEY')
    MAILGUN_DOMAIN = os.environ.get('MAILGUN_DOMAIN')
    MAILGUN_BASE_URL = os.environ.get('MAILGUN_BASE_URL', 'https://api.mailgun.net/v3')
    FROM_EMAIL = os.environ.get('FROM_EMAIL', 'noreply@nutritrack.app')
    FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:3000')

    # Production CORS origins
    PRODUCTION_ORIGINS = [
        'https://nutritrack.app',
        'https://www.nutritrack.app',
    ]

    # Development CORS origins (includes localhost)
    DEVELOPMENT_ORIGINS = [
        'http://localhost:3000',
        'http://localhost:3001',
        'http://localhost:5173',
        'http://localhost:8080',
        'http://127.0.0.1:3000',
        'http://127.0.0.1:3001',
        'http://127.0.0.1:5173',
        'http://127.0.0.1:8080',
    ]

    if APP_ENV == 'production':
        CORS_ORIGINS = PRODUCTION_ORIGINS
    else:
        CORS_ORIGINS = DEVELOPMENT_ORIGINS


app.config.from_object(Config)

# ============================================================================
# EXTENSIONS AND SERVICES
# ============================================================================
db.init_app(app)

ph = PasswordHasher()
# Verified against for unknown emails so both paths cost one Argon2 check
DUMMY_PASSWORD_HASH = ph.hash('nutritrack-timing-equalizer')

cache = get_cache_store()
app.logger.info(f"Cache store initialized: {type(cache).__name__}")

session_service = SessionManagementService(
    cache,
    lifetime_minutes=app.config['SESSION_LIFETIME_MINUTES'],
    rotation_threshold=app.config['SESSION_ROTATION_THRESHOLD'],
    max_lifetime=app.config['SESSION_MAX_LIFETIME'],
    max_concurrent=app.config['SESSION_MAX_CONCURRENT'],
    suspicious_threshold=app.config['SESSION_SUSPICIOUS_THRESHOLD'],
    strict_ip_check=app.config['SESSION_STRICT_IP_CHECK'],
    default_timezone=app.config['APP_TIMEZONE'],
)

jwt_service = JWTService(
    secret_key=app.config['JWT_SECRET_KEY'],
    cache=cache,
    algorithm=app.config['JWT_ALGORITHM'],
    access_token_ttl=app.config['JWT_ACCESS_TOKEN_TTL'],
    refresh_token_ttl=app.config['JWT_REFRESH_TOKEN_TTL'],
    issuer=app.config['JWT_ISSUER'],
    audience=app.config['APP_URL'],
)

email_serializer = URLSafeTimedSerializer(app.config['SECRET_KEY'], salt='email-verification')


def rate_limit_user_id():
    """User id for rate-limit keys, from the bearer token or the session cookie"""
    token = JWTService.extract_token_from_header(request.headers.get('Authorization'))
    if token:
        return jwt_service.peek_user_id(token)
    return session.get('user_id')


# Request id and access logging first so every later hook has g.request_id
init_api_logger(app, rate_limit_user_id)

limiter = Limiter(
    key_func=make_api_key_func(rate_limit_user_id),
    app=app,
    default_limits=[make_default_limit(
        rate_limit_user_id,
        app.config['API_RATE_LIMIT_AUTHENTICATED'],
        app.config['API_RATE_LIMIT_GUEST'],
    )],
    default_limits_exempt_when=is_exempt_path,
    storage_uri=app.config['RATELIMIT_STORAGE_URI'],
    headers_enabled=app.config['RATELIMIT_HEADERS_ENABLED'],
)
register_rate_limit_handler(app, limiter)

CORS(
    app,
    resources={r"/api/*": {
        "origins": app.config['CORS_ORIGINS']
    }},
    supports_credentials=True,
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token", "X-Requested-With",
                   "X-API-Version", "X-Request-ID", "X-Timezone"],
    methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    expose_headers=["X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset",
                    "X-API-Version", "X-API-Version-Number", "Retry-After"],
)

init_api_versioning(app)

# Endpoints that may run with a missing, stale or foreign session cookie
SESSION_SECURITY_EXEMPT = (
    'auth_login', 'auth_register', 'auth_logout',
    'jwt_login', 'jwt_refresh',
    'password_forgot', 'password_verify_token', 'password_reset',
    'email_verify', 'email_resend',
    'health_check', 'api_preflight', 'static',
)
init_session_security(app, session_service, SESSION_SECURITY_EXEMPT)
init_security_headers(app)

PREFLIGHT_ALLOW_HEADERS = "Content-Type, Authorization, X-CSRF-Token, X-Requested-With, X-API-Version, X-Request-ID, X-Timezone"


def origin_allowed(origin):
    """Check if origin is in our allowlist"""
    return bool(origin) and origin in app.config['CORS_ORIGINS']


# OPTIONS catch-all for /api/* (bypasses auth)
@app.route("/api/<path:any_path>", methods=["OPTIONS"])
def api_preflight(any_path):
    origin = request.headers.get("Origin")
    # Without ACAO the browser blocks the real request
    if not origin_allowed(origin):
        return ("", 204)

    resp = make_response("", 204)
    resp.headers["Access-Control-Allow-Origin"] = origin
    resp.headers["Access-Control-Allow-Credentials"] = "true"
    resp.headers["Access-Control-Allow-Methods"] = "GET, POST, PUT, PATCH, DELETE, OPTIONS"
    resp.headers["Access-Control-Allow-Headers"] = PREFLIGHT_ALLOW_HEADERS
    resp.headers["Access-Control-Max-Age"] = "86400"
    resp.headers["Vary"] = "Origin"
    return resp


# ============================================================================
# AUTHENTICATION SYSTEM
# ============================================================================

AUTH_ERRORS = {
    'AUTH_REQUIRED': (401, 'Authentication required'),
    'TOKEN_INVALID': (401, 'token_invalid'),
    'SESSION_EXPIRED': (401, 'session_expired'),
    'ACCOUNT_DEACTIVATED': (403, 'Account is deactivated'),
}


def email_hash(email):
    return hashlib.sha256(email.encode()).hexdigest()[:8]


def hash_password(password):
    return ph.hash(password)


def verify_password(password, password_hash):
    """Verify password using Argon2"""
    try:
        return ph.verify(password_hash, password)
    except VerifyMismatchError:
        return False
    except (VerificationError, InvalidHashError) as e:
        app.logger.error(f"Password verification failed: {e}")
        return False


def resolve_request_user():
    """
    Resolve the caller from a Bearer JWT first, then from the session cookie.
    Returns (user, error_code) and sets g.auth_method on success.
    """
    token = jwt_service.extract_token_from_header(request.headers.get('Authorization'))
    if token:
        claims = jwt_service.validate_token(token)
        if not claims or claims.get('typ') != 'access':
            return None, 'TOKEN_INVALID'
        user = db.session.get(User, int(claims['sub']))
        if not user:
            return None, 'TOKEN_INVALID'
        g.auth_method = 'jwt'
        g.jwt_token = token
        g.jwt_claims = claims
    else:
        session_id = session.get('session_id')
        if not session_id:
            return None, 'AUTH_REQUIRED'
        user_session = UserSession.query.filter_by(session_id=session_id, is_active=True).first()
        if not user_session or user_session.is_expired():
            session.clear()
            return None, 'SESSION_EXPIRED'
        user = db.session.get(User, user_session.user_id)
        if not user:
            session.clear()
            return None, 'SESSION_EXPIRED'
        g.auth_method = 'session'
        g.session_id = session_id

    if not user.is_active:
        return None, 'ACCOUNT_DEACTIVATED'
    return user, None


def auth_error_response(error_code):
    status, message = AUTH_ERRORS.get(error_code, AUTH_ERRORS['AUTH_REQUIRED'])
    return jsonify({
        'ok': False,
        'error': message,
        'code': error_code or 'AUTH_REQUIRED'
    }), status


def require_auth(f):
    """Decorator to require a valid JWT or cookie session"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user, error_code = resolve_request_user()
        if not user:
            return auth_error_response(error_code)

        g.user = user
        csrf_error = enforce_csrf()
        if csrf_error:
            return csrf_error
        return f(*args, **kwargs)

    return decorated_function


def require_admin(f):
    """Decorator to require admin privileges"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user, error_code = resolve_request_user()
        if not user:
            return auth_error_response(error_code)

        if not user.is_admin:
            return jsonify({
                'ok': False,
                'error': 'Admin privileges required',
                'code': 'ADMIN_REQUIRED'
            }), 403

        g.user = user
        return f(*args, **kwargs)

    return decorated_function


# ============================================================================
# EXTERNAL API INTEGRATIONS
# ============================================================================

def send_email_via_mailgun(to_email, subject, content, content_type='text'):
    """Send email via Mailgun API with error handling"""
    if not app.config['MAILGUN_API_KEY'] or not app.config['MAILGUN_DOMAIN']:
        app.logger.info("Mailgun not configured, skipping email")
        return {'status': 'skipped', 'message': 'Email service not configured'}

    url = f"{app.config['MAILGUN_BASE_URL']}/{app.config['MAILGUN_DOMAIN']}/messages"
    data = {
        'from': app.config['FROM_EMAIL'],
        'to': to_email,
        'subject': subject
    }
    if content_type == 'html':
        data['html'] = content
    else:
        data['text'] = content

    try:
        response = requests.post(
            url,
            auth=('api', app.config['MAILGUN_API_KEY']),
            data=data,
            timeout=10
        )
    except requests.RequestException as e:
        app.logger.error(f"Mailgun request error: {e}")
        return {'status': 'failed', 'message': 'Email service unavailable'}

    if response.status_code == 200:
        return {'status': 'sent', 'message': 'Email sent successfully'}

    app.logger.error(f"Mailgun error: {response.status_code} - {response.text}")
    return {'status': 'failed', 'message': 'Email delivery failed'}


def generate_email_verification_token(user):
    return email_serializer.dumps({'user_id': user.id, 'email': user.email})


def send_verification_email(user):
    token = generate_email_verification_token(user)
    link = f"{app.config['APP_URL']}/api/auth/email/verify/{token}"
    content = f"""Hi {user.first_name},

Welcome to {APP_NAME}! Please confirm your email address by opening the link below:

{link}

This link expires in {app.config['EMAIL_VERIFICATION_MAX_AGE'] // 60} minutes.

The {APP_NAME} Team
"""
    return send_email_via_mailgun(user.email, f'Verify your {APP_NAME} email address', content)


def send_password_reset_email(email, token):
    link = f"{app.config['FRONTEND_URL']}/reset-password?token={token}"
    content = f"""We received a request to reset your {APP_NAME} password.

Reset it here: {link}

This link expires in {app.config['PASSWORD_RESET_EXPIRE_MINUTES']} minutes. If you did not ask for a reset you can ignore this email.

The {APP_NAME} Team
"""
    return send_email_via_mailgun(email, f'Reset your {APP_NAME} password', content)


# ============================================================================
# API ROUTES - HEALTH CHECK
# ============================================================================

@app.route('/api/health', methods=['GET'])
@limiter.exempt
def health_check():
    """Health check endpoint for platform monitoring"""
    try:
        db.session.execute(text('SELECT 1'))
    except Exception as e:
        app.logger.error(f"Health check database error: {e}")
        return jsonify({
            'status': 'unhealthy',
            'database': 'disconnected',
            'timestamp': datetime.utcnow().isoformat()
        }), 500

    return jsonify({
        'status': 'healthy',
        'database': 'connected',
        'cache': 'redis' if isinstance(cache, RedisCacheStore) else 'memory',
        'version': APP_VERSION,
        'timestamp': datetime.utcnow().isoformat()
    })


# ============================================================================
# API ROUTES - REGISTRATION AND EMAIL VERIFICATION
# ============================================================================

@app.route('/api/auth/register', methods=['POST'])
@limiter.limit(lambda: app.config['AUTH_RATE_LIMIT_REGISTER'])
def auth_register():
    """User registration endpoint"""
    try:
        data = RegisterSchema.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e)

    if User.query.filter_by(email=data.email).first():
        return jsonify({
            'ok': False,
            'error': 'Validation failed',
            'code': 'VALIDATION_ERROR',
            'errors': {'email': ['has already been taken']}
        }), 422

    try:
        profile = data.model_dump(exclude={'email', 'password', 'password_confirmation'}, exclude_none=True)
        user = User(email=data.email, password_hash=hash_password(data.password), **profile)
        user.recalculate_metrics()
        db.session.add(user)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Registration error: {e}")
        return jsonify({
            'ok': False,
            'error': 'Registration failed',
            'code': 'INTERNAL_ERROR'
        }), 500

    email_result = send_verification_email(user)
    app.logger.info(f"auth_register user_id={user.id} email_hash={email_hash(user.email)} "
                    f"verification_email={email_result['status']}")

    return jsonify({
        'ok': True,
        'message': 'Registration successful. Please check your email to verify your account.',
        'user': user.to_dict(),
        'email_verification_sent': email_result['status'] == 'sent',
    }), 201


@app.route('/api/auth/email/verify/<token>', methods=['GET'])
def email_verify(token):
    try:
        payload = email_serializer.loads(token, max_age=app.config['EMAIL_VERIFICATION_MAX_AGE'])
    except SignatureExpired:
        return jsonify({
            'ok': False,
            'error': 'Verification link has expired',
            'code': 'VERIFICATION_EXPIRED'
        }), 400
    except BadSignature:
        return jsonify({
            'ok': False,
            'error': 'Invalid verification link',
            'code': 'VERIFICATION_INVALID'
        }), 400

    user = db.session.get(User, payload.get('user_id'))
    if not user or user.email != payload.get('email'):
        return jsonify({
            'ok': False,
            'error': 'Invalid verification link',
            'code': 'VERIFICATION_INVALID'
        }), 400

    if user.has_verified_email():
        return jsonify({'ok': True, 'message': 'Email already verified', 'already_verified': True})

    user.email_verified_at = datetime.utcnow()
    db.session.commit()
    app.logger.info(f"auth_email_verified user_id={user.id}")
    return jsonify({'ok': True, 'message': 'Email verified successfully', 'already_verified': False})


@app.route('/api/auth/email/resend', methods=['POST'])
@limiter.limit(lambda: app.config['AUTH_RATE_LIMIT_PASSWORD_RESET'])
def email_resend():
    try:
        data = ForgotPasswordSchema.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e)

    user = User.query.filter_by(email=data.email).first()
    if user and user.is_active and not user.has_verified_email():
        result = send_verification_email(user)
        app.logger.info(f"auth_email_resend user_id={user.id} status={result['status']}")

    return jsonify({
        'ok': True,
        'message': 'If the account exists and is unverified, a new verification email has been sent.'
    })


@app.route('/api/auth/email/status', methods=['GET'])
@require_auth
def email_status():
    user = g.user
    return jsonify({
        'ok': True,
        'email': user.email,
        'email_verified': user.has_verified_email(),
        'email_verified_at': user.email_verified_at.isoformat() if user.email_verified_at else None,
    })


# ============================================================================
# API ROUTES - LOGIN / LOGOUT
# ============================================================================

def _login_failure(email, user, reason, status, code, error, **extra):
    LoginAttempt.record(email, get_client_ip(request), request.headers.get('User-Agent'),
                        successful=False, failure_reason=reason)
    db.session.commit()
    app.logger.info(f"Login failed: reason={reason} email_hash={email_hash(email)} "
                    f"user_id={user.id if user else None}")
    body = {'ok': False, 'error': error, 'code': code}
    body.update(extra)
    return jsonify(body), status


def authenticate(credentials):
    """
    Run the login checks in order: throttle, account lock, credentials,
    account state, email verification.
    Returns (user, None) on success or (None, error_response).
    """
    email = credentials.email
    password = credentials.password

    retry_after = login_rate_limiter.check_rate_limit(request, email)
    if retry_after is not None:
        response = make_response(jsonify({
            'ok': False,
            'error': 'rate_limited',
            'code': 'RATE_LIMIT_LOGIN',
            'retry_after': retry_after
        }), 429)
        response.headers['Retry-After'] = str(retry_after)
        response.headers['Cache-Control'] = 'no-store'
        return None, response

    if LoginAttempt.recent_failed_attempts(email, minutes=15) >= 5:
        return None, _login_failure(
            email, None, 'account_locked', 423, 'ACCOUNT_LOCKED',
            'Account temporarily locked due to too many failed login attempts',
            retry_after=900,
        )

    app.logger.info(f"Login attempt for email: {email_hash(email)}")
    user = User.query.filter_by(email=email).first()
    password_valid = verify_password(password, user.password_hash if user else DUMMY_PASSWORD_HASH)

    if not user or not password_valid:
        login_rate_limiter.record_failed_attempt(request, email)
        return None, _login_failure(email, user, 'invalid_credentials', 401,
                                    'INVALID_CREDENTIALS', 'Invalid credentials')

    if not user.is_active:
        return None, _login_failure(email, user, 'account_deactivated', 403,
                                    'ACCOUNT_DEACTIVATED', 'Account is deactivated')

    if app.config['REQUIRE_EMAIL_VERIFICATION'] and not user.has_verified_email():
        return None, _login_failure(email, user, 'email_not_verified', 403, 'EMAIL_NOT_VERIFIED',
                                    'Please verify your email address before logging in',
                                    email_verification_required=True)

    if ph.check_needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)

    user.last_login_at = datetime.utcnow()
    user.last_login_ip = get_client_ip(request)
    LoginAttempt.record(email, user.last_login_ip, request.headers.get('User-Agent'),
                        successful=True, request_data={'remember_me': credentials.remember_me})
    db.session.commit()

    login_rate_limiter.clear_user_bucket(request, email)
    return user, None


@app.route('/api/auth/login', methods=['POST'])
@limiter.limit(lambda: app.config['AUTH_RATE_LIMIT_LOGIN'])
def auth_login():
    """Cookie-session login"""
    try:
        credentials = LoginSchema.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e)

    user, error_response = authenticate(credentials)
    if error_response is not None:
        return error_response

    try:
        session_id = generate_session_id()
        lifetime = timedelta(days=app.config['SESSION_REMEMBER_ME_DAYS']) if credentials.remember_me else None

        session.clear()
        session.permanent = credentials.remember_me
        session['session_id'] = session_id
        session['user_id'] = user.id

        user_session = session_service.create_session(user, request, session_id, lifetime=lifetime,
                                                      remember_me=credentials.remember_me)
        session_service.enforce_concurrent_session_limit(user)
    except Exception as e:
        db.session.rollback()
        session.clear()
        app.logger.error(f"Login session error: {e}")
        return jsonify({
            'ok': False,
            'error': 'Failed to create session',
            'code': 'SESSION_ERROR'
        }), 500

    response = make_response(jsonify({
        'ok': True,
        'user': user.to_dict(),
        'session': {
            'expires_at': user_session.expires_at.isoformat(),
            'remember_me': credentials.remember_me,
        },
    }))
    response.headers['Cache-Control'] = 'no-store'
    response.headers['Vary'] = 'Origin'
    issue_csrf_token(response)

    app.logger.info(f"auth_login_issue user_id={user.id} session_id={session_id} "
                    f"remember_me={credentials.remember_me} status=200")
    return response, 200


@app.route('/api/auth/logout', methods=['POST'])
def auth_logout():
    """Idempotent logout"""
    session_id = session.get('session_id')
    user_id = session.get('user_id')

    if session_id:
        try:
            session_service.invalidate_session(session_id, 'logout')
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Logout error: {e}")

    session.clear()
    response = make_response(jsonify({
        'ok': True,
        'message': 'Logged out' if session_id else 'No active session',
        'idempotent': True,
    }))
    response.headers['Cache-Control'] = 'no-store'
    clear_csrf_on_logout(response)
    clear_all_auth_cookies(response)

    app.logger.info(f"Logout successful for user {user_id or 'unknown'}")
    return response, 200


@app.route('/api/auth/me', methods=['GET'])
@require_auth
def auth_me():
    user = g.user
    current = None
    if g.auth_method == 'session':
        user_session = UserSession.query.filter_by(session_id=g.session_id).first()
        current = user_session.to_dict(g.session_id) if user_session else None

    response = jsonify({
        'ok': True,
        'user': user.to_dict(),
        'auth_method': g.auth_method,
        'session': current,
    })
    response.headers['Cache-Control'] = 'no-store'
    return response


@app.route('/api/auth/change-password', methods=['POST'])
@require_auth
def change_password():
    """Change password, end other sessions, rotate this one and revoke all JWTs"""
    try:
        data = ChangePasswordSchema.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e)

    user = g.user
    if not verify_password(data.current_password, user.password_hash):
        return jsonify({
            'ok': False,
            'error': 'Validation failed',
            'code': 'VALIDATION_ERROR',
            'errors': {'current_password': ['is incorrect']}
        }), 422

    current_session_id = session.get('session_id') if g.auth_method == 'session' else None
    try:
        user.password_hash = hash_password(data.new_password)
        db.session.commit()

        others_revoked = session_service.invalidate_other_sessions(user, current_session_id)
        new_session_id = session_service.rotate_session_id(current_session_id) if current_session_id else None
        if new_session_id:
            session['session_id'] = new_session_id
        jwt_service.blacklist_all_user_tokens(user.id)
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Password change error: {e}")
        return jsonify({
            'ok': False,
            'error': 'Failed to update password',
            'code': 'INTERNAL_ERROR'
        }), 500

    app.logger.info(f"auth_password_change user_id={user.id} others_revoked={others_revoked} "
                    f"session_rotated={bool(new_session_id)} ip={get_client_ip(request)}")

    body = {
        'ok': True,
        'message': 'Password updated successfully',
        'others_revoked': others_revoked,
        'session_rotated': bool(new_session_id),
    }
    if g.auth_method == 'jwt':
        body['tokens'] = jwt_service.generate_token_pair(user, get_client_ip(request),
                                                         request.headers.get('User-Agent'))
    response = jsonify(body)
    response.headers['Cache-Control'] = 'no-store'
    return response


# ============================================================================
# API ROUTES - PASSWORD RESET
# ============================================================================

PASSWORD_RESET_GENERIC_MESSAGE = 'If an account exists for that email, a password reset link has been sent.'


def _reset_throttled(retry_after, message):
    response = make_response(jsonify({
        'ok': False,
        'error': message,
        'code': 'PASSWORD_RESET_THROTTLED',
        'retry_after': retry_after
    }), 429)
    response.headers['Retry-After'] = str(retry_after)
    return response


@app.route('/api/auth/password/forgot', methods=['POST'])
@limiter.limit(lambda: app.config['AUTH_RATE_LIMIT_PASSWORD_RESET'])
def password_forgot():
    try:
        data = ForgotPasswordSchema.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e)

    email = data.email
    ip_address = get_client_ip(request)

    if PasswordResetToken.has_recent_request(email, minutes=15):
        return _reset_throttled(900, 'A reset link was sent recently. Please wait before requesting another.')
    if (PasswordResetToken.recent_attempts(email, minutes=60) >= 3
            or PasswordResetToken.recent_attempts_by_ip(ip_address, minutes=60) >= 5):
        return _reset_throttled(3600, 'Too many password reset requests. Please try again later.')

    user = User.query.filter_by(email=email).first()
    if user and user.is_active:
        reset_token = PasswordResetToken.create_token(
            email, ip_address, request.headers.get('User-Agent'),
            expiration_minutes=app.config['PASSWORD_RESET_EXPIRE_MINUTES'],
        )
        result = send_password_reset_email(email, reset_token.token)
        app.logger.info(f"auth_password_forgot user_id={user.id} email={result['status']}")
    else:
        app.logger.info(f"auth_password_forgot unknown_email_hash={email_hash(email)}")

    return jsonify({'ok': True, 'message': PASSWORD_RESET_GENERIC_MESSAGE})


@app.route('/api/auth/password/verify-token', methods=['POST'])
def password_verify_token():
    token = (request.get_json(silent=True) or {}).get('token')
    reset_token = PasswordResetToken.find_valid(token) if isinstance(token, str) and token else None
    if not reset_token:
        return jsonify({
            'ok': False,
            'error': 'Invalid or expired reset token',
            'code': 'INVALID_RESET_TOKEN'
        }), 400

    return jsonify({
        'ok': True,
        'valid': True,
        'expires_at': reset_token.expires_at.isoformat(),
    })


@app.route('/api/auth/password/reset', methods=['POST'])
def password_reset():
    try:
        data = ResetPasswordSchema.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e)

    reset_token = PasswordResetToken.verify_token(data.token)
    user = User.query.filter_by(email=reset_token.email).first() if reset_token else None
    if not user:
        db.session.rollback()
        return jsonify({
            'ok': False,
            'error': 'Invalid or expired reset token',
            'code': 'INVALID_RESET_TOKEN'
        }), 400

    try:
        user.password_hash = hash_password(data.password)
        db.session.commit()

        revoked = session_service.invalidate_other_sessions(user)
        jwt_service.blacklist_all_user_tokens(user.id)
    except Exception as e:
        db.session.rollback()
        app.logger.error(f"Password reset error: {e}")
        return jsonify({
            'ok': False,
            'error': 'Password reset failed',
            'code': 'INTERNAL_ERROR'
        }), 500

    login_rate_limiter.clear_user_bucket(request, user.email)
    app.logger.info(f"auth_password_reset user_id={user.id} sessions_revoked={revoked}")
    return jsonify({'ok': True, 'message': 'Password has been reset. Please log in with your new password.'})


# ============================================================================
# API ROUTES - JWT AUTH
# ============================================================================

@app.route('/api/auth/jwt/login', methods=['POST'])
@limiter.limit(lambda: app.config['AUTH_RATE_LIMIT_LOGIN'])
def jwt_login():
    try:
        credentials = LoginSchema.model_validate(request.get_json(silent=True) or {})
    except ValidationError as e:
        return validation_error_response(e)

    user, error_response = authenticate(credentials)
    if error_response is not None:
        return error_response

    tokens = jwt_service.generate_token_pair(user, get_client_ip(request), request.headers.get('User-Agent'))
    app.logger.info(f"jwt_login user_id={user.id}")

    response = jsonify({'ok': True, 'user': user.to_dict(), **tokens})
    response.headers['Cache-Control'] = 'no-store'
    return response


@app.route('/api/auth/jwt/refresh', methods=['POST'])
def jwt_refresh():
    refresh_token = (request.get_json(silent=True) or {}).get('refresh_token')
    result = jwt_service.refresh_access_token(refresh_token) if isinstance(refresh_token, str) else None
    if not result:
        return jsonify({
            'ok': False,
            'error': 'token_invalid',
            'code': 'TOKEN_INVALID'
        }), 401

    response = jsonify({'ok': True, **result})
    response.headers['Cache-Control'] = 'no-store'
    return response


@app.route('/api/auth/jwt/logout', methods=['POST'])
@require_auth
def jwt_logout():
    user = g.user
    access_revoked = jwt_service.blacklist_token(g.jwt_token) if g.auth_method == 'jwt' else False

    refresh_revoked = False
    refresh_token = (request.get_json(silent=True) or {}).get('refresh_token')
    if isinstance(refresh_token, str):
        claims = jwt_service.validate_token(refresh_token)
        if claims and claims.get('typ') == 'refresh' and claims['sub'] == str(user.id):
            refresh_revoked = jwt_service.revoke_refresh_token(user.id, claims['jti'])

    app.logger.info(f"jwt_logout user_id={user.id} access_revoked={access_revoked} refresh_revoked={refresh_revoked}")
    return jsonify({'ok': True, 'access_token_revoked': access_revoked, 'refresh_token_revoked': refresh_revoked})


@app.route('/api/auth/jwt/logout-all', methods=['POST'])
@require_auth
def jwt_logout_all():
    revoked = jwt_service.blacklist_all_user_tokens(g.user.id)
    return jsonify({'ok': True, 'refresh_tokens_revoked': revoked})


@app.route('/api/auth/jwt/tokens', methods=['GET'])
@require_auth
def jwt_tokens():
    tokens = JWTRefreshToken.active_for_user(g.user.id)
    return jsonify({'ok': True, 'tokens': [t.to_dict() for t in tokens], 'total': len(tokens)})


@app.route('/api/auth/jwt/tokens/revoke', methods=['POST'])
@require_auth
def jwt_revoke_token():
    token_id = (request.get_json(silent=True) or {}).get('token_id')
    if not isinstance(token_id, int) or isinstance(token_id, bool):
        return jsonify({
            'ok': False,
            'error': 'Validation failed',
            'code': 'VALIDATION_ERROR',
            'errors': {'token_id': ['must be an integer']}
        }), 422

    stored = JWTRefreshToken.query.filter_by(id=token_id, user_id=g.user.id, is_revoked=False).first()
    if not stored:
        return jsonify({
            'ok': False,
            'error': 'Token not found',
            'code': 'NOT_FOUND'
        }), 404

    jwt_service.revoke_refresh_token(g.user.id, stored.jti)
    return jsonify({'ok': True, 'message': 'Token revoked'})


# ============================================================================
# FEATURE ENDPOINTS
# ============================================================================
create_csrf_endpoints(app, require_auth)
create_session_endpoints(app, session_service, jwt_service, require_auth, require_admin)
create_profile_endpoints(app, require_auth)
create_health_metric_endpoints(app, require_auth)
create_food_endpoints(app, require_auth)
register_cleanup_commands(app, session_service)


# ============================================================================
# GLOBAL JSON ERROR HANDLERS
# ============================================================================

@app.errorhandler(400)
def bad_request_error(error):
    return jsonify({
        'ok': False,
        'error': 'Bad request',
        'code': 'BAD_REQUEST'
    }), 400


@app.errorhandler(404)
def not_found_error(error):
    """Ensure 404s return JSON for API routes"""
    return jsonify({
        'ok': False,
        'error': 'Endpoint not found',
        'code': 'NOT_FOUND'
    }), 404


@app.errorhandler(405)
def method_not_allowed_error(error):
    """Ensure 405s return JSON for API routes"""
    return jsonify({
        'ok': False,
        'error': 'Method not allowed',
        'code': 'METHOD_NOT_ALLOWED'
    }), 405


@app.errorhandler(500)
def internal_error(error):
    """Ensure 500s return JSON and leave the DB session usable"""
    db.session.rollback()
    app.logger.error(f"Unhandled error on {request.method} {request.path}: {getattr(error, 'original_exception', error)}")
    return jsonify({
        'ok': False,
        'error': 'Internal server error',
        'code': 'INTERNAL_ERROR'
    }), 500


# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

@app.cli.command('init-db')
def init_db_command():
    """Create all database tables."""
    db.create_all()
    app.logger.info("Database tables created")


with app.app_context():
    db.create_all()


if __name__ == '__main__':
    # Only for local development testing
    port = int(os.environ.get('PORT', 5000))
    app.run(debug=True, host='0.0.0.0', port=port)
