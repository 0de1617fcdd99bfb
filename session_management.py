"""
Session management service
Tracks login sessions per user, validates them, rotates identifiers,
enforces the concurrent-session limit and flags suspicious activity.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import or_, func

from models import db, User, UserSession
from rate_limit import get_client_ip

logger = logging.getLogger(__name__)

MOBILE_KEYWORDS = (
    'mobile', 'android', 'iphone', 'ipad', 'ipod',
    'blackberry', 'windows phone', 'opera mini',
)

LOCAL_IPS = ('127.0.0.1', '::1')

SUSPICIOUS_INVALIDATION_REASONS = ('security_violation', 'potential_hijacking', 'suspicious_activity')


def generate_session_id():
    """40-character random session identifier"""
    return secrets.token_urlsafe(30)[:40]


class SessionManagementService:
    """Session lifecycle and security policy over the user_sessions table"""

    MAX_CONCURRENT_SESSIONS = 5
    ROTATION_THRESHOLD = 900  # 15 minutes
    MAX_SESSION_LIFETIME = 43200  # 12 hours
    SUSPICIOUS_ACTIVITY_THRESHOLD = 10
    ACTIVITY_WINDOW_SECONDS = 300
    STALE_AFTER_DAYS = 30

    def __init__(self, cache, lifetime_minutes=120, rotation_threshold=None,
                 max_lifetime=None, max_concurrent=None, suspicious_threshold=None,
                 strict_ip_check=False, default_timezone='UTC'):
        self.cache = cache
        self.lifetime = timedelta(minutes=lifetime_minutes)
        self.rotation_threshold = rotation_threshold or self.ROTATION_THRESHOLD
        self.max_lifetime = max_lifetime or self.MAX_SESSION_LIFETIME
        self.max_concurrent = max_concurrent or self.MAX_CONCURRENT_SESSIONS
        self.suspicious_threshold = suspicious_threshold or self.SUSPICIOUS_ACTIVITY_THRESHOLD
        self.strict_ip_check = strict_ip_check
        self.default_timezone = default_timezone

    # ------------------------------------------------------------------
    # Creation and device details
    # ------------------------------------------------------------------

    def create_session(self, user, request, session_id, lifetime=None, remember_me=False):
        now = datetime.utcnow()
        ip_address = get_client_ip(request)
        user_agent = request.headers.get('User-Agent', '')

        user_session = UserSession(
            user_id=user.id,
            session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
            device_fingerprint=self.generate_device_fingerprint(request),
            location_info=self.get_location_info(ip_address),
            is_mobile=self.is_mobile_device(user_agent),
            remember_me=remember_me,
            last_activity=now,
            expires_at=now + (lifetime or self.lifetime),
            is_active=True,
            rotation_count=0,
            rotated_at=now,
            created_at=now,
        )
        db.session.add(user_session)

        user.last_activity_at = now
        user.last_login_ip = ip_address
        db.session.commit()

        logger.info(f"session_created user_id={user.id} session_id={session_id} ip={ip_address} "
                    f"mobile={user_session.is_mobile}")
        return user_session

    def generate_device_fingerprint(self, request):
        components = [
            request.headers.get('User-Agent', ''),
            request.headers.get('Accept-Language', ''),
            request.headers.get('Accept-Encoding', ''),
            request.headers.get('Accept', ''),
        ]
        return hashlib.sha256('|'.join(components).encode('utf-8')).hexdigest()

    def get_location_info(self, ip_address):
        # Placeholder until an IP geolocation lookup is wired in
        if ip_address in LOCAL_IPS:
            return {
                'country': 'Local',
                'city': 'Localhost',
                'timezone': self.default_timezone,
            }
        return None

    def is_mobile_device(self, user_agent):
        ua = (user_agent or '').lower()
        return any(keyword in ua for keyword in MOBILE_KEYWORDS)

    # ------------------------------------------------------------------
    # Lookups and state changes
    # ------------------------------------------------------------------

    def _active_session(self, session_id):
        if not session_id:
            return None
        return UserSession.query.filter_by(session_id=session_id, is_active=True).first()

    def update_session_activity(self, session_id):
        user_session = self._active_session(session_id)
        if not user_session:
            return False

        now = datetime.utcnow()
        user_session.last_activity = now
        if not user_session.remember_me:
            user_session.expires_at = now + self.lifetime
        db.session.commit()
        return True

    def invalidate_session(self, session_id, reason='manual'):
        user_session = UserSession.query.filter_by(session_id=session_id).first()
        if not user_session:
            return False

        user_session.is_active = False
        user_session.invalidated_at = datetime.utcnow()
        user_session.invalidation_reason = reason
        db.session.commit()

        logger.info(f"session_invalidated user_id={user_session.user_id} session_id={session_id} reason={reason}")
        return True

    def invalidate_other_sessions(self, user, current_session_id=None):
        now = datetime.utcnow()
        query = UserSession.query.filter(
            UserSession.user_id == user.id,
            UserSession.is_active.is_(True),
        )
        if current_session_id:
            query = query.filter(UserSession.session_id != current_session_id)

        count = query.update({
            'is_active': False,
            'invalidated_at': now,
            'invalidation_reason': 'logout_all_devices',
        }, synchronize_session=False)
        db.session.commit()

        logger.info(f"sessions_invalidated user_id={user.id} count={count} reason=logout_all_devices")
        return count

    def get_active_sessions(self, user):
        return UserSession.query.filter(
            UserSession.user_id == user.id,
            UserSession.is_active.is_(True),
            UserSession.expires_at > datetime.utcnow(),
        ).order_by(UserSession.last_activity.desc()).all()

    # ------------------------------------------------------------------
    # Validation and anomaly detection
    # ------------------------------------------------------------------

    def validate_session_security(self, session_id, request):
        user_session = self._active_session(session_id)
        if not user_session:
            return {'valid': False, 'reason': 'session_not_found', 'action': 'logout'}

        now = datetime.utcnow()
        if user_session.expires_at < now:
            self.invalidate_session(session_id, 'expired')
            return {'valid': False, 'reason': 'session_expired', 'action': 'logout'}

        created_at = user_session.created_at or now
        if not user_session.remember_me and (now - created_at).total_seconds() > self.max_lifetime:
            self.invalidate_session(session_id, 'lifetime_exceeded')
            return {'valid': False, 'reason': 'session_lifetime_exceeded', 'action': 'logout'}

        current_ip = get_client_ip(request)
        if self.strict_ip_check and user_session.ip_address != current_ip:
            # Logged only; a changing IP alone is not enough to end the session
            logger.warning(f"session_ip_mismatch session_id={session_id} "
                           f"original_ip={user_session.ip_address} current_ip={current_ip}")

        current_fingerprint = self.generate_device_fingerprint(request)
        if user_session.device_fingerprint != current_fingerprint:
            logger.warning(f"session_fingerprint_mismatch session_id={session_id} "
                           f"original={user_session.device_fingerprint[:12] if user_session.device_fingerprint else None} "
                           f"current={current_fingerprint[:12]}")

        return {'valid': True, 'session': user_session}

    def detect_suspicious_activity(self, session_id, request):
        user_session = UserSession.query.filter_by(session_id=session_id).first()
        if not user_session:
            return {'suspicious': True, 'flags': ['session_not_found']}

        flags = []

        recent_ips = db.session.query(func.count(func.distinct(UserSession.ip_address))).filter(
            UserSession.user_id == user_session.user_id,
            UserSession.created_at > datetime.utcnow() - timedelta(hours=1),
        ).scalar() or 0
        if recent_ips > 3:
            flags.append('rapid_ip_changes')

        activity_key = f"suspicious_activity:{user_session.user_id}"
        activity_count = self.cache.get(activity_key, 0)
        if activity_count > self.suspicious_threshold:
            flags.append('high_activity_rate')
        self.cache.set(activity_key, activity_count + 1, ttl=self.ACTIVITY_WINDOW_SECONDS)

        if self._has_hijacking_indicators(user_session, request):
            flags.append('potential_hijacking')

        suspicious = bool(flags)
        if suspicious:
            logger.warning(f"suspicious_session_activity session_id={session_id} "
                           f"user_id={user_session.user_id} flags={flags} ip={get_client_ip(request)}")

        return {'suspicious': suspicious, 'flags': flags}

    def _has_hijacking_indicators(self, user_session, request):
        indicators = 0

        if user_session.user_agent != request.headers.get('User-Agent', ''):
            indicators += 1

        current_timezone = request.headers.get('X-Timezone')
        location = user_session.location_info or {}
        if current_timezone and location.get('timezone') and location['timezone'] != current_timezone:
            indicators += 1

        if self._is_impossible_travel(user_session, request):
            indicators += 2

        return indicators >= 2

    def _is_impossible_travel(self, user_session, request):
        current_ip = get_client_ip(request)
        if not user_session.location_info or current_ip == user_session.ip_address:
            return False

        minutes_since = (datetime.utcnow() - user_session.last_activity).total_seconds() / 60
        return minutes_since < 30 and self._ips_geographically_distant(user_session.ip_address, current_ip)

    @staticmethod
    def _ips_geographically_distant(ip1, ip2):
        # Different /16 networks stand in for a real distance lookup
        network1 = '.'.join((ip1 or '').split('.')[:2])
        network2 = '.'.join((ip2 or '').split('.')[:2])
        return network1 != network2

    # ------------------------------------------------------------------
    # Rotation and limits
    # ------------------------------------------------------------------

    def should_rotate(self, user_session):
        if not user_session:
            return False
        last_rotation = user_session.rotated_at or user_session.created_at
        if not last_rotation:
            return False
        return (datetime.utcnow() - last_rotation).total_seconds() > self.rotation_threshold

    def rotate_session_id(self, session_id):
        user_session = UserSession.query.filter_by(session_id=session_id).first()
        if not user_session:
            return None

        now = datetime.utcnow()
        new_session_id = generate_session_id()
        user_session.session_id = new_session_id
        user_session.last_activity = now
        user_session.rotated_at = now
        user_session.rotation_count = (user_session.rotation_count or 0) + 1
        db.session.commit()

        logger.info(f"session_rotated user_id={user_session.user_id} old={session_id} new={new_session_id}")
        return new_session_id

    def enforce_concurrent_session_limit(self, user):
        # Expired rows still flagged active do not count against the limit
        active = sorted(self.get_active_sessions(user), key=lambda s: s.last_activity)

        if len(active) <= self.max_concurrent:
            return False

        now = datetime.utcnow()
        excess = active[:len(active) - self.max_concurrent]
        for user_session in excess:
            user_session.is_active = False
            user_session.invalidated_at = now
            user_session.invalidation_reason = 'concurrent_limit_exceeded'
        db.session.commit()

        logger.info(f"concurrent_session_limit user_id={user.id} invalidated={len(excess)} "
                    f"limit={self.max_concurrent}")
        return True

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def cleanup_expired_sessions(self):
        now = datetime.utcnow()
        count = UserSession.query.filter(
            UserSession.is_active.is_(True),
            or_(
                UserSession.expires_at < now,
                UserSession.last_activity < now - timedelta(days=self.STALE_AFTER_DAYS),
            ),
        ).update({
            'is_active': False,
            'invalidated_at': now,
            'invalidation_reason': 'cleanup_expired',
        }, synchronize_session=False)
        db.session.commit()

        logger.info(f"sessions_cleanup reason=cleanup_expired count={count}")
        return count

    def cleanup_inactive_sessions(self, days=30):
        now = datetime.utcnow()
        count = UserSession.query.filter(
            UserSession.is_active.is_(True),
            UserSession.last_activity < now - timedelta(days=days),
        ).update({
            'is_active': False,
            'invalidated_at': now,
            'invalidation_reason': 'cleanup_inactive',
        }, synchronize_session=False)
        db.session.commit()

        logger.info(f"sessions_cleanup reason=cleanup_inactive days={days} count={count}")
        return count

    def get_session_stats(self, user):
        active = self.get_active_sessions(user)
        return {
            'active_sessions': len(active),
            'total_sessions': UserSession.query.filter_by(user_id=user.id).count(),
            'current_devices': len({s.device_fingerprint for s in active}),
            'unique_ips': len({s.ip_address for s in active}),
            'mobile_sessions': sum(1 for s in active if s.is_mobile),
            'desktop_sessions': sum(1 for s in active if not s.is_mobile),
        }

    def get_security_report(self, days=7):
        now = datetime.utcnow()
        since = now - timedelta(days=days)
        created_recently = UserSession.query.filter(UserSession.created_at >= since)

        return {
            'period': {
                'days': days,
                'start': since.isoformat(),
                'end': now.isoformat(),
            },
            'total_sessions': created_recently.count(),
            'active_sessions': UserSession.query.filter(UserSession.is_active.is_(True)).count(),
            'invalidated_sessions': UserSession.query.filter(UserSession.invalidated_at >= since).count(),
            'expired_sessions': UserSession.query.filter(
                UserSession.expires_at < now,
                UserSession.expires_at >= since,
            ).count(),
            'suspicious_activities': UserSession.query.filter(
                UserSession.invalidated_at >= since,
                UserSession.invalidation_reason.in_(SUSPICIOUS_INVALIDATION_REASONS),
            ).count(),
            'unique_users': db.session.query(func.count(func.distinct(UserSession.user_id))).filter(
                UserSession.created_at >= since
            ).scalar() or 0,
            'unique_ips': db.session.query(func.count(func.distinct(UserSession.ip_address))).filter(
                UserSession.created_at >= since
            ).scalar() or 0,
            'mobile_vs_desktop': {
                'mobile': created_recently.filter(UserSession.is_mobile.is_(True)).count(),
                'desktop': created_recently.filter(UserSession.is_mobile.is_(False)).count(),
            },
        }

    # ------------------------------------------------------------------
    # Tokens and locks
    # ------------------------------------------------------------------

    @staticmethod
    def generate_secure_token(length=32):
        return secrets.token_hex(length)

    @staticmethod
    def validate_secure_token(token, hashed_token):
        computed = hashlib.sha256(token.encode('utf-8')).hexdigest()
        return hmac.compare_digest(computed, hashed_token)

    def lock_session(self, session_id, ttl=300):
        return self.cache.add(f"session_lock:{session_id}", True, ttl=ttl)

    def unlock_session(self, session_id):
        self.cache.delete(f"session_lock:{session_id}")

    def is_session_locked(self, session_id):
        return self.cache.has(f"session_lock:{session_id}")

    def user_for_session(self, user_session):
        return db.session.get(User, user_session.user_id)
