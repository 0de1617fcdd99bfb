"""
JWT access/refresh token service
HS256 tokens via PyJWT; blacklist and refresh-token index live in the cache store,
issued refresh tokens are also persisted for listing and revocation.
"""

import hashlib
import logging
import time
import uuid
from datetime import datetime

import jwt
from jwt import ExpiredSignatureError, ImmatureSignatureError, InvalidSignatureError, InvalidTokenError

from models import db, User, JWTRefreshToken

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ('iss', 'sub', 'aud', 'iat', 'exp', 'jti', 'typ')


class JWTService:
    def __init__(self, secret_key, cache, algorithm='HS256', access_token_ttl=900,
                 refresh_token_ttl=604800, issuer='NutriTrack', audience='http://localhost:5000'):
        self.secret_key = secret_key
        self.cache = cache
        self.algorithm = algorithm
        self.access_token_ttl = access_token_ttl
        self.refresh_token_ttl = refresh_token_ttl
        self.issuer = issuer
        self.audience = audience

    # ------------------------------------------------------------------
    # Issuing
    # ------------------------------------------------------------------

    def _base_claims(self, user, ttl, token_type):
        # Sub-second iat so a logout-all in the same second still cuts off older tokens
        now = time.time()
        return {
            'iss': self.issuer,
            'sub': str(user.id),
            'aud': self.audience,
            'iat': now,
            'nbf': int(now),
            'exp': int(now) + ttl,
            'jti': str(uuid.uuid4()),
            'typ': token_type,
        }

    def _encode(self, payload):
        return jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

    def generate_access_token(self, user, custom_claims=None):
        payload = self._base_claims(user, self.access_token_ttl, 'access')
        payload['user'] = {
            'id': user.id,
            'email': user.email,
            'first_name': user.first_name,
            'last_name': user.last_name,
            'email_verified': user.has_verified_email(),
            'is_active': user.is_active,
        }
        if custom_claims:
            payload.update(custom_claims)
        return self._encode(payload)

    def generate_refresh_token(self, user, ip_address=None, user_agent=None):
        payload = self._base_claims(user, self.refresh_token_ttl, 'refresh')
        token = self._encode(payload)

        self.cache.set(self._refresh_key(user.id, payload['jti']), True, ttl=self.refresh_token_ttl)
        db.session.add(JWTRefreshToken(
            user_id=user.id,
            jti=payload['jti'],
            token_hash=hashlib.sha256(token.encode('utf-8')).hexdigest(),
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=datetime.utcfromtimestamp(payload['exp']),
        ))
        db.session.commit()
        return token

    def generate_token_pair(self, user, ip_address=None, user_agent=None, custom_claims=None):
        return {
            'access_token': self.generate_access_token(user, custom_claims),
            'refresh_token': self.generate_refresh_token(user, ip_address, user_agent),
            'token_type': 'Bearer',
            'expires_in': self.access_token_ttl,
            'refresh_expires_in': self.refresh_token_ttl,
        }

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _decode(self, token, verify_exp=True):
        return jwt.decode(
            token,
            self.secret_key,
            algorithms=[self.algorithm],
            audience=self.audience,
            issuer=self.issuer,
            options={'require': list(REQUIRED_CLAIMS), 'verify_exp': verify_exp},
        )

    def validate_token(self, token):
        """Return the decoded claims, or None for any invalid/revoked token"""
        try:
            claims = self._decode(token)
        except ExpiredSignatureError:
            logger.info("jwt_invalid reason=expired")
            return None
        except (InvalidSignatureError, ImmatureSignatureError) as e:
            logger.warning(f"jwt_invalid reason={type(e).__name__}")
            return None
        except InvalidTokenError as e:
            logger.warning(f"jwt_invalid reason=invalid error={e}")
            return None

        if self._is_blacklisted(claims):
            logger.info(f"jwt_invalid reason=blacklisted jti={claims['jti']}")
            return None
        return claims

    def _is_blacklisted(self, claims):
        if self.cache.has(f"jwt_blacklist:{claims['jti']}"):
            return True
        invalidated_at = self.cache.get(f"user_token_invalidate:{claims['sub']}")
        return bool(invalidated_at and claims['iat'] < invalidated_at)

    def get_user_from_token(self, token):
        claims = self.validate_token(token)
        if not claims or claims.get('typ') != 'access':
            return None
        return db.session.get(User, int(claims['sub']))

    @staticmethod
    def extract_token_from_header(auth_header):
        if not auth_header or not auth_header.startswith('Bearer '):
            return None
        token = auth_header[7:].strip()
        return token or None

    def get_token_info(self, token):
        claims = self.validate_token(token)
        if not claims:
            return None
        return {
            'jti': claims.get('jti'),
            'sub': claims.get('sub'),
            'typ': claims.get('typ'),
            'iat': claims.get('iat'),
            'exp': claims.get('exp'),
            'expires_at': datetime.utcfromtimestamp(claims['exp']).isoformat() + 'Z',
            'is_expired': claims['exp'] < time.time(),
        }

    # ------------------------------------------------------------------
    # Refresh and revocation
    # ------------------------------------------------------------------

    @staticmethod
    def _refresh_key(user_id, jti):
        return f"refresh_token:{user_id}:{jti}"

    def refresh_access_token(self, refresh_token):
        claims = self.validate_token(refresh_token)
        if not claims or claims.get('typ') != 'refresh':
            return None

        user_id = int(claims['sub'])
        if not self.cache.has(self._refresh_key(user_id, claims['jti'])):
            return None

        user = db.session.get(User, user_id)
        if not user or not user.is_active:
            return None

        stored = JWTRefreshToken.query.filter_by(jti=claims['jti']).first()
        if stored:
            if stored.is_revoked:
                return None
            stored.mark_used()
            db.session.commit()

        logger.info(f"jwt_refreshed user_id={user_id} jti={claims['jti']}")
        return {
            'access_token': self.generate_access_token(user),
            'token_type': 'Bearer',
            'expires_in': self.access_token_ttl,
        }

    def blacklist_token(self, token):
        try:
            claims = self._decode(token, verify_exp=False)
        except InvalidTokenError as e:
            logger.error(f"jwt_blacklist_failed error={e}")
            return False

        ttl = max(int(claims['exp'] - time.time()), 1)
        self.cache.set(f"jwt_blacklist:{claims['jti']}", True, ttl=ttl)
        logger.info(f"jwt_blacklisted jti={claims['jti']}")
        return True

    def blacklist_all_user_tokens(self, user_id):
        self.cache.set(f"user_token_invalidate:{user_id}", time.time(), ttl=self.refresh_token_ttl)
        revoked = self.revoke_all_refresh_tokens(user_id)
        logger.info(f"jwt_blacklisted_all user_id={user_id} refresh_revoked={revoked}")
        return revoked

    def revoke_refresh_token(self, user_id, jti):
        self.cache.delete(self._refresh_key(user_id, jti))
        stored = JWTRefreshToken.query.filter_by(user_id=user_id, jti=jti).first()
        if stored and not stored.is_revoked:
            stored.revoke()
            db.session.commit()
            return True
        return False

    def revoke_all_refresh_tokens(self, user_id):
        tokens = JWTRefreshToken.query.filter_by(user_id=user_id, is_revoked=False).all()
        for stored in tokens:
            self.cache.delete(self._refresh_key(user_id, stored.jti))
            stored.revoke()
        db.session.commit()
        return len(tokens)

    def peek_user_id(self, token):
        """User id from an access token without raising, for rate-limit keys"""
        claims = self.validate_token(token)
        if not claims or claims.get('typ') != 'access':
            return None
        return claims['sub']
