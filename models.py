"""
NutriTrack database models
Flask-SQLAlchemy models shared by app.py and the helper modules
"""

import hashlib
import secrets
from datetime import datetime, timedelta, date

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import or_, and_, func

import nutrition

db = SQLAlchemy()


def _iso(value):
    return value.isoformat() if value else None


# ============================================================================
# USERS
# ============================================================================

class User(db.Model):
    """Account, profile and computed nutrition targets"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    first_name = db.Column(db.String(100))
    last_name = db.Column(db.String(100))
    date_of_birth = db.Column(db.Date)
    gender = db.Column(db.String(20))
    height_cm = db.Column(db.Float)
    current_weight_kg = db.Column(db.Float)
    target_weight_kg = db.Column(db.Float)
    activity_level = db.Column(db.String(30))
    primary_goal = db.Column(db.String(30))
    dietary_preference = db.Column(db.String(30))
    timezone = db.Column(db.String(64), default='UTC')

    # Calculated on profile changes
    bmr = db.Column(db.Float)
    tdee = db.Column(db.Float)
    daily_calorie_target = db.Column(db.Integer)

    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    email_verified_at = db.Column(db.DateTime)
    last_login_at = db.Column(db.DateTime)
    last_login_ip = db.Column(db.String(45))
    last_activity_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    sessions = db.relationship('UserSession', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    def has_verified_email(self):
        return self.email_verified_at is not None

    @property
    def age(self):
        if not self.date_of_birth:
            return None
        today = date.today()
        dob = self.date_of_birth
        return today.year - dob.year - ((today.month, today.day) < (dob.month, dob.day))

    @property
    def bmi(self):
        return nutrition.calculate_bmi(self.height_cm, self.current_weight_kg)

    def recalculate_metrics(self):
        """Refresh bmr, tdee and daily_calorie_target from the profile"""
        metrics = nutrition.calculate_metrics(
            weight_kg=self.current_weight_kg,
            height_cm=self.height_cm,
            age=self.age,
            gender=self.gender,
            activity_level=self.activity_level,
            primary_goal=self.primary_goal,
        )
        if metrics is None:
            return None
        self.bmr = metrics['bmr']
        self.tdee = metrics['tdee']
        self.daily_calorie_target = metrics['target_calories']
        return metrics

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'first_name': self.first_name,
            'last_name': self.last_name,
            'date_of_birth': _iso(self.date_of_birth),
            'gender': self.gender,
            'height_cm': self.height_cm,
            'current_weight_kg': self.current_weight_kg,
            'target_weight_kg': self.target_weight_kg,
            'activity_level': self.activity_level,
            'primary_goal': self.primary_goal,
            'dietary_preference': self.dietary_preference,
            'timezone': self.timezone,
            'bmr': self.bmr,
            'tdee': self.tdee,
            'daily_calorie_target': self.daily_calorie_target,
            'is_active': self.is_active,
            'is_admin': self.is_admin,
            'email_verified': self.has_verified_email(),
            'last_login_at': _iso(self.last_login_at),
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


# ============================================================================
# SESSIONS AND AUTH RECORDS
# ============================================================================

class UserSession(db.Model):
    """Tracked login session with device and security metadata"""
    __tablename__ = 'user_sessions'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    session_id = db.Column(db.String(64), unique=True, nullable=False, index=True)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.Text)
    device_fingerprint = db.Column(db.String(64))
    location_info = db.Column(db.JSON)
    is_mobile = db.Column(db.Boolean, default=False, nullable=False)
    remember_me = db.Column(db.Boolean, default=False, nullable=False)
    last_activity = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    expires_at = db.Column(db.DateTime, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False, index=True)
    invalidated_at = db.Column(db.DateTime)
    invalidation_reason = db.Column(db.String(50))
    rotation_count = db.Column(db.Integer, default=0, nullable=False)
    rotated_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def is_expired(self):
        return datetime.utcnow() > self.expires_at

    def location_string(self):
        if not self.location_info:
            return None
        return f"{self.location_info.get('city', 'Unknown')}, {self.location_info.get('country', 'Unknown')}"

    def device_type(self):
        return 'Mobile' if self.is_mobile else 'Desktop'

    def to_dict(self, current_session_id=None):
        return {
            'id': self.id,
            'session_id': self.session_id,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'device_type': self.device_type(),
            'location': self.location_string(),
            'last_activity': _iso(self.last_activity),
            'expires_at': _iso(self.expires_at),
            'is_active': self.is_active,
            'rotation_count': self.rotation_count,
            'remember_me': self.remember_me,
            'created_at': _iso(self.created_at),
            'is_current': current_session_id is not None and self.session_id == current_session_id,
        }


class LoginAttempt(db.Model):
    """Audit row for every login attempt"""
    __tablename__ = 'login_attempts'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    email = db.Column(db.String(255), index=True)
    ip_address = db.Column(db.String(45), index=True)
    user_agent = db.Column(db.Text)
    successful = db.Column(db.Boolean, default=False, nullable=False)
    failure_reason = db.Column(db.String(50))
    request_data = db.Column(db.JSON)
    attempted_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    @classmethod
    def record(cls, email, ip_address, user_agent, successful, failure_reason=None, request_data=None):
        attempt = cls(
            email=email,
            ip_address=ip_address,
            user_agent=user_agent,
            successful=successful,
            failure_reason=failure_reason,
            request_data=request_data,
            attempted_at=datetime.utcnow(),
        )
        db.session.add(attempt)
        return attempt

    @classmethod
    def recent_failed_attempts(cls, email, minutes=15):
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        return cls.query.filter(
            cls.email == email,
            cls.successful.is_(False),
            cls.attempted_at >= cutoff,
        ).count()

    @classmethod
    def recent_failed_attempts_by_ip(cls, ip_address, minutes=15):
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        return cls.query.filter(
            cls.ip_address == ip_address,
            cls.successful.is_(False),
            cls.attempted_at >= cutoff,
        ).count()

    @classmethod
    def cleanup(cls, days=30):
        cutoff = datetime.utcnow() - timedelta(days=days)
        count = cls.query.filter(cls.attempted_at < cutoff).delete(synchronize_session=False)
        db.session.commit()
        return count


class PasswordResetToken(db.Model):
    """Single-use password reset token"""
    __tablename__ = 'password_reset_tokens'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    token = db.Column(db.String(64), unique=True, nullable=False, index=True)
    ip_address = db.Column(db.String(45), index=True)
    user_agent = db.Column(db.Text)
    used = db.Column(db.Boolean, default=False, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    @staticmethod
    def generate_secure_token():
        return hashlib.sha256(secrets.token_bytes(64)).hexdigest()

    @classmethod
    def create_token(cls, email, ip_address, user_agent=None, expiration_minutes=60):
        now = datetime.utcnow()
        # Open tokens for the same email stop working once a new one is issued
        cls.query.filter(
            cls.email == email,
            cls.used.is_(False),
            cls.expires_at > now,
        ).update({'used': True, 'used_at': now}, synchronize_session=False)

        reset_token = cls(
            email=email,
            token=cls.generate_secure_token(),
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=now + timedelta(minutes=expiration_minutes),
            created_at=now,
        )
        db.session.add(reset_token)
        db.session.commit()
        return reset_token

    @classmethod
    def find_valid(cls, token):
        return cls.query.filter(
            cls.token == token,
            cls.used.is_(False),
            cls.expires_at > datetime.utcnow(),
        ).first()

    @classmethod
    def verify_token(cls, token):
        """Return the token row and mark it used, or None"""
        reset_token = cls.find_valid(token)
        if reset_token:
            reset_token.used = True
            reset_token.used_at = datetime.utcnow()
        return reset_token

    @classmethod
    def has_recent_request(cls, email, minutes=15):
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        return cls.query.filter(cls.email == email, cls.created_at >= cutoff).first() is not None

    @classmethod
    def recent_attempts(cls, email, minutes=60):
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        return cls.query.filter(cls.email == email, cls.created_at >= cutoff).count()

    @classmethod
    def recent_attempts_by_ip(cls, ip_address, minutes=60):
        cutoff = datetime.utcnow() - timedelta(minutes=minutes)
        return cls.query.filter(cls.ip_address == ip_address, cls.created_at >= cutoff).count()

    @classmethod
    def cleanup(cls):
        now = datetime.utcnow()
        # Kept for 24 hours for audit
        count = cls.query.filter(
            or_(cls.expires_at < now, cls.used.is_(True)),
            cls.created_at < now - timedelta(hours=24),
        ).delete(synchronize_session=False)
        db.session.commit()
        return count


class JWTRefreshToken(db.Model):
    """Issued refresh token, stored by hash"""
    __tablename__ = 'jwt_refresh_tokens'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    jti = db.Column(db.String(64), unique=True, nullable=False, index=True)
    token_hash = db.Column(db.String(64), nullable=False)
    ip_address = db.Column(db.String(45))
    user_agent = db.Column(db.Text)
    is_revoked = db.Column(db.Boolean, default=False, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    last_used_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def is_valid(self):
        return not self.is_revoked and self.expires_at > datetime.utcnow()

    def revoke(self):
        self.is_revoked = True

    def mark_used(self):
        self.last_used_at = datetime.utcnow()

    @classmethod
    def active_for_user(cls, user_id):
        return cls.query.filter(
            cls.user_id == user_id,
            cls.is_revoked.is_(False),
            cls.expires_at > datetime.utcnow(),
        ).order_by(cls.created_at.desc()).all()

    @classmethod
    def cleanup(cls):
        now = datetime.utcnow()
        count = cls.query.filter(
            or_(cls.expires_at < now, cls.is_revoked.is_(True)),
            cls.created_at < now - timedelta(days=30),
        ).delete(synchronize_session=False)
        db.session.commit()
        return count

    def to_dict(self):
        return {
            'id': self.id,
            'jti': self.jti,
            'ip_address': self.ip_address,
            'user_agent': self.user_agent,
            'created_at': _iso(self.created_at),
            'expires_at': _iso(self.expires_at),
            'last_used_at': _iso(self.last_used_at),
        }


# ============================================================================
# HEALTH METRICS
# ============================================================================

class HealthMetric(db.Model):
    """Body measurement or goal value recorded by the user"""
    __tablename__ = 'health_metrics'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'metric_type', 'recorded_date', 'is_goal', name='unique_daily_metric'),
    )

    METRIC_TYPES = {
        'weight': 'Weight',
        'height': 'Height',
        'body_fat': 'Body Fat Percentage',
        'muscle_mass': 'Muscle Mass',
        'bmi': 'BMI',
        'waist_circumference': 'Waist Circumference',
        'hip_circumference': 'Hip Circumference',
        'chest_circumference': 'Chest Circumference',
        'arm_circumference': 'Arm Circumference',
        'thigh_circumference': 'Thigh Circumference',
        'neck_circumference': 'Neck Circumference',
        'blood_pressure_systolic': 'Blood Pressure (Systolic)',
        'blood_pressure_diastolic': 'Blood Pressure (Diastolic)',
        'heart_rate': 'Heart Rate',
        'steps': 'Daily Steps',
        'sleep_hours': 'Sleep Hours',
        'water_intake': 'Water Intake',
    }

    DEFAULT_UNITS = {
        'weight': 'kg',
        'height': 'cm',
        'body_fat': '%',
        'muscle_mass': 'kg',
        'bmi': 'kg/m²',
        'waist_circumference': 'cm',
        'hip_circumference': 'cm',
        'chest_circumference': 'cm',
        'arm_circumference': 'cm',
        'thigh_circumference': 'cm',
        'neck_circumference': 'cm',
        'blood_pressure_systolic': 'mmHg',
        'blood_pressure_diastolic': 'mmHg',
        'heart_rate': 'bpm',
        'steps': 'steps',
        'sleep_hours': 'hours',
        'water_intake': 'ml',
    }

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    metric_type = db.Column(db.String(40), nullable=False, index=True)
    value = db.Column(db.Float, nullable=False)
    unit = db.Column(db.String(20), nullable=False)
    recorded_date = db.Column(db.Date, nullable=False, index=True)
    recorded_time = db.Column(db.Time)
    notes = db.Column(db.Text)
    # "metadata" is reserved on declarative models
    extra_data = db.Column('metadata', db.JSON)
    is_goal = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @classmethod
    def for_user(cls, user_id):
        return cls.query.filter(cls.user_id == user_id)

    @classmethod
    def latest_for_user(cls, user_id, metric_type):
        return cls.for_user(user_id).filter(
            cls.metric_type == metric_type,
            cls.is_goal.is_(False),
        ).order_by(cls.recorded_date.desc(), cls.recorded_time.desc()).first()

    @classmethod
    def history_for_user(cls, user_id, metric_type, days=30):
        since = date.today() - timedelta(days=days)
        return cls.for_user(user_id).filter(
            cls.metric_type == metric_type,
            cls.is_goal.is_(False),
            cls.recorded_date >= since,
        ).order_by(cls.recorded_date.asc(), cls.recorded_time.asc()).all()

    @classmethod
    def calculate_trend(cls, user_id, metric_type, days=30):
        history = cls.history_for_user(user_id, metric_type, days)
        return nutrition.calculate_trend(
            [(metric.recorded_date, metric.value) for metric in history]
        )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'metric_type': self.metric_type,
            'display_name': self.METRIC_TYPES.get(self.metric_type, self.metric_type),
            'value': self.value,
            'unit': self.unit,
            'recorded_date': _iso(self.recorded_date),
            'recorded_time': self.recorded_time.strftime('%H:%M:%S') if self.recorded_time else None,
            'notes': self.notes,
            'metadata': self.extra_data,
            'is_goal': self.is_goal,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }


# ============================================================================
# FOODS AND FOOD LOGS
# ============================================================================

class Food(db.Model):
    """Food with nutrition per 100g"""
    __tablename__ = 'foods'

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    name = db.Column(db.String(255), nullable=False, index=True)
    brand_name = db.Column(db.String(100))
    description = db.Column(db.Text)
    category = db.Column(db.String(100), index=True)
    subcategory = db.Column(db.String(100))
    calories_per_100g = db.Column(db.Float, nullable=False, default=0)
    protein_per_100g = db.Column(db.Float, nullable=False, default=0)
    carbs_per_100g = db.Column(db.Float, nullable=False, default=0)
    fat_per_100g = db.Column(db.Float, nullable=False, default=0)
    fiber_per_100g = db.Column(db.Float, nullable=False, default=0)
    sugar_per_100g = db.Column(db.Float, nullable=False, default=0)
    sodium_per_100g = db.Column(db.Float, nullable=False, default=0)
    serving_size = db.Column(db.Float)
    serving_unit = db.Column(db.String(20))
    barcode = db.Column(db.String(50), index=True)
    allergens = db.Column(db.JSON, default=list)
    source = db.Column(db.String(30), default='user_created')
    is_verified = db.Column(db.Boolean, default=False, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    usage_count = db.Column(db.Integer, default=0, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @classmethod
    def search_query(cls, filters):
        """Build the SQL part of a food search; allergen and diet filters run in Python"""
        query = cls.query
        term = filters.get('query')
        if term:
            like = f'%{term}%'
            query = query.filter(or_(
                cls.name.ilike(like),
                cls.brand_name.ilike(like),
                cls.description.ilike(like),
            ))
        if filters.get('category'):
            query = query.filter(cls.category == filters['category'])
        if filters.get('brand'):
            query = query.filter(cls.brand_name.ilike(f"%{filters['brand']}%"))
        if filters.get('verified_only'):
            query = query.filter(cls.is_verified.is_(True))
        if filters.get('max_calories') is not None:
            query = query.filter(cls.calories_per_100g <= filters['max_calories'])
        if filters.get('min_protein') is not None:
            query = query.filter(cls.protein_per_100g >= filters['min_protein'])
        if filters.get('max_carbs') is not None:
            query = query.filter(cls.carbs_per_100g <= filters['max_carbs'])
        if filters.get('max_fat') is not None:
            query = query.filter(cls.fat_per_100g <= filters['max_fat'])
        return query.order_by(cls.is_verified.desc(), cls.usage_count.desc(), cls.name.asc())

    @classmethod
    def popular(cls, limit=10):
        return cls.query.order_by(cls.usage_count.desc()).limit(limit).all()

    @classmethod
    def categories(cls):
        rows = db.session.query(cls.category, func.count(cls.id)).filter(
            cls.category.isnot(None)
        ).group_by(cls.category).order_by(cls.category).all()
        return [{'category': category, 'count': count} for category, count in rows]

    def contains_allergen(self, allergen):
        return allergen.lower() in [a.lower() for a in (self.allergens or [])]

    def common_serving_grams(self):
        return nutrition.common_serving_grams(self.serving_size, self.serving_unit)

    def nutrition_for_serving(self, grams):
        return nutrition.nutrition_for_serving(self, grams)

    def macro_distribution(self):
        return nutrition.macro_distribution(
            self.calories_per_100g, self.protein_per_100g, self.carbs_per_100g, self.fat_per_100g
        )

    def increment_usage(self):
        self.usage_count = (self.usage_count or 0) + 1

    def to_dict(self, include_macros=False):
        data = {
            'id': self.id,
            'name': self.name,
            'brand_name': self.brand_name,
            'description': self.description,
            'category': self.category,
            'subcategory': self.subcategory,
            'calories_per_100g': self.calories_per_100g,
            'protein_per_100g': self.protein_per_100g,
            'carbs_per_100g': self.carbs_per_100g,
            'fat_per_100g': self.fat_per_100g,
            'fiber_per_100g': self.fiber_per_100g,
            'sugar_per_100g': self.sugar_per_100g,
            'sodium_per_100g': self.sodium_per_100g,
            'serving_size': self.serving_size,
            'serving_unit': self.serving_unit,
            'barcode': self.barcode,
            'allergens': self.allergens or [],
            'source': self.source,
            'is_verified': self.is_verified,
            'created_by': self.created_by,
            'usage_count': self.usage_count,
        }
        if include_macros:
            data['macro_distribution'] = self.macro_distribution()
        return data


class FoodLog(db.Model):
    """Logged food with a nutrition snapshot taken at log time"""
    __tablename__ = 'food_logs'

    MEAL_TYPES = ('breakfast', 'lunch', 'dinner', 'snack')

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    food_id = db.Column(db.Integer, db.ForeignKey('foods.id'), nullable=False)
    food_name = db.Column(db.String(255))
    quantity = db.Column(db.Float, nullable=False)
    unit = db.Column(db.String(20), nullable=False)
    quantity_grams = db.Column(db.Float, nullable=False)
    meal_type = db.Column(db.String(20), nullable=False)
    calories = db.Column(db.Float, default=0)
    protein = db.Column(db.Float, default=0)
    carbs = db.Column(db.Float, default=0)
    fat = db.Column(db.Float, default=0)
    fiber = db.Column(db.Float, default=0)
    sugar = db.Column(db.Float, default=0)
    sodium = db.Column(db.Float, default=0)
    consumed_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    food = db.relationship('Food', backref=db.backref('food_logs', lazy='dynamic'))

    def apply_nutrition(self, grams, values):
        self.quantity_grams = grams
        self.calories = values['calories']
        self.protein = values['protein_g']
        self.carbs = values['carbs_g']
        self.fat = values['fat_g']
        self.fiber = values['fiber_g']
        self.sugar = values['sugar_g']
        self.sodium = values['sodium_mg']

    @classmethod
    def for_user_between(cls, user_id, start, end):
        return cls.query.filter(
            and_(cls.user_id == user_id, cls.consumed_at >= start, cls.consumed_at < end)
        ).order_by(cls.consumed_at.asc()).all()

    def macro_breakdown(self):
        return nutrition.macro_breakdown(self.calories, self.protein, self.carbs, self.fat)

    def to_dict(self, include_food=False):
        data = {
            'id': self.id,
            'user_id': self.user_id,
            'food_id': self.food_id,
            'food_name': self.food_name,
            'quantity': self.quantity,
            'unit': self.unit,
            'quantity_grams': self.quantity_grams,
            'meal_type': self.meal_type,
            'calories': self.calories,
            'protein': self.protein,
            'carbs': self.carbs,
            'fat': self.fat,
            'fiber': self.fiber,
            'sugar': self.sugar,
            'sodium': self.sodium,
            'consumed_at': _iso(self.consumed_at),
            'notes': self.notes,
            'created_at': _iso(self.created_at),
            'updated_at': _iso(self.updated_at),
        }
        if include_food and self.food is not None:
            data['food'] = self.food.to_dict()
        return data
