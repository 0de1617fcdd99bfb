"""
Request validation schemas (pydantic v2)
"""

import re
from datetime import date, datetime, time, timezone
from typing import Optional, List, Literal, Dict, Any

from flask import jsonify
from pydantic import BaseModel, Field, ValidationError, ValidationInfo, field_validator, model_validator, ConfigDict

from models import HealthMetric, FoodLog

NAME_PATTERN = re.compile(r"^[a-zA-Z\s\-'\.]+$")
EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PASSWORD_SPECIALS = '@$!%*?&'

Gender = Literal['male', 'female', 'other', 'prefer_not_to_say']
ActivityLevel = Literal['sedentary', 'lightly_active', 'moderately_active', 'very_active', 'extremely_active']
PrimaryGoal = Literal['weight_loss', 'weight_gain', 'maintenance', 'muscle_gain', 'health_management']
DietaryPreference = Literal[
    'none', 'vegetarian', 'vegan', 'keto', 'paleo', 'mediterranean',
    'low_carb', 'low_fat', 'gluten_free', 'dairy_free', 'diabetic_friendly',
]
MetricType = Literal[tuple(HealthMetric.METRIC_TYPES)]
MealType = Literal[FoodLog.MEAL_TYPES]


def normalize_email(value):
    return (value or '').strip().lower()


def check_name(value):
    if value is None:
        return value
    value = value.strip()
    if not NAME_PATTERN.match(value):
        raise ValueError('may only contain letters, spaces, hyphens, apostrophes and periods')
    return value


def check_email(value):
    value = normalize_email(value)
    if not EMAIL_PATTERN.match(value):
        raise ValueError('must be a valid email address')
    if '+' in value.split('@', 1)[0]:
        raise ValueError('plus addressing is not allowed')
    return value


def check_password_strength(value):
    if not re.search(r'[a-z]', value):
        raise ValueError('must contain a lowercase letter')
    if not re.search(r'[A-Z]', value):
        raise ValueError('must contain an uppercase letter')
    if not re.search(r'\d', value):
        raise ValueError('must contain a digit')
    if not any(ch in PASSWORD_SPECIALS for ch in value):
        raise ValueError(f'must contain one of {PASSWORD_SPECIALS}')
    return value


def check_past_date(value):
    if value is not None and value >= date.today():
        raise ValueError('must be in the past')
    return value


def check_confirmation(value, info: ValidationInfo, field):
    # Skipped when the original field already failed validation
    if field in info.data and value != info.data[field]:
        raise ValueError(f"does not match {field}")
    return value


def format_validation_errors(error: ValidationError) -> Dict[str, List[str]]:
    """Collapse pydantic errors into {field: [messages]}"""
    errors: Dict[str, List[str]] = {}
    for item in error.errors():
        field = '.'.join(str(part) for part in item['loc']) or '__root__'
        message = item['msg']
        if message.startswith('Value error, '):
            message = message[len('Value error, '):]
        errors.setdefault(field, []).append(message)
    return errors


# ============================================================================
# ACCOUNTS AND PROFILE
# ============================================================================

class ProfileFields(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    first_name: Optional[str] = Field(None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(None, min_length=1, max_length=100)
    date_of_birth: Optional[date] = None
    gender: Optional[Gender] = None
    height_cm: Optional[float] = Field(None, ge=50, le=300)
    current_weight_kg: Optional[float] = Field(None, ge=20, le=500)
    target_weight_kg: Optional[float] = Field(None, ge=20, le=500)
    activity_level: Optional[ActivityLevel] = None
    primary_goal: Optional[PrimaryGoal] = None
    dietary_preference: Optional[DietaryPreference] = None
    timezone: Optional[str] = Field(None, max_length=64)

    @field_validator('first_name', 'last_name')
    @classmethod
    def valid_names(cls, value):
        return check_name(value)

    @field_validator('date_of_birth')
    @classmethod
    def past_date_of_birth(cls, value):
        return check_past_date(value)


class RegisterSchema(ProfileFields):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=8, max_length=128)
    password_confirmation: str

    @field_validator('email')
    @classmethod
    def valid_email(cls, value):
        return check_email(value)

    @field_validator('password')
    @classmethod
    def strong_password(cls, value):
        return check_password_strength(value)

    @field_validator('password_confirmation')
    @classmethod
    def passwords_match(cls, value, info: ValidationInfo):
        return check_confirmation(value, info, 'password')


class ProfileUpdateSchema(ProfileFields):
    pass


class LoginSchema(BaseModel):
    model_config = ConfigDict(extra='ignore')

    email: str = Field(..., min_length=1, max_length=255)
    password: str = Field(..., min_length=1)
    remember_me: bool = False

    @field_validator('email')
    @classmethod
    def lowercase_email(cls, value):
        return normalize_email(value)


class ChangePasswordSchema(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8, max_length=128)
    new_password_confirmation: Optional[str] = None

    @field_validator('new_password')
    @classmethod
    def strong_password(cls, value, info: ValidationInfo):
        value = check_password_strength(value)
        if value == info.data.get('current_password'):
            raise ValueError('must differ from the current password')
        return value

    @field_validator('new_password_confirmation')
    @classmethod
    def passwords_match(cls, value, info: ValidationInfo):
        if value is None:
            return value
        return check_confirmation(value, info, 'new_password')


class ForgotPasswordSchema(BaseModel):
    email: str = Field(..., max_length=255)

    @field_validator('email')
    @classmethod
    def valid_email(cls, value):
        value = normalize_email(value)
        if not EMAIL_PATTERN.match(value):
            raise ValueError('must be a valid email address')
        return value


class ResetPasswordSchema(BaseModel):
    token: str = Field(..., min_length=1, max_length=128)
    password: str = Field(..., min_length=8, max_length=128)
    password_confirmation: str

    @field_validator('password')
    @classmethod
    def strong_password(cls, value):
        return check_password_strength(value)

    @field_validator('password_confirmation')
    @classmethod
    def passwords_match(cls, value, info: ValidationInfo):
        return check_confirmation(value, info, 'password')


# ============================================================================
# HEALTH METRICS
# ============================================================================

class HealthMetricSchema(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    metric_type: MetricType
    value: float = Field(..., ge=0)
    unit: Optional[str] = Field(None, max_length=20)
    recorded_date: date = Field(default_factory=date.today)
    recorded_time: Optional[time] = None
    notes: Optional[str] = Field(None, max_length=1000)
    metadata: Optional[Dict[str, Any]] = None
    is_goal: bool = False


class HealthMetricUpdateSchema(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    value: Optional[float] = Field(None, ge=0)
    unit: Optional[str] = Field(None, max_length=20)
    recorded_date: Optional[date] = None
    recorded_time: Optional[time] = None
    notes: Optional[str] = Field(None, max_length=1000)
    metadata: Optional[Dict[str, Any]] = None


class HealthMetricQuerySchema(BaseModel):
    metric_type: Optional[MetricType] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_goal: Optional[bool] = None
    limit: int = Field(100, ge=1, le=500)


class HealthMetricHistorySchema(BaseModel):
    metric_type: MetricType
    days: int = Field(30, ge=1, le=365)


# ============================================================================
# FOODS AND FOOD LOGS
# ============================================================================

class FoodSchema(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=255)
    brand_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    category: Optional[str] = Field(None, max_length=100)
    subcategory: Optional[str] = Field(None, max_length=100)
    calories_per_100g: float = Field(..., ge=0, le=900)
    protein_per_100g: float = Field(0, ge=0, le=100)
    carbs_per_100g: float = Field(0, ge=0, le=100)
    fat_per_100g: float = Field(0, ge=0, le=100)
    fiber_per_100g: float = Field(0, ge=0, le=100)
    sugar_per_100g: float = Field(0, ge=0, le=100)
    sodium_per_100g: float = Field(0, ge=0, le=100000)
    serving_size: Optional[float] = Field(None, gt=0)
    serving_unit: Optional[str] = Field(None, max_length=20)
    barcode: Optional[str] = Field(None, max_length=50)
    allergens: List[str] = Field(default_factory=list)


class FoodUpdateSchema(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    brand_name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    category: Optional[str] = Field(None, max_length=100)
    subcategory: Optional[str] = Field(None, max_length=100)
    calories_per_100g: Optional[float] = Field(None, ge=0, le=900)
    protein_per_100g: Optional[float] = Field(None, ge=0, le=100)
    carbs_per_100g: Optional[float] = Field(None, ge=0, le=100)
    fat_per_100g: Optional[float] = Field(None, ge=0, le=100)
    fiber_per_100g: Optional[float] = Field(None, ge=0, le=100)
    sugar_per_100g: Optional[float] = Field(None, ge=0, le=100)
    sodium_per_100g: Optional[float] = Field(None, ge=0, le=100000)
    serving_size: Optional[float] = Field(None, gt=0)
    serving_unit: Optional[str] = Field(None, max_length=20)
    barcode: Optional[str] = Field(None, max_length=50)
    allergens: Optional[List[str]] = None

    # Fields may be omitted but not cleared
    @field_validator('name', 'calories_per_100g', 'protein_per_100g', 'carbs_per_100g', 'fat_per_100g',
                     'fiber_per_100g', 'sugar_per_100g', 'sodium_per_100g')
    @classmethod
    def not_null(cls, value):
        if value is None:
            raise ValueError('may not be null')
        return value


class FoodSearchSchema(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    query: str = Field(..., min_length=2, max_length=100)
    category: Optional[str] = None
    brand: Optional[str] = None
    verified_only: bool = False
    max_calories: Optional[float] = Field(None, ge=0)
    min_protein: Optional[float] = Field(None, ge=0)
    max_carbs: Optional[float] = Field(None, ge=0)
    max_fat: Optional[float] = Field(None, ge=0)
    allergen_free: Optional[str] = None
    dietary_preference: Optional[DietaryPreference] = None
    page: int = Field(1, ge=1)
    per_page: int = Field(20, ge=1, le=50)

    def allergen_list(self):
        if not self.allergen_free:
            return []
        return [a.strip().lower() for a in self.allergen_free.split(',') if a.strip()]


def _naive_utc(value):
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class FoodLogSchema(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    food_id: int = Field(..., ge=1)
    quantity: float = Field(..., ge=0.1, le=10000)
    unit: str = Field('g', min_length=1, max_length=20)
    meal_type: MealType
    consumed_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('consumed_at')
    @classmethod
    def utc_consumed_at(cls, value):
        return _naive_utc(value)


class FoodLogUpdateSchema(BaseModel):
    model_config = ConfigDict(extra='ignore', str_strip_whitespace=True)

    quantity: Optional[float] = Field(None, ge=0.1, le=10000)
    unit: Optional[str] = Field(None, min_length=1, max_length=20)
    meal_type: Optional[MealType] = None
    consumed_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('consumed_at')
    @classmethod
    def utc_consumed_at(cls, value):
        return _naive_utc(value)


class DateRangeSchema(BaseModel):
    start_date: date
    end_date: date

    @model_validator(mode='after')
    def end_after_start(self):
        if self.end_date < self.start_date:
            raise ValueError('end_date must be on or after start_date')
        return self


def validation_error_response(error: ValidationError):
    return jsonify({
        'ok': False,
        'error': 'Validation failed',
        'code': 'VALIDATION_ERROR',
        'errors': format_validation_errors(error),
    }), 422
