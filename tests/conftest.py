"""
Test configuration for NutriTrack backend tests
"""
import os

# Engines are built when the app module is imported, so the environment has to be in place first
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['CACHE_BACKEND'] = 'memory'
os.environ['RATELIMIT_STORAGE_URI'] = 'memory://'
os.environ.setdefault('SECRET_KEY', 'nutritrack-test-secret')
os.environ.pop('MAILGUN_API_KEY', None)
os.environ.pop('MAILGUN_DOMAIN', None)

from datetime import datetime, date

import pytest

from app import app, db, limiter, cache, ph
from models import User, Food
from rate_limit import login_rate_limiter

TEST_PASSWORD = 'Str0ng!Passw0rd'


@pytest.fixture
def test_app():
    """App bound to a fresh in-memory database with limiter and caches reset"""
    app.config['TESTING'] = True
    limiter.reset()
    cache.clear()
    login_rate_limiter.reset()

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(test_app):
    """Create test client"""
    return test_app.test_client()


@pytest.fixture
def user_factory(test_app):
    """Create users directly in the database; verified and active unless told otherwise"""
    counter = {'n': 0}

    def make_user(email=None, password=TEST_PASSWORD, verified=True, **fields):
        counter['n'] += 1
        defaults = {
            'first_name': 'Test',
            'last_name': 'User',
            'date_of_birth': date(1990, 5, 17),
            'gender': 'female',
            'height_cm': 165.0,
            'current_weight_kg': 70.0,
            'activity_level': 'moderately_active',
            'primary_goal': 'weight_loss',
        }
        defaults.update(fields)
        user = User(
            email=email or f"user{counter['n']}@example.com",
            password_hash=ph.hash(password),
            email_verified_at=datetime.utcnow() if verified else None,
            **defaults
        )
        user.recalculate_metrics()
        db.session.add(user)
        db.session.commit()
        return user

    return make_user


@pytest.fixture
def user(user_factory):
    return user_factory(email='jane@example.com')


def login(client, email, password=TEST_PASSWORD, **extra):
    return client.post('/api/auth/login', json={'email': email, 'password': password, **extra})


@pytest.fixture
def auth_client(client, user):
    """Client holding a cookie session and sending its CSRF token on every request"""
    response = login(client, user.email)
    assert response.status_code == 200

    csrf = client.get('/api/auth/csrf').get_json()['csrf']
    client.environ_base['HTTP_X_CSRF_TOKEN'] = csrf
    return client


@pytest.fixture
def jwt_tokens(client, user):
    response = client.post('/api/auth/jwt/login', json={'email': user.email, 'password': TEST_PASSWORD})
    assert response.status_code == 200
    return response.get_json()


@pytest.fixture
def jwt_headers(jwt_tokens):
    return {'Authorization': f"Bearer {jwt_tokens['access_token']}"}


@pytest.fixture
def food_factory(test_app):
    def make_food(**fields):
        defaults = {
            'name': 'Chicken Breast',
            'category': 'Protein',
            'calories_per_100g': 165,
            'protein_per_100g': 31,
            'carbs_per_100g': 0,
            'fat_per_100g': 3.6,
            'serving_size': 100,
            'serving_unit': 'g',
            'is_verified': True,
            'source': 'usda',
        }
        defaults.update(fields)
        food = Food(**defaults)
        db.session.add(food)
        db.session.commit()
        return food

    return make_food
