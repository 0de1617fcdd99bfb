"""
Food catalogue and food log endpoints
"""
from datetime import date, datetime, timedelta

import pytest

from models import db, Food, FoodLog


@pytest.fixture
def api(client, jwt_headers):
    def call(method, path, payload=None, **kwargs):
        return client.open(path, method=method, headers=jwt_headers, json=payload, **kwargs)
    return call


@pytest.fixture
def chicken(food_factory):
    return food_factory()


def today_at(hour):
    return datetime.combine(date.today(), datetime.min.time()).replace(hour=hour).isoformat()


# ---------------------------------------------------------------------------
# Foods
# ---------------------------------------------------------------------------

def test_search_matches_name_brand_and_description(api, food_factory):
    food_factory(name='Greek Yogurt', brand_name='Fage', category='Dairy', allergens=['milk'])
    food_factory(name='Plain Skyr', description='Icelandic yogurt', category='Dairy')
    food_factory(name='Apple', category='Fruit', calories_per_100g=52, protein_per_100g=0.3)

    data = api('GET', '/api/foods/search', query_string={'query': 'yogurt'}).get_json()

    assert {f['name'] for f in data['foods']} == {'Greek Yogurt', 'Plain Skyr'}
    assert data['pagination']['total'] == 2


def test_search_nutrient_and_category_filters(api, food_factory):
    food_factory(name='Chicken Breast')
    food_factory(name='Chicken Nuggets', calories_per_100g=296, protein_per_100g=15, is_verified=False)

    data = api('GET', '/api/foods/search', query_string={'query': 'chicken', 'max_calories': 200}).get_json()
    assert [f['name'] for f in data['foods']] == ['Chicken Breast']

    data = api('GET', '/api/foods/search', query_string={'query': 'chicken', 'verified_only': 'true'}).get_json()
    assert [f['name'] for f in data['foods']] == ['Chicken Breast']

    data = api('GET', '/api/foods/search', query_string={'query': 'chicken', 'category': 'Snacks'}).get_json()
    assert data['foods'] == []


def test_search_allergen_and_diet_filters(api, food_factory):
    food_factory(name='Peanut Bar', allergens=['peanuts'], carbs_per_100g=40)
    food_factory(name='Almond Bar', allergens=['tree_nuts'], carbs_per_100g=4)
    food_factory(name='Egg Bar', carbs_per_100g=3)

    data = api('GET', '/api/foods/search', query_string={'query': 'bar', 'allergen_free': 'Peanuts'}).get_json()
    assert {f['name'] for f in data['foods']} == {'Almond Bar', 'Egg Bar'}

    data = api('GET', '/api/foods/search', query_string={'query': 'bar', 'dietary_preference': 'keto'}).get_json()
    assert {f['name'] for f in data['foods']} == {'Almond Bar', 'Egg Bar'}

    data = api('GET', '/api/foods/search', query_string={'query': 'bar', 'dietary_preference': 'vegan',
                                                         'allergen_free': 'tree_nuts'}).get_json()
    assert [f['name'] for f in data['foods']] == ['Peanut Bar']
    assert data['pagination']['total'] == 1


def test_search_pagination(api, food_factory):
    for i in range(5):
        food_factory(name=f'Rice {i}')

    data = api('GET', '/api/foods/search', query_string={'query': 'rice', 'per_page': 2, 'page': 3}).get_json()

    assert len(data['foods']) == 1
    assert data['pagination'] == {
        'page': 3, 'per_page': 2, 'total': 5, 'pages': 3, 'has_next': False, 'has_prev': True,
    }


def test_search_validation(api):
    assert api('GET', '/api/foods/search', query_string={'query': 'a'}).status_code == 422
    assert api('GET', '/api/foods/search', query_string={'query': 'rice', 'per_page': 500}).status_code == 422


def test_get_food_counts_usage(api, chicken):
    response = api('GET', f'/api/foods/{chicken.id}')

    assert response.status_code == 200
    data = response.get_json()['food']
    assert data['usage_count'] == 1
    assert data['per_serving']['calories'] == 165
    assert data['macro_distribution']['protein'] == pytest.approx(75.2, abs=0.1)

    assert api('GET', '/api/foods/9999').status_code == 404


def test_popular_and_categories(api, food_factory):
    food_factory(name='Banana', category='Fruit', usage_count=10)
    food_factory(name='Apple', category='Fruit', usage_count=3)
    food_factory(name='Tofu', category='Protein', usage_count=7)

    popular = api('GET', '/api/foods/popular', query_string={'limit': 2}).get_json()['foods']
    assert [f['name'] for f in popular] == ['Banana', 'Tofu']

    categories = api('GET', '/api/foods/categories').get_json()['categories']
    assert categories == [{'category': 'Fruit', 'count': 2}, {'category': 'Protein', 'count': 1}]


def test_create_food_is_unverified_and_owned(api, user):
    response = api('POST', '/api/foods', {
        'name': 'Grandma Granola',
        'calories_per_100g': 450,
        'protein_per_100g': 10,
        'allergens': ['oats'],
    })

    assert response.status_code == 201
    food = response.get_json()['food']
    assert food['is_verified'] is False
    assert food['source'] == 'user_created'
    assert food['created_by'] == user.id


def test_create_food_validation(api):
    response = api('POST', '/api/foods', {'name': '', 'calories_per_100g': 1200})
    assert response.status_code == 422
    assert set(response.get_json()['errors']) >= {'name', 'calories_per_100g'}


def test_update_food_only_by_creator(api, user, chicken):
    response = api('PUT', f'/api/foods/{chicken.id}', {'name': 'Hacked'})
    assert response.status_code == 403
    assert response.get_json()['code'] == 'FORBIDDEN'

    chicken.created_by = user.id
    db.session.commit()
    response = api('PUT', f'/api/foods/{chicken.id}', {'name': 'Grilled Chicken', 'fat_per_100g': 4})
    assert response.status_code == 200
    assert response.get_json()['food']['name'] == 'Grilled Chicken'


def test_update_food_rejects_clearing_required_fields(api, user, chicken):
    chicken.created_by = user.id
    db.session.commit()

    response = api('PUT', f'/api/foods/{chicken.id}', {'calories_per_100g': None, 'name': None})

    assert response.status_code == 422
    assert response.get_json()['errors'] == {
        'name': ['may not be null'],
        'calories_per_100g': ['may not be null'],
    }
    assert db.session.get(Food, chicken.id).calories_per_100g == 165


def test_update_food_can_clear_optional_fields(api, user, food_factory):
    food = food_factory(name='Oat Milk', brand_name='Oatly', created_by=user.id)

    response = api('PUT', f'/api/foods/{food.id}', {'brand_name': None, 'allergens': None})

    assert response.status_code == 200
    assert response.get_json()['food']['brand_name'] is None
    assert response.get_json()['food']['allergens'] == []


def test_admin_can_update_any_food(api, user, chicken):
    user.is_admin = True
    db.session.commit()
    assert api('PUT', f'/api/foods/{chicken.id}', {'category': 'Poultry'}).status_code == 200


# ---------------------------------------------------------------------------
# Food logs
# ---------------------------------------------------------------------------

def test_log_food_snapshots_nutrition(api, chicken):
    response = api('POST', '/api/food-logs', {
        'food_id': chicken.id, 'quantity': 150, 'unit': 'g', 'meal_type': 'lunch',
    })

    assert response.status_code == 201
    log = response.get_json()['food_log']
    assert log['quantity_grams'] == 150
    assert log['calories'] == 247.5
    assert log['protein'] == 46.5

    # Later edits to the food do not change logged values
    chicken.calories_per_100g = 999
    db.session.commit()
    assert db.session.get(FoodLog, log['id']).calories == 247.5


def test_log_food_with_servings(api, food_factory):
    bread = food_factory(name='Bread', calories_per_100g=250, serving_size=30, serving_unit='g')
    log = api('POST', '/api/food-logs', {
        'food_id': bread.id, 'quantity': 2, 'unit': 'serving', 'meal_type': 'breakfast',
    }).get_json()['food_log']

    assert log['quantity_grams'] == 60
    assert log['calories'] == 150


def test_log_food_errors(api):
    assert api('POST', '/api/food-logs', {'food_id': 999, 'quantity': 1, 'meal_type': 'lunch'}).status_code == 404
    response = api('POST', '/api/food-logs', {'food_id': 1, 'quantity': 0, 'meal_type': 'brunch'})
    assert response.status_code == 422
    assert set(response.get_json()['errors']) >= {'quantity', 'meal_type'}


def test_daily_log(api, user, chicken, food_factory):
    rice = food_factory(name='Rice', calories_per_100g=130, protein_per_100g=2.7, carbs_per_100g=28, fat_per_100g=0.3)
    api('POST', '/api/food-logs', {'food_id': chicken.id, 'quantity': 200, 'meal_type': 'dinner',
                                   'consumed_at': today_at(19)})
    api('POST', '/api/food-logs', {'food_id': rice.id, 'quantity': 100, 'meal_type': 'dinner',
                                   'consumed_at': today_at(19)})
    api('POST', '/api/food-logs', {'food_id': rice.id, 'quantity': 100, 'meal_type': 'lunch',
                                   'consumed_at': (datetime.utcnow() - timedelta(days=2)).isoformat()})

    data = api('GET', '/api/food-logs/daily', query_string={'date': date.today().isoformat()}).get_json()

    assert data['log_count'] == 2
    assert len(data['meals']['dinner']) == 2
    assert data['meals']['breakfast'] == []
    assert data['daily_totals']['calories'] == 460
    assert data['target_calories'] == user.daily_calorie_target
    assert data['remaining_calories'] == user.daily_calorie_target - 460
    assert set(data['macro_breakdown']) == {'protein_percentage', 'carbs_percentage', 'fat_percentage'}

    same = api('GET', f'/api/food-logs/daily/{date.today().isoformat()}').get_json()
    assert same['daily_totals'] == data['daily_totals']


def test_daily_log_bad_date(api):
    response = api('GET', '/api/food-logs/daily/not-a-date')
    assert response.status_code == 422
    assert 'date' in response.get_json()['errors']


def test_update_food_log_recalculates(api, chicken):
    log_id = api('POST', '/api/food-logs', {'food_id': chicken.id, 'quantity': 100, 'meal_type': 'lunch'}).get_json()['food_log']['id']

    response = api('PUT', f'/api/food-logs/{log_id}', {'quantity': 2, 'unit': 'serving', 'notes': 'seconds'})

    assert response.status_code == 200
    log = response.get_json()['food_log']
    assert log['quantity_grams'] == 200
    assert log['calories'] == 330
    assert log['notes'] == 'seconds'

    response = api('PUT', f'/api/food-logs/{log_id}', {'meal_type': 'dinner'})
    assert response.get_json()['food_log']['calories'] == 330


def test_food_log_ownership(api, chicken, user_factory):
    stranger = user_factory(email='stranger@example.com')
    foreign = FoodLog(user_id=stranger.id, food_id=chicken.id, food_name=chicken.name, quantity=100, unit='g',
                      quantity_grams=100, meal_type='lunch', calories=165)
    db.session.add(foreign)
    db.session.commit()

    assert api('PUT', f'/api/food-logs/{foreign.id}', {'quantity': 1}).status_code == 403
    assert api('DELETE', f'/api/food-logs/{foreign.id}').status_code == 403
    assert api('DELETE', '/api/food-logs/9999').status_code == 404


def test_delete_food_log(api, chicken):
    log_id = api('POST', '/api/food-logs', {'food_id': chicken.id, 'quantity': 100, 'meal_type': 'snack'}).get_json()['food_log']['id']

    assert api('DELETE', f'/api/food-logs/{log_id}').status_code == 200
    assert db.session.get(FoodLog, log_id) is None


def test_summary_includes_whole_end_day(api, chicken):
    start = date.today() - timedelta(days=2)
    for days_back, hour in ((2, 8), (1, 12), (0, 23)):
        consumed = datetime.combine(date.today() - timedelta(days=days_back), datetime.min.time()).replace(hour=hour)
        api('POST', '/api/food-logs', {'food_id': chicken.id, 'quantity': 100, 'meal_type': 'lunch',
                                       'consumed_at': consumed.isoformat()})

    data = api('GET', '/api/food-logs/summary', query_string={
        'start_date': start.isoformat(), 'end_date': date.today().isoformat(),
    }).get_json()

    assert data['period']['days'] == 3
    assert data['log_count'] == 3
    assert data['totals']['calories'] == 495
    assert data['averages']['calories_per_day'] == 165
    assert data['by_meal_type']['lunch']['calories'] == 495


def test_summary_rejects_reversed_range(api):
    response = api('GET', '/api/food-logs/summary', query_string={
        'start_date': date.today().isoformat(),
        'end_date': (date.today() - timedelta(days=1)).isoformat(),
    })
    assert response.status_code == 422


def test_foods_require_auth(client):
    assert client.get('/api/foods/popular').status_code == 401
    assert client.post('/api/food-logs', json={}).status_code == 401
