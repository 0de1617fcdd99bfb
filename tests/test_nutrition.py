"""
Nutrition and body-metric calculations
"""
from datetime import date
from types import SimpleNamespace

import pytest

import nutrition


def food(**fields):
    defaults = {
        'name': 'Oats',
        'calories_per_100g': 389, 'protein_per_100g': 16.9, 'carbs_per_100g': 66.3,
        'fat_per_100g': 6.9, 'fiber_per_100g': 10.6, 'sugar_per_100g': 0.99, 'sodium_per_100g': 2,
        'serving_size': 40, 'serving_unit': 'g',
    }
    defaults.update(fields)
    item = SimpleNamespace(**defaults)
    item.common_serving_grams = lambda: nutrition.common_serving_grams(item.serving_size, item.serving_unit)
    return item


def test_calculate_metrics_male():
    metrics = nutrition.calculate_metrics(80, 180, 30, 'male', 'moderately_active', 'weight_loss')

    # 10*80 + 6.25*180 - 5*30 + 5
    assert metrics['bmr'] == 1780
    assert metrics['tdee'] == 2759
    assert metrics['target_calories'] == 2259


def test_calculate_metrics_female_defaults_to_sedentary():
    metrics = nutrition.calculate_metrics(60, 165, 40, 'female')

    assert metrics['bmr'] == pytest.approx(1270.25)
    assert metrics['tdee'] == pytest.approx(1524.3)
    assert metrics['target_calories'] == 1524


def test_calculate_metrics_missing_inputs():
    assert nutrition.calculate_metrics(None, 180, 30, 'male') is None
    assert nutrition.calculate_metrics(80, 180, None, 'male') is None
    assert nutrition.calculate_metrics(80, 180, 30, None) is None


def test_calculate_bmi():
    assert nutrition.calculate_bmi(180, 81) == 25.0
    assert nutrition.calculate_bmi(None, 81) is None


@pytest.mark.parametrize('quantity,unit,expected', [
    (150, 'g', 150),
    (0.5, 'kg', 500),
    (2, 'tbsp', 30),
    (1, 'cup', 240),
    (2, 'oz', 56.7),
    (2, 'serving', 80),
    (3, 'piece', 3),
])
def test_convert_to_grams(quantity, unit, expected):
    assert nutrition.convert_to_grams(quantity, unit, food()) == pytest.approx(expected)


def test_serving_without_definition_falls_back_to_grams():
    assert nutrition.convert_to_grams(2, 'serving', food(serving_size=None)) == 2


def test_nutrition_for_serving():
    values = nutrition.nutrition_for_serving(food(), 50)

    assert values['serving_size_g'] == 50
    assert values['calories'] == 194.5
    assert values['protein_g'] == 8.45
    assert values['sodium_mg'] == 1


def test_macro_breakdown():
    assert nutrition.macro_breakdown(400, 25, 50, 10) == {
        'protein_percentage': 25.0,
        'carbs_percentage': 50.0,
        'fat_percentage': 22.5,
    }
    assert nutrition.macro_breakdown(0, 10, 10, 10)['protein_percentage'] == 0


def test_sum_totals_and_averages():
    logs = [
        SimpleNamespace(calories=300, protein=20, carbs=30, fat=10, fiber=5, sugar=3, sodium=100, meal_type='breakfast'),
        SimpleNamespace(calories=500, protein=30, carbs=50, fat=20, fiber=None, sugar=7, sodium=200, meal_type='dinner'),
    ]

    totals = nutrition.sum_totals(logs)
    assert totals['calories'] == 800
    assert totals['fiber'] == 5

    averages = nutrition.period_averages(totals, 4)
    assert averages['calories_per_day'] == 200

    by_meal = nutrition.meal_type_totals(logs)
    assert by_meal['dinner']['calories'] == 500
    assert by_meal['lunch']['calories'] == 0


@pytest.mark.parametrize('values,trend', [
    ([80, 78], 'decreasing'),
    ([80, 82], 'increasing'),
    ([80, 80.5], 'stable'),
    ([80], 'insufficient_data'),
])
def test_calculate_trend(values, trend):
    points = [(date(2024, 1, i + 1), value) for i, value in enumerate(values)]
    assert nutrition.calculate_trend(points)['trend'] == trend


def test_trend_details_and_message():
    result = nutrition.calculate_trend([(date(2024, 1, 1), 80), (date(2024, 1, 31), 76)])

    assert result['percentage_change'] == -5.0
    assert result['absolute_change'] == -4
    assert result['first_date'] == '2024-01-01'
    assert 'decreased by 5.0%' in nutrition.weight_trend_message(result)


def test_profile_completion():
    user = SimpleNamespace(first_name='A', last_name='B', email='a@b.co', date_of_birth=None, gender='',
                           height_cm=170, current_weight_kg=None, activity_level=None, primary_goal=None,
                           dietary_preference=None)
    assert nutrition.profile_completion(user) == 40


@pytest.mark.parametrize('preference,fields,expected', [
    ('keto', {'carbs_per_100g': 4}, True),
    ('keto', {'carbs_per_100g': 20}, False),
    ('diabetic_friendly', {'sugar_per_100g': 12}, False),
    ('vegan', {'name': 'Whole egg'}, False),
    ('vegan', {'name': 'Lentils'}, True),
    ('mediterranean', {}, True),
])
def test_is_suitable_for_diet(preference, fields, expected):
    assert nutrition.is_suitable_for_diet(food(**fields), preference) is expected
