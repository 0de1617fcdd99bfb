"""
Nutrition and body-metric calculations
Pure functions used by the models and the food/profile endpoints
"""

# Mifflin-St Jeor activity multipliers
ACTIVITY_MULTIPLIERS = {
    'sedentary': 1.2,
    'lightly_active': 1.375,
    'moderately_active': 1.55,
    'very_active': 1.725,
    'extremely_active': 1.9,
}

GOAL_ADJUSTMENTS = {
    'weight_loss': -500,
    'weight_gain': 500,
    'muscle_gain': 300,
    'maintenance': 0,
    'health_management': 0,
}

UNIT_TO_GRAMS = {
    'g': 1,
    'kg': 1000,
    'ml': 1,  # 1ml treated as 1g
    'cup': 240,
    'tbsp': 15,
    'tsp': 5,
    'oz': 28.35,
    'lb': 453.59,
}

NUTRIENT_FIELDS = ('calories', 'protein', 'carbs', 'fat', 'fiber', 'sugar', 'sodium')

MEAL_TYPES = ('breakfast', 'lunch', 'dinner', 'snack')

PROFILE_COMPLETION_FIELDS = (
    'first_name', 'last_name', 'email', 'date_of_birth', 'gender',
    'height_cm', 'current_weight_kg', 'activity_level', 'primary_goal',
    'dietary_preference',
)

NON_VEGAN_KEYWORDS = ('meat', 'dairy', 'egg')


def calculate_bmr(weight_kg, height_cm, age, gender):
    bmr = 10 * weight_kg + 6.25 * height_cm - 5 * age
    return bmr + 5 if gender == 'male' else bmr - 161


def calculate_metrics(weight_kg, height_cm, age, gender, activity_level=None, primary_goal=None):
    """
    Calculate BMR, TDEE and the daily calorie target

    Returns:
        dict with bmr, tdee and target_calories, or None when weight,
        height, age or gender is missing
    """
    if not weight_kg or not height_cm or age is None or not gender:
        return None

    bmr = calculate_bmr(weight_kg, height_cm, age, gender)
    tdee = bmr * ACTIVITY_MULTIPLIERS.get(activity_level, ACTIVITY_MULTIPLIERS['sedentary'])
    target = tdee + GOAL_ADJUSTMENTS.get(primary_goal, 0)

    return {
        'bmr': round(bmr, 2),
        'tdee': round(tdee, 2),
        'target_calories': int(round(target)),
    }


def calculate_bmi(height_cm, weight_kg):
    if not height_cm or not weight_kg:
        return None
    height_m = height_cm / 100
    return round(weight_kg / (height_m * height_m), 1)


def common_serving_grams(serving_size, serving_unit):
    """Grams in one serving of a food, or None when it has no serving defined"""
    if not serving_size or not serving_unit:
        return None
    # "piece" servings are stored in grams already
    factor = UNIT_TO_GRAMS.get(serving_unit.lower(), 1)
    return serving_size * factor


def convert_to_grams(quantity, unit, food):
    unit = (unit or '').lower()
    if unit == 'serving':
        serving_grams = food.common_serving_grams()
        if serving_grams:
            return quantity * serving_grams
    return quantity * UNIT_TO_GRAMS.get(unit, 1)


def nutrition_for_serving(food, grams):
    multiplier = grams / 100
    return {
        'serving_size_g': grams,
        'calories': round((food.calories_per_100g or 0) * multiplier, 2),
        'protein_g': round((food.protein_per_100g or 0) * multiplier, 2),
        'carbs_g': round((food.carbs_per_100g or 0) * multiplier, 2),
        'fat_g': round((food.fat_per_100g or 0) * multiplier, 2),
        'fiber_g': round((food.fiber_per_100g or 0) * multiplier, 2),
        'sugar_g': round((food.sugar_per_100g or 0) * multiplier, 2),
        'sodium_mg': round((food.sodium_per_100g or 0) * multiplier, 2),
    }


def sum_totals(logs):
    return {
        field: round(sum((getattr(log, field) or 0) for log in logs), 2)
        for field in NUTRIENT_FIELDS
    }


def period_averages(totals, days):
    days = max(days, 1)
    return {f'{field}_per_day': round(totals[field] / days, 2) for field in NUTRIENT_FIELDS}


def meal_type_totals(logs):
    return {
        meal_type: sum_totals([log for log in logs if log.meal_type == meal_type])
        for meal_type in MEAL_TYPES
    }


def macro_breakdown(calories, protein, carbs, fat):
    """Share of calories from each macro, in percent"""
    if not calories:
        return {'protein_percentage': 0, 'carbs_percentage': 0, 'fat_percentage': 0}
    return {
        'protein_percentage': round(((protein or 0) * 4 / calories) * 100, 1),
        'carbs_percentage': round(((carbs or 0) * 4 / calories) * 100, 1),
        'fat_percentage': round(((fat or 0) * 9 / calories) * 100, 1),
    }


def macro_distribution(calories, protein, carbs, fat):
    protein_cals = (protein or 0) * 4
    carbs_cals = (carbs or 0) * 4
    fat_cals = (fat or 0) * 9
    total = calories or (protein_cals + carbs_cals + fat_cals)
    if not total:
        return {'protein': 0, 'carbs': 0, 'fat': 0}
    return {
        'protein': round(protein_cals / total * 100, 1),
        'carbs': round(carbs_cals / total * 100, 1),
        'fat': round(fat_cals / total * 100, 1),
    }


def calculate_trend(points):
    """
    Trend between the first and last of a series of (date, value) points

    A change of 1% or less either way counts as stable.
    """
    if len(points) < 2:
        return {
            'trend': 'insufficient_data',
            'percentage_change': 0,
            'absolute_change': 0,
        }

    first_date, first_value = points[0]
    last_date, last_value = points[-1]
    absolute_change = last_value - first_value
    percentage_change = (absolute_change / first_value) * 100 if first_value else 0

    trend = 'stable'
    if abs(percentage_change) > 1:
        trend = 'increasing' if percentage_change > 0 else 'decreasing'

    return {
        'trend': trend,
        'percentage_change': round(percentage_change, 2),
        'absolute_change': round(absolute_change, 2),
        'first_value': first_value,
        'last_value': last_value,
        'first_date': first_date.isoformat() if first_date else None,
        'last_date': last_date.isoformat() if last_date else None,
    }


def weight_trend_message(trend):
    change = abs(trend.get('percentage_change', 0))
    if trend['trend'] == 'increasing':
        return f"Your weight has increased by {change}% ({trend['absolute_change']} kg) over the last 30 days"
    if trend['trend'] == 'decreasing':
        return f"Your weight has decreased by {change}% ({trend['absolute_change']} kg) over the last 30 days"
    if trend['trend'] == 'stable':
        return "Your weight has remained stable over the last 30 days"
    return "Not enough data to determine weight trend"


def profile_completion(user):
    filled = sum(1 for field in PROFILE_COMPLETION_FIELDS if getattr(user, field, None) not in (None, ''))
    return round(filled / len(PROFILE_COMPLETION_FIELDS) * 100)


def is_suitable_for_diet(food, dietary_preference):
    if dietary_preference == 'keto':
        return (food.carbs_per_100g or 0) <= 5
    if dietary_preference == 'diabetic_friendly':
        return (food.sugar_per_100g or 0) <= 5
    if dietary_preference == 'vegan':
        name = (food.name or '').lower()
        return not any(keyword in name for keyword in NON_VEGAN_KEYWORDS)
    return True
