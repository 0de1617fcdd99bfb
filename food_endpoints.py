"""
Food catalogue and food log endpoints
"""

import math
from datetime import date, datetime, time, timedelta

from flask import request, jsonify, g
from pydantic import ValidationError

import nutrition
from models import db, Food, FoodLog
from schemas import (
    FoodSchema, FoodUpdateSchema, FoodSearchSchema, FoodLogSchema,
    FoodLogUpdateSchema, DateRangeSchema, validation_error_response,
)

MAX_POPULAR = 50


def _error(status, error, code):
    return jsonify({'ok': False, 'error': error, 'code': code}), status


def _pagination(page, per_page, total):
    pages = math.ceil(total / per_page) if per_page else 0
    return {
        'page': page,
        'per_page': per_page,
        'total': total,
        'pages': pages,
        'has_next': page < pages,
        'has_prev': page > 1,
    }


def _day_bounds(day):
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def _parse_day(value):
    if not value:
        return date.today()
    return date.fromisoformat(value)


def _renutrify(log, food):
    grams = nutrition.convert_to_grams(log.quantity, log.unit, food)
    log.apply_nutrition(grams, food.nutrition_for_serving(grams))


def create_food_endpoints(app, require_auth):

    # ------------------------------------------------------------------
    # Foods
    # ------------------------------------------------------------------

    @app.route('/api/foods/search', methods=['GET'])
    @require_auth
    def search_foods():
        try:
            params = FoodSearchSchema.model_validate(request.args.to_dict())
        except ValidationError as e:
            return validation_error_response(e)

        query = Food.search_query(params.model_dump())
        allergens = params.allergen_list()
        diet = params.dietary_preference

        if allergens or diet:
            foods = [
                food for food in query.all()
                if not any(food.contains_allergen(a) for a in allergens)
                and (not diet or nutrition.is_suitable_for_diet(food, diet))
            ]
            total = len(foods)
            offset = (params.page - 1) * params.per_page
            page_items = foods[offset:offset + params.per_page]
        else:
            total = query.count()
            page_items = query.offset((params.page - 1) * params.per_page).limit(params.per_page).all()

        return jsonify({
            'ok': True,
            'foods': [food.to_dict() for food in page_items],
            'pagination': _pagination(params.page, params.per_page, total),
        })

    @app.route('/api/foods/<int:food_id>', methods=['GET'])
    @require_auth
    def get_food(food_id):
        food = db.session.get(Food, food_id)
        if not food:
            return _error(404, 'Food not found', 'NOT_FOUND')

        food.increment_usage()
        db.session.commit()

        data = food.to_dict(include_macros=True)
        serving_grams = food.common_serving_grams()
        data['per_serving'] = food.nutrition_for_serving(serving_grams) if serving_grams else None
        return jsonify({'ok': True, 'food': data})

    @app.route('/api/foods/popular', methods=['GET'])
    @require_auth
    def popular_foods():
        limit = request.args.get('limit', 10, type=int)
        limit = max(1, min(limit or 10, MAX_POPULAR))
        return jsonify({'ok': True, 'foods': [food.to_dict() for food in Food.popular(limit)]})

    @app.route('/api/foods/categories', methods=['GET'])
    @require_auth
    def food_categories():
        return jsonify({'ok': True, 'categories': Food.categories()})

    @app.route('/api/foods', methods=['POST'])
    @require_auth
    def create_food():
        try:
            data = FoodSchema.model_validate(request.get_json(silent=True) or {})
        except ValidationError as e:
            return validation_error_response(e)

        try:
            food = Food(
                **data.model_dump(),
                source='user_created',
                is_verified=False,
                created_by=g.user.id,
            )
            db.session.add(food)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Food create error: {e}")
            return _error(500, 'Failed to create food', 'INTERNAL_ERROR')

        app.logger.info(f"food_created user_id={g.user.id} food_id={food.id}")
        return jsonify({'ok': True, 'food': food.to_dict(include_macros=True)}), 201

    @app.route('/api/foods/<int:food_id>', methods=['PUT'])
    @require_auth
    def update_food(food_id):
        food = db.session.get(Food, food_id)
        if not food:
            return _error(404, 'Food not found', 'NOT_FOUND')
        if food.created_by != g.user.id and not g.user.is_admin:
            return _error(403, 'You can only edit foods you created', 'FORBIDDEN')

        try:
            data = FoodUpdateSchema.model_validate(request.get_json(silent=True) or {})
        except ValidationError as e:
            return validation_error_response(e)

        try:
            for field, value in data.model_dump(exclude_unset=True).items():
                setattr(food, field, value)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Food update error: {e}")
            return _error(500, 'Failed to update food', 'INTERNAL_ERROR')

        app.logger.info(f"food_updated user_id={g.user.id} food_id={food.id}")
        return jsonify({'ok': True, 'food': food.to_dict(include_macros=True)})

    # ------------------------------------------------------------------
    # Food logs
    # ------------------------------------------------------------------

    @app.route('/api/food-logs', methods=['POST'])
    @require_auth
    def create_food_log():
        """Log a food; nutrition is snapshotted from the food at log time"""
        try:
            data = FoodLogSchema.model_validate(request.get_json(silent=True) or {})
        except ValidationError as e:
            return validation_error_response(e)

        food = db.session.get(Food, data.food_id)
        if not food:
            return _error(404, 'Food not found', 'NOT_FOUND')

        try:
            log = FoodLog(
                user_id=g.user.id,
                food_id=food.id,
                food_name=food.name,
                quantity=data.quantity,
                unit=data.unit,
                meal_type=data.meal_type,
                consumed_at=data.consumed_at or datetime.utcnow(),
                notes=data.notes,
            )
            _renutrify(log, food)
            food.increment_usage()
            db.session.add(log)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Food log create error: {e}")
            return _error(500, 'Failed to log food', 'INTERNAL_ERROR')

        app.logger.info(f"food_logged user_id={g.user.id} log_id={log.id} food_id={food.id} "
                        f"grams={log.quantity_grams}")
        return jsonify({'ok': True, 'food_log': log.to_dict(include_food=True)}), 201

    def _daily_response(day_value):
        try:
            day = _parse_day(day_value)
        except ValueError:
            return jsonify({
                'ok': False,
                'error': 'Validation failed',
                'code': 'VALIDATION_ERROR',
                'errors': {'date': ['must be a date in YYYY-MM-DD format']}
            }), 422

        user = g.user
        start, end = _day_bounds(day)
        logs = FoodLog.for_user_between(user.id, start, end)

        totals = nutrition.sum_totals(logs)
        target = user.daily_calorie_target
        return jsonify({
            'ok': True,
            'date': day.isoformat(),
            'meals': {
                meal_type: [log.to_dict() for log in logs if log.meal_type == meal_type]
                for meal_type in FoodLog.MEAL_TYPES
            },
            'daily_totals': totals,
            'macro_breakdown': nutrition.macro_breakdown(
                totals['calories'], totals['protein'], totals['carbs'], totals['fat']
            ),
            'target_calories': target,
            'remaining_calories': round(target - totals['calories'], 2) if target else None,
            'log_count': len(logs),
        })

    @app.route('/api/food-logs/daily', methods=['GET'])
    @require_auth
    def daily_food_logs():
        return _daily_response(request.args.get('date'))

    @app.route('/api/food-logs/daily/<day>', methods=['GET'])
    @require_auth
    def daily_food_logs_for_date(day):
        return _daily_response(day)

    def _owned_log(log_id):
        log = db.session.get(FoodLog, log_id)
        if not log:
            return None, _error(404, 'Food log not found', 'NOT_FOUND')
        if log.user_id != g.user.id:
            return None, _error(403, 'You do not have access to this food log', 'FORBIDDEN')
        return log, None

    @app.route('/api/food-logs/<int:log_id>', methods=['PUT'])
    @require_auth
    def update_food_log(log_id):
        log, error = _owned_log(log_id)
        if error:
            return error

        try:
            data = FoodLogUpdateSchema.model_validate(request.get_json(silent=True) or {})
        except ValidationError as e:
            return validation_error_response(e)

        updates = {k: v for k, v in data.model_dump(exclude_unset=True).items()
                   if v is not None or k == 'notes'}
        try:
            for field, value in updates.items():
                setattr(log, field, value)
            if 'quantity' in updates or 'unit' in updates:
                _renutrify(log, log.food)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Food log update error: {e}")
            return _error(500, 'Failed to update food log', 'INTERNAL_ERROR')

        return jsonify({'ok': True, 'food_log': log.to_dict(include_food=True)})

    @app.route('/api/food-logs/<int:log_id>', methods=['DELETE'])
    @require_auth
    def delete_food_log(log_id):
        log, error = _owned_log(log_id)
        if error:
            return error

        db.session.delete(log)
        db.session.commit()
        app.logger.info(f"food_log_deleted user_id={g.user.id} log_id={log_id}")
        return jsonify({'ok': True, 'message': 'Food log deleted'})

    @app.route('/api/food-logs/summary', methods=['GET'])
    @require_auth
    def food_log_summary():
        try:
            params = DateRangeSchema.model_validate(request.args.to_dict())
        except ValidationError as e:
            return validation_error_response(e)

        start, _ = _day_bounds(params.start_date)
        _, end = _day_bounds(params.end_date)
        logs = FoodLog.for_user_between(g.user.id, start, end)

        days = (params.end_date - params.start_date).days + 1
        totals = nutrition.sum_totals(logs)
        return jsonify({
            'ok': True,
            'period': {
                'start_date': params.start_date.isoformat(),
                'end_date': params.end_date.isoformat(),
                'days': days,
            },
            'totals': totals,
            'averages': nutrition.period_averages(totals, days),
            'by_meal_type': nutrition.meal_type_totals(logs),
            'macro_breakdown': nutrition.macro_breakdown(
                totals['calories'], totals['protein'], totals['carbs'], totals['fat']
            ),
            'log_count': len(logs),
        })

    return (search_foods, get_food, popular_foods, food_categories, create_food, update_food,
            create_food_log, daily_food_logs, daily_food_logs_for_date, update_food_log,
            delete_food_log, food_log_summary)
