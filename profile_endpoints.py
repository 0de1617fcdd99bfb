"""
Profile endpoints: read/update the profile and profile statistics
"""

from flask import request, jsonify, g
from pydantic import ValidationError

import nutrition
from models import db, HealthMetric
from schemas import ProfileUpdateSchema, validation_error_response

# Changing any of these invalidates bmr/tdee/target calories
METRIC_FIELDS = ('date_of_birth', 'gender', 'height_cm', 'current_weight_kg', 'activity_level', 'primary_goal')


def calculated_metrics(user):
    metrics = nutrition.calculate_metrics(
        weight_kg=user.current_weight_kg,
        height_cm=user.height_cm,
        age=user.age,
        gender=user.gender,
        activity_level=user.activity_level,
        primary_goal=user.primary_goal,
    ) or {'bmr': None, 'tdee': None, 'target_calories': None}
    metrics['bmi'] = user.bmi
    metrics['age'] = user.age
    return metrics


def weight_progress(user):
    """Progress from the first recorded weight towards the target weight"""
    current = user.current_weight_kg
    target = user.target_weight_kg
    if not current or not target:
        return None

    first = HealthMetric.for_user(user.id).filter(
        HealthMetric.metric_type == 'weight',
        HealthMetric.is_goal.is_(False),
    ).order_by(HealthMetric.recorded_date.asc()).first()
    start = first.value if first else current

    progress = None
    if start != target:
        progress = round(max(0, min(100, (start - current) / (start - target) * 100)), 1)

    return {
        'start_weight_kg': start,
        'current_weight_kg': current,
        'target_weight_kg': target,
        'remaining_kg': round(abs(target - current), 1),
        'direction': 'lose' if target < current else 'gain' if target > current else 'maintain',
        'progress_percentage': progress,
    }


def create_profile_endpoints(app, require_auth):

    @app.route('/api/profile', methods=['GET'])
    @require_auth
    def get_profile():
        user = g.user
        return jsonify({
            'ok': True,
            'user': user.to_dict(),
            'metrics': calculated_metrics(user),
            'bmi': user.bmi,
        })

    @app.route('/api/profile', methods=['PUT'])
    @require_auth
    def update_profile():
        """Partial profile update; metrics are recalculated when a body/goal field changes"""
        try:
            data = ProfileUpdateSchema.model_validate(request.get_json(silent=True) or {})
        except ValidationError as e:
            return validation_error_response(e)

        user = g.user
        updates = data.model_dump(exclude_unset=True)
        # Names cannot be cleared
        for field in ('first_name', 'last_name'):
            if field in updates and updates[field] is None:
                updates.pop(field)

        try:
            for field, value in updates.items():
                setattr(user, field, value)

            recalculated = False
            if any(field in updates for field in METRIC_FIELDS):
                recalculated = user.recalculate_metrics() is not None

            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Profile update error: {e}")
            return jsonify({
                'ok': False,
                'error': 'Profile update failed',
                'code': 'INTERNAL_ERROR'
            }), 500

        app.logger.info(f"profile_updated user_id={user.id} fields={sorted(updates)} recalculated={recalculated}")
        return jsonify({
            'ok': True,
            'user': user.to_dict(),
            'metrics': calculated_metrics(user),
            'updated_fields': sorted(updates),
            'metrics_recalculated': recalculated,
        })

    @app.route('/api/profile/stats', methods=['GET'])
    @require_auth
    def get_profile_stats():
        user = g.user
        latest_weight = HealthMetric.latest_for_user(user.id, 'weight')
        latest_body_fat = HealthMetric.latest_for_user(user.id, 'body_fat')

        return jsonify({
            'ok': True,
            'stats': {
                'profile_completion': nutrition.profile_completion(user),
                'latest_weight': latest_weight.to_dict() if latest_weight else None,
                'latest_body_fat': latest_body_fat.to_dict() if latest_body_fat else None,
                'calculated_metrics': calculated_metrics(user),
                'goals': {
                    'primary_goal': user.primary_goal,
                    'target_weight_kg': user.target_weight_kg,
                    'daily_calorie_target': user.daily_calorie_target,
                },
                'weight_progress': weight_progress(user),
            },
        })

    return get_profile, update_profile, get_profile_stats
