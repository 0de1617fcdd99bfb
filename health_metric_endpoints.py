"""
Health metric endpoints
Owner-scoped CRUD, history with trend, metric type catalogue and dashboard
"""

from flask import request, jsonify, g
from pydantic import ValidationError

import nutrition
from models import db, HealthMetric
from schemas import (
    HealthMetricSchema, HealthMetricUpdateSchema, HealthMetricQuerySchema,
    HealthMetricHistorySchema, validation_error_response,
)

DASHBOARD_METRICS = ('weight', 'body_fat', 'muscle_mass', 'heart_rate', 'steps', 'sleep_hours', 'water_intake')


def _not_found():
    return jsonify({
        'ok': False,
        'error': 'Health metric not found',
        'code': 'NOT_FOUND'
    }), 404


def _sync_weight(user, metric):
    # Non-goal weight entries drive the profile weight and calorie targets
    if metric.metric_type == 'weight' and not metric.is_goal:
        user.current_weight_kg = metric.value
        user.recalculate_metrics()


def _goal_for(user_id, metric_type):
    return HealthMetric.for_user(user_id).filter(
        HealthMetric.metric_type == metric_type,
        HealthMetric.is_goal.is_(True),
    ).order_by(HealthMetric.recorded_date.desc()).first()


def create_health_metric_endpoints(app, require_auth):

    @app.route('/api/health-metrics', methods=['GET'])
    @require_auth
    def list_health_metrics():
        try:
            params = HealthMetricQuerySchema.model_validate(request.args.to_dict())
        except ValidationError as e:
            return validation_error_response(e)

        query = HealthMetric.for_user(g.user.id)
        if params.metric_type:
            query = query.filter(HealthMetric.metric_type == params.metric_type)
        if params.start_date:
            query = query.filter(HealthMetric.recorded_date >= params.start_date)
        if params.end_date:
            query = query.filter(HealthMetric.recorded_date <= params.end_date)
        if params.is_goal is not None:
            query = query.filter(HealthMetric.is_goal.is_(params.is_goal))

        metrics = query.order_by(
            HealthMetric.recorded_date.desc(), HealthMetric.recorded_time.desc()
        ).limit(params.limit).all()

        return jsonify({
            'ok': True,
            'metrics': [m.to_dict() for m in metrics],
            'count': len(metrics),
        })

    @app.route('/api/health-metrics', methods=['POST'])
    @require_auth
    def create_health_metric():
        """Create or replace the entry for (type, date, goal flag)"""
        try:
            data = HealthMetricSchema.model_validate(request.get_json(silent=True) or {})
        except ValidationError as e:
            return validation_error_response(e)

        user = g.user
        try:
            metric = HealthMetric.for_user(user.id).filter(
                HealthMetric.metric_type == data.metric_type,
                HealthMetric.recorded_date == data.recorded_date,
                HealthMetric.is_goal.is_(data.is_goal),
            ).first()
            created = metric is None
            if created:
                metric = HealthMetric(
                    user_id=user.id,
                    metric_type=data.metric_type,
                    recorded_date=data.recorded_date,
                    is_goal=data.is_goal,
                )
                db.session.add(metric)

            metric.value = data.value
            metric.unit = data.unit or HealthMetric.DEFAULT_UNITS[data.metric_type]
            metric.recorded_time = data.recorded_time
            metric.notes = data.notes
            metric.extra_data = data.metadata

            _sync_weight(user, metric)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Health metric save error: {e}")
            return jsonify({
                'ok': False,
                'error': 'Failed to save health metric',
                'code': 'INTERNAL_ERROR'
            }), 500

        app.logger.info(f"health_metric_saved user_id={user.id} metric_id={metric.id} "
                        f"type={metric.metric_type} created={created}")
        return jsonify({'ok': True, 'metric': metric.to_dict(), 'created': created}), 201

    @app.route('/api/health-metrics/<int:metric_id>', methods=['GET'])
    @require_auth
    def get_health_metric(metric_id):
        metric = HealthMetric.for_user(g.user.id).filter(HealthMetric.id == metric_id).first()
        if not metric:
            return _not_found()
        return jsonify({'ok': True, 'metric': metric.to_dict()})

    @app.route('/api/health-metrics/<int:metric_id>', methods=['PUT'])
    @require_auth
    def update_health_metric(metric_id):
        metric = HealthMetric.for_user(g.user.id).filter(HealthMetric.id == metric_id).first()
        if not metric:
            return _not_found()

        try:
            data = HealthMetricUpdateSchema.model_validate(request.get_json(silent=True) or {})
        except ValidationError as e:
            return validation_error_response(e)

        updates = data.model_dump(exclude_unset=True)
        new_date = updates.get('recorded_date')
        if new_date is not None and new_date != metric.recorded_date:
            taken = HealthMetric.for_user(g.user.id).filter(
                HealthMetric.metric_type == metric.metric_type,
                HealthMetric.recorded_date == new_date,
                HealthMetric.is_goal.is_(metric.is_goal),
                HealthMetric.id != metric.id,
            ).first()
            if taken:
                return jsonify({
                    'ok': False,
                    'error': 'Validation failed',
                    'code': 'VALIDATION_ERROR',
                    'errors': {'recorded_date': [f'already has a {metric.metric_type} entry (id {taken.id})']},
                }), 422

        try:
            for field, value in updates.items():
                if field == 'metadata':
                    metric.extra_data = value
                elif field == 'unit':
                    metric.unit = value or HealthMetric.DEFAULT_UNITS[metric.metric_type]
                elif value is not None or field in ('recorded_time', 'notes'):
                    setattr(metric, field, value)

            if 'value' in updates:
                _sync_weight(g.user, metric)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Health metric update error: {e}")
            return jsonify({
                'ok': False,
                'error': 'Failed to update health metric',
                'code': 'INTERNAL_ERROR'
            }), 500

        return jsonify({'ok': True, 'metric': metric.to_dict()})

    @app.route('/api/health-metrics/<int:metric_id>', methods=['DELETE'])
    @require_auth
    def delete_health_metric(metric_id):
        metric = HealthMetric.for_user(g.user.id).filter(HealthMetric.id == metric_id).first()
        if not metric:
            return _not_found()

        db.session.delete(metric)
        db.session.commit()
        app.logger.info(f"health_metric_deleted user_id={g.user.id} metric_id={metric_id}")
        return jsonify({'ok': True, 'message': 'Health metric deleted'})

    @app.route('/api/health-metrics/history', methods=['GET'])
    @require_auth
    def health_metric_history():
        try:
            params = HealthMetricHistorySchema.model_validate(request.args.to_dict())
        except ValidationError as e:
            return validation_error_response(e)

        user_id = g.user.id
        history = HealthMetric.history_for_user(user_id, params.metric_type, params.days)
        latest = HealthMetric.latest_for_user(user_id, params.metric_type)
        goal = _goal_for(user_id, params.metric_type)

        return jsonify({
            'ok': True,
            'metric_type': params.metric_type,
            'display_name': HealthMetric.METRIC_TYPES[params.metric_type],
            'days': params.days,
            'history': [m.to_dict() for m in history],
            'trend': nutrition.calculate_trend([(m.recorded_date, m.value) for m in history]),
            'latest': latest.to_dict() if latest else None,
            'goal': goal.to_dict() if goal else None,
        })

    @app.route('/api/health-metrics/types', methods=['GET'])
    @require_auth
    def health_metric_types():
        return jsonify({
            'ok': True,
            'types': [
                {
                    'type': metric_type,
                    'display_name': display_name,
                    'default_unit': HealthMetric.DEFAULT_UNITS[metric_type],
                }
                for metric_type, display_name in HealthMetric.METRIC_TYPES.items()
            ],
        })

    @app.route('/api/health-metrics/dashboard', methods=['GET'])
    @require_auth
    def health_metric_dashboard():
        user_id = g.user.id
        key_metrics = {}
        for metric_type in DASHBOARD_METRICS:
            latest = HealthMetric.latest_for_user(user_id, metric_type)
            if not latest:
                continue
            key_metrics[metric_type] = {
                'display_name': HealthMetric.METRIC_TYPES[metric_type],
                'latest': latest.to_dict(),
                'trend_7_days': HealthMetric.calculate_trend(user_id, metric_type, days=7),
            }

        insights = []
        if 'weight' in key_metrics:
            weight_trend = HealthMetric.calculate_trend(user_id, 'weight', days=30)
            insights.append({
                'type': 'weight_trend',
                'message': nutrition.weight_trend_message(weight_trend),
                'trend': weight_trend['trend'],
            })

        return jsonify({
            'ok': True,
            'key_metrics': key_metrics,
            'insights': insights,
            'total_entries': HealthMetric.for_user(user_id).count(),
        })

    return (list_health_metrics, create_health_metric, get_health_metric, update_health_metric,
            delete_health_metric, health_metric_history, health_metric_types, health_metric_dashboard)
