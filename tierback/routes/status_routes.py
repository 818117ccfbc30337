"""
Status routes - read-only views of tiers, retention plans and the scheduler.
"""

from datetime import date

from flask import Blueprint, current_app, jsonify, request

from tierback.config import ConfigurationError, load_settings
from tierback.backup.executor import build_runner
from tierback.backup.storage import StorageError
from tierback.backup.tiers import TierLocations, TierSchedule
from tierback.scheduler import get_scheduler_diagnostics


bp = Blueprint('status', __name__, url_prefix='/api')


@bp.route('/tiers', methods=['GET'])
def get_active_tiers():
    """
    Get the tiers active on a day.

    Query params:
        date: ISO date (default: today)

    Returns:
        JSON with the date, active tiers and their storage locations
    """
    raw_date = request.args.get('date')
    try:
        day = date.fromisoformat(raw_date) if raw_date else date.today()
    except ValueError:
        return jsonify({'error': f"Invalid date: {raw_date}"}), 400

    try:
        settings = load_settings(current_app.config)
    except ConfigurationError as e:
        return jsonify({'error': str(e)}), 400

    schedule = TierSchedule(settings.weekly_day, settings.monthly_day)
    locations = TierLocations(settings.storage_prefix, settings.weekly_prefix, settings.monthly_prefix)
    tiers = schedule.active_tiers(day)

    return jsonify({
        'date': day.isoformat(),
        'active_tiers': [tier.value for tier in tiers],
        'locations': {tier.value: locations.location(tier) for tier in tiers}
    })


@bp.route('/retention/plan', methods=['GET'])
def get_retention_plan():
    """
    Evaluate retention for every tier location without deleting anything.

    Query params:
        pipeline: 'files' or 'database' (default: all configured)

    Returns:
        JSON mapping pipeline -> tier -> decisions
    """
    pipeline = request.args.get('pipeline')

    try:
        runner = build_runner(current_app.config, dry_run=True)
        plan = runner.plan(pipeline)
    except (ConfigurationError, ValueError) as e:
        return jsonify({'error': str(e)}), 400
    except StorageError as e:
        return jsonify({'error': str(e)}), 502

    return jsonify(plan)


@bp.route('/scheduler', methods=['GET'])
def get_scheduler_status():
    """Get scheduler diagnostics."""
    return jsonify(get_scheduler_diagnostics())
