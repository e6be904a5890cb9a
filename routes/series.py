"""
Series Blueprint

Provides routes for:
- Series detail with linked files
- Series invalidation (series.json sync, field inheritance)
"""

from flask import Blueprint, request, jsonify
from app_logging import app_logger
from database import get_series_with_files

series_bp = Blueprint('series', __name__)


@series_bp.route('/api/series/<int:series_id>', methods=['GET'])
def get_series_detail(series_id):
    try:
        series = get_series_with_files(series_id)
        if not series:
            return jsonify({"success": False, "error": "Series not found"}), 404
        return jsonify({"success": True, "series": series})
    except Exception as e:
        app_logger.error(f"Error loading series {series_id}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@series_bp.route('/api/series/<int:series_id>/invalidate', methods=['POST'])
def invalidate_series(series_id):
    """
    Propagate a series edit.

    Body (all optional):
        sync_to_series_json: bool, default true
        sync_to_issue_files: bool, default false
        inheritable_fields: ["publisher", "genres", "age_rating", "language_iso"]
    """
    try:
        from metadata_invalidation import invalidate_series_data

        data = request.get_json(silent=True) or {}
        fields = data.get('inheritable_fields') or []
        if not isinstance(fields, list):
            return jsonify({"success": False, "error": "inheritable_fields must be a list"}), 400

        result = invalidate_series_data(
            series_id,
            sync_to_series_json=bool(data.get('sync_to_series_json', True)),
            sync_to_issue_files=bool(data.get('sync_to_issue_files', False)),
            inheritable_fields=tuple(fields),
        )
        if result.success:
            return jsonify(result.to_dict())
        status = 404 if result.errors == ["Series not found"] else 500
        return jsonify(result.to_dict()), status
    except Exception as e:
        app_logger.error(f"Error invalidating series {series_id}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500
