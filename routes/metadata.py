"""
Metadata Blueprint

Provides routes for:
- File metadata invalidation (single, batch, after bulk apply)
- Merge preview with per-field source overrides
- Series linkage mismatch listing, repair and metadata sync
- Cross-source series matching and the mapping cache
- Provider listing and tag autocomplete
"""

import json
import threading
import time
from queue import Queue
from flask import (Blueprint, request, jsonify, Response,
                   stream_with_context, current_app)
from app_logging import app_logger
import app_state

metadata_bp = Blueprint('metadata', __name__)


# =============================================================================
# Helper Functions
# =============================================================================

def _file_ids_from(data):
    file_ids = data.get('file_ids') or data.get('fileIds') or []
    if not isinstance(file_ids, list):
        raise ValueError("file_ids must be a list")
    return [int(fid) for fid in file_ids]


def _invalidation_options(data):
    options = {}
    if 'refresh_from_archive' in data:
        options['refresh_from_archive'] = bool(data['refresh_from_archive'])
    if 'update_series_linkage' in data:
        options['update_series_linkage'] = bool(data['update_series_linkage'])
    return options


# =============================================================================
# Invalidation
# =============================================================================

@metadata_bp.route('/api/metadata/file/<int:file_id>/invalidate', methods=['POST'])
def invalidate_file(file_id):
    """Refresh cached metadata for one file and cascade the change."""
    try:
        from metadata_invalidation import invalidate_file_metadata

        data = request.get_json(silent=True) or {}
        options = _invalidation_options(data)
        if data.get('comic_info') is not None:
            options['comic_info'] = data['comic_info']

        result = invalidate_file_metadata(file_id, **options)
        status = 200 if result.success else (404 if result.errors == ["File not found"] else 500)
        return jsonify(result.to_dict()), status
    except Exception as e:
        app_logger.error(f"Error invalidating file {file_id}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@metadata_bp.route('/api/metadata/invalidate-batch', methods=['POST'])
def invalidate_batch():
    """Invalidate several files; failures are reported per file."""
    try:
        from metadata_invalidation import batch_invalidate_file_metadata

        data = request.get_json(silent=True) or {}
        try:
            file_ids = _file_ids_from(data)
        except (TypeError, ValueError) as e:
            return jsonify({"success": False, "error": str(e)}), 400

        if not file_ids:
            return jsonify({"success": False, "error": "No file IDs provided"}), 400

        result = batch_invalidate_file_metadata(file_ids, **_invalidation_options(data))
        return jsonify({"success": result.failed == 0, **result.to_dict()})
    except Exception as e:
        app_logger.error(f"Error in batch invalidation: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@metadata_bp.route('/api/metadata/bulk-apply/invalidate', methods=['POST'])
def invalidate_bulk_apply():
    """
    Follow-up after a bulk metadata apply.

    Body: {"processed_files": [{"file_id": 1, "success": true}, ...],
           "affected_series_ids": [3, 4]}
    """
    try:
        from metadata_invalidation import invalidate_after_bulk_apply

        data = request.get_json(silent=True) or {}
        processed = [
            {"file_id": int(f.get('file_id', f.get('fileId'))), "success": bool(f.get('success'))}
            for f in data.get('processed_files', [])
        ]
        affected = {int(sid) for sid in data.get('affected_series_ids', [])}

        result = invalidate_after_bulk_apply(processed, affected)
        return jsonify({"success": not result.errors, **result.to_dict()})
    except (TypeError, ValueError) as e:
        return jsonify({"success": False, "error": f"Invalid request: {e}"}), 400
    except Exception as e:
        app_logger.error(f"Error in bulk apply invalidation: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


# =============================================================================
# Merge Preview
# =============================================================================

@metadata_bp.route('/api/metadata/merge-preview', methods=['POST'])
def merge_preview():
    """
    Merge source records and show every source's value per field.

    Body: {"kind": "series" | "issue",
           "records": {"comicvine": {...}, "metron": {...} | null},
           "source_ids": {"comicvine": "796", "metron": "55"},  (instead of records)
           "priority_order": ["metron", "comicvine"],   (optional)
           "field_overrides": {"publisher": "metron"}}  (optional)

    With source_ids each record is fetched through the registered provider.
    """
    try:
        from config import get_metadata_settings
        from metadata_fetch import fetch_and_merge_series, fetch_and_merge_issue
        from metadata_merge import merge_series_with_all_values, merge_issue_with_all_values
        from models.providers import SeriesMetadata, IssueMetadata, MetadataSource

        data = request.get_json(silent=True) or {}
        kind = data.get('kind', 'series')
        if kind not in ('series', 'issue'):
            return jsonify({"success": False, "error": f"Unknown kind: {kind}"}), 400

        source_ids = data.get('source_ids')
        record_cls = SeriesMetadata if kind == 'series' else IssueMetadata
        merge_fn = merge_series_with_all_values if kind == 'series' else merge_issue_with_all_values
        fetch_fn = fetch_and_merge_series if kind == 'series' else fetch_and_merge_issue

        try:
            records = {}
            if source_ids:
                if not isinstance(source_ids, dict):
                    raise TypeError("source_ids must be an object")
                source_ids = {MetadataSource.parse(s): sid for s, sid in source_ids.items()}
            else:
                for source, raw in (data.get('records') or {}).items():
                    src = MetadataSource.parse(source)
                    records[src] = record_cls.from_dict({**raw, "source": src.value}) if raw else None
            priority = data.get('priority_order')
            if priority is not None:
                priority = [MetadataSource.parse(s) for s in priority]
        except (KeyError, TypeError, ValueError) as e:
            return jsonify({"success": False, "error": f"Invalid request: {e}"}), 400

        settings = current_app.config.get("METADATA_SETTINGS") or get_metadata_settings()
        if source_ids:
            merged = fetch_fn(source_ids, settings=settings, priority_order=priority,
                              field_overrides=data.get('field_overrides'))
        else:
            merged = merge_fn(records, priority_order=priority,
                              field_overrides=data.get('field_overrides'), settings=settings)
        if merged is None:
            return jsonify({"success": False, "error": "No source returned data"}), 404

        return jsonify({"success": True, "merged": merged.to_dict()})
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        app_logger.error(f"Error building merge preview: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


# =============================================================================
# Series Linkage
# =============================================================================

@metadata_bp.route('/api/metadata/series-linkage/mismatches', methods=['GET'])
def list_mismatches():
    """Files whose metadata series name disagrees with their linked series."""
    try:
        from linkage_repair import find_mismatched_series_files

        mismatched = find_mismatched_series_files()
        return jsonify({"success": True, "count": len(mismatched), "files": mismatched})
    except Exception as e:
        app_logger.error(f"Error finding mismatched series files: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@metadata_bp.route('/api/metadata/series-linkage/repair', methods=['POST'])
def repair_linkages():
    """
    Repair series linkages, streaming progress as server-sent events.

    Emits {"type": "progress", ...} after each file and one
    {"type": "complete", "result": {...}} at the end.
    """
    from linkage_repair import repair_series_linkages

    data = request.get_json(silent=True) or {}
    try:
        file_ids = _file_ids_from(data) or None
    except (TypeError, ValueError) as e:
        return jsonify({"success": False, "error": str(e)}), 400

    with app_state.repair_lock:
        if app_state.repair_in_progress:
            return jsonify({"success": False, "error": "A repair is already running"}), 409
        app_state.repair_in_progress = True

    progress_queue = Queue()

    def on_progress(current, total, description):
        progress_queue.put({"type": "progress", "current": current, "total": total,
                            "message": description})

    def worker():
        try:
            result = repair_series_linkages(file_ids=file_ids, on_progress=on_progress)
            progress_queue.put({"type": "complete", "result": result.to_dict()})
        except Exception as e:
            app_logger.error(f"Series linkage repair failed: {e}")
            progress_queue.put({"type": "error", "error": str(e)})
        finally:
            with app_state.repair_lock:
                app_state.repair_in_progress = False
                app_state.repair_last_run_time = time.time()

    threading.Thread(target=worker, daemon=True).start()

    def generate():
        while True:
            message = progress_queue.get()
            yield f"data: {json.dumps(message)}\n\n"
            if message["type"] in ("complete", "error"):
                break

    return Response(stream_with_context(generate()), mimetype='text/event-stream')


@metadata_bp.route('/api/metadata/file/<int:file_id>/sync-to-series', methods=['POST'])
def sync_file_to_series(file_id):
    """Rewrite one file's series name from its linked series."""
    try:
        from linkage_repair import sync_file_metadata_to_series

        result = sync_file_metadata_to_series(file_id)
        if result.success:
            return jsonify(result.to_dict())
        status = 404 if result.error == "File not found" else 400 if result.error == "File is not linked to a series" else 500
        return jsonify(result.to_dict()), status
    except Exception as e:
        app_logger.error(f"Error syncing file {file_id} to series: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@metadata_bp.route('/api/metadata/sync-to-series', methods=['POST'])
def sync_files_to_series():
    """Batch variant of sync-to-series."""
    try:
        from linkage_repair import batch_sync_file_metadata_to_series

        data = request.get_json(silent=True) or {}
        try:
            file_ids = _file_ids_from(data)
        except (TypeError, ValueError) as e:
            return jsonify({"success": False, "error": str(e)}), 400

        if not file_ids:
            return jsonify({"success": False, "error": "No file IDs provided"}), 400

        result = batch_sync_file_metadata_to_series(file_ids)
        return jsonify({"success": not result["errors"], **result})
    except Exception as e:
        app_logger.error(f"Error in batch sync to series: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


# =============================================================================
# Cross-Source Matching
# =============================================================================

@metadata_bp.route('/api/metadata/cross-source-matches', methods=['POST'])
def cross_source_matches():
    """
    Find a series from one source in the other enabled sources.

    Body: {"source": "comicvine", "source_id": "796",
           "target_sources": ["metron"],   (optional)
           "threshold": 0.9}               (optional)

    Matches at or above the auto-match threshold are saved to the mapping cache.
    """
    try:
        import database
        from config import get_metadata_settings
        from cross_source_matcher import find_cross_source_matches
        from metadata_fetch import resolve_provider
        from models.providers import MetadataSource

        data = request.get_json(silent=True) or {}
        source_id = str(data.get('source_id') or data.get('sourceId') or '').strip()
        try:
            source = MetadataSource.parse(data.get('source'))
            target_sources = data.get('target_sources')
            if target_sources is not None:
                target_sources = [MetadataSource.parse(s) for s in target_sources]
            threshold = data.get('threshold')
            if threshold is not None:
                threshold = float(threshold)
        except (TypeError, ValueError) as e:
            return jsonify({"success": False, "error": f"Invalid request: {e}"}), 400
        if not source_id:
            return jsonify({"success": False, "error": "source and source_id are required"}), 400

        provider = resolve_provider(source)
        if provider is None:
            return jsonify({"success": False, "error": f"No provider registered for {source.value}"}), 400

        primary = provider.get_series(source_id)
        if primary is None:
            return jsonify({"success": False, "error": f"No series found for {source.value}:{source_id}"}), 404

        settings = current_app.config.get("METADATA_SETTINGS") or get_metadata_settings()
        result = find_cross_source_matches(primary, target_sources=target_sources,
                                           threshold=threshold, settings=settings)

        for match in result.matches:
            if match.is_auto_match_candidate:
                database.save_cross_source_mapping(source, source_id, match.source, match.source_id,
                                                   match.confidence, 'auto', match.factors.to_dict())

        return jsonify({"success": True, **result.to_dict()})
    except Exception as e:
        app_logger.error(f"Error finding cross-source matches: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@metadata_bp.route('/api/metadata/cross-source-mappings/<source>/<source_id>', methods=['GET'])
def get_cross_source_mappings(source, source_id):
    """Cached mappings for a series and whether every enabled source is covered."""
    try:
        import database
        from config import get_metadata_settings
        from models.providers import MetadataSource

        source = MetadataSource.parse(source)
        settings = current_app.config.get("METADATA_SETTINGS") or get_metadata_settings()
        return jsonify({
            "success": True,
            "mappings": database.get_cached_mappings(source, source_id),
            "complete": database.has_cached_mappings_for_all_sources(
                source, source_id, settings.priority_order),
        })
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        app_logger.error(f"Error reading cross-source mappings for {source}:{source_id}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@metadata_bp.route('/api/metadata/cross-source-mappings/<source>/<source_id>', methods=['POST'])
def save_cross_source_mapping(source, source_id):
    """
    Record a user-confirmed mapping.

    Body: {"matched_source": "metron", "matched_source_id": "55", "confidence": 1.0}
    """
    try:
        import database
        from models.providers import MetadataSource

        data = request.get_json(silent=True) or {}
        try:
            source = MetadataSource.parse(source)
            matched_source = MetadataSource.parse(data.get('matched_source'))
            matched_source_id = str(data.get('matched_source_id') or '').strip()
            confidence = float(data.get('confidence', 1.0))
        except (TypeError, ValueError) as e:
            return jsonify({"success": False, "error": f"Invalid request: {e}"}), 400
        if not matched_source_id:
            return jsonify({"success": False, "error": "matched_source_id is required"}), 400
        if matched_source == source:
            return jsonify({"success": False, "error": "A series cannot be mapped to its own source"}), 400

        database.save_cross_source_mapping(source, source_id, matched_source, matched_source_id,
                                           confidence, 'user')
        app_logger.info(f"🔗 Mapped {source.value}:{source_id} to {matched_source.value}:{matched_source_id}")
        return jsonify({"success": True, "mappings": database.get_cached_mappings(source, source_id)})
    except Exception as e:
        app_logger.error(f"Error saving cross-source mapping for {source}:{source_id}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@metadata_bp.route('/api/metadata/cross-source-mappings/<source>/<source_id>', methods=['DELETE'])
def delete_cross_source_mappings(source, source_id):
    """Drop cached mappings for a series (e.g. after its source data was refreshed)."""
    try:
        import database
        from models.providers import MetadataSource

        removed = database.invalidate_cross_source_mappings(MetadataSource.parse(source), source_id)
        return jsonify({"success": True, "removed": removed})
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        app_logger.error(f"Error invalidating cross-source mappings for {source}:{source_id}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


@metadata_bp.route('/api/metadata/issue-cross-matches', methods=['POST'])
def issue_cross_matches():
    """
    Find an issue's counterpart in the series mapped to its own series.

    Body: {"source": "comicvine", "issue_id": "100", "series_id": "796", "threshold": 0.7}
    Series mappings come from the mapping cache.
    """
    try:
        import database
        from cross_source_matcher import find_issue_cross_matches, DEFAULT_ISSUE_MATCH_THRESHOLD
        from metadata_fetch import resolve_provider
        from models.providers import MetadataSource

        data = request.get_json(silent=True) or {}
        issue_id = str(data.get('issue_id') or '').strip()
        series_id = str(data.get('series_id') or '').strip()
        try:
            source = MetadataSource.parse(data.get('source'))
            threshold = float(data.get('threshold', DEFAULT_ISSUE_MATCH_THRESHOLD))
        except (TypeError, ValueError) as e:
            return jsonify({"success": False, "error": f"Invalid request: {e}"}), 400
        if not issue_id or not series_id:
            return jsonify({"success": False, "error": "issue_id and series_id are required"}), 400

        provider = resolve_provider(source)
        if provider is None:
            return jsonify({"success": False, "error": f"No provider registered for {source.value}"}), 400

        primary = provider.get_issue(issue_id)
        if primary is None:
            return jsonify({"success": False, "error": f"No issue found for {source.value}:{issue_id}"}), 404

        mappings = [(m["matched_source"], m["matched_source_id"])
                    for m in database.get_cached_mappings(source, series_id)]
        matches = find_issue_cross_matches(primary, mappings, threshold=threshold)
        return jsonify({"success": True, "matches": [m.to_dict() for m in matches]})
    except Exception as e:
        app_logger.error(f"Error finding issue cross-matches: {e}")
        return jsonify({"success": False, "error": str(e)}), 500


# =============================================================================
# Providers & Tags
# =============================================================================

@metadata_bp.route('/api/providers', methods=['GET'])
def list_providers():
    """List registered metadata providers and the configured priority."""
    try:
        from config import get_metadata_settings
        from models.providers import get_available_providers

        settings = current_app.config.get("METADATA_SETTINGS") or get_metadata_settings()
        return jsonify({
            "success": True,
            "providers": get_available_providers(),
            "primary_source": settings.primary_source,
            "priority_order": settings.priority_order,
        })
    except Exception as e:
        app_logger.error(f"Error listing providers: {e}")
        return jsonify({"error": str(e)}), 500


@metadata_bp.route('/api/tags/<field_type>', methods=['GET'])
def autocomplete_tags(field_type):
    """Autocomplete values for a tag field (?q=prefix&limit=20)."""
    try:
        from tag_autocomplete import search_tags

        prefix = request.args.get('q', '')
        limit = min(request.args.get('limit', 20, type=int), 100)
        return jsonify({"success": True, "values": search_tags(field_type, prefix, limit)})
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    except Exception as e:
        app_logger.error(f"Error searching tags for {field_type}: {e}")
        return jsonify({"success": False, "error": str(e)}), 500
