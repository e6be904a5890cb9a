import os
import threading
from flask import Flask, jsonify
from config import load_flask_config
from app_logging import app_logger
from database import init_db, get_dirty_flag_count
from events import broker
from routes.metadata import metadata_bp
from routes.series import series_bp
from routes.events import events_bp
import app_state

app = Flask(__name__)
load_flask_config(app, logger=app_logger)

# Initialize Database
init_db()

# Register Blueprints
app.register_blueprint(metadata_bp)
app.register_blueprint(series_bp)
app.register_blueprint(events_bp)


@app.route('/api/status', methods=['GET'])
def api_status():
    """Background job state for the settings page."""
    try:
        return jsonify({
            "repair_in_progress": app_state.repair_in_progress,
            "repair_last_run_time": app_state.repair_last_run_time,
            "stats_scheduler_running": app_state.stats_scheduler.running,
            "pending_dirty_stats": get_dirty_flag_count(),
            "event_subscribers": broker.subscriber_count,
        })
    except Exception as e:
        app_logger.error(f"Error reading status: {e}")
        return jsonify({"error": str(e)}), 500


_services_started = False
_services_lock = threading.Lock()


def start_background_services():
    """Start the stats scheduler once per process."""
    global _services_started
    with _services_lock:
        if _services_started:
            return
        _services_started = True

    if os.environ.get("STATS_SCHEDULER", "yes").strip().lower() != "yes":
        app_logger.info("STATS_SCHEDULER disabled; dirty stats are processed on demand only")
        return

    from stats_dirty import configure_stats_scheduler
    configure_stats_scheduler(app.config["STATS_PROCESSING_INTERVAL"])


# Start background services when module is imported (works with Gunicorn)
start_background_services()


if __name__ == '__main__':
    # Only used for local development (python app.py)
    app.run(debug=True, use_reloader=False, threaded=True, host='0.0.0.0', port=5577)
