"""
Events Blueprint

Server-sent event stream that pushes file/series refresh and metadata
change notifications to connected clients.
"""

from flask import Blueprint, Response, stream_with_context
from events import broker

events_bp = Blueprint('events', __name__)


@events_bp.route('/api/events')
def event_stream():
    q = broker.subscribe()
    response = Response(stream_with_context(broker.stream(q)), mimetype='text/event-stream')
    response.headers['Cache-Control'] = 'no-cache'
    response.headers['X-Accel-Buffering'] = 'no'
    return response
