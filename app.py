"""LCARS bridge dashboard backend.

Flask serves the REST surface and Flask-SocketIO the real-time channel. All
state lives in the module-level ``bridge`` (stores, snapshot aggregator and
broadcast hub); the handlers here only translate HTTP and socket frames into
bridge calls.
"""

import json
import logging
import os

from flask import Flask, Response, request, send_from_directory
from flask_socketio import SocketIO

import config
import crew_tools
import message_store
from bridge import create_bridge
from errors import BridgeError, CollaboratorUnavailable, MalformedInput, NotFound, ValidationError

log = logging.getLogger(__name__)

app = Flask(__name__, static_folder=config.STATIC_DIR)
socketio = SocketIO(
    app,
    cors_allowed_origins='*',
    async_mode='threading',
    ping_interval=config.KEEPALIVE_INTERVAL_SEC,
    ping_timeout=config.KEEPALIVE_INTERVAL_SEC,
)


def _transport_disconnect(sid):  # pragma: no cover
    socketio.server.disconnect(sid, namespace='/')


bridge = create_bridge(socketio.emit, disconnect=_transport_disconnect)


@app.before_request
def short_circuit_preflight():
    """Answer CORS preflight requests before routing."""
    if request.method == 'OPTIONS':
        return Response(status=204)


@app.after_request
def add_cors_headers(response):
    response.headers['Access-Control-Allow-Origin'] = '*'
    response.headers['Access-Control-Allow-Methods'] = 'GET, POST, PATCH, DELETE, OPTIONS'
    response.headers['Access-Control-Allow-Headers'] = 'Content-Type'
    return response


@app.errorhandler(BridgeError)
def handle_bridge_error(exc):
    return exc.to_dict(), exc.status_code


def _json_body():
    """Parse the request body as a JSON object; an empty body is ``{}``."""
    raw = request.get_data(as_text=True)
    if not raw.strip():
        return {}
    try:
        body = json.loads(raw)
    except ValueError:
        raise MalformedInput()
    if not isinstance(body, dict):
        raise MalformedInput('Request body must be a JSON object')
    return body


def _int_arg(name, default=None):
    value = request.args.get(name)
    if value in (None, ''):
        return default
    try:
        number = int(value)
    except ValueError:
        raise ValidationError(f'{name} must be an integer')
    if number < 0:
        raise ValidationError(f'{name} must not be negative')
    return number


def _int_field(body, name, default):
    value = body.get(name, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'{name} must be an integer')
    return value


def _flag_arg(name):
    return request.args.get(name, '').lower() in ('1', 'true', 'yes')


def _status(result):
    """Read-only proxy body: the payload, plus ``error`` when it is a fallback."""
    payload, error = result
    if not isinstance(payload, dict):
        return Response(json.dumps(payload), mimetype='application/json')
    body = dict(payload)
    if error:
        body['error'] = error
    return body


def _action(fn, *args):
    try:
        return fn(*args)
    except CollaboratorUnavailable as exc:
        log.error('[API] %s failed: %s', fn.__name__, exc.message)
        return {'success': False, 'error': exc.message}, 500


@app.route('/')
def index():
    """Serve the bridge front end when it is installed."""
    if not os.path.exists(os.path.join(config.STATIC_DIR, 'index.html')):
        raise NotFound('Front end not installed')
    return send_from_directory(config.STATIC_DIR, 'index.html')


@app.route('/health')
def health():
    return bridge.health()


@app.route('/api/data')
def bridge_data():
    """Full bridge snapshot."""
    return bridge.snapshot()


@app.route('/api/sessions')
def sessions():
    return crew_tools.openclaw_sessions()


@app.route('/api/weather')
def weather():
    return bridge.aggregator.weather(refresh=_flag_arg('refresh'))


# -- tasks ------------------------------------------------------------------

@app.route('/api/tasks', methods=['GET'])
def list_tasks():
    """Task board with optional filters and pagination."""
    return bridge.tasks.list_tasks(
        status=request.args.get('status') or None,
        assignee=request.args.get('assignee') or None,
        exclude_done=_flag_arg('excludeDone'),
        limit=_int_arg('limit'),
        offset=_int_arg('offset', 0),
        compact=_flag_arg('compact'),
    )


@app.route('/api/tasks', methods=['POST'])
def create_task():
    body = _json_body()
    task = bridge.tasks.create(
        body.get('title'),
        body.get('description') or '',
        body.get('assignee') or None,
        body.get('category') or 'general',
        body.get('priority') or 'medium',
        agent=body.get('agent') or 'system',
    )
    bridge.broadcast_tasks()
    return task, 201


@app.route('/api/tasks/stats')
def task_stats():
    return bridge.tasks.stats()


@app.route('/api/tasks/archive', methods=['POST'])
def archive_tasks():
    body = _json_body()
    archived = bridge.tasks.archive(cutoff_days=_int_field(body, 'cutoffDays', config.ARCHIVE_AFTER_DAYS))
    if archived:
        bridge.broadcast_tasks()
    return {'success': True, 'archived': archived}


@app.route('/api/tasks/prune', methods=['POST'])
def prune_tasks():
    body = _json_body()
    removed = bridge.tasks.prune(
        max_activity=_int_field(body, 'maxActivity', config.MAX_ACTIVITY),
        max_logs_per_task=_int_field(body, 'maxLogsPerTask', config.MAX_LOGS_PER_TASK),
    )
    bridge.broadcast_tasks()
    return dict(removed, success=True)


@app.route('/api/tasks/<task_id>', methods=['GET'])
def get_task(task_id):
    return bridge.tasks.get(task_id)


@app.route('/api/tasks/<task_id>', methods=['PATCH'])
def update_task(task_id):
    body = _json_body()
    task = bridge.tasks.update(task_id, body, agent=body.get('agent') or 'system')
    bridge.broadcast_tasks()
    return task


@app.route('/api/tasks/<task_id>', methods=['DELETE'])
def delete_task(task_id):
    deleted = bridge.tasks.delete(task_id)
    bridge.broadcast_tasks()
    return {'success': True, 'deleted': deleted}


@app.route('/api/tasks/<task_id>/comments', methods=['POST'])
def add_comment(task_id):
    body = _json_body()
    comment = bridge.tasks.add_comment(task_id, body.get('author') or 'system', body.get('text'))
    bridge.broadcast_tasks()
    return comment, 201


@app.route('/api/tasks/<task_id>/logs', methods=['GET'])
def task_logs(task_id):
    logs = bridge.tasks.get_logs(task_id)
    return {'taskId': task_id, 'logs': logs, 'count': len(logs)}


@app.route('/api/tasks/<task_id>/logs', methods=['POST'])
def add_task_log(task_id):
    body = _json_body()
    entry = bridge.tasks.add_log(
        task_id,
        body.get('message'),
        body.get('type') or body.get('logType') or 'update',
        body.get('agent') or 'seven',
    )
    bridge.broadcast_tasks()
    bridge.broadcast_task_log(task_id, entry)
    return entry, 201


@app.route('/api/tasks/<task_id>/logs/<log_id>', methods=['DELETE'])
def delete_task_log(task_id, log_id):
    deleted = bridge.tasks.delete_log(task_id, log_id)
    bridge.broadcast_tasks()
    return {'success': True, 'deleted': deleted}


# -- messages ---------------------------------------------------------------

@app.route('/api/messages', methods=['GET'])
def list_messages():
    messages = bridge.messages.list_messages(
        agent=request.args.get('agent') or None,
        sender=request.args.get('from') or None,
        status=request.args.get('status') or None,
        unread=_flag_arg('unread'),
    )
    return {
        'messages': messages,
        'counts': bridge.messages.counts(),
        'lastUpdated': bridge.messages.load().get('lastUpdated'),
    }


@app.route('/api/messages', methods=['POST'])
def send_message():
    body = _json_body()
    message = bridge.messages.create(
        body.get('from') or 'seven',
        body.get('to'),
        body.get('subject'),
        body.get('content') or '',
        body.get('type') or 'request',
        body.get('taskId'),
    )
    bridge.broadcast_messages()
    return message, 201


@app.route('/api/messages/counts')
def message_counts():
    return bridge.messages.counts()


@app.route('/api/messages/<message_id>', methods=['PATCH'])
def update_message(message_id):
    message = bridge.messages.update(message_id, _json_body())
    bridge.broadcast_messages()
    return message


@app.route('/api/messages/<message_id>', methods=['DELETE'])
def delete_message(message_id):
    deleted = bridge.messages.delete(message_id)
    bridge.broadcast_messages()
    return {'success': True, 'deleted': deleted}


@app.route('/api/messages/<message_id>/reply', methods=['POST'])
def reply_to_message(message_id):
    body = _json_body()
    reply = bridge.messages.reply(message_id, body.get('from') or 'system', body.get('text'),
                                  complete=bool(body.get('complete')))
    bridge.broadcast_messages()
    return reply, 201


@app.route('/api/messages/<message_id>/create-task', methods=['POST'])
def create_task_from_message(message_id):
    result = message_store.create_task_from_message(bridge.messages, bridge.tasks, message_id)
    bridge.broadcast_tasks()
    bridge.broadcast_messages()
    return result, 201


@app.route('/api/inbox/counts')
def inbox_counts():
    return _status(crew_tools.inbox_counts())


# -- crew automation ----------------------------------------------------------

@app.route('/api/cron')
def cron():
    return crew_tools.cron_jobs()


@app.route('/api/stall')
def stall():
    return _status(crew_tools.stall_status())


@app.route('/api/stall/check', methods=['POST'])
def stall_check():
    return _action(crew_tools.stall_check)


@app.route('/api/stall/reset', methods=['POST'])
def stall_reset():
    return _action(crew_tools.stall_reset)


@app.route('/api/work-loop')
def work_loop():
    return _status(crew_tools.work_loop_status())


@app.route('/api/work-loop/<command>', methods=['POST'])
def work_loop_command(command):
    return _action(crew_tools.work_loop_command, command)


@app.route('/api/work-loop/queue')
def work_loop_queue():
    return _status(crew_tools.work_loop_queue())


@app.route('/api/work-loop/priority/<task_id>', methods=['POST'])
def work_loop_priority(task_id):
    return _action(crew_tools.work_loop_priority, task_id)


@app.route('/api/git-locks')
def git_locks():
    return _status(crew_tools.git_locks_status())


@app.route('/api/git-locks/conflicts')
def git_lock_conflicts():
    return crew_tools.git_lock_conflicts()


@app.route('/api/git-locks/files/<task_id>')
def git_lock_files(task_id):
    return crew_tools.git_lock_files(task_id)


@app.route('/api/git-locks/refresh', methods=['POST'])
def git_locks_refresh():
    return _action(crew_tools.git_locks_refresh)


@app.route('/api/checkpoints')
def checkpoints():
    return _status(crew_tools.checkpoints())


@app.route('/api/checkpoints/status')
def checkpoint_status():
    try:
        return crew_tools.checkpoint_status()
    except CollaboratorUnavailable as exc:
        return {'error': exc.message}, 500


@app.route('/api/meta-learning')
def meta_learning():
    return _status(crew_tools.meta_learning_summary())


@app.route('/api/meta-learning/analyze', methods=['POST'])
def meta_learning_analyze():
    return _action(crew_tools.meta_learning_analyze)


@app.route('/api/meta-learning/<section>')
def meta_learning_text(section):
    if section not in ('lessons', 'improvements'):
        raise NotFound(f'Unknown meta-learning section: {section}')
    return Response(crew_tools.meta_learning_text(section), mimetype='text/plain')


@app.route('/api/meta-learning/mark-implemented/<improvement_id>', methods=['POST'])
def meta_learning_mark_implemented(improvement_id):
    return _action(crew_tools.meta_learning_mark_implemented, improvement_id)


# -- @mention routing -----------------------------------------------------------

@app.route('/api/mention/roster')
def mention_roster():
    return crew_tools.mention_roster()


@app.route('/api/mention/parse', methods=['POST'])
def mention_parse():
    body = _json_body()
    text = body.get('message') or body.get('text') or ''
    return {
        'text': text,
        'mentions': crew_tools.parse_mentions(text),
        'validAgents': list(crew_tools.MENTION_ROSTER),
    }


@app.route('/api/mention/route', methods=['POST'])
def mention_route():
    body = _json_body()
    result, ok = crew_tools.route_mention(body.get('message') or body.get('text') or '', body.get('agent'))
    return result, 200 if ok else 500


@app.route('/api/mention/sessions')
def mention_sessions():
    return crew_tools.mention_sessions(bridge.aggregator.sessions())


# -- real-time channel -----------------------------------------------------------

@socketio.on('connect')
def handle_connect(auth=None):
    """Register the client and push init, tasks and messages."""
    bridge.connect(request.sid, request.remote_addr)


@socketio.on('disconnect')
def handle_disconnect(reason=None):
    bridge.disconnect(request.sid)


@socketio.on('message')
def handle_message(frame):
    bridge.handle_frame(request.sid, frame)


def main():  # pragma: no cover
    config.configure_logging()
    bridge.start()
    log.info('[BOOT] LCARS bridge online at http://%s:%s', config.HOST, config.PORT)
    try:
        socketio.run(app, host=config.HOST, port=config.PORT, allow_unsafe_werkzeug=True)
    finally:
        bridge.stop()


if __name__ == '__main__':  # pragma: no cover
    main()
