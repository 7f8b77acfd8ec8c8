"""Bridge runtime: wires stores, aggregator and hub to the real-time channel."""

import json
import logging
import threading
import time

import collectors
import config
from cache import TTLCache
from errors import BridgeError
from hub import BroadcastHub
from message_store import MessageStore
from snapshot import SnapshotAggregator
from task_store import TaskStore
from watchers import BridgeWatcher, detect_qc_completions

log = logging.getLogger(__name__)


class Bridge:
    def __init__(self, hub, aggregator, tasks, messages, portfolio_path=config.QUARK_PORTFOLIO,
                 update_interval=config.UPDATE_INTERVAL_SEC, cache=None, watcher_factory=BridgeWatcher):
        self.hub = hub
        self.aggregator = aggregator
        self.tasks = tasks
        self.messages = messages
        self.cache = cache
        self.portfolio_path = portfolio_path
        self.update_interval = update_interval
        self.started_at = time.time()
        self._watcher_factory = watcher_factory
        self._watcher = None
        self._loop = None
        self._stop = threading.Event()
        self._tasks_lock = threading.Lock()
        self._last_tasks = None
        self._handlers = {
            'ping': self._on_ping,
            'refresh': self._on_refresh,
            'get_tasks': self._on_get_tasks,
            'update_task': self._on_update_task,
            'add_comment': self._on_add_comment,
            'create_task': self._on_create_task,
            'add_task_log': self._on_add_task_log,
            'get_messages': self._on_get_messages,
            'send_message': self._on_send_message,
            'update_message': self._on_update_message,
        }

    # -- payloads ---------------------------------------------------------

    def snapshot(self):
        return self.aggregator.gather()

    def tasks_payload(self, kind='tasks'):
        return {'type': kind, 'data': self.tasks.load()}

    def messages_payload(self, kind='messages'):
        return {'type': kind, 'data': self.messages.load(), 'counts': self.messages.counts()}

    def health(self):
        return {
            'status': 'healthy',
            'clients': self.hub.connection_count,
            'uptime': round(time.time() - self.started_at, 3),
        }

    # -- connections ------------------------------------------------------

    def connect(self, sid, remote=None):
        """Register a client and bring it up to date before it joins broadcasts."""
        self.hub.register(sid, remote)
        try:
            self.hub.send(sid, {'type': 'init', 'data': self.snapshot()})
            self.hub.send(sid, self.tasks_payload())
            self.hub.send(sid, self.messages_payload())
        except Exception as exc:
            log.error('[WS] error sending init data to %s: %s', sid, exc)
        self.hub.open(sid)

    def disconnect(self, sid):
        self.hub.unregister(sid)

    # -- broadcasts -------------------------------------------------------

    def broadcast_tasks(self):
        self.hub.broadcast(self.tasks_payload('tasks_update'))

    def broadcast_messages(self):
        self.hub.broadcast(self.messages_payload('messages_update'))

    def broadcast_snapshot(self, kind='update'):
        self.hub.broadcast({'type': kind, 'data': self.snapshot()})

    def broadcast_task_log(self, task_id, entry):
        self.hub.broadcast_now({'type': 'task_log_update', 'taskId': task_id, 'log': entry})

    # -- inbound frames ---------------------------------------------------

    def handle_frame(self, sid, frame):
        """Dispatch one client frame; errors are logged, never raised."""
        if isinstance(frame, (bytes, bytearray)):
            frame = frame.decode('utf-8', errors='replace')
        if isinstance(frame, str):
            try:
                frame = json.loads(frame)
            except ValueError:
                log.warning('[WS] invalid JSON frame from %s', sid)
                return
        if not isinstance(frame, dict):
            log.debug('[WS] ignoring non-object frame from %s', sid)
            return
        handler = self._handlers.get(frame.get('type'))
        if handler is None:
            log.debug('[WS] unknown message type: %s', frame.get('type'))
            return
        try:
            handler(sid, frame)
        except BridgeError as exc:
            log.warning('[WS] %s from %s rejected: %s', frame.get('type'), sid, exc.message)
        except Exception as exc:
            log.error('[WS] message handling error (%s): %s', frame.get('type'), exc)

    def _on_ping(self, sid, frame):
        self.hub.send(sid, {'type': 'pong'})

    def _on_refresh(self, sid, frame):
        self.hub.send(sid, {'type': 'update', 'data': self.snapshot()})

    def _on_get_tasks(self, sid, frame):
        self.hub.send(sid, self.tasks_payload())

    def _on_update_task(self, sid, frame):
        if frame.get('taskId') and frame.get('updates'):
            self.tasks.update(frame['taskId'], frame['updates'], agent=frame.get('agent') or 'system')
            self.broadcast_tasks()

    def _on_add_comment(self, sid, frame):
        if frame.get('taskId') and frame.get('text'):
            self.tasks.add_comment(frame['taskId'], frame.get('author') or 'system', frame['text'])
            self.broadcast_tasks()

    def _on_create_task(self, sid, frame):
        if frame.get('title'):
            self.tasks.create(
                frame['title'], frame.get('description') or '', frame.get('assignee'),
                frame.get('category') or 'general', frame.get('priority') or 'medium',
            )
            self.broadcast_tasks()

    def _on_add_task_log(self, sid, frame):
        if frame.get('taskId') and frame.get('message'):
            entry = self.tasks.add_log(
                frame['taskId'], frame['message'], frame.get('logType') or 'update', frame.get('agent') or 'seven',
            )
            self.broadcast_tasks()
            self.broadcast_task_log(frame['taskId'], entry)

    def _on_get_messages(self, sid, frame):
        self.hub.send(sid, self.messages_payload())

    def _on_send_message(self, sid, frame):
        if frame.get('to') and frame.get('subject'):
            self.messages.create(
                frame.get('from') or 'seven', frame['to'], frame['subject'], frame.get('content') or '',
                frame.get('msgType') or 'request', frame.get('taskId'),
            )
            self.broadcast_messages()

    def _on_update_message(self, sid, frame):
        if frame.get('messageId') and frame.get('updates'):
            self.messages.update(frame['messageId'], frame['updates'])
            self.broadcast_messages()

    # -- file changes -----------------------------------------------------

    def on_portfolio_changed(self):
        log.info('[WATCH] portfolio changed, refreshing trade data')
        self.aggregator.invalidate_portfolio()
        self.broadcast_snapshot('trade_update')

    def on_tasks_changed(self):
        with self._tasks_lock:
            self.tasks.invalidate()
            current = self.tasks.load()
            for completed in detect_qc_completions(self._last_tasks, current):
                payload = dict(completed, timestamp=collectors.utc_now_iso())
                self.hub.broadcast_now({'type': 'task_completed', 'data': payload})
                self.tasks.record_activity(completed['taskId'], 'status', 'qc_approved', agent='data')
                log.info('[TASKS] %s completed by Data', completed['taskId'])
            self._last_tasks = self.tasks.load()
        self.broadcast_tasks()

    def on_messages_changed(self):
        self.messages.invalidate()
        self.broadcast_messages()

    # -- lifecycle --------------------------------------------------------

    def run_update_loop(self):
        while not self._stop.wait(self.update_interval):
            try:
                self.broadcast_snapshot('update')
            except Exception as exc:
                log.error('[CORE] update loop error: %s', exc)

    def start(self, watch=True):
        if self._loop is not None:
            return
        self._stop.clear()
        self._last_tasks = self.tasks.load()
        self._loop = threading.Thread(target=self.run_update_loop, name='bridge-update', daemon=True)
        self._loop.start()
        if watch:
            self._watcher = self._watcher_factory({
                self.portfolio_path: self.on_portfolio_changed,
                self.tasks.path: self.on_tasks_changed,
                self.messages.path: self.on_messages_changed,
            })
            self._watcher.start()
        log.info('[CORE] bridge started (update every %ss)', self.update_interval)

    def stop(self):
        self._stop.set()
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
        if self._loop is not None:
            self._loop.join(timeout=2)
            self._loop = None
        self.hub.close()
        self.aggregator.shutdown()
        if self.cache is not None:
            self.cache.shutdown()


def create_bridge(emit, disconnect=None, tasks_file=config.TASKS_FILE, messages_file=config.MESSAGES_FILE,
                  archive_dir=config.ARCHIVE_DIR, backup_dir=config.BACKUP_DIR,
                  portfolio_path=config.QUARK_PORTFOLIO, aggregator=None, debounce=config.BROADCAST_DEBOUNCE_SEC,
                  update_interval=config.UPDATE_INTERVAL_SEC):
    cache = TTLCache()
    if aggregator is None:
        aggregator = SnapshotAggregator(cache, portfolio_path=portfolio_path)
    hub = BroadcastHub(emit, debounce=debounce, disconnect=disconnect)
    tasks = TaskStore(tasks_file, archive_dir=archive_dir, backup_dir=backup_dir)
    messages = MessageStore(messages_file, backup_dir=backup_dir)
    return Bridge(hub, aggregator, tasks, messages, portfolio_path=portfolio_path,
                  update_interval=update_interval, cache=cache)
