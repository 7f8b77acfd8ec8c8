"""watchdog observers for the portfolio, tasks and messages files."""

import logging
import os

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

log = logging.getLogger(__name__)

WATCHED_EVENTS = ('created', 'modified', 'moved')


class DocumentChangeHandler(FileSystemEventHandler):
    """Dispatch changes of specific files to their callbacks.

    Atomic writers rename a temp file over the target, so the target shows up
    as the destination of a moved event rather than as a modification.
    """

    def __init__(self, callbacks):
        super().__init__()
        self.callbacks = {os.path.abspath(path): cb for path, cb in callbacks.items()}

    def on_any_event(self, event):
        if event.is_directory or event.event_type not in WATCHED_EVENTS:
            return
        paths = {event.src_path, getattr(event, 'dest_path', '') or ''}
        for path in paths:
            callback = self.callbacks.get(os.path.abspath(path)) if path else None
            if callback is None:
                continue
            try:
                callback()
            except Exception as exc:
                log.error('[WATCH] callback for %s failed: %s', path, exc)


class BridgeWatcher:
    def __init__(self, callbacks, observer_factory=Observer):
        self.handler = DocumentChangeHandler(callbacks)
        self._observer_factory = observer_factory
        self._observer = None

    def start(self):
        if self._observer is not None:
            return
        observer = self._observer_factory()
        directories = sorted({os.path.dirname(path) for path in self.handler.callbacks})
        scheduled = 0
        for directory in directories:
            if not os.path.isdir(directory):
                log.warning('[WATCH] %s does not exist, not watching it', directory)
                continue
            observer.schedule(self.handler, directory, recursive=False)
            scheduled += 1
        observer.daemon = True
        observer.start()
        self._observer = observer
        log.info('[WATCH] watching %d directories', scheduled)

    def stop(self):
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=2)
        self._observer = None


def detect_qc_completions(previous, current):
    """Tasks that reached ``done`` since ``previous`` through a move by Data (QC)."""
    if not previous or not current:
        return []
    before = {t.get('id'): t for t in previous.get('tasks') or [] if isinstance(t, dict)}
    activity = current.get('activity') or []
    completed = []
    for task in current.get('tasks') or []:
        old = before.get(task.get('id'))
        if old is None or old.get('status') == 'done' or task.get('status') != 'done':
            continue
        approved_by_data = any(
            entry.get('taskId') == task.get('id') and entry.get('action') == 'moved'
            and entry.get('to') == 'done' and entry.get('agent') == 'data'
            for entry in activity
        )
        if approved_by_data:
            completed.append({
                'taskId': task.get('id'),
                'title': task.get('title'),
                'assignee': task.get('assignee'),
                'category': task.get('category'),
            })
    return completed
