"""Task board persistence: CRUD, activity feed, archive and prune over tasks.json.

Every mutation runs under the store lock as read fresh document -> mutate
-> persist through the safe writer, so two callers can never interleave and
drop each other's update. ``load`` is served from a short read cache that is
dropped on every own write.
"""

import copy
import datetime
import logging
import os
import random
import string
import threading
import time
from contextlib import contextmanager

import collectors
import config
from errors import NotFound, PersistenceBlocked, PersistenceFailed, TaskNotFound, ValidationError
from safe_writer import SafeWriter, write_json_atomic

log = logging.getLogger(__name__)

TASK_STATUSES = ('inbox', 'assigned', 'in_progress', 'peer_review', 'review', 'done')
DEFAULT_COLUMNS = ['inbox', 'assigned', 'in_progress', 'review', 'done']
COMPACT_DESCRIPTION_CHARS = 200
COMPACT_ACTIVITY_ITEMS = 50
PATCH_FIELDS = ('title', 'description', 'status', 'assignee', 'category', 'priority')

DEFAULT_AGENTS = {
    'seven': {'name': 'Seven of Nine', 'role': 'Number One', 'department': 'CMD', 'badges': ['LEAD'], 'color': '#cc99cc', 'model': 'opus'},
    'geordi': {'name': 'Geordi La Forge', 'role': 'Chief Engineer', 'department': 'ENG', 'badges': ['SPC'], 'color': '#9999ff', 'model': 'opus'},
    'belanna': {'name': "B'Elanna Torres", 'role': 'Chief Engineer', 'department': 'ENG', 'badges': ['SPC'], 'color': '#cc6666', 'model': 'opus'},
    'icheb': {'name': 'Icheb', 'role': 'Borg Specialist', 'department': 'ENG', 'badges': [], 'color': '#66cccc', 'model': 'minimax'},
    'uhura': {'name': 'Nyota Uhura', 'role': 'Comms Officer', 'department': 'COM', 'badges': [], 'color': '#cc6699', 'model': 'minimax'},
    'harry': {'name': 'Harry Kim', 'role': 'Operations', 'department': 'COM', 'badges': [], 'color': '#99ccff', 'model': 'minimax'},
    'spock': {'name': 'Spock', 'role': 'Science Officer', 'department': 'SCI', 'badges': ['SPC'], 'color': '#99cc99', 'model': 'opus'},
    'tuvok': {'name': 'Tuvok', 'role': 'Security/Research', 'department': 'SCI', 'badges': ['SPC'], 'color': '#9999cc', 'model': 'opus'},
    'doctor': {'name': 'The Doctor', 'role': 'EMH Research', 'department': 'SCI', 'badges': [], 'color': '#99ff99', 'model': 'minimax'},
    'quark': {'name': 'Quark', 'role': 'Trade Advisor', 'department': 'TRD', 'badges': [], 'color': '#ffcc99', 'model': 'opus'},
    'tom': {'name': 'Tom Paris', 'role': 'Risk Trader', 'department': 'TRD', 'badges': [], 'color': '#ff9999', 'model': 'opus'},
    'neelix': {'name': 'Neelix', 'role': 'Resource Mgmt', 'department': 'TRD', 'badges': [], 'color': '#ffcc66', 'model': 'minimax'},
    'data': {'name': 'Data', 'role': 'Quality Control', 'department': 'QC', 'badges': ['SPC', 'QC'], 'color': '#ffd700', 'model': 'opus'},
}

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(prefix='item'):
    """Timestamp plus random base36 suffix, e.g. ``task-1769858335746-k3j9x0a2b``."""
    suffix = ''.join(random.choices(_ID_ALPHABET, k=9))
    return f'{prefix}-{int(time.time() * 1000)}-{suffix}'


def parse_iso(value):
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def default_document():
    return {
        'version': '1.0',
        'lastUpdated': collectors.utc_now_iso(),
        'columns': list(DEFAULT_COLUMNS),
        'tasks': [],
        'activity': [],
        'agents': copy.deepcopy(DEFAULT_AGENTS),
    }


def make_activity(task, activity_type, action, agent='system', **context):
    entry = {
        'id': generate_id('act'),
        'type': activity_type,
        'action': action,
        'agent': agent,
        'taskId': task.get('id'),
        'taskTitle': task.get('title'),
        'timestamp': collectors.utc_now_iso(),
    }
    entry.update(context)
    return entry


def _require_text(value, message):
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(message, code='MISSING_REQUIRED_FIELD')
    return value


def build_task_patch(updates):
    """Allow-listed, validated subset of a client-supplied task update."""
    if not isinstance(updates, dict):
        raise ValidationError('Updates must be an object')
    patch = {}
    for field in PATCH_FIELDS:
        if field not in updates:
            continue
        value = updates[field]
        if field == 'title':
            _require_text(value, 'Title is required')
        elif field == 'status':
            if value not in TASK_STATUSES:
                raise ValidationError(f'Unknown status: {value}', details={'validStatuses': list(TASK_STATUSES)})
        elif field == 'assignee':
            if value is not None and not isinstance(value, str):
                raise ValidationError('Assignee must be a string or null')
            value = value or None
        elif value is not None and not isinstance(value, str):
            raise ValidationError(f'{field} must be a string')
        patch[field] = value
    return patch


class DocumentStore:
    """Lock-serialised read/mutate/persist cycle over one JSON document."""

    collection_key = None
    tag = 'STORE'

    def __init__(self, path, writer=None, backup_dir=None, read_cache_sec=config.DOCUMENT_READ_CACHE_SEC,
                 clock=time.monotonic):
        self.path = path
        self.writer = writer or SafeWriter(path, self.collection_key, backup_dir=backup_dir)
        self.read_cache_sec = read_cache_sec
        self._clock = clock
        self._lock = threading.RLock()
        self._cached = None
        self._cached_at = 0.0

    def default_document(self):
        raise NotImplementedError

    def normalize(self, doc):
        doc.setdefault(self.collection_key, [])
        return doc

    def _read_fresh(self, strict=False):
        """Read the document from disk.

        An existing file that is not a valid document degrades to defaults for
        readers, but a mutation (``strict``) must not overwrite it.
        """
        doc = collectors.read_json_file(self.path)
        if not isinstance(doc, dict) or not isinstance(doc.get(self.collection_key), list):
            if doc is not None or os.path.exists(self.path):
                if strict:
                    log.error('[%s] %s is not a valid document, refusing to overwrite', self.tag, self.path)
                    raise PersistenceBlocked(f'{self.path} is not a valid {self.collection_key} document')
                log.error('[%s] %s is not a valid document, using defaults', self.tag, self.path)
            doc = self.default_document()
        return self.normalize(doc)

    def load(self):
        """Current document, served from the read cache when recent."""
        with self._lock:
            now = self._clock()
            if self._cached is None or (now - self._cached_at) >= self.read_cache_sec:
                self._cached = self._read_fresh()
                self._cached_at = now
            return copy.deepcopy(self._cached)

    def invalidate(self):
        with self._lock:
            self._cached = None

    def before_persist(self, doc):
        """Hook for bounds enforced on every save."""

    def _persist(self, doc, reason, allow_shrink=False):
        doc['lastUpdated'] = collectors.utc_now_iso()
        self.before_persist(doc)
        if allow_shrink:
            result = self.writer.write(doc, reason, allow_shrink=True)
        else:
            result = self.writer.write(doc, reason)
        self._cached = None
        if not result.get('success'):
            error = result.get('error') or 'write failed'
            if result.get('blocked'):
                log.warning('[%s] write blocked (%s): %s', self.tag, reason, error)
                raise PersistenceBlocked(error)
            raise PersistenceFailed(error)

    @contextmanager
    def _mutate(self, reason, allow_shrink=False):
        # An exception inside the block skips persistence entirely.
        with self._lock:
            doc = self._read_fresh(strict=True)
            yield doc
            self._persist(doc, reason, allow_shrink=allow_shrink)


class TaskStore(DocumentStore):
    collection_key = 'tasks'
    tag = 'TASKS'

    def __init__(self, path=config.TASKS_FILE, archive_dir=config.ARCHIVE_DIR, writer=None,
                 backup_dir=config.BACKUP_DIR, max_activity=config.MAX_ACTIVITY, **kwargs):
        super().__init__(path, writer=writer, backup_dir=backup_dir, **kwargs)
        self.archive_dir = archive_dir
        self.max_activity = max_activity

    def default_document(self):
        return default_document()

    def normalize(self, doc):
        doc.setdefault('tasks', [])
        doc.setdefault('activity', [])
        doc.setdefault('columns', list(DEFAULT_COLUMNS))
        doc.setdefault('agents', copy.deepcopy(DEFAULT_AGENTS))
        return doc

    def before_persist(self, doc):
        if len(doc['activity']) > self.max_activity:
            doc['activity'] = doc['activity'][-self.max_activity:]

    @staticmethod
    def _find(doc, task_id):
        for task in doc['tasks']:
            if task.get('id') == task_id:
                return task
        raise TaskNotFound(task_id)

    def list_tasks(self, status=None, assignee=None, exclude_done=False, limit=None, offset=0, compact=False):
        """Filtered page of the board plus pagination metadata."""
        doc = self.load()
        tasks = doc['tasks']
        if status:
            tasks = [t for t in tasks if t.get('status') == status]
        if assignee:
            tasks = [t for t in tasks if t.get('assignee') == assignee]
        if exclude_done:
            tasks = [t for t in tasks if t.get('status') != 'done']
        total = len(tasks)
        offset = max(0, int(offset or 0))
        page = tasks[offset:offset + limit] if limit is not None else tasks[offset:]
        if compact:
            page = [self._compact(t) for t in page]
            doc['activity'] = doc['activity'][-COMPACT_ACTIVITY_ITEMS:]
        doc['tasks'] = page
        doc['pagination'] = {
            'total': total,
            'limit': limit,
            'offset': offset,
            'returned': len(page),
            'hasMore': offset + len(page) < total,
        }
        return doc

    @staticmethod
    def _compact(task):
        slim = {k: v for k, v in task.items() if k not in ('comments', 'logs')}
        slim['commentCount'] = len(task.get('comments') or [])
        slim['logCount'] = len(task.get('logs') or [])
        description = slim.get('description')
        if isinstance(description, str) and len(description) > COMPACT_DESCRIPTION_CHARS:
            slim['description'] = description[:COMPACT_DESCRIPTION_CHARS] + '...'
        return slim

    def get(self, task_id):
        return self._find(self.load(), task_id)

    def get_logs(self, task_id):
        return self.get(task_id).get('logs') or []

    def create(self, title, description='', assignee=None, category='general', priority='medium', agent='system'):
        _require_text(title, 'Title is required')
        now = collectors.utc_now_iso()
        task = {
            'id': generate_id('task'),
            'title': title,
            'description': description or '',
            'status': 'assigned' if assignee else 'inbox',
            'assignee': assignee or None,
            'category': category or 'general',
            'priority': priority or 'medium',
            'createdAt': now,
            'updatedAt': now,
            'comments': [],
            'logs': [],
        }
        with self._mutate(f'create task {task["id"]}') as doc:
            doc['tasks'].append(task)
            doc['activity'].append(make_activity(task, 'task', 'created', agent))
            if assignee:
                doc['activity'].append(make_activity(task, 'status', 'assigned', agent, target=assignee))
        log.info('[TASKS] created %s: %s', task['id'], title)
        return copy.deepcopy(task)

    def update(self, task_id, updates, agent='system'):
        patch = build_task_patch(updates)
        with self._mutate(f'update task {task_id}') as doc:
            task = self._find(doc, task_id)
            previous = task.get('status')
            task.update(patch)
            task['updatedAt'] = collectors.utc_now_iso()
            if 'status' in patch and patch['status'] != previous:
                doc['activity'].append(make_activity(
                    task, 'status', 'moved', agent, **{'from': previous, 'to': patch['status']}))
            result = copy.deepcopy(task)
        log.info('[TASKS] updated %s: %s', task_id, sorted(patch))
        return result

    def delete(self, task_id, agent='system'):
        with self._mutate(f'delete task {task_id}') as doc:
            task = self._find(doc, task_id)
            doc['tasks'].remove(task)
            doc['activity'].append(make_activity(task, 'task', 'deleted', agent))
        log.info('[TASKS] deleted %s', task_id)
        return task

    def add_comment(self, task_id, author, text):
        _require_text(text, 'Comment text is required')
        author = author or 'system'
        comment = {'id': generate_id('c'), 'author': author, 'text': text, 'timestamp': collectors.utc_now_iso()}
        with self._mutate(f'comment on {task_id}') as doc:
            task = self._find(doc, task_id)
            task.setdefault('comments', []).append(comment)
            task['updatedAt'] = comment['timestamp']
            doc['activity'].append(make_activity(task, 'comment', 'added', author))
        return comment

    def add_log(self, task_id, message, log_type='update', agent='seven'):
        _require_text(message, 'Log message is required')
        log_type = log_type or 'update'
        agent = agent or 'seven'
        entry = {
            'id': generate_id('log'),
            'type': log_type,
            'agent': agent,
            'message': message,
            'timestamp': collectors.utc_now_iso(),
        }
        with self._mutate(f'log on {task_id}') as doc:
            task = self._find(doc, task_id)
            task.setdefault('logs', []).append(entry)
            task['updatedAt'] = entry['timestamp']
            doc['activity'].append(make_activity(
                task, 'log', 'logged', agent, message=message, logType=log_type))
        log.info('[TASKS] log added to %s (%s by %s)', task_id, log_type, agent)
        return entry

    def delete_log(self, task_id, log_id):
        with self._mutate(f'delete log {log_id}') as doc:
            task = self._find(doc, task_id)
            logs = task.get('logs') or []
            for entry in logs:
                if entry.get('id') == log_id:
                    logs.remove(entry)
                    break
            else:
                raise NotFound('Log not found', details={'taskId': task_id, 'logId': log_id})
            task['updatedAt'] = collectors.utc_now_iso()
        return entry

    def record_activity(self, task_id, activity_type, action, agent='system', **context):
        with self._mutate(f'{action} on {task_id}') as doc:
            task = self._find(doc, task_id)
            entry = make_activity(task, activity_type, action, agent, **context)
            doc['activity'].append(entry)
        return entry

    def archive_path(self, day):
        return os.path.join(self.archive_dir, f'tasks-{day.isoformat()}.json')

    def archive(self, cutoff_days=config.ARCHIVE_AFTER_DAYS, now=None):
        """Move done tasks untouched for ``cutoff_days`` into today's archive file."""
        now = now or datetime.datetime.now(datetime.timezone.utc)
        cutoff = now - datetime.timedelta(days=cutoff_days)
        with self._lock:
            doc = self._read_fresh(strict=True)
            stale = []
            for task in doc['tasks']:
                updated = parse_iso(task.get('updatedAt'))
                if task.get('status') == 'done' and updated is not None and updated < cutoff:
                    stale.append(task)
            if not stale:
                return 0
            path = self.archive_path(now.date())
            existing = collectors.read_json_file(path)
            existing = existing if isinstance(existing, list) else []
            known = {item.get('id') for item in existing if isinstance(item, dict)}
            existing.extend(task for task in stale if task.get('id') not in known)
            write_json_atomic(path, existing)

            stale_ids = {task.get('id') for task in stale}
            doc['tasks'] = [t for t in doc['tasks'] if t.get('id') not in stale_ids]
            self._persist(doc, f'archive {len(stale)} tasks', allow_shrink=True)
        log.info('[TASKS] archived %d tasks to %s', len(stale), path)
        return len(stale)

    def prune(self, max_activity=config.MAX_ACTIVITY, max_logs_per_task=config.MAX_LOGS_PER_TASK):
        """Trim the activity feed and per-task logs to their newest entries."""
        # every save caps the feed at self.max_activity anyway
        max_activity = min(max_activity, self.max_activity)
        with self._mutate('prune') as doc:
            activity_removed = max(0, len(doc['activity']) - max_activity)
            if activity_removed:
                doc['activity'] = doc['activity'][-max_activity:] if max_activity > 0 else []
            logs_removed = 0
            for task in doc['tasks']:
                logs = task.get('logs') or []
                if len(logs) > max_logs_per_task:
                    logs_removed += len(logs) - max_logs_per_task
                    task['logs'] = logs[-max_logs_per_task:] if max_logs_per_task > 0 else []
        log.info('[TASKS] pruned %d activity entries, %d logs', activity_removed, logs_removed)
        return {'activityRemoved': activity_removed, 'logsRemoved': logs_removed}

    def stats(self):
        doc = self.load()

        def tally(field, fallback):
            counts = {}
            for task in doc['tasks']:
                key = task.get(field) or fallback
                counts[key] = counts.get(key, 0) + 1
            return counts

        by_status = {status: 0 for status in TASK_STATUSES}
        by_status.update(tally('status', 'inbox'))
        return {
            'total': len(doc['tasks']),
            'byStatus': by_status,
            'byAssignee': tally('assignee', 'unassigned'),
            'byPriority': tally('priority', 'medium'),
            'byCategory': tally('category', 'general'),
            'activityCount': len(doc['activity']),
            'lastUpdated': doc.get('lastUpdated'),
        }