"""Single persistence choke point for the dashboard's JSON documents.

``write(doc, reason)`` answers ``{success, blocked, error}`` and never
raises. Each write goes through a temp file and ``os.replace`` so readers
never observe a half-written document; the previous version is copied to a
rotating backup first. A write that would drop most of an established
collection, or overwrite an existing file that no longer parses, is refused
unless the caller opts in with ``allow_shrink``.
"""

import datetime
import json
import logging
import os
import shutil

import config

log = logging.getLogger(__name__)

SHRINK_MIN_ITEMS = 5
SHRINK_MIN_RATIO = 0.5


def write_json_atomic(path, payload):
    """Write JSON through a sibling temp file, then rename into place."""
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    tmp_path = f'{path}.tmp'
    try:
        with open(tmp_path, 'w', encoding='utf-8') as fp:
            json.dump(payload, fp, indent=2)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class SafeWriter:
    def __init__(self, path, collection_key, backup_dir=None, max_backups=config.MAX_BACKUPS):
        self.path = path
        self.collection_key = collection_key
        self.backup_dir = backup_dir
        self.max_backups = max_backups

    def _current_size(self):
        """Size of the collection on disk; None when the file exists but is unreadable."""
        if not os.path.exists(self.path):
            return 0
        try:
            with open(self.path, 'r', encoding='utf-8') as fp:
                current = json.load(fp)
        except (OSError, ValueError):
            return None
        items = current.get(self.collection_key) if isinstance(current, dict) else None
        return len(items) if isinstance(items, list) else 0

    def _backup(self):
        if not self.backup_dir or not os.path.exists(self.path):
            return
        os.makedirs(self.backup_dir, exist_ok=True)
        stem = os.path.splitext(os.path.basename(self.path))[0]
        stamp = datetime.datetime.now().strftime('%Y%m%d-%H%M%S-%f')
        shutil.copy2(self.path, os.path.join(self.backup_dir, f'{stem}-{stamp}.json'))
        backups = sorted(
            name for name in os.listdir(self.backup_dir)
            if name.startswith(f'{stem}-') and name.endswith('.json')
        )
        for name in backups[:-self.max_backups] if self.max_backups > 0 else backups:
            try:
                os.remove(os.path.join(self.backup_dir, name))
            except OSError as exc:
                log.debug('[WRITER] cannot remove backup %s: %s', name, exc)

    def write(self, doc, reason='', allow_shrink=False):
        items = doc.get(self.collection_key) if isinstance(doc, dict) else None
        if not isinstance(items, list):
            return {'success': False, 'blocked': True,
                    'error': f'document has no {self.collection_key} list'}
        if not allow_shrink:
            current = self._current_size()
            if current is None:
                error = f'refusing to overwrite unreadable {self.path}'
                log.warning('[WRITER] %s blocked (%s): %s', self.path, reason, error)
                return {'success': False, 'blocked': True, 'error': error}
            if current >= SHRINK_MIN_ITEMS and len(items) < current * SHRINK_MIN_RATIO:
                error = f'refusing to shrink {self.collection_key} from {current} to {len(items)}'
                log.warning('[WRITER] %s blocked (%s): %s', self.path, reason, error)
                return {'success': False, 'blocked': True, 'error': error}
        try:
            self._backup()
            write_json_atomic(self.path, doc)
        except (OSError, TypeError, ValueError) as exc:
            log.error('[WRITER] %s failed (%s): %s', self.path, reason, exc)
            return {'success': False, 'blocked': False, 'error': str(exc)}
        log.debug('[WRITER] %s saved (%s)', self.path, reason)
        return {'success': True, 'blocked': False, 'error': None}
