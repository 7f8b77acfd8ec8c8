"""Shared configuration, paths, and logging for the LCARS bridge dashboard."""

import logging
import os

PORT = int(os.environ.get('LCARS_PORT', '4242'))
HOST = '0.0.0.0'
LOG_LEVEL = os.environ.get('LCARS_LOG_LEVEL', 'INFO').strip().upper()

# Everything on disk hangs off the OpenClaw home directory.
OPENCLAW_DIR = os.path.expanduser('~/.openclaw')
WORKSPACE_DIR = os.path.join(OPENCLAW_DIR, 'workspace')
SKILLS_DIR = os.path.join(OPENCLAW_DIR, 'skills')
CREW_DIR = os.path.join(OPENCLAW_DIR, 'crew')
SCRIPTS_DIR = os.path.join(OPENCLAW_DIR, 'scripts')
DASHBOARD_DIR = os.path.join(OPENCLAW_DIR, 'dashboard')
QUARK_PORTFOLIO = os.path.join(WORKSPACE_DIR, 'quark', 'portfolio.json')
TASKS_FILE = os.path.join(DASHBOARD_DIR, 'tasks.json')
MESSAGES_FILE = os.path.join(CREW_DIR, 'messages.json')
ARCHIVE_DIR = os.path.join(DASHBOARD_DIR, 'archive')
BACKUP_DIR = os.path.join(DASHBOARD_DIR, 'backups')
GIT_LOCKS_STATE = os.path.join(CREW_DIR, '.locks', 'git-locks-state.json')
STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'static')

GATEWAY_URL = 'http://127.0.0.1:18789'
WEATHER_URL = 'https://wttr.in/{location}?format=j1'
WEATHER_LOCATION = os.environ.get('LCARS_WEATHER_LOCATION', '').strip()
EMAIL_ACCOUNTS = [
    item.strip()
    for item in os.environ.get('LCARS_EMAIL_ACCOUNTS', '').split(',')
    if item.strip()
]

# Loop cadence (seconds).
UPDATE_INTERVAL_SEC = 10.0
BROADCAST_DEBOUNCE_SEC = 0.1
KEEPALIVE_INTERVAL_SEC = 30
GATHER_TIMEOUT_SEC = 4.0

# Per-source cache TTLs (seconds). Volatile or cheap sources expire quickly,
# expensive or slow-moving ones are kept longer.
CACHE_TTLS = {
    'system': 15.0,
    'git': 30.0,
    'worktrees': 30.0,
    'sessions': 10.0,
    'quark': 5.0,
    'email': 30.0,
    'gateway': 60.0,
    'weather': 3600.0,
}

# Document stores.
DOCUMENT_READ_CACHE_SEC = 2.0
ARCHIVE_AFTER_DAYS = 7
MAX_ACTIVITY = 500
MAX_LOGS_PER_TASK = 100
MAX_BACKUPS = 10

_logging_configured = False


def configure_logging(level=None):
    """Install the process-wide log format once."""
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )
    _logging_configured = True
