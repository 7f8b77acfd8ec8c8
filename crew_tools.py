"""Adapters for the crew automation scripts behind the dashboard REST surface.

Read adapters return ``(payload, error)``: on failure the payload is the
documented default and ``error`` carries the reason. Action adapters raise
``CollaboratorUnavailable`` and leave the status mapping to the route.
"""

import json
import logging
import os
import re
import time

import collectors
import config
from errors import CollaboratorUnavailable, ValidationError

log = logging.getLogger(__name__)

WORK_LOOP_JS = os.path.join(config.CREW_DIR, 'work-loop.js')
CREW_TASK_JS = os.path.join(config.CREW_DIR, 'crew-task.js')
GIT_LOCKS_JS = os.path.join(config.CREW_DIR, 'git-locks.js')
CHECKPOINT_JS = os.path.join(config.CREW_DIR, 'crew-checkpoint.js')
META_LEARNING_JS = os.path.join(config.CREW_DIR, 'meta-learning.js')
INBOX_CHECK_JS = os.path.join(config.SCRIPTS_DIR, 'crew_inbox_check.js')
STALL_DETECTOR_PY = os.path.join(config.SCRIPTS_DIR, 'stall_detector.py')

WORKLOOP_PROCESS_PATTERN = re.compile(r'--session-id\s+"?workloop-(\w+)-task-(\d+)')
MENTION_PATTERN = re.compile(r'@(\w+)')
DIRECT_LABEL_PATTERN = re.compile(r'subagent:(\w+)-direct')

MENTION_ROSTER = {
    'seven': {'sessionLabel': 'seven-direct', 'role': 'Orchestrator', 'model': 'opus'},
    'geordi': {'sessionLabel': 'geordi-direct', 'role': 'Chief Engineer', 'model': 'sonnet'},
    'belanna': {'sessionLabel': 'belanna-direct', 'role': 'Engineer', 'model': 'sonnet'},
    'icheb': {'sessionLabel': 'icheb-direct', 'role': 'Tech Specialist', 'model': 'Minimax'},
    'spock': {'sessionLabel': 'spock-direct', 'role': 'Science Officer', 'model': 'sonnet'},
    'tuvok': {'sessionLabel': 'tuvok-direct', 'role': 'Security Officer', 'model': 'sonnet'},
    'doctor': {'sessionLabel': 'doctor-direct', 'role': 'Medical Officer', 'model': 'sonnet'},
    'uhura': {'sessionLabel': 'uhura-direct', 'role': 'Comms Officer', 'model': 'Minimax'},
    'harry': {'sessionLabel': 'harry-direct', 'role': 'Ops Officer', 'model': 'Minimax'},
    'quark': {'sessionLabel': 'quark-direct', 'role': 'Trade Advisor', 'model': 'sonnet'},
    'tom': {'sessionLabel': 'tom-direct', 'role': 'Risk Trader', 'model': 'sonnet'},
    'neelix': {'sessionLabel': 'neelix-direct', 'role': 'Resources', 'model': 'Minimax'},
    'data': {'sessionLabel': 'data-direct', 'role': 'QC Officer', 'model': 'sonnet'},
}

MENTION_PROMPT = """You are {name}, {role} on the starship.

**Direct Message from Captain:**
{message}

**Instructions:**
1. Complete the requested task
2. When done, your response will be delivered to the Captain
3. Be concise but thorough
4. Sign your response with your role

Engage."""


def fmt_duration(ms):
    """Format a millisecond span as s, m or 'Xh Ym'."""
    if not isinstance(ms, (int, float)) or ms <= 0:
        return '--'
    secs = int(ms // 1000)
    if secs < 60:
        return f'{secs}s'
    mins = secs // 60
    if mins < 60:
        return f'{mins}m'
    return f'{mins // 60}h {mins % 60}m'


def fmt_age(ms):
    """Format a millisecond age as s, m, h or d."""
    if not isinstance(ms, (int, float)) or ms <= 0:
        return '--'
    secs = int(ms // 1000)
    if secs < 60:
        return f'{secs}s'
    mins = secs // 60
    if mins < 60:
        return f'{mins}m'
    hours = mins // 60
    if hours < 24:
        return f'{hours}h'
    return f'{hours // 24}d'


def _node(script, *args):
    return ['node', script] + list(args)


def _read(cmd, default, timeout=5):
    """Run a JSON-emitting read command; default payload plus error on failure."""
    try:
        return collectors.run_json_command(cmd, timeout=timeout), None
    except CollaboratorUnavailable as exc:
        log.debug('[CREW] %s: %s', ' '.join(cmd[:3]), exc)
        return default, exc.message


def _action(cmd, timeout=10):
    output = collectors.run_command(cmd, timeout=timeout)
    return {'success': True, 'message': output.strip()}


# -- cron -------------------------------------------------------------------

def format_cron_job(job, now_ms):
    state = job.get('state') if isinstance(job.get('state'), dict) else {}
    next_at = state.get('nextRunAtMs')
    last_at = state.get('lastRunAtMs')
    return {
        'id': job.get('id'),
        'name': job.get('name') or 'unnamed',
        'enabled': job.get('enabled') is not False,
        'schedule': job.get('schedule'),
        'sessionTarget': job.get('sessionTarget'),
        'lastStatus': state.get('lastStatus') or 'unknown',
        'lastDurationMs': state.get('lastDurationMs'),
        'nextRunIn': fmt_duration(next_at - now_ms if next_at else None),
        'lastRunAgo': fmt_duration(now_ms - last_at if last_at else None),
        'runCount': state.get('runCount') or 0,
    }


def cron_jobs(now_ms=None):
    payload = collectors.run_openclaw_json(['cron', 'list'], timeout=5)
    if payload is None:
        return {'total': 0, 'enabled': 0, 'disabled': 0, 'jobs': [], 'error': 'openclaw cron unavailable'}
    jobs = payload.get('jobs') if isinstance(payload, dict) else payload
    now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
    formatted = [format_cron_job(job, now_ms) for job in jobs or [] if isinstance(job, dict)]
    enabled = sum(1 for job in formatted if job['enabled'])
    return {
        'total': len(formatted),
        'enabled': enabled,
        'disabled': len(formatted) - enabled,
        'jobs': formatted,
        'timestamp': collectors.utc_now_iso(),
    }


# -- sessions ---------------------------------------------------------------

def workloop_crew_map(ps_output):
    """Map task-id numeric prefixes to crew names from ``ps aux`` work-loop lines."""
    mapping = {}
    for line in (ps_output or '').splitlines():
        match = WORKLOOP_PROCESS_PATTERN.search(line)
        if match and 'openclaw agent' in line:
            mapping[match.group(2)] = match.group(1)
    return mapping


def sessions_overview(payload, process_crew=None):
    """Summarise ``openclaw sessions list`` into subagent and cron groups."""
    payload = payload if isinstance(payload, dict) else {}
    sessions = payload.get('sessions') if isinstance(payload.get('sessions'), list) else []
    process_crew = process_crew or {}
    active = [
        s for s in sessions
        if isinstance(s, dict) and s.get('key') and (
            'subagent' in s['key'] or 'cron' in s['key'] or s['key'] == 'agent:main:main'
        )
    ]
    subagents = [s for s in active if 'subagent' in s['key']]
    crons = [s for s in active if 'cron' in s['key']]

    def subagent_row(session):
        uuid = session['key'].split(':')[-1]
        crew_name = None
        for prefix, crew in process_crew.items():
            if prefix in session['key'] or prefix in (session.get('sessionId') or ''):
                crew_name = crew
                break
        return {
            'key': session['key'],
            'label': crew_name or uuid[:8],
            'crew': crew_name,
            'fullId': uuid,
            'model': session.get('model') or 'unknown',
            'age': fmt_age(session.get('ageMs')),
            'updatedAt': session.get('updatedAt'),
        }

    def cron_row(session):
        cron_key = session['key'].split(':')[-1]
        return {
            'key': cron_key,
            'label': cron_key[:8],
            'age': fmt_age(session.get('ageMs')),
            'updatedAt': session.get('updatedAt'),
        }

    return {
        'total': payload.get('count') or len(sessions),
        'activeSubagents': len(subagents),
        'runningCrons': len(crons),
        'subagents': [subagent_row(s) for s in subagents],
        'crons': [cron_row(s) for s in crons],
    }


def openclaw_sessions():  # pragma: no cover
    payload = collectors.run_openclaw_json(['sessions', 'list'], timeout=8)
    ps_output = collectors.run_cmd(['ps', 'aux'], timeout=2)
    return sessions_overview(payload, workloop_crew_map(ps_output))


# -- stall detector -----------------------------------------------------------

def stall_status():
    return _read(['python3', STALL_DETECTOR_PY, 'api'], {
        'timestamp': collectors.utc_now_iso(),
        'recoveries_today': 0,
        'agents': {},
    })


def stall_check():
    output = collectors.run_command(['python3', STALL_DETECTOR_PY, 'check'], timeout=10)
    return {'success': True, 'output': output}


def stall_reset():
    collectors.run_command(['python3', STALL_DETECTOR_PY, 'reset'], timeout=5)
    return {'success': True}


# -- work loop ----------------------------------------------------------------

def default_work_loop():
    return {
        'status': 'stopped',
        'startedAt': None,
        'uptime': 0,
        'config': {'maxWorkers': 3, 'pollIntervalMs': 30000},
        'stats': {'tasksProcessed': 0, 'tasksCompleted': 0, 'tasksFailed': 0, 'cycleCount': 0},
        'activeWorkers': [],
        'queue': {'length': 0, 'tasks': []},
        'dependencies': 0,
        'chains': 0,
    }


def work_loop_status():
    return _read(_node(WORK_LOOP_JS, 'json'), default_work_loop())


def work_loop_queue():
    return _read(_node(CREW_TASK_JS, 'queue'), {'success': False})


def work_loop_command(command, timeout=None):
    """Run ``start``, ``stop`` or ``next`` on the work loop."""
    if command not in ('start', 'stop', 'next'):
        raise ValidationError(f'Unknown work loop command: {command}')
    result = _action(_node(WORK_LOOP_JS, command), timeout=timeout or (30 if command == 'next' else 10))
    log.info('[CREW] work loop %s', command)
    return result


def work_loop_priority(task_id):
    result = _action(_node(WORK_LOOP_JS, 'priority', task_id), timeout=5)
    log.info('[CREW] priority boosted for %s', task_id)
    return result


# -- git locks ----------------------------------------------------------------

def default_git_locks():
    return {
        'totalLocks': 0,
        'locks': {},
        'activeConflicts': 0,
        'stats': {'locksCreated': 0, 'conflictsDetected': 0, 'conflictsResolved': 0, 'commitsCompleted': 0},
    }


def git_locks_status():
    return _read(_node(GIT_LOCKS_JS, 'status'), default_git_locks())


def git_lock_conflicts(state_path=config.GIT_LOCKS_STATE):
    if not os.path.exists(state_path):
        return {'conflicts': [], 'count': 0}
    try:
        with open(state_path, 'r', encoding='utf-8') as fp:
            state = json.load(fp)
    except (OSError, ValueError) as exc:
        return {'conflicts': [], 'count': 0, 'error': str(exc)}
    active = [c for c in state.get('conflicts') or [] if isinstance(c, dict) and not c.get('resolved')]
    return {'conflicts': active, 'count': len(active)}


def parse_lock_files(text):
    return [
        re.sub(r'^\s*-\s*', '', line).strip()
        for line in (text or '').splitlines()
        if line.strip().startswith('-')
    ]


def git_lock_files(task_id):
    try:
        output = collectors.run_command(_node(GIT_LOCKS_JS, 'files', task_id), timeout=5)
    except CollaboratorUnavailable as exc:
        log.debug('[CREW] git-locks files %s: %s', task_id, exc)
        output = ''
    files = parse_lock_files(output)
    return {'taskId': task_id, 'files': files, 'count': len(files)}


def git_locks_refresh():
    result = _action(_node(GIT_LOCKS_JS, 'refresh'), timeout=30)
    log.info('[CREW] git locks refreshed')
    return result


# -- checkpoints ----------------------------------------------------------------

def checkpoints():
    return _read(_node(CHECKPOINT_JS, 'dashboard'), {
        'checkpoints': [],
        'stats': {'created': 0, 'restored': 0, 'cleaned': 0},
    })


def checkpoint_status():
    return collectors.run_json_command(_node(CHECKPOINT_JS, 'status'), timeout=5)


# -- meta-learning ----------------------------------------------------------------

def meta_learning_summary():
    return _read(_node(META_LEARNING_JS, 'summary'), {'lessons': [], 'statistics': {}}, timeout=10)


def meta_learning_analyze():
    output = collectors.run_command(_node(META_LEARNING_JS, 'analyze'), timeout=30)
    log.info('[CREW] meta-learning analysis triggered')
    return {'success': True, 'message': 'Analysis complete', 'output': output}


def meta_learning_text(section):
    """Plain-text ``lessons`` or ``improvements`` report."""
    fallback = {'lessons': 'No lessons available', 'improvements': 'No improvements available'}
    if section not in fallback:
        raise ValidationError(f'Unknown meta-learning section: {section}')
    try:
        return collectors.run_command(_node(META_LEARNING_JS, section), timeout=5)
    except CollaboratorUnavailable as exc:
        log.debug('[CREW] meta-learning %s: %s', section, exc)
        return fallback[section]


def meta_learning_mark_implemented(improvement_id):
    return _action(_node(META_LEARNING_JS, 'mark-implemented', improvement_id), timeout=5)


# -- inbox ----------------------------------------------------------------

def inbox_counts():
    return _read(['node', INBOX_CHECK_JS, 'counts'], {'agents': {}, 'totalUnread': 0})


# -- @mention routing ----------------------------------------------------------

def session_key(agent):
    return f"agent:main:subagent:{MENTION_ROSTER[agent]['sessionLabel']}"


def mention_roster():
    roster = [dict(name=name, sessionKey=session_key(name), **entry) for name, entry in MENTION_ROSTER.items()]
    return {'roster': roster, 'count': len(roster)}


def parse_mentions(text):
    """Known crew @mentions in order of appearance."""
    mentions = []
    for match in MENTION_PATTERN.finditer(text or ''):
        name = match.group(1).lower()
        if name in MENTION_ROSTER:
            mentions.append({
                'agent': name,
                'config': MENTION_ROSTER[name],
                'position': match.start(),
                'raw': match.group(0),
            })
    return mentions


def resolve_mention(message, agent=None):
    """Pick the target agent and strip its mention from the message."""
    if not message:
        raise ValidationError('Message required')
    target = (agent or '').lower() or None
    clean = message
    if target is None:
        mentions = parse_mentions(message)
        if not mentions:
            raise ValidationError('No valid @mentions found', details={'validAgents': list(MENTION_ROSTER)})
        target = mentions[0]['agent']
        clean = re.sub(r'^[,:\-]+\s*', '', message.replace(mentions[0]['raw'], '', 1).strip())
    if target not in MENTION_ROSTER:
        raise ValidationError(f'Unknown agent: {target}')
    return target, clean


def build_mention_prompt(agent, message):
    return MENTION_PROMPT.format(
        name=agent.capitalize(), role=MENTION_ROSTER[agent]['role'], message=message,
    )


def route_mention(message, agent=None):
    """Deliver a direct message to one crew agent through ``openclaw agent``.

    Returns ``(body, ok)``; on failure the body carries the error and the
    target's session key.
    """
    target, clean = resolve_mention(message, agent)
    cmd = [
        collectors.openclaw_bin(), 'agent',
        '--agent', target,
        '--message', build_mention_prompt(target, clean),
        '--deliver', '--json',
    ]
    try:
        output = collectors.run_command(cmd, timeout=60)
    except CollaboratorUnavailable as exc:
        log.error('[MENTION] routing to %s failed: %s', target, exc)
        return {'success': False, 'agent': target, 'sessionKey': session_key(target), 'error': exc.message}, False
    try:
        response = json.loads(output)
    except ValueError:
        response = output
    log.info('[MENTION] routed to %s', target)
    return {
        'success': True,
        'agent': target,
        'sessionKey': session_key(target),
        'model': MENTION_ROSTER[target]['model'],
        'message': clean,
        'response': response,
    }, True


def mention_sessions(sessions):
    """Direct-message sessions among the gateway's live sessions."""
    rows = []
    for session in sessions or []:
        key = session.get('key') if isinstance(session, dict) else None
        if not key or '-direct' not in key:
            continue
        match = DIRECT_LABEL_PATTERN.search(key)
        rows.append({
            'agent': match.group(1) if match else 'unknown',
            'sessionKey': key,
            'model': session.get('model'),
            'tokens': session.get('totalTokens'),
            'updatedAt': session.get('updatedAt'),
            'status': session.get('status') or 'idle',
        })
    return {'sessions': rows, 'count': len(rows), 'roster': list(MENTION_ROSTER)}
