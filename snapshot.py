"""Bridge snapshot aggregation.

The aggregator fans out to every cached source in parallel, then applies
pure derivations (stardate, crew routing, trading streak and sparkline) to
assemble one BridgeSnapshot. A failing or slow source only degrades its own
slice; ``gather`` never raises.
"""

import datetime
import logging
from concurrent.futures import ThreadPoolExecutor, wait

import collectors
import config

log = logging.getLogger(__name__)

CREW_IDS = [
    'seven', 'spock', 'geordi', 'uhura', 'quark', 'data', 'belanna',
    'harry', 'icheb', 'tom', 'neelix', 'tuvok', 'doctor',
]

# Ordered (keywords, owner) routing table. The first rule whose keyword
# occurs in the lower-cased session label wins.
CREW_ROUTES = [
    (('spock', 'research'), 'spock'),
    (('geordi', 'engineer', 'dashboard', 'build'), 'geordi'),
    (('uhura', 'email', 'comms', 'triage'), 'uhura'),
    (('quark', 'trad', 'crypto', 'polymarket'), 'quark'),
    (('data', 'qc', 'review'), 'data'),
    (('belanna', 'torres'), 'belanna'),
    (('harry', 'kim', 'ops'), 'harry'),
    (('icheb', 'borg'), 'icheb'),
    (('tom', 'paris', 'risk'), 'tom'),
    (('neelix', 'resource'), 'neelix'),
    (('tuvok', 'security'), 'tuvok'),
    (('doctor', 'emh'), 'doctor'),
]
DEFAULT_OWNER = 'seven'

CREW_ROLES = {
    'seven': ('Command', 'Main Agent'),
    'spock': ('Science', 'Research & Analysis'),
    'geordi': ('Engineering', 'Development & Ops'),
    'uhura': ('Communications', 'Email & Messages'),
    'quark': ('Trading', 'Crypto Trading'),
    'data': ('Quality Control', 'Review & Verification'),
    'belanna': ('Engineering', 'Systems Engineering'),
    'harry': ('Operations', 'Ops & Monitoring'),
    'icheb': ('Engineering', 'Borg Specialist'),
    'tom': ('Trading', 'Risk Trading'),
    'neelix': ('Trading', 'Resource Management'),
    'tuvok': ('Science', 'Security & Research'),
    'doctor': ('Science', 'EMH Research'),
}
BUSY_STATUS = {
    'seven': 'ACTIVE',
    'spock': 'RESEARCHING',
    'geordi': 'BUILDING',
    'uhura': 'PROCESSING',
    'data': 'REVIEWING',
}

OFFLINE_PORTFOLIO = {
    'status': 'OFFLINE',
    'balance': 0,
    'trades': 0,
    'sparkline': [100],
    'streak': {'count': 0, 'type': None},
}


def calculate_stardate(now=None):
    """TNG-style stardate for a local wall-clock time, one decimal place."""
    now = now or datetime.datetime.now()
    start_of_year = datetime.datetime(now.year, 1, 1, tzinfo=now.tzinfo)
    day_of_year = (now - start_of_year).days
    fraction_of_day = (now.hour * 3600 + now.minute * 60 + now.second) / 86400
    base = 47000 + (now.year - 2024) * 1000
    year_progress = ((day_of_year + fraction_of_day) / 365) * 1000
    return f'{base + year_progress:.1f}'


def classify_session(label):
    text = (label or '').lower()
    for keywords, owner in CREW_ROUTES:
        if any(keyword in text for keyword in keywords):
            return owner
    return DEFAULT_OWNER


def analyze_crew_activity(sessions):
    """Route live sessions to crew members and count running ones."""
    crew = {crew_id: {'active': 0, 'tasks': []} for crew_id in CREW_IDS}
    total_running = 0
    total_sessions = 0
    for session in sessions if isinstance(sessions, list) else []:
        if not isinstance(session, dict):
            continue
        total_sessions += 1
        status = session.get('status')
        if status == 'running':
            total_running += 1
        owner = classify_session(session.get('label'))
        crew[owner]['active'] += 1
        crew[owner]['tasks'].append({
            'label': session.get('label'),
            'status': status,
            'startedAt': session.get('startedAt'),
            'channel': session.get('channel'),
        })
    return crew, total_running, total_sessions


def compute_streak(history):
    """Length and result of the run of identical results ending at the newest trade."""
    count = 0
    streak_type = None
    for trade in reversed(history or []):
        result = trade.get('result') if isinstance(trade, dict) else None
        if count == 0:
            streak_type = result
            count = 1
        elif result == streak_type:
            count += 1
        else:
            break
    return {'count': count, 'type': streak_type}


def build_sparkline(starting_balance, history):
    running = starting_balance
    points = [round(running, 2)]
    for trade in history or []:
        profit = trade.get('profit') if isinstance(trade, dict) else None
        running += profit or 0
        points.append(round(running, 2))
    return points


def summarize_portfolio(raw):
    """Quark's trading slice from the raw portfolio document."""
    if not isinstance(raw, dict):
        return dict(OFFLINE_PORTFOLIO)
    try:
        balance = float(raw['balance'])
        starting = float(raw['starting_balance'])
    except (KeyError, TypeError, ValueError):
        return dict(OFFLINE_PORTFOLIO)
    history = raw.get('history') if isinstance(raw.get('history'), list) else []
    trades = raw.get('trades') or 0
    wins = raw.get('wins') or 0
    pnl = balance - starting
    pnl_percent = round(pnl / starting * 100, 2) if starting else 0.0
    win_rate = round(wins / trades * 100, 1) if trades else 0.0
    return {
        'status': 'TRADING' if raw.get('pending_trade') else 'MONITORING',
        'balance': round(balance, 2),
        'startingBalance': round(starting, 2),
        'pnl': round(pnl, 2),
        'pnlPercent': pnl_percent,
        'trades': trades,
        'wins': wins,
        'losses': raw.get('losses') or 0,
        'winRate': win_rate,
        'peakBalance': round(float(raw.get('peak_balance') or balance), 2),
        'pendingTrade': raw.get('pending_trade'),
        'lastTrade': history[-1] if history else None,
        'recentTrades': list(reversed(history[-10:])),
        'sparkline': build_sparkline(starting, history),
        'streak': compute_streak(history),
        'lastUpdated': raw.get('last_updated'),
    }


def build_crew(activity, total_running, total_sessions, portfolio, git, worktrees, inbox):
    """Assemble the per-agent crew map from derived activity and source slices."""
    crew = {}
    for crew_id in CREW_IDS:
        role, description = CREW_ROLES[crew_id]
        active = activity[crew_id]['active']
        crew[crew_id] = {
            'status': BUSY_STATUS.get(crew_id, 'ACTIVE') if active > 0 else 'STANDBY',
            'role': role,
            'description': description,
            'activeTasks': active,
            'tasks': activity[crew_id]['tasks'],
        }

    seven = crew['seven']
    seven['status'] = 'ACTIVE' if total_running > 0 else 'STANDBY'
    seven['totalSessions'] = total_sessions
    seven['runningSessions'] = total_running

    workspace_git = git.get('workspace') or collectors.default_git_status('workspace')
    skills_git = git.get('skills') or collectors.default_git_status('skills')
    geordi = crew['geordi']
    if geordi['activeTasks'] == 0 and workspace_git['modified'] > 0:
        geordi['status'] = 'MONITORING'
    geordi['git'] = {'workspace': workspace_git, 'skills': skills_git}
    geordi['worktrees'] = worktrees
    geordi['totalModified'] = workspace_git['modified'] + skills_git['modified']
    geordi['totalCommitsToday'] = workspace_git['commitsToday'] + skills_git['commitsToday']

    total_emails = sum(item.get('inbox', 0) for item in inbox.values())
    uhura = crew['uhura']
    if uhura['activeTasks'] == 0 and total_emails > 0:
        uhura['status'] = 'MONITORING'
    uhura['inbox'] = dict(inbox, total=total_emails)

    quark = crew['quark']
    trading_tasks = quark['tasks']
    quark.update(portfolio)
    quark['tasks'] = trading_tasks
    quark['role'] = CREW_ROLES['quark'][0]
    quark['description'] = CREW_ROLES['quark'][1]
    return crew


class SnapshotAggregator:
    """Composes cached collaborator outputs into one BridgeSnapshot."""

    def __init__(self, cache, workspace_dir=config.WORKSPACE_DIR, skills_dir=config.SKILLS_DIR,
                 portfolio_path=config.QUARK_PORTFOLIO, gateway_url=config.GATEWAY_URL,
                 email_accounts=None, weather_location=config.WEATHER_LOCATION,
                 ttls=None, timeout=config.GATHER_TIMEOUT_SEC, net_meter=None):
        self.cache = cache
        self.workspace_dir = workspace_dir
        self.skills_dir = skills_dir
        self.portfolio_path = portfolio_path
        self.gateway_url = gateway_url
        self.email_accounts = list(config.EMAIL_ACCOUNTS if email_accounts is None else email_accounts)
        self.weather_location = weather_location
        self.ttls = dict(config.CACHE_TTLS, **(ttls or {}))
        self.timeout = timeout
        self.net_meter = net_meter or collectors.NetworkMeter()
        self._pool = ThreadPoolExecutor(max_workers=len(self._sources()), thread_name_prefix='snapshot')

    # Each source: (cache key, fetcher, default). Defaults are what a slice
    # degrades to when its collaborator fails.
    def _sources(self):
        ttl = self.ttls
        cache = self.cache
        return {
            'sessions': (lambda: cache.get_stale(
                'sessions', ttl['sessions'],
                lambda: collectors.fetch_sessions(self.gateway_url), default=[]), []),
            'portfolio': (lambda: cache.get(
                'quark', ttl['quark'],
                lambda: summarize_portfolio(collectors.read_json_file(self.portfolio_path)),
                default=dict(OFFLINE_PORTFOLIO)), dict(OFFLINE_PORTFOLIO)),
            'email': (lambda: cache.get_stale(
                'email', ttl['email'],
                lambda: collectors.email_counts(self.email_accounts),
                default={account: {'total': 0, 'inbox': 0} for account in self.email_accounts}), {}),
            'git_workspace': (lambda: cache.get(
                'git.workspace', ttl['git'],
                lambda: collectors.git_status(self.workspace_dir, 'workspace'),
                default=collectors.default_git_status('workspace')),
                collectors.default_git_status('workspace')),
            'git_skills': (lambda: cache.get(
                'git.skills', ttl['git'],
                lambda: collectors.git_status(self.skills_dir, 'skills'),
                default=collectors.default_git_status('skills')),
                collectors.default_git_status('skills')),
            'worktrees': (lambda: cache.get(
                'git.worktrees', ttl['worktrees'],
                lambda: collectors.git_worktrees(self.workspace_dir), default=[]), []),
            'system': (lambda: cache.get(
                'system', ttl['system'],
                lambda: collectors.system_stats(self.net_meter),
                default=collectors.default_system_stats()), collectors.default_system_stats()),
            'gateway': (lambda: cache.get_stale(
                'gateway', ttl['gateway'], collectors.gateway_status,
                default=collectors.default_gateway_status()), collectors.default_gateway_status()),
            'weather': (lambda: cache.get_stale(
                'weather', ttl['weather'],
                lambda: collectors.fetch_weather(config.WEATHER_URL, self.weather_location),
                default=collectors.default_weather()), collectors.default_weather()),
        }

    def _collect(self):
        # One deadline for the whole fan-out; whatever is not done by then
        # degrades to its default.
        sources = self._sources()
        futures = {name: self._pool.submit(fetch) for name, (fetch, _) in sources.items()}
        done, _ = wait(futures.values(), timeout=self.timeout)
        results = {}
        for name, future in futures.items():
            default = sources[name][1]
            if future not in done:
                future.cancel()
                log.warning('[SNAPSHOT] %s timed out after %ss', name, self.timeout)
                value = default
            else:
                try:
                    value = future.result()
                except Exception as exc:
                    log.warning('[SNAPSHOT] %s failed: %s', name, exc)
                    value = default
            results[name] = default if value is None else value
        return results

    def gather(self):
        """Return a fresh BridgeSnapshot built from cached sources."""
        data = self._collect()
        sessions = data['sessions'] if isinstance(data['sessions'], list) else []
        activity, total_running, total_sessions = analyze_crew_activity(sessions)
        crew = build_crew(
            activity, total_running, total_sessions,
            portfolio=data['portfolio'],
            git={'workspace': data['git_workspace'], 'skills': data['git_skills']},
            worktrees=data['worktrees'],
            inbox=data['email'],
        )
        return {
            'timestamp': collectors.utc_now_iso(),
            'stardate': calculate_stardate(),
            'system': data['system'],
            'sessions': sessions,
            'gateway': data['gateway'],
            'weather': data['weather'],
            'crew': crew,
        }

    def sessions(self):
        return self.cache.get_stale(
            'sessions', self.ttls['sessions'],
            lambda: collectors.fetch_sessions(self.gateway_url), default=[]) or []

    def weather(self, refresh=False):
        if refresh:
            self.cache.invalidate('weather')
        return self.cache.get(
            'weather', self.ttls['weather'],
            lambda: collectors.fetch_weather(config.WEATHER_URL, self.weather_location),
            default=collectors.default_weather())

    def invalidate_portfolio(self):
        self.cache.invalidate('quark')

    def shutdown(self):
        self._pool.shutdown(wait=False)
