"""Thin adapters over the shell tools, files and endpoints the bridge observes.

Every adapter is bounded by a timeout and either raises
``CollaboratorUnavailable`` (``run_command``/``fetch_json``) or returns a
documented default, so callers can degrade one slice of the snapshot instead
of failing the whole aggregation.
"""

import datetime
import json
import logging
import os
import re
import shutil
import subprocess
import time
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from errors import CollaboratorUnavailable

log = logging.getLogger(__name__)

NET_INTERFACE_PATTERN = re.compile(r'^\s*(eth|eno|enp|wlan|wlp)')
CPU_TEMP_SOURCES = (
    '/sys/class/thermal/thermal_zone0/temp',
    '/sys/class/hwmon/hwmon0/temp1_input',
)
WORKTREE_PATTERN = re.compile(r'^(.+?)\s+([a-f0-9]+)\s+\[(.+)\]')
JSON_START_PATTERN = re.compile(r'^\s*[\[{]', re.MULTILINE)


def run_command(cmd, timeout=5, cwd=None, env=None):
    """Run a command and return its stdout, raising CollaboratorUnavailable on any failure."""
    try:
        res = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, cwd=cwd, env=env,
        )
    except subprocess.TimeoutExpired as exc:
        raise CollaboratorUnavailable(f'{cmd[0]} timed out after {timeout}s') from exc
    except OSError as exc:
        raise CollaboratorUnavailable(f'{cmd[0]} unavailable: {exc}') from exc
    if res.returncode != 0:
        detail = (res.stderr or res.stdout or '').strip()
        raise CollaboratorUnavailable(
            f'{cmd[0]} exited with status {res.returncode}',
            details={'output': detail[:500]} if detail else None,
        )
    return res.stdout or ''


def run_cmd(cmd, timeout=2, cwd=None):
    """Run a command for a best-effort probe; empty string on failure."""
    try:
        return run_command(cmd, timeout=timeout, cwd=cwd).strip()
    except CollaboratorUnavailable as exc:
        log.debug('[PROBE] %s', exc)
        return ''


def extract_json(text):
    """Parse JSON output that may be preceded by plugin banner lines."""
    if not isinstance(text, str):
        raise CollaboratorUnavailable('empty output')
    decoder = json.JSONDecoder()
    # Banner lines may themselves start with a bracket, e.g. "[plugins] ...".
    for match in JSON_START_PATTERN.finditer(text):
        start = match.end() - 1
        try:
            value, _ = decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            continue
        return value
    raise CollaboratorUnavailable('no JSON in output')


def run_json_command(cmd, timeout=5):
    return extract_json(run_command(cmd, timeout=timeout))


def openclaw_bin():
    return shutil.which('openclaw') or os.path.expanduser('~/.npm-global/bin/openclaw')


def run_openclaw_json(args, timeout=8):
    """Execute OpenClaw CLI command and parse JSON output safely."""
    try:
        return run_json_command([openclaw_bin()] + list(args) + ['--json'], timeout=timeout)
    except CollaboratorUnavailable as exc:
        log.debug('[OPENCLAW] %s: %s', ' '.join(args), exc)
        return None


def fetch_json(url, timeout=3.0):
    """GET a JSON document, raising CollaboratorUnavailable on transport or decode errors."""
    request = Request(url=url, method='GET', headers={'Accept': 'application/json'})
    try:
        with urlopen(request, timeout=timeout) as response:
            charset = response.headers.get_content_charset() or 'utf-8'
            body = response.read().decode(charset)
    except HTTPError as exc:
        raise CollaboratorUnavailable(f'HTTP error {exc.code} from {url}') from exc
    except (URLError, OSError) as exc:
        raise CollaboratorUnavailable(f'connection error for {url}: {exc}') from exc
    try:
        return json.loads(body) if body else None
    except json.JSONDecodeError as exc:
        raise CollaboratorUnavailable(f'invalid JSON from {url}') from exc


def read_json_file(path):
    """Load a JSON file, returning None when it is missing or unreadable."""
    if not os.path.exists(path):
        return None
    try:
        with open(path, 'r', encoding='utf-8') as fp:
            return json.load(fp)
    except (OSError, ValueError) as exc:
        log.error('[FILES] cannot read %s: %s', path, exc)
        return None


def utc_now_iso():
    """Return current UTC time as ISO-8601 string with milliseconds."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


# -- system -----------------------------------------------------------------

def read_uptime():
    text = run_cmd(['uptime', '-p'], timeout=1)
    if text:
        return text.replace('up ', '', 1)
    text = run_cmd(['uptime'], timeout=1)
    return text or 'unknown'


def read_loadavg():
    try:
        return [round(value, 2) for value in os.getloadavg()]
    except (OSError, AttributeError):
        return [0.0, 0.0, 0.0]


def read_cpu_usage(stat_path='/proc/stat'):
    """Busy share since boot from the aggregate cpu line of /proc/stat."""
    try:
        with open(stat_path, 'r', encoding='utf-8') as fp:
            fields = fp.readline().split()
    except OSError:
        return None
    values = []
    for raw in fields[1:]:
        try:
            values.append(int(raw))
        except ValueError:
            values.append(0)
    total = sum(values)
    if total <= 0 or len(values) < 4:
        return None
    idle = values[3]
    return round((1 - idle / total) * 100, 1)


def parse_free_output(text):
    """Return (used_mb, total_mb) from ``free -m`` output."""
    lines = [line for line in (text or '').splitlines() if line.strip()]
    if len(lines) < 2:
        return 0, 1
    parts = lines[1].split()
    try:
        return int(parts[2]), int(parts[1]) or 1
    except (IndexError, ValueError):
        return 0, 1


def parse_df_output(text):
    """Return (used, size, percent) from ``df -h /`` output."""
    lines = [line for line in (text or '').splitlines() if line.strip()]
    if len(lines) < 2:
        return '0', '0', 0
    parts = lines[1].split()
    if len(parts) < 5:
        return '0', '0', 0
    try:
        percent = int(parts[4].rstrip('%'))
    except ValueError:
        percent = 0
    return parts[2], parts[1], percent


def read_cpu_temp(sources=CPU_TEMP_SOURCES):
    for src in sources:
        if not os.path.exists(src):
            continue
        try:
            with open(src, 'r', encoding='utf-8') as fp:
                return f'{int(fp.read().strip()) / 1000:.1f}'
        except (OSError, ValueError):
            continue
    return None


class NetworkMeter:
    """Turns cumulative /proc/net/dev counters into KiB/s rates between samples."""

    def __init__(self, path='/proc/net/dev', clock=time.time):
        self.path = path
        self._clock = clock
        self._last = {'rx': 0, 'tx': 0, 'timestamp': clock()}

    def _read_counters(self):
        try:
            with open(self.path, 'r', encoding='utf-8') as fp:
                for line in fp:
                    if NET_INTERFACE_PATTERN.match(line):
                        name, _, data = line.partition(':')
                        parts = data.split()
                        if len(parts) >= 9:
                            return int(parts[0]), int(parts[8])
        except (OSError, ValueError):
            return None
        return None

    def sample(self):
        counters = self._read_counters()
        if counters is None:
            return {'netIn': '0', 'netOut': '0', 'netInMB': '0', 'netOutMB': '0'}
        rx, tx = counters
        now = self._clock()
        elapsed = now - self._last['timestamp']
        rx_speed = max(0.0, (rx - self._last['rx']) / elapsed / 1024) if elapsed > 0 else 0.0
        tx_speed = max(0.0, (tx - self._last['tx']) / elapsed / 1024) if elapsed > 0 else 0.0
        self._last = {'rx': rx, 'tx': tx, 'timestamp': now}
        return {
            'netIn': f'{rx_speed:.1f}',
            'netOut': f'{tx_speed:.1f}',
            'netInMB': f'{rx / 1024 / 1024:.0f}',
            'netOutMB': f'{tx / 1024 / 1024:.0f}',
        }


def docker_stats():
    if shutil.which('docker') is None:
        return {'running': 0, 'total': 0}
    running = run_cmd(['docker', 'ps', '-q'], timeout=2)
    total = run_cmd(['docker', 'ps', '-aq'], timeout=2)
    return {
        'running': len([line for line in running.splitlines() if line.strip()]),
        'total': len([line for line in total.splitlines() if line.strip()]),
    }


def default_system_stats():
    return {
        'uptime': 'unknown',
        'load': [0, 0, 0],
        'cpuUsage': 0,
        'cpuCores': os.cpu_count() or 1,
        'cpuTemp': None,
        'memUsed': 0,
        'memTotal': 1,
        'memPercent': 0,
        'diskUsed': '0',
        'diskTotal': '0',
        'diskPercent': 0,
        'netIn': '0',
        'netOut': '0',
        'netInMB': '0',
        'netOutMB': '0',
        'docker': {'running': 0, 'total': 0},
    }


def system_stats(net_meter):
    """Collect CPU, memory, disk, network and docker figures for the host."""
    cores = os.cpu_count() or 1
    load = read_loadavg()
    cpu_usage = read_cpu_usage()
    if cpu_usage is None:
        cpu_usage = round(load[0] / cores * 100, 1)
    mem_used, mem_total = parse_free_output(run_cmd(['free', '-m'], timeout=1))
    disk_used, disk_total, disk_percent = parse_df_output(run_cmd(['df', '-h', '/'], timeout=1))
    stats = {
        'uptime': read_uptime(),
        'load': load,
        'cpuUsage': cpu_usage,
        'cpuCores': cores,
        'cpuTemp': read_cpu_temp(),
        'memUsed': mem_used,
        'memTotal': mem_total,
        'memPercent': round(mem_used / mem_total * 100, 1),
        'diskUsed': disk_used,
        'diskTotal': disk_total,
        'diskPercent': disk_percent,
    }
    stats.update(net_meter.sample())
    stats['docker'] = docker_stats()
    return stats


# -- git --------------------------------------------------------------------

def default_git_status(name):
    return {'name': name, 'modified': 0, 'branch': 'unknown', 'files': [], 'commitsToday': 0}


def git_status(directory, name):
    """Working tree summary: modified files, branch and today's commit count."""
    if not os.path.isdir(os.path.join(directory, '.git')):
        return default_git_status(name)
    porcelain = run_command(['git', 'status', '--porcelain'], timeout=2, cwd=directory)
    lines = [line for line in porcelain.splitlines() if line.strip()]
    branch = run_cmd(['git', 'branch', '--show-current'], timeout=2, cwd=directory) or 'unknown'
    today = datetime.date.today().isoformat()
    log_out = run_cmd(['git', 'log', '--oneline', f'--since={today} 00:00'], timeout=2, cwd=directory)
    return {
        'name': name,
        'modified': len(lines),
        'branch': branch,
        'files': [line.strip() for line in lines[:5]],
        'commitsToday': len([line for line in log_out.splitlines() if line.strip()]),
    }


def parse_worktrees(text):
    worktrees = []
    for line in (text or '').splitlines():
        match = WORKTREE_PATTERN.match(line.strip())
        if match:
            worktrees.append({'path': match.group(1), 'commit': match.group(2), 'branch': match.group(3)})
    return worktrees


def git_worktrees(directory):
    if not os.path.isdir(directory):
        return []
    return parse_worktrees(run_cmd(['git', 'worktree', 'list'], timeout=2, cwd=directory))


# -- OpenClaw gateway ---------------------------------------------------------

def fetch_sessions(gateway_url, timeout=3.0):
    """Live sessions from the gateway REST API."""
    payload = fetch_json(f'{gateway_url}/api/sessions', timeout=timeout)
    if isinstance(payload, dict):
        payload = payload.get('sessions')
    if not isinstance(payload, list):
        raise CollaboratorUnavailable('unexpected sessions payload')
    return payload


def format_uptime_ms(ms):
    if not isinstance(ms, (int, float)) or ms <= 0:
        return None
    minutes = int(ms // 60000)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f'{days}d {hours}h'
    if hours:
        return f'{hours}h {minutes}m'
    return f'{minutes}m'


def default_gateway_status():
    return {'status': 'OFFLINE', 'uptime': None, 'version': None}


def gateway_status():
    payload = run_openclaw_json(['status'])
    if not isinstance(payload, dict):
        return default_gateway_status()
    gateway = payload.get('gateway') if isinstance(payload.get('gateway'), dict) else payload
    uptime = gateway.get('uptime')
    if not isinstance(uptime, str):
        uptime = format_uptime_ms(gateway.get('uptimeMs'))
    return {
        'status': 'ONLINE',
        'uptime': uptime,
        'version': payload.get('version') or gateway.get('version'),
    }


# -- mail -------------------------------------------------------------------

def count_search_results(text):
    return len([line for line in (text or '').splitlines() if line[:1].isdigit()])


def email_counts(accounts):
    """Unread inbox counts per ``gog`` account."""
    counts = {}
    for account in accounts:
        env = dict(os.environ, GOG_ACCOUNT=account)
        try:
            output = run_command(['gog', 'gmail', 'search', 'label:inbox label:unread'], timeout=5, env=env)
        except CollaboratorUnavailable as exc:
            log.debug('[MAIL] %s: %s', account, exc)
            output = ''
        unread = count_search_results(output)
        counts[account] = {'total': unread, 'inbox': unread}
    return counts


# -- weather ----------------------------------------------------------------

def default_weather():
    return {'status': 'OFFLINE', 'location': None, 'tempC': None, 'feelsLikeC': None,
            'condition': None, 'humidity': None, 'windKph': None}


def parse_weather(payload):
    current = (payload or {}).get('current_condition') or []
    if not current or not isinstance(current[0], dict):
        raise CollaboratorUnavailable('weather payload missing current_condition')
    now = current[0]
    area = ((payload.get('nearest_area') or [{}])[0] or {}).get('areaName') or [{}]

    def as_number(value):
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    return {
        'status': 'ONLINE',
        'location': (area[0] or {}).get('value'),
        'tempC': as_number(now.get('temp_C')),
        'feelsLikeC': as_number(now.get('FeelsLikeC')),
        'condition': ((now.get('weatherDesc') or [{}])[0] or {}).get('value'),
        'humidity': as_number(now.get('humidity')),
        'windKph': as_number(now.get('windspeedKmph')),
    }


def fetch_weather(url_template, location='', timeout=5.0):
    return parse_weather(fetch_json(url_template.format(location=quote(location)), timeout=timeout))
