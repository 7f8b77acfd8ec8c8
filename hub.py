"""Connection registry and debounced fan-out for the real-time channel."""

import json
import logging
import threading
import time

import config

log = logging.getLogger(__name__)

CONNECTING = 'connecting'
OPEN = 'open'
CLOSING = 'closing'
CLOSED = 'closed'


def freeze(payload):
    """Detached JSON copy so later mutations never leak into a queued frame."""
    return json.loads(json.dumps(payload, default=str))


class Connection:
    __slots__ = ('sid', 'remote', 'state', 'connected_at')

    def __init__(self, sid, remote=None):
        self.sid = sid
        self.remote = remote
        self.state = CONNECTING
        self.connected_at = time.time()

    def to_dict(self):
        return {'sid': self.sid, 'remote': self.remote, 'state': self.state, 'connectedAt': self.connected_at}


class BroadcastHub:
    """Owns the live connection set and every outbound frame.

    ``broadcast`` coalesces per payload ``type``: within one debounce window
    only the latest payload of each type goes out, once. Windows are per type
    rather than one shared queue, so a burst of ``tasks_update`` never
    swallows a pending ``messages_update``; ten calls of one type yield one
    send, ten calls across two types yield two. ``broadcast_now``
    bypasses the window. All sends share one lock, so each connection sees
    frames in call order.
    """

    def __init__(self, emit, debounce=config.BROADCAST_DEBOUNCE_SEC, timer_factory=threading.Timer,
                 disconnect=None, event='message'):
        self._emit = emit
        self._debounce = debounce
        self._timer_factory = timer_factory
        self._disconnect = disconnect
        self._event = event
        self._connections = {}
        self._lock = threading.Lock()
        self._send_lock = threading.Lock()
        self._pending = {}
        self._timers = {}

    def register(self, sid, remote=None):
        conn = Connection(sid, remote)
        with self._lock:
            self._connections[sid] = conn
        return conn

    def open(self, sid):
        with self._lock:
            conn = self._connections.get(sid)
            if conn is not None and conn.state == CONNECTING:
                conn.state = OPEN
        if conn is not None:
            log.info('[HUB] client %s open (%s). Total: %d', sid, conn.remote, self.connection_count)

    def unregister(self, sid):
        with self._lock:
            conn = self._connections.pop(sid, None)
        if conn is None:
            return False
        conn.state = CLOSED
        log.info('[HUB] client %s disconnected. Total: %d', sid, self.connection_count)
        return True

    def drop(self, sid):
        """Force a connection closed at the transport and forget it."""
        with self._lock:
            conn = self._connections.get(sid)
            if conn is not None:
                conn.state = CLOSING
        if conn is None:
            return
        if self._disconnect is not None:
            try:
                self._disconnect(sid)
            except Exception as exc:
                log.warning('[HUB] transport disconnect failed for %s: %s', sid, exc)
        self.unregister(sid)

    @property
    def connection_count(self):
        with self._lock:
            return sum(1 for conn in self._connections.values() if conn.state == OPEN)

    def connections(self):
        with self._lock:
            return [conn.to_dict() for conn in self._connections.values()]

    def _open_sids(self):
        with self._lock:
            return [sid for sid, conn in self._connections.items() if conn.state == OPEN]

    def _deliver(self, sid, frame):
        try:
            self._emit(self._event, frame, to=sid)
            return True
        except Exception as exc:
            log.warning('[HUB] send to %s failed: %s', sid, exc)
            return False

    def send(self, sid, payload):
        """Direct send to one connection, whatever its state short of closed."""
        frame = freeze(payload)
        with self._lock:
            conn = self._connections.get(sid)
            if conn is None or conn.state in (CLOSING, CLOSED):
                return False
        with self._send_lock:
            delivered = self._deliver(sid, frame)
        if not delivered:
            self.drop(sid)
        return delivered

    def _fan_out(self, frame):
        failed = []
        with self._send_lock:
            for sid in self._open_sids():
                if not self._deliver(sid, frame):
                    failed.append(sid)
        for sid in failed:
            self.drop(sid)

    def broadcast(self, payload):
        key = payload.get('type') if isinstance(payload, dict) else None
        frame = freeze(payload)
        with self._lock:
            self._pending[key] = frame
            if key in self._timers:
                return
            timer = self._timer_factory(self._debounce, self._fire, args=(key,))
            timer.daemon = True
            self._timers[key] = timer
        timer.start()

    def _fire(self, key):
        with self._lock:
            self._timers.pop(key, None)
            frame = self._pending.pop(key, None)
        if frame is not None:
            self._fan_out(frame)

    def broadcast_now(self, payload):
        self._fan_out(freeze(payload))

    def flush(self):
        """Send every pending debounced payload now."""
        with self._lock:
            timers = list(self._timers.items())
        for key, timer in timers:
            timer.cancel()
            self._fire(key)

    def close(self):
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
            self._pending.clear()
            conns = list(self._connections.values())
            self._connections.clear()
        for timer in timers:
            timer.cancel()
        for conn in conns:
            conn.state = CLOSED
