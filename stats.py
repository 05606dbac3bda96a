"""
Counters and JSON logging shared by the reactor and the writer.

- `Stats`: thread-safe counters; the reactor, the writer and the health
    endpoint each touch it from their own thread.
- `json_log`: one JSON object per line on stderr, for debugging and
    benchmarking.
"""

import json
import sys
import threading
import time

import psutil

COUNTER_FIELDS = (
    'connections',
    'active_connections',
    'chunks',
    'empty_chunks',
    'eot_closes',
    'read_errors',
    'requests',
    'responses',
    'write_errors',
    'dropped',
    'requeued',
    'resets',
)


class Stats:
    """Thread-safe counters for observability."""
    def __init__(self):
        self._lock = threading.Lock()
        for name in COUNTER_FIELDS:
            setattr(self, name, 0)
        self.last_counter = None

    def inc(self, attr: str, delta: int = 1):
        with self._lock:
            setattr(self, attr, getattr(self, attr) + delta)

    def connection_opened(self):
        with self._lock:
            self.connections += 1
            self.active_connections += 1

    def connection_closed(self):
        with self._lock:
            if self.active_connections > 0:
                self.active_connections -= 1

    def record_response(self, counter: int):
        with self._lock:
            self.responses += 1
            self.last_counter = counter

    def snapshot(self):
        with self._lock:
            snap = {name: getattr(self, name) for name in COUNTER_FIELDS}
            snap['last_counter'] = self.last_counter
            return snap


# one instance: cpu_percent() measures against its previous call on it
_PROCESS = psutil.Process()
_PROCESS.cpu_percent(interval=None)


def process_metrics():
    """Return memory and CPU figures for this process (empty on error).

    The CPU figure covers the time since the previous call.
    """
    try:
        return {
            'memory_rss_bytes': _PROCESS.memory_info().rss,
            'cpu_percent': _PROCESS.cpu_percent(interval=None),
        }
    except (psutil.Error, OSError):
        return {}


def json_log(event: str, level: str = "info", **fields):
    """Best-effort JSON log to stderr for debugging/benchmarking."""
    try:
        rec = {"ts": time.time(), "level": level, "event": event}
        rec.update(fields)
        print(json.dumps(rec, ensure_ascii=False, default=str), file=sys.stderr, flush=True)
    except (OSError, ValueError, TypeError):
        pass
