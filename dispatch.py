"""
Dispatch queue and response writer.

- Role: the reactor pushes parsed requests; one writer thread pops them in
    FIFO order, formats the response and does the socket write.
- Counter: the writer is the only owner of the sequence counter, so it needs
    no lock. The value used for a response is the value before the increment.
- Reset: a request may carry a reset value; the counter is set to it before
    the response is formatted.
- Failures: a failed or skipped write is logged and dropped (no retry). A
    `ServiceError` from the transform is dropped or re-queued at the tail,
    depending on `retry_policy`.
"""

from __future__ import annotations

import queue
import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional

from protocol import ServiceError, format_response, next_counter
from registry import ConnectionRegistry
from stats import Stats, json_log

RETRY_POLICIES = ('drop', 'requeue')

WRITTEN = 'written'
DROPPED = 'dropped'
REQUEUED = 'requeued'

_STOP = object()


@dataclass(frozen=True)
class Request:
    """One parsed chunk waiting for its response."""
    conn_id: int
    text: str
    word: str
    reset: Optional[int] = None
    attempts: int = 0

    def retry(self) -> 'Request':
        return replace(self, attempts=self.attempts + 1)


class DispatchQueue:
    """Unbounded FIFO: `push` never blocks, `pop` blocks while empty."""

    def __init__(self):
        self._q = queue.SimpleQueue()

    def push(self, item) -> None:
        self._q.put(item)

    def pop(self, timeout: Optional[float] = None):
        """Block until an item is available; raise `queue.Empty` on timeout."""
        return self._q.get(timeout=timeout)

    def pop_nowait(self):
        return self._q.get_nowait()

    def qsize(self) -> int:
        return self._q.qsize()

    def empty(self) -> bool:
        return self._q.empty()


class Writer(threading.Thread):
    """Worker thread that turns requests into response writes.

    `process()` handles one request and returns its outcome, which keeps the
    logic testable without starting the thread. In the inline variant the
    reactor calls `drain()` on its own thread and `start()` is never called.
    """
    def __init__(self, dispatch: DispatchQueue, registry: ConnectionRegistry,
                 transform: Callable[[str], str], retry_policy: str = 'drop',
                 max_requeues: int = 100, stats: Stats | None = None, counter: int = 0):
        super().__init__(name='writer', daemon=True)
        if retry_policy not in RETRY_POLICIES:
            raise ValueError(f"unknown retry policy {retry_policy!r}")
        self.dispatch = dispatch
        self.registry = registry
        self.transform = transform
        self.retry_policy = retry_policy
        self.max_requeues = max_requeues
        self.stats = stats if stats is not None else Stats()
        self.counter = counter

    def process(self, request: Request) -> str:
        try:
            text = self.transform(request.word)
        except ServiceError as e:
            return self._on_service_error(request, e)

        # a failed request leaves the counter alone, reset included
        if request.reset is not None:
            self.counter = request.reset
            self.stats.inc('resets')

        value = self.counter
        self.counter = next_counter(value)
        data = format_response(text, value)

        state = self.registry.get(request.conn_id)
        if state is None:
            # closed by the reactor before we got here
            json_log("write_skipped", conn_id=request.conn_id, counter=value)
            self.stats.inc('dropped')
            return DROPPED
        try:
            sent = state.sock.send(data)
        except OSError as e:
            json_log("write_failed", level="warning", conn_id=request.conn_id,
                     remote=state.remote(), counter=value, error=str(e))
            self.stats.inc('write_errors')
            self.stats.inc('dropped')
            return DROPPED
        if sent < len(data):
            json_log("short_write", level="warning", conn_id=request.conn_id,
                     sent=sent, expected=len(data))
        self.stats.record_response(value)
        return WRITTEN

    def _on_service_error(self, request: Request, err: ServiceError) -> str:
        can_retry = (
            self.retry_policy == 'requeue'
            and request.conn_id in self.registry
            and (self.max_requeues <= 0 or request.attempts < self.max_requeues)
        )
        if can_retry:
            # tail, not head: other clients keep their turn
            self.dispatch.push(request.retry())
            self.stats.inc('requeued')
            json_log("request_requeued", level="warning", conn_id=request.conn_id,
                     word=request.word, attempts=request.attempts + 1, error=str(err))
            return REQUEUED
        self.stats.inc('dropped')
        json_log("request_dropped", level="warning", conn_id=request.conn_id,
                 word=request.word, attempts=request.attempts, error=str(err))
        return DROPPED

    def drain(self) -> int:
        """Process the requests queued right now; return how many were handled.

        Requests re-queued during the drain wait for the next call.
        """
        handled = 0
        for _ in range(self.dispatch.qsize()):
            try:
                item = self.dispatch.pop_nowait()
            except queue.Empty:
                break
            if item is _STOP:
                break
            self._safe_process(item)
            handled += 1
        return handled

    def _safe_process(self, request: Request):
        try:
            self.process(request)
        except Exception as e:
            # keep the single writer alive; the request is lost
            self.stats.inc('dropped')
            json_log("writer_error", level="error", conn_id=request.conn_id, error=repr(e))

    def stop(self):
        """Ask `run()` to return after the requests already queued."""
        self.dispatch.push(_STOP)

    def run(self):
        json_log("writer_started", retry_policy=self.retry_policy)
        while True:
            item = self.dispatch.pop()
            if item is _STOP:
                break
            self._safe_process(item)
        json_log("writer_stopped", counter=self.counter)
