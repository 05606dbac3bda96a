"""
Reactor TCP word sequence server.

- Role: serve many clients from one event-loop thread; a second thread (the
    writer) sends every response.
- Request: free text, no framing; whatever bytes one read returns form one
    chunk. The first `[A-Za-z0-9_]+` run is the word; an optional second run
    of digits resets the shared counter.
- Response: `<word> <counter>\\n` (or the reversed word with
    `--transform reverse`). The counter is shared by all clients.
- Close: the server closes a connection on EOF, on a read error, or when a
    chunk contains byte 4 (EOT / Ctrl-D). That chunk gets no response.
- Errors: no error responses. Problems are logged as JSON lines on stderr.

Usage: `python server_reactor.py [port]` (default port 4567).
"""

import argparse
import json
import os
import selectors
import socket
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer

from dispatch import RETRY_POLICIES, DispatchQueue, Request, Writer
from protocol import EOT, TRANSFORMS, extract_tokens, get_transform, parse_counter
from registry import ConnectionRegistry, ConnectionState
from stats import Stats, json_log, process_metrics

DEFAULT_PORT = 4567
DEFAULT_HOST = "0.0.0.0"

_WAKE = "wake"

DEFAULT_CONFIG = {
    "buffer_size": 1024,
    "transform": "identity",
    "retry_policy": "drop",
    "max_requeues": 100,
    "reset_token": True,
    "inline": False,
    "backlog": 128,
}

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


def _clampi(v, lo, hi, default):
    try:
        v = int(v)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, v))


def _as_bool(v, default):
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    return default


def validate_config(cfg_in: dict) -> dict:
    """Clamp config values to safe ranges; bad choices fall back to defaults."""
    d = DEFAULT_CONFIG
    out = dict(cfg_in)
    out['buffer_size'] = _clampi(out.get('buffer_size'), 16, 1 << 20, d['buffer_size'])
    out['max_requeues'] = _clampi(out.get('max_requeues'), 0, 1_000_000, d['max_requeues'])
    out['backlog'] = _clampi(out.get('backlog'), 1, 65535, d['backlog'])
    out['reset_token'] = _as_bool(out.get('reset_token'), d['reset_token'])
    out['inline'] = _as_bool(out.get('inline'), d['inline'])
    if out.get('transform') not in TRANSFORMS:
        out['transform'] = d['transform']
    if out.get('retry_policy') not in RETRY_POLICIES:
        out['retry_policy'] = d['retry_policy']
    return out


def apply_env_overrides(base: dict, env=None) -> dict:
    """Let `SERVER_<KEY>` environment variables override config values."""
    env = os.environ if env is None else env
    for k in list(base.keys()):
        env_name = 'SERVER_' + k.upper()
        if env.get(env_name, '') != '':
            base[k] = env[env_name]
    return base


def load_config(path: str | None = None, env=None) -> dict:
    """Merge defaults, the JSON file (if any) and env overrides, then validate."""
    cfg = dict(DEFAULT_CONFIG)
    if path:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                file_cfg = json.load(f)
            if not isinstance(file_cfg, dict):
                raise ValueError("config root must be a JSON object")
            for k in cfg:
                if k in file_cfg:
                    cfg[k] = file_cfg[k]
        except (OSError, ValueError) as e:
            json_log("config_load_failed", level="warning", path=path, error=str(e))
            print(f"[REACTOR] Failed to load config {path}: {e}", file=sys.stderr)
    apply_env_overrides(cfg, env)
    return validate_config(cfg)


class Reactor:
    """Single-threaded selector loop over the listen socket and all clients.

    The reactor never writes to client sockets, except in the inline variant
    where `inline_writer` is drained on this thread after every wake.
    """
    def __init__(self, host: str, port: int, dispatch: DispatchQueue,
                 registry: ConnectionRegistry | None = None, stats: Stats | None = None,
                 buffer_size: int = 1024, reset_token: bool = True, backlog: int = 128,
                 inline_writer: Writer | None = None):
        self.dispatch = dispatch
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.stats = stats if stats is not None else Stats()
        self.buffer_size = buffer_size
        self.reset_token = reset_token
        self.inline_writer = inline_writer
        self.selector = selectors.DefaultSelector()

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((host, port))
            sock.listen(backlog)
            sock.setblocking(False)
        except OSError:
            sock.close()
            self.selector.close()
            raise
        self.listen_sock = sock
        # data=None marks the listen socket
        self.selector.register(sock, selectors.EVENT_READ, None)
        self._stopped = threading.Event()
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_r.setblocking(False)
        self.selector.register(self._wake_r, selectors.EVENT_READ, _WAKE)

    @property
    def address(self):
        return self.listen_sock.getsockname()

    def run_once(self, timeout: float | None = None) -> int:
        """Wait for readiness once and handle every ready socket.

        Returns the number of events handled. `timeout=None` blocks until
        something is ready, unless the inline queue still holds requests
        (re-queued ones included); then the wait is a poll.
        """
        if self.inline_writer is not None and not self.dispatch.empty():
            timeout = 0
        events = self.selector.select(timeout)
        for key, _mask in events:
            if key.data is None:
                self._accept()
            elif key.data is _WAKE:
                self._drain_wake()
            else:
                self._read(key.data)
        if self.inline_writer is not None:
            self.inline_writer.drain()
        return len(events)

    def serve_forever(self):
        while not self._stopped.is_set():
            self.run_once()

    def stop(self):
        """Make `serve_forever` return; safe to call from another thread."""
        self._stopped.set()
        try:
            self._wake_w.send(b"\0")
        except OSError:
            pass

    def _drain_wake(self):
        try:
            while self._wake_r.recv(64):
                pass
        except (BlockingIOError, InterruptedError):
            pass

    def _accept(self):
        try:
            conn, addr = self.listen_sock.accept()
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            json_log("accept_failed", level="warning", error=str(e))
            return
        conn.setblocking(False)
        state = self.registry.add(conn, addr)
        self.selector.register(conn, selectors.EVENT_READ, state)
        self.stats.connection_opened()
        json_log("accept", conn_id=state.conn_id, remote=state.remote(), active=len(self.registry))

    def _read(self, state: ConnectionState):
        if state.conn_id not in self.registry:
            return
        try:
            data = state.sock.recv(self.buffer_size)
        except (BlockingIOError, InterruptedError):
            return
        except OSError as e:
            self.stats.inc('read_errors')
            self._close(state, "read_error", error=str(e))
            return
        if not data:
            self._close(state, "eof")
            return

        text = state.decode(data)
        self.stats.inc('chunks')
        if EOT in text:
            # drop the whole chunk, even text before the EOT
            self.stats.inc('eot_closes')
            self._close(state, "eot")
            return

        word, second = extract_tokens(text, self.reset_token)
        if word is None:
            self.stats.inc('empty_chunks')
            return
        reset = None
        if second is not None:
            try:
                reset = parse_counter(second)
            except ValueError as e:
                json_log("reset_ignored", conn_id=state.conn_id, token=second, error=str(e))
        self.dispatch.push(Request(state.conn_id, text, word, reset))
        self.stats.inc('requests')

    def _close(self, state: ConnectionState, reason: str, **fields):
        self.registry.remove(state.conn_id)
        try:
            self.selector.unregister(state.sock)
        except (KeyError, ValueError):
            pass
        try:
            state.sock.close()
        except OSError:
            pass
        self.stats.connection_closed()
        json_log("close", conn_id=state.conn_id, remote=state.remote(), reason=reason,
                 bytes_in=state.bytes_in, **fields)

    def close(self):
        """Close every client, the listen socket and the selector."""
        for state in self.registry:
            self._close(state, "shutdown")
        for sock in (self.listen_sock, self._wake_r):
            try:
                self.selector.unregister(sock)
            except (KeyError, ValueError):
                pass
        self.listen_sock.close()
        self._wake_r.close()
        self._wake_w.close()
        self.selector.close()


def start_health_server(host: str, port: int, stats: Stats, start_time: float):
    """Serve `GET /health` (JSON stats) on a daemon thread; return the server."""
    class HealthHandler(BaseHTTPRequestHandler):
        def log_message(self, fmt, *args):
            pass

        def do_GET(self):
            if self.path == '/health':
                body = json.dumps({
                    'status': 'ok',
                    'uptime_s': round(time.time() - start_time, 3),
                    **stats.snapshot(),
                    **process_metrics(),
                }, ensure_ascii=False).encode('utf-8')
                self.send_response(200)
                self.send_header('Content-Type', 'application/json; charset=utf-8')
                self.send_header('Content-Length', str(len(body)))
                self.end_headers()
                self.wfile.write(body)
            else:
                self.send_response(404)
                self.end_headers()

    httpd = HTTPServer((host, port), HealthHandler)
    threading.Thread(target=httpd.serve_forever, name='health', daemon=True).start()
    return httpd


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Reactor TCP word sequence server.")
    ap.add_argument("port", nargs="?", type=int, default=DEFAULT_PORT,
                    help=f"Listen port. Default: {DEFAULT_PORT}.")
    ap.add_argument("--host", default=DEFAULT_HOST, help="Bind address. Default: all interfaces.")
    ap.add_argument("--config", help="Path to JSON config.")
    ap.add_argument("--transform", choices=sorted(TRANSFORMS), help="Word transform.")
    ap.add_argument("--retry-policy", choices=RETRY_POLICIES,
                    help="What to do with a request whose transform raised ServiceError. "
                         "The built-in identity and reverse transforms never raise it, "
                         "so this only matters for custom transforms passed to Writer.")
    ap.add_argument("--buffer-size", type=int, help="Bytes read per readiness event.")
    ap.add_argument("--no-reset", action="store_true", help="Ignore counter reset tokens.")
    ap.add_argument("--inline", action="store_true", help="Write responses on the reactor thread.")
    ap.add_argument("--health-port", type=int, default=0, help="HTTP health port. Use >0 to enable.")
    return ap


def main(argv=None) -> int:
    """Parse flags, bind the listen socket, start the writer and run the loop."""
    ap = build_parser()
    args = ap.parse_args(argv)
    if not 0 <= args.port <= 65535:
        ap.error(f"port out of range: {args.port}")

    cfg = load_config(args.config)
    # explicit flags beat file and env
    if args.transform:
        cfg['transform'] = args.transform
    if args.retry_policy:
        cfg['retry_policy'] = args.retry_policy
    if args.buffer_size is not None:
        cfg['buffer_size'] = args.buffer_size
    if args.no_reset:
        cfg['reset_token'] = False
    if args.inline:
        cfg['inline'] = True
    cfg = validate_config(cfg)

    registry = ConnectionRegistry()
    stats = Stats()
    dispatch = DispatchQueue()
    writer = Writer(dispatch, registry, get_transform(cfg['transform']),
                    retry_policy=cfg['retry_policy'], max_requeues=int(cfg['max_requeues']),
                    stats=stats)
    try:
        reactor = Reactor(args.host, args.port, dispatch, registry, stats,
                          buffer_size=int(cfg['buffer_size']), reset_token=cfg['reset_token'],
                          backlog=int(cfg['backlog']),
                          inline_writer=writer if cfg['inline'] else None)
    except OSError as e:
        json_log("bind_failed", level="error", host=args.host, port=args.port, error=str(e))
        print(f"[REACTOR] Cannot listen on {args.host}:{args.port}: {e}", file=sys.stderr)
        return 1

    httpd = None
    if int(args.health_port) > 0:
        try:
            httpd = start_health_server(args.host, int(args.health_port), stats, time.time())
            print(f"[REACTOR] Health at http://{args.host}:{int(args.health_port)}/health", flush=True)
        except OSError as e:
            print(f"[REACTOR] Health server failed: {e}", file=sys.stderr)

    if not cfg['inline']:
        writer.start()
    mode = "inline" if cfg['inline'] else "threaded"
    print(f"[REACTOR:{cfg['transform']}:{mode}] Listening on {args.host}:{reactor.address[1]}", flush=True)
    try:
        reactor.serve_forever()
    except KeyboardInterrupt:
        print("\n[REACTOR] Shutting down.")
    finally:
        if httpd is not None:
            try:
                httpd.shutdown()
                httpd.server_close()
            except (OSError, RuntimeError):
                pass
        writer.stop()
        reactor.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
