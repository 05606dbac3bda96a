"""
Registry of live client connections, keyed by a connection id.

The reactor thread is the only one that adds or removes entries. The writer
thread only looks entries up by id (a single dict read), so no lock is used.
Ids come from a process-wide counter and are never reused, so a response can
never reach a new client that happens to get an old file descriptor.
"""

from __future__ import annotations

import codecs
import itertools
import socket
import time
from typing import Dict, Iterator, List, Optional


class ConnectionState:
    """Per-connection state owned by the reactor."""

    __slots__ = ('conn_id', 'sock', 'addr', 'opened_at', 'bytes_in', 'chunks', '_decoder')

    def __init__(self, conn_id: int, sock: socket.socket, addr):
        self.conn_id = conn_id
        self.sock = sock
        self.addr = addr
        self.opened_at = time.time()
        self.bytes_in = 0
        self.chunks = 0
        # incremental: a UTF-8 sequence split between two reads is kept
        self._decoder = codecs.getincrementaldecoder('utf-8')(errors='replace')

    def decode(self, data: bytes) -> str:
        """Decode one read window, carrying partial characters over."""
        self.bytes_in += len(data)
        self.chunks += 1
        return self._decoder.decode(data)

    def remote(self) -> str:
        try:
            host, port = self.addr[0], self.addr[1]
            return f"{host}:{port}"
        except (TypeError, IndexError):
            return str(self.addr)

    def __repr__(self):
        return f"ConnectionState(conn_id={self.conn_id}, remote={self.remote()!r})"


class ConnectionRegistry:
    """Map from connection id to `ConnectionState`."""

    def __init__(self):
        self._conns: Dict[int, ConnectionState] = {}
        self._ids = itertools.count(1)

    def add(self, sock: socket.socket, addr) -> ConnectionState:
        state = ConnectionState(next(self._ids), sock, addr)
        self._conns[state.conn_id] = state
        return state

    def remove(self, conn_id: int) -> Optional[ConnectionState]:
        return self._conns.pop(conn_id, None)

    def get(self, conn_id: int) -> Optional[ConnectionState]:
        return self._conns.get(conn_id)

    def ids(self) -> List[int]:
        return list(self._conns)

    def __contains__(self, conn_id) -> bool:
        return conn_id in self._conns

    def __len__(self) -> int:
        return len(self._conns)

    def __iter__(self) -> Iterator[ConnectionState]:
        return iter(list(self._conns.values()))
