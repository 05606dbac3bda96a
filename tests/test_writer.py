import socket
import unittest

from dispatch import DROPPED, REQUEUED, WRITTEN, DispatchQueue, Request, Writer
from protocol import COUNTER_MODULUS, ServiceError, get_transform
from registry import ConnectionRegistry


def recv_lines(sock: socket.socket, n: int, timeout: float = 2.0) -> list[str]:
    sock.settimeout(timeout)
    buf = b''
    while buf.count(b'\n') < n:
        chunk = sock.recv(4096)
        if not chunk:
            break
        buf += chunk
    return buf.decode('utf-8').splitlines()


class FlakyTransform:
    """Raise ServiceError for the first `failures` calls, then pass through."""
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, word: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise ServiceError('backend unavailable')
        return word


class TestWriter(unittest.TestCase):
    def setUp(self):
        self.server_side, self.client_side = socket.socketpair()
        self.registry = ConnectionRegistry()
        self.state = self.registry.add(self.server_side, ('127.0.0.1', 40000))
        self.dispatch = DispatchQueue()

    def tearDown(self):
        self.server_side.close()
        self.client_side.close()

    def make_writer(self, transform=None, **kw) -> Writer:
        return Writer(self.dispatch, self.registry, transform or get_transform('identity'), **kw)

    def req(self, word, reset=None, conn_id=None) -> Request:
        cid = self.state.conn_id if conn_id is None else conn_id
        return Request(cid, word + '\n', word, reset)

    def test_counters_follow_dequeue_order(self):
        w = self.make_writer()
        for word in ('hello', 'world', 'again'):
            self.assertEqual(w.process(self.req(word)), WRITTEN)
        self.assertEqual(recv_lines(self.client_side, 3), ['hello 0', 'world 1', 'again 2'])
        self.assertEqual(w.counter, 3)
        self.assertEqual(w.stats.snapshot()['responses'], 3)
        self.assertEqual(w.stats.snapshot()['last_counter'], 2)

    def test_reset_applies_to_current_request(self):
        w = self.make_writer()
        w.process(self.req('a'))
        w.process(self.req('b', reset=100))
        w.process(self.req('c'))
        self.assertEqual(recv_lines(self.client_side, 3), ['a 0', 'b 100', 'c 101'])
        self.assertEqual(w.stats.snapshot()['resets'], 1)

    def test_reset_to_zero(self):
        w = self.make_writer(counter=55)
        w.process(self.req('x', reset=0))
        self.assertEqual(recv_lines(self.client_side, 1), ['x 0'])

    def test_reverse_transform(self):
        w = self.make_writer(get_transform('reverse'))
        w.process(self.req('hello'))
        w.process(self.req('world'))
        self.assertEqual(recv_lines(self.client_side, 2), ['olleh 0', 'dlrow 1'])

    def test_counter_wraps_at_64_bits(self):
        w = self.make_writer(counter=COUNTER_MODULUS - 1)
        w.process(self.req('x'))
        w.process(self.req('y'))
        self.assertEqual(recv_lines(self.client_side, 2), [f'x {COUNTER_MODULUS - 1}', 'y 0'])

    def test_unknown_connection_is_dropped(self):
        w = self.make_writer()
        self.registry.remove(self.state.conn_id)
        self.assertEqual(w.process(self.req('hello')), DROPPED)
        self.assertEqual(w.stats.snapshot()['dropped'], 1)

    def test_write_error_is_dropped(self):
        w = self.make_writer()
        self.server_side.close()
        self.assertEqual(w.process(self.req('hello')), DROPPED)
        snap = w.stats.snapshot()
        self.assertEqual(snap['write_errors'], 1)
        self.assertEqual(snap['dropped'], 1)
        # later requests still go through the same writer
        self.assertEqual(w.process(self.req('again')), DROPPED)

    def test_service_error_dropped_by_default(self):
        w = self.make_writer(FlakyTransform(1))
        self.assertEqual(w.process(self.req('hello')), DROPPED)
        self.assertTrue(self.dispatch.empty())
        self.assertEqual(w.counter, 0)

    def test_service_error_requeued_at_tail(self):
        w = self.make_writer(FlakyTransform(1), retry_policy='requeue')
        self.dispatch.push(self.req('first'))
        self.assertEqual(w.process(self.req('flaky')), REQUEUED)
        self.assertEqual(w.counter, 0)

        # the retry goes behind what was already queued
        self.assertEqual(self.dispatch.pop(timeout=1).word, 'first')
        retried = self.dispatch.pop(timeout=1)
        self.assertEqual(retried.word, 'flaky')
        self.assertEqual(retried.attempts, 1)
        self.assertEqual(w.process(retried), WRITTEN)
        self.assertEqual(recv_lines(self.client_side, 1), ['flaky 0'])

    def test_failed_reset_does_not_leak_to_next_request(self):
        w = self.make_writer(FlakyTransform(1), retry_policy='requeue')
        self.dispatch.push(self.req('flaky', reset=100))
        self.dispatch.push(self.req('other'))
        outcomes = []
        while not self.dispatch.empty():
            outcomes.append(w.process(self.dispatch.pop(timeout=1)))
        self.assertEqual(outcomes, [REQUEUED, WRITTEN, WRITTEN])
        lines = recv_lines(self.client_side, 2)
        self.assertEqual(lines, ['other 0', 'flaky 100'])
        counters = [int(line.split(' ')[1]) for line in lines]
        self.assertEqual(len(set(counters)), 2)
        self.assertEqual(w.counter, 101)
        self.assertEqual(w.stats.snapshot()['resets'], 1)

    def test_requeue_is_bounded(self):
        w = self.make_writer(FlakyTransform(100), retry_policy='requeue', max_requeues=2)
        outcomes = []
        self.dispatch.push(self.req('stuck'))
        while not self.dispatch.empty():
            outcomes.append(w.process(self.dispatch.pop(timeout=1)))
        self.assertEqual(outcomes, [REQUEUED, REQUEUED, DROPPED])
        self.assertEqual(w.stats.snapshot()['requeued'], 2)

    def test_requeue_stops_when_connection_closed(self):
        w = self.make_writer(FlakyTransform(100), retry_policy='requeue', max_requeues=0)
        self.registry.remove(self.state.conn_id)
        self.assertEqual(w.process(self.req('gone')), DROPPED)
        self.assertTrue(self.dispatch.empty())

    def test_unknown_retry_policy(self):
        with self.assertRaises(ValueError):
            self.make_writer(retry_policy='forever')

    def test_drain_handles_queued_requests(self):
        w = self.make_writer()
        for word in ('a', 'b', 'c'):
            self.dispatch.push(self.req(word))
        self.assertEqual(w.drain(), 3)
        self.assertEqual(recv_lines(self.client_side, 3), ['a 0', 'b 1', 'c 2'])
        self.assertEqual(w.drain(), 0)

    def test_thread_run_and_stop(self):
        w = self.make_writer()
        w.start()
        try:
            for i in range(5):
                self.dispatch.push(self.req(f'w{i}'))
            self.assertEqual(recv_lines(self.client_side, 5), [f'w{i} {i}' for i in range(5)])
        finally:
            w.stop()
            w.join(timeout=2)
        self.assertFalse(w.is_alive())


if __name__ == '__main__':
    unittest.main()
