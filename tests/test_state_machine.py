import queue
import socket
import threading
import time
import unittest
from unittest import mock

from network.errors import ConnectFailed, ConnectInProgress, NotConnected, ReceiveFailed, RemoteClosed, SendFailed
from network.protocol import Command, Script
from network.state_machine import ConnectionManager, ConnectionState


def recv_exact(sock, n):
    buf = bytearray()
    while len(buf) < n:
        chunk = sock.recv(n - len(buf))
        if not chunk:
            raise ConnectionError("socket closed while reading")
        buf.extend(chunk)
    return bytes(buf)


class FakeEngine:
    """Loopback listener standing in for the engine console server."""

    def __init__(self):
        self.listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.listener.bind(("127.0.0.1", 0))
        self.listener.listen(5)
        self.listener.settimeout(0.1)
        self.port = self.listener.getsockname()[1]
        self.conns = queue.Queue()
        self.accepted = []
        self.running = True
        self.thread = threading.Thread(target=self._accept_connections, daemon=True)
        self.thread.start()

    def _accept_connections(self):
        while self.running:
            try:
                conn, _ = self.listener.accept()
            except socket.timeout:
                continue
            except OSError:
                break
            conn.settimeout(2.0)
            self.accepted.append(conn)
            self.conns.put(conn)

    def accept(self, timeout=2.0):
        return self.conns.get(timeout=timeout)

    def close(self):
        self.running = False
        self.thread.join(1.0)
        self.listener.close()
        for conn in self.accepted:
            conn.close()


class EventRecorder:
    def __init__(self):
        self.events = []
        self.cond = threading.Condition()

    def __call__(self, event, data):
        with self.cond:
            self.events.append((event, data))
            self.cond.notify_all()

    def names(self):
        with self.cond:
            return [e for e, _ in self.events]

    def wait_for(self, event, timeout=2.0):
        with self.cond:
            return self.cond.wait_for(lambda: event in [e for e, _ in self.events], timeout)

    def data(self, event):
        with self.cond:
            return next(d for e, d in self.events if e == event)


class ChunkSink:
    def __init__(self):
        self.chunks = []
        self.cond = threading.Condition()

    def __call__(self, text):
        with self.cond:
            self.chunks.append(text)
            self.cond.notify_all()

    def wait_for_count(self, n, timeout=2.0):
        with self.cond:
            return self.cond.wait_for(lambda: len(self.chunks) >= n, timeout)


def unused_port():
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


class ConnectionManagerTest(unittest.TestCase):
    def setUp(self):
        self.engine = FakeEngine()
        self.sink = ChunkSink()
        self.events = EventRecorder()
        self.mgr = ConnectionManager("127.0.0.1", self.engine.port, sink=self.sink, shutdown_grace=0)
        self.mgr.add_listener(self.events)

    def tearDown(self):
        self.mgr.disconnect()
        self.engine.close()

    def test_initial_state(self):
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        self.assertFalse(self.mgr.is_connected)
        self.assertEqual(self.mgr.endpoint, ("127.0.0.1", self.engine.port))

    def test_connect_then_disconnect(self):
        self.mgr.connect()
        conn = self.engine.accept()
        self.assertIs(self.mgr.state, ConnectionState.CONNECTED)
        self.assertEqual(self.events.names(), ["connecting", "connected"])

        self.mgr.disconnect()
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        # the engine sees an orderly close
        self.assertEqual(conn.recv(16), b"")

    def test_disconnect_twice(self):
        self.mgr.connect()
        self.mgr.disconnect()
        self.mgr.disconnect()
        self.assertEqual(self.events.names().count("disconnected"), 1)
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)

    def test_disconnect_when_never_connected(self):
        self.mgr.disconnect()
        self.assertEqual(self.events.names(), [])

    def test_send_script(self):
        self.mgr.connect()
        conn = self.engine.accept()
        payload = self.mgr.send_message(Script("print(1+1)"))
        self.assertEqual(payload, b'{"type":"script","script":"print(1+1)"}')
        self.assertEqual(recv_exact(conn, len(payload)), payload)

    def test_sends_keep_call_order(self):
        self.mgr.connect()
        conn = self.engine.accept()
        first = self.mgr.send_message(Command("spawn", "unit", "player"))
        second = self.mgr.send_message(Script("Device.stop()"))
        self.assertEqual(recv_exact(conn, len(first) + len(second)), first + second)

    def test_send_while_disconnected(self):
        with self.assertRaises(NotConnected):
            self.mgr.send(b"{}")
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        with self.assertRaises(queue.Empty):
            self.engine.accept(timeout=0.2)

    def test_connect_refused(self):
        mgr = ConnectionManager("127.0.0.1", unused_port(), shutdown_grace=0)
        events = EventRecorder()
        mgr.add_listener(events)
        with self.assertRaises(ConnectFailed):
            mgr.connect()
        self.assertIs(mgr.state, ConnectionState.DISCONNECTED)
        self.assertEqual(events.names(), ["connecting", "connect_failed"])
        self.assertIsInstance(events.data("connect_failed")["error"], ConnectFailed)

    def test_inbound_chunks_reach_sink_in_order(self):
        self.mgr.connect()
        conn = self.engine.accept()
        conn.sendall(b"AB")
        self.assertTrue(self.sink.wait_for_count(1))
        conn.sendall(b"CD")
        self.assertTrue(self.sink.wait_for_count(2))
        self.assertEqual(self.sink.chunks, ["AB", "CD"])

    def test_remote_close(self):
        self.mgr.connect()
        conn = self.engine.accept()
        conn.close()
        self.assertTrue(self.events.wait_for("remote_closed"))
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        self.assertIsInstance(self.events.data("remote_closed")["error"], RemoteClosed)
        self.assertNotIn("receive_failed", self.events.names())
        with self.assertRaises(NotConnected):
            self.mgr.send(b"{}")

    def test_receive_error_tears_down(self):
        with mock.patch.object(socket.socket, "recv_into", side_effect=ConnectionResetError("reset")):
            self.mgr.connect()
            self.assertTrue(self.events.wait_for("receive_failed"))
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        self.assertIsInstance(self.events.data("receive_failed")["error"], ReceiveFailed)
        with self.assertRaises(NotConnected):
            self.mgr.send(b"{}")

    def test_send_error_tears_down(self):
        self.mgr.connect()
        self.engine.accept()
        with mock.patch.object(socket.socket, "sendall", side_effect=BrokenPipeError("broken pipe")):
            with self.assertRaises(SendFailed):
                self.mgr.send(b"{}")
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        self.assertIn("send_failed", self.events.names())

    def test_reconnect_replaces_transport(self):
        self.mgr.connect()
        first = self.engine.accept()
        self.mgr.connect()
        second = self.engine.accept()
        self.assertIs(self.mgr.state, ConnectionState.CONNECTED)
        self.assertEqual(first.recv(16), b"")

        payload = self.mgr.send_message(Script("x"))
        self.assertEqual(recv_exact(second, len(payload)), payload)
        self.assertEqual(
            self.events.names(),
            ["connecting", "connected", "disconnected", "connecting", "connected"],
        )
        # the replaced connection does not report a remote close
        self.assertNotIn("remote_closed", self.events.names())

    def test_connected_reported_before_remote_close(self):
        local, remote = socket.socketpair()
        remote.close()
        self.addCleanup(local.close)

        def slow_listener(event, data):
            # keeps "connected" in flight while the peer is already gone
            if event == "connected":
                time.sleep(0.2)

        mgr = ConnectionManager("127.0.0.1", 10001, shutdown_grace=0)
        events = EventRecorder()
        mgr.add_listener(slow_listener)
        mgr.add_listener(events)
        with mock.patch("network.state_machine.socket.create_connection", return_value=local):
            mgr.connect()
        self.assertTrue(events.wait_for("remote_closed"))
        self.assertEqual(events.names(), ["connecting", "connected", "remote_closed"])
        self.assertIs(mgr.state, ConnectionState.DISCONNECTED)

    def test_disconnect_during_blocked_send(self):
        self.mgr.connect()
        self.engine.accept()  # never reads, so the write fills the buffers and blocks
        results = queue.Queue()

        def writer():
            try:
                self.mgr.send(b"x" * (32 * 1024 * 1024))
            except SendFailed as ex:
                results.put(ex)
            else:
                results.put(None)

        threading.Thread(target=writer, daemon=True).start()
        time.sleep(0.2)

        closer = threading.Thread(target=self.mgr.disconnect, daemon=True)
        closer.start()
        closer.join(2.0)
        self.assertFalse(closer.is_alive())
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        self.assertIsInstance(results.get(timeout=2.0), SendFailed)
        with self.assertRaises(NotConnected):
            self.mgr.send(b"{}")

    def test_data_after_disconnect_not_forwarded(self):
        self.mgr.connect()
        conn = self.engine.accept()
        conn.sendall(b"AB")
        self.assertTrue(self.sink.wait_for_count(1))

        self.mgr.disconnect()
        try:
            conn.sendall(b"late")
        except OSError:
            pass  # console side may already have reset the connection
        time.sleep(0.2)
        self.assertEqual(self.sink.chunks, ["AB"])
        self.assertNotIn("remote_closed", self.events.names())


class ConnectingStateTest(unittest.TestCase):
    """Handshake held open with a patched create_connection."""

    def setUp(self):
        self.release = threading.Event()
        self.entered = threading.Event()
        self.local, self.remote = socket.socketpair()
        self.remote.settimeout(2.0)
        self.mgr = ConnectionManager("127.0.0.1", 10001, shutdown_grace=0)
        self.errors = queue.Queue()

        def slow_handshake(address, timeout=None):
            self.entered.set()
            self.release.wait(2.0)
            return self.local

        patcher = mock.patch("network.state_machine.socket.create_connection", side_effect=slow_handshake)
        patcher.start()
        self.addCleanup(patcher.stop)

        def run():
            try:
                self.mgr.connect()
            except ConnectFailed as ex:
                self.errors.put(ex)
            else:
                self.errors.put(None)

        self.thread = threading.Thread(target=run, daemon=True)
        self.thread.start()
        self.assertTrue(self.entered.wait(2.0))

    def tearDown(self):
        self.release.set()
        self.thread.join(2.0)
        self.mgr.disconnect()
        self.local.close()
        self.remote.close()

    def test_state_is_connecting(self):
        self.assertIs(self.mgr.state, ConnectionState.CONNECTING)

    def test_send_while_connecting(self):
        with self.assertRaises(NotConnected):
            self.mgr.send(b"{}")

    def test_second_connect_rejected(self):
        with self.assertRaises(ConnectInProgress):
            self.mgr.connect()
        self.release.set()
        self.assertIsNone(self.errors.get(timeout=2.0))
        self.assertIs(self.mgr.state, ConnectionState.CONNECTED)

    def test_disconnect_cancels_handshake(self):
        self.mgr.disconnect()
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        self.release.set()
        self.assertIsInstance(self.errors.get(timeout=2.0), ConnectFailed)
        self.assertIs(self.mgr.state, ConnectionState.DISCONNECTED)
        # the socket returned by the cancelled handshake is closed
        self.assertEqual(self.remote.recv(16), b"")


if __name__ == "__main__":
    unittest.main()
