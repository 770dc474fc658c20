"""Read side of the console connection.

A ReceiveLoop drains one socket on a daemon thread and hands every chunk to
the display sink, in the order it was read. There is no framing: a chunk is
whatever one recv returned, at most READ_BUFFER_SIZE bytes.

When the loop ends on its own (peer closed, read error) it calls
`on_closed(loop, error)` once; error is None for an orderly close. A loop
ended with stop() never calls it.
"""
import socket
import threading
from typing import Callable, Optional

from network import protocol as proto

READ_BUFFER_SIZE = 256


class ReceiveLoop:
    def __init__(self, sock: socket.socket, sink: Callable[[str], None],
                 on_closed: Optional[Callable[["ReceiveLoop", Optional[OSError]], None]] = None,
                 buffer_size: int = READ_BUFFER_SIZE):
        self.sock = sock
        self.sink = sink
        self.on_closed = on_closed
        self._buffer = bytearray(buffer_size)
        self._view = memoryview(self._buffer)
        self._lock = threading.Lock()
        self._stopped = False
        self._thread: Optional[threading.Thread] = None

    @property
    def stopped(self) -> bool:
        with self._lock:
            return self._stopped

    def start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("receive loop already started")
        self._thread = threading.Thread(target=self._run, name="console-recv", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop forwarding. Once this returns the sink is not called again."""
        with self._lock:
            self._stopped = True

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _run(self) -> None:
        error = None
        while True:
            try:
                n = self.sock.recv_into(self._buffer)
            except OSError as ex:
                error = ex
                break

            if n == 0:
                break

            text = proto.decode(self._view[:n])
            with self._lock:
                if self._stopped:
                    return
                try:
                    self.sink(text)
                except Exception as ex:
                    # the display must not kill the connection
                    print(f"[RECEPTION] Erreur affichage: {ex}")

        with self._lock:
            if self._stopped:
                return
            self._stopped = True

        if error is not None:
            print(f"[RECEPTION] Erreur de lecture: {error}")
        else:
            print("[RECEPTION] Connexion fermée par le moteur")
        if self.on_closed:
            self.on_closed(self, error)
