"""Connection state machine for the engine console.

    DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED
                    CONNECTING -> DISCONNECTED   (handshake failed or cancelled)

ConnectionManager owns the only socket. The caller thread (connect, send,
disconnect) and the receive thread (teardown after EOF or a read error) both
go through the same state lock. Writes hold a separate send lock, so a
teardown can shut the socket down under a blocked send, which then fails
cleanly instead of using a half-closed socket.

Usage:
  mgr = ConnectionManager("127.0.0.1", 10001, sink=print)
  mgr.add_listener(lambda event, data: ...)
  mgr.connect()
  mgr.send_message(Script("print(1+1)"))
  mgr.disconnect()
"""
import socket
import threading
import time
from enum import Enum
from typing import Callable, List, Optional

from network import protocol as proto
from network.errors import (
    ConnectFailed,
    ConnectInProgress,
    NotConnected,
    ReceiveFailed,
    RemoteClosed,
    SendFailed,
)
from network.receiver import READ_BUFFER_SIZE, ReceiveLoop

# pause between shutdown() and close() so the peer sees the FIN first
SHUTDOWN_GRACE = 0.01


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class ConnectionManager:
    def __init__(self, host: str, port: int, sink: Optional[Callable[[str], None]] = None,
                 buffer_size: int = READ_BUFFER_SIZE, shutdown_grace: float = SHUTDOWN_GRACE,
                 connect_timeout: Optional[float] = None):
        self.host = host
        self.port = port
        self.sink = sink or (lambda text: None)
        self.buffer_size = buffer_size
        self.shutdown_grace = shutdown_grace
        self.connect_timeout = connect_timeout

        self._lock = threading.RLock()
        # serializes writes; never taken while holding _lock
        self._send_lock = threading.Lock()
        self._state = ConnectionState.DISCONNECTED
        self._sock: Optional[socket.socket] = None
        self._receiver: Optional[ReceiveLoop] = None
        self._attempt = 0
        self._listeners: List[Callable[[str, dict], None]] = []

    @property
    def endpoint(self) -> tuple:
        return (self.host, self.port)

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    def add_listener(self, callback: Callable[[str, dict], None]) -> None:
        """Register `callback(event, data)` for connection events."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[str, dict], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _notify_listeners(self, event: str, data: Optional[dict] = None) -> None:
        payload = {"host": self.host, "port": self.port}
        payload.update(data or {})
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as e:
                print(f"[CONNEXION] Erreur listener ({event}): {e}")

    # ----------------------------
    # Cycle de vie
    # ----------------------------
    def connect(self) -> None:
        """Open a new connection, replacing the current one if any.

        Blocks until the handshake completes. Raises ConnectInProgress when a
        handshake is already running and ConnectFailed when this one fails.
        """
        replaced = False
        with self._lock:
            if self._state is ConnectionState.CONNECTING:
                raise ConnectInProgress(f"connexion vers {self.host}:{self.port} déjà en cours")
            if self._state is ConnectionState.CONNECTED:
                self._teardown()
                replaced = True
            self._state = ConnectionState.CONNECTING
            self._attempt += 1
            attempt = self._attempt

        if replaced:
            self._notify_listeners("disconnected")
        print(f"[CONNEXION] Connexion à {self.host}:{self.port}...")
        self._notify_listeners("connecting")

        try:
            sock = socket.create_connection(self.endpoint, timeout=self.connect_timeout)
            sock.settimeout(None)
        except OSError as ex:
            with self._lock:
                if self._attempt == attempt and self._state is ConnectionState.CONNECTING:
                    self._state = ConnectionState.DISCONNECTED
            err = ConnectFailed(f"impossible de joindre {self.host}:{self.port}: {ex}")
            print(f"[CONNEXION] {err}")
            self._notify_listeners("connect_failed", {"error": err})
            raise err from ex

        receiver = None
        with self._lock:
            cancelled = self._attempt != attempt or self._state is not ConnectionState.CONNECTING
            if not cancelled:
                self._sock = sock
                self._state = ConnectionState.CONNECTED
                receiver = ReceiveLoop(sock, self.sink, self._on_receiver_closed, self.buffer_size)
                self._receiver = receiver

        if cancelled:
            self._close_socket(sock)
            err = ConnectFailed(f"connexion vers {self.host}:{self.port} annulée")
            print(f"[CONNEXION] {err}")
            self._notify_listeners("connect_failed", {"error": err})
            raise err

        print(f"[CONNEXION] Connecté à {self.host}:{self.port}")
        self._notify_listeners("connected")

        # reading starts only now, so remote_closed can never precede connected
        with self._lock:
            if self._receiver is receiver:
                receiver.start()

    def disconnect(self) -> None:
        """Close the connection. Does nothing when already disconnected."""
        with self._lock:
            if self._state is ConnectionState.CONNECTED:
                self._teardown()
            elif self._state is ConnectionState.CONNECTING:
                # the pending connect() sees the state change and gives up
                self._state = ConnectionState.DISCONNECTED
            else:
                return

        print(f"[CONNEXION] Déconnecté de {self.host}:{self.port}")
        self._notify_listeners("disconnected")

    def send(self, payload: bytes) -> None:
        """Write the whole payload.

        The write runs outside the state lock: a disconnect() issued while it
        is blocked shuts the socket down, and the write fails with SendFailed.
        """
        with self._send_lock:
            with self._lock:
                if self._state is not ConnectionState.CONNECTED or self._sock is None:
                    raise NotConnected(f"pas de connexion vers {self.host}:{self.port}")
                sock = self._sock
            try:
                sock.sendall(payload)
                return
            except OSError as ex:
                failure = ex
            with self._lock:
                if self._sock is sock:
                    self._teardown()

        err = SendFailed(f"envoi impossible: {failure}")
        print(f"[CONNEXION] {err}")
        self._notify_listeners("send_failed", {"error": err})
        raise err from failure

    def send_message(self, msg: proto.OutboundMessage) -> bytes:
        payload = proto.encode(msg)
        self.send(payload)
        print(f"[CONNEXION] Envoyé: {payload.decode(proto.ENCODING)}")
        return payload

    # ----------------------------
    # Interne
    # ----------------------------
    def _teardown(self) -> None:
        # caller holds self._lock
        receiver, sock = self._receiver, self._sock
        self._receiver = None
        self._sock = None
        self._state = ConnectionState.DISCONNECTED
        if receiver is not None:
            receiver.stop()
        if sock is not None:
            self._close_socket(sock)

    def _close_socket(self, sock: socket.socket) -> None:
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # peer already gone, close() below is all that is left to do
            pass
        time.sleep(self.shutdown_grace)
        sock.close()

    def _on_receiver_closed(self, receiver: ReceiveLoop, error: Optional[OSError]) -> None:
        with self._lock:
            if receiver is not self._receiver:
                return
            self._teardown()

        if error is None:
            self._notify_listeners("remote_closed", {
                "error": RemoteClosed(f"{self.host}:{self.port} a fermé la connexion"),
            })
        else:
            self._notify_listeners("receive_failed", {
                "error": ReceiveFailed(f"erreur de lecture: {error}"),
            })
