"""Errors raised or reported by the console network layer.

Everything derives from ConsoleError so the UI can catch the whole family
in one place. RemoteClosed and ReceiveFailed are never raised to a caller:
the receive thread hands them to the connection listeners instead.
"""


class ConsoleError(Exception):
    pass


class ConnectFailed(ConsoleError):
    """The handshake with the engine did not complete."""


class ConnectInProgress(ConsoleError):
    """A connect was requested while another handshake is running."""


class NotConnected(ConsoleError):
    """send() called while the connection is not established."""


class SendFailed(ConsoleError):
    """The transport rejected a write; the connection has been closed."""


class MalformedCommandInput(ConsoleError):
    """A command line that does not split into verb, type and name."""

    def __init__(self, line: str, tokens: int):
        super().__init__(f"commande invalide ({tokens} mot(s), 3 attendus): {line!r}")
        self.line = line
        self.tokens = tokens


class RemoteClosed(ConsoleError):
    """The engine closed the connection (zero byte read)."""


class ReceiveFailed(ConsoleError):
    """A read failed for a reason other than an orderly close."""
