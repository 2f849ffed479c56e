import abc
import logging
import socket
from typing import BinaryIO, Optional

from .exceptions import TransportError

log = logging.getLogger(__name__)


class Connection(abc.ABC):
    """A duplex byte stream to beanstalkd.

    The client only talks to the server through these methods, so any
    transport that implements them can be passed to
    :class:`Client <stalkwire.Client>` as its connection factory.
    """

    @abc.abstractmethod
    def connect(self, host: str, port: int, timeout: float) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def set_timeout(self, timeout: float) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def set_keepalive(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def sendall(self, data: bytes) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def readline(self) -> bytes:
        """Returns the next line including its terminator. A line without a
        terminator means the stream ended before it was complete."""
        raise NotImplementedError

    @abc.abstractmethod
    def read_exact(self, size: int) -> bytes:
        raise NotImplementedError


class SocketConnection(Connection):
    """A blocking TCP connection."""

    def __init__(self) -> None:
        self._sock: Optional[socket.socket] = None
        self._reader: Optional[BinaryIO] = None

    def connect(self, host: str, port: int, timeout: float) -> None:
        try:
            self._sock = socket.create_connection((host, port), timeout)
        except OSError as e:
            raise TransportError(f"Unable to connect to {host}:{port}: {e}") from e
        self._reader = self._sock.makefile("rb")
        log.debug("connected to %s:%d", host, port)

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def set_timeout(self, timeout: float) -> None:
        self._socket().settimeout(timeout)

    def set_keepalive(self) -> None:
        self._socket().setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)

    def sendall(self, data: bytes) -> None:
        try:
            self._socket().sendall(data)
        except OSError as e:
            raise TransportError(f"Send failed: {e}") from e

    def readline(self) -> bytes:
        try:
            return self._file().readline()
        except OSError as e:
            # socket.timeout is an OSError; the buffered reader is unusable
            # after it, so nothing partial can be recovered.
            raise TransportError(f"Receive failed: {e}") from e

    def read_exact(self, size: int) -> bytes:
        try:
            data = self._file().read(size)
        except OSError as e:
            raise TransportError(f"Receive failed: {e}") from e
        if len(data) != size:
            raise TransportError("Unexpected EOF reading chunk", data)
        return data

    def _socket(self) -> socket.socket:
        if self._sock is None:
            raise TransportError("Not connected")
        return self._sock

    def _file(self) -> BinaryIO:
        if self._reader is None:
            raise TransportError("Not connected")
        return self._reader
