"""Framing of beanstalk commands and responses.

Commands are a single line of space separated ASCII tokens. ``put`` follows
its line with the job body. Responses are a single line, optionally followed
by a chunk of ``<bytes>`` raw bytes. Lines, bodies and chunks all end with
``\\r\\n``, which is never counted in a declared byte length.
"""
import logging
from typing import Optional, Union

from .connection import Connection
from .exceptions import TransportError
from .matcher import is_name

log = logging.getLogger(__name__)

CRLF = b"\r\n"

Arg = Union[int, str, bytes]


def _encode_arg(arg: Arg) -> bytes:
    if isinstance(arg, bool):
        raise TypeError(f"Invalid argument {arg!r}")
    if isinstance(arg, int):
        return b"%d" % arg
    if isinstance(arg, str):
        encoded = arg.encode("ascii")
        if not is_name(encoded):
            raise ValueError(f"Invalid name {arg!r}")
        return encoded
    if isinstance(arg, bytes):
        return arg
    raise TypeError(f"Invalid argument {arg!r}")


def encode_command(name: bytes, *args: Arg) -> bytes:
    """Returns ``b'<name> <arg1> ... <argN>\\r\\n'``. ``str`` arguments must
    be valid tube names."""
    return b" ".join([name, *(_encode_arg(a) for a in args)]) + CRLF


def encode_body(body: bytes) -> bytes:
    if not isinstance(body, bytes):
        raise TypeError(f"Job body must be bytes, not {type(body).__name__}")
    return body + CRLF


def send_command(
    conn: Connection, name: bytes, *args: Arg, body: Optional[bytes] = None
) -> None:
    line = encode_command(name, *args)
    data = None if body is None else encode_body(body)
    log.debug("sending %s", name.decode("ascii"))
    conn.sendall(line)
    if data is not None:
        conn.sendall(data)


def read_line(conn: Connection) -> bytes:
    """Reads one response line and returns it without its terminator."""
    line = conn.readline()
    if not line:
        raise TransportError("Unexpected EOF")

    if line[-2:] == CRLF:
        return line[:-2]
    if line[-1:] == b"\n":
        return line[:-1]

    raise TransportError("Unexpected EOF reading line", line)


def read_chunk(conn: Connection, size: int) -> bytes:
    """Reads a data chunk of ``size`` bytes and its two byte terminator.

    The terminator is discarded without being checked.
    """
    data = conn.read_exact(size + 2)
    return data[:size]
