from typing import List, Optional, Sequence


class Error(Exception):
    """Base class for non-connection related exceptions. Connection related
    issues raise :class:`TransportError`, a subclass of the built-in
    ``ConnectionError``.
    """


class TransportError(ConnectionError):
    """The connection failed while sending or receiving.

    The stream can't be trusted after this is raised: close the client and
    open a new connection.
    """

    def __init__(self, message: str, partial: bytes = b"") -> None:
        super().__init__(message)

        #: Bytes that were read before the failure, kept for diagnostics.
        self.partial: bytes = partial


class ProtocolMismatch(Error):
    """The server replied with something other than the success response of
    the issued command.

    This covers protocol errors (``BAD_FORMAT``, ``UNKNOWN_COMMAND``,
    ``OUT_OF_MEMORY``, ``INTERNAL_ERROR``) as well as negative outcomes such as
    ``NOT_FOUND`` or ``TIMED_OUT``. Inspect :attr:`status` to tell them apart.
    """

    def __init__(
        self,
        line: bytes,
        expected: Sequence[bytes],
        reason: Optional[str] = None,
    ) -> None:
        tokens = line.split()

        #: The response line as sent by the server, without the terminator.
        self.line: bytes = line

        #: The status word, ``b'NOT_FOUND'`` for the response ``b'NOT_FOUND\r\n'``.
        self.status: bytes = tokens[0] if tokens else b""

        #: The remaining split values after the status word.
        self.values: List[bytes] = tokens[1:]

        #: The status words that would have been accepted.
        self.expected: List[bytes] = list(expected)

        message = "expected %s, got %r" % (
            " or ".join(e.decode("ascii") for e in self.expected),
            line,
        )
        if reason:
            message += " (%s)" % reason
        super().__init__(message)


class ConfigurationError(Error):
    """The client configuration is malformed."""
