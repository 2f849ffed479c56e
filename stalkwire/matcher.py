import string
from typing import Callable, List, Tuple, Union

from .exceptions import ProtocolMismatch

Value = Union[int, str]
Field = Callable[[bytes], Value]

MAX_NAME_LENGTH = 200

_NAME_CHARS = frozenset((string.ascii_letters + string.digits + "-+/;.$()_").encode("ascii"))
_DIGITS = frozenset(string.digits.encode("ascii"))


def int_field(token: bytes) -> int:
    if not token or not _DIGITS.issuperset(token):
        raise ValueError(f"invalid integer {token!r}")
    return int(token)


def name_field(token: bytes) -> str:
    if not is_name(token):
        raise ValueError(f"invalid name {token!r}")
    return token.decode("ascii")


def is_name(token: bytes) -> bool:
    """Checks a tube name against the protocol's name rules."""
    return (
        0 < len(token) <= MAX_NAME_LENGTH
        and not token.startswith(b"-")
        and _NAME_CHARS.issuperset(token)
    )


class Reply:
    """The shape of a success response.

    When ``chunk`` is set, the last field is the length of a data chunk that
    follows the line.
    """

    def __init__(self, status: bytes, *fields: Field, chunk: bool = False) -> None:
        self.status = status
        self.fields = fields
        self.chunk = chunk

    def parse(self, tokens: List[bytes]) -> List[Value]:
        """Parses the tokens after the status word. Raises ``ValueError`` when
        they don't fit the grammar."""
        if len(tokens) != len(self.fields):
            raise ValueError(
                f"expected {len(self.fields)} values, got {len(tokens)}"
            )
        return [field(token) for field, token in zip(self.fields, tokens)]

    def __repr__(self) -> str:
        return f"Reply({self.status!r})"


INSERTED = Reply(b"INSERTED", int_field)
BURIED_ID = Reply(b"BURIED", int_field)
USING = Reply(b"USING", name_field)
RESERVED = Reply(b"RESERVED", int_field, int_field, chunk=True)
DELETED = Reply(b"DELETED")
RELEASED = Reply(b"RELEASED")
BURIED = Reply(b"BURIED")
TOUCHED = Reply(b"TOUCHED")
WATCHING = Reply(b"WATCHING", int_field)
FOUND = Reply(b"FOUND", int_field, int_field, chunk=True)
KICKED_COUNT = Reply(b"KICKED", int_field)
KICKED = Reply(b"KICKED")
OK = Reply(b"OK", int_field, chunk=True)
PAUSED = Reply(b"PAUSED")


def match(line: bytes, *replies: Reply) -> Tuple[Reply, List[Value]]:
    """Matches a response line against the success replies of a command and
    returns the first reply that fits along with its parsed values.

    Anything else, error responses included, raises
    :class:`ProtocolMismatch <stalkwire.ProtocolMismatch>`.
    """
    tokens = line.split()
    if not tokens:
        raise ProtocolMismatch(line, [r.status for r in replies], "empty response")

    status, *values = tokens
    reason = None
    for reply in replies:
        if status != reply.status:
            continue
        try:
            return reply, reply.parse(values)
        except ValueError as e:
            reason = str(e)

    raise ProtocolMismatch(line, [r.status for r in replies], reason)
