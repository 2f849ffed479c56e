import logging
from collections.abc import Mapping
from typing import Any, Callable, Iterable, List, Optional, Tuple, Union

from .codec import Arg, read_chunk, read_line, send_command
from .connection import Connection, SocketConnection
from .exceptions import ConfigurationError, ProtocolMismatch, TransportError
from .matcher import (
    BURIED,
    BURIED_ID,
    DELETED,
    FOUND,
    INSERTED,
    KICKED,
    KICKED_COUNT,
    OK,
    PAUSED,
    RELEASED,
    RESERVED,
    TOUCHED,
    USING,
    WATCHING,
    Reply,
    match,
)

log = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 11300
DEFAULT_TIMEOUT = 10

DEFAULT_TUBE = "default"
DEFAULT_PRIORITY = 2 ** 16
DEFAULT_DELAY = 0
DEFAULT_TTR = 60

PEEK_STATES = ("ready", "delayed", "buried")

Command = Tuple[Arg, ...]
ConnectionFactory = Callable[[], Connection]


class Job:
    """A job returned from the server."""

    def __init__(self, id: int, body: bytes) -> None:
        #: A server-generated unique identifier assigned to the job on creation.
        self.id: int = id

        #: The content of the job. Also referred to as the message or payload.
        #: Producers and consumers need to agree on how these bytes are interpreted.
        self.body: bytes = body

    def __repr__(self) -> str:
        return f"stalkwire.Job(id={self.id!r}, body={self.body!r})"


JobOrID = Union[Job, int]


class Config:
    """Where and how to connect. Built from a mapping with the optional keys
    ``host``, ``port`` and ``timeout`` (in seconds)."""

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout

    @classmethod
    def from_mapping(cls, config: Optional[Mapping]) -> "Config":
        if config is None:
            return cls()
        if not isinstance(config, Mapping):
            raise ConfigurationError(f"invalid beanstalkd config: {config!r}")

        unknown = set(config) - {"host", "port", "timeout"}
        if unknown:
            raise ConfigurationError(
                "unknown config keys: %s" % ", ".join(sorted(map(str, unknown)))
            )

        host = config.get("host")
        if host is None:
            host = DEFAULT_HOST
        elif not isinstance(host, str) or not host:
            raise ConfigurationError(f"invalid host: {host!r}")

        port = config.get("port")
        if port is None:
            port = DEFAULT_PORT
        elif not _is_number(port, int) or not 0 < port < 65536:
            raise ConfigurationError(f"invalid port: {port!r}")

        timeout = config.get("timeout")
        if timeout is None:
            timeout = DEFAULT_TIMEOUT
        elif not _is_number(timeout, (int, float)) or timeout <= 0:
            raise ConfigurationError(f"invalid timeout: {timeout!r}")

        return cls(host, port, timeout)

    def __repr__(self) -> str:
        return (
            f"stalkwire.Config(host={self.host!r}, port={self.port!r}, "
            f"timeout={self.timeout!r})"
        )


def _is_number(value: Any, types: Any) -> bool:
    return isinstance(value, types) and not isinstance(value, bool)


class Client:
    """A client implementing the beanstalk protocol.

    Creating a client only validates the configuration. Call :meth:`connect`
    to open the connection, or use :func:`stalkwire.connect` to do both and
    initialize tubes in one go.

    Server replies other than the expected one raise
    :class:`ProtocolMismatch <stalkwire.ProtocolMismatch>`; failures of the
    connection itself raise :class:`TransportError <stalkwire.TransportError>`.
    Neither is retried.

    :param config: A mapping with the optional keys ``host``, ``port`` and
                   ``timeout``.
    :param connection_factory: Creates the transport used by :meth:`connect`.
    """

    def __init__(
        self,
        config: Optional[Mapping] = None,
        connection_factory: ConnectionFactory = SocketConnection,
    ) -> None:
        self.config = Config.from_mapping(config)
        self._connection_factory = connection_factory
        self._conn: Optional[Connection] = None

    def __enter__(self) -> "Client":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def connect(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Opens a connection to beanstalkd, replacing any open one. Arguments
        that are not given are taken from the configuration."""
        self.close()

        if host is None:
            host = self.config.host
        if port is None:
            port = self.config.port
        if timeout is None:
            timeout = self.config.timeout

        conn = self._connection_factory()
        conn.connect(host, port, timeout)
        self._conn = conn
        log.debug("client connected to %s:%d with a %ss timeout", host, port, timeout)

    def close(self) -> None:
        """Closes the connection to beanstalkd. Closing an unconnected client
        does nothing."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            log.debug("client closed")

    def set_timeout(self, timeout: float) -> None:
        """Changes the timeout of reads and writes on the open connection.

        :param timeout: The timeout in seconds.
        """
        if self._conn is not None:
            self._conn.set_timeout(timeout)

    def set_keepalive(
        self, pool: Optional[Callable[[Connection], Any]] = None
    ) -> Optional[Connection]:
        """Detaches the connection from this client so it can be reused
        elsewhere, and returns it.

        :param pool: Called with the detached connection.
        """
        conn = self._conn
        self._conn = None
        if conn is None:
            return None

        conn.set_keepalive()
        if pool is not None:
            pool(conn)
        log.debug("connection detached for reuse")
        return conn

    def _connection(self) -> Connection:
        if self._conn is None:
            raise TransportError("Not connected")
        return self._conn

    def _call(
        self, cmd: Command, *expected: Reply, body: Optional[bytes] = None
    ) -> Tuple[Reply, List[Any]]:
        conn = self._connection()
        name, *args = cmd
        send_command(conn, name, *args, body=body)
        reply, values = match(read_line(conn), *expected)
        if reply.chunk:
            values[-1] = read_chunk(conn, values[-1])
        return reply, values

    def _send_cmd(self, cmd: Command, expected: Reply) -> List[Any]:
        _, values = self._call(cmd, expected)
        return values

    def _int_cmd(self, cmd: Command, expected: Reply) -> int:
        (n,) = self._send_cmd(cmd, expected)
        return n

    def _job_cmd(self, cmd: Command, expected: Reply) -> Job:
        id, body = self._send_cmd(cmd, expected)
        return Job(id, body)

    def _peek_cmd(self, cmd: Command) -> Job:
        return self._job_cmd(cmd, FOUND)

    def _data_cmd(self, cmd: Command) -> bytes:
        (data,) = self._send_cmd(cmd, OK)
        return data

    def _tube_cmd(self, cmd: Command) -> str:
        (tube,) = self._send_cmd(cmd, USING)
        return tube

    def put(
        self,
        body: bytes,
        priority: int = DEFAULT_PRIORITY,
        delay: int = DEFAULT_DELAY,
        ttr: int = DEFAULT_TTR,
    ) -> int:
        """Inserts a job into the currently used tube and returns the job ID.

        If the server runs out of memory growing its priority queue it buries
        the new job instead. The job still exists, so its ID is returned and a
        warning is logged.

        :param body: The data representing the job.
        :param priority: An integer between 0 and 4,294,967,295 where 0 is the
                         most urgent.
        :param delay: The number of seconds to delay the job for.
        :param ttr: The maximum number of seconds the job can be reserved for
                    before timing out.
        """
        reply, (id,) = self._call(
            (b"put", priority, delay, ttr, len(body)), INSERTED, BURIED_ID, body=body
        )
        if reply is BURIED_ID:
            log.warning("job %d was buried on insert, the server is out of memory", id)
        return id

    def use(self, tube: str) -> str:
        """Changes the currently used tube and returns the name the server
        confirmed.

        :param tube: The tube to use.
        """
        confirmed = self._tube_cmd((b"use", tube))
        if confirmed != tube:
            raise ProtocolMismatch(
                b"USING " + confirmed.encode("ascii"),
                [USING.status],
                f"server is using {confirmed!r} instead of {tube!r}",
            )
        return confirmed

    def reserve(self, timeout: Optional[int] = None) -> Job:
        """Reserves a job from a tube on the watch list, giving this client
        exclusive access to it for the TTR. Returns the reserved job.

        This blocks until a job is reserved unless a ``timeout`` is given, in
        which case the server answers ``TIMED_OUT`` when no job could be
        reserved in time. The wait is also bounded by the connection timeout.

        :param timeout: The maximum number of seconds to wait.
        """
        if timeout is None:
            return self._job_cmd((b"reserve",), RESERVED)
        return self._job_cmd((b"reserve-with-timeout", timeout), RESERVED)

    def reserve_job(self, job: JobOrID) -> Job:
        """Reserves a job by ID. Returns the reserved job.

        :param job: The job or job ID to reserve.
        """
        return self._job_cmd((b"reserve-job", _to_id(job)), RESERVED)

    def delete(self, job: JobOrID) -> None:
        """Deletes a job.

        :param job: The job or job ID to delete.
        """
        self._send_cmd((b"delete", _to_id(job)), DELETED)

    def release(
        self,
        job: JobOrID,
        priority: int = DEFAULT_PRIORITY,
        delay: int = DEFAULT_DELAY,
    ) -> None:
        """Releases a reserved job.

        :param job: The job or job ID to release.
        :param priority: An integer between 0 and 4,294,967,295 where 0 is the
                         most urgent.
        :param delay: The number of seconds to delay the job for.
        """
        self._send_cmd((b"release", _to_id(job), priority, delay), RELEASED)

    def bury(self, job: JobOrID, priority: int = DEFAULT_PRIORITY) -> None:
        """Buries a reserved job.

        :param job: The job or job ID to bury.
        :param priority: An integer between 0 and 4,294,967,295 where 0 is the
                         most urgent.
        """
        self._send_cmd((b"bury", _to_id(job), priority), BURIED)

    def touch(self, job: JobOrID) -> None:
        """Refreshes the TTR of a reserved job.

        :param job: The job or job ID to touch.
        """
        self._send_cmd((b"touch", _to_id(job)), TOUCHED)

    def watch(self, tube: str) -> int:
        """Adds a tube to the watch list. Returns the number of tubes this
        client is watching.

        :param tube: The tube to watch.
        """
        return self._int_cmd((b"watch", tube), WATCHING)

    def ignore(self, tube: str) -> int:
        """Removes a tube from the watch list. Returns the number of tubes this
        client is watching.

        :param tube: The tube to ignore.
        """
        return self._int_cmd((b"ignore", tube), WATCHING)

    def peek(self, job: Union[JobOrID, str]) -> Job:
        """Returns a job without reserving it.

        :param job: A job, a job ID, or one of ``"ready"``, ``"delayed"`` and
                    ``"buried"`` to peek at the next job in that state in the
                    currently used tube.
        """
        if isinstance(job, str):
            try:
                job = int(job)
            except ValueError:
                if job not in PEEK_STATES:
                    raise ValueError(f"Unable to peek at jobs in state {job!r}")
                return self._peek_cmd((b"peek-" + job.encode("ascii"),))
        return self._peek_cmd((b"peek", _to_id(job)))

    def peek_ready(self) -> Job:
        """Returns the next ready job in the currently used tube."""
        return self.peek("ready")

    def peek_delayed(self) -> Job:
        """Returns the next available delayed job in the currently used tube."""
        return self.peek("delayed")

    def peek_buried(self) -> Job:
        """Returns the oldest buried job in the currently used tube."""
        return self.peek("buried")

    def kick(self, bound: int) -> int:
        """Moves delayed and buried jobs into the ready queue and returns the
        number of jobs effected.

        Only jobs from the currently used tube are moved.

        A kick will only move jobs in a single state. If there are any buried
        jobs, only those will be moved. Otherwise delayed jobs will be moved.

        :param bound: The maximum number of jobs to kick.
        """
        return self._int_cmd((b"kick", bound), KICKED_COUNT)

    def kick_job(self, job: JobOrID) -> None:
        """Moves a delayed or buried job into the ready queue.

        :param job: The job or job ID to kick.
        """
        self._send_cmd((b"kick-job", _to_id(job)), KICKED)

    def stats_job(self, job: JobOrID) -> bytes:
        """Returns job statistics as the YAML document sent by the server.

        :param job: The job or job ID to return statistics for.
        """
        return self._data_cmd((b"stats-job", _to_id(job)))

    def stats_tube(self, tube: str) -> bytes:
        """Returns tube statistics as the YAML document sent by the server.

        :param tube: The tube to return statistics for.
        """
        return self._data_cmd((b"stats-tube", tube))

    def stats(self) -> bytes:
        """Returns system statistics as the YAML document sent by the server."""
        return self._data_cmd((b"stats",))

    def list_tubes(self) -> bytes:
        """Returns the YAML list of all existing tubes."""
        return self._data_cmd((b"list-tubes",))

    def list_tube_used(self) -> str:
        """Returns the tube currently being used by the client."""
        return self._tube_cmd((b"list-tube-used",))

    def list_tubes_watched(self) -> bytes:
        """Returns the YAML list of tubes currently being watched."""
        return self._data_cmd((b"list-tubes-watched",))

    def tubes(self) -> List[str]:
        """Returns a list of all existing tubes."""
        return _parse_list(self.list_tubes())

    def watching(self) -> List[str]:
        """Returns a list of tubes currently being watched by the client."""
        return _parse_list(self.list_tubes_watched())

    def pause_tube(self, tube: str, delay: int) -> None:
        """Prevents jobs from being reserved from a tube for a period of time.

        :param tube: The tube to pause.
        :param delay: The number of seconds to pause the tube for.
        """
        self._send_cmd((b"pause-tube", tube, delay), PAUSED)

    def quit(self) -> None:
        """Asks the server to close the connection, then closes it. No reply
        is read."""
        send_command(self._connection(), b"quit")
        self.close()

    def __repr__(self) -> str:
        return f"stalkwire.Client(host={self.config.host!r}, port={self.config.port!r})"


def connect(
    config: Optional[Mapping] = None,
    use: str = DEFAULT_TUBE,
    watch: Union[str, Iterable[str]] = DEFAULT_TUBE,
    connection_factory: ConnectionFactory = SocketConnection,
) -> Client:
    """Creates a connected client and initializes its tubes.

    :param config: See :class:`Client`.
    :param use: The tube to use after connecting.
    :param watch: The tubes to watch after connecting. The ``default`` tube will
                  be ignored if it's not included.
    :param connection_factory: See :class:`Client`.
    """
    client = Client(config, connection_factory)
    client.connect()
    try:
        if use != DEFAULT_TUBE:
            client.use(use)

        if isinstance(watch, str):
            if watch != DEFAULT_TUBE:
                client.watch(watch)
                client.ignore(DEFAULT_TUBE)
        else:
            watch = list(watch)
            for tube in watch:
                client.watch(tube)
            if DEFAULT_TUBE not in watch:
                client.ignore(DEFAULT_TUBE)
    except Exception:
        client.close()
        raise
    return client


def _to_id(j: JobOrID) -> int:
    return j.id if isinstance(j, Job) else j


def _parse_list(buf: bytes) -> List[str]:
    data = buf.decode("ascii")

    assert data[:4] == "---\n"
    data = data[4:]  # strip YAML head

    values: List[str] = []
    for line in data.splitlines():
        assert line.startswith("- ")
        values.append(line[2:])

    return values
