import io
import logging
import os
import shutil
import subprocess
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterable, Iterator, List, Optional, Tuple, Union

import pytest

from stalkwire import (
    DEFAULT_TUBE,
    Client,
    ConfigurationError,
    Connection,
    Job,
    ProtocolMismatch,
    TransportError,
    connect,
)
from stalkwire.codec import encode_body, encode_command, read_chunk, read_line
from stalkwire.matcher import (
    BURIED_ID,
    INSERTED,
    OK,
    RESERVED,
    USING,
    WATCHING,
    is_name,
    match,
)

BEANSTALKD_PATH = os.getenv("BEANSTALKD_PATH", "beanstalkd")
DEFAULT_CONFIG = {"host": "127.0.0.1", "port": 4444}

TestFunc = Callable[[Client], None]
WrapperFunc = Callable[[], None]

requires_beanstalkd = pytest.mark.skipif(
    shutil.which(BEANSTALKD_PATH) is None, reason="beanstalkd is not installed"
)


class FakeConnection(Connection):
    """Replays canned server output and records everything sent."""

    def __init__(self, *responses: bytes) -> None:
        self.reader = io.BytesIO(b"".join(responses))
        self.sent: List[bytes] = []
        self.address: Optional[Tuple[str, int]] = None
        self.timeout: Optional[float] = None
        self.closed = False
        self.keepalive = False

    def connect(self, host: str, port: int, timeout: float) -> None:
        self.address = (host, port)
        self.timeout = timeout

    def close(self) -> None:
        self.closed = True

    def set_timeout(self, timeout: float) -> None:
        self.timeout = timeout

    def set_keepalive(self) -> None:
        self.keepalive = True

    def sendall(self, data: bytes) -> None:
        self.sent.append(data)

    def readline(self) -> bytes:
        return self.reader.readline()

    def read_exact(self, size: int) -> bytes:
        data = self.reader.read(size)
        if len(data) != size:
            raise TransportError("Unexpected EOF reading chunk", data)
        return data

    def unread(self) -> bytes:
        return self.reader.read()


def fake_client(*responses: bytes) -> Tuple[Client, FakeConnection]:
    conn = FakeConnection(*responses)
    client = Client(connection_factory=lambda: conn)
    client.connect()
    return client, conn


def ok(data: bytes) -> bytes:
    return b"OK %d\r\n%b\r\n" % (len(data), data)


def with_beanstalkd(
    use: str = DEFAULT_TUBE,
    watch: Union[str, Iterable[str]] = DEFAULT_TUBE,
) -> Callable[[TestFunc], WrapperFunc]:
    def decorator(test: TestFunc) -> WrapperFunc:
        @requires_beanstalkd
        def wrapper() -> None:
            host, port = DEFAULT_CONFIG["host"], DEFAULT_CONFIG["port"]
            cmd = [BEANSTALKD_PATH, "-l", str(host), "-p", str(port)]
            with subprocess.Popen(cmd) as beanstalkd:
                time.sleep(0.1)
                try:
                    with connect(DEFAULT_CONFIG, use=use, watch=watch) as c:
                        test(c)
                finally:
                    beanstalkd.terminate()

        return wrapper

    return decorator


@contextmanager
def assert_under(n: float) -> Iterator[None]:
    start = datetime.now()
    yield
    assert datetime.now() - start < timedelta(seconds=n)


def test_put() -> None:
    c, conn = fake_client(b"INSERTED 5\r\n")
    assert c.put(b"hello", priority=10, delay=0, ttr=60) == 5
    assert conn.sent == [b"put 10 0 60 5\r\n", b"hello\r\n"]


def test_put_defaults() -> None:
    c, conn = fake_client(b"INSERTED 1\r\n")
    c.put(b"")
    assert conn.sent == [b"put 65536 0 60 0\r\n", b"\r\n"]


def test_put_buried_is_accepted(caplog: pytest.LogCaptureFixture) -> None:
    c, _ = fake_client(b"BURIED 7\r\n")
    with caplog.at_level(logging.WARNING, logger="stalkwire.client"):
        assert c.put(b"job") == 7
    assert "job 7 was buried" in caplog.text


@pytest.mark.parametrize(
    "response", [b"JOB_TOO_BIG", b"DRAINING", b"EXPECTED_CRLF", b"OUT_OF_MEMORY"]
)
def test_put_errors(response: bytes) -> None:
    c, _ = fake_client(response + b"\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.put(b"job")
    assert e.value.status == response
    assert e.value.line == response
    assert e.value.expected == [b"INSERTED", b"BURIED"]


def test_use() -> None:
    c, conn = fake_client(b"USING emails\r\n")
    assert c.use("emails") == "emails"
    assert conn.sent == [b"use emails\r\n"]


def test_use_mismatched_confirmation() -> None:
    c, _ = fake_client(b"USING other\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.use("emails")
    assert e.value.status == b"USING"
    assert e.value.values == [b"other"]


def test_reserve() -> None:
    c, conn = fake_client(b"RESERVED 3 5\r\nhello\r\n")
    job = c.reserve()
    assert job.id == 3
    assert job.body == b"hello"
    assert conn.sent == [b"reserve\r\n"]


def test_reserve_with_timeout() -> None:
    c, conn = fake_client(b"TIMED_OUT\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.reserve(timeout=0)
    assert e.value.status == b"TIMED_OUT"
    assert conn.sent == [b"reserve-with-timeout 0\r\n"]


def test_reserve_deadline_soon() -> None:
    c, _ = fake_client(b"DEADLINE_SOON\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.reserve()
    assert e.value.status == b"DEADLINE_SOON"


def test_reserve_job() -> None:
    c, conn = fake_client(b"RESERVED 9 1\r\nx\r\n")
    assert c.reserve_job(Job(9, b"")).body == b"x"
    assert conn.sent == [b"reserve-job 9\r\n"]


def test_chunk_containing_crlf() -> None:
    body = b"a\r\nb\r\n"
    c, _ = fake_client(b"RESERVED 1 6\r\n" + body + b"\r\n", b"DELETED\r\n")
    job = c.reserve()
    assert job.body == body
    c.delete(job)


def test_chunk_terminator_is_not_checked() -> None:
    c, conn = fake_client(b"FOUND 1 2\r\nhiXX", b"DELETED\r\n")
    assert c.peek(1).body == b"hi"
    assert conn.unread() == b"DELETED\r\n"


def test_binary_chunk() -> None:
    data = bytes(range(256))
    c, _ = fake_client(b"RESERVED 1 256\r\n" + data + b"\r\n")
    assert c.reserve().body == data


def test_delete() -> None:
    c, conn = fake_client(b"DELETED\r\n", b"NOT_FOUND\r\n")
    c.delete(Job(4, b""))
    with pytest.raises(ProtocolMismatch) as e:
        c.delete(4)
    assert e.value.status == b"NOT_FOUND"
    assert conn.sent == [b"delete 4\r\n", b"delete 4\r\n"]


def test_release() -> None:
    c, conn = fake_client(b"RELEASED\r\n")
    c.release(Job(2, b""), priority=5, delay=10)
    assert conn.sent == [b"release 2 5 10\r\n"]


def test_release_buried_is_a_failure() -> None:
    c, _ = fake_client(b"BURIED\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.release(2)
    assert e.value.status == b"BURIED"
    assert e.value.expected == [b"RELEASED"]


def test_bury() -> None:
    c, conn = fake_client(b"BURIED\r\n")
    c.bury(2, priority=0)
    assert conn.sent == [b"bury 2 0\r\n"]


def test_bury_rejects_values() -> None:
    c, _ = fake_client(b"BURIED 2\r\n")
    with pytest.raises(ProtocolMismatch):
        c.bury(2)


def test_touch() -> None:
    c, conn = fake_client(b"TOUCHED\r\n")
    c.touch(Job(8, b""))
    assert conn.sent == [b"touch 8\r\n"]


def test_watch_and_ignore() -> None:
    c, conn = fake_client(b"WATCHING 2\r\n", b"WATCHING 1\r\n", b"NOT_IGNORED\r\n")
    assert c.watch("t") == 2
    assert c.ignore("default") == 1
    with pytest.raises(ProtocolMismatch) as e:
        c.ignore("t")
    assert e.value.status == b"NOT_IGNORED"
    assert conn.sent == [b"watch t\r\n", b"ignore default\r\n", b"ignore t\r\n"]


@pytest.mark.parametrize(
    "arg,cmd",
    [
        (5, b"peek 5\r\n"),
        ("5", b"peek 5\r\n"),
        (Job(5, b""), b"peek 5\r\n"),
        ("ready", b"peek-ready\r\n"),
        ("delayed", b"peek-delayed\r\n"),
        ("buried", b"peek-buried\r\n"),
    ],
)
def test_peek(arg: Union[int, str, Job], cmd: bytes) -> None:
    c, conn = fake_client(b"FOUND 5 3\r\njob\r\n")
    job = c.peek(arg)
    assert job.id == 5
    assert job.body == b"job"
    assert conn.sent == [cmd]


def test_peek_helpers() -> None:
    found = b"FOUND 1 0\r\n\r\n"
    c, conn = fake_client(found, found, found)
    c.peek_ready()
    c.peek_delayed()
    c.peek_buried()
    assert conn.sent == [b"peek-ready\r\n", b"peek-delayed\r\n", b"peek-buried\r\n"]


def test_peek_unknown_state() -> None:
    c, conn = fake_client()
    with pytest.raises(ValueError):
        c.peek("reserved")
    assert conn.sent == []


def test_peek_not_found() -> None:
    c, _ = fake_client(b"NOT_FOUND\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.peek_buried()
    assert e.value.status == b"NOT_FOUND"


def test_kick() -> None:
    c, conn = fake_client(b"KICKED 2\r\n")
    assert c.kick(5) == 2
    assert conn.sent == [b"kick 5\r\n"]


def test_kick_job() -> None:
    c, conn = fake_client(b"KICKED\r\n", b"KICKED 1\r\n")
    c.kick_job(3)
    with pytest.raises(ProtocolMismatch):
        c.kick_job(3)
    assert conn.sent == [b"kick-job 3\r\n", b"kick-job 3\r\n"]


def test_stats() -> None:
    yaml = b"---\ncurrent-jobs-ready: 0\nversion: \"1.12\"\n"
    c, conn = fake_client(ok(yaml))
    assert c.stats() == yaml
    assert conn.sent == [b"stats\r\n"]
    assert conn.unread() == b""


def test_stats_job() -> None:
    yaml = b"---\nid: 3\ntube: default\n"
    c, conn = fake_client(ok(yaml))
    assert c.stats_job(Job(3, b"")) == yaml
    assert conn.sent == [b"stats-job 3\r\n"]


def test_stats_tube() -> None:
    yaml = b"---\nname: default\n"
    c, conn = fake_client(ok(yaml))
    assert c.stats_tube("default") == yaml
    assert conn.sent == [b"stats-tube default\r\n"]


def test_stats_tube_not_found() -> None:
    c, _ = fake_client(b"NOT_FOUND\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.stats_tube("missing")
    assert e.value.expected == [b"OK"]


def test_list_tubes() -> None:
    yaml = b"---\n- default\n- emails\n"
    c, conn = fake_client(ok(yaml), ok(yaml))
    assert c.list_tubes() == yaml
    assert c.tubes() == ["default", "emails"]
    assert conn.sent == [b"list-tubes\r\n", b"list-tubes\r\n"]


def test_list_tubes_watched() -> None:
    yaml = b"---\n- default\n"
    c, conn = fake_client(ok(yaml), ok(yaml))
    assert c.list_tubes_watched() == yaml
    assert c.watching() == ["default"]
    assert conn.sent == [b"list-tubes-watched\r\n", b"list-tubes-watched\r\n"]


def test_list_tube_used() -> None:
    c, conn = fake_client(b"USING foo\r\n")
    assert c.list_tube_used() == "foo"
    assert conn.sent == [b"list-tube-used\r\n"]


def test_pause_tube() -> None:
    c, conn = fake_client(b"PAUSED\r\n")
    c.pause_tube("foo", 10)
    assert conn.sent == [b"pause-tube foo 10\r\n"]


def test_quit() -> None:
    c, conn = fake_client(b"UNREAD\r\n")
    c.quit()
    assert conn.sent == [b"quit\r\n"]
    assert conn.closed
    assert conn.unread() == b"UNREAD\r\n"
    with pytest.raises(TransportError):
        c.stats()


@pytest.mark.parametrize(
    "response", [b"BAD_FORMAT", b"UNKNOWN_COMMAND", b"INTERNAL_ERROR", b"SOME_ERROR 1 2 3"]
)
def test_unexpected_responses(response: bytes) -> None:
    c, _ = fake_client(response + b"\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.touch(1)
    assert e.value.line == response
    assert e.value.status == response.split()[0]


def test_mismatch_message() -> None:
    c, _ = fake_client(b"NOT_FOUND\r\n")
    with pytest.raises(ProtocolMismatch) as e:
        c.delete(1)
    assert str(e.value) == "expected DELETED, got b'NOT_FOUND'"


def test_truncated_line() -> None:
    c, _ = fake_client(b"INSERT")
    with pytest.raises(TransportError) as e:
        c.put(b"job")
    assert e.value.partial == b"INSERT"


def test_unexpected_eof() -> None:
    c, _ = fake_client()
    with pytest.raises(TransportError) as e:
        c.stats()
    assert e.value.args[0] == "Unexpected EOF"
    assert isinstance(e.value, ConnectionError)


def test_truncated_chunk() -> None:
    c, _ = fake_client(b"RESERVED 1 10\r\nabc")
    with pytest.raises(TransportError) as e:
        c.reserve()
    assert e.value.args[0] == "Unexpected EOF reading chunk"
    assert e.value.partial == b"abc"


def test_lf_terminated_line() -> None:
    c, _ = fake_client(b"DELETED\n")
    c.delete(1)


def test_not_connected() -> None:
    c = Client(connection_factory=FakeConnection)
    with pytest.raises(TransportError) as e:
        c.put(b"job")
    assert e.value.args[0] == "Not connected"


def test_encode_command() -> None:
    assert encode_command(b"put", 1, 2, 3, 4) == b"put 1 2 3 4\r\n"
    assert encode_command(b"use", "a-b") == b"use a-b\r\n"
    assert encode_command(b"stats") == b"stats\r\n"
    assert encode_body(b"x\r\n") == b"x\r\n\r\n"


def test_encode_command_rejects_bool() -> None:
    with pytest.raises(TypeError):
        encode_command(b"kick", True)


def test_put_str_body_sends_nothing() -> None:
    c, conn = fake_client(b"INSERTED 1\r\n")
    with pytest.raises(TypeError):
        c.put("hello")  # type: ignore
    assert conn.sent == []


@pytest.mark.parametrize(
    "tube", ["a b", "a\r\nstats", "a\n", "-foo", "", "a" * 201, "caf\u00e9", "a*"]
)
def test_invalid_tube_names_are_not_sent(tube: str) -> None:
    c, conn = fake_client()
    for command in (c.use, c.watch, c.ignore, c.stats_tube):
        with pytest.raises(ValueError):
            command(tube)
    with pytest.raises(ValueError):
        c.pause_tube(tube, 10)
    assert conn.sent == []


def test_longest_tube_name() -> None:
    tube = "a" * 200
    c, conn = fake_client(b"WATCHING 2\r\n")
    assert c.watch(tube) == 2
    assert conn.sent == [b"watch %b\r\n" % tube.encode("ascii")]


def test_incomplete_connection_is_rejected() -> None:
    class Incomplete(Connection):
        def sendall(self, data: bytes) -> None:
            pass

    with pytest.raises(TypeError):
        Incomplete()  # type: ignore


def test_read_line_strips_terminator() -> None:
    conn = FakeConnection(b"OK 3\r\n")
    assert read_line(conn) == b"OK 3"


def test_read_chunk_consumes_terminator() -> None:
    conn = FakeConnection(b"\r\n\r\n\r\nNEXT\r\n")
    assert read_chunk(conn, 4) == b"\r\n\r\n"
    assert conn.unread() == b"NEXT\r\n"


def test_match() -> None:
    assert match(b"WATCHING 3", WATCHING) == (WATCHING, [3])
    assert match(b"RESERVED 1 2", RESERVED) == (RESERVED, [1, 2])
    assert match(b"OK 10", OK) == (OK, [10])
    assert match(b"USING a.b", USING) == (USING, ["a.b"])
    assert match(b"BURIED 4", INSERTED, BURIED_ID) == (BURIED_ID, [4])


@pytest.mark.parametrize(
    "line",
    [
        b"",
        b"WATCHING",
        b"WATCHING x",
        b"WATCHING -1",
        b"WATCHING 1 2",
        b"USING -foo",
        b"USING " + b"a" * 201,
    ],
)
def test_match_failures(line: bytes) -> None:
    with pytest.raises(ProtocolMismatch):
        match(line, WATCHING, USING)


def test_is_name() -> None:
    assert is_name(b"default")
    assert is_name(b"A-z0+9/;.$()_")
    assert is_name(b"a" * 200)
    assert not is_name(b"")
    assert not is_name(b"-a")
    assert not is_name(b"a b")
    assert not is_name(b"a*")


def test_config_defaults() -> None:
    c, conn = fake_client()
    assert conn.address == ("localhost", 11300)
    assert conn.timeout == 10


def test_config() -> None:
    conn = FakeConnection()
    c = Client({"host": "queue", "port": 11301, "timeout": 2.5}, lambda: conn)
    c.connect()
    assert conn.address == ("queue", 11301)
    assert conn.timeout == 2.5


def test_connect_overrides_config() -> None:
    conn = FakeConnection()
    c = Client({"host": "queue"}, lambda: conn)
    c.connect("other", 1234, 1)
    assert conn.address == ("other", 1234)
    assert conn.timeout == 1


def test_connect_keeps_explicit_zero() -> None:
    conn = FakeConnection()
    c = Client({"port": 11301, "timeout": 5}, lambda: conn)
    c.connect(port=0, timeout=0)
    assert conn.address == ("localhost", 0)
    assert conn.timeout == 0


@pytest.mark.parametrize(
    "config",
    [
        "localhost:11300",
        ["localhost", 11300],
        {"hostname": "localhost"},
        {"host": 1},
        {"host": ""},
        {"port": "11300"},
        {"port": True},
        {"port": 0},
        {"port": 70000},
        {"timeout": 0},
        {"timeout": -1},
        {"timeout": "10"},
    ],
)
def test_invalid_config(config: object) -> None:
    def factory() -> Connection:
        raise AssertionError("no connection should be attempted")

    with pytest.raises(ConfigurationError):
        Client(config, factory)  # type: ignore


def test_set_timeout() -> None:
    c, conn = fake_client()
    c.set_timeout(30)
    assert conn.timeout == 30


def test_set_keepalive() -> None:
    c, conn = fake_client()
    pool: List[Connection] = []
    assert c.set_keepalive(pool.append) is conn
    assert pool == [conn]
    assert conn.keepalive
    assert not conn.closed
    with pytest.raises(TransportError):
        c.stats()
    assert c.set_keepalive() is None


def test_close() -> None:
    c, conn = fake_client()
    with c:
        pass
    assert conn.closed
    c.close()


def test_connect_initializes_tubes() -> None:
    conn = FakeConnection(
        b"USING static\r\n",
        b"WATCHING 2\r\n",
        b"WATCHING 3\r\n",
        b"WATCHING 2\r\n",
    )
    c = connect(use="static", watch=["static", "dynamic"], connection_factory=lambda: conn)
    assert conn.sent == [
        b"use static\r\n",
        b"watch static\r\n",
        b"watch dynamic\r\n",
        b"ignore default\r\n",
    ]
    c.close()


def test_connect_single_watch() -> None:
    conn = FakeConnection(b"WATCHING 2\r\n", b"WATCHING 1\r\n")
    connect(watch="hosts", connection_factory=lambda: conn)
    assert conn.sent == [b"watch hosts\r\n", b"ignore default\r\n"]


def test_connect_closes_on_failure() -> None:
    conn = FakeConnection(b"USING other\r\n")
    with pytest.raises(ProtocolMismatch):
        connect(use="static", connection_factory=lambda: conn)
    assert conn.closed


def test_client_repr() -> None:
    c = Client({"host": "127.0.0.1", "port": 4444})
    assert repr(c) == "stalkwire.Client(host='127.0.0.1', port=4444)"


def test_job_repr() -> None:
    job = Job(id=456, body=b'{"user_id": 123}')
    assert repr(job) == """stalkwire.Job(id=456, body=b'{"user_id": 123}')"""


@with_beanstalkd()
def test_basic_usage(c: Client) -> None:
    assert c.use("emails") == "emails"
    id = c.put("测试@example.com".encode("utf-8"))
    c.watch("emails")
    c.ignore("default")
    job = c.reserve()
    assert id == job.id
    assert job.body.decode("utf-8") == "测试@example.com"
    c.delete(job)


@with_beanstalkd()
def test_put_peek_roundtrip(c: Client) -> None:
    data = os.urandom(4096) + b"\r\n"
    id = c.put(data, priority=0, delay=5, ttr=1)
    job = c.peek(id)
    assert job.id == id
    assert job.body == data


@with_beanstalkd()
def test_delete_twice(c: Client) -> None:
    id = c.put(b"hello", 10, 0, 60)
    job = c.reserve()
    assert (job.id, job.body) == (id, b"hello")
    c.delete(job)
    with pytest.raises(ProtocolMismatch) as e:
        c.delete(job)
    assert e.value.status == b"NOT_FOUND"


@with_beanstalkd()
def test_reserve_timeout_zero(c: Client) -> None:
    with assert_under(0.5):
        with pytest.raises(ProtocolMismatch) as e:
            c.reserve(timeout=0)
    assert e.value.status == b"TIMED_OUT"


@with_beanstalkd()
def test_not_ignored(c: Client) -> None:
    with pytest.raises(ProtocolMismatch) as e:
        c.ignore("default")
    assert e.value.status == b"NOT_IGNORED"


@with_beanstalkd()
def test_kick_buried_first(c: Client) -> None:
    for _ in range(2):
        c.put(b"to bury")
        c.bury(c.reserve())
    for _ in range(10):
        c.put(b"delayed", delay=3600)
    assert c.kick(5) == 2
    assert c.kick(5) == 5


@with_beanstalkd(use="hosts", watch="hosts")
def test_initialize_with_tubes(c: Client) -> None:
    assert c.list_tube_used() == "hosts"
    assert c.watching() == ["hosts"]
    c.put(b"www.example.com")
    job = c.reserve(timeout=0)
    assert job.body == b"www.example.com"
    c.delete(job.id)


@with_beanstalkd()
def test_stats_are_raw_yaml(c: Client) -> None:
    c.put(b"job")
    assert c.stats().startswith(b"---\n")
    assert b"state: ready" in c.stats_job(1)
    assert b"name: default" in c.stats_tube("default")
    assert c.tubes() == ["default"]


@with_beanstalkd()
def test_pause_tube_server(c: Client) -> None:
    c.put(b"")
    c.pause_tube("default", 10)
    with pytest.raises(ProtocolMismatch) as e:
        c.reserve(timeout=0)
    assert e.value.status == b"TIMED_OUT"


def test_connection_refused() -> None:
    c = Client({"host": "127.0.0.1", "port": 4445, "timeout": 1})
    with pytest.raises(TransportError):
        c.connect()
