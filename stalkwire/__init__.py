"""A client for beanstalkd: the simple, fast work queue."""
from .client import (
    DEFAULT_DELAY,
    DEFAULT_HOST,
    DEFAULT_PORT,
    DEFAULT_PRIORITY,
    DEFAULT_TIMEOUT,
    DEFAULT_TTR,
    DEFAULT_TUBE,
    Client,
    Config,
    Job,
    JobOrID,
    connect,
)
from .connection import Connection, SocketConnection
from .exceptions import ConfigurationError, Error, ProtocolMismatch, TransportError

__version__ = "0.1.0"
