"""Messages between the service side and the user interface.

Worker threads queue messages with :class:`MessageQueue`; the console
thread drains the queue and sends them.  Requests coming from the
interface are routed by :class:`ConsoleDispatcher`.
"""

from __future__ import annotations

import collections
import enum
import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from netdaemons.services import ServiceMask

log = logging.getLogger(__name__)

MAX_MSG_IN_QUEUE = 1000
TFTP_DEFAULT_PORT = 69


class MessageType(enum.Enum):
    """Kinds of messages exchanged with the user interface."""

    # requests from the interface
    CONS_KILL_TRF = enum.auto()
    TFTP_TERMINATE = enum.auto()
    DHCP_TERMINATE = enum.auto()
    TERMINATE = enum.auto()
    SUSPEND = enum.auto()
    START = enum.auto()
    DHCP_RRQ_SETTINGS = enum.auto()
    TFTP_RRQ_SETTINGS = enum.auto()
    DHCP_WRQ_SETTINGS = enum.auto()
    TFTP_WRQ_SETTINGS = enum.auto()
    TFTP_RESTORE_DEFAULT_SETTINGS = enum.auto()
    TFTP_CHG_WORKING_DIR = enum.auto()
    RRQ_WORKING_DIR = enum.auto()
    DELETE_ASSIGNATION = enum.auto()
    RRQ_GET_SERVICES = enum.auto()
    RRQ_GET_INTERFACES = enum.auto()
    RRQ_DIRECTORY_CONTENT = enum.auto()
    TFTP_GET_FULL_STAT = enum.auto()
    # notifications and replies to the interface
    CHG_SERVICE = enum.auto()
    SERVICES_STARTED = enum.auto()
    SYSLOG = enum.auto()
    TFTP_TRF_STAT = enum.auto()
    DHCP_RPLY_SETTINGS = enum.auto()
    TFTP_RPLY_SETTINGS = enum.auto()
    REPLY_WORKING_DIR = enum.auto()
    REPLY_GET_SERVICES = enum.auto()


_ids = itertools.count(1)


@dataclass
class Message:
    """A queued message; ``delivered`` is set once a blocking one is sent."""

    msg_type: MessageType
    payload: Any = None
    blocking: bool = False
    msg_id: int = field(default_factory=lambda: next(_ids))
    delivered: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False
    )


class MessageQueue:
    """A bounded FIFO of messages waiting to be sent to the interface.

    ``connected`` tells whether an interface is listening; while it is
    cleared, requests are dropped.  ``ready`` is set while messages wait.
    """

    def __init__(self, max_size=MAX_MSG_IN_QUEUE):
        self.max_size = max_size
        self.connected = threading.Event()
        self.connected.set()
        self.ready = threading.Event()
        self._queue: collections.deque[Message] = collections.deque()
        self._cond = threading.Condition()
        self._request_lock = threading.Lock()

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def _push(self, message):
        with self._cond:
            if len(self._queue) >= self.max_size:
                log.warning("message queue full, %s dropped", message.msg_type.name)
                return False
            self._queue.append(message)
            self.ready.set()
            return True

    def _wait_empty(self):
        with self._cond:
            self._cond.wait_for(lambda: not self._queue)

    def send_request(self, msg_type, payload=None, blocking=False):
        """Queue a message; return False if it was dropped.

        A blocking request waits until the queue is empty, then until its
        own message has been sent by :meth:`drain`.
        """
        if not self.connected.is_set():
            return False
        with self._request_lock:
            message = Message(msg_type, payload, blocking)
            if blocking:
                self._wait_empty()
                if not self._push(message):
                    return False
                message.delivered.wait()
                self._wait_empty()
            elif not self._push(message):
                return False
        return True

    def pop(self):
        """Remove and return the oldest message, or None if there is none."""
        with self._cond:
            if not self._queue:
                self.ready.clear()
                self._cond.notify_all()
                return None
            message = self._queue.popleft()
            if not self._queue:
                self.ready.clear()
                self._cond.notify_all()
            return message

    def drain(self, send):
        """Send every queued message with ``send(message)``.

        Returns the number of messages for which ``send`` returned a true
        value.  Blocking senders are released whatever the outcome.
        """
        sent = 0
        while (message := self.pop()) is not None:
            try:
                if send(message):
                    sent += 1
            finally:
                if message.blocking:
                    message.delivered.set()
        return sent


@dataclass
class ServiceSettings:
    """The part of the settings that decides which services must restart."""

    services: ServiceMask = ServiceMask.NONE
    port: int = TFTP_DEFAULT_PORT
    tftp_local_ip: str = ""
    syslog_pipe: bool = False
    syslog_file: str = ""
    base_directory: str = "."
    working_directory: str = "."


@dataclass(frozen=True)
class RestartTable:
    """Services enabled before and after a change, and those to restart."""

    old: ServiceMask
    new: ServiceMask
    flap: ServiceMask


def compute_restart(old, new):
    """Work out which services a change from ``old`` to ``new`` settings needs."""
    flap = ServiceMask.NONE
    if old.port != new.port or old.tftp_local_ip != new.tftp_local_ip:
        flap |= ServiceMask.TFTP_SERVER
    if old.services & ServiceMask.SYSLOG_SERVER and (
        old.syslog_pipe != new.syslog_pipe or old.syslog_file != new.syslog_file
    ):
        flap |= ServiceMask.SYSLOG_SERVER
    return RestartTable(ServiceMask(old.services), ServiceMask(new.services), flap)


class ConsoleDispatcher:
    """Routes requests from the interface to their handlers."""

    def __init__(self):
        self._handlers: dict[MessageType, Callable[[Any], Any]] = {}

    def register(self, msg_type, handler=None):
        """Register ``handler`` for ``msg_type``; usable as a decorator."""
        if handler is None:
            def decorator(func):
                self._handlers[msg_type] = func
                return func
            return decorator
        self._handlers[msg_type] = handler
        return handler

    def dispatch(self, msg_type, payload=None):
        """Run the handler of ``msg_type``; unknown types are logged and ignored."""
        handler: Optional[Callable[[Any], Any]] = self._handlers.get(msg_type)
        if handler is None:
            log.info("Service received unknown message %s", msg_type)
            return None
        log.debug("console received msg %s", msg_type)
        return handler(payload)