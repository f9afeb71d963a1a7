"""A small syslog receiver.

Datagrams that look like syslog messages are cleaned up, optionally
appended to a log file, forwarded raw to a pipe and handed to a callback.
"""

from __future__ import annotations

import io
import ipaddress
import logging
import os
import socket
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional, Union

log = logging.getLogger(__name__)

SYSLOG_MAXMSG = 1024

PathOrStream = Union[str, os.PathLike, BinaryIO, None]


@dataclass(frozen=True)
class SyslogMessage:
    """A received syslog message and the address it came from."""

    sender: str
    text: str


def check_syslog_message(data):
    """Validate a datagram and return its text, or None if it is rejected.

    A message is accepted when it is at least five bytes long and either
    starts with ``<`` or carries ``>`` at offsets 4, 5 and 6.  Bytes outside
    the ASCII range are replaced by a dot.
    """
    if len(data) < 5:
        return None
    closing = all(data[i:i + 1] == b">" for i in (4, 5, 6))
    if data[:1] != b"<" and not closing:
        return None
    return "".join(chr(b) if b < 128 else "." for b in data)


def strip_v4_mapped(address):
    """Return the plain IPv4 form of an IPv4-mapped IPv6 address."""
    try:
        ip = ipaddress.ip_address(address.split("%", 1)[0])
    except ValueError:
        return address
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return address


def format_log_line(timestamp, sender, text):
    """Format one log file line: local time, sender and message text."""
    if isinstance(timestamp, time.struct_time):
        moment = timestamp
    else:
        moment = time.localtime(timestamp)
    stamp = time.asctime(moment)[:24]
    return f"{stamp:>24};{sender}; {text}\r\n"


def _open_pipe(path):
    flags = os.O_WRONLY | getattr(os, "O_NONBLOCK", 0) | getattr(os, "O_BINARY", 0)
    try:
        fd = os.open(path, flags)
    except OSError as exc:
        log.warning("pipe %s is not available, messages will not be forwarded: %s",
                    path, exc)
        return None
    return os.fdopen(fd, "wb", buffering=0)


class SyslogServer:
    """Receives syslog datagrams and records them."""

    def __init__(self, log_file=None, pipe: PathOrStream = None,
                 on_message: Optional[Callable[[SyslogMessage], None]] = None):
        self.on_message = on_message
        self._log: Optional[io.BufferedWriter] = None
        self._pipe: Optional[BinaryIO] = None
        self._own_pipe = False
        if isinstance(pipe, (str, os.PathLike)):
            self._pipe = _open_pipe(pipe)
            self._own_pipe = self._pipe is not None
        else:
            self._pipe = pipe
        self.open_log_file(log_file)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def open_log_file(self, path):
        """(Re)open the log file, appending to it if it already exists."""
        if self._log is not None:
            self._log.close()
            self._log = None
        if path:
            try:
                self._log = open(path, "ab")
            except OSError as exc:
                log.warning("can not open syslog file %s: %s", path, exc)

    def handle_datagram(self, data, address):
        """Process one datagram; return the message, or None if rejected."""
        data = bytes(data[:SYSLOG_MAXMSG])
        text = check_syslog_message(data)
        if text is None:
            return None
        text = text.split("\0", 1)[0]
        host = address[0] if isinstance(address, tuple) else str(address)
        sender = strip_v4_mapped(host)

        if self._log is not None:
            line = format_log_line(time.time(), sender, text)
            self._log.write(line.encode("ascii", "replace"))
            self._log.flush()
        if self._pipe is not None:
            try:
                self._pipe.write(data)
            except OSError as exc:
                log.debug("pipe write failed: %s", exc)

        message = SyslogMessage(sender, text)
        if self.on_message is not None:
            self.on_message(message)
        return message

    def serve(self, sock, running):
        """Receive datagrams while ``running()`` is true.

        Returns the number of accepted messages.  The files are closed when
        the loop ends.
        """
        accepted = 0
        try:
            while running():
                try:
                    data, address = sock.recvfrom(SYSLOG_MAXMSG)
                except socket.timeout:
                    continue
                if data and self.handle_datagram(data, address) is not None:
                    accepted += 1
        finally:
            self.close()
            log.debug("End of Syslog thread")
        return accepted

    def close(self):
        """Close the log file and the pipe opened by this server."""
        if self._log is not None:
            self._log.close()
            self._log = None
        if self._pipe is not None and self._own_pipe:
            self._pipe.close()
        self._pipe = None
        self._own_pipe = False