"""The TFTP listener: accepts connection requests and hands them to workers.

Every request read on the listening port is given a :class:`TransferRecord`.
A few permanent worker threads wait to be woken for a new transfer; when
they are all busy a new thread is started for each extra transfer, up to a
maximum number of simultaneous transfers.
"""

from __future__ import annotations

import itertools
import logging
import select
import socket
import threading
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

from netdaemons.services import BindError, resolve_family
from netdaemons.syslog import strip_v4_mapped

log = logging.getLogger(__name__)

TFTP_DEFAULT_PORT = 69
TFTP_SEGSIZE = 512
PKTSIZE = TFTP_SEGSIZE + 4
MAX_DATAGRAM = 65536
FIRST_TRANSFER_ID = 467
DEFAULT_MAX_TRANSFERS = 100
DEFAULT_PERMANENT = 2
DEFAULT_TIMEOUT = 3
SHUTDOWN_TIMEOUT = 10.0

RUNNING = "running"
ENDED = "ended"
STOPPED = "stopped"
FAILED = "failed"


def bind_tftp_socket(port, local_ip, ipv4=True, ipv6=True, reuse=True):
    """Create and bind the TFTP listening socket.

    Passing 0 selects the well-known TFTP number, 69.  ``local_ip`` is used
    only when it starts with a digit; otherwise every interface is bound.
    Raises BindError on failure.
    """
    port = port or TFTP_DEFAULT_PORT
    host = local_ip if local_ip and local_ip[0].isdigit() else None
    family = resolve_family(socket.AF_UNSPEC, ipv4, ipv6)
    try:
        infos = socket.getaddrinfo(
            host, str(port), family, socket.SOCK_DGRAM, 0, socket.AI_PASSIVE
        )
    except OSError as exc:
        raise BindError(
            f"Error {exc}\n\nTried to bind the tftp port\nto the interface "
            f"{local_ip}\nwhich is not available for this host\n"
            f"Either remove the tftp service or suppress {local_ip} "
            "interface assignation"
        ) from exc

    fam, stype, proto, _, addr = infos[0]
    try:
        sock = socket.socket(fam, stype, proto)
    except OSError as exc:
        raise BindError(f"Error : Can't create socket\nError {exc}") from exc

    if reuse:
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            log.debug("Port %d may be reused", port)
        except OSError:
            log.debug("setsockopt error")

    if ipv4 and ipv6 and fam == socket.AF_INET6:
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        except (OSError, AttributeError):
            pass

    try:
        sock.bind(addr)
    except OSError as exc:
        sock.close()
        log.debug("bind port to %s port %s failed", addr[0], addr[1])
        raise BindError(exc.errno, f"Can not bind the tftp port: {exc.strerror}") from exc
    return sock


@dataclass
class TransferStats:
    """Progress of one transfer."""

    transfer_number: int = 0
    start_time: float = 0.0
    last_update: float = 0.0
    total_bytes: int = 0
    ret_code: str = RUNNING


@dataclass(eq=False)
class TransferRecord:
    """State of one transfer slot, permanent or created on demand."""

    permanent: bool = False
    slot: int = 0
    transfer_id: int = 0
    active: bool = False
    timeout: int = DEFAULT_TIMEOUT
    packet_size: int = TFTP_SEGSIZE
    md5: bool = False
    multicast: bool = False
    oack_port: int = 0
    stats: TransferStats = field(default_factory=TransferStats)
    sender: Optional[tuple] = None
    frame: bytes = b""
    thread: Optional[threading.Thread] = None
    wake: threading.Event = field(default_factory=threading.Event, repr=False)
    cancel: threading.Event = field(default_factory=threading.Event, repr=False)


class DuplicateFilter:
    """Drops oversized requests and notices repeated ones.

    A request identical to the previous one, from the same sender and in
    the same second, is counted as a duplicate but still accepted.
    """

    def __init__(self):
        self.duplicates = 0
        self._last_data: Optional[bytes] = None
        self._last_sender = None
        self._last_time: Optional[int] = None

    def is_filtered(self, sender, data, now=None):
        """Return True if the request must be dropped."""
        if len(data) > PKTSIZE:
            return True
        second = int(time.time() if now is None else now)
        data = bytes(data)
        if (
            data == self._last_data
            and sender == self._last_sender
            and second == self._last_time
        ):
            self.duplicates += 1
            log.warning("received duplicated request from %s", sender)
            return False
        self._last_data = data
        self._last_sender = sender
        self._last_time = second
        return False


class TransferPool:
    """The set of transfer records and the worker threads running them."""

    def __init__(self, max_transfers=DEFAULT_MAX_TRANSFERS, permanent=DEFAULT_PERMANENT,
                 timeout=DEFAULT_TIMEOUT, md5=False,
                 handler: Optional[Callable[[TransferRecord], None]] = None):
        self.max_transfers = max_transfers
        self.timeout = timeout
        self.md5 = md5
        self.handler = handler
        self.finished = threading.Event()
        self._ids = itertools.count(FIRST_TRANSFER_ID)
        self._lock = threading.RLock()
        self._closing = False
        self._records: list[TransferRecord] = []
        for slot in range(1, permanent + 1):
            record = TransferRecord(permanent=True, slot=slot)
            record.thread = threading.Thread(
                target=self._permanent_worker, args=(record,),
                name=f"tftp-permanent-{slot}", daemon=True,
            )
            self._records.append(record)
            record.thread.start()

    def __len__(self):
        with self._lock:
            return len(self._records)

    def acquire(self):
        """Return a prepared record for a new transfer, or None if full.

        An idle permanent record is reused when there is one.
        """
        with self._lock:
            if len(self._records) >= self.max_transfers:
                return None
            record = next(
                (r for r in self._records if r.permanent and not r.active), None
            )
            if record is None:
                record = TransferRecord()
                self._records.append(record)
            self._populate(record)
            return record

    def _populate(self, record):
        record.timeout = self.timeout
        record.packet_size = TFTP_SEGSIZE
        record.multicast = False
        record.oack_port = 0
        record.transfer_id = next(self._ids)
        now = time.time()
        record.stats = TransferStats(
            transfer_number=len(self._records) - 1,
            start_time=now,
            last_update=now,
        )
        record.md5 = self.md5
        record.sender = None
        record.frame = b""
        record.cancel.clear()
        log.debug("Transfert #%d", record.stats.transfer_number)

    def release(self, record):
        """Give back a record that will not run; non-permanent ones are removed."""
        with self._lock:
            record.active = False
            if not record.permanent and record in self._records:
                self._records.remove(record)

    def active(self):
        """Return the records of the transfers in progress."""
        with self._lock:
            return [r for r in self._records if r.active]

    def reap(self):
        """Remove finished non-permanent records; return how many were removed."""
        with self._lock:
            self.finished.clear()
            done = [r for r in self._records if not r.permanent and not r.active]
            for record in done:
                self._records.remove(record)
                log.debug("removing transfer %d", record.transfer_id)
            return len(done)

    def statistics(self):
        """Return ``(transfer_id, stats)`` pairs for the active transfers."""
        with self._lock:
            return [(r.transfer_id, replace(r.stats)) for r in self._records if r.active]

    def _launch(self, record):
        record.active = True
        if record.permanent:
            log.debug("waking up thread %d for transfer %d",
                      record.slot, record.transfer_id)
            record.wake.set()
            return
        record.thread = threading.Thread(
            target=self._execute, args=(record,),
            name=f"tftp-transfer-{record.transfer_id}", daemon=True,
        )
        record.thread.start()
        log.debug("transfer %d started", record.transfer_id)

    def _permanent_worker(self, record):
        while True:
            record.wake.wait()
            record.wake.clear()
            if self._closing:
                return
            self._execute(record)

    def _execute(self, record):
        try:
            if self.handler is not None:
                self.handler(record)
            if record.stats.ret_code == RUNNING:
                record.stats.ret_code = ENDED
        except Exception:
            log.exception("transfer %d failed", record.transfer_id)
            record.stats.ret_code = FAILED
        finally:
            record.active = False
            self.finished.set()

    def _shutdown(self, timeout=SHUTDOWN_TIMEOUT):
        with self._lock:
            self._closing = True
            records = list(self._records)
        for record in records:
            if record.active:
                record.cancel.set()
                record.stats.ret_code = STOPPED
            if record.permanent:
                record.wake.set()
        deadline = time.monotonic() + timeout
        for record in records:
            thread = record.thread
            if thread is not None and thread is not threading.current_thread():
                thread.join(max(0.0, deadline - time.monotonic()))
        with self._lock:
            self._records.clear()


class TftpListener:
    """Reads connection requests on the TFTP port and starts transfers."""

    def __init__(self, pool, sock):
        self.pool = pool
        self.sock = sock
        self.filter = DuplicateFilter()
        self.on_stats: Optional[Callable[[list], None]] = None
        self._closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def handle_request(self):
        """Read one request and start its transfer.

        Returns the record of the started transfer, or None when the
        request was dropped or could not be read.
        """
        record = self.pool.acquire()
        if record is None:
            try:
                _, address = self.sock.recvfrom(MAX_DATAGRAM)
            except OSError:
                return None
            log.warning("max number of threads reached, connection from %s dropped",
                        strip_v4_mapped(address[0]))
            return None

        try:
            data, address = self.sock.recvfrom(MAX_DATAGRAM)
        except OSError as exc:
            log.error("Error : RecvFrom failed: %s", exc)
            self.pool.release(record)
            return None

        host = strip_v4_mapped(address[0])
        if self.filter.is_filtered(address, data):
            log.warning("Unaccepted request received from %s", host)
            self.pool.release(record)
            return None

        log.info("Connection received from %s on port %s", host, address[1])
        record.sender = (host, address[1])
        record.frame = bytes(data)
        self.pool._launch(record)
        return record

    def run(self, running, interval=1.0):
        """Serve requests while ``running()`` is true; return how many started.

        Finished transfers are reaped as they end; on each idle interval
        the transfer statistics go to ``on_stats`` when it is set.
        """
        started = 0
        while running():
            if self.pool.finished.is_set():
                self.pool.reap()
            try:
                readable, _, _ = select.select([self.sock], [], [], interval)
            except (OSError, ValueError) as exc:
                log.error("wait error %s", exc)
                break
            if not running():
                break
            if readable:
                if self.handle_request() is not None:
                    started += 1
            elif self.on_stats is not None:
                self.on_stats(self.pool.statistics())
        return started

    def close(self):
        """Stop the workers, cancelling active transfers, and close the socket."""
        if self._closed:
            return
        self._closed = True
        self.pool._shutdown()
        try:
            self.sock.close()
        except OSError:
            pass
        log.debug("main TFTP thread ends here")