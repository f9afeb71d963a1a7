import select
import socket
import threading

import pytest

from netdaemons.services import BindError
from netdaemons.tftp_listener import (
    FIRST_TRANSFER_ID,
    PKTSIZE,
    TFTP_SEGSIZE,
    DuplicateFilter,
    TftpListener,
    TransferPool,
    TransferRecord,
    TransferStats,
    bind_tftp_socket,
)

REQUEST = b"\x00\x01boot.img\x00octet\x00"


def _free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
        probe.bind(("127.0.0.1", 0))
        return probe.getsockname()[1]


@pytest.fixture
def server_sock():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    yield sock
    sock.close()


def _send(sock, data=REQUEST):
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
        client.sendto(data, sock.getsockname())
    select.select([sock], [], [], 2.0)


def test_bind_tftp_socket_uses_requested_port():
    port = _free_port()
    sock = bind_tftp_socket(port, "127.0.0.1", ipv4=True, ipv6=False, reuse=False)
    try:
        assert sock.getsockname() == ("127.0.0.1", port)
        assert sock.family == socket.AF_INET
    finally:
        sock.close()


def test_bind_tftp_socket_ignores_non_numeric_interface():
    port = _free_port()
    sock = bind_tftp_socket(port, "localhost", ipv4=True, ipv6=False, reuse=False)
    try:
        assert sock.getsockname()[0] == "0.0.0.0"
    finally:
        sock.close()


def test_bind_tftp_socket_port_in_use_raises():
    port = _free_port()
    first = bind_tftp_socket(port, "127.0.0.1", ipv4=True, ipv6=False, reuse=False)
    try:
        with pytest.raises(BindError):
            bind_tftp_socket(port, "127.0.0.1", ipv4=True, ipv6=False, reuse=False)
    finally:
        first.close()


def test_filter_drops_oversized_request():
    flt = DuplicateFilter()
    assert flt.is_filtered(("127.0.0.1", 1000), b"x" * (PKTSIZE + 1), now=10) is True
    assert flt.is_filtered(("127.0.0.1", 1000), b"x" * PKTSIZE, now=10) is False


def test_filter_counts_duplicates_in_same_second():
    flt = DuplicateFilter()
    sender = ("127.0.0.1", 1000)
    assert flt.is_filtered(sender, REQUEST, now=100.2) is False
    assert flt.is_filtered(sender, REQUEST, now=100.7) is False
    assert flt.duplicates == 1
    assert flt.is_filtered(sender, REQUEST, now=101.0) is False
    assert flt.duplicates == 1
    assert flt.is_filtered(("127.0.0.1", 1001), REQUEST, now=101.0) is False
    assert flt.duplicates == 1


def test_pool_acquire_assigns_increasing_ids():
    pool = TransferPool(max_transfers=10, permanent=0)
    first = pool.acquire()
    second = pool.acquire()
    assert first.transfer_id == FIRST_TRANSFER_ID
    assert second.transfer_id == FIRST_TRANSFER_ID + 1
    assert first.packet_size == TFTP_SEGSIZE
    assert first.stats.ret_code == "running"
    assert len(pool) == 2


def test_pool_acquire_returns_none_when_full():
    pool = TransferPool(max_transfers=1, permanent=0)
    assert isinstance(pool.acquire(), TransferRecord)
    assert pool.acquire() is None


def test_pool_reuses_idle_permanent_record():
    pool = TransferPool(max_transfers=10, permanent=1, timeout=7, md5=True)
    try:
        record = pool.acquire()
        assert record.permanent is True
        assert record.timeout == 7
        assert record.md5 is True
        assert pool.acquire() is record
        assert len(pool) == 1
    finally:
        pool._shutdown(2.0)


def test_pool_release_removes_only_non_permanent():
    pool = TransferPool(max_transfers=10, permanent=1)
    try:
        permanent = pool.acquire()
        permanent.active = True
        extra = pool.acquire()
        assert extra.permanent is False
        pool.release(extra)
        pool.release(permanent)
        assert len(pool) == 1
        assert permanent.active is False
    finally:
        pool._shutdown(2.0)


def test_pool_statistics_lists_active_transfers():
    pool = TransferPool(max_transfers=10, permanent=0)
    running = pool.acquire()
    idle = pool.acquire()
    running.active = True
    running.stats.total_bytes = 1024
    stats = pool.statistics()
    assert [tid for tid, _ in stats] == [running.transfer_id]
    assert isinstance(stats[0][1], TransferStats)
    assert stats[0][1].total_bytes == 1024
    assert pool.active() == [running]
    assert idle not in pool.active()


def test_listener_starts_transfer_in_new_thread(server_sock):
    done = threading.Event()
    seen = {}

    def handler(record):
        seen["frame"] = record.frame
        record.stats.total_bytes = len(record.frame)
        done.set()

    pool = TransferPool(max_transfers=5, permanent=0, handler=handler)
    listener = TftpListener(pool, server_sock)
    try:
        _send(server_sock)
        record = listener.handle_request()
        assert record is not None
        assert done.wait(5)
        record.thread.join(5)
        assert seen["frame"] == REQUEST
        assert record.sender[0] == "127.0.0.1"
        assert record.stats.ret_code == "ended"
        assert pool.reap() == 1
        assert len(pool) == 0
    finally:
        listener.close()


def test_listener_uses_permanent_worker(server_sock):
    done = threading.Event()
    pool = TransferPool(max_transfers=5, permanent=1, handler=lambda r: done.set())
    listener = TftpListener(pool, server_sock)
    try:
        _send(server_sock)
        record = listener.handle_request()
        assert record.permanent is True
        assert done.wait(5)
        assert pool.reap() == 0
        assert len(pool) == 1
    finally:
        listener.close()


def test_listener_drops_request_when_pool_full(server_sock):
    pool = TransferPool(max_transfers=0, permanent=0)
    listener = TftpListener(pool, server_sock)
    try:
        _send(server_sock)
        assert listener.handle_request() is None
        readable, _, _ = select.select([server_sock], [], [], 0.05)
        assert readable == []
        assert pool.active() == []
    finally:
        listener.close()


def test_handler_failure_marks_transfer_failed(server_sock):
    def handler(record):
        raise RuntimeError("boom")

    pool = TransferPool(max_transfers=5, permanent=0, handler=handler)
    listener = TftpListener(pool, server_sock)
    try:
        _send(server_sock)
        record = listener.handle_request()
        record.thread.join(5)
        assert record.stats.ret_code == "failed"
        assert record.active is False
    finally:
        listener.close()


def test_run_reports_statistics_when_idle(server_sock):
    pool = TransferPool(max_transfers=5, permanent=0)
    listener = TftpListener(pool, server_sock)
    reports = []
    listener.on_stats = reports.append
    calls = iter([True, True, False])
    try:
        started = listener.run(lambda: next(calls, False), interval=0.01)
        assert started == 0
        assert reports == [[]]
    finally:
        listener.close()


def test_close_cancels_active_transfer(server_sock):
    begun = threading.Event()

    def handler(record):
        begun.set()
        record.cancel.wait(5)

    pool = TransferPool(max_transfers=5, permanent=0, handler=handler)
    listener = TftpListener(pool, server_sock)
    _send(server_sock)
    record = listener.handle_request()
    assert begun.wait(5)
    listener.close()
    assert record.cancel.is_set()
    assert record.stats.ret_code == "stopped"
    assert len(pool) == 0