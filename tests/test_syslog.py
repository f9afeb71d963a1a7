import io
import socket
import time

import pytest

from netdaemons.syslog import (
    SYSLOG_MAXMSG,
    SyslogMessage,
    SyslogServer,
    check_syslog_message,
    format_log_line,
    strip_v4_mapped,
)


def test_check_accepts_bracketed_message():
    assert check_syslog_message(b"<13>hello") == "<13>hello"


def test_check_rejects_short_datagram():
    assert check_syslog_message(b"<1>") is None


def test_check_rejects_plain_text():
    assert check_syslog_message(b"hello world") is None


def test_check_accepts_closing_brackets_at_offset_four():
    assert check_syslog_message(b"abcd>>>x") == "abcd>>>x"


def test_check_replaces_non_ascii():
    assert check_syslog_message(b"<13>caf\xe9") == "<13>caf."


def test_check_rejects_wake_up_datagram():
    assert check_syslog_message(b"wake up\x00") is None


def test_strip_v4_mapped():
    assert strip_v4_mapped("::ffff:192.0.2.1") == "192.0.2.1"


@pytest.mark.parametrize("address", ["2001:db8::1", "192.0.2.5", "not-an-address"])
def test_strip_leaves_other_addresses(address):
    assert strip_v4_mapped(address) == address


def test_format_log_line_fixed_time():
    moment = time.struct_time((2021, 1, 4, 10, 20, 30, 0, 4, 0))
    line = format_log_line(moment, "192.0.2.1", "<13>hi")
    assert line == "Mon Jan  4 10:20:30 2021;192.0.2.1; <13>hi\r\n"


def test_format_log_line_from_seconds():
    line = format_log_line(0.0, "h", "<1>text")
    stamp, sender, rest = line.split(";")
    assert len(stamp) == 24
    assert sender == "h"
    assert rest == " <1>text\r\n"


def test_handle_writes_log_and_calls_back(tmp_path):
    path = tmp_path / "syslog.txt"
    received = []
    with SyslogServer(log_file=str(path), on_message=received.append) as server:
        msg = server.handle_datagram(b"<13>hello", ("::ffff:192.0.2.1", 514, 0, 0))
    assert msg == SyslogMessage("192.0.2.1", "<13>hello")
    assert received == [msg]
    content = path.read_bytes().decode("ascii")
    assert content.endswith(";192.0.2.1; <13>hello\r\n")


def test_handle_rejected_datagram_does_nothing(tmp_path):
    path = tmp_path / "syslog.txt"
    received = []
    pipe = io.BytesIO()
    server = SyslogServer(log_file=str(path), pipe=pipe, on_message=received.append)
    assert server.handle_datagram(b"junk", ("192.0.2.1", 514)) is None
    server.close()
    assert received == []
    assert pipe.getvalue() == b""
    assert path.read_bytes() == b""


def test_pipe_receives_raw_datagram():
    pipe = io.BytesIO()
    server = SyslogServer(pipe=pipe)
    server.handle_datagram(b"<13>caf\xe9", ("192.0.2.1", 514))
    assert pipe.getvalue() == b"<13>caf\xe9"


def test_pipe_opened_from_path(tmp_path):
    target = tmp_path / "pipe"
    target.write_bytes(b"")
    server = SyslogServer(pipe=str(target))
    server.handle_datagram(b"<13>piped", ("192.0.2.1", 514))
    server.close()
    assert target.read_bytes() == b"<13>piped"


def test_text_stops_at_nul():
    server = SyslogServer()
    msg = server.handle_datagram(b"<13>abc\x00def", ("192.0.2.1", 514))
    assert msg.text == "<13>abc"


def test_long_datagram_truncated():
    server = SyslogServer()
    msg = server.handle_datagram(b"<13>" + b"x" * (SYSLOG_MAXMSG * 2), ("h", 1))
    assert len(msg.text) == SYSLOG_MAXMSG


def test_open_log_file_appends(tmp_path):
    path = tmp_path / "syslog.txt"
    path.write_bytes(b"previous\r\n")
    server = SyslogServer(log_file=str(path))
    server.handle_datagram(b"<13>new", ("192.0.2.1", 514))
    server.close()
    content = path.read_bytes().decode("ascii")
    assert content.startswith("previous\r\n")
    assert content.endswith("; <13>new\r\n")


def test_serve_receives_from_socket():
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as listener:
        listener.bind(("127.0.0.1", 0))
        listener.settimeout(1.0)
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sender:
            sender.sendto(b"<14>from socket", listener.getsockname())
        received = []
        server = SyslogServer(on_message=received.append)
        count = server.serve(listener, iter([True, False]).__next__)
    assert count == 1
    assert received == [SyslogMessage("127.0.0.1", "<14>from socket")]