"""Trace messages for TFTP datagrams.

Block numbers are 16-bit on the wire, so every block number is reduced
modulo 65536 before it is shown or tested.  Only the first and last
blocks of the 16-bit range fall inside the trace window, which keeps
traces of large transfers short.
"""

from __future__ import annotations

BLOCK_MASK = 0xFFFF
TRACE_LOW = 50
TRACE_HIGH = 65500
DUMP_WIDTH = 16


def _block(number):
    return number & BLOCK_MASK


def in_trace_window(block):
    """Return True if ``block`` is near either end of the 16-bit range."""
    value = _block(block)
    return value < TRACE_LOW or value > TRACE_HIGH


def format_send_block(block, nbytes, total):
    """Describe a data block about to be sent."""
    return f"SendFile block #{_block(block)}, {nbytes} bytes, {total} total"


def format_recv_ack(received, wanted, retries):
    """Describe a received acknowledgement and the block that was expected."""
    return (
        f"Read ACK block #{_block(received)}, wanted #{_block(wanted)}, "
        f"Retry {retries}"
    )


def format_send_ack(block):
    """Describe an acknowledgement about to be sent."""
    return f"Send ACK block #{_block(block)}"


def format_recv_data(received, wanted, retries, total):
    """Describe a received data block and the block that was expected."""
    return (
        f"Read data block #{_block(received)}, wanted #{_block(wanted)}, "
        f"Retry {retries}, Bytes {total}"
    )


def _dump_line(offset, chunk):
    hex_part = " ".join(f"{byte:02X}" for byte in chunk)
    text_part = "".join(chr(byte) if 32 <= byte < 127 else "." for byte in chunk)
    return f"{offset:04X}  {hex_part:<{DUMP_WIDTH * 3 - 1}}  {text_part}"


def hex_dump(data, title=""):
    """Return a hexadecimal dump of ``data`` headed by ``title``.

    Each line holds the offset, up to 16 bytes in hexadecimal and their
    printable characters, with a dot for any other byte.
    """
    data = bytes(data)
    lines = [title] if title else []
    lines.extend(
        _dump_line(offset, data[offset:offset + DUMP_WIDTH])
        for offset in range(0, len(data), DUMP_WIDTH)
    )
    return "\n".join(lines)