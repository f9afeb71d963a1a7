"""Writes an index of the files served from a directory."""

from __future__ import annotations

import logging
import os
import threading
import time

log = logging.getLogger(__name__)

DIR_TEXT_FILE = "dir.txt"

_index_lock = threading.Lock()


def list_directory(directory):
    """Yield one line per regular file: name, modification time and size.

    Fields are separated by tabs; files are listed in name order.
    """
    with os.scandir(directory) as entries:
        files = sorted(
            (entry for entry in entries if entry.is_file()), key=lambda e: e.name
        )
    for entry in files:
        info = entry.stat()
        stamp = time.strftime("%d/%m/%Y %H:%M", time.localtime(info.st_mtime))
        yield f"{entry.name}\t{stamp}\t{info.st_size}"


def create_index_file(directory, filename=DIR_TEXT_FILE):
    """Write the directory listing into ``filename`` inside ``directory``.

    Returns False if the file can not be written or an index is already
    being written.
    """
    if not _index_lock.acquire(blocking=False):
        return False
    try:
        path = os.path.join(directory, filename)
        try:
            with open(path, "w", encoding="utf-8", newline="") as index:
                for line in list_directory(directory):
                    index.write(line + "\r\n")
        except OSError as exc:
            log.warning("can not write %s: %s", path, exc)
            return False
        return True
    finally:
        _index_lock.release()