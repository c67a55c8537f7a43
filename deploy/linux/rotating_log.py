"""Rotating Log - size-bounded diagnostic log with numbered generations.

The primary file is checked before every write. Once it reaches max_bytes
it is renamed to <path>.1, older backups shift up by one and anything past
max_files is dropped. Write failures never reach the caller: a diagnostic
log must not abort a network operation.

License: GPL-3.0
"""

import logging
import os
import threading
from datetime import datetime, timezone

DEFAULT_ROTATION_BYTES = 512 * 1024
DEFAULT_ROTATION_FILES = 5


class RotatingLog:
    """Append-only text log with generation rotation.

    Shared between threads and asyncio tasks; one lock serializes the
    size check, the rotation and the append.
    """

    def __init__(self, path, max_bytes=DEFAULT_ROTATION_BYTES,
                 max_files=DEFAULT_ROTATION_FILES):
        self.path = os.fspath(path)
        self.max_bytes = max_bytes
        self.max_files = max_files
        self._lock = threading.Lock()

        # Directory creation failures are resource errors and propagate
        parent = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(parent, exist_ok=True)

    def backup_path(self, index):
        """Path of backup generation `index` (1 = newest)."""
        return f"{self.path}.{index}"

    def info(self, message):
        self.write("INFO", message)

    def debug(self, message):
        self.write("DEBUG", message)

    def warning(self, message):
        self.write("WARNING", message)

    def error(self, message):
        self.write("ERROR", message)

    def write(self, level, message):
        """Append one timestamped line, rotating first if needed.

        Returns True if the line was written, False if an I/O error was
        swallowed.
        """
        try:
            with self._lock:
                self.rotate_if_needed()
                now = datetime.now(timezone.utc).isoformat()
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(f"[{now}][{level}] {message}\n")
            return True
        except OSError:
            return False

    def rotate_if_needed(self):
        """Rotate the primary file if it has reached max_bytes.

        Callers must hold the lock (write() does).
        """
        try:
            size = os.path.getsize(self.path)
        except FileNotFoundError:
            return False
        if size < self.max_bytes:
            return False

        if self.max_files <= 0:
            os.remove(self.path)
            return True

        # Oldest generation is overwritten by os.replace
        for index in range(self.max_files - 1, 0, -1):
            src = self.backup_path(index)
            if os.path.exists(src):
                os.replace(src, self.backup_path(index + 1))

        os.replace(self.path, self.backup_path(1))
        return True

    def existing_backups(self):
        """Backup paths currently on disk, newest first."""
        return [
            self.backup_path(i) for i in range(1, self.max_files + 1)
            if os.path.exists(self.backup_path(i))
        ]


class RotatingLogHandler(logging.Handler):
    """logging.Handler that writes records through a RotatingLog."""

    def __init__(self, rotating_log, level=logging.NOTSET):
        super().__init__(level)
        self.rotating_log = rotating_log
        # RotatingLog stamps time and level itself
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record):
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        self.rotating_log.write(record.levelname, message)
