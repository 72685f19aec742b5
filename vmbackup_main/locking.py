# Copyright 2024 The vm-backup Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Single-instance run lock; a PID file that is guarded by an exclusive advisory flock(2).

The flock is the source of truth for instances of this program; it is auto-released by the kernel when the process dies, so a
crash never leaves a lock that blocks forever. The PID inside the file additionally covers lock files written by other
tools that don't use flock: if that PID still refers to a live process the run is skipped, whereas a dead PID marks
the file as stale, in which case it is removed and the acquisition is retried. After acquiring the flock the inode of
the open fd is compared against the inode at the path, which detects a concurrent unlink + recreate of the lock
file by the previous owner.
"""

from __future__ import (
    annotations,
)
import fcntl
import os
from logging import (
    Logger,
)
from pathlib import (
    Path,
)
from typing import (
    Final,
)

from vmbackup_main.utils import (
    FILE_PERMISSIONS,
    die,
    pid_exists,
)

# constants:
MAX_ACQUIRE_ATTEMPTS: Final[int] = 3


#############################################################################
class RunLock:
    """Exclusive lease on a named lock file, with liveness-checked takeover of stale leases."""

    def __init__(self, path: str, log: Logger) -> None:
        self.path: Final[str] = path
        self.log: Final[Logger] = log
        self._fd: int | None = None

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> bool:
        """Returns True if the lock is now held by this process, or False if another live process holds it."""
        assert self._fd is None, "lock is already held"
        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            fd: int = os.open(self.path, os.O_RDWR | os.O_CREAT | os.O_NOFOLLOW | os.O_CLOEXEC, FILE_PERMISSIONS)
            try:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)  # LOCK_NB ... non-blocking
                except BlockingIOError:
                    self.log.info("Lock file %s is held by another running instance", self.path)
                    os.close(fd)
                    return False
                if not self._is_same_file(fd):
                    os.close(fd)  # lost a race with a concurrent release; retry on the new file
                    continue
                owner: int | None = self._read_pid(fd)
                if owner is not None and owner != os.getpid():
                    if pid_exists(owner) is not False:  # None means unknown; err on the side of not running twice
                        self.log.info("Lock file %s is held by live process %d", self.path, owner)
                        os.close(fd)
                        return False
                    self.log.warning("Removing stale lock file %s of dead process %d", self.path, owner)
                    Path(self.path).unlink(missing_ok=True)
                    os.close(fd)
                    continue
                self._write_pid(fd)
            except BaseException:
                os.close(fd)
                raise
            self._fd = fd
            self.log.debug("Acquired lock file %s", self.path)
            return True
        die(f"Cannot acquire lock file after {MAX_ACQUIRE_ATTEMPTS} attempts: {self.path}")

    def release(self) -> None:
        """Removes the lock file and then drops the flock; a no-op if the lock isn't held."""
        fd: int | None = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            Path(self.path).unlink(missing_ok=True)  # don't accumulate stale files
        finally:
            os.close(fd)

    def _is_same_file(self, fd: int) -> bool:
        try:
            path_stat: os.stat_result = os.stat(self.path, follow_symlinks=False)
        except FileNotFoundError:
            return False
        fd_stat: os.stat_result = os.fstat(fd)
        return (path_stat.st_dev, path_stat.st_ino) == (fd_stat.st_dev, fd_stat.st_ino)

    @staticmethod
    def _read_pid(fd: int) -> int | None:
        os.lseek(fd, 0, os.SEEK_SET)
        content: str = os.read(fd, 64).decode("utf-8", errors="replace").strip()
        return int(content) if content.isdigit() else None

    @staticmethod
    def _write_pid(fd: int) -> None:
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, f"{os.getpid()}\n".encode("utf-8"))
        os.fsync(fd)

    def __repr__(self) -> str:
        return f"RunLock({self.path!r}, held={self.is_held})"
