# Copyright 2024 The vm-backup Authors
# Portions Copyright 2024 Wolfgang Hoschek AT mac DOT com
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
"""Small helpers shared by all vmbackup modules: env var lookup, subprocess execution and termination, validation of ZFS
names, and scoped cleanup via ``xfinally``. Relies only on the standard library."""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import logging
import os
import pwd
import signal
import stat
import subprocess
import types
from collections import (
    defaultdict,
)
from datetime import (
    datetime,
)
from subprocess import (
    DEVNULL,
    PIPE,
)
from typing import (
    Any,
    Callable,
    Final,
    Iterable,
    NoReturn,
    cast,
)

# constants:
PROG_NAME: Final[str] = "vmbackup"
ENV_VAR_PREFIX: Final[str] = PROG_NAME + "_"
DIE_STATUS: Final[int] = 3
STILL_RUNNING_STATUS: Final[int] = 0  # another live instance holds the run lock; benign skip
LOG_STDERR: Final[int] = (logging.INFO + logging.WARNING) // 2  # custom log level is halfway in between
LOG_STDOUT: Final[int] = (LOG_STDERR + logging.INFO) // 2  # custom log level is halfway in between
LOG_DEBUG: Final[int] = logging.DEBUG
LOG_TRACE: Final[int] = logging.DEBUG // 2  # custom log level is halfway in between
SHELL_CHARS: Final[str] = '"' + "'`~!@#$%^&*()+={}[]|;<>?,\\"
FILE_PERMISSIONS: Final[int] = stat.S_IRUSR | stat.S_IWUSR  # rw-------
DIR_PERMISSIONS: Final[int] = stat.S_IRWXU  # rwx------
BYTE_UNITS: Final[tuple[str, ...]] = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")


class VmBackupError(Exception):
    """Base class of the fatal domain errors that abort a run."""


def die(msg: str, exit_code: int = DIE_STATUS, parser: argparse.ArgumentParser | None = None) -> NoReturn:
    """Exits the program with ``exit_code``; ``msg`` becomes the text of the SystemExit, or an argparse usage error."""
    if parser is None:
        ex = SystemExit(msg)
        ex.code = exit_code
        raise ex
    else:
        parser.error(msg)


def dry(msg: str, is_dry_run: bool) -> str:
    return "Dry " + msg if is_dry_run else msg


def getenv_any(key: str, default: str | None = None) -> str | None:
    """All environment variables that configure vmbackup share the 'vmbackup_' prefix, e.g. vmbackup_zfs_program."""
    return os.getenv(ENV_VAR_PREFIX + key, default)


def getenv_bool(key: str, default: bool = False) -> bool:
    return cast(str, getenv_any(key, str(default))).strip().lower() == "true"


def get_home_directory() -> str:
    """Looks up the home dir in the passwd database, as $HOME may be unset or wrong under cron."""
    return pwd.getpwuid(os.getuid()).pw_dir


def current_datetime(now_fn: Callable[[], datetime] | None = None) -> datetime:
    """Returns the current local time; ``now_fn`` can be injected for testing."""
    return datetime.now() if now_fn is None else now_fn()


def human_readable_bytes(num_bytes: float) -> str:
    """Formats a byte count for log messages, e.g. "1.5 MiB"."""
    value: float = abs(float(num_bytes))
    unit: str = BYTE_UNITS[0]
    for next_unit in BYTE_UNITS[1:]:
        if value < 1024:
            break
        value, unit = value / 1024, next_unit
    text: str = f"{value:.1f}"
    text = text[0:-2] if text.endswith(".0") else text
    return f"{'-' if num_bytes < 0 else ''}{text} {unit}"


def lazy_join(items: Iterable[Any], separator: str = " ") -> Any:
    """Defers the join until a log record is actually formatted, so disabled log levels cost nothing."""

    class LazyJoin:
        def __str__(self) -> str:
            return separator.join(map(str, items))

    return LazyJoin()


def stderr_to_str(stderr: Any) -> str:
    """CalledProcessError.stderr may be str or bytes (https://github.com/python/cpython/issues/87597)."""
    return stderr.decode("utf-8", errors="replace") if isinstance(stderr, bytes) else str(stderr)


def log_subprocess_output(log: logging.Logger, output: Any, level: int) -> None:
    """Logs the captured stdout (LOG_STDOUT) or stderr (LOG_STDERR) of a subprocess verbatim, if any."""
    text: str = stderr_to_str(output).rstrip("\n") if output else ""
    if text:
        log.log(level, "%s", text)


#############################################################################
def subprocess_run(cmd: list[str], check: bool = False, **kwargs: Any) -> subprocess.CompletedProcess:
    """Like subprocess.run(), except that if the wait is interrupted (e.g. by CTRL-C) the child's descendants are also
    terminated, which matters for the stages of a 'sh -c' pipeline."""
    with subprocess.Popen(cmd, **kwargs) as proc:
        try:
            stdout, stderr = proc.communicate()
        except BaseException:
            with contextlib.suppress(OSError, subprocess.SubprocessError):
                terminate_process_subtree(root_pid=proc.pid)
            proc.kill()
            raise
    if check and proc.returncode:
        raise subprocess.CalledProcessError(proc.returncode, proc.args, output=stdout, stderr=stderr)
    return subprocess.CompletedProcess(proc.args, proc.returncode, stdout, stderr)


def terminate_process_subtree(
    except_current_process: bool = False, root_pid: int | None = None, sig: signal.Signals = signal.SIGTERM
) -> None:
    """Sends ``sig`` to ``root_pid`` (default: this process) and all of its descendants; If the root is this process, it is
    signalled last, or not at all with ``except_current_process``."""
    current_pid: int = os.getpid()
    root_pid = current_pid if root_pid is None else root_pid
    pids: list[int] = _get_descendant_processes(root_pid)
    if root_pid != current_pid:
        pids.insert(0, root_pid)
    elif not except_current_process:
        pids.append(current_pid)
    for pid in pids:
        with contextlib.suppress(OSError):
            os.kill(pid, sig)


def _get_descendant_processes(root_pid: int) -> list[int]:
    cmd: list[str] = ["ps", "-A", "-o", "pid=", "-o", "ppid="]
    output: str = subprocess.run(cmd, stdin=DEVNULL, stdout=PIPE, text=True, check=True).stdout
    children: defaultdict[int, list[int]] = defaultdict(list)
    for line in output.splitlines():
        pid, ppid = line.split()
        children[int(ppid)].append(int(pid))
    descendants: list[int] = []
    todo: list[int] = [root_pid]
    while todo:
        for child in children.get(todo.pop(), []):
            descendants.append(child)
            todo.append(child)
    return descendants


def pid_exists(pid: int) -> bool | None:
    """Returns True if a process with the PID exists, False if not, or None if that can't be determined."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)  # signal 0 performs the existence and permission checks without sending anything
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # exists, but belongs to another user
    except OSError:
        return None
    return True


#############################################################################
def validate_dataset_name(dataset: str, input_text: str) -> None:
    """Rejects names that 'zfs' would reject (empty, leading or trailing slash, '.' or '..' components), plus names with
    whitespace or shell metacharacters, as dataset names are passed through the remote shell of ssh."""
    components: list[str] = dataset.split("/")
    if (
        not dataset
        or not dataset[0].isalpha()
        or any(component in ("", ".", "..") for component in components)
        or any(char in SHELL_CHARS or char.isspace() for char in dataset)
    ):
        die(f"Invalid ZFS dataset name: '{dataset}' for: '{input_text}'")


def validate_label(label: str, input_text: str) -> None:
    """Snapshot and bookmark labels must be non-empty and must not contain '@', '#', '/' or whitespace."""
    if not label or any(char in "@#/" or char.isspace() for char in label):
        die(f"Invalid snapshot label: '{label}' for: '{input_text}'")


def validate_is_not_a_symlink(msg: str, path: str, parser: argparse.ArgumentParser | None = None) -> None:
    if os.path.islink(path):
        die(f"{msg}must not be a symlink: {path}", parser=parser)


def validate_file_permissions(path: str, mode: int) -> None:
    """Dies unless ``path`` is owned by the effective UID and has exactly the permission bits ``mode``."""
    stats: os.stat_result = os.stat(path, follow_symlinks=False)
    if stats.st_uid != os.geteuid():
        die(f"{path!r} is owned by uid {stats.st_uid}, not {os.geteuid()}")
    actual: int = stat.S_IMODE(stats.st_mode)
    if actual != mode:
        die(f"{path!r} has permissions {actual:03o} aka {stat.filemode(actual)[1:]}, not {mode:03o}")


#############################################################################
class _XFinally(contextlib.AbstractContextManager):
    """Context manager ensuring cleanup code executes after ``with`` blocks."""

    def __init__(self, cleanup: Callable[[], None]) -> None:
        self._cleanup = cleanup  # Zero-argument callable executed after the `with` block exits.

    def __exit__(  # type: ignore[exit-return]
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> bool:
        try:
            self._cleanup()
        except BaseException as cleanup_exc:
            if exc is None:
                raise  # No main error --> propagate cleanup error normally
            exc.__context__ = cleanup_exc  # attach so it shows up in traceback but doesn't mask
            return False  # reraise original exception
        return False  # propagate main exception if any


def xfinally(cleanup: Callable[[], None]) -> _XFinally:
    """Usage: with xfinally(lambda: cleanup()): ...

    Returns a context manager that guarantees that cleanup() runs on exit and guarantees any error in cleanup() will never
    mask an exception raised earlier inside the body of the `with` block, while still surfacing both problems when possible.
    """
    return _XFinally(cleanup)
