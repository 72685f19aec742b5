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
"""Sets up the per-run logger: console, a private log file, and optionally syslog.

The logger object is deliberately not registered with ``logging.Logger.manager``, so that several runs in one process (e.g.
in tests) never share handlers. Whoever creates the logger closes it again via ``reset_logger()``.
"""

from __future__ import (
    annotations,
)
import argparse
import contextlib
import logging
import sys
from logging import (
    Logger,
)
from typing import (
    TYPE_CHECKING,
    Any,
    Final,
)

from vmbackup_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    LOG_TRACE,
    PROG_NAME,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from vmbackup_main.configuration import (
        LogParams,
    )

LEVEL_TAGS: Final[dict[int, str]] = {
    logging.CRITICAL: "[C] CRITICAL:",
    logging.ERROR: "[E] ERROR:",
    logging.WARNING: "[W]",
    logging.INFO: "[I]",
    logging.DEBUG: "[D]",
    LOG_TRACE: "[T]",
}
MSG_COLUMN: Final[int] = 54  # the first %s argument of a message starts at this column, which aligns dataset names


#############################################################################
class LevelTagFormatter(logging.Formatter):
    """Renders '2024-09-03 12:26:15 [I] Creating snapshot:     tank/vm@2024-09-03-122615'; Output of subprocesses (the
    STDOUT and STDERR levels) passes through unchanged."""

    def __init__(self, prefix: str = "") -> None:
        super().__init__(datefmt="%Y-%m-%d %H:%M:%S")
        self.prefix: str = prefix

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno in (LOG_STDOUT, LOG_STDERR):
            return self.prefix + super().format(record)
        head: str = f"{self.formatTime(record, self.datefmt)} {LEVEL_TAGS.get(record.levelno, '')} "
        template: str = head + str(record.msg)
        pos: int = template.find("%s", len(head) + 1)
        if pos >= 0:
            template = template[0:pos].ljust(MSG_COLUMN) + template[pos:]
        msg: str = template % record.args if record.args else template
        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            msg += "\n" + record.exc_text
        if record.stack_info:
            msg += "\n" + self.formatStack(record.stack_info)
        return self.prefix + msg


def get_default_log_formatter(prefix: str = "") -> logging.Formatter:
    return LevelTagFormatter(prefix)


def get_logger(log_params: LogParams, args: argparse.Namespace, log: Logger | None = None) -> Logger:
    """Returns the given third party logger as-is, or else a new logger configured from the CLI arguments."""
    _add_custom_loglevels()
    if log is not None:
        assert isinstance(log, Logger)
        return log
    return _get_default_logger(log_params, args)


def _get_default_logger(log_params: LogParams, args: argparse.Namespace) -> Logger:
    log = Logger(PROG_NAME + "." + log_params.logger_name_suffix)  # noqa: LOG001 do not register with Logger.manager
    log.setLevel(log_params.log_level)
    log.propagate = False  # the root logger must not emit the same messages again

    handlers: list[tuple[logging.Handler, str]] = [
        (logging.StreamHandler(stream=sys.stdout), ""),
        (logging.FileHandler(log_params.log_file, encoding="utf-8"), ""),
    ]
    if args.log_syslog_address:
        from logging.handlers import (  # lazy import for startup perf
            SysLogHandler,
        )

        address, socktype = _get_syslog_address(args.log_syslog_address, args.log_syslog_socktype)
        syslog_prefix: str = str(args.log_syslog_prefix).strip().replace("%", "")  # sanitize
        syslog = SysLogHandler(address=address, facility=args.log_syslog_facility, socktype=socktype)
        handlers.append((syslog, syslog_prefix + " "))
    for handler, prefix in handlers:
        handler.setFormatter(get_default_log_formatter(prefix=prefix))
        handler.setLevel(log_params.log_level)
        log.addHandler(handler)

    logging.logProcesses = False
    logging.logThreads = False
    logging.logMultiprocessing = False
    logging.raiseExceptions = False  # e.g. no tracebacks on BrokenPipeError when stdout is piped into 'head'
    return log


def reset_logger(log: Logger) -> None:
    """Closes and removes all handlers (which also closes the log file) and all filters of the logger."""
    for handler in list(log.handlers):
        log.removeHandler(handler)
        with contextlib.suppress(BrokenPipeError):
            handler.flush()
        handler.close()
    for log_filter in list(log.filters):
        log.removeFilter(log_filter)
    log.setLevel(logging.NOTSET)
    log.propagate = True


def get_simple_logger(program: str) -> Logger:
    """Console-only logger for errors that happen before the log file exists, e.g. an invalid --log-dir."""
    _add_custom_loglevels()
    log = Logger(program)  # noqa: LOG001 do not register with Logger.manager
    log.setLevel(logging.INFO)
    log.propagate = False
    handler = logging.StreamHandler()
    fmt: str = f"%(asctime)s %(levelname)s [{program}] %(message)s"
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S"))
    log.addHandler(handler)
    return log


def _add_custom_loglevels() -> None:
    logging.addLevelName(LOG_TRACE, "TRACE")
    logging.addLevelName(LOG_STDERR, "STDERR")
    logging.addLevelName(LOG_STDOUT, "STDOUT")


def _get_syslog_address(address: str, log_syslog_socktype: str) -> tuple[str | tuple[str, int], Any]:
    """Returns ('host', port) plus socket type for 'host:port', or the unix socket path as-is (e.g. '/dev/log')."""
    import socket  # lazy import for startup perf

    address = address.strip()
    if ":" not in address:
        return address, None
    host, port = address.rsplit(":", 1)
    socktype = socket.SOCK_DGRAM if log_syslog_socktype == "UDP" else socket.SOCK_STREAM
    return (host.strip(), int(port.strip())), socktype
