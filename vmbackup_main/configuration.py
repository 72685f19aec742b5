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
"""Configuration subsystem; All CLI option/parameter values are reachable from the "Params" class."""

from __future__ import (
    annotations,
)
import argparse
import os
import re
import sys
import tempfile
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from typing import (
    Final,
)

import vmbackup_main.utils
from vmbackup_main.argparse_cli import (
    LOG_DIR_DEFAULT,
)
from vmbackup_main.utils import (
    DIR_PERMISSIONS,
    FILE_PERMISSIONS,
    die,
    get_home_directory,
    getenv_any,
    getenv_bool,
    validate_dataset_name,
    validate_file_permissions,
    validate_is_not_a_symlink,
)

# constants:
DISABLE_PRG: Final[str] = "-"
LOCAL: Final[str] = "local"


#############################################################################
class LogParams:
    """Option values for logging."""

    def __init__(self, args: argparse.Namespace) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        if args.quiet:
            log_level: str = "ERROR"
        elif args.debug >= 2:
            log_level = "TRACE"
        elif args.debug >= 1:
            log_level = "DEBUG"
        else:
            log_level = "INFO"
        self.log_level: Final[str] = log_level
        self.timestamp: Final[str] = datetime.now().isoformat(sep="_", timespec="seconds")  # 2024-09-03_12:26:15
        self.home_dir: Final[str] = get_home_directory()
        log_parent_dir: Final[str] = args.log_dir if args.log_dir else os.path.join(self.home_dir, LOG_DIR_DEFAULT)
        if LOG_DIR_DEFAULT not in os.path.basename(log_parent_dir):
            die(f"Basename of --log-dir must contain the substring '{LOG_DIR_DEFAULT}', but got: {log_parent_dir}")
        self.log_dir: Final[str] = os.path.join(log_parent_dir, self.timestamp[0 : self.timestamp.index("_")])  # 2024-09-03
        os.makedirs(log_parent_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        validate_is_not_a_symlink("--log-dir ", log_parent_dir)
        validate_file_permissions(log_parent_dir, DIR_PERMISSIONS)
        os.makedirs(self.log_dir, mode=DIR_PERMISSIONS, exist_ok=True)
        validate_is_not_a_symlink("--log-dir subdir ", self.log_dir)
        validate_file_permissions(self.log_dir, DIR_PERMISSIONS)
        fd, self.log_file = tempfile.mkstemp(suffix=".log", prefix=f"{self.timestamp}-", dir=self.log_dir)
        os.fchmod(fd, FILE_PERMISSIONS)
        os.close(fd)
        log_file_stem: str = os.path.basename(self.log_file)[0 : -len(".log")]
        # python logger names interpret chars such as '.' in special ways, thus sanitize
        self.logger_name_suffix: Final[str] = re.sub(r"[^A-Za-z0-9_]", repl="_", string=log_file_stem)

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
class Target:
    """Where a dataset lives: either the local host (empty host) or a remote host reached via ssh."""

    def __init__(self, name: str, user: str, host: str, dataset: str, p: Params) -> None:
        # immutable variables:
        self.name: Final[str] = name
        self.user: Final[str] = user
        self.host: Final[str] = host
        self.dataset: Final[str] = dataset
        self.params: Final[Params] = p
        validate_dataset_name(dataset, f"--{name}-dataset" if name != LOCAL else "--dataset")
        if host and any(char.isspace() or char in "@/" for char in host):
            die(f"Invalid hostname: '{host}' for: '--{name}-host'")
        if user and any(char.isspace() or char in "@/:" for char in user):
            die(f"Invalid user name: '{user}' for: '--{name}-user'")
        self.ssh_user_host: Final[str] = "" if not host else f"{user}@{host}" if user else host
        # disable interactive password prompts and X11 forwarding and pseudo-terminal allocation:
        self.ssh_extra_opts: Final[list[str]] = ["-oBatchMode=yes", "-oServerAliveInterval=0", "-x", "-T"] + (
            ["-v"] if p.debug >= 3 else []
        )

    @property
    def is_local(self) -> bool:
        return not self.ssh_user_host

    def local_ssh_command(self) -> list[str]:
        """Returns the ssh CLI command to run locally in order to talk to the remote host; This excludes the (trailing)
        command to run on the remote host, which will be appended later."""
        if self.is_local:
            return []  # dataset is on local host - don't use ssh
        p: Params = self.params
        if p.ssh_program == DISABLE_PRG:
            die("Cannot talk to remote host because ssh CLI is disabled.")
        return [p.ssh_program] + self.ssh_extra_opts + [self.ssh_user_host]

    def __repr__(self) -> str:
        return f"{self.name}:{self.ssh_user_host or LOCAL}:{self.dataset}"


#############################################################################
class Params:
    """All parsed CLI options combined into a single bundle; simplifies passing around numerous settings and defaults."""

    def __init__(
        self,
        args: argparse.Namespace,
        sys_argv: list[str],
        log_params: LogParams,
        log: Logger,
        isatty: bool | None = None,
    ) -> None:
        """Reads from ArgumentParser via args."""
        # immutable variables:
        assert args is not None
        assert isinstance(sys_argv, list)
        assert log_params is not None
        assert log is not None
        self.args: Final[argparse.Namespace] = args
        self.sys_argv: Final[list[str]] = sys_argv
        self.log_params: Final[LogParams] = log_params
        self.log: Final[Logger] = log
        self.dry_run: Final[bool] = args.dry_run
        self.debug: Final[int] = args.debug
        self.force_archive: Final[bool] = args.archive
        if args.keep_local < 1:
            die(f"--keep-local must be at least 1, but got: {args.keep_local}")
        self.keep_local: Final[int] = args.keep_local
        isatty = isatty if isatty is not None else getenv_bool("isatty", sys.stdout.isatty())
        self.interactive: Final[bool] = args.interactive == "yes" or (args.interactive == "auto" and isatty)
        self.mbuffer_mem: Final[str] = self._validate_opt(args.mbuffer_mem, "--mbuffer-mem")
        self.mbuffer_rate: Final[str] = self._validate_opt(args.mbuffer_rate, "--mbuffer-rate")
        self.snapshot_timeformat: Final[str] = args.snapshot_timeformat
        self.archive_timeformat: Final[str] = args.archive_timeformat
        self.manifest_src: Final[str] = args.manifest_src
        self.lock_file: Final[str] = args.lock_file

        self.zfs_program: Final[str] = self._program_name("zfs")
        self.ssh_program: Final[str] = self._program_name("ssh")
        self.pv_program: Final[str] = self._program_name("pv")
        self.mbuffer_program: Final[str] = self._program_name("mbuffer")
        self.rsync_program: Final[str] = self._program_name("rsync")
        self.shell_program: Final[str] = self._program_name("sh")

        self.src: Final[Target] = Target(LOCAL, "", "", args.dataset, self)
        self.backup: Final[Target] = Target("backup", args.backup_user, args.backup_host, args.backup_dataset, self)
        self.archive: Final[Target] = Target("archive", args.archive_user, args.archive_host, args.archive_dataset, self)

        # mutable variables:
        self.available_programs: dict[str, set[str]] = {}

    @staticmethod
    def _validate_opt(value: str, input_text: str) -> str:
        if any(char.isspace() or char in "'\"`$;|&<>" for char in value):
            die(f"Invalid value: '{value}' for: '{input_text}'")
        return value

    def _program_name(self, program: str) -> str:
        """For testing: helps simulate errors caused by external programs."""
        val: str | None = getenv_any(f"{program}_program", program)
        assert val is not None
        if not val:
            die(f"Program name must not be the empty string: {program}")
        return val

    def dry(self, msg: str) -> str:
        """Prefix ``msg`` with 'Dry' when running in dry-run mode."""
        return vmbackup_main.utils.dry(msg, self.dry_run)

    def is_program_available(self, program: str, location: str = LOCAL) -> bool:
        """Return True if ``program`` was detected on ``location`` host."""
        return program in self.available_programs.get(location, set())

    def __repr__(self) -> str:
        return str(self.__dict__)
