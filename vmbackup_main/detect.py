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
"""Detects which of the optional helper programs (pv, mbuffer, rsync) are installed on the local host."""

from __future__ import (
    annotations,
)
import re
import subprocess
from typing import (
    TYPE_CHECKING,
)

from vmbackup_main.configuration import (
    DISABLE_PRG,
    LOCAL,
)
from vmbackup_main.connection import (
    run_ssh_command,
)
from vmbackup_main.utils import (
    LOG_TRACE,
    die,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from vmbackup_main.configuration import (
        Params,
    )


def detect_available_programs(p: Params) -> set[str]:
    """Fills ``p.available_programs[LOCAL]`` with the names of the programs that exist locally and aren't disabled."""
    log = p.log
    available: set[str] = set()
    try:
        lines: str = run_ssh_command(p, p.src, LOG_TRACE, print_stderr=False, cmd=[p.zfs_program, "--version"])
    except (FileNotFoundError, PermissionError):
        die(f"{p.zfs_program} CLI is not available on local host")
    except subprocess.CalledProcessError as e:
        lines = e.stdout or ""  # FreeBSD returns non-zero status if the zfs kernel module is not loaded
    match = re.search(r"(\d+)\.(\d+)\.(\d+)", lines.splitlines()[0] if lines.splitlines() else "")
    if match:
        available.add("zfs")
        log.log(LOG_TRACE, "available_programs[%s][zfs]: %s", LOCAL, ".".join(match.groups()))

    programs: dict[str, str] = {"pv": p.pv_program, "mbuffer": p.mbuffer_program, "rsync": p.rsync_program}
    programs = {name: program for name, program in programs.items() if program != DISABLE_PRG}
    if programs:
        try:
            cmd: list[str] = [p.shell_program, "-c", _find_available_programs(programs)]
            stdout: str = run_ssh_command(p, p.src, LOG_TRACE, cmd=cmd)
            available.update(line for line in stdout.splitlines() if line in programs)
        except (FileNotFoundError, PermissionError, subprocess.CalledProcessError):
            log.warning("Failed to find %s on %s host. Continuing without pv, mbuffer and rsync...", p.shell_program, LOCAL)
    for name in sorted(set(programs).difference(available)):
        log.info("%s is not available on %s host; Continuing without it", name, LOCAL)
    p.available_programs[LOCAL] = available
    log.log(LOG_TRACE, "available_programs[%s]: %s", LOCAL, sorted(available))
    return available


def _find_available_programs(programs: dict[str, str]) -> str:
    """POSIX shell script that prints the name of each program that exists; Uses `if` statements instead of `&&` plus
    `printf` instead of `echo` to ensure maximum compatibility across shells."""
    return "; ".join(
        f"if command -v {program} > /dev/null; then printf '{name}\\n'; fi" for name, program in programs.items()
    )
