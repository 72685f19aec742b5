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
"""Executing a CLI command on the local host or, via ssh, on a remote host is in run_ssh_command(); Also honors --dry-run
by logging mutating commands instead of executing them."""

from __future__ import (
    annotations,
)
import logging
import shlex
import subprocess
from subprocess import (
    DEVNULL,
    PIPE,
    CompletedProcess,
)
from typing import (
    TYPE_CHECKING,
)

from vmbackup_main.utils import (
    LOG_STDERR,
    LOG_STDOUT,
    lazy_join,
    log_subprocess_output,
    stderr_to_str,
    subprocess_run,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from vmbackup_main.configuration import (
        Params,
        Target,
    )

# stderr fragments that 'zfs' emits if the dataset or pool is absent
DATASET_MISSING_MSGS: tuple[str, ...] = (": dataset does not exist", ": filesystem does not exist", ": no such pool")


def run_ssh_command(
    p: Params,
    target: Target,
    level: int = -1,
    is_dry: bool = False,
    check: bool = True,
    print_stdout: bool = False,
    print_stderr: bool = True,
    cmd: list[str] | None = None,
) -> str:
    """Runs the given CLI cmd via ssh on the given target (or locally if the target has no host), and returns stdout.

    When executing on a remote host, cmd arguments are pre-quoted with shlex.quote to safely traverse the ssh "remote shell"
    boundary, as ssh concatenates argv into a single remote shell string. In local mode argv is executed directly without an
    intermediate shell.
    """
    level = level if level >= 0 else logging.INFO
    assert cmd is not None and isinstance(cmd, list) and len(cmd) > 0
    log = p.log
    ssh_cmd: list[str] = target.local_ssh_command()
    quoted_cmd: list[str] = [shlex.quote(arg) for arg in cmd]
    if ssh_cmd:
        cmd = quoted_cmd
    if is_dry:
        log.info("Would execute: %s", lazy_join([shlex.quote(arg) for arg in ssh_cmd] + quoted_cmd))
        return ""
    log.log(level, "Executing: %s", lazy_join([shlex.quote(arg) for arg in ssh_cmd] + quoted_cmd))
    try:
        process: CompletedProcess[str] = subprocess_run(
            ssh_cmd + cmd, stdin=DEVNULL, stdout=PIPE, stderr=PIPE, text=True, check=check
        )
    except (subprocess.CalledProcessError, UnicodeDecodeError) as e:
        if isinstance(e, subprocess.CalledProcessError):
            if print_stdout:
                log_subprocess_output(log, e.stdout, LOG_STDOUT)
            if print_stderr:
                log_subprocess_output(log, e.stderr, LOG_STDERR)
        raise
    else:
        if print_stdout:
            log_subprocess_output(log, process.stdout, LOG_STDOUT)
        if print_stderr:
            log_subprocess_output(log, process.stderr, LOG_STDERR)
        return process.stdout


def try_ssh_command(p: Params, target: Target, level: int, cmd: list[str] | None = None) -> str | None:
    """Convenience method for read-only commands; Returns None if the dataset or pool does not exist, else stdout."""
    try:
        return run_ssh_command(p, target, level=level, print_stderr=False, cmd=cmd)
    except subprocess.CalledProcessError as e:
        stderr: str = stderr_to_str(e.stderr)
        if any(msg in stderr for msg in DATASET_MISSING_MSGS):
            return None
        p.log.warning("%s", stderr.rstrip())
        raise


def run_shell_pipeline(p: Params, pipeline: str, level: int, is_dry: bool) -> None:
    """Runs the given shell pipeline on the local host via 'sh -c'; Raises CalledProcessError if the pipeline exits nonzero.

    If the shell supports 'set -o pipefail' (e.g. bash, zsh, busybox ash) a failure of any stage fails the pipeline.
    Otherwise (e.g. older dash) only the exit status of the last stage, i.e. of 'zfs receive', decides."""
    log = p.log
    if is_dry:
        log.info("Would execute: %s", pipeline)
        return
    log.log(level, "Executing: %s", pipeline)
    cmd: list[str] = [p.shell_program, "-c", _with_pipefail(pipeline)]
    # stdout and stderr are inherited so that the pv progress bar and mbuffer summary reach the terminal
    process: CompletedProcess = subprocess_run(cmd, stdin=DEVNULL)
    if process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode, pipeline)


def _with_pipefail(pipeline: str) -> str:
    """POSIX sh lacks 'set -o pipefail'; Use it where supported and otherwise fall back to the exit status of the last
    stage."""
    return f"(set -o pipefail) 2>/dev/null && set -o pipefail; {pipeline}"
