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
"""Copies the VM configuration manifests (e.g. /etc/pve/qemu-server) into the mountpoint of the local dataset, so that every
snapshot also captures the VM definitions that belong to its disks."""

from __future__ import (
    annotations,
)
import subprocess
from typing import (
    TYPE_CHECKING,
)

from vmbackup_main.connection import (
    run_ssh_command,
    try_ssh_command,
)
from vmbackup_main.utils import (
    LOG_DEBUG,
    LOG_TRACE,
    stderr_to_str,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from vmbackup_main.configuration import (
        Params,
    )

# mountpoint property values that don't denote a directory
UNMOUNTED: tuple[str, ...] = ("", "-", "none", "legacy")


def get_mountpoint(p: Params, dataset: str) -> str | None:
    """Returns the mountpoint directory of the local dataset, or None if it has none."""
    cmd: list[str] = [p.zfs_program, "get", "-H", "-o", "value", "mountpoint", dataset]
    mountpoint: str = (try_ssh_command(p, p.src, LOG_TRACE, cmd=cmd) or "").strip()
    return None if mountpoint in UNMOUNTED else mountpoint


def copy_manifests(p: Params) -> bool:
    """Best-effort rsync of --manifest-src into the dataset's mountpoint; Returns True on success (or dry-run)."""
    log = p.log
    if not p.manifest_src:
        log.debug("Skipping manifest copy as --manifest-src is empty")
        return False
    if not p.is_program_available("rsync"):
        log.warning("Skipping manifest copy as %s is not available on local host", p.rsync_program)
        return False
    try:
        mountpoint: str | None = get_mountpoint(p, p.src.dataset)
        if mountpoint is None:
            log.warning("Skipping manifest copy as dataset %s has no mountpoint", p.src.dataset)
            return False
        log.info(p.dry("Copying manifests: %s --> %s"), p.manifest_src, mountpoint)
        cmd: list[str] = [p.rsync_program, "-av", "--copy-links", "--delete", p.manifest_src, mountpoint.rstrip("/") + "/"]
        run_ssh_command(p, p.src, LOG_DEBUG, is_dry=p.dry_run, print_stdout=p.debug > 0, cmd=cmd)
        return True
    except (subprocess.CalledProcessError, FileNotFoundError, PermissionError, UnicodeDecodeError) as e:
        stderr: str = stderr_to_str(getattr(e, "stderr", None) or "").rstrip()
        log.warning("Cannot copy manifests from %s; Continuing anyway: %s", p.manifest_src, stderr or e)
        return False
