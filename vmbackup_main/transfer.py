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
"""Executes a replication plan: destroys divergent destination snapshots, then streams the new snapshot via
'zfs send | pv | mbuffer | ssh zfs receive', and finally renames it on the destination if it is an archive.

Example pipeline for an incremental send with progress bar and rate limit::

    zfs send -c -i tank/test#2024-09-01-000000 tank/test@2024-09-02-000000 | pv -s 1048576 | mbuffer -q -s 1M -m 2G -r 50M \
        | ssh -oBatchMode=yes -oServerAliveInterval=0 -x -T root@nfs8 'zfs receive -F -u tank/backup/pve1'

pv and mbuffer are optional stages; if they aren't installed on the local host (or are disabled via '-') the pipeline omits
them, without any 'cat' placeholder stage.
"""

from __future__ import (
    annotations,
)
import enum
import shlex
import subprocess
from collections.abc import (
    Callable,
)
from typing import (
    TYPE_CHECKING,
    NamedTuple,
)

from vmbackup_main.connection import (
    run_shell_pipeline,
)
from vmbackup_main.markers import (
    DurableReference,
    Marker,
    StorageBackend,
)
from vmbackup_main.planner import (
    ReplicationPlan,
)
from vmbackup_main.utils import (
    LOG_DEBUG,
    VmBackupError,
    human_readable_bytes,
    stderr_to_str,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from vmbackup_main.configuration import (
        Params,
        Target,
    )

# constants:
MBUFFER_BLOCK_SIZE: str = "1M"


class ArchiveRenameError(VmBackupError):
    """The snapshot arrived on the archive, but could not be renamed to its archive label."""


class RunState(enum.Enum):
    """Stages of a single replication; later stages are only reached if all prior stages succeeded."""

    IDLE = "Idle"
    SNAPSHOT_CREATED = "SnapshotCreated"
    PLAN_COMPUTED = "PlanComputed"
    REMOTE_CLEANED = "RemoteCleaned"
    TRANSFERRED = "Transferred"
    RENAMED = "Renamed"
    DONE = "Done"


#############################################################################
class TransferSpec(NamedTuple):
    """Everything needed to replicate one snapshot to one destination."""

    source: Marker
    base: DurableReference | None  # None means full send
    discard: tuple[Marker, ...]
    target: Target
    archive_label: str | None = None

    @property
    def is_incremental(self) -> bool:
        return self.base is not None

    @property
    def ensure_parent_path(self) -> bool:
        """A full send creates the destination dataset, but its ancestors must already exist."""
        return self.base is None


def plan_transfer(source: Marker, plan: ReplicationPlan, target: Target, archive_label: str | None = None) -> TransferSpec:
    """Combines the new snapshot with the reconciliation result for the given destination."""
    return TransferSpec(source, plan.base, plan.discard, target, archive_label or None)


#############################################################################
class TransferExecutor:
    """Runs TransferSpecs from the local backend to the destination backend."""

    def __init__(
        self,
        p: Params,
        local: StorageBackend,
        remote: StorageBackend,
        on_state: Callable[[RunState], None] | None = None,
    ) -> None:
        self.params: Params = p
        self.local: StorageBackend = local
        self.remote: StorageBackend = remote
        self.on_state: Callable[[RunState], None] | None = on_state

    def _transition(self, state: RunState) -> None:
        self.params.log.log(LOG_DEBUG, "Replication state: %s", state.value)
        if self.on_state is not None:
            self.on_state(state)

    def execute(self, spec: TransferSpec) -> None:
        """Destroys divergent destination snapshots, sends, and renames; Raises on the first fatal error."""
        p, log = self.params, self.params.log
        dst_dataset: str = spec.target.dataset
        if spec.discard:
            self.discard_remote_markers(spec.discard)
            self._transition(RunState.REMOTE_CLEANED)

        if spec.is_incremental:
            assert spec.base is not None
            log.info(p.dry("Incremental send from %s to %s --> %s"), spec.base.name, spec.source.name, spec.target)
        else:
            log.info(p.dry("Full send of %s --> %s"), spec.source.name, spec.target)
            self.remote.create_parent_datasets(dst_dataset)

        pipeline: str = self.build_pipeline(spec)
        run_shell_pipeline(p, pipeline, LOG_DEBUG, is_dry=p.dry_run)
        self._transition(RunState.TRANSFERRED)

        if spec.archive_label:
            self.rename_archive(spec)
            self._transition(RunState.RENAMED)
        self._transition(RunState.DONE)

    def discard_remote_markers(self, discard: tuple[Marker, ...]) -> None:
        """Best-effort: a snapshot that can't be destroyed is logged and skipped; 'zfs receive -F' gets the final say."""
        log = self.params.log
        for marker in discard:
            log.info(self.params.dry("Removing remote snapshot: %s"), marker.name)
            try:
                self.remote.destroy_marker(marker.name, recursive=True)
            except (subprocess.CalledProcessError, UnicodeDecodeError) as e:
                stderr: str = stderr_to_str(getattr(e, "stderr", None) or "").rstrip()
                log.warning("Cannot remove remote snapshot %s; Continuing anyway: %s", marker.name, stderr or e)

    def build_pipeline(self, spec: TransferSpec) -> str:
        """Returns the shell pipeline that sends the snapshot and applies it on the destination."""
        p = self.params
        base: str | None = spec.base.name if spec.base is not None else None
        stages: list[str] = [shlex.join(self.local.send_stream_command(spec.source.name, base))]
        if p.interactive and p.is_program_available("pv"):
            size: int = self.local.estimate_send_size(spec.source.name, base)
            if size > 0:
                p.log.info("Estimated send size: %s", human_readable_bytes(size))
            stages.append(shlex.join([p.pv_program] + (["-s", str(size)] if size > 0 else [])))
        if p.is_program_available("mbuffer"):
            mbuffer_cmd: list[str] = [p.mbuffer_program, "-q", "-s", MBUFFER_BLOCK_SIZE, "-m", p.mbuffer_mem]
            mbuffer_cmd += ["-r", p.mbuffer_rate] if p.mbuffer_rate else []
            stages.append(shlex.join(mbuffer_cmd))
        stages.append(self.remote.apply_stream_command(spec.target.dataset))
        return " | ".join(stages)

    def rename_archive(self, spec: TransferSpec) -> None:
        """Renames the just received snapshot to its archive label, e.g. tank/archive/pve1@2024-Sep."""
        dst_dataset: str = spec.target.dataset
        old_name: str = f"{dst_dataset}@{spec.source.label}"
        new_name: str = f"{dst_dataset}@{spec.archive_label}"
        self.params.log.info(self.params.dry("Renaming archive snapshot: %s --> %s"), old_name, new_name)
        try:
            self.remote.rename_marker(old_name, new_name)
        except subprocess.CalledProcessError as e:
            cause: str = stderr_to_str(e.stderr or "").rstrip() or str(e)
            raise ArchiveRenameError(f"Cannot rename {old_name} to {new_name}: {cause}") from e
