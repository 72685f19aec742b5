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
"""Read and write access to the point-in-time history of a ZFS dataset, i.e. its snapshots ("markers") and bookmarks
("durable references").

Any two snapshots or bookmarks are "the same point in time" iff their ZFS GUIDs are equal. A snapshot changes its
transaction group but retains its GUID on 'zfs receive' on another pool, and a bookmark always carries the GUID of the
snapshot it was created from, even after that snapshot has been destroyed. This is what makes reconciliation between two
independently evolving pools possible without looking at names or timestamps.

All storage access goes through the narrow ``StorageBackend`` interface. ``LocalZfsBackend`` runs the 'zfs' CLI on the local
host and ``SshZfsBackend`` runs it on a remote host via ssh. Reconciliation and planning depend only on the interface.
"""

from __future__ import (
    annotations,
)
import shlex
import subprocess
from abc import (
    ABC,
    abstractmethod,
)
from collections.abc import (
    Iterable,
    Sequence,
)
from typing import (
    TYPE_CHECKING,
    NamedTuple,
    Protocol,
    runtime_checkable,
)

from vmbackup_main.connection import (
    run_ssh_command,
    try_ssh_command,
)
from vmbackup_main.utils import (
    LOG_DEBUG,
    LOG_TRACE,
    VmBackupError,
    stderr_to_str,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from vmbackup_main.configuration import (
        Params,
        Target,
    )


#############################################################################
class Marker(NamedTuple):
    """An immutable ZFS snapshot, named ``dataset@label``."""

    dataset: str
    label: str
    guid: str
    creation_order: int  # createtxg; total order within a pool that is consistent with creation time

    @property
    def name(self) -> str:
        return f"{self.dataset}@{self.label}"


class DurableReference(NamedTuple):
    """A ZFS bookmark, named ``dataset#label``; Takes no space and outlives the snapshot it was created from."""

    dataset: str
    label: str
    guid: str
    creation_order: int

    @property
    def name(self) -> str:
        return f"{self.dataset}#{self.label}"


#############################################################################
@runtime_checkable
class StorageBackend(Protocol):
    """Minimal storage interface required by snapshot management, reconciliation and transfer; for loose coupling."""

    dry_run: bool

    def list_markers(self, dataset: str) -> list[Marker]:
        """Returns the snapshots of the dataset sorted ascending by creation order; empty if the dataset does not exist."""

    def list_references(self, dataset: str) -> list[DurableReference]:
        """Returns the bookmarks of the dataset sorted ascending by creation order; empty if the dataset does not exist."""

    def create_marker(self, dataset: str, label: str) -> None:
        """Creates snapshot ``dataset@label``; Raises MarkerAlreadyExistsError if the label is already taken."""

    def create_reference(self, dataset: str, label: str) -> None:
        """Creates bookmark ``dataset#label`` that refers to the GUID of snapshot ``dataset@label``."""

    def destroy_marker(self, name: str, recursive: bool = False) -> None:
        """Destroys the given snapshot, with 'recursive' also the same-named snapshots of descendant datasets."""

    def rename_marker(self, old_name: str, new_name: str) -> None:
        """Renames the snapshot ``old_name`` to ``new_name``, both given as ``dataset@label``."""

    def dataset_exists(self, dataset: str) -> bool:
        """Returns True if the dataset exists."""

    def create_parent_datasets(self, dataset: str) -> None:
        """Creates all missing ancestors of the dataset (not the dataset itself), without mounting them."""

    def send_stream_command(self, snapshot: str, base: str | None) -> list[str]:
        """Returns the command that writes a full or incremental (from bookmark ``base``) replication stream to stdout."""

    def estimate_send_size(self, snapshot: str, base: str | None) -> int:
        """Returns the estimated number of bytes of the stream that ``send_stream_command()`` would produce."""

    def apply_stream_command(self, dataset: str) -> str:
        """Returns the shell command that forcibly applies a replication stream read from stdin to the dataset."""


class MarkerAlreadyExistsError(VmBackupError):
    """A snapshot with the requested label already exists on the dataset."""


#############################################################################
class ZfsCliBackend(ABC):
    """StorageBackend implementation on top of the 'zfs' CLI, executed on the given target; Subclasses decide how the
    receiving side of a replication stream is invoked."""

    def __init__(self, p: Params, target: Target) -> None:
        self.params: Params = p
        self.target: Target = target
        self.dry_run: bool = p.dry_run

    def _list(self, kind: str, dataset: str) -> list[tuple[str, str, int]]:
        """Lists (name, guid, createtxg) of the snapshots or bookmarks of the dataset, sorted ascending by
        createtxg (which is more precise than creation time); ties are broken by name to keep the order deterministic."""
        p = self.params
        cmd: list[str] = [p.zfs_program, "list", "-H", "-p", "-t", kind, "-d", "1", "-s", "createtxg", "-s", "name"]
        cmd += ["-o", "name,guid,createtxg", dataset]
        lines: str | None = try_ssh_command(p, self.target, LOG_TRACE, cmd=cmd)
        results: list[tuple[str, str, int]] = []
        for line in (lines or "").splitlines():
            line = line.strip("\r")
            if not line:
                continue
            name, guid, createtxg = line.split("\t", 2)
            results.append((name, guid, int(createtxg)))
        return results

    def list_markers(self, dataset: str) -> list[Marker]:
        return [
            Marker(dataset, name[name.index("@") + 1 :], guid, createtxg)
            for name, guid, createtxg in self._list("snapshot", dataset)
        ]

    def list_references(self, dataset: str) -> list[DurableReference]:
        return [
            DurableReference(dataset, name[name.index("#") + 1 :], guid, createtxg)
            for name, guid, createtxg in self._list("bookmark", dataset)
        ]

    def create_marker(self, dataset: str, label: str) -> None:
        p = self.params
        cmd: list[str] = [p.zfs_program, "snapshot", f"{dataset}@{label}"]
        try:
            run_ssh_command(p, self.target, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd)
        except subprocess.CalledProcessError as e:
            if "dataset already exists" in stderr_to_str(e.stderr):
                raise MarkerAlreadyExistsError(f"Snapshot already exists: {dataset}@{label}") from e
            raise

    def create_reference(self, dataset: str, label: str) -> None:
        p = self.params
        cmd: list[str] = [p.zfs_program, "bookmark", f"{dataset}@{label}", f"{dataset}#{label}"]
        run_ssh_command(p, self.target, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd)

    def destroy_marker(self, name: str, recursive: bool = False) -> None:
        p = self.params
        assert "@" in name
        cmd: list[str] = [p.zfs_program, "destroy"] + (["-r"] if recursive else []) + [name]
        run_ssh_command(p, self.target, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd)

    def rename_marker(self, old_name: str, new_name: str) -> None:
        p = self.params
        cmd: list[str] = [p.zfs_program, "rename", old_name, new_name]
        run_ssh_command(p, self.target, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd)

    def dataset_exists(self, dataset: str) -> bool:
        p = self.params
        cmd: list[str] = [p.zfs_program, "list", "-H", "-o", "name", dataset]
        return try_ssh_command(p, self.target, LOG_TRACE, cmd=cmd) is not None

    def create_parent_datasets(self, dataset: str) -> None:
        # To ensure the filesystems that we create do not get mounted, we apply a separate 'zfs create -p -u' invocation for
        # each non-existing ancestor, because a single 'zfs create -p -u' applies the '-u' part only to the immediate
        # filesystem, rather than to the not-yet existing ancestors.
        p = self.params
        parent: str = ""
        for component in dataset.split("/")[0:-1]:
            parent += component
            if not self.dataset_exists(parent):
                cmd: list[str] = [p.zfs_program, "create", "-p", "-u", parent]
                try:
                    run_ssh_command(p, self.target, LOG_DEBUG, is_dry=p.dry_run, print_stdout=True, cmd=cmd)
                except subprocess.CalledProcessError as e:
                    # ignore harmless error caused by a concurrently created dataset
                    if "dataset already exists" not in stderr_to_str(e.stderr):
                        raise
            parent += "/"

    def send_stream_command(self, snapshot: str, base: str | None) -> list[str]:
        # -c sends compressed blocks as they are stored on disk, which avoids decompress + recompress on the way
        return [self.params.zfs_program, "send", "-c"] + (["-i", base] if base else []) + [snapshot]

    def estimate_send_size(self, snapshot: str, base: str | None) -> int:
        p = self.params
        cmd: list[str] = self.send_stream_command(snapshot, base)
        cmd = cmd[0:3] + ["-n", "-v", "-P"] + cmd[3:]
        if p.dry_run:  # the new snapshot only exists for real if this isn't a dry run
            run_ssh_command(p, self.target, LOG_TRACE, is_dry=True, cmd=cmd)
            return 0
        lines: str = run_ssh_command(p, self.target, LOG_TRACE, print_stderr=False, cmd=cmd)
        size: str = lines.splitlines()[-1] if lines else ""
        if not size.startswith("size"):
            return 0  # unknown; pv then shows throughput without percent complete
        return int(size[size.index("\t") + 1 :])

    def _receive_cmd(self, dataset: str) -> list[str]:
        # -F rolls back any divergent state, so re-applying an interrupted stream converges; -u means don't mount
        return [self.params.zfs_program, "receive", "-F", "-u", dataset]

    @abstractmethod
    def apply_stream_command(self, dataset: str) -> str:
        """Returns the shell command that applies a send stream from stdin to the dataset."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.target!r})"


class LocalZfsBackend(ZfsCliBackend):
    """Runs the 'zfs' CLI directly on the local host."""

    def __init__(self, p: Params, target: Target) -> None:
        assert target.is_local
        super().__init__(p, target)

    def apply_stream_command(self, dataset: str) -> str:
        return shlex.join(self._receive_cmd(dataset))


class SshZfsBackend(ZfsCliBackend):
    """Runs the 'zfs' CLI on a remote host via ssh."""

    def __init__(self, p: Params, target: Target) -> None:
        assert not target.is_local
        super().__init__(p, target)

    def apply_stream_command(self, dataset: str) -> str:
        # ssh concatenates argv into a single remote shell string, thus quote the remote command as a single argument
        return shlex.join(self.target.local_ssh_command()) + " " + shlex.quote(shlex.join(self._receive_cmd(dataset)))


def make_backend(p: Params, target: Target) -> ZfsCliBackend:
    """Returns the StorageBackend implementation that matches the location of the target."""
    return LocalZfsBackend(p, target) if target.is_local else SshZfsBackend(p, target)


#############################################################################
class LocalReferenceIndex:
    """Maps GUID --> bookmarks with that GUID (newest first), plus the newest-first order of distinct GUIDs.

    Both orders are kept in explicit lists; lookups never depend on the iteration order of a hash table. Bookmarks with equal
    creation order (all bookmarks of the same snapshot share one createtxg) keep the order in which they were listed.
    """

    def __init__(self, references: Iterable[DurableReference]) -> None:
        self.guids_order: list[str] = []
        self._refs_by_guid: dict[str, list[DurableReference]] = {}
        # sorted() is stable, also with reverse=True, hence ties retain their listing order
        for ref in sorted(references, key=lambda r: r.creation_order, reverse=True):
            refs: list[DurableReference] | None = self._refs_by_guid.get(ref.guid)
            if refs is None:
                self._refs_by_guid[ref.guid] = [ref]
                self.guids_order.append(ref.guid)
            else:
                refs.append(ref)

    def __contains__(self, guid: object) -> bool:
        return guid in self._refs_by_guid

    def __len__(self) -> int:
        return len(self.guids_order)

    def references(self, guid: str) -> list[DurableReference]:
        """Returns all bookmarks with the given GUID, newest first."""
        return list(self._refs_by_guid.get(guid, []))

    def newest_reference(self, guid: str) -> DurableReference | None:
        refs: list[DurableReference] | None = self._refs_by_guid.get(guid)
        return refs[0] if refs else None

    def __repr__(self) -> str:
        return " ".join(f"{guid}={','.join(r.label for r in self._refs_by_guid[guid])}" for guid in self.guids_order)


#############################################################################
class MarkerStore:
    """Read-only view of the point-in-time history of one dataset on one backend."""

    def __init__(self, backend: StorageBackend, dataset: str) -> None:
        self.backend: StorageBackend = backend
        self.dataset: str = dataset

    def markers(self) -> list[Marker]:
        """Returns snapshots, oldest first."""
        return self.backend.list_markers(self.dataset)

    def remote_history(self) -> list[Marker]:
        """Returns snapshots, newest first."""
        return list(reversed(self.markers()))

    def references(self) -> list[DurableReference]:
        """Returns bookmarks, oldest first."""
        return self.backend.list_references(self.dataset)

    def reference_index(self) -> LocalReferenceIndex:
        return LocalReferenceIndex(self.references())

    def find_marker(self, label: str) -> Marker | None:
        return next((marker for marker in self.markers() if marker.label == label), None)


def guids(markers: Sequence[Marker | DurableReference]) -> list[str]:
    """Returns the GUIDs of the given snapshots or bookmarks, in the given order; for logging."""
    return [marker.guid for marker in markers]
