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
"""In-memory StorageBackend for unit tests; Mimics the 'zfs' CLI semantics that matter for snapshots, bookmarks and GUIDs."""

from __future__ import (
    annotations,
)
import itertools
import subprocess

from vmbackup_main.markers import (
    DurableReference,
    Marker,
    MarkerAlreadyExistsError,
)

_GUIDS = itertools.count(1000)


def _fail(cmd: str, stderr: str) -> subprocess.CalledProcessError:
    return subprocess.CalledProcessError(returncode=1, cmd=cmd, output="", stderr=stderr)


#############################################################################
class FakeBackend:
    """A pool of datasets with snapshots and bookmarks; ``calls`` records each mutating operation in order."""

    def __init__(self, dry_run: bool = False, datasets: tuple[str, ...] = ()) -> None:
        self.dry_run: bool = dry_run
        self.datasets: set[str] = set(datasets)
        self.snapshots: dict[str, list[Marker]] = {}
        self.bookmarks: dict[str, list[DurableReference]] = {}
        self.calls: list[tuple[str, ...]] = []
        self.txg: int = 100
        self.send_size: int = 4096
        self.fail_destroy: set[str] = set()
        self.fail_rename: bool = False
        self.fail_reference: bool = False

    # setup helpers:
    def add_marker(self, dataset: str, label: str, guid: str | None = None, bookmark: bool = False) -> Marker:
        self.datasets.add(dataset)
        self.txg += 1
        marker = Marker(dataset, label, guid or f"g{next(_GUIDS)}", self.txg)
        self.snapshots.setdefault(dataset, []).append(marker)
        if bookmark:
            self.add_reference(dataset, label, marker.guid, self.txg)
        return marker

    def add_reference(self, dataset: str, label: str, guid: str, creation_order: int | None = None) -> DurableReference:
        self.datasets.add(dataset)
        if creation_order is None:
            self.txg += 1
            creation_order = self.txg
        ref = DurableReference(dataset, label, guid, creation_order)
        self.bookmarks.setdefault(dataset, []).append(ref)
        return ref

    def labels(self, dataset: str) -> list[str]:
        return [marker.label for marker in self.list_markers(dataset)]

    def receive(self, dataset: str, marker: Marker) -> Marker:
        """Simulates 'zfs receive' of the given snapshot; the GUID is retained, the creation order is not."""
        return self.add_marker(dataset, marker.label, marker.guid)

    # StorageBackend:
    def list_markers(self, dataset: str) -> list[Marker]:
        return sorted(self.snapshots.get(dataset, []), key=lambda m: m.creation_order)

    def list_references(self, dataset: str) -> list[DurableReference]:
        return sorted(self.bookmarks.get(dataset, []), key=lambda r: r.creation_order)

    def create_marker(self, dataset: str, label: str) -> None:
        if any(marker.label == label for marker in self.snapshots.get(dataset, [])):
            raise MarkerAlreadyExistsError(f"Snapshot already exists: {dataset}@{label}")
        self.calls.append(("snapshot", f"{dataset}@{label}"))
        if not self.dry_run:
            self.add_marker(dataset, label)

    def create_reference(self, dataset: str, label: str) -> None:
        self.calls.append(("bookmark", f"{dataset}#{label}"))
        if self.fail_reference:
            raise _fail("zfs bookmark", f"cannot create bookmark '{dataset}#{label}': out of space")
        if self.dry_run:
            return
        marker = next(m for m in self.snapshots.get(dataset, []) if m.label == label)
        self.add_reference(dataset, label, marker.guid, marker.creation_order)

    def destroy_marker(self, name: str, recursive: bool = False) -> None:
        self.calls.append(("destroy", name) + (("-r",) if recursive else ()))
        if name in self.fail_destroy:
            raise _fail("zfs destroy", f"cannot destroy snapshot {name}: dataset is busy")
        if self.dry_run:
            return
        dataset, label = name.split("@", 1)
        self.snapshots[dataset] = [m for m in self.snapshots.get(dataset, []) if m.label != label]

    def rename_marker(self, old_name: str, new_name: str) -> None:
        self.calls.append(("rename", old_name, new_name))
        dataset, old_label = old_name.split("@", 1)
        new_label = new_name.split("@", 1)[1]
        if self.fail_rename or any(m.label == new_label for m in self.snapshots.get(dataset, [])):
            raise _fail("zfs rename", f"cannot rename to '{new_name}': dataset already exists")
        if self.dry_run:
            return
        self.snapshots[dataset] = [
            m._replace(label=new_label) if m.label == old_label else m for m in self.snapshots.get(dataset, [])
        ]

    def dataset_exists(self, dataset: str) -> bool:
        return dataset in self.datasets

    def create_parent_datasets(self, dataset: str) -> None:
        self.calls.append(("create_parents", dataset))

    def send_stream_command(self, snapshot: str, base: str | None) -> list[str]:
        return ["zfs", "send", "-c"] + (["-i", base] if base else []) + [snapshot]

    def estimate_send_size(self, snapshot: str, base: str | None) -> int:
        self.calls.append(("estimate", snapshot))
        return self.send_size

    def apply_stream_command(self, dataset: str) -> str:
        return f"zfs receive -F -u {dataset}"
