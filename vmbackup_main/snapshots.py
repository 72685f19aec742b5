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
"""Creation of new local snapshots (each paired with a bookmark of the same name) and count-based rotation of old ones."""

from __future__ import (
    annotations,
)
import subprocess
from logging import (
    Logger,
)

from vmbackup_main.markers import (
    Marker,
    MarkerAlreadyExistsError,
    MarkerStore,
    StorageBackend,
)
from vmbackup_main.utils import (
    VmBackupError,
    dry,
    validate_label,
)

# constants:
DRY_RUN_GUID: str = "0"  # placeholder; the snapshot does not exist in dry-run mode


class InconsistentMarkerError(VmBackupError):
    """The snapshot was created but its bookmark was not; future incrementals could not use it as a base."""


#############################################################################
class SnapshotManager:
    """Creates and rotates the snapshots of local datasets."""

    def __init__(self, backend: StorageBackend, log: Logger) -> None:
        self.backend: StorageBackend = backend
        self.log: Logger = log

    def create_marker(self, dataset: str, label: str) -> Marker:
        """Creates snapshot ``dataset@label`` plus bookmark ``dataset#label`` and returns the new snapshot."""
        validate_label(label, "snapshot label")
        backend = self.backend
        store = MarkerStore(backend, dataset)
        if store.find_marker(label) is not None:
            raise MarkerAlreadyExistsError(f"Snapshot already exists: {dataset}@{label}")
        self.log.info(dry("Creating snapshot: %s", backend.dry_run), f"{dataset}@{label}")
        backend.create_marker(dataset, label)
        try:
            backend.create_reference(dataset, label)
        except subprocess.CalledProcessError as e:
            msg = f"Cannot create bookmark {dataset}#{label} for new snapshot {dataset}@{label}"
            raise InconsistentMarkerError(msg) from e
        if backend.dry_run:
            return Marker(dataset, label, DRY_RUN_GUID, 0)
        marker: Marker | None = store.find_marker(label)
        if marker is None:
            raise InconsistentMarkerError(f"Newly created snapshot is missing: {dataset}@{label}")
        return marker

    def rotate(self, dataset: str, keep_count: int, pending: Marker | None = None) -> list[Marker]:
        """Destroys all but the ``keep_count`` most recent snapshots of the dataset, and returns the destroyed ones (oldest
        first); Bookmarks are never destroyed.

        In dry-run mode the snapshot just returned by create_marker() does not exist; Passing it as ``pending`` counts it
        anyway, so that the dry run logs the same destroy commands as the real run would execute.
        """
        if keep_count < 1:
            raise ValueError(f"keep_count must be at least 1, but got: {keep_count}")
        markers: list[Marker] = MarkerStore(self.backend, dataset).markers()
        if self.backend.dry_run and pending is not None and all(m.label != pending.label for m in markers):
            markers.append(pending)
        obsolete: list[Marker] = markers[0 : max(0, len(markers) - keep_count)]
        if not obsolete:
            self.log.debug("Nothing to rotate; %s has %d snapshots", dataset, len(markers))
        for marker in obsolete:
            self.log.info(dry("Rotating out snapshot: %s", self.backend.dry_run), marker.name)
            self.backend.destroy_marker(marker.name)
        return obsolete
