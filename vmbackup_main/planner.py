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
"""Reconciles the local bookmarks against the snapshots of a destination dataset, and computes which bookmark to use as the
base of the next incremental send, plus which destination snapshots must be destroyed first.

The most recent common snapshot is found purely via GUIDs: The destination snapshots are walked newest to oldest, and the
first one whose GUID is also carried by a local bookmark wins. Destination snapshots newer than that match diverge from the
local history (e.g. because they were created on the destination, or stem from a previous, since rolled back, source) and
must be destroyed before 'zfs receive' accepts the incremental stream. If no match exists, nothing on the destination is
provably safe to destroy, hence nothing is destroyed and a full send is required.
"""

from __future__ import (
    annotations,
)
from collections.abc import (
    Sequence,
)
from logging import (
    Logger,
)
from typing import (
    NamedTuple,
)

from vmbackup_main.markers import (
    DurableReference,
    LocalReferenceIndex,
    Marker,
    MarkerStore,
    guids,
)
from vmbackup_main.utils import (
    LOG_TRACE,
)


class ReplicationPlan(NamedTuple):
    """Result of reconciliation; 'base' is None iff a full send is required."""

    base: DurableReference | None
    discard: tuple[Marker, ...]  # destination snapshots to destroy before the send, newest first

    @property
    def is_incremental(self) -> bool:
        return self.base is not None


FULL_PLAN: ReplicationPlan = ReplicationPlan(None, ())


def plan_replication(
    remote_history: Sequence[Marker], index: LocalReferenceIndex, log: Logger | None = None
) -> ReplicationPlan:
    """Returns the plan for the given destination snapshots (newest first) and the given local bookmarks."""
    if log is not None and log.isEnabledFor(LOG_TRACE):
        log.log(LOG_TRACE, "Remote guids (newest first): %s", guids(remote_history))
        log.log(LOG_TRACE, "Local bookmark guids (newest first): %s", index.guids_order)
    if len(remote_history) == 0:
        return FULL_PLAN
    discard: list[Marker] = []
    for marker in remote_history:
        base: DurableReference | None = index.newest_reference(marker.guid)
        if base is not None:
            if log is not None:
                log.log(LOG_TRACE, "Most recent common snapshot: %s matches local bookmark %s", marker.name, base.name)
            return ReplicationPlan(base, tuple(discard))
        discard.append(marker)
    return FULL_PLAN  # never destroy destination history that isn't provably superseded


#############################################################################
class ReplicationPlanner:
    """Plans replication from a local dataset's bookmarks to a destination dataset's snapshots."""

    def __init__(self, local: MarkerStore, log: Logger) -> None:
        self.local: MarkerStore = local
        self.log: Logger = log

    def plan(self, remote: MarkerStore) -> ReplicationPlan:
        index: LocalReferenceIndex = self.local.reference_index()
        remote_history: list[Marker] = remote.remote_history()
        plan: ReplicationPlan = plan_replication(remote_history, index, self.log)
        if plan.is_incremental:
            assert plan.base is not None
            self.log.info("Incremental base for %s: %s", remote.dataset, plan.base.name)
        elif remote_history:
            self.log.warning(
                "No common snapshot between %s and %s; Refusing to destroy any of the %d existing destination snapshots",
                self.local.dataset,
                remote.dataset,
                len(remote_history),
            )
        else:
            self.log.info("Destination %s has no snapshots; Full send required", remote.dataset)
        return plan
