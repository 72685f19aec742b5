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
"""Unit tests for snapshot creation and count-based rotation."""

from __future__ import (
    annotations,
)
import unittest

from vmbackup_main.markers import (
    MarkerAlreadyExistsError,
)
from vmbackup_main.snapshots import (
    DRY_RUN_GUID,
    InconsistentMarkerError,
    SnapshotManager,
)
from vmbackup_main.utils import (
    VmBackupError,
)
from vmbackup_tests.fake_backend import (
    FakeBackend,
)
from vmbackup_tests.tools import (
    new_test_logger,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestCreateMarker,
        TestRotate,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
class TestCreateMarker(unittest.TestCase):

    def setUp(self) -> None:
        self.backend = FakeBackend(datasets=("tank/vm",))
        self.manager = SnapshotManager(self.backend, new_test_logger())

    def test_creates_snapshot_then_bookmark_with_same_guid(self) -> None:
        marker = self.manager.create_marker("tank/vm", "2024-09-01-000000")
        self.assertEqual("tank/vm@2024-09-01-000000", marker.name)
        self.assertEqual(
            [("snapshot", "tank/vm@2024-09-01-000000"), ("bookmark", "tank/vm#2024-09-01-000000")], self.backend.calls
        )
        refs = self.backend.list_references("tank/vm")
        self.assertEqual(1, len(refs))
        self.assertEqual(marker.guid, refs[0].guid)
        self.assertEqual(marker.label, refs[0].label)

    def test_label_collision(self) -> None:
        self.manager.create_marker("tank/vm", "s1")
        with self.assertRaises(MarkerAlreadyExistsError):
            self.manager.create_marker("tank/vm", "s1")
        self.assertEqual(1, len(self.backend.list_markers("tank/vm")))
        self.assertEqual(1, len(self.backend.list_references("tank/vm")))

    def test_bookmark_failure_is_fatal(self) -> None:
        self.backend.fail_reference = True
        with self.assertRaises(InconsistentMarkerError) as ctx:
            self.manager.create_marker("tank/vm", "s1")
        self.assertIsInstance(ctx.exception, VmBackupError)
        self.assertEqual(["s1"], self.backend.labels("tank/vm"))  # snapshot exists, but no bookmark
        self.assertEqual([], self.backend.list_references("tank/vm"))

    def test_invalid_label(self) -> None:
        with self.assertRaises(SystemExit):
            self.manager.create_marker("tank/vm", "2024 09 01")
        self.assertEqual([], self.backend.calls)

    def test_dry_run_creates_nothing(self) -> None:
        backend = FakeBackend(dry_run=True, datasets=("tank/vm",))
        marker = SnapshotManager(backend, new_test_logger()).create_marker("tank/vm", "s1")
        self.assertEqual(DRY_RUN_GUID, marker.guid)
        self.assertEqual("tank/vm@s1", marker.name)
        self.assertEqual([], backend.list_markers("tank/vm"))
        self.assertEqual([], backend.list_references("tank/vm"))


#############################################################################
class TestRotate(unittest.TestCase):

    def setUp(self) -> None:
        self.backend = FakeBackend()
        self.manager = SnapshotManager(self.backend, new_test_logger())
        for i in range(1, 8):
            self.backend.add_marker("tank/vm", f"s{i}", bookmark=True)

    def test_keeps_newest_and_never_touches_bookmarks(self) -> None:
        destroyed = self.manager.rotate("tank/vm", 5)
        self.assertEqual(["s1", "s2"], [m.label for m in destroyed])
        self.assertEqual(["s3", "s4", "s5", "s6", "s7"], self.backend.labels("tank/vm"))
        self.assertEqual(7, len(self.backend.list_references("tank/vm")))
        self.assertEqual([("destroy", "tank/vm@s1"), ("destroy", "tank/vm@s2")], self.backend.calls)

    def test_idempotent(self) -> None:
        self.manager.rotate("tank/vm", 5)
        self.backend.calls.clear()
        self.assertEqual([], self.manager.rotate("tank/vm", 5))
        self.assertEqual([], self.backend.calls)

    def test_keep_one_retains_most_recent(self) -> None:
        self.manager.rotate("tank/vm", 1)
        self.assertEqual(["s7"], self.backend.labels("tank/vm"))

    def test_fewer_snapshots_than_keep_count(self) -> None:
        self.assertEqual([], self.manager.rotate("tank/vm", 10))
        self.assertEqual(7, len(self.backend.labels("tank/vm")))

    def test_rotation_follows_creation_order_not_label_order(self) -> None:
        backend = FakeBackend()
        backend.add_marker("tank/vm", "zzz")
        backend.add_marker("tank/vm", "aaa")
        SnapshotManager(backend, new_test_logger()).rotate("tank/vm", 1)
        self.assertEqual(["aaa"], backend.labels("tank/vm"))

    def test_keep_count_must_be_positive(self) -> None:
        with self.assertRaises(ValueError):
            self.manager.rotate("tank/vm", 0)
        self.assertEqual(7, len(self.backend.labels("tank/vm")))

    def test_dry_run_counts_pending_snapshot(self) -> None:
        real = FakeBackend(datasets=("tank/vm",))
        dry_backend = FakeBackend(dry_run=True, datasets=("tank/vm",))
        for backend in (real, dry_backend):
            for i in range(1, 6):
                backend.add_marker("tank/vm", f"s{i}", bookmark=True)
            manager = SnapshotManager(backend, new_test_logger())
            marker = manager.create_marker("tank/vm", "s6")
            backend.calls.clear()
            manager.rotate("tank/vm", 5, pending=marker)
        self.assertEqual([("destroy", "tank/vm@s1")], real.calls)
        self.assertEqual(real.calls, dry_backend.calls)
        self.assertEqual(5, len(dry_backend.labels("tank/vm")))
