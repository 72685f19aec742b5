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
"""Unit tests for the sequencing of an end-to-end run, against in-memory backends."""

from __future__ import (
    annotations,
)
import logging
import os
import shutil
import subprocess
import tempfile
import unittest
from datetime import (
    datetime,
)
from typing import (
    Any,
)
from unittest.mock import (
    MagicMock,
    patch,
)

from vmbackup_main import (
    vmbackup,
)
from vmbackup_main.configuration import (
    Params,
    Target,
)
from vmbackup_main.transfer import (
    RunState,
)
from vmbackup_main.utils import (
    DIE_STATUS,
    STILL_RUNNING_STATUS,
)
from vmbackup_tests.abstract_testcase import (
    AbstractTestCase,
)
from vmbackup_tests.fake_backend import (
    FakeBackend,
)
from vmbackup_tests.tools import (
    messages,
    new_test_logger,
    suppress_output,
)

DESTINATIONS: dict[str, str] = {"backup": "tank/backup/pve1", "archive": "tank/archive/pve1"}


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestRunController,
        TestMain,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


#############################################################################
@patch("vmbackup_main.vmbackup.terminate_process_subtree")
@patch("vmbackup_main.vmbackup.copy_manifests")
@patch("vmbackup_main.vmbackup.detect_available_programs")
class TestRunController(AbstractTestCase):

    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="vmbackup_run_")
        self.lock_file = os.path.join(self.tmpdir, "vm-backup.lock")
        self.backends: dict[str, FakeBackend] = {
            "local": FakeBackend(datasets=("tank/vm",)),
            "backup": FakeBackend(),
            "archive": FakeBackend(),
        }
        self.pipelines: list[str] = []
        self.failing_destinations: set[str] = set()
        self.job: vmbackup.Job | None = None
        self.log = new_test_logger()

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def backend_factory(self, p: Params, target: Target) -> FakeBackend:
        return self.backends[target.name]

    def fake_pipeline(self, p: Params, pipeline: str, level: int, is_dry: bool) -> None:
        """Simulates the send | receive pipeline by copying the new snapshot, with its GUID, to the destination."""
        self.pipelines.append(pipeline)
        for name, dataset in DESTINATIONS.items():
            if pipeline.endswith(f"zfs receive -F -u {dataset}"):
                if name in self.failing_destinations:
                    raise subprocess.CalledProcessError(1, pipeline)
                assert self.job is not None and self.job.new_marker is not None
                self.backends[name].receive(dataset, self.job.new_marker)

    def run_job(self, now: datetime, cli_args: list[str] | None = None) -> vmbackup.Job:
        args = self.argparser_parse_args(["--lock-file", self.lock_file, "--interactive=no"] + (cli_args or []))
        self.job = job = vmbackup.Job(now_fn=lambda: now, isatty=False, backend_factory=self.backend_factory)
        with patch("vmbackup_main.transfer.run_shell_pipeline", side_effect=self.fake_pipeline):
            job.run_main(args, ["vm-backup"], self.log)
        return job

    def test_first_run_is_a_full_send_to_backup_only(self, *mocks: Any) -> None:
        job = self.run_job(datetime(2024, 9, 15, 12, 0, 0))
        self.assertEqual(["2024-09-15-120000"], self.backends["local"].labels("tank/vm"))
        self.assertEqual(["2024-09-15-120000"], [r.label for r in self.backends["local"].list_references("tank/vm")])
        self.assertEqual(["2024-09-15-120000"], self.backends["backup"].labels("tank/backup/pve1"))
        self.assertIn(("create_parents", "tank/backup/pve1"), self.backends["backup"].calls)
        self.assertEqual([], self.backends["archive"].calls)
        self.assertEqual(1, len(self.pipelines))
        self.assertTrue(self.pipelines[0].startswith("zfs send -c tank/vm@2024-09-15-120000 |"))
        self.assertEqual(
            [
                ("local", RunState.IDLE),
                ("local", RunState.SNAPSHOT_CREATED),
                ("backup", RunState.PLAN_COMPUTED),
                ("backup", RunState.TRANSFERRED),
                ("backup", RunState.DONE),
            ],
            job.states,
        )
        self.assertFalse(os.path.exists(self.lock_file))
        self.assertIn("Success. Goodbye!", messages(self.log))

    def test_second_run_is_incremental_from_bookmark(self, *mocks: Any) -> None:
        self.run_job(datetime(2024, 9, 15, 12, 0, 0))
        self.backends["local"].destroy_marker("tank/vm@2024-09-15-120000")  # bookmark remains
        self.run_job(datetime(2024, 9, 16, 12, 0, 0))
        self.assertTrue(
            self.pipelines[1].startswith("zfs send -c -i 'tank/vm#2024-09-15-120000' tank/vm@2024-09-16-120000 |")
        )
        self.assertEqual(["2024-09-15-120000", "2024-09-16-120000"], self.backends["backup"].labels("tank/backup/pve1"))

    def test_divergent_backup_snapshots_are_discarded(self, *mocks: Any) -> None:
        self.run_job(datetime(2024, 9, 15, 12, 0, 0))
        self.backends["backup"].add_marker("tank/backup/pve1", "foreign")
        self.run_job(datetime(2024, 9, 16, 12, 0, 0))
        self.assertIn(("destroy", "tank/backup/pve1@foreign", "-r"), self.backends["backup"].calls)
        self.assertNotIn("foreign", self.backends["backup"].labels("tank/backup/pve1"))

    def test_first_day_of_month_also_archives_and_renames(self, *mocks: Any) -> None:
        job = self.run_job(datetime(2024, 9, 1, 0, 0, 0))
        self.assertEqual(2, len(self.pipelines))
        self.assertTrue(self.pipelines[1].endswith("zfs receive -F -u tank/archive/pve1"))
        self.assertEqual(["2024-Sep"], self.backends["archive"].labels("tank/archive/pve1"))
        self.assertEqual(["2024-09-01-000000"], self.backends["backup"].labels("tank/backup/pve1"))
        self.assertEqual(
            [("archive", RunState.PLAN_COMPUTED), ("archive", RunState.TRANSFERRED), ("archive", RunState.RENAMED)],
            [state for state in job.states if state[0] == "archive"][0:3],
        )

    def test_next_months_archive_is_incremental_despite_rename(self, *mocks: Any) -> None:
        self.run_job(datetime(2024, 9, 1, 0, 0, 0))
        self.run_job(datetime(2024, 10, 1, 0, 0, 0))
        self.assertTrue(
            self.pipelines[3].startswith("zfs send -c -i 'tank/vm#2024-09-01-000000' tank/vm@2024-10-01-000000 |")
        )
        self.assertEqual(["2024-Sep", "2024-Oct"], self.backends["archive"].labels("tank/archive/pve1"))

    def test_archive_flag_forces_archive(self, *mocks: Any) -> None:
        self.run_job(datetime(2024, 9, 15, 12, 0, 0), ["--archive", "--archive-timeformat=%Y-%m-%d"])
        self.assertEqual(["2024-09-15"], self.backends["archive"].labels("tank/archive/pve1"))

    def test_failed_backup_prevents_archive(self, *mocks: Any) -> None:
        self.failing_destinations = {"backup"}
        with self.assertRaises(subprocess.CalledProcessError):
            self.run_job(datetime(2024, 9, 1, 0, 0, 0))
        self.assertEqual([], self.backends["archive"].calls)
        self.assertFalse(os.path.exists(self.lock_file))
        self.assertTrue(any("Exiting vmbackup with status code 1" in msg for msg in messages(self.log, logging.ERROR)))

    def test_rotation_keeps_newest(self, *mocks: Any) -> None:
        for i in range(1, 7):
            self.backends["local"].add_marker("tank/vm", f"2024-09-0{i}-000000", bookmark=True)
        self.run_job(datetime(2024, 9, 15, 12, 0, 0), ["--keep-local=5"])
        labels = self.backends["local"].labels("tank/vm")
        self.assertEqual(5, len(labels))
        self.assertEqual("2024-09-15-120000", labels[-1])
        self.assertEqual(7, len(self.backends["local"].list_references("tank/vm")))

    def test_missing_source_dataset_is_fatal(self, *mocks: Any) -> None:
        self.backends["local"].datasets.clear()
        with self.assertRaises(SystemExit) as ctx:
            self.run_job(datetime(2024, 9, 15, 12, 0, 0))
        self.assertEqual(DIE_STATUS, ctx.exception.code)
        self.assertEqual([], self.backends["local"].calls)
        self.assertEqual([], self.pipelines)

    def test_label_collision_is_fatal(self, *mocks: Any) -> None:
        self.backends["local"].add_marker("tank/vm", "2024-09-15-120000")
        with self.assertRaises(SystemExit) as ctx:
            self.run_job(datetime(2024, 9, 15, 12, 0, 0))
        self.assertEqual(DIE_STATUS, ctx.exception.code)
        self.assertEqual([], self.pipelines)

    def test_live_lock_holder_skips_run(self, *mocks: Any) -> None:
        with open(self.lock_file, "w", encoding="utf-8") as fd:
            fd.write(f"{os.getppid()}\n")  # the parent process is alive
        with self.assertRaises(SystemExit) as ctx:
            self.run_job(datetime(2024, 9, 1, 0, 0, 0))
        self.assertEqual(STILL_RUNNING_STATUS, ctx.exception.code)
        self.assertEqual([], self.backends["local"].calls)
        self.assertTrue(os.path.exists(self.lock_file))  # belongs to the other instance
        self.assertEqual([], messages(self.log, logging.ERROR))

    @patch("vmbackup_main.connection.subprocess_run")
    def test_dry_run_mutates_nothing(self, mock_run: MagicMock, *mocks: Any) -> None:
        for backend in self.backends.values():
            backend.dry_run = True
        args = self.argparser_parse_args(["--lock-file", self.lock_file, "--interactive=no", "--dry-run", "--archive"])
        self.job = job = vmbackup.Job(
            now_fn=lambda: datetime(2024, 9, 15, 12, 0, 0), isatty=False, backend_factory=self.backend_factory
        )
        job.run_main(args, ["vm-backup"], self.log)
        mock_run.assert_not_called()
        self.assertEqual([], self.backends["local"].labels("tank/vm"))
        self.assertEqual([], self.backends["backup"].labels("tank/backup/pve1"))
        self.assertEqual(2, sum(1 for msg in messages(self.log) if msg.startswith("Would execute: zfs send")))
        self.assertIn("Dry Backup & archive workflow completed.", messages(self.log))


#############################################################################
class TestMain(unittest.TestCase):

    def test_subprocess_exit_code_propagates(self) -> None:
        with patch("sys.argv", ["vm-backup"]), patch(
            "vmbackup_main.vmbackup.run_main", side_effect=subprocess.CalledProcessError(5, "zfs")
        ):
            with self.assertRaises(SystemExit) as ctx:
                vmbackup.main()
        self.assertEqual(5, ctx.exception.code)

    def test_version(self) -> None:
        with patch("sys.argv", ["vm-backup", "--version"]), suppress_output():
            with self.assertRaises(SystemExit) as ctx:
                vmbackup.main()
        self.assertEqual(0, ctx.exception.code)
