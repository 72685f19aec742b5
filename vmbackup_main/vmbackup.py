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
"""Entry point of the 'vm-backup' CLI; Sequences one end-to-end run of the backup & archive policy.

Each run is strictly sequential:

1. Acquire the single-instance run lock; skip the run (exit code 0) if another live instance holds it.
2. Verify that the source dataset exists.
3. Copy the VM manifests into the source dataset (best-effort).
4. Create a new snapshot plus bookmark, then rotate old local snapshots.
5. Replicate the new snapshot to the nearline backup server.
6. On the first day of the month (or with --archive), replicate the same snapshot to the archive server, and rename it there
   to the monthly archive label.

Any fatal error stops the run; in particular a failed nearline replication means no archive replication happens in that run.
The next run reconciles via GUIDs and resumes from wherever the previous run stopped.
"""

from __future__ import (
    annotations,
)
import argparse
import os
import signal
import subprocess
import sys
from collections.abc import (
    Callable,
)
from datetime import (
    datetime,
)
from logging import (
    Logger,
)
from types import (
    FrameType,
)
from typing import (
    Any,
)

import vmbackup_main.loggers
from vmbackup_main.argparse_cli import (
    argument_parser,
)
from vmbackup_main.configuration import (
    LogParams,
    Params,
    Target,
)
from vmbackup_main.detect import (
    detect_available_programs,
)
from vmbackup_main.locking import (
    RunLock,
)
from vmbackup_main.loggers import (
    get_simple_logger,
    reset_logger,
)
from vmbackup_main.manifests import (
    copy_manifests,
)
from vmbackup_main.markers import (
    Marker,
    MarkerStore,
    StorageBackend,
    make_backend,
)
from vmbackup_main.planner import (
    ReplicationPlan,
    ReplicationPlanner,
)
from vmbackup_main.snapshots import (
    SnapshotManager,
)
from vmbackup_main.transfer import (
    RunState,
    TransferExecutor,
    TransferSpec,
    plan_transfer,
)
from vmbackup_main.utils import (
    DIE_STATUS,
    LOG_TRACE,
    PROG_NAME,
    STILL_RUNNING_STATUS,
    VmBackupError,
    current_datetime,
    die,
    terminate_process_subtree,
    xfinally,
)


def main() -> None:
    """API for command line clients."""
    try:
        run_main(argument_parser().parse_args(), sys.argv)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)


def run_main(args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
    """API for Python clients; visible for testing."""
    Job().run_main(args, sys_argv, log)


#############################################################################
class Job:
    """Executes one vm-backup run."""

    def __init__(
        self,
        now_fn: Callable[[], datetime] | None = None,
        isatty: bool | None = None,
        backend_factory: Callable[[Params, Target], StorageBackend] | None = None,
    ) -> None:
        self.params: Params
        self.now_fn: Callable[[], datetime] | None = now_fn  # for testing
        self.isatty: bool | None = isatty  # for testing
        self.backend_factory: Callable[[Params, Target], StorageBackend] = backend_factory or make_backend
        self.states: list[tuple[str, RunState]] = []  # (target name, state) transitions, in order; for testing
        self.new_marker: Marker | None = None

    def run_main(self, args: argparse.Namespace, sys_argv: list[str] | None = None, log: Logger | None = None) -> None:
        """Sets up logging, acquires the run lock, and executes the run."""
        is_own_logger: bool = log is None
        try:
            log_params = LogParams(args)
            log = vmbackup_main.loggers.get_logger(log_params=log_params, args=args, log=log)
            log.info("%s", f"Log file is: {log_params.log_file}")
        except BaseException as e:
            get_simple_logger(PROG_NAME).error("Log init: %s", e, exc_info=False if isinstance(e, SystemExit) else True)
            raise

        def close_logger() -> None:
            if is_own_logger:
                reset_logger(log)

        with xfinally(close_logger):  # runs close_logger() on exit, without masking exception raised in body of `with` block

            def log_error_on_exit(error: Any, status_code: Any, exc_info: bool = False) -> None:
                log.error("%s%s", f"Exiting {PROG_NAME} with status code {status_code}. Cause: ", error, exc_info=exc_info)

            try:
                log.info("CLI arguments: %s %s", " ".join(sys_argv or []), f"[euid: {os.geteuid()}]")
                log.log(LOG_TRACE, "Parsed CLI arguments: %s", args)
                self.params = p = Params(args, sys_argv or [], log_params, log, self.isatty)
                lock = RunLock(p.lock_file, log)
                if not lock.acquire():
                    msg = "Exiting as a previous run is still running without completion yet per lock file "
                    die(msg + p.lock_file, STILL_RUNNING_STATUS)
                with xfinally(lock.release):  # removes the lock file on every exit path
                    # On CTRL-C and SIGTERM, send signal to descendant processes to also terminate descendants
                    old_term_handler = signal.signal(signal.SIGTERM, self.terminate)
                    old_int_handler = signal.signal(signal.SIGINT, self.terminate)
                    try:
                        self.run_tasks()
                    except BaseException:
                        terminate_process_subtree(except_current_process=True)
                        raise
                    finally:
                        signal.signal(signal.SIGTERM, old_term_handler)  # restore original signal handler
                        signal.signal(signal.SIGINT, old_int_handler)  # restore original signal handler
            except subprocess.CalledProcessError as e:
                log_error_on_exit(e, e.returncode)
                raise
            except SystemExit as e:
                if e.code == STILL_RUNNING_STATUS:
                    log.info("%s", e)
                else:
                    log_error_on_exit(e, e.code)
                raise
            except (VmBackupError, UnicodeDecodeError) as e:
                log_error_on_exit(e, DIE_STATUS)
                raise SystemExit(DIE_STATUS) from e
            except BaseException as e:
                log_error_on_exit(e, DIE_STATUS, exc_info=True)
                raise SystemExit(DIE_STATUS) from e
            finally:
                log.info("%s", f"Log file was: {log_params.log_file}")
            log.info("Success. Goodbye!")
            sys.stderr.flush()

    def terminate(self, signum: int, frame: FrameType | None) -> None:
        """Signal handler; Terminates the running pipeline and then unwinds this process so that cleanup runs."""
        terminate_process_subtree(except_current_process=True)
        die(f"Terminated by signal {signal.Signals(signum).name}", 128 + signum)

    def run_tasks(self) -> None:
        """Executes the snapshot, backup and archive steps of one run."""
        p, log = self.params, self.params.log
        now: datetime = current_datetime(self.now_fn)
        src: Target = p.src
        self._transition(src, RunState.IDLE)
        detect_available_programs(p)
        local: StorageBackend = self.backend_factory(p, src)
        if not local.dataset_exists(src.dataset):
            die(f"Source dataset does not exist: {src.dataset}")
        copy_manifests(p)

        snapshots = SnapshotManager(local, log)
        self.new_marker = marker = snapshots.create_marker(src.dataset, now.strftime(p.snapshot_timeformat))
        self._transition(src, RunState.SNAPSHOT_CREATED)
        snapshots.rotate(src.dataset, p.keep_local, pending=marker)

        self.replicate(local, marker, p.backup)  # nearline backup (every run)
        if now.day == 1 or p.force_archive:  # offsite archive (monthly)
            self.replicate(local, marker, p.archive, archive_label=now.strftime(p.archive_timeformat))
        else:
            log.info("Skipping archive as today is not the first day of the month and --archive is not specified")
        log.info(p.dry("Backup & archive workflow completed."))

    def replicate(self, local: StorageBackend, marker: Marker, target: Target, archive_label: str | None = None) -> None:
        """Reconciles, cleans up and transfers the given local snapshot to the given destination."""
        p = self.params
        p.log.info(p.dry("Replicating %s --> %s"), marker.name, target)
        remote: StorageBackend = self.backend_factory(p, target)
        planner = ReplicationPlanner(MarkerStore(local, p.src.dataset), p.log)
        plan: ReplicationPlan = planner.plan(MarkerStore(remote, target.dataset))
        self._transition(target, RunState.PLAN_COMPUTED)
        spec: TransferSpec = plan_transfer(marker, plan, target, archive_label)
        TransferExecutor(p, local, remote, on_state=lambda state: self._transition(target, state)).execute(spec)

    def _transition(self, target: Target, state: RunState) -> None:
        self.states.append((target.name, state))


#############################################################################
if __name__ == "__main__":
    main()
