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
"""Documentation, definition of input data and ArgumentParser used by the 'vm-backup' CLI."""

from __future__ import (
    annotations,
)
import argparse
import platform
from typing import (
    Final,
)

from vmbackup_main.utils import (
    ENV_VAR_PREFIX,
    PROG_NAME,
)

# constants:
__version__: Final[str] = "1.0.0"
CLI_NAME: Final[str] = "vm-backup"
LOG_DIR_DEFAULT: Final[str] = PROG_NAME + "-logs"
LOCK_FILE_DEFAULT: Final[str] = "/tmp/vm-backup.lock"
DATASET_DEFAULT: Final[str] = "tank/test"
MANIFEST_SRC_DEFAULT: Final[str] = "/etc/pve/qemu-server"
SNAPSHOT_TIMEFORMAT_DEFAULT: Final[str] = "%Y-%m-%d-%H%M%S"
ARCHIVE_TIMEFORMAT_DEFAULT: Final[str] = "%Y-%b"  # one archive per month, e.g. 2024-Sep
KEEP_LOCAL_DEFAULT: Final[int] = 5
INTERACTIVE_CHOICES: Final[tuple[str, str, str]] = ("auto", "yes", "no")


def argument_parser() -> argparse.ArgumentParser:
    """Returns the CLI parser used by vm-backup."""
    hostname: str = platform.node() or "localhost"

    # fmt: off
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog=CLI_NAME,
        allow_abbrev=False,
        formatter_class=argparse.RawTextHelpFormatter,
        description=f"""
*{CLI_NAME} implements a backup & archive policy for a Proxmox host whose VM disks live on a local ZFS dataset.*

Each run copies the VM configuration manifests into the dataset, creates a new snapshot plus a ZFS bookmark of the same
name, prunes old local snapshots (bookmarks are kept forever), and then incrementally replicates the new snapshot via
'zfs send | mbuffer | ssh zfs receive' to a nearline backup server. On the first day of each month (or when --archive is
given) the same snapshot is also replicated to an offsite archive server, where it is renamed to a monthly label.

Replication resumes after arbitrary outages: the most recent common ancestor is found by comparing the GUIDs of the local
bookmarks against the GUIDs of the snapshots on the destination, never by snapshot names or timestamps. Destination
snapshots that are newer than that common ancestor are destroyed before the incremental send. If no common ancestor can be
proven, nothing is destroyed and a full send is performed.

Only one instance runs at a time; a run that finds another live instance skips with exit code 0.

# Examples

* Show the commands a run would execute, without executing anything:

`   {CLI_NAME} --dry-run`

* Back up another dataset, with verbose diagnostics:

`   {CLI_NAME} --debug 2 --dataset tank/vm`

* Force the monthly archive run:

`   {CLI_NAME} --archive`
""")

    parser.add_argument(
        "--dry-run", action="store_true",
        help="Do a dry run (aka 'no-op') to print what operations would happen if the command were to be executed "
             "for real (optional). Read-only listing commands are still executed so that the replication plan is "
             "computed against the real state of source and destination. Mutating commands are only logged.\n\n")
    parser.add_argument(
        "--debug", type=int, nargs="?", const=1, default=0, choices=[1, 2, 3], metavar="LEVEL",
        help="Print verbose information (optional). LEVEL 1 (the default if LEVEL is omitted) logs each executed "
             "command; LEVEL 2 additionally logs internal reconciliation state such as remote and local GUID orderings; "
             "LEVEL 3 additionally makes ssh verbose.\n\n")
    parser.add_argument(
        "--quiet", "-q", action="store_true",
        help="Suppress non-error, info, debug, and trace output.\n\n")
    parser.add_argument(
        "--archive", action="store_true",
        help="Also replicate to the archive server, regardless of the day of month (optional). Without this flag the "
             "archive run only happens on the first day of a month.\n\n")
    parser.add_argument(
        "--dataset", default=DATASET_DEFAULT, metavar="DATASET",
        help=f"Local ZFS dataset to back up (default: {DATASET_DEFAULT}).\n\n")
    parser.add_argument(
        "--keep-local", type=int, default=KEEP_LOCAL_DEFAULT, metavar="INT",
        help=f"Number of latest snapshots to keep on the local dataset (default: {KEEP_LOCAL_DEFAULT}). Must be at "
             "least 1. Bookmarks are never deleted.\n\n")
    for target, host, kind in [("backup", "nfs8", "nearline backups"), ("archive", "nfs9", "offsite long-term archives")]:
        parser.add_argument(
            f"--{target}-user", default="root", metavar="USER",
            help=f"Remote user on the {target} server (default: root).\n\n")
        parser.add_argument(
            f"--{target}-host", default=host, metavar="HOST",
            help=f"Hostname of the {target} server for {kind} (default: {host}).\n\n")
        parser.add_argument(
            f"--{target}-dataset", default=f"tank/{target}/{hostname}", metavar="DATASET",
            help=f"ZFS dataset that receives the {kind} on the {target} server (default: tank/{target}/{hostname}).\n\n")
    parser.add_argument(
        "--interactive", choices=INTERACTIVE_CHOICES, default="auto",
        help="Show a progress bar via 'pv', preceded by a 'zfs send -nvP' size estimate (default: auto). 'auto' means "
             "'yes' if stdout is a terminal, and 'no' otherwise, e.g. when run from cron.\n\n")
    parser.add_argument(
        "--mbuffer-mem", default="2G", metavar="SIZE",
        help="Size of the memory buffer that 'mbuffer -m' uses to smooth out the data flow between 'zfs send' and the "
             "network (default: 2G).\n\n")
    parser.add_argument(
        "--mbuffer-rate", default="", metavar="RATE",
        help="Maximum throughput that 'mbuffer -r' enforces, e.g. 50M (default: unlimited).\n\n")
    parser.add_argument(
        "--snapshot-timeformat", default=SNAPSHOT_TIMEFORMAT_DEFAULT, metavar="STRFTIME_SPEC",
        help="strftime format of the label of each new local snapshot and bookmark (default: "
             f"{SNAPSHOT_TIMEFORMAT_DEFAULT.replace('%', '%%')}). Labels must not collide; use a format with at least "
             "second resolution.\n\n")
    parser.add_argument(
        "--archive-timeformat", default=ARCHIVE_TIMEFORMAT_DEFAULT, metavar="STRFTIME_SPEC",
        help="strftime format of the label that the snapshot is renamed to on the archive server (default: "
             f"{ARCHIVE_TIMEFORMAT_DEFAULT.replace('%', '%%')}). Use %%Y-%%m-%%d for daily archives.\n\n")
    parser.add_argument(
        "--manifest-src", default=MANIFEST_SRC_DEFAULT, metavar="DIRECTORY",
        help=f"Directory of VM configuration manifests that is copied via 'rsync' into the mountpoint of the local "
             f"dataset before the snapshot is taken (default: {MANIFEST_SRC_DEFAULT}). An empty string disables this "
             "step.\n\n")
    parser.add_argument(
        "--lock-file", default=LOCK_FILE_DEFAULT, metavar="FILE",
        help=f"Path of the single-instance lock file that holds the PID of the running instance (default: "
             f"{LOCK_FILE_DEFAULT}).\n\n")
    parser.add_argument(
        "--log-dir", type=str, metavar="DIR",
        help=f"Path to the log output directory on local host (optional). Default: $HOME/{LOG_DIR_DEFAULT}. The logger "
             "that is used by default writes log files there, in addition to the console. The basename of --log-dir "
             f"must contain the substring '{LOG_DIR_DEFAULT}' as this helps prevent accidents.\n\n")
    parser.add_argument(
        "--log-syslog-address", default=None, action="store", metavar="STRING",
        help="Host:port of the syslog machine to send messages to (e.g. 'foo.example.com:514' or '127.0.0.1:514'), or "
             "the file system path to the syslog socket file on localhost (e.g. '/dev/log'). The default is no "
             "address, i.e. do not log anything to syslog by default.\n\n")
    parser.add_argument(
        "--log-syslog-socktype", choices=["UDP", "TCP"], default="UDP",
        help="The socket type to use to connect if no local socket file system path is used (default: UDP).\n\n")
    parser.add_argument(
        "--log-syslog-facility", type=int, choices=range(8), default=1, metavar="INT",
        help="The local facility aka category that identifies msg sources in syslog (default: 1, min=0, max=7).\n\n")
    parser.add_argument(
        "--log-syslog-prefix", default=PROG_NAME, action="store", metavar="STRING",
        help=f"The name to prepend to each message that is sent to syslog (default: {PROG_NAME}).\n\n")
    parser.add_argument(
        "--version", action="version", version=f"{CLI_NAME}-{__version__}",
        help="Display version information and exit.\n\n")
    parser.epilog = (
        f"Program names such as zfs, ssh, pv, mbuffer and rsync can be overridden via environment variables, e.g. "
        f"{ENV_VAR_PREFIX}zfs_program=/usr/sbin/zfs. Setting a program name to '-' disables the corresponding optional "
        "pipeline stage (pv or mbuffer)."
    )
    # fmt: on
    return parser
