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
"""Test case base class used by most unit tests; Provides shared setup for consistent CLI argument parsing."""

from __future__ import annotations
import argparse
import logging
import os
import unittest
from unittest.mock import MagicMock

from vmbackup_main import argparse_cli, configuration, utils

# fixed destination datasets, as the defaults depend on the hostname of the machine that runs the tests
TEST_DATASET_ARGS: list[str] = [
    "--dataset=tank/vm",
    "--backup-dataset=tank/backup/pve1",
    "--archive-dataset=tank/archive/pve1",
]


#############################################################################
class AbstractTestCase(unittest.TestCase):

    @staticmethod
    def argparser_parse_args(args: list[str]) -> argparse.Namespace:
        return argparse_cli.argument_parser().parse_args(
            TEST_DATASET_ARGS
            + ["--log-dir", os.path.join(utils.get_home_directory(), argparse_cli.LOG_DIR_DEFAULT + "-test")]
            + args
        )

    @staticmethod
    def make_params(
        args: argparse.Namespace,
        log_params: configuration.LogParams | None = None,
        log: logging.Logger | None = None,
        isatty: bool = False,
    ) -> configuration.Params:
        log_params = log_params if log_params is not None else MagicMock(spec=configuration.LogParams)
        log = log if log is not None else MagicMock(spec=logging.Logger)
        return configuration.Params(args=args, sys_argv=[], log_params=log_params, log=log, isatty=isatty)
