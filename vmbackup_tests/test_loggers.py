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
"""Unit tests for the logging setup."""

from __future__ import (
    annotations,
)
import logging
import os
import shutil
import socket
import sys
import tempfile
import unittest
from unittest.mock import (
    patch,
)

from vmbackup_main import (
    argparse_cli,
)
from vmbackup_main.configuration import (
    LogParams,
)
from vmbackup_main.loggers import (
    _get_syslog_address,
    get_default_log_formatter,
    get_logger,
    get_simple_logger,
    reset_logger,
)
from vmbackup_main.utils import (
    LOG_STDOUT,
    LOG_TRACE,
)
from vmbackup_tests.abstract_testcase import (
    AbstractTestCase,
)


#############################################################################
def suite() -> unittest.TestSuite:
    test_cases = [
        TestFormatter,
        TestGetLogger,
        TestSyslogAddress,
    ]
    return unittest.TestSuite(unittest.TestLoader().loadTestsFromTestCase(test_case) for test_case in test_cases)


def make_record(level: int, msg: str, *args: object) -> logging.LogRecord:
    return logging.LogRecord("vmbackup", level, __file__, 1, msg, args, None)


#############################################################################
class TestFormatter(unittest.TestCase):

    def test_prefixes_timestamp_and_level(self) -> None:
        formatter = get_default_log_formatter()
        text = formatter.format(make_record(logging.INFO, "Creating snapshot: %s", "tank/vm@s1"))
        self.assertRegex(text, r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2} \[I\] Creating snapshot: +tank/vm@s1$")
        text = formatter.format(make_record(logging.ERROR, "boom"))
        self.assertIn("[E] ERROR: boom", text)
        text = formatter.format(make_record(LOG_TRACE, "guids"))
        self.assertIn("[T] guids", text)

    def test_stdout_is_emitted_as_is(self) -> None:
        self.assertEqual("raw output", get_default_log_formatter().format(make_record(LOG_STDOUT, "raw output")))

    def test_exception_is_appended_without_mutating_record(self) -> None:
        try:
            raise ValueError("bad")
        except ValueError:
            record = logging.LogRecord("vmbackup", logging.ERROR, __file__, 1, "failed: %s", ("x",), sys.exc_info())
        text = get_default_log_formatter().format(record)
        self.assertIn("[E] ERROR: failed:", text)
        self.assertTrue(text.endswith("ValueError: bad"))
        self.assertEqual("failed: %s", record.msg)
        self.assertEqual(text, get_default_log_formatter().format(record))

    def test_syslog_prefix(self) -> None:
        text = get_default_log_formatter(prefix="vmbackup ").format(make_record(logging.INFO, "x"))
        self.assertTrue(text.startswith("vmbackup "))


#############################################################################
class TestGetLogger(AbstractTestCase):

    def setUp(self) -> None:
        self.tmpdir = tempfile.mkdtemp(prefix="vmbackup_loggers_")
        self.log_dir = os.path.join(self.tmpdir, argparse_cli.LOG_DIR_DEFAULT)

    def tearDown(self) -> None:
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_default_logger_writes_log_file(self) -> None:
        args = self.argparser_parse_args(["--log-dir", self.log_dir])
        log_params = LogParams(args)
        log = get_logger(log_params, args)
        try:
            self.assertFalse(log.propagate)
            self.assertEqual(2, len(log.handlers))
            log.info("hello %s", "world")
        finally:
            reset_logger(log)
        self.assertEqual([], log.handlers)
        with open(log_params.log_file, encoding="utf-8") as fd:
            self.assertRegex(fd.read(), r"\[I\] hello +world")

    def test_quiet_suppresses_info(self) -> None:
        args = self.argparser_parse_args(["--log-dir", self.log_dir, "--quiet"])
        log_params = LogParams(args)
        log = get_logger(log_params, args)
        try:
            self.assertFalse(log.isEnabledFor(logging.INFO))
            self.assertTrue(log.isEnabledFor(logging.ERROR))
        finally:
            reset_logger(log)

    def test_third_party_logger_is_used_as_is(self) -> None:
        args = self.argparser_parse_args(["--log-dir", self.log_dir])
        log = logging.Logger("custom")  # noqa: LOG001
        self.assertIs(log, get_logger(LogParams(args), args, log=log))

    def test_syslog_handler(self) -> None:
        args = self.argparser_parse_args(["--log-dir", self.log_dir, "--log-syslog-address=127.0.0.1:514"])
        with patch("logging.handlers.SysLogHandler", autospec=True) as mock_handler:
            mock_handler.return_value.level = logging.INFO
            log = get_logger(LogParams(args), args)
        try:
            self.assertEqual(3, len(log.handlers))
            mock_handler.assert_called_once_with(address=("127.0.0.1", 514), facility=1, socktype=socket.SOCK_DGRAM)
        finally:
            reset_logger(log)

    def test_simple_logger(self) -> None:
        log = get_simple_logger("vmbackup")
        try:
            self.assertEqual(logging.INFO, log.level)
            self.assertEqual(1, len(log.handlers))
        finally:
            reset_logger(log)


#############################################################################
class TestSyslogAddress(unittest.TestCase):

    def test_host_port(self) -> None:
        self.assertEqual((("host", 514), socket.SOCK_STREAM), _get_syslog_address(" host : 514 ", "TCP"))

    def test_socket_path(self) -> None:
        self.assertEqual(("/dev/log", None), _get_syslog_address("/dev/log", "UDP"))
