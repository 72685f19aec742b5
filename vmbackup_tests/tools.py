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
"""Various small tools for use in tests; Everything in this module relies only on the Python standard library."""

from __future__ import (
    annotations,
)
import contextlib
import inspect
import io
import logging
import types
import unittest
from collections.abc import (
    Iterator,
)
from typing import (
    Callable,
)


@contextlib.contextmanager
def suppress_output() -> Iterator[None]:
    """Swallows anything printed to stdout or stderr, and mutes all logging, while the block runs."""
    previous_level: int = logging.root.manager.disable
    logging.disable(logging.CRITICAL)
    try:
        with contextlib.redirect_stdout(io.StringIO()), contextlib.redirect_stderr(io.StringIO()):
            yield
    finally:
        logging.disable(previous_level)


def new_test_logger(name: str = "vmbackup.test") -> logging.Logger:
    """Returns a private logger that records into memory; the records are in ``log.records``."""
    log = logging.Logger(name)  # noqa: LOG001 do not register with Logger.manager
    log.setLevel(1)
    log.propagate = False
    records: list[logging.LogRecord] = []

    class ListHandler(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    log.addHandler(ListHandler())
    log.records = records  # type: ignore[attr-defined]
    return log


def messages(log: logging.Logger, level: int | None = None) -> list[str]:
    """Returns the formatted messages recorded by a logger from ``new_test_logger()``."""
    return [r.getMessage() for r in log.records if level is None or r.levelno == level]  # type: ignore[attr-defined]


#############################################################################
class TestSuiteCompleteness(unittest.TestCase):
    """Fails if a test module defines a TestCase class that its suite() forgets to return, as test_all runs suites only."""

    def __init__(
        self,
        method_name: str = "runTest",
        modules: list[types.ModuleType] | None = None,
        class_predicate: Callable[[type[unittest.TestCase]], bool] | None = None,
    ) -> None:
        super().__init__(method_name)
        self.modules = modules or []
        self.class_predicate = class_predicate or (lambda _cls: False)

    def test_all_modules_have_a_complete_suite(self) -> None:
        problems: list[str] = []
        for module in self.modules:
            defined: set[str] = {
                cls.__name__
                for _, cls in inspect.getmembers(module, inspect.isclass)
                if issubclass(cls, unittest.TestCase) and cls.__module__ == module.__name__ and self.class_predicate(cls)
            }
            collected: set[str] = {type(test).__name__ for test in _flatten(module.suite())}
            orphans: list[str] = sorted(defined - collected)
            if orphans:
                problems.append(f"{module.__name__}: {', '.join(orphans)}")
        self.assertEqual([], problems, "test classes missing from their module's suite()")


def _flatten(suite: unittest.TestSuite) -> Iterator[unittest.TestCase]:
    for item in suite:
        if isinstance(item, unittest.TestSuite):
            yield from _flatten(item)
        else:
            yield item
