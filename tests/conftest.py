#!/usr/bin/env python3

import logging

import pytest

assertion_count = 0


def pytest_assertion_pass(item, lineno, orig, expl):
    global assertion_count
    assertion_count += 1


def pytest_terminal_summary(terminalreporter, exitstatus, config):
    print(f'{assertion_count} assertions tested.')


@pytest.fixture(autouse=True)
def debug_logging(caplog):
    # Formats all debug messages so that broken format arguments show up as test failures.
    caplog.set_level(logging.DEBUG, logger='tarstream')
    yield
