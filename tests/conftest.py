import logging

import pytest


def by_slow_marker(item):
    is_slow = 0 if item.get_closest_marker("slow") is None else 1
    is_integration = 1 if "integration" in str(item.fspath) else 0

    # unit tests first, then slow unit tests, then integration tests, then slow integration tests
    return (is_integration, is_slow)


def pytest_addoption(parser):
    parser.addoption("--slow-last", action="store_true", default=False)


def pytest_collection_modifyitems(items, config):
    if config.getoption("--slow-last"):
        items.sort(key=by_slow_marker)


@pytest.fixture(autouse=True)
def configure_logging_for_tests(caplog):
    """Configure logging to work properly with caplog fixture.

    The ``docrepo`` root logger does not propagate by default; this fixture turns propagation on so that caplog,
    which listens on the root logger, captures every docrepo record.
    """
    caplog.set_level(logging.DEBUG)

    root_logger = logging.getLogger()
    original_level = root_logger.level
    root_logger.setLevel(logging.DEBUG)

    docrepo_logger = logging.getLogger("docrepo")
    original_propagate = docrepo_logger.propagate
    docrepo_logger.propagate = True

    yield

    root_logger.setLevel(original_level)
    docrepo_logger.propagate = original_propagate
