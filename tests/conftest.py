# tests/conftest.py
import pytest

from log_helper import init_logging
from fakes import FakeClock


@pytest.fixture(scope="session", autouse=True)
def _init_test_logging():
    init_logging()


@pytest.fixture
def clock():
    return FakeClock()
