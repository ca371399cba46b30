import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import hourglass as hg  # noqa: E402

from .helpers import FakeClock, FakeSource  # noqa: E402


@pytest.fixture
def task_path(tmp_path):
    """Return a task file path inside a per-test directory."""
    return tmp_path / "tasks.hourglass"


@pytest.fixture
def store(task_path):
    s = hg.TaskStore(task_path)
    s.load()
    return s


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def refresher(source):
    return hg.IssueRefresher(hg.IssueCache(), source)


@pytest.fixture
def interaction(store, refresher):
    return hg.Interaction(store, refresher)


@pytest.fixture
def clock():
    return FakeClock()
