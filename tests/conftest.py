"""
Shared fixtures: a mocked CoreV1Api and a mocked Watch feeding canned events.
"""
import os
import sys
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from containerlinux_labeller import NodeLabeller  # noqa: E402


@pytest.fixture
def api():
    return MagicMock()


@pytest.fixture
def watcher():
    watcher = MagicMock()
    watcher.stream.return_value = iter([])
    return watcher


@pytest.fixture
def labeller(api, watcher):
    return NodeLabeller(api, exit_on_error=False, watcher=watcher)
