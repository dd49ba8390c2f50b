# tests/conftest.py
"""
Global pytest fixtures for envboot tests.
"""

import subprocess
import sys

import pytest

from envboot.model import TargetConfig
from envboot.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def fresh_console():
    """Reset the global console so debug state never leaks between tests."""
    console = Console(debug=False)
    set_console(console)
    return console


@pytest.fixture
def py():
    """argv prefix for a child python that runs an inline script."""

    def _py(code: str) -> tuple:
        return (sys.executable, "-c", code)

    return _py


@pytest.fixture
def target():
    return TargetConfig(
        env_name="blackwell",
        arch="sm_120",
        python_version="3.11",
        pins={"torch": "==2.7.0", "numpy": "<2", "transformers": "==4.44.2"},
        source_packages=("flash-attn",),
        index_url="https://download.pytorch.org/whl/cu128",
        max_jobs=8,
    )


class FakeRunner:
    """
    Stand-in for subprocess.run that records every call.

    `outcomes` maps a substring of the command to (returncode, stdout, stderr)
    or to an exception instance to raise.
    """

    def __init__(self, outcomes=None):
        self.outcomes = outcomes or {}
        self.calls = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        text = cmd if isinstance(cmd, str) else " ".join(cmd)
        for needle, outcome in self.outcomes.items():
            if needle in text:
                if isinstance(outcome, BaseException):
                    raise outcome
                code, out, err = outcome
                return subprocess.CompletedProcess(cmd, code, out, err)
        return subprocess.CompletedProcess(cmd, 0, "", "")


@pytest.fixture
def fake_runner():
    return FakeRunner
