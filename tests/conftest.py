"""Pytest bootstrap ensuring the in-repo ovs_exporter package is imported.

Also provides the diagnostic text fixtures under tests/data and an
in-memory command runner so no test needs Open vSwitch installed.
"""

import os, sys
from pathlib import Path

import pytest

REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if REPO_ROOT not in sys.path:
    # Prepend so it wins over any site-packages installation
    sys.path.insert(0, REPO_ROOT)

from ovs_exporter.ingestion.appctl import CommandUnavailableError  # noqa: E402

DATA_DIR = Path(__file__).parent / 'data'


class FakeRunner:
    """Stands in for AppctlRunner.

    ``outputs`` maps a command name to its stdout, or to an exception
    instance to raise. Unknown commands behave like ovs-appctl rejecting
    them (non-zero exit).
    """

    def __init__(self, outputs=None):
        self.outputs = dict(outputs or {})
        self.calls = []
        self.targets = []

    @property
    def invocations(self):
        return len(self.calls)

    def count(self, command):
        return sum(1 for c in self.calls if c[0] == command)

    def for_target(self, target):
        self.targets.append(target)
        return self

    def run(self, command, *args):
        self.calls.append((command,) + args)
        out = self.outputs.get(command)
        if isinstance(out, Exception):
            raise out
        if out is None:
            raise CommandUnavailableError(command, args, 2, f'"{command}" is not a valid command')
        return out


@pytest.fixture
def data_text():
    def _read(name):
        return (DATA_DIR / name).read_text(encoding='utf-8')
    return _read


@pytest.fixture
def fake_runner():
    return FakeRunner
