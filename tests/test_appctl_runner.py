import subprocess
import sys
from types import SimpleNamespace

import pytest

from ovs_exporter.ingestion.appctl import (
    AppctlRunner, CommandError, CommandTransportError, CommandUnavailableError,
)


@pytest.fixture
def fake_run(monkeypatch):
    seen = []

    def install(result=None, exc=None):
        def _run(argv, **kw):
            seen.append((argv, kw))
            if exc is not None:
                raise exc
            return result
        monkeypatch.setattr(subprocess, 'run', _run)
        return seen
    return install


def test_argv_with_and_without_target():
    runner = AppctlRunner('ovs-appctl', 1.0)
    assert runner.argv('coverage/show') == ['ovs-appctl', 'coverage/show']
    targeted = runner.for_target('ovsdb-server')
    assert targeted.argv('memory/show') == ['ovs-appctl', '-t', 'ovsdb-server', 'memory/show']
    assert targeted.timeout == 1.0 and runner.target is None


def test_run_returns_stdout(fake_run):
    seen = fake_run(SimpleNamespace(returncode=0, stdout='pmd thread numa_id 0 core_id 1:\n', stderr=''))
    runner = AppctlRunner(timeout=3.0)
    assert runner.run('dpif-netdev/pmd-perf-show') == 'pmd thread numa_id 0 core_id 1:\n'
    argv, kw = seen[0]
    assert argv == ['ovs-appctl', 'dpif-netdev/pmd-perf-show']
    assert kw['timeout'] == 3.0 and kw['check'] is False
    assert kw['errors'] == 'replace'
    assert runner.invocations == 1


def test_nonzero_exit_is_unavailable(fake_run):
    fake_run(SimpleNamespace(returncode=2, stdout='', stderr='"dpif-netdev/pmd-perf-show" is not a valid command\nmore\n'))
    with pytest.raises(CommandUnavailableError) as ei:
        AppctlRunner().run('dpif-netdev/pmd-perf-show')
    err = ei.value
    assert err.returncode == 2
    assert err.command == 'dpif-netdev/pmd-perf-show'
    assert str(err) == 'dpif-netdev/pmd-perf-show exited with status 2: "dpif-netdev/pmd-perf-show" is not a valid command'
    assert isinstance(err, CommandError)


def test_nonzero_exit_without_stderr(fake_run):
    fake_run(SimpleNamespace(returncode=1, stdout='', stderr=''))
    with pytest.raises(CommandUnavailableError, match=r'^coverage/show exited with status 1$'):
        AppctlRunner().run('coverage/show')


@pytest.mark.parametrize('exc', [
    subprocess.TimeoutExpired(['ovs-appctl'], 2.0),
    FileNotFoundError(2, 'No such file or directory'),
    PermissionError(13, 'Permission denied'),
])
def test_transport_failures(fake_run, exc):
    fake_run(exc=exc)
    runner = AppctlRunner()
    with pytest.raises(CommandTransportError) as ei:
        runner.run('dpif/show', '--verbose')
    assert ei.value.args_list == ['--verbose']
    assert ei.value.__cause__ is exc
    assert runner.invocations == 1


def test_undecodable_output_is_replaced():
    script = "import sys; sys.stdout.buffer.write(b'datapath_drop_meter 42\\nnetdev_\\xff\\xfe 7\\n')"
    out = AppctlRunner(sys.executable, timeout=30.0).run('-c', script)
    lines = out.splitlines()
    assert lines[0] == 'datapath_drop_meter 42'
    assert lines[1] == 'netdev_\ufffd\ufffd 7'
