"""Diagnostic command invoker.

Runs ``ovs-appctl`` / ``ovs-vsctl`` style commands and returns their text
output. Failures are classified by type instead of by message text:

* CommandUnavailableError: the process ran and exited non-zero. For the
  PMD commands this means the userspace datapath (or its perf metrics)
  is not active on this host.
* CommandTransportError: the binary could not be started, the OS call
  failed, or the command did not finish within the timeout.
"""
from __future__ import annotations
import subprocess
from typing import List, Optional, Sequence

from ..debug_util import dbg


class CommandError(Exception):
    def __init__(self, command: str, args: Sequence[str], message: str):
        super().__init__(message)
        self.command = command
        self.args_list = list(args)


class CommandUnavailableError(CommandError):
    def __init__(self, command: str, args: Sequence[str], returncode: int, stderr: str = ''):
        detail = stderr.strip().splitlines()[0] if stderr and stderr.strip() else ''
        msg = f'{command} exited with status {returncode}'
        if detail:
            msg = f'{msg}: {detail}'
        super().__init__(command, args, msg)
        self.returncode = returncode
        self.stderr = stderr


class CommandTransportError(CommandError):
    pass


class AppctlRunner:
    """Invoke one control binary with an optional ``-t`` target.

    ``run('dpif-netdev/pmd-perf-show')`` executes
    ``ovs-appctl [-t target] dpif-netdev/pmd-perf-show`` and returns stdout.
    """

    def __init__(self, binary: str = 'ovs-appctl', timeout: float = 2.0, target: Optional[str] = None):
        self.binary = binary
        self.timeout = timeout
        self.target = target
        self.invocations = 0

    def argv(self, command: str, *args: str) -> List[str]:
        argv = [self.binary]
        if self.target:
            argv += ['-t', self.target]
        argv.append(command)
        argv.extend(args)
        return argv

    def for_target(self, target: str) -> 'AppctlRunner':
        return AppctlRunner(self.binary, self.timeout, target)

    def run(self, command: str, *args: str) -> str:
        argv = self.argv(command, *args)
        self.invocations += 1
        dbg(f'appctl_run argv={argv} timeout={self.timeout}')
        try:
            proc = subprocess.run(
                argv,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                encoding='utf-8',
                errors='replace',
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTransportError(command, args, f'{self.binary} {command} timed out after {self.timeout}s') from e
        except OSError as e:
            raise CommandTransportError(command, args, f'{self.binary} {command} could not be started: {e}') from e
        if proc.returncode != 0:
            dbg(f'appctl_nonzero command={command} rc={proc.returncode}')
            raise CommandUnavailableError(command, args, proc.returncode, proc.stderr or '')
        return proc.stdout or ''

__all__ = [
    "AppctlRunner",
    "CommandError",
    "CommandUnavailableError",
    "CommandTransportError",
]
