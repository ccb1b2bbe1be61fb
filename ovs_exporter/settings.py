"""Exporter configuration read from the environment.

Every knob has a default so the exporter starts with no configuration on
a stock Open vSwitch host. Malformed numeric values fall back to the
default instead of aborting startup; the fallback is reported via dbg.
"""
from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .debug_util import dbg

DEFAULT_PORT = 9475
DEFAULT_POLL_INTERVAL = 15
DEFAULT_TIMEOUT = 2.0
DEFAULT_MAX_WORKERS = 4


def _env_int(env: Mapping[str, str], key: str, default: int, minimum: int = 1) -> int:
    raw = env.get(key)
    if raw is None or raw == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        dbg(f'settings_invalid key={key} value={raw!r} using_default={default}')
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        dbg(f'settings_invalid key={key} value={raw!r} using_default={default}')
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class ExporterSettings:
    listen_address: str = '0.0.0.0'
    port: int = DEFAULT_PORT
    telemetry_path: str = '/metrics'
    poll_interval: int = DEFAULT_POLL_INTERVAL
    timeout: float = DEFAULT_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    log_level: str = 'info'
    appctl_bin: str = 'ovs-appctl'
    vsctl_bin: str = 'ovs-vsctl'
    rundir: str = '/var/run/openvswitch'
    system_id_file: str = '/etc/openvswitch/system-id.conf'

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ExporterSettings':
        env = os.environ if environ is None else environ
        path = env.get('OVS_EXPORTER_TELEMETRY_PATH') or '/metrics'
        if not path.startswith('/'):
            path = '/' + path
        return cls(
            listen_address=env.get('OVS_EXPORTER_LISTEN_ADDRESS') or '0.0.0.0',
            port=_env_int(env, 'OVS_EXPORTER_PORT', DEFAULT_PORT),
            telemetry_path=path,
            poll_interval=_env_int(env, 'OVS_EXPORTER_POLL_INTERVAL', DEFAULT_POLL_INTERVAL),
            timeout=_env_float(env, 'OVS_EXPORTER_TIMEOUT', DEFAULT_TIMEOUT),
            max_workers=_env_int(env, 'OVS_EXPORTER_MAX_WORKERS', DEFAULT_MAX_WORKERS),
            log_level=(env.get('OVS_EXPORTER_LOG_LEVEL') or 'info').lower(),
            appctl_bin=env.get('OVS_APPCTL_BIN') or 'ovs-appctl',
            vsctl_bin=env.get('OVS_VSCTL_BIN') or 'ovs-vsctl',
            rundir=env.get('OVS_RUNDIR') or '/var/run/openvswitch',
            system_id_file=env.get('OVS_SYSTEM_ID_FILE') or '/etc/openvswitch/system-id.conf',
        )

__all__ = ["ExporterSettings"]
