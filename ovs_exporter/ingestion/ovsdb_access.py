"""Open vSwitch database and daemon accessor.

Returns already-typed records to the snapshot cache:

SystemInfo     Open_vSwitch table row (system id, hostname, versions)
ProcessInfo    pid / user / group of ovsdb-server and ovs-vswitchd
InterfaceInfo  Interface table rows including the statistics map
coverage       ``coverage/show`` as event -> {interval -> value}
memory         ``memory/show`` as facility -> value
DatapathInfo   ``dpif/show`` datapaths with their bridges and ports

Table data comes from ``ovs-vsctl --format=json list <table>``; OVSDB
encodes compound values as ``["map", [[k, v], ...]]``, ``["set", [...]]``
and ``["uuid", "..."]``. Daemon data comes from ``ovs-appctl``.
"""
from __future__ import annotations
import grp
import json
import pwd
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from ..debug_util import dbg
from .appctl import AppctlRunner, CommandError

COMPONENTS = ('ovsdb-server', 'ovs-vswitchd')


class DatabaseError(Exception):
    pass


class SystemIdError(DatabaseError):
    pass


@dataclass(frozen=True)
class SystemInfo:
    system_id: str = ''
    hostname: str = ''
    system_type: str = ''
    system_version: str = ''
    ovs_version: str = ''
    db_version: str = ''


@dataclass(frozen=True)
class ProcessInfo:
    component: str
    pid: int
    user: str = ''
    group: str = ''


@dataclass(frozen=True)
class InterfaceInfo:
    uuid: str
    name: str
    admin_state: str = ''
    link_state: str = ''
    mtu: Optional[int] = None
    ofport: Optional[int] = None
    ifindex: Optional[int] = None
    statistics: Dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class DatapathPort:
    bridge: str
    name: str
    ofport: str
    dp_port: str
    port_type: str = ''


@dataclass(frozen=True)
class DatapathInfo:
    name: str
    dp_type: str
    hit: int = 0
    missed: int = 0
    ports: tuple = ()

    @property
    def bridges(self) -> List[str]:
        return sorted({p.bridge for p in self.ports})


class OvsDatabase(Protocol):
    def system_info(self) -> SystemInfo: ...
    def process_info(self, component: str) -> ProcessInfo: ...
    def interfaces(self) -> List[InterfaceInfo]: ...
    def coverage(self, component: str) -> Dict[str, Dict[str, float]]: ...
    def memory(self, component: str) -> Dict[str, float]: ...
    def datapaths(self) -> List[DatapathInfo]: ...


def ovsdb_value(value: Any) -> Any:
    """Decode one OVSDB JSON datum into plain Python values."""
    if isinstance(value, list) and len(value) == 2 and isinstance(value[0], str):
        tag, body = value
        if tag == 'map':
            return {ovsdb_value(k): ovsdb_value(v) for k, v in body}
        if tag == 'set':
            return [ovsdb_value(v) for v in body]
        if tag in ('uuid', 'named-uuid'):
            return body
    return value


def _scalar(value: Any) -> Any:
    # optional columns are encoded as an empty set
    if isinstance(value, list):
        return value[0] if value else None
    return value


def parse_vsctl_json(text: str) -> List[Dict[str, Any]]:
    try:
        doc = json.loads(text)
        headings = doc['headings']
        return [{h: ovsdb_value(v) for h, v in zip(headings, row)} for row in doc['data']]
    except (ValueError, KeyError, TypeError) as e:
        raise DatabaseError(f'malformed ovs-vsctl json: {e}') from e


COVERAGE_RE = re.compile(
    r"^(\S+)\s+([\d.]+)/sec\s+([\d.]+)/sec\s+([\d.]+)/sec\s+total:\s*(\d+)\s*$"
)
COVERAGE_INTERVALS = ('5s', '1m', '1h')


def parse_coverage(text: str) -> Dict[str, Dict[str, float]]:
    out: Dict[str, Dict[str, float]] = {}
    for raw in text.splitlines():
        m = COVERAGE_RE.match(raw.strip())
        if not m:
            continue
        event = m.group(1)
        values = {iv: float(m.group(i + 2)) for i, iv in enumerate(COVERAGE_INTERVALS)}
        values['total'] = float(m.group(5))
        out[event] = values
    return out


MEMORY_RE = re.compile(r"([\w-]+):(\d+)")


def parse_memory(text: str) -> Dict[str, float]:
    return {k: float(v) for k, v in MEMORY_RE.findall(text)}


DP_HEADER_RE = re.compile(r"^(\S+)@(\S+):\s+hit:(\d+)\s+missed:(\d+)")
DP_BRIDGE_RE = re.compile(r"^\s+(\S+):\s*$")
DP_PORT_RE = re.compile(r"^\s+(\S+)\s+([^\s/]+)/([^\s:]+):?(?:\s+\(([^)]*)\))?")


def parse_dpif_show(text: str) -> List[DatapathInfo]:
    dps: List[DatapathInfo] = []
    header = None
    bridge = None
    ports: List[DatapathPort] = []

    def flush():
        if header is not None:
            dp_type, name, hit, missed = header
            dps.append(DatapathInfo(name, dp_type, int(hit), int(missed), tuple(ports)))

    for raw in text.splitlines():
        if not raw.strip():
            continue
        m = DP_HEADER_RE.match(raw)
        if m:
            flush()
            header, bridge, ports = m.groups(), None, []
            continue
        if header is None:
            continue
        m = DP_BRIDGE_RE.match(raw)
        if m:
            bridge = m.group(1)
            continue
        m = DP_PORT_RE.match(raw)
        if m and bridge:
            name, ofport, dp_port, ptype = m.groups()
            ports.append(DatapathPort(bridge, name, ofport, dp_port, (ptype or '').split(':')[0]))
    flush()
    return dps


class VsctlDatabase:
    """OvsDatabase over ``ovs-vsctl`` / ``ovs-appctl`` and the run directory."""

    def __init__(self, vsctl: AppctlRunner, appctl: AppctlRunner, rundir: str = '/var/run/openvswitch',
                 proc_root: str = '/proc'):
        self.vsctl = vsctl
        self.appctl = appctl
        self.rundir = Path(rundir)
        self.proc_root = Path(proc_root)

    def _list(self, table: str, columns: str) -> List[Dict[str, Any]]:
        try:
            text = self.vsctl.run('--format=json', f'--columns={columns}', 'list', table)
        except CommandError as e:
            raise DatabaseError(f'list {table} failed: {e}') from e
        return parse_vsctl_json(text)

    def _appctl(self, component: str, command: str) -> str:
        try:
            return self.appctl.for_target(component).run(command)
        except CommandError as e:
            raise DatabaseError(f'{component} {command} failed: {e}') from e

    def system_info(self) -> SystemInfo:
        rows = self._list('Open_vSwitch', 'external_ids,system_type,system_version,ovs_version,db_version')
        if not rows:
            raise DatabaseError('Open_vSwitch table is empty')
        row = rows[0]
        ext = row.get('external_ids') or {}
        return SystemInfo(
            system_id=ext.get('system-id', ''),
            hostname=ext.get('hostname', ''),
            system_type=_scalar(row.get('system_type')) or '',
            system_version=_scalar(row.get('system_version')) or '',
            ovs_version=_scalar(row.get('ovs_version')) or '',
            db_version=_scalar(row.get('db_version')) or '',
        )

    def process_info(self, component: str) -> ProcessInfo:
        pidfile = self.rundir / f'{component}.pid'
        try:
            pid = int(pidfile.read_text().strip())
        except (OSError, ValueError) as e:
            raise DatabaseError(f'cannot read pidfile {pidfile}: {e}') from e
        try:
            st = (self.proc_root / str(pid)).stat()
        except OSError as e:
            raise DatabaseError(f'{component} pid {pid} is not running') from e
        try:
            user = pwd.getpwuid(st.st_uid).pw_name
        except KeyError:
            user = str(st.st_uid)
        try:
            group = grp.getgrgid(st.st_gid).gr_name
        except KeyError:
            group = str(st.st_gid)
        return ProcessInfo(component, pid, user, group)

    def interfaces(self) -> List[InterfaceInfo]:
        rows = self._list('Interface', '_uuid,name,admin_state,link_state,mtu,ofport,ifindex,statistics')
        out = []
        for row in rows:
            stats = row.get('statistics') or {}
            out.append(InterfaceInfo(
                uuid=row.get('_uuid', ''),
                name=row.get('name', ''),
                admin_state=_scalar(row.get('admin_state')) or '',
                link_state=_scalar(row.get('link_state')) or '',
                mtu=_scalar(row.get('mtu')),
                ofport=_scalar(row.get('ofport')),
                ifindex=_scalar(row.get('ifindex')),
                statistics={k: int(v) for k, v in stats.items()},
            ))
        return out

    def coverage(self, component: str) -> Dict[str, Dict[str, float]]:
        return parse_coverage(self._appctl(component, 'coverage/show'))

    def memory(self, component: str) -> Dict[str, float]:
        return parse_memory(self._appctl(component, 'memory/show'))

    def datapaths(self) -> List[DatapathInfo]:
        return parse_dpif_show(self._appctl('ovs-vswitchd', 'dpif/show'))


def _strip_id(raw: str) -> str:
    return raw.strip().strip('"').strip()


def discover_system_id(vsctl: AppctlRunner, file_path: str = '/etc/openvswitch/system-id.conf') -> str:
    """Resolve the system id from the database, then from ``file_path``."""
    try:
        system_id = _strip_id(vsctl.run('get', 'Open_vSwitch', '.', 'external-ids:system-id'))
        if system_id:
            dbg(f'system_id source=database value={system_id}')
            return system_id
        reason = 'system-id is empty in database'
    except CommandError as e:
        reason = str(e)
    dbg(f'system_id database_failed reason={reason} trying file={file_path}')
    try:
        with open(file_path, 'r', encoding='utf-8') as f:
            for line in f:
                system_id = _strip_id(line)
                if system_id:
                    dbg(f'system_id source=file value={system_id}')
                    return system_id
    except OSError as e:
        raise SystemIdError(f'system-id unavailable from database ({reason}) and file: {e}') from e
    raise SystemIdError(f'system-id unavailable from database ({reason}) and file {file_path} is empty')

__all__ = [
    "COMPONENTS",
    "DatabaseError",
    "SystemIdError",
    "SystemInfo",
    "ProcessInfo",
    "InterfaceInfo",
    "DatapathPort",
    "DatapathInfo",
    "OvsDatabase",
    "VsctlDatabase",
    "discover_system_id",
    "ovsdb_value",
    "parse_vsctl_json",
    "parse_coverage",
    "parse_memory",
    "parse_dpif_show",
]
