"""Snapshot to metric samples.

``iter_snapshot_samples`` flattens one Snapshot into MetricSample tuples
following a MetricTable. ``SnapshotCollector`` wraps the same flattening in
the prometheus_client custom collector protocol: every scrape first asks
the cache to refresh (rate limited there) and then reads the published
snapshot.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Tuple

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

from ..debug_util import dbg
from ..snapshot.cache import Snapshot
from .schema_spec import Metric, MetricGroup, MetricTable


@dataclass(frozen=True)
class MetricSample:
    name: str
    value: float
    ts_ms: int
    labels: Dict[str, str]


Emitted = Iterator[Tuple[str, Dict[str, str], float]]


def _record_value(rec, attr: str):
    value = rec.get_field(attr)
    if value is None:
        value = getattr(rec, attr, None)
    return value


def _observed(rec, metric: Metric) -> bool:
    if not metric.optional:
        return True
    return bool(set(metric.requires or (metric.attr,)) & rec.seen)


def _pmd_labels(rec, system_id: str) -> Dict[str, str]:
    return {'system_id': system_id, 'pmd_id': rec.pmd_id, 'numa_id': rec.numa_id, 'core_id': rec.core_id}


def _emit_pmd(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    for rec in snap.records:
        base = _pmd_labels(rec, ctx['system_id'])
        for name, m in group.metrics.items():
            if not _observed(rec, m):
                continue
            value = _record_value(rec, m.attr)
            if value is None:
                continue
            yield name, dict(base), value * m.scale


def _emit_histogram(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    for rec in snap.records:
        base = _pmd_labels(rec, ctx['system_id'])
        for hname, buckets in rec.histograms.items():
            for bucket, count in buckets.items():
                for name in group.metrics:
                    yield name, dict(base, histogram=hname, bucket=bucket), count


def _emit_drops(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    for reason, count in sorted(snap.drop_counters.items()):
        for name in group.metrics:
            yield name, {'system_id': ctx['system_id'], 'drop_reason': reason}, count


def _emit_exporter(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    for name, m in group.metrics.items():
        if m.attr == 'info':
            if snap.system is None:
                continue
            info = snap.system
            yield name, {
                'system_id': ctx['system_id'],
                'rundir': ctx.get('rundir', ''),
                'hostname': info.hostname,
                'system_type': info.system_type,
                'system_version': info.system_version,
                'ovs_version': info.ovs_version,
                'db_version': info.db_version,
            }, 1
        else:
            yield name, {'system_id': ctx['system_id']}, getattr(snap, m.attr)


def _emit_process(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    for p in snap.processes:
        labels = {'system_id': ctx['system_id'], 'component': p.component, 'user': p.user, 'group': p.group}
        for name, m in group.metrics.items():
            yield name, dict(labels), getattr(p, m.attr)


def _emit_coverage(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    per_interval = 'interval' in group.labels
    for component, events in sorted(snap.coverage.items()):
        for event, values in sorted(events.items()):
            labels = {'system_id': ctx['system_id'], 'component': component, 'event': event}
            for name in group.metrics:
                if not per_interval:
                    if 'total' in values:
                        yield name, labels, values['total']
                    continue
                for interval, value in values.items():
                    if interval != 'total':
                        yield name, dict(labels, interval=interval), value


def _emit_memory(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    for component, facilities in sorted(snap.memory.items()):
        for facility, value in sorted(facilities.items()):
            for name in group.metrics:
                yield name, {'system_id': ctx['system_id'], 'component': component, 'facility': facility}, value


def _emit_datapath(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    sid = ctx['system_id']
    for dp in snap.datapaths:
        if 'name' in group.labels:
            for port in dp.ports:
                labels = {'system_id': sid, 'datapath': dp.name, 'bridge': port.bridge, 'name': port.name,
                          'ofport': port.ofport, 'index': port.dp_port, 'port_type': port.port_type}
                for name in group.metrics:
                    yield name, labels, 1
        elif 'bridge' in group.labels:
            for bridge in dp.bridges:
                count = sum(1 for p in dp.ports if p.bridge == bridge)
                for name in group.metrics:
                    yield name, {'system_id': sid, 'datapath': dp.name, 'bridge': bridge}, count
        else:
            for name, m in group.metrics.items():
                yield name, {'system_id': sid, 'datapath': dp.name}, getattr(dp, m.attr)


def _interface_value(iface, attr: str):
    if attr.startswith('statistics.'):
        return iface.statistics.get(attr.split('.', 1)[1])
    if attr in ('admin_state', 'link_state'):
        return 1 if getattr(iface, attr) == 'up' else 0
    return getattr(iface, attr, None)


def _emit_interface(snap: Snapshot, group: MetricGroup, ctx: Dict[str, str]) -> Emitted:
    for iface in snap.interfaces:
        labels = {'system_id': ctx['system_id'], 'uuid': iface.uuid}
        if 'name' in group.labels:
            labels['name'] = iface.name
        for name, m in group.metrics.items():
            if m.attr is None:
                yield name, dict(labels), 1
                continue
            value = _interface_value(iface, m.attr)
            if value is None:
                continue
            yield name, dict(labels), value


EMITTERS: Dict[str, Callable[[Snapshot, MetricGroup, Dict[str, str]], Emitted]] = {
    'pmd': _emit_pmd,
    'flow_cache': _emit_pmd,
    'histogram': _emit_histogram,
    'drops': _emit_drops,
    'exporter': _emit_exporter,
    'process': _emit_process,
    'coverage': _emit_coverage,
    'memory': _emit_memory,
    'datapath': _emit_datapath,
    'interface': _emit_interface,
}


def iter_snapshot_samples(snapshot: Snapshot, table: MetricTable, system_id: str,
                          rundir: str = '') -> Iterator[MetricSample]:
    ts_ms = int(snapshot.created_at * 1000)
    ctx = {'system_id': system_id, 'rundir': rundir}
    for group in table.groups.values():
        emit = EMITTERS.get(group.source)
        if emit is None:
            raise ValueError(f'unknown metric source: {group.source}')
        for name, labels, value in emit(snapshot, group, ctx):
            yield MetricSample(name, float(value), ts_ms, labels)


class SnapshotCollector:
    """prometheus_client collector over a SnapshotCache."""

    def __init__(self, cache, table: MetricTable, system_id: str, rundir: str = '', refresh: bool = True):
        self.cache = cache
        self.table = table
        self.system_id = system_id
        self.rundir = rundir
        self.refresh = refresh

    def describe(self) -> List:
        return []

    def collect(self):
        if self.refresh:
            self.cache.refresh()
        snapshot = self.cache.get_snapshot()
        by_name: Dict[str, List[MetricSample]] = {}
        for s in iter_snapshot_samples(snapshot, self.table, self.system_id, self.rundir):
            by_name.setdefault(s.name, []).append(s)
        for group in self.table.groups.values():
            for name, m in group.metrics.items():
                samples = by_name.get(name)
                if not samples:
                    continue
                family_cls = CounterMetricFamily if m.kind == 'counter' else GaugeMetricFamily
                family = family_cls(name, m.description, labels=group.labels)
                for s in samples:
                    family.add_metric([s.labels.get(label, '') for label in group.labels], s.value)
                yield family
        dbg(f'collect generation={snapshot.generation} families={len(by_name)}')


def build_registry(collector: SnapshotCollector) -> CollectorRegistry:
    registry = CollectorRegistry(auto_describe=False)
    registry.register(collector)
    return registry


def render_latest(registry: CollectorRegistry) -> bytes:
    return generate_latest(registry)

__all__ = [
    "MetricSample",
    "iter_snapshot_samples",
    "SnapshotCollector",
    "build_registry",
    "render_latest",
    "EMITTERS",
]
