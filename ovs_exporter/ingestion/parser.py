from __future__ import annotations
import math
import re
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Union

from ..debug_util import dbg
from .matchers import FieldMatcherSet, Number, as_count

"""PMD diagnostic text parser

Record model
------------
One WorkerThreadRecord per ``pmd thread numa_id N core_id M:`` header. The
core id doubles as the PMD thread id, which is the join key between
``dpif-netdev/pmd-perf-show`` (primary) and ``dpif-netdev/pmd-stats-show``
(enrichment). Every numeric field starts at zero; ``seen`` records which
fields a source line actually set, so a genuinely observed zero is never
mistaken for "absent" when derived fields are computed or sources merged.

Cache tiers (emc / smc / megaflow) live in ``caches`` keyed by tier name.
Histograms (cycles / packets / batch) map a bucket label such as ``0-100``
or ``10000+`` to an occurrence count.

Scanner
-------
Two states, NO_RECORD and BUILDING. Field lines before the first header
and lines after a ``main thread:`` header are ignored. A histogram section
header points subsequent bucket lines at that histogram until the next
section or thread header.

Drop counters
-------------
``coverage/show`` lines are kept only when their leading token is one of
DROP_REASONS. Both ``name 42`` and the long form
``name   0.0/sec  0.000/sec  0.0000/sec   total: 42`` are accepted.
"""

PMD_HEADER_RE = re.compile(r"pmd thread numa_id (\d+) core_id (\d+):")
OTHER_THREAD_RE = re.compile(r"^\s*main thread:", re.IGNORECASE)
HISTOGRAM_HEADER_RE = re.compile(r"^\s*(?:-\s*)?([a-z]+(?: [a-z]+)?) histogram:", re.IGNORECASE)
HISTOGRAM_ENTRY_RE = re.compile(r"^\s*(\d+-\d+|\d+\+):\s+(\d+)\s*$")

HISTOGRAM_ALIASES = {
    'cycles': 'cycles',
    'packets': 'packets',
    'batch': 'batch',
    'batch size': 'batch',
}
HISTOGRAM_NAMES = ('cycles', 'packets', 'batch')
CACHE_TIERS = ('emc', 'smc', 'megaflow')


@dataclass
class CacheTierStats:
    hits: int = 0
    inserts: Optional[int] = None
    hit_rate: float = 0.0  # percent, as printed by OVS


def _empty_histograms() -> Dict[str, Dict[str, int]]:
    return {name: {} for name in HISTOGRAM_NAMES}


@dataclass
class WorkerThreadRecord:
    numa_id: str
    core_id: str
    pmd_id: str
    # cycle accounting
    cpu_utilization: float = 0.0
    iterations: int = 0
    us_per_iteration: float = 0.0
    sleep_iterations: int = 0
    busy_iterations: int = 0
    busy_cycles: int = 0
    idle_cycles: int = 0
    total_cycles: int = 0
    cycles_per_iteration: float = 0.0
    cycles_per_packet: float = 0.0
    # throughput
    packets_per_iteration: float = 0.0
    packets_per_batch: float = 0.0
    rx_batches: int = 0
    rx_packets: int = 0
    avg_rx_batch_size: float = 0.0
    max_rx_batch_size: int = 0
    tx_batches: int = 0
    tx_packets: int = 0
    avg_tx_batch_size: float = 0.0
    total_packets: int = 0
    # queueing
    max_vhost_qlen: int = 0
    avg_vhost_qlen: float = 0.0
    vhost_queue_full: int = 0
    vhost_tx_retries: int = 0
    vhost_tx_contention: int = 0
    vhost_tx_irqs: int = 0
    # control plane
    upcalls: int = 0
    upcall_cycles: int = 0
    avg_upcall_cycles: float = 0.0
    # classifier / caches
    exact_match_hit: int = 0
    masked_hit: int = 0
    miss: int = 0
    lost: int = 0
    megaflow_misses: int = 0
    flow_cache_lookups: int = 0
    # anomaly detection
    suspicious_iterations: int = 0
    suspicious_percent: float = 0.0
    caches: Dict[str, CacheTierStats] = field(default_factory=dict)
    histograms: Dict[str, Dict[str, int]] = field(default_factory=_empty_histograms)
    extra: Dict[str, Number] = field(default_factory=dict)
    seen: Set[str] = field(default_factory=set)
    derived: Set[str] = field(default_factory=set)

    @property
    def identity(self) -> Tuple[str, str]:
        return (self.numa_id, self.pmd_id)

    @property
    def suspicious_ratio(self) -> float:
        if 'suspicious_percent' in self.seen:
            return self.suspicious_percent / 100.0
        if self.iterations:
            return self.suspicious_iterations / self.iterations
        return 0.0

    def set_field(self, name: str, value: Number) -> None:
        if '.' in name:
            tier, attr = name.split('.', 1)
            stats = self.caches.get(tier)
            if stats is None:
                stats = self.caches[tier] = CacheTierStats()
            setattr(stats, attr, value)
        elif name in NUMERIC_FIELDS:
            setattr(self, name, value)
        else:
            self.extra[name] = value
        self.seen.add(name)
        self.derived.discard(name)

    def get_field(self, name: str) -> Optional[Number]:
        if '.' in name:
            tier, attr = name.split('.', 1)
            stats = self.caches.get(tier)
            return getattr(stats, attr) if stats is not None else None
        if name in NUMERIC_FIELDS:
            return getattr(self, name)
        return self.extra.get(name)

    def finalize(self) -> 'WorkerThreadRecord':
        """Fill derived fields that no source line set. Safe to call repeatedly."""
        if 'total_cycles' not in self.seen:
            self.total_cycles = self.busy_cycles + self.idle_cycles
            self.derived.add('total_cycles')
        if 'total_packets' not in self.seen and {'iterations', 'packets_per_iteration'} <= self.seen:
            self.total_packets = math.floor(self.iterations * self.packets_per_iteration)
            self.derived.add('total_packets')
        if 'busy_iterations' not in self.seen and 'iterations' in self.seen:
            self.busy_iterations = max(self.iterations - self.sleep_iterations, 0)
            self.derived.add('busy_iterations')
        return self

    def merge_missing(self, other: 'WorkerThreadRecord') -> List[str]:
        """Copy fields ``other`` observed and this record did not; return their names."""
        copied = []
        for name in sorted(other.seen):
            if name in self.seen:
                continue
            value = other.get_field(name)
            if value is None:
                continue
            self.set_field(name, value)
            copied.append(name)
        for hname, buckets in other.histograms.items():
            if buckets and not self.histograms.get(hname):
                self.histograms[hname] = dict(buckets)
                copied.append(f'histogram:{hname}')
        return copied

    def numeric_fields(self) -> Dict[str, Number]:
        return {name: getattr(self, name) for name in NUMERIC_FIELDS}


NUMERIC_FIELDS = frozenset(
    f.name for f in fields(WorkerThreadRecord)
    if f.name not in ('numa_id', 'core_id', 'pmd_id', 'caches', 'histograms', 'extra', 'seen', 'derived')
)


class BuilderState(Enum):
    NO_RECORD = 'no_record'
    BUILDING = 'building'


class PmdTextParser:
    """Record builder over pmd-perf-show / pmd-stats-show text.

    Holds no state between calls; ``parse`` on the same text always returns
    structurally equal lists.
    """

    def __init__(self, matchers: Union[FieldMatcherSet, Iterable, None] = None):
        if matchers is None:
            matchers = FieldMatcherSet()
        elif not isinstance(matchers, FieldMatcherSet):
            matchers = FieldMatcherSet(matchers)
        self.matchers = matchers

    def iter_records(self, text: str) -> Iterator[WorkerThreadRecord]:
        state = BuilderState.NO_RECORD
        current: Optional[WorkerThreadRecord] = None
        active_hist: Optional[Dict[str, int]] = None
        for raw in (text or '').splitlines():
            line = raw.rstrip()
            if not line.strip():
                continue
            m_hdr = PMD_HEADER_RE.search(line)
            if m_hdr:
                if state is BuilderState.BUILDING:
                    yield current.finalize()
                numa, core = m_hdr.groups()
                current = WorkerThreadRecord(numa_id=numa, core_id=core, pmd_id=core)
                active_hist = None
                state = BuilderState.BUILDING
                continue
            if OTHER_THREAD_RE.match(line):
                if state is BuilderState.BUILDING:
                    yield current.finalize()
                current, active_hist = None, None
                state = BuilderState.NO_RECORD
                continue
            if state is BuilderState.NO_RECORD:
                continue
            m_hist = HISTOGRAM_HEADER_RE.match(line)
            if m_hist:
                name = HISTOGRAM_ALIASES.get(m_hist.group(1).lower())
                active_hist = current.histograms.setdefault(name, {}) if name else None
                continue
            if active_hist is not None:
                m_entry = HISTOGRAM_ENTRY_RE.match(line)
                if m_entry:
                    try:
                        active_hist[m_entry.group(1)] = as_count(m_entry.group(2))
                    except (ValueError, OverflowError):
                        dbg(f'histogram_skip line={line.strip()[:80]}')
                    continue
            fm = self.matchers.match(line)
            if fm is None:
                continue
            for name, value in fm.values.items():
                current.set_field(name, value)
            if fm.skipped:
                dbg(f'field_skip family={fm.family} fields={list(fm.skipped)} pmd={current.pmd_id}')
        if state is BuilderState.BUILDING:
            yield current.finalize()

    def parse(self, text: str) -> List[WorkerThreadRecord]:
        return list(self.iter_records(text))


DROP_REASONS: Tuple[str, ...] = (
    'datapath_drop_upcall_error',
    'datapath_drop_lock_error',
    'datapath_drop_rx_invalid_packet',
    'datapath_drop_meter',
    'datapath_drop_userspace_action_error',
    'datapath_drop_tunnel_push_error',
    'datapath_drop_tunnel_pop_error',
    'datapath_drop_recirc_error',
    'datapath_drop_invalid_port',
    'datapath_drop_invalid_tnl_port',
    'datapath_drop_sample_error',
    'datapath_drop_nsh_decap_error',
    'drop_action_of_pipeline',
    'drop_action_bridge_not_found',
    'drop_action_recursion_too_deep',
    'drop_action_too_many_resubmit',
    'drop_action_stack_too_deep',
    'drop_action_no_recirculation',
    'drop_action_recirculation_conflict',
    'drop_action_too_many_mpls_labels',
    'drop_action_invalid_tunnel_metadata',
    'drop_action_unsupported_packet_type',
    'drop_action_congestion',
    'drop_action_forwarding_disabled',
)

DROP_COUNTER_RE = re.compile(r"^(\S+)\s+(\d+)(?:\s|$)")
DROP_TOTAL_RE = re.compile(r"total:\s*(\d+)\s*$")


def parse_drop_counters(text: str, reasons: Iterable[str] = DROP_REASONS) -> Dict[str, int]:
    """Extract known drop-reason counters; unobserved reasons are absent, not zero."""
    known = frozenset(reasons)
    out: Dict[str, int] = {}
    for raw in (text or '').splitlines():
        line = raw.strip()
        if not line:
            continue
        name = line.split(None, 1)[0]
        if name not in known or name in out:
            continue
        m = DROP_TOTAL_RE.search(line) or DROP_COUNTER_RE.match(line)
        if not m:
            continue
        try:
            out[name] = as_count(m.groups()[-1])
        except (ValueError, OverflowError):
            dbg(f'drop_counter_skip name={name}')
    return out

__all__ = [
    "BuilderState",
    "CacheTierStats",
    "WorkerThreadRecord",
    "PmdTextParser",
    "DROP_REASONS",
    "parse_drop_counters",
    "CACHE_TIERS",
    "HISTOGRAM_NAMES",
    "NUMERIC_FIELDS",
]
