"""Field matchers for PMD diagnostic text.

Each FieldMatcher pairs one line pattern with the record fields its groups
populate. The set is an ordered tuple; the first matcher whose pattern
matches a line wins, so a line contributes to at most one family.

Line shapes covered (whitespace and case vary between OVS releases):

dpif-netdev/pmd-perf-show
    iterations:        12345678 (123.45 us/it)
    busy cycles:       75.2% (2345.67 Mcycles, 1234 us/it)
    cycles/it:         1234567.8 (123.45 Mcycles)
    upcalls:           1234 (567.8 us 89.0 Mcycles)
    - EMC hits:             3456000  (100.0 %)

dpif-netdev/pmd-stats-show
    packets received: 1000
    emc hits: 800
    idle cycles: 1234 (95.00%)
    processing cycles: 66 (5.00%)

Field names with a dot (``emc.hits``) address a cache tier inside the
record; see WorkerThreadRecord.set_field.
"""
from __future__ import annotations
import math
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Optional, Tuple, Union

Number = Union[int, float]

UINT64_MAX = 2 ** 64 - 1
MEGA = 1_000_000


def as_count(raw: str) -> int:
    value = int(raw)
    if value < 0 or value > UINT64_MAX:
        raise OverflowError(f'counter out of range: {raw}')
    return value


def as_float(raw: str) -> float:
    value = float(raw)
    if not math.isfinite(value):
        raise OverflowError(f'non-finite value: {raw}')
    return value


def mcycles(raw: str) -> int:
    """Convert a fractional mega-cycles figure to a truncated cycle count."""
    return as_count(str(int(as_float(raw) * MEGA)))


@dataclass(frozen=True)
class Capture:
    field: str
    group: int
    convert: Callable[[str], Number]


@dataclass(frozen=True)
class FieldMatch:
    family: str
    values: Dict[str, Number]
    skipped: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FieldMatcher:
    family: str
    pattern: re.Pattern
    captures: Tuple[Capture, ...] = field(default_factory=tuple)

    def match(self, line: str) -> Optional[FieldMatch]:
        m = self.pattern.search(line)
        if not m:
            return None
        values: Dict[str, Number] = {}
        skipped = []
        for cap in self.captures:
            raw = m.group(cap.group)
            if raw is None:  # optional trailing qualifier absent
                continue
            try:
                values[cap.field] = cap.convert(raw)
            except (ValueError, OverflowError):
                skipped.append(cap.field)
        return FieldMatch(self.family, values, tuple(skipped))


# Optional indentation and "- " bullet used by newer pmd-perf-show output.
_LEAD = r'^\s*(?:-\s*)?'


def _m(family: str, pattern: str, *captures: Tuple[str, int, Callable[[str], Number]]) -> FieldMatcher:
    return FieldMatcher(
        family,
        re.compile(_LEAD + pattern, re.IGNORECASE),
        tuple(Capture(f, g, c) for f, g, c in captures),
    )


DEFAULT_MATCHERS: Tuple[FieldMatcher, ...] = (
    # CPU / cycle accounting
    _m('cpu', r'(?:cpu|processor) utilization:\s+([\d.]+)\s*%',
       ('cpu_utilization', 1, as_float)),
    _m('cycles', r'idle cycles:\s+([\d.]+)\s*%.*?\(\s*([\d.]+)\s*Mcycles',
       ('idle_cycles', 2, mcycles)),
    _m('cycles', r'busy cycles:\s+([\d.]+)\s*%.*?\(\s*([\d.]+)\s*Mcycles',
       ('cpu_utilization', 1, as_float), ('busy_cycles', 2, mcycles)),
    _m('cycles', r'idle cycles:\s+(\d+)(?:\s+\(\s*([\d.]+)\s*%\))?',
       ('idle_cycles', 1, as_count)),
    _m('cycles', r'processing cycles:\s+(\d+)(?:\s+\(\s*([\d.]+)\s*%\))?',
       ('busy_cycles', 1, as_count), ('cpu_utilization', 2, as_float)),
    _m('cycles', r'(?:used tsc|total) cycles:\s+(\d+)',
       ('total_cycles', 1, as_count)),
    _m('cycles', r'cycles/it:\s+([\d.]+)',
       ('cycles_per_iteration', 1, as_float)),
    _m('cycles', r'cycles/pkt:\s+([\d.]+)',
       ('cycles_per_packet', 1, as_float)),
    _m('cycles', r'avg\.? cycles per packet:\s+([\d.]+)',
       ('cycles_per_packet', 1, as_float)),
    # Iteration counts
    _m('iterations', r'iterations:\s+(\d+)(?:\s+\(\s*([\d.]+)\s*us/it\))?',
       ('iterations', 1, as_count), ('us_per_iteration', 2, as_float)),
    _m('iterations', r'sleep iterations:\s+(\d+)',
       ('sleep_iterations', 1, as_count)),
    _m('iterations', r'busy iterations:\s+(\d+)',
       ('busy_iterations', 1, as_count)),
    _m('anomaly', r'suspicious iterations:\s+(\d+)(?:\s+\(\s*([\d.]+)\s*%\))?',
       ('suspicious_iterations', 1, as_count), ('suspicious_percent', 2, as_float)),
    # Throughput and batch sizes
    _m('batches', r'pkts/it:\s+([\d.]+)',
       ('packets_per_iteration', 1, as_float)),
    _m('batches', r'avg pkts/batch:\s+([\d.]+)',
       ('packets_per_batch', 1, as_float)),
    _m('batches', r'avg\.? packets per output batch:\s+([\d.]+)',
       ('avg_tx_batch_size', 1, as_float)),
    _m('batches', r'rx batches:\s+(\d+)(?:.*?avg:\s+([\d.]+))?(?:.*?max:\s+(\d+))?',
       ('rx_batches', 1, as_count), ('avg_rx_batch_size', 2, as_float), ('max_rx_batch_size', 3, as_count)),
    _m('batches', r'tx batches:\s+(\d+)(?:.*?(?:avg:\s+|\(\s*)([\d.]+))?',
       ('tx_batches', 1, as_count), ('avg_tx_batch_size', 2, as_float)),
    _m('batches', r'(?:rx packets|packets received):\s+(\d+)',
       ('rx_packets', 1, as_count)),
    _m('batches', r'tx packets:\s+(\d+)',
       ('tx_packets', 1, as_count)),
    _m('batches', r'total packets:\s+(\d+)',
       ('total_packets', 1, as_count)),
    # vhost queueing
    _m('queue', r'(?:avg\s+)?max vhost qlen:\s+(\d+)',
       ('max_vhost_qlen', 1, as_count)),
    _m('queue', r'avg vhost qlen:\s+([\d.]+)',
       ('avg_vhost_qlen', 1, as_float)),
    _m('queue', r'vhost queue full:\s+(\d+)',
       ('vhost_queue_full', 1, as_count)),
    _m('queue', r'vhost tx retries:\s+(\d+)',
       ('vhost_tx_retries', 1, as_count)),
    _m('queue', r'vhost tx contention:\s+(\d+)',
       ('vhost_tx_contention', 1, as_count)),
    _m('queue', r'vhost tx irqs:\s+(\d+)',
       ('vhost_tx_irqs', 1, as_count)),
    # Upcalls
    _m('upcalls', r'upcalls:\s+(\d+)(?:\s+\(\s*([\d.]+)\s*us\s+([\d.]+)\s*Mcycles\))?',
       ('upcalls', 1, as_count), ('upcall_cycles', 3, mcycles)),
    _m('upcalls', r'avg upcall cycles:\s+([\d.]+)',
       ('avg_upcall_cycles', 1, as_float)),
    # Datapath classifier hit/miss
    _m('cache', r'exact match hit:\s+(\d+)',
       ('exact_match_hit', 1, as_count)),
    _m('cache', r'masked hit:\s+(\d+)',
       ('masked_hit', 1, as_count)),
    _m('cache', r'(?:miss|miss with success upcall):\s+(\d+)',
       ('miss', 1, as_count)),
    _m('cache', r'(?:lost|lost upcalls|miss with failed upcall):\s+(\d+)',
       ('lost', 1, as_count)),
    # Flow cache tiers
    _m('cache', r'emc hits:\s+(\d+)(?:\s+\(\s*([\d.]+)\s*%)?',
       ('emc.hits', 1, as_count), ('emc.hit_rate', 2, as_float)),
    _m('cache', r'emc inserts:\s+(\d+)',
       ('emc.inserts', 1, as_count)),
    _m('cache', r'emc hit rate:\s+([\d.]+)\s*%',
       ('emc.hit_rate', 1, as_float)),
    _m('cache', r'smc hits:\s+(\d+)(?:\s+\(\s*([\d.]+)\s*%)?',
       ('smc.hits', 1, as_count), ('smc.hit_rate', 2, as_float)),
    _m('cache', r'smc hit rate:\s+([\d.]+)\s*%',
       ('smc.hit_rate', 1, as_float)),
    _m('cache', r'megaflow hits:\s+(\d+)(?:\s+\(\s*([\d.]+)\s*%)?',
       ('megaflow.hits', 1, as_count), ('megaflow.hit_rate', 2, as_float)),
    _m('cache', r'megaflow hit rate:\s+([\d.]+)\s*%',
       ('megaflow.hit_rate', 1, as_float)),
    _m('cache', r'megaflow misses:\s+(\d+)',
       ('megaflow_misses', 1, as_count)),
    _m('cache', r'(?:flow cache )?lookups:\s+(\d+)',
       ('flow_cache_lookups', 1, as_count)),
)


class FieldMatcherSet:
    """Ordered matcher table; declaration order decides overlaps."""

    def __init__(self, matchers: Iterable[FieldMatcher] = DEFAULT_MATCHERS):
        self._matchers: Tuple[FieldMatcher, ...] = tuple(matchers)

    def __iter__(self):
        return iter(self._matchers)

    def __len__(self) -> int:
        return len(self._matchers)

    def match(self, line: str) -> Optional[FieldMatch]:
        for matcher in self._matchers:
            fm = matcher.match(line)
            if fm is not None:
                return fm
        return None

    def with_matchers(self, extra: Iterable[FieldMatcher], first: bool = False) -> 'FieldMatcherSet':
        """Return a new set with ``extra`` appended (or prepended when ``first``)."""
        extra = tuple(extra)
        return FieldMatcherSet(extra + self._matchers if first else self._matchers + extra)

__all__ = [
    "Capture",
    "FieldMatch",
    "FieldMatcher",
    "FieldMatcherSet",
    "DEFAULT_MATCHERS",
    "as_count",
    "as_float",
    "mcycles",
]
