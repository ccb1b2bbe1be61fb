import re

import pytest

from ovs_exporter.ingestion.matchers import (
    DEFAULT_MATCHERS, FieldMatcher, FieldMatcherSet, Capture, as_count, as_float, mcycles,
)

matchers = FieldMatcherSet()


@pytest.mark.parametrize('line,family,expected', [
    ('  iterations: 100 (1.0 us/it)', 'iterations', {'iterations': 100, 'us_per_iteration': 1.0}),
    ('  Iterations:             50000000  (0.04 us/it)', 'iterations', {'iterations': 50000000, 'us_per_iteration': 0.04}),
    ('  sleep iterations: 23456 (19.0%)', 'iterations', {'sleep_iterations': 23456}),
    ('  - busy iterations:      10000000  ( 20.0 % of used cycles)', 'iterations', {'busy_iterations': 10000000}),
    ('  cycles/it: 500.0 (0.05 Mcycles)', 'cycles', {'cycles_per_iteration': 500.0}),
    ('  busy cycles: 75.5% (3804.25 Mcycles, 31 us/it)', 'cycles', {'cpu_utilization': 75.5, 'busy_cycles': 3804250000}),
    ('  idle cycles: 1234 (95.00%)', 'cycles', {'idle_cycles': 1234}),
    ('  processing cycles: 66 (5.00%)', 'cycles', {'busy_cycles': 66, 'cpu_utilization': 5.0}),
    ('  - Used TSC cycles:    4600000000  (100.0 % of total cycles)', 'cycles', {'total_cycles': 4600000000}),
    ('  rx batches: 9800 avg: 31.8 max: 32', 'batches', {'rx_batches': 9800, 'avg_rx_batch_size': 31.8, 'max_rx_batch_size': 32}),
    ('  Tx batches:             10000000  (32.00 pkts/batch)', 'batches', {'tx_batches': 10000000, 'avg_tx_batch_size': 32.0}),
    ('  packets received: 1000', 'batches', {'rx_packets': 1000}),
    ('  avg max vhost qlen: 64', 'queue', {'max_vhost_qlen': 64}),
    ('  upcalls: 42 (12.5 us 0.5 Mcycles)', 'upcalls', {'upcalls': 42, 'upcall_cycles': 500000}),
    ('  - Upcalls:                     0  (  0.0 %, 0.0 us/upcall)', 'upcalls', {'upcalls': 0}),
    ('  - Lost upcalls:                0  (  0.0 %)', 'cache', {'lost': 0}),
    ('  miss with success upcall: 10', 'cache', {'miss': 10}),
    ('  miss with failed upcall: 3', 'cache', {'lost': 3}),
    ('  - EMC hits:            310000000  ( 96.9 %)', 'cache', {'emc.hits': 310000000, 'emc.hit_rate': 96.9}),
    ('  emc hits: 800', 'cache', {'emc.hits': 800}),
    ('  suspicious iterations: 12 (0.01%)', 'anomaly', {'suspicious_iterations': 12, 'suspicious_percent': 0.01}),
])
def test_known_lines(line, family, expected):
    fm = matchers.match(line)
    assert fm is not None, f'no match for {line!r}'
    assert fm.family == family
    assert fm.values == expected


@pytest.mark.parametrize('line', [
    'Time: 13:34:40.121',
    '  Datapath passes:       320000000  (1.00 passes/pkt)',
    '  - idle iterations:      40000000  ( 80.0 % of used cycles)',
    '  avg processing cycles per packet: 12079.80 (3804250000/314921)',
    '',
    'pmd thread numa_id 0 core_id 2:',
])
def test_unrecognized_lines_are_ignored(line):
    assert matchers.match(line) is None


def test_mcycles_truncates_to_integer():
    assert mcycles('0.05') == 50000
    assert mcycles('1.0000009') == 1000000
    assert isinstance(mcycles('2'), int)


def test_conversion_failures_raise_for_single_field():
    with pytest.raises(ValueError):
        as_float('1.2.3')
    with pytest.raises(OverflowError):
        as_count(str(2 ** 64))
    assert as_count(str(2 ** 64 - 1)) == 2 ** 64 - 1


def test_bad_capture_is_skipped_not_fatal():
    fm = matchers.match('  cycles/it: 1.2.3')
    assert fm is not None
    assert fm.values == {}
    assert fm.skipped == ('cycles_per_iteration',)
    fm = matchers.match('  iterations: 99999999999999999999999 (1.0 us/it)')
    assert fm.values == {'us_per_iteration': 1.0}
    assert fm.skipped == ('iterations',)


def test_declaration_order_decides_overlap():
    extra = FieldMatcher('custom', re.compile(r'^\s*iterations:\s+(\d+)'), (Capture('custom_iterations', 1, as_count),))
    first = matchers.with_matchers([extra], first=True)
    last = matchers.with_matchers([extra])
    assert first.match('iterations: 5').family == 'custom'
    assert last.match('iterations: 5').family == 'iterations'
    assert len(first) == len(DEFAULT_MATCHERS) + 1
