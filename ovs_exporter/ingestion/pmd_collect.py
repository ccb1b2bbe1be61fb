"""Multi-source PMD collection.

Primary source ``dpif-netdev/pmd-perf-show`` yields the base records.
``dpif-netdev/pmd-stats-show`` only fills fields the primary left unset,
and ``coverage/show`` supplies the drop counters. The three steps run in
that order within one call.

Failure policy:

* primary exits non-zero -> userspace datapath or perf metrics inactive,
  empty record list, no error.
* primary transport failure -> reported in ``MergeResult.primary_error``;
  no records, drop counters still collected.
* secondary failure of any kind -> warning, primary-only records.
* drop-counter failure -> reported in ``MergeResult.drop_error``; records
  are still returned.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..debug_util import dbg, logger
from .appctl import CommandError, CommandTransportError, CommandUnavailableError
from .parser import PmdTextParser, WorkerThreadRecord, parse_drop_counters

PRIMARY_COMMAND = 'dpif-netdev/pmd-perf-show'
SECONDARY_COMMAND = 'dpif-netdev/pmd-stats-show'
DROP_COUNTER_COMMAND = 'coverage/show'


@dataclass
class MergeResult:
    records: List[WorkerThreadRecord] = field(default_factory=list)
    drop_counters: Dict[str, int] = field(default_factory=dict)
    drop_error: Optional[CommandError] = None
    feature_absent: bool = False
    primary_error: Optional[CommandError] = None
    enrichment_error: Optional[str] = None
    enriched_fields: int = 0
    # raw coverage/show output, reused for the ovs-vswitchd coverage view
    coverage_text: Optional[str] = None


def dedupe_by_identity(records: List[WorkerThreadRecord]) -> List[WorkerThreadRecord]:
    """Keep the first record per (numa, pmd) identity, preserving order."""
    out: List[WorkerThreadRecord] = []
    seen = set()
    for rec in records:
        if rec.identity in seen:
            dbg(f'pmd_duplicate_dropped numa={rec.numa_id} pmd={rec.pmd_id}')
            continue
        seen.add(rec.identity)
        out.append(rec)
    return out


def enrich_records(base: List[WorkerThreadRecord], extra: List[WorkerThreadRecord]) -> int:
    """Fill fields missing on ``base`` from same-identity ``extra`` records.

    Records in ``extra`` without a base counterpart are ignored. Returns the
    number of fields copied.
    """
    index = {rec.identity: rec for rec in base}
    copied = 0
    for rec in dedupe_by_identity(extra):
        target = index.get(rec.identity)
        if target is None:
            continue
        copied += len(target.merge_missing(rec))
        target.finalize()
    return copied


class PmdCollector:
    def __init__(self, runner, parser: Optional[PmdTextParser] = None):
        self.runner = runner
        self.parser = parser or PmdTextParser()

    def build_snapshot_records(self) -> MergeResult:
        result = MergeResult()
        try:
            primary_text = self.runner.run(PRIMARY_COMMAND)
        except CommandUnavailableError as e:
            dbg(f'pmd_feature_absent reason={e}')
            result.feature_absent = True
            primary_text = None
        except CommandTransportError as e:
            logger.warning('pmd_primary_failed command=%s error=%s', PRIMARY_COMMAND, e)
            result.primary_error = e
            primary_text = None
        if primary_text is not None:
            result.records = dedupe_by_identity(self.parser.parse(primary_text))
        if result.records:
            self._enrich(result)
        self._drop_counters(result)
        dbg(f'pmd_records count={len(result.records)} enriched_fields={result.enriched_fields} '
            f'drop_reasons={len(result.drop_counters)}')
        return result

    def _enrich(self, result: MergeResult) -> None:
        try:
            secondary_text = self.runner.run(SECONDARY_COMMAND)
            result.enriched_fields = enrich_records(result.records, self.parser.parse(secondary_text))
        except Exception as e:  # enrichment is best effort
            result.enrichment_error = f'{type(e).__name__}:{e}'
            logger.warning('pmd_enrichment_failed command=%s error=%s', SECONDARY_COMMAND, e)

    def _drop_counters(self, result: MergeResult) -> None:
        try:
            text = self.runner.run(DROP_COUNTER_COMMAND)
        except CommandError as e:
            result.drop_error = e
            return
        result.coverage_text = text
        result.drop_counters = parse_drop_counters(text)

__all__ = [
    "MergeResult",
    "PmdCollector",
    "dedupe_by_identity",
    "enrich_records",
    "PRIMARY_COMMAND",
    "SECONDARY_COMMAND",
    "DROP_COUNTER_COMMAND",
]
