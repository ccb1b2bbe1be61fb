"""Rate-limited snapshot cache.

Each scrape calls ``refresh``; at most one rebuild runs per poll interval
and at most one at any time. A rebuild fans the independent
sub-collections out over a thread pool, assembles a new immutable
Snapshot and publishes it with a single attribute assignment. Readers
calling ``get_snapshot`` never take the rebuild lock and always see the
last fully published snapshot.
"""
from __future__ import annotations
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..debug_util import dbg, logger
from ..ingestion.ovsdb_access import (
    COMPONENTS, DatapathInfo, InterfaceInfo, ProcessInfo, SystemInfo, parse_coverage,
)
from ..ingestion.parser import WorkerThreadRecord
from ..ingestion.pmd_collect import MergeResult

PMD_COMPONENT = 'ovs-vswitchd'


def _empty() -> Mapping:
    return MappingProxyType({})


@dataclass(frozen=True)
class Snapshot:
    """One published collection cycle.

    Frozen and shared between readers without copying. The mappings are
    read-only proxies; the WorkerThreadRecord objects are not, so nothing
    may mutate a record once its snapshot has been published.
    """

    created_at: float
    generation: int = 0
    records: Tuple[WorkerThreadRecord, ...] = ()
    drop_counters: Mapping[str, int] = field(default_factory=_empty)
    up: int = 0
    failed_requests: int = 0
    requests: int = 0
    next_poll: float = 0.0
    system: Optional[SystemInfo] = None
    processes: Tuple[ProcessInfo, ...] = ()
    interfaces: Tuple[InterfaceInfo, ...] = ()
    coverage: Mapping[str, Mapping[str, Mapping[str, float]]] = field(default_factory=_empty)
    memory: Mapping[str, Mapping[str, float]] = field(default_factory=_empty)
    datapaths: Tuple[DatapathInfo, ...] = ()
    pmd_feature_absent: bool = False
    collection_errors: Tuple[str, ...] = field(default_factory=tuple)


def _freeze(d: Dict[str, Any]) -> Mapping:
    return MappingProxyType(dict(d))


class SnapshotCache:
    def __init__(self, database, pmd_collector, poll_interval: float = 15,
                 max_workers: int = 4, clock: Callable[[], float] = time.time):
        self.database = database
        self.pmd_collector = pmd_collector
        self.poll_interval = poll_interval
        self.max_workers = max(1, max_workers)
        self._clock = clock
        self._snapshot = Snapshot(created_at=0.0)
        self._rebuild_lock = threading.Lock()
        self._next_allowed = 0.0
        self._last_poll: Optional[float] = None
        # cumulative, only touched while holding the rebuild lock
        self._requests = 0
        self._failed = 0
        self.rebuilds = 0

    @property
    def next_allowed(self) -> float:
        return self._next_allowed

    @property
    def last_poll(self) -> Optional[float]:
        return self._last_poll

    def get_snapshot(self) -> Snapshot:
        return self._snapshot

    def refresh(self, now: Optional[float] = None) -> bool:
        """Rebuild if the poll interval elapsed and no rebuild is running.

        Returns True when a new snapshot was published.
        """
        now = self._clock() if now is None else now
        if now < self._next_allowed:
            return False
        if not self._rebuild_lock.acquire(blocking=False):
            dbg('snapshot_refresh skipped reason=rebuild_in_flight')
            return False
        try:
            if now < self._next_allowed:
                return False
            snapshot = self._build(now)
            self._snapshot = snapshot
            self._last_poll = now
            self._next_allowed = now + self.poll_interval
            self.rebuilds += 1
            return True
        finally:
            self._rebuild_lock.release()

    def _tasks(self) -> Dict[str, Callable[[], Any]]:
        db = self.database
        tasks: Dict[str, Callable[[], Any]] = {
            'system': db.system_info,
            'interfaces': db.interfaces,
            'datapaths': db.datapaths,
            'pmd': self.pmd_collector.build_snapshot_records,
        }
        for component in COMPONENTS:
            tasks[f'process:{component}'] = (lambda c=component: db.process_info(c))
            if component != PMD_COMPONENT:
                # ovs-vswitchd coverage comes from the drop counter fetch
                tasks[f'coverage:{component}'] = (lambda c=component: db.coverage(c))
            tasks[f'memory:{component}'] = (lambda c=component: db.memory(c))
        return tasks

    def _build(self, now: float) -> Snapshot:
        t0 = time.time()
        tasks = self._tasks()
        results: Dict[str, Any] = {}
        errors: List[str] = []
        workers = min(self.max_workers, len(tasks))
        with ThreadPoolExecutor(max_workers=workers) as ex:
            fut_map = {ex.submit(fn): name for name, fn in tasks.items()}
            for fut in as_completed(fut_map):
                name = fut_map[fut]
                self._requests += 1
                try:
                    results[name] = fut.result()
                except Exception as e:  # one failed sub-collection must not stop the others
                    self._failed += 1
                    errors.append(f'{name}:{type(e).__name__}:{e}')
                    logger.error('collection_failed name=%s error=%s', name, e)

        merged: MergeResult = results.get('pmd') or MergeResult()
        if 'pmd' in results:
            self._requests += 1
            if merged.primary_error is not None:
                self._failed += 1
                errors.append(f'pmd:{type(merged.primary_error).__name__}:{merged.primary_error}')
                logger.error('collection_failed name=pmd error=%s', merged.primary_error)
            if merged.drop_error is not None:
                self._failed += 1
                errors.append(f'drop_counters:{type(merged.drop_error).__name__}:{merged.drop_error}')
                logger.error('collection_failed name=drop_counters error=%s', merged.drop_error)

        up = 0 if any(e.split(':', 1)[0] in ('system', 'process') for e in errors) else 1
        coverage = {c: results[f'coverage:{c}'] for c in COMPONENTS if f'coverage:{c}' in results}
        if merged.coverage_text is not None:
            coverage[PMD_COMPONENT] = parse_coverage(merged.coverage_text)
        processes = tuple(results[f'process:{c}'] for c in COMPONENTS if f'process:{c}' in results)
        snapshot = Snapshot(
            created_at=now,
            generation=self._snapshot.generation + 1,
            records=tuple(merged.records),
            drop_counters=_freeze(merged.drop_counters),
            up=up,
            failed_requests=self._failed,
            requests=self._requests,
            next_poll=now + self.poll_interval,
            system=results.get('system'),
            processes=processes,
            interfaces=tuple(results.get('interfaces') or ()),
            coverage=_freeze(coverage),
            memory=_freeze({c: results[f'memory:{c}'] for c in COMPONENTS if f'memory:{c}' in results}),
            datapaths=tuple(results.get('datapaths') or ()),
            pmd_feature_absent=merged.feature_absent,
            collection_errors=tuple(sorted(errors)),
        )
        dbg(f'snapshot_built generation={snapshot.generation} records={len(snapshot.records)} '
            f'errors={len(errors)} up={up} dt_ms={int((time.time() - t0) * 1000)}')
        return snapshot

__all__ = ["Snapshot", "SnapshotCache"]
