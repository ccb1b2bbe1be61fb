from __future__ import annotations
from typing import Dict, List, Optional

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from .debug_util import configure_logging, dbg, logger
from .exposition.adapter import SnapshotCollector, build_registry, render_latest
from .exposition.schema_spec import MetricTable, build_metric_table
from .ingestion.appctl import AppctlRunner
from .ingestion.ovsdb_access import SystemIdError, VsctlDatabase, discover_system_id
from .ingestion.pmd_collect import PmdCollector
from .settings import ExporterSettings
from .snapshot.cache import Snapshot, SnapshotCache

"""HTTP surface of the exporter.

GET /                 service status
GET /healthz          last snapshot health (up, errors, generation)
GET <telemetry path>  Prometheus text exposition; drives the rate-limited refresh
GET /snapshot         JSON summary of the last published snapshot (no refresh)
"""

SERVICE_NAME = "ovs-pmd-exporter"

# ----------------- API Models -----------------

class HealthResponse(BaseModel):
    status: str  # ok | degraded
    up: int
    generation: int
    last_poll: Optional[float] = None
    next_poll: float
    collection_errors: List[str] = []

class CacheTierModel(BaseModel):
    hits: int
    inserts: Optional[int] = None
    hit_rate: float

class PmdRecordModel(BaseModel):
    numa_id: str
    core_id: str
    pmd_id: str
    fields: Dict[str, float]
    caches: Dict[str, CacheTierModel] = {}
    histograms: Dict[str, Dict[str, int]] = {}
    derived: List[str] = []

class SnapshotResponse(BaseModel):
    system_id: str
    created_at: float
    generation: int
    up: int
    requests: int
    failed_requests: int
    next_poll: float
    pmd_feature_absent: bool
    records: List[PmdRecordModel]
    drop_counters: Dict[str, int]
    collection_errors: List[str] = []

def _record_model(rec) -> PmdRecordModel:
    return PmdRecordModel(
        numa_id=rec.numa_id,
        core_id=rec.core_id,
        pmd_id=rec.pmd_id,
        fields={k: float(v) for k, v in rec.numeric_fields().items()},
        caches={t: CacheTierModel(hits=c.hits, inserts=c.inserts, hit_rate=c.hit_rate) for t, c in rec.caches.items()},
        histograms={h: dict(b) for h, b in rec.histograms.items() if b},
        derived=sorted(rec.derived),
    )

def snapshot_summary(snapshot: Snapshot, system_id: str) -> SnapshotResponse:
    return SnapshotResponse(
        system_id=system_id,
        created_at=snapshot.created_at,
        generation=snapshot.generation,
        up=snapshot.up,
        requests=snapshot.requests,
        failed_requests=snapshot.failed_requests,
        next_poll=snapshot.next_poll,
        pmd_feature_absent=snapshot.pmd_feature_absent,
        records=[_record_model(r) for r in snapshot.records],
        drop_counters=dict(snapshot.drop_counters),
        collection_errors=list(snapshot.collection_errors),
    )

def create_app(cache: SnapshotCache, table: Optional[MetricTable] = None, system_id: str = "unknown",
               telemetry_path: str = "/metrics", rundir: str = "") -> FastAPI:
    table = table or build_metric_table()
    collector = SnapshotCollector(cache, table, system_id, rundir)
    registry = build_registry(collector)
    app = FastAPI(title=SERVICE_NAME)

    @app.get("/")
    def root():
        return {"status": "ok", "service": SERVICE_NAME, "telemetry_path": telemetry_path}

    @app.get("/healthz", response_model=HealthResponse)
    def healthz():
        snap = cache.get_snapshot()
        return HealthResponse(
            status="ok" if snap.up and not snap.collection_errors else "degraded",
            up=snap.up,
            generation=snap.generation,
            last_poll=cache.last_poll,
            next_poll=snap.next_poll,
            collection_errors=list(snap.collection_errors),
        )

    @app.get("/snapshot", response_model=SnapshotResponse)
    def snapshot():
        return snapshot_summary(cache.get_snapshot(), system_id)

    @app.get(telemetry_path)
    def metrics():
        return Response(content=render_latest(registry), media_type=CONTENT_TYPE_LATEST)

    return app

def build_cache(settings: ExporterSettings):
    appctl = AppctlRunner(settings.appctl_bin, settings.timeout)
    vsctl = AppctlRunner(settings.vsctl_bin, settings.timeout)
    try:
        system_id = discover_system_id(vsctl, settings.system_id_file)
    except SystemIdError as e:
        logger.warning('system_id_unavailable error=%s', e)
        system_id = "unknown"
    database = VsctlDatabase(vsctl, appctl, settings.rundir)
    cache = SnapshotCache(database, PmdCollector(appctl), settings.poll_interval, settings.max_workers)
    return cache, system_id

def main() -> None:
    import uvicorn

    settings = ExporterSettings.from_env()
    configure_logging(settings.log_level)
    cache, system_id = build_cache(settings)
    app = create_app(cache, build_metric_table(), system_id, settings.telemetry_path, settings.rundir)
    logger.info('starting %s listen=%s:%s path=%s system_id=%s poll_interval=%s',
                SERVICE_NAME, settings.listen_address, settings.port, settings.telemetry_path,
                system_id, settings.poll_interval)
    dbg(f'settings={settings}')
    uvicorn.run(app, host=settings.listen_address, port=settings.port, log_level=settings.log_level.replace('warn', 'warning'))

if __name__ == "__main__":
    main()

__all__ = ["create_app", "build_cache", "snapshot_summary", "main"]
