import time

from catalog import Catalog, container, vm
from errors import GatewayError, GatewayErrorKind
from models import StatusReport, WorkloadStatus
from settings import Settings
from state_collector import StateCollector


def test_collect_preserves_catalog_order(settings, gateway, catalog):
    gateway.statuses[101] = StatusReport(WorkloadStatus.RUNNING, 12.5, 40.0, 3 * 3600 + 5 * 60)
    gateway.statuses[500] = StatusReport(WorkloadStatus.RUNNING, 3.0, 55.0, 90061)

    collection = StateCollector(catalog, gateway, settings).collect()

    assert [w.id for w in collection.workloads] == [e.id for e in catalog.all()]
    by_id = {w.id: w for w in collection.workloads}
    assert by_id[101].status is WorkloadStatus.RUNNING
    assert by_id[101].cpu_usage == 12.5
    assert by_id[101].uptime == "3h 5m"
    assert by_id[500].uptime == "1d 1h 1m"
    assert by_id[102].status is WorkloadStatus.STOPPED
    assert by_id[102].uptime == "-"
    assert collection.errors == {}


def test_failed_query_is_unknown_and_isolated(settings, gateway, catalog):
    gateway.statuses[101] = StatusReport(WorkloadStatus.RUNNING)
    gateway.statuses[214] = GatewayError(GatewayErrorKind.PERMISSION_DENIED, "pct status 214: permission denied")

    collection = StateCollector(catalog, gateway, settings).collect()

    by_id = {w.id: w for w in collection.workloads}
    assert by_id[214].status is WorkloadStatus.UNKNOWN
    assert by_id[214].cpu_usage == 0.0
    assert by_id[214].uptime == "Unknown"
    assert by_id[101].status is WorkloadStatus.RUNNING
    assert "permission denied" in collection.errors[214]
    assert list(collection.errors) == [214]


def test_hung_query_does_not_block_the_batch(gateway):
    catalog = Catalog([container(i, f"ct{i}") for i in range(101, 110)] + [vm(500, "vm")])
    for entry in catalog:
        gateway.statuses[entry.id] = StatusReport(WorkloadStatus.RUNNING)
    gateway.hang.add(105)
    settings = Settings(batch_deadline=0.5, max_concurrency=10)

    start = time.monotonic()
    collection = StateCollector(catalog, gateway, settings).collect()
    elapsed = time.monotonic() - start

    assert elapsed < 3
    statuses = {w.id: w.status for w in collection.workloads}
    assert statuses[105] is WorkloadStatus.UNKNOWN
    assert all(s is WorkloadStatus.RUNNING for i, s in statuses.items() if i != 105)
    assert "deadline" in collection.errors[105]
    gateway.release.set()


def test_collect_subset(settings, gateway, catalog):
    entries = [catalog.lookup(611), catalog.lookup(230)]
    collection = StateCollector(catalog, gateway, settings).collect(entries)
    assert [w.id for w in collection.workloads] == [611, 230]


def test_overview_totals(engine, gateway):
    gateway.statuses[101] = StatusReport(WorkloadStatus.RUNNING)
    gateway.statuses[230] = StatusReport(WorkloadStatus.RUNNING)
    gateway.statuses[500] = StatusReport(WorkloadStatus.STOPPED)
    gateway.statuses[900] = StatusReport(WorkloadStatus.RUNNING)

    overview = engine.get_system_overview()

    assert overview.total_containers == 51
    assert overview.running_containers == 2
    assert overview.total_vms == 3
    assert overview.running_vms == 1
    assert [w.id for w in overview.vms] == [500, 611, 900]
    data = overview.to_dict()
    assert data["containers"][0]["status"] in ("Running", "Stopped", "Unknown")
    assert data["vms"][0]["kind"] == "VirtualMachine"
