"""
State collector - live status for every cataloged workload.

Status queries are fanned out over a bounded thread pool. Whatever has not
settled when the batch deadline expires is reported as Unknown; the pool is
abandoned without waiting so a hung ssh session never holds up the response.
"""

import concurrent.futures
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from catalog import Catalog, CatalogEntry
from gateway import HypervisorGateway
from models import StatusReport, Workload, utcnow
from settings import Settings

logger = logging.getLogger(__name__)


@dataclass
class Collection:
    """One collection cycle: workloads in catalog order plus failure causes."""

    workloads: List[Workload]
    checked_at: datetime
    errors: Dict[int, str] = field(default_factory=dict)


class StateCollector:
    def __init__(self, catalog: Catalog, gateway: HypervisorGateway, settings: Settings):
        self.catalog = catalog
        self.gateway = gateway
        self.settings = settings

    def _query(self, entry: CatalogEntry) -> StatusReport:
        return self.gateway.get_status(entry.id, entry.kind, self.settings.status_timeout)

    def collect(self, entries: Optional[List[CatalogEntry]] = None) -> Collection:
        entries = list(self.catalog.all() if entries is None else entries)
        checked_at = utcnow()
        reports: Dict[int, StatusReport] = {}
        errors: Dict[int, str] = {}
        if not entries:
            return Collection(workloads=[], checked_at=checked_at)

        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.settings.max_concurrency, len(entries)),
            thread_name_prefix="status",
        )
        try:
            future_to_entry = {executor.submit(self._query, e): e for e in entries}
            done, pending = concurrent.futures.wait(
                future_to_entry, timeout=self.settings.batch_deadline
            )
            for future in done:
                entry = future_to_entry[future]
                try:
                    reports[entry.id] = future.result()
                except Exception as e:
                    errors[entry.id] = str(e)
                    logger.warning(f"[{entry.id}] status query failed: {e}")
            for future in pending:
                entry = future_to_entry[future]
                future.cancel()
                errors[entry.id] = f"no answer within {self.settings.batch_deadline:g}s batch deadline"
                logger.warning(f"[{entry.id}] status query abandoned at batch deadline")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        workloads = []
        for entry in entries:
            report = reports.get(entry.id)
            if report is None:
                workloads.append(Workload.unknown(entry, checked_at))
            else:
                workloads.append(Workload.from_report(entry, report, checked_at))
        return Collection(workloads=workloads, checked_at=checked_at, errors=errors)

    def status(self, entry: CatalogEntry) -> Workload:
        """Query one workload. Unlike `collect`, gateway errors propagate."""
        report = self._query(entry)
        return Workload.from_report(entry, report, utcnow())
