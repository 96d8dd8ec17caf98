"""
Data model - snapshots, diagnostics records and operation results.

Everything here is rebuilt on demand and returned to the caller; nothing is
kept between polls.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional

from catalog import CatalogEntry, WorkloadKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return round(value.total_seconds(), 3)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class _Record:
    """Mixin giving dataclasses a JSON-ready dict form."""

    def to_dict(self) -> dict:
        return _jsonable(asdict(self))


class WorkloadStatus(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, text: str) -> "WorkloadStatus":
        """Map `pct status` / `qm status` output to a status."""
        lowered = text.lower()
        if "running" in lowered:
            return cls.RUNNING
        if "stopped" in lowered:
            return cls.STOPPED
        return cls.UNKNOWN


class ControlAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"

    @property
    def target_status(self) -> WorkloadStatus:
        return WorkloadStatus.STOPPED if self is ControlAction.STOP else WorkloadStatus.RUNNING


class ControlState(str, Enum):
    """States of one workload as seen by a control action."""

    RUNNING = "Running"
    STOPPED = "Stopped"
    UNKNOWN = "Unknown"
    TRANSITIONING = "Transitioning"


class ServiceAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    ENABLE = "enable"
    DISABLE = "disable"


class SuggestionSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class StatusReport(_Record):
    """Live state of one workload as reported by the hypervisor."""

    status: WorkloadStatus
    cpu_usage: float = 0.0
    memory_usage: float = 0.0
    uptime_seconds: Optional[int] = None


def format_uptime(seconds: Optional[int]) -> str:
    if seconds is None or seconds < 0:
        return "Unknown"
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    mins = (seconds % 3600) // 60
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    parts.append(f"{mins}m")
    return " ".join(parts)


@dataclass(frozen=True)
class Workload(_Record):
    id: int
    kind: WorkloadKind
    category: str
    name: str
    description: str
    status: WorkloadStatus
    cpu_usage: float
    memory_usage: float
    uptime: str
    last_checked: datetime

    @classmethod
    def from_report(cls, entry: CatalogEntry, report: StatusReport, checked: datetime) -> "Workload":
        return cls(
            id=entry.id,
            kind=entry.kind,
            category=entry.category,
            name=entry.name,
            description=entry.description,
            status=report.status,
            cpu_usage=max(0.0, float(report.cpu_usage)),
            memory_usage=max(0.0, float(report.memory_usage)),
            uptime=format_uptime(report.uptime_seconds) if report.status is WorkloadStatus.RUNNING else "-",
            last_checked=checked,
        )

    @classmethod
    def unknown(cls, entry: CatalogEntry, checked: datetime) -> "Workload":
        return cls(
            id=entry.id,
            kind=entry.kind,
            category=entry.category,
            name=entry.name,
            description=entry.description,
            status=WorkloadStatus.UNKNOWN,
            cpu_usage=0.0,
            memory_usage=0.0,
            uptime="Unknown",
            last_checked=checked,
        )


@dataclass(frozen=True)
class Service(_Record):
    name: str
    active: bool
    enabled: bool = False
    description: str = ""
    container_id: Optional[int] = None
    vm_id: Optional[int] = None

    @property
    def status(self) -> str:
        return "Active" if self.active else "Inactive"

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["status"] = self.status
        return data


@dataclass(frozen=True)
class Binary(_Record):
    name: str
    path: str
    exists: bool
    version: Optional[str] = None
    package: Optional[str] = None


@dataclass(frozen=True)
class ConfigFile(_Record):
    name: str
    path: str
    exists: bool
    readable: bool
    size_bytes: int
    writable: bool = False
    modified: str = "N/A"
    container_id: Optional[int] = None
    vm_id: Optional[int] = None


@dataclass(frozen=True)
class SystemHealth(_Record):
    disk_usage: float = 0.0
    memory_usage: float = 0.0
    cpu_load: float = 0.0
    network_status: str = "Unknown"
    uptime: str = "Unknown"


@dataclass(frozen=True)
class HostInfo(_Record):
    hostname: str = "Unknown"
    pve_version: str = "Unknown"
    kernel: str = "Unknown"
    os: str = "Unknown"
    cpu_model: str = "Unknown"
    cpu_cores: int = 0
    memory_total_gb: float = 0.0
    memory_used_gb: float = 0.0
    uptime: str = "Unknown"
    load_average: List[float] = field(default_factory=list)


@dataclass(frozen=True)
class ContainerDetails(_Record):
    id: int
    os_info: str
    systemd_services: List[str]


@dataclass(frozen=True)
class Suggestion(_Record):
    title: str
    description: str
    severity: SuggestionSeverity = SuggestionSeverity.INFO
    line: Optional[int] = None
    replacement: Optional[str] = None


@dataclass
class SystemOverview(_Record):
    total_containers: int
    running_containers: int
    total_vms: int
    running_vms: int
    containers: List[Workload]
    vms: List[Workload]
    last_updated: datetime
    errors: Dict[int, str] = field(default_factory=dict)

    @classmethod
    def from_workloads(
        cls, workloads: List[Workload], checked: datetime, errors: Optional[Dict[int, str]] = None
    ) -> "SystemOverview":
        containers = [w for w in workloads if w.kind is WorkloadKind.CONTAINER]
        vms = [w for w in workloads if w.kind is WorkloadKind.VIRTUAL_MACHINE]
        return cls(
            total_containers=len(containers),
            running_containers=sum(1 for w in containers if w.status is WorkloadStatus.RUNNING),
            total_vms=len(vms),
            running_vms=sum(1 for w in vms if w.status is WorkloadStatus.RUNNING),
            containers=containers,
            vms=vms,
            last_updated=checked,
            errors=dict(errors or {}),
        )


@dataclass
class MaintenanceOverview(_Record):
    services: List[Service]
    binaries: List[Binary]
    configs: List[ConfigFile]
    system_health: SystemHealth
    last_updated: datetime


# ── Operation results ─────────────────────────────────────────────────────────


@dataclass
class InstallResult(_Record):
    success: bool
    message: str
    installed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


@dataclass
class FixResult(_Record):
    success: bool
    message: str
    actions_taken: List[str] = field(default_factory=list)


@dataclass
class ScriptResult(_Record):
    success: bool
    output: str
    duration: timedelta
    name: str = ""
    exit_code: Optional[int] = None


@dataclass
class ControlResult(_Record):
    success: bool
    message: str
    workload_id: int
    kind: WorkloadKind
    action: ControlAction
    previous_status: WorkloadStatus
    state: ControlState
