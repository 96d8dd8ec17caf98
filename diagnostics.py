"""
Maintenance diagnostics - services, binaries and config files per target.

A probe that cannot answer still produces its row, with negative findings
(inactive, missing, unreadable), so callers always see the complete set.
Rows come back host first, then in catalog order, then in definition order.
"""

import concurrent.futures
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, TypeVar

from catalog import Catalog
from errors import GatewayError
from gateway import HOST, HypervisorGateway, Target
from host_indexer import HostIndexer
from models import Binary, ConfigFile, MaintenanceOverview, Service, SystemHealth, utcnow
from settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

SERVICE_NAME_RE = re.compile(r"^[A-Za-z0-9@_.:][A-Za-z0-9@_.:-]*$")
BINARY_NAME_RE = re.compile(r"^[A-Za-z0-9_.+][A-Za-z0-9_.+-]*$")


@dataclass(frozen=True)
class ServiceDefinition:
    name: str
    container_id: Optional[int] = None
    vm_id: Optional[int] = None

    @property
    def target(self) -> Target:
        if self.container_id is not None:
            return Target.container(self.container_id)
        if self.vm_id is not None:
            return Target.vm(self.vm_id)
        return HOST


@dataclass(frozen=True)
class BinaryDefinition:
    name: str
    package: Optional[str] = None


@dataclass(frozen=True)
class ConfigDefinition:
    path: str
    container_id: Optional[int] = None
    vm_id: Optional[int] = None

    @property
    def target(self) -> Target:
        if self.container_id is not None:
            return Target.container(self.container_id)
        if self.vm_id is not None:
            return Target.vm(self.vm_id)
        return HOST


SERVICE_DEFINITIONS: List[ServiceDefinition] = [
    ServiceDefinition("nginx"),
    ServiceDefinition("docker"),
    ServiceDefinition("ssh"),
    ServiceDefinition("sonarr", container_id=214),
    ServiceDefinition("radarr", container_id=215),
    ServiceDefinition("prowlarr", container_id=210),
    ServiceDefinition("qbittorrent", container_id=212),
    ServiceDefinition("plex", container_id=230),
    ServiceDefinition("jellyfin", container_id=231),
    ServiceDefinition("home-assistant", vm_id=500),
    ServiceDefinition("alexa-service", vm_id=611),
]

BINARY_DEFINITIONS: List[BinaryDefinition] = [
    BinaryDefinition("docker", "docker.io"),
    BinaryDefinition("systemctl", "systemd"),
    BinaryDefinition("nginx", "nginx"),
    BinaryDefinition("curl", "curl"),
    BinaryDefinition("jq", "jq"),
    BinaryDefinition("rsync", "rsync"),
    BinaryDefinition("smartctl", "smartmontools"),
    BinaryDefinition("pct", "pve-container"),
    BinaryDefinition("qm", "qemu-server"),
]

CONFIG_DEFINITIONS: List[ConfigDefinition] = [
    ConfigDefinition("/etc/nginx/nginx.conf"),
    ConfigDefinition("/etc/docker/daemon.json"),
    ConfigDefinition("/config/config.xml", container_id=214),
    ConfigDefinition("/config/config.xml", container_id=215),
    ConfigDefinition("/config/config.xml", container_id=210),
    ConfigDefinition("/config/qBittorrent/qBittorrent.conf", container_id=212),
    ConfigDefinition("/config/configuration.yaml", vm_id=500),
]

# Resolve a binary through $PATH, then the usual extra bin directories, and
# print its path followed by the first usable version line.
BINARY_PROBE_SCRIPT = r"""
p=$(command -v "$1" 2>/dev/null)
if [ -z "$p" ]; then
  for d in /usr/local/sbin /usr/sbin /sbin /opt/bin /opt/*/bin /snap/bin /usr/games /app/bin; do
    if [ -f "$d/$1" ] && [ -x "$d/$1" ]; then p="$d/$1"; break; fi
  done
fi
[ -n "$p" ] || exit 1
echo "$p"
for f in --version -v -V version; do
  v=$(timeout 5 "$p" $f 2>&1 </dev/null | head -n 1)
  case "$v" in ""|*[Uu]sage*|*[Uu]nknown*|*[Ii]nvalid*) continue ;; esac
  echo "$v"
  break
done
exit 0
""".strip()

# Exit 3 when absent, else print "<readable> <writable> <size> <mtime>".
CONFIG_PROBE_SCRIPT = r"""
[ -f "$1" ] || exit 3
r=0; w=0
[ -r "$1" ] && r=1
[ -w "$1" ] && w=1
echo "$r $w $(stat -c '%s %Y' "$1")"
""".strip()


def _format_mtime(epoch: str) -> str:
    try:
        return datetime.fromtimestamp(int(epoch), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, OverflowError, OSError):
        return "Unknown"


class MaintenanceDiagnostics:
    def __init__(
        self,
        catalog: Catalog,
        gateway: HypervisorGateway,
        settings: Settings,
        services: Sequence[ServiceDefinition] = SERVICE_DEFINITIONS,
        binaries: Sequence[BinaryDefinition] = BINARY_DEFINITIONS,
        configs: Sequence[ConfigDefinition] = CONFIG_DEFINITIONS,
        host_indexer: Optional[HostIndexer] = None,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.settings = settings
        self.service_specs = self._in_catalog_order(services)
        self.binary_specs = list(binaries)
        self.config_specs = self._in_catalog_order(configs)
        self.host_indexer = host_indexer or HostIndexer(gateway, settings)

    def _in_catalog_order(self, specs):
        """Drop specs for uncataloged workloads; host first, then catalog order."""
        kept = []
        for index, spec in enumerate(specs):
            target = spec.target
            if target.is_host:
                kept.append(((-1, index), spec))
            elif target.workload_id in self.catalog:
                entry = self.catalog.lookup(target.workload_id)
                if entry.kind is not target.kind:
                    logger.warning(f"Skipping {spec}: catalog kind is {entry.kind.value}")
                    continue
                kept.append(((self.catalog.position(target.workload_id), index), spec))
        return [spec for _, spec in sorted(kept, key=lambda item: item[0])]

    def _fan_out(self, specs: Sequence[T], probe: Callable[[T], R], negative: Callable[[T], R]) -> List[R]:
        """Probe every definition concurrently, keeping input order."""
        if not specs:
            return []
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.settings.max_concurrency, len(specs)),
            thread_name_prefix="diag",
        )
        try:
            futures = [executor.submit(probe, spec) for spec in specs]
            concurrent.futures.wait(futures, timeout=self.settings.batch_deadline)
            results = []
            for spec, future in zip(specs, futures):
                if not future.done():
                    logger.warning(f"{spec}: probe abandoned at batch deadline")
                    results.append(negative(spec))
                    continue
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.warning(f"{spec}: probe failed: {e}")
                    results.append(negative(spec))
            return results
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _run(self, argv: List[str], target: Target):
        return self.gateway.run_privileged_command(
            argv, target=target, timeout=self.settings.command_timeout
        )

    # ── Services ──────────────────────────────────────────────────────────────

    @staticmethod
    def _service_negative(spec: ServiceDefinition) -> Service:
        return Service(
            name=spec.name,
            active=False,
            enabled=False,
            description=f"Service: {spec.name}",
            container_id=spec.container_id,
            vm_id=spec.vm_id,
        )

    def probe_service(self, spec: ServiceDefinition) -> Service:
        target = spec.target
        try:
            active = self._run(["systemctl", "is-active", spec.name], target).stdout.strip() == "active"
        except GatewayError as e:
            logger.warning(f"[{target}] cannot query service {spec.name}: {e}")
            return self._service_negative(spec)
        try:
            enabled = self._run(["systemctl", "is-enabled", spec.name], target).stdout.strip() == "enabled"
        except GatewayError:
            enabled = False
        return Service(
            name=spec.name,
            active=active,
            enabled=enabled,
            description=f"Service: {spec.name}",
            container_id=spec.container_id,
            vm_id=spec.vm_id,
        )

    def services(self) -> List[Service]:
        return self._fan_out(self.service_specs, self.probe_service, self._service_negative)

    def check_service(self, name: str, target: Target = HOST) -> Service:
        """Probe one service by name, defined or not."""
        if not SERVICE_NAME_RE.match(name):
            raise ValueError(f"Invalid service name: {name!r}")
        return self.probe_service(ServiceDefinition(name, target.container_id, target.vm_id))

    def find_service_definition(self, name: str, target: Target) -> Optional[ServiceDefinition]:
        for spec in self.service_specs:
            if spec.name == name and spec.target == target:
                return spec
        return None

    # ── Binaries ──────────────────────────────────────────────────────────────

    @staticmethod
    def _binary_negative(spec: BinaryDefinition) -> Binary:
        return Binary(name=spec.name, path="Not found", exists=False, version=None, package=spec.package)

    def probe_binary(self, spec: BinaryDefinition, target: Target = HOST) -> Binary:
        try:
            result = self._run(["sh", "-c", BINARY_PROBE_SCRIPT, "sh", spec.name], target)
        except GatewayError as e:
            logger.warning(f"[{target}] cannot probe binary {spec.name}: {e}")
            return self._binary_negative(spec)
        lines = [l.strip() for l in result.stdout.splitlines() if l.strip()]
        if not result.ok or not lines:
            return self._binary_negative(spec)
        version = lines[1][:200] if len(lines) > 1 else None
        return Binary(name=spec.name, path=lines[0], exists=True, version=version, package=spec.package)

    def binaries(self) -> List[Binary]:
        return self._fan_out(self.binary_specs, self.probe_binary, self._binary_negative)

    def check_binary(self, name: str, target: Target = HOST) -> Binary:
        if not BINARY_NAME_RE.match(name):
            raise ValueError(f"Invalid binary name: {name!r}")
        package = next((b.package for b in self.binary_specs if b.name == name), None)
        return self.probe_binary(BinaryDefinition(name, package), target)

    # ── Config files ──────────────────────────────────────────────────────────

    @staticmethod
    def _config_negative(spec: ConfigDefinition) -> ConfigFile:
        return ConfigFile(
            name=spec.path.rsplit("/", 1)[-1] or spec.path,
            path=spec.path,
            exists=False,
            readable=False,
            size_bytes=0,
            writable=False,
            modified="N/A",
            container_id=spec.container_id,
            vm_id=spec.vm_id,
        )

    def probe_config(self, spec: ConfigDefinition) -> ConfigFile:
        try:
            result = self._run(["sh", "-c", CONFIG_PROBE_SCRIPT, "sh", spec.path], spec.target)
        except GatewayError as e:
            logger.warning(f"[{spec.target}] cannot probe {spec.path}: {e}")
            return self._config_negative(spec)
        fields = result.stdout.split()
        if not result.ok or len(fields) < 4:
            return self._config_negative(spec)
        try:
            size = int(fields[2])
        except ValueError:
            size = 0
        return ConfigFile(
            name=spec.path.rsplit("/", 1)[-1] or spec.path,
            path=spec.path,
            exists=True,
            readable=fields[0] == "1",
            size_bytes=size,
            writable=fields[1] == "1",
            modified=_format_mtime(fields[3]),
            container_id=spec.container_id,
            vm_id=spec.vm_id,
        )

    def configs(self, target: Optional[Target] = None) -> List[ConfigFile]:
        specs = self.config_specs
        if target is not None:
            specs = [s for s in specs if s.target == target]
        return self._fan_out(specs, self.probe_config, self._config_negative)

    def check_config(self, path: str, target: Target = HOST) -> ConfigFile:
        if not path.startswith("/"):
            raise ValueError(f"Config path must be absolute: {path!r}")
        return self.probe_config(ConfigDefinition(path, target.container_id, target.vm_id))

    # ── Aggregate ─────────────────────────────────────────────────────────────

    def system_health(self) -> SystemHealth:
        try:
            return self.host_indexer.collect_health()
        except Exception as e:
            logger.warning(f"system health probe failed: {e}")
            return SystemHealth()

    def overview(self) -> MaintenanceOverview:
        with concurrent.futures.ThreadPoolExecutor(max_workers=4, thread_name_prefix="maint") as executor:
            services = executor.submit(self.services)
            binaries = executor.submit(self.binaries)
            configs = executor.submit(self.configs)
            health = executor.submit(self.system_health)
            return MaintenanceOverview(
                services=services.result(),
                binaries=binaries.result(),
                configs=configs.result(),
                system_health=health.result(),
                last_updated=utcnow(),
            )
