#!/usr/bin/env python3
"""
Host Indexer - Read-only probes of the Proxmox host and its containers

Everything is gathered through the gateway's command path:

• OS version            → /etc/os-release
• Kernel / hostname     → uname -r, hostname
• Proxmox version       → pveversion
• CPU                   → /proc/cpuinfo, /proc/loadavg, nproc
• Memory                → /proc/meminfo (MemTotal - MemAvailable)
• Disk                  → df -P /
• Uptime                → /proc/uptime
• Network reachability  → a single ping

None of these probes change anything on the host.
"""

import concurrent.futures
import logging
import re
from typing import Callable, Dict, List, Optional

from catalog import CatalogEntry
from errors import GatewayError
from gateway import HOST, HypervisorGateway, Target
from models import ContainerDetails, HostInfo, SystemHealth, format_uptime
from settings import Settings

logger = logging.getLogger(__name__)


# ── Parsers (pure functions over command output) ──────────────────────────────

def parse_os_release(text: str) -> Dict[str, str]:
    os_release: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if "=" in line:
            key, _, value = line.partition("=")
            os_release[key] = value.strip('"')
    return os_release


def parse_meminfo(text: str) -> Dict[str, int]:
    meminfo: Dict[str, int] = {}
    for line in text.splitlines():
        if ":" in line:
            key, _, val = line.partition(":")
            try:
                meminfo[key.strip()] = int(val.split()[0])
            except (ValueError, IndexError):
                pass
    return meminfo


def memory_used_pct(meminfo: Dict[str, int]) -> float:
    total_kb = meminfo.get("MemTotal", 0)
    avail_kb = meminfo.get("MemAvailable", meminfo.get("MemFree", 0))
    return round((total_kb - avail_kb) / total_kb * 100, 1) if total_kb else 0.0


def parse_df_percent(text: str) -> float:
    """Use% column of the first data row of `df -P`."""
    lines = text.strip().splitlines()
    if len(lines) < 2:
        return 0.0
    fields = lines[1].split()
    for f in fields:
        if f.endswith("%"):
            try:
                return float(f.rstrip("%"))
            except ValueError:
                return 0.0
    return 0.0


def parse_loadavg(text: str) -> List[float]:
    try:
        return [float(x) for x in text.split()[:3]]
    except ValueError:
        return []


def parse_uptime_seconds(text: str) -> Optional[int]:
    try:
        return int(float(text.split()[0]))
    except (ValueError, IndexError):
        return None


def parse_cpuinfo(text: str) -> Dict:
    info: Dict = {"cpu": "", "cpu_cores": 0}
    lines = text.splitlines()
    for line in lines:
        if "model name" in line:
            info["cpu"] = line.split(":", 1)[1].strip()
            break
    info["cpu_cores"] = len([l for l in lines if l.startswith("processor")])
    return info


def clean_cpu_name(cpu: str) -> str:
    cpu = re.sub(r"\(R\)|\(TM\)|CPU\s+", " ", cpu)
    cpu = re.sub(r"\s+@\s+[\d.]+\s*GHz", "", cpu)
    return re.sub(r"\s+", " ", cpu).strip()


def parse_running_units(text: str) -> List[str]:
    """Unit names from `systemctl list-units --type=service --no-legend --plain`."""
    units = []
    for line in text.splitlines():
        parts = line.split()
        if parts and parts[0].endswith(".service"):
            units.append(parts[0][: -len(".service")])
    return sorted(set(units))


class HostIndexer:
    """Collects host health and host/container information on demand."""

    def __init__(self, gateway: HypervisorGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    def _read(self, argv: List[str], target: Target = HOST) -> Optional[str]:
        """stdout of a probe, or None when the probe itself failed."""
        try:
            result = self.gateway.run_privileged_command(
                argv, target=target, timeout=self.settings.command_timeout
            )
        except GatewayError as e:
            logger.warning(f"[{target}] probe {argv[0]} failed: {e}")
            return None
        if not result.ok:
            logger.warning(f"[{target}] probe {' '.join(argv)} exited with {result.exit_code}")
            return None
        return result.stdout

    def _gather(self, probes: Dict[str, Callable[[], Optional[str]]]) -> Dict[str, Optional[str]]:
        """Run independent probes concurrently; keys map to their stdout."""
        results: Dict[str, Optional[str]] = {}
        workers = max(1, min(self.settings.max_concurrency, len(probes)))
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as executor:
            future_to_key = {executor.submit(fn): key for key, fn in probes.items()}
            for future in concurrent.futures.as_completed(future_to_key):
                key = future_to_key[future]
                try:
                    results[key] = future.result()
                except Exception as e:
                    logger.warning(f"probe {key} raised: {e}")
                    results[key] = None
        return results

    # ── System health ─────────────────────────────────────────────────────────

    def _network_status(self) -> str:
        try:
            result = self.gateway.run_privileged_command(
                ["ping", "-c", "1", "-W", "2", self.settings.ping_target],
                timeout=self.settings.command_timeout,
            )
        except GatewayError as e:
            logger.warning(f"network probe failed: {e}")
            return "Unknown"
        return "Connected" if result.ok else "Disconnected"

    def collect_health(self) -> SystemHealth:
        raw = self._gather({
            "df": lambda: self._read(["df", "-P", "/"]),
            "meminfo": lambda: self._read(["cat", "/proc/meminfo"]),
            "loadavg": lambda: self._read(["cat", "/proc/loadavg"]),
            "nproc": lambda: self._read(["nproc"]),
            "uptime": lambda: self._read(["cat", "/proc/uptime"]),
            "network": self._network_status,
        })

        cpu_load = 0.0
        load = parse_loadavg(raw["loadavg"] or "")
        try:
            cores = int((raw["nproc"] or "").strip())
        except ValueError:
            cores = 0
        if load and cores:
            cpu_load = round(min(load[0] / cores * 100, 100.0), 1)

        uptime_seconds = parse_uptime_seconds(raw["uptime"] or "")
        return SystemHealth(
            disk_usage=parse_df_percent(raw["df"] or ""),
            memory_usage=memory_used_pct(parse_meminfo(raw["meminfo"] or "")),
            cpu_load=cpu_load,
            network_status=raw["network"] or "Unknown",
            uptime=format_uptime(uptime_seconds),
        )

    # ── Host information ──────────────────────────────────────────────────────

    def collect_host_info(self) -> HostInfo:
        raw = self._gather({
            "hostname": lambda: self._read(["hostname"]),
            "pveversion": lambda: self._read(["pveversion"]),
            "kernel": lambda: self._read(["uname", "-r"]),
            "os_release": lambda: self._read(["cat", "/etc/os-release"]),
            "cpuinfo": lambda: self._read(["cat", "/proc/cpuinfo"]),
            "meminfo": lambda: self._read(["cat", "/proc/meminfo"]),
            "uptime": lambda: self._read(["cat", "/proc/uptime"]),
            "loadavg": lambda: self._read(["cat", "/proc/loadavg"]),
        })

        def _first_line(key: str) -> str:
            text = (raw.get(key) or "").strip()
            return text.splitlines()[0] if text else "Unknown"

        os_release = parse_os_release(raw["os_release"] or "")
        cpu = parse_cpuinfo(raw["cpuinfo"] or "")
        meminfo = parse_meminfo(raw["meminfo"] or "")
        total_kb = meminfo.get("MemTotal", 0)
        avail_kb = meminfo.get("MemAvailable", 0)

        return HostInfo(
            hostname=_first_line("hostname"),
            pve_version=_first_line("pveversion"),
            kernel=_first_line("kernel"),
            os=os_release.get("PRETTY_NAME", "Unknown"),
            cpu_model=clean_cpu_name(cpu["cpu"]) or "Unknown",
            cpu_cores=cpu["cpu_cores"],
            memory_total_gb=round(total_kb / (1024 * 1024), 1),
            memory_used_gb=round((total_kb - avail_kb) / (1024 * 1024), 1) if total_kb else 0.0,
            uptime=format_uptime(parse_uptime_seconds(raw["uptime"] or "")),
            load_average=parse_loadavg(raw["loadavg"] or ""),
        )

    def get_cluster_status(self) -> str:
        """
        Raw `pvecm status` text. A standalone node (no corosync config) is a
        normal answer, not an error.
        """
        result = self.gateway.run_privileged_command(
            ["pvecm", "status"], timeout=self.settings.command_timeout
        )
        if result.ok:
            return result.stdout.strip()
        if "corosync" in result.output.lower():
            return "Standalone node (not part of a cluster)"
        raise GatewayError.command_failed("pvecm status", result.exit_code, result.output)

    # ── Container details ─────────────────────────────────────────────────────

    def container_details(self, entry: CatalogEntry) -> ContainerDetails:
        target = Target.for_entry(entry)
        timeout = self.settings.command_timeout

        release = self.gateway.run_privileged_command(
            ["cat", "/etc/os-release"], target=target, timeout=timeout
        )
        if not release.ok:
            raise GatewayError.command_failed(f"[{target}] cat /etc/os-release", release.exit_code, release.output)
        os_info = parse_os_release(release.stdout).get("PRETTY_NAME", "Unknown")

        units = self.gateway.run_privileged_command(
            ["systemctl", "list-units", "--type=service", "--state=running", "--no-legend", "--plain"],
            target=target,
            timeout=timeout,
        )
        services = parse_running_units(units.stdout) if units.ok else []
        return ContainerDetails(id=entry.id, os_info=os_info, systemd_services=services)

    # ── Sidebar-style summary ─────────────────────────────────────────────────

    @staticmethod
    def get_fields(info: HostInfo, health: Optional[SystemHealth] = None) -> list:
        """Return host info as a list of {label, value} dicts for display."""
        fields = []

        def add(label: str, value) -> None:
            if value and value != "Unknown":
                fields.append({"label": label, "value": value})

        add("Host", info.hostname)
        add("OS", info.os)
        add("Proxmox", info.pve_version)
        add("Kernel", info.kernel)
        add("Uptime", info.uptime)
        if info.cpu_model != "Unknown":
            add("CPU", f"{info.cpu_model} ({info.cpu_cores})" if info.cpu_cores else info.cpu_model)
        if info.memory_total_gb:
            pct = int(info.memory_used_gb / info.memory_total_gb * 100)
            add("Memory", f"{info.memory_used_gb}G / {info.memory_total_gb}G ({pct}%)")
        if info.load_average:
            add("Load", " ".join(f"{x:.2f}" for x in info.load_average))
        if health is not None:
            add("Disk (/)", f"{health.disk_usage:g}%")
            add("Network", health.network_status)
        return fields
