#!/usr/bin/env python3
"""
Control Engine - Shared Proxmox engine (used by the shell and the HTTP server)
"""

import logging
from typing import List, Optional

from advisor import AdvisorClient, OpenAIAdvisor, build_prompt, parse_suggestions
from catalog import Catalog, WorkloadKind
from diagnostics import MaintenanceDiagnostics
from errors import AdvisorUnavailable
from gateway import HypervisorGateway, SSHGateway, Target
from host_indexer import HostIndexer
from models import (
    Binary,
    ConfigFile,
    ContainerDetails,
    ControlAction,
    ControlResult,
    FixResult,
    HostInfo,
    InstallResult,
    MaintenanceOverview,
    ScriptResult,
    Service,
    Suggestion,
    SystemOverview,
    Workload,
)
from remediation import RemediationExecutor
from settings import Settings
from state_collector import StateCollector

logger = logging.getLogger(__name__)


class ControlEngine:
    """
    Framework-agnostic facade over collection, diagnostics and remediation.
    Suitable for use by both the shell (main.py) and the server (server.py).

    Every read re-collects from the hypervisor; nothing is cached between
    calls, so concurrent callers never share mutable state.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        gateway: Optional[HypervisorGateway] = None,
        catalog: Optional[Catalog] = None,
        advisor: Optional[AdvisorClient] = None,
        diagnostics: Optional[MaintenanceDiagnostics] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.catalog = catalog or Catalog.default()
        self.gateway = gateway or SSHGateway(self.settings)
        self.advisor = advisor or OpenAIAdvisor(self.settings)
        self.host_indexer = HostIndexer(self.gateway, self.settings)
        self.collector = StateCollector(self.catalog, self.gateway, self.settings)
        self.diagnostics = diagnostics or MaintenanceDiagnostics(
            self.catalog, self.gateway, self.settings, host_indexer=self.host_indexer
        )
        self.remediation = RemediationExecutor(
            self.catalog, self.gateway, self.settings, self.diagnostics
        )

    def close(self) -> None:
        self.remediation.close()

    # ── Reads ─────────────────────────────────────────────────────────────────

    def get_system_overview(self) -> SystemOverview:
        collection = self.collector.collect()
        return SystemOverview.from_workloads(
            collection.workloads, collection.checked_at, collection.errors
        )

    def get_maintenance_overview(self) -> MaintenanceOverview:
        return self.diagnostics.overview()

    def get_container_status(self, container_id: int) -> Workload:
        entry = self.catalog.lookup(container_id, WorkloadKind.CONTAINER)
        return self.collector.status(entry)

    def get_vm_status(self, vm_id: int) -> Workload:
        entry = self.catalog.lookup(vm_id, WorkloadKind.VIRTUAL_MACHINE)
        return self.collector.status(entry)

    def get_container_details(self, container_id: int) -> ContainerDetails:
        entry = self.catalog.lookup(container_id, WorkloadKind.CONTAINER)
        return self.host_indexer.container_details(entry)

    def get_container_configs(self, container_id: int) -> List[ConfigFile]:
        entry = self.catalog.lookup(container_id, WorkloadKind.CONTAINER)
        return self.diagnostics.configs(Target.for_entry(entry))

    def get_proxmox_host_info(self) -> HostInfo:
        return self.host_indexer.collect_host_info()

    def get_cluster_status(self) -> str:
        return self.host_indexer.get_cluster_status()

    # ── Workload control ──────────────────────────────────────────────────────

    def start_container(self, container_id: int) -> ControlResult:
        return self.remediation.control_workload(container_id, WorkloadKind.CONTAINER, ControlAction.START)

    def stop_container(self, container_id: int) -> ControlResult:
        return self.remediation.control_workload(container_id, WorkloadKind.CONTAINER, ControlAction.STOP)

    def restart_container(self, container_id: int) -> ControlResult:
        return self.remediation.control_workload(container_id, WorkloadKind.CONTAINER, ControlAction.RESTART)

    def start_vm(self, vm_id: int) -> ControlResult:
        return self.remediation.control_workload(vm_id, WorkloadKind.VIRTUAL_MACHINE, ControlAction.START)

    def stop_vm(self, vm_id: int) -> ControlResult:
        return self.remediation.control_workload(vm_id, WorkloadKind.VIRTUAL_MACHINE, ControlAction.STOP)

    def restart_vm(self, vm_id: int) -> ControlResult:
        return self.remediation.control_workload(vm_id, WorkloadKind.VIRTUAL_MACHINE, ControlAction.RESTART)

    def control_service(
        self,
        service_name: str,
        action: str,
        container_id: Optional[int] = None,
        vm_id: Optional[int] = None,
    ) -> str:
        return self.remediation.control_service(service_name, action, container_id, vm_id)

    # ── Single-item checks ────────────────────────────────────────────────────

    def check_service_status(
        self,
        service_name: str,
        container_id: Optional[int] = None,
        vm_id: Optional[int] = None,
    ) -> Service:
        target = self.remediation.resolve_target(container_id, vm_id)
        return self.diagnostics.check_service(service_name, target)

    def check_binary(
        self,
        binary_name: str,
        container_id: Optional[int] = None,
        vm_id: Optional[int] = None,
    ) -> Binary:
        target = self.remediation.resolve_target(container_id, vm_id)
        return self.diagnostics.check_binary(binary_name, target)

    def check_config(
        self,
        config_path: str,
        container_id: Optional[int] = None,
        vm_id: Optional[int] = None,
    ) -> ConfigFile:
        target = self.remediation.resolve_target(container_id, vm_id)
        return self.diagnostics.check_config(config_path, target)

    # ── Maintenance ───────────────────────────────────────────────────────────

    def check_and_install_binaries(self) -> InstallResult:
        return self.remediation.install_missing_binaries()

    def fix_all_services(self) -> FixResult:
        return self.remediation.fix_all_services()

    def run_container_fix_script(self) -> ScriptResult:
        return self.remediation.run_named_script("container-fix")

    def run_media_services_fix(self) -> ScriptResult:
        return self.remediation.run_named_script("media-services-fix")

    def run_hardware_optimization(self) -> ScriptResult:
        return self.remediation.run_named_script("hardware-optimization")

    def update_duckdns(self) -> ScriptResult:
        return self.remediation.run_named_script("duckdns-update")

    def update_proxmox_packages(self) -> ScriptResult:
        return self.remediation.run_host_procedure("update-host-packages")

    def reboot_proxmox_host(self) -> ScriptResult:
        return self.remediation.run_host_procedure("reboot-host")

    def shutdown_proxmox_host(self) -> ScriptResult:
        return self.remediation.run_host_procedure("shutdown-host")

    # ── Config files ──────────────────────────────────────────────────────────

    def read_container_config(self, container_id: int, path: str) -> str:
        return self.remediation.read_config(container_id, path, WorkloadKind.CONTAINER)

    def write_container_config(self, container_id: int, path: str, content: str) -> str:
        return self.remediation.write_config(container_id, path, content, WorkloadKind.CONTAINER)

    def read_vm_config(self, vm_id: int, path: str) -> str:
        return self.remediation.read_config(vm_id, path, WorkloadKind.VIRTUAL_MACHINE)

    def write_vm_config(self, vm_id: int, path: str, content: str) -> str:
        return self.remediation.write_config(vm_id, path, content, WorkloadKind.VIRTUAL_MACHINE)

    def get_ai_config_suggestions(self, container_id: int, path: str, content: str) -> List[Suggestion]:
        """Advisor failures degrade to an empty list; unknown ids still raise."""
        entry = self.catalog.lookup(container_id, WorkloadKind.CONTAINER)
        try:
            reply = self.advisor.suggest(build_prompt(entry, path, content))
            return parse_suggestions(reply)
        except AdvisorUnavailable as e:
            logger.warning(f"[{container_id}] no config suggestions: {e}")
        except Exception as e:
            logger.error(f"[{container_id}] advisor error: {e}", exc_info=True)
        return []
