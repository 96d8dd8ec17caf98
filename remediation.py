"""
Remediation executor - every mutating operation the engine performs.

Single-target actions raise typed errors; batch actions (install, fix) and
scripts report failure as data and always return a result object.
"""

import concurrent.futures
import logging
import threading
import time
import weakref
from datetime import timedelta
from typing import Dict, List, Optional, Sequence

from catalog import Catalog, WorkloadKind
from diagnostics import SERVICE_NAME_RE, MaintenanceDiagnostics
from errors import ConfigIOError, GatewayError, GatewayErrorKind, NotFoundError
from gateway import HOST, HypervisorGateway, Target
from models import (
    Binary,
    ControlAction,
    ControlResult,
    ControlState,
    FixResult,
    InstallResult,
    ScriptResult,
    Service,
    ServiceAction,
    WorkloadStatus,
)
from settings import Settings

logger = logging.getLogger(__name__)


_PAST_TENSE = {
    ServiceAction.START: "started",
    ServiceAction.STOP: "stopped",
    ServiceAction.RESTART: "restarted",
    ServiceAction.ENABLE: "enabled",
    ServiceAction.DISABLE: "disabled",
}

# Writable if it exists and is writable, or if it can be created.
WRITABLE_CHECK_SCRIPT = r"""
if [ -e "$1" ]; then [ -f "$1" ] && [ -w "$1" ]; else [ -w "$(dirname "$1")" ]; fi
""".strip()

BACKUP_SCRIPT = r"""
[ ! -e "$1" ] || cp -p "$1" "$1.backup"
""".strip()

# Content arrives on stdin; $2 is its expected byte count. The target is only
# replaced (by rename) once the complete content is on disk.
ATOMIC_WRITE_SCRIPT = r"""
tmp="$1.tmp.$$"
cp -p "$1" "$tmp" 2>/dev/null
cat > "$tmp" || { rm -f "$tmp"; exit 1; }
[ "$(wc -c < "$tmp")" -eq "$2" ] || { rm -f "$tmp"; echo "short write" >&2; exit 1; }
mv -f "$tmp" "$1" || { rm -f "$tmp"; exit 1; }
""".strip()

HOST_PROCEDURES: Dict[str, List[str]] = {
    "update-host-packages": [
        "sh", "-c",
        "apt-get update && DEBIAN_FRONTEND=noninteractive apt-get -y dist-upgrade",
    ],
    "reboot-host": ["shutdown", "-r", "+1"],
    "shutdown-host": ["shutdown", "-h", "+1"],
}


def _label(kind: WorkloadKind, workload_id: int) -> str:
    return f"{'Container' if kind is WorkloadKind.CONTAINER else 'VM'} {workload_id}"


class RemediationExecutor:
    def __init__(
        self,
        catalog: Catalog,
        gateway: HypervisorGateway,
        settings: Settings,
        diagnostics: MaintenanceDiagnostics,
    ):
        self.catalog = catalog
        self.gateway = gateway
        self.settings = settings
        self.diagnostics = diagnostics
        # Scripts get their own workers so they never compete with collection
        self._script_pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=settings.script_workers, thread_name_prefix="script"
        )
        # Entries vanish once no write holds the lock any more
        self._file_locks = weakref.WeakValueDictionary()
        self._file_locks_guard = threading.Lock()

    def close(self) -> None:
        self._script_pool.shutdown(wait=False, cancel_futures=True)

    # ── Workload control ──────────────────────────────────────────────────────

    def _current_status(self, workload_id: int, kind: WorkloadKind) -> WorkloadStatus:
        try:
            return self.gateway.get_status(workload_id, kind, self.settings.status_timeout).status
        except GatewayError as e:
            logger.warning(f"[{workload_id}] status before control unavailable: {e}")
            return WorkloadStatus.UNKNOWN

    def control_workload(self, workload_id: int, kind: WorkloadKind, action: ControlAction) -> ControlResult:
        """
        Ensure the workload ends up in the state the action implies.

        The call is issued even when the workload is already there; if the
        hypervisor then refuses it ("already running"), the known end state
        counts as success and no transition is reported.
        """
        entry = self.catalog.lookup(workload_id, kind)
        label = _label(entry.kind, entry.id)
        previous = self._current_status(entry.id, entry.kind)
        target_status = action.target_status
        already = action is not ControlAction.RESTART and previous is target_status

        dispatch = action
        if action is ControlAction.RESTART and previous is WorkloadStatus.STOPPED:
            dispatch = ControlAction.START

        try:
            self.gateway.control(entry.id, entry.kind, dispatch, self.settings.command_timeout)
        except GatewayError as e:
            if already and e.error_kind is GatewayErrorKind.COMMAND_FAILED:
                logger.info(f"{label} already {target_status.value.lower()}; treating {action.value} as done")
                return ControlResult(
                    success=True,
                    message=f"{label} is already {target_status.value.lower()}",
                    workload_id=entry.id,
                    kind=entry.kind,
                    action=action,
                    previous_status=previous,
                    state=ControlState(previous.value),
                )
            e.details["reported_status"] = [previous.value, WorkloadStatus.UNKNOWN.value]
            logger.error(f"Failed to {action.value} {label}: {e}")
            raise

        if already:
            message = f"{label} is already {target_status.value.lower()}"
            state = ControlState(previous.value)
        else:
            message = f"{label} {action.value} accepted"
            state = ControlState.TRANSITIONING
        logger.info(message)
        return ControlResult(
            success=True,
            message=message,
            workload_id=entry.id,
            kind=entry.kind,
            action=action,
            previous_status=previous,
            state=state,
        )

    # ── Services ──────────────────────────────────────────────────────────────

    def resolve_target(self, container_id: Optional[int], vm_id: Optional[int]) -> Target:
        """Host when neither id is given; a cataloged workload otherwise."""
        if container_id is not None and vm_id is not None:
            raise ValueError("Pass either container_id or vm_id, not both")
        if container_id is not None:
            return Target.for_entry(self.catalog.lookup(container_id, WorkloadKind.CONTAINER))
        if vm_id is not None:
            return Target.for_entry(self.catalog.lookup(vm_id, WorkloadKind.VIRTUAL_MACHINE))
        return HOST

    def control_service(
        self,
        service_name: str,
        action: str,
        container_id: Optional[int] = None,
        vm_id: Optional[int] = None,
    ) -> str:
        target = self.resolve_target(container_id, vm_id)
        service_action = ServiceAction(action)
        if not SERVICE_NAME_RE.match(service_name):
            raise ValueError(f"Invalid service name: {service_name!r}")

        timeout = self.settings.command_timeout
        if self.diagnostics.find_service_definition(service_name, target) is None:
            known = self.gateway.run_privileged_command(
                ["systemctl", "cat", service_name], target=target, timeout=timeout
            )
            if not known.ok:
                raise NotFoundError(f"Unknown service {service_name} on {target}")

        result = self.gateway.run_privileged_command(
            ["systemctl", service_action.value, service_name], target=target, timeout=timeout
        )
        if not result.ok:
            raise GatewayError.command_failed(
                f"systemctl {service_action.value} {service_name} on {target}",
                result.exit_code,
                result.output,
            )
        message = f"Service {service_name} {_PAST_TENSE[service_action]} successfully"
        logger.info(f"[{target}] {message}")
        return message

    def fix_all_services(self, services: Optional[Sequence[Service]] = None) -> FixResult:
        if services is None:
            services = self.diagnostics.services()
        inactive = [s for s in services if not s.active]
        if not inactive:
            return FixResult(success=True, message="All services are active", actions_taken=[])

        actions: List[str] = []
        undispatched = 0
        for service in inactive:
            try:
                target = self.resolve_target(service.container_id, service.vm_id)
                result = self.gateway.run_privileged_command(
                    ["systemctl", "restart", service.name],
                    target=target,
                    timeout=self.settings.command_timeout,
                )
            except (GatewayError, NotFoundError) as e:
                undispatched += 1
                actions.append(f"could not restart {service.name}: {e}")
                logger.warning(f"restart of {service.name} not dispatched: {e}")
                continue
            if result.ok:
                actions.append(f"restarted {service.name}")
                logger.info(f"[{target}] restarted {service.name}")
            else:
                actions.append(f"failed to restart {service.name} (exit {result.exit_code})")
                logger.warning(f"[{target}] restart of {service.name} exited with {result.exit_code}")

        return FixResult(
            success=undispatched < len(inactive),
            message=f"Attempted to restart {len(inactive)} inactive service(s)",
            actions_taken=actions,
        )

    # ── Binaries ──────────────────────────────────────────────────────────────

    def install_missing_binaries(self, binaries: Optional[Sequence[Binary]] = None) -> InstallResult:
        if binaries is None:
            binaries = self.diagnostics.binaries()
        missing = [b for b in binaries if not b.exists]
        if not missing:
            return InstallResult(success=True, message="All required binaries are present")

        installed: List[str] = []
        failed: List[str] = []
        # apt holds a global lock, so one package at a time
        for binary in missing:
            package = binary.package or binary.name
            try:
                result = self.gateway.run_privileged_command(
                    ["env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", package],
                    timeout=self.settings.script_timeout,
                )
            except GatewayError as e:
                logger.warning(f"install of {package} failed: {e}")
                failed.append(binary.name)
                continue
            if result.ok:
                installed.append(binary.name)
                logger.info(f"installed {package} for {binary.name}")
            else:
                logger.warning(f"install of {package} exited with {result.exit_code}")
                failed.append(binary.name)

        return InstallResult(
            success=bool(installed),
            message=f"Installed {len(installed)} of {len(missing)} missing binaries",
            installed=installed,
            failed=failed,
        )

    # ── Scripts and host procedures ───────────────────────────────────────────

    def _execute(self, name: str, argv: List[str]) -> ScriptResult:
        start = time.monotonic()
        try:
            result = self.gateway.run_privileged_command(argv, timeout=self.settings.script_timeout)
        except GatewayError as e:
            output = e.output
            if e.error_kind is GatewayErrorKind.TIMEOUT:
                output = f"{output}\n[{e.message}]".lstrip("\n")
            elif not output:
                output = e.message
            logger.warning(f"script {name} failed: {e}")
            return ScriptResult(
                success=False,
                output=output,
                duration=timedelta(seconds=time.monotonic() - start),
                name=name,
                exit_code=e.exit_code,
            )
        except Exception as e:
            logger.exception(f"script {name} raised")
            return ScriptResult(
                success=False,
                output=str(e),
                duration=timedelta(seconds=time.monotonic() - start),
                name=name,
            )
        logger.info(f"script {name} finished with exit code {result.exit_code}")
        return ScriptResult(
            success=result.exit_code == 0,
            output=result.output,
            duration=timedelta(seconds=time.monotonic() - start),
            name=name,
            exit_code=result.exit_code,
        )

    def _dispatch(self, name: str, argv: List[str]) -> ScriptResult:
        future = self._script_pool.submit(self._execute, name, argv)
        return future.result()

    def run_named_script(self, name: str) -> ScriptResult:
        path = self.settings.script_path(name)
        if path is None:
            raise NotFoundError(f"Unknown script: {name}")
        return self._dispatch(name, ["bash", path])

    def run_host_procedure(self, name: str) -> ScriptResult:
        argv = HOST_PROCEDURES.get(name)
        if argv is None:
            raise NotFoundError(f"Unknown host procedure: {name}")
        return self._dispatch(name, list(argv))

    # ── Config files ──────────────────────────────────────────────────────────

    def _config_target(self, workload_id: int, kind: WorkloadKind, path: str) -> Target:
        entry = self.catalog.lookup(workload_id, kind)
        if not path.startswith("/"):
            raise ValueError(f"Config path must be absolute: {path!r}")
        return Target.for_entry(entry)

    def _lock_for(self, target: Target, path: str) -> threading.Lock:
        with self._file_locks_guard:
            return self._file_locks.setdefault((target, path), threading.Lock())

    def read_config(self, workload_id: int, path: str, kind: WorkloadKind = WorkloadKind.CONTAINER) -> str:
        target = self._config_target(workload_id, kind, path)
        timeout = self.settings.command_timeout
        check = self.gateway.run_privileged_command(["test", "-r", path], target=target, timeout=timeout)
        if not check.ok:
            raise ConfigIOError(f"{path} is not readable on {target}")
        result = self.gateway.run_privileged_command(["cat", path], target=target, timeout=timeout)
        if not result.ok:
            raise ConfigIOError(f"Failed to read {path} on {target}: {result.stderr.strip()}")
        return result.stdout

    def write_config(
        self, workload_id: int, path: str, content: str, kind: WorkloadKind = WorkloadKind.CONTAINER
    ) -> str:
        target = self._config_target(workload_id, kind, path)
        timeout = self.settings.command_timeout

        with self._lock_for(target, path):
            check = self.gateway.run_privileged_command(
                ["sh", "-c", WRITABLE_CHECK_SCRIPT, "sh", path], target=target, timeout=timeout
            )
            if not check.ok:
                raise ConfigIOError(f"{path} is not writable on {target}")

            backup = self.gateway.run_privileged_command(
                ["sh", "-c", BACKUP_SCRIPT, "sh", path], target=target, timeout=timeout
            )
            if not backup.ok:
                raise ConfigIOError(f"Could not back up {path} on {target}; nothing written")

            size = len(content.encode("utf-8"))
            result = self.gateway.run_privileged_command(
                ["sh", "-c", ATOMIC_WRITE_SCRIPT, "sh", path, str(size)],
                target=target,
                timeout=timeout,
                stdin=content,
            )
            if not result.ok:
                raise ConfigIOError(
                    f"Failed to write config file {path} on {target}: {result.stderr.strip() or 'unknown error'}"
                )

        logger.info(f"[{target}] wrote {size} bytes to {path}")
        return f"Config file {path} updated successfully"
