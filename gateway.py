"""
Hypervisor gateway - the narrow boundary between the engine and Proxmox.

The engine only ever talks to a `HypervisorGateway`. `SSHGateway` is the
production implementation: it shells out to `ssh <host> pct|qm ...` the same
way an operator would from a terminal. Tests use a fake behind the same
protocol.
"""

import json
import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from catalog import CatalogEntry, WorkloadKind
from errors import GatewayError, GatewayErrorKind
from models import ControlAction, StatusReport, WorkloadStatus
from settings import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Target:
    """Where a command runs: the host itself, or inside one workload."""

    workload_id: Optional[int] = None
    kind: Optional[WorkloadKind] = None

    @classmethod
    def for_entry(cls, entry: CatalogEntry) -> "Target":
        return cls(entry.id, entry.kind)

    @classmethod
    def container(cls, container_id: int) -> "Target":
        return cls(container_id, WorkloadKind.CONTAINER)

    @classmethod
    def vm(cls, vm_id: int) -> "Target":
        return cls(vm_id, WorkloadKind.VIRTUAL_MACHINE)

    @property
    def is_host(self) -> bool:
        return self.workload_id is None

    @property
    def container_id(self) -> Optional[int]:
        return self.workload_id if self.kind is WorkloadKind.CONTAINER else None

    @property
    def vm_id(self) -> Optional[int]:
        return self.workload_id if self.kind is WorkloadKind.VIRTUAL_MACHINE else None

    def __str__(self) -> str:
        if self.is_host:
            return "host"
        prefix = "ct" if self.kind is WorkloadKind.CONTAINER else "vm"
        return f"{prefix}{self.workload_id}"


HOST = Target()


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str
    duration: timedelta

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout followed by stderr, as an operator would see them."""
        if self.stdout and self.stderr:
            sep = "" if self.stdout.endswith("\n") else "\n"
            return f"{self.stdout}{sep}{self.stderr}"
        return self.stdout or self.stderr


class HypervisorGateway(Protocol):
    def get_status(self, workload_id: int, kind: WorkloadKind, timeout: float) -> StatusReport:
        ...

    def control(
        self, workload_id: int, kind: WorkloadKind, action: ControlAction, timeout: float
    ) -> None:
        ...

    def run_privileged_command(
        self,
        argv: Sequence[str],
        target: Target = HOST,
        timeout: Optional[float] = None,
        stdin: Optional[str] = None,
    ) -> CommandResult:
        ...


# ── Output parsing ────────────────────────────────────────────────────────────

_NOT_FOUND_MARKERS = ("does not exist", "no such", "not found", "unable to find")
_PERMISSION_MARKERS = ("permission denied", "not allowed", "operation not permitted")


def classify_failure(what: str, result: CommandResult) -> GatewayError:
    """Turn a failed hypervisor command into a typed gateway error."""
    text = result.output.lower()
    if any(marker in text for marker in _PERMISSION_MARKERS):
        return GatewayError(
            GatewayErrorKind.PERMISSION_DENIED,
            f"{what}: permission denied",
            exit_code=result.exit_code,
            output=result.output,
        )
    if any(marker in text for marker in _NOT_FOUND_MARKERS):
        return GatewayError(
            GatewayErrorKind.NOT_FOUND,
            f"{what}: not found on hypervisor",
            exit_code=result.exit_code,
            output=result.output,
        )
    return GatewayError.command_failed(what, result.exit_code, result.output)


def parse_verbose_status(text: str) -> StatusReport:
    """
    Parse `pct status <id> --verbose` / `qm status <id> --verbose`.

    Relevant keys: status, cpu (fraction of allotted cores), mem and maxmem
    (bytes), uptime (seconds). Missing keys leave the metric at zero.
    """
    values: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition(":")
        if sep:
            values.setdefault(key.strip().lower(), value.strip())

    status = WorkloadStatus.parse(values.get("status", text))

    def _number(key: str) -> float:
        try:
            return float(values.get(key, "0"))
        except ValueError:
            return 0.0

    cpu_usage = round(max(0.0, _number("cpu")) * 100, 2)
    maxmem = _number("maxmem")
    memory_usage = round(_number("mem") / maxmem * 100, 2) if maxmem > 0 else 0.0
    uptime = int(_number("uptime")) if "uptime" in values else None
    return StatusReport(
        status=status,
        cpu_usage=cpu_usage,
        memory_usage=max(0.0, memory_usage),
        uptime_seconds=uptime,
    )


def _decode(data) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


# ── SSH implementation ────────────────────────────────────────────────────────

_CONTROL_VERBS = {
    ControlAction.START: "start",
    ControlAction.STOP: "stop",
    ControlAction.RESTART: "reboot",
}


class SSHGateway:
    """Run hypervisor commands through `ssh` with per-call timeouts.

    A process-wide semaphore caps the number of ssh sessions in flight,
    whichever request they belong to.
    """

    def __init__(self, settings: Settings, runner: Callable = subprocess.run):
        self.settings = settings
        self._run = runner
        self._slots = threading.BoundedSemaphore(settings.max_concurrency)

    # -- protocol --------------------------------------------------------

    def get_status(self, workload_id: int, kind: WorkloadKind, timeout: float) -> StatusReport:
        tool = self._tool(kind)
        what = f"{tool} status {workload_id}"
        result = self.run_privileged_command(
            [tool, "status", str(workload_id), "--verbose"], timeout=timeout
        )
        if not result.ok:
            raise classify_failure(what, result)
        return parse_verbose_status(result.stdout)

    def control(
        self, workload_id: int, kind: WorkloadKind, action: ControlAction, timeout: float
    ) -> None:
        tool = self._tool(kind)
        verb = _CONTROL_VERBS[action]
        what = f"{tool} {verb} {workload_id}"
        logger.info(f"Dispatching {what}")
        result = self.run_privileged_command([tool, verb, str(workload_id)], timeout=timeout)
        if not result.ok:
            raise classify_failure(what, result)

    def run_privileged_command(
        self,
        argv: Sequence[str],
        target: Target = HOST,
        timeout: Optional[float] = None,
        stdin: Optional[str] = None,
    ) -> CommandResult:
        timeout = timeout or self.settings.command_timeout
        destination, remote = self._route(argv, target, stdin is not None)
        result = self._ssh(destination, remote, timeout, stdin)
        if target.kind is WorkloadKind.VIRTUAL_MACHINE and destination == self.settings.ssh_host:
            result = self._unwrap_guest_exec(result)
        return result

    # -- helpers ---------------------------------------------------------

    @staticmethod
    def _tool(kind: WorkloadKind) -> str:
        return "pct" if kind is WorkloadKind.CONTAINER else "qm"

    def _route(self, argv: Sequence[str], target: Target, has_stdin: bool):
        """Return (ssh destination, remote argv) for a target."""
        argv = list(argv)
        host = self.settings.ssh_host
        if target.is_host:
            return host, argv
        if target.kind is WorkloadKind.CONTAINER:
            return host, ["pct", "exec", str(target.workload_id), "--"] + argv
        alias = self.settings.vm_ssh_aliases.get(target.workload_id)
        if alias:
            return alias, argv
        guest = ["qm", "guest", "exec", str(target.workload_id)]
        if has_stdin:
            guest += ["--pass-stdin", "1"]
        return host, guest + ["--"] + argv

    def _ssh(
        self, destination: str, argv: List[str], timeout: float, stdin: Optional[str]
    ) -> CommandResult:
        command = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", f"ConnectTimeout={max(1, int(timeout))}",
            destination,
            shlex.join(argv),
        ]
        what = f"{destination}: {shlex.join(argv)}"
        start = time.monotonic()
        if not self._slots.acquire(timeout=timeout):
            raise GatewayError.timeout(f"{what} (waiting for a free slot)", timeout)
        # Time spent queueing for a slot counts against the same budget
        remaining = timeout - (time.monotonic() - start)
        if remaining <= 0:
            self._slots.release()
            raise GatewayError.timeout(f"{what} (waiting for a free slot)", timeout)
        try:
            logger.debug(f"ssh {what}")
            # Remote output is not guaranteed to be UTF-8 (Latin-1 configs, binary junk)
            completed = self._run(
                command,
                input=stdin,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=remaining,
            )
        except subprocess.TimeoutExpired as e:
            partial = _decode(e.stdout) + _decode(e.stderr)
            raise GatewayError.timeout(what, timeout, output=partial) from e
        except OSError as e:
            raise GatewayError(
                GatewayErrorKind.COMMAND_FAILED, f"Failed to execute SSH command: {e}"
            ) from e
        finally:
            self._slots.release()

        result = CommandResult(
            exit_code=completed.returncode,
            stdout=_decode(completed.stdout),
            stderr=_decode(completed.stderr),
            duration=timedelta(seconds=time.monotonic() - start),
        )
        # 255 is ssh's own failure code: the command never ran
        if result.exit_code == 255:
            if "permission denied" in result.stderr.lower():
                raise GatewayError(
                    GatewayErrorKind.PERMISSION_DENIED,
                    f"ssh to {destination}: permission denied",
                    exit_code=255,
                    output=result.output,
                )
            raise GatewayError.command_failed(f"ssh to {destination}", 255, result.output)
        return result

    @staticmethod
    def _unwrap_guest_exec(result: CommandResult) -> CommandResult:
        """`qm guest exec` wraps the guest command's outcome in JSON."""
        if not result.ok:
            return result
        try:
            payload = json.loads(result.stdout)
        except json.JSONDecodeError:
            return result
        return CommandResult(
            exit_code=int(payload.get("exitcode", 0 if payload.get("exited") else 1)),
            stdout=payload.get("out-data", ""),
            stderr=payload.get("err-data", ""),
            duration=result.duration,
        )
