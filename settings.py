"""
Settings - runtime configuration read from the environment.

Every timeout and concurrency bound is tunable; the defaults are deliberately
conservative so a busy node is not flooded with ssh sessions.
"""

import os
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Dict, Mapping, Optional

DEFAULT_SSH_HOST = "proxmox"
DEFAULT_ADVISOR_BASE_URL = "http://localhost:8000/api/v1"
DEFAULT_ADVISOR_MODEL = "Qwen3-4B-Instruct-2507-GGUF"

# Named fix-up procedures -> script file name inside scripts_dir
DEFAULT_SCRIPTS = {
    "container-fix": "fix-containers.sh",
    "media-services-fix": "fix-media-services.sh",
    "hardware-optimization": "optimize-hardware.sh",
    "duckdns-update": "duckdns-update.sh",
}


def _parse_aliases(raw: str) -> Dict[int, str]:
    """Parse "500=homeassistant,611=alexa" into {500: "homeassistant", ...}."""
    aliases: Dict[int, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        vm_id, sep, alias = item.partition("=")
        if not sep or not alias.strip():
            raise ValueError(f"Invalid VM ssh alias entry: {item!r}")
        aliases[int(vm_id)] = alias.strip()
    return aliases


def _positive(name: str, value: float) -> float:
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


@dataclass
class Settings:
    ssh_host: str = DEFAULT_SSH_HOST
    status_timeout: float = 5.0
    command_timeout: float = 15.0
    batch_deadline: float = 20.0
    max_concurrency: int = 12
    script_timeout: float = 900.0
    script_workers: int = 2
    scripts_dir: str = "/root/scripts"
    scripts: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_SCRIPTS))
    vm_ssh_aliases: Dict[int, str] = field(
        default_factory=lambda: {500: "homeassistant", 611: "alexa", 900: "ai-system"}
    )
    ping_target: str = "1.1.1.1"
    advisor_base_url: str = DEFAULT_ADVISOR_BASE_URL
    advisor_model: str = DEFAULT_ADVISOR_MODEL
    advisor_api_key: str = "lemonade"
    advisor_timeout: float = 60.0

    def __post_init__(self):
        _positive("status_timeout", self.status_timeout)
        _positive("command_timeout", self.command_timeout)
        _positive("batch_deadline", self.batch_deadline)
        _positive("script_timeout", self.script_timeout)
        _positive("advisor_timeout", self.advisor_timeout)
        _positive("max_concurrency", self.max_concurrency)
        _positive("script_workers", self.script_workers)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()

        def _float(name: str, default: float) -> float:
            raw = env.get(name)
            return float(raw) if raw else default

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            return int(raw) if raw else default

        aliases_raw = env.get("PROXMOX_VM_SSH_ALIASES")
        return cls(
            ssh_host=env.get("PROXMOX_SSH_HOST", defaults.ssh_host),
            status_timeout=_float("PROXMOX_STATUS_TIMEOUT", defaults.status_timeout),
            command_timeout=_float("PROXMOX_COMMAND_TIMEOUT", defaults.command_timeout),
            batch_deadline=_float("PROXMOX_BATCH_DEADLINE", defaults.batch_deadline),
            max_concurrency=_int("PROXMOX_MAX_CONCURRENCY", defaults.max_concurrency),
            script_timeout=_float("PROXMOX_SCRIPT_TIMEOUT", defaults.script_timeout),
            script_workers=_int("PROXMOX_SCRIPT_WORKERS", defaults.script_workers),
            scripts_dir=env.get("PROXMOX_SCRIPTS_DIR", defaults.scripts_dir),
            vm_ssh_aliases=(
                _parse_aliases(aliases_raw) if aliases_raw is not None else defaults.vm_ssh_aliases
            ),
            ping_target=env.get("PROXMOX_PING_TARGET", defaults.ping_target),
            advisor_base_url=env.get("ADVISOR_BASE_URL", defaults.advisor_base_url),
            advisor_model=env.get("ADVISOR_MODEL", defaults.advisor_model),
            advisor_api_key=env.get("ADVISOR_API_KEY", defaults.advisor_api_key),
            advisor_timeout=_float("ADVISOR_TIMEOUT", defaults.advisor_timeout),
        )

    def script_path(self, name: str) -> Optional[str]:
        filename = self.scripts.get(name)
        if filename is None:
            return None
        return str(PurePosixPath(self.scripts_dir) / filename)
