import gc
import threading

import pytest

from diagnostics import SERVICE_DEFINITIONS
from errors import ConfigIOError, GatewayError, NotFoundError
from fake_gateway import fail, ok
from gateway import HOST, Target
from models import Binary, Service


def _missing(name, package=None):
    return Binary(name=name, path="Not found", exists=False, package=package or name)


# ── Binaries ──────────────────────────────────────────────────────────────────

def test_install_reports_partial_success(engine, gateway):
    binaries = [_missing(n) for n in ("jq", "rsync", "curl", "nginx", "smartctl")]
    binaries.append(Binary(name="docker", path="/usr/bin/docker", exists=True, package="docker.io"))
    gateway.install_failures = {"nginx", "smartctl"}

    result = engine.remediation.install_missing_binaries(binaries)

    assert result.success
    assert result.installed == ["jq", "rsync", "curl"]
    assert result.failed == ["nginx", "smartctl"]
    assert result.message == "Installed 3 of 5 missing binaries"
    installs = [c[1] for c in gateway.calls_named("run") if "install" in c[1]]
    assert len(installs) == 5
    assert installs[0][-1] == "jq"


def test_install_uses_package_name(engine, gateway):
    engine.remediation.install_missing_binaries([_missing("smartctl", "smartmontools")])
    installs = [c[1] for c in gateway.calls_named("run") if "install" in c[1]]
    assert installs == [("env", "DEBIAN_FRONTEND=noninteractive", "apt-get", "install", "-y", "smartmontools")]


def test_install_all_failing(engine, gateway):
    gateway.install_failures = {"jq"}
    result = engine.remediation.install_missing_binaries([_missing("jq")])
    assert not result.success
    assert result.failed == ["jq"]


def test_install_with_nothing_missing(engine, gateway):
    from diagnostics import BINARY_DEFINITIONS

    for spec in BINARY_DEFINITIONS:
        gateway.binaries[spec.name] = (f"/usr/bin/{spec.name}", f"{spec.name} 1.0")

    result = engine.check_and_install_binaries()

    assert result.success
    assert result.message == "All required binaries are present"
    assert result.installed == [] and result.failed == []


# ── Services ──────────────────────────────────────────────────────────────────

def _all_services_active(gateway):
    for spec in SERVICE_DEFINITIONS:
        gateway.services[(spec.target, spec.name)] = True


def test_fix_restarts_only_inactive_services(engine, gateway):
    _all_services_active(gateway)
    gateway.services[(Target.container(214), "sonarr")] = False

    result = engine.fix_all_services()

    assert result.success
    assert result.actions_taken == ["restarted sonarr"]
    restarts = [c for c in gateway.calls_named("run") if c[1][:2] == ("systemctl", "restart")]
    assert restarts == [("run", ("systemctl", "restart", "sonarr"), Target.container(214), None)]


def test_fix_with_everything_active(engine, gateway):
    _all_services_active(gateway)
    result = engine.fix_all_services()
    assert result.success
    assert result.actions_taken == []
    assert result.message == "All services are active"


def test_fix_records_failed_restart(engine, gateway):
    gateway.restart_failures = {"radarr"}
    services = [
        Service(name="sonarr", active=False, container_id=214),
        Service(name="radarr", active=False, container_id=215),
        Service(name="plex", active=True, container_id=230),
    ]

    result = engine.remediation.fix_all_services(services)

    assert result.success
    assert result.actions_taken == ["restarted sonarr", "failed to restart radarr (exit 1)"]


def test_fix_fails_when_nothing_could_be_dispatched(engine, gateway):
    services = [Service(name="sonarr", active=False, container_id=214)]
    gateway.fail_all = GatewayError.timeout("ssh pve-test", 1)

    result = engine.remediation.fix_all_services(services)

    assert not result.success
    assert result.actions_taken[0].startswith("could not restart sonarr")


# ── Scripts ───────────────────────────────────────────────────────────────────

def test_script_success(engine, gateway, settings):
    path = settings.script_path("container-fix")
    gateway.script_responses[path] = ok("fixed 3 containers\n")

    result = engine.run_container_fix_script()

    assert result.success
    assert result.name == "container-fix"
    assert result.exit_code == 0
    assert "fixed 3 containers" in result.output
    assert ("run", ("bash", path), HOST, None) in gateway.calls


def test_script_non_zero_exit(engine, gateway, settings):
    gateway.script_responses[settings.script_path("media-services-fix")] = fail(2, "plex: unit not found")

    result = engine.run_media_services_fix()

    assert not result.success
    assert result.exit_code == 2
    assert "plex: unit not found" in result.output


def test_script_timeout_keeps_partial_output(engine, gateway, settings):
    gateway.script_responses[settings.script_path("hardware-optimization")] = GatewayError.timeout(
        "bash optimize-hardware.sh", settings.script_timeout, output="tuning cpu governor\n"
    )

    result = engine.run_hardware_optimization()

    assert not result.success
    assert "tuning cpu governor" in result.output
    assert "timed out" in result.output


def test_unknown_script(engine):
    with pytest.raises(NotFoundError):
        engine.remediation.run_named_script("format-disks")


def test_host_reboot_is_scheduled(engine, gateway):
    result = engine.reboot_proxmox_host()
    assert result.success
    assert ("run", ("shutdown", "-r", "+1"), HOST, None) in gateway.calls


def test_duckdns_and_update(engine, gateway, settings):
    assert engine.update_duckdns().name == "duckdns-update"
    assert engine.update_proxmox_packages().name == "update-host-packages"
    assert engine.shutdown_proxmox_host().success


# ── Config files ──────────────────────────────────────────────────────────────

CT = Target.container(214)
PATH = "/config/config.xml"


def test_read_config(engine, gateway):
    gateway.files[(CT, PATH)] = "<Config><Port>8989</Port></Config>"
    assert engine.read_container_config(214, PATH) == "<Config><Port>8989</Port></Config>"


def test_read_missing_config(engine):
    with pytest.raises(ConfigIOError):
        engine.read_container_config(214, "/config/missing.xml")


def test_read_requires_absolute_path(engine, gateway):
    with pytest.raises(ValueError):
        engine.read_container_config(214, "config.xml")
    assert gateway.calls == []


def test_write_config_keeps_backup(engine, gateway):
    gateway.files[(CT, PATH)] = "old"

    message = engine.write_container_config(214, PATH, "new ✓")

    assert message == f"Config file {PATH} updated successfully"
    assert gateway.files[(CT, PATH)] == "new ✓"
    assert gateway.files[(CT, PATH + ".backup")] == "old"


def test_failed_write_leaves_prior_content(engine, gateway):
    gateway.files[(CT, PATH)] = "old"
    gateway.write_failures.add(PATH)

    with pytest.raises(ConfigIOError):
        engine.write_container_config(214, PATH, "new")

    assert gateway.files[(CT, PATH)] == "old"


def test_readonly_config_is_not_touched(engine, gateway):
    gateway.files[(CT, PATH)] = "old"
    gateway.readonly.add((CT, PATH))

    with pytest.raises(ConfigIOError):
        engine.write_container_config(214, PATH, "new")

    assert gateway.files[(CT, PATH)] == "old"
    assert (CT, PATH + ".backup") not in gateway.files


def test_write_unknown_container(engine, gateway):
    with pytest.raises(NotFoundError):
        engine.write_container_config(999, PATH, "x")
    assert gateway.calls == []


def test_concurrent_writes_never_interleave(engine, gateway):
    gateway.files[(CT, PATH)] = "old"
    contents = [f"version {i}\n" * 50 for i in range(8)]

    threads = [
        threading.Thread(target=engine.write_container_config, args=(214, PATH, c))
        for c in contents
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert gateway.files[(CT, PATH)] in contents


def test_file_locks_are_dropped_after_writes(engine, gateway):
    for i in range(5):
        path = f"/config/app{i}.conf"
        gateway.files[(CT, path)] = "old"
        engine.write_container_config(214, path, "new")

    gc.collect()
    assert len(engine.remediation._file_locks) == 0


def test_lock_is_shared_while_held(engine):
    held = engine.remediation._lock_for(CT, PATH)
    assert engine.remediation._lock_for(CT, PATH) is held


VM = Target.vm(500)
HA_CONFIG = "/config/configuration.yaml"


def test_vm_config_round_trip(engine, gateway):
    gateway.files[(VM, HA_CONFIG)] = "homeassistant:\n"

    engine.write_vm_config(500, HA_CONFIG, "homeassistant:\n  name: Home\n")

    assert engine.read_vm_config(500, HA_CONFIG) == "homeassistant:\n  name: Home\n"
    assert gateway.files[(VM, HA_CONFIG + ".backup")] == "homeassistant:\n"


def test_container_id_is_not_a_vm_for_configs(engine, gateway):
    with pytest.raises(NotFoundError):
        engine.read_vm_config(214, HA_CONFIG)
    assert gateway.calls == []
