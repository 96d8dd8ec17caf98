import pytest

from catalog import Catalog, WorkloadKind, container, vm
from control_engine import ControlEngine
from errors import AdvisorUnavailable, GatewayError, GatewayErrorKind, NotFoundError
from fake_gateway import FakeAdvisor, ok
from gateway import HOST, Target
from models import ControlAction, ControlState, StatusReport, SuggestionSeverity, WorkloadStatus


def test_start_stopped_container(engine, gateway):
    result = engine.start_container(101)

    assert result.success
    assert result.previous_status is WorkloadStatus.STOPPED
    assert result.state is ControlState.TRANSITIONING
    assert result.kind is WorkloadKind.CONTAINER
    assert gateway.calls_named("control") == [
        ("control", 101, WorkloadKind.CONTAINER, ControlAction.START)
    ]


def test_start_unknown_id_makes_no_gateway_call(engine, gateway):
    with pytest.raises(NotFoundError):
        engine.start_container(999)
    assert gateway.calls == []


def test_vm_id_is_not_a_container(engine, gateway):
    with pytest.raises(NotFoundError):
        engine.stop_container(500)
    assert gateway.calls == []


def test_double_start_is_idempotent(engine, gateway):
    first = engine.start_container(101)
    second = engine.start_container(101)

    assert first.state is ControlState.TRANSITIONING
    assert second.success
    assert second.previous_status is WorkloadStatus.RUNNING
    assert second.state is ControlState.RUNNING
    assert "already running" in second.message


def test_stop_running_vm(engine, gateway):
    gateway.statuses[500] = StatusReport(WorkloadStatus.RUNNING)
    result = engine.stop_vm(500)

    assert result.success
    assert result.kind is WorkloadKind.VIRTUAL_MACHINE
    assert result.state is ControlState.TRANSITIONING
    assert gateway.statuses[500].status is WorkloadStatus.STOPPED


def test_restart_stopped_vm_starts_it(engine, gateway):
    result = engine.restart_vm(611)

    assert result.success
    assert result.action is ControlAction.RESTART
    assert gateway.calls_named("control") == [
        ("control", 611, WorkloadKind.VIRTUAL_MACHINE, ControlAction.START)
    ]


def test_control_failure_propagates_with_status(engine, gateway):
    gateway.statuses[230] = StatusReport(WorkloadStatus.RUNNING)
    gateway.control_errors[230] = GatewayError(
        GatewayErrorKind.PERMISSION_DENIED, "pct stop 230: permission denied"
    )

    with pytest.raises(GatewayError) as excinfo:
        engine.stop_container(230)

    assert excinfo.value.error_kind is GatewayErrorKind.PERMISSION_DENIED
    assert excinfo.value.details["reported_status"] == ["Running", "Unknown"]


def test_control_service_on_host(engine, gateway):
    message = engine.control_service("nginx", "restart")

    assert message == "Service nginx restarted successfully"
    assert ("run", ("systemctl", "restart", "nginx"), HOST, None) in gateway.calls


def test_control_service_in_container(engine, gateway):
    engine.control_service("sonarr", "stop", container_id=214)
    assert ("run", ("systemctl", "stop", "sonarr"), Target.container(214), None) in gateway.calls


def test_control_service_unknown_name(engine, gateway):
    with pytest.raises(NotFoundError):
        engine.control_service("no-such-daemon", "start")
    assert not any(c[1][:2] == ("systemctl", "start") for c in gateway.calls_named("run"))


def test_control_service_undefined_but_installed(engine, gateway):
    gateway.services[(HOST, "pveproxy")] = True
    assert engine.control_service("pveproxy", "restart") == "Service pveproxy restarted successfully"


def test_control_service_rejects_bad_input(engine):
    with pytest.raises(ValueError):
        engine.control_service("nginx", "explode")
    with pytest.raises(ValueError):
        engine.control_service("nginx; reboot", "start")


def test_control_service_unknown_container(engine, gateway):
    with pytest.raises(NotFoundError):
        engine.control_service("sonarr", "start", container_id=999)
    assert gateway.calls == []


def test_config_suggestions(settings, gateway, catalog):
    reply = """<think>checking</think>
Here you go:
[{"title": "Enable auth", "description": "Authentication is disabled", "severity": "warning", "line": 3,
  "replacement": "<AuthenticationMethod>Forms</AuthenticationMethod>"},
 {"description": "missing title is skipped"}]"""
    advisor = FakeAdvisor(reply=reply)
    engine = ControlEngine(settings=settings, gateway=gateway, catalog=catalog, advisor=advisor)
    try:
        suggestions = engine.get_ai_config_suggestions(214, "/config/config.xml", "<Config/>")
    finally:
        engine.close()

    assert len(suggestions) == 1
    assert suggestions[0].severity is SuggestionSeverity.WARNING
    assert suggestions[0].line == 3
    assert "Sonarr" in advisor.prompts[0] or "214" in advisor.prompts[0]


def test_config_suggestions_degrade_when_advisor_is_down(settings, gateway, catalog):
    advisor = FakeAdvisor(error=AdvisorUnavailable("Cannot connect to advisor server"))
    engine = ControlEngine(settings=settings, gateway=gateway, catalog=catalog, advisor=advisor)
    try:
        assert engine.get_ai_config_suggestions(214, "/config/config.xml", "<Config/>") == []
    finally:
        engine.close()


def test_config_suggestions_unknown_container(engine):
    with pytest.raises(NotFoundError):
        engine.get_ai_config_suggestions(999, "/etc/x.conf", "")


def test_container_details(engine, gateway):
    ct = Target.container(101)
    gateway.files[(ct, "/etc/os-release")] = 'NAME="Debian"\nPRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\n'
    gateway.responses[
        ("systemctl", "list-units", "--type=service", "--state=running", "--no-legend", "--plain")
    ] = ok(
        "ssh.service loaded active running OpenBSD Secure Shell server\n"
        "cron.service loaded active running Regular background program processing daemon\n"
    )

    details = engine.get_container_details(101)

    assert details.id == 101
    assert details.os_info == "Debian GNU/Linux 12 (bookworm)"
    assert details.systemd_services == ["cron", "ssh"]


def test_container_details_unknown_container(engine, gateway):
    with pytest.raises(NotFoundError):
        engine.get_container_details(611)
    assert gateway.calls == []


# ── Single-item checks ────────────────────────────────────────────────────────

def test_container_status(engine, gateway):
    gateway.statuses[214] = StatusReport(WorkloadStatus.RUNNING, 5.0, 20.0, 3660)

    workload = engine.get_container_status(214)

    assert workload.id == 214
    assert workload.kind is WorkloadKind.CONTAINER
    assert workload.status is WorkloadStatus.RUNNING
    assert workload.cpu_usage == 5.0
    assert workload.uptime == "1h 1m"
    assert gateway.calls == [("status", 214, WorkloadKind.CONTAINER)]


def test_vm_status_failure_is_raised(engine, gateway):
    gateway.statuses[500] = GatewayError(GatewayErrorKind.TIMEOUT, "qm status 500 timed out after 1s")

    with pytest.raises(GatewayError) as excinfo:
        engine.get_vm_status(500)
    assert excinfo.value.error_kind is GatewayErrorKind.TIMEOUT


def test_check_service_status_in_container(engine, gateway):
    ct = Target.container(214)
    gateway.services[(ct, "sonarr")] = True
    gateway.enabled.add((ct, "sonarr"))

    service = engine.check_service_status("sonarr", container_id=214)

    assert service.active and service.enabled
    assert service.container_id == 214
    assert service.vm_id is None


def test_check_service_status_of_undefined_host_service(engine, gateway):
    service = engine.check_service_status("cron")

    assert service.name == "cron"
    assert not service.active
    assert all(call[2] == HOST for call in gateway.calls_named("run"))


def test_check_service_status_rejects_bad_names(engine, gateway):
    with pytest.raises(ValueError):
        engine.check_service_status("nginx; reboot")
    assert gateway.calls == []


def test_check_binary(engine, gateway):
    gateway.binaries["jq"] = ("/usr/bin/jq", "jq-1.6")

    found = engine.check_binary("jq")
    missing = engine.check_binary("htop", container_id=214)

    assert found.exists
    assert found.path == "/usr/bin/jq"
    assert found.version == "jq-1.6"
    assert found.package == "jq"
    assert not missing.exists
    assert missing.package is None
    assert gateway.calls_named("run")[-1][2] == Target.container(214)


def test_check_config_on_vm(engine, gateway):
    target = Target.vm(500)
    gateway.files[(target, "/config/configuration.yaml")] = "homeassistant:\n"
    gateway.readonly.add((target, "/config/configuration.yaml"))

    config = engine.check_config("/config/configuration.yaml", vm_id=500)

    assert config.exists and config.readable
    assert not config.writable
    assert config.size_bytes == len("homeassistant:\n")
    assert config.vm_id == 500


def test_check_config_missing_and_relative(engine, gateway):
    assert not engine.check_config("/etc/absent.conf").exists
    with pytest.raises(ValueError):
        engine.check_config("etc/absent.conf")


def test_check_with_both_ids_is_rejected(engine, gateway):
    with pytest.raises(ValueError):
        engine.check_binary("jq", container_id=214, vm_id=500)
    assert gateway.calls == []


# ── Unknown ids never reach the hypervisor ────────────────────────────────────

UNKNOWN_ID_OPERATIONS = {
    "start_container": lambda e: e.start_container(999),
    "stop_container": lambda e: e.stop_container(999),
    "restart_container": lambda e: e.restart_container(999),
    "start_vm": lambda e: e.start_vm(999),
    "stop_vm": lambda e: e.stop_vm(999),
    "restart_vm": lambda e: e.restart_vm(999),
    "get_container_status": lambda e: e.get_container_status(999),
    "get_vm_status": lambda e: e.get_vm_status(999),
    "get_container_details": lambda e: e.get_container_details(999),
    "get_container_configs": lambda e: e.get_container_configs(999),
    "read_container_config": lambda e: e.read_container_config(999, "/etc/x.conf"),
    "write_container_config": lambda e: e.write_container_config(999, "/etc/x.conf", "x"),
    "read_vm_config": lambda e: e.read_vm_config(999, "/etc/x.conf"),
    "write_vm_config": lambda e: e.write_vm_config(999, "/etc/x.conf", "x"),
    "control_service": lambda e: e.control_service("nginx", "restart", container_id=999),
    "check_service_status": lambda e: e.check_service_status("nginx", vm_id=999),
    "check_binary": lambda e: e.check_binary("jq", container_id=999),
    "check_config": lambda e: e.check_config("/etc/x.conf", vm_id=999),
    "get_ai_config_suggestions": lambda e: e.get_ai_config_suggestions(999, "/etc/x.conf", ""),
}


@pytest.mark.parametrize("operation", list(UNKNOWN_ID_OPERATIONS.values()), ids=list(UNKNOWN_ID_OPERATIONS))
def test_unknown_id_raises_not_found_without_gateway_calls(engine, gateway, advisor, operation):
    with pytest.raises(NotFoundError):
        operation(engine)
    assert gateway.calls == []
    assert advisor.prompts == []


@pytest.fixture
def two_entry_engine(settings, gateway, advisor):
    catalog = Catalog([container(101, "A"), vm(500, "B")])
    eng = ControlEngine(settings=settings, gateway=gateway, catalog=catalog, advisor=advisor)
    yield eng
    eng.close()


def test_two_entry_catalog(two_entry_engine, gateway):
    overview = two_entry_engine.get_system_overview()
    assert [w.id for w in overview.containers] == [101]
    assert [w.id for w in overview.vms] == [500]
    gateway.calls.clear()

    with pytest.raises(NotFoundError):
        two_entry_engine.start_container(102)
    with pytest.raises(NotFoundError):
        two_entry_engine.start_container(500)
    with pytest.raises(NotFoundError):
        two_entry_engine.start_vm(101)
    assert gateway.calls == []

    assert two_entry_engine.start_container(101).success
