import io

import pytest
from rich.console import Console

import main
from fake_gateway import ok
from gateway import Target
from models import ControlAction, StatusReport, WorkloadStatus


@pytest.fixture
def output(monkeypatch):
    buf = io.StringIO()
    monkeypatch.setattr(main, "console", Console(file=buf, width=200, color_system=None))
    return buf


@pytest.fixture
def shell(engine):
    return main.ProxmoxShell(engine)


def test_exit(shell, output):
    assert shell.handle_command("/exit") is True
    assert shell.handle_command("/quit") is True


def test_overview_lists_workloads(shell, gateway, output):
    gateway.statuses[214] = StatusReport(WorkloadStatus.RUNNING, 4.2, 30.0, 600)

    assert shell.handle_command("/overview") is False

    text = output.getvalue()
    assert "Containers: 1/51 running" in text
    assert "Home Assistant" in text


def test_start_resolves_vm_through_catalog(shell, gateway, output):
    shell.handle_command("/start 500")

    from catalog import WorkloadKind

    assert gateway.calls_named("control") == [
        ("control", 500, WorkloadKind.VIRTUAL_MACHINE, ControlAction.START)
    ]
    assert "VM 500 start accepted" in output.getvalue()


def test_errors_are_printed_not_raised(shell, gateway, output):
    shell.handle_command("/stop 999")
    shell.handle_command("/details")
    shell.handle_command("/service nginx")
    text = output.getvalue()
    assert "Unknown workload id: 999" in text
    assert "A workload id is required" in text
    assert "Usage: /service" in text


def test_unknown_command(shell, output):
    shell.handle_command("/frobnicate")
    assert "Unknown command /frobnicate" in output.getvalue()


def test_cat_prints_file(shell, gateway, output):
    gateway.files[(Target.container(214), "/config/config.xml")] = "<Port>8989</Port>\n"
    shell.handle_command("/cat 214 /config/config.xml")
    assert "8989" in output.getvalue()


def test_host_procedures_need_confirmation(shell, gateway, output):
    shell.handle_command("/reboot-host")
    assert "Cancelled" in output.getvalue()
    assert not any(c[1][0] == "shutdown" for c in gateway.calls_named("run"))


def test_script_command(shell, gateway, settings, output):
    gateway.script_responses[settings.script_path("container-fix")] = ok("all good\n")
    shell.handle_command("/script container-fix")
    assert "all good" in output.getvalue()


def test_status_of_one_workload(shell, gateway, output):
    gateway.statuses[611] = StatusReport(WorkloadStatus.RUNNING, 1.0, 2.0, 60)
    shell.handle_command("/status 611")
    text = output.getvalue()
    assert "611" in text
    assert "Running" in text


def test_check_commands(shell, gateway, output):
    gateway.services[(Target.container(214), "sonarr")] = True
    gateway.binaries["jq"] = ("/usr/bin/jq", "jq-1.6")

    shell.handle_command("/check-service sonarr 214")
    shell.handle_command("/check-binary jq")
    shell.handle_command("/check-config /etc/absent.conf")
    shell.handle_command("/check-binary")

    text = output.getvalue()
    assert "sonarr" in text
    assert "/usr/bin/jq" in text
    assert "/etc/absent.conf" in text
    assert "Usage: /check-binary NAME [ID]" in text


def test_cat_reads_vm_config(shell, gateway, output):
    gateway.files[(Target.vm(500), "/config/configuration.yaml")] = "homeassistant:\n  name: Home\n"
    shell.handle_command("/cat 500 /config/configuration.yaml")
    assert "name: Home" in output.getvalue()
