import pytest

from errors import GatewayError
from fake_gateway import fail, ok
from host_indexer import (
    HostIndexer,
    clean_cpu_name,
    memory_used_pct,
    parse_cpuinfo,
    parse_df_percent,
    parse_loadavg,
    parse_meminfo,
    parse_os_release,
    parse_running_units,
    parse_uptime_seconds,
)

CPUINFO = """processor\t: 0
model name\t: Intel(R) Core(TM) i7-8700 CPU @ 3.20GHz
processor\t: 1
model name\t: Intel(R) Core(TM) i7-8700 CPU @ 3.20GHz
"""


def test_parse_os_release():
    info = parse_os_release('NAME="Debian GNU/Linux"\nVERSION_ID="12"\nPRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\n')
    assert info["PRETTY_NAME"] == "Debian GNU/Linux 12 (bookworm)"
    assert info["VERSION_ID"] == "12"


def test_memory_percent():
    meminfo = parse_meminfo("MemTotal:       16000000 kB\nMemFree: 1000 kB\nMemAvailable:    4000000 kB\n")
    assert meminfo["MemTotal"] == 16000000
    assert memory_used_pct(meminfo) == 75.0
    assert memory_used_pct({}) == 0.0


def test_parse_df_percent():
    text = "Filesystem 1024-blocks Used Available Capacity Mounted on\n/dev/sda1 100 45 55 45% /\n"
    assert parse_df_percent(text) == 45.0
    assert parse_df_percent("") == 0.0


def test_parse_loadavg_and_uptime():
    assert parse_loadavg("0.52 0.58 0.59 1/1234 5678") == [0.52, 0.58, 0.59]
    assert parse_loadavg("") == []
    assert parse_uptime_seconds("12345.67 9999.00") == 12345
    assert parse_uptime_seconds("") is None


def test_cpuinfo():
    info = parse_cpuinfo(CPUINFO)
    assert info["cpu_cores"] == 2
    assert clean_cpu_name(info["cpu"]) == "Intel Core i7-8700"


def test_parse_running_units():
    text = (
        "ssh.service loaded active running OpenBSD Secure Shell server\n"
        "cron.service loaded active running Regular background program processing daemon\n"
        "ssh.service loaded active running duplicate\n"
        "garbage\n"
    )
    assert parse_running_units(text) == ["cron", "ssh"]


def test_cluster_standalone(settings, gateway):
    gateway.responses[("pvecm", "status")] = fail(
        2, "Error: Corosync config '/etc/pve/corosync.conf' does not exist - is this node part of a cluster?"
    )
    assert HostIndexer(gateway, settings).get_cluster_status() == "Standalone node (not part of a cluster)"


def test_cluster_member(settings, gateway):
    gateway.responses[("pvecm", "status")] = ok("Cluster information\n-------------------\nName: homelab\n")
    assert HostIndexer(gateway, settings).get_cluster_status().startswith("Cluster information")


def test_cluster_failure_raises(settings, gateway):
    gateway.responses[("pvecm", "status")] = fail(1, "ipcc_send_rec failed")
    with pytest.raises(GatewayError):
        HostIndexer(gateway, settings).get_cluster_status()


def test_host_info(engine, gateway):
    gateway.responses[("hostname",)] = ok("pve\n")
    gateway.responses[("pveversion",)] = ok("pve-manager/8.2.4/faa83925c9641325 (running kernel: 6.8.8-2-pve)\n")
    gateway.responses[("uname", "-r")] = ok("6.8.8-2-pve\n")
    gateway.responses[("cat", "/etc/os-release")] = ok('PRETTY_NAME="Debian GNU/Linux 12 (bookworm)"\n')
    gateway.responses[("cat", "/proc/cpuinfo")] = ok(CPUINFO)
    gateway.responses[("cat", "/proc/meminfo")] = ok("MemTotal: 16777216 kB\nMemAvailable: 8388608 kB\n")
    gateway.responses[("cat", "/proc/uptime")] = ok("3660 10\n")
    gateway.responses[("cat", "/proc/loadavg")] = ok("0.10 0.20 0.30 1/100 42\n")

    info = engine.get_proxmox_host_info()

    assert info.hostname == "pve"
    assert info.kernel == "6.8.8-2-pve"
    assert info.pve_version.startswith("pve-manager/8.2.4")
    assert info.cpu_cores == 2
    assert info.memory_total_gb == 16.0
    assert info.memory_used_gb == 8.0
    assert info.uptime == "1h 1m"
    assert info.load_average == [0.1, 0.2, 0.3]

    labels = [f["label"] for f in HostIndexer.get_fields(info)]
    assert labels[:3] == ["Host", "OS", "Proxmox"]
    assert "Memory" in labels


def test_host_info_survives_failed_probes(engine, gateway):
    gateway.fail_all = GatewayError.timeout("ssh pve-test", 1)
    info = engine.get_proxmox_host_info()
    assert info.hostname == "Unknown"
    assert info.load_average == []
