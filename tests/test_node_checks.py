import os

from hpc_audit import node_checks
from hpc_audit.check_results import Category, Status
from hpc_audit.check_runner import minimum_threshold, run_check

LSCPU = """Architecture:                    x86_64
CPU(s):                          224
Model name:                      Intel(R) Xeon(R) Platinum 8480+
Core(s) per socket:              56
Socket(s):                       2
NUMA node(s):                    2
NUMA node0 CPU(s):               0-55,112-167
NUMA node1 CPU(s):               56-111,168-223
"""

DF = """Filesystem      Size  Used Avail Capacity Mounted on
/dev/nvme0n1p2  1.8T  1.5T  300G      84% /
/dev/nvme1n1    3.5T  700G  2.8T      20% /scratch
"""


def test_lscpu_parsers() -> None:
    assert node_checks.lscpu_model(LSCPU) == "Intel(R) Xeon(R) Platinum 8480+"
    assert node_checks.lscpu_topology(LSCPU) == "Core(s) per socket: 56 Socket(s): 2"
    assert node_checks.lscpu_numa(LSCPU).startswith("NUMA node(s): 2 NUMA node0 CPU(s):")


def test_os_pretty_name() -> None:
    text = 'NAME="Ubuntu"\nPRETTY_NAME="Ubuntu 22.04.4 LTS"\nID=ubuntu\n'
    assert node_checks.os_pretty_name(text) == "Ubuntu 22.04.4 LTS"


def test_driver_version_found_and_missing() -> None:
    smi = "| NVIDIA-SMI 535.161.08   Driver Version: 535.161.08   CUDA Version: 12.2 |"
    assert node_checks.driver_version(smi) == "535.161.08"
    assert node_checks.driver_version("no gpus here") == ""


def test_df_free_percent_and_threshold() -> None:
    assert node_checks.df_free_percent(DF) == [("/", 16.0), ("/scratch", 80.0)]
    evaluate = minimum_threshold(node_checks.df_free_percent, 20, "free space", "%")
    evaluation = evaluate(DF)
    assert evaluation.status is Status.FAIL
    assert "/ 16 % below minimum 20 %" in evaluation.note
    assert "/scratch" not in evaluation.note


def test_link_speeds_skip_unknown() -> None:
    out = "eth0: Speed: 25000Mb/s\neth1: Speed: Unknown!\nib0: Speed: 400000Mb/s"
    assert node_checks.link_speeds(out) == [("eth0", 25000.0), ("ib0", 400000.0)]


def test_link_speed_probe_runs_ethtool_per_interface(monkeypatch) -> None:
    outputs = {
        "eth0": "Settings for eth0:\n\tSpeed: 10000Mb/s\n",
        "eth1": "Settings for eth1:\n\tSpeed: Unknown!\n",
    }
    monkeypatch.setattr(node_checks, "execute", lambda argv, **kw: (0, outputs[argv[1]]))
    rc, out = node_checks.link_speed_probe(["eth0", "eth1"])()
    assert rc == 0
    assert out == "eth0: Speed: 10000Mb/s\neth1: Speed: Unknown!"


def test_link_speed_probe_without_interfaces_fails() -> None:
    rc, _ = node_checks.link_speed_probe([])()
    assert rc == 1


def test_link_speed_check_threshold(monkeypatch) -> None:
    monkeypatch.setattr(node_checks, "execute", lambda argv, **kw: (0, "Speed: 1000Mb/s"))
    specs = node_checks.ethernet_checks(min_link_speed=10000, has_bond=False, interfaces=["eth0"])
    link = next(s for s in specs if s.name == "Link Speed Check")
    result = run_check(link)
    assert result.status is Status.FAIL
    assert "eth0 1000 Mb/s below minimum 10000 Mb/s" in result.notes


def test_bond_rows_depend_on_bond_presence() -> None:
    names = [s.name for s in node_checks.ethernet_checks(has_bond=True, interfaces=[])]
    assert "Bond Speed" in names and "Bond Type" in names
    assert node_checks.ethernet_static_rows(has_bond=True) == []

    names = [s.name for s in node_checks.ethernet_checks(has_bond=False, interfaces=[])]
    assert "Bond Speed" not in names
    rows = node_checks.ethernet_static_rows(has_bond=False)
    assert [r.name for r in rows] == ["Bond Speed", "Bond Type"]
    assert all(r.status is Status.PARTIAL and r.notes == "bond0 not present" for r in rows)


def test_global_addresses() -> None:
    out = "2: eth0    inet 10.0.0.5/24 brd 10.0.0.255 scope global eth0\\       valid_lft forever"
    assert node_checks.global_addresses(out) == "eth0 inet 10.0.0.5/24"


def test_nfs_mounts_filter() -> None:
    out = (
        "/dev/sda1 on / type ext4 (rw)\n"
        "nas:/export on /mnt/data type nfs4 (rw,vers=4.2)\n"
        "nfsd on /proc/fs/nfsd type nfsd (rw)\n"
    )
    assert node_checks.nfs_mounts(out) == "nas:/export on /mnt/data type nfs4 (rw,vers=4.2)"


def test_dpkg_packages_are_tab_rows() -> None:
    out = "adduser\t3.118ubuntu5\nlibc6:amd64\t2.35-0ubuntu3.6\n"
    assert node_checks.dpkg_packages(out) == "adduser\t3.118ubuntu5\nlibc6:amd64\t2.35-0ubuntu3.6"


def test_speedtest_evaluator() -> None:
    out = "Ping: 4.2 ms\nDownload: 940.55 Mbit/s\nUpload: 410.10 Mbit/s\n"
    assert node_checks.speedtest_rates(out) == {"Download": 940.55, "Upload": 410.10}
    assert node_checks.speedtest_evaluator(900, 400)(out).status is Status.PASS
    failed = node_checks.speedtest_evaluator(900, 500)(out)
    assert failed.status is Status.FAIL
    assert "Upload" in failed.note
    assert node_checks.speedtest_evaluator(0, 0)(out).status is None
    assert node_checks.speedtest_evaluator(1, 1)("garbage").status is Status.PARTIAL


def test_speedtest_without_server_ids() -> None:
    specs = node_checks.network_speed_checks(nearby="", eu="")
    assert [s.name for s in specs] == ["Speedtest Nearby"]
    assert "--server" not in specs[0].argv
    rows = node_checks.network_speed_static_rows(eu="")
    assert rows[0].name == "Speedtest Europe"

    specs = node_checks.network_speed_checks(nearby="14679", eu="30620")
    assert specs[0].argv[-2:] == ("--server", "14679")
    assert specs[1].argv[-1] == "30620"
    assert node_checks.network_speed_static_rows(eu="30620") == []


def test_shadow_probe_never_emits_hashes(tmp_path) -> None:
    shadow = tmp_path / "shadow"
    shadow.write_text(
        "root:$6$salt$hashvalue:19000:0:99999:7:::\n"
        "daemon:*:19000:0:99999:7:::\n"
        "ubuntu:!:19000:0:99999:7:::\n"
    )
    rc, out = node_checks.shadow_probe(str(shadow))()
    assert rc == 0
    assert out == "root: password set\ndaemon: locked\nubuntu: locked"
    assert "$6$" not in out
    assert node_checks.shadow_evaluator(out).note == "1 account(s) with passwords set"


def test_home_dirs_probe(tmp_path) -> None:
    passwd = tmp_path / "passwd"
    passwd.write_text(
        "root:x:0:0:root:/root:/bin/bash\n"
        "alice:x:1000:1000::/home/alice:/bin/bash\n"
        "svc:x:999:999::/home/alice:/usr/sbin/nologin\n"
    )
    assert node_checks.home_dirs_probe(str(passwd))() == (0, "/home/alice\n/root")


def test_ssh_keys_probe_reports_metadata_only(tmp_path) -> None:
    ssh = tmp_path / "home" / "alice" / ".ssh"
    ssh.mkdir(parents=True)
    (ssh / "id_ed25519").write_text("PRIVATE KEY MATERIAL")
    (ssh / "notes.txt").write_text("ignored")
    os.chmod(ssh / "id_ed25519", 0o600)

    rc, out = node_checks.ssh_keys_probe(roots=(), home_glob=str(tmp_path / "home" / "*" / ".ssh"))()
    assert rc == 0
    rows = [line.split("\t") for line in out.splitlines()]
    assert len(rows) == 1
    path, kind, perms, _, fingerprint = rows[0]
    assert path.endswith("id_ed25519")
    assert kind == "private"
    assert perms == "0o600"
    assert fingerprint == "N/A"
    assert "PRIVATE KEY MATERIAL" not in out


def test_motd_probe_and_evaluator(tmp_path) -> None:
    motd = tmp_path / "motd"
    motd.write_text("Welcome\n")
    fragments = tmp_path / "update-motd.d"
    fragments.mkdir()
    (fragments / "00-header").write_text("#!/bin/sh\necho hi\n")
    rc, out = node_checks.motd_probe(str(motd), str(fragments))()
    assert rc == 0
    assert out.count("==> ") == 2
    evaluation = node_checks.motd_evaluator(out)
    assert evaluation.status is Status.PARTIAL
    assert "2 files" in evaluation.note


def test_check_table_covers_every_command_category() -> None:
    for category in Category:
        if category is Category.BENCHMARKS:
            assert node_checks.checks_for(category) == []
            continue
        assert category in node_checks.CHECK_TABLE
    assert all(s.category is Category.GPU for s in node_checks.gpu_checks())


def test_commands_are_argv_lists_not_shell_strings() -> None:
    for builder in (node_checks.system_checks, node_checks.cpu_checks, node_checks.gpu_checks,
                    node_checks.infiniband_checks, node_checks.software_checks):
        for spec in builder():
            assert spec.probe is not None or spec.argv
            assert not any("|" == part for part in spec.argv)


def test_home_dirs_probe_tolerates_latin1_gecos(tmp_path) -> None:
    passwd = tmp_path / "passwd"
    passwd.write_bytes(b"jose:x:1001:1001:Jos\xe9 Mu\xf1oz:/home/jose:/bin/bash\n")
    assert node_checks.home_dirs_probe(str(passwd))() == (0, "/home/jose")


def test_speedtest_without_minimums_leaves_status_untouched() -> None:
    evaluation = node_checks.speedtest_evaluator(0, 0)("garbage")
    assert evaluation.status is None
    assert evaluation.note == "No minimum threshold configured"
