"""
Check table for every audit category.

Each category builder returns a list of CheckSpec entries. Commands are
argv lists executed without a shell; the text filtering the original shell
pipelines did (grep/sed/awk) lives in the parsers below.
"""
import os
import re
import grp
import pwd
import glob
import stat
import logging

from . import audit_config
from .check_results import Category, CheckResult, Status
from .check_runner import (
    CheckSpec,
    Evaluation,
    UnexpectedOutput,
    compare_minimum,
    execute,
    minimum_threshold,
    skipped,
)
from .host_probe import bond_present, list_interfaces, port_probe, ram_probe


# =============================
# Parsers
# =============================
def grep_lines(*needles, ignore_case=False):
    """Parser keeping lines containing any of needles."""
    def parse(output):
        kept = []
        for line in output.splitlines():
            hay = line.lower() if ignore_case else line
            if any((n.lower() if ignore_case else n) in hay for n in needles):
                kept.append(line.strip())
        return "\n".join(kept)
    return parse


def os_pretty_name(output):
    for line in output.splitlines():
        if line.startswith("PRETTY_NAME="):
            return line.split("=", 1)[1].strip().strip('"')
    return ""


def lscpu_field(output, field):
    m = re.search(rf"^{re.escape(field)}:\s*(.+)$", output, re.MULTILINE)
    if not m:
        raise UnexpectedOutput(f"{field} not in lscpu output")
    return m.group(1).strip()


def lscpu_model(output):
    return lscpu_field(output, "Model name")


def lscpu_topology(output):
    lines = [l for l in output.splitlines() if re.match(r"^(Socket|Core)", l)]
    return " ".join(" ".join(l.split()) for l in lines)


def lscpu_numa(output):
    lines = [l for l in output.splitlines() if "NUMA node" in l]
    return " ".join(" ".join(l.split()) for l in lines)


def driver_version(output):
    m = re.search(r"Driver Version:\s*([0-9.]+)", output)
    return m.group(1) if m else ""


def global_addresses(output):
    # ip -o addr: "2: eth0    inet 10.0.0.5/24 brd ..."
    rows = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 4:
            rows.append(f"{parts[1]} {parts[2]} {parts[3]}")
    return "\n".join(rows)


def ethtool_speed(output):
    m = re.search(r"Speed:\s*(.+)", output)
    return f"Speed: {m.group(1).strip()}" if m else "Speed: Unknown"


def link_speeds(output):
    """Extract (iface, Mb/s) from "iface: Speed: 25000Mb/s" lines; unknown speeds skipped."""
    measured = []
    for line in output.splitlines():
        m = re.match(r"^(\S+): Speed: (\d+(?:\.\d+)?)\s*Mb/s", line.strip())
        if m:
            measured.append((m.group(1), float(m.group(2))))
    return measured


def bonding_mode(output):
    return grep_lines("Bonding Mode")(output)


def df_free_percent(output):
    """Extract (mountpoint, free %) from `df -hP` output."""
    measured = []
    for line in output.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 6 or not parts[4].endswith("%"):
            continue
        used = float(parts[4].rstrip("%"))
        measured.append((parts[5], 100.0 - used))
    return measured


def nfs_mounts(output):
    return "\n".join(l for l in output.splitlines() if re.search(r"\btype nfs\d?\b", l))


def systemd_active(output):
    return grep_lines("Active:")(output)


def dpkg_packages(output):
    rows = []
    for line in output.splitlines():
        parts = line.split(None, 1)
        if parts:
            rows.append("\t".join([parts[0], parts[1].strip() if len(parts) > 1 else ""]))
    return "\n".join(rows)


def sorted_lines(output):
    return "\n".join(sorted(l.strip() for l in output.splitlines() if l.strip()))


def speedtest_rates(output):
    """Parse `speedtest-cli --simple` into {"Download": Mbit/s, "Upload": Mbit/s}."""
    rates = {}
    for line in output.splitlines():
        m = re.match(r"^(Download|Upload):\s*([0-9.]+)\s*Mbit/s", line.strip())
        if m:
            rates[m.group(1)] = float(m.group(2))
    return rates


def speedtest_evaluator(min_download=None, min_upload=None):
    if min_download is None:
        min_download = audit_config.MIN_DOWNLOAD_MBPS
    if min_upload is None:
        min_upload = audit_config.MIN_UPLOAD_MBPS

    def evaluate(output):
        if min_download <= 0 and min_upload <= 0:
            return Evaluation(None, "No minimum threshold configured")
        rates = speedtest_rates(output)
        if "Download" not in rates or "Upload" not in rates:
            return Evaluation(Status.PARTIAL, "Could not parse speedtest output")
        notes = []
        status = None
        for label, minimum in (("Download", min_download), ("Upload", min_upload)):
            ev = compare_minimum(rates[label], minimum, label, "Mbit/s")
            notes.append(ev.note)
            if ev.status is Status.FAIL:
                status = Status.FAIL
            elif ev.status is Status.PASS and status is None:
                status = Status.PASS
        return Evaluation(status, "\n".join(dict.fromkeys(notes)))
    return evaluate


# =============================
# Probes
# =============================
def link_speed_probe(interfaces=None):
    """Run ethtool on every non-loopback interface and collect the Speed line."""
    def probe():
        names = list_interfaces() if interfaces is None else interfaces
        if not names:
            return 1, "No network interfaces found"
        lines = []
        for name in names:
            _, out = execute(["ethtool", name])
            lines.append(f"{name}: {ethtool_speed(out)}")
        return 0, "\n".join(lines)
    return probe


def motd_probe(motd="/etc/motd", fragments_dir="/etc/update-motd.d"):
    def probe():
        blocks = []
        paths = [motd] if os.path.isfile(motd) else []
        if os.path.isdir(fragments_dir):
            paths += sorted(
                p for p in glob.glob(os.path.join(fragments_dir, "*")) if os.path.isfile(p)
            )
        for path in paths:
            with open(path, encoding="utf-8", errors="replace") as f:
                blocks.append(f"==> {path} <==\n{f.read().rstrip()}")
        return 0, "\n\n".join(blocks)
    return probe


def motd_evaluator(output):
    count = sum(1 for l in output.splitlines() if l.startswith("==> "))
    if count > 1:
        return Evaluation(Status.PARTIAL, f"Multiple MOTD fragments ({count} files)")
    return Evaluation(None, f"{count} MOTD file(s)")


def ssh_key_files(roots=("/root/.ssh",), home_glob="/home/*/.ssh"):
    paths = []
    for root in list(roots) + sorted(glob.glob(home_glob)):
        for dirpath, _, filenames in os.walk(root):
            for name in sorted(filenames):
                if name == "authorized_keys" or name.endswith(".pub") or name.startswith("id_"):
                    paths.append(os.path.join(dirpath, name))
    return paths


def _owner(st):
    try:
        user = pwd.getpwuid(st.st_uid).pw_name
    except KeyError:
        user = str(st.st_uid)
    try:
        group = grp.getgrgid(st.st_gid).gr_name
    except KeyError:
        group = str(st.st_gid)
    return f"{user}:{group}"


def _fingerprint(path):
    if not (path.endswith(".pub") or path.endswith("authorized_keys")):
        return "N/A"
    try:
        rc, out = execute(["ssh-keygen", "-lf", path])
    except FileNotFoundError:
        return "ssh-keygen not available"
    if rc != 0:
        return "Invalid key format"
    # "256 SHA256:abc comment (ED25519)" -> bits, hash, comment
    return "; ".join(" ".join(l.split()[:3]) for l in out.splitlines() if l.strip())


def ssh_keys_probe(roots=("/root/.ssh",), home_glob="/home/*/.ssh"):
    """Key file metadata only; key contents never leave the host."""
    def probe():
        rows = []
        for path in ssh_key_files(roots, home_glob):
            st = os.stat(path)
            name = os.path.basename(path)
            kind = "private" if name.startswith("id_") and not name.endswith(".pub") else "public"
            rows.append("\t".join([
                path, kind, oct(stat.S_IMODE(st.st_mode)), _owner(st), _fingerprint(path),
            ]))
        return 0, "\n".join(rows)
    return probe


def shadow_probe(shadow="/etc/shadow"):
    """Account names with "password set"/"locked"; hashes are never emitted."""
    def probe():
        lines = []
        with open(shadow, encoding="utf-8", errors="replace") as f:
            for line in f:
                parts = line.rstrip("\n").split(":")
                if len(parts) < 2 or not parts[0]:
                    continue
                locked = parts[1] in ("", "!", "*", "!!") or parts[1].startswith("!")
                lines.append(f"{parts[0]}: {'locked' if locked else 'password set'}")
        return 0, "\n".join(lines)
    return probe


def shadow_evaluator(output):
    count = sum(1 for l in output.splitlines() if l.endswith(": password set"))
    return Evaluation(None, f"{count} account(s) with passwords set")


def home_dirs_probe(passwd="/etc/passwd"):
    def probe():
        homes = set()
        with open(passwd, encoding="utf-8", errors="replace") as f:
            for line in f:
                parts = line.rstrip("\n").split(":")
                if len(parts) >= 6 and parts[5]:
                    homes.add(parts[5])
        return 0, "\n".join(sorted(homes))
    return probe


# =============================
# Check table
# =============================
def system_checks():
    c = Category.SYSTEM
    return [
        CheckSpec("System Name", c, ("cat", "/sys/devices/virtual/dmi/id/product_name")),
        CheckSpec("OS Version", c, ("cat", "/etc/os-release"), parse=os_pretty_name,
                  display="grep PRETTY_NAME /etc/os-release"),
        CheckSpec("OS Full Version (lsb_release -a)", c, ("lsb_release", "-a")),
        CheckSpec("Kernel", c, ("uname", "-r")),
        CheckSpec("Uptime", c, ("uptime", "-p")),
    ]


def cpu_checks():
    c = Category.CPU
    return [
        CheckSpec("CPU Model", c, ("lscpu",), parse=lscpu_model,
                  display="lscpu | grep 'Model name:'"),
        CheckSpec("CPU Core Count", c, ("lscpu",), parse=lscpu_topology,
                  display="lscpu | grep -E '^(Socket|Core)'"),
        CheckSpec("NUMA Configuration", c, ("lscpu",), parse=lscpu_numa,
                  display="lscpu | grep 'NUMA node'"),
        CheckSpec("lscpu Summary", c, ("lscpu",), collapsed="Show lscpu output"),
    ]


def ram_checks():
    return [
        CheckSpec("RAM Size", Category.RAM, probe=ram_probe(), display="grep MemTotal /proc/meminfo"),
    ]


def storage_checks(min_free_percent=None):
    if min_free_percent is None:
        min_free_percent = audit_config.MIN_FREE_DISK_PERCENT
    c = Category.STORAGE
    return [
        CheckSpec("Block Devices", c, ("lsblk", "-o", "NAME,MAJ:MIN,RM,SIZE,RO,TYPE,MOUNTPOINTS")),
        CheckSpec("Filesystem Usage", c,
                  ("df", "-hP", "-x", "tmpfs", "-x", "devtmpfs", "-x", "squashfs"),
                  evaluate=minimum_threshold(df_free_percent, min_free_percent, "free space", "%")),
    ]


def gpu_checks():
    c = Category.GPU
    return [
        CheckSpec("GPU Type", c, ("nvidia-smi", "--query-gpu=gpu_name", "--format=csv,noheader")),
        CheckSpec("VRAM per GPU", c, ("nvidia-smi", "--query-gpu=memory.total", "--format=csv")),
        CheckSpec("NVIDIA Peermem", c, ("lsmod",), parse=grep_lines("nvidia_peermem", ignore_case=True),
                  display="lsmod | grep -i nvidia_peermem",
                  empty_status=Status.FAIL, empty_note="Module not loaded"),
        CheckSpec("NVLink Fabric Manager", c, ("nv-fabricmanager", "--version")),
        CheckSpec("NVLink Status", c, ("nvidia-smi", "nvlink", "-s")),
        CheckSpec("Driver Version", c, ("nvidia-smi",), parse=driver_version,
                  display="nvidia-smi | grep -i 'Driver Version'",
                  empty_status=Status.FAIL, empty_note="Driver version not found"),
        CheckSpec("nvidia-smi Full Output", c, ("nvidia-smi",), collapsed="Show nvidia-smi output"),
    ]


def ethernet_checks(min_link_speed=None, has_bond=None, interfaces=None):
    if min_link_speed is None:
        min_link_speed = audit_config.MIN_LINK_SPEED_MBPS
    if has_bond is None:
        has_bond = bond_present("bond0")
    c = Category.ETHERNET
    specs = [
        CheckSpec("Ethernet NICs", c, ("lshw", "-C", "network", "-short")),
        CheckSpec("Ethernet Links", c, ("ip", "-br", "a")),
        CheckSpec("All IP Addresses (IPv4 & IPv6)", c,
                  ("ip", "-o", "addr", "show", "primary", "scope", "global"),
                  parse=global_addresses),
        CheckSpec("Link Speed Check", c, ("ethtool",), probe=link_speed_probe(interfaces),
                  display="ethtool <each iface>",
                  evaluate=minimum_threshold(link_speeds, min_link_speed, "link speed", "Mb/s")),
    ]
    if has_bond:
        specs += [
            CheckSpec("Bond Speed", c, ("ethtool", "bond0"), parse=ethtool_speed),
            CheckSpec("Bond Type", c, ("cat", "/proc/net/bonding/bond0"), parse=bonding_mode,
                      display="cat /proc/net/bonding/bond0 | grep 'Bonding Mode'"),
        ]
    return specs


def ethernet_static_rows(has_bond=None):
    """Rows recorded without running anything when bond0 is absent."""
    if has_bond is None:
        has_bond = bond_present("bond0")
    if has_bond:
        return []
    return [
        CheckResult("Bond Speed", "ethtool bond0", "Device not found", Status.PARTIAL, "bond0 not present"),
        CheckResult("Bond Type", "cat /proc/net/bonding/bond0", "Device not found", Status.PARTIAL,
                    "bond0 not present"),
    ]


def infiniband_checks():
    c = Category.INFINIBAND
    return [
        CheckSpec("IB Links Speed", c, ("ibstatus",), parse=grep_lines("rate:", "device"),
                  display="ibstatus | grep -e 'rate:' -e 'device'"),
        CheckSpec("IB Links Status", c, ("ibstatus",), parse=grep_lines("link_layer:", "phys state:"),
                  display="ibstatus | grep -e 'link_layer:' -e 'phys state:'"),
        CheckSpec("OFED Version", c, ("ofed_info", "-s")),
        CheckSpec("IBoIP Enabled", c, ("ibdev2netdev",)),
        CheckSpec("IB Fabric", c, ("iblinkinfo", "--switches-only")),
    ]


def security_checks():
    c = Category.SECURITY
    return [
        CheckSpec("MOTD", c, probe=motd_probe(), evaluate=motd_evaluator,
                  display="cat /etc/motd; ls /etc/update-motd.d",
                  collapsed="Show MOTD files and contents"),
        CheckSpec("SSH Keys Audit", c, probe=ssh_keys_probe(),
                  evaluate=lambda _: Evaluation(None, "Metadata only; contents redacted"),
                  display="find /root/.ssh /home/*/.ssh",
                  empty_note="No SSH key files found",
                  columns=("Path", "Type", "Perms", "Owner", "Fingerprint")),
        CheckSpec("/etc/passwd", c, ("cat", "/etc/passwd"), collapsed="Show /etc/passwd"),
        CheckSpec("/etc/shadow (redacted)", c, probe=shadow_probe(), evaluate=shadow_evaluator,
                  display="analyzed /etc/shadow",
                  collapsed="Show shadow account status (redacted)"),
        CheckSpec("Home Directories", c, probe=home_dirs_probe(),
                  display="home directories parsed from /etc/passwd", columns=("Path",)),
    ]


def network_speed_checks(nearby=None, eu=None):
    if nearby is None:
        nearby = audit_config.SPEEDTEST_SERVER_NEARBY
    if eu is None:
        eu = audit_config.SPEEDTEST_SERVER_EU
    c = Category.NETWORK_SPEED
    # Without a server id speedtest-cli picks the lowest-latency server itself
    nearby_argv = ("speedtest-cli", "--simple") + (("--server", nearby) if nearby else ())
    specs = [
        CheckSpec("Speedtest Nearby", c, nearby_argv, evaluate=speedtest_evaluator()),
    ]
    if eu:
        specs.append(
            CheckSpec("Speedtest Europe", c, ("speedtest-cli", "--simple", "--server", eu),
                      evaluate=speedtest_evaluator())
        )
    return specs


def network_speed_static_rows(eu=None):
    if eu is None:
        eu = audit_config.SPEEDTEST_SERVER_EU
    if eu:
        return []
    return [skipped("Speedtest Europe", "speedtest-cli --simple --server <id>",
                    "No EU server configured (SPEEDTEST_SERVER_EU)")]


def software_checks():
    c = Category.SOFTWARE
    return [
        CheckSpec("Process List", c, ("ps", "axfcu"), collapsed="Show process list (ps axfcu)"),
        CheckSpec("Installed Packages", c, ("dpkg-query", "-W"), parse=dpkg_packages,
                  columns=("Package", "Version")),
        CheckSpec("Manually installed software", c, ("apt-mark", "showmanual"), parse=sorted_lines,
                  display="apt-mark showmanual | sort", columns=("Package",)),
    ]


def services_checks(ssh_host="127.0.0.1", ssh_port=22):
    c = Category.SERVICES
    return [
        CheckSpec("SSH Access", c, ("systemctl", "status", "sshd"), parse=systemd_active,
                  display="systemctl status sshd | grep 'Active:'"),
        CheckSpec("SSH Port", c, probe=port_probe(ssh_host, ssh_port),
                  display=f"tcp connect {ssh_host}:{ssh_port}"),
        CheckSpec("IPMI Access", c, ("ipmitool", "lan", "print")),
        CheckSpec("NFS Mounts", c, ("mount",), parse=nfs_mounts, display="mount | grep nfs",
                  empty_note="No NFS mounts found."),
    ]


CHECK_TABLE = {
    Category.SYSTEM: system_checks,
    Category.CPU: cpu_checks,
    Category.RAM: ram_checks,
    Category.STORAGE: storage_checks,
    Category.GPU: gpu_checks,
    Category.ETHERNET: ethernet_checks,
    Category.INFINIBAND: infiniband_checks,
    Category.SECURITY: security_checks,
    Category.NETWORK_SPEED: network_speed_checks,
    Category.SOFTWARE: software_checks,
    Category.SERVICES: services_checks,
}

STATIC_ROWS = {
    Category.ETHERNET: ethernet_static_rows,
    Category.NETWORK_SPEED: network_speed_static_rows,
}


def checks_for(category: Category) -> list:
    builder = CHECK_TABLE.get(category)
    if builder is None:
        logging.debug(f"No command table for {category.title}")
        return []
    return builder()
