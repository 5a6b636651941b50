"""
Dependency installation and the GPU driver install/reboot/resume flow.

The driver install is split across two process lifetimes. Before rebooting
the flow persists an install record (state + UTC timestamp) at the marker
path; the next run reads it back and, once the machine has been up for at
least MIN_UPTIME_SECONDS after a boot that happened later than the record,
moves to RECOVERED so the benchmark phase may run.
"""
import os
import json
import shutil
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

import requests

from . import audit_config
from .check_runner import execute
from .host_probe import boot_time, uptime_seconds


class InstallState(str, Enum):
    NOT_CHECKED = "NOT_CHECKED"
    MISSING = "MISSING"
    INSTALL_PENDING = "INSTALL_PENDING"
    INSTALLED = "INSTALLED"
    REBOOT_REQUIRED = "REBOOT_REQUIRED"
    RECOVERED = "RECOVERED"


class InstallError(RuntimeError):
    """An installation step failed."""


class DependencyDeclined(InstallError):
    """The operator declined a required installation."""


# Command -> apt package
STANDARD_PACKAGES = {
    "lshw": "lshw",
    "ethtool": "ethtool",
    "ipmitool": "ipmitool",
    "ibstatus": "infiniband-diags",
    "iblinkinfo": "infiniband-diags",
    "lsb_release": "lsb-release",
    "speedtest-cli": "speedtest-cli",
}

# Command -> (component, manual install instructions)
COMPLEX_COMMANDS = {
    "nvidia-smi": (
        "NVIDIA drivers",
        "Visit https://www.nvidia.com/Download/index.aspx or run: sudo ubuntu-drivers autoinstall",
    ),
    "nv-fabricmanager": (
        "NVIDIA Fabric Manager",
        "Install from the NVIDIA CUDA repository, e.g. sudo apt-get install nvidia-fabricmanager-535",
    ),
    "ofed_info": (
        "Mellanox OFED drivers",
        "Download the driver for your OS from the NVIDIA Networking website and run ./mlnxofedinstall",
    ),
    "ibdev2netdev": (
        "Mellanox OFED tools",
        "Installed together with the Mellanox OFED drivers",
    ),
}

DOCKER_GPG_URL = "https://download.docker.com/linux/ubuntu/gpg"
DOCKER_PACKAGES = [
    "docker-ce", "docker-ce-cli", "containerd.io", "docker-buildx-plugin", "docker-compose-plugin",
]


# =============================
# Prompts
# =============================
def confirm(question, default=False, headless=False, prompt=input):
    """Ask a y/n question. Headless mode answers yes without asking."""
    if headless:
        logging.info(f"{question} -> yes (headless)")
        return True
    suffix = "(Y/n)" if default else "(y/N)"
    answer = prompt(f"{question} {suffix}: ").strip().lower()
    if not answer:
        return default
    return answer in ("y", "yes")


# =============================
# Install record (marker file)
# =============================
@dataclass(frozen=True)
class InstallRecord:
    state: InstallState
    timestamp: str = ""
    legacy: bool = False

    @property
    def epoch(self):
        return parse_timestamp(self.timestamp)


def parse_timestamp(value):
    """Epoch seconds of an ISO8601 timestamp, None when absent or malformed."""
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def utc_now_iso():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def load_install_record(path=None):
    path = path or audit_config.INSTALL_MARKER_PATH
    if not os.path.exists(path):
        return None
    with open(path, encoding="utf-8", errors="replace") as f:
        content = f.read()
    try:
        data = json.loads(content)
        state = InstallState(data["state"])
        timestamp = data.get("timestamp", "")
    except (ValueError, KeyError, TypeError):
        # Plain flag file written by older tooling
        logging.debug(f"Legacy install marker at {path}")
        return InstallRecord(InstallState.INSTALLED, "", legacy=True)
    if parse_timestamp(timestamp) is None:
        if timestamp:
            logging.warning(f"Ignoring malformed timestamp {timestamp!r} in {path}")
        timestamp = ""
    return InstallRecord(state, timestamp)


def save_install_record(state, path=None, timestamp=None):
    path = path or audit_config.INSTALL_MARKER_PATH
    record = InstallRecord(InstallState(state), timestamp or utc_now_iso())
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=directory, prefix=".install_state.")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        json.dump({"state": record.state.value, "timestamp": record.timestamp}, f)
    os.chmod(tmp, 0o644)
    os.replace(tmp, path)
    logging.info(f"Install state {record.state.value} recorded in {path}")
    return record


def resolve_install_state(path=None, min_uptime=None, uptime=None, booted_at=None):
    """
    Read the install record at process start and decide where the flow is.

    uptime / booted_at default to the live values from /proc/uptime.
    """
    path = path or audit_config.INSTALL_MARKER_PATH
    if min_uptime is None:
        min_uptime = audit_config.MIN_UPTIME_SECONDS
    try:
        record = load_install_record(path)
    except OSError as e:
        logging.warning(f"Cannot read install record {path}: {e}")
        return InstallState.NOT_CHECKED
    if record is None:
        logging.info(f"No install record at {path}")
        return InstallState.MISSING

    if record.state in (InstallState.INSTALLED, InstallState.RECOVERED) and not record.legacy:
        return record.state
    if record.state not in (InstallState.REBOOT_REQUIRED, InstallState.INSTALLED):
        return record.state

    if uptime is None:
        uptime = uptime_seconds()
    if booted_at is None:
        booted_at = boot_time()

    if uptime < min_uptime:
        logging.info(f"Uptime {uptime:.0f}s below {min_uptime}s, waiting for reboot to settle")
        return InstallState.REBOOT_REQUIRED
    if record.epoch is not None and booted_at <= record.epoch:
        logging.info("No reboot since the install was recorded")
        return InstallState.REBOOT_REQUIRED

    save_install_record(InstallState.RECOVERED, path)
    return InstallState.RECOVERED


def benchmarks_allowed(state) -> bool:
    return state in (InstallState.INSTALLED, InstallState.RECOVERED)


# =============================
# Package manager helpers
# =============================
def run_step(argv, runner=execute, env=None, timeout=0):
    logging.info(f"  -> {' '.join(argv)}")
    try:
        rc, out = runner(argv, timeout=timeout, env=env)
    except FileNotFoundError as e:
        raise InstallError(f"Command not found: {e.filename or argv[0]}") from e
    if rc != 0:
        logging.error(f"Step failed (exit code {rc}): {' '.join(argv)}\n{out}")
        raise InstallError(f"{argv[0]} exited with code {rc}")
    return out


def apt_install(packages, runner=execute):
    env = {"DEBIAN_FRONTEND": "noninteractive"}
    run_step(["apt-get", "update"], runner, env)
    run_step(["apt-get", "install", "-y", *packages], runner, env)


def download_file(url, dest, timeout=60):
    """Stream url to dest. Raises InstallError on HTTP failure."""
    logging.info(f"Downloading {url} -> {dest}")
    try:
        with requests.get(url, stream=True, timeout=timeout) as resp:
            resp.raise_for_status()
            os.makedirs(os.path.dirname(dest) or ".", exist_ok=True)
            with open(dest, "wb") as f:
                for chunk in resp.iter_content(chunk_size=1 << 16):
                    f.write(chunk)
    except requests.RequestException as e:
        raise InstallError(f"Download failed: {url}: {e}") from e
    return dest


def missing_commands(commands, which=shutil.which):
    return [cmd for cmd in commands if which(cmd) is None]


# =============================
# Dependency check
# =============================
def check_and_install_dependencies(headless=False, noinstall=False, prompt=input,
                                   which=shutil.which, runner=execute):
    """
    Install missing standard tools and report missing driver stacks.
    Raises DependencyDeclined when the operator refuses to continue.
    """
    logging.info("Checking for required command-line tools...")
    packages = []
    for cmd in missing_commands(STANDARD_PACKAGES, which):
        package = STANDARD_PACKAGES[cmd]
        if package not in packages:
            packages.append(package)

    if packages:
        logging.warning(f"Missing standard packages: {', '.join(packages)}")
        if noinstall:
            logging.warning("--noinstall given, affected checks will report 'command not found'")
        elif confirm("Install them using apt?", False, headless, prompt):
            apt_install(packages, runner)
        else:
            raise DependencyDeclined("Cannot proceed without required packages")

    complex_missing = missing_commands(COMPLEX_COMMANDS, which)
    if complex_missing:
        logging.warning("Manual installation required for the following:")
        for cmd in complex_missing:
            component, instructions = COMPLEX_COMMANDS[cmd]
            logging.warning(f"  Missing: {component} (command: {cmd})\n    {instructions}")
        if not (noinstall or confirm("Continue with the tests?", True, headless, prompt)):
            raise DependencyDeclined("Aborted as requested")

    logging.info("Dependency check complete")
    return packages, complex_missing


# =============================
# Docker CE
# =============================
def os_release_value(key, path="/etc/os-release"):
    with open(path, encoding="utf-8") as f:
        for line in f:
            if line.startswith(f"{key}="):
                return line.split("=", 1)[1].strip().strip('"')
    return ""


def install_docker_ce(runner=execute, keyring_dir="/etc/apt/keyrings",
                      sources_list="/etc/apt/sources.list.d/docker.list"):
    logging.info("Starting Docker CE installation...")
    apt_install(["ca-certificates", "curl", "gnupg"], runner)
    keyring = os.path.join(keyring_dir, "docker.asc")
    download_file(DOCKER_GPG_URL, keyring)
    os.chmod(keyring, 0o644)

    arch = run_step(["dpkg", "--print-architecture"], runner).strip()
    codename = os_release_value("VERSION_CODENAME")
    with open(sources_list, "w", encoding="utf-8") as f:
        f.write(
            f"deb [arch={arch} signed-by={keyring}] "
            f"https://download.docker.com/linux/ubuntu {codename} stable\n"
        )
    apt_install(DOCKER_PACKAGES, runner)
    run_step(["docker", "ps"], runner)
    logging.info("Docker CE installed successfully")


# =============================
# GPU driver flow
# =============================
def install_gpu_driver(path=None, driver_version=None, fabricmanager_version=None,
                       reboot=True, runner=execute):
    """
    Install driver + fabric manager, record REBOOT_REQUIRED and reboot.
    The record is written before the reboot so the next run can resume.
    """
    driver_version = driver_version or audit_config.NVIDIA_DRIVER_VERSION
    fabricmanager_version = fabricmanager_version or audit_config.NVIDIA_FABRICMANAGER_VERSION
    save_install_record(InstallState.INSTALL_PENDING, path)
    apt_install([
        f"nvidia-driver-{driver_version}",
        f"nvidia-fabricmanager-{fabricmanager_version}",
    ], runner)
    run_step(["systemctl", "enable", "nvidia-fabricmanager"], runner)
    save_install_record(InstallState.REBOOT_REQUIRED, path)
    if reboot:
        logging.warning("Rebooting to load the NVIDIA driver; rerun afterwards to continue")
        run_step(["systemctl", "reboot"], runner)
    return InstallState.REBOOT_REQUIRED


def prepare_gpu_stack(headless=False, noinstall=False, prompt=input, path=None,
                      reboot=True, runner=execute, which=None):
    """
    Drive the install state machine up to the point where benchmarks may run.
    Returns the resulting InstallState.

    A node without an install record but with a working nvidia-smi keeps its
    driver; only a missing nvidia-smi leads to the install step.
    """
    which = which or shutil.which
    state = resolve_install_state(path)
    logging.info(f"GPU stack install state: {state.value}")
    if benchmarks_allowed(state):
        return state
    if state in (InstallState.REBOOT_REQUIRED, InstallState.NOT_CHECKED):
        logging.warning(f"Driver install state {state.value}; benchmarks deferred")
        return state
    if state is InstallState.MISSING and which("nvidia-smi") is not None:
        logging.info("nvidia-smi found without an install record, keeping the existing driver")
        logging.info("Run hpc-audit --mark-installed to record it")
        return InstallState.INSTALLED

    if noinstall:
        logging.warning("--noinstall given, GPU driver stack not installed")
        return InstallState.MISSING
    if not confirm(f"Install NVIDIA driver {audit_config.NVIDIA_DRIVER_VERSION} and reboot?",
                   False, headless, prompt):
        logging.warning("GPU driver installation declined")
        return InstallState.MISSING
    return install_gpu_driver(path, reboot=reboot, runner=runner)
