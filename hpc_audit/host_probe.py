import os
import time
import socket
import logging

from .audit_config import PORT_CHECK_TIMEOUT


# ============================
# TCP port liveness
# ============================
def port_is_open(host, port, timeout=PORT_CHECK_TIMEOUT):
    """
    Try a single TCP connect to host:port.

    :param host: hostname or address
    :param port: TCP port
    :param timeout: connect timeout (sec)
    :return: True if the connection succeeded
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            pass
        logging.debug(f"Port open: {host}:{port}")
        return True
    except OSError as e:
        logging.debug(f"Port closed: {host}:{port} ({e})")
        return False


def port_probe(host="127.0.0.1", port=22, timeout=PORT_CHECK_TIMEOUT):
    """Probe callable for the check table: (exit_code, output)."""
    def probe():
        if port_is_open(host, port, timeout):
            return 0, f"{host}:{port} accepting connections"
        return 1, f"{host}:{port} not reachable within {timeout:g}s"
    return probe


# ============================
# Uptime / boot time
# ============================
def uptime_seconds(proc_uptime="/proc/uptime") -> float:
    with open(proc_uptime, encoding="utf-8") as f:
        return float(f.read().split()[0])


def boot_time(proc_uptime="/proc/uptime") -> float:
    """Epoch seconds of the last boot."""
    return time.time() - uptime_seconds(proc_uptime)


# ============================
# Memory
# ============================
def mem_total_kib(meminfo="/proc/meminfo") -> int:
    with open(meminfo, encoding="utf-8") as f:
        for line in f:
            if line.startswith("MemTotal:"):
                return int(line.split()[1])
    raise ValueError(f"MemTotal not found in {meminfo}")


def ram_probe(meminfo="/proc/meminfo"):
    def probe():
        kib = mem_total_kib(meminfo)
        # Round up to whole GiB like the inventory report does
        gib = -(-kib // (1024 * 1024))
        return 0, f"{gib}Gi"
    return probe


# ============================
# Network interfaces
# ============================
def list_interfaces(sys_net="/sys/class/net"):
    """Interface names except loopback, sorted."""
    try:
        names = os.listdir(sys_net)
    except FileNotFoundError:
        return []
    return sorted(n for n in names if n != "lo")


def bond_present(name="bond0", sys_net="/sys/class/net") -> bool:
    return os.path.exists(os.path.join(sys_net, name))


def primary_ip(probe_addr=("10.255.255.255", 1)) -> str:
    """Source address of the default route; nothing is sent."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(probe_addr)
            return s.getsockname()[0]
    except OSError:
        return ""
