import os
import socket
from datetime import datetime, timezone


def _env_bool(name, default="false"):
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


# =============================
# Timestamp
# =============================
# Start with env. If not, use current local time.
LOCAL_TIMESTAMP = os.getenv(
    "AUDIT_TIMESTAMP",
    datetime.now().strftime("%Y%m%d-%H%M%S")
)
# Always get UTC in iso8601Z format for the report header
UTC_TIMESTAMP = datetime.now(timezone.utc).replace(microsecond=0) \
    .isoformat().replace("+00:00", "Z")

TIMESTAMP = LOCAL_TIMESTAMP

# =============================
# Directory settings
# =============================
NODE_NAME  = socket.gethostname()
REPORT_DIR = os.getenv("REPORT_DIR", os.path.join(os.getcwd(), "reports"))

# =============================
# Command execution
# =============================
# 0 disables the timeout
COMMAND_TIMEOUT    = int(os.getenv("COMMAND_TIMEOUT", "0"))
PORT_CHECK_TIMEOUT = float(os.getenv("PORT_CHECK_TIMEOUT", "5"))

# =============================
# Threshold settings (0 = disabled)
# =============================
MIN_LINK_SPEED_MBPS   = int(os.getenv("MIN_LINK_SPEED_MBPS", "0"))
MIN_FREE_DISK_PERCENT = int(os.getenv("MIN_FREE_DISK_PERCENT", "0"))
MIN_DOWNLOAD_MBPS     = float(os.getenv("MIN_DOWNLOAD_MBPS", "0"))
MIN_UPLOAD_MBPS       = float(os.getenv("MIN_UPLOAD_MBPS", "0"))
NCCL_BW_THRESHOLD     = float(os.getenv("NCCL_BW_THRESHOLD", "0"))

# =============================
# Speed test servers
# =============================
# Empty "nearby" lets speedtest-cli pick the lowest-latency server
SPEEDTEST_SERVER_NEARBY = os.getenv("SPEEDTEST_SERVER_NEARBY", "")
SPEEDTEST_SERVER_EU     = os.getenv("SPEEDTEST_SERVER_EU", "")

# =============================
# NVIDIA / CUDA / NCCL versions
# =============================
NVIDIA_DRIVER_VERSION        = os.getenv("NVIDIA_DRIVER_VERSION", "535")
NVIDIA_FABRICMANAGER_VERSION = os.getenv("NVIDIA_FABRICMANAGER_VERSION", NVIDIA_DRIVER_VERSION)
CUDA_VERSION                 = os.getenv("CUDA_VERSION", "13.0")
CUDA_KEYRING_URL             = os.getenv(
    "CUDA_KEYRING_URL",
    "https://developer.download.nvidia.com/compute/cuda/repos/ubuntu2204/x86_64/cuda-keyring_1.1-1_all.deb"
)
NCCL_TESTS_REPO = os.getenv("NCCL_TESTS_REPO", "https://github.com/NVIDIA/nccl-tests.git")
NCCL_TESTS_DIR  = os.getenv("NCCL_TESTS_DIR", "/usr/local/nccl-tests")

# =============================
# Benchmark containers
# =============================
HPL_IMAGE      = os.getenv("HPL_IMAGE", "nvcr.io/nvidia/hpc-benchmarks:24.05")
HPL_DAT        = os.getenv("HPL_DAT", "/hpl-linux-x86_64/sample-dat/HPL-dgx-h100-1N.dat")
GPU_BURN_IMAGE = os.getenv("GPU_BURN_IMAGE", "oguzpastirmaci/gpu-burn:latest")

# =============================
# Install state / reboot resume
# =============================
INSTALL_MARKER_PATH = os.getenv("INSTALL_MARKER_PATH", "/etc/ansible_gpu_install_complete")
MIN_UPTIME_SECONDS  = int(os.getenv("MIN_UPTIME_SECONDS", "120"))

# =============================
# Notification
# =============================
TEAMS_WEBHOOK_URL = os.getenv("TEAMS_WEBHOOK_URL", "")

# =============================
# Per-category opt-in flags
# =============================
CATEGORY_FLAG_NAMES = (
    "system", "cpu", "ram", "storage", "gpu", "ethernet", "infiniband",
    "security", "network_speed", "software", "services", "benchmarks",
)


def enabled_categories_from_env():
    """Return the category keys whose RUN_<KEY>_CHECK variable is truthy."""
    return [
        key for key in CATEGORY_FLAG_NAMES
        if _env_bool(f"RUN_{key.upper()}_CHECK")
    ]
