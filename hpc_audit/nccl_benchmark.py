#!/usr/bin/env python3
import os
import sys
import shutil
import logging
import argparse
import tempfile

from . import audit_config
from .check_results import Category, CheckResult, Status
from .check_runner import CheckSpec, compare_minimum, execute, run_check, skipped
from .installer import (
    InstallError,
    apt_install,
    benchmarks_allowed,
    confirm,
    download_file,
    install_docker_ce,
    run_step,
)

BUILD_PACKAGES = ["build-essential", "devscripts", "debhelper", "fakeroot", "git", "libnccl-dev"]


def cuda_paths(cuda_version=None):
    cuda_version = cuda_version or audit_config.CUDA_VERSION
    base = f"/usr/local/cuda-{cuda_version}"
    package = "cuda-toolkit-" + cuda_version.replace(".", "-")
    return base, package


def all_reduce_binary(tests_dir=None):
    return os.path.join(tests_dir or audit_config.NCCL_TESTS_DIR, "build", "all_reduce_perf")


def cuda_env(cuda_version=None):
    base, _ = cuda_paths(cuda_version)
    return {
        "PATH": f"{base}/bin:{os.environ.get('PATH', '')}",
        "LD_LIBRARY_PATH": f"{base}/lib64:{os.environ.get('LD_LIBRARY_PATH', '')}",
    }


def _force_symlink(target, link):
    if os.path.islink(link) or os.path.exists(link):
        os.remove(link)
    os.symlink(target, link)
    logging.info(f"  -> {link} -> {target}")


# =============================
# NCCL install
# =============================
def install_nccl_stack(purge=False, runner=execute, cuda_version=None, tests_dir=None,
                       keyring_url=None):
    """
    Install the CUDA toolkit and build nccl-tests.
    Raises InstallError on the first failing step.
    """
    tests_dir = tests_dir or audit_config.NCCL_TESTS_DIR
    keyring_url = keyring_url or audit_config.CUDA_KEYRING_URL
    base, package = cuda_paths(cuda_version)

    if purge:
        logging.info("1. Cleaning up previous NVIDIA/CUDA installations...")
        try:
            run_step(["apt-get", "purge", "-y", "*nvidia*", "*cuda*"], runner)
        except InstallError as e:
            # nothing to purge is not an error
            logging.warning(f"Purge skipped: {e}")
        run_step(["apt-get", "autoremove", "-y"], runner)

    logging.info("2. Installing build essentials and cloning nccl-tests...")
    apt_install(BUILD_PACKAGES, runner)
    if os.path.isdir(tests_dir):
        shutil.rmtree(tests_dir)
    run_step(["git", "clone", audit_config.NCCL_TESTS_REPO, tests_dir], runner)

    logging.info(f"3. Adding NVIDIA CUDA {cuda_version or audit_config.CUDA_VERSION} repository...")
    with tempfile.TemporaryDirectory() as tmp:
        deb = download_file(keyring_url, os.path.join(tmp, os.path.basename(keyring_url)))
        run_step(["dpkg", "-i", deb], runner)

    logging.info(f"4. Installing {package}...")
    apt_install([package], runner)

    logging.info("5. Linking nvcc and the toolkit into the system path...")
    _force_symlink(base, "/usr/local/cuda")
    if os.path.realpath("/usr/bin/nvcc") != os.path.join(base, "bin", "nvcc"):
        _force_symlink(os.path.join(base, "bin", "nvcc"), "/usr/bin/nvcc")
    run_step(["ldconfig"], runner)

    logging.info("6. Building nccl-tests...")
    env = cuda_env(cuda_version)
    run_step(["make", "-C", tests_dir, "clean"], runner, env)
    run_step(["make", "-C", tests_dir], runner, env)
    _force_symlink(all_reduce_binary(tests_dir), "/usr/local/bin/all_reduce_perf")
    logging.info("NCCL stack installed")


# =============================
# NCCL benchmark
# =============================
def gpu_count(runner=execute):
    """Number of GPUs listed by nvidia-smi -L; 0 when nvidia-smi is unusable."""
    try:
        rc, out = runner(["nvidia-smi", "-L"], timeout=30)
    except FileNotFoundError:
        logging.error("nvidia-smi not found")
        return 0
    if rc != 0:
        logging.error(f"nvidia-smi -L failed (exit code {rc})")
        return 0
    return len({l for l in out.splitlines() if l.startswith("GPU ")})


def build_benchmark_command(gpus, binary=None):
    """
    argv for all_reduce_perf, or None without GPUs.
    One GPU only checks the NCCL/CUDA install, not interconnect bandwidth.
    """
    binary = binary or all_reduce_binary()
    if gpus < 1:
        return None
    if gpus == 1:
        return [binary, "-b", "8", "-e", "128M", "-f", "2", "-g", "1", "-n", "1"]
    return [binary, "-b", "8", "-e", "128M", "-f", "2", "-g", str(gpus)]


def parse_busbw(log_text):
    """
    Bus bandwidth (GB/s) from all_reduce_perf output.
    Prefers the "Avg bus bandwidth" summary, else the out-of-place busbw
    of the last data row.
    """
    last_row = None
    for line in log_text.splitlines():
        stripped = line.strip()
        if stripped.startswith("# Avg bus bandwidth"):
            try:
                return float(stripped.split(":", 1)[1])
            except (IndexError, ValueError):
                continue
        if stripped and not stripped.startswith("#") and stripped.split()[0].isdigit():
            last_row = stripped.split()
    if not last_row:
        return None
    # newer nccl-tests print a root column before time/algbw/busbw
    idx = 7 if len(last_row) >= 13 else 6
    try:
        return float(last_row[idx])
    except (IndexError, ValueError):
        return None


def run_nccl_benchmark(threshold=None, runner=execute, binary=None):
    """Run all_reduce_perf over every local GPU and classify the bus bandwidth."""
    threshold = audit_config.NCCL_BW_THRESHOLD if threshold is None else threshold
    name = "NCCL AllReduce"
    gpus = gpu_count(runner)
    argv = build_benchmark_command(gpus, binary)
    if argv is None:
        logging.error("No GPUs detected. Skipping NCCL test.")
        return CheckResult(name, "nvidia-smi -L", "No GPUs detected", Status.FAIL, "No GPUs detected")

    command = "NCCL_DEBUG=INFO " + " ".join(argv)
    logging.info(f"Running NCCL benchmark on {gpus} GPU(s): {command}")
    env = dict(cuda_env(), NCCL_DEBUG="INFO")
    try:
        rc, out = runner(argv, timeout=audit_config.COMMAND_TIMEOUT, env=env)
    except FileNotFoundError:
        return CheckResult(name, command, "Command not found", Status.FAIL,
                           f"Command not found: {argv[0]}")
    if rc != 0:
        return CheckResult(name, command, out, Status.FAIL, f"Exit code {rc}")

    busbw = parse_busbw(out)
    if busbw is None:
        return CheckResult(name, command, out, Status.FAIL, "Bus bandwidth not found in output")

    notes = []
    if gpus == 1:
        notes.append("Single GPU: interconnect bandwidth not measured")
    evaluation = compare_minimum(busbw, threshold, "busbw", "GB/s")
    notes.append(evaluation.note)
    status = evaluation.status or Status.PASS
    logging.info(f"NCCL test {'PASSED' if status is Status.PASS else 'FAILED'}: busbw={busbw} GB/s")
    return CheckResult(name, command, out, status, "\n".join(notes), collapsed=f"busbw {busbw:g} GB/s")


# =============================
# Container benchmarks
# =============================
def docker_benchmark_specs():
    c = Category.BENCHMARKS
    return [
        CheckSpec("HPL Single Node", c, (
            "docker", "run", "--gpus", "all", "--rm", "--shm-size=1g",
            "--ulimit", "memlock=-1", "--ulimit", "stack=67108864", audit_config.HPL_IMAGE,
            "mpirun", "-np", "8", "--bind-to", "none", "--map-by", "ppr:8:node",
            "/hpl.sh", "--dat", audit_config.HPL_DAT,
        ), collapsed="Show HPL output"),
        CheckSpec("GPU Burn", c, ("docker", "run", "--rm", "--gpus", "all", audit_config.GPU_BURN_IMAGE),
                  collapsed="Show gpu-burn output"),
    ]


def benchmark_results(install_state, noburn=False, headless=False, noinstall=False,
                      auto_accept=False, prompt=input, which=shutil.which, runner=execute):
    """
    Results for the Benchmarks category.
    Container benchmarks need Docker; the NCCL run needs a completed driver install.
    """
    results = []
    specs = docker_benchmark_specs()
    docker_ready = which("docker") is not None
    # --nocheck without --headless cannot ask, so a missing Docker is skipped
    can_install = not noinstall and (headless or not auto_accept)

    if noburn:
        results += [skipped(s.name, s.command, "Skipped (--noburn)") for s in specs]
    elif not docker_ready and not can_install:
        results += [skipped(s.name, s.command, "Docker not installed and installation disabled")
                    for s in specs]
    elif not docker_ready and not confirm("Install Docker CE now?", False, headless, prompt):
        results += [skipped(s.name, s.command, "Docker not installed") for s in specs]
    else:
        if not docker_ready:
            try:
                install_docker_ce(runner)
                docker_ready = True
            except InstallError as e:
                logging.error(f"Docker CE installation failed: {e}")
                results += [CheckResult(s.name, s.command, str(e), Status.FAIL,
                                        "Docker installation failed") for s in specs]
        if docker_ready:
            if auto_accept or confirm("Run long-running Docker benchmarks (HPL/GPU-burn)?",
                                      False, headless, prompt):
                results += [run_check(s) for s in specs]
            else:
                results += [skipped(s.name, s.command, "Skipped by user") for s in specs]

    if benchmarks_allowed(install_state):
        results.append(run_nccl_benchmark(runner=runner))
    else:
        results.append(skipped(
            "NCCL AllReduce", "all_reduce_perf",
            f"Driver install state {install_state.value}, benchmark deferred",
        ))
    return results


# =============================
# Main execution entry
# =============================
def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="hpc-audit-nccl",
        description="Install CUDA + nccl-tests and run the all_reduce_perf benchmark.",
    )
    parser.add_argument("--headless", action="store_true", help="auto-confirm every prompt")
    parser.add_argument("--purge", action="store_true", help="purge existing NVIDIA/CUDA packages first")
    parser.add_argument("--skip-install", action="store_true", help="only run the benchmark")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="[%(levelname)s] %(message)s")

    if os.geteuid() != 0 and not args.skip_install:
        logging.error("This command must be run as root or with sudo.")
        return 1

    if not args.skip_install:
        if args.purge and not confirm("Purge all NVIDIA/CUDA packages?", False, args.headless):
            logging.error("Aborting as requested.")
            return 1
        try:
            install_nccl_stack(purge=args.purge)
        except InstallError as e:
            logging.error(f"NCCL installation failed: {e}")
            return 1

    result = run_nccl_benchmark()
    print(result.result)
    logging.info(f"{result.name}: {result.status.value} {result.notes}")
    return 0 if result.status is Status.PASS else 1


if __name__ == "__main__":
    sys.exit(main())
