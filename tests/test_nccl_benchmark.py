import pytest

from hpc_audit import audit_config, nccl_benchmark
from hpc_audit.check_results import Status
from hpc_audit.installer import InstallState
from hpc_audit.nccl_benchmark import (
    benchmark_results,
    build_benchmark_command,
    gpu_count,
    parse_busbw,
    run_nccl_benchmark,
)

# nccl-tests >= 2.13 (with the root column)
ALL_REDUCE_LOG = """# nThread 1 nGpus 8 minBytes 8 maxBytes 134217728 step: 2(factor) warmup iters: 5 iters: 20
#
#                                                              out-of-place                       in-place
#       size         count      type   redop    root     time   algbw   busbw #wrong     time   algbw   busbw #wrong
#        (B)    (elements)                               (us)  (GB/s)  (GB/s)            (us)  (GB/s)  (GB/s)
           8             2     float     sum      -1    36.71    0.00    0.00      0    35.80    0.00    0.00      0
   134217728      33554432     float     sum      -1   1234.5  108.72  190.26      0   1230.1  109.11  190.95      0
# Out of bounds values : 0 OK
# Avg bus bandwidth    : 85.1234
#
"""

# older nccl-tests, no root column, no summary line
LEGACY_ROWS = """#       size         count      type   redop     time   algbw   busbw  error     time   algbw   busbw  error
           8             2     float     sum    36.71    0.00    0.00  0e+00    35.80    0.00    0.00  0e+00
   134217728      33554432     float     sum   1234.5  108.72  170.50  0e+00   1230.1  109.11  171.00  0e+00
"""

NVIDIA_SMI_L = "\n".join(
    f"GPU {i}: NVIDIA H100 80GB HBM3 (UUID: GPU-{i:04d})" for i in range(8)
)


class FakeRunner:
    def __init__(self, smi=(0, NVIDIA_SMI_L), bench=(0, ALL_REDUCE_LOG)):
        self.smi = smi
        self.bench = bench
        self.calls = []

    def __call__(self, argv, timeout=0, env=None):
        self.calls.append((list(argv), env))
        if argv[0] == "nvidia-smi":
            return self.smi
        return self.bench


def test_parse_busbw_prefers_average_summary() -> None:
    assert parse_busbw(ALL_REDUCE_LOG) == pytest.approx(85.1234)


def test_parse_busbw_falls_back_to_last_row() -> None:
    assert parse_busbw(LEGACY_ROWS) == pytest.approx(170.50)
    without_summary = ALL_REDUCE_LOG.replace("# Avg bus bandwidth    : 85.1234\n", "")
    assert parse_busbw(without_summary) == pytest.approx(190.26)


def test_parse_busbw_without_data() -> None:
    assert parse_busbw("") is None
    assert parse_busbw("# only comments\n") is None


def test_benchmark_command_by_gpu_count() -> None:
    assert build_benchmark_command(0, "/bin/arp") is None
    single = build_benchmark_command(1, "/bin/arp")
    assert single[-4:] == ["-g", "1", "-n", "1"]
    eight = build_benchmark_command(8, "/bin/arp")
    assert eight == ["/bin/arp", "-b", "8", "-e", "128M", "-f", "2", "-g", "8"]


def test_gpu_count() -> None:
    assert gpu_count(FakeRunner()) == 8
    assert gpu_count(FakeRunner(smi=(9, "NVIDIA-SMI has failed"))) == 0
    assert gpu_count(FakeRunner(smi=(0, "No devices found."))) == 0


def test_gpu_count_without_nvidia_smi() -> None:
    def runner(argv, timeout=0, env=None):
        raise FileNotFoundError(2, "No such file", "nvidia-smi")

    assert gpu_count(runner) == 0


def test_benchmark_passes_above_threshold() -> None:
    runner = FakeRunner()
    result = run_nccl_benchmark(threshold=80, runner=runner, binary="/opt/all_reduce_perf")
    assert result.status is Status.PASS
    assert result.collapsed == "busbw 85.1234 GB/s"
    argv, env = runner.calls[-1]
    assert argv[-2:] == ["-g", "8"]
    assert env["NCCL_DEBUG"] == "INFO"


def test_benchmark_fails_below_threshold() -> None:
    result = run_nccl_benchmark(threshold=100, runner=FakeRunner(), binary="/opt/all_reduce_perf")
    assert result.status is Status.FAIL
    assert "below minimum 100" in result.notes


def test_benchmark_without_gpus_fails() -> None:
    result = run_nccl_benchmark(threshold=1, runner=FakeRunner(smi=(0, "")))
    assert result.status is Status.FAIL
    assert result.notes == "No GPUs detected"


def test_benchmark_nonzero_exit_fails() -> None:
    result = run_nccl_benchmark(threshold=1, runner=FakeRunner(bench=(1, "NCCL WARN Cuda failure")),
                                binary="/opt/all_reduce_perf")
    assert result.status is Status.FAIL
    assert result.notes == "Exit code 1"


def test_single_gpu_run_is_noted() -> None:
    runner = FakeRunner(smi=(0, "GPU 0: NVIDIA A10 (UUID: GPU-1)"))
    result = run_nccl_benchmark(threshold=0, runner=runner, binary="/opt/all_reduce_perf")
    assert result.status is Status.PASS
    assert "Single GPU" in result.notes
    assert runner.calls[-1][0][-2:] == ["-n", "1"]


def no_docker(cmd):
    return None


def test_noburn_and_missing_driver_skip_everything() -> None:
    runner = FakeRunner()
    results = benchmark_results(InstallState.MISSING, noburn=True, which=no_docker, runner=runner)
    assert [r.name for r in results] == ["HPL Single Node", "GPU Burn", "NCCL AllReduce"]
    assert all(r.status is Status.PARTIAL for r in results)
    assert results[-1].result == "Driver install state MISSING, benchmark deferred"
    assert runner.calls == []


def test_installed_driver_runs_nccl(monkeypatch) -> None:
    monkeypatch.setattr(audit_config, "NCCL_BW_THRESHOLD", 50.0)
    monkeypatch.setattr(nccl_benchmark, "all_reduce_binary", lambda tests_dir=None: "/opt/all_reduce_perf")
    results = benchmark_results(InstallState.RECOVERED, noburn=True, which=no_docker, runner=FakeRunner())
    nccl = results[-1]
    assert nccl.name == "NCCL AllReduce"
    assert nccl.status is Status.PASS


def test_missing_docker_with_noinstall_is_skipped() -> None:
    results = benchmark_results(InstallState.MISSING, noinstall=True, which=no_docker,
                                prompt=lambda q: pytest.fail(q))
    assert results[0].result == "Docker not installed and installation disabled"


def test_docker_benchmarks_declined_by_user(monkeypatch) -> None:
    monkeypatch.setattr(nccl_benchmark, "run_check", lambda spec: pytest.fail(spec.name))
    results = benchmark_results(InstallState.MISSING, which=lambda cmd: "/usr/bin/docker",
                                prompt=lambda q: "n")
    assert [r.result for r in results[:2]] == ["Skipped by user", "Skipped by user"]


def test_auto_accept_runs_docker_benchmarks(monkeypatch) -> None:
    ran = []

    def fake_run_check(spec):
        ran.append(spec.name)
        return nccl_benchmark.skipped(spec.name, spec.command, "ran", Status.PASS)

    monkeypatch.setattr(nccl_benchmark, "run_check", fake_run_check)
    benchmark_results(InstallState.MISSING, auto_accept=True, which=lambda cmd: "/usr/bin/docker")
    assert ran == ["HPL Single Node", "GPU Burn"]


def test_docker_specs_are_argv() -> None:
    hpl, burn = nccl_benchmark.docker_benchmark_specs()
    assert hpl.argv[:3] == ("docker", "run", "--gpus")
    assert burn.argv[-1] == audit_config.GPU_BURN_IMAGE
