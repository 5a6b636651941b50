"""
hpc_audit package
Hardware and software audit of HPC nodes with a static HTML report, plus the
NVIDIA driver / NCCL install and benchmark flow.
"""

from .check_results import (
    Status,
    Category,
    CheckResult,
    AuditReport
)
from .check_runner import (
    CheckSpec,
    Evaluation,
    run_check,
    classify,
    compare_minimum,
    minimum_threshold
)
from .report_generator import (
    render_html,
    summarize_and_output,
    write_csv_summary,
    write_html_report,
    notify_teams_failed_checks
)
from .installer import (
    InstallState,
    InstallError,
    resolve_install_state,
    save_install_record,
    prepare_gpu_stack,
    check_and_install_dependencies
)
from .nccl_benchmark import (
    install_nccl_stack,
    run_nccl_benchmark
)
from .node_audit_runner import run_audit, main as run_node_audit
