#!/usr/bin/env python3
"""
hpc-audit: audit CPU, GPU, network, storage and security state of this node
and write a self-contained HTML report (plus a CSV summary).

Categories are opt-in: pass --check <category> (repeatable), --all, or set
RUN_<CATEGORY>_CHECK=true in the environment.
"""
import os
import sys
import logging
import argparse
from dataclasses import dataclass

from . import audit_config
from .check_results import AuditReport, Category, CheckResult, Status
from .check_runner import run_check
from .host_probe import primary_ip
from .installer import (
    DependencyDeclined,
    InstallError,
    InstallState,
    check_and_install_dependencies,
    prepare_gpu_stack,
    save_install_record,
)
from .nccl_benchmark import benchmark_results
from .node_checks import STATIC_ROWS, checks_for
from .report_generator import notify_teams_failed_checks, summarize_and_output


@dataclass
class AuditOptions:
    headless: bool = False
    noburn: bool = False
    noinstall: bool = False
    nocheck: bool = False
    reboot: bool = True


# =============================
# Category runners
# =============================
def run_category(report: AuditReport, category: Category, run=run_check):
    logging.info(f"=== {category.title} ===")
    for spec in checks_for(category):
        report.add(category, run(spec))
    static = STATIC_ROWS.get(category)
    if static is not None:
        report.extend(category, static())


def run_benchmark_category(report: AuditReport, options: AuditOptions, prompt=input):
    """Install flow failures are recorded as a FAIL row, the run goes on."""
    category = Category.BENCHMARKS
    logging.info(f"=== {category.title} ===")
    try:
        state = prepare_gpu_stack(
            headless=options.headless,
            noinstall=options.noinstall or (options.nocheck and not options.headless),
            prompt=prompt,
            reboot=options.reboot,
        )
    except InstallError as e:
        logging.error(f"GPU driver installation failed: {e}")
        report.add(category, CheckResult(
            "GPU Driver Install", "apt-get install nvidia-driver", str(e), Status.FAIL,
            "Installation failed",
        ))
        state = InstallState.INSTALL_PENDING
    if state is InstallState.REBOOT_REQUIRED:
        report.add(category, CheckResult(
            "GPU Driver Install", "apt-get install nvidia-driver", "Reboot required before benchmarking",
            Status.PARTIAL, "Rerun after the reboot to continue",
        ))

    report.extend(category, benchmark_results(
        state,
        noburn=options.noburn,
        headless=options.headless,
        noinstall=options.noinstall,
        auto_accept=options.nocheck,
        prompt=prompt,
    ))


def run_audit(categories, options=None, report=None, run=run_check, prompt=input) -> AuditReport:
    """Run the selected categories sequentially, in declaration order."""
    options = options or AuditOptions()
    report = report or AuditReport(audit_config.NODE_NAME, audit_config.TIMESTAMP)
    selected = set(categories)
    for category in Category:
        if category not in selected:
            continue
        if category is Category.BENCHMARKS:
            run_benchmark_category(report, options, prompt)
        else:
            run_category(report, category, run)
    return report


# =============================
# CLI
# =============================
def build_parser():
    parser = argparse.ArgumentParser(
        prog="hpc-audit",
        description="System hardware & performance audit with an HTML report.",
    )
    parser.add_argument("--headless", action="store_true", help="auto-confirm every prompt")
    parser.add_argument("--noburn", action="store_true", help="skip the container burn-in benchmarks")
    parser.add_argument("--noinstall", action="store_true", help="never install anything")
    parser.add_argument("--nocheck", action="store_true",
                        help="skip the dependency check and auto-accept the benchmark prompt")
    parser.add_argument("--all", action="store_true", help="run every category")
    parser.add_argument("--check", action="append", default=[], metavar="CATEGORY",
                        choices=[c.key for c in Category],
                        help="category to run (repeatable): %(choices)s")
    parser.add_argument("--report-dir", default=audit_config.REPORT_DIR)
    parser.add_argument("--no-reboot", action="store_true",
                        help="record REBOOT_REQUIRED after a driver install but do not reboot")
    parser.add_argument("--mark-installed", action="store_true",
                        help="record an already installed GPU driver stack and exit")
    parser.add_argument("--verbose", action="store_true")
    return parser


def selected_categories(args):
    if args.all:
        return list(Category)
    keys = list(args.check) + audit_config.enabled_categories_from_env()
    return [c for c in Category if c.key in keys]


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="[%(levelname)s] %(message)s")

    if os.geteuid() != 0:
        logging.error("This script must be run as root or with sudo.")
        return 1

    if args.mark_installed:
        save_install_record(InstallState.INSTALLED)
        return 0

    categories = selected_categories(args)
    if not categories:
        parser.error("no category selected; use --check CATEGORY, --all or RUN_<CATEGORY>_CHECK=true")

    options = AuditOptions(
        headless=args.headless,
        noburn=args.noburn,
        noinstall=args.noinstall,
        nocheck=args.nocheck,
        reboot=not args.no_reboot,
    )

    if args.nocheck:
        logging.warning("Running in --nocheck mode. Dependency checks and prompts are skipped.")
    else:
        try:
            check_and_install_dependencies(headless=args.headless, noinstall=args.noinstall)
        except DependencyDeclined as e:
            logging.error(f"{e}. Aborting.")
            return 1
        except InstallError as e:
            logging.error(f"Package installation failed: {e}")
            return 1

    logging.info(f"Starting checks: {', '.join(c.title for c in categories)}")
    report = run_audit(categories, options)

    html_path, _ = summarize_and_output(report, args.report_dir, primary_ip())
    if audit_config.TEAMS_WEBHOOK_URL:
        notify_teams_failed_checks(report, audit_config.TEAMS_WEBHOOK_URL)

    logging.info(f"All checks completed. Report saved to: {html_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
