import os
import re
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

from .audit_config import COMMAND_TIMEOUT
from .check_results import Category, CheckResult, Status


class UnexpectedOutput(ValueError):
    """Raised by a parser when command output does not have the expected shape."""


@dataclass(frozen=True)
class Evaluation:
    status: Optional[Status] = None  # None leaves the status untouched
    note: str = ""


@dataclass(frozen=True)
class CheckSpec:
    """
    One row of the check table.

    argv:     command to execute, never passed through a shell
    parse:    turns raw output into the text shown in the report
    evaluate: inspects raw output and may downgrade the status
    probe:    in-process replacement for argv, returns (exit_code, output)
    """
    name: str
    category: Category
    argv: Sequence[str] = ()
    parse: Optional[Callable[[str], str]] = None
    evaluate: Optional[Callable[[str], Evaluation]] = None
    probe: Optional[Callable[[], tuple]] = None
    display: str = ""
    empty_note: str = "No output"
    empty_status: Status = Status.PARTIAL
    collapsed: str = ""
    columns: tuple = ()
    env: dict = field(default_factory=dict)

    @property
    def command(self) -> str:
        if self.display:
            return self.display
        return " ".join(self.argv)


# =============================
# Command execution
# =============================
def execute(argv, timeout=COMMAND_TIMEOUT, env=None):
    """
    Run argv with stdout and stderr combined.
    Returns: (exit_code, output). Raises FileNotFoundError / TimeoutExpired.
    """
    run_env = dict(os.environ, LC_ALL="C")
    if env:
        run_env.update(env)
    r = subprocess.run(
        list(argv),
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=run_env,
        timeout=timeout or None,
    )
    return r.returncode, (r.stdout or "").strip()


def classify(exit_code, output):
    """FAIL on non-zero exit, PARTIAL on empty output, PASS otherwise."""
    if exit_code != 0:
        return Status.FAIL, f"Exit code {exit_code}"
    if not output.strip():
        return Status.PARTIAL, "No output"
    return Status.PASS, ""


def run_check(spec: CheckSpec, timeout=COMMAND_TIMEOUT) -> CheckResult:
    """Execute one check and classify it. Never raises for command failures."""
    logging.info(f"Running check: {spec.name}")
    logging.debug(f"  -> Command: {spec.command}")
    try:
        if spec.probe is not None:
            exit_code, output = spec.probe()
        else:
            exit_code, output = execute(spec.argv, timeout=timeout, env=spec.env)
    except FileNotFoundError as e:
        command = spec.argv[0] if spec.argv else ""
        if spec.probe is not None and e.filename and e.filename != command:
            return _finish(spec, "", Status.FAIL, f"Not found: {e.filename}")
        return _finish(spec, "Command not found", Status.FAIL, f"Command not found: {command or spec.name}")
    except subprocess.TimeoutExpired:
        return _finish(spec, "", Status.FAIL, f"Timed out after {timeout}s")
    except (OSError, ValueError) as e:
        return _finish(spec, "", Status.FAIL, f"Probe error: {e}")

    status, note = classify(exit_code, output)
    if status is not Status.PASS:
        if status is Status.PARTIAL:
            note = spec.empty_note
        return _finish(spec, output, status, note)

    try:
        shown = spec.parse(output) if spec.parse else output
    except (UnexpectedOutput, ValueError, IndexError) as e:
        logging.debug(f"  -> Parse error for {spec.name}: {e}")
        return _finish(spec, output, Status.PARTIAL, "Unparsed output")
    if not shown.strip():
        return _finish(spec, shown, spec.empty_status, spec.empty_note)

    if spec.evaluate is not None:
        evaluation = spec.evaluate(output)
        if evaluation.status is not None:
            status = evaluation.status
        note = evaluation.note
    return _finish(spec, shown, status, note, parsed=True)


def _finish(spec, result, status, notes, parsed=False):
    if status is Status.PASS:
        logging.info(f"  -> {spec.name}: PASS")
    elif status is Status.PARTIAL:
        logging.warning(f"  -> {spec.name}: PARTIAL ({notes})")
    else:
        logging.error(f"  -> {spec.name}: FAIL ({notes})")
    return CheckResult(
        name=spec.name,
        command=spec.command,
        result=result,
        status=status,
        notes=notes,
        collapsed=spec.collapsed,
        columns=spec.columns if parsed else (),
    )


def skipped(name, command, reason, status=Status.PARTIAL) -> CheckResult:
    """Row for a check that was deliberately not executed."""
    logging.warning(f"  -> {name}: skipped ({reason})")
    return CheckResult(name=name, command=command, result=reason, status=status, notes="Skipped")


# =============================
# Threshold evaluators
# =============================
def compare_minimum(value, minimum, label="value", unit=""):
    """
    Compare a measured value against a configured minimum.
    minimum <= 0 disables the check and leaves the status untouched.
    """
    suffix = f" {unit}" if unit else ""
    if minimum <= 0:
        return Evaluation(None, "No minimum threshold configured")
    if value < minimum:
        return Evaluation(Status.FAIL, f"{label} {value:g}{suffix} below minimum {minimum:g}{suffix}")
    return Evaluation(Status.PASS, f"{label} {value:g}{suffix} meets minimum {minimum:g}{suffix}")


def minimum_threshold(extract, minimum, label="value", unit=""):
    """
    Build an evaluator from an extractor returning a list of (label, value).
    Every extracted value must meet the minimum.
    """
    def evaluate(output):
        if minimum <= 0:
            return Evaluation(None, "No minimum threshold configured")
        try:
            measured = extract(output)
        except (UnexpectedOutput, ValueError, IndexError):
            return Evaluation(Status.PARTIAL, f"Could not parse {label}")
        if not measured:
            return Evaluation(Status.PARTIAL, f"No {label} reported")
        violations = []
        for item_label, value in measured:
            ev = compare_minimum(value, minimum, item_label, unit)
            if ev.status is Status.FAIL:
                violations.append(ev.note)
        if violations:
            return Evaluation(Status.FAIL, "\n".join(violations))
        return Evaluation(Status.PASS, f"All {label} meet minimum {minimum:g}{' ' + unit if unit else ''}")
    return evaluate


def first_number(text):
    m = re.search(r"[-+]?\d+(?:\.\d+)?", text)
    if not m:
        raise UnexpectedOutput(f"no number in {text!r}")
    return float(m.group(0))
