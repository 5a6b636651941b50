import os
import csv
import html
import logging
from datetime import datetime, timezone

import requests

from .check_results import AuditReport, CheckResult, Status

REPORT_CSS = """
    :root {
        --bg-color: #1a1b26; --card-color: #24283b; --text-color: #c0caf5;
        --header-color: #ffffff; --accent-color: #00bfff; --border-color: #414868;
        --table-header-bg: #2e3452; --green: #34d399; --yellow: #facc15; --red: #f87171;
    }
    body { font-family: 'Inter', sans-serif; background-color: var(--bg-color); color: var(--text-color); margin: 0; padding: 2rem; font-size: 14px; }
    .container { max-width: 1200px; margin: 0 auto; background-color: var(--card-color); border-radius: 12px; padding: 2rem; border: 1px solid var(--border-color); box-shadow: 0 10px 30px rgba(0,0,0,0.3); }
    h1 { color: var(--header-color); text-align: center; border-bottom: 2px solid var(--accent-color); padding-bottom: 1rem; margin-bottom: 0.5rem; font-weight: 700; }
    .report-meta, .report-host { text-align: center; margin-bottom: 1.5rem; font-size: 0.95rem; color: #7a82ac; }
    .summary-counts { text-align: center; margin-bottom: 1.5rem; }
    .actions { text-align: center; margin-bottom: 1.5rem; }
    .actions button { background: var(--table-header-bg); color: var(--accent-color); border: 1px solid var(--border-color); border-radius: 8px; padding: 0.5rem 1rem; margin: 0 0.25rem; cursor: pointer; }
    details.category { background: var(--bg-color); border-radius: 8px; margin-bottom: 1rem; border: 1px solid var(--border-color); overflow: hidden; }
    details.category > summary { font-weight: 600; font-size: 1.2rem; padding: 1rem; cursor: pointer; color: var(--accent-color); background-color: var(--table-header-bg); list-style: none; display: flex; justify-content: space-between; }
    details.category > summary::after { content: '+'; font-size: 1.5rem; transition: transform 0.2s; }
    details.category[open] > summary::after { transform: rotate(45deg); }
    table { width: 100%; border-collapse: collapse; table-layout: fixed; }
    th, td { padding: 0.8rem 1rem; text-align: left; border-bottom: 1px solid var(--border-color); vertical-align: top; overflow-wrap: anywhere; word-break: break-word; }
    pre { white-space: pre-wrap; word-break: break-word; margin: 0; }
    thead { background-color: var(--table-header-bg); color: #a9b1d6; font-weight: 600; }
    tbody tr:nth-child(even) { background-color: #2e345250; }
    table.results > thead th:nth-child(1) { width: 20%; }
    table.results > thead th:nth-child(2) { width: 30%; }
    table.results > thead th:nth-child(3) { width: 40%; }
    table.results > thead th:nth-child(4) { width: 10%; }
    td.test-name { font-weight: 600; color: #a9b1d6; }
    td.test-command { font-family: monospace; color: #e0af68; }
    td.test-result { font-family: monospace; font-size: 0.85rem; }
    .status-badge { display: inline-block; padding: 0.2rem 0.5rem; border-radius: 9999px; font-weight: 600; font-size: 0.8rem; }
    .status-pass { background: rgba(52,211,153,0.15); color: var(--green); border: 1px solid rgba(52,211,153,0.4); }
    .status-partial { background: rgba(250,204,21,0.15); color: var(--yellow); border: 1px solid rgba(250,204,21,0.4); }
    .status-fail { background: rgba(248,113,113,0.15); color: var(--red); border: 1px solid rgba(248,113,113,0.4); }
    .status-notes { display: block; margin-top: 0.25rem; font-size: 0.8rem; color: #a9b1d6; white-space: pre-wrap; }
    .footer { text-align: center; margin-top: 2rem; font-size: 0.8rem; color: #7a82ac; }
    .search { width: 100%; box-sizing: border-box; padding: 0.5rem 0.75rem; margin: 0.5rem 0 0.75rem 0; border-radius: 8px; border: 1px solid var(--border-color); background: var(--bg-color); color: var(--text-color); }
"""

# Both exports read the raw values kept on each row, nothing is sent anywhere
REPORT_JS = """
    function filterTable(inputId, tableId) {
        const input = document.getElementById(inputId);
        const table = document.getElementById(tableId);
        if (!input || !table) return;
        const q = input.value.toLowerCase();
        table.querySelectorAll('tbody tr').forEach(tr => {
            tr.style.display = tr.textContent.toLowerCase().includes(q) ? '' : 'none';
        });
    }
    function csvCell(text) {
        return '"' + String(text).replace(/"/g, '""') + '"';
    }
    function exportCsv(onlyProblems) {
        const lines = [['Category', 'Test', 'Command', 'Result', 'Status', 'Notes'].map(csvCell).join(',')];
        document.querySelectorAll('tr.result-row').forEach(tr => {
            const status = tr.dataset.status;
            if (onlyProblems && status === 'PASS') return;
            const d = tr.dataset;
            lines.push([d.category, d.name, d.command, d.result, status, d.notes].map(csvCell).join(','));
        });
        const blob = new Blob([lines.join('\\n') + '\\n'], {type: 'text/csv'});
        const link = document.createElement('a');
        link.href = URL.createObjectURL(blob);
        link.download = document.body.dataset.basename + (onlyProblems ? '_problems.csv' : '_all.csv');
        document.body.appendChild(link);
        link.click();
        document.body.removeChild(link);
    }
"""

CSV_HEADERS = ["category", "test", "command", "result", "status", "notes"]


# =============================
# Naming
# =============================
def report_basename(hostname, timestamp):
    return f"system_test_report_{hostname}_{timestamp}"


# =============================
# HTML fragments
# =============================
def status_badge(status: Status) -> str:
    return (
        f'<span class="status-badge status-{status.value.lower()}">'
        f'{html.escape(status.value)}</span>'
    )


def render_result_cell(result: CheckResult, table_id: str) -> str:
    """Escaped result body: inline <pre>, searchable table, or collapsed block."""
    if result.columns:
        head = "".join(f"<th>{html.escape(c)}</th>" for c in result.columns)
        body = []
        for line in result.result.splitlines():
            cells = line.split("\t")
            cells += [""] * (len(result.columns) - len(cells))
            body.append("<tr>" + "".join(f"<td>{html.escape(c)}</td>" for c in cells) + "</tr>")
        filter_id = f"{table_id}-filter"
        inner = (
            f'<input class="search" id="{filter_id}" placeholder="Filter..." '
            f"oninput=\"filterTable('{filter_id}','{table_id}')\">"
            f'<table id="{table_id}"><thead><tr>{head}</tr></thead>'
            f'<tbody>{"".join(body)}</tbody></table>'
        )
        label = result.collapsed or f"{result.name} ({len(body)} rows)"
        return f"<details><summary>{html.escape(label)}</summary>{inner}</details>"

    pre = f"<pre>{html.escape(result.result)}</pre>"
    if result.collapsed:
        return f"<details><summary>{html.escape(result.collapsed)}</summary>{pre}</details>"
    return pre


def render_row(category, result: CheckResult, table_id: str) -> str:
    notes = ""
    if result.notes:
        notes = f'<span class="status-notes">{html.escape(result.notes)}</span>'
    return (
        f'<tr class="result-row" data-category="{html.escape(category.title, quote=True)}" '
        f'data-status="{result.status.value}" data-notes="{html.escape(result.notes, quote=True)}" '
        f'data-name="{html.escape(result.name, quote=True)}" '
        f'data-command="{html.escape(result.command, quote=True)}" '
        f'data-result="{html.escape(result.result, quote=True)}">'
        f'<td class="test-name">{html.escape(result.name)}</td>'
        f'<td class="test-command"><pre>{html.escape(result.command)}</pre></td>'
        f'<td class="test-result">{render_result_cell(result, table_id)}</td>'
        f"<td>{status_badge(result.status)}{notes}</td>"
        "</tr>"
    )


# =============================
# Output to HTML
# =============================
def render_html(report: AuditReport, primary_ip="") -> str:
    """
    Render the whole report as one self-contained HTML document.
    Categories without results are omitted; rows keep insertion order.
    """
    basename = report_basename(report.hostname, report.timestamp)
    counts = report.counts()
    host_line = f"Hostname: {html.escape(report.hostname)}"
    if primary_ip:
        host_line += f" &bull; Primary IP: {html.escape(primary_ip)}"

    parts = [
        "<!DOCTYPE html>",
        '<html lang="en">',
        "<head>",
        '  <meta charset="UTF-8">',
        '  <meta name="viewport" content="width=device-width, initial-scale=1.0">',
        f"  <title>System Test Report - {html.escape(report.hostname)}</title>",
        f"  <style>{REPORT_CSS}</style>",
        "</head>",
        f'<body data-basename="{html.escape(basename, quote=True)}">',
        '  <div class="container">',
        "    <h1>System Hardware &amp; Performance Report</h1>",
        f'    <div class="report-meta">Generated on: {html.escape(report.timestamp)}</div>',
        f'    <div class="report-host">{host_line}</div>',
        '    <div class="summary-counts">'
        + " ".join(f"{status_badge(s)} {counts[s]}" for s in Status)
        + "</div>",
        '    <div class="actions">'
        '<button type="button" onclick="exportCsv(false)">Export all (CSV)</button>'
        '<button type="button" onclick="exportCsv(true)">Export failures &amp; partials (CSV)</button>'
        "</div>",
    ]

    table_no = 0
    for category, results in report.sections():
        parts.append(f'    <details class="category" open id="category-{category.key}">')
        parts.append(f"      <summary>{html.escape(category.title)}</summary>")
        parts.append('      <table class="results">')
        parts.append("        <thead><tr><th>Test</th><th>Command</th><th>Result</th><th>Status</th></tr></thead>")
        parts.append("        <tbody>")
        for result in results:
            table_no += 1
            parts.append("          " + render_row(category, result, f"table-{table_no}"))
        parts.append("        </tbody>")
        parts.append("      </table>")
        parts.append("    </details>")

    parts += [
        "  </div>",
        '  <div class="footer">Generated by hpc-audit</div>',
        f"  <script>{REPORT_JS}</script>",
        "</body>",
        "</html>",
        "",
    ]
    return "\n".join(parts)


def write_html_report(report: AuditReport, report_dir, primary_ip="") -> str:
    os.makedirs(report_dir, exist_ok=True)
    html_path = os.path.join(report_dir, report_basename(report.hostname, report.timestamp) + ".html")
    with open(html_path, "w", encoding="utf-8") as f:
        f.write(render_html(report, primary_ip))
    logging.info(f"HTML output: {html_path}")
    return html_path


# =============================
# Output to CSV
# =============================
def write_csv_summary(rows, csv_path):
    os.makedirs(os.path.dirname(csv_path) or ".", exist_ok=True)
    with open(csv_path, "w", newline="", encoding="utf-8") as csvfile:
        writer = csv.writer(csvfile)
        for row in rows:
            writer.writerow(row)
    logging.info(f"CSV output: {csv_path}")


def report_rows(report: AuditReport):
    rows = [CSV_HEADERS]
    for category, result in report.all_results():
        rows.append([
            category.title, result.name, result.command, result.result,
            result.status.value, result.notes,
        ])
    return rows


# =============================
# Process and save report artifacts
# =============================
def summarize_and_output(report: AuditReport, report_dir, primary_ip=""):
    """Write the HTML report and the CSV summary. Returns (html_path, csv_path)."""
    html_path = write_html_report(report, report_dir, primary_ip)
    csv_path = os.path.join(report_dir, report_basename(report.hostname, report.timestamp) + ".csv")
    write_csv_summary(report_rows(report), csv_path)

    counts = report.counts()
    logging.info(
        f"Summary: {counts[Status.PASS]} passed, {counts[Status.PARTIAL]} partial, "
        f"{counts[Status.FAIL]} failed"
    )
    return html_path, csv_path


# =============================
# Send Teams notification if failed checks exist
# =============================
def notify_teams_failed_checks(report: AuditReport, webhook_url):
    failed = report.failed()
    if not failed:
        logging.info("All checks passed or partial, no notification sent")
        return False

    text_lines = [f"**List of failed checks on {report.hostname}**"]
    for category, result in failed:
        text_lines.append(f"- [{category.title}] {result.name}: {result.notes or 'FAIL'}")

    payload = {
        "@type": "MessageCard",
        "@context": "http://schema.org/extensions",
        "summary": "Node audit results",
        "themeColor": "FF0000",
        "title": f"Node audit failures ({datetime.now(timezone.utc).replace(microsecond=0).isoformat()})",
        "text": "\n".join(text_lines),
    }

    try:
        resp = requests.post(webhook_url, json=payload, timeout=10)
        resp.raise_for_status()
        logging.info("Teams notification sent")
        return True
    except requests.RequestException as e:
        logging.warning(f"Teams notification failure: {e}")
        return False
