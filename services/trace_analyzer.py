# services/trace_analyzer.py
"""
Trace Diagnostics service for Trace Diagnostics MCP Server.

Runs the diagnostic rule engine over a captured HTTP/WebRTC session trace and
reports connectivity and API-usage problems as severity-ranked findings.

Inputs (under artifacts/<run_id>/traces/):
    - *.har  (HAR 1.1/1.2 browser export)
    - *.json (raw entry records, a list or {"entries": [...]})

Outputs (all under artifacts/<run_id>/analysis/):
    - trace_diagnostics.json
    - trace_diagnostics.csv
    - trace_diagnostics.md
"""

import datetime
import json
import logging
import traceback
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastmcp import Context
from dotenv import load_dotenv

from services import har_adapter
from services.diagnostics import DiagnosticReport, Entry, RuleEngine, analyze
from services.diagnostics.errors import MalformedTraceError, TraceDiagnosticsError
from services.diagnostics.utils import format_epoch_ms
from utils.config import load_config, load_engine_config
from utils.file_processor import (
    load_json_file,
    write_json_output,
    write_csv_output,
    write_markdown_output,
)

# ---------------------------------------------------------------------------
# Module-level configuration
# ---------------------------------------------------------------------------
load_dotenv()
CONFIG = load_config()
ARTIFACTS_CONFIG = CONFIG.get("artifacts", {})
ARTIFACTS_PATH = Path(ARTIFACTS_CONFIG.get("artifacts_path", "./artifacts"))
NETWORK_CAPTURE_CONFIG = CONFIG.get("network_capture", {})

logger = logging.getLogger(__name__)
verbose = CONFIG.get("logging", {}).get("verbose", False)
if verbose:
    logging.getLogger("services").setLevel(logging.DEBUG)

TRACE_EXTENSIONS = (".har", ".json")

CSV_COLUMNS = [
    "test_run_id", "rule_id", "severity", "message", "entry_ids",
    "first_entry_start", "methods", "urls", "statuses",
]

SEVERITY_ICONS = {"critical": "🔴", "warning": "🟡", "info": "ℹ️"}


# ============================================================================
# PUBLIC API  (called from tracediag.py)
# ============================================================================

async def analyze_network_trace(
    test_run_id: str,
    ctx: Context,
    trace_file: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Main entry point for trace diagnostics.

    Args:
        test_run_id: Run whose artifacts/<run_id>/traces/ holds the trace.
        ctx:         FastMCP workflow context.
        trace_file:  (Optional) File name inside the traces folder, or an
                     absolute path. The newest trace file is used when omitted.

    Returns:
        dict suitable for returning directly from an MCP tool.
    """
    try:
        await ctx.info("Trace Diagnostics", f"Starting analysis for run {test_run_id}")
        engine_config = load_engine_config(CONFIG)

        # ------------------------------------------------------------------
        # 1. Locate and load the trace
        # ------------------------------------------------------------------
        trace_path = resolve_trace_path(test_run_id, trace_file)
        if trace_path is None:
            msg = (
                f"No trace file found for run {test_run_id} under "
                f"{ARTIFACTS_PATH / test_run_id / 'traces'}. Export a HAR file there first."
            )
            await ctx.error("Missing Trace", msg)
            return {"error": msg, "status": "prerequisite_missing"}

        await ctx.info("Loading Trace", str(trace_path))
        raw_entries = load_trace_records(trace_path)
        await ctx.info("Trace Loaded", f"{len(raw_entries)} raw entries")

        # ------------------------------------------------------------------
        # 2. Run the diagnostic engine
        # ------------------------------------------------------------------
        engine = RuleEngine(engine_config)
        report = analyze(raw_entries, engine_config, engine=engine)

        if report.warnings:
            await ctx.warning(
                "Normalization",
                f"{len(report.warnings)} malformed entries were skipped",
            )

        # ------------------------------------------------------------------
        # 3. Assemble result and write output artifacts
        # ------------------------------------------------------------------
        result = {
            "test_run_id": test_run_id,
            "trace_file": str(trace_path),
            "analysis_timestamp": datetime.datetime.now().isoformat(),
            "configuration": engine_config.to_dict(),
            "rules": engine.describe_rules(),
            "summary": dict(report.summary),
            "findings": [_finding_with_context(report, f) for f in report.findings],
            "warnings": [w.to_dict() for w in report.warnings],
        }

        analysis_path = ARTIFACTS_PATH / test_run_id / "analysis"
        analysis_path.mkdir(parents=True, exist_ok=True)

        output_files = await _write_outputs(result, analysis_path, test_run_id)
        result["output_files"] = output_files

        by_severity = report.summary["by_severity"]
        await ctx.info(
            "Trace Diagnostics Complete",
            f"{len(report.findings)} finding(s): {by_severity['critical']} critical, "
            f"{by_severity['warning']} warning, {by_severity['info']} info. "
            f"Files saved to {analysis_path}",
        )

        return {
            "status": "success",
            "test_run_id": test_run_id,
            "trace_file": str(trace_path),
            "summary": result["summary"],
            "findings_count": len(report.findings),
            "output_files": output_files,
        }

    except TraceDiagnosticsError as e:
        msg = f"Trace diagnostics failed: {e}"
        await ctx.error("Trace Diagnostics Error", msg)
        return {"error": msg, "status": "failed", "error_type": type(e).__name__}

    except Exception as e:
        tb = traceback.format_exc()
        msg = f"Trace diagnostics failed: {e}"
        await ctx.error("Trace Diagnostics Error", msg)
        return {"error": msg, "status": "failed", "traceback": tb}


async def validate_trace_file(
    test_run_id: str,
    ctx: Context,
    trace_file: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Validate a HAR trace for a run without analyzing it.

    Returns:
        dict with the HAR validation summary plus "status" and "trace_file".
    """
    trace_path = resolve_trace_path(test_run_id, trace_file)
    if trace_path is None:
        msg = f"No trace file found for run {test_run_id}"
        await ctx.error("Missing Trace", msg)
        return {"error": msg, "status": "prerequisite_missing"}

    summary = har_adapter.validate_har_file(str(trace_path), NETWORK_CAPTURE_CONFIG)
    summary["trace_file"] = str(trace_path)
    summary["status"] = "valid" if summary["valid"] else "invalid"

    if summary["valid"]:
        await ctx.info(
            "Trace Valid",
            f"HAR {summary['version']}: {summary['entry_count']} entries, "
            f"{summary['websocket_count']} websocket, {summary['nat_traversal_count']} STUN/TURN",
        )
    else:
        await ctx.warning("Trace Invalid", "; ".join(summary["errors"]))
    return summary


async def list_diagnostic_rules(ctx: Context) -> Dict[str, Any]:
    """Describe the registered diagnostic rules and the active engine configuration."""
    try:
        engine_config = load_engine_config(CONFIG)
    except TraceDiagnosticsError as e:
        msg = f"Invalid trace_diagnostics configuration: {e}"
        await ctx.error("Configuration Error", msg)
        return {"error": msg, "status": "failed"}

    rules = RuleEngine(engine_config).describe_rules()
    return {
        "status": "success",
        "rules": rules,
        "count": len(rules),
        "configuration": engine_config.to_dict(),
    }


# ============================================================================
# TRACE LOADING
# ============================================================================

def resolve_trace_path(test_run_id: str, trace_file: Optional[str] = None) -> Optional[Path]:
    """
    Find the trace file for a run.

    An absolute trace_file is used as-is; a relative one is looked up in
    artifacts/<run_id>/traces/. Without trace_file the most recently
    modified .har/.json file in that folder is chosen.
    """
    traces_dir = ARTIFACTS_PATH / test_run_id / "traces"

    if trace_file:
        candidate = Path(trace_file)
        if not candidate.is_absolute():
            candidate = traces_dir / candidate
        return candidate if candidate.is_file() else None

    if not traces_dir.is_dir():
        return None

    candidates = [
        p for p in traces_dir.iterdir()
        if p.is_file() and p.suffix.lower() in TRACE_EXTENSIONS
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda p: (p.stat().st_mtime, p.name))


def load_trace_records(trace_path: Path) -> List[Any]:
    """
    Load raw entry records from a HAR file or a raw JSON trace.

    Raises:
        MalformedTraceError: If the document is neither a HAR archive nor a
                             list of entry records.
    """
    if trace_path.suffix.lower() == ".har":
        try:
            har_data = har_adapter.load_har_file(str(trace_path))
        except ValueError as exc:
            raise MalformedTraceError(str(exc)) from exc
        return har_adapter.har_to_raw_entries(har_data, NETWORK_CAPTURE_CONFIG)

    try:
        data = load_json_file(trace_path)
    except json.JSONDecodeError as exc:
        raise MalformedTraceError(f"Invalid JSON in trace file: {exc}") from exc

    if har_adapter.is_har_document(data):
        return har_adapter.har_to_raw_entries(data, NETWORK_CAPTURE_CONFIG)
    if isinstance(data, dict) and isinstance(data.get("entries"), list):
        return data["entries"]
    if isinstance(data, list):
        return data
    raise MalformedTraceError(
        f"Unrecognized trace format in {trace_path.name}: expected a HAR archive "
        "or a list of entry records"
    )


def _entry_context(entry: Entry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "source_index": entry.source_index,
        "start_time": format_epoch_ms(entry.start_ms),
        "duration_ms": round(entry.duration_ms, 3),
        "method": entry.method,
        "url": entry.url.normalized,
        "status": entry.response_status,
    }


def _finding_with_context(report: DiagnosticReport, finding) -> Dict[str, Any]:
    data = finding.to_dict()
    data["entries"] = [_entry_context(e) for e in report.implicated(finding)]
    return data


# ============================================================================
# OUTPUT WRITING
# ============================================================================

async def _write_outputs(result: Dict, analysis_path: Path, test_run_id: str) -> Dict[str, str]:
    """Write JSON, CSV and Markdown outputs."""
    output_files: Dict[str, str] = {}

    # --- JSON ---
    json_file = analysis_path / "trace_diagnostics.json"
    await write_json_output(result, json_file)
    output_files["json"] = str(json_file)

    # --- CSV (header-only when there are no findings) ---
    csv_file = analysis_path / "trace_diagnostics.csv"
    csv_rows = _flatten_findings_for_csv(test_run_id, result.get("findings", []))
    await write_csv_output(csv_rows, csv_file, headers=CSV_COLUMNS)
    output_files["csv"] = str(csv_file)

    # --- Markdown ---
    md_file = analysis_path / "trace_diagnostics.md"
    await write_markdown_output(format_diagnostics_markdown(result), md_file)
    output_files["markdown"] = str(md_file)

    return output_files


def _flatten_findings_for_csv(test_run_id: str, findings: List[Dict]) -> List[Dict[str, Any]]:
    rows = []
    for f in findings:
        entries = f.get("entries", [])
        rows.append({
            "test_run_id": test_run_id,
            "rule_id": f["rule_id"],
            "severity": f["severity"],
            "message": f["message"],
            "entry_ids": ";".join(str(i) for i in f["entry_ids"]),
            "first_entry_start": min((e["start_time"] for e in entries), default=""),
            "methods": ";".join(e["method"] or "-" for e in entries),
            "urls": ";".join(e["url"] for e in entries),
            "statuses": ";".join("-" if e["status"] is None else str(e["status"]) for e in entries),
        })
    return rows


# ============================================================================
# MARKDOWN REPORT FORMATTING
# ============================================================================

def format_diagnostics_markdown(result: Dict) -> str:
    """Generate a human-readable trace diagnostics report."""
    test_run_id = result.get("test_run_id", "Unknown")
    summary = result.get("summary", {})
    findings = result.get("findings", [])
    warnings = result.get("warnings", [])
    by_severity = summary.get("by_severity", {})

    md = []
    md.append(f"# Trace Diagnostics Report - Run {test_run_id}\n")

    # --- Headline ---
    md.append("## Executive Summary\n")
    if not findings:
        md.append("**No connectivity or API-usage problems detected.**\n")
    else:
        md.append(
            f"**{len(findings)} finding(s): {by_severity.get('critical', 0)} critical, "
            f"{by_severity.get('warning', 0)} warning, {by_severity.get('info', 0)} info.**\n"
        )

    md.append("| Metric | Value |")
    md.append("|--------|-------|")
    md.append(f"| Trace File | {Path(result.get('trace_file', '')).name or 'N/A'} |")
    md.append(f"| Records in Trace | {summary.get('total_records', 'N/A')} |")
    md.append(f"| Entries Analyzed | {summary.get('entries_analyzed', 'N/A')} |")
    md.append(f"| Entries Skipped | {summary.get('entries_skipped', 0)} |")
    md.append(f"| Unclassified Entries | {summary.get('entries_unclassified', 0)} |")
    md.append(f"| Trace Duration | {summary.get('trace_duration_ms', 0) / 1000.0:.1f} s |")
    md.append("")

    if by_severity:
        md.append("### Findings by Severity\n")
        md.append("| Severity | Count |")
        md.append("|----------|-------|")
        for sev in ["critical", "warning", "info"]:
            if sev in by_severity:
                md.append(f"| {sev.title()} | {by_severity[sev]} |")
        md.append("")

    by_rule = summary.get("by_rule", {})
    if by_rule:
        md.append("### Findings by Rule\n")
        md.append("| Rule | Count |")
        md.append("|------|-------|")
        for rule_id, count in by_rule.items():
            md.append(f"| `{rule_id}` | {count} |")
        md.append("")

    by_label = summary.get("entries_by_label", {})
    links = summary.get("links_by_kind", {})
    if by_label or any(links.values()):
        md.append("### Traffic Overview\n")
        md.append("| Domain / Link | Count |")
        md.append("|---------------|-------|")
        for label, count in by_label.items():
            md.append(f"| {label} entries | {count} |")
        for kind, count in links.items():
            md.append(f"| {kind} links | {count} |")
        md.append("")

    # --- Detailed Findings ---
    if findings:
        md.append("## Detailed Findings\n")
        for i, f in enumerate(findings, 1):
            icon = SEVERITY_ICONS.get(f["severity"], "⚪")
            md.append(f"### {i}. {icon} `{f['rule_id']}` ({f['severity'].title()})\n")
            md.append(f"{f['message']}\n")
            entries = f.get("entries", [])
            if entries:
                md.append("| Entry | Start | Method | URL | Status | Duration |")
                md.append("|-------|-------|--------|-----|--------|----------|")
                for e in entries[:10]:
                    status = "no response" if e["status"] is None else e["status"]
                    md.append(
                        f"| {e['id']} | {e['start_time']} | {e['method'] or '-'} | "
                        f"{e['url']} | {status} | {e['duration_ms']:.0f} ms |"
                    )
                if len(entries) > 10:
                    md.append(f"\n_...and {len(entries) - 10} more entries._")
                md.append("")

    # --- Normalization warnings ---
    if warnings:
        md.append("## Skipped Trace Entries\n")
        md.append("| Record | Field | Reason |")
        md.append("|--------|-------|--------|")
        for w in warnings[:50]:
            md.append(f"| {w['source_index']} | {w['field'] or '-'} | {w['message']} |")
        if len(warnings) > 50:
            md.append(f"\n_...and {len(warnings) - 50} more._")
        md.append("")

    md.append("---\n")
    md.append(
        "_Findings are heuristic advisories derived from the captured trace; "
        "they do not certify that a connection will succeed or fail._"
    )
    return "\n".join(md)
