# Trace Diagnostics MCP Server
# This module diagnoses HTTP/WebRTC session traces (HAR exports) with a rule engine.
from fastmcp import FastMCP, Context  # ✅ FastMCP 2.x import
from typing import Optional

mcp = FastMCP(
    name="tracediag",
)

from services.trace_analyzer import (
    analyze_network_trace as run_trace_diagnostics,
    validate_trace_file as run_trace_validation,
    list_diagnostic_rules as describe_diagnostic_rules,
)

# ----------------------------------------------------------
# Trace Diagnostics Tools
# ----------------------------------------------------------

@mcp.tool()
async def analyze_network_trace(test_run_id: str, ctx: Context, trace_file: Optional[str] = None) -> dict:
    """
    Diagnose connectivity and API-usage problems in a captured session trace.

    Looks under:
        <artifacts_root>/<test_run_id>/traces

    Args:
        test_run_id (str): Unique identifier for the test run.
        ctx (Context, optional): FastMCP context for tracking state, status, or error reporting.
        trace_file (str, optional): Trace file name in the traces folder (or absolute path).
            Defaults to the most recent .har/.json file.

    Returns:
        dict: {
            "status": "success" | "failed" | "prerequisite_missing",
            "summary": {...},
            "findings_count": int,
            "output_files": {"json": str, "csv": str, "markdown": str}
        }
    """
    return await run_trace_diagnostics(test_run_id, ctx, trace_file)

@mcp.tool()
async def validate_trace_file(test_run_id: str, ctx: Context, trace_file: Optional[str] = None) -> dict:
    """
    Validate a HAR trace file (structure, version, entry counts) without analyzing it.
    Args:
        test_run_id (str): Unique identifier for the test run.
        ctx (Context, optional): FastMCP context for state/error details.
        trace_file (str, optional): Trace file name in the traces folder (or absolute path).

    Returns:
        dict: HAR version, entry/page counts, websocket and STUN/TURN counts, errors.
    """
    return await run_trace_validation(test_run_id, ctx, trace_file)

@mcp.tool()
async def list_diagnostic_rules(ctx: Context) -> dict:
    """
    List the registered diagnostic rules with their severities and domains.
    Args:
        ctx (Context, optional): FastMCP context (currently unused, but reserved).

    Returns:
        dict: Rule metadata and the active engine configuration.
    """
    return await describe_diagnostic_rules(ctx)

# -----------------------------
# Trace Diagnostics MCP entry point
# -----------------------------
if __name__ == "__main__":
    try:
        mcp.run("stdio")
    except KeyboardInterrupt:
        print("Shutting down Trace Diagnostics MCP…")
