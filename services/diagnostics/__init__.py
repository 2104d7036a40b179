"""
Trace diagnostics package for Trace Diagnostics MCP.

This package analyzes captured HTTP/WebRTC session traces: entries are
normalized, classified into signaling / NAT-traversal / API domains, linked
on a unified timeline, and checked by a registry of heuristic rules that emit
severity-ranked findings.

Version: 0.1.0
License: MIT
Repository: https://github.com/canyonlabz/mcp-perf-suite
"""

from .aggregator import DiagnosticReport, aggregate, build_report
from .classifiers import classify, classify_structural, classify_timeline
from .correlator import Timeline, build_timeline, correlate, correlate_partitioned
from .engine import RuleEngine
from .engine_config import EngineConfig
from .errors import (
    AnalysisCancelledError,
    ConfigurationError,
    MalformedTraceError,
    TraceDiagnosticsError,
    TraceUnusableError,
)
from .models import CorrelationLink, Entry, Finding, NormalizationResult, NormalizationWarning, Rule, RuleView
from .normalizer import normalize
from .pipeline import CancellationToken, analyze
from .rules import BUILTIN_RULES

__all__ = [
    "analyze",
    "normalize",
    "classify",
    "classify_structural",
    "classify_timeline",
    "build_timeline",
    "correlate",
    "correlate_partitioned",
    "aggregate",
    "build_report",
    "RuleEngine",
    "EngineConfig",
    "CancellationToken",
    "DiagnosticReport",
    "Timeline",
    "Entry",
    "Finding",
    "Rule",
    "RuleView",
    "CorrelationLink",
    "NormalizationResult",
    "NormalizationWarning",
    "BUILTIN_RULES",
    "TraceDiagnosticsError",
    "MalformedTraceError",
    "TraceUnusableError",
    "ConfigurationError",
    "AnalysisCancelledError",
]
__version__ = "0.1.0"
