"""
Finding aggregation and the final diagnostic report.

Deduplicates findings from all rules, orders them by severity and time, and
packages them with the normalization warnings and a summary.
"""

import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .constants import LINK_KINDS, SEVERITY_CRITICAL, SEVERITY_INFO, SEVERITY_RANK, SEVERITY_WARNING
from .models import CorrelationLink, Entry, Finding, NormalizationWarning


@dataclass(frozen=True)
class DiagnosticReport:
    findings: Tuple[Finding, ...]
    warnings: Tuple[NormalizationWarning, ...]
    summary: Mapping[str, Any]
    entries: Tuple[Entry, ...] = field(default=(), repr=False, compare=False)

    @property
    def has_critical(self) -> bool:
        return any(f.severity == SEVERITY_CRITICAL for f in self.findings)

    def implicated(self, finding: Finding) -> List[Entry]:
        """Entries a finding points at, in entry id order."""
        by_id = {e.id: e for e in self.entries}
        return [by_id[i] for i in finding.entry_ids if i in by_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": dict(self.summary),
            "findings": [f.to_dict() for f in self.findings],
            "warnings": [w.to_dict() for w in self.warnings],
        }


def aggregate(findings: Iterable[Finding], entries: Sequence[Entry]) -> Tuple[Finding, ...]:
    """
    Deduplicate and order findings.

    Findings sharing a dedup key collapse to the first one seen (the
    earlier-registered rule wins). The survivors are sorted by severity
    (critical first) and then by the start of their earliest implicated
    entry; findings that implicate no known entry come last within their
    severity. The sort is stable, so ties keep production order.
    """
    start_by_id = {e.id: e.start_ms for e in entries}

    unique: Dict[Tuple[str, Tuple[int, ...]], Finding] = {}
    for finding in findings:
        unique.setdefault(finding.dedup_key, finding)

    def sort_key(finding: Finding) -> Tuple[int, float]:
        starts = [start_by_id[i] for i in finding.entry_ids if i in start_by_id]
        return (-SEVERITY_RANK[finding.severity], min(starts) if starts else math.inf)

    return tuple(sorted(unique.values(), key=sort_key))


def build_report(
    findings: Iterable[Finding],
    warnings: Sequence[NormalizationWarning],
    entries: Sequence[Entry],
    classifications: Mapping[int, FrozenSet[str]],
    links: Sequence[CorrelationLink],
    total_records: Optional[int] = None,
) -> DiagnosticReport:
    """Aggregate findings and attach warnings plus run counts."""
    ordered = aggregate(findings, entries)
    return DiagnosticReport(
        findings=ordered,
        warnings=tuple(warnings),
        summary=_compute_summary(ordered, warnings, entries, classifications, links, total_records),
        entries=tuple(entries),
    )


def _compute_summary(
    findings: Tuple[Finding, ...],
    warnings: Sequence[NormalizationWarning],
    entries: Sequence[Entry],
    classifications: Mapping[int, FrozenSet[str]],
    links: Sequence[CorrelationLink],
    total_records,
) -> Dict[str, Any]:
    by_severity = {SEVERITY_CRITICAL: 0, SEVERITY_WARNING: 0, SEVERITY_INFO: 0}
    for f in findings:
        by_severity[f.severity] += 1

    by_rule = Counter(f.rule_id for f in findings)

    by_label: Counter = Counter()
    unclassified = 0
    for entry in entries:
        labels = classifications.get(entry.id, frozenset())
        if not labels:
            unclassified += 1
        by_label.update(labels)

    by_link = {kind: 0 for kind in sorted(LINK_KINDS)}
    for link in links:
        by_link[link.kind] += 1

    start = min((e.start_ms for e in entries), default=None)
    end = max((e.end_ms for e in entries), default=None)

    return {
        "total_records": len(entries) + len(warnings) if total_records is None else total_records,
        "entries_analyzed": len(entries),
        "entries_skipped": len(warnings),
        "entries_unclassified": unclassified,
        "trace_duration_ms": round(end - start, 3) if entries else 0.0,
        "total_findings": len(findings),
        "by_severity": by_severity,
        "by_rule": dict(sorted(by_rule.items())),
        "entries_by_label": dict(sorted(by_label.items())),
        "links_by_kind": by_link,
    }
