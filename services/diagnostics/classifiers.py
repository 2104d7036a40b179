"""
Domain classification of normalized entries.

Two passes:
- structural: labels that depend only on the entry and the configuration
  (nat-traversal, signaling by content, api, cors-preflight)
- timeline:   signaling by co-occurrence with NAT-traversal traffic, which
  needs the pass-1 labels and the correlator's timeline

An entry may carry several labels; an entry with none is left out of every
rule's view.
"""

import re
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Pattern, Sequence, Set, Tuple

from .constants import (
    ACCESS_CONTROL_ALLOW_ORIGIN,
    ICE_URI_VALUE_RE,
    LABEL_API,
    LABEL_CORS_PREFLIGHT,
    LABEL_NAT_TRAVERSAL,
    LABEL_SIGNALING,
    NAT_TRAVERSAL_SCHEMES,
    WEBSOCKET_SCHEMES,
)
from .correlator import Timeline, build_timeline
from .engine_config import EngineConfig
from .models import Entry
from .utils import matches_any

Labels = Dict[int, FrozenSet[str]]


# ============================================================
# Pass 1 — structural labels
# ============================================================

def compile_signaling_markers(markers: Iterable[str]) -> Optional[Pattern]:
    """Case-insensitive, word-bounded alternation of the configured markers."""
    escaped = [re.escape(m.strip().lower()) for m in markers if m and m.strip()]
    if not escaped:
        return None
    return re.compile(
        r"(?<![a-z0-9])(?:" + "|".join(escaped) + r")(?![a-z0-9])",
        re.IGNORECASE,
    )


def is_nat_traversal(entry: Entry, config: EngineConfig) -> bool:
    url = entry.url
    if url.scheme in NAT_TRAVERSAL_SCHEMES:
        return True
    if matches_any(url.host, config.nat_traversal_host_patterns, case_sensitive=False):
        return True
    for values in url.query.values():
        for value in values:
            if ICE_URI_VALUE_RE.match(value):
                return True
    return False


def has_signaling_content(entry: Entry, marker_re: Optional[Pattern]) -> bool:
    """Signaling markers in request/response header names or values, or a websocket URL."""
    if entry.url.scheme in WEBSOCKET_SCHEMES:
        return True
    if marker_re is None:
        return False
    for headers in (entry.request_headers, entry.response_headers):
        for name, value in headers.items():
            if marker_re.search(name) or marker_re.search(value):
                return True
    return False


def is_api(entry: Entry, config: EngineConfig) -> bool:
    return matches_any(entry.url.path, config.api_path_patterns)


def is_cors_preflight(entry: Entry) -> bool:
    return entry.method == "OPTIONS" and ACCESS_CONTROL_ALLOW_ORIGIN in entry.response_headers


def structural_labels(entry: Entry, config: EngineConfig, marker_re: Optional[Pattern]) -> FrozenSet[str]:
    labels: Set[str] = set()
    if is_nat_traversal(entry, config):
        labels.add(LABEL_NAT_TRAVERSAL)
    if has_signaling_content(entry, marker_re):
        labels.add(LABEL_SIGNALING)
    if is_api(entry, config):
        labels.add(LABEL_API)
    if is_cors_preflight(entry):
        labels.add(LABEL_CORS_PREFLIGHT)
    return frozenset(labels)


def classify_structural(entries: Sequence[Entry], config: Optional[EngineConfig] = None) -> Labels:
    config = config or EngineConfig()
    marker_re = compile_signaling_markers(config.signaling_markers)
    return {entry.id: structural_labels(entry, config, marker_re) for entry in entries}


# ============================================================
# Pass 2 — timeline labels
# ============================================================

def classify_timeline(
    entries: Sequence[Entry],
    structural: Mapping[int, FrozenSet[str]],
    timeline: Timeline,
    config: Optional[EngineConfig] = None,
) -> Labels:
    """
    Add ``signaling`` to entries whose host co-occurs with NAT traversal.

    A host co-occurs when one of its entries (neither api nor nat-traversal)
    starts within signaling_window_ms of a nat-traversal entry's span. Every
    such entry on that host gains the label. Pass-1 labels are never removed.
    """
    config = config or EngineConfig()
    windows = _negotiation_windows(
        (e for e in timeline.entries if LABEL_NAT_TRAVERSAL in structural.get(e.id, frozenset())),
        config.signaling_window_ms,
    )

    signaling_hosts: Set[str] = set()
    for window_start, window_end in windows:
        for candidate in timeline.between(window_start, window_end):
            if _timeline_candidate(candidate, structural):
                signaling_hosts.add(candidate.url.host)

    result: Labels = {}
    for entry in entries:
        labels = structural.get(entry.id, frozenset())
        if entry.url.host in signaling_hosts and _timeline_candidate(entry, structural):
            labels = labels | {LABEL_SIGNALING}
        result[entry.id] = labels
    return result


def classify(
    entries: Sequence[Entry],
    config: Optional[EngineConfig] = None,
    timeline: Optional[Timeline] = None,
) -> Labels:
    """Both passes in order; the pipeline runs them as separate stages."""
    config = config or EngineConfig()
    structural = classify_structural(entries, config)
    timeline = timeline or build_timeline(entries)
    return classify_timeline(entries, structural, timeline, config)


def _timeline_candidate(entry: Entry, structural: Mapping[int, FrozenSet[str]]) -> bool:
    labels = structural.get(entry.id, frozenset())
    return bool(entry.url.host) and LABEL_API not in labels and LABEL_NAT_TRAVERSAL not in labels


def _negotiation_windows(nat_entries: Iterable[Entry], window_ms: float) -> List[Tuple[float, float]]:
    """Merged [start - window, end + window] spans around nat-traversal entries (time-ordered input)."""
    merged: List[Tuple[float, float]] = []
    for entry in nat_entries:
        lo = entry.start_ms - window_ms
        hi = entry.end_ms + window_ms
        if merged and lo <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], hi))
        else:
            merged.append((lo, hi))
    return merged
