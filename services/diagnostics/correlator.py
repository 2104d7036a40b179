"""
Temporal correlation across signaling, NAT-traversal and API traffic.

Builds the unified timeline (entries sorted by start, ties by id) and derives
CorrelationLink values from it:
- overlaps: negotiation and API entries starting within the slack window
- retries:  a failed exchange repeated against the same method + URL
- precedes: a signaling exchange followed by the first API call on its host

The overlaps scan is bounded by the slack window, so the cost is the sort plus
a short forward walk per entry rather than a pairwise comparison.
"""

import bisect
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .constants import (
    LABEL_API,
    LABEL_SIGNALING,
    LINK_OVERLAPS,
    LINK_PRECEDES,
    LINK_RETRIES,
    NEGOTIATION_LABELS,
)
from .engine_config import EngineConfig
from .models import CorrelationLink, Entry

logger = logging.getLogger(__name__)

_EMPTY: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class Timeline:
    """Entries in (start_ms, id) order with a parallel array of start times."""

    entries: Tuple[Entry, ...]
    starts: Tuple[float, ...]

    def __len__(self) -> int:
        return len(self.entries)

    def between(self, start_ms: float, end_ms: float) -> Tuple[Entry, ...]:
        """Entries whose start lies in [start_ms, end_ms]."""
        lo = bisect.bisect_left(self.starts, start_ms)
        hi = bisect.bisect_right(self.starts, end_ms)
        return self.entries[lo:hi]

    def slice(self, lo: int, hi: int) -> "Timeline":
        return Timeline(self.entries[lo:hi], self.starts[lo:hi])


def build_timeline(entries: Iterable[Entry]) -> Timeline:
    ordered = tuple(sorted(entries, key=lambda e: (e.start_ms, e.id)))
    return Timeline(ordered, tuple(e.start_ms for e in ordered))


# ============================================================
# Public API
# ============================================================

def correlate(
    entries: Sequence[Entry],
    classifications: Mapping[int, FrozenSet[str]],
    config: Optional[EngineConfig] = None,
    timeline: Optional[Timeline] = None,
) -> Tuple[CorrelationLink, ...]:
    """
    Derive every correlation link for one trace.

    Returns:
        Links sorted by (source_id, target_id, kind); at most one link per
        ordered pair and kind.
    """
    config = config or EngineConfig()
    timeline = timeline or build_timeline(entries)

    links: List[CorrelationLink] = []
    links.extend(_overlap_links(timeline, classifications, config.correlation_slack_ms))
    links.extend(_retry_links(timeline))
    links.extend(_precedes_links(timeline, classifications, config.correlation_slack_ms))
    return _merge(links)


def correlate_partitioned(
    entries: Sequence[Entry],
    classifications: Mapping[int, FrozenSet[str]],
    config: Optional[EngineConfig] = None,
    timeline: Optional[Timeline] = None,
    partitions: Optional[int] = None,
) -> Tuple[CorrelationLink, ...]:
    """
    Same result as correlate(), with the overlaps scan split across threads.

    Each partition owns a contiguous time range of sources and carries a tail
    of at least correlation_slack_ms beyond it, so links that cross a boundary
    are found by the partition that owns their source.
    """
    config = config or EngineConfig()
    timeline = timeline or build_timeline(entries)
    count = partitions or config.max_workers
    slack = config.correlation_slack_ms

    bounds = partition_bounds(timeline, count, slack)
    logger.debug("Correlating %d entries over %d partitions", len(timeline), len(bounds))

    links: List[CorrelationLink] = []
    with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
        futures = [
            executor.submit(
                _overlap_links, timeline.slice(lo, tail), classifications, slack, core_end - lo,
            )
            for lo, core_end, tail in bounds
        ]
        for future in futures:
            links.extend(future.result())

    links.extend(_retry_links(timeline))
    links.extend(_precedes_links(timeline, classifications, slack))
    return _merge(links)


def partition_bounds(timeline: Timeline, count: int, slack_ms: float) -> List[Tuple[int, int, int]]:
    """
    Split the timeline into ``count`` time-ordered partitions.

    Returns:
        (core_start, core_end, tail_end) index triples: the partition owns
        sources in [core_start, core_end) and may read targets up to tail_end,
        which extends at least slack_ms past the last owned start.
    """
    n = len(timeline)
    if n == 0:
        return []
    count = max(1, min(count, n))
    size = -(-n // count)
    bounds = []
    for lo in range(0, n, size):
        core_end = min(lo + size, n)
        last_start = timeline.starts[core_end - 1]
        tail = bisect.bisect_right(timeline.starts, last_start + slack_ms)
        bounds.append((lo, core_end, max(tail, core_end)))
    return bounds


def overlap_confidence(source: Entry, target: Entry, slack_ms: float) -> float:
    """1.0 when target starts inside source, decaying linearly to 0.0 at the slack bound."""
    idle_gap = max(0.0, target.start_ms - source.end_ms)
    return min(1.0, max(0.0, 1.0 - idle_gap / slack_ms))


# ============================================================
# Internal Functions — Link Derivation
# ============================================================

def _overlap_links(
    timeline: Timeline,
    classifications: Mapping[int, FrozenSet[str]],
    slack_ms: float,
    core_end: Optional[int] = None,
) -> List[CorrelationLink]:
    links: List[CorrelationLink] = []
    entries = timeline.entries
    starts = timeline.starts
    n = len(entries)
    owned = n if core_end is None else core_end

    for i in range(owned):
        source = entries[i]
        source_labels = classifications.get(source.id, _EMPTY)
        source_negotiates = bool(source_labels & NEGOTIATION_LABELS)
        source_api = LABEL_API in source_labels
        if not (source_negotiates or source_api):
            continue

        # Bounded by the start-time gap; duration only affects confidence
        limit = source.start_ms + slack_ms
        j = i + 1
        while j < n and starts[j] <= limit:
            target = entries[j]
            target_labels = classifications.get(target.id, _EMPTY)
            complementary = (
                (source_negotiates and LABEL_API in target_labels)
                or (source_api and bool(target_labels & NEGOTIATION_LABELS))
            )
            if complementary:
                links.append(CorrelationLink(
                    source.id, target.id, LINK_OVERLAPS,
                    overlap_confidence(source, target, slack_ms),
                ))
            j += 1
    return links


def _retry_links(timeline: Timeline) -> List[CorrelationLink]:
    groups: Dict[Tuple[str, str], List[Entry]] = {}
    for entry in timeline.entries:
        groups.setdefault((entry.method, entry.normalized_url), []).append(entry)

    links: List[CorrelationLink] = []
    for group in groups.values():
        if len(group) < 2:
            continue
        starts = [e.start_ms for e in group]
        for position, entry in enumerate(group):
            if not _is_failed(entry):
                continue
            idx = max(bisect.bisect_left(starts, entry.end_ms), position + 1)
            if idx < len(group):
                links.append(CorrelationLink(entry.id, group[idx].id, LINK_RETRIES, 1.0))
    return links


def _precedes_links(
    timeline: Timeline,
    classifications: Mapping[int, FrozenSet[str]],
    slack_ms: float,
) -> List[CorrelationLink]:
    api_by_host: Dict[str, List[Entry]] = {}
    for entry in timeline.entries:
        if LABEL_API in classifications.get(entry.id, _EMPTY) and entry.url.host:
            api_by_host.setdefault(entry.url.host, []).append(entry)
    api_starts = {host: [e.start_ms for e in group] for host, group in api_by_host.items()}

    links: List[CorrelationLink] = []
    for entry in timeline.entries:
        labels = classifications.get(entry.id, _EMPTY)
        if LABEL_SIGNALING not in labels or LABEL_API in labels:
            continue
        group = api_by_host.get(entry.url.host)
        if not group:
            continue
        idx = bisect.bisect_left(api_starts[entry.url.host], entry.end_ms)
        if idx >= len(group):
            continue
        target = group[idx]
        gap = target.start_ms - entry.end_ms
        if gap <= slack_ms and target.id != entry.id:
            links.append(CorrelationLink(
                entry.id, target.id, LINK_PRECEDES, max(0.0, 1.0 - gap / slack_ms),
            ))
    return links


def _is_failed(entry: Entry) -> bool:
    status = entry.response_status
    return status is None or 500 <= status <= 599


def _merge(links: Iterable[CorrelationLink]) -> Tuple[CorrelationLink, ...]:
    """Deduplicate by (source, target, kind), keeping the first, in key order."""
    unique: Dict[Tuple[int, int, str], CorrelationLink] = {}
    for link in links:
        unique.setdefault(link.key, link)
    return tuple(sorted(unique.values(), key=lambda link: link.key))
