"""
Staged analysis pipeline.

    normalize -> classify (structural) -> timeline -> classify (timeline)
              -> correlate -> evaluate rules -> aggregate

Each stage produces an immutable value consumed by the next. Above
parallel_threshold entries the structural classification, the overlaps scan
and rule evaluation fan out over a thread pool; the report is the same either
way. A CancellationToken is checked between stages.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Dict, FrozenSet, Iterable, Optional, Sequence

from .aggregator import DiagnosticReport, build_report
from .classifiers import classify_structural, classify_timeline
from .correlator import build_timeline, correlate, correlate_partitioned
from .engine import RuleEngine
from .engine_config import EngineConfig
from .errors import AnalysisCancelledError, ConfigurationError
from .models import Entry, Rule
from .normalizer import normalize
from .utils import chunked

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a running analysis."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: str) -> None:
        if self._event.is_set():
            raise AnalysisCancelledError(stage)


def analyze(
    raw_entries: Sequence,
    config: Optional[EngineConfig] = None,
    rules: Optional[Iterable[Rule]] = None,
    cancel_token: Optional[CancellationToken] = None,
    capture_end_ms: Optional[float] = None,
    engine: Optional[RuleEngine] = None,
) -> DiagnosticReport:
    """
    Run the full diagnostic pipeline over one trace.

    Args:
        raw_entries: Raw entry records (see normalizer for accepted fields).
        config: Engine configuration; defaults apply when omitted.
        rules: Rule registry to use instead of the built-in rules.
        cancel_token: Checked before every stage.
        capture_end_ms: Optional end of the capture window.
        engine: Pre-built RuleEngine (its rules are used, config is ours).

    Returns:
        DiagnosticReport with ordered findings and normalization warnings.

    Raises:
        MalformedTraceError / TraceUnusableError: For unusable input.
        ConfigurationError: For an invalid configuration or rule registry.
        AnalysisCancelledError: When cancel_token fires.
    """
    config = config or EngineConfig()
    if engine is not None and rules is not None:
        raise ConfigurationError("Pass either 'rules' or 'engine', not both")
    engine = engine or RuleEngine(config, rules)
    token = cancel_token or CancellationToken()
    timer = _StageTimer()

    token.raise_if_cancelled("normalize")
    with timer("normalize"):
        normalized = normalize(raw_entries, config, capture_end_ms=capture_end_ms)
    entries = normalized.entries
    parallel = len(entries) > config.parallel_threshold

    token.raise_if_cancelled("classify_structural")
    with timer("classify_structural"):
        structural = _classify_structural(entries, config, parallel)

    token.raise_if_cancelled("timeline")
    with timer("timeline"):
        timeline = build_timeline(entries)

    token.raise_if_cancelled("classify_timeline")
    with timer("classify_timeline"):
        classifications = classify_timeline(entries, structural, timeline, config)

    token.raise_if_cancelled("correlate")
    with timer("correlate"):
        if parallel:
            links = correlate_partitioned(entries, classifications, config, timeline)
        else:
            links = correlate(entries, classifications, config, timeline)

    token.raise_if_cancelled("evaluate")
    with timer("evaluate"):
        findings = engine.evaluate(entries, classifications, links, config, parallel=parallel)

    token.raise_if_cancelled("aggregate")
    with timer("aggregate"):
        report = build_report(
            findings, normalized.warnings, entries, classifications, links,
            total_records=normalized.total_records,
        )

    logger.info(
        "Trace analysis complete: %d entries, %d links, %d findings (%s)",
        len(entries), len(links), len(report.findings), timer.summary(),
    )
    return report


def _classify_structural(
    entries: Sequence[Entry],
    config: EngineConfig,
    parallel: bool,
) -> Dict[int, FrozenSet[str]]:
    if not parallel:
        return classify_structural(entries, config)

    chunk_size = -(-len(entries) // config.max_workers)
    labels: Dict[int, FrozenSet[str]] = {}
    with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
        for part in executor.map(
            lambda chunk: classify_structural(chunk, config),
            chunked(list(entries), chunk_size),
        ):
            labels.update(part)
    return labels


class _StageTimer:
    """Per-stage wall time, logged at DEBUG as each stage finishes."""

    def __init__(self):
        self.timings: Dict[str, float] = {}

    @contextmanager
    def __call__(self, stage: str):
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed = (time.perf_counter() - started) * 1000.0
            self.timings[stage] = elapsed
            logger.debug("Stage %s took %.1f ms", stage, elapsed)

    def summary(self) -> str:
        return ", ".join(f"{name}={ms:.1f}ms" for name, ms in self.timings.items())
