"""
Entry normalization.

Converts raw trace records (dicts produced by a trace loader such as the HAR
adapter) into canonical Entry objects. Records with an absent or unparsable
required field are skipped with a collected warning; the whole trace is
rejected only when the skip fraction exceeds the configured limit.
"""

import logging
from collections.abc import Mapping, Sequence
from typing import Any, List, Optional

from .constants import RAW_FIELD_ALIASES
from .engine_config import EngineConfig
from .errors import MalformedTraceError, TraceUnusableError
from .models import Entry, HeaderMap, NormalizationResult, NormalizationWarning
from .utils import (
    headers_to_dict,
    parse_url,
    to_epoch_ms,
    to_optional_float,
    to_optional_size,
    to_optional_status,
)

logger = logging.getLogger(__name__)


def normalize(
    raw_entries: Sequence,
    config: Optional[EngineConfig] = None,
    capture_end_ms: Optional[float] = None,
) -> NormalizationResult:
    """
    Normalize a trace into dense, 0-based Entry ids in input order.

    Args:
        raw_entries: Sequence of raw entry mappings.
        config: Engine configuration (only max_skip_fraction is used here).
        capture_end_ms: Optional end of the capture window; records that end
                        after it are skipped.

    Returns:
        NormalizationResult with the retained entries and collected warnings.

    Raises:
        MalformedTraceError: If the trace is not a sequence of records.
        TraceUnusableError: If more than max_skip_fraction records were skipped.
    """
    config = config or EngineConfig()
    if raw_entries is None or isinstance(raw_entries, (str, bytes, Mapping)) \
            or not isinstance(raw_entries, Sequence):
        raise MalformedTraceError(
            f"Trace must be a sequence of entry records, got: {type(raw_entries).__name__}"
        )

    entries: List[Entry] = []
    warnings: List[NormalizationWarning] = []

    for source_index, raw in enumerate(raw_entries):
        try:
            entry = normalize_entry(raw, entry_id=len(entries), source_index=source_index)
            if capture_end_ms is not None and entry.end_ms > capture_end_ms:
                raise MalformedTraceError(
                    f"Entry ends at {entry.end_ms:.0f} ms, after the capture window "
                    f"end {capture_end_ms:.0f} ms",
                    source_index=source_index,
                    field="duration",
                )
        except MalformedTraceError as exc:
            warnings.append(NormalizationWarning(source_index, exc.field, str(exc)))
            logger.warning("Skipping trace entry %d: %s", source_index, exc)
            continue
        entries.append(entry)

    total = len(raw_entries)
    skipped = total - len(entries)
    if total and skipped / total > config.max_skip_fraction:
        raise TraceUnusableError(skipped, total, config.max_skip_fraction)

    if skipped:
        logger.info("Normalized %d of %d trace entries (%d skipped)", len(entries), total, skipped)

    return NormalizationResult(entries=tuple(entries), warnings=tuple(warnings), total_records=total)


def normalize_entry(raw: Any, entry_id: int, source_index: int) -> Entry:
    """
    Convert one raw record into an Entry.

    Raises:
        MalformedTraceError: For a missing/unparsable timestamp or URL, or an
                             invalid optional field.
    """
    if not isinstance(raw, Mapping):
        raise MalformedTraceError(
            f"Entry must be an object, got: {type(raw).__name__}", source_index=source_index,
        )

    start_value = _field(raw, "startTime")
    try:
        start_ms = to_epoch_ms(start_value)
    except ValueError as exc:
        raise MalformedTraceError(f"Invalid startTime: {exc}", source_index, "startTime") from exc

    url_value = _field(raw, "url")
    try:
        url = parse_url(url_value)
    except (ValueError, TypeError) as exc:
        raise MalformedTraceError(f"Invalid url: {exc}", source_index, "url") from exc

    duration_ms = _convert(raw, "duration", to_optional_float, source_index)
    if duration_ms is None:
        duration_ms = 0.0
    if duration_ms < 0:
        raise MalformedTraceError(f"Negative duration: {duration_ms}", source_index, "duration")

    method = _field(raw, "method")
    if method is not None and not isinstance(method, str):
        raise MalformedTraceError(f"Invalid method: {method!r}", source_index, "method")

    protocol = _field(raw, "protocol")

    return Entry(
        id=entry_id,
        source_index=source_index,
        start_ms=start_ms,
        duration_ms=duration_ms,
        method=(method or "").strip().upper(),
        url=url,
        request_headers=HeaderMap(_convert(raw, "requestHeaders", headers_to_dict, source_index)),
        response_status=_convert(raw, "responseStatus", to_optional_status, source_index),
        response_headers=HeaderMap(_convert(raw, "responseHeaders", headers_to_dict, source_index)),
        request_body_size=_convert(raw, "requestBodySize", to_optional_size, source_index),
        response_body_size=_convert(raw, "responseBodySize", to_optional_size, source_index),
        protocol=str(protocol).lower() if protocol else None,
    )


def _field(raw: Mapping, name: str) -> Any:
    """First present alias of a canonical field name."""
    for alias in RAW_FIELD_ALIASES[name]:
        if alias in raw:
            return raw[alias]
    return None


def _convert(raw: Mapping, name: str, converter, source_index: int) -> Any:
    try:
        return converter(_field(raw, name))
    except (ValueError, TypeError) as exc:
        raise MalformedTraceError(f"Invalid {name}: {exc}", source_index, name) from exc
