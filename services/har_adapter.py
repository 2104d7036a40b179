"""
har_adapter.py

Adapter module that reads HAR (HTTP Archive) files and converts them into the
raw entry records consumed by the trace diagnostics engine.

High-level responsibilities:
- Parse HAR 1.1/1.2 format JSON files (with file size guards)
- Apply the config-driven domain exclusion list (APM, analytics, etc.)
- Emit one raw record per HAR entry, keeping preflights, failed requests and
  non-HTTP exchanges, since those are exactly what the diagnostics look at
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

from utils.config import load_config

logger = logging.getLogger(__name__)

# === Global configuration ===
CONFIG = load_config()
NETWORK_CAPTURE_CONFIG = CONFIG.get("network_capture", {})

# File size thresholds
_MAX_HAR_FILE_SIZE_BYTES = 200 * 1024 * 1024   # 200 MB: reject
_WARN_HAR_FILE_SIZE_BYTES = 50 * 1024 * 1024   # 50 MB: warn

_SUPPORTED_HAR_VERSIONS = ("1.1", "1.2")


# ============================================================
# Public API
# ============================================================

def load_har_file(har_path: str) -> Dict[str, Any]:
    """
    Load, parse, and validate basic HAR JSON structure.

    Includes a file size guard:
    - Warns if file > 50MB
    - Rejects if file > 200MB

    Raises:
        FileNotFoundError: If file does not exist.
        ValueError: If file exceeds size limit or is not valid HAR JSON.
    """
    if not os.path.isfile(har_path):
        raise FileNotFoundError(f"HAR file not found: {har_path}")

    file_size = os.path.getsize(har_path)

    if file_size > _MAX_HAR_FILE_SIZE_BYTES:
        raise ValueError(
            f"HAR file too large ({file_size / (1024*1024):.1f} MB). "
            f"Maximum supported size is {_MAX_HAR_FILE_SIZE_BYTES / (1024*1024):.0f} MB."
        )

    if file_size > _WARN_HAR_FILE_SIZE_BYTES:
        logger.warning(
            "Large HAR file: %.1f MB, parsing may take a moment",
            file_size / (1024 * 1024),
        )

    try:
        with open(har_path, "r", encoding="utf-8", errors="replace") as f:
            har_data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in HAR file: {exc}") from exc

    if not is_har_document(har_data):
        raise ValueError(
            "Invalid HAR structure: top-level object must contain a 'log' key "
            "with an 'entries' array"
        )

    return har_data


def is_har_document(data: Any) -> bool:
    return (
        isinstance(data, dict)
        and isinstance(data.get("log"), dict)
        and isinstance(data["log"].get("entries"), list)
    )


def har_to_raw_entries(
    har_data: Dict[str, Any],
    capture_config: Optional[Dict[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """
    Convert the entries of a parsed HAR document to raw trace records.

    Args:
        har_data: Parsed HAR JSON (see load_har_file).
        capture_config: network_capture settings; defaults to config.yaml.

    Returns:
        Raw entry records in HAR order, excluded domains removed. Records are
        passed through as-is otherwise; the normalizer decides what is usable.
    """
    capture_config = NETWORK_CAPTURE_CONFIG if capture_config is None else capture_config
    exclude_pseudo = capture_config.get("exclude_pseudo_headers", True)

    raw_entries = har_data["log"]["entries"]
    records: List[Dict[str, Any]] = []
    excluded = 0
    for entry in raw_entries:
        if not isinstance(entry, dict):
            # Left for the normalizer to report as a skipped record
            records.append(entry)
            continue
        if not _should_include_entry(entry, capture_config):
            excluded += 1
            continue
        records.append(_convert_entry_to_raw_record(entry, exclude_pseudo))

    logger.info(
        "HAR converted: %d entries kept, %d excluded by domain",
        len(records), excluded,
    )
    return records


def validate_har_file(
    har_path: str,
    capture_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Validate a HAR file and return summary statistics without analyzing.

    Args:
        har_path: Full path to the HAR file.
        capture_config: network_capture settings; defaults to config.yaml.

    Returns:
        Dict with keys: valid (bool), version (str), creator (str),
        entry_count (int), page_count (int), excluded_count (int),
        websocket_count (int), nat_traversal_count (int), errors (list).
    """
    capture_config = NETWORK_CAPTURE_CONFIG if capture_config is None else capture_config
    errors: List[str] = []

    try:
        har_data = load_har_file(har_path)
    except (FileNotFoundError, ValueError) as exc:
        return {
            "valid": False,
            "version": "",
            "creator": "",
            "entry_count": 0,
            "page_count": 0,
            "excluded_count": 0,
            "websocket_count": 0,
            "nat_traversal_count": 0,
            "errors": [str(exc)],
        }

    log_obj = har_data["log"]
    version = log_obj.get("version", "unknown")
    creator = (log_obj.get("creator") or {}).get("name", "unknown")
    pages = log_obj.get("pages", [])
    entries = log_obj["entries"]

    if version not in _SUPPORTED_HAR_VERSIONS:
        errors.append(f"Unexpected HAR version: {version}")

    schemes = []
    malformed = 0
    for entry in entries:
        request = entry.get("request") if isinstance(entry, dict) else None
        if not isinstance(request, dict) or not request.get("url") or not entry.get("startedDateTime"):
            malformed += 1
            continue
        schemes.append(urlsplit(str(request["url"])).scheme.lower())

    if malformed:
        errors.append(f"{malformed} entries lack a request URL or startedDateTime")
    if not entries:
        errors.append("HAR file contains no entries")

    excluded_count = sum(
        1 for e in entries
        if isinstance(e, dict) and not _should_include_entry(e, capture_config)
    )

    return {
        "valid": len(errors) == 0,
        "version": version,
        "creator": creator,
        "entry_count": len(entries),
        "page_count": len(pages),
        "excluded_count": excluded_count,
        "websocket_count": sum(1 for s in schemes if s in ("ws", "wss")),
        "nat_traversal_count": sum(1 for s in schemes if s in ("stun", "stuns", "turn", "turns")),
        "errors": errors,
    }


# ============================================================
# Internal Functions — Field Conversion
# ============================================================

def _convert_entry_to_raw_record(entry: Dict[str, Any], exclude_pseudo_headers: bool) -> Dict[str, Any]:
    """Map one HAR entry onto the engine's raw record field names."""
    request = entry.get("request") or {}
    response = entry.get("response") or {}

    return {
        "startTime": entry.get("startedDateTime"),
        "duration": entry.get("time"),
        "method": request.get("method"),
        "url": request.get("url"),
        "requestHeaders": _headers_list_to_dict(request.get("headers"), exclude_pseudo_headers),
        "responseStatus": response.get("status"),
        "responseHeaders": _headers_list_to_dict(response.get("headers"), exclude_pseudo_headers),
        "requestBodySize": _request_body_size(request),
        "responseBodySize": _response_body_size(response),
        "protocol": request.get("httpVersion") or response.get("httpVersion"),
    }


def _headers_list_to_dict(
    headers_list: Optional[List[Dict]],
    exclude_pseudo_headers: bool = True,
) -> Dict[str, str]:
    """
    Flatten a HAR [{name, value}] header list into a lowercase-keyed dict.

    Repeated names keep the last value. HTTP/2 pseudo-headers (':authority',
    ':path', ...) are dropped unless network_capture.exclude_pseudo_headers
    is false.
    """
    result: Dict[str, str] = {}
    for h in headers_list or []:
        if not isinstance(h, dict):
            continue
        name = h.get("name")
        value = h.get("value")
        if not isinstance(name, str) or value is None:
            continue
        if exclude_pseudo_headers and name.startswith(":"):
            continue
        result[name.lower()] = value
    return result


def _request_body_size(request: Dict[str, Any]) -> Optional[int]:
    """
    HAR request.bodySize, falling back to the postData text length.

    Returns None when neither is known (HAR reports -1 for unknown).
    """
    size = request.get("bodySize")
    if isinstance(size, (int, float)) and not isinstance(size, bool) and size >= 0:
        return int(size)
    post_data = request.get("postData")
    if isinstance(post_data, dict) and isinstance(post_data.get("text"), str):
        return len(post_data["text"].encode("utf-8"))
    return None


def _response_body_size(response: Dict[str, Any]) -> Optional[int]:
    size = response.get("bodySize")
    if isinstance(size, (int, float)) and not isinstance(size, bool) and size >= 0:
        return int(size)
    content = response.get("content") or {}
    size = content.get("size")
    if isinstance(size, (int, float)) and not isinstance(size, bool) and size >= 0:
        return int(size)
    return None


# ============================================================
# Internal Functions — Filtering
# ============================================================

def _should_include_entry(entry: Dict, config: Dict) -> bool:
    """
    Determine if a HAR entry should be handed to the engine.

    Only the exclude_domains list applies (exact domain, subdomain, or
    partial match). Preflights, failed requests and non-HTTP schemes are
    kept on purpose.
    """
    request = entry.get("request") or {}
    url = request.get("url") or ""
    if not isinstance(url, str) or not url:
        return True

    try:
        domain = (urlsplit(url).hostname or "").lower()
    except ValueError:
        return True
    if not domain:
        # Opaque stun:/turn: URIs carry the host in the path
        domain = urlsplit(url).path.split(":")[0].split("?")[0].lower()

    for excluded in config.get("exclude_domains", []) or []:
        excluded_lower = str(excluded).strip().lower()
        if not excluded_lower:
            continue
        if domain == excluded_lower or domain.endswith("." + excluded_lower) or excluded_lower in domain:
            return False
    return True
