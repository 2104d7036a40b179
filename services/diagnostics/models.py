"""
Core data structures for trace diagnostics.

These models are the contract between the normalizer, classifier, correlator,
rule engine and aggregator. Every derived value is immutable so that rules can
share one read-only snapshot, including across worker threads.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, Iterator, Optional, Tuple

from .constants import LINK_KINDS, SEVERITY_RANK


# === Headers ===

class HeaderMap(Mapping):
    """Read-only header mapping with case-insensitive keys (stored lowercase)."""

    __slots__ = ("_items",)

    def __init__(self, headers: Optional[Dict[str, str]] = None):
        items: Dict[str, str] = {}
        for name, value in (headers or {}).items():
            items[str(name).lower()] = "" if value is None else str(value)
        self._items = items

    def __getitem__(self, name: str) -> str:
        return self._items[name.lower()]

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._items

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"HeaderMap({self._items!r})"


# === Entries ===

@dataclass(frozen=True)
class ParsedUrl:
    raw: str
    scheme: str
    host: str
    port: Optional[int]
    path: str
    query: Mapping = field(default_factory=lambda: MappingProxyType({}))

    def query_value(self, name: str) -> Optional[str]:
        """First value of a query parameter, matched case-insensitively."""
        wanted = name.lower()
        for key, values in self.query.items():
            if key.lower() == wanted and values:
                return values[0]
        return None

    @property
    def normalized(self) -> str:
        """scheme://host/path with the query stripped."""
        return f"{self.scheme}://{self.host}{self.path}"


@dataclass(frozen=True)
class Entry:
    """One normalized network/signaling exchange."""

    id: int
    source_index: int
    start_ms: float
    duration_ms: float
    method: str
    url: ParsedUrl
    request_headers: HeaderMap
    response_status: Optional[int]
    response_headers: HeaderMap
    request_body_size: Optional[int] = None
    response_body_size: Optional[int] = None
    protocol: Optional[str] = None

    @property
    def end_ms(self) -> float:
        return self.start_ms + self.duration_ms

    @property
    def is_complete(self) -> bool:
        return self.response_status is not None

    @property
    def normalized_url(self) -> str:
        return self.url.normalized


@dataclass(frozen=True)
class NormalizationWarning:
    source_index: int
    field: Optional[str]
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_index": self.source_index,
            "field": self.field,
            "message": self.message,
        }


@dataclass(frozen=True)
class NormalizationResult:
    entries: Tuple[Entry, ...]
    warnings: Tuple[NormalizationWarning, ...]
    total_records: int

    @property
    def skipped(self) -> int:
        return self.total_records - len(self.entries)


# === Correlation ===

@dataclass(frozen=True)
class CorrelationLink:
    source_id: int
    target_id: int
    kind: str
    confidence: float

    def __post_init__(self):
        if self.kind not in LINK_KINDS:
            raise ValueError(f"Unknown link kind: {self.kind}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Link confidence out of range: {self.confidence}")

    @property
    def key(self) -> Tuple[int, int, str]:
        return (self.source_id, self.target_id, self.kind)

    def touches(self, entry_id: int) -> bool:
        return entry_id == self.source_id or entry_id == self.target_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "target_id": self.target_id,
            "kind": self.kind,
            "confidence": round(self.confidence, 4),
        }


# === Findings ===

@dataclass(frozen=True)
class Finding:
    rule_id: str
    severity: str
    message_template: str
    message: str
    entry_ids: Tuple[int, ...]
    params: Tuple[Tuple[str, Any], ...] = ()

    @classmethod
    def create(
        cls,
        rule_id: str,
        severity: str,
        message_template: str,
        entry_ids: Iterable[int],
        **params: Any,
    ) -> "Finding":
        """Render the template and freeze the implicated entry ids (sorted, unique)."""
        if severity not in SEVERITY_RANK:
            raise ValueError(f"Unknown severity: {severity}")
        return cls(
            rule_id=rule_id,
            severity=severity,
            message_template=message_template,
            message=message_template.format(**params),
            entry_ids=tuple(sorted(set(entry_ids))),
            params=tuple(sorted(params.items())),
        )

    @property
    def dedup_key(self) -> Tuple[str, Tuple[int, ...]]:
        return (self.rule_id, self.entry_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "severity": self.severity,
            "message": self.message,
            "entry_ids": list(self.entry_ids),
            "params": dict(self.params),
        }


# === Rules ===

@dataclass(frozen=True)
class Rule:
    """
    A named, versioned predicate over the classified and correlated entries.

    ``evaluate`` receives a RuleView and returns zero or more findings. It must
    be pure with respect to the view and keep no state between calls.
    """

    rule_id: str
    evaluate: Callable[["RuleView"], Iterable[Finding]] = field(compare=False, repr=False)
    default_severity: str = "warning"
    applicable_domains: FrozenSet[str] = frozenset()
    excluded_domains: FrozenSet[str] = frozenset()
    version: str = "1.0"
    description: str = ""

    def finding(
        self,
        message_template: str,
        entry_ids: Iterable[int],
        severity: Optional[str] = None,
        **params: Any,
    ) -> Finding:
        return Finding.create(
            self.rule_id,
            severity or self.default_severity,
            message_template,
            entry_ids,
            **params,
        )

    def accepts(self, labels: FrozenSet[str]) -> bool:
        """Whether an entry with these labels belongs in this rule's view."""
        if not labels or labels & self.excluded_domains:
            return False
        if not self.applicable_domains:
            return True
        return bool(labels & self.applicable_domains)

    def describe(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "version": self.version,
            "default_severity": self.default_severity,
            "applicable_domains": sorted(self.applicable_domains),
            "excluded_domains": sorted(self.excluded_domains),
            "description": self.description,
        }


@dataclass(frozen=True)
class RuleView:
    """Read-only slice of one analysis snapshot handed to a single rule."""

    entries: Tuple[Entry, ...]
    labels: Mapping
    links: Tuple[CorrelationLink, ...]
    config: Any
    _by_id: Mapping = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_by_id", MappingProxyType({e.id: e for e in self.entries}))

    def entry(self, entry_id: int) -> Optional[Entry]:
        return self._by_id.get(entry_id)

    def labels_of(self, entry_id: int) -> FrozenSet[str]:
        return self.labels.get(entry_id, frozenset())

    def with_label(self, label: str) -> Tuple[Entry, ...]:
        return tuple(e for e in self.entries if label in self.labels_of(e.id))

    def links_of_kind(self, kind: str) -> Tuple[CorrelationLink, ...]:
        return tuple(link for link in self.links if link.kind == kind)

    def links_from(self, entry_id: int, kind: Optional[str] = None) -> Tuple[CorrelationLink, ...]:
        return tuple(
            link for link in self.links
            if link.source_id == entry_id and (kind is None or link.kind == kind)
        )
