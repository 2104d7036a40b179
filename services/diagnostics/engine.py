"""
Rule engine.

Holds the registry of rule evaluators and runs each against a read-only view
of one analysis snapshot. Rules are independent: none sees another's output,
so they may run in any order or in parallel. A rule that raises or returns
something other than findings contributes nothing to the run and is logged.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple

from .constants import ALL_LABELS, SEVERITY_RANK
from .engine_config import EngineConfig
from .errors import ConfigurationError
from .models import CorrelationLink, Entry, Finding, Rule, RuleView
from .rules import BUILTIN_RULES

logger = logging.getLogger(__name__)


class RuleEngine:
    """Registry of rules plus the evaluate() contract."""

    def __init__(self, config: Optional[EngineConfig] = None, rules: Optional[Iterable[Rule]] = None):
        if config is not None and not isinstance(config, EngineConfig):
            raise ConfigurationError(f"config must be an EngineConfig, got: {type(config).__name__}")
        self.config = config or EngineConfig()
        self._rules: List[Rule] = []
        for rule in BUILTIN_RULES if rules is None else rules:
            self.register(rule)

    @property
    def rules(self) -> Tuple[Rule, ...]:
        return tuple(self._rules)

    def register(self, rule: Rule) -> Rule:
        """
        Add a rule after the already registered ones.

        Raises:
            ConfigurationError: For a duplicate id, unknown label or severity,
                                or a non-callable evaluator.
        """
        _validate_rule(rule)
        if any(existing.rule_id == rule.rule_id for existing in self._rules):
            raise ConfigurationError(f"Rule '{rule.rule_id}' is already registered")
        self._rules.append(rule)
        return rule

    def evaluate(
        self,
        entries: Sequence[Entry],
        classifications: Mapping[int, FrozenSet[str]],
        links: Sequence[CorrelationLink],
        config: Optional[EngineConfig] = None,
        parallel: Optional[bool] = None,
    ) -> Tuple[Finding, ...]:
        """
        Run every registered rule and collect findings in registration order.

        Args:
            entries: Normalized entries of one trace.
            classifications: Entry id -> labels (unlisted ids count as unclassified).
            links: Correlation links for the trace.
            config: Overrides the engine's configuration for this call.
            parallel: Force (or forbid) threaded evaluation; by default threads
                      are used above config.parallel_threshold entries.

        Returns:
            Findings from all rules, unsorted and not yet deduplicated.
        """
        config = config or self.config
        labels = {entry_id: frozenset(values) for entry_id, values in classifications.items()}
        snapshot_entries = tuple(entries)
        snapshot_links = tuple(links)

        views = [self.build_view(rule, snapshot_entries, labels, snapshot_links, config) for rule in self._rules]

        if parallel is None:
            parallel = len(snapshot_entries) > config.parallel_threshold and len(self._rules) > 1

        if parallel:
            with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
                results = list(executor.map(_run_rule, self._rules, views))
        else:
            results = [_run_rule(rule, view) for rule, view in zip(self._rules, views)]

        findings: List[Finding] = []
        for rule_findings in results:
            findings.extend(rule_findings)
        return tuple(findings)

    @staticmethod
    def build_view(
        rule: Rule,
        entries: Tuple[Entry, ...],
        labels: Mapping[int, FrozenSet[str]],
        links: Tuple[CorrelationLink, ...],
        config: EngineConfig,
    ) -> RuleView:
        """Entries the rule accepts, their labels, and the links touching them."""
        selected = tuple(e for e in entries if rule.accepts(labels.get(e.id, frozenset())))
        ids = {e.id for e in selected}
        return RuleView(
            entries=selected,
            labels=MappingProxyType({entry_id: labels[entry_id] for entry_id in ids}),
            links=tuple(link for link in links if link.source_id in ids or link.target_id in ids),
            config=config,
        )

    def describe_rules(self) -> List[Dict[str, object]]:
        return [rule.describe() for rule in self._rules]


def _run_rule(rule: Rule, view: RuleView) -> List[Finding]:
    try:
        produced = list(rule.evaluate(view) or ())
    except Exception as exc:
        logger.warning("Rule '%s' failed and was skipped: %s", rule.rule_id, exc)
        return []

    if not all(isinstance(f, Finding) for f in produced):
        logger.warning("Rule '%s' returned non-Finding values; its output was discarded", rule.rule_id)
        return []
    return produced


def _validate_rule(rule: Rule) -> None:
    if not isinstance(rule, Rule):
        raise ConfigurationError(f"Expected a Rule, got: {type(rule).__name__}")
    if not rule.rule_id or not isinstance(rule.rule_id, str):
        raise ConfigurationError("Rule id must be a non-empty string")
    if not callable(rule.evaluate):
        raise ConfigurationError(f"Rule '{rule.rule_id}' has no callable evaluator")
    if rule.default_severity not in SEVERITY_RANK:
        raise ConfigurationError(
            f"Rule '{rule.rule_id}' has unknown severity '{rule.default_severity}'"
        )
    unknown = (set(rule.applicable_domains) | set(rule.excluded_domains)) - ALL_LABELS
    if unknown:
        raise ConfigurationError(
            f"Rule '{rule.rule_id}' references unknown labels: {', '.join(sorted(unknown))}"
        )
