"""
Rule-based insights over an already-processed collection.

Rules are plain data: a counting function plus the text to emit when the
count exceeds the rule's threshold. Evaluation never fetches or mutates.
"""
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Sequence

from .models import Insight

CountFn = Callable[[Mapping[str, Any], Sequence[Dict[str, Any]]], int]


@dataclass(frozen=True)
class InsightRule:
    """
    A single threshold rule.

    count(summary, records) returns the affected count; the rule fires when
    that count is greater than threshold. description may reference {count}.
    """
    id: str
    severity: str
    category: str
    count: CountFn
    description: str
    recommended_action: str
    threshold: int = 0

    def evaluate(self, summary: Mapping[str, Any], records: Sequence[Dict[str, Any]]):
        affected = self.count(summary, records) or 0
        if affected <= self.threshold:
            return None
        return Insight(
            id=self.id,
            severity=self.severity,
            category=self.category,
            description=self.description.format(count=affected),
            affected_count=affected,
            recommended_action=self.recommended_action,
        )


def evaluate_rules(rules: Sequence[InsightRule], summary: Mapping[str, Any],
                   records: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Evaluate rules in order and return the insights that fired."""
    insights = []
    for rule in rules:
        insight = rule.evaluate(summary, records)
        if insight is not None:
            insights.append(insight.to_dict())
    return insights


def summary_count(key: str) -> CountFn:
    """Count function reading a summary counter."""
    return lambda summary, records: summary.get(key) or 0


def record_count(predicate: Callable[[Dict[str, Any]], Any]) -> CountFn:
    """Count function counting records that satisfy predicate."""
    return lambda summary, records: sum(1 for r in records if predicate(r))
