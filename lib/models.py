"""
Data models for TenantScope collectors.
"""
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CollectorResult:
    """
    Uniform result returned by every collector.
    """
    success: bool
    count: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the dictionary shape consumed by the toolkit runner."""
        return {
            'Success': self.success,
            'Count': self.count,
            'Errors': list(self.errors),
        }


@dataclass
class PartialFailure:
    """A sub-resource lookup that failed without failing the run."""
    context: str
    message: str
    status_code: Optional[int] = None

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.context}: {self.message} (HTTP {self.status_code})"
        return f"{self.context}: {self.message}"


class CollectionIssues:
    """
    Accumulates partial failures for a single collector run.

    Collectors record per-item failures here instead of discarding them, so
    the batch keeps going while the failure stays visible in the result.
    """

    def __init__(self, collector: str):
        self.collector = collector
        self.failures: List[PartialFailure] = []

    def record(self, context: str, exc: BaseException, level: int = logging.DEBUG) -> PartialFailure:
        """Record a failed sub-request and log it."""
        failure = PartialFailure(
            context=context,
            message=str(exc),
            status_code=getattr(exc, 'status_code', None),
        )
        self.failures.append(failure)
        logger.log(level, f"[{self.collector}] {failure}")
        return failure

    def note(self, message: str) -> None:
        """Record a warning that did not come from an exception."""
        self.failures.append(PartialFailure(context=self.collector, message=message))
        logger.warning(f"[{self.collector}] {message}")

    @property
    def messages(self) -> List[str]:
        return [str(f) for f in self.failures]

    def __len__(self) -> int:
        return len(self.failures)

    def __bool__(self) -> bool:
        return bool(self.failures)


@dataclass
class Insight:
    """Rule-derived finding over an already-processed collection."""
    id: str
    severity: str
    category: str
    description: str
    affected_count: int
    recommended_action: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'severity': self.severity,
            'category': self.category,
            'description': self.description,
            'affectedCount': self.affected_count,
            'recommendedAction': self.recommended_action,
        }


def count_where(records: Iterable[Dict[str, Any]], predicate: Callable[[Dict[str, Any]], Any]) -> int:
    """Count records for which predicate is truthy."""
    return sum(1 for r in records if predicate(r))


def count_by(records: Iterable[Dict[str, Any]], key: str, missing: str = "Unknown") -> Dict[str, int]:
    """
    Count records by the value of a field.

    Result is ordered by descending count, then key, so output is stable.
    """
    counts = Counter((r.get(key) or missing) for r in records)
    return dict(sorted(counts.items(), key=lambda kv: (-kv[1], str(kv[0]))))


def rate(part: int, total: int) -> float:
    """Percentage rounded to one decimal place; 0.0 when total is zero."""
    if not total:
        return 0.0
    return round(part / total * 100, 1)


def membership_counts(members: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """
    Member and guest counts from a group member listing.

    members is None when the lookup failed; every count is then None. When a
    page cap cut the listing short, memberCount is the server's @odata.count
    if it sent one, otherwise the number seen with memberCountCapped set.
    guestCount stays None in that case since unseen pages may hold guests.
    """
    if members is None:
        return {'memberCount': None, 'memberCountCapped': False, 'guestCount': None, 'hasGuests': None}

    guests = sum(1 for m in members if m.get('userType') == 'Guest')
    if not getattr(members, 'truncated', False):
        return {'memberCount': len(members), 'memberCountCapped': False,
                'guestCount': guests, 'hasGuests': guests > 0}

    total = getattr(members, 'total_count', None)
    return {
        'memberCount': total if total is not None else len(members),
        'memberCountCapped': total is None,
        'guestCount': None,
        'hasGuests': True if guests else None,
    }
