"""
Field mapping helpers.

The same logical attribute can arrive under different names depending on
which API surface answered (Graph camelCase, Defender PascalCase, usage
report column titles). These helpers read a record through an ordered list
of candidate names so collectors never repeat conditional chains.
"""
from typing import Any, List, Mapping, Optional

_MISSING = object()


def _lookup(record: Any, name: str) -> Any:
    """Resolve a possibly dotted name against nested mappings.

    A literal key wins over a dotted path, so OData annotations such as
    "@odata.type" resolve directly.
    """
    if isinstance(record, Mapping) and name in record:
        return record[name]
    value = record
    for part in name.split('.'):
        if not isinstance(value, Mapping) or part not in value:
            return _MISSING
        value = value[part]
    return value


def pick(record: Any, *names: str, default: Any = None) -> Any:
    """
    Return the first present, non-None value among candidate field names.

    Names may be dotted paths ("signInActivity.lastSignInDateTime").
    Values are returned as-is; nothing is coerced. Non-mapping records
    yield the default.

    Example:
        pick(machine, 'computerDnsName', 'ComputerDnsName')
    """
    for name in names:
        value = _lookup(record, name)
        if value is not _MISSING and value is not None:
            return value
    return default


def pick_list(record: Any, *names: str) -> List[Any]:
    """Like pick, but returns an empty list when no candidate holds a list."""
    value = pick(record, *names)
    if isinstance(value, list):
        return value
    return []


def count_of(record: Any, *names: str) -> Optional[int]:
    """Length of a list field, or None when the field is absent."""
    value = pick(record, *names)
    if isinstance(value, (list, tuple)):
        return len(value)
    return None


def pick_int(record: Any, *names: str, default: Optional[int] = None) -> Optional[int]:
    """
    Read a numeric field that usage reports deliver as strings.

    Unparsable values yield the default instead of raising.
    """
    value = pick(record, *names)
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default
