"""
Cross-reference helpers for enriching records from sibling output files.

Collectors that run later in a collection read documents written earlier in
the same output directory (users.json, groups.json, autopilot.json). A
missing sibling is normal (first run, skipped collector, missing license) and
only means less enrichment.
"""
import logging
import os
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from .fields import pick
from .utils import read_json

logger = logging.getLogger(__name__)

Lookup = Dict[str, Dict[str, Any]]


def load_records(path: str, records_key: Optional[str] = None, issues=None) -> Optional[list]:
    """
    Read the record list from a sibling document.

    Accepts a bare array or an envelope holding the array under records_key.
    Returns None when the file is missing or malformed.
    """
    if not os.path.exists(path):
        logger.info(f"Sibling file {os.path.basename(path)} not found; continuing without enrichment")
        return None

    try:
        data = read_json(path)
    except (OSError, ValueError) as e:
        _report_unreadable(path, f"could not be read: {e}", issues)
        return None

    if isinstance(data, dict) and records_key:
        data = data.get(records_key)
    if not isinstance(data, list):
        _report_unreadable(path, "has an unexpected shape", issues)
        return None
    return data


def load_lookup(path: str, key: Union[str, Sequence[str]], records_key: Optional[str] = None,
                normalize: Optional[Callable[[Any], Any]] = None, issues=None) -> Lookup:
    """
    Load a sibling document into a {key -> record} lookup.

    Args:
        path: Path to the sibling JSON document
        key: Field name (or ordered candidate names) holding the join key
        records_key: Envelope key holding the record array, if enveloped
        normalize: Optional function applied to keys (e.g. str.lower for UPNs)
        issues: CollectionIssues that receives unreadable-file warnings

    Returns:
        Lookup dict; empty when the file is missing or malformed. When two
        records share a key the first one wins.
    """
    records = load_records(path, records_key=records_key, issues=issues)
    if not records:
        return {}

    names = (key,) if isinstance(key, str) else tuple(key)
    lookup: Lookup = {}
    for record in records:
        value = pick(record, *names)
        if value is None or value == '':
            continue
        if normalize:
            value = normalize(value)
        lookup.setdefault(value, record)

    logger.debug(f"Loaded {len(lookup)} entries from {os.path.basename(path)}")
    return lookup


def _report_unreadable(path: str, reason: str, issues) -> None:
    message = f"Sibling file {os.path.basename(path)} {reason}; continuing without enrichment"
    if issues is not None:
        issues.note(message)
    else:
        logger.warning(message)


def join_fields(record: Dict[str, Any], side: Optional[Mapping[str, Any]],
                fields: Mapping[str, Tuple[str, Any]]) -> bool:
    """
    Copy named fields from a matched side record onto a primary record.

    fields maps target name -> (source name, default). Unmatched records
    (side is None) receive every default. Returns True when side matched.
    """
    for target, (source, default) in fields.items():
        if side is None:
            record[target] = default
        else:
            record[target] = pick(side, source, default=default)
    return side is not None


def lower_key(value: Any) -> Any:
    """Key normaliser for case-insensitive identifiers such as UPNs."""
    return value.lower() if isinstance(value, str) else value


# =============================================================================
# Intune assignment targets
# =============================================================================

ALL_USERS_TARGET = '#microsoft.graph.allLicensedUsersAssignmentTarget'
ALL_DEVICES_TARGET = '#microsoft.graph.allDevicesAssignmentTarget'
GROUP_TARGET = '#microsoft.graph.groupAssignmentTarget'
EXCLUSION_TARGET = '#microsoft.graph.exclusionGroupAssignmentTarget'


def resolve_assignment_target(target: Optional[Mapping[str, Any]],
                              group_names: Mapping[str, str]) -> Dict[str, Any]:
    """
    Turn an Intune assignment target into {targetType, groupId, displayName}.

    Group names come from groups.json; unknown groups keep their id as name.
    """
    target = target or {}
    odata_type = target.get('@odata.type') or ''
    group_id = target.get('groupId')

    if odata_type == ALL_USERS_TARGET:
        return {'targetType': 'AllUsers', 'groupId': None, 'displayName': 'All Users'}
    if odata_type == ALL_DEVICES_TARGET:
        return {'targetType': 'AllDevices', 'groupId': None, 'displayName': 'All Devices'}
    if odata_type == GROUP_TARGET:
        return {'targetType': 'Include', 'groupId': group_id,
                'displayName': group_names.get(group_id) or group_id}
    if odata_type == EXCLUSION_TARGET:
        return {'targetType': 'Exclude', 'groupId': group_id,
                'displayName': group_names.get(group_id) or group_id}

    return {'targetType': 'Unknown', 'groupId': group_id,
            'displayName': odata_type.rsplit('.', 1)[-1] or 'Unknown'}
