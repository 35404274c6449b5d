#!/usr/bin/env python3
"""
TenantScope - Security Collectors
Identity risk, sign-ins, Defender alerts, Secure Score, Conditional Access
policies and named locations, OAuth consent grants, and Defender for
Endpoint vulnerabilities and antivirus health.

Requirements:
- Microsoft Graph API permissions (Application type):
  - IdentityRiskyUser.Read.All, IdentityRiskEvent.Read.All (Entra ID P2)
  - AuditLog.Read.All (sign-in logs; Entra ID P1/P2)
  - SecurityAlert.Read.All, SecurityEvents.Read.All
  - Policy.Read.All (Conditional Access, named locations)
  - DelegatedPermissionGrant.Read.All, Application.Read.All
- WindowsDefenderATP API permissions (Application type):
  - Vulnerability.Read.All, Machine.Read.All (Defender for Endpoint P2)

Usage:
    python security_collect.py -o ./tenantscope-output
    python security_collect.py --only defender-alerts,secure-score
"""
import ipaddress
import logging
import sys
from datetime import timedelta
from typing import Any, Dict, List, Optional

from lib.collector import CollectorSpec, RunContext, run_collector
from lib.constants import (
    BROAD_IPV4_PREFIX,
    BROAD_IPV6_PREFIX,
    CONDITIONAL_ACCESS_FILE,
    DEFENDER_ALERTS_FILE,
    DEFENDER_HEALTH_FILE,
    HIGH_RISK_SCOPES,
    IDENTITY_RISK_FILE,
    LEGACY_AUTH_CLIENTS,
    MEDIUM_RISK_SCOPES,
    MICROSOFT_TENANT_IDS,
    NAMED_LOCATIONS_FILE,
    OAUTH_CONSENT_FILE,
    RISKY_SIGNINS_FILE,
    SECURE_SCORE_FILE,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_WARNING,
    SIGNIN_LOGS_FILE,
    USERS_FILE,
    VULNERABILITIES_FILE,
)
from lib.crossref import join_fields
from lib.derive import (
    days_since,
    format_iso,
    iso_or_none,
    percentage,
    severity_rank,
)
from lib.fields import pick, pick_list
from lib.graph import GraphError
from lib.insights import InsightRule, evaluate_rules, record_count, summary_count
from lib.models import CollectorResult, count_by, count_where

logger = logging.getLogger(__name__)


def _cutoff(ctx: RunContext, days: int) -> str:
    """OData timestamp literal for now minus days."""
    return format_iso(ctx.now - timedelta(days=days))


def _location_string(location: Optional[Dict[str, Any]]) -> Optional[str]:
    if not location:
        return None
    parts = [location.get('city'), location.get('countryOrRegion')]
    parts = [p for p in parts if p]
    return ', '.join(parts) if parts else None


def _newest_first(records: List[Dict[str, Any]], field: str) -> None:
    # Fixed-format ISO strings sort chronologically; missing dates go last
    records.sort(key=lambda r: r.get(field) or '', reverse=True)


# =============================================================================
# Identity Risk
# =============================================================================

RISKY_USER_ENRICHMENT = {
    'accountEnabled': ('accountEnabled', None),
    'department': ('department', None),
    'isInactive': ('isInactive', None),
    'mfaRegistered': ('mfaRegistered', None),
}


def map_risky_user(raw: Dict[str, Any], ctx: RunContext,
                   users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    user = {
        'id': pick(raw, 'id'),
        'userPrincipalName': pick(raw, 'userPrincipalName'),
        'displayName': pick(raw, 'userDisplayName'),
        'riskLevel': pick(raw, 'riskLevel', default='none'),
        'riskState': pick(raw, 'riskState', default='none'),
        'riskDetail': pick(raw, 'riskDetail'),
        'riskLastUpdated': iso_or_none(pick(raw, 'riskLastUpdatedDateTime')),
        'daysSinceRiskUpdate': days_since(pick(raw, 'riskLastUpdatedDateTime'), ctx.now),
        'isDeleted': pick(raw, 'isDeleted', default=False),
        'isProcessing': pick(raw, 'isProcessing', default=False),
    }
    join_fields(user, users.get(user['id']), RISKY_USER_ENRICHMENT)
    return user


def map_risk_detection(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    location = pick(raw, 'location')
    return {
        'id': pick(raw, 'id'),
        'userId': pick(raw, 'userId'),
        'userPrincipalName': pick(raw, 'userPrincipalName'),
        'userDisplayName': pick(raw, 'userDisplayName'),
        'riskEventType': pick(raw, 'riskEventType', default='unknown'),
        'riskLevel': pick(raw, 'riskLevel', default='none'),
        'riskState': pick(raw, 'riskState', default='none'),
        'riskDetail': pick(raw, 'riskDetail'),
        'detectionTimingType': pick(raw, 'detectionTimingType'),
        'activity': pick(raw, 'activity'),
        'source': pick(raw, 'source'),
        'ipAddress': pick(raw, 'ipAddress'),
        'city': pick(location, 'city'),
        'country': pick(location, 'countryOrRegion'),
        'location': _location_string(location),
        'detectedDateTime': iso_or_none(pick(raw, 'detectedDateTime')),
        'daysSinceDetection': days_since(pick(raw, 'detectedDateTime'), ctx.now),
    }


def summarize_identity_risk(risky_users: List[Dict[str, Any]],
                            detections: List[Dict[str, Any]]) -> Dict[str, Any]:
    def recent(limit_days: int) -> int:
        return count_where(detections, lambda d: d['daysSinceDetection'] is not None
                           and d['daysSinceDetection'] < limit_days)

    return {
        'totalRiskyUsers': len(risky_users),
        'highRiskUsers': count_where(risky_users, lambda u: u['riskLevel'] == 'high'),
        'mediumRiskUsers': count_where(risky_users, lambda u: u['riskLevel'] == 'medium'),
        'lowRiskUsers': count_where(risky_users, lambda u: u['riskLevel'] == 'low'),
        'atRiskUsers': count_where(risky_users, lambda u: u['riskState'] == 'atRisk'),
        'confirmedCompromised': count_where(risky_users, lambda u: u['riskState'] == 'confirmedCompromised'),
        'dismissedUsers': count_where(risky_users, lambda u: u['riskState'] == 'dismissed'),
        'remediatedUsers': count_where(risky_users, lambda u: u['riskState'] == 'remediated'),
        'totalDetections': len(detections),
        'detectionsByType': count_by(detections, 'riskEventType'),
        'detectionsByLocation': count_by(detections, 'country'),
        'recentDetections24h': recent(1),
        'recentDetections7d': recent(7),
    }


IDENTITY_RISK_RULES = [
    InsightRule(
        id='confirmed-compromised',
        severity=SEVERITY_CRITICAL,
        category='Identity Risk',
        count=summary_count('confirmedCompromised'),
        description='{count} user(s) confirmed compromised',
        recommended_action='Reset credentials, revoke sessions and review sign-in activity for these accounts.',
    ),
    InsightRule(
        id='high-risk-users',
        severity=SEVERITY_CRITICAL,
        category='Identity Risk',
        count=record_count(lambda u: u['riskLevel'] == 'high' and u['riskState'] == 'atRisk'),
        description='{count} high-risk user(s) still at risk',
        recommended_action='Investigate and remediate high-risk users; require password change via risk policy.',
    ),
    InsightRule(
        id='at-risk-without-mfa',
        severity=SEVERITY_HIGH,
        category='Identity Risk',
        count=record_count(lambda u: u['riskState'] == 'atRisk' and u['mfaRegistered'] is False),
        description='{count} at-risk user(s) have no MFA method registered',
        recommended_action='Require MFA registration for at-risk users before allowing self-remediation.',
    ),
    InsightRule(
        id='recent-detections',
        severity=SEVERITY_WARNING,
        category='Identity Risk',
        count=summary_count('recentDetections24h'),
        description='{count} risk detection(s) in the last 24 hours',
        recommended_action='Review recent risk detections for active attacks.',
    ),
]


def _build_identity_risk(client, ctx: RunContext):
    users = ctx.load_lookup(USERS_FILE, 'id')
    risky_users = [map_risky_user(raw, ctx, users)
                   for raw in client.get_all('identityProtection/riskyUsers')]
    detections = [map_risk_detection(raw, ctx) for raw in client.get_all(
        'identityProtection/riskDetections',
        params={'$filter': f"detectedDateTime ge {_cutoff(ctx, ctx.settings.risk_detection_days)}"},
    )]

    risky_users.sort(key=lambda u: (-severity_rank(u['riskLevel']), (u['userPrincipalName'] or '').lower()))
    _newest_first(detections, 'detectedDateTime')

    summary = summarize_identity_risk(risky_users, detections)
    insights = evaluate_rules(IDENTITY_RISK_RULES, summary, risky_users)
    document = ctx.envelope('riskyUsers', risky_users, summary, insights,
                            extra={'riskDetections': detections})
    return document, len(risky_users) + len(detections)


def _empty_identity_risk(ctx: RunContext):
    return ctx.envelope('riskyUsers', [], summarize_identity_risk([], []), [],
                        extra={'riskDetections': []})


def collect_identity_risk(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect risky users and recent risk detections (Entra ID P2)."""
    return run_collector('identity-risk', IDENTITY_RISK_FILE,
                         lambda ctx: _build_identity_risk(client, ctx),
                         output_dir, settings, empty=_empty_identity_risk, now=now)


# =============================================================================
# Sign-ins
# =============================================================================

def map_sign_in(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    """Project a Graph sign-in event; shared by sign-in logs and risky sign-ins."""
    location = pick(raw, 'location')
    error_code = pick(raw, 'status.errorCode', default=0)
    client_app = pick(raw, 'clientAppUsed')
    return {
        'id': pick(raw, 'id'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'userId': pick(raw, 'userId'),
        'userDisplayName': pick(raw, 'userDisplayName'),
        'userPrincipalName': pick(raw, 'userPrincipalName'),
        'appDisplayName': pick(raw, 'appDisplayName'),
        'appId': pick(raw, 'appId'),
        'clientAppUsed': client_app,
        'isLegacyAuth': client_app in LEGACY_AUTH_CLIENTS,
        'isInteractive': pick(raw, 'isInteractive'),
        'ipAddress': pick(raw, 'ipAddress'),
        'city': pick(location, 'city'),
        'country': pick(location, 'countryOrRegion'),
        'location': _location_string(location),
        'status': 'success' if error_code == 0 else 'failure',
        'errorCode': error_code,
        'failureReason': pick(raw, 'status.failureReason') if error_code else None,
        'conditionalAccessStatus': pick(raw, 'conditionalAccessStatus'),
        'mfaRequired': pick(raw, 'authenticationRequirement') == 'multiFactorAuthentication',
        'riskLevel': pick(raw, 'riskLevelDuringSignIn', default='none'),
        'riskLevelAggregated': pick(raw, 'riskLevelAggregated'),
        'riskState': pick(raw, 'riskState', default='none'),
        'riskEventTypes': pick(raw, 'riskEventTypes_v2', 'riskEventTypes', default=[]),
        'deviceName': pick(raw, 'deviceDetail.displayName'),
        'operatingSystem': pick(raw, 'deviceDetail.operatingSystem'),
        'browser': pick(raw, 'deviceDetail.browser'),
        'isCompliant': pick(raw, 'deviceDetail.isCompliant'),
        'isManaged': pick(raw, 'deviceDetail.isManaged'),
        'daysAgo': days_since(pick(raw, 'createdDateTime'), ctx.now),
    }


def _fetch_sign_ins(client, ctx: RunContext) -> List[Dict[str, Any]]:
    return client.get_all(
        'auditLogs/signIns',
        params={'$filter': f"createdDateTime ge {_cutoff(ctx, ctx.settings.sign_in_days)}"},
        max_pages=ctx.settings.sign_in_page_limit,
    )


def _is_risky(sign_in: Dict[str, Any]) -> bool:
    return (sign_in['riskLevel'] not in (None, 'none', 'hidden')
            or sign_in['riskState'] not in (None, 'none'))


def _build_sign_in_logs(client, ctx: RunContext):
    records = [map_sign_in(raw, ctx) for raw in _fetch_sign_ins(client, ctx)]
    _newest_first(records, 'createdDateTime')
    return records, len(records)


def _build_risky_sign_ins(client, ctx: RunContext):
    records = [r for r in (map_sign_in(raw, ctx) for raw in _fetch_sign_ins(client, ctx)) if _is_risky(r)]
    _newest_first(records, 'createdDateTime')
    records.sort(key=lambda r: -severity_rank(r['riskLevel']))
    return records, len(records)


def collect_signin_logs(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect recent sign-ins (bounded by sign_in_page_limit)."""
    return run_collector('signin-logs', SIGNIN_LOGS_FILE,
                         lambda ctx: _build_sign_in_logs(client, ctx),
                         output_dir, settings, now=now)


def collect_risky_signins(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect recent sign-ins that carried a risk level or state."""
    return run_collector('risky-signins', RISKY_SIGNINS_FILE,
                         lambda ctx: _build_risky_sign_ins(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Defender Alerts
# =============================================================================

def _first_evidence(raw: Dict[str, Any], odata_suffix: str, field: str) -> Optional[str]:
    for evidence in pick_list(raw, 'evidence'):
        if (evidence.get('@odata.type') or '').endswith(odata_suffix):
            value = pick(evidence, field)
            if value:
                return value
    return None


def map_alert(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    return {
        'id': pick(raw, 'id'),
        'title': pick(raw, 'title'),
        'description': pick(raw, 'description'),
        'severity': pick(raw, 'severity', default='unknown'),
        'status': pick(raw, 'status'),
        'classification': pick(raw, 'classification'),
        'determination': pick(raw, 'determination'),
        'category': pick(raw, 'category'),
        'serviceSource': pick(raw, 'serviceSource'),
        'detectionSource': pick(raw, 'detectionSource'),
        'incidentId': pick(raw, 'incidentId'),
        'assignedTo': pick(raw, 'assignedTo'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'lastUpdateDateTime': iso_or_none(pick(raw, 'lastUpdateDateTime')),
        'resolvedDateTime': iso_or_none(pick(raw, 'resolvedDateTime')),
        'daysSinceCreated': days_since(pick(raw, 'createdDateTime'), ctx.now),
        'mitreTechniques': pick_list(raw, 'mitreTechniques'),
        'affectedUser': _first_evidence(raw, 'userEvidence', 'userAccount.userPrincipalName'),
        'affectedDevice': _first_evidence(raw, 'deviceEvidence', 'deviceDnsName'),
        'evidenceCount': len(pick_list(raw, 'evidence')),
        'alertWebUrl': pick(raw, 'alertWebUrl'),
    }


def _build_defender_alerts(client, ctx: RunContext):
    alerts = [map_alert(raw, ctx) for raw in client.get_all('security/alerts_v2')]
    _newest_first(alerts, 'createdDateTime')
    # Stable sort keeps newest-first within each severity
    alerts.sort(key=lambda a: -severity_rank(a['severity']))
    return alerts, len(alerts)


def collect_defender_alerts(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Microsoft 365 Defender alerts, most severe and newest first."""
    return run_collector('defender-alerts', DEFENDER_ALERTS_FILE,
                         lambda ctx: _build_defender_alerts(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Secure Score
# =============================================================================

def map_control_score(raw: Dict[str, Any], profiles: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    name = pick(raw, 'controlName')
    profile = profiles.get(name) or {}
    score = pick(raw, 'score')
    max_score = pick(profile, 'maxScore')
    return {
        'controlName': name,
        'title': pick(profile, 'title', default=name),
        'category': pick(raw, 'controlCategory'),
        'score': score,
        'maxScore': max_score,
        'scoreGap': round(max_score - score, 2) if score is not None and max_score is not None else None,
        'implementationCost': pick(profile, 'implementationCost'),
        'userImpact': pick(profile, 'userImpact'),
        'tier': pick(profile, 'tier'),
        'actionUrl': pick(profile, 'actionUrl'),
        'description': pick(raw, 'description'),
    }


def _empty_secure_score(ctx: RunContext):
    return {
        'currentScore': None,
        'maxScore': None,
        'scorePercent': None,
        'scoreDate': None,
        'activeUserCount': None,
        'licensedUserCount': None,
        'enabledServices': [],
        'averageComparativeScores': [],
        'controlScores': [],
        'collectionDate': format_iso(ctx.now),
    }


def _build_secure_score(client, ctx: RunContext):
    response = client.get('security/secureScores', params={'$top': 1})
    scores = pick_list(response, 'value')
    if not scores:
        logger.info("No Secure Score snapshots returned")
        return _empty_secure_score(ctx), 0
    latest = scores[0]

    try:
        profiles = {p.get('id'): p for p in client.get_all('security/secureScoreControlProfiles')}
    except GraphError as e:
        ctx.issues.record('secure score control profiles', e, level=logging.WARNING)
        profiles = {}

    controls = [map_control_score(c, profiles) for c in pick_list(latest, 'controlScores')]
    controls.sort(key=lambda c: (-(c['scoreGap'] or 0), c['controlName'] or ''))

    current = pick(latest, 'currentScore')
    maximum = pick(latest, 'maxScore')
    document = {
        'currentScore': current,
        'maxScore': maximum,
        'scorePercent': percentage(current, maximum),
        'scoreDate': iso_or_none(pick(latest, 'createdDateTime')),
        'activeUserCount': pick(latest, 'activeUserCount'),
        'licensedUserCount': pick(latest, 'licensedUserCount'),
        'enabledServices': pick_list(latest, 'enabledServices'),
        'averageComparativeScores': [
            {'basis': pick(s, 'basis'), 'averageScore': pick(s, 'averageScore')}
            for s in pick_list(latest, 'averageComparativeScores')
        ],
        'controlScores': controls,
        'collectionDate': format_iso(ctx.now),
    }
    return document, 1


def collect_secure_score(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect the latest Microsoft Secure Score and its control scores."""
    return run_collector('secure-score', SECURE_SCORE_FILE,
                         lambda ctx: _build_secure_score(client, ctx),
                         output_dir, settings, empty=_empty_secure_score, now=now)


# =============================================================================
# Conditional Access
# =============================================================================

def policy_type(policy: Dict[str, Any]) -> str:
    """Classify a Conditional Access policy by what it enforces."""
    if policy['blocksLegacyAuth']:
        return 'Legacy Auth Block'
    if policy['blockAccess']:
        return 'Block'
    if policy['hasRiskCondition']:
        return 'Risk-based'
    if policy['requiresMfa'] and policy['includedRoleCount']:
        return 'Admin MFA'
    if policy['requiresMfa']:
        return 'MFA'
    if policy['requiresCompliantDevice'] or policy['requiresHybridJoin']:
        return 'Device Compliance'
    if policy['sessionControls']:
        return 'Session'
    return 'Other'


def map_conditional_access_policy(raw: Dict[str, Any]) -> Dict[str, Any]:
    include_users = pick_list(raw, 'conditions.users.includeUsers')
    include_apps = pick_list(raw, 'conditions.applications.includeApplications')
    controls = pick_list(raw, 'grantControls.builtInControls')
    client_app_types = pick_list(raw, 'conditions.clientAppTypes')
    session = pick(raw, 'sessionControls') or {}
    state = pick(raw, 'state')

    block = 'block' in controls
    policy = {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'state': state,
        'isEnabled': state == 'enabled',
        'isReportOnly': state == 'enabledForReportingButNotEnforced',
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'modifiedDateTime': iso_or_none(pick(raw, 'modifiedDateTime')),
        'includesAllUsers': 'All' in include_users,
        'includesAllGuests': ('GuestsOrExternalUsers' in include_users
                              or pick(raw, 'conditions.users.includeGuestsOrExternalUsers') is not None),
        'includesAllApps': 'All' in include_apps,
        'includesOffice': 'Office365' in include_apps,
        'excludedUserCount': len(pick_list(raw, 'conditions.users.excludeUsers')),
        'excludedGroupCount': len(pick_list(raw, 'conditions.users.excludeGroups')),
        'includedGroupCount': len(pick_list(raw, 'conditions.users.includeGroups')),
        'includedRoleCount': len(pick_list(raw, 'conditions.users.includeRoles')),
        'clientAppTypes': client_app_types,
        'platforms': pick_list(raw, 'conditions.platforms.includePlatforms'),
        'grantOperator': pick(raw, 'grantControls.operator'),
        'builtInControls': controls,
        'requiresMfa': 'mfa' in controls or pick(raw, 'grantControls.authenticationStrength') is not None,
        'requiresCompliantDevice': 'compliantDevice' in controls,
        'requiresHybridJoin': 'domainJoinedDevice' in controls,
        'blockAccess': block,
        'blocksLegacyAuth': block and bool({'exchangeActiveSync', 'other'} & set(client_app_types)),
        'hasRiskCondition': bool(pick_list(raw, 'conditions.userRiskLevels')
                                 or pick_list(raw, 'conditions.signInRiskLevels')),
        'includeLocations': pick_list(raw, 'conditions.locations.includeLocations'),
        'excludeLocations': pick_list(raw, 'conditions.locations.excludeLocations'),
        'hasLocationCondition': bool(pick_list(raw, 'conditions.locations.includeLocations')),
        'sessionControls': sorted(k for k, v in session.items() if v and not k.startswith('@')),
    }
    policy['policyType'] = policy_type(policy)
    return policy


def _build_conditional_access(client, ctx: RunContext):
    policies = [map_conditional_access_policy(raw)
                for raw in client.get_all('identity/conditionalAccess/policies')]
    policies.sort(key=lambda p: (not p['isEnabled'], (p['displayName'] or '').lower()))
    return policies, len(policies)


def collect_conditional_access(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Conditional Access policies with their enforcement shape."""
    return run_collector('conditional-access', CONDITIONAL_ACCESS_FILE,
                         lambda ctx: _build_conditional_access(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Named Locations
# =============================================================================

def location_type(odata_type: Optional[str]) -> str:
    odata_type = odata_type or ''
    if odata_type.endswith('ipNamedLocation'):
        return 'IP ranges'
    if odata_type.endswith('countryNamedLocation'):
        return 'Countries'
    return 'Other'


def is_broad_range(cidr: Optional[str]) -> bool:
    """True for CIDR blocks wider than /16 (IPv4) or /32 (IPv6)."""
    try:
        network = ipaddress.ip_network(cidr or '', strict=False)
    except ValueError:
        return False
    limit = BROAD_IPV4_PREFIX if network.version == 4 else BROAD_IPV6_PREFIX
    return network.prefixlen < limit


def location_references(policies: Optional[List[Dict[str, Any]]]) -> Optional[Dict[str, List[str]]]:
    """Map named location id -> names of the CA policies that include or exclude it."""
    if policies is None:
        return None
    references: Dict[str, List[str]] = {}
    for policy in policies:
        ids = set(policy.get('includeLocations') or []) | set(policy.get('excludeLocations') or [])
        for location_id in ids:
            references.setdefault(location_id, []).append(policy.get('displayName') or policy.get('id'))
    return {k: sorted(v) for k, v in references.items()}


def map_named_location(raw: Dict[str, Any], references: Optional[Dict[str, List[str]]]) -> Dict[str, Any]:
    kind = location_type(pick(raw, '@odata.type'))
    ranges = [pick(r, 'cidrAddress') for r in pick_list(raw, 'ipRanges') if pick(r, 'cidrAddress')]
    countries = pick_list(raw, 'countriesAndRegions')
    used_by = references.get(pick(raw, 'id'), []) if references is not None else None

    location = {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'locationType': kind,
        'isTrusted': bool(pick(raw, 'isTrusted', default=False)) if kind == 'IP ranges' else None,
        'ipRanges': ranges,
        'ipRangeCount': len(ranges),
        'hasBroadRange': any(is_broad_range(r) for r in ranges),
        'countriesAndRegions': countries,
        'countryCount': len(countries),
        'includeUnknownCountries': pick(raw, 'includeUnknownCountriesAndRegions'),
        'countryLookupMethod': pick(raw, 'countryLookupMethod'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'modifiedDateTime': iso_or_none(pick(raw, 'modifiedDateTime')),
        'usedByPolicies': used_by,
        'policyCount': len(used_by) if used_by is not None else None,
        'isUnused': not used_by if used_by is not None else None,
    }

    flags = []
    if location['isTrusted'] and location['hasBroadRange']:
        flags.append('broad-trusted-range')
    if location['isTrusted']:
        flags.append('trusted')
    if location['isUnused']:
        flags.append('unused')
    location['flags'] = flags
    return location


def summarize_named_locations(locations: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        'totalLocations': len(locations),
        'ipLocations': count_where(locations, lambda loc: loc['locationType'] == 'IP ranges'),
        'countryLocations': count_where(locations, lambda loc: loc['locationType'] == 'Countries'),
        'trustedLocations': count_where(locations, lambda loc: loc['isTrusted']),
        'broadTrustedLocations': count_where(locations, lambda loc: 'broad-trusted-range' in loc['flags']),
        'unusedLocations': count_where(locations, lambda loc: loc['isUnused']),
        'totalIpRanges': sum(loc['ipRangeCount'] for loc in locations),
    }


NAMED_LOCATION_RULES = [
    InsightRule(
        id='broad-trusted-ranges',
        severity=SEVERITY_HIGH,
        category='Conditional Access',
        count=summary_count('broadTrustedLocations'),
        description='{count} trusted named location(s) contain very wide IP ranges',
        recommended_action='Narrow trusted ranges to the egress addresses actually owned by the organization.',
    ),
    InsightRule(
        id='unused-named-locations',
        severity=SEVERITY_WARNING,
        category='Conditional Access',
        count=summary_count('unusedLocations'),
        description='{count} named location(s) are not referenced by any Conditional Access policy',
        recommended_action='Remove stale named locations or attach them to the intended policies.',
    ),
]


def _build_named_locations(client, ctx: RunContext):
    references = location_references(ctx.load_records(CONDITIONAL_ACCESS_FILE))
    locations = [map_named_location(raw, references)
                 for raw in client.get_all('identity/conditionalAccess/namedLocations')]
    locations.sort(key=lambda loc: (not loc['flags'], (loc['displayName'] or '').lower()))

    summary = summarize_named_locations(locations)
    insights = evaluate_rules(NAMED_LOCATION_RULES, summary, locations)
    return ctx.envelope('namedLocations', locations, summary, insights), len(locations)


def collect_named_locations(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Conditional Access named locations and the policies that use them."""
    return run_collector('named-locations', NAMED_LOCATIONS_FILE,
                         lambda ctx: _build_named_locations(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('namedLocations', [], summarize_named_locations([]), []),
                         now=now)


# =============================================================================
# OAuth Consent Grants
# =============================================================================

def scope_risk(scopes: List[str]) -> Dict[str, Any]:
    """Split delegated scopes by risk tier and rate the grant."""
    high = sorted(s for s in scopes if s in HIGH_RISK_SCOPES)
    medium = sorted(s for s in scopes if s in MEDIUM_RISK_SCOPES)
    if high:
        level = 'high'
    elif medium:
        level = 'medium'
    else:
        level = 'low'
    return {'highRiskScopes': high, 'mediumRiskScopes': medium, 'riskLevel': level}


def map_consent_grant(raw: Dict[str, Any], service_principals: Dict[str, Dict[str, Any]],
                      users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    client_sp = service_principals.get(pick(raw, 'clientId')) or {}
    resource_sp = service_principals.get(pick(raw, 'resourceId')) or {}
    principal = users.get(pick(raw, 'principalId')) if pick(raw, 'principalId') else None
    scopes = (pick(raw, 'scope', default='') or '').split()
    consent_type = pick(raw, 'consentType')
    owner_tenant = pick(client_sp, 'appOwnerOrganizationId')

    grant = {
        'id': pick(raw, 'id'),
        'clientId': pick(raw, 'clientId'),
        'appId': pick(client_sp, 'appId'),
        'appDisplayName': pick(client_sp, 'displayName'),
        'publisherName': pick(client_sp, 'verifiedPublisher.displayName', 'publisherName'),
        'isVerifiedPublisher': pick(client_sp, 'verifiedPublisher.verifiedPublisherId') is not None,
        'isMicrosoftApp': owner_tenant in MICROSOFT_TENANT_IDS if owner_tenant else None,
        'resourceId': pick(raw, 'resourceId'),
        'resourceDisplayName': pick(resource_sp, 'displayName'),
        'consentType': 'admin' if consent_type == 'AllPrincipals' else 'user',
        'isAdminConsent': consent_type == 'AllPrincipals',
        'principalId': pick(raw, 'principalId'),
        'principalDisplayName': pick(principal, 'displayName'),
        'principalUpn': pick(principal, 'userPrincipalName'),
        'scopes': scopes,
        'scopeCount': len(scopes),
    }
    grant.update(scope_risk(scopes))
    return grant


def summarize_consent_grants(grants: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        'totalGrants': len(grants),
        'adminConsentGrants': count_where(grants, lambda g: g['isAdminConsent']),
        'userConsentGrants': count_where(grants, lambda g: not g['isAdminConsent']),
        'highRiskGrants': count_where(grants, lambda g: g['riskLevel'] == 'high'),
        'mediumRiskGrants': count_where(grants, lambda g: g['riskLevel'] == 'medium'),
        'lowRiskGrants': count_where(grants, lambda g: g['riskLevel'] == 'low'),
        'uniqueApps': len({g['clientId'] for g in grants}),
        'unverifiedPublisherGrants': count_where(grants, lambda g: not g['isVerifiedPublisher']),
        'thirdPartyGrants': count_where(grants, lambda g: g['isMicrosoftApp'] is False),
        'grantsByApp': count_by(grants, 'appDisplayName'),
    }


CONSENT_RULES = [
    InsightRule(
        id='high-risk-user-consent',
        severity=SEVERITY_CRITICAL,
        category='Application Consent',
        count=record_count(lambda g: g['riskLevel'] == 'high' and not g['isAdminConsent']),
        description='{count} user consent grant(s) include high-risk scopes',
        recommended_action='Review and revoke user-consented high-risk scopes; restrict user consent to verified publishers.',
    ),
    InsightRule(
        id='high-risk-admin-consent',
        severity=SEVERITY_HIGH,
        category='Application Consent',
        count=record_count(lambda g: g['riskLevel'] == 'high' and g['isAdminConsent']),
        description='{count} tenant-wide grant(s) include high-risk scopes',
        recommended_action='Confirm each tenant-wide high-risk grant is still required.',
    ),
    InsightRule(
        id='unverified-publishers',
        severity=SEVERITY_WARNING,
        category='Application Consent',
        count=record_count(lambda g: not g['isVerifiedPublisher'] and g['isMicrosoftApp'] is False),
        description='{count} grant(s) to third-party apps from unverified publishers',
        recommended_action='Review unverified third-party apps and consider the admin consent workflow.',
    ),
]


def _build_consent_grants(client, ctx: RunContext):
    raw_grants = client.get_all('oauth2PermissionGrants')

    try:
        service_principals = {sp.get('id'): sp for sp in client.get_all('servicePrincipals', params={
            '$select': 'id,appId,displayName,appOwnerOrganizationId,publisherName,verifiedPublisher',
        })}
    except GraphError as e:
        ctx.issues.record('service principal names unavailable', e, level=logging.WARNING)
        service_principals = {}

    users = ctx.load_lookup(USERS_FILE, 'id')
    grants = [map_consent_grant(raw, service_principals, users) for raw in raw_grants]
    grants.sort(key=lambda g: (-severity_rank(g['riskLevel']), (g['appDisplayName'] or '').lower(), g['id'] or ''))

    summary = summarize_consent_grants(grants)
    insights = evaluate_rules(CONSENT_RULES, summary, grants)
    return ctx.envelope('grants', grants, summary, insights), len(grants)


def collect_oauth_consent_grants(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect delegated OAuth2 permission grants with scope risk."""
    return run_collector('oauth-consent-grants', OAUTH_CONSENT_FILE,
                         lambda ctx: _build_consent_grants(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('grants', [], summarize_consent_grants([]), []),
                         now=now)


# =============================================================================
# Vulnerabilities (Defender for Endpoint API)
# =============================================================================

def map_vulnerability(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    public_exploit = bool(pick(raw, 'publicExploit', 'PublicExploit', default=False))
    exploit_verified = bool(pick(raw, 'exploitVerified', 'ExploitVerified', default=False))
    exploit_in_kit = bool(pick(raw, 'exploitInKit', 'ExploitInKit', default=False))
    published = pick(raw, 'publishedOn', 'PublishedOn')
    return {
        'id': pick(raw, 'id', 'Id'),
        'name': pick(raw, 'name', 'Name'),
        'description': pick(raw, 'description', 'Description'),
        'severity': pick(raw, 'severity', 'Severity', default='Unknown'),
        'cvssScore': pick(raw, 'cvssV3', 'CvssV3'),
        'epss': pick(raw, 'epss', 'Epss'),
        'exposedMachines': pick(raw, 'exposedMachines', 'ExposedMachines', default=0),
        'publishedOn': iso_or_none(published),
        'updatedOn': iso_or_none(pick(raw, 'updatedOn', 'UpdatedOn')),
        'daysSincePublished': days_since(published, ctx.now),
        'publicExploit': public_exploit,
        'exploitVerified': exploit_verified,
        'exploitInKit': exploit_in_kit,
        'hasExploit': public_exploit or exploit_verified or exploit_in_kit,
        'exploitTypes': pick(raw, 'exploitTypes', 'ExploitTypes', default=[]),
    }


def summarize_vulnerabilities(vulns: List[Dict[str, Any]]) -> Dict[str, Any]:
    scores = [v['cvssScore'] for v in vulns if isinstance(v['cvssScore'], (int, float))]

    def severity_is(level: str):
        return lambda v: str(v['severity']).lower() == level

    return {
        'totalVulnerabilities': len(vulns),
        'criticalCount': count_where(vulns, severity_is('critical')),
        'highCount': count_where(vulns, severity_is('high')),
        'mediumCount': count_where(vulns, severity_is('medium')),
        'lowCount': count_where(vulns, severity_is('low')),
        'exploitableCount': count_where(vulns, lambda v: v['hasExploit']),
        'totalExposedMachines': sum(v['exposedMachines'] or 0 for v in vulns),
        'averageCvss': round(sum(scores) / len(scores), 2) if scores else None,
    }


VULNERABILITY_RULES = [
    InsightRule(
        id='critical-exploitable',
        severity=SEVERITY_CRITICAL,
        category='Vulnerabilities',
        count=record_count(lambda v: str(v['severity']).lower() == 'critical' and v['hasExploit']),
        description='{count} critical vulnerabilit(ies) with a known exploit are exposed',
        recommended_action='Patch exposed devices for exploitable critical CVEs first.',
    ),
    InsightRule(
        id='critical-vulnerabilities',
        severity=SEVERITY_HIGH,
        category='Vulnerabilities',
        count=summary_count('criticalCount'),
        description='{count} critical vulnerabilit(ies) are exposed',
        recommended_action='Prioritise remediation of critical vulnerabilities in Defender Vulnerability Management.',
    ),
    InsightRule(
        id='exploitable-vulnerabilities',
        severity=SEVERITY_WARNING,
        category='Vulnerabilities',
        count=summary_count('exploitableCount'),
        description='{count} exposed vulnerabilit(ies) have a public or verified exploit',
        recommended_action='Review exploitable vulnerabilities and apply available security updates.',
    ),
]


def _build_vulnerabilities(client, ctx: RunContext):
    raw_items = client.get_all('vulnerabilities', max_pages=ctx.settings.vulnerability_page_limit)
    vulns = [map_vulnerability(raw, ctx) for raw in raw_items]
    vulns = [v for v in vulns if (v['exposedMachines'] or 0) > 0]
    vulns.sort(key=lambda v: (-severity_rank(v['severity']), -(v['cvssScore'] or 0),
                              -(v['exposedMachines'] or 0), v['id'] or ''))

    summary = summarize_vulnerabilities(vulns)
    insights = evaluate_rules(VULNERABILITY_RULES, summary, vulns)
    return ctx.envelope('vulnerabilities', vulns, summary, insights), len(vulns)


def collect_vulnerabilities(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect CVEs exposed on onboarded devices (Defender for Endpoint)."""
    return run_collector('vulnerabilities', VULNERABILITIES_FILE,
                         lambda ctx: _build_vulnerabilities(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('vulnerabilities', [], summarize_vulnerabilities([]), []),
                         now=now)


# =============================================================================
# Defender Device Health (Defender for Endpoint API)
# =============================================================================

def map_device_health(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    threshold = ctx.settings.signature_age_days
    signature_time = pick(raw, 'avSignatureLastUpdateTime', 'AvSignatureLastUpdateTime',
                          'avSignaturePublishTime', 'AvSignaturePublishTime')
    signature_age = days_since(signature_time, ctx.now)
    scan_ages = [days_since(pick(raw, name), ctx.now) for name in
                 ('quickScanTime', 'QuickScanTime', 'fullScanTime', 'FullScanTime')]
    scan_ages = [age for age in scan_ages if age is not None]
    av_mode = pick(raw, 'avMode', 'AvMode')

    device = {
        'machineId': pick(raw, 'machineId', 'MachineId', 'id'),
        'computerName': pick(raw, 'computerDnsName', 'ComputerDnsName', 'deviceName'),
        'osPlatform': pick(raw, 'osPlatform', 'OsPlatform'),
        'osVersion': pick(raw, 'osVersion', 'OsVersion'),
        'rbacGroupName': pick(raw, 'rbacGroupName', 'RbacGroupName'),
        'avMode': str(av_mode) if av_mode is not None else None,
        'signatureVersion': pick(raw, 'avSignatureVersion', 'AvSignatureVersion'),
        'engineVersion': pick(raw, 'avEngineVersion', 'AvEngineVersion'),
        'platformVersion': pick(raw, 'avPlatformVersion', 'AvPlatformVersion'),
        'signatureUpdated': iso_or_none(signature_time),
        'signatureAgeDays': signature_age,
        'isSignatureOutdated': signature_age is None or signature_age > threshold,
        'signatureUpToDate': pick(raw, 'avIsSignatureUpToDate', 'AvIsSignatureUpToDate'),
        'engineUpToDate': pick(raw, 'avIsEngineUpToDate', 'AvIsEngineUpToDate'),
        'platformUpToDate': pick(raw, 'avIsPlatformUpToDate', 'AvIsPlatformUpToDate'),
        'lastQuickScan': iso_or_none(pick(raw, 'quickScanTime', 'QuickScanTime')),
        'lastFullScan': iso_or_none(pick(raw, 'fullScanTime', 'FullScanTime')),
        'daysSinceLastScan': min(scan_ages) if scan_ages else None,
        'lastSeen': iso_or_none(pick(raw, 'lastSeenTime', 'LastSeenTime')),
        'daysSinceLastSeen': days_since(pick(raw, 'lastSeenTime', 'LastSeenTime'), ctx.now),
    }
    device['isPassiveMode'] = (device['avMode'] or '').lower() in ('1', 'passive')
    device['isHealthy'] = (not device['isSignatureOutdated']
                           and device['engineUpToDate'] is not False
                           and device['platformUpToDate'] is not False
                           and not device['isPassiveMode'])
    return device


def summarize_device_health(devices: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        'totalDevices': len(devices),
        'healthyDevices': count_where(devices, lambda d: d['isHealthy']),
        'outdatedSignatures': count_where(devices, lambda d: d['isSignatureOutdated']),
        'upToDateSignatures': count_where(devices, lambda d: not d['isSignatureOutdated']),
        'outdatedEngine': count_where(devices, lambda d: d['engineUpToDate'] is False),
        'outdatedPlatform': count_where(devices, lambda d: d['platformUpToDate'] is False),
        'passiveMode': count_where(devices, lambda d: d['isPassiveMode']),
        'neverScanned': count_where(devices, lambda d: d['daysSinceLastScan'] is None),
        'osBreakdown': count_by(devices, 'osPlatform'),
    }


DEVICE_HEALTH_RULES = [
    InsightRule(
        id='outdated-signatures',
        severity=SEVERITY_HIGH,
        category='Endpoint Protection',
        count=summary_count('outdatedSignatures'),
        description='{count} device(s) have outdated antivirus signatures',
        recommended_action='Check update connectivity and Defender update policies on affected devices.',
    ),
    InsightRule(
        id='passive-mode',
        severity=SEVERITY_WARNING,
        category='Endpoint Protection',
        count=summary_count('passiveMode'),
        description='{count} device(s) run Defender Antivirus in passive mode',
        recommended_action='Confirm a third-party antivirus is active or switch Defender to active mode.',
    ),
    InsightRule(
        id='never-scanned',
        severity=SEVERITY_WARNING,
        category='Endpoint Protection',
        count=summary_count('neverScanned'),
        description='{count} device(s) have no recorded antivirus scan',
        recommended_action='Schedule quick scans via Intune or Defender policy.',
    ),
]


def _build_device_health(client, ctx: RunContext):
    devices = [map_device_health(raw, ctx) for raw in client.get_all('deviceavinfo')]
    devices.sort(key=lambda d: (d['isHealthy'], (d['computerName'] or '').lower()))

    summary = summarize_device_health(devices)
    insights = evaluate_rules(DEVICE_HEALTH_RULES, summary, devices)
    return ctx.envelope('devices', devices, summary, insights), len(devices)


def collect_defender_device_health(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Defender Antivirus health per onboarded device."""
    return run_collector('defender-device-health', DEFENDER_HEALTH_FILE,
                         lambda ctx: _build_device_health(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('devices', [], summarize_device_health([]), []),
                         now=now)


# =============================================================================
# Main Entry Point
# =============================================================================

COLLECTORS = [
    CollectorSpec('identity-risk', collect_identity_risk),
    CollectorSpec('risky-signins', collect_risky_signins),
    CollectorSpec('signin-logs', collect_signin_logs),
    CollectorSpec('defender-alerts', collect_defender_alerts),
    CollectorSpec('secure-score', collect_secure_score),
    CollectorSpec('conditional-access', collect_conditional_access),
    CollectorSpec('named-locations', collect_named_locations),
    CollectorSpec('oauth-consent-grants', collect_oauth_consent_grants),
    CollectorSpec('vulnerabilities', collect_vulnerabilities, api='defender'),
    CollectorSpec('defender-device-health', collect_defender_device_health, api='defender'),
]


def main(argv=None):
    from collect import run_cli
    return run_cli(COLLECTORS, 'TenantScope - Security Collectors', argv)


if __name__ == '__main__':
    sys.exit(main())
