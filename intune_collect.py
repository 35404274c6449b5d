#!/usr/bin/env python3
"""
TenantScope - Intune Collectors
Autopilot identities, managed devices, compliance policies, configuration
profiles, BitLocker and Windows Update status, ASR rules, app deployments
and Endpoint analytics from Microsoft Graph.

Requirements:
- Entra ID App Registration with following API permissions (Application type):
  - DeviceManagementManagedDevices.Read.All (also Endpoint analytics)
  - DeviceManagementConfiguration.Read.All (also ASR policies)
  - DeviceManagementServiceConfig.Read.All (Autopilot)
  - DeviceManagementApps.Read.All (app deployments)
  - BitlockerKey.ReadBasic.All (optional; recovery key escrow)
  - Reports.Read.All (Windows Update and app install export jobs)

Output (autopilot.json is read by the devices collector, devices.json by
endpoint-analytics):
  autopilot.json, devices.json, compliance-policies.json,
  configuration-profiles.json, bitlocker-status.json, windows-update-status.json,
  asr-rules.json, app-deployments.json, endpoint-analytics.json

Usage:
    python intune_collect.py -o ./tenantscope-output
    python intune_collect.py --only devices,bitlocker-status
"""
import logging
import sys
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Tuple

from lib.collector import CollectorSpec, RunContext, run_collector
from lib.constants import (
    APP_DEPLOYMENTS_FILE,
    ASR_MODE_AUDIT,
    ASR_MODE_BLOCK,
    ASR_MODE_NOT_CONFIGURED,
    ASR_MODE_OFF,
    ASR_MODE_ORDER,
    ASR_MODE_WARN,
    ASR_RULE_NAMES,
    ASR_RULES_FILE,
    ASR_SETTING_PREFIX,
    ASR_TEMPLATE_FAMILY,
    AUTOPILOT_FILE,
    BITLOCKER_FILE,
    COMPLIANCE_POLICIES_FILE,
    CONFIGURATION_PROFILES_FILE,
    CREDENTIAL_CRITICAL,
    CREDENTIAL_EXPIRED,
    DEVICES_FILE,
    ENDPOINT_ANALYTICS_FILE,
    ENDPOINT_SCORE_GOOD,
    GROUPS_FILE,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_INFO,
    SEVERITY_WARNING,
    USERS_FILE,
    WINDOWS_UPDATE_FILE,
)
from lib.crossref import join_fields, lower_key, resolve_assignment_target
from lib.derive import (
    bytes_to_gb,
    classify_credential,
    days_since,
    days_until,
    format_iso,
    iso_or_none,
    percentage,
    windows_release,
)
from lib.fields import pick, pick_int, pick_list
from lib.graph import GraphError
from lib.insights import InsightRule, evaluate_rules, record_count, summary_count
from lib.models import CollectorResult, count_by, count_where, rate

logger = logging.getLogger(__name__)

MANAGED_DEVICES_PATH = 'deviceManagement/managedDevices'
COMPLIANCE_POLICIES_PATH = 'deviceManagement/deviceCompliancePolicies'
DEVICE_CONFIGURATIONS_PATH = 'deviceManagement/deviceConfigurations'
UPDATE_RING_TYPE = 'microsoft.graph.windowsUpdateForBusinessConfiguration'


def _group_names(ctx: RunContext) -> Dict[str, str]:
    groups = ctx.load_lookup(GROUPS_FILE, 'id')
    return {group_id: g.get('displayName') or group_id for group_id, g in groups.items()}


def policy_platform(odata_type: Optional[str]) -> str:
    """Platform name from an Intune policy @odata.type."""
    name = (odata_type or '').rsplit('.', 1)[-1].lower()
    if name.startswith('windows') or name.startswith('win32'):
        return 'Windows'
    if name.startswith('ios'):
        return 'iOS'
    if name.startswith('macos'):
        return 'macOS'
    if name.startswith('android') or name.startswith('aosp'):
        return 'Android'
    return 'Other'


def _type_name(odata_type: Optional[str]) -> Optional[str]:
    if not odata_type:
        return None
    return odata_type.rsplit('.', 1)[-1]


# =============================================================================
# Autopilot
# =============================================================================

def map_autopilot_device(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    assignment = pick(raw, 'deploymentProfileAssignmentStatus', default='unknown')
    return {
        'id': pick(raw, 'id'),
        'serialNumber': pick(raw, 'serialNumber'),
        'manufacturer': pick(raw, 'manufacturer'),
        'model': pick(raw, 'model'),
        'groupTag': pick(raw, 'groupTag'),
        'purchaseOrder': pick(raw, 'purchaseOrderIdentifier'),
        'enrollmentState': pick(raw, 'enrollmentState', default='unknown'),
        'profileAssignmentStatus': assignment,
        'profileAssigned': str(assignment).lower().startswith('assigned'),
        'userPrincipalName': pick(raw, 'userPrincipalName') or None,
        'azureAdDeviceId': pick(raw, 'azureActiveDirectoryDeviceId'),
        'managedDeviceId': pick(raw, 'managedDeviceId'),
        'lastContacted': iso_or_none(pick(raw, 'lastContactedDateTime')),
        'daysSinceContact': days_since(pick(raw, 'lastContactedDateTime'), ctx.now),
    }


def _build_autopilot(client, ctx: RunContext):
    devices = [map_autopilot_device(raw, ctx)
               for raw in client.get_all('deviceManagement/windowsAutopilotDeviceIdentities')]
    devices.sort(key=lambda d: d['serialNumber'] or '')
    return devices, len(devices)


def collect_autopilot(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Windows Autopilot device identities."""
    return run_collector('autopilot', AUTOPILOT_FILE,
                         lambda ctx: _build_autopilot(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Managed Devices
# =============================================================================

# users.json field -> (source, default) for the primary user
PRIMARY_USER_ENRICHMENT = {
    'primaryUserAccountEnabled': ('accountEnabled', None),
    'primaryUserIsInactive': ('isInactive', None),
    'primaryUserDepartment': ('department', None),
}

AUTOPILOT_ENRICHMENT = {
    'groupTag': ('groupTag', None),
    'profileAssigned': ('profileAssigned', None),
}

_OWNERSHIP = {'company': 'corporate', 'personal': 'personal'}


def map_device(raw: Dict[str, Any], ctx: RunContext,
               users: Dict[str, Dict[str, Any]],
               autopilot: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Project an Intune managed device onto the devices.json schema."""
    settings = ctx.settings
    os_name = pick(raw, 'operatingSystem', default='Unknown')
    os_version = pick(raw, 'osVersion')
    windows_type, release, supported = (windows_release(os_version)
                                        if os_name == 'Windows' else (None, None, None))

    total_gb = bytes_to_gb(pick(raw, 'totalStorageSpaceInBytes'))
    free_gb = bytes_to_gb(pick(raw, 'freeStorageSpaceInBytes'))
    used_pct = percentage(total_gb - free_gb, total_gb) if total_gb and free_gb is not None else None

    days_since_sync = days_since(pick(raw, 'lastSyncDateTime'), ctx.now)
    cert_days = days_until(pick(raw, 'managementCertificateExpirationDate'), ctx.now)
    compliance = pick(raw, 'complianceState', default='unknown')
    upn = pick(raw, 'userPrincipalName') or None
    serial = pick(raw, 'serialNumber') or None

    device = {
        'id': pick(raw, 'id'),
        'deviceName': pick(raw, 'deviceName'),
        'managedDeviceName': pick(raw, 'managedDeviceName'),
        'userPrincipalName': upn,
        'primaryUserDisplayName': pick(raw, 'userDisplayName'),
        'azureAdDeviceId': pick(raw, 'azureADDeviceId'),
        'serialNumber': serial,
        'manufacturer': pick(raw, 'manufacturer'),
        'model': pick(raw, 'model'),
        'os': os_name,
        'osVersion': os_version,
        'windowsType': windows_type,
        'windowsRelease': release,
        'windowsSupported': supported,
        'complianceState': compliance,
        'inGracePeriod': compliance == 'inGracePeriod',
        'complianceGraceExpires': iso_or_none(pick(raw, 'complianceGracePeriodExpirationDateTime')),
        'ownership': _OWNERSHIP.get(pick(raw, 'managedDeviceOwnerType'), 'unknown'),
        'managementAgent': pick(raw, 'managementAgent'),
        'enrollmentType': pick(raw, 'deviceEnrollmentType'),
        'joinType': pick(raw, 'joinType'),
        'deviceCategory': pick(raw, 'deviceCategoryDisplayName'),
        'enrolledDateTime': iso_or_none(pick(raw, 'enrolledDateTime')),
        'lastSync': iso_or_none(pick(raw, 'lastSyncDateTime')),
        'daysSinceSync': days_since_sync,
        'isStale': days_since_sync is None or days_since_sync >= settings.stale_device_days,
        'isEncrypted': bool(pick(raw, 'isEncrypted', default=False)),
        'isSupervised': pick(raw, 'isSupervised'),
        'jailBroken': pick(raw, 'jailBroken'),
        'totalStorageGB': total_gb,
        'freeStorageGB': free_gb,
        'storageUsedPct': used_pct,
        'physicalMemoryGB': bytes_to_gb(pick(raw, 'physicalMemoryInBytes')) or None,
        'imei': pick(raw, 'imei') or None,
        'meid': pick(raw, 'meid') or None,
        'phoneNumber': pick(raw, 'phoneNumber') or None,
        'wifiMacAddress': pick(raw, 'wiFiMacAddress') or None,
        'exchangeAccessState': pick(raw, 'exchangeAccessState'),
        'exchangeLastSync': iso_or_none(pick(raw, 'exchangeLastSuccessfulSyncDateTime')),
        'threatState': pick(raw, 'partnerReportedThreatState'),
        'certExpiryDate': iso_or_none(pick(raw, 'managementCertificateExpirationDate')),
        'daysUntilCertExpiry': cert_days,
        'certStatus': classify_credential(cert_days, settings.credential_critical_days,
                                          settings.credential_warning_days),
    }

    join_fields(device, users.get(lower_key(upn)) if upn else None, PRIMARY_USER_ENRICHMENT)
    device['autopilotEnrolled'] = join_fields(device, autopilot.get(lower_key(serial)) if serial else None,
                                              AUTOPILOT_ENRICHMENT)
    device['flags'] = _device_flags(device)
    return device


def _device_flags(device: Dict[str, Any]) -> List[str]:
    flags = []
    if device['complianceState'] == 'noncompliant':
        flags.append('noncompliant')
    if device['isStale']:
        flags.append('stale')
    if not device['isEncrypted']:
        flags.append('not-encrypted')
    if device['windowsSupported'] is False:
        flags.append('unsupported-os')
    if device['certStatus'] in (CREDENTIAL_EXPIRED, CREDENTIAL_CRITICAL):
        flags.append('cert-expiring')
    if device['primaryUserAccountEnabled'] is False:
        flags.append('disabled-user')
    return flags


def summarize_devices(devices: List[Dict[str, Any]]) -> Dict[str, Any]:
    total = len(devices)
    compliant = count_where(devices, lambda d: d['complianceState'] == 'compliant')
    return {
        'totalDevices': total,
        'compliantDevices': compliant,
        'noncompliantDevices': count_where(devices, lambda d: d['complianceState'] == 'noncompliant'),
        'unknownDevices': count_where(devices, lambda d: d['complianceState'] not in ('compliant', 'noncompliant')),
        'complianceRate': rate(compliant, total),
        'staleDevices': count_where(devices, lambda d: d['isStale']),
        'encryptedDevices': count_where(devices, lambda d: d['isEncrypted']),
        'notEncryptedDevices': count_where(devices, lambda d: not d['isEncrypted']),
        'corporateDevices': count_where(devices, lambda d: d['ownership'] == 'corporate'),
        'personalDevices': count_where(devices, lambda d: d['ownership'] == 'personal'),
        'autopilotEnrolled': count_where(devices, lambda d: d['autopilotEnrolled']),
        'winSupportedCount': count_where(devices, lambda d: d['windowsSupported'] is True),
        'winUnsupportedCount': count_where(devices, lambda d: d['windowsSupported'] is False),
        'certExpired': count_where(devices, lambda d: d['certStatus'] == CREDENTIAL_EXPIRED),
        'certCritical': count_where(devices, lambda d: d['certStatus'] == CREDENTIAL_CRITICAL),
        'osBreakdown': count_by(devices, 'os'),
        'manufacturerBreakdown': count_by(devices, 'manufacturer'),
        'windowsReleaseBreakdown': count_by([d for d in devices if d['windowsType']], 'windowsRelease'),
    }


NONCOMPLIANT_DEVICES_RULE = InsightRule(
    id='noncompliant-devices',
    severity=SEVERITY_CRITICAL,
    category='Device Compliance',
    count=summary_count('noncompliantDevices'),
    description='{count} device(s) are non-compliant',
    recommended_action='Review compliance policy failures and remediate non-compliant devices.',
)


def device_rules(settings) -> List[InsightRule]:
    return [
        replace(NONCOMPLIANT_DEVICES_RULE, threshold=settings.noncompliant_insight_threshold),
        InsightRule(
            id='unsupported-windows',
            severity=SEVERITY_HIGH,
            category='Device Lifecycle',
            count=summary_count('winUnsupportedCount'),
            description='{count} Windows device(s) run a release that is out of support',
            recommended_action='Upgrade devices to a supported Windows release.',
        ),
        InsightRule(
            id='unencrypted-devices',
            severity=SEVERITY_HIGH,
            category='Device Security',
            count=record_count(lambda d: not d['isEncrypted'] and d['os'] == 'Windows'),
            description='{count} Windows device(s) are not encrypted',
            recommended_action='Deploy a BitLocker disk encryption policy.',
        ),
        InsightRule(
            id='stale-devices',
            severity=SEVERITY_WARNING,
            category='Device Hygiene',
            count=summary_count('staleDevices'),
            description=f'{{count}} device(s) have not synced in {settings.stale_device_days}+ days',
            recommended_action='Retire or wipe devices that are no longer in use.',
        ),
        InsightRule(
            id='management-cert-expiring',
            severity=SEVERITY_WARNING,
            category='Device Hygiene',
            count=lambda summary, records: (summary.get('certExpired') or 0) + (summary.get('certCritical') or 0),
            description='{count} device(s) have an expired or expiring management certificate',
            recommended_action='Have affected devices check in so the certificate renews.',
        ),
        InsightRule(
            id='devices-of-disabled-users',
            severity=SEVERITY_INFO,
            category='Device Hygiene',
            count=record_count(lambda d: d['primaryUserAccountEnabled'] is False),
            description='{count} device(s) belong to disabled user accounts',
            recommended_action='Review and retire devices of departed users.',
        ),
    ]


def _build_devices(client, ctx: RunContext):
    users = ctx.load_lookup(USERS_FILE, 'userPrincipalName', normalize=lower_key)
    autopilot = ctx.load_lookup(AUTOPILOT_FILE, 'serialNumber', normalize=lower_key)

    devices = []
    for raw in client.get_all(MANAGED_DEVICES_PATH):
        try:
            devices.append(map_device(raw, ctx, users, autopilot))
        except (AttributeError, TypeError, ValueError) as e:
            ctx.issues.record(f"device {raw.get('id')}", e)
    devices.sort(key=lambda d: (d['deviceName'] or '').lower())

    summary = summarize_devices(devices)
    insights = evaluate_rules(device_rules(ctx.settings), summary, devices)
    return ctx.envelope('devices', devices, summary, insights), len(devices)


def collect_devices(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Intune managed devices with compliance, lifecycle and ownership."""
    return run_collector('devices', DEVICES_FILE,
                         lambda ctx: _build_devices(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('devices', [], summarize_devices([]), []),
                         now=now)


# =============================================================================
# Policies and Profiles (shared)
# =============================================================================

def resolve_assignments(raw: Dict[str, Any], group_names: Dict[str, str]) -> List[Dict[str, Any]]:
    return [resolve_assignment_target(a.get('target'), group_names) for a in pick_list(raw, 'assignments')]


def _fetch_status_overview(client, ctx: RunContext, base_path: str,
                           policy_id: str) -> Optional[Dict[str, Any]]:
    try:
        return client.get(f'{base_path}/{policy_id}/deviceStatusOverview')
    except GraphError as e:
        ctx.issues.record(f"device status for {policy_id}", e)
        return None


def _status_counts(overview: Optional[Dict[str, Any]]) -> Dict[str, Optional[int]]:
    """Counts from a deviceStatusOverview; all None when it was unavailable."""
    names = ('successCount', 'failedCount', 'errorCount', 'conflictCount',
             'pendingCount', 'notApplicableCount')
    if overview is None:
        return {name: None for name in names}
    return {name: pick_int(overview, name, default=0) for name in names}


def _policy_base(raw: Dict[str, Any], group_names: Dict[str, str]) -> Dict[str, Any]:
    assignments = resolve_assignments(raw, group_names)
    odata_type = pick(raw, '@odata.type')
    return {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'description': pick(raw, 'description') or None,
        'odataType': _type_name(odata_type),
        'platform': policy_platform(odata_type),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'lastModified': iso_or_none(pick(raw, 'lastModifiedDateTime')),
        'version': pick(raw, 'version'),
        'assignments': assignments,
        'assignmentCount': len(assignments),
        'isAssigned': bool(assignments),
    }


def _fetch_policies(client, ctx: RunContext, path: str, params=None):
    """Policies with expanded assignments, paired with their device status counts."""
    query = {'$expand': 'assignments'}
    query.update(params or {})
    pairs = []
    for raw in client.get_all(path, params=query):
        overview = _fetch_status_overview(client, ctx, path, raw.get('id'))
        pairs.append((raw, _status_counts(overview)))
    return pairs


# =============================================================================
# Compliance Policies
# =============================================================================

def map_compliance_policy(raw: Dict[str, Any], counts: Dict[str, Optional[int]],
                          group_names: Dict[str, str]) -> Dict[str, Any]:
    policy = _policy_base(raw, group_names)
    compliant = counts['successCount']
    non_compliant = counts['failedCount']
    total = None
    if compliant is not None:
        total = compliant + non_compliant + counts['errorCount'] + counts['conflictCount'] + counts['pendingCount']
    policy.update({
        'compliantCount': compliant,
        'nonCompliantCount': non_compliant,
        'errorCount': counts['errorCount'],
        'conflictCount': counts['conflictCount'],
        'pendingCount': counts['pendingCount'],
        'notApplicableCount': counts['notApplicableCount'],
        'totalDevices': total,
        'complianceRate': rate(compliant, total) if total is not None else None,
        'hasIssues': bool(non_compliant or counts['errorCount'] or counts['conflictCount']),
    })
    return policy


def summarize_compliance_policies(policies: List[Dict[str, Any]]) -> Dict[str, Any]:
    compliant = sum(p['compliantCount'] or 0 for p in policies)
    total = sum(p['totalDevices'] or 0 for p in policies)
    return {
        'totalPolicies': len(policies),
        'assignedPolicies': count_where(policies, lambda p: p['isAssigned']),
        'unassignedPolicies': count_where(policies, lambda p: not p['isAssigned']),
        'policiesWithIssues': count_where(policies, lambda p: p['hasIssues']),
        'compliantDevices': compliant,
        'nonCompliantDevices': sum(p['nonCompliantCount'] or 0 for p in policies),
        'errorDevices': sum(p['errorCount'] or 0 for p in policies),
        'overallComplianceRate': rate(compliant, total),
        'platformBreakdown': count_by(policies, 'platform'),
    }


def compliance_rules(settings) -> List[InsightRule]:
    return [
        InsightRule(
            id='noncompliant-policy-devices',
            severity=SEVERITY_HIGH,
            category='Device Compliance',
            count=summary_count('nonCompliantDevices'),
            description='{count} device evaluation(s) are non-compliant across policies',
            recommended_action='Review the settings failing most often and remediate affected devices.',
            threshold=settings.noncompliant_insight_threshold,
        ),
        InsightRule(
            id='unassigned-compliance-policies',
            severity=SEVERITY_WARNING,
            category='Device Compliance',
            count=summary_count('unassignedPolicies'),
            description='{count} compliance polic(ies) are not assigned',
            recommended_action='Assign or delete unused compliance policies.',
        ),
        InsightRule(
            id='compliance-policy-errors',
            severity=SEVERITY_WARNING,
            category='Device Compliance',
            count=summary_count('errorDevices'),
            description='{count} device evaluation(s) report errors',
            recommended_action='Investigate policy evaluation errors on affected devices.',
        ),
    ]


def _build_compliance_policies(client, ctx: RunContext):
    group_names = _group_names(ctx)
    policies = [map_compliance_policy(raw, counts, group_names)
                for raw, counts in _fetch_policies(client, ctx, COMPLIANCE_POLICIES_PATH)]
    policies.sort(key=lambda p: (-(p['nonCompliantCount'] or 0), (p['displayName'] or '').lower()))

    summary = summarize_compliance_policies(policies)
    insights = evaluate_rules(compliance_rules(ctx.settings), summary, policies)
    return ctx.envelope('policies', policies, summary, insights), len(policies)


def collect_compliance_policies(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect device compliance policies with assignments and device status."""
    return run_collector('compliance-policies', COMPLIANCE_POLICIES_FILE,
                         lambda ctx: _build_compliance_policies(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('policies', [], summarize_compliance_policies([]), []),
                         now=now)


# =============================================================================
# Configuration Profiles
# =============================================================================

def map_configuration_profile(raw: Dict[str, Any], counts: Dict[str, Optional[int]],
                              group_names: Dict[str, str]) -> Dict[str, Any]:
    profile = _policy_base(raw, group_names)
    success = counts['successCount']
    errors = None
    total = None
    if success is not None:
        errors = counts['errorCount'] + counts['failedCount']
        total = success + errors + counts['conflictCount'] + counts['pendingCount']
    profile.update({
        'profileType': profile.pop('odataType'),
        'successCount': success,
        'errorCount': errors,
        'conflictCount': counts['conflictCount'],
        'pendingCount': counts['pendingCount'],
        'notApplicableCount': counts['notApplicableCount'],
        'totalDevices': total,
        'successRate': rate(success, total) if total is not None else None,
        'hasErrors': bool(errors),
        'hasConflicts': bool(counts['conflictCount']),
    })
    return profile


def summarize_configuration_profiles(profiles: List[Dict[str, Any]]) -> Dict[str, Any]:
    success = sum(p['successCount'] or 0 for p in profiles)
    total = sum(p['totalDevices'] or 0 for p in profiles)
    return {
        'totalProfiles': len(profiles),
        'assignedProfiles': count_where(profiles, lambda p: p['isAssigned']),
        'unassignedProfiles': count_where(profiles, lambda p: not p['isAssigned']),
        'profilesWithErrors': count_where(profiles, lambda p: p['hasErrors']),
        'profilesWithConflicts': count_where(profiles, lambda p: p['hasConflicts']),
        'successDevices': success,
        'errorDevices': sum(p['errorCount'] or 0 for p in profiles),
        'conflictDevices': sum(p['conflictCount'] or 0 for p in profiles),
        'overallSuccessRate': rate(success, total),
        'platformBreakdown': count_by(profiles, 'platform'),
        'typeBreakdown': count_by(profiles, 'profileType'),
    }


PROFILE_RULES = [
    InsightRule(
        id='profile-conflicts',
        severity=SEVERITY_HIGH,
        category='Configuration',
        count=summary_count('profilesWithConflicts'),
        description='{count} configuration profile(s) have setting conflicts',
        recommended_action='Resolve overlapping settings between profiles targeting the same devices.',
    ),
    InsightRule(
        id='profile-errors',
        severity=SEVERITY_WARNING,
        category='Configuration',
        count=summary_count('profilesWithErrors'),
        description='{count} configuration profile(s) report device errors',
        recommended_action='Review per-setting failures for the affected profiles.',
    ),
    InsightRule(
        id='unassigned-profiles',
        severity=SEVERITY_INFO,
        category='Configuration',
        count=summary_count('unassignedProfiles'),
        description='{count} configuration profile(s) are not assigned',
        recommended_action='Assign or delete unused configuration profiles.',
    ),
]


def _build_configuration_profiles(client, ctx: RunContext):
    group_names = _group_names(ctx)
    profiles = [map_configuration_profile(raw, counts, group_names)
                for raw, counts in _fetch_policies(client, ctx, DEVICE_CONFIGURATIONS_PATH)]
    profiles.sort(key=lambda p: (not (p['hasErrors'] or p['hasConflicts']), (p['displayName'] or '').lower()))

    summary = summarize_configuration_profiles(profiles)
    insights = evaluate_rules(PROFILE_RULES, summary, profiles)
    return ctx.envelope('profiles', profiles, summary, insights), len(profiles)


def collect_configuration_profiles(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect device configuration profiles with assignments and deployment status."""
    return run_collector('configuration-profiles', CONFIGURATION_PROFILES_FILE,
                         lambda ctx: _build_configuration_profiles(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('profiles', [], summarize_configuration_profiles([]), []),
                         now=now)


# =============================================================================
# BitLocker
# =============================================================================

def _fetch_recovery_keys(client, ctx: RunContext) -> Optional[Dict[str, int]]:
    """Escrowed recovery key count per Entra device id; None when unavailable."""
    try:
        keys = client.get_all('informationProtection/bitlocker/recoveryKeys')
    except GraphError as e:
        ctx.issues.record('BitLocker recovery keys unavailable (requires BitlockerKey.ReadBasic.All)',
                          e, level=logging.WARNING)
        return None
    counts: Dict[str, int] = {}
    for key in keys:
        device_id = lower_key(key.get('deviceId'))
        if device_id:
            counts[device_id] = counts.get(device_id, 0) + 1
    return counts


def map_bitlocker_device(raw: Dict[str, Any], ctx: RunContext,
                         key_counts: Optional[Dict[str, int]]) -> Dict[str, Any]:
    encrypted = bool(pick(raw, 'isEncrypted', default=False))
    key_count = None
    if key_counts is not None:
        key_count = key_counts.get(lower_key(pick(raw, 'azureADDeviceId')), 0)
    return {
        'id': pick(raw, 'id'),
        'deviceName': pick(raw, 'deviceName'),
        'userPrincipalName': pick(raw, 'userPrincipalName') or None,
        'azureAdDeviceId': pick(raw, 'azureADDeviceId'),
        'serialNumber': pick(raw, 'serialNumber') or None,
        'manufacturer': pick(raw, 'manufacturer'),
        'model': pick(raw, 'model'),
        'osVersion': pick(raw, 'osVersion'),
        'complianceState': pick(raw, 'complianceState', default='unknown'),
        'lastSyncDateTime': iso_or_none(pick(raw, 'lastSyncDateTime')),
        'daysSinceSync': days_since(pick(raw, 'lastSyncDateTime'), ctx.now),
        'isEncrypted': encrypted,
        'encryptionState': 'encrypted' if encrypted else 'notEncrypted',
        'recoveryKeyCount': key_count,
        'hasRecoveryKey': key_count > 0 if key_count is not None else None,
        'needsEncryption': not encrypted,
    }


def summarize_bitlocker(devices: List[Dict[str, Any]]) -> Dict[str, Any]:
    encrypted = count_where(devices, lambda d: d['isEncrypted'])
    keys_known = any(d['hasRecoveryKey'] is not None for d in devices)
    return {
        'totalDevices': len(devices),
        'encryptedDevices': encrypted,
        'notEncryptedDevices': len(devices) - encrypted,
        'encryptionRate': rate(encrypted, len(devices)),
        'devicesWithRecoveryKeys': count_where(devices, lambda d: d['hasRecoveryKey']) if keys_known else None,
        'encryptedWithoutRecoveryKey': (count_where(devices, lambda d: d['isEncrypted'] and d['hasRecoveryKey'] is False)
                                        if keys_known else None),
        'manufacturerBreakdown': count_by(devices, 'manufacturer'),
    }


BITLOCKER_RULES = [
    InsightRule(
        id='not-encrypted',
        severity=SEVERITY_HIGH,
        category='Encryption',
        count=summary_count('notEncryptedDevices'),
        description='{count} Windows device(s) are not BitLocker encrypted',
        recommended_action='Target unencrypted devices with an Endpoint Security disk encryption policy.',
    ),
    InsightRule(
        id='missing-recovery-key',
        severity=SEVERITY_WARNING,
        category='Encryption',
        count=summary_count('encryptedWithoutRecoveryKey'),
        description='{count} encrypted device(s) have no recovery key escrowed in Entra ID',
        recommended_action='Require recovery key backup to Entra ID before enabling BitLocker.',
    ),
]


def _build_bitlocker(client, ctx: RunContext):
    raw_devices = client.get_all(MANAGED_DEVICES_PATH, params={'$filter': "operatingSystem eq 'Windows'"})
    key_counts = _fetch_recovery_keys(client, ctx)

    devices = [map_bitlocker_device(raw, ctx, key_counts) for raw in raw_devices]
    devices.sort(key=lambda d: (d['isEncrypted'], (d['deviceName'] or '').lower()))

    summary = summarize_bitlocker(devices)
    insights = evaluate_rules(BITLOCKER_RULES, summary, devices)
    return ctx.envelope('devices', devices, summary, insights), len(devices)


def collect_bitlocker_status(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect BitLocker encryption state and recovery key escrow for Windows devices."""
    return run_collector('bitlocker-status', BITLOCKER_FILE,
                         lambda ctx: _build_bitlocker(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('devices', [], summarize_bitlocker([]), []),
                         now=now)


# =============================================================================
# Windows Update
# =============================================================================

FEATURE_UPDATE_REPORT = 'FeatureUpdateDeviceState'
FEATURE_UPDATE_COLUMNS = [
    'PolicyId', 'PolicyName', 'DeviceName', 'UPN', 'FeatureUpdateVersion',
    'CurrentDeviceUpdateStatus', 'CurrentDeviceUpdateSubstatus',
    'LatestAlertMessage', 'LastWUScanTimeUTC',
]

UP_TO_DATE_MARKERS = ('complete', 'installed', 'up to date', 'uptodate')
ERROR_MARKERS = ('error', 'fail', 'rollback')


def update_state(status: Optional[str]) -> str:
    """Bucket a feature update device status into upToDate, error or pending."""
    text = (status or '').lower()
    if any(marker in text for marker in ERROR_MARKERS):
        return 'error'
    if any(marker in text for marker in UP_TO_DATE_MARKERS):
        return 'upToDate'
    return 'pending'


def map_update_ring(raw: Dict[str, Any], counts: Dict[str, Optional[int]],
                    group_names: Dict[str, str]) -> Dict[str, Any]:
    assignments = resolve_assignments(raw, group_names)
    success = counts['successCount']
    errors = None if success is None else counts['errorCount'] + counts['failedCount']
    pending = counts['pendingCount']
    total = None if success is None else success + errors + pending
    return {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'description': pick(raw, 'description') or None,
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'lastModifiedDateTime': iso_or_none(pick(raw, 'lastModifiedDateTime')),
        'qualityUpdatesDeferralDays': pick(raw, 'qualityUpdatesDeferralPeriodInDays'),
        'featureUpdatesDeferralDays': pick(raw, 'featureUpdatesDeferralPeriodInDays'),
        'qualityUpdatesPaused': bool(pick(raw, 'qualityUpdatesPaused', default=False)),
        'featureUpdatesPaused': bool(pick(raw, 'featureUpdatesPaused', default=False)),
        'automaticUpdateMode': pick(raw, 'automaticUpdateMode'),
        'microsoftUpdateServiceAllowed': pick(raw, 'microsoftUpdateServiceAllowed'),
        'deadlineForFeatureUpdates': pick(raw, 'deadlineForFeatureUpdatesInDays'),
        'deadlineForQualityUpdates': pick(raw, 'deadlineForQualityUpdatesInDays'),
        'deadlineGracePeriod': pick(raw, 'deadlineGracePeriodInDays'),
        'assignedGroups': assignments,
        'successDevices': success,
        'errorDevices': errors,
        'pendingDevices': pending,
        'complianceRate': rate(success, total) if total is not None else None,
    }


def map_feature_update_profile(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'description': pick(raw, 'description') or None,
        'featureUpdateVersion': pick(raw, 'featureUpdateVersion'),
        'rolloutStart': iso_or_none(pick(raw, 'rolloutSettings.offerStartDateTimeInUTC')),
        'rolloutEnd': iso_or_none(pick(raw, 'rolloutSettings.offerEndDateTimeInUTC')),
        'endOfSupportDate': iso_or_none(pick(raw, 'endOfSupportDate')),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'lastModifiedDateTime': iso_or_none(pick(raw, 'lastModifiedDateTime')),
    }


def map_quality_update_profile(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'description': pick(raw, 'description') or None,
        'expeditedUpdateSettings': pick(raw, 'expeditedUpdateSettings'),
        'releaseDateDisplayName': pick(raw, 'releaseDateDisplayName'),
        'lastModifiedDateTime': iso_or_none(pick(raw, 'lastModifiedDateTime')),
    }


def map_update_device_state(row: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    status = pick(row, 'CurrentDeviceUpdateStatus_loc', 'CurrentDeviceUpdateStatus')
    last_scan = pick(row, 'LastWUScanTimeUTC')
    return {
        'deviceName': pick(row, 'DeviceName'),
        'userPrincipalName': pick(row, 'UPN') or None,
        'policyId': pick(row, 'PolicyId'),
        'policyName': pick(row, 'PolicyName'),
        'featureUpdateVersion': pick(row, 'FeatureUpdateVersion'),
        'updateStatus': update_state(status),
        'reportedStatus': status,
        'updateSubstatus': pick(row, 'CurrentDeviceUpdateSubstatus_loc', 'CurrentDeviceUpdateSubstatus'),
        'errorDetails': pick(row, 'LatestAlertMessage_loc', 'LatestAlertMessage') or None,
        'lastScan': iso_or_none(last_scan),
        'daysSinceScan': days_since(last_scan, ctx.now),
    }


def _optional_list(client, ctx: RunContext, path: str, label: str, beta: bool = False) -> List[Dict[str, Any]]:
    try:
        return client.get_all(path, beta=beta)
    except GraphError as e:
        ctx.issues.record(f"{label} unavailable", e, level=logging.WARNING)
        return []


def _fetch_device_states(client, ctx: RunContext, profiles: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    settings = ctx.settings
    states = []
    for profile in profiles:
        try:
            rows = client.run_export_job(
                FEATURE_UPDATE_REPORT,
                select=FEATURE_UPDATE_COLUMNS,
                filter=f"(PolicyId eq '{profile['id']}')",
                poll_interval=settings.export_poll_interval,
                max_polls=settings.export_max_polls,
            )
        except GraphError as e:
            ctx.issues.record(f"feature update device state for {profile['displayName']}", e,
                              level=logging.WARNING)
            continue
        states.extend(map_update_device_state(row, ctx) for row in rows)
    return states


def summarize_windows_update(rings, feature_updates, quality_updates, device_states) -> Dict[str, Any]:
    up_to_date = count_where(device_states, lambda d: d['updateStatus'] == 'upToDate')
    return {
        'totalRings': len(rings),
        'pausedRings': count_where(rings, lambda r: r['qualityUpdatesPaused'] or r['featureUpdatesPaused']),
        'totalFeaturePolicies': len(feature_updates),
        'totalQualityPolicies': len(quality_updates),
        'totalManagedDevices': len(device_states),
        'devicesUpToDate': up_to_date,
        'devicesPendingUpdate': count_where(device_states, lambda d: d['updateStatus'] == 'pending'),
        'devicesWithErrors': count_where(device_states, lambda d: d['updateStatus'] == 'error'),
        'complianceRate': rate(up_to_date, len(device_states)),
        'ringErrorDevices': sum(r['errorDevices'] or 0 for r in rings),
    }


WINDOWS_UPDATE_RULES = [
    InsightRule(
        id='paused-update-rings',
        severity=SEVERITY_HIGH,
        category='Windows Update',
        count=summary_count('pausedRings'),
        description='{count} update ring(s) have updates paused',
        recommended_action='Resume paused rings once the blocking issue is resolved.',
    ),
    InsightRule(
        id='feature-update-errors',
        severity=SEVERITY_WARNING,
        category='Windows Update',
        count=summary_count('devicesWithErrors'),
        description='{count} device(s) report feature update errors',
        recommended_action='Review the latest alert message for affected devices.',
    ),
    InsightRule(
        id='no-update-rings',
        severity=SEVERITY_WARNING,
        category='Windows Update',
        count=lambda summary, records: 1 if summary.get('totalRings') == 0 else 0,
        description='No Windows Update for Business rings are configured',
        recommended_action='Create update rings to control quality and feature update deployment.',
    ),
]


def _empty_windows_update(ctx: RunContext):
    return {
        'updateRings': [],
        'featureUpdates': [],
        'qualityUpdates': [],
        'deviceCompliance': [],
        'summary': summarize_windows_update([], [], [], []),
        'insights': [],
        'collectionDate': format_iso(ctx.now),
    }


def _build_windows_update(client, ctx: RunContext):
    group_names = _group_names(ctx)
    rings = [map_update_ring(raw, counts, group_names) for raw, counts in _fetch_policies(
        client, ctx, DEVICE_CONFIGURATIONS_PATH, params={'$filter': f"isof('{UPDATE_RING_TYPE}')"})]
    rings.sort(key=lambda r: (r['displayName'] or '').lower())

    feature_updates = [map_feature_update_profile(raw) for raw in _optional_list(
        client, ctx, 'deviceManagement/windowsFeatureUpdateProfiles', 'feature update profiles', beta=True)]
    quality_updates = [map_quality_update_profile(raw) for raw in _optional_list(
        client, ctx, 'deviceManagement/windowsQualityUpdateProfiles', 'quality update profiles', beta=True)]
    device_states = _fetch_device_states(client, ctx, feature_updates)
    device_states.sort(key=lambda d: (d['updateStatus'] != 'error', (d['deviceName'] or '').lower()))

    summary = summarize_windows_update(rings, feature_updates, quality_updates, device_states)
    document = {
        'updateRings': rings,
        'featureUpdates': feature_updates,
        'qualityUpdates': quality_updates,
        'deviceCompliance': device_states,
        'summary': summary,
        'insights': evaluate_rules(WINDOWS_UPDATE_RULES, summary, device_states),
        'collectionDate': format_iso(ctx.now),
    }
    return document, len(rings) + len(feature_updates) + len(quality_updates)


def collect_windows_update_status(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect update rings, update profiles and feature update device state."""
    return run_collector('windows-update-status', WINDOWS_UPDATE_FILE,
                         lambda ctx: _build_windows_update(client, ctx),
                         output_dir, settings, empty=_empty_windows_update, now=now)


# =============================================================================
# Attack Surface Reduction Rules
# =============================================================================

CONFIGURATION_POLICIES_PATH = 'deviceManagement/configurationPolicies'


def asr_mode(definition_id: str, value: str) -> str:
    """Mode suffix of an ASR choice value (block, audit, warn or off)."""
    prefix = definition_id + '_'
    mode = value[len(prefix):] if value.startswith(prefix) else value.rsplit('_', 1)[-1]
    if mode == 'disabled':
        return ASR_MODE_OFF
    return mode


def iter_asr_settings(node: Any) -> Iterator[Tuple[str, str]]:
    """Yield (rule key, mode) for every ASR rule choice in a settings tree."""
    if isinstance(node, list):
        for item in node:
            yield from iter_asr_settings(item)
        return
    if not isinstance(node, dict):
        return

    definition = node.get('settingDefinitionId') or ''
    value = pick(node, 'choiceSettingValue.value')
    if definition.startswith(ASR_SETTING_PREFIX) and isinstance(value, str):
        yield definition[len(ASR_SETTING_PREFIX):], asr_mode(definition, value)
    for child in node.values():
        if isinstance(child, (dict, list)):
            yield from iter_asr_settings(child)


def _fetch_asr_settings(client, ctx: RunContext, policy: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    try:
        return client.get_all(f"{CONFIGURATION_POLICIES_PATH}/{policy.get('id')}/settings", beta=True)
    except GraphError as e:
        ctx.issues.record(f"settings for ASR policy {policy.get('name') or policy.get('id')}", e,
                          level=logging.WARNING)
        return None


def map_asr_policy(raw: Dict[str, Any], settings: Optional[List[Dict[str, Any]]],
                   group_names: Dict[str, str]) -> Dict[str, Any]:
    assignments = resolve_assignments(raw, group_names)
    rules = None
    if settings is not None:
        modes = dict(iter_asr_settings(settings))
        rules = [{'ruleId': key, 'ruleName': ASR_RULE_NAMES.get(key, key), 'mode': modes[key]}
                 for key in sorted(modes)]
    return {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'name', 'displayName'),
        'description': pick(raw, 'description') or None,
        'templateName': pick(raw, 'templateReference.templateDisplayName'),
        'platforms': pick(raw, 'platforms'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'lastModified': iso_or_none(pick(raw, 'lastModifiedDateTime')),
        'assignments': assignments,
        'assignmentCount': len(assignments),
        'isAssigned': bool(assignments),
        'asrRules': rules,
        'ruleCount': len(rules) if rules is not None else None,
    }


def build_rule_roll_up(policies: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    One entry per ASR rule across all policies.

    Mode counts cover every policy. The effective mode and isDeployed only
    consider assigned policies; the strongest assigned mode wins.
    """
    keys = set(ASR_RULE_NAMES)
    for policy in policies:
        keys.update(rule['ruleId'] for rule in policy['asrRules'] or [])

    rules = []
    for key in keys:
        configured = [(policy, rule['mode']) for policy in policies
                      for rule in policy['asrRules'] or [] if rule['ruleId'] == key]
        assigned_modes = {mode for policy, mode in configured if policy['isAssigned']}
        mode = next((m for m in ASR_MODE_ORDER if m in assigned_modes), ASR_MODE_NOT_CONFIGURED)
        rules.append({
            'ruleId': key,
            'ruleName': ASR_RULE_NAMES.get(key, key),
            'mode': mode,
            'blockCount': sum(1 for _, m in configured if m == ASR_MODE_BLOCK),
            'auditCount': sum(1 for _, m in configured if m == ASR_MODE_AUDIT),
            'warnCount': sum(1 for _, m in configured if m == ASR_MODE_WARN),
            'disabledCount': sum(1 for _, m in configured if m == ASR_MODE_OFF),
            'policyCount': len(configured),
            'policies': sorted(policy['displayName'] or policy['id'] for policy, _ in configured),
            'isDeployed': mode in (ASR_MODE_BLOCK, ASR_MODE_AUDIT, ASR_MODE_WARN),
        })

    order = {m: i for i, m in enumerate(ASR_MODE_ORDER + (ASR_MODE_NOT_CONFIGURED,))}
    rules.sort(key=lambda r: (order.get(r['mode'], len(order)), r['ruleName'].lower()))
    return rules


def summarize_asr_rules(policies: List[Dict[str, Any]], rules: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        'totalPolicies': len(policies),
        'assignedPolicies': count_where(policies, lambda p: p['isAssigned']),
        'totalRules': len(rules),
        'deployedRules': count_where(rules, lambda r: r['isDeployed']),
        'rulesInBlock': count_where(rules, lambda r: r['mode'] == ASR_MODE_BLOCK),
        'rulesInAudit': count_where(rules, lambda r: r['mode'] == ASR_MODE_AUDIT),
        'rulesInWarn': count_where(rules, lambda r: r['mode'] == ASR_MODE_WARN),
        'rulesOff': count_where(rules, lambda r: r['mode'] == ASR_MODE_OFF),
        'rulesNotConfigured': count_where(rules, lambda r: r['mode'] == ASR_MODE_NOT_CONFIGURED),
    }


ASR_RULES = [
    InsightRule(
        id='no-asr-policies',
        severity=SEVERITY_HIGH,
        category='Attack Surface Reduction',
        count=lambda summary, records: 1 if summary.get('assignedPolicies') == 0 else 0,
        description='No assigned Attack Surface Reduction policy was found',
        recommended_action='Deploy an endpoint security ASR policy, starting in audit mode.',
    ),
    InsightRule(
        id='asr-rules-not-deployed',
        severity=SEVERITY_WARNING,
        category='Attack Surface Reduction',
        count=record_count(lambda r: not r['isDeployed']),
        description='{count} ASR rule(s) are not enforced by any assigned policy',
        recommended_action='Enable the remaining rules in audit mode and review their impact.',
    ),
    InsightRule(
        id='asr-rules-audit-only',
        severity=SEVERITY_INFO,
        category='Attack Surface Reduction',
        count=summary_count('rulesInAudit'),
        description='{count} ASR rule(s) run in audit mode only',
        recommended_action='Move audited rules to block once the audit events are reviewed.',
    ),
]


def _build_asr_rules(client, ctx: RunContext):
    group_names = _group_names(ctx)
    raw_policies = client.get_all(CONFIGURATION_POLICIES_PATH, beta=True, params={
        '$filter': f"templateReference/templateFamily eq '{ASR_TEMPLATE_FAMILY}'",
        '$expand': 'assignments',
    })

    policies = []
    for raw in raw_policies:
        if pick(raw, 'templateReference.templateFamily') not in (None, ASR_TEMPLATE_FAMILY):
            continue
        policies.append(map_asr_policy(raw, _fetch_asr_settings(client, ctx, raw), group_names))
    policies.sort(key=lambda p: (p['displayName'] or '').lower())

    rules = build_rule_roll_up(policies)
    summary = summarize_asr_rules(policies, rules)
    insights = evaluate_rules(ASR_RULES, summary, rules)
    return ctx.envelope('rulesArray', rules, summary, insights, extra={'policies': policies}), len(policies)


def collect_asr_rules(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect endpoint security ASR policies and a per-rule deployment roll-up."""
    return run_collector('asr-rules', ASR_RULES_FILE,
                         lambda ctx: _build_asr_rules(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('rulesArray', [], summarize_asr_rules([], []), [],
                                                        extra={'policies': []}),
                         now=now)


# =============================================================================
# App Deployments
# =============================================================================

MOBILE_APPS_PATH = 'deviceAppManagement/mobileApps'
APP_INSTALL_REPORT = 'DeviceInstallStatusByApp'
APP_INSTALL_COLUMNS = [
    'DeviceName', 'UserPrincipalName', 'Platform', 'AppVersion',
    'InstallState', 'InstallStateDetail', 'ErrorCode', 'LastModifiedDateTime',
]

INSTALL_STATES = ('installed', 'failed', 'pending', 'notInstalled', 'notApplicable')


def install_state(status: Optional[str]) -> str:
    """Bucket a reported install state."""
    text = (status or '').lower().replace(' ', '')
    if 'fail' in text or 'error' in text:
        return 'failed'
    if 'notapplicable' in text:
        return 'notApplicable'
    if 'notinstalled' in text or 'uninstalled' in text:
        return 'notInstalled'
    if 'pending' in text or 'inprogress' in text:
        return 'pending'
    if 'installed' in text:
        return 'installed'
    return 'unknown'


def map_install_status(row: Dict[str, Any]) -> Dict[str, Any]:
    status = pick(row, 'InstallState_loc', 'InstallState')
    return {
        'deviceName': pick(row, 'DeviceName'),
        'userPrincipalName': pick(row, 'UserPrincipalName') or None,
        'platform': pick(row, 'Platform_loc', 'Platform'),
        'appVersion': pick(row, 'AppVersion') or None,
        'installState': install_state(status),
        'reportedState': status,
        'installStateDetail': pick(row, 'InstallStateDetail_loc', 'InstallStateDetail') or None,
        'errorCode': pick(row, 'ErrorCode') or None,
        'lastModified': iso_or_none(pick(row, 'LastModifiedDateTime')),
    }


def _fetch_install_statuses(client, ctx: RunContext, app: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    settings = ctx.settings
    try:
        rows = client.run_export_job(
            APP_INSTALL_REPORT,
            select=APP_INSTALL_COLUMNS,
            filter=f"(ApplicationId eq '{app['id']}')",
            poll_interval=settings.export_poll_interval,
            max_polls=settings.export_max_polls,
        )
    except GraphError as e:
        ctx.issues.record(f"install status for {app['displayName'] or app['id']}", e, level=logging.WARNING)
        return None
    statuses = [map_install_status(row) for row in rows]
    statuses.sort(key=lambda s: (s['installState'] != 'failed', (s['deviceName'] or '').lower()))
    return statuses


def map_mobile_app(raw: Dict[str, Any], group_names: Dict[str, str]) -> Dict[str, Any]:
    assignments = resolve_assignments(raw, group_names)
    odata_type = pick(raw, '@odata.type')
    return {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'publisher': pick(raw, 'publisher') or None,
        'appType': _type_name(odata_type),
        'platform': policy_platform(odata_type),
        'version': pick(raw, 'displayVersion', 'versionNumber', 'version', 'bundleVersion', 'productVersion'),
        'publishingState': pick(raw, 'publishingState'),
        'isFeatured': bool(pick(raw, 'isFeatured', default=False)),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'lastModified': iso_or_none(pick(raw, 'lastModifiedDateTime')),
        'assignments': assignments,
        'assignmentCount': len(assignments),
        'isAssigned': bool(assignments),
    }


def apply_install_statuses(app: Dict[str, Any], statuses: Optional[List[Dict[str, Any]]]) -> None:
    """Add install counts; every count is None when statuses were unavailable."""
    counts = {f'{state}Count': None for state in INSTALL_STATES}
    install_rate = None
    if statuses is not None:
        counts = {f'{state}Count': count_where(statuses, lambda s, st=state: s['installState'] == st)
                  for state in INSTALL_STATES}
        attempted = sum(counts[f'{state}Count'] for state in ('installed', 'failed', 'pending', 'notInstalled'))
        install_rate = rate(counts['installedCount'], attempted) if attempted else None

    app.update(counts)
    app['totalDevices'] = len(statuses) if statuses is not None else None
    app['installRate'] = install_rate
    app['deviceStatuses'] = statuses

    flags = []
    if app['failedCount']:
        flags.append('install-failures')
    if not app['isAssigned']:
        flags.append('unassigned')
    app['flags'] = flags


def failed_devices(apps: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Devices with at least one failed install, with the apps that failed."""
    devices: Dict[str, Dict[str, Any]] = {}
    for app in apps:
        for status in app['deviceStatuses'] or []:
            if status['installState'] != 'failed' or not status['deviceName']:
                continue
            device = devices.setdefault(lower_key(status['deviceName']), {
                'deviceName': status['deviceName'],
                'userPrincipalName': status['userPrincipalName'],
                'failedApps': [],
            })
            device['failedApps'].append(app['displayName'] or app['id'])

    result = []
    for device in devices.values():
        device['failedApps'] = sorted(set(device['failedApps']))
        device['failedAppCount'] = len(device['failedApps'])
        result.append(device)
    result.sort(key=lambda d: (-d['failedAppCount'], d['deviceName'].lower()))
    return result


def summarize_app_deployments(apps: List[Dict[str, Any]], failed: List[Dict[str, Any]]) -> Dict[str, Any]:
    installed = sum(a['installedCount'] or 0 for a in apps)
    failed_installs = sum(a['failedCount'] or 0 for a in apps)
    pending = sum(a['pendingCount'] or 0 for a in apps)
    not_installed = sum(a['notInstalledCount'] or 0 for a in apps)
    attempted = installed + failed_installs + pending + not_installed
    return {
        'totalApps': len(apps),
        'assignedApps': count_where(apps, lambda a: a['isAssigned']),
        'unassignedApps': count_where(apps, lambda a: not a['isAssigned']),
        'appsWithFailures': count_where(apps, lambda a: a['failedCount']),
        'appsWithoutStatus': count_where(apps, lambda a: a['isAssigned'] and a['deviceStatuses'] is None),
        'installedInstalls': installed,
        'failedInstalls': failed_installs,
        'pendingInstalls': pending,
        'overallInstallRate': rate(installed, attempted) if attempted else None,
        'impactedDevices': len(failed),
        'platformBreakdown': count_by(apps, 'platform'),
        'appTypeBreakdown': count_by(apps, 'appType'),
    }


APP_DEPLOYMENT_RULES = [
    InsightRule(
        id='app-install-failures',
        severity=SEVERITY_HIGH,
        category='App Deployment',
        count=summary_count('appsWithFailures'),
        description='{count} app(s) have failed installations',
        recommended_action='Review install error codes for the affected devices and fix the app packages.',
    ),
    InsightRule(
        id='unassigned-apps',
        severity=SEVERITY_INFO,
        category='App Deployment',
        count=summary_count('unassignedApps'),
        description='{count} app(s) are not assigned to anyone',
        recommended_action='Assign or remove apps that are no longer deployed.',
    ),
]


def _build_app_deployments(client, ctx: RunContext):
    group_names = _group_names(ctx)
    apps = []
    for raw in client.get_all(MOBILE_APPS_PATH, params={'$expand': 'assignments'}):
        app = map_mobile_app(raw, group_names)
        statuses = _fetch_install_statuses(client, ctx, app) if app['isAssigned'] else []
        apply_install_statuses(app, statuses)
        apps.append(app)
    apps.sort(key=lambda a: (-(a['failedCount'] or 0), (a['displayName'] or '').lower()))

    failed = failed_devices(apps)
    summary = summarize_app_deployments(apps, failed)
    insights = evaluate_rules(APP_DEPLOYMENT_RULES, summary, apps)
    return ctx.envelope('apps', apps, summary, insights, extra={'failedDevices': failed}), len(apps)


def collect_app_deployments(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Intune apps with assignments and per-device install status."""
    return run_collector('app-deployments', APP_DEPLOYMENTS_FILE,
                         lambda ctx: _build_app_deployments(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('apps', [], summarize_app_deployments([], []), [],
                                                        extra={'failedDevices': []}),
                         now=now)


# =============================================================================
# Endpoint Analytics
# =============================================================================

DEVICE_SCORES_PATH = 'deviceManagement/userExperienceAnalyticsDeviceScores'
DEVICE_PERFORMANCE_PATH = 'deviceManagement/userExperienceAnalyticsDevicePerformance'
APP_HEALTH_PATH = 'deviceManagement/userExperienceAnalyticsAppHealthApplicationPerformance'

# devices.json field -> (source, default)
ANALYTICS_DEVICE_ENRICHMENT = {
    'userPrincipalName': ('userPrincipalName', None),
}


def _score(record: Dict[str, Any], *names: str) -> Optional[float]:
    value = pick(record, *names)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return round(float(value), 1)


def _average(values: List[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return round(sum(present) / len(present), 1)


def health_status(score: Optional[float], poor_below: int) -> Optional[str]:
    """Good, Fair or Poor for an endpoint analytics score."""
    if score is None:
        return None
    if score >= ENDPOINT_SCORE_GOOD:
        return 'Good'
    if score >= poor_below:
        return 'Fair'
    return 'Poor'


def map_device_performance(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    boot_ms = pick_int(raw, 'coreBootTimeInMs')
    boot_seconds = round(boot_ms / 1000, 1) if boot_ms is not None else None
    blue_screens = pick_int(raw, 'blueScreenCount')
    return {
        'deviceName': pick(raw, 'deviceName'),
        'model': pick(raw, 'model'),
        'manufacturer': pick(raw, 'manufacturer'),
        'osVersion': pick(raw, 'operatingSystemVersion'),
        'diskType': pick(raw, 'diskType'),
        'bootScore': _score(raw, 'bootScore'),
        'loginScore': _score(raw, 'loginScore'),
        'startupPerformanceScore': _score(raw, 'startupPerformanceScore'),
        'coreBootTimeInMs': boot_ms,
        'groupPolicyBootTimeInMs': pick_int(raw, 'groupPolicyBootTimeInMs'),
        'loginTimeInMs': pick_int(raw, 'coreLoginTimeInMs', 'loginTimeInMs'),
        'bootTimeSeconds': boot_seconds,
        'restartCount': pick_int(raw, 'restartCount'),
        'blueScreenCount': blue_screens,
        'isSlowBoot': boot_seconds is not None and boot_seconds > ctx.settings.slow_boot_seconds,
        'hasBlueScreens': bool(blue_screens),
    }


def map_device_score(raw: Dict[str, Any], ctx: RunContext,
                     devices: Dict[str, Dict[str, Any]],
                     performance: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    score = _score(raw, 'endpointAnalyticsScore')
    status = health_status(score, ctx.settings.poor_endpoint_score)
    reported = pick(raw, 'healthStatus')
    name = pick(raw, 'deviceName')
    perf = performance.get(lower_key(name)) if name else None

    device = {
        'id': pick(raw, 'id'),
        'deviceName': name,
        'userPrincipalName': None,
        'model': pick(raw, 'model'),
        'manufacturer': pick(raw, 'manufacturer'),
        'endpointAnalyticsScore': score,
        'startupPerformanceScore': _score(raw, 'startupPerformanceScore'),
        'appReliabilityScore': _score(raw, 'appReliabilityScore'),
        'workFromAnywhereScore': _score(raw, 'workFromAnywhereScore'),
        'batteryHealthScore': _score(raw, 'batteryHealthScore'),
        'healthStatus': status,
        'reportedHealthStatus': reported,
        'needsAttention': status == 'Poor' or reported == 'needsAttention',
        'bootTimeSeconds': perf['bootTimeSeconds'] if perf else None,
        'isSlowBoot': perf['isSlowBoot'] if perf else None,
    }
    join_fields(device, devices.get(lower_key(name)) if name else None, ANALYTICS_DEVICE_ENRICHMENT)
    return device


def map_app_reliability(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    score = _score(raw, 'appHealthScore')
    return {
        'appName': pick(raw, 'appDisplayName', 'appName'),
        'appPublisher': pick(raw, 'appPublisher'),
        'activeDeviceCount': pick_int(raw, 'activeDeviceCount'),
        'appCrashCount': pick_int(raw, 'appCrashCount'),
        'appHangCount': pick_int(raw, 'appHangCount'),
        'meanTimeToFailureInMinutes': pick_int(raw, 'meanTimeToFailureInMinutes'),
        'healthScore': score,
        'isProblematic': score is not None and score < ctx.settings.poor_endpoint_score,
    }


def summarize_endpoint_analytics(scores, performance, apps) -> Dict[str, Any]:
    return {
        'totalDevices': len(scores),
        'averageScore': _average([d['endpointAnalyticsScore'] for d in scores]),
        'averageStartupScore': _average([d['startupPerformanceScore'] for d in scores]),
        'goodDevices': count_where(scores, lambda d: d['healthStatus'] == 'Good'),
        'fairDevices': count_where(scores, lambda d: d['healthStatus'] == 'Fair'),
        'poorDevices': count_where(scores, lambda d: d['healthStatus'] == 'Poor'),
        'unscoredDevices': count_where(scores, lambda d: d['healthStatus'] is None),
        'needsAttention': count_where(scores, lambda d: d['needsAttention']),
        'averageBootSeconds': _average([p['bootTimeSeconds'] for p in performance]),
        'slowBootDevices': count_where(performance, lambda p: p['isSlowBoot']),
        'blueScreenDevices': count_where(performance, lambda p: p['hasBlueScreens']),
        'totalApps': len(apps),
        'problematicApps': count_where(apps, lambda a: a['isProblematic']),
    }


def endpoint_analytics_rules(settings) -> List[InsightRule]:
    return [
        InsightRule(
            id='poor-endpoint-health',
            severity=SEVERITY_WARNING,
            category='Endpoint Analytics',
            count=summary_count('poorDevices'),
            description=f'{{count}} device(s) score below {settings.poor_endpoint_score} in Endpoint analytics',
            recommended_action='Review startup performance and app reliability on the lowest scoring devices.',
        ),
        InsightRule(
            id='slow-boot-devices',
            severity=SEVERITY_WARNING,
            category='Endpoint Analytics',
            count=summary_count('slowBootDevices'),
            description=f'{{count}} device(s) take longer than {settings.slow_boot_seconds}s to boot',
            recommended_action='Check startup apps, group policy processing and disk type on slow devices.',
        ),
        InsightRule(
            id='blue-screen-devices',
            severity=SEVERITY_WARNING,
            category='Endpoint Analytics',
            count=summary_count('blueScreenDevices'),
            description='{count} device(s) reported blue screens',
            recommended_action='Update drivers and firmware on affected devices.',
        ),
        InsightRule(
            id='problematic-apps',
            severity=SEVERITY_INFO,
            category='Endpoint Analytics',
            count=summary_count('problematicApps'),
            description='{count} app(s) have a low reliability score',
            recommended_action='Update or replace applications with frequent crashes or hangs.',
        ),
    ]


def _build_endpoint_analytics(client, ctx: RunContext):
    devices = ctx.load_lookup(DEVICES_FILE, 'deviceName', records_key='devices', normalize=lower_key)
    raw_scores = client.get_all(DEVICE_SCORES_PATH, beta=True)

    performance = [map_device_performance(raw, ctx) for raw in _optional_list(
        client, ctx, DEVICE_PERFORMANCE_PATH, 'device performance', beta=True)]
    performance.sort(key=lambda p: (not p['isSlowBoot'], (p['deviceName'] or '').lower()))
    by_name = {lower_key(p['deviceName']): p for p in performance if p['deviceName']}

    scores = [map_device_score(raw, ctx, devices, by_name) for raw in raw_scores]
    scores.sort(key=lambda d: (d['endpointAnalyticsScore'] is None, d['endpointAnalyticsScore'] or 0,
                               (d['deviceName'] or '').lower()))

    apps = [map_app_reliability(raw, ctx) for raw in _optional_list(
        client, ctx, APP_HEALTH_PATH, 'app reliability', beta=True)]
    apps.sort(key=lambda a: (a['healthScore'] is None, a['healthScore'] or 0, (a['appName'] or '').lower()))

    summary = summarize_endpoint_analytics(scores, performance, apps)
    insights = evaluate_rules(endpoint_analytics_rules(ctx.settings), summary, scores)
    document = ctx.envelope('deviceScores', scores, summary, insights,
                            extra={'devicePerformance': performance, 'appReliability': apps})
    return document, len(scores)


def collect_endpoint_analytics(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Endpoint analytics device scores, boot performance and app reliability."""
    return run_collector('endpoint-analytics', ENDPOINT_ANALYTICS_FILE,
                         lambda ctx: _build_endpoint_analytics(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope(
                             'deviceScores', [], summarize_endpoint_analytics([], [], []), [],
                             extra={'devicePerformance': [], 'appReliability': []}),
                         now=now)


# =============================================================================
# Main Entry Point
# =============================================================================

# autopilot must run before devices, devices before endpoint-analytics
COLLECTORS = [
    CollectorSpec('autopilot', collect_autopilot),
    CollectorSpec('devices', collect_devices),
    CollectorSpec('compliance-policies', collect_compliance_policies),
    CollectorSpec('configuration-profiles', collect_configuration_profiles),
    CollectorSpec('bitlocker-status', collect_bitlocker_status),
    CollectorSpec('windows-update-status', collect_windows_update_status),
    CollectorSpec('asr-rules', collect_asr_rules),
    CollectorSpec('app-deployments', collect_app_deployments),
    CollectorSpec('endpoint-analytics', collect_endpoint_analytics),
]


def main(argv=None):
    from collect import run_cli
    return run_cli(COLLECTORS, 'TenantScope - Intune Collectors', argv)


if __name__ == '__main__':
    sys.exit(main())
