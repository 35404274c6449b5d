#!/usr/bin/env python3
"""
TenantScope - Application & Governance Collectors
Enterprise applications, app registration credentials, directory audit
logs and PIM role activity from Microsoft Graph.

Requirements:
- Entra ID App Registration with following API permissions (Application type):
  - Application.Read.All
  - AuditLog.Read.All (directory audits)
  - RoleManagement.Read.Directory (PIM requests; needs Entra ID P2)

Usage:
    python apps_collect.py -o ./tenantscope-output
    python apps_collect.py --only service-principal-secrets
"""
import logging
import sys
from datetime import timedelta
from typing import Any, Dict, List, Optional

from lib.collector import CollectorSpec, RunContext, run_collector
from lib.constants import (
    AUDIT_LOGS_FILE,
    CREDENTIAL_CRITICAL,
    CREDENTIAL_EXPIRED,
    CREDENTIAL_HEALTHY,
    CREDENTIAL_UNKNOWN,
    CREDENTIAL_WARNING,
    ENTERPRISE_APPS_FILE,
    HIGH_PRIVILEGE_ROLES,
    MICROSOFT_TENANT_IDS,
    PIM_ACTIVITY_FILE,
    SERVICE_PRINCIPAL_SECRETS_FILE,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_WARNING,
    USERS_FILE,
)
from lib.crossref import join_fields
from lib.derive import (
    classify_credential,
    classify_urgency,
    days_since,
    days_until,
    format_iso,
    iso_or_none,
)
from lib.fields import pick, pick_list
from lib.graph import GraphError
from lib.insights import InsightRule, evaluate_rules, record_count, summary_count
from lib.models import CollectorResult, count_by, count_where

logger = logging.getLogger(__name__)

# Worst first
CREDENTIAL_STATUS_ORDER = [
    CREDENTIAL_EXPIRED,
    CREDENTIAL_CRITICAL,
    CREDENTIAL_WARNING,
    CREDENTIAL_HEALTHY,
    CREDENTIAL_UNKNOWN,
]


def worst_status(statuses: List[str]) -> Optional[str]:
    """Most urgent credential status in a list; None for no credentials."""
    if not statuses:
        return None
    return min(statuses, key=CREDENTIAL_STATUS_ORDER.index)


def map_credential(raw: Dict[str, Any], ctx: RunContext, credential_type: str) -> Dict[str, Any]:
    """Project a password or key credential with expiry status and urgency."""
    settings = ctx.settings
    days = days_until(pick(raw, 'endDateTime'), ctx.now)
    return {
        'keyId': pick(raw, 'keyId'),
        'displayName': pick(raw, 'displayName') or None,
        'type': credential_type,
        'startDateTime': iso_or_none(pick(raw, 'startDateTime')),
        'endDateTime': iso_or_none(pick(raw, 'endDateTime')),
        'daysUntilExpiry': days,
        'status': classify_credential(days, settings.credential_critical_days,
                                      settings.credential_warning_days),
        'urgency': classify_urgency(days, settings.urgency_critical_days,
                                    settings.urgency_high_days, settings.urgency_medium_days),
    }


def _credentials(raw: Optional[Dict[str, Any]], ctx: RunContext):
    secrets = [map_credential(c, ctx, 'secret') for c in pick_list(raw, 'passwordCredentials')]
    certificates = [map_credential(c, ctx, 'certificate') for c in pick_list(raw, 'keyCredentials')]
    for creds in (secrets, certificates):
        creds.sort(key=lambda c: (c['daysUntilExpiry'] is None, c['daysUntilExpiry'] or 0))
    return secrets, certificates


def _nearest_expiry(credentials: List[Dict[str, Any]]) -> Optional[int]:
    days = [c['daysUntilExpiry'] for c in credentials if c['daysUntilExpiry'] is not None]
    return min(days) if days else None


# =============================================================================
# Enterprise Apps
# =============================================================================

SERVICE_PRINCIPAL_SELECT = ','.join([
    'id', 'appId', 'displayName', 'accountEnabled', 'appOwnerOrganizationId',
    'publisherName', 'verifiedPublisher', 'servicePrincipalType',
    'appRoleAssignmentRequired', 'tags', 'keyCredentials', 'passwordCredentials',
])

APPLICATION_SELECT = 'id,appId,displayName,createdDateTime,passwordCredentials,keyCredentials'


def app_type(raw: Dict[str, Any]) -> str:
    sp_type = pick(raw, 'servicePrincipalType', default='Application')
    if sp_type == 'ManagedIdentity':
        return 'Managed Identity'
    if sp_type == 'Legacy':
        return 'Legacy'
    if 'WindowsAzureActiveDirectoryIntegratedApp' in pick_list(raw, 'tags'):
        return 'Enterprise App'
    return sp_type


def map_enterprise_app(raw: Dict[str, Any], ctx: RunContext,
                       registration: Optional[Dict[str, Any]],
                       owners: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """Join a service principal with its app registration (when in this tenant)."""
    sp_secrets, sp_certs = _credentials(raw, ctx)
    app_secrets, app_certs = _credentials(registration, ctx)
    secrets = app_secrets + sp_secrets
    certificates = app_certs + sp_certs
    credentials = secrets + certificates

    owner_tenant = pick(raw, 'appOwnerOrganizationId')
    nearest = _nearest_expiry(credentials)
    app = {
        'id': pick(raw, 'id'),
        'appId': pick(raw, 'appId'),
        'displayName': pick(raw, 'displayName'),
        'appType': app_type(raw),
        'publisher': pick(raw, 'verifiedPublisher.displayName', 'publisherName'),
        'verifiedPublisher': pick(raw, 'verifiedPublisher.verifiedPublisherId') is not None,
        'isMicrosoft': owner_tenant in MICROSOFT_TENANT_IDS,
        'accountEnabled': pick(raw, 'accountEnabled', default=True),
        'appRoleAssignmentRequired': pick(raw, 'appRoleAssignmentRequired', default=False),
        'hasAppRegistration': registration is not None,
        'createdDateTime': iso_or_none(pick(registration, 'createdDateTime')),
        'secretCount': len(secrets),
        'certificateCount': len(certificates),
        'hasCredentials': bool(credentials),
        'nearestExpiryDays': nearest,
        'credentialStatus': worst_status([c['status'] for c in credentials]),
        'secrets': secrets,
        'certificates': certificates,
        'owners': None if owners is None else sorted(
            pick(o, 'userPrincipalName', 'displayName', default='unknown') for o in owners),
        'ownerCount': None if owners is None else len(owners),
    }
    return app


def summarize_enterprise_apps(apps: List[Dict[str, Any]]) -> Dict[str, Any]:
    credentials = [c for a in apps for c in a['secrets'] + a['certificates']]
    return {
        'totalApps': len(apps),
        'microsoftApps': count_where(apps, lambda a: a['isMicrosoft']),
        'thirdPartyApps': count_where(apps, lambda a: not a['isMicrosoft']),
        'enabledApps': count_where(apps, lambda a: a['accountEnabled']),
        'disabledApps': count_where(apps, lambda a: not a['accountEnabled']),
        'appsWithSecrets': count_where(apps, lambda a: a['secretCount']),
        'appsWithCertificates': count_where(apps, lambda a: a['certificateCount']),
        'appsWithNoCredentials': count_where(apps, lambda a: not a['hasCredentials']),
        'appsWithOwners': count_where(apps, lambda a: a['ownerCount']),
        'orphanedApps': count_where(apps, lambda a: a['ownerCount'] == 0),
        'expiredCredentials': count_where(credentials, lambda c: c['status'] == CREDENTIAL_EXPIRED),
        'criticalCredentials': count_where(credentials, lambda c: c['status'] == CREDENTIAL_CRITICAL),
        'warningCredentials': count_where(credentials, lambda c: c['status'] == CREDENTIAL_WARNING),
        'healthyCredentials': count_where(credentials, lambda c: c['status'] == CREDENTIAL_HEALTHY),
        'appsByType': count_by(apps, 'appType'),
    }


ENTERPRISE_APP_RULES = [
    InsightRule(
        id='expired-app-credentials',
        severity=SEVERITY_HIGH,
        category='Applications',
        count=record_count(lambda a: a['credentialStatus'] == CREDENTIAL_EXPIRED and a['accountEnabled']),
        description='{count} enabled app(s) hold expired credentials',
        recommended_action='Remove expired secrets and certificates, or rotate them if still in use.',
    ),
    InsightRule(
        id='expiring-app-credentials',
        severity=SEVERITY_WARNING,
        category='Applications',
        count=summary_count('criticalCredentials'),
        description='{count} app credential(s) expire within the critical window',
        recommended_action='Rotate expiring credentials before they cause an outage.',
    ),
    InsightRule(
        id='orphaned-apps',
        severity=SEVERITY_WARNING,
        category='Applications',
        count=record_count(lambda a: a['ownerCount'] == 0 and not a['isMicrosoft']),
        description='{count} third-party app(s) have no owner',
        recommended_action='Assign an owner accountable for each third-party application.',
    ),
]


def _fetch_registrations(client, ctx: RunContext) -> Dict[str, Dict[str, Any]]:
    try:
        registrations = client.get_all('applications', params={'$select': APPLICATION_SELECT})
    except GraphError as e:
        ctx.issues.record('app registrations unavailable', e, level=logging.WARNING)
        return {}
    return {r.get('appId'): r for r in registrations if r.get('appId')}


def _fetch_owners(client, ctx: RunContext, sp_id: str) -> Optional[List[Dict[str, Any]]]:
    try:
        return client.get_all(f'servicePrincipals/{sp_id}/owners',
                              params={'$select': 'id,displayName,userPrincipalName'})
    except GraphError as e:
        ctx.issues.record(f"owners for service principal {sp_id}", e)
        return None


def _build_enterprise_apps(client, ctx: RunContext):
    raw_apps = client.get_all('servicePrincipals', params={'$select': SERVICE_PRINCIPAL_SELECT})
    registrations = _fetch_registrations(client, ctx)

    apps = []
    for raw in raw_apps:
        # Microsoft first-party apps are owned by Microsoft; skip the lookup
        is_microsoft = pick(raw, 'appOwnerOrganizationId') in MICROSOFT_TENANT_IDS
        owners = None if is_microsoft else _fetch_owners(client, ctx, raw.get('id'))
        apps.append(map_enterprise_app(raw, ctx, registrations.get(raw.get('appId')), owners))

    apps.sort(key=lambda a: (a['isMicrosoft'], (a['displayName'] or '').lower()))
    summary = summarize_enterprise_apps(apps)
    insights = evaluate_rules(ENTERPRISE_APP_RULES, summary, apps)
    return ctx.envelope('apps', apps, summary, insights), len(apps)


def collect_enterprise_apps(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect service principals joined with their app registrations."""
    return run_collector('enterprise-apps', ENTERPRISE_APPS_FILE,
                         lambda ctx: _build_enterprise_apps(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('apps', [], summarize_enterprise_apps([]), []),
                         now=now)


# =============================================================================
# App Registration Credentials
# =============================================================================

def map_application_credentials(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    secrets, certificates = _credentials(raw, ctx)
    credentials = secrets + certificates
    return {
        'id': pick(raw, 'id'),
        'appId': pick(raw, 'appId'),
        'displayName': pick(raw, 'displayName'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'secretCount': len(secrets),
        'certificateCount': len(certificates),
        'nearestExpiryDays': _nearest_expiry(credentials),
        'status': worst_status([c['status'] for c in credentials]),
        'secrets': secrets,
        'certificates': certificates,
    }


def summarize_credentials(applications: List[Dict[str, Any]]) -> Dict[str, Any]:
    credentials = [c for a in applications for c in a['secrets'] + a['certificates']]

    def with_status(status: str) -> int:
        return count_where(credentials, lambda c: c['status'] == status)

    return {
        'totalApplications': len(applications),
        'totalSecrets': sum(a['secretCount'] for a in applications),
        'totalCertificates': sum(a['certificateCount'] for a in applications),
        'expiredCredentials': with_status(CREDENTIAL_EXPIRED),
        'criticalCredentials': with_status(CREDENTIAL_CRITICAL),
        'warningCredentials': with_status(CREDENTIAL_WARNING),
        'healthyCredentials': with_status(CREDENTIAL_HEALTHY),
        'urgencyBreakdown': count_by(credentials, 'urgency'),
    }


CREDENTIAL_RULES = [
    InsightRule(
        id='credentials-expiring-critical',
        severity=SEVERITY_CRITICAL,
        category='Credential Expiry',
        count=summary_count('criticalCredentials'),
        description='{count} secret(s) or certificate(s) expire within the critical window',
        recommended_action='Rotate these credentials now and update the consuming services.',
    ),
    InsightRule(
        id='credentials-expired',
        severity=SEVERITY_HIGH,
        category='Credential Expiry',
        count=summary_count('expiredCredentials'),
        description='{count} secret(s) or certificate(s) have expired',
        recommended_action='Delete expired credentials so they cannot be confused with active ones.',
    ),
    InsightRule(
        id='credentials-expiring-soon',
        severity=SEVERITY_WARNING,
        category='Credential Expiry',
        count=summary_count('warningCredentials'),
        description='{count} secret(s) or certificate(s) expire within the warning window',
        recommended_action='Schedule credential rotation.',
    ),
]


def _build_credentials(client, ctx: RunContext):
    applications = [map_application_credentials(raw, ctx)
                    for raw in client.get_all('applications', params={'$select': APPLICATION_SELECT})]
    applications = [a for a in applications if a['secretCount'] or a['certificateCount']]
    applications.sort(key=lambda a: (a['nearestExpiryDays'] is None, a['nearestExpiryDays'] or 0,
                                     (a['displayName'] or '').lower()))

    summary = summarize_credentials(applications)
    insights = evaluate_rules(CREDENTIAL_RULES, summary, applications)
    return ctx.envelope('applications', applications, summary, insights), len(applications)


def collect_service_principal_secrets(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect app registration secrets and certificates with expiry urgency."""
    return run_collector('service-principal-secrets', SERVICE_PRINCIPAL_SECRETS_FILE,
                         lambda ctx: _build_credentials(client, ctx),
                         output_dir, settings,
                         empty=lambda ctx: ctx.envelope('applications', [], summarize_credentials([]), []),
                         now=now)


# =============================================================================
# Audit Logs
# =============================================================================

def map_audit_entry(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    user = pick(raw, 'initiatedBy.user')
    app = pick(raw, 'initiatedBy.app')
    targets = pick_list(raw, 'targetResources')
    target = targets[0] if targets else {}
    return {
        'id': pick(raw, 'id'),
        'activityDateTime': iso_or_none(pick(raw, 'activityDateTime')),
        'activityDisplayName': pick(raw, 'activityDisplayName'),
        'category': pick(raw, 'category'),
        'operationType': pick(raw, 'operationType'),
        'result': pick(raw, 'result'),
        'resultReason': pick(raw, 'resultReason') or None,
        'loggedByService': pick(raw, 'loggedByService'),
        'correlationId': pick(raw, 'correlationId'),
        'initiatedBy': pick(user, 'userPrincipalName', 'displayName') or pick(app, 'displayName'),
        'initiatedByApp': bool(app) and not user,
        'initiatorIpAddress': pick(user, 'ipAddress') or None,
        'targetResource': pick(target, 'displayName', 'userPrincipalName'),
        'targetResourceType': pick(target, 'type'),
        'targetCount': len(targets),
        'daysAgo': days_since(pick(raw, 'activityDateTime'), ctx.now),
    }


def _build_audit_logs(client, ctx: RunContext):
    cutoff = format_iso(ctx.now - timedelta(days=ctx.settings.audit_log_days))
    entries = [map_audit_entry(raw, ctx) for raw in client.get_all(
        'auditLogs/directoryAudits',
        params={'$filter': f"activityDateTime ge {cutoff}"},
        max_pages=ctx.settings.audit_log_page_limit,
    )]
    entries.sort(key=lambda e: e['activityDateTime'] or '', reverse=True)
    return entries, len(entries)


def collect_audit_logs(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect recent directory audit events (bounded by audit_log_page_limit)."""
    return run_collector('audit-logs', AUDIT_LOGS_FILE,
                         lambda ctx: _build_audit_logs(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# PIM Activity
# =============================================================================

PIM_EXPAND = 'principal,roleDefinition'

PIM_PRINCIPAL_ENRICHMENT = {
    'principalDisplayName': ('displayName', None),
    'principalUpn': ('userPrincipalName', None),
}


def map_pim_request(raw: Dict[str, Any], ctx: RunContext, entry_type: str,
                    users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    role_name = pick(raw, 'roleDefinition.displayName')
    principal_id = pick(raw, 'principalId')
    action = pick(raw, 'action')
    request = {
        'id': pick(raw, 'id'),
        'entryType': entry_type,
        'action': action,
        'status': pick(raw, 'status'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'daysAgo': days_since(pick(raw, 'createdDateTime'), ctx.now),
        'roleDefinitionId': pick(raw, 'roleDefinitionId'),
        'roleName': role_name,
        'isHighPrivilege': role_name in HIGH_PRIVILEGE_ROLES,
        'principalId': principal_id,
        'isSelfActivation': action == 'selfActivate',
        'justification': pick(raw, 'justification') or None,
        'scheduleStartDateTime': iso_or_none(pick(raw, 'scheduleInfo.startDateTime')),
        'scheduleEndDateTime': iso_or_none(pick(raw, 'scheduleInfo.expiration.endDateTime')),
    }
    principal = pick(raw, 'principal') or users.get(principal_id)
    join_fields(request, principal, PIM_PRINCIPAL_ENRICHMENT)
    return request


def _build_pim_activity(client, ctx: RunContext):
    users = ctx.load_lookup(USERS_FILE, 'id')
    requests = [map_pim_request(raw, ctx, 'assignment', users) for raw in client.get_all(
        'roleManagement/directory/roleAssignmentScheduleRequests', params={'$expand': PIM_EXPAND})]

    try:
        eligibility = client.get_all('roleManagement/directory/roleEligibilityScheduleRequests',
                                     params={'$expand': PIM_EXPAND})
    except GraphError as e:
        ctx.issues.record('PIM eligibility requests unavailable', e, level=logging.WARNING)
        eligibility = []
    requests.extend(map_pim_request(raw, ctx, 'eligibility', users) for raw in eligibility)

    requests.sort(key=lambda r: r['createdDateTime'] or '', reverse=True)
    return requests, len(requests)


def collect_pim_activity(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect PIM role assignment and eligibility requests."""
    return run_collector('pim-activity', PIM_ACTIVITY_FILE,
                         lambda ctx: _build_pim_activity(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Main Entry Point
# =============================================================================

COLLECTORS = [
    CollectorSpec('enterprise-apps', collect_enterprise_apps),
    CollectorSpec('service-principal-secrets', collect_service_principal_secrets),
    CollectorSpec('audit-logs', collect_audit_logs),
    CollectorSpec('pim-activity', collect_pim_activity),
]


def main(argv=None):
    from collect import run_cli
    return run_cli(COLLECTORS, 'TenantScope - Application & Governance Collectors', argv)


if __name__ == '__main__':
    sys.exit(main())
