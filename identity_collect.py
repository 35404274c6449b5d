#!/usr/bin/env python3
"""
TenantScope - Identity Collectors
Users, guests, MFA registration, deleted users, groups, admin roles and
license SKUs from Microsoft Graph.

Requirements:
- Entra ID App Registration with following API permissions (Application type):
  - User.Read.All, Group.Read.All, Directory.Read.All
  - AuditLog.Read.All (sign-in activity, MFA registration; needs Entra ID P1/P2)
  - RoleManagement.Read.Directory (admin roles)

Output (in dependency order; later collectors enrich from earlier files):
  mfa-status.json, users.json, guests.json, deleted-users.json,
  groups.json, admin-roles.json, license-skus.json

Usage:
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"

    python identity_collect.py -o ./tenantscope-output
    python identity_collect.py --only users,groups
"""
import logging
import sys
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from lib.collector import CollectorSpec, RunContext, run_collector
from lib.constants import (
    ADMIN_ROLES_FILE,
    COUNT_HEADERS,
    DELETED_USER_RETENTION_DAYS,
    DELETED_USERS_FILE,
    GROUPS_FILE,
    GUESTS_FILE,
    HIGH_PRIVILEGE_ROLES,
    LICENSE_SKUS_FILE,
    MFA_STATUS_FILE,
    SKU_FRIENDLY_NAMES,
    USERS_FILE,
)
from lib.crossref import join_fields
from lib.derive import (
    classify_activity,
    classify_urgency,
    days_since,
    days_until,
    email_domain,
    format_iso,
    guest_source_domain,
    iso_or_none,
    parse_datetime,
    percentage,
)
from lib.fields import count_of, pick, pick_list
from lib.graph import GraphError, is_permission_error
from lib.models import CollectorResult, membership_counts

logger = logging.getLogger(__name__)

MFA_REGISTRATION_PATH = 'reports/authenticationMethods/userRegistrationDetails'

_USER_BASE_FIELDS = [
    'id', 'displayName', 'userPrincipalName', 'mail', 'accountEnabled', 'userType',
    'department', 'jobTitle', 'companyName', 'officeLocation', 'usageLocation',
    'createdDateTime', 'onPremisesSyncEnabled', 'onPremisesLastSyncDateTime',
    'onPremisesDistinguishedName', 'onPremisesSamAccountName', 'onPremisesDomainName',
    'lastPasswordChangeDateTime', 'passwordPolicies', 'assignedLicenses',
]

_GUEST_BASE_FIELDS = [
    'id', 'displayName', 'userPrincipalName', 'mail', 'accountEnabled', 'companyName',
    'createdDateTime', 'creationType', 'externalUserState', 'externalUserStateChangeDateTime',
]


# =============================================================================
# Shared helpers
# =============================================================================

def _get_users(client, ctx: RunContext, user_type: str, base_fields: List[str]) -> List[Dict[str, Any]]:
    """
    List users of one type including sign-in activity.

    signInActivity needs an Entra ID P1/P2 license. Without it the listing is
    repeated without sign-in data and the gap is recorded as a partial failure.
    """
    params = {
        '$select': ','.join(base_fields + ['signInActivity']),
        '$filter': f"userType eq '{user_type}'",
    }
    try:
        return client.get_all('users', params=params)
    except GraphError as e:
        if not is_permission_error(e):
            raise
        ctx.issues.record('signInActivity unavailable (requires Entra ID P1/P2 and AuditLog.Read.All)',
                          e, level=logging.WARNING)
        params['$select'] = ','.join(base_fields)
        return client.get_all('users', params=params)


def _last_sign_in(raw: Dict[str, Any]):
    """Most recent interactive or non-interactive sign-in, as a datetime."""
    candidates = [
        parse_datetime(pick(raw, 'signInActivity.lastSignInDateTime')),
        parse_datetime(pick(raw, 'signInActivity.lastNonInteractiveSignInDateTime')),
    ]
    candidates = [c for c in candidates if c is not None]
    return max(candidates) if candidates else None


def _sort_key_name(record: Dict[str, Any]) -> Tuple[str, str]:
    return ((record.get('displayName') or '').lower(), record.get('id') or '')


# =============================================================================
# MFA Registration
# =============================================================================

def map_mfa_registration(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': pick(raw, 'id'),
        'userPrincipalName': pick(raw, 'userPrincipalName'),
        'displayName': pick(raw, 'userDisplayName'),
        'userType': pick(raw, 'userType'),
        'isAdmin': pick(raw, 'isAdmin', default=False),
        'mfaRegistered': pick(raw, 'isMfaRegistered', default=False),
        'mfaCapable': pick(raw, 'isMfaCapable', default=False),
        'passwordlessCapable': pick(raw, 'isPasswordlessCapable', default=False),
        'ssprRegistered': pick(raw, 'isSsprRegistered', default=False),
        'ssprEnabled': pick(raw, 'isSsprEnabled', default=False),
        'methodsRegistered': pick_list(raw, 'methodsRegistered'),
        'defaultMfaMethod': pick(raw, 'defaultMfaMethod'),
        'lastUpdated': iso_or_none(pick(raw, 'lastUpdatedDateTime')),
    }


def _build_mfa_status(client, ctx: RunContext):
    records = [map_mfa_registration(r) for r in client.get_all(MFA_REGISTRATION_PATH)]
    records.sort(key=lambda r: (r['userPrincipalName'] or '').lower())
    return records, len(records)


def collect_mfa_status(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect per-user authentication method registration."""
    return run_collector('mfa-status', MFA_STATUS_FILE,
                         lambda ctx: _build_mfa_status(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Users
# =============================================================================

def map_user(raw: Dict[str, Any], ctx: RunContext,
             mfa_lookup: Optional[Dict[str, Dict[str, Any]]]) -> Dict[str, Any]:
    """Project a Graph user onto the users.json schema."""
    settings = ctx.settings
    user_id = pick(raw, 'id')
    upn = pick(raw, 'userPrincipalName')

    last_sign_in = _last_sign_in(raw)
    activity = classify_activity(days_since(last_sign_in, ctx.now), settings.inactive_days)

    on_prem_sync = bool(pick(raw, 'onPremisesSyncEnabled', default=False))
    password_policies = pick(raw, 'passwordPolicies', default='') or ''
    sku_ids = [lic.get('skuId') for lic in pick_list(raw, 'assignedLicenses') if lic.get('skuId')]

    mfa_registered = None
    if mfa_lookup is not None:
        registration = mfa_lookup.get(user_id)
        mfa_registered = pick(registration, 'isMfaRegistered') if registration else None

    user = {
        'id': user_id,
        'displayName': pick(raw, 'displayName'),
        'userPrincipalName': upn,
        'mail': pick(raw, 'mail'),
        'domain': email_domain(upn),
        'accountEnabled': pick(raw, 'accountEnabled', default=False),
        'userType': pick(raw, 'userType', default='Member'),
        'department': pick(raw, 'department'),
        'jobTitle': pick(raw, 'jobTitle'),
        'companyName': pick(raw, 'companyName'),
        'officeLocation': pick(raw, 'officeLocation'),
        'usageLocation': pick(raw, 'usageLocation'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'lastSignIn': iso_or_none(pick(raw, 'signInActivity.lastSignInDateTime')),
        'lastNonInteractiveSignIn': iso_or_none(pick(raw, 'signInActivity.lastNonInteractiveSignInDateTime')),
        'daysSinceLastSignIn': activity.days_since_activity,
        'isInactive': activity.is_inactive,
        'onPremSync': on_prem_sync,
        'onPremLastSync': iso_or_none(pick(raw, 'onPremisesLastSyncDateTime')),
        'onPremSyncAge': days_since(pick(raw, 'onPremisesLastSyncDateTime'), ctx.now),
        'onPremDistinguishedName': pick(raw, 'onPremisesDistinguishedName'),
        'onPremSamAccountName': pick(raw, 'onPremisesSamAccountName'),
        'onPremDomainName': pick(raw, 'onPremisesDomainName'),
        'userSource': 'On-premises synced' if on_prem_sync else 'Cloud',
        'lastPasswordChange': iso_or_none(pick(raw, 'lastPasswordChangeDateTime')),
        'passwordAge': days_since(pick(raw, 'lastPasswordChangeDateTime'), ctx.now),
        'passwordNeverExpires': 'DisablePasswordExpiration' in password_policies,
        'assignedSkuIds': sku_ids,
        'licenseCount': len(sku_ids),
        'mfaRegistered': mfa_registered,
    }
    user['flags'] = _user_flags(user)
    return user


def _user_flags(user: Dict[str, Any]) -> List[str]:
    flags = []
    if not user['accountEnabled']:
        flags.append('disabled')
    if user['isInactive']:
        flags.append('inactive')
    if user['mfaRegistered'] is False:
        flags.append('no-mfa')
    if user['passwordNeverExpires']:
        flags.append('password-never-expires')
    if user['accountEnabled'] and user['licenseCount'] == 0:
        flags.append('unlicensed')
    return flags


def _fetch_mfa_lookup(client, ctx: RunContext) -> Optional[Dict[str, Dict[str, Any]]]:
    try:
        registrations = client.get_all(MFA_REGISTRATION_PATH)
    except GraphError as e:
        ctx.issues.record('MFA registration details unavailable', e, level=logging.WARNING)
        return None
    return {r.get('id'): r for r in registrations if r.get('id')}


def _build_users(client, ctx: RunContext):
    raw_users = _get_users(client, ctx, 'Member', _USER_BASE_FIELDS)
    mfa_lookup = _fetch_mfa_lookup(client, ctx)

    users = []
    for raw in raw_users:
        try:
            users.append(map_user(raw, ctx, mfa_lookup))
        except (AttributeError, TypeError, ValueError) as e:
            ctx.issues.record(f"user {raw.get('id')}", e)

    users.sort(key=_sort_key_name)
    return users, len(users)


def collect_users(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect member users with activity, sync, password and MFA state."""
    return run_collector('users', USERS_FILE,
                         lambda ctx: _build_users(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Guests
# =============================================================================

def map_guest(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    last_sign_in = _last_sign_in(raw)
    activity = classify_activity(days_since(last_sign_in, ctx.now), ctx.settings.stale_guest_days)
    return {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'mail': pick(raw, 'mail'),
        'userPrincipalName': pick(raw, 'userPrincipalName'),
        'sourceDomain': guest_source_domain(pick(raw, 'mail'), pick(raw, 'userPrincipalName')),
        'companyName': pick(raw, 'companyName'),
        'accountEnabled': pick(raw, 'accountEnabled', default=False),
        'creationType': pick(raw, 'creationType'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'daysSinceCreated': days_since(pick(raw, 'createdDateTime'), ctx.now),
        'invitationState': pick(raw, 'externalUserState', default='Unknown'),
        'invitationStateChanged': iso_or_none(pick(raw, 'externalUserStateChangeDateTime')),
        'lastSignIn': format_iso(last_sign_in) if last_sign_in else None,
        'daysSinceLastSignIn': activity.days_since_activity,
        'neverSignedIn': last_sign_in is None,
        'isStale': activity.is_inactive,
    }


def _build_guests(client, ctx: RunContext):
    guests = []
    for raw in _get_users(client, ctx, 'Guest', _GUEST_BASE_FIELDS):
        try:
            guests.append(map_guest(raw, ctx))
        except (AttributeError, TypeError, ValueError) as e:
            ctx.issues.record(f"guest {raw.get('id')}", e)
    guests.sort(key=_sort_key_name)
    return guests, len(guests)


def collect_guests(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect B2B guest accounts with invitation state and staleness."""
    return run_collector('guests', GUESTS_FILE,
                         lambda ctx: _build_guests(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Deleted Users
# =============================================================================

def map_deleted_user(raw: Dict[str, Any], ctx: RunContext) -> Dict[str, Any]:
    settings = ctx.settings
    deleted = parse_datetime(pick(raw, 'deletedDateTime'))
    purge = deleted + timedelta(days=DELETED_USER_RETENTION_DAYS) if deleted else None
    days_left = days_until(purge, ctx.now)
    return {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'userPrincipalName': pick(raw, 'userPrincipalName'),
        'mail': pick(raw, 'mail'),
        'userType': pick(raw, 'userType'),
        'department': pick(raw, 'department'),
        'jobTitle': pick(raw, 'jobTitle'),
        'deletedDateTime': format_iso(deleted) if deleted else None,
        'daysSinceDeletion': days_since(deleted, ctx.now),
        'permanentDeletionDate': format_iso(purge) if purge else None,
        'daysUntilPermanentDeletion': days_left,
        'urgency': classify_urgency(days_left, settings.urgency_critical_days,
                                    settings.urgency_high_days, settings.urgency_medium_days),
    }


def _build_deleted_users(client, ctx: RunContext):
    raw_items = client.get_all('directory/deletedItems/microsoft.graph.user', params={
        '$select': 'id,displayName,userPrincipalName,mail,userType,department,jobTitle,deletedDateTime',
    })
    records = [map_deleted_user(raw, ctx) for raw in raw_items]
    # Soonest permanent deletion first; unknown dates last
    records.sort(key=lambda r: (r['daysUntilPermanentDeletion'] is None,
                                r['daysUntilPermanentDeletion'] or 0,
                                (r['displayName'] or '').lower()))
    return records, len(records)


def collect_deleted_users(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect users in the directory recycle bin with time left to restore."""
    return run_collector('deleted-users', DELETED_USERS_FILE,
                         lambda ctx: _build_deleted_users(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Groups
# =============================================================================

GROUP_SELECT = ','.join([
    'id', 'displayName', 'description', 'mail', 'mailNickname', 'mailEnabled', 'securityEnabled',
    'groupTypes', 'membershipRule', 'visibility', 'classification', 'createdDateTime',
    'onPremisesSyncEnabled', 'onPremisesLastSyncDateTime', 'onPremisesSamAccountName',
    'onPremisesDomainName', 'assignedLicenses', 'resourceProvisioningOptions',
])


def group_type(raw: Dict[str, Any]) -> str:
    """Bucket a group into Microsoft 365 / Security / Distribution."""
    group_types = pick_list(raw, 'groupTypes')
    mail_enabled = bool(pick(raw, 'mailEnabled', default=False))
    security_enabled = bool(pick(raw, 'securityEnabled', default=False))
    if 'Unified' in group_types:
        return 'Microsoft 365'
    if security_enabled and mail_enabled:
        return 'Mail-enabled Security'
    if security_enabled:
        return 'Security'
    if mail_enabled:
        return 'Distribution'
    return 'Other'


def map_group(raw: Dict[str, Any], ctx: RunContext,
              members: Optional[List[Dict[str, Any]]],
              owners: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """
    Project a Graph group onto the groups.json schema.

    members/owners are None when their lookup failed; the derived counts
    then stay None rather than claiming zero. A member listing cut short by
    the page cap is reported through memberCountCapped.
    """
    on_prem_sync = bool(pick(raw, 'onPremisesSyncEnabled', default=False))
    licenses = pick_list(raw, 'assignedLicenses')

    membership = membership_counts(members)
    owner_count = len(owners) if owners is not None else None

    group = {
        'id': pick(raw, 'id'),
        'displayName': pick(raw, 'displayName'),
        'description': pick(raw, 'description'),
        'mail': pick(raw, 'mail'),
        'mailNickname': pick(raw, 'mailNickname'),
        'groupType': group_type(raw),
        'isDynamicGroup': 'DynamicMembership' in pick_list(raw, 'groupTypes'),
        'membershipRule': pick(raw, 'membershipRule'),
        'isTeam': 'Team' in pick_list(raw, 'resourceProvisioningOptions'),
        'visibility': pick(raw, 'visibility'),
        'classification': pick(raw, 'classification'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'memberCount': membership['memberCount'],
        'memberCountCapped': membership['memberCountCapped'],
        'guestCount': membership['guestCount'],
        'ownerCount': owner_count,
        'owners': [o.get('displayName') or o.get('userPrincipalName') for o in owners] if owners is not None else None,
        'hasGuests': membership['hasGuests'],
        'hasNoOwner': owner_count == 0 if owner_count is not None else None,
        'licenseAssignmentCount': len(licenses),
        'hasLicenseAssignments': bool(licenses),
        'assignedSkuIds': [lic.get('skuId') for lic in licenses if lic.get('skuId')],
        'onPremSync': on_prem_sync,
        'onPremLastSync': iso_or_none(pick(raw, 'onPremisesLastSyncDateTime')),
        'onPremSyncAge': days_since(pick(raw, 'onPremisesLastSyncDateTime'), ctx.now),
        'onPremSamAccountName': pick(raw, 'onPremisesSamAccountName'),
        'onPremDomainName': pick(raw, 'onPremisesDomainName'),
        'userSource': 'On-premises synced' if on_prem_sync else 'Cloud',
    }

    flags = []
    if group['hasNoOwner']:
        flags.append('no-owner')
    if group['hasGuests']:
        flags.append('has-guests')
    if group['memberCount'] == 0:
        flags.append('empty')
    if group['hasLicenseAssignments']:
        flags.append('license-assignment')
    group['flags'] = flags
    return group


def _fetch_group_related(client, ctx: RunContext, group_id: str, relation: str,
                         select: str, max_pages: Optional[int] = None,
                         count: bool = False) -> Optional[List[Dict[str, Any]]]:
    params = {'$select': select}
    headers = None
    if count:
        params['$count'] = 'true'
        headers = COUNT_HEADERS
    try:
        return client.get_all(f'groups/{group_id}/{relation}', params=params,
                              max_pages=max_pages, headers=headers)
    except GraphError as e:
        ctx.issues.record(f"{relation} for group {group_id}", e)
        return None


def _build_groups(client, ctx: RunContext):
    groups = []
    for raw in client.get_all('groups', params={'$select': GROUP_SELECT}):
        group_id = raw.get('id')
        members = _fetch_group_related(client, ctx, group_id, 'members', 'id,userType',
                                       max_pages=ctx.settings.group_member_page_limit, count=True)
        owners = _fetch_group_related(client, ctx, group_id, 'owners', 'id,displayName,userPrincipalName')
        groups.append(map_group(raw, ctx, members, owners))

    groups.sort(key=_sort_key_name)
    return groups, len(groups)


def collect_groups(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect groups with type, membership, ownership and licensing."""
    return run_collector('groups', GROUPS_FILE,
                         lambda ctx: _build_groups(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Admin Roles
# =============================================================================

# users.json field -> (source, default) for admin role members
ADMIN_MEMBER_ENRICHMENT = {
    'accountEnabled': ('accountEnabled', None),
    'isInactive': ('isInactive', None),
    'daysSinceLastSignIn': ('daysSinceLastSignIn', None),
    'mfaRegistered': ('mfaRegistered', None),
}


def _member_type(member: Dict[str, Any]) -> str:
    odata_type = member.get('@odata.type') or ''
    return odata_type.rsplit('.', 1)[-1] or 'unknown'


def map_admin_role(raw: Dict[str, Any], users: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    members = []
    for m in pick_list(raw, 'members'):
        member = {
            'id': m.get('id'),
            'displayName': m.get('displayName'),
            'userPrincipalName': m.get('userPrincipalName'),
            'memberType': _member_type(m),
        }
        join_fields(member, users.get(m.get('id')), ADMIN_MEMBER_ENRICHMENT)
        members.append(member)
    members.sort(key=lambda m: (m['displayName'] or '').lower())

    role_name = pick(raw, 'displayName')
    return {
        'roleId': pick(raw, 'id'),
        'roleTemplateId': pick(raw, 'roleTemplateId'),
        'roleName': role_name,
        'description': pick(raw, 'description'),
        'isHighPrivilege': role_name in HIGH_PRIVILEGE_ROLES,
        'memberCount': len(members),
        'inactiveMemberCount': sum(1 for m in members if m['isInactive']),
        'noMfaMemberCount': sum(1 for m in members if m['mfaRegistered'] is False),
        'members': members,
    }


def _build_admin_roles(client, ctx: RunContext):
    users = ctx.load_lookup(USERS_FILE, 'id')
    roles = [map_admin_role(raw, users)
             for raw in client.get_all('directoryRoles', params={'$expand': 'members'})]
    roles.sort(key=lambda r: (not r['isHighPrivilege'], -r['memberCount'], (r['roleName'] or '').lower()))
    return roles, len(roles)


def collect_admin_roles(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect activated directory roles with members enriched from users.json."""
    return run_collector('admin-roles', ADMIN_ROLES_FILE,
                         lambda ctx: _build_admin_roles(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# License SKUs
# =============================================================================

def _assignment_counts(sku_id: str, users: Optional[List[Dict[str, Any]]]) -> Dict[str, Optional[int]]:
    """Count assignments of one SKU by user state; None without users.json."""
    if users is None:
        return {'assignedToEnabled': None, 'assignedToDisabled': None,
                'assignedToInactive': None, 'wasteCount': None}
    holders = [u for u in users if sku_id in (u.get('assignedSkuIds') or [])]
    enabled = [u for u in holders if u.get('accountEnabled')]
    disabled = len(holders) - len(enabled)
    inactive = sum(1 for u in enabled if u.get('isInactive'))
    return {
        'assignedToEnabled': len(enabled),
        'assignedToDisabled': disabled,
        'assignedToInactive': inactive,
        'wasteCount': disabled + inactive,
    }


def map_license_sku(raw: Dict[str, Any], ctx: RunContext,
                    users: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    sku_id = pick(raw, 'skuId')
    part_number = pick(raw, 'skuPartNumber')
    purchased = pick(raw, 'prepaidUnits.enabled', default=0)
    assigned = pick(raw, 'consumedUnits', default=0)

    sku = {
        'skuId': sku_id,
        'skuPartNumber': part_number,
        'skuName': SKU_FRIENDLY_NAMES.get(part_number, part_number),
        'capabilityStatus': pick(raw, 'capabilityStatus'),
        'appliesTo': pick(raw, 'appliesTo'),
        'totalPurchased': purchased,
        'suspendedUnits': pick(raw, 'prepaidUnits.suspended', default=0),
        'warningUnits': pick(raw, 'prepaidUnits.warning', default=0),
        'totalAssigned': assigned,
        'available': max(purchased - assigned, 0),
        'utilizationPercent': percentage(assigned, purchased),
        'servicePlanCount': count_of(raw, 'servicePlans'),
    }
    sku.update(_assignment_counts(sku_id, users))

    price = ctx.settings.license_prices.get(part_number)
    waste = sku['wasteCount']
    sku['monthlyCostPerLicense'] = price
    sku['estimatedMonthlyCost'] = round(price * assigned, 2) if price is not None else None
    sku['wasteMonthlyCost'] = round(price * waste, 2) if price is not None and waste is not None else None
    sku['currency'] = ctx.settings.currency
    return sku


def _build_license_skus(client, ctx: RunContext):
    users = ctx.load_records(USERS_FILE)
    skus = [map_license_sku(raw, ctx, users) for raw in client.get_all('subscribedSkus')]
    skus.sort(key=lambda s: (-(s['totalAssigned'] or 0), s['skuPartNumber'] or ''))
    return skus, len(skus)


def collect_license_skus(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect subscribed SKUs with utilisation, waste and cost."""
    return run_collector('license-skus', LICENSE_SKUS_FILE,
                         lambda ctx: _build_license_skus(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Main Entry Point
# =============================================================================

# users must run before admin-roles and license-skus
COLLECTORS = [
    CollectorSpec('mfa-status', collect_mfa_status),
    CollectorSpec('users', collect_users),
    CollectorSpec('guests', collect_guests),
    CollectorSpec('deleted-users', collect_deleted_users),
    CollectorSpec('groups', collect_groups),
    CollectorSpec('admin-roles', collect_admin_roles),
    CollectorSpec('license-skus', collect_license_skus),
]


def main(argv=None):
    from collect import run_cli
    return run_cli(COLLECTORS, 'TenantScope - Identity Collectors', argv)


if __name__ == '__main__':
    sys.exit(main())
