#!/usr/bin/env python3
"""
TenantScope - Collaboration Collectors
Microsoft Teams and SharePoint Online sites with 30-day usage reports.

Requirements:
- Entra ID App Registration with following API permissions (Application type):
  - Group.Read.All, Channel.ReadBasic.All
  - Reports.Read.All (usage reports)
  - Sites.Read.All (site names)

Usage reports may return concealed (hashed) names when the tenant setting
"Display concealed user, group, and site names in all reports" is on. Teams
are joined on team id and sites on site URL or id, so concealment only
affects the owner names copied from the report.

Usage:
    python collaboration_collect.py -o ./tenantscope-output
"""
import logging
import sys
from typing import Any, Dict, List, Optional

from lib.collector import CollectorSpec, RunContext, run_collector
from lib.constants import COUNT_HEADERS, SHAREPOINT_SITES_FILE, TEAMS_FILE
from lib.crossref import lower_key
from lib.derive import (
    bytes_to_gb,
    classify_activity,
    days_since,
    guest_source_domain,
    iso_or_none,
    percentage,
)
from lib.fields import pick, pick_int, pick_list
from lib.graph import GraphError
from lib.models import CollectorResult, membership_counts

logger = logging.getLogger(__name__)

REPORT_PERIOD = 'D30'
REPORT_PARAMS = {'$format': 'application/json'}


def _fetch_report(client, ctx: RunContext, report: str, label: str) -> Optional[List[Dict[str, Any]]]:
    """Fetch a beta usage report as JSON rows; None when unavailable."""
    try:
        return client.get_all(f"reports/{report}(period='{REPORT_PERIOD}')",
                              params=REPORT_PARAMS, beta=True)
    except GraphError as e:
        ctx.issues.record(f"{label} usage report unavailable", e, level=logging.WARNING)
        return None


# =============================================================================
# Teams
# =============================================================================

TEAM_FILTER = "resourceProvisioningOptions/Any(x:x eq 'Team')"
TEAM_SELECT = 'id,displayName,description,visibility,mail,createdDateTime,classification'


def _team_activity(row: Dict[str, Any]) -> Dict[str, Any]:
    details = pick_list(row, 'details')
    period = details[0] if details else row
    return {
        'lastActivityDate': pick(row, 'lastActivityDate', 'Last Activity Date'),
        'activeUsers': pick_int(period, 'activeUsers', 'Active Users'),
        'activeChannels': pick_int(period, 'activeChannels', 'Active Channels'),
        'postMessages': pick_int(period, 'postMessages', 'Post Messages'),
        'meetingsOrganized': pick_int(period, 'meetingsOrganized', 'Meetings Organized'),
    }


def _fetch_team_related(client, ctx: RunContext, path: str, select: str,
                        max_pages: Optional[int] = None,
                        count: bool = False) -> Optional[List[Dict[str, Any]]]:
    params = {'$select': select}
    headers = None
    if count:
        params['$count'] = 'true'
        headers = COUNT_HEADERS
    try:
        return client.get_all(path, params=params, max_pages=max_pages, headers=headers)
    except GraphError as e:
        ctx.issues.record(path, e)
        return None


def map_team(raw: Dict[str, Any], ctx: RunContext,
             owners: Optional[List[Dict[str, Any]]],
             members: Optional[List[Dict[str, Any]]],
             channels: Optional[List[Dict[str, Any]]],
             activity: Optional[Dict[str, Dict[str, Any]]]) -> Dict[str, Any]:
    """
    Project a team-enabled group with ownership, guests and 30-day activity.

    activity is None when the usage report was unavailable; activity fields
    are then None rather than guessed. Member counts follow membership_counts.
    """
    team_id = pick(raw, 'id')
    membership = membership_counts(members)
    guests = [m for m in members or [] if pick(m, 'userType') == 'Guest']
    guest_domains = {guest_source_domain(pick(g, 'mail'), pick(g, 'userPrincipalName')) for g in guests}

    if activity is None:
        usage = {}
        last_activity = None
        is_inactive = None
        days_inactive = None
    else:
        usage = _team_activity(activity.get(lower_key(team_id)) or {})
        last_activity = usage.get('lastActivityDate')
        status = classify_activity(days_since(last_activity, ctx.now), ctx.settings.inactive_team_days)
        is_inactive = status.is_inactive
        days_inactive = status.days_since_activity

    team = {
        'id': team_id,
        'displayName': pick(raw, 'displayName'),
        'description': pick(raw, 'description') or None,
        'visibility': pick(raw, 'visibility'),
        'mail': pick(raw, 'mail'),
        'classification': pick(raw, 'classification'),
        'createdDateTime': iso_or_none(pick(raw, 'createdDateTime')),
        'daysSinceCreated': days_since(pick(raw, 'createdDateTime'), ctx.now),
        'ownerCount': None if owners is None else len(owners),
        'ownerUpns': None if owners is None else sorted(
            pick(o, 'userPrincipalName', 'displayName', default='unknown') for o in owners),
        'hasNoOwner': owners is not None and not owners,
        'memberCount': membership['memberCount'],
        'memberCountCapped': membership['memberCountCapped'],
        'guestCount': membership['guestCount'],
        'hasGuests': membership['hasGuests'],
        'externalDomains': sorted(d for d in guest_domains if d),
        'channelCount': None if channels is None else len(channels),
        'privateChannelCount': None if channels is None else sum(
            1 for c in channels if pick(c, 'membershipType') == 'private'),
        'lastActivityDate': iso_or_none(last_activity),
        'daysSinceActivity': days_inactive,
        'isInactive': is_inactive,
        'activeUsers': usage.get('activeUsers'),
        'activeChannels': usage.get('activeChannels'),
        'postMessages': usage.get('postMessages'),
        'meetingsOrganized': usage.get('meetingsOrganized'),
    }
    team['flags'] = _team_flags(team)
    return team


def _team_flags(team: Dict[str, Any]) -> List[str]:
    flags = []
    if team['hasNoOwner']:
        flags.append('ownerless')
    elif team['ownerCount'] == 1:
        flags.append('single-owner')
    if team['hasGuests']:
        flags.append('has-guests')
    if team['isInactive']:
        flags.append('inactive')
    if team['visibility'] == 'Public':
        flags.append('public')
    return flags


def _build_teams(client, ctx: RunContext):
    raw_teams = client.get_all('groups', params={'$filter': TEAM_FILTER, '$select': TEAM_SELECT})

    report = _fetch_report(client, ctx, 'getTeamsTeamActivityDetail', 'Teams activity')
    activity = None
    if report is not None:
        activity = {}
        for row in report:
            key = lower_key(pick(row, 'teamId', 'Team Id'))
            if key:
                activity.setdefault(key, row)

    teams = []
    for raw in raw_teams:
        team_id = raw.get('id')
        owners = _fetch_team_related(client, ctx, f'groups/{team_id}/owners',
                                     'id,displayName,userPrincipalName')
        members = _fetch_team_related(client, ctx, f'groups/{team_id}/members',
                                      'id,userType,mail,userPrincipalName',
                                      max_pages=ctx.settings.group_member_page_limit, count=True)
        channels = _fetch_team_related(client, ctx, f'teams/{team_id}/channels', 'id,membershipType')
        teams.append(map_team(raw, ctx, owners, members, channels, activity))

    teams.sort(key=lambda t: (t['displayName'] or '').lower())
    return teams, len(teams)


def collect_teams(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect Microsoft Teams with ownership, guests and activity."""
    return run_collector('teams', TEAMS_FILE,
                         lambda ctx: _build_teams(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# SharePoint Sites
# =============================================================================

PERSONAL_SITE_MARKER = '-my.sharepoint.com/personal/'


def _site_key(url: Optional[str]) -> Optional[str]:
    return url.rstrip('/').lower() if url else None


def map_site(row: Dict[str, Any], ctx: RunContext,
             sites: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    """Project a SharePoint site usage row, enriched with the site's name."""
    settings = ctx.settings
    url = pick(row, 'siteUrl', 'Site URL')
    template = pick(row, 'rootWebTemplate', 'Root Web Template')
    site = sites.get(_site_key(url)) or {}

    last_activity = pick(row, 'lastActivityDate', 'Last Activity Date')
    activity = classify_activity(days_since(last_activity, ctx.now), settings.inactive_site_days)
    used_gb = bytes_to_gb(pick(row, 'storageUsedInBytes', 'Storage Used (Byte)'))
    allocated_gb = bytes_to_gb(pick(row, 'storageAllocatedInBytes', 'Storage Allocated (Byte)'))

    anonymous = pick_int(row, 'anonymousLinkCount', 'Anonymous Link Count', default=0)
    company = pick_int(row, 'companyLinkCount', 'Company Link Count', default=0)
    guest = pick_int(row, 'secureLinkForGuestCount', 'Secure Link For Guest Count', default=0)
    member = pick_int(row, 'secureLinkForMemberCount', 'Secure Link For Member Count', default=0)
    external_sharing = pick(row, 'externalSharing', 'External Sharing')

    record = {
        'id': pick(row, 'siteId', 'Site Id'),
        'url': url,
        'displayName': pick(site, 'displayName') or _site_name_from_url(url),
        'template': template,
        'isPersonalSite': PERSONAL_SITE_MARKER in (url or '').lower() or template == 'SPSPERS',
        'isGroupConnected': template == 'Group',
        'ownerDisplayName': pick(row, 'ownerDisplayName', 'Owner Display Name') or None,
        'ownerPrincipalName': pick(row, 'ownerPrincipalName', 'Owner Principal Name') or None,
        'createdDateTime': iso_or_none(pick(site, 'createdDateTime')),
        'lastActivityDate': iso_or_none(last_activity),
        'daysSinceActivity': activity.days_since_activity,
        'isInactive': activity.is_inactive,
        'storageUsedGB': used_gb,
        'storageAllocatedGB': allocated_gb,
        'storagePct': percentage(used_gb, allocated_gb),
        'isHighStorage': used_gb is not None and used_gb >= settings.high_storage_threshold_gb,
        'fileCount': pick_int(row, 'fileCount', 'File Count'),
        'activeFileCount': pick_int(row, 'activeFileCount', 'Active File Count'),
        'pageViewCount': pick_int(row, 'pageViewCount', 'Page View Count'),
        'visitedPageCount': pick_int(row, 'visitedPageCount', 'Visited Page Count'),
        'externalSharing': external_sharing,
        'hasExternalSharing': str(external_sharing).lower() in ('true', 'enabled'),
        'anonymousLinkCount': anonymous,
        'companyLinkCount': company,
        'guestLinkCount': guest,
        'memberLinkCount': member,
        'totalSharingLinks': anonymous + company + guest + member,
        'sensitivityLabelId': pick(row, 'siteSensitivityLabelId', 'Site Sensitivity Label Id') or None,
        'unmanagedDevicePolicy': pick(row, 'unmanagedDevicePolicy', 'Unmanaged Device Policy'),
    }
    record['flags'] = _site_flags(record)
    return record


def _site_name_from_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return url.rstrip('/').rsplit('/', 1)[-1]


def _site_flags(site: Dict[str, Any]) -> List[str]:
    flags = []
    if site['isInactive']:
        flags.append('inactive')
    if site['isHighStorage']:
        flags.append('high-storage')
    if site['anonymousLinkCount']:
        flags.append('anonymous-links')
    if site['hasExternalSharing']:
        flags.append('external-sharing')
    return flags


def _is_deleted(row: Dict[str, Any]) -> bool:
    return str(pick(row, 'isDeleted', 'Is Deleted', default='false')).lower() == 'true'


def _fetch_site_names(client, ctx: RunContext) -> Dict[str, Dict[str, Any]]:
    try:
        sites = client.get_all('sites/getAllSites', params={'$select': 'id,displayName,webUrl,createdDateTime'})
    except GraphError as e:
        ctx.issues.record('site names unavailable', e, level=logging.WARNING)
        return {}
    return {_site_key(s.get('webUrl')): s for s in sites if s.get('webUrl')}


def _build_sharepoint_sites(client, ctx: RunContext):
    rows = client.get_all(f"reports/getSharePointSiteUsageDetail(period='{REPORT_PERIOD}')",
                          params=REPORT_PARAMS, beta=True)
    names = _fetch_site_names(client, ctx)

    sites = [map_site(row, ctx, names) for row in rows if not _is_deleted(row)]
    sites.sort(key=lambda s: (-(s['storageUsedGB'] or 0), s['url'] or ''))
    return sites, len(sites)


def collect_sharepoint_sites(client, output_dir: str, settings=None, now=None) -> CollectorResult:
    """Collect SharePoint site usage, storage and sharing links."""
    return run_collector('sharepoint-sites', SHAREPOINT_SITES_FILE,
                         lambda ctx: _build_sharepoint_sites(client, ctx),
                         output_dir, settings, now=now)


# =============================================================================
# Main Entry Point
# =============================================================================

COLLECTORS = [
    CollectorSpec('teams', collect_teams),
    CollectorSpec('sharepoint-sites', collect_sharepoint_sites),
]


def main(argv=None):
    from collect import run_cli
    return run_cli(COLLECTORS, 'TenantScope - Collaboration Collectors', argv)


if __name__ == '__main__':
    sys.exit(main())
