"""
Constants for TenantScope collectors.

This module defines all magic strings and numbers used across the codebase
to prevent typos, ensure consistency, and make maintenance easier.
"""

# =============================================================================
# API Endpoints
# =============================================================================

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"

DEFENDER_BASE_URL = "https://api.securitycenter.microsoft.com/api"
DEFENDER_SCOPE = "https://api.securitycenter.microsoft.com/.default"

# Refresh bearer tokens this many seconds before they expire
TOKEN_REFRESH_BUFFER_SECS = 300

# Socket timeout for a single HTTP call
HTTP_TIMEOUT_SECS = 60

# Directory queries with $count=true need eventual consistency
COUNT_HEADERS = {"ConsistencyLevel": "eventual"}

# =============================================================================
# Time Constants
# =============================================================================

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400

ISO_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Entra ID keeps deleted users in the recycle bin for 30 days
DELETED_USER_RETENTION_DAYS = 30

# =============================================================================
# Default Configuration Values
# =============================================================================

DEFAULT_INACTIVE_DAYS = 90
DEFAULT_STALE_DEVICE_DAYS = 90
DEFAULT_STALE_GUEST_DAYS = 90
DEFAULT_RISK_DETECTION_DAYS = 30
DEFAULT_SIGNATURE_AGE_DAYS = 7
DEFAULT_SIGN_IN_DAYS = 7
DEFAULT_AUDIT_LOG_DAYS = 30
DEFAULT_CREDENTIAL_CRITICAL_DAYS = 7
DEFAULT_CREDENTIAL_WARNING_DAYS = 30
DEFAULT_URGENCY_CRITICAL_DAYS = 3
DEFAULT_URGENCY_HIGH_DAYS = 7
DEFAULT_URGENCY_MEDIUM_DAYS = 14
DEFAULT_INACTIVE_SITE_DAYS = 90
DEFAULT_INACTIVE_TEAM_DAYS = 90
DEFAULT_HIGH_STORAGE_THRESHOLD_GB = 20.0
DEFAULT_NONCOMPLIANT_INSIGHT_THRESHOLD = 10
DEFAULT_SLOW_BOOT_SECONDS = 120
DEFAULT_POOR_ENDPOINT_SCORE = 50

# Page caps for bounded-cost endpoints
DEFAULT_GROUP_MEMBER_PAGE_LIMIT = 4
DEFAULT_SIGN_IN_PAGE_LIMIT = 4
DEFAULT_AUDIT_LOG_PAGE_LIMIT = 10
DEFAULT_VULNERABILITY_PAGE_LIMIT = 20

# Retry policy
DEFAULT_RETRY_ATTEMPTS = 4
DEFAULT_RETRY_BASE_DELAY = 2.0
DEFAULT_RETRY_MAX_DELAY = 60.0
DEFAULT_RETRY_BACKOFF = "exponential"
RETRY_BACKOFF_STRATEGIES = ("linear", "exponential")

# Report export polling
DEFAULT_EXPORT_POLL_INTERVAL = 5.0
DEFAULT_EXPORT_MAX_POLLS = 60

DEFAULT_CURRENCY = "USD"

# Number of entries kept in trend-history.json
TREND_HISTORY_LIMIT = 90

# =============================================================================
# Output Files
# =============================================================================

USERS_FILE = "users.json"
GUESTS_FILE = "guests.json"
MFA_STATUS_FILE = "mfa-status.json"
DELETED_USERS_FILE = "deleted-users.json"
GROUPS_FILE = "groups.json"
ADMIN_ROLES_FILE = "admin-roles.json"
LICENSE_SKUS_FILE = "license-skus.json"

IDENTITY_RISK_FILE = "identity-risk-data.json"
RISKY_SIGNINS_FILE = "risky-signins.json"
SIGNIN_LOGS_FILE = "signin-logs.json"
DEFENDER_ALERTS_FILE = "defender-alerts.json"
SECURE_SCORE_FILE = "secure-score.json"
CONDITIONAL_ACCESS_FILE = "conditional-access.json"
NAMED_LOCATIONS_FILE = "named-locations.json"
OAUTH_CONSENT_FILE = "oauth-consent-grants.json"
VULNERABILITIES_FILE = "vulnerabilities.json"
DEFENDER_HEALTH_FILE = "defender-device-health.json"

AUTOPILOT_FILE = "autopilot.json"
DEVICES_FILE = "devices.json"
COMPLIANCE_POLICIES_FILE = "compliance-policies.json"
CONFIGURATION_PROFILES_FILE = "configuration-profiles.json"
BITLOCKER_FILE = "bitlocker-status.json"
WINDOWS_UPDATE_FILE = "windows-update-status.json"
ASR_RULES_FILE = "asr-rules.json"
APP_DEPLOYMENTS_FILE = "app-deployments.json"
ENDPOINT_ANALYTICS_FILE = "endpoint-analytics.json"

ENTERPRISE_APPS_FILE = "enterprise-apps.json"
SERVICE_PRINCIPAL_SECRETS_FILE = "service-principal-secrets.json"
AUDIT_LOGS_FILE = "audit-logs.json"
PIM_ACTIVITY_FILE = "pim-activity.json"

TEAMS_FILE = "teams.json"
SHAREPOINT_SITES_FILE = "sharepoint-sites.json"

METADATA_FILE = "collection-metadata.json"
TREND_HISTORY_FILE = "trend-history.json"

# =============================================================================
# Status Vocabularies
# =============================================================================

URGENCY_EXPIRED = "expired"
URGENCY_CRITICAL = "critical"
URGENCY_HIGH = "high"
URGENCY_MEDIUM = "medium"
URGENCY_NORMAL = "normal"
URGENCY_UNKNOWN = "unknown"

CREDENTIAL_EXPIRED = "expired"
CREDENTIAL_CRITICAL = "critical"
CREDENTIAL_WARNING = "warning"
CREDENTIAL_HEALTHY = "healthy"
CREDENTIAL_UNKNOWN = "unknown"

SEVERITY_CRITICAL = "critical"
SEVERITY_HIGH = "high"
SEVERITY_WARNING = "warning"
SEVERITY_MEDIUM = "medium"
SEVERITY_INFO = "info"

# Sort rank for severity-like strings (higher is more severe)
SEVERITY_RANK = {
    "critical": 5,
    "expired": 5,
    "high": 4,
    "warning": 3,
    "medium": 3,
    "low": 2,
    "informational": 1,
    "info": 1,
    "normal": 1,
    "healthy": 0,
    "unknown": 0,
}

# =============================================================================
# Directory Roles
# =============================================================================

HIGH_PRIVILEGE_ROLES = {
    "Global Administrator",
    "Privileged Role Administrator",
    "Privileged Authentication Administrator",
    "Security Administrator",
    "Conditional Access Administrator",
    "Exchange Administrator",
    "SharePoint Administrator",
    "User Administrator",
    "Application Administrator",
    "Cloud Application Administrator",
    "Intune Administrator",
    "Authentication Administrator",
    "Hybrid Identity Administrator",
}

# Microsoft first-party applications are owned by these tenants
MICROSOFT_TENANT_IDS = {
    "f8cdef31-a31e-4b4a-93e4-5f571e91255a",
    "72f988bf-86f1-41af-91ab-2d7cd011db47",
}

# =============================================================================
# OAuth Scope Risk
# =============================================================================

HIGH_RISK_SCOPES = {
    "Directory.ReadWrite.All",
    "RoleManagement.ReadWrite.Directory",
    "AppRoleAssignment.ReadWrite.All",
    "Application.ReadWrite.All",
    "Mail.ReadWrite",
    "Mail.Send",
    "Files.ReadWrite.All",
    "Sites.ReadWrite.All",
    "Sites.FullControl.All",
    "User.ReadWrite.All",
    "Group.ReadWrite.All",
    "MailboxSettings.ReadWrite",
    "full_access_as_user",
}

MEDIUM_RISK_SCOPES = {
    "Mail.Read",
    "Mail.ReadBasic",
    "Files.Read.All",
    "Sites.Read.All",
    "User.Read.All",
    "Directory.Read.All",
    "Group.Read.All",
    "Contacts.ReadWrite",
    "Calendars.ReadWrite",
    "Notes.ReadWrite.All",
    "Chat.Read",
    "ChannelMessage.Read.All",
}

# =============================================================================
# Windows Lifecycle
# =============================================================================

# Build number -> (product, release, supported)
WINDOWS_BUILDS = {
    "26100": ("Windows 11", "24H2", True),
    "22631": ("Windows 11", "23H2", True),
    "22621": ("Windows 11", "22H2", False),
    "22000": ("Windows 11", "21H2", False),
    "19045": ("Windows 10", "22H2", False),
    "19044": ("Windows 10", "21H2", False),
    "19043": ("Windows 10", "21H1", False),
    "19042": ("Windows 10", "20H2", False),
    "19041": ("Windows 10", "2004", False),
}

# =============================================================================
# License SKUs
# =============================================================================

# Friendly names for common SKU part numbers
SKU_FRIENDLY_NAMES = {
    "SPE_E3": "Microsoft 365 E3",
    "SPE_E5": "Microsoft 365 E5",
    "SPB": "Microsoft 365 Business Premium",
    "O365_BUSINESS_PREMIUM": "Microsoft 365 Business Standard",
    "O365_BUSINESS_ESSENTIALS": "Microsoft 365 Business Basic",
    "ENTERPRISEPACK": "Office 365 E3",
    "ENTERPRISEPREMIUM": "Office 365 E5",
    "STANDARDPACK": "Office 365 E1",
    "EMS": "Enterprise Mobility + Security E3",
    "EMSPREMIUM": "Enterprise Mobility + Security E5",
    "AAD_PREMIUM": "Entra ID P1",
    "AAD_PREMIUM_P2": "Entra ID P2",
    "INTUNE_A": "Intune Plan 1",
    "POWER_BI_PRO": "Power BI Pro",
    "FLOW_FREE": "Power Automate Free",
    "TEAMS_EXPLORATORY": "Teams Exploratory",
    "M365_F1": "Microsoft 365 F1",
    "SPE_F1": "Microsoft 365 F3",
}

# =============================================================================
# Graph Error Codes
# =============================================================================

# Graph error codes that indicate auth/permission issues
GRAPH_PERMISSION_ERROR_CODES = {
    'Authorization_RequestDenied',
    'InvalidAuthenticationToken',
    'Forbidden',
    'accessDenied',
    'UnknownError_Forbidden',
}

# Message fragments that indicate permission or licensing issues
PERMISSION_MESSAGE_PATTERNS = ('license', 'forbidden', 'permission', 'premium')

# Endpoint fragment -> operator hint for permission/licensing failures
PERMISSION_HINTS = [
    ('identityProtection', "requires Entra ID P2 license and IdentityRiskEvent.Read.All / IdentityRiskyUser.Read.All"),
    ('userRegistrationDetails', "requires Entra ID P1/P2 license and AuditLog.Read.All"),
    ('auditLogs/signIns', "requires Entra ID P1/P2 license and AuditLog.Read.All"),
    ('auditLogs/directoryAudits', "requires AuditLog.Read.All"),
    ('signInActivity', "requires Entra ID P1/P2 license and AuditLog.Read.All"),
    ('roleManagement', "requires Entra ID P2 license and RoleManagement.Read.Directory"),
    ('security/', "requires SecurityEvents.Read.All / SecurityAlert.Read.All"),
    ('userExperienceAnalytics', "requires Endpoint analytics enrollment and DeviceManagementManagedDevices.Read.All"),
    ('deviceAppManagement', "requires Intune license and DeviceManagementApps.Read.All"),
    ('deviceManagement', "requires Intune license and DeviceManagementManagedDevices.Read.All / DeviceManagementConfiguration.Read.All"),
    ('bitlocker', "requires BitLockerKey.ReadBasic.All"),
    ('reports/', "requires Reports.Read.All"),
    ('securitycenter', "requires Defender for Endpoint P2 and Vulnerability.Read.All / Machine.Read.All"),
    ('identity/conditionalAccess', "requires Policy.Read.All"),
]

# =============================================================================
# Sign-ins
# =============================================================================

# clientAppUsed values that indicate legacy (non-modern) authentication
LEGACY_AUTH_CLIENTS = {
    "Exchange ActiveSync",
    "IMAP4",
    "POP3",
    "SMTP",
    "Authenticated SMTP",
    "MAPI Over HTTP",
    "Exchange Web Services",
    "Autodiscover",
    "Offline Address Book",
    "Outlook Anywhere (RPC over HTTP)",
    "Exchange Online PowerShell",
    "Other clients",
}

# =============================================================================
# Named Locations
# =============================================================================

# Trusted IP ranges shorter than these prefixes are flagged as broad
BROAD_IPV4_PREFIX = 16
BROAD_IPV6_PREFIX = 32

# =============================================================================
# Attack Surface Reduction
# =============================================================================

ASR_TEMPLATE_FAMILY = "endpointSecurityAttackSurfaceReduction"
ASR_SETTING_PREFIX = "device_vendor_msft_policy_config_defender_attacksurfacereductionrules_"

# Settings catalog rule key -> display name
ASR_RULE_NAMES = {
    "blockabuseofexploitedvulnerablesigneddrivers": "Block abuse of exploited vulnerable signed drivers",
    "blockadobereaderfromcreatingchildprocesses": "Block Adobe Reader from creating child processes",
    "blockallofficeapplicationsfromcreatingchildprocesses": "Block all Office applications from creating child processes",
    "blockcredentialstealingfromwindowslocalsecurityauthoritysubsystem": "Block credential stealing from LSASS",
    "blockexecutablecontentfromemailclientandwebmail": "Block executable content from email client and webmail",
    "blockexecutablefilesrunningunlesstheymeetprevalenceagetrustedlistcriterion": "Block executable files unless they meet a prevalence, age, or trusted list criterion",
    "blockexecutionofpotentiallyobfuscatedscripts": "Block execution of potentially obfuscated scripts",
    "blockjavascriptorvbscriptfromlaunchingdownloadedexecutablecontent": "Block JavaScript or VBScript from launching downloaded executable content",
    "blockofficeapplicationsfromcreatingexecutablecontent": "Block Office applications from creating executable content",
    "blockofficeapplicationsfrominjectingcodeintootherprocesses": "Block Office applications from injecting code into other processes",
    "blockofficecommunicationappfromcreatingchildprocesses": "Block Office communication application from creating child processes",
    "blockpersistencethroughwmieventsubscription": "Block persistence through WMI event subscription",
    "blockprocesscreationsfrompsexecandwmicommands": "Block process creations from PSExec and WMI commands",
    "blockrebootingmachineinsafemode": "Block rebooting machine in Safe Mode",
    "blockuntrustedunsignedprocessesthatrunfromusb": "Block untrusted and unsigned processes that run from USB",
    "blockuseofcopiedorimpersonatedsystemtools": "Block use of copied or impersonated system tools",
    "blockwebshellcreationforservers": "Block Webshell creation for Servers",
    "blockwin32apicallsfromofficemacros": "Block Win32 API calls from Office macros",
    "useadvancedprotectionagainstransomware": "Use advanced protection against ransomware",
}

ASR_MODE_BLOCK = "block"
ASR_MODE_AUDIT = "audit"
ASR_MODE_WARN = "warn"
ASR_MODE_OFF = "off"
ASR_MODE_NOT_CONFIGURED = "notConfigured"

# Strongest mode first; a rule's effective mode is the strongest any policy sets
ASR_MODE_ORDER = (ASR_MODE_BLOCK, ASR_MODE_AUDIT, ASR_MODE_WARN, ASR_MODE_OFF)

# =============================================================================
# Endpoint Analytics
# =============================================================================

ENDPOINT_SCORE_GOOD = 70
