"""
Tests for Intune collectors using unittest.mock.

Covers:
- Autopilot identities
- Managed devices: lifecycle, storage, certificates, users.json/autopilot.json enrichment
- Compliance policies and configuration profiles with device status overviews
- BitLocker status with and without recovery key access
- Windows Update rings, profiles and export-job device state
- ASR rules from endpoint security settings catalog policies
- App deployments with export-job install status and failed device roll-up
- Endpoint analytics scores, boot performance and app reliability
"""
import os
import sys
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lib.config import CollectionSettings
from lib.graph import ExportTimeoutError, GraphError
from lib.utils import read_json, write_json
from intune_collect import (
    APP_HEALTH_PATH,
    COLLECTORS,
    COMPLIANCE_POLICIES_PATH,
    CONFIGURATION_POLICIES_PATH,
    DEVICE_CONFIGURATIONS_PATH,
    DEVICE_PERFORMANCE_PATH,
    DEVICE_SCORES_PATH,
    FEATURE_UPDATE_COLUMNS,
    MANAGED_DEVICES_PATH,
    MOBILE_APPS_PATH,
    asr_mode,
    collect_app_deployments,
    collect_asr_rules,
    collect_autopilot,
    collect_bitlocker_status,
    collect_compliance_policies,
    collect_configuration_profiles,
    collect_devices,
    collect_endpoint_analytics,
    collect_windows_update_status,
    health_status,
    install_state,
    policy_platform,
    update_state,
)

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)
GB = 1024 ** 3
GROUP_TARGET = '#microsoft.graph.groupAssignmentTarget'
ALL_DEVICES_TARGET = '#microsoft.graph.allDevicesAssignmentTarget'


# =============================================================================
# Helpers
# =============================================================================

def ago(days=0):
    return (NOW - timedelta(days=days)).strftime('%Y-%m-%dT%H:%M:%SZ')


def routed_client(lists, objects=None):
    """Mock client: get_all and get answer by path; exception values are raised."""
    client = Mock()
    objects = objects or {}

    def answer(table, path, default):
        value = table.get(path, default)
        if isinstance(value, Exception):
            raise value
        return value

    client.get_all.side_effect = lambda path, **kwargs: answer(lists, path, [])
    client.get.side_effect = lambda path, **kwargs: answer(objects, path, {})
    return client


def overview(base, policy_id, success=0, failed=0, error=0, conflict=0, pending=0, not_applicable=0):
    return {f'{base}/{policy_id}/deviceStatusOverview': {
        'successCount': success, 'failedCount': failed, 'errorCount': error,
        'conflictCount': conflict, 'pendingCount': pending, 'notApplicableCount': not_applicable,
    }}


def load(output_dir, name):
    return read_json(os.path.join(output_dir, name))


@pytest.fixture
def output_dir(tmp_path):
    return str(tmp_path)


# =============================================================================
# Helpers under test
# =============================================================================

class TestPolicyPlatform:
    """Tests for policy_platform."""

    @pytest.mark.parametrize('odata_type,expected', [
        ('#microsoft.graph.windows10CompliancePolicy', 'Windows'),
        ('#microsoft.graph.win32LobApp', 'Windows'),
        ('#microsoft.graph.iosCompliancePolicy', 'iOS'),
        ('#microsoft.graph.macOSGeneralDeviceConfiguration', 'macOS'),
        ('#microsoft.graph.androidWorkProfileCompliancePolicy', 'Android'),
        ('#microsoft.graph.somethingElse', 'Other'),
        (None, 'Other'),
    ])
    def test_platform(self, odata_type, expected):
        assert policy_platform(odata_type) == expected


class TestUpdateState:
    """Tests for update_state."""

    @pytest.mark.parametrize('status,expected', [
        ('Installed', 'upToDate'),
        ('Update complete', 'upToDate'),
        ('Error', 'error'),
        ('Rollback initiated', 'error'),
        ('Offering', 'pending'),
        (None, 'pending'),
    ])
    def test_state(self, status, expected):
        assert update_state(status) == expected


# =============================================================================
# Autopilot
# =============================================================================

class TestAutopilot:
    """Tests for collect_autopilot."""

    def test_collect(self, output_dir):
        client = routed_client({'deviceManagement/windowsAutopilotDeviceIdentities': [
            {'id': 'a2', 'serialNumber': 'SN-2', 'deploymentProfileAssignmentStatus': 'notAssigned',
             'userPrincipalName': ''},
            {'id': 'a1', 'serialNumber': 'SN-1', 'groupTag': 'Sales',
             'deploymentProfileAssignmentStatus': 'assignedUnkownSyncState',
             'lastContactedDateTime': ago(3)},
        ]})

        result = collect_autopilot(client, output_dir, now=NOW)
        records = load(output_dir, 'autopilot.json')

        assert result.count == 2
        assert [r['serialNumber'] for r in records] == ['SN-1', 'SN-2']
        assert records[0]['profileAssigned'] is True
        assert records[0]['daysSinceContact'] == 3
        assert records[1]['profileAssigned'] is False
        assert records[1]['userPrincipalName'] is None


# =============================================================================
# Managed Devices
# =============================================================================

WINDOWS_DEVICE = {
    'id': 'd1', 'deviceName': 'PC-01', 'operatingSystem': 'Windows', 'osVersion': '10.0.19045.1234',
    'complianceState': 'noncompliant', 'lastSyncDateTime': ago(100), 'isEncrypted': False,
    'userPrincipalName': 'Pat@Contoso.com', 'serialNumber': 'sn-1', 'manufacturer': 'Dell',
    'managedDeviceOwnerType': 'company',
    'totalStorageSpaceInBytes': 256 * GB, 'freeStorageSpaceInBytes': 64 * GB,
    'managementCertificateExpirationDate': ago(-3),
}

MAC_DEVICE = {
    'id': 'd2', 'deviceName': 'Mac-02', 'operatingSystem': 'macOS', 'osVersion': '14.4',
    'complianceState': 'compliant', 'lastSyncDateTime': ago(1), 'isEncrypted': True,
    'managedDeviceOwnerType': 'personal', 'manufacturer': 'Apple',
}


class TestDevices:
    """Tests for collect_devices."""

    def write_siblings(self, output_dir):
        write_json([{'userPrincipalName': 'pat@contoso.com', 'accountEnabled': False,
                     'isInactive': True, 'department': 'Sales'}],
                   os.path.join(output_dir, 'users.json'))
        write_json([{'serialNumber': 'SN-1', 'groupTag': 'Kiosk', 'profileAssigned': True}],
                   os.path.join(output_dir, 'autopilot.json'))

    def test_collect_with_enrichment(self, output_dir):
        self.write_siblings(output_dir)
        client = routed_client({MANAGED_DEVICES_PATH: [WINDOWS_DEVICE, MAC_DEVICE]})

        result = collect_devices(client, output_dir, now=NOW)
        doc = load(output_dir, 'devices.json')

        assert result.success is True
        assert result.count == 2
        mac, pc = doc['devices']
        assert pc['windowsType'] == 'Windows 10'
        assert pc['windowsRelease'] == '22H2'
        assert pc['windowsSupported'] is False
        assert pc['isStale'] is True
        assert pc['storageUsedPct'] == 75.0
        assert pc['daysUntilCertExpiry'] == 3
        assert pc['certStatus'] == 'critical'
        assert pc['ownership'] == 'corporate'
        assert pc['primaryUserAccountEnabled'] is False
        assert pc['primaryUserDepartment'] == 'Sales'
        assert pc['autopilotEnrolled'] is True
        assert pc['groupTag'] == 'Kiosk'
        assert pc['flags'] == ['noncompliant', 'stale', 'not-encrypted', 'unsupported-os',
                               'cert-expiring', 'disabled-user']

        assert mac['windowsType'] is None
        assert mac['certStatus'] == 'unknown'
        assert mac['autopilotEnrolled'] is False
        assert mac['primaryUserAccountEnabled'] is None
        assert mac['flags'] == []

        summary = doc['summary']
        assert summary['complianceRate'] == 50.0
        assert summary['staleDevices'] == 1
        assert summary['personalDevices'] == 1
        assert summary['winUnsupportedCount'] == 1
        assert summary['certCritical'] == 1
        assert summary['osBreakdown'] == {'Windows': 1, 'macOS': 1}

        assert [i['id'] for i in doc['insights']] == [
            'unsupported-windows', 'unencrypted-devices', 'stale-devices',
            'management-cert-expiring', 'devices-of-disabled-users']

    def test_without_sibling_files(self, output_dir):
        client = routed_client({MANAGED_DEVICES_PATH: [WINDOWS_DEVICE]})

        result = collect_devices(client, output_dir, now=NOW)
        device = load(output_dir, 'devices.json')['devices'][0]

        assert result.success is True
        assert device['primaryUserAccountEnabled'] is None
        assert device['autopilotEnrolled'] is False
        assert device['groupTag'] is None
        assert 'disabled-user' not in device['flags']

    def test_thresholds_from_settings(self, output_dir):
        client = routed_client({MANAGED_DEVICES_PATH: [WINDOWS_DEVICE]})
        settings = CollectionSettings(stale_device_days=120, noncompliant_insight_threshold=0)

        collect_devices(client, output_dir, settings=settings, now=NOW)
        doc = load(output_dir, 'devices.json')

        assert doc['devices'][0]['isStale'] is False
        assert doc['insights'][0]['id'] == 'noncompliant-devices'

    def test_failure_writes_empty_envelope(self, output_dir):
        client = routed_client({MANAGED_DEVICES_PATH: GraphError('Internal error', status_code=500)})

        result = collect_devices(client, output_dir, now=NOW)
        doc = load(output_dir, 'devices.json')

        assert result.success is False
        assert doc['devices'] == []
        assert doc['summary']['totalDevices'] == 0
        assert doc['summary']['complianceRate'] == 0.0


# =============================================================================
# Compliance Policies
# =============================================================================

class TestCompliancePolicies:
    """Tests for collect_compliance_policies."""

    def test_collect(self, output_dir):
        write_json([{'id': 'g1', 'displayName': 'All Staff'}], os.path.join(output_dir, 'groups.json'))
        objects = overview(COMPLIANCE_POLICIES_PATH, 'p1', success=8, failed=2, error=1, pending=1,
                           not_applicable=3)
        objects[f'{COMPLIANCE_POLICIES_PATH}/p2/deviceStatusOverview'] = GraphError('Not found', status_code=404)
        client = routed_client({COMPLIANCE_POLICIES_PATH: [
            {'id': 'p2', 'displayName': 'iOS baseline', '@odata.type': '#microsoft.graph.iosCompliancePolicy'},
            {'id': 'p1', 'displayName': 'Windows baseline',
             '@odata.type': '#microsoft.graph.windows10CompliancePolicy',
             'assignments': [{'target': {'@odata.type': GROUP_TARGET, 'groupId': 'g1'}}]},
        ]}, objects)

        result = collect_compliance_policies(client, output_dir, now=NOW)
        doc = load(output_dir, 'compliance-policies.json')

        assert result.success is True
        assert result.count == 2
        assert len(result.errors) == 1

        windows, ios = doc['policies']
        assert windows['platform'] == 'Windows'
        assert windows['assignments'] == [{'targetType': 'Include', 'groupId': 'g1', 'displayName': 'All Staff'}]
        assert windows['totalDevices'] == 12
        assert windows['complianceRate'] == 66.7
        assert windows['hasIssues'] is True
        assert ios['platform'] == 'iOS'
        assert ios['compliantCount'] is None
        assert ios['complianceRate'] is None
        assert ios['isAssigned'] is False

        summary = doc['summary']
        assert summary['unassignedPolicies'] == 1
        assert summary['nonCompliantDevices'] == 2
        assert summary['overallComplianceRate'] == 66.7
        assert [i['id'] for i in doc['insights']] == [
            'unassigned-compliance-policies', 'compliance-policy-errors']

        assert client.get_all.call_args.kwargs['params'] == {'$expand': 'assignments'}


# =============================================================================
# Configuration Profiles
# =============================================================================

class TestConfigurationProfiles:
    """Tests for collect_configuration_profiles."""

    def test_collect(self, output_dir):
        objects = overview(DEVICE_CONFIGURATIONS_PATH, 'c1', success=5, failed=1, error=1, conflict=2)
        objects.update(overview(DEVICE_CONFIGURATIONS_PATH, 'c2', success=3))
        client = routed_client({DEVICE_CONFIGURATIONS_PATH: [
            {'id': 'c2', 'displayName': 'A Wi-Fi', '@odata.type': '#microsoft.graph.iosWiFiConfiguration',
             'assignments': [{'target': {'@odata.type': ALL_DEVICES_TARGET}}]},
            {'id': 'c1', 'displayName': 'B Restrictions',
             '@odata.type': '#microsoft.graph.windows10GeneralConfiguration'},
        ]}, objects)

        result = collect_configuration_profiles(client, output_dir, now=NOW)
        doc = load(output_dir, 'configuration-profiles.json')

        assert result.count == 2
        broken, healthy = doc['profiles']
        assert broken['profileType'] == 'windows10GeneralConfiguration'
        assert broken['errorCount'] == 2
        assert broken['totalDevices'] == 9
        assert broken['successRate'] == 55.6
        assert broken['hasConflicts'] is True
        assert healthy['successRate'] == 100.0
        assert healthy['assignments'][0]['displayName'] == 'All Devices'

        assert doc['summary']['conflictDevices'] == 2
        assert [i['id'] for i in doc['insights']] == ['profile-conflicts', 'profile-errors', 'unassigned-profiles']


# =============================================================================
# BitLocker
# =============================================================================

BITLOCKER_DEVICES = [
    {'id': 'w1', 'deviceName': 'PC-A', 'isEncrypted': True, 'azureADDeviceId': 'AAD-1'},
    {'id': 'w2', 'deviceName': 'PC-B', 'isEncrypted': True, 'azureADDeviceId': 'aad-2'},
    {'id': 'w3', 'deviceName': 'PC-C', 'isEncrypted': False, 'azureADDeviceId': 'aad-3'},
]


class TestBitLocker:
    """Tests for collect_bitlocker_status."""

    def test_collect_with_recovery_keys(self, output_dir):
        client = routed_client({
            MANAGED_DEVICES_PATH: BITLOCKER_DEVICES,
            'informationProtection/bitlocker/recoveryKeys': [{'deviceId': 'aad-1'}, {'deviceId': 'AAD-1'}],
        })

        result = collect_bitlocker_status(client, output_dir, now=NOW)
        doc = load(output_dir, 'bitlocker-status.json')

        assert result.count == 3
        assert [d['deviceName'] for d in doc['devices']] == ['PC-C', 'PC-A', 'PC-B']
        assert doc['devices'][1]['recoveryKeyCount'] == 2
        assert doc['devices'][2]['hasRecoveryKey'] is False

        summary = doc['summary']
        assert summary['encryptionRate'] == 66.7
        assert summary['devicesWithRecoveryKeys'] == 1
        assert summary['encryptedWithoutRecoveryKey'] == 1
        assert [i['id'] for i in doc['insights']] == ['not-encrypted', 'missing-recovery-key']

        first_call = client.get_all.call_args_list[0]
        assert first_call.kwargs['params'] == {'$filter': "operatingSystem eq 'Windows'"}

    def test_recovery_keys_unavailable(self, output_dir):
        client = routed_client({
            MANAGED_DEVICES_PATH: BITLOCKER_DEVICES,
            'informationProtection/bitlocker/recoveryKeys': GraphError('Forbidden', status_code=403),
        })

        result = collect_bitlocker_status(client, output_dir, now=NOW)
        doc = load(output_dir, 'bitlocker-status.json')

        assert result.success is True
        assert 'recovery keys unavailable' in result.errors[0]
        assert all(d['recoveryKeyCount'] is None for d in doc['devices'])
        assert doc['summary']['devicesWithRecoveryKeys'] is None
        assert [i['id'] for i in doc['insights']] == ['not-encrypted']


# =============================================================================
# Windows Update
# =============================================================================

class TestWindowsUpdate:
    """Tests for collect_windows_update_status."""

    def make_client(self, quality=None):
        objects = overview(DEVICE_CONFIGURATIONS_PATH, 'r1', success=10, failed=1, error=1, pending=2)
        client = routed_client({
            DEVICE_CONFIGURATIONS_PATH: [
                {'id': 'r1', 'displayName': 'Pilot ring', 'qualityUpdatesPaused': True,
                 'qualityUpdatesDeferralPeriodInDays': 3},
            ],
            'deviceManagement/windowsFeatureUpdateProfiles': [
                {'id': 'f1', 'displayName': 'Win11 23H2', 'featureUpdateVersion': 'Windows 11, version 23H2'},
            ],
            'deviceManagement/windowsQualityUpdateProfiles': quality if quality is not None else [
                {'id': 'q1', 'displayName': 'Expedite May'},
            ],
        }, objects)
        client.run_export_job.return_value = [
            {'DeviceName': 'PC-1', 'UPN': 'a@contoso.com', 'PolicyId': 'f1',
             'CurrentDeviceUpdateStatus': 'Installed', 'LastWUScanTimeUTC': ago(2)},
            {'DeviceName': 'PC-2', 'PolicyId': 'f1', 'CurrentDeviceUpdateStatus': 'Error',
             'LatestAlertMessage': 'Rollback'},
            {'DeviceName': 'PC-3', 'PolicyId': 'f1', 'CurrentDeviceUpdateStatus': 'Offering'},
        ]
        return client

    def test_collect(self, output_dir):
        client = self.make_client()

        result = collect_windows_update_status(client, output_dir, now=NOW)
        doc = load(output_dir, 'windows-update-status.json')

        assert result.success is True
        assert result.count == 3
        assert list(doc) == ['updateRings', 'featureUpdates', 'qualityUpdates', 'deviceCompliance',
                             'summary', 'insights', 'collectionDate']

        ring = doc['updateRings'][0]
        assert ring['errorDevices'] == 2
        assert ring['complianceRate'] == 71.4
        assert ring['qualityUpdatesDeferralDays'] == 3

        assert [d['deviceName'] for d in doc['deviceCompliance']] == ['PC-2', 'PC-1', 'PC-3']
        assert doc['deviceCompliance'][0]['errorDetails'] == 'Rollback'
        assert doc['deviceCompliance'][1]['daysSinceScan'] == 2
        assert [d['updateStatus'] for d in doc['deviceCompliance']] == ['error', 'upToDate', 'pending']
        assert doc['deviceCompliance'][2]['reportedStatus'] == 'Offering'

        summary = doc['summary']
        assert summary['pausedRings'] == 1
        assert summary['devicesUpToDate'] == 1
        assert summary['totalManagedDevices'] == 3
        assert summary['complianceRate'] == 33.3
        assert [i['id'] for i in doc['insights']] == ['paused-update-rings', 'feature-update-errors']

        kwargs = client.run_export_job.call_args.kwargs
        assert client.run_export_job.call_args.args == ('FeatureUpdateDeviceState',)
        assert kwargs['filter'] == "(PolicyId eq 'f1')"
        assert kwargs['select'] == FEATURE_UPDATE_COLUMNS

    def test_export_timeout_is_partial(self, output_dir):
        client = self.make_client()
        client.run_export_job.side_effect = ExportTimeoutError('export job did not complete')

        result = collect_windows_update_status(client, output_dir, now=NOW)
        doc = load(output_dir, 'windows-update-status.json')

        assert result.success is True
        assert len(result.errors) == 1
        assert 'Win11 23H2' in result.errors[0]
        assert doc['deviceCompliance'] == []
        assert len(doc['updateRings']) == 1

    def test_profiles_unavailable_is_partial(self, output_dir):
        client = self.make_client(quality=GraphError('Forbidden', status_code=403))

        result = collect_windows_update_status(client, output_dir, now=NOW)

        assert result.success is True
        assert result.count == 2
        assert 'quality update profiles unavailable' in result.errors[0]

    def test_no_rings_insight(self, output_dir):
        client = routed_client({})

        result = collect_windows_update_status(client, output_dir, now=NOW)
        doc = load(output_dir, 'windows-update-status.json')

        assert result.count == 0
        assert [i['id'] for i in doc['insights']] == ['no-update-rings']
        client.run_export_job.assert_not_called()


# =============================================================================
# ASR Rules
# =============================================================================

ASR_PREFIX = 'device_vendor_msft_policy_config_defender_attacksurfacereductionrules'
ASR_FAMILY = 'endpointSecurityAttackSurfaceReduction'


def asr_settings(**modes):
    """Settings catalog payload with one ASR rule choice per keyword."""
    choices = [{
        '@odata.type': '#microsoft.graph.deviceManagementConfigurationChoiceSettingInstance',
        'settingDefinitionId': f'{ASR_PREFIX}_{rule}',
        'choiceSettingValue': {'value': f'{ASR_PREFIX}_{rule}_{mode}', 'children': []},
    } for rule, mode in modes.items()]
    return [{'id': '0', 'settingInstance': {
        '@odata.type': '#microsoft.graph.deviceManagementConfigurationGroupSettingCollectionInstance',
        'settingDefinitionId': ASR_PREFIX,
        'groupSettingCollectionValue': [{'children': choices}],
    }}]


def asr_policy(policy_id, name, assignments=None, family=ASR_FAMILY):
    return {'id': policy_id, 'name': name, 'templateReference': {'templateFamily': family},
            'assignments': assignments or []}


class TestAsrRules:
    """Tests for collect_asr_rules."""

    def test_mode_suffix(self):
        rule = f'{ASR_PREFIX}_blockwebshellcreationforservers'
        assert asr_mode(rule, f'{rule}_block') == 'block'
        assert asr_mode(rule, f'{rule}_disabled') == 'off'

    def test_collect(self, output_dir):
        write_json([{'id': 'g1', 'displayName': 'Workstations'}], os.path.join(output_dir, 'groups.json'))
        client = routed_client({
            CONFIGURATION_POLICIES_PATH: [
                asr_policy('p1', 'Workstations ASR',
                           [{'target': {'@odata.type': GROUP_TARGET, 'groupId': 'g1'}}]),
                asr_policy('p2', 'Pilot ASR'),
                asr_policy('p3', 'Broken', [{'target': {'@odata.type': ALL_DEVICES_TARGET}}]),
                asr_policy('p4', 'EDR onboarding', family='endpointSecurityEndpointDetectionAndResponse'),
            ],
            f'{CONFIGURATION_POLICIES_PATH}/p1/settings': asr_settings(
                blockexecutionofpotentiallyobfuscatedscripts='block',
                blockwin32apicallsfromofficemacros='audit',
                useadvancedprotectionagainstransomware='off'),
            f'{CONFIGURATION_POLICIES_PATH}/p2/settings': asr_settings(
                blockexecutionofpotentiallyobfuscatedscripts='audit',
                blockwebshellcreationforservers='block'),
            f'{CONFIGURATION_POLICIES_PATH}/p3/settings': GraphError('Forbidden', status_code=403),
        })

        result = collect_asr_rules(client, output_dir, now=NOW)
        doc = load(output_dir, 'asr-rules.json')

        assert result.success is True
        assert result.count == 3
        assert len(result.errors) == 1
        assert result.errors[0].startswith('settings for ASR policy Broken')
        assert list(doc) == ['rulesArray', 'policies', 'summary', 'insights', 'collectionDate']

        broken, pilot, workstations = doc['policies']
        assert broken['asrRules'] is None
        assert broken['ruleCount'] is None
        assert pilot['isAssigned'] is False
        assert workstations['assignments'][0]['displayName'] == 'Workstations'
        assert [r['mode'] for r in workstations['asrRules']] == ['block', 'audit', 'off']
        assert workstations['asrRules'][0]['ruleName'] == 'Block execution of potentially obfuscated scripts'

        rules = {r['ruleId']: r for r in doc['rulesArray']}
        obfuscated = rules['blockexecutionofpotentiallyobfuscatedscripts']
        assert obfuscated['mode'] == 'block'
        assert obfuscated['blockCount'] == 1
        assert obfuscated['auditCount'] == 1
        assert obfuscated['policies'] == ['Pilot ASR', 'Workstations ASR']
        assert obfuscated['isDeployed'] is True
        assert rules['blockwebshellcreationforservers']['mode'] == 'notConfigured'
        assert rules['blockwebshellcreationforservers']['blockCount'] == 1
        assert rules['useadvancedprotectionagainstransomware']['disabledCount'] == 1
        assert rules['useadvancedprotectionagainstransomware']['isDeployed'] is False
        assert doc['rulesArray'][0]['ruleId'] == 'blockexecutionofpotentiallyobfuscatedscripts'

        summary = doc['summary']
        assert summary['totalPolicies'] == 3
        assert summary['assignedPolicies'] == 2
        assert summary['totalRules'] == len(doc['rulesArray'])
        assert summary['deployedRules'] == 2
        assert summary['rulesInBlock'] == 1
        assert summary['rulesInAudit'] == 1
        assert summary['rulesOff'] == 1
        assert [i['id'] for i in doc['insights']] == ['asr-rules-not-deployed', 'asr-rules-audit-only']

        list_call = client.get_all.call_args_list[0]
        assert list_call.kwargs['beta'] is True
        assert ASR_FAMILY in list_call.kwargs['params']['$filter']

    def test_no_policies(self, output_dir):
        result = collect_asr_rules(routed_client({}), output_dir, now=NOW)
        doc = load(output_dir, 'asr-rules.json')

        assert result.count == 0
        assert doc['policies'] == []
        assert all(not r['isDeployed'] for r in doc['rulesArray'])
        assert doc['insights'][0]['id'] == 'no-asr-policies'


# =============================================================================
# App Deployments
# =============================================================================

INSTALL_ROWS = {
    'a1': [
        {'DeviceName': 'PC-1', 'UserPrincipalName': 'a@contoso.com', 'InstallState': 'Installed'},
        {'DeviceName': 'PC-2', 'UserPrincipalName': 'b@contoso.com', 'InstallState': 'Failed',
         'ErrorCode': '0x87D1041C'},
        {'DeviceName': 'PC-3', 'InstallState': 'Pending install'},
        {'DeviceName': 'PC-4', 'InstallState': 'Not Applicable'},
    ],
    'a2': GraphError('Internal error', status_code=500),
    'a4': [{'DeviceName': 'pc-2', 'InstallState_loc': 'Failed', 'InstallState': '2'}],
}


def install_rows(report_name, **kwargs):
    app_id = kwargs['filter'].split("'")[1]
    value = INSTALL_ROWS[app_id]
    if isinstance(value, Exception):
        raise value
    return value


class TestAppDeployments:
    """Tests for collect_app_deployments."""

    @pytest.mark.parametrize('status,expected', [
        ('Installed', 'installed'),
        ('Failed', 'failed'),
        ('Uninstall failed', 'failed'),
        ('Not Installed', 'notInstalled'),
        ('Not Applicable', 'notApplicable'),
        ('Pending install', 'pending'),
        ('', 'unknown'),
        (None, 'unknown'),
    ])
    def test_install_state(self, status, expected):
        assert install_state(status) == expected

    def make_client(self):
        group = [{'target': {'@odata.type': GROUP_TARGET, 'groupId': 'g1'}}]
        client = routed_client({MOBILE_APPS_PATH: [
            {'id': 'a1', 'displayName': 'Company Portal', '@odata.type': '#microsoft.graph.win32LobApp',
             'displayVersion': '1.2', 'publisher': 'Microsoft', 'assignments': group},
            {'id': 'a2', 'displayName': 'Zoom', '@odata.type': '#microsoft.graph.iosStoreApp',
             'assignments': [{'target': {'@odata.type': ALL_DEVICES_TARGET}}]},
            {'id': 'a3', 'displayName': 'Legacy tool', '@odata.type': '#microsoft.graph.winGetApp'},
            {'id': 'a4', 'displayName': 'VPN client', '@odata.type': '#microsoft.graph.win32LobApp',
             'assignments': group},
        ]})
        client.run_export_job.side_effect = install_rows
        return client

    def test_collect(self, output_dir):
        client = self.make_client()

        result = collect_app_deployments(client, output_dir, now=NOW)
        doc = load(output_dir, 'app-deployments.json')

        assert result.success is True
        assert result.count == 4
        assert len(result.errors) == 1
        assert result.errors[0].startswith('install status for Zoom')
        assert list(doc) == ['apps', 'failedDevices', 'summary', 'insights', 'collectionDate']

        portal, vpn, legacy, zoom = doc['apps']
        assert portal['displayName'] == 'Company Portal'
        assert portal['platform'] == 'Windows'
        assert portal['appType'] == 'win32LobApp'
        assert portal['version'] == '1.2'
        assert portal['installedCount'] == 1
        assert portal['failedCount'] == 1
        assert portal['pendingCount'] == 1
        assert portal['notApplicableCount'] == 1
        assert portal['totalDevices'] == 4
        assert portal['installRate'] == 33.3
        assert portal['deviceStatuses'][0]['deviceName'] == 'PC-2'
        assert portal['deviceStatuses'][0]['errorCode'] == '0x87D1041C'
        assert portal['flags'] == ['install-failures']

        assert vpn['installRate'] == 0.0
        assert vpn['deviceStatuses'][0]['reportedState'] == 'Failed'

        assert legacy['deviceStatuses'] == []
        assert legacy['installedCount'] == 0
        assert legacy['installRate'] is None
        assert legacy['flags'] == ['unassigned']

        assert zoom['platform'] == 'iOS'
        assert zoom['deviceStatuses'] is None
        assert zoom['installedCount'] is None
        assert zoom['installRate'] is None

        assert doc['failedDevices'] == [{
            'deviceName': 'PC-2', 'userPrincipalName': 'b@contoso.com',
            'failedApps': ['Company Portal', 'VPN client'], 'failedAppCount': 2,
        }]

        summary = doc['summary']
        assert summary['assignedApps'] == 3
        assert summary['unassignedApps'] == 1
        assert summary['appsWithFailures'] == 2
        assert summary['appsWithoutStatus'] == 1
        assert summary['failedInstalls'] == 2
        assert summary['overallInstallRate'] == 25.0
        assert summary['impactedDevices'] == 1
        assert [i['id'] for i in doc['insights']] == ['app-install-failures', 'unassigned-apps']

        assert client.run_export_job.call_count == 3
        first = client.run_export_job.call_args_list[0]
        assert first.args == ('DeviceInstallStatusByApp',)
        assert first.kwargs['filter'] == "(ApplicationId eq 'a1')"
        assert client.get_all.call_args.kwargs['params'] == {'$expand': 'assignments'}

    def test_export_timeout_is_partial(self, output_dir):
        client = self.make_client()
        client.run_export_job.side_effect = ExportTimeoutError('export job did not complete')

        result = collect_app_deployments(client, output_dir, now=NOW)
        doc = load(output_dir, 'app-deployments.json')

        assert result.success is True
        assert len(result.errors) == 3
        assert doc['failedDevices'] == []
        assert doc['summary']['overallInstallRate'] is None

    def test_failure_writes_empty_envelope(self, output_dir):
        client = routed_client({MOBILE_APPS_PATH: GraphError('Forbidden', status_code=403)})

        result = collect_app_deployments(client, output_dir, now=NOW)
        doc = load(output_dir, 'app-deployments.json')

        assert result.success is False
        assert doc['apps'] == []
        assert doc['failedDevices'] == []


# =============================================================================
# Endpoint Analytics
# =============================================================================

def analytics_routes(**overrides):
    routes = {
        DEVICE_SCORES_PATH: [
            {'id': 's1', 'deviceName': 'PC-1', 'model': 'Latitude 7440', 'endpointAnalyticsScore': 82.4,
             'startupPerformanceScore': 75, 'healthStatus': 'meetingGoals'},
            {'id': 's2', 'deviceName': 'PC-2', 'endpointAnalyticsScore': 45, 'healthStatus': 'needsAttention'},
            {'id': 's3', 'deviceName': 'PC-3', 'endpointAnalyticsScore': 60},
            {'id': 's4', 'deviceName': 'PC-4', 'healthStatus': 'insufficientData'},
        ],
        DEVICE_PERFORMANCE_PATH: [
            {'deviceName': 'pc-1', 'coreBootTimeInMs': 30000, 'blueScreenCount': 0, 'bootScore': 88},
            {'deviceName': 'PC-2', 'coreBootTimeInMs': 150000, 'blueScreenCount': 2, 'restartCount': 5},
        ],
        APP_HEALTH_PATH: [
            {'appName': 'teams.exe', 'appDisplayName': 'Microsoft Teams', 'appHealthScore': 90},
            {'appName': 'legacy.exe', 'appHealthScore': 30, 'appCrashCount': 12},
        ],
    }
    routes.update(overrides)
    return routes


class TestEndpointAnalytics:
    """Tests for collect_endpoint_analytics."""

    @pytest.mark.parametrize('score,expected', [
        (70, 'Good'),
        (69.9, 'Fair'),
        (50, 'Fair'),
        (49.9, 'Poor'),
        (None, None),
    ])
    def test_health_status(self, score, expected):
        assert health_status(score, 50) == expected

    def test_collect(self, output_dir):
        write_json({'devices': [{'deviceName': 'pc-1', 'userPrincipalName': 'a@contoso.com'}]},
                   os.path.join(output_dir, 'devices.json'))
        client = routed_client(analytics_routes())

        result = collect_endpoint_analytics(client, output_dir, now=NOW)
        doc = load(output_dir, 'endpoint-analytics.json')

        assert result.success is True
        assert result.count == 4
        assert list(doc) == ['deviceScores', 'devicePerformance', 'appReliability',
                             'summary', 'insights', 'collectionDate']

        assert [d['deviceName'] for d in doc['deviceScores']] == ['PC-2', 'PC-3', 'PC-1', 'PC-4']
        poor, fair, good, unscored = doc['deviceScores']
        assert poor['healthStatus'] == 'Poor'
        assert poor['needsAttention'] is True
        assert poor['bootTimeSeconds'] == 150.0
        assert poor['isSlowBoot'] is True
        assert fair['healthStatus'] == 'Fair'
        assert fair['bootTimeSeconds'] is None
        assert good['healthStatus'] == 'Good'
        assert good['userPrincipalName'] == 'a@contoso.com'
        assert good['reportedHealthStatus'] == 'meetingGoals'
        assert good['startupPerformanceScore'] == 75.0
        assert unscored['healthStatus'] is None
        assert unscored['needsAttention'] is False

        slow, quick = doc['devicePerformance']
        assert slow['deviceName'] == 'PC-2'
        assert slow['hasBlueScreens'] is True
        assert quick['bootScore'] == 88.0
        assert quick['isSlowBoot'] is False

        assert doc['appReliability'][0]['appName'] == 'legacy.exe'
        assert doc['appReliability'][0]['isProblematic'] is True
        assert doc['appReliability'][1]['appName'] == 'Microsoft Teams'

        summary = doc['summary']
        assert summary['averageScore'] == 62.5
        assert summary['goodDevices'] == 1
        assert summary['fairDevices'] == 1
        assert summary['poorDevices'] == 1
        assert summary['unscoredDevices'] == 1
        assert summary['averageBootSeconds'] == 90.0
        assert summary['slowBootDevices'] == 1
        assert summary['blueScreenDevices'] == 1
        assert [i['id'] for i in doc['insights']] == [
            'poor-endpoint-health', 'slow-boot-devices', 'blue-screen-devices', 'problematic-apps']

    def test_thresholds_from_settings(self, output_dir):
        client = routed_client(analytics_routes())
        settings = CollectionSettings(slow_boot_seconds=200, poor_endpoint_score=40)

        collect_endpoint_analytics(client, output_dir, settings=settings, now=NOW)
        doc = load(output_dir, 'endpoint-analytics.json')

        assert doc['deviceScores'][0]['healthStatus'] == 'Fair'
        assert doc['summary']['slowBootDevices'] == 0
        assert doc['summary']['problematicApps'] == 1

    def test_performance_unavailable_is_partial(self, output_dir):
        client = routed_client(analytics_routes(**{
            DEVICE_PERFORMANCE_PATH: GraphError('Forbidden', status_code=403)}))

        result = collect_endpoint_analytics(client, output_dir, now=NOW)
        doc = load(output_dir, 'endpoint-analytics.json')

        assert result.success is True
        assert 'device performance unavailable' in result.errors[0]
        assert doc['devicePerformance'] == []
        assert all(d['bootTimeSeconds'] is None for d in doc['deviceScores'])

    def test_failure_writes_empty_envelope(self, output_dir):
        client = routed_client(analytics_routes(**{
            DEVICE_SCORES_PATH: GraphError('Forbidden', status_code=403)}))

        result = collect_endpoint_analytics(client, output_dir, now=NOW)
        doc = load(output_dir, 'endpoint-analytics.json')

        assert result.success is False
        assert doc['deviceScores'] == []
        assert doc['appReliability'] == []


class TestCatalogue:
    """Tests for the Intune collector catalogue."""

    def test_autopilot_runs_before_devices(self):
        names = [spec.name for spec in COLLECTORS]
        assert names.index('autopilot') < names.index('devices')
        assert names.index('devices') < names.index('endpoint-analytics')
        assert all(spec.api == 'graph' for spec in COLLECTORS)
