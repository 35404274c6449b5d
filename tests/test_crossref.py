"""
Tests for lib/crossref.py sibling-file enrichment.

Covers:
- load_records for arrays, envelopes, missing and malformed files
- load_lookup keying, normalisation and first-wins duplicates
- join_fields defaults
- resolve_assignment_target for every Intune target type
"""
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lib.crossref import (
    join_fields,
    load_lookup,
    load_records,
    lower_key,
    resolve_assignment_target,
)
from lib.models import CollectionIssues
from lib.utils import write_json


class TestLoadRecords:
    """Tests for load_records."""

    def test_bare_array(self, tmp_path):
        path = str(tmp_path / 'users.json')
        write_json([{'id': '1'}], path)
        assert load_records(path) == [{'id': '1'}]

    def test_envelope(self, tmp_path):
        path = str(tmp_path / 'devices.json')
        write_json({'devices': [{'id': 'd1'}], 'summary': {}}, path)
        assert load_records(path, records_key='devices') == [{'id': 'd1'}]

    def test_missing_file(self, tmp_path):
        issues = CollectionIssues('devices')
        assert load_records(str(tmp_path / 'users.json'), issues=issues) is None
        # A missing sibling is normal and not a partial failure
        assert not issues

    def test_malformed_json(self, tmp_path):
        path = tmp_path / 'users.json'
        path.write_text('{not json')
        issues = CollectionIssues('devices')

        assert load_records(str(path), issues=issues) is None
        assert len(issues) == 1
        assert 'users.json could not be read' in issues.messages[0]

    def test_unexpected_shape(self, tmp_path):
        path = str(tmp_path / 'groups.json')
        write_json({'unexpected': True}, path)
        issues = CollectionIssues('compliance-policies')

        assert load_records(path, issues=issues) is None
        assert 'unexpected shape' in issues.messages[0]


class TestLoadLookup:
    """Tests for load_lookup."""

    def test_normalised_keys(self, tmp_path):
        path = str(tmp_path / 'users.json')
        write_json([
            {'userPrincipalName': 'Alice@Contoso.com', 'department': 'Finance'},
            {'userPrincipalName': 'bob@contoso.com', 'department': 'IT'},
        ], path)

        lookup = load_lookup(path, 'userPrincipalName', normalize=lower_key)

        assert set(lookup) == {'alice@contoso.com', 'bob@contoso.com'}
        assert lookup['alice@contoso.com']['department'] == 'Finance'

    def test_first_record_wins(self, tmp_path):
        path = str(tmp_path / 'autopilot.json')
        write_json([{'serialNumber': 'S1', 'groupTag': 'first'},
                    {'serialNumber': 'S1', 'groupTag': 'second'}], path)

        assert load_lookup(path, 'serialNumber')['S1']['groupTag'] == 'first'

    def test_candidate_key_names_and_blank_keys(self, tmp_path):
        path = str(tmp_path / 'x.json')
        write_json([{'Id': 'a'}, {'id': 'b'}, {'id': ''}, {'other': 1}], path)

        assert set(load_lookup(path, ('id', 'Id'))) == {'a', 'b'}

    def test_envelope_records_key(self, tmp_path):
        path = str(tmp_path / 'devices.json')
        write_json({'devices': [{'id': 'd1'}]}, path)
        assert list(load_lookup(path, 'id', records_key='devices')) == ['d1']

    def test_missing_file_empty(self, tmp_path):
        assert load_lookup(str(tmp_path / 'nope.json'), 'id') == {}


class TestJoinFields:
    """Tests for join_fields."""

    FIELDS = {
        'primaryUserDepartment': ('department', None),
        'primaryUserEnabled': ('accountEnabled', None),
    }

    def test_matched(self):
        record = {}
        matched = join_fields(record, {'department': 'IT', 'accountEnabled': False}, self.FIELDS)

        assert matched is True
        assert record == {'primaryUserDepartment': 'IT', 'primaryUserEnabled': False}

    def test_unmatched_gets_defaults(self):
        record = {}
        assert join_fields(record, None, self.FIELDS) is False
        assert record == {'primaryUserDepartment': None, 'primaryUserEnabled': None}

    def test_matched_missing_field_uses_default(self):
        record = {}
        join_fields(record, {}, {'groupTag': ('groupTag', 'untagged')})
        assert record == {'groupTag': 'untagged'}


class TestResolveAssignmentTarget:
    """Tests for resolve_assignment_target."""

    GROUPS = {'g1': 'Finance Laptops'}

    def test_all_users(self):
        target = {'@odata.type': '#microsoft.graph.allLicensedUsersAssignmentTarget'}
        assert resolve_assignment_target(target, self.GROUPS) == {
            'targetType': 'AllUsers', 'groupId': None, 'displayName': 'All Users'}

    def test_all_devices(self):
        target = {'@odata.type': '#microsoft.graph.allDevicesAssignmentTarget'}
        assert resolve_assignment_target(target, self.GROUPS)['targetType'] == 'AllDevices'

    def test_group_include_resolved(self):
        target = {'@odata.type': '#microsoft.graph.groupAssignmentTarget', 'groupId': 'g1'}
        assert resolve_assignment_target(target, self.GROUPS) == {
            'targetType': 'Include', 'groupId': 'g1', 'displayName': 'Finance Laptops'}

    def test_group_exclude_unknown_keeps_id(self):
        target = {'@odata.type': '#microsoft.graph.exclusionGroupAssignmentTarget', 'groupId': 'g9'}
        assert resolve_assignment_target(target, self.GROUPS) == {
            'targetType': 'Exclude', 'groupId': 'g9', 'displayName': 'g9'}

    def test_unknown_type(self):
        target = {'@odata.type': '#microsoft.graph.configurationManagerCollectionAssignmentTarget'}
        resolved = resolve_assignment_target(target, self.GROUPS)
        assert resolved['targetType'] == 'Unknown'
        assert resolved['displayName'] == 'configurationManagerCollectionAssignmentTarget'

    def test_missing_target(self):
        assert resolve_assignment_target(None, self.GROUPS)['displayName'] == 'Unknown'
