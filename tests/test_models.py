"""
Tests for lib/models.py.

Covers:
- CollectorResult serialisation
- CollectionIssues recording
- count_where / count_by / rate helpers
- membership_counts over complete, failed and capped listings
"""
import logging
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lib.graph import GraphError, PagedList
from lib.models import (
    CollectionIssues,
    CollectorResult,
    Insight,
    PartialFailure,
    count_by,
    count_where,
    membership_counts,
    rate,
)


class TestCollectorResult:
    """Tests for CollectorResult."""

    def test_to_dict_shape(self):
        result = CollectorResult(success=True, count=3, errors=['x'])
        assert result.to_dict() == {'Success': True, 'Count': 3, 'Errors': ['x']}

    def test_defaults(self):
        result = CollectorResult(success=False)
        assert result.count == 0
        assert result.errors == []

    def test_to_dict_copies_errors(self):
        result = CollectorResult(success=True)
        result.to_dict()['Errors'].append('mutated')
        assert result.errors == []


class TestCollectionIssues:
    """Tests for CollectionIssues."""

    def test_record_keeps_status_code(self):
        issues = CollectionIssues('groups')
        failure = issues.record('owners for g1', GraphError('Not found', status_code=404))

        assert failure.status_code == 404
        assert len(issues) == 1
        assert issues.messages == ['owners for g1: HTTP 404: Not found (HTTP 404)']

    def test_record_plain_exception(self):
        issues = CollectionIssues('teams')
        issues.record('channels for t1', ValueError('bad'))
        assert issues.messages == ['channels for t1: bad']

    def test_record_logs_at_level(self, caplog):
        issues = CollectionIssues('users')
        with caplog.at_level(logging.DEBUG, logger='lib.models'):
            issues.record('mfa', ValueError('denied'), level=logging.WARNING)

        assert any(r.levelno == logging.WARNING and '[users] mfa: denied' in r.message
                   for r in caplog.records)

    def test_note(self):
        issues = CollectionIssues('devices')
        issues.note('users.json has an unexpected shape')
        assert issues.messages == ['devices: users.json has an unexpected shape']

    def test_bool(self):
        issues = CollectionIssues('x')
        assert not issues
        issues.note('y')
        assert issues


class TestPartialFailure:
    """Tests for PartialFailure formatting."""

    def test_without_status(self):
        assert str(PartialFailure('ctx', 'msg')) == 'ctx: msg'

    def test_with_status(self):
        assert str(PartialFailure('ctx', 'msg', 403)) == 'ctx: msg (HTTP 403)'


class TestInsight:
    """Tests for Insight serialisation."""

    def test_to_dict(self):
        insight = Insight(id='stale-devices', severity='warning', category='Devices',
                          description='3 stale devices', affected_count=3,
                          recommended_action='Retire them')
        assert insight.to_dict() == {
            'id': 'stale-devices',
            'severity': 'warning',
            'category': 'Devices',
            'description': '3 stale devices',
            'affectedCount': 3,
            'recommendedAction': 'Retire them',
        }


class TestCounting:
    """Tests for count_where, count_by and rate."""

    def test_count_where(self):
        records = [{'a': True}, {'a': False}, {'a': True}, {}]
        assert count_where(records, lambda r: r.get('a')) == 2

    def test_count_by_sorted_by_count_then_key(self):
        records = [{'os': 'Windows'}, {'os': 'iOS'}, {'os': 'Windows'}, {'os': 'Android'}, {}]
        assert list(count_by(records, 'os').items()) == [
            ('Windows', 2), ('Android', 1), ('Unknown', 1), ('iOS', 1),
        ]

    def test_rate(self):
        assert rate(1, 3) == 33.3
        assert rate(2, 2) == 100.0

    def test_rate_zero_total(self):
        assert rate(0, 0) == 0.0


class TestMembershipCounts:
    """Tests for membership_counts."""

    MEMBERS = [{'userType': 'Member'}, {'userType': 'Guest'}, {'userType': 'Member'}]

    def test_complete_listing(self):
        assert membership_counts(self.MEMBERS) == {
            'memberCount': 3, 'memberCountCapped': False, 'guestCount': 1, 'hasGuests': True,
        }

    def test_no_guests(self):
        counts = membership_counts([{'userType': 'Member'}])
        assert counts['guestCount'] == 0
        assert counts['hasGuests'] is False

    def test_failed_lookup(self):
        assert membership_counts(None) == {
            'memberCount': None, 'memberCountCapped': False, 'guestCount': None, 'hasGuests': None,
        }

    def test_capped_with_server_total(self):
        members = PagedList(self.MEMBERS, truncated=True, total_count=1000)
        counts = membership_counts(members)

        assert counts['memberCount'] == 1000
        assert counts['memberCountCapped'] is False
        assert counts['guestCount'] is None
        assert counts['hasGuests'] is True

    def test_capped_without_server_total(self):
        members = PagedList([{'userType': 'Member'}] * 400, truncated=True)
        counts = membership_counts(members)

        assert counts['memberCount'] == 400
        assert counts['memberCountCapped'] is True
        assert counts['guestCount'] is None
        assert counts['hasGuests'] is None

    def test_uncapped_paged_list(self):
        counts = membership_counts(PagedList(self.MEMBERS, total_count=3))
        assert counts['memberCount'] == 3
        assert counts['memberCountCapped'] is False
