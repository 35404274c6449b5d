"""
Tests for lib/utils.py utility functions.

Covers:
- generate_run_id format and uniqueness
- get_timestamp / utc_now format
- RetryPolicy delays, validation and tenacity integration
- redact_log_message, hash_sensitive_id and RedactingFilter
- write_json / read_json (atomic write, permissions)
- ProgressTracker plain-text mode
- setup_logging file handler
"""
import logging
import os
import re
import stat
import sys

import pytest
from tenacity import RetryError

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lib.models import CollectorResult
from lib.utils import (
    ProgressTracker,
    RedactingFilter,
    RetryPolicy,
    generate_run_id,
    get_timestamp,
    hash_sensitive_id,
    read_json,
    redact_log_message,
    setup_logging,
    utc_now,
    write_json,
)


class FlakyError(Exception):
    """Retryable error used by the retry tests."""

    def __init__(self, message="flaky", retry_after=None):
        super().__init__(message)
        self.retry_after = retry_after


def flaky(failures, exc_factory=FlakyError):
    """Return a callable that fails `failures` times, then returns 'ok'."""
    calls = {'count': 0}

    def fn():
        calls['count'] += 1
        if calls['count'] <= failures:
            raise exc_factory()
        return 'ok'

    fn.calls = calls
    return fn


# =============================================================================
# generate_run_id / timestamps
# =============================================================================

class TestGenerateRunId:
    """Tests for generate_run_id function."""

    def test_run_id_format(self):
        """Run ID has format YYYYMMDD-HHMMSS-xxxxxxxx"""
        parts = generate_run_id().split('-')

        assert len(parts) == 3
        assert len(parts[0]) == 8 and parts[0].isdigit()
        assert len(parts[1]) == 6 and parts[1].isdigit()
        assert len(parts[2]) == 8

    def test_run_id_uniqueness(self):
        ids = [generate_run_id() for _ in range(100)]
        assert len(set(ids)) == 100


class TestTimestamps:
    """Tests for get_timestamp and utc_now."""

    def test_timestamp_fixed_format(self):
        assert re.fullmatch(r'\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z', get_timestamp())

    def test_utc_now_is_aware_whole_seconds(self):
        now = utc_now()
        assert now.tzinfo is not None
        assert now.microsecond == 0


# =============================================================================
# RetryPolicy
# =============================================================================

class TestRetryPolicy:
    """Tests for RetryPolicy backoff and retry behaviour."""

    def test_exponential_delays(self):
        policy = RetryPolicy(base_delay=2, strategy='exponential')
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 16]

    def test_linear_delays(self):
        policy = RetryPolicy(base_delay=2, strategy='linear')
        assert [policy.delay(n) for n in (1, 2, 3)] == [2, 4, 6]

    def test_delay_capped_at_max(self):
        policy = RetryPolicy(base_delay=10, strategy='exponential', max_delay=30)
        assert policy.delay(5) == 30

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValueError, match='Unknown backoff strategy'):
            RetryPolicy(strategy='fibonacci')

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)

    def test_retries_then_succeeds(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=4, base_delay=1, sleep=sleeps.append)
        fn = flaky(2)

        assert policy.retrying((FlakyError,))(fn) == 'ok'
        assert fn.calls['count'] == 3
        assert sleeps == [1, 2]

    def test_exhaustion_raises_retry_error(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=3, base_delay=1, sleep=sleeps.append)
        fn = flaky(10)

        with pytest.raises(RetryError) as exc_info:
            policy.retrying((FlakyError,))(fn)

        assert fn.calls['count'] == 3
        assert exc_info.value.last_attempt.attempt_number == 3
        assert len(sleeps) == 2

    def test_other_exceptions_not_retried(self):
        policy = RetryPolicy(max_attempts=4, base_delay=1, sleep=lambda s: None)
        fn = flaky(1, exc_factory=lambda: KeyError('boom'))

        with pytest.raises(KeyError):
            policy.retrying((FlakyError,))(fn)
        assert fn.calls['count'] == 1

    def test_retry_after_honoured_when_longer(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=3, base_delay=1, sleep=sleeps.append)
        fn = flaky(1, exc_factory=lambda: FlakyError(retry_after=7))

        assert policy.retrying((FlakyError,))(fn) == 'ok'
        assert sleeps == [7]

    def test_retry_after_capped_at_max_delay(self):
        sleeps = []
        policy = RetryPolicy(max_attempts=3, base_delay=1, max_delay=5, sleep=sleeps.append)
        fn = flaky(1, exc_factory=lambda: FlakyError(retry_after=120))

        policy.retrying((FlakyError,))(fn)
        assert sleeps == [5]


# =============================================================================
# Redaction
# =============================================================================

class TestRedaction:
    """Tests for log redaction helpers."""

    def test_hash_is_consistent(self):
        assert hash_sensitive_id('abc') == hash_sensitive_id('abc')
        assert hash_sensitive_id('abc') != hash_sensitive_id('abd')
        assert len(hash_sensitive_id('abc')) == 8

    def test_hash_prefix(self):
        assert hash_sensitive_id('abc', prefix='id-').startswith('id-')

    def test_hash_empty_passthrough(self):
        assert hash_sensitive_id('') == ''

    def test_guid_redacted(self):
        guid = '6f1c2d3e-1111-2222-3333-444455556666'
        message = redact_log_message(f"[groups] owners for {guid}: HTTP 404")

        assert guid not in message
        assert f"id-{hash_sensitive_id(guid)}" in message

    def test_upn_redacted_domain_kept(self):
        message = redact_log_message("lookup failed for alice.smith@contoso.com")

        assert 'alice.smith' not in message
        assert message.endswith('@contoso.com')
        assert 'user-' in message

    def test_plain_message_unchanged(self):
        assert redact_log_message("Collected 42 devices") == "Collected 42 devices"

    def test_filter_redacts_msg_and_args(self):
        record = logging.LogRecord('t', logging.INFO, __file__, 1,
                                   "user %s", ('bob@fabrikam.com',), None)

        assert RedactingFilter().filter(record) is True
        assert 'bob@' not in record.args[0]
        assert record.args[0].endswith('@fabrikam.com')


# =============================================================================
# JSON output
# =============================================================================

class TestWriteJson:
    """Tests for write_json and read_json."""

    def test_round_trip(self, tmp_path):
        path = tmp_path / 'users.json'
        write_json([{'id': '1', 'displayName': 'Ünïcode'}], str(path))

        assert read_json(str(path)) == [{'id': '1', 'displayName': 'Ünïcode'}]

    def test_owner_only_permissions(self, tmp_path):
        path = tmp_path / 'devices.json'
        write_json({'devices': []}, str(path))

        mode = stat.S_IMODE(os.stat(path).st_mode)
        assert mode == 0o600

    def test_creates_parent_directories(self, tmp_path):
        path = tmp_path / 'nested' / 'out' / 'groups.json'
        write_json([], str(path))
        assert path.exists()

    def test_no_temp_files_left(self, tmp_path):
        write_json({'a': 1}, str(tmp_path / 'a.json'))
        assert sorted(os.listdir(tmp_path)) == ['a.json']

    def test_overwrites_existing(self, tmp_path):
        path = str(tmp_path / 'a.json')
        write_json({'run': 1}, path)
        write_json({'run': 2}, path)
        assert read_json(path) == {'run': 2}

    def test_identical_input_writes_identical_bytes(self, tmp_path):
        document = {'devices': [{'id': 'd1', 'deviceName': 'PC-01', 'flags': ['stale']}],
                    'summary': {'totalDevices': 1}, 'collectionDate': '2024-06-01T00:00:00Z'}
        first, second = tmp_path / 'first.json', tmp_path / 'second.json'

        write_json(document, str(first))
        write_json(document, str(second))

        assert first.read_bytes() == second.read_bytes()

    def test_key_order_preserved(self, tmp_path):
        path = tmp_path / 'a.json'
        write_json({'records': [], 'summary': {}, 'insights': []}, str(path))
        assert list(read_json(str(path))) == ['records', 'summary', 'insights']

    def test_unserializable_falls_back_to_str(self, tmp_path):
        path = str(tmp_path / 'a.json')
        write_json({'when': utc_now()}, path)
        assert isinstance(read_json(path)['when'], str)


# =============================================================================
# ProgressTracker
# =============================================================================

class TestProgressTracker:
    """Tests for ProgressTracker in plain-text mode."""

    def test_counts_results(self, capsys):
        with ProgressTracker("TenantScope", total_collectors=2, show_progress=False) as tracker:
            tracker.start_collector('users')
            tracker.complete_collector('users', CollectorResult(success=True, count=10))
            tracker.start_collector('devices')
            tracker.complete_collector('devices', CollectorResult(success=False, errors=['devices: boom']))

        assert tracker.completed == 2
        assert tracker.failed == 1
        assert tracker.total_records == 10

        out = capsys.readouterr().out
        assert '[users] OK - 10 records' in out
        assert '[devices] FAILED' in out
        assert '1/2 succeeded' in out
        assert 'devices: boom' in out


# =============================================================================
# Logging
# =============================================================================

class TestSetupLogging:
    """Tests for setup_logging."""

    def test_file_handler_redacts(self, tmp_path):
        setup_logging('INFO', str(tmp_path))
        try:
            logging.getLogger('tenantscope.test').info(
                "owner 6f1c2d3e-1111-2222-3333-444455556666 missing")
            for handler in logging.getLogger().handlers:
                handler.flush()

            logs = [p for p in os.listdir(tmp_path) if p.endswith('.log')]
            assert len(logs) == 1
            content = (tmp_path / logs[0]).read_text()
            assert '6f1c2d3e-1111' not in content
            assert 'owner id-' in content
        finally:
            root = logging.getLogger()
            for handler in list(root.handlers):
                handler.close()
                root.removeHandler(handler)
