"""
Tests for lib/config.py configuration loading.

Covers:
- CollectionSettings defaults, camelCase/snake_case keys and validation
- License prices and currency
- Retry policy construction
- YAML config files with ${ENV} substitution
- Source priority: CLI > config file > environment
- Sample config round trip
"""
import argparse
import os
import sys

import pytest
import yaml

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from lib.config import (
    CollectionSettings,
    add_common_arguments,
    generate_sample_config,
    load_config,
    load_config_file,
    merge_configs,
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate from real env vars and default config locations."""
    for var in ('MS365_TENANT_ID', 'MS365_CLIENT_ID', 'TENANTSCOPE_OUTPUT',
                'TENANTSCOPE_LOG_LEVEL', 'TENANTSCOPE_ONLY', 'TENANTSCOPE_SKIP',
                'TENANTSCOPE_INACTIVE_DAYS', 'TENANTSCOPE_CURRENCY'):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv('HOME', str(tmp_path))
    monkeypatch.chdir(tmp_path)
    return tmp_path


def parse_args(argv):
    parser = argparse.ArgumentParser()
    add_common_arguments(parser)
    return parser.parse_args(argv)


def write_config(path, text):
    path.write_text(text)
    os.chmod(path, 0o600)
    return str(path)


# =============================================================================
# CollectionSettings
# =============================================================================

class TestCollectionSettings:
    """Tests for CollectionSettings.from_config."""

    def test_defaults(self):
        settings = CollectionSettings.from_config(None)
        assert settings == CollectionSettings()
        assert settings.inactive_days == 90
        assert settings.currency == 'USD'

    def test_camel_and_snake_case(self):
        settings = CollectionSettings.from_config({'thresholds': {
            'inactiveDays': 30,
            'stale_device_days': 45,
            'highStorageThresholdGB': 50,
        }})

        assert settings.inactive_days == 30
        assert settings.stale_device_days == 45
        assert settings.high_storage_threshold_gb == 50.0

    def test_string_values_coerced(self):
        settings = CollectionSettings.from_config({'thresholds': {'inactiveDays': '60'}})
        assert settings.inactive_days == 60

    def test_invalid_values_fall_back(self):
        settings = CollectionSettings.from_config({'thresholds': {
            'inactiveDays': 'soon',
            'staleDeviceDays': -5,
            'signInPageLimit': 0,
            'retryBackoff': 'random',
            'maxRetries': True,
        }})

        assert settings.inactive_days == 90
        assert settings.stale_device_days == 90
        assert settings.sign_in_page_limit == 4
        assert settings.retry_backoff == 'exponential'
        assert settings.max_retries == 4

    def test_unknown_threshold_ignored(self):
        settings = CollectionSettings.from_config({'thresholds': {'bogusSetting': 1}})
        assert settings == CollectionSettings()

    def test_thresholds_not_mapping(self):
        assert CollectionSettings.from_config({'thresholds': [1, 2]}) == CollectionSettings()

    def test_license_prices(self):
        settings = CollectionSettings.from_config({
            'licensePrices': {'SPE_E3': '36.00', 'SPE_E5': 57, 'BAD': 'free'},
            'currency': 'EUR',
        })

        assert settings.license_prices == {'SPE_E3': 36.0, 'SPE_E5': 57.0}
        assert settings.currency == 'EUR'

    def test_retry_policy(self):
        settings = CollectionSettings.from_config({'thresholds': {
            'maxRetries': 6, 'retryBaseDelay': 1.5, 'retryBackoff': 'Linear',
        }})
        policy = settings.retry_policy()

        assert policy.max_attempts == 6
        assert policy.base_delay == 1.5
        assert policy.strategy == 'linear'


# =============================================================================
# Config sources
# =============================================================================

class TestConfigFile:
    """Tests for load_config_file."""

    def test_env_substitution(self, clean_env, monkeypatch):
        monkeypatch.setenv('TS_TEST_TENANT', 'tenant-from-env')
        path = write_config(clean_env / 'cfg.yaml',
                            'tenant_id: ${TS_TEST_TENANT}\n'
                            'client_id: ${TS_TEST_MISSING:-fallback-client}\n'
                            'thresholds:\n  inactiveDays: 30\n')

        config = load_config_file(path)

        assert config['tenant_id'] == 'tenant-from-env'
        assert config['client_id'] == 'fallback-client'
        assert config['thresholds'] == {'inactiveDays': 30}

    def test_missing_file(self, clean_env):
        with pytest.raises(FileNotFoundError):
            load_config_file(str(clean_env / 'missing.yaml'))

    def test_non_mapping(self, clean_env):
        path = write_config(clean_env / 'cfg.yaml', '- just\n- a list\n')
        with pytest.raises(ValueError):
            load_config_file(path)


class TestLoadConfig:
    """Tests for load_config source priority."""

    def test_cli_overrides_file_overrides_env(self, clean_env, monkeypatch):
        monkeypatch.setenv('MS365_TENANT_ID', 'env-tenant')
        monkeypatch.setenv('MS365_CLIENT_ID', 'env-client')
        monkeypatch.setenv('TENANTSCOPE_LOG_LEVEL', 'DEBUG')
        path = write_config(clean_env / 'cfg.yaml',
                            'tenant_id: file-tenant\nclient_id: file-client\n'
                            'thresholds:\n  inactiveDays: 30\n')

        args = parse_args(['--config', path, '--client-id', 'cli-client', '--only', 'users, devices'])
        config = load_config(args)

        assert args.tenant_id == 'file-tenant'
        assert args.client_id == 'cli-client'
        assert args.log_level == 'DEBUG'
        assert args.only == ['users', 'devices']
        assert config['thresholds']['inactiveDays'] == 30

    def test_env_only(self, clean_env, monkeypatch):
        monkeypatch.setenv('MS365_TENANT_ID', 'env-tenant')
        monkeypatch.setenv('TENANTSCOPE_SKIP', 'vulnerabilities,defender-device-health')

        args = parse_args([])
        load_config(args)

        assert args.tenant_id == 'env-tenant'
        assert args.skip == ['vulnerabilities', 'defender-device-health']

    def test_default_config_location(self, clean_env):
        write_config(clean_env / 'tenantscope.yaml', 'client_id: default-file-client\n')

        args = parse_args([])
        load_config(args)

        assert args.client_id == 'default-file-client'


class TestMergeConfigs:
    """Tests for merge_configs."""

    def test_nested_merge(self):
        merged = merge_configs({'thresholds': {'a': 1, 'b': 2}, 'x': 1},
                               {'thresholds': {'b': 3}, 'x': None})
        assert merged == {'thresholds': {'a': 1, 'b': 3}, 'x': 1}


class TestSampleConfig:
    """Tests for generate_sample_config."""

    def test_sample_parses_to_defaults(self):
        config = yaml.safe_load(generate_sample_config())
        assert CollectionSettings.from_config(config) == CollectionSettings()
