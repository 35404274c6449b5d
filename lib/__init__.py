"""
TenantScope shared library.
"""
# Import constants module for easy access
from . import constants
from .collector import CollectorSpec, RunContext, run_collector, run_collectors
from .config import CollectionSettings, load_config
from .constants import (
    DEFAULT_INACTIVE_DAYS,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_STALE_DEVICE_DAYS,
    ISO_FORMAT,
    SECONDS_PER_DAY,
    SECONDS_PER_HOUR,
)
from .crossref import join_fields, load_lookup, load_records, resolve_assignment_target
from .derive import (
    bytes_to_gb,
    classify_activity,
    classify_credential,
    classify_urgency,
    days_since,
    days_until,
    format_iso,
    parse_datetime,
    percentage,
)
from .fields import pick, pick_int, pick_list
from .graph import (
    ExportTimeoutError,
    GraphClient,
    GraphError,
    RetryExhaustedError,
    ThrottledError,
    get_defender_client,
    get_graph_client,
)
from .insights import InsightRule, evaluate_rules
from .models import CollectionIssues, CollectorResult, Insight, PartialFailure
from .utils import (
    ProgressTracker,
    RetryPolicy,
    generate_run_id,
    get_timestamp,
    setup_logging,
    write_json,
)

__all__ = [
    # Constants
    'constants',
    'DEFAULT_INACTIVE_DAYS',
    'DEFAULT_RETRY_ATTEMPTS',
    'DEFAULT_STALE_DEVICE_DAYS',
    'ISO_FORMAT',
    'SECONDS_PER_DAY',
    'SECONDS_PER_HOUR',
    # Models
    'CollectorResult',
    'CollectionIssues',
    'PartialFailure',
    'Insight',
    # Collector boundary
    'CollectorSpec',
    'RunContext',
    'run_collector',
    'run_collectors',
    # Config
    'CollectionSettings',
    'load_config',
    # Graph client
    'GraphClient',
    'GraphError',
    'ThrottledError',
    'RetryExhaustedError',
    'ExportTimeoutError',
    'get_graph_client',
    'get_defender_client',
    # Field mapping and derivation
    'pick',
    'pick_int',
    'pick_list',
    'bytes_to_gb',
    'classify_activity',
    'classify_credential',
    'classify_urgency',
    'days_since',
    'days_until',
    'format_iso',
    'parse_datetime',
    'percentage',
    # Cross-reference
    'join_fields',
    'load_lookup',
    'load_records',
    'resolve_assignment_target',
    # Insights
    'InsightRule',
    'evaluate_rules',
    # Utils
    'ProgressTracker',
    'RetryPolicy',
    'generate_run_id',
    'get_timestamp',
    'setup_logging',
    'write_json',
]
