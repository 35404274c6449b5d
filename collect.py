#!/usr/bin/env python3
"""
TenantScope - Microsoft 365 Tenant Collector

Runs every collector in dependency order against Microsoft Graph and the
Defender for Endpoint API, writing one JSON document per collector plus
collection-metadata.json and trend-history.json into the output directory.

Usage:
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"

    # Full collection
    python collect.py -o ./tenantscope-output

    # Selected collectors
    python collect.py --only users,devices,defender-alerts
    python collect.py --skip vulnerabilities,defender-device-health

    # List collectors in run order
    python collect.py --list

    # Print a sample config file
    python collect.py --generate-config > tenantscope.yaml
"""
import argparse
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from lib.collector import CollectorSpec, run_collectors
from lib.config import (
    CollectionSettings,
    add_common_arguments,
    generate_sample_config,
    load_config,
)
from lib.constants import METADATA_FILE, TREND_HISTORY_FILE, TREND_HISTORY_LIMIT
from lib.derive import format_iso
from lib.graph import get_defender_client, get_graph_client
from lib.models import CollectorResult
from lib.utils import (
    ProgressTracker,
    generate_run_id,
    read_json,
    setup_logging,
    utc_now,
    write_json,
)

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT = './tenantscope-output'


def all_collectors() -> List[CollectorSpec]:
    """
    The full catalogue in run order.

    Identity runs first because later collectors enrich from users.json and
    groups.json; autopilot runs before devices.
    """
    import apps_collect
    import collaboration_collect
    import identity_collect
    import intune_collect
    import security_collect

    return (identity_collect.COLLECTORS
            + security_collect.COLLECTORS
            + intune_collect.COLLECTORS
            + apps_collect.COLLECTORS
            + collaboration_collect.COLLECTORS)


def select_collectors(specs: Sequence[CollectorSpec], only: Optional[Iterable[str]] = None,
                      skip: Optional[Iterable[str]] = None) -> List[CollectorSpec]:
    """
    Apply --only / --skip to a catalogue, preserving run order.

    Raises:
        ValueError: a name matches no collector
    """
    known = {spec.name for spec in specs}
    only = [name.strip() for name in only or [] if name.strip()]
    skip = [name.strip() for name in skip or [] if name.strip()]

    unknown = sorted(set(only + skip) - known)
    if unknown:
        raise ValueError(f"Unknown collector(s): {', '.join(unknown)}. "
                         f"Available: {', '.join(spec.name for spec in specs)}")

    selected = [spec for spec in specs if not only or spec.name in only]
    return [spec for spec in selected if spec.name not in skip]


# =============================================================================
# Run metadata
# =============================================================================

def build_metadata(tenant_id: Optional[str], run_id: str, start: datetime, end: datetime,
                   results: Dict[str, CollectorResult]) -> Dict[str, Any]:
    success_count = sum(1 for r in results.values() if r.success)
    return {
        'tenantId': tenant_id,
        'runId': run_id,
        'startTime': format_iso(start),
        'endTime': format_iso(end),
        'durationSeconds': round((end - start).total_seconds(), 1),
        'collectors': {name: result.to_dict() for name, result in results.items()},
        'successCount': success_count,
        'failureCount': len(results) - success_count,
    }


def append_trend_history(output_dir: str, metadata: Dict[str, Any],
                         limit: int = TREND_HISTORY_LIMIT) -> List[Dict[str, Any]]:
    """
    Append this run's record counts to trend-history.json.

    Only the newest `limit` entries are kept. An unreadable history file is
    replaced rather than failing the run.
    """
    path = os.path.join(output_dir, TREND_HISTORY_FILE)
    history: List[Dict[str, Any]] = []
    if os.path.exists(path):
        try:
            loaded = read_json(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Trend history unreadable, starting a new one: {e}")
            loaded = []
        if isinstance(loaded, list):
            history = loaded
        else:
            logger.warning("Trend history has an unexpected shape, starting a new one")

    history.append({
        'runId': metadata['runId'],
        'date': metadata['endTime'],
        'counts': {name: r['Count'] for name, r in metadata['collectors'].items() if r['Success']},
        'successCount': metadata['successCount'],
        'failureCount': metadata['failureCount'],
    })
    history = history[-limit:]
    write_json(history, path)
    return history


def run_collection(specs: Sequence[CollectorSpec], clients: Dict[str, Any], output_dir: str,
                   settings: Optional[CollectionSettings] = None, tenant_id: Optional[str] = None,
                   show_progress: bool = True) -> Dict[str, Any]:
    """
    Run collectors, then write collection-metadata.json and trend history.

    Every collector runs even when earlier ones fail. Returns the metadata
    document.
    """
    os.makedirs(output_dir, exist_ok=True)
    run_id = generate_run_id()
    start = utc_now()

    with ProgressTracker("TenantScope", total_collectors=len(specs), show_progress=show_progress) as tracker:
        results = run_collectors(specs, clients, output_dir, settings=settings, tracker=tracker)

    end = utc_now()
    metadata = build_metadata(tenant_id, run_id, start, end, results)
    write_json(metadata, os.path.join(output_dir, METADATA_FILE))

    try:
        append_trend_history(output_dir, metadata)
    except OSError as e:
        logger.warning(f"Could not update trend history: {e}")

    logger.info(f"Run {run_id}: {metadata['successCount']} succeeded, "
                f"{metadata['failureCount']} failed in {metadata['durationSeconds']}s")
    return metadata


# =============================================================================
# Command line
# =============================================================================

EPILOG = """
Examples:
    # Using environment variables (client secret MUST be env var)
    export MS365_TENANT_ID="your-tenant-id"
    export MS365_CLIENT_ID="your-client-id"
    export MS365_CLIENT_SECRET="your-client-secret"
    %(prog)s -o ./tenantscope-output

    # Thresholds from a config file
    %(prog)s --config tenantscope.yaml

Security Note:
    Client secrets must be provided via MS365_CLIENT_SECRET environment
    variable to avoid exposing secrets in shell history or process listings.
"""


def build_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=description,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )
    add_common_arguments(parser, default_output=DEFAULT_OUTPUT)
    parser.add_argument('--list', action='store_true',
                        help='List collectors in run order and exit')
    parser.add_argument('--no-progress', action='store_true',
                        help='Disable the progress display')
    return parser


def _build_clients(specs: Sequence[CollectorSpec], tenant_id: str, client_id: str,
                   client_secret: str, settings: CollectionSettings) -> Dict[str, Any]:
    clients: Dict[str, Any] = {}
    apis = {spec.api for spec in specs}
    if 'graph' in apis:
        clients['graph'] = get_graph_client(tenant_id, client_id, client_secret,
                                            retry_policy=settings.retry_policy())
    if 'defender' in apis:
        clients['defender'] = get_defender_client(tenant_id, client_id, client_secret,
                                                  retry_policy=settings.retry_policy())
    return clients


def run_cli(specs: Sequence[CollectorSpec], description: str, argv=None) -> int:
    """
    Shared entry point for collect.py and the per-domain collector scripts.

    Returns a process exit code: 0 when every selected collector succeeded,
    1 when any failed or credentials are missing, 2 for usage errors.
    """
    parser = build_parser(description)
    args = parser.parse_args(argv)

    if args.generate_config:
        print(generate_sample_config())
        return 0

    if args.list:
        for spec in specs:
            print(f"{spec.name:<28} {spec.api}")
        return 0

    try:
        config = load_config(args)
    except (OSError, ValueError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    output_dir = args.output or DEFAULT_OUTPUT
    setup_logging(args.log_level or 'INFO', output_dir)
    settings = CollectionSettings.from_config(config)

    try:
        selected = select_collectors(specs, args.only, args.skip)
    except ValueError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    if not selected:
        print("ERROR: No collectors selected.", file=sys.stderr)
        return 2

    # Client secret from environment only (no CLI arg)
    client_secret = os.environ.get('MS365_CLIENT_SECRET')
    if not args.tenant_id or not args.client_id or not client_secret:
        print("ERROR: Missing credentials. Please provide:", file=sys.stderr)
        print("  --tenant-id or MS365_TENANT_ID environment variable", file=sys.stderr)
        print("  --client-id or MS365_CLIENT_ID environment variable", file=sys.stderr)
        print("  MS365_CLIENT_SECRET environment variable (required for security)", file=sys.stderr)
        return 1

    tenant_id = args.tenant_id
    print(f"Tenant: {tenant_id[:8]}...{tenant_id[-4:]}")
    print(f"Output: {output_dir}\n")

    clients = _build_clients(selected, tenant_id, args.client_id, client_secret, settings)
    metadata = run_collection(selected, clients, output_dir, settings=settings,
                              tenant_id=tenant_id, show_progress=not args.no_progress)

    print(f"\nOutput files in: {output_dir}")
    return 0 if metadata['failureCount'] == 0 else 1


def main(argv=None) -> int:
    return run_cli(all_collectors(), 'TenantScope - Microsoft 365 Tenant Collector', argv)


if __name__ == '__main__':
    sys.exit(main())
