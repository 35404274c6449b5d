"""
Collector boundary shared by every TenantScope collector.

A collector is a build function that turns API responses into one output
document. run_collector wraps it so that the caller always gets a
CollectorResult and the output file always exists:

    def _build_devices(client, ctx):
        devices = [...]
        return ctx.envelope('devices', devices, summary, insights), len(devices)

    def collect_devices(client, output_dir, settings=None, now=None):
        return run_collector('devices', DEVICES_FILE,
                             lambda ctx: _build_devices(client, ctx),
                             output_dir, settings, empty=_empty_devices, now=now)
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import CollectionSettings
from .crossref import Lookup, load_lookup, load_records
from .derive import format_iso
from .graph import permission_hint
from .models import CollectionIssues, CollectorResult
from .utils import utc_now, write_json

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """State for a single collector run. Nothing here outlives the run."""
    name: str
    output_dir: str
    settings: CollectionSettings
    now: datetime
    issues: CollectionIssues

    def path(self, filename: str) -> str:
        return os.path.join(self.output_dir, filename)

    def load_lookup(self, filename: str, key, records_key: Optional[str] = None,
                    normalize: Optional[Callable[[Any], Any]] = None) -> Lookup:
        """Load a sibling document from the output directory into a lookup."""
        return load_lookup(self.path(filename), key, records_key=records_key,
                           normalize=normalize, issues=self.issues)

    def load_records(self, filename: str, records_key: Optional[str] = None) -> Optional[list]:
        return load_records(self.path(filename), records_key=records_key, issues=self.issues)

    def envelope(self, records_key: str, records: List[Dict[str, Any]],
                 summary: Dict[str, Any], insights: Optional[List[Dict[str, Any]]] = None,
                 extra: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Standard {records, summary, insights, collectionDate} document.

        extra holds additional record arrays placed after the primary one.
        """
        document: Dict[str, Any] = {records_key: records}
        if extra:
            document.update(extra)
        document['summary'] = summary
        document['insights'] = insights or []
        document['collectionDate'] = format_iso(self.now)
        return document


BuildFn = Callable[[RunContext], Tuple[Any, int]]
EmptyFn = Callable[[RunContext], Any]


def _empty_list(ctx: RunContext) -> List[Any]:
    return []


def run_collector(name: str, filename: str, build: BuildFn, output_dir: str,
                  settings: Optional[CollectionSettings] = None,
                  empty: EmptyFn = _empty_list,
                  now: Optional[datetime] = None) -> CollectorResult:
    """
    Run one collector and write its document.

    Never raises. On failure the empty document is written instead and the
    result carries success=False with the error (and a permission hint when
    the failure looks like missing permissions or licensing). Partial
    failures recorded on ctx.issues are returned as errors without failing
    the run.
    """
    ctx = RunContext(
        name=name,
        output_dir=output_dir,
        settings=settings or CollectionSettings(),
        now=now or utc_now(),
        issues=CollectionIssues(name),
    )
    filepath = ctx.path(filename)

    try:
        document, count = build(ctx)
    except Exception as e:
        hint = permission_hint(e)
        if hint:
            message = f"{name}: {e} ({hint})"
            logger.warning(f"[{name}] Skipped: {e} - {hint}")
        else:
            message = f"{name}: {e}"
            logger.error(f"[{name}] Collection failed: {e}")
        errors = [message] + ctx.issues.messages
        try:
            write_json(empty(ctx), filepath)
        except OSError as write_error:
            logger.error(f"[{name}] Could not write empty output: {write_error}")
            errors.append(f"{name}: write failed: {write_error}")
        return CollectorResult(success=False, count=0, errors=errors)

    try:
        write_json(document, filepath)
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"[{name}] Could not write output: {e}")
        return CollectorResult(success=False, count=0,
                               errors=[f"{name}: write failed: {e}"] + ctx.issues.messages)

    if ctx.issues:
        logger.warning(f"[{name}] Completed with {len(ctx.issues)} partial failures")
    logger.info(f"Collected {count} {name} records")
    return CollectorResult(success=True, count=count, errors=ctx.issues.messages)


# =============================================================================
# Running many collectors
# =============================================================================

@dataclass(frozen=True)
class CollectorSpec:
    """A named collector and the API client it needs ('graph' or 'defender')."""
    name: str
    func: Callable[..., CollectorResult]
    api: str = 'graph'


def run_collectors(specs: Sequence[CollectorSpec], clients: Dict[str, Any], output_dir: str,
                   settings: Optional[CollectionSettings] = None, tracker=None,
                   now: Optional[datetime] = None) -> Dict[str, CollectorResult]:
    """
    Run collectors in order. A failing collector never stops the rest.

    Returns {name: CollectorResult} in run order.
    """
    results: Dict[str, CollectorResult] = {}
    for spec in specs:
        if tracker:
            tracker.start_collector(spec.name)

        client = clients.get(spec.api)
        if client is None:
            logger.warning(f"[{spec.name}] No {spec.api} client configured; skipping")
            result = CollectorResult(success=False, count=0,
                                     errors=[f"{spec.name}: no {spec.api} client configured"])
        else:
            result = spec.func(client, output_dir, settings=settings, now=now)

        results[spec.name] = result
        if tracker:
            tracker.complete_collector(spec.name, result)
    return results
