"""
Utility functions for TenantScope collectors.

Logging Level Standards:
------------------------
- ERROR: Collector failures that stop an entire output document
         "[devices] Collection failed: ..."
- WARNING: Partial failures (nested loops), missing optional data
           "[users] MFA registration details unavailable: ..."
           "Retrying GET .../users in 4.0s (attempt 1/4): throttled"
- INFO: Progress messages, record counts
        "Collected 42 devices"
        "Sibling file users.json not found; continuing without enrichment"
- DEBUG: Per-item failures that don't affect overall collection
         "[groups] owners for 1234...: HTTP 404"
"""
import hashlib
import json
import logging
import os
import re
import sys
import tempfile
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Type

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from tenacity import (
    RetryCallState,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
)

from .constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_BACKOFF,
    DEFAULT_RETRY_BASE_DELAY,
    DEFAULT_RETRY_MAX_DELAY,
    ISO_FORMAT,
    RETRY_BACKOFF_STRATEGIES,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Retry Policy
# =============================================================================

@dataclass
class RetryPolicy:
    """
    Backoff policy shared by every API call.

    Args:
        max_attempts: Total attempts including the first one (default: 4)
        base_delay: Base wait in seconds (default: 2)
        strategy: "linear" (base * attempt) or "exponential" (base * 2^(attempt-1))
        max_delay: Upper bound on a single wait (default: 60)
        sleep: Sleep function, injectable for tests

    Example:
        policy = RetryPolicy(max_attempts=5, strategy="linear")
        result = policy.retrying(ThrottledError)(call_api, url)
    """
    max_attempts: int = DEFAULT_RETRY_ATTEMPTS
    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    strategy: str = DEFAULT_RETRY_BACKOFF
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self):
        if self.strategy not in RETRY_BACKOFF_STRATEGIES:
            raise ValueError(
                f"Unknown backoff strategy '{self.strategy}'. "
                f"Expected one of: {', '.join(RETRY_BACKOFF_STRATEGIES)}"
            )
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        if self.strategy == "linear":
            wait = self.base_delay * attempt
        else:
            wait = self.base_delay * (2 ** (attempt - 1))
        return min(wait, self.max_delay)

    def _wait(self, retry_state: RetryCallState) -> float:
        wait = self.delay(retry_state.attempt_number)
        # Honour a server-provided Retry-After when it asks for longer
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            retry_after = getattr(outcome.exception(), 'retry_after', None)
            if retry_after:
                wait = max(wait, min(float(retry_after), self.max_delay))
        return wait

    def retrying(self, exceptions: Tuple[Type[BaseException], ...] = (Exception,)) -> Retrying:
        """
        Build a tenacity Retrying controller for this policy.

        When attempts are exhausted tenacity raises RetryError; callers
        translate that into their own terminal error.
        """
        return Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self.sleep,
            reraise=False,
        )


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for a collection run with rich display.

    Falls back to simple print statements if stdout is not a TTY
    (e.g., when piping output or running under a scheduler).

    Usage:
        with ProgressTracker("M365", total_collectors=5) as tracker:
            for name, collect_fn in collectors:
                tracker.start_collector(name)
                result = collect_fn(...)
                tracker.complete_collector(name, result)
    """

    def __init__(self, label: str, total_collectors: int = 0, show_progress: bool = True):
        self.label = label
        self.total_collectors = total_collectors
        self.show_progress = show_progress and sys.stdout.isatty()

        # Counters
        self.completed = 0
        self.failed = 0
        self.total_records = 0
        self.current = ""
        self.results: Dict[str, Any] = {}

        self._console: Optional[Console] = None
        self._progress: Optional[Progress] = None
        self._main_task: Optional[TaskID] = None

    def __enter__(self):
        if self.show_progress:
            self._console = Console()
            self._progress = Progress(
                SpinnerColumn(),
                TextColumn("[bold blue]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._main_task = self._progress.add_task(
                f"{self.label} Collection", total=self.total_collectors or 1
            )
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print(f"{self.label} Collection Starting")
            print(f"{'='*60}")
            if self.total_collectors:
                print(f"Collectors: {self.total_collectors}")
            print()

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.show_progress:
            assert self._progress is not None
            assert self._console is not None
            self._progress.stop()
            self._console.print()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def start_collector(self, name: str):
        """Mark the start of a collector."""
        self.current = name
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, description=f"{self.label} [{name}]")
        else:
            print(f"  [{name}] Collecting...")

    def complete_collector(self, name: str, result):
        """Record a finished collector and advance the bar."""
        self.results[name] = result
        self.completed += 1
        self.total_records += result.count
        if not result.success:
            self.failed += 1
        if self.show_progress:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(self._main_task, advance=1)
        else:
            status = "OK" if result.success else "FAILED"
            print(f"  [{name}] {status} - {result.count:,} records, {len(result.errors)} errors")

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        table = Table(title=f"{self.label} Collection Summary")
        table.add_column("Collector", style="cyan")
        table.add_column("Status")
        table.add_column("Records", justify="right", style="green")
        table.add_column("Errors", justify="right")

        for name, result in self.results.items():
            status = "[green]OK[/green]" if result.success else "[red]FAILED[/red]"
            table.add_row(name, status, f"{result.count:,}", str(len(result.errors)))

        table.add_row("TOTAL", f"{self.completed - self.failed}/{self.completed}", f"{self.total_records:,}", "")

        assert self._console is not None
        self._console.print(Panel(table))

    def _print_summary_plain(self):
        """Print a plain text summary."""
        print(f"\n{'='*60}")
        print(f"{self.label} Collection Complete")
        print(f"{'='*60}")
        print(f"  Collectors:    {self.completed - self.failed}/{self.completed} succeeded")
        print(f"  Total Records: {self.total_records:,}")
        for name, result in self.results.items():
            if not result.success:
                print(f"  FAILED {name}: {'; '.join(result.errors[:2])}")
        print()


def generate_run_id() -> str:
    """Generate a unique run ID."""
    return f"{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}-{str(uuid.uuid4())[:8]}"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime truncated to whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def get_timestamp() -> str:
    """Get current UTC timestamp in fixed ISO format."""
    return utc_now().strftime(ISO_FORMAT)


def hash_sensitive_id(value: str, prefix: str = "") -> str:
    """
    Hash a sensitive ID using consistent hashing.

    Uses first 8 chars of SHA256 so the same ID always produces the same
    token, allowing correlation between log lines.

    Example: 6f1c...-...-9a2b -> id-a3f8b2c1
    """
    if not value:
        return value
    hash_val = hashlib.sha256(value.encode()).hexdigest()[:8]
    return f"{prefix}{hash_val}" if prefix else hash_val


# Patterns for redacting sensitive data in log messages
_LOG_REDACT_PATTERNS = [
    # GUIDs (tenant, user, device and object IDs)
    (re.compile(r'\b([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\b', re.IGNORECASE),
     lambda m: f"id-{hash_sensitive_id(m.group(1).lower())}"),
    # UPNs and email addresses - preserve the domain
    (re.compile(r'\b([A-Za-z0-9._%+\'-]+)@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b'),
     lambda m: f"user-{hash_sensitive_id(m.group(1).lower())}@{m.group(2)}"),
]


def redact_log_message(message: str) -> str:
    """Redact object IDs and user principal names from a log message."""
    if not message:
        return message

    for pattern, replacer in _LOG_REDACT_PATTERNS:
        message = pattern.sub(replacer, message)

    return message


class RedactingFilter(logging.Filter):
    """
    Logging filter that redacts sensitive data from log messages.

    Uses consistent hashing so the same ID produces the same hash,
    allowing correlation across a persisted log file.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact sensitive data from the log record message."""
        if record.msg:
            record.msg = redact_log_message(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_log_message(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


def setup_logging(level: str = "INFO", output_dir: Optional[str] = None) -> logging.Logger:
    """
    Setup logging configuration with console and optional file output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        output_dir: If provided, also write logs to a file in this directory

    Returns:
        Logger instance
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)

    # Clear existing handlers to avoid duplicates
    root_logger.handlers.clear()

    # Console handler (stderr)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # File handler (if output_dir provided)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"tenantscope_log_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        # Persisted logs never carry raw object IDs or UPNs
        file_handler.addFilter(RedactingFilter())
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    return logging.getLogger(__name__)


def write_json(data: Any, filepath: str) -> None:
    """
    Write data to a JSON file with owner-only permissions.

    Parent directories are created as needed. The document is written to a
    temporary file in the same directory and moved into place, so readers
    never see a partially written file.
    """
    directory = os.path.dirname(os.path.abspath(filepath))
    os.makedirs(directory, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(prefix='.tmp-', suffix='.json', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, default=str, ensure_ascii=False)
            f.write('\n')
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, filepath)
    except Exception:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    logger.debug(f"Wrote {filepath}")


def read_json(filepath: str) -> Any:
    """Read a JSON document written by write_json."""
    with open(filepath, encoding='utf-8') as f:
        return json.load(f)
