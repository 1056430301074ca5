"""
Utility functions for the mailbox report.

Logging Level Standards:
------------------------
- ERROR: Run-level failures that stop the export
         "Export aborted after 5 rows: session expired"
- WARNING: Per-mailbox failures that skip one account
           "Skipping shared@contoso.com: mailbox statistics not found"
- INFO: Progress messages, counts
        "Found 42 mailboxes"
        "Writing report to ./mailbox_reports/MailboxReport_..."
- DEBUG: Per-request details
         "InvokeCommand Get-EXOMailboxStatistics (page 1)"
"""
import logging
import os
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, TypeVar

from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .constants import HTTP_AUTH_STATUS_CODES, M365_AUTH_ERROR_CODES
from .errors import SessionUnavailable

if TYPE_CHECKING:
    from rich.progress import TaskID

logger = logging.getLogger(__name__)

# Type variable for generic function decorator
F = TypeVar('F', bound=Callable[..., Any])


def retry_with_backoff(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 60,
    exceptions: tuple = (Exception,)
) -> Callable[[F], F]:
    """
    Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of retry attempts (default: 3)
        min_wait: Minimum wait time between retries in seconds (default: 1)
        max_wait: Maximum wait time between retries in seconds (default: 60)
        exceptions: Tuple of exception types to retry on (default: all Exceptions)

    Returns:
        Decorated function with retry logic

    Example:
        @retry_with_backoff(max_attempts=5, exceptions=(ConnectionError, TimeoutError))
        def call_api():
            ...
    """
    def decorator(func: F) -> F:
        return retry(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
            retry=retry_if_exception_type(exceptions),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )(func)  # type: ignore[return-value]
    return decorator


# =============================================================================
# Progress Tracking
# =============================================================================

class ProgressTracker:
    """
    Progress tracker for a mailbox export with rich display.

    Falls back to simple print statements if stdout is not a TTY
    (e.g., when piping output).

    Usage:
        with ProgressTracker("Mailbox Report", console=console) as tracker:
            result = driver.run(category)   # driver calls tracker.advance
            tracker.set_result(result.written, result.skipped, result.filtered)
    """

    def __init__(
        self,
        title: str,
        console: Optional[Console] = None,
        show_progress: bool = True,
        plain_every: int = 50,
    ):
        self.title = title
        self.show_progress = show_progress and sys.stdout.isatty()
        self.plain_every = plain_every

        # Counters
        self.processed = 0
        self.written = 0
        self.skipped = 0
        self.filtered = 0
        self.current_account = ""

        self._console = console
        self._progress: Optional[Progress] = None
        self._main_task: Optional["TaskID"] = None
        self._use_rich = self.show_progress

    def __enter__(self):
        if self._use_rich:
            if self._console is None:
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
            # Mailbox count is unknown until the listing is exhausted
            self._main_task = self._progress.add_task(self.title, total=None)
            self._progress.start()
        else:
            print(f"\n{'='*60}")
            print(f"{self.title} Starting")
            print(f"{'='*60}\n")

        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self._use_rich:
            assert self._progress is not None
            assert self._console is not None
            self._progress.stop()
            self._console.print()
            self._print_summary_rich()
        else:
            self._print_summary_plain()
        return False

    def advance(self, processed: int, account_id: str = ""):
        """Record that another mailbox went through the pipeline."""
        self.processed = processed
        self.current_account = account_id
        if self._use_rich:
            assert self._progress is not None
            assert self._main_task is not None
            self._progress.update(
                self._main_task,
                completed=processed,
                description=f"{self.title}: {account_id}" if account_id else self.title,
            )
        elif self.plain_every and processed % self.plain_every == 0:
            print(f"  Processed {processed:,} mailboxes...")

    def set_result(self, written: int, skipped: int = 0, filtered: int = 0):
        """Set the final counts shown in the summary."""
        self.written = written
        self.skipped = skipped
        self.filtered = filtered

    def _print_summary_rich(self):
        """Print a formatted summary using rich."""
        table = Table(title=f"{self.title} Summary", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="green")

        table.add_row("Mailboxes Processed", f"{self.processed:,}")
        table.add_row("Rows Written", f"{self.written:,}")
        table.add_row("Filtered Out", f"{self.filtered:,}")
        table.add_row("Skipped (errors)", f"{self.skipped:,}")

        assert self._console is not None
        self._console.print(Panel(table))

    def _print_summary_plain(self):
        """Print a plain text summary."""
        print(f"\n{'='*60}")
        print(f"{self.title} Complete")
        print(f"{'='*60}")
        print(f"  Mailboxes Processed: {self.processed:,}")
        print(f"  Rows Written:        {self.written:,}")
        print(f"  Filtered Out:        {self.filtered:,}")
        print(f"  Skipped (errors):    {self.skipped:,}")
        print()


def mask_tenant_id(tenant_id: str) -> str:
    """Shorten a tenant ID for console output."""
    if not tenant_id or len(tenant_id) <= 12:
        return tenant_id
    return f"{tenant_id[:8]}...{tenant_id[-4:]}"


def is_auth_error(exc: Exception) -> bool:
    """
    Check if an exception represents an authentication/authorization error.

    Detects auth errors from:
    - Graph: ODataError with auth-related codes or a 401/403 status
    - azure-identity / azure-core: ClientAuthenticationError, CredentialUnavailableError
    - requests: HTTPError whose response is 401/403

    Args:
        exc: The exception to check

    Returns:
        True if the exception is an authentication/authorization error
    """
    exc_type_name = type(exc).__name__

    if exc_type_name in ('ClientAuthenticationError', 'CredentialUnavailableError'):
        return True

    # Graph - ODataError
    if exc_type_name == 'ODataError':
        if getattr(exc, 'response_status_code', None) in HTTP_AUTH_STATUS_CODES:
            return True
        error = getattr(exc, 'error', None)
        if error:
            error_code = getattr(error, 'code', '')
            return error_code in M365_AUTH_ERROR_CODES
        return False

    # requests - HTTPError
    if exc_type_name == 'HTTPError':
        response = getattr(exc, 'response', None)
        return getattr(response, 'status_code', None) in HTTP_AUTH_STATUS_CODES

    return False


def check_and_raise_session_error(exc: Exception, context: str) -> None:
    """
    Check if exception is an auth error and raise SessionUnavailable if so.

    Call this in exception handlers before logging and continuing.
    If the exception is an auth error, raises SessionUnavailable to stop the run.
    Otherwise, returns normally so the caller can log and continue.

    Args:
        exc: The caught exception
        context: Description of what was being attempted (e.g., "list mailboxes")

    Raises:
        SessionUnavailable: If exc is an authentication/authorization error
    """
    if is_auth_error(exc):
        raise SessionUnavailable(
            f"Session lost while trying to {context}: {exc}",
            original_error=exc
        ) from exc


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

    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
        timestamp = datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')
        log_file = os.path.join(output_dir, f"mailbox_report_{timestamp}.log")

        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        root_logger.info(f"Logging to: {log_file}")

    # The SDKs log every HTTP request at INFO
    for noisy in ('azure', 'httpx', 'urllib3'):
        logging.getLogger(noisy).setLevel(max(numeric_level, logging.WARNING))

    return logging.getLogger(__name__)
