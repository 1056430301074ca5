"""
Join, filter and stream mailbox records into the export sink.

The pipeline is pull-based: the sink pulls admitted records from
PipelineDriver.stream(), which pulls one descriptor at a time from the
account source and enriches it before asking for the next one.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, List, Optional, Protocol, Tuple

from .constants import ARCHIVE_INACTIVE_SENTINEL, LICENSE_SEPARATOR
from .errors import (
    AccountLookupFailed,
    PipelineAborted,
    SessionUnavailable,
    SinkWriteFailed,
)
from .models import (
    AccountDescriptor,
    FilterMode,
    IdentityRecord,
    MailboxCategory,
    NormalizedRecord,
    UsageRecord,
)
from .utils import check_and_raise_session_error

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


# =============================================================================
# Collaborator Interfaces
# =============================================================================

class AccountSource(Protocol):
    def list_accounts(self, category: MailboxCategory) -> Iterator[AccountDescriptor]:
        ...


class IdentityLookup(Protocol):
    def get_identity(self, account_id: str) -> Optional[IdentityRecord]:
        ...


class UsageLookup(Protocol):
    def get_usage(self, account_id: str, archive: bool = False) -> Optional[UsageRecord]:
        ...


class RecordSink(Protocol):
    def append(self, record: NormalizedRecord) -> None:
        ...


# =============================================================================
# Record Joiner
# =============================================================================

def format_licenses(licenses: Optional[Tuple[str, ...]]) -> Optional[str]:
    """Render SKU identifiers in provider order; None stays None, () becomes ''."""
    if licenses is None:
        return None
    return LICENSE_SEPARATOR.join(licenses)


def build_record(
    descriptor: AccountDescriptor,
    identity: IdentityRecord,
    usage: UsageRecord,
    archive_usage: Optional[UsageRecord] = None,
) -> NormalizedRecord:
    """Combine one mailbox's fetched data into its export record."""
    if descriptor.archive_active and archive_usage is not None:
        archive_consumed = archive_usage.total_item_size
    else:
        archive_consumed = ARCHIVE_INACTIVE_SENTINEL

    return NormalizedRecord(
        user_principal_name=descriptor.user_principal_name,
        display_name=descriptor.display_name,
        type=descriptor.category,
        is_licensed=identity.is_licensed,
        licenses=format_licenses(identity.licenses),
        hidden_from_gal=descriptor.hidden_from_gal,
        storage_consumed=usage.total_item_size,
        storage_limit=descriptor.storage_limit,
        archive_status=descriptor.archive_status,
        auto_expanding_archive_enabled=descriptor.auto_expanding_archive_enabled,
        archive_storage_consumed=archive_consumed,
        archive_storage_quota=descriptor.archive_quota,
        retention_policy=descriptor.retention_policy,
        forwarding_smtp_address=descriptor.forwarding_smtp_address,
        forwarding_address=descriptor.forwarding_address,
    )


class RecordJoiner:
    """
    Enrich one AccountDescriptor with its identity and usage records.

    Each call issues exactly one identity lookup, one primary usage lookup and,
    when the archive is active, one archive usage lookup. A failed or empty
    lookup raises AccountLookupFailed; SessionUnavailable propagates.
    """

    def __init__(self, identity_lookup: IdentityLookup, usage_lookup: UsageLookup):
        self.identity_lookup = identity_lookup
        self.usage_lookup = usage_lookup

    def join(self, descriptor: AccountDescriptor) -> Tuple[IdentityRecord, NormalizedRecord]:
        """
        Returns:
            The fetched IdentityRecord (for the license filter) and the joined record
        """
        account_id = descriptor.user_principal_name

        identity = self._lookup(
            account_id, "identity", self.identity_lookup.get_identity, account_id
        )
        usage = self._lookup(
            account_id, "mailbox statistics", self.usage_lookup.get_usage, account_id, False
        )
        archive_usage = None
        if descriptor.archive_active:
            archive_usage = self._lookup(
                account_id, "archive statistics", self.usage_lookup.get_usage, account_id, True
            )

        return identity, build_record(descriptor, identity, usage, archive_usage)

    @staticmethod
    def _lookup(account_id: str, what: str, func: Callable, *args):
        try:
            result = func(*args)
        except SessionUnavailable:
            raise
        except Exception as e:
            check_and_raise_session_error(e, f"fetch {what} for {account_id}")
            raise AccountLookupFailed(account_id, f"{what} lookup failed: {e}") from e

        if result is None:
            raise AccountLookupFailed(account_id, f"{what} not found")
        return result


# =============================================================================
# License Filter
# =============================================================================

def license_filter_admits(
    mode: FilterMode,
    descriptor: AccountDescriptor,
    identity: IdentityRecord,
) -> bool:
    """Admit every mailbox, or only licensed ones in LICENSED_ONLY mode."""
    if mode is FilterMode.ALL_MAILBOXES:
        return True
    return bool(identity.is_licensed)


# =============================================================================
# Pipeline Driver
# =============================================================================

class DriverState(str, Enum):
    IDLE = "Idle"
    STREAMING = "Streaming"
    COMPLETED = "Completed"
    ABORTED = "Aborted"


@dataclass
class RunResult:
    """Counters for one export run."""
    state: DriverState = DriverState.IDLE
    processed: int = 0
    written: int = 0
    skipped: int = 0
    filtered: int = 0
    failed_accounts: List[str] = field(default_factory=list)


class PipelineDriver:
    """
    Single-pass export: source -> joiner -> license filter -> sink.

    Per-mailbox lookup failures are logged and skipped. Any other failure,
    such as a lost session or a broken listing, moves the driver to ABORTED
    and raises PipelineAborted carrying the number of rows already written.
    An interrupt also ends in ABORTED and is re-raised as is.
    """

    def __init__(
        self,
        source: AccountSource,
        joiner: RecordJoiner,
        sink: RecordSink,
        filter_mode: FilterMode = FilterMode.ALL_MAILBOXES,
        on_progress: Optional[ProgressCallback] = None,
    ):
        self.source = source
        self.joiner = joiner
        self.sink = sink
        self.filter_mode = filter_mode
        self.on_progress = on_progress
        self.state = DriverState.IDLE
        self.result = RunResult()

    def run(self, category: MailboxCategory) -> RunResult:
        """Export every mailbox of the given category."""
        if self.state is not DriverState.IDLE:
            raise RuntimeError(f"Pipeline already ran (state: {self.state.value})")

        self._set_state(DriverState.STREAMING)
        logger.info(
            f"Exporting {category.value} mailboxes (filter: {self.filter_mode.value})"
        )

        records = self.stream(category)
        try:
            for record in records:
                self.sink.append(record)
                self.result.written += 1
        except (SessionUnavailable, SinkWriteFailed) as e:
            records.close()
            self._abort(str(e))
            raise PipelineAborted(str(e), self.result.written, cause=e) from e
        except Exception as e:
            # Unexpected collaborator failure
            records.close()
            reason = f"{type(e).__name__}: {e}"
            self._abort(reason)
            raise PipelineAborted(reason, self.result.written, cause=e) from e
        except KeyboardInterrupt:
            records.close()
            self._abort("interrupted")
            raise

        self._set_state(DriverState.COMPLETED)
        logger.info(
            f"Processed {self.result.processed} mailboxes: {self.result.written} written, "
            f"{self.result.filtered} filtered, {self.result.skipped} skipped"
        )
        return self.result

    def stream(self, category: MailboxCategory) -> Iterator[NormalizedRecord]:
        """Lazily yield admitted records, one source element at a time."""
        for descriptor in self.source.list_accounts(category):
            # Reported even when the element fails or the consumer stops at it
            try:
                record = self._process(descriptor)
                if record is not None:
                    yield record
            finally:
                self.result.processed += 1
                if self.on_progress:
                    self.on_progress(self.result.processed, descriptor.user_principal_name)

    def _process(self, descriptor: AccountDescriptor) -> Optional[NormalizedRecord]:
        try:
            identity, record = self.joiner.join(descriptor)
        except AccountLookupFailed as e:
            logger.warning(f"Skipping {e.account_id}: {e.reason}")
            self.result.skipped += 1
            self.result.failed_accounts.append(e.account_id)
            return None

        if not license_filter_admits(self.filter_mode, descriptor, identity):
            logger.debug(f"Filtered out unlicensed mailbox {descriptor.user_principal_name}")
            self.result.filtered += 1
            return None

        return record

    def _abort(self, reason: str) -> None:
        self._set_state(DriverState.ABORTED)
        logger.error(f"Export aborted after {self.result.written} rows: {reason}")

    def _set_state(self, state: DriverState) -> None:
        self.state = state
        self.result.state = state
